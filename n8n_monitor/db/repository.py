import json
import uuid

from sqlalchemy import func
from sqlalchemy.orm import Session

from n8n_monitor.core.models import utcnow
from n8n_monitor.db.tables import (
    Execution,
    Instance,
    NotificationLog,
    PushSubscription,
    UserSettings,
    Workflow,
    WorkflowErrorCounter,
)


def _new_id() -> str:
    return str(uuid.uuid4())


# ── Instances ───────────────────────────────────────────────────────────────


def create_instance(
    db: Session, user_id: str, name: str, base_url: str, encrypted_api_key: str
) -> Instance:
    instance = Instance(
        id=_new_id(),
        user_id=user_id,
        name=name,
        base_url=base_url,
        api_key=encrypted_api_key,
        is_active=True,
        last_check=utcnow(),
        created_at=utcnow(),
    )
    db.add(instance)
    db.commit()
    db.refresh(instance)
    return instance


def get_user_instance(db: Session, user_id: str, instance_id: str) -> Instance | None:
    return (
        db.query(Instance)
        .filter(Instance.id == instance_id, Instance.user_id == user_id)
        .first()
    )


def list_user_instances(db: Session, user_id: str) -> list[Instance]:
    return (
        db.query(Instance)
        .filter(Instance.user_id == user_id)
        .order_by(Instance.created_at.desc())
        .all()
    )


def list_active_instances(db: Session) -> list[Instance]:
    return db.query(Instance).filter(Instance.is_active.is_(True)).all()


def touch_instance(db: Session, instance: Instance):
    instance.last_check = utcnow()
    db.commit()


def delete_instance(db: Session, instance: Instance):
    db.delete(instance)
    db.commit()


def count_instance_rows(db: Session, instance_id: str) -> dict:
    workflows = (
        db.query(func.count(Workflow.id))
        .filter(Workflow.instance_id == instance_id)
        .scalar()
    )
    executions = (
        db.query(func.count(Execution.id))
        .filter(Execution.instance_id == instance_id)
        .scalar()
    )
    return {"workflows": workflows, "executions": executions}


# ── Workflows ───────────────────────────────────────────────────────────────


def get_workflow(db: Session, workflow_id: str) -> Workflow | None:
    return db.query(Workflow).filter(Workflow.id == workflow_id).first()


def get_user_workflow(db: Session, user_id: str, workflow_id: str) -> Workflow | None:
    return (
        db.query(Workflow)
        .join(Instance, Workflow.instance_id == Instance.id)
        .filter(Workflow.id == workflow_id, Instance.user_id == user_id)
        .first()
    )


def get_workflow_by_remote_id(
    db: Session, instance_id: str, remote_id: str
) -> Workflow | None:
    return (
        db.query(Workflow)
        .filter(Workflow.instance_id == instance_id, Workflow.remote_id == remote_id)
        .first()
    )


def workflow_id_map(db: Session, instance_id: str) -> dict[str, str]:
    """Map remote workflow id -> local workflow id for one instance."""
    rows = (
        db.query(Workflow.remote_id, Workflow.id)
        .filter(Workflow.instance_id == instance_id)
        .all()
    )
    return {remote_id: local_id for remote_id, local_id in rows}


def upsert_workflow(
    db: Session, instance_id: str, remote_id: str, name: str, is_active: bool
) -> tuple[Workflow, bool]:
    """Insert or update on (instance_id, remote_id). Returns (row, created)."""
    now = utcnow()
    workflow = get_workflow_by_remote_id(db, instance_id, remote_id)
    created = workflow is None
    if created:
        workflow = Workflow(
            id=_new_id(),
            instance_id=instance_id,
            remote_id=remote_id,
            name=name,
            is_active=is_active,
            last_sync=now,
        )
        db.add(workflow)
    else:
        workflow.name = name
        workflow.is_active = is_active
        workflow.last_sync = now
    db.commit()
    db.refresh(workflow)
    return workflow, created


def set_workflow_active(db: Session, workflow: Workflow, is_active: bool):
    workflow.is_active = is_active
    workflow.last_sync = utcnow()
    db.commit()


def advance_last_execution(db: Session, workflow_id: str, when):
    """Move last_execution forward to ``when``; never backwards."""
    if when is None:
        return
    workflow = get_workflow(db, workflow_id)
    if workflow is None:
        return
    if workflow.last_execution is None or when > workflow.last_execution:
        workflow.last_execution = when
        db.commit()


def list_user_workflows(
    db: Session,
    user_id: str,
    instance_id: str | None = None,
    active: bool | None = None,
) -> list[Workflow]:
    query = (
        db.query(Workflow)
        .join(Instance, Workflow.instance_id == Instance.id)
        .filter(Instance.user_id == user_id)
    )
    if instance_id is not None:
        query = query.filter(Workflow.instance_id == instance_id)
    if active is not None:
        query = query.filter(Workflow.is_active.is_(active))
    return query.order_by(Workflow.last_sync.desc()).all()


def latest_execution(db: Session, workflow_id: str) -> Execution | None:
    return (
        db.query(Execution)
        .filter(Execution.workflow_id == workflow_id)
        .order_by(Execution.started_at.desc())
        .first()
    )


def count_workflow_executions(db: Session, workflow_id: str) -> int:
    return (
        db.query(func.count(Execution.id))
        .filter(Execution.workflow_id == workflow_id)
        .scalar()
    )


# ── Executions ──────────────────────────────────────────────────────────────


def get_user_execution(db: Session, user_id: str, execution_id: str) -> Execution | None:
    return (
        db.query(Execution)
        .join(Instance, Execution.instance_id == Instance.id)
        .filter(Execution.id == execution_id, Instance.user_id == user_id)
        .first()
    )


def get_execution_by_remote_id(
    db: Session, instance_id: str, remote_id: str
) -> Execution | None:
    return (
        db.query(Execution)
        .filter(
            Execution.instance_id == instance_id, Execution.remote_id == remote_id
        )
        .first()
    )


def upsert_execution(
    db: Session,
    instance_id: str,
    remote_id: str,
    workflow_id: str | None,
    status: str,
    started_at,
    finished_at,
    data: str | None,
) -> tuple[Execution, bool]:
    """Insert or update on (instance_id, remote_id). Returns (row, created)."""
    execution = get_execution_by_remote_id(db, instance_id, remote_id)
    created = execution is None
    if created:
        execution = Execution(
            id=_new_id(),
            instance_id=instance_id,
            remote_id=remote_id,
        )
        db.add(execution)
    execution.workflow_id = workflow_id
    execution.status = status
    execution.started_at = started_at
    execution.finished_at = finished_at
    execution.data = data
    db.commit()
    db.refresh(execution)
    return execution, created


def list_user_executions(
    db: Session,
    user_id: str,
    instance_id: str | None = None,
    workflow_id: str | None = None,
    status: str | None = None,
    limit: int = 50,
) -> list[Execution]:
    query = (
        db.query(Execution)
        .join(Instance, Execution.instance_id == Instance.id)
        .filter(Instance.user_id == user_id)
    )
    if instance_id is not None:
        query = query.filter(Execution.instance_id == instance_id)
    if workflow_id is not None:
        query = query.filter(Execution.workflow_id == workflow_id)
    if status is not None:
        query = query.filter(Execution.status == status)
    return query.order_by(Execution.started_at.desc()).limit(limit).all()


# ── Error counters ──────────────────────────────────────────────────────────


def get_error_counter(db: Session, workflow_id: str) -> WorkflowErrorCounter | None:
    return (
        db.query(WorkflowErrorCounter)
        .filter(WorkflowErrorCounter.workflow_id == workflow_id)
        .first()
    )


def get_or_create_error_counter(db: Session, workflow_id: str) -> WorkflowErrorCounter:
    counter = get_error_counter(db, workflow_id)
    if counter is None:
        counter = WorkflowErrorCounter(
            id=_new_id(),
            workflow_id=workflow_id,
            consecutive_errors=0,
            total_errors=0,
            is_auto_deactivated=False,
        )
        db.add(counter)
        db.commit()
        db.refresh(counter)
    return counter


# ── Notifications ───────────────────────────────────────────────────────────


def create_notification_log(
    db: Session,
    user_id: str,
    type: str,
    title: str,
    message: str,
    workflow_id: str | None = None,
    instance_id: str | None = None,
    execution_id: str | None = None,
    metadata: dict | None = None,
    sent: bool = False,
) -> NotificationLog:
    now = utcnow()
    entry = NotificationLog(
        id=_new_id(),
        user_id=user_id,
        workflow_id=workflow_id,
        instance_id=instance_id,
        execution_id=execution_id,
        type=type,
        title=title,
        message=message,
        meta=json.dumps(metadata) if metadata is not None else None,
        sent=sent,
        sent_at=now if sent else None,
        created_at=now,
    )
    db.add(entry)
    db.commit()
    db.refresh(entry)
    return entry


def list_notification_logs(
    db: Session, user_id: str, limit: int = 50
) -> list[NotificationLog]:
    return (
        db.query(NotificationLog)
        .filter(NotificationLog.user_id == user_id)
        .order_by(NotificationLog.created_at.desc())
        .limit(limit)
        .all()
    )


# ── User settings ───────────────────────────────────────────────────────────


def default_settings(user_id: str) -> UserSettings:
    return UserSettings(
        user_id=user_id,
        notification_email=None,
        notify_on_error=True,
        error_threshold=1,
        notify_on_success=False,
        notify_on_warning=True,
        auto_deactivate_workflow=False,
        auto_deactivate_threshold=3,
        push_notifications_enabled=True,
        email_notifications_enabled=False,
    )


def get_settings(db: Session, user_id: str) -> UserSettings:
    """Stored settings, or unsaved defaults when the user has none yet."""
    settings = db.query(UserSettings).filter(UserSettings.user_id == user_id).first()
    return settings if settings is not None else default_settings(user_id)


def update_settings(db: Session, user_id: str, **fields) -> UserSettings:
    settings = db.query(UserSettings).filter(UserSettings.user_id == user_id).first()
    if settings is None:
        settings = default_settings(user_id)
        db.add(settings)
    for key, value in fields.items():
        setattr(settings, key, value)
    db.commit()
    db.refresh(settings)
    return settings


# ── Push subscriptions ──────────────────────────────────────────────────────


def save_push_subscription(
    db: Session, user_id: str, endpoint: str, p256dh: str, auth: str
) -> PushSubscription:
    subscription = (
        db.query(PushSubscription).filter(PushSubscription.endpoint == endpoint).first()
    )
    if subscription is None:
        subscription = PushSubscription(
            id=_new_id(), endpoint=endpoint, created_at=utcnow()
        )
        db.add(subscription)
    subscription.user_id = user_id
    subscription.p256dh = p256dh
    subscription.auth = auth
    subscription.is_active = True
    db.commit()
    db.refresh(subscription)
    return subscription


def list_active_push_subscriptions(db: Session, user_id: str) -> list[PushSubscription]:
    return (
        db.query(PushSubscription)
        .filter(
            PushSubscription.user_id == user_id,
            PushSubscription.is_active.is_(True),
        )
        .all()
    )


def deactivate_push_subscription(db: Session, subscription_id: str):
    subscription = (
        db.query(PushSubscription)
        .filter(PushSubscription.id == subscription_id)
        .first()
    )
    if subscription:
        subscription.is_active = False
        db.commit()


def remove_push_subscription(db: Session, user_id: str, endpoint: str) -> bool:
    subscription = (
        db.query(PushSubscription)
        .filter(
            PushSubscription.endpoint == endpoint,
            PushSubscription.user_id == user_id,
        )
        .first()
    )
    if subscription is None:
        return False
    db.delete(subscription)
    db.commit()
    return True
