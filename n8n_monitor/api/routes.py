import json
import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from n8n_monitor import config
from n8n_monitor.api.auth import current_user, verify_api_key
from n8n_monitor.api.deps import Services, get_services
from n8n_monitor.api.schemas import (
    ConnectionTestResponse,
    DispatchResponse,
    ErrorCounterResponse,
    ExecutionDetailResponse,
    ExecutionResponse,
    ExecutionSyncRequest,
    ExecutionSyncResponse,
    InstanceCreate,
    InstanceResponse,
    InstanceUpdate,
    MonitorReportResponse,
    NotificationLogResponse,
    PushSubscribe,
    PushSubscriptionResponse,
    PushUnsubscribe,
    SettingsResponse,
    SettingsUpdate,
    ToggleResponse,
    WorkflowNodesResponse,
    WorkflowResponse,
    WorkflowSyncRequest,
    WorkflowSyncResponse,
)
from n8n_monitor.core import crypto, sync
from n8n_monitor.core.client import normalize_base_url
from n8n_monitor.core.errors import UpstreamError
from n8n_monitor.core.models import ExecutionStatus
from n8n_monitor.core.monitor import counter_state, reset_counter, run_monitor_pass
from n8n_monitor.core.notifier import ping_payload
from n8n_monitor.db import repository
from n8n_monitor.db.database import get_db

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(verify_api_key)])


def _instance_response(db: Session, instance) -> InstanceResponse:
    counts = repository.count_instance_rows(db, instance.id)
    return InstanceResponse(
        id=instance.id,
        name=instance.name,
        base_url=instance.base_url,
        is_active=instance.is_active,
        has_api_key=bool(instance.api_key),
        last_check=instance.last_check,
        created_at=instance.created_at,
        workflow_count=counts["workflows"],
        execution_count=counts["executions"],
    )


def _counter_response(counter) -> ErrorCounterResponse | None:
    if counter is None:
        return None
    return ErrorCounterResponse(
        consecutive_errors=counter.consecutive_errors,
        total_errors=counter.total_errors,
        last_error_at=counter.last_error_at,
        last_success_at=counter.last_success_at,
        is_auto_deactivated=counter.is_auto_deactivated,
        state=counter_state(counter).value,
    )


def _workflow_response(db: Session, workflow) -> WorkflowResponse:
    latest = repository.latest_execution(db, workflow.id)
    return WorkflowResponse(
        id=workflow.id,
        instance_id=workflow.instance_id,
        remote_id=workflow.remote_id,
        name=workflow.name,
        is_active=workflow.is_active,
        last_sync=workflow.last_sync,
        last_execution=workflow.last_execution,
        last_status=latest.status if latest else None,
        execution_count=repository.count_workflow_executions(db, workflow.id),
        error_counter=_counter_response(workflow.error_counter),
    )


def _owned_instance_or_404(db: Session, user_id: str, instance_id: str):
    instance = repository.get_user_instance(db, user_id, instance_id)
    if not instance:
        raise HTTPException(status_code=404, detail="Instance not found")
    return instance


def _owned_workflow_or_404(db: Session, user_id: str, workflow_id: str):
    workflow = repository.get_user_workflow(db, user_id, workflow_id)
    if not workflow:
        raise HTTPException(status_code=404, detail="Workflow not found")
    return workflow


# ── Monitoring ──────────────────────────────────────────────────────────────


@router.post("/monitor/run", response_model=MonitorReportResponse)
async def run_monitor(services: Services = Depends(get_services)):
    report = await run_monitor_pass(
        services.session_factory,
        services.monitor,
        services.locks,
        client_factory=services.client_factory,
    )
    return MonitorReportResponse(
        processed=report.processed,
        failed=report.failed,
        skipped=report.skipped,
        new_executions=report.new_executions,
    )


# ── Instances ───────────────────────────────────────────────────────────────


@router.post("/instances", response_model=InstanceResponse)
async def create_instance(
    body: InstanceCreate,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user),
    services: Services = Depends(get_services),
):
    base_url = normalize_base_url(body.base_url)
    if not await services.connect_factory(base_url, body.api_key).test_connection():
        raise HTTPException(
            status_code=400,
            detail="Failed to connect to n8n instance. Check the URL and API key.",
        )

    instance = repository.create_instance(
        db, user_id, body.name, base_url, crypto.encrypt(body.api_key)
    )

    # Pull workflows right away so counts reflect the connected instance
    try:
        await sync.sync_instance_workflows(
            db, user_id, instance.id, services.locks, services.client_factory
        )
    except UpstreamError as e:
        logger.warning("Initial workflow sync for %s failed: %s", instance.id, e)

    return _instance_response(db, instance)


@router.get("/instances", response_model=list[InstanceResponse])
def list_instances(
    db: Session = Depends(get_db), user_id: str = Depends(current_user)
):
    return [
        _instance_response(db, i) for i in repository.list_user_instances(db, user_id)
    ]


@router.get("/instances/{instance_id}", response_model=InstanceResponse)
def get_instance(
    instance_id: str,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user),
):
    return _instance_response(db, _owned_instance_or_404(db, user_id, instance_id))


@router.put("/instances/{instance_id}", response_model=InstanceResponse)
async def update_instance(
    instance_id: str,
    body: InstanceUpdate,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user),
    services: Services = Depends(get_services),
):
    instance = _owned_instance_or_404(db, user_id, instance_id)

    if body.base_url is not None or body.api_key is not None:
        base_url = (
            normalize_base_url(body.base_url)
            if body.base_url is not None
            else instance.base_url
        )
        api_key = (
            body.api_key if body.api_key is not None else crypto.decrypt(instance.api_key)
        )
        if not await services.connect_factory(base_url, api_key).test_connection():
            raise HTTPException(
                status_code=400,
                detail="Failed to connect to n8n instance. Check the URL and API key.",
            )
        instance.base_url = base_url
        if body.api_key is not None:
            instance.api_key = crypto.encrypt(body.api_key)

    if body.name is not None:
        instance.name = body.name
    if body.is_active is not None:
        instance.is_active = body.is_active

    repository.touch_instance(db, instance)
    return _instance_response(db, instance)


@router.delete("/instances/{instance_id}")
def delete_instance(
    instance_id: str,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user),
    services: Services = Depends(get_services),
):
    instance = _owned_instance_or_404(db, user_id, instance_id)
    repository.delete_instance(db, instance)
    services.locks.discard(instance_id)
    return {"status": "deleted"}


@router.post("/instances/{instance_id}/test", response_model=ConnectionTestResponse)
async def test_instance(
    instance_id: str,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user),
    services: Services = Depends(get_services),
):
    instance = _owned_instance_or_404(db, user_id, instance_id)
    connected = await services.client_factory(instance).test_connection()
    repository.touch_instance(db, instance)
    return ConnectionTestResponse(
        connected=connected,
        message=(
            "Successfully connected to n8n instance"
            if connected
            else "Failed to connect to n8n instance"
        ),
    )


# ── Workflows ───────────────────────────────────────────────────────────────


@router.post("/workflows/sync", response_model=WorkflowSyncResponse)
async def sync_workflows(
    body: WorkflowSyncRequest,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user),
    services: Services = Depends(get_services),
):
    count = await sync.sync_instance_workflows(
        db, user_id, body.instance_id, services.locks, services.client_factory
    )
    return WorkflowSyncResponse(count=count)


@router.get("/workflows", response_model=list[WorkflowResponse])
def list_workflows(
    instance_id: str | None = None,
    active: bool | None = None,
    has_recent_errors: bool = False,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user),
):
    if instance_id is not None:
        _owned_instance_or_404(db, user_id, instance_id)

    workflows = [
        _workflow_response(db, w)
        for w in repository.list_user_workflows(db, user_id, instance_id, active)
    ]
    if has_recent_errors:
        workflows = [
            w for w in workflows if w.last_status == ExecutionStatus.ERROR.value
        ]
    return workflows


@router.get("/workflows/{workflow_id}", response_model=WorkflowResponse)
def get_workflow(
    workflow_id: str,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user),
):
    return _workflow_response(db, _owned_workflow_or_404(db, user_id, workflow_id))


@router.get("/workflows/{workflow_id}/nodes", response_model=WorkflowNodesResponse)
async def get_workflow_nodes(
    workflow_id: str,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user),
    services: Services = Depends(get_services),
):
    workflow = _owned_workflow_or_404(db, user_id, workflow_id)
    remote = await services.client_factory(workflow.instance).get_workflow(
        workflow.remote_id
    )
    return WorkflowNodesResponse(
        id=workflow.id,
        name=remote.name or workflow.name,
        nodes=remote.nodes,
        connections=remote.connections,
    )


@router.post("/workflows/{workflow_id}/toggle", response_model=ToggleResponse)
async def toggle_workflow(
    workflow_id: str,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user),
    services: Services = Depends(get_services),
):
    is_active = await sync.toggle_workflow(
        db, user_id, workflow_id, services.locks, services.client_factory
    )
    return ToggleResponse(
        is_active=is_active,
        message="Workflow activated" if is_active else "Workflow deactivated",
    )


@router.post(
    "/workflows/{workflow_id}/reset-counter", response_model=ErrorCounterResponse
)
def reset_workflow_counter(
    workflow_id: str,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user),
):
    return _counter_response(reset_counter(db, user_id, workflow_id))


# ── Executions ──────────────────────────────────────────────────────────────


@router.post("/executions/sync", response_model=ExecutionSyncResponse)
async def sync_executions(
    body: ExecutionSyncRequest,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user),
    services: Services = Depends(get_services),
):
    result = await sync.sync_instance_executions(
        db,
        user_id,
        body.instance_id,
        services.locks,
        limit=body.limit,
        workflow_id=body.workflow_id,
        monitor=services.monitor,
        client_factory=services.client_factory,
    )
    return ExecutionSyncResponse(
        created=result.created, updated=result.updated, total=result.total
    )


@router.get("/executions", response_model=list[ExecutionResponse])
def list_executions(
    instance_id: str | None = None,
    workflow_id: str | None = None,
    status: ExecutionStatus | None = None,
    limit: int = 50,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user),
):
    if instance_id is not None:
        _owned_instance_or_404(db, user_id, instance_id)
    limit = max(1, min(limit, 200))
    executions = repository.list_user_executions(
        db,
        user_id,
        instance_id=instance_id,
        workflow_id=workflow_id,
        status=status.value if status else None,
        limit=limit,
    )
    return [ExecutionResponse.model_validate(e) for e in executions]


@router.get("/executions/{execution_id}", response_model=ExecutionDetailResponse)
def get_execution(
    execution_id: str,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user),
):
    execution = repository.get_user_execution(db, user_id, execution_id)
    if not execution:
        raise HTTPException(status_code=404, detail="Execution not found")
    return _execution_detail(execution)


@router.post(
    "/executions/{execution_id}/refresh", response_model=ExecutionDetailResponse
)
async def refresh_execution(
    execution_id: str,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user),
    services: Services = Depends(get_services),
):
    execution = await sync.refresh_execution(
        db, user_id, execution_id, services.locks, services.client_factory
    )
    return _execution_detail(execution)


def _execution_detail(execution) -> ExecutionDetailResponse:
    detail = ExecutionDetailResponse.model_validate(execution)
    detail.data = json.loads(execution.data) if execution.data else None
    return detail


# ── Settings & notifications ────────────────────────────────────────────────


@router.get("/settings", response_model=SettingsResponse)
def get_settings(db: Session = Depends(get_db), user_id: str = Depends(current_user)):
    return SettingsResponse.model_validate(repository.get_settings(db, user_id))


@router.put("/settings", response_model=SettingsResponse)
def update_settings(
    body: SettingsUpdate,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user),
):
    fields = body.model_dump(exclude_unset=True)
    if "notification_email" in fields and not fields["notification_email"]:
        fields["notification_email"] = None
    settings = repository.update_settings(db, user_id, **fields)
    return SettingsResponse.model_validate(settings)


@router.get("/push/public-key")
def push_public_key():
    if not config.VAPID_PUBLIC_KEY:
        raise HTTPException(status_code=404, detail="Push is not configured")
    return {"public_key": config.VAPID_PUBLIC_KEY}


@router.post("/push/subscribe", response_model=PushSubscriptionResponse)
def push_subscribe(
    body: PushSubscribe,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user),
):
    subscription = repository.save_push_subscription(
        db, user_id, body.endpoint, body.keys.p256dh, body.keys.auth
    )
    return PushSubscriptionResponse(
        id=subscription.id,
        endpoint=subscription.endpoint,
        is_active=subscription.is_active,
    )


@router.post("/push/unsubscribe")
def push_unsubscribe(
    body: PushUnsubscribe,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user),
):
    removed = repository.remove_push_subscription(db, user_id, body.endpoint)
    return {"removed": removed}


@router.post("/notifications/test", response_model=DispatchResponse)
async def send_test_notification(
    user_id: str = Depends(current_user),
    services: Services = Depends(get_services),
):
    result = await services.dispatcher.dispatch(user_id, ping_payload())
    return DispatchResponse(sent=result.sent, failed=result.failed)


@router.get("/notifications", response_model=list[NotificationLogResponse])
def list_notifications(
    limit: int = 50,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user),
):
    logs = repository.list_notification_logs(db, user_id, max(1, min(limit, 200)))
    return [
        NotificationLogResponse(
            id=n.id,
            type=n.type,
            title=n.title,
            message=n.message,
            workflow_id=n.workflow_id,
            instance_id=n.instance_id,
            execution_id=n.execution_id,
            metadata=json.loads(n.meta) if n.meta else None,
            sent=n.sent,
            sent_at=n.sent_at,
            created_at=n.created_at,
        )
        for n in logs
    ]
