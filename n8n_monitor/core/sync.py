"""Mirror remote workflow and execution state into the local store.

Writes happen one row at a time. A failed initial fetch aborts before any
write; a failure part-way through the loop keeps the rows already upserted.
Nothing is ever deleted locally when it disappears remotely.
"""

import json
import logging
from dataclasses import dataclass, field

from sqlalchemy.orm import Session

from n8n_monitor import config
from n8n_monitor.core.client import InstanceClient, RemoteExecution, client_for
from n8n_monitor.core.errors import NotFoundError, ValidationError
from n8n_monitor.core.locks import InstanceLocks
from n8n_monitor.core.models import ExecutionStatus
from n8n_monitor.db import repository
from n8n_monitor.db.tables import Execution, Instance, Workflow

logger = logging.getLogger(__name__)

_KNOWN_STATUSES = {s.value for s in ExecutionStatus}
_STATUS_ALIASES = {
    "crashed": ExecutionStatus.ERROR.value,
    "failed": ExecutionStatus.ERROR.value,
    "new": ExecutionStatus.WAITING.value,
}


@dataclass
class SyncResult:
    created: int = 0
    updated: int = 0
    total: int = 0
    new_executions: list[Execution] = field(default_factory=list)


def normalize_status(remote: RemoteExecution) -> str:
    status = (remote.status or "").lower()
    if status in _KNOWN_STATUSES:
        return status
    if status in _STATUS_ALIASES:
        return _STATUS_ALIASES[status]
    if remote.finished:
        return ExecutionStatus.SUCCESS.value
    if remote.stopped_at is not None:
        return ExecutionStatus.ERROR.value
    return ExecutionStatus.RUNNING.value


def validate_limit(limit: int) -> int:
    if not isinstance(limit, int) or isinstance(limit, bool):
        raise ValidationError("limit must be an integer")
    if limit < 1 or limit > config.EXECUTION_SYNC_MAX_LIMIT:
        raise ValidationError(
            f"limit must be between 1 and {config.EXECUTION_SYNC_MAX_LIMIT}"
        )
    return limit


def _latest(*timestamps):
    present = [t for t in timestamps if t is not None]
    return max(present) if present else None


def _store_execution(
    db: Session, instance: Instance, remote: RemoteExecution, workflow_map: dict
) -> tuple[Execution, bool]:
    local_workflow_id = (
        workflow_map.get(remote.workflow_id) if remote.workflow_id else None
    )
    execution, created = repository.upsert_execution(
        db,
        instance_id=instance.id,
        remote_id=remote.id,
        workflow_id=local_workflow_id,
        status=normalize_status(remote),
        started_at=remote.started_at,
        finished_at=remote.stopped_at,
        data=json.dumps(remote.model_dump(mode="json", by_alias=True)),
    )
    if local_workflow_id:
        repository.advance_last_execution(
            db, local_workflow_id, _latest(remote.stopped_at, remote.started_at)
        )
    return execution, created


async def sync_workflows(
    db: Session, instance: Instance, client: InstanceClient
) -> list[Workflow]:
    remote_workflows = await client.list_workflows()

    synced = []
    for remote in remote_workflows:
        workflow, _ = repository.upsert_workflow(
            db, instance.id, remote.id, remote.name, remote.active
        )
        synced.append(workflow)

    logger.info(
        "Synced %d workflows for instance %s", len(synced), instance.id
    )
    return synced


async def sync_executions(
    db: Session,
    instance: Instance,
    client: InstanceClient,
    limit: int = config.EXECUTION_SYNC_DEFAULT_LIMIT,
    workflow_remote_id: str | None = None,
    monitor=None,
) -> SyncResult:
    """Upsert one page of remote executions.

    When ``monitor`` is given, every execution created by this call is
    handed to it (oldest first) once the page has been stored.
    """
    validate_limit(limit)

    # Built once per call, not per execution
    workflow_map = repository.workflow_id_map(db, instance.id)

    page = await client.list_executions(
        workflow_id=workflow_remote_id, limit=limit
    )

    result = SyncResult(total=len(page.data))
    for remote in page.data:
        execution, created = _store_execution(db, instance, remote, workflow_map)
        if created:
            result.created += 1
            result.new_executions.append(execution)
        else:
            result.updated += 1

    logger.info(
        "Synced executions for instance %s: %d created, %d updated, %d fetched",
        instance.id,
        result.created,
        result.updated,
        result.total,
    )

    if monitor is not None and result.new_executions:
        await monitor.process_new(db, result.new_executions, client)
    return result


async def reconcile_instance(
    db: Session,
    instance: Instance,
    client: InstanceClient,
    monitor=None,
    limit: int = config.EXECUTION_SYNC_DEFAULT_LIMIT,
) -> SyncResult:
    """Sync workflows, then executions, then stamp ``last_check``.

    ``last_check`` is stamped even when the execution sync fails, as long as
    the workflow sync went through; the execution failure is re-raised.
    """
    await sync_workflows(db, instance, client)
    try:
        result = await sync_executions(
            db, instance, client, limit=limit, monitor=monitor
        )
    except Exception:
        db.rollback()
        repository.touch_instance(db, instance)
        raise
    repository.touch_instance(db, instance)
    return result


# ── Entry points ────────────────────────────────────────────────────────────


def _owned_instance(db: Session, user_id: str, instance_id: str) -> Instance:
    instance = repository.get_user_instance(db, user_id, instance_id)
    if instance is None:
        raise NotFoundError(f"Instance '{instance_id}' not found")
    return instance


async def sync_instance_workflows(
    db: Session,
    user_id: str,
    instance_id: str,
    locks: InstanceLocks,
    client_factory=client_for,
) -> int:
    instance = _owned_instance(db, user_id, instance_id)
    async with locks.get(instance.id):
        workflows = await sync_workflows(db, instance, client_factory(instance))
        repository.touch_instance(db, instance)
    return len(workflows)


async def sync_instance_executions(
    db: Session,
    user_id: str,
    instance_id: str,
    locks: InstanceLocks,
    limit: int = config.EXECUTION_SYNC_DEFAULT_LIMIT,
    workflow_id: str | None = None,
    monitor=None,
    client_factory=client_for,
) -> SyncResult:
    validate_limit(limit)
    instance = _owned_instance(db, user_id, instance_id)

    workflow_remote_id = None
    if workflow_id is not None:
        workflow = repository.get_workflow(db, workflow_id)
        if workflow is None or workflow.instance_id != instance.id:
            raise NotFoundError(f"Workflow '{workflow_id}' not found")
        workflow_remote_id = workflow.remote_id

    async with locks.get(instance.id):
        result = await sync_executions(
            db,
            instance,
            client_factory(instance),
            limit=limit,
            workflow_remote_id=workflow_remote_id,
            monitor=monitor,
        )
        repository.touch_instance(db, instance)
    return result


async def toggle_workflow(
    db: Session,
    user_id: str,
    workflow_id: str,
    locks: InstanceLocks,
    client_factory=client_for,
) -> bool:
    """Flip a workflow's active state remotely, then mirror it locally."""
    workflow = repository.get_user_workflow(db, user_id, workflow_id)
    if workflow is None:
        raise NotFoundError(f"Workflow '{workflow_id}' not found")

    instance = workflow.instance
    client = client_factory(instance)
    async with locks.get(instance.id):
        if workflow.is_active:
            remote = await client.deactivate_workflow(workflow.remote_id)
        else:
            remote = await client.activate_workflow(workflow.remote_id)
        repository.set_workflow_active(db, workflow, remote.active)

    logger.info(
        "Workflow %s %s", workflow.id, "activated" if remote.active else "deactivated"
    )
    return remote.active


async def refresh_execution(
    db: Session,
    user_id: str,
    execution_id: str,
    locks: InstanceLocks,
    client_factory=client_for,
) -> Execution:
    """Re-read one stored execution from its instance, with full run data.

    The row already exists, so the failure counter is not touched.
    """
    execution = repository.get_user_execution(db, user_id, execution_id)
    if execution is None:
        raise NotFoundError(f"Execution '{execution_id}' not found")

    instance = execution.instance
    async with locks.get(instance.id):
        remote = await client_factory(instance).get_execution(execution.remote_id)
        workflow_map = repository.workflow_id_map(db, instance.id)
        execution, _ = _store_execution(db, instance, remote, workflow_map)
    return execution
