"""Consecutive-failure tracking, threshold alerts and auto-deactivation.

Each workflow has one error counter with three states:

- healthy: no error since the last success
- failing: one or more consecutive errors
- auto_deactivated: the workflow was switched off after too many
  consecutive errors; sticky until ``reset_counter`` is called

Only executions created by the current sync pass are fed in, so running
the same pass twice never counts an execution twice.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy.orm import Session

from n8n_monitor import config
from n8n_monitor.core import sync
from n8n_monitor.core.client import client_for
from n8n_monitor.core.errors import NotFoundError
from n8n_monitor.core.locks import InstanceLocks
from n8n_monitor.core.models import (
    CounterState,
    ExecutionStatus,
    NotificationType,
    utcnow,
)
from n8n_monitor.core.notifier import (
    EmailNotifier,
    NotificationDispatcher,
    execution_error_payload,
    execution_success_payload,
    workflow_deactivated_payload,
)
from n8n_monitor.db import repository
from n8n_monitor.db.tables import Execution, WorkflowErrorCounter

logger = logging.getLogger(__name__)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _apply_order(execution: Execution):
    # n8n ids are sequential integers: "9" must come before "10"
    remote_id = execution.remote_id or ""
    id_key = (0, int(remote_id), "") if remote_id.isdigit() else (1, 0, remote_id)
    return (
        execution.started_at or _EPOCH,
        execution.finished_at or _EPOCH,
        id_key,
    )


def counter_state(counter: WorkflowErrorCounter | None) -> CounterState:
    if counter is None:
        return CounterState.HEALTHY
    if counter.is_auto_deactivated:
        return CounterState.AUTO_DEACTIVATED
    if counter.consecutive_errors > 0:
        return CounterState.FAILING
    return CounterState.HEALTHY


def error_message(data: str | None) -> str:
    if not data:
        return "Unknown error"
    try:
        parsed = json.loads(data)
    except ValueError:
        return "Workflow execution failed"
    if not isinstance(parsed, dict):
        return "Workflow execution failed"

    inner = parsed.get("data")
    if isinstance(inner, dict):
        nested = (inner.get("resultData") or {}).get("error") or {}
        if isinstance(nested, dict) and nested.get("message"):
            return nested["message"]
    top = parsed.get("error") or {}
    if isinstance(top, dict) and top.get("message"):
        return top["message"]
    return "Workflow execution failed"


def reset_counter(db: Session, user_id: str, workflow_id: str) -> WorkflowErrorCounter:
    """Manually return a workflow's counter to healthy, clearing the sticky flag."""
    workflow = repository.get_user_workflow(db, user_id, workflow_id)
    if workflow is None:
        raise NotFoundError(f"Workflow '{workflow_id}' not found")
    counter = repository.get_or_create_error_counter(db, workflow.id)
    counter.consecutive_errors = 0
    counter.is_auto_deactivated = False
    db.commit()
    db.refresh(counter)
    logger.info("Error counter reset for workflow %s", workflow.id)
    return counter


class FailureMonitor:
    def __init__(
        self,
        dispatcher: NotificationDispatcher,
        email: EmailNotifier | None = None,
        client_factory=client_for,
    ):
        self.dispatcher = dispatcher
        self.email = email
        self.client_factory = client_factory

    async def process_new(self, db: Session, executions: list[Execution], client=None) -> int:
        """Apply newly created executions oldest first; returns how many applied."""
        ordered = sorted(executions, key=_apply_order)
        applied = 0
        for execution in ordered:
            try:
                await self.process_execution(db, execution, client)
                applied += 1
            except Exception:
                db.rollback()
                logger.exception(
                    "Failed to process execution %s for notifications", execution.id
                )
        return applied

    async def process_execution(self, db: Session, execution: Execution, client=None):
        if execution.workflow_id is None:
            return

        workflow = execution.workflow
        instance = workflow.instance
        settings = repository.get_settings(db, instance.user_id)
        counter = repository.get_or_create_error_counter(db, workflow.id)

        if execution.status == ExecutionStatus.ERROR.value:
            counter.consecutive_errors += 1
            counter.total_errors += 1
            counter.last_error_at = utcnow()
            db.commit()
            streak = counter.consecutive_errors

            if settings.notify_on_error and streak >= settings.error_threshold:
                message = error_message(execution.data)
                await self._alert(
                    db,
                    settings,
                    NotificationType.ERROR,
                    title=f"Workflow Error: {workflow.name}",
                    message=f"Failed after {streak} consecutive errors",
                    payload=execution_error_payload(
                        workflow.name, instance.name, execution.id, message, streak
                    ),
                    workflow=workflow,
                    execution_id=execution.id,
                    metadata={"errorMessage": message, "consecutiveErrors": streak},
                )

            if (
                settings.auto_deactivate_workflow
                and streak >= settings.auto_deactivate_threshold
                and not counter.is_auto_deactivated
                and workflow.is_active
            ):
                await self._auto_deactivate(db, settings, workflow, counter, client)

        elif execution.status == ExecutionStatus.SUCCESS.value:
            counter.consecutive_errors = 0
            counter.last_success_at = utcnow()
            db.commit()

            if settings.notify_on_success:
                await self._alert(
                    db,
                    settings,
                    NotificationType.SUCCESS,
                    title=f"Workflow Succeeded: {workflow.name}",
                    message=f"{workflow.name} completed successfully",
                    payload=execution_success_payload(
                        workflow.name, instance.name, execution.id
                    ),
                    workflow=workflow,
                    execution_id=execution.id,
                )

    async def _auto_deactivate(self, db, settings, workflow, counter, client):
        instance = workflow.instance
        streak = counter.consecutive_errors
        try:
            if client is None:
                client = self.client_factory(instance)
            await client.deactivate_workflow(workflow.remote_id)
        except Exception as e:
            # Left unflagged so the next qualifying error retries
            logger.error(
                "Auto-deactivation of workflow %s failed: %s", workflow.id, e
            )
            return False

        repository.set_workflow_active(db, workflow, False)
        counter.is_auto_deactivated = True
        db.commit()
        logger.warning(
            "Workflow %s auto-deactivated after %d consecutive errors",
            workflow.id,
            streak,
        )

        if settings.notify_on_warning:
            reason = f"Auto-deactivated after {streak} consecutive errors"
            await self._alert(
                db,
                settings,
                NotificationType.WARNING,
                title="Workflow Auto-Deactivated",
                message=f"{workflow.name} was automatically deactivated",
                payload=workflow_deactivated_payload(
                    workflow.name, instance.name, workflow.id, reason
                ),
                workflow=workflow,
                metadata={"reason": reason},
            )
        return True

    async def _alert(
        self,
        db,
        settings,
        ntype: NotificationType,
        title: str,
        message: str,
        payload: dict,
        workflow,
        execution_id: str | None = None,
        metadata: dict | None = None,
    ) -> bool:
        """Deliver over every enabled channel and log it. False if none enabled."""
        user_id = settings.user_id
        attempted = False
        delivered = False

        if settings.push_notifications_enabled:
            attempted = True
            try:
                result = await self.dispatcher.dispatch(user_id, payload)
                delivered = delivered or result.sent > 0
            except Exception as e:
                logger.error("Push dispatch for user %s failed: %s", user_id, e)

        if (
            settings.email_notifications_enabled
            and settings.notification_email
            and self.email is not None
        ):
            attempted = True
            sent = await self.email.send(
                settings.notification_email, title, f"{message}\n\n{payload['body']}"
            )
            delivered = delivered or sent

        if not attempted:
            return False

        repository.create_notification_log(
            db,
            user_id=user_id,
            type=ntype.value,
            title=title,
            message=message,
            workflow_id=workflow.id,
            instance_id=workflow.instance_id,
            execution_id=execution_id,
            metadata=metadata,
            sent=delivered,
        )
        return True


@dataclass
class MonitorReport:
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    new_executions: int = 0


async def run_monitor_pass(
    session_factory,
    monitor: FailureMonitor,
    locks: InstanceLocks,
    client_factory=client_for,
    limit: int | None = None,
) -> MonitorReport:
    """Reconcile every active instance; one instance failing never stops the rest."""
    limit = config.MONITOR_EXECUTION_LIMIT if limit is None else limit
    report = MonitorReport()
    logger.info("Monitor pass starting")

    db = session_factory()
    try:
        for instance in repository.list_active_instances(db):
            if locks.is_busy(instance.id):
                logger.info("Instance %s busy, skipping this pass", instance.id)
                report.skipped += 1
                continue

            async with locks.get(instance.id):
                try:
                    client = client_factory(instance)
                    result = await sync.reconcile_instance(
                        db, instance, client, monitor=monitor, limit=limit
                    )
                except Exception as e:
                    db.rollback()
                    report.failed += 1
                    logger.error(
                        "Monitor pass failed for instance %s (%s): %s",
                        instance.id,
                        instance.name,
                        e,
                    )
                    continue
            report.processed += 1
            report.new_executions += result.created
    finally:
        db.close()

    logger.info(
        "Monitor pass completed: %d processed, %d failed, %d skipped, %d new executions",
        report.processed,
        report.failed,
        report.skipped,
        report.new_executions,
    )
    return report
