"""Alert delivery: push fan-out to a user's subscriptions, plus email."""

import asyncio
import json
import logging
import smtplib
from dataclasses import dataclass
from email.mime.text import MIMEText
from typing import Any, Protocol

import httpx
from pywebpush import WebPushException, webpush

from n8n_monitor import config
from n8n_monitor.core.errors import TransportGoneError, UpstreamError
from n8n_monitor.db import repository

logger = logging.getLogger(__name__)

_GONE_STATUSES = (404, 410)


@dataclass
class DispatchResult:
    sent: int = 0
    failed: int = 0


class PushTransport(Protocol):
    async def send(self, subscription, payload: dict[str, Any]) -> None:
        """Deliver one payload; raise TransportGoneError for dead endpoints."""


class HttpPushTransport:
    """POSTs the JSON payload unencrypted; for local receivers and tests."""

    def __init__(
        self,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._timeout = config.HTTP_TIMEOUT if timeout is None else timeout
        self._transport = transport

    async def send(self, subscription, payload: dict[str, Any]) -> None:
        async with httpx.AsyncClient(
            timeout=self._timeout, transport=self._transport
        ) as client:
            resp = await client.post(
                subscription.endpoint,
                json=payload,
                headers={"TTL": "86400", "Urgency": "high"},
            )
        if resp.status_code in _GONE_STATUSES:
            raise TransportGoneError(subscription.endpoint, resp.status_code)
        if resp.status_code < 200 or resp.status_code >= 300:
            raise UpstreamError(
                f"Push endpoint rejected notification: {resp.status_code}",
                status_code=resp.status_code,
            )


class WebPushTransport:
    """Encrypted Web Push (aes128gcm) signed with the service's VAPID key."""

    def __init__(
        self,
        private_key: str | None = None,
        subject: str | None = None,
        timeout: float | None = None,
    ):
        self.private_key = config.VAPID_PRIVATE_KEY if private_key is None else private_key
        self.subject = config.VAPID_SUBJECT if subject is None else subject
        self._timeout = config.HTTP_TIMEOUT if timeout is None else timeout

    async def send(self, subscription, payload: dict[str, Any]) -> None:
        await asyncio.to_thread(self._send_sync, subscription, payload)

    def _send_sync(self, subscription, payload: dict[str, Any]):
        try:
            webpush(
                subscription_info={
                    "endpoint": subscription.endpoint,
                    "keys": {"p256dh": subscription.p256dh, "auth": subscription.auth},
                },
                data=json.dumps(payload),
                vapid_private_key=self.private_key,
                # webpush adds aud/exp to the claims dict, so pass a fresh one
                vapid_claims={"sub": self.subject},
                timeout=self._timeout,
                headers={"Urgency": "high"},
                ttl=86400,
            )
        except WebPushException as e:
            status = e.response.status_code if e.response is not None else None
            if status in _GONE_STATUSES:
                raise TransportGoneError(subscription.endpoint, status) from e
            raise UpstreamError(
                f"Push service rejected notification: {e}", status_code=status
            ) from e


def default_push_transport() -> PushTransport:
    if config.VAPID_PRIVATE_KEY:
        return WebPushTransport()
    logger.warning("VAPID keys not configured, push uses unsigned JSON POSTs")
    return HttpPushTransport()


class NotificationDispatcher:
    def __init__(self, session_factory, transport: PushTransport | None = None):
        self.session_factory = session_factory
        self.transport = (
            transport if transport is not None else default_push_transport()
        )

    async def dispatch(self, user_id: str, payload: dict[str, Any]) -> DispatchResult:
        db = self.session_factory()
        try:
            subscriptions = repository.list_active_push_subscriptions(db, user_id)
            if not subscriptions:
                logger.info("No active push subscriptions for user %s", user_id)
                return DispatchResult()

            outcomes = await asyncio.gather(
                *(self._deliver(s, payload) for s in subscriptions)
            )

            result = DispatchResult()
            for subscription, outcome in zip(subscriptions, outcomes):
                if outcome == "sent":
                    result.sent += 1
                    continue
                result.failed += 1
                if outcome == "gone":
                    repository.deactivate_push_subscription(db, subscription.id)
                    logger.info(
                        "Deactivated gone push subscription %s", subscription.id
                    )
            return result
        finally:
            db.close()

    async def _deliver(self, subscription, payload) -> str:
        try:
            await self.transport.send(subscription, payload)
            return "sent"
        except TransportGoneError:
            return "gone"
        except Exception as e:
            logger.warning(
                "Push delivery to subscription %s failed: %s", subscription.id, e
            )
            return "failed"


class EmailNotifier:
    def __init__(
        self,
        host: str | None = None,
        port: int | None = None,
        username: str | None = None,
        password: str | None = None,
        sender: str | None = None,
    ):
        self.host = config.SMTP_HOST if host is None else host
        self.port = config.SMTP_PORT if port is None else port
        self.username = config.SMTP_USERNAME if username is None else username
        self.password = config.SMTP_PASSWORD if password is None else password
        self.sender = config.SMTP_FROM if sender is None else sender

    @property
    def configured(self) -> bool:
        return bool(self.host)

    async def send(self, recipient: str, subject: str, body: str) -> bool:
        if not self.configured:
            logger.warning("SMTP not configured, skipping email to %s", recipient)
            return False
        try:
            await asyncio.to_thread(self._send_sync, recipient, subject, body)
        except (smtplib.SMTPException, OSError) as e:
            logger.error("Failed to send email to %s: %s", recipient, e)
            return False
        logger.info("Email notification sent to %s", recipient)
        return True

    def _send_sync(self, recipient: str, subject: str, body: str):
        msg = MIMEText(body, "plain")
        msg["From"] = self.sender
        msg["To"] = recipient
        msg["Subject"] = subject

        with smtplib.SMTP(self.host, self.port) as server:
            if self.username and self.password:
                server.starttls()
                server.login(self.username, self.password)
            server.send_message(msg)


# ── Payloads ────────────────────────────────────────────────────────────────


def _url(path: str) -> str:
    return f"{config.APP_URL.rstrip('/')}{path}"


def execution_error_payload(
    workflow_name: str,
    instance_name: str,
    execution_id: str,
    error_message: str,
    consecutive_errors: int,
) -> dict[str, Any]:
    body = f"{error_message} ({instance_name})"
    if consecutive_errors > 1:
        body += f"\n{consecutive_errors} consecutive errors"
    return {
        "title": f"Workflow Error: {workflow_name}",
        "body": body,
        "tag": f"execution-error-{execution_id}",
        "requireInteraction": True,
        "data": {
            "type": "execution-error",
            "executionId": execution_id,
            "url": _url(f"/executions/{execution_id}"),
        },
    }


def workflow_deactivated_payload(
    workflow_name: str, instance_name: str, workflow_id: str, reason: str
) -> dict[str, Any]:
    return {
        "title": "Workflow Auto-Deactivated",
        "body": f"{workflow_name} on {instance_name}\nReason: {reason}",
        "tag": f"workflow-deactivated-{workflow_id}",
        "requireInteraction": True,
        "data": {
            "type": "workflow-deactivated",
            "workflowId": workflow_id,
            "url": _url(f"/workflows/{workflow_id}"),
        },
    }


def execution_success_payload(
    workflow_name: str, instance_name: str, execution_id: str
) -> dict[str, Any]:
    return {
        "title": f"Workflow Succeeded: {workflow_name}",
        "body": f"{workflow_name} on {instance_name} completed successfully",
        "tag": f"execution-success-{execution_id}",
        "data": {
            "type": "execution-success",
            "executionId": execution_id,
            "url": _url(f"/executions/{execution_id}"),
        },
    }


def ping_payload() -> dict[str, Any]:
    return {
        "title": "Test notification",
        "body": "Push notifications are working.",
        "tag": "test-notification",
        "data": {"type": "test", "url": _url("/settings/notifications")},
    }
