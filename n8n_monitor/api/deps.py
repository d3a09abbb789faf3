from dataclasses import dataclass

from fastapi import Request

from n8n_monitor.core.client import InstanceClient, client_for
from n8n_monitor.core.locks import InstanceLocks
from n8n_monitor.core.monitor import FailureMonitor
from n8n_monitor.core.notifier import (
    EmailNotifier,
    NotificationDispatcher,
    PushTransport,
)


@dataclass
class Services:
    session_factory: object
    dispatcher: NotificationDispatcher
    monitor: FailureMonitor
    locks: InstanceLocks
    client_factory: object = client_for
    connect_factory: object = InstanceClient


def build_services(
    session_factory,
    push_transport: PushTransport | None = None,
    email: EmailNotifier | None = None,
    client_factory=client_for,
    connect_factory=InstanceClient,
) -> Services:
    dispatcher = NotificationDispatcher(session_factory, push_transport)
    monitor = FailureMonitor(
        dispatcher,
        email=email if email is not None else EmailNotifier(),
        client_factory=client_factory,
    )
    return Services(
        session_factory=session_factory,
        dispatcher=dispatcher,
        monitor=monitor,
        locks=InstanceLocks(),
        client_factory=client_factory,
        connect_factory=connect_factory,
    )


def get_services(request: Request) -> Services:
    return request.app.state.services
