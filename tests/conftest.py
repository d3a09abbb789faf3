import os
import tempfile
from datetime import datetime, timedelta, timezone

from cryptography.fernet import Fernet

os.environ.setdefault("N8N_MONITOR_ENCRYPTION_KEY", Fernet.generate_key().decode())
os.environ.setdefault("N8N_MONITOR_MONITOR_ENABLED", "false")
os.environ.setdefault(
    "N8N_MONITOR_DB_PATH", os.path.join(tempfile.gettempdir(), "n8n_monitor_test.db")
)

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

from n8n_monitor.api.deps import build_services  # noqa: E402
from n8n_monitor.core import crypto  # noqa: E402
from n8n_monitor.core.client import (  # noqa: E402
    ExecutionPage,
    RemoteExecution,
    RemoteWorkflow,
)
from n8n_monitor.core.errors import TransportGoneError, UpstreamError  # noqa: E402
from n8n_monitor.db import repository  # noqa: E402
from n8n_monitor.db import tables  # noqa: E402,F401
from n8n_monitor.db.database import Base, get_db  # noqa: E402
from n8n_monitor.main import app  # noqa: E402

USER_ID = "user-1"
OTHER_USER_ID = "user-2"

_T0 = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeRemote:
    """In-memory stand-in for one n8n instance's REST API."""

    def __init__(self):
        self.workflows: dict[str, dict] = {}
        self.executions: list[dict] = []
        self.deactivate_calls: list[str] = []
        self.activate_calls: list[str] = []
        self.connected = True
        self.fail_workflows = False
        self.fail_executions = False
        self.fail_deactivate = False
        self._clock = 0

    def add_workflow(self, remote_id, name="Workflow", active=True):
        self.workflows[remote_id] = {
            "id": remote_id,
            "name": name,
            "active": active,
            "nodes": [{"name": "Start", "type": "n8n-nodes-base.start"}],
            "connections": {},
        }

    def add_execution(self, remote_id, status, workflow_id="wf_1", **extra):
        self._clock += 1
        started = _T0 + timedelta(minutes=self._clock)
        execution = {
            "id": remote_id,
            "workflowId": workflow_id,
            "finished": status == "success",
            "mode": "trigger",
            "startedAt": started.isoformat().replace("+00:00", "Z"),
            "stoppedAt": (started + timedelta(seconds=5)).isoformat(),
            "status": status,
        }
        if status == "error":
            execution["data"] = {
                "resultData": {"error": {"message": f"{remote_id} blew up"}}
            }
        execution.update(extra)
        self.executions.append(execution)
        return execution

    async def test_connection(self):
        return self.connected

    async def list_workflows(self):
        if self.fail_workflows:
            raise UpstreamError("n8n API unreachable")
        return [RemoteWorkflow.model_validate(w) for w in self.workflows.values()]

    async def get_workflow(self, remote_id):
        return RemoteWorkflow.model_validate(self.workflows[remote_id])

    async def list_executions(self, workflow_id=None, limit=20, finished=None, status=None):
        if self.fail_executions:
            raise UpstreamError("n8n API error: 500")
        items = [
            e for e in self.executions
            if workflow_id is None or e.get("workflowId") == workflow_id
        ]
        # n8n lists newest first
        items = sorted(items, key=lambda e: e["startedAt"], reverse=True)[:limit]
        return ExecutionPage(
            data=[RemoteExecution.model_validate(e) for e in items], count=len(items)
        )

    async def get_execution(self, remote_id, include_data=True):
        execution = next(e for e in self.executions if e["id"] == remote_id)
        return RemoteExecution.model_validate(execution)

    async def activate_workflow(self, remote_id):
        self.activate_calls.append(remote_id)
        self.workflows[remote_id]["active"] = True
        return RemoteWorkflow.model_validate(self.workflows[remote_id])

    async def deactivate_workflow(self, remote_id):
        self.deactivate_calls.append(remote_id)
        if self.fail_deactivate:
            raise UpstreamError("n8n API error: 503", status_code=503)
        self.workflows[remote_id]["active"] = False
        return RemoteWorkflow.model_validate(self.workflows[remote_id])


class FakePushTransport:
    def __init__(self):
        self.sent: list[tuple[str, dict]] = []
        self.gone: set[str] = set()
        self.broken: set[str] = set()

    async def send(self, subscription, payload):
        if subscription.endpoint in self.gone:
            raise TransportGoneError(subscription.endpoint, 410)
        if subscription.endpoint in self.broken:
            raise UpstreamError("push service unavailable", status_code=503)
        self.sent.append((subscription.endpoint, payload))


@pytest.fixture()
def session_factory(tmp_path):
    """A sessionmaker bound to a fresh temporary database per test."""
    db_path = tmp_path / "test.db"
    engine = create_engine(
        f"sqlite:///{db_path}", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(bind=engine)
    engine.dispose()


@pytest.fixture()
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def remote():
    return FakeRemote()


@pytest.fixture()
def push():
    return FakePushTransport()


@pytest.fixture()
def services(session_factory, remote, push):
    return build_services(
        session_factory,
        push_transport=push,
        client_factory=lambda instance: remote,
        connect_factory=lambda base_url, api_key: remote,
    )


@pytest.fixture()
def instance(db):
    return repository.create_instance(
        db, USER_ID, "Production", "https://n8n.example.com", crypto.encrypt("secret")
    )


@pytest.fixture()
def client(session_factory, services):
    """Provide a TestClient wired to the temporary database and fakes."""

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as c:
        app.state.services = services
        yield c
    app.dependency_overrides.clear()
