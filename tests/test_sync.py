from datetime import datetime, timedelta, timezone

import pytest

from conftest import OTHER_USER_ID, USER_ID
from n8n_monitor.core import crypto, sync
from n8n_monitor.core.client import RemoteExecution
from n8n_monitor.core.errors import NotFoundError, UpstreamError, ValidationError
from n8n_monitor.core.locks import InstanceLocks
from n8n_monitor.db import repository
from n8n_monitor.db.tables import Execution, Workflow


def remote_execution(**fields):
    return RemoteExecution.model_validate({"id": "1", **fields})


# ── Status normalization ────────────────────────────────────────────────────


def test_normalize_status_explicit_wins():
    assert sync.normalize_status(remote_execution(status="error", finished=True)) == "error"
    assert sync.normalize_status(remote_execution(status="Success")) == "success"
    assert sync.normalize_status(remote_execution(status="canceled")) == "canceled"


def test_normalize_status_aliases():
    assert sync.normalize_status(remote_execution(status="crashed")) == "error"
    assert sync.normalize_status(remote_execution(status="failed")) == "error"
    assert sync.normalize_status(remote_execution(status="new")) == "waiting"


def test_normalize_status_derived_from_flags():
    assert sync.normalize_status(remote_execution(finished=True)) == "success"
    assert (
        sync.normalize_status(
            remote_execution(finished=False, stoppedAt="2026-01-01T12:00:05Z")
        )
        == "error"
    )
    assert sync.normalize_status(remote_execution(finished=False)) == "running"


@pytest.mark.parametrize("limit", [0, 201, -5])
def test_validate_limit_rejects_out_of_range(limit):
    with pytest.raises(ValidationError):
        sync.validate_limit(limit)


def test_validate_limit_accepts_bounds():
    assert sync.validate_limit(1) == 1
    assert sync.validate_limit(200) == 200


# ── Workflow sync ───────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_workflow_sync_creates_rows(db, instance, remote):
    remote.add_workflow("wf_1", "Orders", active=True)
    remote.add_workflow("wf_2", "Invoices", active=False)

    synced = await sync.sync_workflows(db, instance, remote)

    assert sorted(w.remote_id for w in synced) == ["wf_1", "wf_2"]
    assert db.query(Workflow).count() == 2
    assert all(w.last_sync is not None for w in synced)


@pytest.mark.asyncio
async def test_workflow_resync_keeps_identity(db, instance, remote):
    remote.add_workflow("wf_1", "Orders", active=True)
    first = (await sync.sync_workflows(db, instance, remote))[0]
    first_id, first_sync = first.id, first.last_sync

    remote.workflows["wf_1"]["active"] = False
    second = (await sync.sync_workflows(db, instance, remote))[0]

    assert second.id == first_id
    assert second.name == "Orders"
    assert second.is_active is False
    assert second.last_sync >= first_sync
    assert db.query(Workflow).count() == 1


@pytest.mark.asyncio
async def test_workflow_missing_remotely_is_kept(db, instance, remote):
    remote.add_workflow("wf_1")
    remote.add_workflow("wf_2")
    await sync.sync_workflows(db, instance, remote)

    del remote.workflows["wf_2"]
    await sync.sync_workflows(db, instance, remote)

    assert db.query(Workflow).count() == 2


@pytest.mark.asyncio
async def test_workflow_sync_failure_writes_nothing(db, instance, remote):
    remote.add_workflow("wf_1")
    remote.fail_workflows = True

    with pytest.raises(UpstreamError):
        await sync.sync_workflows(db, instance, remote)
    assert db.query(Workflow).count() == 0


# ── Execution sync ──────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_execution_sync_maps_workflow(db, instance, remote):
    remote.add_workflow("wf_1")
    await sync.sync_workflows(db, instance, remote)
    remote.add_execution("100", "success")

    result = await sync.sync_executions(db, instance, remote, limit=10)

    assert (result.created, result.updated, result.total) == (1, 0, 1)
    execution = db.query(Execution).one()
    workflow = db.query(Workflow).one()
    assert execution.workflow_id == workflow.id
    assert execution.status == "success"
    assert execution.started_at.tzinfo is not None
    assert '"workflowId": "wf_1"' in execution.data


@pytest.mark.asyncio
async def test_execution_for_unknown_workflow_has_no_link(db, instance, remote):
    remote.add_execution("100", "error", workflow_id="wf_unknown")

    await sync.sync_executions(db, instance, remote)

    execution = db.query(Execution).one()
    assert execution.workflow_id is None
    assert execution.remote_id == "100"


@pytest.mark.asyncio
async def test_execution_resync_updates_in_place(db, instance, remote):
    remote.add_workflow("wf_1")
    await sync.sync_workflows(db, instance, remote)
    remote.add_execution("100", "running", finished=False, stoppedAt=None)

    await sync.sync_executions(db, instance, remote)
    row_id = db.query(Execution).one().id

    remote.executions[0].update(status="success", finished=True)
    result = await sync.sync_executions(db, instance, remote)

    assert (result.created, result.updated) == (0, 1)
    execution = db.query(Execution).one()
    assert execution.id == row_id
    assert execution.status == "success"


@pytest.mark.asyncio
async def test_same_remote_id_on_two_instances(db, instance, remote):
    other = repository.create_instance(
        db, USER_ID, "Staging", "https://staging.example.com", crypto.encrypt("k")
    )
    remote.add_execution("100", "success")

    await sync.sync_executions(db, instance, remote)
    await sync.sync_executions(db, other, remote)

    rows = db.query(Execution).filter(Execution.remote_id == "100").all()
    assert len(rows) == 2
    assert {r.instance_id for r in rows} == {instance.id, other.id}


@pytest.mark.asyncio
async def test_last_execution_never_moves_backwards(db, instance, remote):
    remote.add_workflow("wf_1")
    await sync.sync_workflows(db, instance, remote)
    remote.add_execution("200", "success")
    await sync.sync_executions(db, instance, remote)
    workflow = db.query(Workflow).one()
    latest = workflow.last_execution
    assert latest is not None

    older = datetime(2025, 6, 1, tzinfo=timezone.utc)
    remote.add_execution(
        "100",
        "success",
        startedAt=older.isoformat(),
        stoppedAt=(older + timedelta(seconds=3)).isoformat(),
    )
    await sync.sync_executions(db, instance, remote)

    db.refresh(workflow)
    assert workflow.last_execution == latest


@pytest.mark.asyncio
async def test_execution_sync_rejects_bad_limit_before_fetching(db, instance, remote):
    remote.fail_executions = True
    with pytest.raises(ValidationError):
        await sync.sync_executions(db, instance, remote, limit=0)


@pytest.mark.asyncio
async def test_execution_sync_failure_writes_nothing(db, instance, remote):
    remote.add_execution("100", "success")
    remote.fail_executions = True

    with pytest.raises(UpstreamError):
        await sync.sync_executions(db, instance, remote)
    assert db.query(Execution).count() == 0


@pytest.mark.asyncio
async def test_reconcile_stamps_last_check_even_on_execution_failure(
    db, instance, remote
):
    remote.add_workflow("wf_1")
    remote.fail_executions = True
    instance.last_check = datetime(2020, 1, 1, tzinfo=timezone.utc)
    db.commit()

    with pytest.raises(UpstreamError):
        await sync.reconcile_instance(db, instance, remote)

    db.refresh(instance)
    assert instance.last_check > datetime(2020, 1, 1, tzinfo=timezone.utc)
    assert db.query(Workflow).count() == 1


# ── Entry points ────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_sync_instance_workflows_checks_ownership(db, instance, remote):
    with pytest.raises(NotFoundError):
        await sync.sync_instance_workflows(
            db, OTHER_USER_ID, instance.id, InstanceLocks(), lambda i: remote
        )


@pytest.mark.asyncio
async def test_sync_instance_executions_scoped_to_workflow(db, instance, remote):
    remote.add_workflow("wf_1")
    remote.add_workflow("wf_2")
    await sync.sync_workflows(db, instance, remote)
    remote.add_execution("100", "success", workflow_id="wf_1")
    remote.add_execution("101", "success", workflow_id="wf_2")
    wf_2 = repository.get_workflow_by_remote_id(db, instance.id, "wf_2")

    result = await sync.sync_instance_executions(
        db,
        USER_ID,
        instance.id,
        InstanceLocks(),
        limit=50,
        workflow_id=wf_2.id,
        client_factory=lambda i: remote,
    )

    assert result.created == 1
    assert db.query(Execution).one().remote_id == "101"


@pytest.mark.asyncio
async def test_sync_instance_executions_rejects_foreign_workflow(db, instance, remote):
    other = repository.create_instance(
        db, USER_ID, "Staging", "https://staging.example.com", crypto.encrypt("k")
    )
    foreign, _ = repository.upsert_workflow(db, other.id, "wf_9", "Other", True)

    with pytest.raises(NotFoundError):
        await sync.sync_instance_executions(
            db,
            USER_ID,
            instance.id,
            InstanceLocks(),
            workflow_id=foreign.id,
            client_factory=lambda i: remote,
        )


@pytest.mark.asyncio
async def test_toggle_workflow_flips_remote_then_local(db, instance, remote):
    remote.add_workflow("wf_1", active=True)
    workflow = (await sync.sync_workflows(db, instance, remote))[0]
    locks = InstanceLocks()

    assert await sync.toggle_workflow(db, USER_ID, workflow.id, locks, lambda i: remote) is False
    assert remote.deactivate_calls == ["wf_1"]
    db.refresh(workflow)
    assert workflow.is_active is False

    assert await sync.toggle_workflow(db, USER_ID, workflow.id, locks, lambda i: remote) is True
    assert remote.activate_calls == ["wf_1"]


@pytest.mark.asyncio
async def test_toggle_workflow_remote_failure_leaves_local_state(db, instance, remote):
    remote.add_workflow("wf_1", active=True)
    workflow = (await sync.sync_workflows(db, instance, remote))[0]
    remote.fail_deactivate = True

    with pytest.raises(UpstreamError):
        await sync.toggle_workflow(db, USER_ID, workflow.id, InstanceLocks(), lambda i: remote)

    db.refresh(workflow)
    assert workflow.is_active is True


@pytest.mark.asyncio
async def test_toggle_workflow_not_found_for_other_user(db, instance, remote):
    remote.add_workflow("wf_1")
    workflow = (await sync.sync_workflows(db, instance, remote))[0]

    with pytest.raises(NotFoundError):
        await sync.toggle_workflow(
            db, OTHER_USER_ID, workflow.id, InstanceLocks(), lambda i: remote
        )


@pytest.mark.asyncio
async def test_refresh_execution_rereads_remote_state(db, instance, remote):
    remote.add_workflow("wf_1")
    await sync.sync_workflows(db, instance, remote)
    remote.add_execution("100", "running", finished=False, stoppedAt=None)
    await sync.sync_executions(db, instance, remote)
    execution = db.query(Execution).one()

    remote.executions[0].update(status="error", stoppedAt="2026-01-01T12:05:00Z")
    refreshed = await sync.refresh_execution(
        db, USER_ID, execution.id, InstanceLocks(), lambda i: remote
    )

    assert refreshed.id == execution.id
    assert refreshed.status == "error"
    assert db.query(Execution).count() == 1


@pytest.mark.asyncio
async def test_refresh_execution_other_user_not_found(db, instance, remote):
    remote.add_execution("100", "success")
    await sync.sync_executions(db, instance, remote)
    execution = db.query(Execution).one()

    with pytest.raises(NotFoundError):
        await sync.refresh_execution(
            db, OTHER_USER_ID, execution.id, InstanceLocks(), lambda i: remote
        )
