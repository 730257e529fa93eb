"""Tests for BulkOperationManager: background runs, polling, retention, shutdown."""
import asyncio

import pytest

from dojo_console.backend.core.bulk import BulkLimits, BulkOperationRequest
from dojo_console.backend.core.errors import (
    E,
    OperationNotFinished,
    OperationNotFound,
    OwnerRoleImmutable,
    PermissionDenied,
)
from dojo_console.backend.core.manager import BulkOperationManager
from dojo_console.backend.core.rbac import BulkOperationKind as K
from dojo_console.backend.core.state import OperationState


def serial_manager(role_store, user_store, audit, **kwargs):
    return BulkOperationManager(
        roles=role_store,
        user_store=user_store,
        audit=audit,
        limits=BulkLimits(workers=1, item_timeout=1.0, audit_timeout=1.0),
        **kwargs,
    )


async def wait_until(predicate, attempts=100):
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0.01)
    raise AssertionError("condition not reached")


class TestSubmit:
    @pytest.mark.asyncio
    async def test_submit_and_wait(self, bulk_manager, admin, user_store):
        req = BulkOperationRequest.create(K.DEACTIVATE, ["u1", "u2"])
        operation_id = await bulk_manager.submit(admin, req)

        result = await bulk_manager.wait(operation_id)
        assert result.operation_id == operation_id
        assert result.state == OperationState.COMPLETED
        assert result.successful_count == 2
        assert user_store.users["u1"].active is False

        progress = bulk_manager.get_progress(operation_id)
        assert (progress.completed, progress.total) == (2, 2)
        assert bulk_manager.get_result(operation_id) == result

    @pytest.mark.asyncio
    async def test_execute(self, bulk_manager, owner):
        req = BulkOperationRequest.create(K.ROLE_CHANGE, ["admin1"], target_role="moderator")
        result = await bulk_manager.execute(owner, req)
        assert result.successful == ("admin1",)

    @pytest.mark.asyncio
    async def test_operation_ids_are_unique(self, bulk_manager, admin):
        req = BulkOperationRequest.create(K.ACTIVATE, ["u1"])
        first = await bulk_manager.submit(admin, req)
        second = await bulk_manager.submit(admin, req)
        assert first != second
        await bulk_manager.wait(first)
        await bulk_manager.wait(second)

    @pytest.mark.asyncio
    async def test_validation_failure_is_raised_and_not_tracked(self, bulk_manager, admin, audit):
        req = BulkOperationRequest.create(K.ROLE_CHANGE, ["u1"], target_role="owner")
        with pytest.raises(OwnerRoleImmutable):
            await bulk_manager.submit(admin, req)
        assert len(bulk_manager) == 0
        assert audit.entries == []

    @pytest.mark.asyncio
    async def test_permission_failure(self, bulk_manager, moderator):
        req = BulkOperationRequest.create(K.DELETE, ["u1"], reason="spam")
        with pytest.raises(PermissionDenied):
            await bulk_manager.submit(moderator, req)


class TestPolling:
    @pytest.mark.asyncio
    async def test_result_not_ready(self, role_store, user_store, audit, admin):
        manager = serial_manager(role_store, user_store, audit)
        gate = asyncio.Event()
        user_store.gates["u1"] = gate
        operation_id = await manager.submit(admin, BulkOperationRequest.create(K.DEACTIVATE, ["u1"]))

        with pytest.raises(OperationNotFinished):
            manager.get_result(operation_id)
        assert manager.running_count == 1

        gate.set()
        result = await manager.wait(operation_id)
        assert result.successful == ("u1",)
        assert manager.running_count == 0

    @pytest.mark.asyncio
    async def test_unknown_operation(self, bulk_manager):
        with pytest.raises(OperationNotFound):
            bulk_manager.get_progress("nope")
        with pytest.raises(OperationNotFound):
            bulk_manager.get_result("nope")
        with pytest.raises(OperationNotFound):
            bulk_manager.cancel("nope")
        with pytest.raises(OperationNotFound):
            await bulk_manager.wait("nope")


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_running_operation(self, role_store, user_store, audit, admin):
        manager = serial_manager(role_store, user_store, audit)
        gate = asyncio.Event()
        user_store.gates["u2"] = gate
        req = BulkOperationRequest.create(K.DEACTIVATE, ["u1", "u2", "u3", "u4"])
        operation_id = await manager.submit(admin, req)

        await wait_until(lambda: "u2" in user_store.in_progress)
        assert manager.cancel(operation_id) is True
        gate.set()
        result = await manager.wait(operation_id)

        assert result.state == OperationState.CANCELLED
        assert result.successful == ("u1", "u2")
        assert {f.user_id for f in result.failed} == {"u3", "u4"}
        assert all(f.code == E.CANCELLED for f in result.failed)

    @pytest.mark.asyncio
    async def test_cancel_finished_operation(self, bulk_manager, admin):
        operation_id = await bulk_manager.submit(admin, BulkOperationRequest.create(K.ACTIVATE, ["u1"]))
        await bulk_manager.wait(operation_id)
        assert bulk_manager.cancel(operation_id) is False
        assert bulk_manager.get_result(operation_id).state == OperationState.COMPLETED


class TestRetention:
    @pytest.mark.asyncio
    async def test_oldest_finished_evicted(self, role_store, user_store, audit, admin):
        manager = BulkOperationManager(
            roles=role_store, user_store=user_store, audit=audit, max_retained=2,
        )
        ids = []
        for _ in range(4):
            operation_id = await manager.submit(admin, BulkOperationRequest.create(K.ACTIVATE, ["u1"]))
            await manager.wait(operation_id)
            ids.append(operation_id)
        await asyncio.sleep(0)

        assert len(manager) == 2
        for evicted in ids[:2]:
            with pytest.raises(OperationNotFound):
                manager.get_result(evicted)
        assert manager.get_result(ids[-1]).state == OperationState.COMPLETED

    @pytest.mark.asyncio
    async def test_running_operations_never_evicted(self, role_store, user_store, audit, admin):
        manager = BulkOperationManager(
            roles=role_store, user_store=user_store, audit=audit, max_retained=0,
        )
        gate = asyncio.Event()
        user_store.gates["u1"] = gate
        running = await manager.submit(admin, BulkOperationRequest.create(K.DEACTIVATE, ["u1"]))
        done = await manager.submit(admin, BulkOperationRequest.create(K.ACTIVATE, ["u2"]))
        await wait_until(lambda: manager.running_count == 1)

        manager.get_progress(running)
        gate.set()
        await manager.wait(running)
        with pytest.raises(OperationNotFound):
            manager.get_progress(done)


class TestShutdown:
    @pytest.mark.asyncio
    async def test_shutdown_cancels_running(self, role_store, user_store, audit, admin):
        manager = serial_manager(role_store, user_store, audit)
        user_store.gates["u2"] = asyncio.Event()  # never set
        req = BulkOperationRequest.create(K.DEACTIVATE, ["u1", "u2", "u3"])
        operation_id = await manager.submit(admin, req)
        await wait_until(lambda: "u2" in user_store.in_progress)

        await manager.shutdown()

        assert manager.running_count == 0
        result = manager.get_result(operation_id)
        assert result.state == OperationState.CANCELLED
        assert result.successful == ("u1",)
        assert {f.user_id: f.code for f in result.failed} == {
            "u2": E.CANCELLED,
            "u3": E.CANCELLED,
        }
        assert user_store.users["u3"].active is True

    @pytest.mark.asyncio
    async def test_shutdown_idle(self, bulk_manager):
        await bulk_manager.shutdown()
        assert bulk_manager.running_count == 0


class TestSharedLocks:

    @pytest.mark.asyncio
    async def test_same_user_serialized_across_submissions(self, bulk_manager, admin, user_store):
        user_store.delay = 0.02
        promote = await bulk_manager.submit(
            admin, BulkOperationRequest.create(K.ROLE_CHANGE, ["u1"], target_role="moderator"),
        )
        deactivate = await bulk_manager.submit(admin, BulkOperationRequest.create(K.DEACTIVATE, ["u1"]))
        await bulk_manager.wait(promote)
        await bulk_manager.wait(deactivate)

        assert user_store.overlaps == 0
        assert len(user_store.mutations) == 2
        assert len(bulk_manager.locks) == 0

    @pytest.mark.asyncio
    async def test_executors_share_manager_registry(self, bulk_manager, admin):
        operation_id = await bulk_manager.submit(admin, BulkOperationRequest.create(K.ACTIVATE, ["u1"]))
        tracked = bulk_manager._operations[operation_id]
        assert tracked.executor.locks is bulk_manager.locks
        assert bulk_manager.get_submitter(operation_id) == admin
        await bulk_manager.wait(operation_id)


class TestShutdownBeforeStart:

    @pytest.mark.asyncio
    async def test_submit_then_immediate_shutdown(self, bulk_manager, admin, audit, user_store):
        req = BulkOperationRequest.create(K.DEACTIVATE, ["u1", "u2"])
        operation_id = await bulk_manager.submit(admin, req)
        await bulk_manager.shutdown()

        progress = bulk_manager.get_progress(operation_id)
        assert progress.state == OperationState.CANCELLED
        assert (progress.completed, progress.total) == (2, 2)

        result = bulk_manager.get_result(operation_id)
        assert result.successful == ()
        assert [f.code for f in result.failed] == [E.CANCELLED, E.CANCELLED]
        assert audit.entries == []
        assert user_store.mutations == []
