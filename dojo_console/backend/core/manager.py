"""Bulk operation manager: background execution, progress polling, retention."""
import asyncio
import logging
import uuid
from collections import OrderedDict
from dataclasses import dataclass
from functools import partial
from typing import Optional

from dojo_console.backend.core.audit import AuditRecorder
from dojo_console.backend.core.bulk import (
    BulkLimits,
    BulkOperationExecutor,
    BulkOperationProgress,
    BulkOperationRequest,
    BulkOperationResult,
    UserLockRegistry,
)
from dojo_console.backend.core.errors import OperationNotFound
from dojo_console.backend.core.logger import log_bulk_event
from dojo_console.backend.core.rbac import Actor
from dojo_console.backend.core.roles import RoleHierarchyStore
from dojo_console.backend.core.user_store import UserStore

logger = logging.getLogger(__name__)


@dataclass
class _TrackedOperation:
    executor: BulkOperationExecutor
    submitter: Actor
    task: "asyncio.Task[BulkOperationResult]"


class BulkOperationManager:
    """Owns every executor started by this process.

    Finished operations stay queryable until more than ``max_retained``
    have finished; the oldest finished ones are evicted first.
    """

    def __init__(
        self,
        roles: RoleHierarchyStore,
        user_store: UserStore,
        audit: AuditRecorder,
        limits: Optional[BulkLimits] = None,
        max_retained: int = 200,
    ):
        self.roles = roles
        self.user_store = user_store
        self.audit = audit
        self.limits = limits or BulkLimits()
        self.max_retained = max_retained
        self.locks = UserLockRegistry()
        self._operations: "OrderedDict[str, _TrackedOperation]" = OrderedDict()

    def _get(self, operation_id: str) -> _TrackedOperation:
        tracked = self._operations.get(operation_id)
        if tracked is None:
            raise OperationNotFound(f"Unknown bulk operation: {operation_id}")
        return tracked

    async def submit(self, actor: Actor, request: BulkOperationRequest) -> str:
        """Validate synchronously, then run in the background. Returns the operation id."""
        await self.roles.ensure_loaded()
        operation_id = uuid.uuid4().hex
        executor = BulkOperationExecutor(
            operation_id=operation_id,
            actor=actor,
            request=request,
            roles=self.roles,
            user_store=self.user_store,
            audit=self.audit,
            locks=self.locks,
            limits=self.limits,
        )
        executor.validate()

        task = asyncio.create_task(executor.run(), name=f"bulk-{operation_id}")
        task.add_done_callback(partial(self._on_done, operation_id))
        self._operations[operation_id] = _TrackedOperation(
            executor=executor, submitter=actor, task=task,
        )
        log_bulk_event(
            "bulk.submitted", operation_id,
            kind=request.kind.value,
            actor_id=actor.id,
            targets=len(request.target_user_ids),
        )
        self._prune()
        return operation_id

    async def execute(self, actor: Actor, request: BulkOperationRequest) -> BulkOperationResult:
        """Submit and wait for the final result."""
        operation_id = await self.submit(actor, request)
        return await self.wait(operation_id)

    async def wait(self, operation_id: str) -> BulkOperationResult:
        tracked = self._get(operation_id)
        # Shield so a cancelled waiter does not tear down the operation itself
        await asyncio.shield(tracked.task)
        return tracked.executor.result()

    def get_submitter(self, operation_id: str) -> Actor:
        return self._get(operation_id).submitter

    def get_progress(self, operation_id: str) -> BulkOperationProgress:
        return self._get(operation_id).executor.progress()

    def get_result(self, operation_id: str) -> BulkOperationResult:
        return self._get(operation_id).executor.result()

    def cancel(self, operation_id: str) -> bool:
        """Request cancellation; False when the operation already stopped dispatching."""
        return self._get(operation_id).executor.cancel()

    @property
    def running_count(self) -> int:
        return sum(1 for t in self._operations.values() if not t.task.done())

    def __len__(self) -> int:
        return len(self._operations)

    async def shutdown(self) -> None:
        """Cancel every running operation and wait for it to finalize."""
        tasks = [t.task for t in self._operations.values() if not t.task.done()]
        if not tasks:
            return
        logger.info("Cancelling %d running bulk operation(s)", len(tasks))
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    def _on_done(self, operation_id: str, task: asyncio.Task) -> None:
        if task.cancelled():
            logger.warning("Bulk operation %s was interrupted", operation_id)
            tracked = self._operations.get(operation_id)
            # Cancelled before its first step: run() never got to finalize
            if tracked is not None and not tracked.executor.is_finished:
                tracked.executor.finalize_interrupted()
        elif task.exception() is not None:
            logger.error(
                "Bulk operation %s crashed: %s", operation_id, task.exception(),
                exc_info=task.exception(),
            )
        self._prune()

    def _prune(self) -> None:
        finished = [oid for oid, t in self._operations.items() if t.task.done()]
        overflow = len(finished) - self.max_retained
        for oid in finished[:max(overflow, 0)]:
            del self._operations[oid]
            logger.debug("Evicted finished bulk operation %s", oid)

