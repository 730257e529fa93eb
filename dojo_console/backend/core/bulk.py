"""Bulk user operations.

Provides:
- ``BulkOperationRequest`` / ``BulkOperationResult`` / ``BulkOperationProgress``
- ``validate_request``: whole-request checks, raised before any side effect
- ``UserLockRegistry``: serializes mutations of the same user across operations
- ``BulkOperationExecutor``: runs one request with a bounded worker pool,
  per-item isolation, audit recording and cancellation
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, Optional, Set, Tuple, Union

from dojo_console.backend.core.audit import AuditAction, AuditEntry, AuditRecorder
from dojo_console.backend.core.errors import (
    E,
    DownstreamError,
    EngineError,
    NotFound,
    OperationAlreadyStarted,
    OperationNotFinished,
    OwnerRoleImmutable,
    PermissionDenied,
    RoleNotFound,
    SystemUnavailable,
    TooManyTargets,
    ValidationError,
)
from dojo_console.backend.core.logger import log_bulk_event
from dojo_console.backend.core.rbac import Actor, AuthorizationEngine, BulkOperationKind
from dojo_console.backend.core.roles import RoleHierarchyStore
from dojo_console.backend.core.state import (
    CancelRequested,
    DispatchFinished,
    ExecutionState,
    Finalized,
    ItemFailed,
    ItemFailure,
    ItemSucceeded,
    OperationState,
    SystemFailure,
    Validated,
    initial_state,
    reduce,
)
from dojo_console.backend.core.user_store import TargetUser, UserStore

logger = logging.getLogger(__name__)

_AUDIT_ACTIONS = {
    BulkOperationKind.ACTIVATE: AuditAction.ACTIVATE,
    BulkOperationKind.DEACTIVATE: AuditAction.DEACTIVATE,
    BulkOperationKind.ROLE_CHANGE: AuditAction.ROLE_CHANGE,
    BulkOperationKind.DELETE: AuditAction.DELETE,
}


# ── Request / result types ──────────────────────────────────────

@dataclass(frozen=True)
class BulkOperationRequest:
    kind: BulkOperationKind
    target_user_ids: Tuple[str, ...]
    target_role: Optional[str] = None
    reason: Optional[str] = None

    @classmethod
    def create(
        cls,
        kind: Union[BulkOperationKind, str],
        target_user_ids: Iterable[str],
        target_role: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> "BulkOperationRequest":
        """Build a request, dropping duplicate ids but keeping first-seen order."""
        ids = tuple(dict.fromkeys(str(uid) for uid in target_user_ids))
        return cls(
            kind=BulkOperationKind(kind),
            target_user_ids=ids,
            target_role=target_role or None,
            reason=reason,
        )


@dataclass(frozen=True)
class BulkOperationResult:
    operation_id: str
    kind: BulkOperationKind
    state: OperationState
    total: int
    successful: Tuple[str, ...]
    failed: Tuple[ItemFailure, ...]
    aborted: bool = False

    @property
    def successful_count(self) -> int:
        return len(self.successful)

    @property
    def failed_count(self) -> int:
        return len(self.failed)

    @property
    def success_rate(self) -> float:
        if not self.total:
            return 0.0
        return self.successful_count / self.total * 100

    @classmethod
    def from_state(
        cls, operation_id: str, kind: BulkOperationKind, state: ExecutionState
    ) -> "BulkOperationResult":
        return cls(
            operation_id=operation_id,
            kind=kind,
            state=state.phase,
            total=state.total,
            successful=state.successful,
            failed=state.failed,
            aborted=state.aborted,
        )


@dataclass(frozen=True)
class BulkOperationProgress:
    operation_id: str
    state: OperationState
    completed: int
    total: int
    errors: Tuple[ItemFailure, ...] = ()


@dataclass(frozen=True)
class BulkLimits:
    max_batch_size: int = 100
    workers: int = 5
    item_timeout: float = 10.0
    audit_timeout: float = 5.0
    reason_max_length: int = 500

    @classmethod
    def from_settings(cls, settings) -> "BulkLimits":
        return cls(
            max_batch_size=settings.bulk_max_batch_size,
            workers=settings.bulk_workers,
            item_timeout=settings.bulk_item_timeout,
            audit_timeout=settings.audit_timeout,
            reason_max_length=settings.bulk_reason_max_length,
        )


# ── Validation ──────────────────────────────────────────────────

def validate_request(
    engine: AuthorizationEngine,
    actor: Actor,
    request: BulkOperationRequest,
    limits: BulkLimits,
) -> None:
    """Reject a request as a whole. Never touches the user store."""
    count = len(request.target_user_ids)
    if count == 0:
        raise ValidationError("At least one target user is required")
    if count > limits.max_batch_size:
        raise TooManyTargets(
            f"{count} target users exceed the limit of {limits.max_batch_size}"
        )

    if request.reason is not None and len(request.reason) > limits.reason_max_length:
        raise ValidationError(
            f"Reason must be at most {limits.reason_max_length} characters"
        )

    if request.kind == BulkOperationKind.ROLE_CHANGE:
        if not request.target_role:
            raise ValidationError("target_role is required for role changes")
        if request.target_role not in engine.hierarchy.roles:
            raise ValidationError(f"Unknown target role: {request.target_role}")
        if engine.is_owner(request.target_role):
            raise OwnerRoleImmutable("The owner role cannot be assigned")
        if not engine.can_manage_role(actor.role, request.target_role):
            raise PermissionDenied(
                f"Role {actor.role.name!r} cannot assign role {request.target_role!r}"
            )
    elif request.target_role is not None:
        raise ValidationError("target_role is only accepted for role changes")

    if request.kind == BulkOperationKind.DELETE and not (request.reason or "").strip():
        raise ValidationError("A reason is required to delete users")

    if not engine.can_perform_operation(actor.role, request.kind):
        raise PermissionDenied(
            f"Role {actor.role.name!r} is not allowed to {request.kind.value} users"
        )


# ── Per-user locks ──────────────────────────────────────────────

class UserLockRegistry:
    """One asyncio.Lock per user id, dropped when nobody holds or waits on it."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._refs: Dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, user_id: str):
        lock = self._locks.get(user_id)
        if lock is None:
            lock = self._locks[user_id] = asyncio.Lock()
        self._refs[user_id] = self._refs.get(user_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._refs[user_id] -= 1
            if not self._refs[user_id]:
                del self._refs[user_id]
                del self._locks[user_id]


# ── Executor ────────────────────────────────────────────────────

class BulkOperationExecutor:
    """Runs one bulk request exactly once."""

    def __init__(
        self,
        operation_id: str,
        actor: Actor,
        request: BulkOperationRequest,
        roles: RoleHierarchyStore,
        user_store: UserStore,
        audit: AuditRecorder,
        locks: Optional[UserLockRegistry] = None,
        limits: Optional[BulkLimits] = None,
    ):
        self.operation_id = operation_id
        self.actor = actor
        self.request = request
        self.roles = roles
        self.user_store = user_store
        self.audit = audit
        self.locks = locks if locks is not None else UserLockRegistry()
        self.limits = limits if limits is not None else BulkLimits()
        self._state = initial_state(len(request.target_user_ids))
        self._started = False
        self._dispatched: Set[str] = set()
        self._in_flight: Set[str] = set()

    @property
    def state(self) -> ExecutionState:
        return self._state

    @property
    def is_finished(self) -> bool:
        return self._state.is_terminal

    def _apply(self, event) -> None:
        self._state = reduce(self._state, event)

    # ── Lifecycle ───────────────────────────────────────────────

    def validate(self) -> None:
        """Whole-request validation; moves the operation to DISPATCHING."""
        if self._state.phase != OperationState.VALIDATING:
            return
        engine = AuthorizationEngine(self.roles.snapshot())
        validate_request(engine, self.actor, self.request, self.limits)
        self._apply(Validated())

    async def run(self) -> BulkOperationResult:
        if self._started:
            raise OperationAlreadyStarted(f"Operation {self.operation_id} already started")
        self._started = True
        self.validate()

        pending = iter(self.request.target_user_ids)
        workers = min(self.limits.workers, self._state.total)
        try:
            await asyncio.gather(*[self._worker(pending) for _ in range(workers)])
        except asyncio.CancelledError:
            # Task torn down (shutdown): account for everything not folded
            if not self._state.cancel_requested:
                self._apply(CancelRequested())
            self._finish()
            raise
        self._finish()
        return self.result()

    def cancel(self) -> bool:
        """Stop dispatching new items. In-flight items finish; nothing is rolled back.

        Returns False once every item has been dispatched, since nothing is
        left to cancel.
        """
        if self._state.phase not in (OperationState.VALIDATING, OperationState.DISPATCHING):
            return False
        if len(self._dispatched) == self._state.total:
            return False
        if self._state.cancel_requested:
            return True
        self._apply(CancelRequested())
        log_bulk_event(
            "bulk.cancel_requested", self.operation_id,
            completed=self._state.completed, total=self._state.total,
        )
        return True

    def finalize_interrupted(self) -> None:
        """Finalize an operation whose task was cancelled before ``run()`` started."""
        if self._state.is_terminal:
            return
        self._started = True
        if not self._state.cancel_requested:
            self._apply(CancelRequested())
        self._finish()

    def progress(self) -> BulkOperationProgress:
        return BulkOperationProgress(
            operation_id=self.operation_id,
            state=self._state.phase,
            completed=self._state.completed,
            total=self._state.total,
            errors=self._state.failed,
        )

    def result(self) -> BulkOperationResult:
        if not self._state.is_terminal:
            raise OperationNotFinished(f"Operation {self.operation_id} is still running")
        return BulkOperationResult.from_state(self.operation_id, self.request.kind, self._state)

    def _finish(self) -> None:
        remaining = tuple(
            uid for uid in self.request.target_user_ids
            if uid not in self._dispatched or uid in self._in_flight
        )
        self._apply(DispatchFinished(remaining=remaining))
        self._apply(Finalized())
        state = self._state
        log_bulk_event(
            "bulk.finished", self.operation_id,
            level=logging.WARNING if state.aborted else logging.INFO,
            kind=self.request.kind.value,
            state=state.phase.value,
            successful=len(state.successful),
            failed=len(state.failed),
            aborted=state.aborted,
        )

    # ── Dispatch ────────────────────────────────────────────────

    def _should_stop(self) -> bool:
        return self._state.cancel_requested or self._state.aborted

    async def _worker(self, pending: Iterator[str]) -> None:
        while not self._should_stop():
            user_id = next(pending, None)
            if user_id is None:
                return
            self._dispatched.add(user_id)
            self._in_flight.add(user_id)
            async with self.locks.hold(user_id):
                failure = await self._process_item(user_id)
            self._in_flight.discard(user_id)
            if failure is None:
                self._apply(ItemSucceeded(user_id))
            else:
                self._apply(ItemFailed(failure))
            log_bulk_event(
                "bulk.item", self.operation_id, level=logging.DEBUG,
                kind=self.request.kind.value, user_id=user_id,
                outcome="ok" if failure is None else failure.code.value,
            )

    async def _call(self, coro):
        """Await a user store call under the per-item timeout."""
        try:
            return await asyncio.wait_for(coro, timeout=self.limits.item_timeout)
        except asyncio.TimeoutError:
            raise DownstreamError(f"User store call timed out after {self.limits.item_timeout}s")

    async def _process_item(self, user_id: str) -> Optional[ItemFailure]:
        """Load, authorize, mutate and audit one target. Never raises."""
        kind = self.request.kind
        target: Optional[TargetUser] = None
        failure: Optional[ItemFailure] = None
        try:
            target = await self._call(self.user_store.get_user(user_id))
            self._authorize(user_id, target)
            await self._mutate(target)
        except EngineError as e:
            failure = ItemFailure(user_id=user_id, code=e.code, detail=e.detail)
            if isinstance(e, SystemUnavailable) and not self._state.aborted:
                logger.error("Bulk %s aborted on %s: %s", self.operation_id, user_id, e.detail)
                self._apply(SystemFailure(detail=e.detail))
        except Exception as e:
            logger.exception("Unexpected error in bulk %s for user %s", kind.value, user_id)
            failure = ItemFailure(user_id=user_id, code=E.DOWNSTREAM_ERROR, detail=str(e))

        await self._record_audit(user_id, target, failure)
        return failure

    def _authorize(self, user_id: str, target: TargetUser) -> None:
        # Re-resolve against the current snapshot; a refresh may have happened mid-operation
        snapshot = self.roles.snapshot()
        engine = AuthorizationEngine(snapshot)
        try:
            actor = Actor(id=self.actor.id, role=snapshot.get_role(self.actor.role.name))
        except RoleNotFound:
            raise PermissionDenied(f"Role {self.actor.role.name!r} no longer exists")
        try:
            target_role = snapshot.get_role(target.role)
        except RoleNotFound:
            raise NotFound(f"User {user_id} has unknown role {target.role!r}")

        requested = self.request.target_role
        engine.check_act_on_user(actor, user_id, target_role, self.request.kind, requested)
        if requested is not None and not engine.can_manage_role(actor.role, requested):
            raise PermissionDenied(f"Role {actor.role.name!r} cannot assign role {requested!r}")

    async def _mutate(self, target: TargetUser) -> None:
        kind = self.request.kind
        if kind == BulkOperationKind.ACTIVATE:
            if not target.active:
                await self._call(self.user_store.activate(target.id))
        elif kind == BulkOperationKind.DEACTIVATE:
            if target.active:
                await self._call(self.user_store.deactivate(target.id))
        elif kind == BulkOperationKind.ROLE_CHANGE:
            if target.role != self.request.target_role:
                await self._call(
                    self.user_store.set_role(target.id, self.request.target_role, self.request.reason)
                )
        elif kind == BulkOperationKind.DELETE:
            await self._call(self.user_store.delete(target.id, self.request.reason))

    def _audit_values(self, target: Optional[TargetUser]) -> Tuple[Optional[str], Optional[str]]:
        kind = self.request.kind
        if kind == BulkOperationKind.ROLE_CHANGE:
            return (target.role if target else None), self.request.target_role
        old = None
        if target is not None:
            old = "active" if target.active else "inactive"
        new = {
            BulkOperationKind.ACTIVATE: "active",
            BulkOperationKind.DEACTIVATE: "inactive",
            BulkOperationKind.DELETE: "deleted",
        }[kind]
        return old, new

    async def _record_audit(
        self,
        user_id: str,
        target: Optional[TargetUser],
        failure: Optional[ItemFailure],
    ) -> None:
        old_value, new_value = self._audit_values(target)
        entry = AuditEntry(
            action=_AUDIT_ACTIONS[self.request.kind],
            actor_id=self.actor.id,
            target_user_id=user_id,
            old_value=old_value,
            new_value=new_value,
            reason=self.request.reason,
            success=failure is None,
            error=None if failure is None else failure.code.value,
        )
        try:
            await asyncio.wait_for(self.audit.append(entry), timeout=self.limits.audit_timeout)
        except asyncio.TimeoutError:
            logger.warning("Audit write timed out for %s on %s", entry.action.value, user_id)
        except Exception as e:
            logger.warning("Audit write failed for %s on %s: %s", entry.action.value, user_id, e)

