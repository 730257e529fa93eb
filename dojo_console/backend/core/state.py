"""Bulk operation state machine.

A bulk operation moves through

    VALIDATING -> DISPATCHING -> AGGREGATING -> COMPLETED | CANCELLED

Every change goes through ``reduce(state, event)``, which returns a new
frozen ``ExecutionState`` or raises ``InvalidTransition``.
"""
from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, FrozenSet, Tuple, Union

from dojo_console.backend.core.errors import E, ErrorCode, InvalidTransition, default_message


class OperationState(str, Enum):
    VALIDATING = "validating"
    DISPATCHING = "dispatching"
    AGGREGATING = "aggregating"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


ALLOWED_TRANSITIONS: Dict[OperationState, FrozenSet[OperationState]] = {
    OperationState.VALIDATING: frozenset({OperationState.DISPATCHING}),
    OperationState.DISPATCHING: frozenset({OperationState.AGGREGATING}),
    OperationState.AGGREGATING: frozenset({OperationState.COMPLETED, OperationState.CANCELLED}),
    OperationState.COMPLETED: frozenset(),
    OperationState.CANCELLED: frozenset(),
}

TERMINAL_STATES = frozenset({OperationState.COMPLETED, OperationState.CANCELLED})


def can_transition(source: OperationState, target: OperationState) -> bool:
    return target in ALLOWED_TRANSITIONS.get(source, frozenset())


@dataclass(frozen=True)
class ItemFailure:
    user_id: str
    code: ErrorCode
    detail: str = ""


@dataclass(frozen=True)
class ExecutionState:
    phase: OperationState
    total: int
    successful: Tuple[str, ...] = ()
    failed: Tuple[ItemFailure, ...] = ()
    aborted: bool = False
    cancel_requested: bool = False

    @property
    def completed(self) -> int:
        return len(self.successful) + len(self.failed)

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_STATES


def initial_state(total: int) -> ExecutionState:
    return ExecutionState(phase=OperationState.VALIDATING, total=total)


# ── Events ──────────────────────────────────────────────────────

@dataclass(frozen=True)
class Validated:
    pass


@dataclass(frozen=True)
class ItemSucceeded:
    user_id: str


@dataclass(frozen=True)
class ItemFailed:
    failure: ItemFailure


@dataclass(frozen=True)
class CancelRequested:
    pass


@dataclass(frozen=True)
class SystemFailure:
    detail: str = ""


@dataclass(frozen=True)
class DispatchFinished:
    """All workers stopped; ``remaining`` lists the ids never dispatched."""

    remaining: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Finalized:
    pass


Event = Union[
    Validated, ItemSucceeded, ItemFailed, CancelRequested,
    SystemFailure, DispatchFinished, Finalized,
]


# ── Reducer ─────────────────────────────────────────────────────

def _move(state: ExecutionState, target: OperationState, **changes) -> ExecutionState:
    if not can_transition(state.phase, target):
        raise InvalidTransition(f"{state.phase.value} -> {target.value}")
    return replace(state, phase=target, **changes)


def _require(state: ExecutionState, phase: OperationState, event: Event) -> None:
    if state.phase != phase:
        raise InvalidTransition(
            f"{type(event).__name__} not allowed in phase {state.phase.value}"
        )


def _require_capacity(state: ExecutionState, event: Event, extra: int = 1) -> None:
    if state.completed + extra > state.total:
        raise InvalidTransition(
            f"{type(event).__name__} would exceed {state.total} items"
        )


def reduce(state: ExecutionState, event: Event) -> ExecutionState:
    """Apply one event and return the next state."""
    if isinstance(event, Validated):
        return _move(state, OperationState.DISPATCHING)

    if isinstance(event, ItemSucceeded):
        _require(state, OperationState.DISPATCHING, event)
        _require_capacity(state, event)
        return replace(state, successful=state.successful + (event.user_id,))

    if isinstance(event, ItemFailed):
        _require(state, OperationState.DISPATCHING, event)
        _require_capacity(state, event)
        return replace(state, failed=state.failed + (event.failure,))

    if isinstance(event, CancelRequested):
        if state.phase not in (OperationState.VALIDATING, OperationState.DISPATCHING):
            raise InvalidTransition(f"Cannot cancel in phase {state.phase.value}")
        return replace(state, cancel_requested=True)

    if isinstance(event, SystemFailure):
        _require(state, OperationState.DISPATCHING, event)
        return replace(state, aborted=True)

    if isinstance(event, DispatchFinished):
        _require(state, OperationState.DISPATCHING, event)
        if state.completed + len(event.remaining) != state.total:
            raise InvalidTransition(
                f"{state.completed} processed + {len(event.remaining)} remaining "
                f"!= {state.total} total"
            )
        code = E.SYSTEM_UNAVAILABLE if state.aborted else E.CANCELLED
        if event.remaining and not (state.aborted or state.cancel_requested):
            raise InvalidTransition("Items left undispatched without cancel or abort")
        filler = tuple(
            ItemFailure(user_id=uid, code=code, detail=default_message(code))
            for uid in event.remaining
        )
        return _move(state, OperationState.AGGREGATING, failed=state.failed + filler)

    if isinstance(event, Finalized):
        target = OperationState.CANCELLED if state.cancel_requested else OperationState.COMPLETED
        return _move(state, target)

    raise InvalidTransition(f"Unknown event: {event!r}")

