"""Schemas for bulk operations."""
from typing import List, Optional

from pydantic import BaseModel, Field

from dojo_console.backend.core.bulk import (
    BulkOperationProgress,
    BulkOperationRequest,
    BulkOperationResult,
)
from dojo_console.backend.core.rbac import BulkOperationKind
from dojo_console.backend.core.state import ItemFailure, OperationState


class BulkOperationCreate(BaseModel):
    """Request to perform one operation on many users.

    Size and reason limits are enforced by the engine so that violations
    come back with a structured error code.
    """
    kind: BulkOperationKind
    user_ids: List[str] = Field(default_factory=list)
    target_role: Optional[str] = None
    reason: Optional[str] = None

    def to_request(self) -> BulkOperationRequest:
        return BulkOperationRequest.create(
            kind=self.kind,
            target_user_ids=self.user_ids,
            target_role=self.target_role,
            reason=self.reason,
        )


class BulkItemError(BaseModel):
    """One failed item within a bulk operation."""
    user_id: str
    code: str
    detail: str = ""

    @classmethod
    def from_failure(cls, failure: ItemFailure) -> "BulkItemError":
        return cls(user_id=failure.user_id, code=failure.code.value, detail=failure.detail)


class BulkOperationAccepted(BaseModel):
    operation_id: str
    state: OperationState
    total: int


class BulkOperationProgressResponse(BaseModel):
    operation_id: str
    state: OperationState
    completed: int
    total: int
    errors: List[BulkItemError] = []

    @classmethod
    def from_progress(cls, progress: BulkOperationProgress) -> "BulkOperationProgressResponse":
        return cls(
            operation_id=progress.operation_id,
            state=progress.state,
            completed=progress.completed,
            total=progress.total,
            errors=[BulkItemError.from_failure(f) for f in progress.errors],
        )


class BulkOperationResultResponse(BaseModel):
    """Final result of a bulk operation."""
    operation_id: str
    kind: BulkOperationKind
    state: OperationState
    total: int
    successful: List[str] = []
    failed: List[BulkItemError] = []
    successful_count: int
    failed_count: int
    success_rate: float
    aborted: bool = False

    @classmethod
    def from_result(cls, result: BulkOperationResult) -> "BulkOperationResultResponse":
        return cls(
            operation_id=result.operation_id,
            kind=result.kind,
            state=result.state,
            total=result.total,
            successful=list(result.successful),
            failed=[BulkItemError.from_failure(f) for f in result.failed],
            successful_count=result.successful_count,
            failed_count=result.failed_count,
            success_rate=round(result.success_rate, 2),
            aborted=result.aborted,
        )


class BulkCancelResponse(BaseModel):
    operation_id: str
    cancelled: bool
    state: OperationState
