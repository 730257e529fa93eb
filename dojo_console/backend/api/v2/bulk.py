"""Bulk user operation API endpoints."""
import logging

from fastapi import APIRouter, Depends, Request

from dojo_console.backend.api.deps import get_bulk_manager, get_current_actor, get_role_store
from dojo_console.backend.core.errors import EngineError, to_http_error
from dojo_console.backend.core.manager import BulkOperationManager
from dojo_console.backend.core.rate_limit import RATE_BULK, RATE_MUTATIONS, RATE_READ, limiter
from dojo_console.backend.core.rbac import Actor, AuthorizationEngine
from dojo_console.backend.core.roles import RoleHierarchyStore
from dojo_console.backend.schemas.bulk import (
    BulkCancelResponse,
    BulkOperationAccepted,
    BulkOperationCreate,
    BulkOperationProgressResponse,
    BulkOperationResultResponse,
)

logger = logging.getLogger(__name__)
router = APIRouter()


def _check_access(
    manager: BulkOperationManager,
    store: RoleHierarchyStore,
    actor: Actor,
    operation_id: str,
) -> None:
    """Only the submitter, or a bulk operator at or above their level, may see an operation."""
    submitter = manager.get_submitter(operation_id)
    AuthorizationEngine(store.snapshot()).check_operation_access(actor, submitter)


@router.post("/bulk", response_model=BulkOperationAccepted, status_code=202)
@limiter.limit(RATE_BULK)
async def submit_bulk_operation(
    request: Request,
    body: BulkOperationCreate,
    actor: Actor = Depends(get_current_actor),
    manager: BulkOperationManager = Depends(get_bulk_manager),
):
    """Start a bulk operation. Poll progress and result by the returned id."""
    try:
        operation_id = await manager.submit(actor, body.to_request())
    except EngineError as e:
        logger.info(
            "Bulk %s rejected for %s: %s", body.kind.value, actor.id, e.code.value,
        )
        raise to_http_error(e)

    progress = manager.get_progress(operation_id)
    return BulkOperationAccepted(
        operation_id=operation_id,
        state=progress.state,
        total=progress.total,
    )


@router.get("/bulk/{operation_id}/progress", response_model=BulkOperationProgressResponse)
@limiter.limit(RATE_READ)
async def get_bulk_progress(
    request: Request,
    operation_id: str,
    actor: Actor = Depends(get_current_actor),
    manager: BulkOperationManager = Depends(get_bulk_manager),
    store: RoleHierarchyStore = Depends(get_role_store),
):
    try:
        _check_access(manager, store, actor, operation_id)
        progress = manager.get_progress(operation_id)
    except EngineError as e:
        raise to_http_error(e)
    return BulkOperationProgressResponse.from_progress(progress)


@router.get("/bulk/{operation_id}/result", response_model=BulkOperationResultResponse)
@limiter.limit(RATE_READ)
async def get_bulk_result(
    request: Request,
    operation_id: str,
    actor: Actor = Depends(get_current_actor),
    manager: BulkOperationManager = Depends(get_bulk_manager),
    store: RoleHierarchyStore = Depends(get_role_store),
):
    """Final result; 409 while the operation is still running."""
    try:
        _check_access(manager, store, actor, operation_id)
        result = manager.get_result(operation_id)
    except EngineError as e:
        raise to_http_error(e)
    return BulkOperationResultResponse.from_result(result)


@router.post("/bulk/{operation_id}/cancel", response_model=BulkCancelResponse)
@limiter.limit(RATE_MUTATIONS)
async def cancel_bulk_operation(
    request: Request,
    operation_id: str,
    actor: Actor = Depends(get_current_actor),
    manager: BulkOperationManager = Depends(get_bulk_manager),
    store: RoleHierarchyStore = Depends(get_role_store),
):
    """Stop dispatching new items. Items already applied are not rolled back."""
    try:
        _check_access(manager, store, actor, operation_id)
        cancelled = manager.cancel(operation_id)
        progress = manager.get_progress(operation_id)
    except EngineError as e:
        raise to_http_error(e)
    if cancelled:
        logger.info("Bulk operation %s cancelled by %s", operation_id, actor.id)
    return BulkCancelResponse(
        operation_id=operation_id,
        cancelled=cancelled,
        state=progress.state,
    )
