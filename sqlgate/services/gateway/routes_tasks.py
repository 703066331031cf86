"""
Task review routes.

Task lifecycle over HTTP:
  GET  /api/tasks                 → list (auto-expires stale pending approvals)
  GET  /api/tasks/{id}            → detail with progress and results
  POST /api/tasks/{id}/approve    → pending_approval → approved
  POST /api/tasks/{id}/reject     → pending_approval → rejected
  POST /api/tasks/{id}/cancel     → any non-terminal → cancelled
  POST /api/tasks/{id}/run        → approved / failed → running → completed | failed

404 unknown task, 409 stale or terminal state, 422 rejected input,
503 backend unavailable.
"""

import asyncio
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from sqlgate.services.gateway.components import Components
from sqlgate.services.shared.auth import get_caller
from sqlgate.services.shared.database import get_db
from sqlgate.services.shared.errors import (
    ContractMismatch, GatewayError, ResilienceExhausted, StaleTaskState, TaskNotFound, ValidationFailure,
)
from sqlgate.services.shared.models import TaskStatus
from sqlgate.services.shared.schemas import DatabaseTaskOut, TaskReviewRequest

router = APIRouter()

_STATUS_CODES = (
    (TaskNotFound,        404),
    (StaleTaskState,      409),
    (ValidationFailure,   422),
    (ContractMismatch,    422),
    (ResilienceExhausted, 503),
)


def get_components(request: Request) -> Components:
    return request.app.state.components


def to_http(exc: GatewayError) -> HTTPException:
    for kind, status in _STATUS_CODES:
        if isinstance(exc, kind):
            return HTTPException(status_code=status, detail=exc.safe_message)
    return HTTPException(status_code=500, detail=f"Internal error ({exc.correlation_id})")


# ── Routes ─────────────────────────────────────────────────────────────────────

@router.get("/tasks", response_model=list[DatabaseTaskOut])
def list_tasks(
    status:     Optional[TaskStatus] = None,
    database:   Optional[str]        = None,
    created_by: Optional[str]        = None,
    limit:      int                  = Query(default=100, ge=1, le=500),
    components: Components = Depends(get_components),
    db=Depends(get_db),
):
    """List tasks, newest first. Expires stale pending approvals before returning."""
    rows = components.workflow.list_tasks(
        db, status=status, database=database, created_by=created_by, limit=limit,
    )
    return [DatabaseTaskOut.model_validate(r) for r in rows]


@router.get("/tasks/{task_id}", response_model=DatabaseTaskOut)
def get_task(task_id: str, components: Components = Depends(get_components), db=Depends(get_db)):
    try:
        task = components.workflow.get(db, task_id)
    except GatewayError as exc:
        raise to_http(exc) from exc
    return DatabaseTaskOut.model_validate(task)


@router.post("/tasks/{task_id}/approve", response_model=DatabaseTaskOut)
def approve_task(
    task_id: str,
    review: TaskReviewRequest,
    components: Components = Depends(get_components),
    db=Depends(get_db),
):
    """Approve a pending task. Returns 409 if it is no longer pending or the approval window expired."""
    try:
        task = components.workflow.approve(db, task_id, review.reviewed_by, review.comment)
    except GatewayError as exc:
        raise to_http(exc) from exc
    return DatabaseTaskOut.model_validate(task)


@router.post("/tasks/{task_id}/reject", response_model=DatabaseTaskOut)
def reject_task(
    task_id: str,
    review: TaskReviewRequest,
    components: Components = Depends(get_components),
    db=Depends(get_db),
):
    try:
        task = components.workflow.reject(db, task_id, review.reviewed_by, review.comment)
    except GatewayError as exc:
        raise to_http(exc) from exc
    return DatabaseTaskOut.model_validate(task)


@router.post("/tasks/{task_id}/cancel", response_model=DatabaseTaskOut)
def cancel_task(
    task_id: str,
    reason: Optional[str] = None,
    caller: str = Depends(get_caller),
    components: Components = Depends(get_components),
    db=Depends(get_db),
):
    try:
        task = components.workflow.cancel(db, task_id, caller, reason)
    except GatewayError as exc:
        raise to_http(exc) from exc
    return DatabaseTaskOut.model_validate(task)


@router.post("/tasks/{task_id}/run", response_model=DatabaseTaskOut)
async def run_task(
    task_id: str,
    caller: str = Depends(get_caller),
    components: Components = Depends(get_components),
    db=Depends(get_db),
):
    """
    Execute an approved task (or retry a failed one) through the resilience wrapper.
    The task row reflects the outcome even when the response is an error.
    """
    try:
        await components.workflow.run(db, task_id, caller)
    except GatewayError as exc:
        raise to_http(exc) from exc

    def load() -> DatabaseTaskOut:
        return DatabaseTaskOut.model_validate(components.workflow.get(db, task_id))

    return await asyncio.to_thread(load)
