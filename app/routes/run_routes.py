from __future__ import annotations

"""Run lifecycle routes."""

import logging
from datetime import timedelta
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query, status

from app.deps import get_settings, get_supervisor, to_http_error
from app.schemas import (
    ApprovalResponse,
    CheckpointHistoryResponse,
    RunCreateRequest,
    RunResponse,
    serialize_approval,
    serialize_checkpoint,
    serialize_run,
)
from engine.errors import WorkflowError

logger = logging.getLogger("workflow.routes.run")

router = APIRouter(prefix="/runs", tags=["run"])


@router.post(
    "",
    response_model=RunResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def start_run(
    payload: RunCreateRequest,
    supervisor=Depends(get_supervisor),
) -> RunResponse:
    """Start a workflow run; returns once it suspends, completes or fails."""

    try:
        run = await supervisor.start_run(payload.kind, payload.company_id, payload.payload)
    except WorkflowError as exc:
        raise to_http_error(exc) from exc

    logger.info("Run %s started via API (%s)", run.id, payload.kind)
    return serialize_run(run)


@router.get("/stale", response_model=List[RunResponse])
async def list_stale_runs(
    days: Optional[int] = Query(None, ge=1, description="Idle days before a waiting run is stale"),
    supervisor=Depends(get_supervisor),
    settings=Depends(get_settings),
) -> List[RunResponse]:
    """Runs parked on an approval for too long."""

    runs = await supervisor.stale_runs(timedelta(days=days or settings.stale_after_days))
    return [serialize_run(run) for run in runs]


@router.get("/{run_id}", response_model=RunResponse)
async def get_run(
    run_id: str = Path(..., description="Run identifier"),
    supervisor=Depends(get_supervisor),
) -> RunResponse:
    try:
        run = await supervisor.get_run(run_id)
    except WorkflowError as exc:
        raise to_http_error(exc) from exc
    return serialize_run(run)


@router.get("/{run_id}/approval", response_model=ApprovalResponse)
async def get_pending_approval(
    run_id: str = Path(..., description="Run identifier"),
    supervisor=Depends(get_supervisor),
) -> ApprovalResponse:
    """The run's pending approval, read from the approval record."""

    try:
        approval = await supervisor.pending_approval(run_id)
    except WorkflowError as exc:
        raise to_http_error(exc) from exc
    if approval is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Run '{run_id}' has no pending approval.",
        )
    return serialize_approval(approval)


@router.get("/{run_id}/checkpoints", response_model=CheckpointHistoryResponse)
async def get_checkpoints(
    run_id: str = Path(..., description="Run identifier"),
    limit: int = Query(50, ge=1, le=500),
    supervisor=Depends(get_supervisor),
) -> CheckpointHistoryResponse:
    """Checkpoint audit trail of the run's thread, newest first."""

    try:
        run = await supervisor.get_run(run_id)
        history = await supervisor.checkpoint_history(run_id, limit=limit)
    except WorkflowError as exc:
        raise to_http_error(exc) from exc
    return CheckpointHistoryResponse(
        run_id=run.id,
        thread_id=run.thread_id,
        checkpoints=[serialize_checkpoint(item) for item in history],
    )
