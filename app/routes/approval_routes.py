from __future__ import annotations

"""Approval inbox and decision routes."""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query, status

from app.deps import get_approval_gate, get_supervisor, to_http_error
from app.models import ApprovalStatus
from app.schemas import ApprovalResponse, DecisionRequest, DecisionResponse, serialize_approval, serialize_run
from engine.errors import WorkflowError

logger = logging.getLogger("workflow.routes.approval")

router = APIRouter(prefix="/approvals", tags=["approval"])


@router.get("", response_model=List[ApprovalResponse])
async def list_approvals(
    company_id: str = Query(..., alias="companyId"),
    approval_status: Optional[str] = Query(None, alias="status"),
    approvals=Depends(get_approval_gate),
) -> List[ApprovalResponse]:
    status_filter = None
    if approval_status is not None:
        try:
            status_filter = ApprovalStatus(approval_status)
        except ValueError as exc:
            raise HTTPException(
                status_code=422,
                detail=f"Unknown approval status '{approval_status}'.",
            ) from exc
    rows = await approvals.list_for_company(company_id, status_filter)
    return [serialize_approval(row) for row in rows]


@router.post(
    "/{approval_id}/decide",
    response_model=DecisionResponse,
    status_code=status.HTTP_200_OK,
)
async def decide(
    payload: DecisionRequest,
    approval_id: str = Path(..., description="Approval identifier"),
    supervisor=Depends(get_supervisor),
) -> DecisionResponse:
    """Record a reviewer decision and resume the waiting run."""

    try:
        run = await supervisor.decide(
            approval_id,
            payload.decision,
            reviewer_id=payload.reviewer_person_id,
            edited_payload=payload.edited_payload,
            feedback=payload.feedback,
        )
    except WorkflowError as exc:
        raise to_http_error(exc) from exc

    logger.info("Approval %s decided (%s); run %s", approval_id, payload.decision, run.id)
    return DecisionResponse(approval_id=approval_id, run=serialize_run(run))
