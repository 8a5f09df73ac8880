from __future__ import annotations

"""Request and response schemas for the workflow API."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import Field

from app.models import AgentRun, Approval, RunKind
from app.scribe import CamelModel
from engine.checkpoint import CheckpointTuple


# Run Schemas ------------------------------------------------------------------


class RunCreateRequest(CamelModel):
    """Payload for POST /runs."""

    kind: str = RunKind.MEETING_POST.value
    company_id: str = Field(min_length=1)
    payload: Dict[str, Any] = Field(default_factory=dict)


class RunResponse(CamelModel):
    """Run record as exposed to clients."""

    run_id: str
    kind: str
    company_id: str
    status: str
    thread_id: str
    input_ref: Dict[str, Any] = Field(default_factory=dict)
    output: Any = None
    created_at: datetime
    updated_at: datetime


class CheckpointSchema(CamelModel):
    """One entry of a run's checkpoint audit trail."""

    checkpoint_id: str
    parent_checkpoint_id: Optional[str] = None
    source: str
    step: int
    node: Optional[str] = None
    next: Optional[str] = None
    interrupt: Any = None
    pending_writes: List[str] = Field(default_factory=list)
    created_at: datetime


class CheckpointHistoryResponse(CamelModel):
    run_id: str
    thread_id: str
    checkpoints: List[CheckpointSchema]


# Approval Schemas -------------------------------------------------------------


class ApprovalResponse(CamelModel):
    approval_id: str
    company_id: str
    run_id: str
    type: str
    payload: Dict[str, Any]
    status: str
    reviewer_id: Optional[str] = None
    feedback: Optional[str] = None
    created_at: datetime
    decided_at: Optional[datetime] = None


class DecisionRequest(CamelModel):
    """Payload for POST /approvals/{approval_id}/decide."""

    decision: str
    edited_payload: Optional[Dict[str, Any]] = None
    feedback: Optional[str] = None
    reviewer_person_id: Optional[str] = None


class DecisionResponse(CamelModel):
    approval_id: str
    run: RunResponse


# Meeting Schemas --------------------------------------------------------------


class FinalizeRequest(CamelModel):
    """Payload for POST /meetings/{meeting_id}/finalize."""

    company_id: str = Field(min_length=1)
    created_by_person_id: str = Field(min_length=1)


class FinalizeResponse(CamelModel):
    job_id: str
    meeting_id: str
    enqueued: bool = True


def _value(item: Any) -> Any:
    return getattr(item, "value", item)


def serialize_run(run: AgentRun) -> RunResponse:
    """Convert a run row to the API schema."""

    return RunResponse(
        run_id=run.id,
        kind=run.kind,
        company_id=run.company_id,
        status=_value(run.status),
        thread_id=run.thread_id,
        input_ref=run.input_ref or {},
        output=run.output,
        created_at=run.created_at,
        updated_at=run.updated_at,
    )


def serialize_approval(approval: Approval) -> ApprovalResponse:
    return ApprovalResponse(
        approval_id=approval.id,
        company_id=approval.company_id,
        run_id=approval.run_id,
        type=_value(approval.type),
        payload=approval.payload,
        status=_value(approval.status),
        reviewer_id=approval.reviewer_id,
        feedback=approval.feedback,
        created_at=approval.created_at,
        decided_at=approval.decided_at,
    )


def serialize_checkpoint(item: CheckpointTuple) -> CheckpointSchema:
    checkpoint = item.checkpoint
    metadata = checkpoint.metadata
    return CheckpointSchema(
        checkpoint_id=checkpoint.checkpoint_id,
        parent_checkpoint_id=checkpoint.parent_checkpoint_id,
        source=metadata.source,
        step=metadata.step,
        node=metadata.node,
        next=metadata.next,
        interrupt=metadata.interrupt,
        pending_writes=[pending.step_id for pending in item.pending_writes],
        created_at=checkpoint.created_at,
    )


__all__ = [
    "ApprovalResponse",
    "CheckpointHistoryResponse",
    "CheckpointSchema",
    "DecisionRequest",
    "DecisionResponse",
    "FinalizeRequest",
    "FinalizeResponse",
    "RunCreateRequest",
    "RunResponse",
    "serialize_approval",
    "serialize_checkpoint",
    "serialize_run",
]
