"""Post-meeting processing workflow.

Loads the meeting and its transcript, asks the scribe for minutes and a task
proposal, parks on a CREATE_TASKS approval, then applies the reviewer's
decision and stores the meeting output.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from pydantic import Field, ValidationError

from app.approvals import ApprovalGate
from app.db import Database
from app.meetings import MeetingStore
from app.models import ApprovalStatus, ApprovalType, Decision, MeetingState, RunKind
from app.scribe import Bookmark, CamelModel, CreateTasksPayload, MeetingScribe, ScribeInput, ScribeOutput
from engine.errors import AlreadyDecided, InvalidDecision
from engine.graph import Graph
from engine.node import build_node, build_suspend_node
from engine.registry import WorkflowDefinition
from engine.state import StatePatch, WorkflowState, replace_list

logger = logging.getLogger("workflow.post_meeting")

DECIDED_STATUS = {
    Decision.APPROVE: ApprovalStatus.APPROVED,
    Decision.REJECT: ApprovalStatus.REJECTED,
}


class PostMeetingInput(CamelModel):
    meeting_id: str = Field(min_length=1)
    created_by_person_id: str = Field(min_length=1)


class PostMeetingDecision(CamelModel):
    """Reviewer decision fed into ``wait_for_approval``."""

    decision: Decision
    edited_payload: Optional[CreateTasksPayload] = None
    feedback: Optional[str] = None
    reviewer_person_id: Optional[str] = None


class PostMeetingState(WorkflowState):
    run_id: str
    company_id: str
    meeting_id: str
    created_by_person_id: str
    meeting_title: Optional[str] = None
    transcript_full_text: str = ""
    transcript_segments: List[Any] = Field(default_factory=list)
    bookmarks: List[Dict[str, Any]] = Field(default_factory=list)
    scribe: Optional[Dict[str, Any]] = None
    approval_id: Optional[str] = None
    approval_payload: Optional[Dict[str, Any]] = None
    decision: Optional[Dict[str, Any]] = None
    approval_status: Optional[str] = None
    tasks_created: List[str] = Field(default_factory=list)
    meeting_output_id: Optional[str] = None

    reducers = {
        "transcript_segments": replace_list,
        "bookmarks": replace_list,
        "tasks_created": replace_list,
    }


def parse_decision_value(value: Any) -> PostMeetingDecision:
    try:
        return PostMeetingDecision.model_validate(value)
    except ValidationError as exc:
        raise InvalidDecision(f"Invalid decision: {exc}") from exc


class PostMeetingNodes:
    """Node callables bound to the stores and scribe they need."""

    def __init__(
        self,
        *,
        db: Database,
        meetings: MeetingStore,
        approvals: ApprovalGate,
        scribe: MeetingScribe,
    ) -> None:
        self.db = db
        self.meetings = meetings
        self.approvals = approvals
        self.scribe = scribe

    async def load_context(self, state: PostMeetingState) -> StatePatch:
        meeting = await self.meetings.get_meeting(state.company_id, state.meeting_id)
        await self.meetings.set_state(meeting.id, MeetingState.PROCESSING)
        return {"meeting_title": meeting.title}

    async def load_transcript(self, state: PostMeetingState) -> StatePatch:
        transcript = await self.meetings.latest_transcript(state.meeting_id)
        bookmarks = await self.meetings.latest_bookmarks(state.meeting_id)
        return {
            "transcript_full_text": transcript.full_text,
            "transcript_segments": transcript.segments,
            "bookmarks": [b.model_dump(by_alias=True) for b in bookmarks],
        }

    async def meeting_scribe_generate(self, state: PostMeetingState) -> StatePatch:
        request = ScribeInput(
            transcript_full_text=state.transcript_full_text,
            segments=state.transcript_segments,
            bookmarks=[Bookmark.model_validate(b) for b in state.bookmarks],
            company_id=state.company_id,
        )
        output = await self.scribe.generate(request)
        logger.info(
            "Scribe proposed %d task(s) for meeting %s",
            len(output.create_tasks_proposal.tasks),
            state.meeting_id,
        )
        return {"scribe": output.model_dump(mode="json", by_alias=True)}

    async def create_approval(self, state: PostMeetingState) -> StatePatch:
        # A re-run after a crash finds the approval it already inserted.
        approval = await self.approvals.for_run(state.run_id)
        if approval is None or approval.status != ApprovalStatus.PENDING:
            scribe = ScribeOutput.model_validate(state.scribe or {"minutesMd": ""})
            approval = await self.approvals.create(
                company_id=state.company_id,
                run_id=state.run_id,
                type=ApprovalType.CREATE_TASKS,
                payload=scribe.create_tasks_proposal.model_dump(by_alias=True),
            )
        return {"approval_id": approval.id, "approval_payload": approval.payload}

    def wait_for_approval(self, state: PostMeetingState) -> Dict[str, Any]:
        return {
            "approvalId": state.approval_id,
            "runId": state.run_id,
            "type": ApprovalType.CREATE_TASKS.value,
            "payload": state.approval_payload,
        }

    def receive_decision(self, state: PostMeetingState, decision: Any) -> StatePatch:
        value = parse_decision_value(decision)
        return {"decision": value.model_dump(mode="json", by_alias=True)}

    async def apply_approval_decision(self, state: PostMeetingState) -> StatePatch:
        """Record the decision and, on approval, create tasks in one transaction."""

        decision = parse_decision_value(state.decision)
        expected = DECIDED_STATUS[decision.decision]
        edited = (
            decision.edited_payload.model_dump(by_alias=True)
            if decision.edited_payload is not None
            else None
        )

        async with self.db.transaction() as session:
            approval = await self.approvals.get(state.approval_id, session=session)
            if approval.status == expected:
                logger.info("Approval %s already %s; nothing to apply", approval.id, expected.value)
                return {"approval_status": expected.value}
            if approval.status != ApprovalStatus.PENDING:
                raise AlreadyDecided(f"Approval '{approval.id}' is already {approval.status.value}.")

            effective = await self.approvals.decide(
                approval.id,
                decision.decision,
                reviewer_id=decision.reviewer_person_id,
                edited_payload=edited,
                feedback=decision.feedback,
                session=session,
            )
            task_ids: list[str] = []
            if decision.decision == Decision.APPROVE:
                task_ids = await self.meetings.create_tasks(
                    session,
                    company_id=state.company_id,
                    created_by_person_id=state.created_by_person_id,
                    tasks=CreateTasksPayload.model_validate(effective).tasks,
                )

        logger.info("Approval %s %s; %d task(s) created", approval.id, expected.value, len(task_ids))
        return {"approval_status": expected.value, "tasks_created": task_ids}

    async def persist_meeting_outputs(self, state: PostMeetingState) -> StatePatch:
        output = await self.meetings.upsert_output(
            state.meeting_id, ScribeOutput.model_validate(state.scribe or {"minutesMd": ""})
        )
        await self.meetings.set_state(state.meeting_id, MeetingState.READY)
        return {"meeting_output_id": output.id}


def build_post_meeting_graph(nodes: PostMeetingNodes) -> Graph:
    return Graph.sequence(
        id="meeting_post",
        name="Post-meeting processing",
        nodes=[
            build_node("load_context", func=nodes.load_context),
            build_node("load_transcript", func=nodes.load_transcript),
            build_node("meeting_scribe_generate", func=nodes.meeting_scribe_generate),
            build_node("create_approval", func=nodes.create_approval),
            build_suspend_node(
                "wait_for_approval",
                emit=nodes.wait_for_approval,
                on_resume=nodes.receive_decision,
                metadata={"approvalType": ApprovalType.CREATE_TASKS.value},
            ),
            build_node("apply_approval_decision", func=nodes.apply_approval_decision),
            build_node("persist_meeting_outputs", func=nodes.persist_meeting_outputs),
        ],
        state_model=PostMeetingState,
    )


def summarize_post_meeting(state: PostMeetingState) -> Dict[str, Any]:
    """Run output for a completed post-meeting thread."""

    return {
        "meetingId": state.meeting_id,
        "approvalId": state.approval_id,
        "approvalStatus": state.approval_status,
        "tasksCreated": state.tasks_created,
        "meetingOutputId": state.meeting_output_id,
    }


def build_post_meeting_definition(
    *,
    db: Database,
    meetings: MeetingStore,
    approvals: ApprovalGate,
    scribe: MeetingScribe,
) -> WorkflowDefinition:
    """Wire the post-meeting graph to its stores as a registrable definition."""

    nodes = PostMeetingNodes(db=db, meetings=meetings, approvals=approvals, scribe=scribe)

    def initial_state(run_id: str, company_id: str, inputs: PostMeetingInput) -> PostMeetingState:
        return PostMeetingState(
            run_id=run_id,
            company_id=company_id,
            meeting_id=inputs.meeting_id,
            created_by_person_id=inputs.created_by_person_id,
        )

    async def preflight(company_id: str, inputs: PostMeetingInput) -> None:
        await meetings.get_meeting(company_id, inputs.meeting_id)

    return WorkflowDefinition(
        kind=RunKind.MEETING_POST.value,
        graph=build_post_meeting_graph(nodes),
        input_model=PostMeetingInput,
        decision_model=PostMeetingDecision,
        initial_state=initial_state,
        preflight=preflight,
        summarize=summarize_post_meeting,
    )


__all__ = [
    "PostMeetingDecision",
    "PostMeetingInput",
    "PostMeetingNodes",
    "PostMeetingState",
    "build_post_meeting_definition",
    "build_post_meeting_graph",
    "summarize_post_meeting",
]
