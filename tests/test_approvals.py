from __future__ import annotations

"""Tests for the approval gate."""

import pytest

from app.approvals import validate_payload
from app.models import ApprovalStatus, ApprovalType, Decision, RunKind
from engine.errors import AlreadyDecided, InvalidDecision, NotFound

from conftest import COMPANY_ID

PROPOSAL = {"tasks": [{"title": "Write docs", "ownerPersonId": "alice"}]}


async def create_pending(services):
    run = await services.runs.create(
        kind=RunKind.MEETING_POST.value,
        company_id=COMPANY_ID,
        thread_id="thread-1",
        input_ref={"meetingId": "m-1"},
    )
    return await services.approvals.create(
        company_id=COMPANY_ID,
        run_id=run.id,
        type=ApprovalType.CREATE_TASKS,
        payload=PROPOSAL,
    )


def test_validate_payload_normalizes_and_rejects() -> None:
    assert validate_payload(ApprovalType.CREATE_TASKS, PROPOSAL) == {
        "tasks": [{"title": "Write docs", "descriptionMd": "", "ownerPersonId": "alice"}]
    }
    with pytest.raises(InvalidDecision):
        validate_payload(ApprovalType.CREATE_TASKS, {"tasks": [{"title": ""}]})


@pytest.mark.asyncio
async def test_create_is_pending(services) -> None:
    approval = await create_pending(services)

    stored = await services.approvals.require_pending(approval.id)
    assert stored.status == ApprovalStatus.PENDING
    assert stored.payload["tasks"][0]["title"] == "Write docs"
    assert stored.decided_at is None


@pytest.mark.asyncio
async def test_get_unknown_approval(services) -> None:
    with pytest.raises(NotFound):
        await services.approvals.get("missing")


@pytest.mark.asyncio
async def test_approve_with_edited_payload_stores_effective_payload(services) -> None:
    approval = await create_pending(services)
    edited = {"tasks": [{"title": "Write docs"}, {"title": "Announce release", "priority": "HIGH"}]}

    effective = await services.approvals.decide(
        approval.id, Decision.APPROVE, reviewer_id="reviewer-1", edited_payload=edited
    )

    assert [task["title"] for task in effective["tasks"]] == ["Write docs", "Announce release"]
    stored = await services.approvals.get(approval.id)
    assert stored.status == ApprovalStatus.APPROVED
    assert stored.payload == effective
    assert stored.reviewer_id == "reviewer-1"
    assert stored.decided_at is not None


@pytest.mark.asyncio
async def test_reject_keeps_proposal_and_feedback(services) -> None:
    approval = await create_pending(services)

    await services.approvals.decide(approval.id, "REJECT", feedback="not ready")

    stored = await services.approvals.get(approval.id)
    assert stored.status == ApprovalStatus.REJECTED
    assert stored.feedback == "not ready"
    assert stored.payload["tasks"][0]["title"] == "Write docs"


@pytest.mark.asyncio
async def test_second_decision_is_refused(services) -> None:
    approval = await create_pending(services)
    await services.approvals.decide(approval.id, Decision.APPROVE)

    with pytest.raises(AlreadyDecided):
        await services.approvals.decide(approval.id, Decision.REJECT, feedback="changed my mind")
    with pytest.raises(AlreadyDecided):
        await services.approvals.require_pending(approval.id)

    stored = await services.approvals.get(approval.id)
    assert stored.status == ApprovalStatus.APPROVED
    assert stored.feedback is None


@pytest.mark.asyncio
async def test_invalid_decisions_leave_approval_pending(services) -> None:
    approval = await create_pending(services)

    with pytest.raises(InvalidDecision):
        await services.approvals.decide(approval.id, "MAYBE")
    with pytest.raises(InvalidDecision):
        await services.approvals.decide(approval.id, Decision.APPROVE, edited_payload={"tasks": "nope"})

    assert (await services.approvals.get(approval.id)).status == ApprovalStatus.PENDING


@pytest.mark.asyncio
async def test_list_for_company_filters_by_status(services) -> None:
    first = await create_pending(services)
    second = await create_pending(services)
    await services.approvals.decide(first.id, Decision.REJECT)

    pending = await services.approvals.list_for_company(COMPANY_ID, ApprovalStatus.PENDING)
    everything = await services.approvals.list_for_company(COMPANY_ID)

    assert [a.id for a in pending] == [second.id]
    assert {a.id for a in everything} == {first.id, second.id}
    assert await services.approvals.list_for_company("other-company") == []
