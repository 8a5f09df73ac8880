from __future__ import annotations

"""Queue and meetingFinalize processor tests."""

import logging
from typing import get_type_hints

import pytest

from app.models import ApprovalStatus, RunStatus
from app.queue import (
    MEETING_FINALIZE,
    InMemoryJobQueue,
    Job,
    JobWorker,
    build_worker,
    meeting_finalize_processor,
)
from app.supervisor import RunSupervisor

from conftest import COMPANY_ID, PERSON_ID


def finalize_payload(meeting_id: str, company_id: str = COMPANY_ID) -> dict:
    return {"meetingId": meeting_id, "companyId": company_id, "createdByPersonId": PERSON_ID}


@pytest.mark.asyncio
async def test_inmemory_queue_basic() -> None:
    queue = InMemoryJobQueue()

    job = await queue.publish("test_topic", {"test": "data"})
    assert queue.pending("test_topic") == 1

    received = False
    async for message in queue.consume("test_topic"):
        assert message.id == job.id
        assert message.payload["test"] == "data"
        await queue.ack(message)
        received = True
        break

    assert received
    assert queue.pending("test_topic") == 0


@pytest.mark.asyncio
async def test_worker_isolates_processor_failures(caplog) -> None:
    queue = InMemoryJobQueue()
    handled: list[str] = []

    async def flaky(job: Job) -> None:
        if job.payload.get("fail"):
            raise RuntimeError("processor exploded")
        handled.append(job.id)

    worker = JobWorker(queue, {"work": flaky})
    await queue.publish("work", {"fail": True})
    ok = await queue.publish("work", {})

    with caplog.at_level(logging.ERROR, logger="workflow.queue"):
        assert await worker.drain("work") == 2

    assert handled == [ok.id]
    assert "processor exploded" in caplog.text


@pytest.mark.asyncio
async def test_meeting_finalize_starts_a_waiting_run(services, meeting) -> None:
    queue = InMemoryJobQueue()
    worker = build_worker(queue, services.supervisor)

    await queue.publish(MEETING_FINALIZE, finalize_payload(meeting.id))
    assert await worker.drain(MEETING_FINALIZE) == 1

    approvals = await services.approvals.list_for_company(COMPANY_ID, ApprovalStatus.PENDING)
    assert len(approvals) == 1
    run = await services.runs.get(approvals[0].run_id)
    assert run.status == RunStatus.WAITING_APPROVAL
    assert run.input_ref == {"meetingId": meeting.id, "createdByPersonId": PERSON_ID}


@pytest.mark.asyncio
async def test_meeting_finalize_skips_bad_jobs(services, meeting, caplog) -> None:
    queue = InMemoryJobQueue()
    worker = build_worker(queue, services.supervisor)

    await queue.publish(MEETING_FINALIZE, {"meetingId": meeting.id})
    await queue.publish(MEETING_FINALIZE, finalize_payload(meeting.id, company_id="other-company"))

    with caplog.at_level(logging.WARNING, logger="workflow.queue"):
        assert await worker.drain(MEETING_FINALIZE) == 2

    assert await services.approvals.list_for_company(COMPANY_ID) == []
    assert "invalid meetingFinalize payload" in caplog.text
    assert "skipping" in caplog.text


@pytest.mark.asyncio
async def test_duplicate_delivery_keeps_one_meeting_output(services, meeting) -> None:
    queue = InMemoryJobQueue()
    worker = build_worker(queue, services.supervisor)

    await queue.publish(MEETING_FINALIZE, finalize_payload(meeting.id))
    await queue.publish(MEETING_FINALIZE, finalize_payload(meeting.id))
    await worker.drain(MEETING_FINALIZE)

    pending = await services.approvals.list_for_company(COMPANY_ID, ApprovalStatus.PENDING)
    assert len(pending) == 2
    for approval in pending:
        await services.supervisor.decide(approval.id, "REJECT")

    assert await services.meetings.count_outputs(meeting.id) == 1


def test_worker_factories_take_a_run_supervisor() -> None:
    for factory in (build_worker, meeting_finalize_processor):
        hints = get_type_hints(factory, localns={"RunSupervisor": RunSupervisor})
        assert hints["supervisor"] is RunSupervisor
