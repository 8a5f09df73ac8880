from __future__ import annotations

"""Shared fixtures: a throwaway SQLite database, seeded meetings and a scripted scribe."""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from app.approvals import ApprovalGate
from app.db import Database
from app.meetings import MeetingStore
from app.models import Meeting
from app.runs import RunStore
from app.scribe import Bookmark, MeetingScribe, ScribeInput, ScribeOutput
from app.supervisor import RunSupervisor
from engine.executor import Executor
from engine.registry import WorkflowRegistry
from engine.sql_checkpoint import SQLCheckpointStore
from workflows.post_meeting import build_post_meeting_definition

COMPANY_ID = "company-1"
PERSON_ID = "person-1"
TRANSCRIPT = "We decided to ship X. Alice will own docs."


def docs_minutes() -> ScribeOutput:
    return ScribeOutput.model_validate(
        {
            "minutesMd": "# Minutes\n\n## Decisions\n- Ship X\n",
            "decisionsJson": [{"text": "Ship X"}],
            "actionItemsJson": [{"text": "Write docs", "owner": "alice"}],
            "risksJson": [],
            "createTasksProposal": {"tasks": [{"title": "Write docs", "ownerPersonId": "alice"}]},
        }
    )


class FakeScribe(MeetingScribe):
    """Returns a fixed output (or raises) and records every request."""

    def __init__(self, output: ScribeOutput | None = None) -> None:
        self.output = output or docs_minutes()
        self.error: Exception | None = None
        self.calls: list[ScribeInput] = []

    async def generate(self, request: ScribeInput) -> ScribeOutput:
        self.calls.append(request)
        if self.error is not None:
            raise self.error
        return self.output


@dataclass
class Services:
    db: Database
    meetings: MeetingStore
    approvals: ApprovalGate
    runs: RunStore
    executor: Executor
    registry: WorkflowRegistry
    supervisor: RunSupervisor


@pytest.fixture
def database_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'workflow.db'}"


@pytest_asyncio.fixture
async def db(database_url: str):
    database = Database(database_url)
    await database.init_db()
    yield database
    await database.dispose()


@pytest.fixture
def scribe() -> FakeScribe:
    return FakeScribe()


def build_services(db: Database, scribe: MeetingScribe) -> Services:
    meetings = MeetingStore(db)
    approvals = ApprovalGate(db)
    runs = RunStore(db)
    executor = Executor(SQLCheckpointStore(db.engine))
    registry = WorkflowRegistry()
    registry.register(
        build_post_meeting_definition(db=db, meetings=meetings, approvals=approvals, scribe=scribe)
    )
    return Services(
        db=db,
        meetings=meetings,
        approvals=approvals,
        runs=runs,
        executor=executor,
        registry=registry,
        supervisor=RunSupervisor(runs, approvals, executor, registry),
    )


@pytest.fixture
def services(db: Database, scribe: FakeScribe) -> Services:
    return build_services(db, scribe)


async def seed_meeting(meetings: MeetingStore, *, transcript: str | None = TRANSCRIPT) -> Meeting:
    starts = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)
    meeting = await meetings.create_meeting(
        company_id=COMPANY_ID,
        title="Weekly sync",
        starts_at=starts,
        ends_at=starts + timedelta(minutes=30),
    )
    if transcript is not None:
        await meetings.add_transcript(
            meeting.id,
            transcript,
            segments=[{"start": 0.0, "end": 4.2, "text": transcript}],
        )
        await meetings.add_bookmarks(meeting.id, [Bookmark(t=2.5, kind="Decision", note="ship X")])
    return meeting


@pytest_asyncio.fixture
async def meeting(services: Services) -> Meeting:
    return await seed_meeting(services.meetings)
