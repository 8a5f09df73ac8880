from __future__ import annotations

"""Database tables for runs, approvals and the meeting data the workflow touches."""

from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from sqlalchemy import JSON, Column, DateTime, UniqueConstraint
from sqlmodel import Field, SQLModel

from engine.checkpoint import utcnow


def new_id() -> str:
    return str(uuid4())


class RunKind(str, Enum):
    MEETING_POST = "MEETING_POST"


class RunStatus(str, Enum):
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    WAITING_APPROVAL = "WAITING_APPROVAL"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class ApprovalType(str, Enum):
    CREATE_TASKS = "CREATE_TASKS"


class ApprovalStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class Decision(str, Enum):
    APPROVE = "APPROVE"
    REJECT = "REJECT"


class MeetingState(str, Enum):
    SCHEDULED = "SCHEDULED"
    LIVE = "LIVE"
    PROCESSING = "PROCESSING"
    READY = "READY"


class AgentRun(SQLModel, table=True):
    """Coarse status record for one workflow invocation."""

    __tablename__ = "agent_runs"

    id: str = Field(default_factory=new_id, primary_key=True)
    company_id: str = Field(index=True)
    kind: str
    status: RunStatus = Field(default=RunStatus.QUEUED)
    thread_id: str = Field(index=True)
    input_ref: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    output: Optional[Any] = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))


class Approval(SQLModel, table=True):
    """A pending or decided human sign-off on a proposed change."""

    __tablename__ = "approvals"

    id: str = Field(default_factory=new_id, primary_key=True)
    company_id: str = Field(index=True)
    run_id: str = Field(foreign_key="agent_runs.id", index=True)
    type: ApprovalType
    payload: dict = Field(sa_column=Column(JSON, nullable=False))
    status: ApprovalStatus = Field(default=ApprovalStatus.PENDING, index=True)
    reviewer_id: Optional[str] = None
    feedback: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
    decided_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))


class Meeting(SQLModel, table=True):
    __tablename__ = "meetings"

    id: str = Field(default_factory=new_id, primary_key=True)
    company_id: str = Field(index=True)
    title: str
    starts_at: datetime = Field(sa_type=DateTime(timezone=True))
    ends_at: datetime = Field(sa_type=DateTime(timezone=True))
    state: MeetingState = Field(default=MeetingState.SCHEDULED)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))


class Transcript(SQLModel, table=True):
    __tablename__ = "transcripts"

    id: str = Field(default_factory=new_id, primary_key=True)
    meeting_id: str = Field(foreign_key="meetings.id", index=True)
    provider: str = "manual"
    language: Optional[str] = None
    full_text: str
    segments: list = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))


class MeetingAsset(SQLModel, table=True):
    """Files and side-data captured during a meeting (recordings, bookmarks)."""

    __tablename__ = "meeting_assets"

    id: str = Field(default_factory=new_id, primary_key=True)
    meeting_id: str = Field(foreign_key="meetings.id", index=True)
    type: str
    storage_url: str = ""
    asset_metadata: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))


class Task(SQLModel, table=True):
    __tablename__ = "tasks"

    id: str = Field(default_factory=new_id, primary_key=True)
    company_id: str = Field(index=True)
    title: str
    description_md: str = ""
    status: str = "TODO"
    priority: str = "MEDIUM"
    owner_person_id: Optional[str] = None
    due_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    source: str = "MANUAL"
    created_by_person_id: str
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))


class MeetingOutput(SQLModel, table=True):
    """Minutes and extracted items; exactly one row per meeting."""

    __tablename__ = "meeting_outputs"
    __table_args__ = (UniqueConstraint("meeting_id", name="meeting_outputs_meeting_uq"),)

    id: str = Field(default_factory=new_id, primary_key=True)
    meeting_id: str = Field(foreign_key="meetings.id")
    minutes_md: str = ""
    decisions: list = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    action_items: list = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    risks: list = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))


__all__ = [
    "AgentRun",
    "Approval",
    "ApprovalStatus",
    "ApprovalType",
    "Decision",
    "Meeting",
    "MeetingAsset",
    "MeetingOutput",
    "MeetingState",
    "RunKind",
    "RunStatus",
    "Task",
    "Transcript",
    "new_id",
]
