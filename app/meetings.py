from __future__ import annotations

"""Meeting data access used by the post-meeting workflow."""

import logging
from datetime import datetime, timezone
from typing import Any, Iterable, Optional, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.db import Database
from app.models import Meeting, MeetingAsset, MeetingOutput, MeetingState, Task, Transcript
from app.scribe import Bookmark, ProposedTask, ScribeOutput
from engine.checkpoint import utcnow
from engine.errors import NotFound, PersistenceFailure

logger = logging.getLogger("workflow.meetings")

BOOKMARKS_ASSET = "BOOKMARKS"


def _parse_due(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.warning("Ignoring unparsable due date %r", value)
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


class MeetingStore:
    """Reads meeting inputs and writes meeting outputs and tasks."""

    def __init__(self, db: Database) -> None:
        self._db = db

    # ------------------------------------------------------------------
    # Seeding (meeting capture lives outside the workflow)
    async def create_meeting(
        self,
        *,
        company_id: str,
        title: str,
        starts_at: datetime,
        ends_at: datetime,
    ) -> Meeting:
        meeting = Meeting(company_id=company_id, title=title, starts_at=starts_at, ends_at=ends_at)
        async with self._db.transaction() as session:
            session.add(meeting)
        return meeting

    async def add_transcript(
        self,
        meeting_id: str,
        full_text: str,
        *,
        segments: Sequence[Any] = (),
        provider: str = "manual",
        language: Optional[str] = None,
    ) -> Transcript:
        transcript = Transcript(
            meeting_id=meeting_id,
            full_text=full_text,
            segments=list(segments),
            provider=provider,
            language=language,
        )
        async with self._db.transaction() as session:
            session.add(transcript)
        return transcript

    async def add_bookmarks(self, meeting_id: str, bookmarks: Iterable[Bookmark]) -> MeetingAsset:
        asset = MeetingAsset(
            meeting_id=meeting_id,
            type=BOOKMARKS_ASSET,
            asset_metadata={"bookmarks": [b.model_dump(by_alias=True) for b in bookmarks]},
        )
        async with self._db.transaction() as session:
            session.add(asset)
        return asset

    # ------------------------------------------------------------------
    # Workflow reads
    async def get_meeting(self, company_id: str, meeting_id: str) -> Meeting:
        async with self._db.session() as session:
            result = await session.execute(
                select(Meeting).where(Meeting.id == meeting_id, Meeting.company_id == company_id)
            )
            meeting = result.scalars().first()
        if meeting is None:
            raise NotFound(f"Meeting '{meeting_id}' not found.")
        return meeting

    async def latest_transcript(self, meeting_id: str) -> Transcript:
        async with self._db.session() as session:
            result = await session.execute(
                select(Transcript)
                .where(Transcript.meeting_id == meeting_id)
                .order_by(Transcript.created_at.desc())
                .limit(1)
            )
            transcript = result.scalars().first()
        if transcript is None:
            raise NotFound(f"Transcript for meeting '{meeting_id}' not found.")
        return transcript

    async def latest_bookmarks(self, meeting_id: str) -> list[Bookmark]:
        async with self._db.session() as session:
            result = await session.execute(
                select(MeetingAsset)
                .where(MeetingAsset.meeting_id == meeting_id, MeetingAsset.type == BOOKMARKS_ASSET)
                .order_by(MeetingAsset.created_at.desc())
                .limit(1)
            )
            asset = result.scalars().first()
        if asset is None:
            return []
        return [Bookmark.model_validate(b) for b in asset.asset_metadata.get("bookmarks", [])]

    # ------------------------------------------------------------------
    # Workflow writes
    async def set_state(self, meeting_id: str, state: MeetingState) -> None:
        async with self._db.transaction() as session:
            await session.execute(update(Meeting).where(Meeting.id == meeting_id).values(state=state))

    async def create_tasks(
        self,
        session: AsyncSession,
        *,
        company_id: str,
        created_by_person_id: str,
        tasks: Iterable[ProposedTask],
    ) -> list[str]:
        """Insert tasks inside the caller's transaction and return their ids."""

        now = utcnow()
        rows = [
            Task(
                company_id=company_id,
                title=task.title,
                description_md=task.description_md,
                priority=task.priority or "MEDIUM",
                owner_person_id=task.owner_person_id,
                due_at=_parse_due(task.due_at),
                source="MEETING",
                created_by_person_id=created_by_person_id,
                created_at=now,
                updated_at=now,
            )
            for task in tasks
        ]
        session.add_all(rows)
        await session.flush()
        return [row.id for row in rows]

    async def upsert_output(self, meeting_id: str, scribe: ScribeOutput) -> MeetingOutput:
        """Insert or refresh the single output row of a meeting."""

        values = {
            "minutes_md": scribe.minutes_md,
            "decisions": scribe.decisions,
            "action_items": scribe.action_items,
            "risks": scribe.risks,
        }
        try:
            return await self._upsert_output(meeting_id, values)
        except PersistenceFailure as exc:
            if not isinstance(exc.__cause__, IntegrityError):
                raise
            # Lost an insert race on the unique meeting_id; the row exists now.
            logger.info("Output row for meeting %s appeared concurrently; updating", meeting_id)
            return await self._upsert_output(meeting_id, values)

    async def _upsert_output(self, meeting_id: str, values: dict) -> MeetingOutput:
        async with self._db.session() as session:
            async with session.begin():
                result = await session.execute(
                    select(MeetingOutput).where(MeetingOutput.meeting_id == meeting_id)
                )
                row = result.scalars().first()
                if row is None:
                    row = MeetingOutput(meeting_id=meeting_id, **values)
                    session.add(row)
                else:
                    for key, value in values.items():
                        setattr(row, key, value)
                    row.updated_at = utcnow()
            return row

    # ------------------------------------------------------------------
    # Queries
    async def get_output(self, meeting_id: str) -> MeetingOutput | None:
        async with self._db.session() as session:
            result = await session.execute(
                select(MeetingOutput).where(MeetingOutput.meeting_id == meeting_id)
            )
            return result.scalars().first()

    async def count_outputs(self, meeting_id: str) -> int:
        async with self._db.session() as session:
            result = await session.execute(
                select(func.count()).select_from(MeetingOutput).where(MeetingOutput.meeting_id == meeting_id)
            )
            return int(result.scalar_one())

    async def list_tasks(self, company_id: str, *, source: Optional[str] = None) -> list[Task]:
        query = select(Task).where(Task.company_id == company_id)
        if source is not None:
            query = query.where(Task.source == source)
        async with self._db.session() as session:
            result = await session.execute(query.order_by(Task.created_at))
            return list(result.scalars().all())


__all__ = ["BOOKMARKS_ASSET", "MeetingStore"]
