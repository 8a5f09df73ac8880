from __future__ import annotations

"""Persistent store for workflow run records."""

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import select

from app.db import Database
from app.models import AgentRun, RunStatus
from engine.checkpoint import utcnow
from engine.errors import NotFound

_UNSET: Any = object()


class RunStore:
    """Creates runs and mirrors engine outcomes onto them."""

    def __init__(self, db: Database) -> None:
        self._db = db

    async def create(
        self,
        *,
        kind: str,
        company_id: str,
        thread_id: str,
        input_ref: dict,
        status: RunStatus = RunStatus.RUNNING,
    ) -> AgentRun:
        """Persist a new run record."""

        run = AgentRun(
            kind=kind,
            company_id=company_id,
            thread_id=thread_id,
            input_ref=input_ref,
            status=status,
        )
        async with self._db.transaction() as session:
            session.add(run)
        return run

    async def update(
        self,
        run_id: str,
        *,
        status: Optional[RunStatus] = None,
        output: Any = _UNSET,
    ) -> AgentRun:
        """Update existing run metadata."""

        async with self._db.transaction() as session:
            run = await session.get(AgentRun, run_id)
            if run is None:
                raise NotFound(f"Run '{run_id}' not found.")
            if status is not None:
                run.status = status
            if output is not _UNSET:
                run.output = output
            run.updated_at = utcnow()
        return run

    async def get(self, run_id: str) -> AgentRun:
        """Fetch a run by identifier."""

        async with self._db.session() as session:
            run = await session.get(AgentRun, run_id)
        if run is None:
            raise NotFound(f"Run '{run_id}' not found.")
        return run

    async def list_waiting_since(self, cutoff: datetime) -> list[AgentRun]:
        """Runs parked in WAITING_APPROVAL with no update after ``cutoff``."""

        async with self._db.session() as session:
            result = await session.execute(
                select(AgentRun)
                .where(AgentRun.status == RunStatus.WAITING_APPROVAL, AgentRun.updated_at < cutoff)
                .order_by(AgentRun.updated_at)
            )
            return list(result.scalars().all())


__all__ = ["RunStore"]
