from __future__ import annotations

"""FastAPI application factory and runtime wiring."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

from fastapi import FastAPI

from app.approvals import ApprovalGate
from app.config import Settings
from app.db import Database
from app.meetings import MeetingStore
from app.queue import InMemoryJobQueue, JobQueue, build_worker
from app.routes import approval_routes, meeting_routes, run_routes
from app.runs import RunStore
from app.scribe import MeetingScribe, build_scribe
from app.supervisor import RunSupervisor
from engine.executor import ExecutionLog, Executor
from engine.registry import WorkflowRegistry
from engine.sql_checkpoint import SQLCheckpointStore
from workflows.post_meeting import build_post_meeting_definition

logger = logging.getLogger("workflow.app")


def configure_logging(level: str = "INFO") -> None:
    """Configure basic logging for the service."""

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _log_execution(entry: ExecutionLog) -> None:
    logger.debug("node=%s status=%s %s", entry.node_id, entry.status, entry.error or entry.message or "")


def create_app(
    settings: Optional[Settings] = None,
    *,
    scribe: Optional[MeetingScribe] = None,
    job_queue: Optional[JobQueue] = None,
) -> FastAPI:
    """Construct the FastAPI application.

    ``scribe`` and ``job_queue`` override the defaults derived from settings.
    """

    settings = settings or Settings()
    configure_logging(settings.log_level)

    db = Database(settings.database_url)
    meetings = MeetingStore(db)
    approvals = ApprovalGate(db)
    runs = RunStore(db)
    executor = Executor(SQLCheckpointStore(db.engine), log_hook=_log_execution)

    registry = WorkflowRegistry()
    registry.register(
        build_post_meeting_definition(
            db=db,
            meetings=meetings,
            approvals=approvals,
            scribe=scribe or build_scribe(settings),
        )
    )

    supervisor = RunSupervisor(runs, approvals, executor, registry)
    queue = job_queue or InMemoryJobQueue()
    worker = build_worker(queue, supervisor)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await db.init_db()
        if settings.worker_enabled:
            worker.start()
        logger.info("Workflow service starting up.")
        try:
            yield
        finally:
            await worker.stop()
            await db.dispose()
            logger.info("Workflow service shutting down.")

    app = FastAPI(title="Workflow Engine", version="0.2.0", lifespan=lifespan)

    app.state.settings = settings
    app.state.db = db
    app.state.meetings = meetings
    app.state.approvals = approvals
    app.state.runs = runs
    app.state.executor = executor
    app.state.workflow_registry = registry
    app.state.supervisor = supervisor
    app.state.job_queue = queue
    app.state.worker = worker

    @app.get("/health", tags=["system"])
    async def health() -> Dict[str, str]:
        """Simple health probe."""

        return {"status": "ok"}

    app.include_router(run_routes.router)
    app.include_router(approval_routes.router)
    app.include_router(meeting_routes.router)

    return app


app = create_app()


__all__ = [
    "app",
    "configure_logging",
    "create_app",
]
