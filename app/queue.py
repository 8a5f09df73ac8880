from __future__ import annotations

"""Named job queue and the worker that feeds jobs to the run supervisor.

Delivery is at-least-once: a processor may see the same job twice and must
tolerate it. The in-memory queue is what the API process uses by default.
"""

import abc
import asyncio
import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any, AsyncIterator, Awaitable, Callable, Dict, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, ValidationError

from app.models import RunKind
from app.scribe import CamelModel
from engine.checkpoint import utcnow
from engine.errors import NotFound

if TYPE_CHECKING:
    from app.supervisor import RunSupervisor

logger = logging.getLogger("workflow.queue")

MEETING_FINALIZE = "meetingFinalize"


class Job(BaseModel):
    """A named unit of work with a JSON payload."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    name: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    enqueued_at: datetime = Field(default_factory=utcnow)


JobProcessor = Callable[[Job], Awaitable[None]]


class JobQueue(metaclass=abc.ABCMeta):
    """Abstract job queue."""

    @abc.abstractmethod
    async def publish(self, name: str, payload: Dict[str, Any]) -> Job:
        """Enqueue a job under ``name``."""
        raise NotImplementedError

    @abc.abstractmethod
    def consume(self, name: str, *, stop_when_empty: bool = False) -> AsyncIterator[Job]:
        """Yield jobs for ``name`` as they arrive."""
        raise NotImplementedError

    async def ack(self, job: Job) -> None:
        """Acknowledge a processed job (no-op by default)."""
        pass


class InMemoryJobQueue(JobQueue):
    """Simple in-process queue, one ``asyncio.Queue`` per job name."""

    def __init__(self) -> None:
        self._queues: Dict[str, asyncio.Queue[Job]] = {}

    def _queue(self, name: str) -> asyncio.Queue[Job]:
        queue = self._queues.get(name)
        if queue is None:
            queue = asyncio.Queue()
            self._queues[name] = queue
        return queue

    async def publish(self, name: str, payload: Dict[str, Any]) -> Job:
        job = Job(name=name, payload=dict(payload))
        await self._queue(name).put(job)
        logger.info("Job %s enqueued on %s", job.id, name)
        return job

    async def consume(self, name: str, *, stop_when_empty: bool = False) -> AsyncIterator[Job]:
        queue = self._queue(name)
        while True:
            if stop_when_empty:
                if queue.empty():
                    return
                yield queue.get_nowait()
            else:
                yield await queue.get()

    async def ack(self, job: Job) -> None:
        self._queue(job.name).task_done()

    def pending(self, name: str) -> int:
        return self._queue(name).qsize()


class JobWorker:
    """Consumes named queues and dispatches each job to its processor."""

    def __init__(self, queue: JobQueue, processors: Dict[str, JobProcessor]) -> None:
        self.queue = queue
        self.processors = processors
        self._tasks: list[asyncio.Task[None]] = []

    async def handle(self, job: Job) -> bool:
        """Run one job; returns False when its processor raised."""

        processor = self.processors.get(job.name)
        if processor is None:
            logger.warning("No processor for job %s (%s); dropping", job.id, job.name)
            return False
        try:
            await processor(job)
        except Exception as exc:
            logger.exception("Job %s (%s) failed: %s", job.id, job.name, exc)
            return False
        finally:
            await self.queue.ack(job)
        return True

    async def drain(self, name: str) -> int:
        """Process every job currently queued under ``name``."""

        handled = 0
        async for job in self.queue.consume(name, stop_when_empty=True):
            await self.handle(job)
            handled += 1
        return handled

    async def _run(self, name: str) -> None:
        async for job in self.queue.consume(name):
            await self.handle(job)

    def start(self) -> None:
        for name in self.processors:
            self._tasks.append(asyncio.create_task(self._run(name), name=f"worker:{name}"))
        logger.info("Worker consuming %s", ", ".join(sorted(self.processors)) or "nothing")

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()


class MeetingFinalizeJob(CamelModel):
    meeting_id: str = Field(min_length=1)
    company_id: str = Field(min_length=1)
    created_by_person_id: str = Field(min_length=1)


def meeting_finalize_processor(supervisor: RunSupervisor) -> JobProcessor:
    """Build the ``meetingFinalize`` processor that starts a post-meeting run.

    Invalid payloads and unknown meetings are logged and skipped. Anything
    else propagates to the worker.
    """

    async def process(job: Job) -> None:
        try:
            data = MeetingFinalizeJob.model_validate(job.payload)
        except ValidationError:
            logger.warning("Job %s: invalid %s payload; skipping", job.id, MEETING_FINALIZE)
            return

        logger.info("Job %s: finalizing meeting %s", job.id, data.meeting_id)
        try:
            run = await supervisor.start_run(
                RunKind.MEETING_POST.value,
                data.company_id,
                {"meetingId": data.meeting_id, "createdByPersonId": data.created_by_person_id},
            )
        except NotFound as exc:
            logger.warning("Job %s: %s; skipping", job.id, exc)
            return
        logger.info("Job %s: run %s is %s", job.id, run.id, run.status.value)

    return process


def build_worker(queue: JobQueue, supervisor: RunSupervisor, *, extra: Optional[Dict[str, JobProcessor]] = None) -> JobWorker:
    processors: Dict[str, JobProcessor] = {MEETING_FINALIZE: meeting_finalize_processor(supervisor)}
    processors.update(extra or {})
    return JobWorker(queue, processors)


__all__ = [
    "InMemoryJobQueue",
    "Job",
    "JobQueue",
    "JobWorker",
    "MEETING_FINALIZE",
    "MeetingFinalizeJob",
    "build_worker",
    "meeting_finalize_processor",
]
