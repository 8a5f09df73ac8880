from __future__ import annotations

"""Error taxonomy shared by the engine, the stores and the run supervisor."""


class WorkflowError(Exception):
    """Base class for workflow failures."""


class NotFound(WorkflowError):
    """A meeting, thread, run, checkpoint or approval does not exist."""


class AlreadyDecided(WorkflowError):
    """An approval has already left the PENDING state."""


class InvalidDecision(WorkflowError):
    """A resume payload is malformed or cannot be applied."""


class NotSuspended(InvalidDecision):
    """A resume was requested for a thread that is not waiting on a decision."""


class InvalidInput(WorkflowError):
    """A trigger payload does not match the workflow's input schema."""


class UpstreamFailure(WorkflowError):
    """An external collaborator failed or returned unusable output."""


class PersistenceFailure(WorkflowError):
    """A storage read or write failed."""


class CheckpointConflict(PersistenceFailure):
    """A checkpoint write raced with another writer on the same thread."""


__all__ = [
    "AlreadyDecided",
    "CheckpointConflict",
    "InvalidDecision",
    "InvalidInput",
    "NotFound",
    "NotSuspended",
    "PersistenceFailure",
    "UpstreamFailure",
    "WorkflowError",
]
