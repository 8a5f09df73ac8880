from __future__ import annotations

"""Dependency helpers for FastAPI routes."""

from fastapi import HTTPException, Request, status

from engine.errors import (
    AlreadyDecided,
    InvalidDecision,
    InvalidInput,
    NotFound,
    PersistenceFailure,
    UpstreamFailure,
    WorkflowError,
)

_STATUS_BY_ERROR = (
    (NotFound, status.HTTP_404_NOT_FOUND),
    (AlreadyDecided, status.HTTP_409_CONFLICT),
    (InvalidDecision, 422),
    (InvalidInput, 422),
    (UpstreamFailure, status.HTTP_502_BAD_GATEWAY),
    (PersistenceFailure, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def to_http_error(exc: WorkflowError) -> HTTPException:
    """Map a workflow error onto the HTTP status clients see."""

    for error_type, code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return HTTPException(status_code=code, detail=str(exc))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


def get_settings(request: Request):
    """Return the service settings."""

    return request.app.state.settings


def get_supervisor(request: Request):
    """Return the run supervisor."""

    return request.app.state.supervisor


def get_approval_gate(request: Request):
    """Return the approval gate."""

    return request.app.state.approvals


def get_meeting_store(request: Request):
    return request.app.state.meetings


def get_job_queue(request: Request):
    """Return the job queue."""

    return request.app.state.job_queue


__all__ = [
    "get_approval_gate",
    "get_job_queue",
    "get_meeting_store",
    "get_settings",
    "get_supervisor",
    "to_http_error",
]
