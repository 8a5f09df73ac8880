from __future__ import annotations

"""Meeting trigger routes."""

import logging

from fastapi import APIRouter, Depends, Path, status

from app.deps import get_job_queue, get_meeting_store, to_http_error
from app.queue import MEETING_FINALIZE
from app.schemas import FinalizeRequest, FinalizeResponse
from engine.errors import WorkflowError

logger = logging.getLogger("workflow.routes.meeting")

router = APIRouter(prefix="/meetings", tags=["meeting"])


@router.post(
    "/{meeting_id}/finalize",
    response_model=FinalizeResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def finalize_meeting(
    payload: FinalizeRequest,
    meeting_id: str = Path(..., description="Meeting identifier"),
    meetings=Depends(get_meeting_store),
    queue=Depends(get_job_queue),
) -> FinalizeResponse:
    """Queue post-meeting processing for a meeting."""

    try:
        await meetings.get_meeting(payload.company_id, meeting_id)
    except WorkflowError as exc:
        raise to_http_error(exc) from exc

    job = await queue.publish(
        MEETING_FINALIZE,
        {
            "meetingId": meeting_id,
            "companyId": payload.company_id,
            "createdByPersonId": payload.created_by_person_id,
        },
    )
    logger.info("Meeting %s finalize queued as job %s", meeting_id, job.id)
    return FinalizeResponse(job_id=job.id, meeting_id=meeting_id)
