"""Workflow definitions package."""

from workflows.post_meeting import (
    PostMeetingDecision,
    PostMeetingInput,
    PostMeetingState,
    build_post_meeting_definition,
    build_post_meeting_graph,
)

__all__ = [
    "PostMeetingDecision",
    "PostMeetingInput",
    "PostMeetingState",
    "build_post_meeting_definition",
    "build_post_meeting_graph",
]
