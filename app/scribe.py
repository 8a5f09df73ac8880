"""Meeting scribe: turns a transcript into minutes and a task proposal.

The scribe is an external collaborator of the workflow. It takes transcript
text plus metadata and returns structured minutes and proposed tasks, or
raises ``UpstreamFailure``.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, List, Literal, Optional

from openai import AsyncOpenAI, OpenAIError
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from app.config import Settings
from engine.errors import UpstreamFailure

logger = logging.getLogger("workflow.scribe")

SYSTEM_PROMPT = "You turn transcripts into crisp minutes and actionable tasks."


class CamelModel(BaseModel):
    """Accepts and emits the camelCase keys used by clients and the LLM."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ProposedTask(CamelModel):
    title: str = Field(min_length=1)
    description_md: str = ""
    priority: Optional[str] = None
    due_at: Optional[str] = None
    owner_person_id: Optional[str] = None


class CreateTasksPayload(CamelModel):
    tasks: List[ProposedTask] = Field(default_factory=list)


class Bookmark(CamelModel):
    """A moment flagged during the meeting, ``t`` seconds from the start."""

    t: float
    kind: Literal["Decision", "Action", "Important"]
    note: Optional[str] = None


class ScribeInput(CamelModel):
    transcript_full_text: str
    segments: List[Any] = Field(default_factory=list)
    bookmarks: List[Bookmark] = Field(default_factory=list)
    company_id: str


class ScribeOutput(BaseModel):
    """Structured minutes. Field aliases match the JSON the LLM is asked for."""

    model_config = ConfigDict(populate_by_name=True)

    minutes_md: str = Field(alias="minutesMd")
    decisions: List[Any] = Field(default_factory=list, alias="decisionsJson")
    action_items: List[Any] = Field(default_factory=list, alias="actionItemsJson")
    risks: List[Any] = Field(default_factory=list, alias="risksJson")
    create_tasks_proposal: CreateTasksPayload = Field(
        default_factory=CreateTasksPayload, alias="createTasksProposal"
    )


class MeetingScribe(ABC):
    """Abstract base class for scribe backends."""

    @abstractmethod
    async def generate(self, request: ScribeInput) -> ScribeOutput:
        """Produce minutes and a task proposal for the transcript."""


class StubMeetingScribe(MeetingScribe):
    """Used when no LLM credentials are configured."""

    async def generate(self, request: ScribeInput) -> ScribeOutput:
        logger.warning("OPENAI_API_KEY not set; returning stub minutes")
        return ScribeOutput(
            minutes_md="# Minutes\n\n(OPENAI_API_KEY not set: stub output)\n\n## Summary\n- Meeting captured.\n",
        )


class OpenAIMeetingScribe(MeetingScribe):
    """Scribe backed by the OpenAI chat completions API in JSON mode."""

    def __init__(
        self,
        api_key: str,
        *,
        model: str = "gpt-4o-mini",
        transcript_char_limit: int = 50_000,
        client: AsyncOpenAI | None = None,
    ) -> None:
        if not api_key and client is None:
            raise ValueError("OpenAI API key is required")
        self.client = client or AsyncOpenAI(api_key=api_key)
        self.model = model
        self.transcript_char_limit = transcript_char_limit
        logger.info("OpenAI scribe initialized with model: %s", self.model)

    def build_prompt(self, request: ScribeInput) -> str:
        return "\n".join(
            [
                "You are Meeting Scribe.",
                "Given the transcript and bookmarks, produce meeting minutes and extract action items.",
                "Return strictly valid JSON with keys: minutesMd, decisionsJson, actionItemsJson, risksJson, createTasksProposal.",
                "createTasksProposal is {\"tasks\": [{\"title\", \"descriptionMd\", \"priority\", \"dueAt\", \"ownerPersonId\"}]}.",
                "",
                "Company context:",
                json.dumps({"companyId": request.company_id}),
                "",
                "Bookmarks:",
                json.dumps([b.model_dump(by_alias=True) for b in request.bookmarks]),
                "",
                "Transcript (full text):",
                request.transcript_full_text[: self.transcript_char_limit],
            ]
        )

    async def generate(self, request: ScribeInput) -> ScribeOutput:
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": self.build_prompt(request)},
                ],
                response_format={"type": "json_object"},
            )
        except OpenAIError as exc:
            raise UpstreamFailure(f"Meeting scribe request failed: {exc}") from exc

        content = "{}"
        if response.choices:
            content = response.choices[0].message.content or "{}"
        logger.debug("Scribe returned %d characters", len(content))
        return parse_scribe_output(content)


def parse_scribe_output(text: str) -> ScribeOutput:
    """Validate raw scribe JSON, raising ``UpstreamFailure`` when unusable."""

    try:
        return ScribeOutput.model_validate(json.loads(text))
    except (json.JSONDecodeError, ValidationError) as exc:
        raise UpstreamFailure("Meeting scribe returned invalid JSON output") from exc


def build_scribe(settings: Settings) -> MeetingScribe:
    """Pick the scribe backend for the configured credentials."""

    if not settings.openai_api_key:
        return StubMeetingScribe()
    return OpenAIMeetingScribe(
        settings.openai_api_key,
        model=settings.openai_model,
        transcript_char_limit=settings.transcript_char_limit,
    )


__all__ = [
    "Bookmark",
    "CreateTasksPayload",
    "MeetingScribe",
    "OpenAIMeetingScribe",
    "ProposedTask",
    "ScribeInput",
    "ScribeOutput",
    "StubMeetingScribe",
    "build_scribe",
    "parse_scribe_output",
]
