from __future__ import annotations

"""Approval gate: the persisted record of a pending human decision."""

import logging
from typing import Any, Dict, Optional

from pydantic import BaseModel, ValidationError
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.db import Database
from app.models import Approval, ApprovalStatus, ApprovalType, Decision
from app.scribe import CreateTasksPayload
from engine.checkpoint import utcnow
from engine.errors import AlreadyDecided, InvalidDecision, NotFound

logger = logging.getLogger("workflow.approvals")

PAYLOAD_SCHEMAS: Dict[ApprovalType, type[BaseModel]] = {
    ApprovalType.CREATE_TASKS: CreateTasksPayload,
}


def validate_payload(approval_type: ApprovalType, payload: Any) -> Dict[str, Any]:
    """Check a proposed or edited payload against its type's schema."""

    schema = PAYLOAD_SCHEMAS[approval_type]
    try:
        model = schema.model_validate(payload)
    except ValidationError as exc:
        raise InvalidDecision(f"Invalid {approval_type.value} payload: {exc}") from exc
    return model.model_dump(mode="json", by_alias=True, exclude_none=True)


def parse_decision(value: Any) -> Decision:
    try:
        return Decision(value)
    except ValueError as exc:
        raise InvalidDecision(f"Decision must be APPROVE or REJECT, got {value!r}") from exc


class ApprovalGate:
    """Creates approvals and records decisions with a status-gated update."""

    def __init__(self, db: Database) -> None:
        self._db = db

    async def create(
        self,
        *,
        company_id: str,
        run_id: str,
        type: ApprovalType,
        payload: Any,
    ) -> Approval:
        approval = Approval(
            company_id=company_id,
            run_id=run_id,
            type=type,
            payload=validate_payload(type, payload),
            status=ApprovalStatus.PENDING,
        )
        async with self._db.transaction() as session:
            session.add(approval)
        logger.info("Approval %s created for run %s", approval.id, run_id)
        return approval

    async def get(self, approval_id: str, *, session: AsyncSession | None = None) -> Approval:
        if session is not None:
            approval = await session.get(Approval, approval_id)
        else:
            async with self._db.session() as own:
                approval = await own.get(Approval, approval_id)
        if approval is None:
            raise NotFound(f"Approval '{approval_id}' not found.")
        return approval

    async def require_pending(self, approval_id: str) -> Approval:
        approval = await self.get(approval_id)
        if approval.status != ApprovalStatus.PENDING:
            raise AlreadyDecided(f"Approval '{approval_id}' is already {approval.status.value}.")
        return approval

    async def list_for_company(
        self, company_id: str, status: ApprovalStatus | None = None
    ) -> list[Approval]:
        query = select(Approval).where(Approval.company_id == company_id)
        if status is not None:
            query = query.where(Approval.status == status)
        async with self._db.session() as session:
            result = await session.execute(query.order_by(Approval.created_at.desc()))
            return list(result.scalars().all())

    async def for_run(self, run_id: str) -> Approval | None:
        async with self._db.session() as session:
            result = await session.execute(
                select(Approval).where(Approval.run_id == run_id).order_by(Approval.created_at.desc())
            )
            return result.scalars().first()

    async def decide(
        self,
        approval_id: str,
        decision: Decision | str,
        *,
        reviewer_id: Optional[str] = None,
        edited_payload: Any = None,
        feedback: Optional[str] = None,
        session: AsyncSession | None = None,
    ) -> Dict[str, Any]:
        """Record a decision and return the effective payload.

        On APPROVE the effective payload is ``edited_payload`` when given,
        otherwise the original proposal; it is written back to the row. Pass
        ``session`` to join the caller's transaction.
        """

        decision = parse_decision(decision)
        if session is None:
            async with self._db.transaction() as own:
                return await self._decide(own, approval_id, decision, reviewer_id, edited_payload, feedback)
        return await self._decide(session, approval_id, decision, reviewer_id, edited_payload, feedback)

    async def _decide(
        self,
        session: AsyncSession,
        approval_id: str,
        decision: Decision,
        reviewer_id: Optional[str],
        edited_payload: Any,
        feedback: Optional[str],
    ) -> Dict[str, Any]:
        approval = await self.get(approval_id, session=session)
        if approval.status != ApprovalStatus.PENDING:
            raise AlreadyDecided(f"Approval '{approval_id}' is already {approval.status.value}.")

        values: Dict[str, Any] = {
            "reviewer_id": reviewer_id,
            "feedback": feedback,
            "decided_at": utcnow(),
        }
        effective = dict(approval.payload)
        if decision == Decision.APPROVE:
            if edited_payload is not None:
                effective = validate_payload(approval.type, edited_payload)
            values["status"] = ApprovalStatus.APPROVED
            values["payload"] = effective
        else:
            values["status"] = ApprovalStatus.REJECTED

        result = await session.execute(
            update(Approval)
            .where(Approval.id == approval_id, Approval.status == ApprovalStatus.PENDING)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise AlreadyDecided(f"Approval '{approval_id}' was decided concurrently.")

        logger.info("Approval %s %s by %s", approval_id, values["status"].value, reviewer_id or "unknown")
        return effective


__all__ = ["ApprovalGate", "PAYLOAD_SCHEMAS", "parse_decision", "validate_payload"]
