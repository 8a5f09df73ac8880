from __future__ import annotations

"""Run supervisor: maps triggers and decisions onto engine invocations."""

import logging
from datetime import timedelta
from typing import Any, Dict, Optional
from uuid import uuid4

from pydantic import ValidationError

from app.approvals import ApprovalGate
from app.models import AgentRun, Approval, ApprovalStatus, RunStatus
from app.runs import RunStore
from engine.checkpoint import CheckpointTuple, utcnow
from engine.errors import AlreadyDecided, CheckpointConflict, InvalidDecision, InvalidInput, NotSuspended
from engine.executor import Completed, Executor, Failed, RunOutcome, Suspended
from engine.registry import WorkflowDefinition, WorkflowRegistry

logger = logging.getLogger("workflow.supervisor")


def failure_output(outcome: Failed) -> Dict[str, Any]:
    return {
        "error": outcome.message,
        "errorType": type(outcome.error).__name__,
        "node": outcome.node_id,
    }


class RunSupervisor:
    """Creates runs, drives the executor and mirrors outcomes onto run rows.

    The run row is a coarse index; the checkpoint store holds the real state.
    Lookup errors (``NotFound``, ``AlreadyDecided``, ``InvalidDecision``,
    ``InvalidInput``) reach the caller without touching the run.
    """

    def __init__(
        self,
        runs: RunStore,
        approvals: ApprovalGate,
        executor: Executor,
        registry: WorkflowRegistry,
    ) -> None:
        self.runs = runs
        self.approvals = approvals
        self.executor = executor
        self.registry = registry

    async def start_run(self, kind: str, company_id: str, payload: Any) -> AgentRun:
        """Validate the trigger, create a run and execute until it suspends or ends."""

        definition = self.registry.get(kind)
        try:
            inputs = definition.input_model.model_validate(payload)
        except ValidationError as exc:
            raise InvalidInput(f"Invalid {kind} payload: {exc}") from exc

        if definition.preflight is not None:
            await definition.preflight(company_id, inputs)

        thread_id = str(uuid4())
        run = await self.runs.create(
            kind=kind,
            company_id=company_id,
            thread_id=thread_id,
            input_ref=inputs.model_dump(mode="json", by_alias=True),
        )
        logger.info("Run %s (%s) started on thread %s", run.id, kind, thread_id)

        initial_state = definition.initial_state(run.id, company_id, inputs)
        outcome = await self.executor.invoke(definition.graph, thread_id, initial_state)
        return await self._record(run.id, definition, outcome)

    async def decide(
        self,
        approval_id: str,
        decision: Any,
        *,
        reviewer_id: Optional[str] = None,
        edited_payload: Any = None,
        feedback: Optional[str] = None,
    ) -> AgentRun:
        """Validate a decision for a pending approval and resume its run."""

        approval = await self.approvals.require_pending(approval_id)
        run = await self.runs.get(approval.run_id)
        definition = self.registry.get(run.kind)

        raw = {
            "decision": decision,
            "editedPayload": edited_payload,
            "feedback": feedback,
            "reviewerPersonId": reviewer_id,
        }
        try:
            value = definition.decision_model.model_validate(raw)
        except ValidationError as exc:
            raise InvalidDecision(f"Invalid decision: {exc}") from exc

        try:
            outcome = await self.executor.resume(
                definition.graph,
                run.thread_id,
                value.model_dump(mode="json", by_alias=True),
            )
        except NotSuspended as exc:
            raise AlreadyDecided(f"Approval '{approval_id}' was already decided.") from exc

        if isinstance(outcome, Failed) and isinstance(outcome.error, (AlreadyDecided, CheckpointConflict)):
            logger.warning("Run %s lost a decision race: %s", run.id, outcome.message)
            raise AlreadyDecided(f"Approval '{approval_id}' was already decided.") from outcome.error

        logger.info("Approval %s decided; run %s resumed", approval_id, run.id)
        return await self._record(run.id, definition, outcome)

    async def get_run(self, run_id: str) -> AgentRun:
        return await self.runs.get(run_id)

    async def pending_approval(self, run_id: str) -> Approval | None:
        """The run's approval while it is still PENDING, read from the approval row."""

        await self.runs.get(run_id)
        approval = await self.approvals.for_run(run_id)
        if approval is None or approval.status != ApprovalStatus.PENDING:
            return None
        return approval

    async def checkpoint_history(self, run_id: str, limit: int = 50) -> list[CheckpointTuple]:
        run = await self.runs.get(run_id)
        return await self.executor.history(run.thread_id, limit=limit)

    async def stale_runs(self, older_than: timedelta) -> list[AgentRun]:
        """Runs waiting for approval with no activity within ``older_than``."""

        return await self.runs.list_waiting_since(utcnow() - older_than)

    async def _record(self, run_id: str, definition: WorkflowDefinition, outcome: RunOutcome) -> AgentRun:
        if isinstance(outcome, Suspended):
            logger.info("Run %s waiting for approval at %s", run_id, outcome.node_id)
            return await self.runs.update(run_id, status=RunStatus.WAITING_APPROVAL, output=outcome.payload)
        if isinstance(outcome, Completed):
            logger.info("Run %s completed", run_id)
            return await self.runs.update(
                run_id, status=RunStatus.COMPLETED, output=definition.summarize(outcome.state)
            )
        logger.error("Run %s failed at %s: %s", run_id, outcome.node_id, outcome.message)
        return await self.runs.update(run_id, status=RunStatus.FAILED, output=failure_output(outcome))


__all__ = ["RunSupervisor", "failure_output"]
