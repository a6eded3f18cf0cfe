import logging
from typing import Optional

from .errors import IllegalTransitionError
from .plan_store import PlanStore
from .schemas import TERMINAL_STATUSES, TRANSITIONS, Plan, PlanScript

logger = logging.getLogger(__name__)

REJECTION_HEADING = "### Rejection Feedback"
CANCELLATION_HEADING = "### Cancellation"


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


def _append_note(body: Optional[str], heading: str, text: str) -> str:
    note = f"{heading}\n\n{text.strip()}"
    return f"{body}\n\n{note}" if body else note


class PlanLifecycle:
    """Named, guarded status transitions. Each one is a single store update."""

    def __init__(self, store: PlanStore):
        self.store = store

    def _guard(self, plan: Plan, operation: str) -> str:
        sources, target = TRANSITIONS[operation]
        if plan.status not in sources:
            required = sources[0] if len(sources) == 1 else "a non-terminal"
            verb = operation.replace("mark_", "mark ").replace("_", " ")
            raise IllegalTransitionError(plan.id, verb, plan.status, required=required)
        return target

    async def _transition(self, plan_id: str, operation: str, apply=None, expected_version: Optional[int] = None) -> Plan:
        def mutate(plan: Plan) -> None:
            plan.status = self._guard(plan, operation)
            if apply is not None:
                apply(plan)

        plan = await self.store.update(plan_id, mutate, expected_version=expected_version, operation=operation)
        logger.info("Plan %s %s -> %s (v%d)", plan_id, operation, plan.status, plan.version)
        return plan

    async def approve(self, plan_id: str, *, expected_version: Optional[int] = None) -> Plan:
        return await self._transition(plan_id, "approve", expected_version=expected_version)

    async def reject(self, plan_id: str, feedback: Optional[str] = None, *, expected_version: Optional[int] = None) -> Plan:
        def apply(plan: Plan) -> None:
            if feedback and feedback.strip():
                plan.body = _append_note(plan.body, REJECTION_HEADING, feedback)

        return await self._transition(plan_id, "reject", apply, expected_version)

    async def mark_executing(
        self,
        plan_id: str,
        *,
        session: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> Plan:
        def apply(plan: Plan) -> None:
            plan.execution_started_at = self.store.now_iso()
            plan.execution_ended_at = None
            plan.result_summary = None
            plan.execution_session = session or plan.execution_session
            plan.scripts = [PlanScript(step_index=idx) for idx in range(len(plan.steps))]

        return await self._transition(plan_id, "mark_executing", apply, expected_version)

    async def mark_completed(self, plan_id: str, summary: str) -> Plan:
        def apply(plan: Plan) -> None:
            plan.execution_ended_at = self.store.now_iso()
            plan.result_summary = summary or "Execution completed successfully."

        return await self._transition(plan_id, "mark_completed", apply)

    async def mark_failed(self, plan_id: str, reason: str) -> Plan:
        def apply(plan: Plan) -> None:
            plan.execution_ended_at = self.store.now_iso()
            plan.result_summary = reason or "Unknown error"

        return await self._transition(plan_id, "mark_failed", apply)

    async def mark_stalled(self, plan_id: str, note: Optional[str] = None) -> Plan:
        def apply(plan: Plan) -> None:
            if note:
                plan.result_summary = note

        return await self._transition(plan_id, "mark_stalled", apply)

    async def cancel(self, plan_id: str, reason: Optional[str] = None) -> Plan:
        def apply(plan: Plan) -> None:
            if reason and reason.strip():
                plan.body = _append_note(plan.body, CANCELLATION_HEADING, reason)

        return await self._transition(plan_id, "cancel", apply)
