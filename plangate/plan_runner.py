import logging
from typing import Optional, Protocol, runtime_checkable

from .checkpoint import CheckpointLog
from .errors import DispatchError, IllegalTransitionError, PlanStoreError
from .lifecycle import PlanLifecycle
from .plan_store import PlanStore
from .preflight import ToolInventory, run_preflight
from .schemas import SCRIPT_STATUSES, Plan, PlanScript


logger = logging.getLogger("uvicorn.error")

SUMMARY_LIMIT = 500


@runtime_checkable
class AgentDispatcher(Protocol):
    """Hands an executing plan to whatever agent session will carry it out."""

    async def dispatch(self, plan: Plan) -> None:
        ...


def _clip(text: Optional[str]) -> str:
    return (text or "").strip()[:SUMMARY_LIMIT]


class PlanRunner:
    """Drives one plan from approved to a terminal status, checkpointing as it goes.

    The executor itself is external: ``start`` hands the plan to the dispatcher and
    returns; progress arrives later through ``report_step`` and ``finish``.
    """

    def __init__(
        self,
        store: PlanStore,
        lifecycle: PlanLifecycle,
        checkpoints: CheckpointLog,
        inventory: ToolInventory,
        dispatcher: Optional[AgentDispatcher] = None,
    ) -> None:
        self.store = store
        self.lifecycle = lifecycle
        self.checkpoints = checkpoints
        self.inventory = inventory
        self.dispatcher = dispatcher

    async def start(
        self,
        plan_id: str,
        expected_version: int,
        *,
        session: Optional[str] = None,
        inventory: Optional[ToolInventory] = None,
    ) -> Plan:
        await run_preflight(self.store, plan_id, expected_version, inventory or self.inventory)
        plan = await self.lifecycle.mark_executing(plan_id, session=session, expected_version=expected_version)
        self.checkpoints.log_start(plan_id)
        logger.info("Plan %s executing (%d steps, session=%s)", plan_id, len(plan.steps), session or "-")
        if self.dispatcher is None:
            return plan
        try:
            await self.dispatcher.dispatch(plan)
        except Exception as exc:
            reason = f"Executor dispatch failed: {exc}"
            logger.warning("Plan %s: %s", plan_id, reason)
            self.checkpoints.log_end(plan_id, "failed", reason)
            try:
                await self.lifecycle.mark_failed(plan_id, reason)
            except PlanStoreError as mark_exc:
                logger.error("Plan %s could not be marked failed after dispatch error: %s", plan_id, mark_exc)
            raise DispatchError(plan_id, exc) from exc
        return plan

    async def report_step(self, plan_id: str, step_index: int, status: str, summary: str = "") -> Plan:
        if status not in SCRIPT_STATUSES:
            raise ValueError(f"unknown step status {status!r}; expected one of {', '.join(SCRIPT_STATUSES)}")

        def mutate(plan: Plan) -> None:
            if plan.status != "executing":
                raise IllegalTransitionError(plan.id, "report step", plan.status, required="executing")
            if not 0 <= step_index < len(plan.steps):
                raise PlanStoreError(
                    f"plan {plan.id} has {len(plan.steps)} steps; step {step_index} is out of range",
                    plan_id=plan.id,
                    operation="report_step",
                )
            scripts = list(plan.scripts or [PlanScript(step_index=idx) for idx in range(len(plan.steps))])
            scripts[step_index] = PlanScript(step_index=step_index, status=status, summary=_clip(summary) or None)
            plan.scripts = scripts

        plan = await self.store.update(plan_id, mutate, operation="report_step")
        self.checkpoints.log_step(plan_id, step_index, status, _clip(summary))
        return plan

    async def finish(self, plan_id: str, ok: bool, summary: str = "") -> Plan:
        text = _clip(summary)
        if ok:
            plan = await self.lifecycle.mark_completed(plan_id, text or "Execution completed successfully.")
        else:
            plan = await self.lifecycle.mark_failed(plan_id, text or "Unknown error")
        self.checkpoints.log_end(plan_id, plan.status, plan.result_summary or "")
        return plan
