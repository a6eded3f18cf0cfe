from typing import Iterable, List, Protocol, runtime_checkable

from .errors import PreflightError
from .plan_store import PlanStore
from .schemas import Plan


@runtime_checkable
class ToolInventory(Protocol):
    """Whatever hosts the executor: answers which tool names exist right now."""

    def list_tools(self) -> Iterable[str]:
        ...


class StaticToolInventory:
    def __init__(self, tools: Iterable[str] = ()):
        self.tools: List[str] = [str(t) for t in tools]

    def list_tools(self) -> Iterable[str]:
        return list(self.tools)


def validate_preflight(plan: Plan, expected_version: int, available_tools: Iterable[str]) -> Plan:
    if plan.status != "approved":
        raise PreflightError(
            plan.id,
            "status",
            f"plan is {plan.status}, only approved plans can execute",
            expected_version=expected_version,
            actual_version=plan.version,
        )
    if plan.version != expected_version:
        raise PreflightError(
            plan.id,
            "stale_version",
            f"plan changed since it was fetched (expected v{expected_version}, live v{plan.version})",
            expected_version=expected_version,
            actual_version=plan.version,
        )
    available = set(available_tools)
    missing = [tool for tool in plan.tools_required if tool not in available]
    if missing:
        raise PreflightError(
            plan.id,
            "missing_tools",
            f"required tools not available: {', '.join(missing)}",
            expected_version=expected_version,
            actual_version=plan.version,
            missing_tools=missing,
        )
    return plan


async def run_preflight(store: PlanStore, plan_id: str, expected_version: int, inventory: ToolInventory) -> Plan:
    # the live version is the one on disk, not whatever the cache holds
    plan = await store.require(plan_id, use_cache=False, operation="execute")
    return validate_preflight(plan, expected_version, inventory.list_tools())
