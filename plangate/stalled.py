import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Iterable, List, Optional

from .checkpoint import CheckpointLog
from .errors import IllegalTransitionError, PlanNotFoundError, PlanParseError, VersionConflictError
from .lifecycle import PlanLifecycle
from .plan_store import PlanStore
from .schemas import Plan, parse_timestamp, system_clock

logger = logging.getLogger(__name__)


@dataclass
class StalledScan:
    stalled: List[Plan] = field(default_factory=list)
    # executing and within the timeout; cannot tell a live executor from a dead one yet
    running: List[Plan] = field(default_factory=list)
    # stalled by the clock but the transition could not be committed
    skipped: List[Plan] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "stalled": [p.id for p in self.stalled],
            "running": [p.id for p in self.running],
            "skipped": [p.id for p in self.skipped],
        }


def _started_at(plan: Plan) -> Optional[datetime]:
    raw = plan.execution_started_at or plan.updated_at
    try:
        return parse_timestamp(raw)
    except (TypeError, ValueError):
        return None


class StalledPlanDetector:
    """Classify executing plans against the executor timeout. Never writes."""

    def __init__(self, timeout_minutes: float, clock: Optional[Callable[[], datetime]] = None):
        if timeout_minutes <= 0:
            raise ValueError("timeout_minutes must be positive")
        self.timeout = timedelta(minutes=timeout_minutes)
        self._clock = clock or system_clock

    def is_stalled(self, plan: Plan, now: Optional[datetime] = None) -> bool:
        if plan.status != "executing":
            return False
        started = _started_at(plan)
        if started is None:
            return True
        return (now or self._clock()) - started > self.timeout

    def classify(self, plans: Iterable[Plan], now: Optional[datetime] = None) -> StalledScan:
        now = now or self._clock()
        scan = StalledScan()
        for plan in plans:
            if plan.status != "executing":
                continue
            if self.is_stalled(plan, now):
                scan.stalled.append(plan)
            else:
                scan.running.append(plan)
        return scan


async def recover_stalled_plans(
    store: PlanStore,
    lifecycle: PlanLifecycle,
    detector: StalledPlanDetector,
    checkpoints: Optional[CheckpointLog] = None,
) -> StalledScan:
    """Process-start recovery: flag executing plans that outlived the timeout as stalled."""
    store.invalidate_cache()
    executing = await store.list(status="executing")
    scan = detector.classify(executing)
    committed: List[Plan] = []
    minutes = int(detector.timeout.total_seconds() // 60)
    for plan in scan.stalled:
        note = f"No terminal status after {minutes} minutes; flagged as stalled on restart."
        try:
            updated = await lifecycle.mark_stalled(plan.id, note)
        except (VersionConflictError, IllegalTransitionError, PlanNotFoundError, PlanParseError) as exc:
            logger.warning("Plan %s left as is during stalled recovery: %s", plan.id, exc)
            scan.skipped.append(plan)
            continue
        if checkpoints is not None:
            checkpoints.log_end(plan.id, "stalled", note)
        committed.append(updated)
    scan.stalled = committed
    for plan in scan.running:
        logger.warning(
            "Plan %s is executing since %s but unconfirmed after restart; needs operator attention",
            plan.id,
            plan.execution_started_at,
        )
    if scan.stalled:
        logger.warning("Flagged %d stalled plan(s): %s", len(scan.stalled), ", ".join(p.id for p in scan.stalled))
    return scan


def find_stale_proposals(
    plans: Iterable[Plan],
    stale_after_days: float,
    now: Optional[datetime] = None,
) -> List[Plan]:
    """Proposed plans nobody has acted on within the staleness window. Informational only."""
    now = now or system_clock()
    window = timedelta(days=stale_after_days)
    stale: List[Plan] = []
    for plan in plans:
        if plan.status != "proposed":
            continue
        try:
            created = parse_timestamp(plan.created_at)
        except ValueError:
            continue
        if now - created > window:
            stale.append(plan)
    return stale
