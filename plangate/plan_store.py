import asyncio
import logging
import os
import re
import tempfile
import uuid
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from .errors import IllegalTransitionError, ImmutableFieldError, PlanNotFoundError, PlanParseError, PlanStoreError, VersionConflictError
from .plan_codec import parse_plan, serialize_plan
from .schemas import PLAN_STATUSES, STATUS_EDGES, Plan, PlanDraft, format_timestamp, system_clock

logger = logging.getLogger(__name__)

PLANS_DIRNAME = "plans"
PLAN_SUFFIX = ".md"
PLAN_ID_PREFIX = "PLAN-"
ID_ATTEMPTS = 8
IMMUTABLE_FIELDS = ("id", "created_at", "steps")

_SAFE_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]*$")

Mutator = Callable[[Plan], Optional[Plan]]
StatusFilter = Union[str, Iterable[str], None]


def new_plan_id() -> str:
    return f"{PLAN_ID_PREFIX}{uuid.uuid4().hex[:8]}"


def _normalize_statuses(status: StatusFilter) -> Optional[set]:
    if status is None:
        return None
    values = [status] if isinstance(status, str) else list(status)
    cleaned = {str(v).strip().lower() for v in values if str(v).strip()}
    unknown = cleaned - set(PLAN_STATUSES)
    if unknown:
        raise ValueError(f"unknown plan status: {', '.join(sorted(unknown))}")
    return cleaned or None


class PlanCache:
    """In-process read cache for one store. Never consulted by the write path."""

    def __init__(self) -> None:
        self._entries: Dict[str, Plan] = {}

    def get(self, plan_id: str) -> Optional[Plan]:
        plan = self._entries.get(plan_id)
        return plan.model_copy(deep=True) if plan else None

    def put(self, plan: Plan) -> None:
        self._entries[plan.id] = plan.model_copy(deep=True)

    def invalidate(self, plan_id: Optional[str] = None) -> None:
        if plan_id is None:
            self._entries.clear()
        else:
            self._entries.pop(plan_id, None)

    def __contains__(self, plan_id: object) -> bool:
        return plan_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)


class PlanStore:
    """Markdown plan documents under ``<project>/plans`` with atomic writes and optimistic locking."""

    def __init__(
        self,
        project_root: Union[str, Path],
        *,
        cache: Optional[PlanCache] = None,
        clock: Optional[Callable[[], Any]] = None,
    ):
        self.project_root = Path(project_root)
        self.plans_dir = self.project_root / PLANS_DIRNAME
        self.sessions_dir = self.plans_dir / "sessions"
        self.artifacts_root = self.plans_dir / "artifacts"
        self.cache = cache or PlanCache()
        self._clock = clock or system_clock

    def ensure_dirs(self) -> None:
        for path in (self.plans_dir, self.sessions_dir, self.artifacts_root):
            path.mkdir(parents=True, exist_ok=True)

    def plan_path(self, plan_id: str) -> Path:
        if not _SAFE_ID_RE.match(plan_id or ""):
            raise PlanNotFoundError(str(plan_id), operation="resolve")
        return self.plans_dir / f"{plan_id}{PLAN_SUFFIX}"

    def artifacts_dir(self, plan_id: str) -> Path:
        return self.artifacts_root / self.plan_path(plan_id).stem

    def invalidate_cache(self, plan_id: Optional[str] = None) -> None:
        self.cache.invalidate(plan_id)

    def now_iso(self) -> str:
        return format_timestamp(self._clock())

    def _read_disk(self, plan_id: str) -> Optional[Plan]:
        path = self.plan_path(plan_id)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        try:
            return parse_plan(text, path=str(path))
        except PlanParseError as exc:
            exc.plan_id = exc.plan_id or plan_id
            raise

    def _write_temp(self, target: Path, text: str) -> Path:
        fd, tmp_name = tempfile.mkstemp(dir=str(target.parent), prefix=f".{target.name}.", suffix=".tmp")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(text)
                handle.flush()
                os.fsync(handle.fileno())
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise
        return tmp_path

    async def create(self, draft: Union[PlanDraft, Dict[str, Any]]) -> Plan:
        if not isinstance(draft, PlanDraft):
            draft = PlanDraft.model_validate(draft)
        self.ensure_dirs()
        for _ in range(ID_ATTEMPTS):
            now = self.now_iso()
            plan = Plan(
                id=new_plan_id(),
                title=draft.title,
                status="proposed",
                version=1,
                created_at=now,
                updated_at=now,
                planner_model=draft.planner_model,
                executor_model=draft.executor_model,
                tools_required=draft.tools_required,
                steps=draft.steps,
                context=draft.context,
                body=draft.body,
            )
            path = self.plan_path(plan.id)
            tmp_path = await asyncio.to_thread(self._write_temp, path, serialize_plan(plan))
            try:
                # link() refuses to replace an existing file, so an id collision cannot clobber a plan
                os.link(tmp_path, path)
            except FileExistsError:
                logger.warning("Plan id collision on %s; drawing a new id", plan.id)
                continue
            finally:
                tmp_path.unlink(missing_ok=True)
            self.cache.put(plan)
            logger.info("Plan %s created: %s (%d steps)", plan.id, plan.title, len(plan.steps))
            return plan.model_copy(deep=True)
        raise PlanStoreError("could not allocate a unique plan id", operation="create")

    async def get(self, plan_id: str, *, use_cache: bool = True) -> Optional[Plan]:
        if use_cache:
            cached = self.cache.get(plan_id)
            if cached is not None:
                return cached
        try:
            plan = self._read_disk(plan_id)
        except PlanNotFoundError:
            return None
        if plan is None:
            self.cache.invalidate(plan_id)
            return None
        self.cache.put(plan)
        return plan

    async def require(self, plan_id: str, *, use_cache: bool = True, operation: str = "get") -> Plan:
        plan = await self.get(plan_id, use_cache=use_cache)
        if plan is None:
            raise PlanNotFoundError(plan_id, operation=operation)
        return plan

    async def list(self, status: StatusFilter = None) -> List[Plan]:
        wanted = _normalize_statuses(status)
        if not self.plans_dir.is_dir():
            return []
        plans: List[Plan] = []
        for path in sorted(self.plans_dir.glob(f"*{PLAN_SUFFIX}")):
            plan_id = path.stem
            plan = self.cache.get(plan_id)
            if plan is None:
                try:
                    plan = self._read_disk(plan_id)
                except (PlanParseError, PlanNotFoundError) as exc:
                    logger.warning("Skipping unreadable plan file %s: %s", path, exc)
                    continue
                if plan is None:
                    continue
                self.cache.put(plan)
            if wanted is None or plan.status in wanted:
                plans.append(plan)
        return plans

    def _finalize(self, current: Plan, draft: Plan, operation: str) -> Plan:
        updated = Plan.model_validate(draft.model_dump())
        for field in IMMUTABLE_FIELDS:
            if getattr(updated, field) != getattr(current, field):
                raise ImmutableFieldError(current.id, field, operation=operation)
        if updated.status != current.status and (current.status, updated.status) not in STATUS_EDGES:
            raise IllegalTransitionError(current.id, operation, current.status)
        updated.version = current.version + 1
        updated.updated_at = self.now_iso()
        return updated

    async def update(
        self,
        plan_id: str,
        mutator: Mutator,
        *,
        expected_version: Optional[int] = None,
        operation: str = "update",
    ) -> Plan:
        """Read-modify-write one plan.

        The current document is always read from disk. ``mutator`` gets a private
        copy and may edit it in place or return a replacement; anything it raises
        aborts the update before a byte is written. The new content goes to a temp
        file, the on-disk version is checked again, and only then is the temp file
        renamed over the plan. A version mismatch raises VersionConflictError and
        leaves the winner's document untouched.
        """
        path = self.plan_path(plan_id)
        current = self._read_disk(plan_id)
        if current is None:
            self.cache.invalidate(plan_id)
            raise PlanNotFoundError(plan_id, operation=operation)
        expected = current.version
        if expected_version is not None and expected_version != expected:
            self.cache.invalidate(plan_id)
            raise VersionConflictError(plan_id, expected_version, expected, operation=operation)

        draft = current.model_copy(deep=True)
        result = mutator(draft)
        if result is not None:
            draft = result
        updated = self._finalize(current, draft, operation)

        tmp_path = await asyncio.to_thread(self._write_temp, path, serialize_plan(updated))
        try:
            # no await between the version check and the replace
            on_disk = self._read_disk(plan_id)
            actual = on_disk.version if on_disk else None
            if actual != expected:
                self.cache.invalidate(plan_id)
                logger.warning(
                    "Plan %s %s lost the race: expected v%s, found v%s", plan_id, operation, expected, actual
                )
                raise VersionConflictError(plan_id, expected, actual, operation=operation)
            os.replace(tmp_path, path)
        finally:
            tmp_path.unlink(missing_ok=True)

        self.cache.put(updated)
        logger.debug("Plan %s %s committed v%d (%s)", plan_id, operation, updated.version, updated.status)
        return updated.model_copy(deep=True)
