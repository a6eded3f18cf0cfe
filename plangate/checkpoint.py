import json
import logging
from pathlib import Path
from typing import List, Optional, Union

from pydantic import ValidationError

from .schemas import CheckpointRecord, utc_now

logger = logging.getLogger(__name__)

CHECKPOINT_SUFFIX = ".jsonl"


class CheckpointLog:
    """Append-only per-plan execution trail in ``plans/sessions/<plan-id>.jsonl``.

    One JSON object per line. Lines are only ever appended; the file is the
    forensic record of what an executor did before a crash, and is never read
    back into a Plan.
    """

    def __init__(self, sessions_dir: Union[str, Path]):
        self.sessions_dir = Path(sessions_dir)

    def path(self, plan_id: str) -> Path:
        return self.sessions_dir / f"{plan_id}{CHECKPOINT_SUFFIX}"

    def _append(self, record: CheckpointRecord) -> CheckpointRecord:
        self.sessions_dir.mkdir(parents=True, exist_ok=True)
        line = record.model_dump_json() + "\n"
        with self.path(record.plan_id).open("a", encoding="utf-8") as handle:
            handle.write(line)
            handle.flush()
        return record

    def log_start(self, plan_id: str, summary: str = "execution started") -> CheckpointRecord:
        return self._append(CheckpointRecord(plan_id=plan_id, step=None, status="started", summary=summary, ts=utc_now()))

    def log_step(self, plan_id: str, step_index: int, status: str, summary: str = "") -> CheckpointRecord:
        if step_index < 0:
            raise ValueError(f"step index must be >= 0, got {step_index}")
        return self._append(
            CheckpointRecord(plan_id=plan_id, step=step_index, status=status, summary=summary or "", ts=utc_now())
        )

    def log_end(self, plan_id: str, final_status: str, summary: str = "") -> CheckpointRecord:
        return self._append(
            CheckpointRecord(plan_id=plan_id, step=None, status=final_status, summary=summary or "", ts=utc_now())
        )

    def read(self, plan_id: str, limit: Optional[int] = None) -> List[CheckpointRecord]:
        path = self.path(plan_id)
        try:
            lines = path.read_text(encoding="utf-8").splitlines()
        except FileNotFoundError:
            return []
        records: List[CheckpointRecord] = []
        for lineno, line in enumerate(lines, start=1):
            if not line.strip():
                continue
            try:
                records.append(CheckpointRecord.model_validate(json.loads(line)))
            except (json.JSONDecodeError, ValidationError) as exc:
                # a crash mid-append can leave a torn final line
                logger.warning("Ignoring malformed checkpoint line %s:%d: %s", path, lineno, exc)
        if limit is not None:
            return records[-limit:]
        return records
