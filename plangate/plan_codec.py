"""Markdown plan documents: a YAML header block followed by body sections.

Layout::

    ---
    id: PLAN-1a2b3c4d
    title: Send invoice reminder
    status: proposed
    version: 1
    ...
    ---

    # Send invoice reminder

    ## Steps

    1. Read invoice
       - tool: odoo-toolbox
       - operation: read
       - target: INV-2024-0847

    ## Result
    ## Context
    ## Notes

Free text that contains a line equal to one of the reserved section headings
is written with a leading backslash on that line and unescaped on read.
"""
import re
from typing import Any, Dict, List, Optional, Tuple

import yaml
from pydantic import ValidationError

from .errors import PlanParseError
from .schemas import Plan, PlanStep

HEADER_DELIMITER = "---"
STEPS_HEADING = "## Steps"
RESULT_HEADING = "## Result"
CONTEXT_HEADING = "## Context"
NOTES_HEADING = "## Notes"
SECTION_HEADINGS = (STEPS_HEADING, RESULT_HEADING, CONTEXT_HEADING, NOTES_HEADING)

HEADER_FIELDS = (
    "id",
    "title",
    "status",
    "version",
    "created_at",
    "updated_at",
    "planner_model",
    "executor_model",
    "tools_required",
    "execution_session",
    "execution_started_at",
    "execution_ended_at",
    "scripts",
)

_STEP_RE = re.compile(r"^(\d+)\.\s(.*)$")
_STEP_ATTR_RE = re.compile(r"^\s+-\s(tool|operation|target):\s?(.*)$")
_ESCAPED_RE = re.compile(r"^(\\+)(## .*)$")


def _escape(text: str) -> str:
    lines = []
    for line in text.split("\n"):
        if line.lstrip("\\") in SECTION_HEADINGS:
            line = "\\" + line
        lines.append(line)
    return "\n".join(lines)


def _unescape(text: str) -> str:
    lines = []
    for line in text.split("\n"):
        match = _ESCAPED_RE.match(line)
        if match and match.group(2) in SECTION_HEADINGS:
            line = line[1:]
        lines.append(line)
    return "\n".join(lines)


def _render_steps(steps: List[PlanStep]) -> str:
    lines: List[str] = []
    for idx, step in enumerate(steps, start=1):
        lines.append(f"{idx}. {step.description}")
        lines.append(f"   - tool: {step.tool}")
        lines.append(f"   - operation: {step.operation}")
        if step.target:
            lines.append(f"   - target: {step.target}")
    return "\n".join(lines)


def serialize_plan(plan: Plan) -> str:
    data = plan.model_dump(mode="json")
    header: Dict[str, Any] = {}
    for key in HEADER_FIELDS:
        value = data.get(key)
        if value is None:
            continue
        if key == "scripts":
            value = [{k: v for k, v in item.items() if v is not None} for item in value]
        header[key] = value
    header_text = yaml.safe_dump(header, sort_keys=False, allow_unicode=True, default_flow_style=False, width=4096)

    parts = [HEADER_DELIMITER, header_text.rstrip("\n"), HEADER_DELIMITER, "", f"# {plan.title}", ""]
    parts.extend([STEPS_HEADING, ""])
    if plan.steps:
        parts.extend([_render_steps(plan.steps), ""])
    for heading, value in (
        (RESULT_HEADING, plan.result_summary),
        (CONTEXT_HEADING, plan.context),
        (NOTES_HEADING, plan.body),
    ):
        if value:
            parts.extend([heading, "", _escape(value), ""])
    return "\n".join(parts)


def _split_header(text: str) -> Tuple[Dict[str, Any], str]:
    normalized = text.replace("\r\n", "\n")
    if not normalized.startswith(HEADER_DELIMITER + "\n"):
        raise PlanParseError("missing header block")
    end = normalized.find("\n" + HEADER_DELIMITER + "\n", len(HEADER_DELIMITER))
    if end == -1:
        if normalized.rstrip("\n").endswith("\n" + HEADER_DELIMITER):
            end = normalized.rstrip("\n").rfind("\n" + HEADER_DELIMITER)
        else:
            raise PlanParseError("unterminated header block")
    raw_header = normalized[len(HEADER_DELIMITER) + 1 : end]
    body = normalized[end + len(HEADER_DELIMITER) + 2 :]
    try:
        header = yaml.safe_load(raw_header) or {}
    except yaml.YAMLError as exc:
        raise PlanParseError(f"invalid header: {exc}") from exc
    if not isinstance(header, dict):
        raise PlanParseError("header is not a mapping")
    return header, body


def _split_sections(body: str) -> Dict[str, str]:
    sections: Dict[str, List[str]] = {}
    current: Optional[str] = None
    for line in body.split("\n"):
        if line in SECTION_HEADINGS:
            current = line
            sections[current] = []
            continue
        if current is not None:
            sections[current].append(line)
    return {heading: "\n".join(lines).strip() for heading, lines in sections.items()}


def _parse_steps(text: str) -> List[Dict[str, Any]]:
    steps: List[Dict[str, Any]] = []
    for line in text.split("\n"):
        if not line.strip():
            continue
        match = _STEP_RE.match(line)
        if match:
            steps.append({"description": match.group(2)})
            continue
        attr = _STEP_ATTR_RE.match(line)
        if attr and steps:
            steps[-1][attr.group(1)] = attr.group(2)
            continue
        raise PlanParseError(f"unrecognized step line: {line!r}")
    return steps


def parse_plan(text: str, *, path: Optional[str] = None) -> Plan:
    header, body = _split_header(text)
    sections = _split_sections(body)
    data = {key: header[key] for key in HEADER_FIELDS if key in header}
    data["steps"] = _parse_steps(sections.get(STEPS_HEADING, ""))
    data["result_summary"] = _unescape(sections[RESULT_HEADING]) if RESULT_HEADING in sections else None
    data["context"] = _unescape(sections[CONTEXT_HEADING]) if CONTEXT_HEADING in sections else None
    data["body"] = _unescape(sections[NOTES_HEADING]) if NOTES_HEADING in sections else None
    try:
        return Plan.model_validate(data)
    except ValidationError as exc:
        raise PlanParseError(str(exc), plan_id=header.get("id"), path=path) from exc
