"""
sysaidmin.plan.parser — Turn the model's plan JSON into a ``Plan``.

The document is validated as a whole through pydantic.  An unknown task
``type``, a missing required field or an empty task list rejects the entire
plan with ``PlanParseError``; no partially valid plan is ever produced.

Model output is often wrapped in a markdown code fence or surrounded by prose,
so the first balanced ``{...}`` object in the text is what gets parsed.
"""

from __future__ import annotations

import json
import uuid
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from sysaidmin.errors import PlanParseError
from sysaidmin.plan.models import CommandTask, FileEditTask, Plan, Task

# Characters of raw input echoed back in parse errors
_PREVIEW_CHARS = 300


# ---------------------------------------------------------------------------
# Wire schema
# ---------------------------------------------------------------------------


class _CommandEntry(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: Literal["command"]
    command: str = Field(min_length=1)
    rationale: str = ""


class _FileEditEntry(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: Literal["file_edit"]
    path: str = Field(min_length=1)
    content: str
    rationale: str = ""


_Entry = Annotated[Union[_CommandEntry, _FileEditEntry], Field(discriminator="type")]


class _PlanDocument(BaseModel):
    model_config = ConfigDict(extra="ignore")

    summary: str | None = None
    request_id: str | None = None
    tasks: list[_Entry] = Field(min_length=1)


# ---------------------------------------------------------------------------
# Text extraction
# ---------------------------------------------------------------------------


def _strip_code_fence(raw: str) -> str:
    text = raw.strip()
    if text.startswith("```"):
        first_newline = text.find("\n")
        text = text[first_newline + 1:] if first_newline != -1 else ""
        if text.rstrip().endswith("```"):
            text = text.rstrip()[:-3]
    return text.strip()


def _extract_json_object(text: str) -> str:
    """Return the first balanced ``{...}`` segment, ignoring braces in strings."""
    depth = 0
    start: int | None = None
    in_string = False
    escaped = False
    for idx, ch in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            if depth > 0:
                in_string = True
        elif ch == "{":
            if depth == 0:
                start = idx
            depth += 1
        elif ch == "}" and depth > 0:
            depth -= 1
            if depth == 0 and start is not None:
                return text[start:idx + 1]
    return text


def _format_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err["loc"]) or "<plan>"
        parts.append(f"{loc}: {err['msg']}")
    return "; ".join(parts)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def parse_plan(raw: str | bytes | dict[str, Any], request_id: str | None = None) -> Plan:
    """Parse and validate a plan document.

    Parameters
    ----------
    raw : str | bytes | dict
        The model's response text, or an already-decoded JSON object.
    request_id : str | None
        Identifier of the originating request.  Falls back to the document's
        ``request_id`` field, then to a fresh random id.

    Returns
    -------
    Plan
        The immutable plan, tasks numbered by position.

    Raises
    ------
    PlanParseError
        If the text holds no valid plan.
    """
    if isinstance(raw, dict):
        payload: Any = raw
    else:
        text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
        segment = _extract_json_object(_strip_code_fence(text))
        try:
            payload = json.loads(segment)
        except json.JSONDecodeError as exc:
            preview = " ".join(text.split())[:_PREVIEW_CHARS]
            raise PlanParseError(f"plan is not valid JSON ({exc.msg} at line {exc.lineno}). Snippet: {preview}") from exc

    if not isinstance(payload, dict):
        raise PlanParseError("plan must be a JSON object with a 'tasks' array")

    try:
        document = _PlanDocument.model_validate(payload)
    except ValidationError as exc:
        raise PlanParseError(f"invalid plan: {_format_validation_error(exc)}") from exc

    tasks: list[Task] = []
    for idx, entry in enumerate(document.tasks):
        if isinstance(entry, _CommandEntry):
            tasks.append(CommandTask(id=idx, command=entry.command, rationale=entry.rationale))
        else:
            tasks.append(
                FileEditTask(
                    id=idx,
                    path=entry.path,
                    new_content=entry.content.encode("utf-8"),
                    rationale=entry.rationale,
                )
            )

    return Plan(
        tasks=tuple(tasks),
        request_id=request_id or document.request_id or uuid.uuid4().hex[:12],
        summary=document.summary,
    )
