"""Structured-output contract shared by every agent backend.

Adapters only know how to get a JSON object out of their backend's envelope.
Turning that object into a ReviewerResult or RevieweeResult happens here, once,
so every backend is held to the same rules:

  - required fields must be present and of the right type
  - action / status / severity must be one of the enumerated values;
    anything else is a DecodeError, never a silent default
  - line numbers must be integers >= 1
  - each reviewee status must carry its companion field

Decoding is total: callers get a fully valid result or a DecodeError.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import ClassVar, Union

from prrally_core.errors import DecodeError


class Role(str, Enum):
    REVIEWER = "reviewer"
    REVIEWEE = "reviewee"


class ReviewAction(str, Enum):
    APPROVE = "approve"
    REQUEST_CHANGES = "request_changes"
    COMMENT = "comment"


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    BLOCKING = "blocking"


class RevieweeStatus(str, Enum):
    COMPLETED = "completed"
    NEEDS_CLARIFICATION = "needs_clarification"
    NEEDS_PERMISSION = "needs_permission"
    FAILED = "failed"


@dataclass(frozen=True)
class ReviewComment:
    path: str
    line: int  # new-side line number, 1-based
    body: str
    severity: Severity


@dataclass(frozen=True)
class PermissionRequest:
    action: str
    reason: str


@dataclass(frozen=True)
class ReviewerResult:
    action: ReviewAction
    summary: str
    comments: list[ReviewComment] = field(default_factory=list)
    blocking_issues: list[str] = field(default_factory=list)

    @property
    def is_approval(self) -> bool:
        """True only for an approval with no blocking issues.

        A backend that declares approval while listing blockers is treated as
        requesting changes.
        """
        return self.action is ReviewAction.APPROVE and not self.blocking_issues


@dataclass(frozen=True)
class RevieweeCompleted:
    status: ClassVar[RevieweeStatus] = RevieweeStatus.COMPLETED

    summary: str
    files_modified: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class RevieweeNeedsClarification:
    status: ClassVar[RevieweeStatus] = RevieweeStatus.NEEDS_CLARIFICATION

    summary: str
    question: str
    files_modified: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class RevieweeNeedsPermission:
    status: ClassVar[RevieweeStatus] = RevieweeStatus.NEEDS_PERMISSION

    summary: str
    permission_request: PermissionRequest
    files_modified: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class RevieweeFailed:
    status: ClassVar[RevieweeStatus] = RevieweeStatus.FAILED

    summary: str
    error_details: str
    files_modified: list[str] = field(default_factory=list)


RevieweeResult = Union[RevieweeCompleted, RevieweeNeedsClarification, RevieweeNeedsPermission, RevieweeFailed]
AgentResult = Union[ReviewerResult, RevieweeResult]


# ---------------------------------------------------------------------------
# JSON schemas handed to backends that support schema-constrained output
# ---------------------------------------------------------------------------

REVIEWER_SCHEMA: dict = {
    "type": "object",
    "properties": {
        "action": {"type": "string", "enum": [a.value for a in ReviewAction]},
        "summary": {"type": "string"},
        "comments": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "path": {"type": "string"},
                    "line": {"type": "integer", "minimum": 1},
                    "body": {"type": "string"},
                    "severity": {"type": "string", "enum": [s.value for s in Severity]},
                },
                "required": ["path", "line", "body", "severity"],
                "additionalProperties": False,
            },
        },
        "blocking_issues": {"type": "array", "items": {"type": "string"}},
    },
    "required": ["action", "summary", "comments", "blocking_issues"],
    "additionalProperties": False,
}

REVIEWEE_SCHEMA: dict = {
    "type": "object",
    "properties": {
        "status": {"type": "string", "enum": [s.value for s in RevieweeStatus]},
        "summary": {"type": "string"},
        "files_modified": {"type": "array", "items": {"type": "string"}},
        "question": {"type": ["string", "null"]},
        "permission_request": {
            "type": ["object", "null"],
            "properties": {
                "action": {"type": "string"},
                "reason": {"type": "string"},
            },
            "required": ["action", "reason"],
            "additionalProperties": False,
        },
        "error_details": {"type": ["string", "null"]},
    },
    "required": ["status", "summary", "files_modified", "question", "permission_request", "error_details"],
    "additionalProperties": False,
}


def schema_for(role: Role) -> dict:
    return REVIEWER_SCHEMA if role is Role.REVIEWER else REVIEWEE_SCHEMA


# ---------------------------------------------------------------------------
# Text → JSON object
# ---------------------------------------------------------------------------

_FENCE_RE = re.compile(r"```(?:json)?\s*\n(.*?)\n\s*```", re.DOTALL)


def extract_json_block(text: str) -> dict:
    """Return the structured JSON object embedded in an agent's free-text reply.

    Tries, in order: the whole text, the last ```json fenced block, and the
    outermost ``{...}`` span. Raises DecodeError if none of them is a JSON object.
    """
    stripped = text.strip()
    candidates = [stripped]
    candidates.extend(reversed(_FENCE_RE.findall(stripped)))
    start, end = stripped.find("{"), stripped.rfind("}")
    if start != -1 and end > start:
        candidates.append(stripped[start : end + 1])

    for candidate in candidates:
        try:
            value = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(value, dict):
            return value
    raise DecodeError("No JSON object found in agent reply", raw=text)


# ---------------------------------------------------------------------------
# JSON object → validated result
# ---------------------------------------------------------------------------


def _require(payload: dict, key: str, kind: type, raw: str):
    if key not in payload:
        raise DecodeError(f"Missing required field {key!r}", raw=raw)
    value = payload[key]
    # bool is an int subclass; a boolean is never a valid line or count.
    if not isinstance(value, kind) or (kind is int and isinstance(value, bool)):
        raise DecodeError(f"Field {key!r} must be {kind.__name__}, got {type(value).__name__}", raw=raw)
    return value


def _optional_str(payload: dict, key: str, raw: str) -> str | None:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise DecodeError(f"Field {key!r} must be a string or null", raw=raw)
    return value


def _enum(enum_cls, value: str, key: str, raw: str):
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(e.value for e in enum_cls)
        raise DecodeError(f"Invalid {key} {value!r}; expected one of: {allowed}", raw=raw)


def _string_list(payload: dict, key: str, raw: str) -> list[str]:
    items = _require(payload, key, list, raw)
    if not all(isinstance(item, str) for item in items):
        raise DecodeError(f"Field {key!r} must be a list of strings", raw=raw)
    return list(items)


def _decode_comment(item, raw: str) -> ReviewComment:
    if not isinstance(item, dict):
        raise DecodeError("Review comment must be an object", raw=raw)
    line = _require(item, "line", int, raw)
    if line < 1:
        raise DecodeError(f"Review comment line must be >= 1, got {line}", raw=raw)
    return ReviewComment(
        path=_require(item, "path", str, raw),
        line=line,
        body=_require(item, "body", str, raw),
        severity=_enum(Severity, _require(item, "severity", str, raw), "severity", raw),
    )


def decode_reviewer(payload: dict, raw: str = "") -> ReviewerResult:
    raw = raw or json.dumps(payload)
    action = _enum(ReviewAction, _require(payload, "action", str, raw), "action", raw)
    comments = [_decode_comment(item, raw) for item in _require(payload, "comments", list, raw)]
    return ReviewerResult(
        action=action,
        summary=_require(payload, "summary", str, raw),
        comments=comments,
        blocking_issues=_string_list(payload, "blocking_issues", raw),
    )


def decode_reviewee(payload: dict, raw: str = "") -> RevieweeResult:
    raw = raw or json.dumps(payload)
    status = _enum(RevieweeStatus, _require(payload, "status", str, raw), "status", raw)
    summary = _require(payload, "summary", str, raw)
    files_modified = _string_list(payload, "files_modified", raw)

    if status is RevieweeStatus.COMPLETED:
        return RevieweeCompleted(summary=summary, files_modified=files_modified)

    if status is RevieweeStatus.NEEDS_CLARIFICATION:
        question = _optional_str(payload, "question", raw)
        if not question:
            raise DecodeError("Status needs_clarification requires a question", raw=raw)
        return RevieweeNeedsClarification(summary=summary, question=question, files_modified=files_modified)

    if status is RevieweeStatus.NEEDS_PERMISSION:
        request = payload.get("permission_request")
        if not isinstance(request, dict):
            raise DecodeError("Status needs_permission requires a permission_request", raw=raw)
        permission = PermissionRequest(
            action=_require(request, "action", str, raw),
            reason=_require(request, "reason", str, raw),
        )
        return RevieweeNeedsPermission(summary=summary, permission_request=permission, files_modified=files_modified)

    error_details = _optional_str(payload, "error_details", raw)
    if not error_details:
        raise DecodeError("Status failed requires error_details", raw=raw)
    return RevieweeFailed(summary=summary, error_details=error_details, files_modified=files_modified)


def decode_result(payload: dict, role: Role, raw: str = "") -> AgentResult:
    if role is Role.REVIEWER:
        return decode_reviewer(payload, raw)
    return decode_reviewee(payload, raw)
