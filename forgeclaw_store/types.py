"""Public domain types of the store.

These are plain value types with no database concerns. Group, channel and
task identifiers are carried as strings.
"""

from __future__ import annotations

import enum
import json
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Union

from forgeclaw_store.errors import SerializationError

__all__ = [
    "Cursor",
    "EventFilter",
    "NewEvent",
    "NewMessage",
    "NewTask",
    "RegisteredGroup",
    "RunFailure",
    "RunOutcome",
    "RunSuccess",
    "ScheduleKind",
    "StoredEvent",
    "StoredMessage",
    "StoredTask",
    "TaskRunResult",
    "TaskStatus",
    "UnknownScheduleKind",
    "UnknownTaskStatus",
]


# ----- Messages -----


@dataclass(frozen=True)
class NewMessage:
    """A message to be written to the store.

    ``id`` is a caller-generated correlation key, not a sort key; the store
    assigns a monotonic ``seq`` on insert. ``created_at`` may be backdated
    and does not drive pagination.
    """

    id: str
    group_id: str
    channel_id: str
    sender: str
    content: str
    created_at: datetime


@dataclass(frozen=True)
class StoredMessage:
    """A message row returned by the store, with its store-assigned ``seq``."""

    seq: int
    id: str
    group_id: str
    channel_id: str
    sender: str
    content: str
    created_at: datetime


@dataclass(frozen=True)
class Cursor:
    """Exclusive cursor over message ``seq``: reads return rows with ``seq > cursor.seq``."""

    seq: int = 0

    @classmethod
    def beginning(cls) -> Cursor:
        """A cursor before every row; the first assigned ``seq`` is at least 1."""
        return cls(seq=0)

    @classmethod
    def after(cls, seq: int) -> Cursor:
        """A cursor that resumes immediately after the row with ``seq``."""
        return cls(seq=seq)


# ----- Groups -----


@dataclass(frozen=True)
class RegisteredGroup:
    """A registered group; ``config_json`` is an opaque caller-owned snapshot."""

    id: str
    display_name: str
    config_json: str
    active: bool
    created_at: datetime
    updated_at: datetime


# ----- Events -----


@dataclass(frozen=True)
class NewEvent:
    """An event to append to the audit log; ``payload`` is opaque JSON text."""

    kind: str
    group_id: str | None
    payload: str
    created_at: datetime


@dataclass(frozen=True)
class StoredEvent:
    """An audit-log row returned by the store."""

    id: str
    kind: str
    group_id: str | None
    payload: str
    created_at: datetime


@dataclass(frozen=True)
class EventFilter:
    """Optional AND-ed conditions for listing events; the default matches all."""

    kind: str | None = None
    group_id: str | None = None
    since: datetime | None = None


# ----- Tasks -----


class UnknownScheduleKind(ValueError):
    """A schedule kind the store does not understand."""

    def __init__(self, value: str) -> None:
        self.value = value
        super().__init__(f"unknown schedule kind: {value}")


class UnknownTaskStatus(ValueError):
    """A task status the store does not understand."""

    def __init__(self, value: str) -> None:
        self.value = value
        super().__init__(f"unknown task status: {value}")


class ScheduleKind(enum.Enum):
    """How a task is scheduled; the value is the stored column text."""

    CRON = "cron"
    INTERVAL = "interval"
    ONCE = "once"

    def __str__(self) -> str:
        return self.value

    @classmethod
    def parse(cls, text: str) -> ScheduleKind:
        """Parse the canonical lowercase form, raising :class:`UnknownScheduleKind`."""
        for member in cls:
            if member.value == text:
                return member
        raise UnknownScheduleKind(text)


class TaskStatus(enum.Enum):
    """Task lifecycle status; the value is the stored column text."""

    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"

    def __str__(self) -> str:
        return self.value

    @classmethod
    def parse(cls, text: str) -> TaskStatus:
        """Parse the canonical lowercase form, raising :class:`UnknownTaskStatus`."""
        for member in cls:
            if member.value == text:
                return member
        raise UnknownTaskStatus(text)


@dataclass(frozen=True)
class NewTask:
    """A scheduled task to insert; ``next_run`` is None for manual-only tasks."""

    group_id: str
    prompt: str
    schedule_kind: ScheduleKind
    schedule_value: str
    status: TaskStatus
    next_run: datetime | None = None


@dataclass(frozen=True)
class StoredTask:
    """A task row; ``last_result`` is the JSON of the latest :class:`TaskRunResult`."""

    id: str
    group_id: str
    prompt: str
    schedule_kind: ScheduleKind
    schedule_value: str
    status: TaskStatus
    next_run: datetime | None
    last_result: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class RunSuccess:
    """The task succeeded, with optional detail."""

    detail: str | None = None


@dataclass(frozen=True)
class RunFailure:
    """The task failed with ``error``."""

    error: str


RunOutcome = Union[RunSuccess, RunFailure]


_TIMESTAMP_RE = re.compile(
    r"^(?P<base>\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})"
    r"(?:\.(?P<frac>\d{1,9}))?"
    r"(?P<tz>Z|z|[+-]\d{2}:\d{2})$"
)


def _format_timestamp(value: datetime) -> str:
    if value.tzinfo is None or value.utcoffset() is None:
        raise SerializationError("timestamp must be timezone-aware")
    utc = value.astimezone(timezone.utc)
    base = utc.strftime("%Y-%m-%dT%H:%M:%S")
    micros = utc.microsecond
    if micros == 0:
        frac = ""
    elif micros % 1000 == 0:
        frac = f".{micros // 1000:03d}"
    else:
        frac = f".{micros:06d}"
    return f"{base}{frac}Z"


def _parse_timestamp(text: Any, field: str) -> datetime:
    if not isinstance(text, str):
        raise SerializationError(f"{field}: expected a timestamp string")
    match = _TIMESTAMP_RE.match(text)
    if match is None:
        raise SerializationError(f"{field}: invalid timestamp {text!r}")
    frac = (match.group("frac") or "").ljust(6, "0")[:6]
    tz = match.group("tz")
    offset = "+00:00" if tz in ("Z", "z") else tz
    try:
        parsed = datetime.fromisoformat(f"{match.group('base')}.{frac}{offset}")
    except ValueError as exc:
        raise SerializationError(f"{field}: {exc}") from None
    return parsed.astimezone(timezone.utc)


def _optional_timestamp(value: Any, field: str) -> datetime | None:
    return None if value is None else _parse_timestamp(value, field)


def _outcome_to_dict(outcome: RunOutcome) -> dict[str, Any]:
    if isinstance(outcome, RunSuccess):
        return {"kind": "success", "detail": outcome.detail}
    if isinstance(outcome, RunFailure):
        return {"kind": "failure", "error": outcome.error}
    raise SerializationError(f"unsupported run outcome: {outcome!r}")


def _outcome_from_dict(data: Any) -> RunOutcome:
    if not isinstance(data, dict):
        raise SerializationError("outcome: expected an object")
    kind = data.get("kind")
    if kind == "success":
        detail = data.get("detail")
        if detail is not None and not isinstance(detail, str):
            raise SerializationError("outcome.detail: expected a string or null")
        return RunSuccess(detail=detail)
    if kind == "failure":
        error = data.get("error")
        if not isinstance(error, str):
            raise SerializationError("outcome.error: expected a string")
        return RunFailure(error=error)
    raise SerializationError(f"outcome: unknown kind {kind!r}")


@dataclass(frozen=True)
class TaskRunResult:
    """Outcome of one task run and the scheduling fields that follow from it."""

    ran_at: datetime
    outcome: RunOutcome
    next_run: datetime | None
    status: TaskStatus

    def to_json(self) -> str:
        """Encode as compact JSON with an internally tagged ``outcome``."""
        document = {
            "ran_at": _format_timestamp(self.ran_at),
            "outcome": _outcome_to_dict(self.outcome),
            "next_run": None
            if self.next_run is None
            else _format_timestamp(self.next_run),
            "status": self.status.value,
        }
        return json.dumps(document, separators=(",", ":"))

    @classmethod
    def from_json(cls, text: str) -> TaskRunResult:
        """Decode JSON produced by :meth:`to_json`, raising :class:`SerializationError`."""
        try:
            data = json.loads(text)
        except (json.JSONDecodeError, TypeError) as exc:
            raise SerializationError(exc) from None
        if not isinstance(data, dict):
            raise SerializationError("expected a JSON object")
        if "ran_at" not in data or "outcome" not in data or "status" not in data:
            raise SerializationError("missing required field")
        status_text = data["status"]
        if not isinstance(status_text, str):
            raise SerializationError("status: expected a string")
        try:
            status = TaskStatus.parse(status_text)
        except UnknownTaskStatus as exc:
            raise SerializationError(exc) from None
        return cls(
            ran_at=_parse_timestamp(data["ran_at"], "ran_at"),
            outcome=_outcome_from_dict(data["outcome"]),
            next_run=_optional_timestamp(data.get("next_run"), "next_run"),
            status=status,
        )