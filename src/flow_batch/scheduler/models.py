"""Domain models for batch task scheduling and remote flow responses."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any
from uuid import uuid4

from flow_batch.scheduler.errors import InvalidTransitionError

CREDITS_SCALE = 1_000_000
_ROW_INPUT_EXCLUDED_COLUMN = "filename"
_COLUMN_NAME_STRIP_CHARS = ("{", "}", "[", "]", '"', "'")


def utc_now() -> datetime:
    """Current UTC timestamp."""

    return datetime.now(tz=UTC)


class TaskStatus(str, Enum):
    """Per-task lifecycle states."""

    WAITING = "waiting"
    PENDING = "pending"
    QUEUED = "queued"
    DONE = "done"
    FAILED = "failed"
    SKIPPED = "skipped"


class ExecutionMode(str, Enum):
    """Remote invocation protocol used for every task of a batch."""

    NORMAL = "normal"
    SINGLETON = "singleton"
    WITH_SESSION = "with_session"


class TimeoutPolicy(str, Enum):
    """What happens to a running task that exhausted its poll budget."""

    RETRY = "retry"
    MARK_AS_ERROR = "mark_as_error"


class RemoteOutcome(str, Enum):
    """Normalized remote status vocabulary."""

    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    UNKNOWN = "unknown"


_TERMINAL_STATUSES = frozenset({TaskStatus.DONE, TaskStatus.FAILED, TaskStatus.SKIPPED})

_ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.WAITING: frozenset({TaskStatus.QUEUED, TaskStatus.SKIPPED, TaskStatus.FAILED}),
    TaskStatus.PENDING: frozenset({TaskStatus.QUEUED, TaskStatus.SKIPPED, TaskStatus.FAILED}),
    TaskStatus.QUEUED: frozenset({TaskStatus.DONE, TaskStatus.FAILED, TaskStatus.PENDING}),
    TaskStatus.DONE: frozenset({TaskStatus.WAITING}),
    TaskStatus.FAILED: frozenset({TaskStatus.WAITING}),
    TaskStatus.SKIPPED: frozenset(),
}

_SUCCESS_STATUSES = frozenset({"SUCCESS", "DONE", "COMPLETED", "CACHED"})
_FAILURE_STATUSES = frozenset({"FAILED", "ERROR"})


def classify_remote_status(status: str | None) -> RemoteOutcome:
    """Map a remote status string onto the normalized outcome vocabulary."""

    normalized = (status or "").strip().upper()
    if normalized == "PENDING":
        return RemoteOutcome.PENDING
    if normalized in _SUCCESS_STATUSES:
        return RemoteOutcome.SUCCEEDED
    if normalized in _FAILURE_STATUSES:
        return RemoteOutcome.FAILED
    return RemoteOutcome.UNKNOWN


@dataclass(slots=True)
class StatusHistoryEntry:
    """One audit entry in a task's status log."""

    timestamp: datetime
    status: TaskStatus
    raw_response: str | None = None


@dataclass(slots=True)
class TaskRecord:
    """Mutable state of one unit of work in a batch.

    Mutated only by the dispatcher's control flow. ``flow_input`` is the payload
    sent to the remote flow; when the task comes from tabular data, ``row_data``
    is its source of truth and ``regenerate_input`` rebuilds the payload.
    """

    flow_input: dict[str, str]
    id: str = field(default_factory=lambda: str(uuid4()))
    row_data: dict[str, str] = field(default_factory=dict)
    output_name: str | None = None
    status: TaskStatus = TaskStatus.WAITING
    remote_task_id: str | None = None
    remote_session_id: str | None = None
    result: str | None = None
    error: str | None = None
    credits: float | None = None
    raw_output: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    cancel_requested: bool = False
    processed_event_ids: set[str] = field(default_factory=set)
    status_history: list[StatusHistoryEntry] = field(default_factory=list)
    session_events: list[dict[str, Any]] = field(default_factory=list)
    session_cursor: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in _TERMINAL_STATUSES

    @property
    def remote_id(self) -> str | None:
        """Identifier used to poll the remote service for this task."""

        return self.remote_session_id or self.remote_task_id

    def transition(
        self,
        status: TaskStatus,
        *,
        now: datetime,
        raw_response: str | None = None,
    ) -> None:
        """Move to ``status`` along an allowed edge and log it."""

        if status not in _ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(self.id, self.status.value, status.value)
        if status == TaskStatus.QUEUED and self.remote_id is None:
            raise InvalidTransitionError(self.id, self.status.value, status.value)
        self.status = status
        self.status_history.append(
            StatusHistoryEntry(timestamp=now, status=status, raw_response=raw_response),
        )

    def record_observation(self, *, now: datetime, raw_response: str | None) -> None:
        """Log a remote response that did not change the task status."""

        self.status_history.append(
            StatusHistoryEntry(timestamp=now, status=self.status, raw_response=raw_response),
        )

    def reset_for_user_retry(self, *, now: datetime) -> None:
        """Reset a finished task so the next run submits it again."""

        self.transition(TaskStatus.WAITING, now=now)
        self._clear_attempt_state()
        self.result = None
        self.credits = None

    def reset_for_timeout_retry(self, *, now: datetime) -> None:
        """Return a timed-out task to the queue with a clean remote identity."""

        self.transition(TaskStatus.PENDING, now=now)
        self._clear_attempt_state()

    def _clear_attempt_state(self) -> None:
        self.remote_task_id = None
        self.remote_session_id = None
        self.start_time = None
        self.end_time = None
        self.error = None
        self.cancel_requested = False
        self.session_events = []
        self.session_cursor = 0

    def duration(self, now: datetime | None = None) -> timedelta | None:
        """Elapsed time, measured up to ``now`` while the task is running."""

        if self.start_time is None:
            return None
        end = self.end_time or now or utc_now()
        return end - self.start_time

    @property
    def duration_formatted(self) -> str:
        elapsed = self.duration()
        if elapsed is None:
            return "-"
        total = int(elapsed.total_seconds())
        hours, remainder = divmod(total, 3600)
        minutes, seconds = divmod(remainder, 60)
        if hours > 0:
            return f"{hours}h {minutes}m {seconds}s"
        if minutes > 0:
            return f"{minutes}m {seconds}s"
        return f"{seconds}s"

    @property
    def duration_decimal(self) -> str:
        elapsed = self.duration()
        if elapsed is None:
            return "-"
        return f"{elapsed.total_seconds():.1f}s"

    def format_row_data_as_input(self) -> str:
        """Render row data as ``column: value`` lines for the flow prompt."""

        if not self.row_data:
            return self.flow_input.get("input", "")
        lines = []
        for column, value in self.row_data.items():
            if column.lower() == _ROW_INPUT_EXCLUDED_COLUMN:
                continue
            lines.append(f"{_sanitize_column_name(column)}: {value}")
        return "\n".join(lines)

    def regenerate_input(self) -> None:
        """Rebuild the flow input from row data after the row was edited."""

        if self.row_data:
            self.flow_input = {**self.flow_input, "input": self.format_row_data_as_input()}

    def to_dict(self) -> dict[str, Any]:
        """JSON-friendly snapshot for reporting."""

        return {
            "id": self.id,
            "flow_input": dict(self.flow_input),
            "row_data": dict(self.row_data),
            "output_name": self.output_name,
            "status": self.status.value,
            "remote_task_id": self.remote_task_id,
            "remote_session_id": self.remote_session_id,
            "result": self.result,
            "error": self.error,
            "credits": self.credits,
            "raw_output": self.raw_output,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "processed_event_ids": sorted(self.processed_event_ids),
            "status_history": [
                {
                    "timestamp": entry.timestamp.isoformat(),
                    "status": entry.status.value,
                    "raw_response": entry.raw_response,
                }
                for entry in self.status_history
            ],
        }


def _sanitize_column_name(name: str) -> str:
    for char in _COLUMN_NAME_STRIP_CHARS:
        name = name.replace(char, "")
    return name.strip()


@dataclass(slots=True)
class RemoteTaskResponse:
    """Response of an invoke or status-check call in poll mode."""

    id: str | None
    status: str | None
    result: Any = None
    error_message: str | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> RemoteTaskResponse:
        task_id = payload.get("id") or payload.get("task_id")
        status = payload.get("status")
        error_message = payload.get("error_message")
        return cls(
            id=str(task_id) if task_id is not None else None,
            status=str(status) if status is not None else None,
            result=payload.get("result"),
            error_message=str(error_message) if error_message is not None else None,
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status,
            "result": self.result,
            "error_message": self.error_message,
        }

    @property
    def outcome(self) -> RemoteOutcome:
        return classify_remote_status(self.status)

    @property
    def answer(self) -> str | None:
        """The flow's answer text, taken from the result's ``ai_answer`` field."""

        result_map = _result_mapping(self.result)
        if result_map is None:
            # Plain-text results are the answer itself.
            return self.result if isinstance(self.result, str) else None
        answer = result_map.get("ai_answer")
        return str(answer) if answer is not None else None

    @property
    def credits(self) -> float | None:
        result_map = _result_mapping(self.result)
        if result_map is None:
            return None
        value = result_map.get("credits")
        if isinstance(value, bool) or not isinstance(value, int | float):
            return None
        return value / CREDITS_SCALE


def _result_mapping(result: Any) -> dict[str, Any] | None:
    if isinstance(result, dict):
        return result
    if isinstance(result, str):
        try:
            decoded = json.loads(result)
        except ValueError:
            return None
        if isinstance(decoded, dict):
            return decoded
    return None


@dataclass(slots=True)
class SessionHandle:
    """Result of session creation."""

    session_id: str | None


@dataclass(slots=True)
class SessionEvent:
    """One incremental event streamed by a flow session."""

    event_id: str | None
    event_type: str | None
    action_type: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    credits: float | None = None
    created_at_timestamp: int | None = None
    payload: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> SessionEvent:
        metadata = payload.get("metadata")
        credits = payload.get("credits")
        event_id = payload.get("event_id")
        return cls(
            event_id=str(event_id) if event_id is not None else None,
            event_type=payload.get("event_type"),
            action_type=payload.get("action_type"),
            metadata=metadata if isinstance(metadata, dict) else {},
            credits=float(credits) if isinstance(credits, int | float) else None,
            created_at_timestamp=_parse_timestamp(payload.get("created_at_timestamp")),
            payload=dict(payload),
        )

    def to_payload(self) -> dict[str, Any]:
        if self.payload:
            return dict(self.payload)
        return {
            "event_id": self.event_id,
            "event_type": self.event_type,
            "action_type": self.action_type,
            "metadata": self.metadata,
            "credits": self.credits,
            "created_at_timestamp": self.created_at_timestamp,
        }


@dataclass(slots=True)
class SessionPollResponse:
    """One page of session events and the cursor to continue from."""

    events: list[SessionEvent] = field(default_factory=list)
    last_timestamp: int | None = None
    has_more: bool = False

    @classmethod
    def from_payload(cls, payload: Any) -> SessionPollResponse:
        """Accept either a bare list of events or an object with ``messages``."""

        if isinstance(payload, list):
            events = [SessionEvent.from_payload(item) for item in payload if isinstance(item, dict)]
            last_timestamp = events[-1].created_at_timestamp if events else None
            return cls(events=events, last_timestamp=last_timestamp, has_more=False)
        if isinstance(payload, dict):
            raw_messages = payload.get("messages") or []
            return cls(
                events=[
                    SessionEvent.from_payload(item) for item in raw_messages if isinstance(item, dict)
                ],
                last_timestamp=_parse_timestamp(payload.get("last_timestamp")),
                has_more=bool(payload.get("has_more", False)),
            )
        raise ValueError(f"Unexpected session response type: {type(payload).__name__}")


def _parse_timestamp(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None
