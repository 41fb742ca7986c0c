"""Incremental event ingestion for session-mode tasks.

A session streams events through a cursor (``from_timestamp``). The server may
re-deliver the event at the cursor boundary, so every event is deduplicated by
id before it touches the task. Accepted events accumulate on the task and are
serialized into ``raw_output`` on every update, which makes partial progress
visible before a terminal event arrives.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from flow_batch.scheduler.models import (
    CREDITS_SCALE,
    SessionEvent,
    SessionPollResponse,
    TaskRecord,
)

logger = logging.getLogger(__name__)

SUCCESS_EVENT_TYPE = "ai"
ERROR_EVENT_TYPE = "error"
CANCEL_EVENT_TYPE = "system"
CANCEL_ACTION_TYPE = "cancelled"
CANCELLED_ERROR = "Task cancelled by user"


class SessionOutcome(str, Enum):
    """Terminal result detected in a session event stream."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(slots=True)
class SessionIngestResult:
    """What one poll page contributed to a task."""

    new_events: int
    duplicate_events: int
    outcome: SessionOutcome | None = None
    result: str | None = None
    error: str | None = None
    credits: float | None = None


class SessionEventProcessor:
    """Applies session event pages to task records exactly once per event id."""

    def ingest(self, task: TaskRecord, response: SessionPollResponse) -> SessionIngestResult:
        """Record new events, advance the cursor and detect a terminal event.

        The first terminal event on the page wins; later events are still
        recorded for audit but cannot change the outcome.
        """

        summary = SessionIngestResult(new_events=0, duplicate_events=0)
        for event in response.events:
            if event.event_id is not None:
                if event.event_id in task.processed_event_ids:
                    summary.duplicate_events += 1
                    continue
                task.processed_event_ids.add(event.event_id)
            task.session_events.append(event.to_payload())
            summary.new_events += 1
            if summary.outcome is None:
                _apply_terminal(summary, event)

        if summary.new_events:
            task.raw_output = serialize_events(task.session_events)
        if response.last_timestamp is not None:
            task.session_cursor = response.last_timestamp
        if summary.duplicate_events:
            logger.debug(
                "Session %s: ignored %d duplicate event(s)",
                task.remote_session_id,
                summary.duplicate_events,
            )
        return summary

    def cancel(self, task: TaskRecord, *, now: datetime) -> None:
        """Append a synthetic cancellation event to the task's event log."""

        task.session_events.append(
            {
                "event_id": None,
                "event_type": CANCEL_EVENT_TYPE,
                "action_type": CANCEL_ACTION_TYPE,
                "metadata": {"message": CANCELLED_ERROR},
                "created_at_timestamp": int(now.timestamp()),
            },
        )
        task.raw_output = serialize_events(task.session_events)


def serialize_events(events: list[dict[str, Any]]) -> str:
    return json.dumps(events, ensure_ascii=False, default=str)


def normalize_session_credits(value: float | None) -> float | None:
    if value is None:
        return None
    return abs(value) / CREDITS_SCALE


def _apply_terminal(summary: SessionIngestResult, event: SessionEvent) -> None:
    if event.event_type == SUCCESS_EVENT_TYPE:
        message = event.metadata.get("message")
        summary.outcome = SessionOutcome.SUCCEEDED
        summary.result = str(message) if message is not None else ""
        credits = event.credits
        if credits is None:
            raw_credits = event.metadata.get("credits")
            if isinstance(raw_credits, int | float) and not isinstance(raw_credits, bool):
                credits = float(raw_credits)
        summary.credits = normalize_session_credits(credits)
        return
    if ERROR_EVENT_TYPE in (event.event_type, event.action_type):
        message = event.metadata.get("error_message") or event.metadata.get("message")
        summary.outcome = SessionOutcome.FAILED
        summary.error = str(message) if message else "Session reported an error event"
