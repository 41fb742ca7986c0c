"""Shared test fixtures."""

from __future__ import annotations

import itertools
from collections import deque
from collections.abc import Mapping
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from flow_batch.config import BatchSettings
from flow_batch.scheduler.dispatcher import BatchDispatcher
from flow_batch.scheduler.models import (
    RemoteTaskResponse,
    SessionEvent,
    SessionHandle,
    SessionPollResponse,
)
from flow_batch.scheduler.sink import FileOutputSink


class FakeFlowClient:
    """Scripted remote client that records every call.

    Scripts are consumed one item per call; the last item repeats. Unscripted
    invocations start a ``PENDING`` job with a generated remote id.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.invoke_script: deque[RemoteTaskResponse | Exception] = deque()
        self.status_scripts: dict[str, deque[RemoteTaskResponse | Exception]] = {}
        self.session_scripts: dict[str, deque[SessionPollResponse | Exception]] = {}
        self.session_ids: deque[str | None] = deque()
        self.on_check = None
        self._ids = itertools.count(1)

    def script_invoke(self, *items: RemoteTaskResponse | Exception) -> None:
        self.invoke_script.extend(items)

    def script_status(self, task_id: str, *items: RemoteTaskResponse | Exception) -> None:
        self.status_scripts[task_id] = deque(items)

    def script_session(self, session_id: str, *items: SessionPollResponse | Exception) -> None:
        self.session_ids.append(session_id)
        self.session_scripts[session_id] = deque(items)

    def calls_named(self, name: str) -> list[dict[str, Any]]:
        return [kwargs for call, kwargs in self.calls if call == name]

    async def invoke(
        self,
        *,
        flow_id: str,
        workspace_id: str,
        flow_input: Mapping[str, str],
        singleton: bool = False,
    ) -> RemoteTaskResponse:
        self.calls.append(
            (
                "invoke",
                {
                    "flow_id": flow_id,
                    "workspace_id": workspace_id,
                    "flow_input": dict(flow_input),
                    "singleton": singleton,
                },
            ),
        )
        if self.invoke_script:
            item = self.invoke_script.popleft()
        else:
            item = RemoteTaskResponse(id=f"remote-{next(self._ids)}", status="PENDING")
        if isinstance(item, Exception):
            raise item
        return item

    async def check_status(
        self,
        *,
        flow_id: str,
        task_id: str,
        workspace_id: str,
    ) -> RemoteTaskResponse:
        self.calls.append(("check_status", {"flow_id": flow_id, "task_id": task_id}))
        if self.on_check is not None:
            self.on_check(task_id)
        item = _next_item(self.status_scripts.get(task_id))
        if item is None:
            return RemoteTaskResponse(id=task_id, status="PENDING")
        if isinstance(item, Exception):
            raise item
        return item

    async def create_session(self, *, flow_id: str, workspace_id: str) -> SessionHandle:
        self.calls.append(("create_session", {"flow_id": flow_id}))
        if self.session_ids:
            return SessionHandle(session_id=self.session_ids.popleft())
        return SessionHandle(session_id=f"session-{next(self._ids)}")

    async def invoke_session(self, *, session_id: str, workspace_id: str, message: str) -> None:
        self.calls.append(("invoke_session", {"session_id": session_id, "message": message}))

    async def poll_session(
        self,
        *,
        session_id: str,
        workspace_id: str,
        from_timestamp: int,
    ) -> SessionPollResponse:
        self.calls.append(
            ("poll_session", {"session_id": session_id, "from_timestamp": from_timestamp}),
        )
        if self.on_check is not None:
            self.on_check(session_id)
        item = _next_item(self.session_scripts.get(session_id))
        if item is None:
            return SessionPollResponse(events=[], last_timestamp=from_timestamp)
        if isinstance(item, Exception):
            raise item
        return item


def _next_item(script: deque[Any] | None) -> Any:
    if not script:
        return None
    if len(script) > 1:
        return script.popleft()
    return script[0]


class StepClock:
    """Deterministic clock advancing one second per reading."""

    def __init__(self) -> None:
        self.current = datetime(2026, 1, 1, tzinfo=UTC)

    def __call__(self) -> datetime:
        self.current += timedelta(seconds=1)
        return self.current


async def no_sleep(_: float) -> None:
    return None


def ai_event(event_id: str, message: str, *, timestamp: int, credits: float | None = None) -> SessionEvent:
    return SessionEvent(
        event_id=event_id,
        event_type="ai",
        action_type="message",
        metadata={"message": message},
        credits=credits,
        created_at_timestamp=timestamp,
    )


def progress_event(event_id: str, *, timestamp: int) -> SessionEvent:
    return SessionEvent(
        event_id=event_id,
        event_type="progress",
        action_type="message",
        metadata={"message": "working"},
        created_at_timestamp=timestamp,
    )


@pytest.fixture()
def fake_client() -> FakeFlowClient:
    return FakeFlowClient()


@pytest.fixture()
def make_dispatcher(tmp_path: Path, fake_client: FakeFlowClient):
    """Build a dispatcher over the fake client with instant polling."""

    def _make(client: Any = None, *, on_update: Any = None, **overrides: Any) -> BatchDispatcher:
        settings = BatchSettings(output_dir=tmp_path / "output", **overrides)
        return BatchDispatcher(
            client=client or fake_client,
            sink=FileOutputSink(settings.output_dir),
            flow_id="flow-1",
            workspace_id="ws-1",
            settings=settings,
            clock=StepClock(),
            sleep=no_sleep,
            on_update=on_update,
        )

    return _make
