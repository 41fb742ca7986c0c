"""Local in-process flow client for smoke runs and CLI tests."""

from __future__ import annotations

import itertools
from collections.abc import Mapping
from dataclasses import dataclass, field

from flow_batch.scheduler.errors import RemoteInvocationError
from flow_batch.scheduler.models import (
    RemoteTaskResponse,
    SessionEvent,
    SessionHandle,
    SessionPollResponse,
)


@dataclass(slots=True)
class _EchoJob:
    answer: str
    polls_left: int
    events_sent: int = 0
    timestamp: int = 0
    history: list[SessionEvent] = field(default_factory=list)


class EchoFlowClient:
    """Answers every invocation with its own input.

    ``pending_polls`` makes each job report ``PENDING`` for that many status
    checks before it succeeds; zero answers synchronously on invoke.
    """

    def __init__(self, *, pending_polls: int = 0, credits: int = 0) -> None:
        self.pending_polls = pending_polls
        self.credits = credits
        self._ids = itertools.count(1)
        self._jobs: dict[str, _EchoJob] = {}

    async def invoke(
        self,
        *,
        flow_id: str,
        workspace_id: str,
        flow_input: Mapping[str, str],
        singleton: bool = False,
    ) -> RemoteTaskResponse:
        task_id = f"echo-task-{next(self._ids)}"
        job = _EchoJob(answer=_echo_text(flow_input), polls_left=self.pending_polls)
        self._jobs[task_id] = job
        if job.polls_left == 0:
            return self._succeeded(task_id, job)
        return RemoteTaskResponse(id=task_id, status="PENDING")

    async def check_status(
        self,
        *,
        flow_id: str,
        task_id: str,
        workspace_id: str,
    ) -> RemoteTaskResponse:
        job = self._job(task_id)
        if job.polls_left > 0:
            job.polls_left -= 1
        if job.polls_left > 0:
            return RemoteTaskResponse(id=task_id, status="PENDING")
        return self._succeeded(task_id, job)

    async def create_session(self, *, flow_id: str, workspace_id: str) -> SessionHandle:
        session_id = f"echo-session-{next(self._ids)}"
        self._jobs[session_id] = _EchoJob(answer="", polls_left=self.pending_polls)
        return SessionHandle(session_id=session_id)

    async def invoke_session(self, *, session_id: str, workspace_id: str, message: str) -> None:
        self._job(session_id).answer = message

    async def poll_session(
        self,
        *,
        session_id: str,
        workspace_id: str,
        from_timestamp: int,
    ) -> SessionPollResponse:
        job = self._job(session_id)
        job.timestamp += 1
        job.events_sent += 1
        if job.polls_left > 0:
            job.polls_left -= 1
            event = SessionEvent(
                event_id=f"{session_id}-progress-{job.events_sent}",
                event_type="progress",
                action_type="message",
                metadata={"message": "working"},
                created_at_timestamp=job.timestamp,
            )
        else:
            event = SessionEvent(
                event_id=f"{session_id}-answer",
                event_type="ai",
                action_type="message",
                metadata={"message": job.answer},
                credits=float(self.credits),
                created_at_timestamp=job.timestamp,
            )
        job.history.append(event)
        events = [item for item in job.history if (item.created_at_timestamp or 0) >= from_timestamp]
        return SessionPollResponse(events=events, last_timestamp=job.timestamp)

    def _job(self, remote_id: str) -> _EchoJob:
        job = self._jobs.get(remote_id)
        if job is None:
            raise RemoteInvocationError(f"Unknown echo job: {remote_id}", status_code=404)
        return job

    def _succeeded(self, task_id: str, job: _EchoJob) -> RemoteTaskResponse:
        return RemoteTaskResponse(
            id=task_id,
            status="SUCCESS",
            result={"ai_answer": job.answer, "credits": self.credits},
        )


def _echo_text(flow_input: Mapping[str, str]) -> str:
    if "human_input" in flow_input:
        return flow_input["human_input"]
    return "\n".join(f"{key}: {value}" for key, value in flow_input.items())
