"""Batch dispatcher that submits tasks to the remote flow service.

The dispatcher owns the task table, the submission queue and the running set,
and it is the only code that mutates ``TaskRecord`` state. Everything runs on
one asyncio control flow: submissions of one refill round are awaited
concurrently, then running tasks are checked round-robin, one status check per
poll interval, so the remote call rate does not grow with the parallelism.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections import deque
from collections.abc import Awaitable, Callable, Iterator, Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from flow_batch.config import BatchSettings
from flow_batch.scheduler.client.base import RemoteInvocationClient
from flow_batch.scheduler.errors import (
    InvalidTransitionError,
    RemoteInvocationError,
    TaskNotFoundError,
)
from flow_batch.scheduler.models import (
    ExecutionMode,
    RemoteOutcome,
    RemoteTaskResponse,
    TaskRecord,
    TaskStatus,
    utc_now,
)
from flow_batch.scheduler.policy import (
    TimeoutAction,
    compute_max_attempts,
    decide_timeout,
    timeout_error_message,
)
from flow_batch.scheduler.session_events import (
    CANCELLED_ERROR,
    SessionEventProcessor,
    SessionOutcome,
)
from flow_batch.scheduler.sink import OutputSink

logger = logging.getLogger(__name__)

SKIPPED_RESULT = "File already exists"
_SUBMITTABLE = frozenset({TaskStatus.WAITING, TaskStatus.PENDING})


@dataclass(slots=True)
class BatchRunSummary:
    """Aggregate counters of one dispatcher run."""

    submitted: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    retried: int = 0
    timeouts: int = 0
    cancelled: int = 0
    polls: int = 0
    poll_errors: int = 0


@dataclass(slots=True)
class _RunningSlot:
    task_id: str
    remote_id: str
    session: bool
    attempts: int = 0


class _Rotation:
    """Remote ids in round-robin order; new ids join the end of the rotation."""

    def __init__(self) -> None:
        self._ids: list[str] = []
        self._next = 0

    def __len__(self) -> int:
        return len(self._ids)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._ids))

    def append(self, remote_id: str) -> None:
        self._ids.append(remote_id)

    def remove(self, remote_id: str) -> None:
        index = self._ids.index(remote_id)
        del self._ids[index]
        if index < self._next:
            self._next -= 1
        if self._next >= len(self._ids):
            self._next = 0

    def advance(self) -> str | None:
        if not self._ids:
            return None
        if self._next >= len(self._ids):
            self._next = 0
        remote_id = self._ids[self._next]
        self._next += 1
        return remote_id


class BatchDispatcher:
    """Schedules a batch of tasks under a bounded concurrency budget."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        client: RemoteInvocationClient,
        sink: OutputSink,
        flow_id: str,
        workspace_id: str,
        settings: BatchSettings,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        on_update: Callable[[TaskRecord], None] | None = None,
        session_processor: SessionEventProcessor | None = None,
    ) -> None:
        self.client = client
        self.sink = sink
        self.flow_id = flow_id
        self.workspace_id = workspace_id
        self.settings = settings
        if settings.parallelism <= 0:
            raise ValueError("parallelism must be > 0")
        self.max_attempts = compute_max_attempts(
            settings.task_timeout_seconds,
            settings.poll_interval_seconds,
        )
        self.max_running_observed = 0
        self._clock = clock
        self._sleep = sleep
        self._on_update = on_update
        self._events = session_processor or SessionEventProcessor()
        self._tasks: dict[str, TaskRecord] = {}
        self._queue: deque[str] = deque()
        self._held: set[str] = set()
        self._running: dict[str, _RunningSlot] = {}
        self._rotation = _Rotation()
        self._stop_event: asyncio.Event | None = None
        self._summary = BatchRunSummary()

    @property
    def tasks(self) -> list[TaskRecord]:
        return list(self._tasks.values())

    @property
    def queued_task_ids(self) -> list[str]:
        """Task ids waiting for submission, in submission order."""

        return list(self._queue)

    @property
    def running_count(self) -> int:
        return len(self._running)

    @property
    def is_running(self) -> bool:
        return self._stop_event is not None

    def get_task(self, task_id: str) -> TaskRecord:
        task = self._tasks.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def attempts_for(self, task_id: str) -> int | None:
        """Status checks issued for the task's current remote execution."""

        task = self.get_task(task_id)
        slot = self._running.get(task.remote_id or "")
        return slot.attempts if slot is not None else None

    def counts_by_status(self) -> dict[TaskStatus, int]:
        counts = dict.fromkeys(TaskStatus, 0)
        for task in self._tasks.values():
            counts[task.status] += 1
        return counts

    def add_task(
        self,
        flow_input: Mapping[str, str] | None = None,
        *,
        row_data: Mapping[str, str] | None = None,
        output_name: str | None = None,
    ) -> TaskRecord:
        """Append a new waiting task to the batch."""

        if flow_input is None and not row_data:
            raise ValueError("A task needs either flow input or row data.")
        task = TaskRecord(
            flow_input=dict(flow_input or {}),
            row_data=dict(row_data or {}),
            output_name=output_name,
        )
        if row_data:
            task.regenerate_input()
        self._tasks[task.id] = task
        if self.is_running:
            self._queue.append(task.id)
        return task

    def update_row_data(self, task_id: str, row_data: Mapping[str, str]) -> TaskRecord:
        """Replace a task's row data and rebuild its flow input."""

        task = self.get_task(task_id)
        if task.status == TaskStatus.QUEUED:
            raise ValueError(f"Task {task_id} is running; its input cannot be edited.")
        task.row_data = dict(row_data)
        task.regenerate_input()
        self._notify(task)
        return task

    def remove_task(self, task_id: str) -> TaskRecord:
        task = self._tasks.pop(task_id, None)
        if task is None:
            raise TaskNotFoundError(task_id)
        self._held.discard(task_id)
        if task_id in self._queue:
            self._queue.remove(task_id)
        remote_id = task.remote_id
        if remote_id is not None and remote_id in self._running:
            self._untrack(remote_id)
        return task

    def cancel_task(self, task_id: str) -> bool:
        """Request cooperative cancellation; returns whether anything changed.

        A running task is finalized at the next poll opportunity. A task still
        waiting for submission keeps its status and is held back from later
        runs until ``start_task`` or ``retry_task`` releases it.
        """

        task = self.get_task(task_id)
        if task.status == TaskStatus.QUEUED:
            task.cancel_requested = True
            return True
        if task.status in _SUBMITTABLE and task_id not in self._held:
            if task_id in self._queue:
                self._queue.remove(task_id)
            self._held.add(task_id)
            return True
        return False

    def retry_task(self, task_id: str) -> TaskRecord:
        """Reset a done or failed task to waiting and enqueue it at the tail."""

        task = self.get_task(task_id)
        task.reset_for_user_retry(now=self._clock())
        self._held.discard(task_id)
        self._enqueue(task)
        self._notify(task)
        logger.info("Task %s reset for retry", task_id)
        return task

    def start_task(self, task_id: str) -> TaskRecord:
        """Enqueue a single waiting or pending task."""

        task = self.get_task(task_id)
        if task.status not in _SUBMITTABLE:
            raise InvalidTransitionError(task.id, task.status.value, TaskStatus.QUEUED.value)
        self._held.discard(task_id)
        self._enqueue(task)
        return task

    def stop(self) -> None:
        """Stop scheduling and polling; in-flight remote calls are not retracted."""

        if self._stop_event is None:
            return
        logger.info("Stopping batch execution")
        self._stop_event.set()

    async def run(self, stop_event: asyncio.Event | None = None) -> BatchRunSummary:
        """Run until the queue and the running set are empty, or until stopped.

        Tasks that are ``done`` are never submitted again. Tasks left running by
        a stopped run keep their remote ids and are polled again by the next run.
        """

        if self._stop_event is not None:
            raise RuntimeError("Dispatcher is already running")
        self._stop_event = stop_event or asyncio.Event()
        self._summary = BatchRunSummary()
        for task in self._tasks.values():
            if task.status in _SUBMITTABLE and task.id not in self._queue and task.id not in self._held:
                self._queue.append(task.id)
        logger.info(
            "Starting batch: flow=%s tasks=%d queued=%d running=%d parallelism=%d mode=%s",
            self.flow_id,
            len(self._tasks),
            len(self._queue),
            len(self._running),
            self.settings.parallelism,
            self.settings.execution_mode.value,
        )
        try:
            await self._run_loop()
        finally:
            self._stop_event = None

        summary = self._summary
        logger.info(
            "Batch finished: submitted=%d succeeded=%d failed=%d skipped=%d "
            "retried=%d timeouts=%d cancelled=%d",
            summary.submitted,
            summary.succeeded,
            summary.failed,
            summary.skipped,
            summary.retried,
            summary.timeouts,
            summary.cancelled,
        )
        return summary

    async def refill(self) -> int:
        """Submit queued tasks while slots are free.

        Up to twice the free slots are submitted per round because skipped or
        synchronously finished tasks never occupy a slot; the overshoot is
        bounded by one round.
        """

        free_slots = self.settings.parallelism - len(self._running)
        if free_slots <= 0 or not self._queue:
            return 0
        batch: list[TaskRecord] = []
        while self._queue and len(batch) < 2 * free_slots:
            task = self._tasks.get(self._queue.popleft())
            if task is None or task.status not in _SUBMITTABLE:
                continue
            batch.append(task)
        if batch:
            await asyncio.gather(*(self.submit(task) for task in batch))
        return len(batch)

    async def submit(self, task: TaskRecord) -> None:
        """Start one task remotely, or skip it when its output already exists."""

        if task.status not in _SUBMITTABLE:
            raise InvalidTransitionError(task.id, task.status.value, TaskStatus.QUEUED.value)

        now = self._clock()
        if self._output_exists(task):
            task.result = SKIPPED_RESULT
            task.start_time = now
            task.end_time = now
            task.transition(TaskStatus.SKIPPED, now=now)
            self._summary.skipped += 1
            logger.info("Task %s skipped: output %s already exists", task.id, task.output_name)
            self._notify(task)
            return

        task.start_time = now
        task.end_time = None
        task.error = None
        self._summary.submitted += 1
        try:
            if self.settings.execution_mode == ExecutionMode.WITH_SESSION:
                await self._start_session(task)
            else:
                await self._start_flow(task)
        except RemoteInvocationError as error:
            if task.status in _SUBMITTABLE:
                self._fail_submission(task, str(error))
            else:
                logger.exception("Error after task %s was started", task.id)
        except Exception as error:  # noqa: BLE001
            logger.exception("Unexpected error while submitting task %s", task.id)
            if task.status in _SUBMITTABLE:
                self._fail_submission(task, f"Unexpected submission error: {error}")

    async def _run_loop(self) -> None:
        while not self._stopped:
            await self.refill()
            if self._stopped:
                return
            self._sweep_cancellations()
            if not self._running:
                if not self._queue:
                    return
                continue

            await self._pause()
            if self._stopped:
                return
            self._sweep_cancellations()
            remote_id = self._rotation.advance()
            if remote_id is not None:
                await self._poll(remote_id)

    @property
    def _stopped(self) -> bool:
        return self._stop_event is None or self._stop_event.is_set()

    async def _pause(self) -> None:
        interval = self.settings.poll_interval_seconds
        if self._sleep is not None:
            await self._sleep(interval)
            return
        if self._stop_event is None:
            return
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
        except TimeoutError:
            pass

    async def _start_flow(self, task: TaskRecord) -> None:
        response = await self.client.invoke(
            flow_id=self.flow_id,
            workspace_id=self.workspace_id,
            flow_input=_flow_payload(task),
            singleton=self.settings.execution_mode == ExecutionMode.SINGLETON,
        )
        raw = _serialize(response.to_payload())
        if not response.id:
            self._fail_submission(
                task,
                "No task ID returned from flow invocation",
                raw_output=raw,
            )
            return

        task.remote_task_id = response.id
        task.transition(TaskStatus.QUEUED, now=self._clock(), raw_response=raw)
        if response.outcome in (RemoteOutcome.SUCCEEDED, RemoteOutcome.FAILED):
            logger.info("Task %s answered synchronously: %s", task.id, response.status)
            self._complete_from_response(task, response, raw)
            return
        self._track_running(task)
        logger.info("Task %s started: remote_task_id=%s", task.id, response.id)
        self._notify(task)

    async def _start_session(self, task: TaskRecord) -> None:
        handle = await self.client.create_session(
            flow_id=self.flow_id,
            workspace_id=self.workspace_id,
        )
        if not handle.session_id:
            self._fail_submission(task, "No session ID returned from session creation")
            return
        await self.client.invoke_session(
            session_id=handle.session_id,
            workspace_id=self.workspace_id,
            message=_session_message(task),
        )
        task.remote_session_id = handle.session_id
        task.session_events = []
        task.session_cursor = 0
        task.transition(TaskStatus.QUEUED, now=self._clock())
        self._track_running(task)
        logger.info("Task %s started: remote_session_id=%s", task.id, handle.session_id)
        self._notify(task)

    def _fail_submission(self, task: TaskRecord, error: str, *, raw_output: str | None = None) -> None:
        now = self._clock()
        task.error = error
        task.end_time = now
        if raw_output is not None:
            task.raw_output = raw_output
        task.transition(TaskStatus.FAILED, now=now, raw_response=raw_output)
        self._summary.failed += 1
        logger.error("Task %s submission failed: %s", task.id, error)
        self._notify(task)

    async def _poll(self, remote_id: str) -> None:
        slot = self._running.get(remote_id)
        if slot is None:
            return
        task = self._tasks.get(slot.task_id)
        if task is None:
            self._untrack(remote_id)
            return

        slot.attempts += 1
        self._summary.polls += 1
        try:
            if slot.session:
                finished = await self._poll_session(task, slot)
            else:
                finished = await self._poll_flow(task, slot)
        except RemoteInvocationError as error:
            self._summary.poll_errors += 1
            logger.warning(
                "Status check %d for task %s failed: %s",
                slot.attempts,
                task.id,
                error,
            )
            finished = False
        except Exception:  # noqa: BLE001
            self._summary.poll_errors += 1
            logger.exception("Unexpected error while checking task %s", task.id)
            finished = False

        if finished or self._running.get(remote_id) is not slot:
            return
        self._apply_timeout_policy(task, slot)

    async def _poll_flow(self, task: TaskRecord, slot: _RunningSlot) -> bool:
        response = await self.client.check_status(
            flow_id=self.flow_id,
            task_id=slot.remote_id,
            workspace_id=self.workspace_id,
        )
        if self._running.get(slot.remote_id) is not slot:
            return True
        raw = _serialize(response.to_payload())
        logger.debug(
            "Check %d: task %s remote status %s",
            slot.attempts,
            task.id,
            response.status,
        )
        if response.outcome in (RemoteOutcome.SUCCEEDED, RemoteOutcome.FAILED):
            self._untrack(slot.remote_id)
            self._complete_from_response(task, response, raw)
            return True
        if response.outcome == RemoteOutcome.UNKNOWN:
            logger.warning("Unexpected status for task %s: %s", task.id, response.status)
        task.record_observation(now=self._clock(), raw_response=raw)
        self._notify(task)
        return False

    async def _poll_session(self, task: TaskRecord, slot: _RunningSlot) -> bool:
        response = await self.client.poll_session(
            session_id=slot.remote_id,
            workspace_id=self.workspace_id,
            from_timestamp=task.session_cursor,
        )
        if self._running.get(slot.remote_id) is not slot:
            return True
        now = self._clock()
        ingested = self._events.ingest(task, response)
        if ingested.outcome is None:
            task.record_observation(
                now=now,
                raw_response=task.raw_output if ingested.new_events else None,
            )
            self._notify(task)
            return False

        self._untrack(slot.remote_id)
        task.end_time = now
        if ingested.outcome == SessionOutcome.SUCCEEDED:
            task.result = ingested.result
            if ingested.credits is not None:
                task.credits = ingested.credits
            task.transition(TaskStatus.DONE, now=now, raw_response=task.raw_output)
            self._summary.succeeded += 1
            logger.info("Task %s completed after %d session checks", task.id, slot.attempts)
            self._write_output(task)
        else:
            task.error = ingested.error
            task.transition(TaskStatus.FAILED, now=now, raw_response=task.raw_output)
            self._summary.failed += 1
            logger.error("Task %s failed in session: %s", task.id, ingested.error)
        self._notify(task)
        return True

    def _complete_from_response(
        self,
        task: TaskRecord,
        response: RemoteTaskResponse,
        raw: str,
    ) -> None:
        now = self._clock()
        task.raw_output = raw
        task.end_time = now
        if response.outcome == RemoteOutcome.SUCCEEDED:
            task.result = (
                response.answer
                or response.error_message
                or f"Task {response.id} - {response.status}"
            )
            task.credits = response.credits
            task.transition(TaskStatus.DONE, now=now, raw_response=raw)
            self._summary.succeeded += 1
            logger.info("Task %s completed: remote_task_id=%s", task.id, response.id)
            self._write_output(task)
        else:
            task.error = response.error_message or f"Task failed: {response.status}"
            task.transition(TaskStatus.FAILED, now=now, raw_response=raw)
            self._summary.failed += 1
            logger.error("Task %s failed remotely: %s", task.id, task.error)
        self._notify(task)

    def _apply_timeout_policy(self, task: TaskRecord, slot: _RunningSlot) -> None:
        action = decide_timeout(slot.attempts, self.max_attempts, self.settings.timeout_policy)
        if action == TimeoutAction.CONTINUE:
            return

        self._untrack(slot.remote_id)
        now = self._clock()
        if action == TimeoutAction.RETRY:
            task.reset_for_timeout_retry(now=now)
            self._queue.append(task.id)
            self._summary.retried += 1
            logger.warning(
                "Task %s timed out after %d checks; re-queued at position %d",
                task.id,
                slot.attempts,
                len(self._queue),
            )
        else:
            task.error = timeout_error_message(self.settings.task_timeout_seconds)
            task.end_time = now
            task.transition(TaskStatus.FAILED, now=now)
            self._summary.timeouts += 1
            logger.warning("Task %s %s", task.id, task.error)
        self._notify(task)

    def _sweep_cancellations(self) -> None:
        for remote_id, slot in list(self._running.items()):
            task = self._tasks.get(slot.task_id)
            if task is None:
                self._untrack(remote_id)
                continue
            if not task.cancel_requested:
                continue

            self._untrack(remote_id)
            now = self._clock()
            if slot.session:
                self._events.cancel(task, now=now)
            task.cancel_requested = False
            task.error = CANCELLED_ERROR
            task.end_time = now
            task.transition(TaskStatus.FAILED, now=now, raw_response=task.raw_output)
            self._summary.cancelled += 1
            logger.warning("Task %s cancelled by user: %s", task.id, remote_id)
            self._notify(task)

    def _write_output(self, task: TaskRecord) -> None:
        if not self.settings.write_output or not task.output_name or task.result is None:
            return
        try:
            path = self.sink.write(task.output_name, task.result)
        except (OSError, ValueError):
            logger.exception("Failed to write output of task %s to %s", task.id, task.output_name)
            return
        logger.info("Wrote task %s output to %s", task.id, path)

    def _output_exists(self, task: TaskRecord) -> bool:
        if not self.settings.write_output or self.settings.overwrite_existing:
            return False
        if not task.output_name:
            return False
        try:
            return self.sink.exists(task.output_name)
        except ValueError as error:
            logger.warning("Cannot check output of task %s: %s", task.id, error)
            return False

    def _enqueue(self, task: TaskRecord) -> None:
        if task.id not in self._queue:
            self._queue.append(task.id)

    def _track_running(self, task: TaskRecord) -> None:
        remote_id = task.remote_id
        if remote_id is None:
            raise RuntimeError(f"Task {task.id} has no remote id to poll.")
        self._running[remote_id] = _RunningSlot(
            task_id=task.id,
            remote_id=remote_id,
            session=task.remote_session_id is not None,
        )
        self._rotation.append(remote_id)
        self.max_running_observed = max(self.max_running_observed, len(self._running))

    def _untrack(self, remote_id: str) -> None:
        if self._running.pop(remote_id, None) is not None:
            self._rotation.remove(remote_id)

    def _notify(self, task: TaskRecord) -> None:
        if self._on_update is None:
            return
        try:
            self._on_update(task)
        except Exception:  # noqa: BLE001
            logger.exception("Update callback failed for task %s", task.id)


def _flow_payload(task: TaskRecord) -> dict[str, str]:
    """Request fields for a flow invocation; ``input`` travels as ``human_input``."""

    payload = {key: value for key, value in task.flow_input.items() if key != "input"}
    if "input" in task.flow_input:
        payload["human_input"] = task.flow_input["input"]
    return payload


def _session_message(task: TaskRecord) -> str:
    for key in ("input", "human_input"):
        if key in task.flow_input:
            return task.flow_input[key]
    return "\n".join(f"{key}: {value}" for key, value in task.flow_input.items())


def _serialize(payload: Mapping[str, Any]) -> str:
    return json.dumps(payload, ensure_ascii=False, default=str)
