"""Controllers for batch CLI commands."""

from __future__ import annotations

import asyncio
import json
import logging
import signal
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from flow_batch.config import Settings
from flow_batch.scheduler.client import EchoFlowClient, FlowApiClient, RemoteInvocationClient
from flow_batch.scheduler.dispatcher import BatchDispatcher, BatchRunSummary
from flow_batch.scheduler.models import ExecutionMode, TaskRecord, TaskStatus, TimeoutPolicy
from flow_batch.scheduler.sink import FileOutputSink

logger = logging.getLogger(__name__)

ECHO_WORKSPACE_ID = "local"
_PREVIEW_CHARS = 80
_ROW_FILENAME_COLUMN = "filename"


@dataclass(slots=True)
class BatchRunCommand:
    """CLI input for one batch run; ``None`` keeps the environment setting."""

    flow_id: str
    workspace_id: str | None = None
    inputs: tuple[str, ...] = ()
    tasks_file: Path | None = None
    parallelism: int | None = None
    execution_mode: str | None = None
    timeout_seconds: int | None = None
    timeout_policy: str | None = None
    write_output: bool | None = None
    overwrite_existing: bool | None = None
    output_dir: Path | None = None
    poll_interval_seconds: float | None = None
    use_echo: bool = False


@dataclass(slots=True)
class TaskDefinition:
    """One task definition read from the command line or a tasks file."""

    flow_input: dict[str, str] = field(default_factory=dict)
    row_data: dict[str, str] = field(default_factory=dict)
    output_name: str | None = None


class BatchCliController:
    """Builds the dispatcher from settings and runs one batch to completion."""

    def run_batch(self, command: BatchRunCommand) -> list[str]:
        settings = _apply_overrides(Settings.from_env(), command)
        settings.validate_for_run(require_remote=not command.use_echo)
        if not command.flow_id.strip():
            raise ValueError("A flow id is required.")

        definitions = [TaskDefinition(flow_input={"input": text}) for text in command.inputs]
        if command.tasks_file is not None:
            definitions.extend(load_tasks_file(command.tasks_file))
        if not definitions:
            raise ValueError("No tasks to run. Pass --input or --tasks-file.")

        dispatcher, summary, stopped = asyncio.run(
            _run_dispatcher(settings=settings, command=command, definitions=definitions),
        )
        return render_batch_lines(dispatcher=dispatcher, summary=summary, stopped=stopped)


def load_tasks_file(path: Path) -> list[TaskDefinition]:
    """Read JSON Lines task definitions.

    Each non-empty line is an object with ``input`` (text) and/or ``row`` (an
    object of column values) and an optional ``filename`` output name.
    """

    definitions: list[TaskDefinition] = []
    with path.open(encoding="utf-8") as handle:
        for line_number, line in enumerate(handle, start=1):
            if not line.strip():
                continue
            try:
                payload = json.loads(line)
            except json.JSONDecodeError as error:
                raise ValueError(f"{path}:{line_number}: invalid JSON: {error.msg}") from error
            definitions.append(_task_definition(payload, location=f"{path}:{line_number}"))
    return definitions


def render_batch_lines(
    *,
    dispatcher: BatchDispatcher,
    summary: BatchRunSummary,
    stopped: bool = False,
) -> list[str]:
    counts = dispatcher.counts_by_status()
    lines = [
        "Batch summary: "
        f"tasks={len(dispatcher.tasks)} done={counts[TaskStatus.DONE]} "
        f"failed={counts[TaskStatus.FAILED]} skipped={counts[TaskStatus.SKIPPED]} "
        f"queued={counts[TaskStatus.QUEUED]} submitted={summary.submitted} "
        f"retried={summary.retried} timeouts={summary.timeouts} "
        f"cancelled={summary.cancelled} polls={summary.polls}",
    ]
    if stopped and dispatcher.running_count:
        lines.append(
            f"Stopped: {dispatcher.running_count} task(s) are still executing remotely.",
        )
    for task in dispatcher.tasks:
        lines.append(_task_line(task))
    return lines


async def _run_dispatcher(
    *,
    settings: Settings,
    command: BatchRunCommand,
    definitions: list[TaskDefinition],
) -> tuple[BatchDispatcher, BatchRunSummary, bool]:
    client: RemoteInvocationClient
    if command.use_echo:
        client = EchoFlowClient()
        workspace_id = settings.api.workspace_id or ECHO_WORKSPACE_ID
    else:
        client = FlowApiClient(
            base_url=settings.api.base_url,
            token=settings.api.token,
            timeout_seconds=settings.api.request_timeout_seconds,
            max_retries=settings.api.max_retries,
        )
        workspace_id = settings.api.workspace_id

    try:
        dispatcher = BatchDispatcher(
            client=client,
            sink=FileOutputSink(settings.batch.output_dir),
            flow_id=command.flow_id,
            workspace_id=workspace_id,
            settings=settings.batch,
        )
        for definition in definitions:
            dispatcher.add_task(
                definition.flow_input or None,
                row_data=definition.row_data or None,
                output_name=definition.output_name,
            )
        stop_event = asyncio.Event()
        with _signal_handlers(dispatcher):
            summary = await dispatcher.run(stop_event)
        return dispatcher, summary, stop_event.is_set()
    finally:
        if isinstance(client, FlowApiClient):
            await client.close()


@contextmanager
def _signal_handlers(dispatcher: BatchDispatcher) -> Iterator[None]:
    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []

    def _handler(signum: signal.Signals) -> None:
        logger.warning("Received %s, stopping batch", signum.name)
        dispatcher.stop()

    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, _handler, signum)
        except (NotImplementedError, RuntimeError, ValueError):
            # Not supported on this platform or outside the main thread.
            continue
        installed.append(signum)
    try:
        yield
    finally:
        for signum in installed:
            loop.remove_signal_handler(signum)


def _apply_overrides(settings: Settings, command: BatchRunCommand) -> Settings:
    api = settings.api
    if command.workspace_id is not None:
        api = replace(api, workspace_id=command.workspace_id.strip())

    batch = settings.batch
    overrides: dict[str, Any] = {}
    if command.parallelism is not None:
        overrides["parallelism"] = command.parallelism
    if command.execution_mode is not None:
        overrides["execution_mode"] = ExecutionMode(command.execution_mode)
    if command.timeout_seconds is not None:
        overrides["task_timeout_seconds"] = command.timeout_seconds
    if command.timeout_policy is not None:
        overrides["timeout_policy"] = TimeoutPolicy(command.timeout_policy)
    if command.write_output is not None:
        overrides["write_output"] = command.write_output
    if command.overwrite_existing is not None:
        overrides["overwrite_existing"] = command.overwrite_existing
    if command.output_dir is not None:
        overrides["output_dir"] = command.output_dir
    if command.poll_interval_seconds is not None:
        overrides["poll_interval_seconds"] = command.poll_interval_seconds
    if overrides:
        batch = replace(batch, **overrides)
    return Settings(api=api, batch=batch)


def _task_definition(payload: Any, *, location: str) -> TaskDefinition:
    if not isinstance(payload, dict):
        raise ValueError(f"{location}: expected a JSON object")

    text = payload.get("input")
    row = payload.get("row")
    if text is not None and not isinstance(text, str):
        raise ValueError(f"{location}: 'input' must be a string")
    if row is not None and not isinstance(row, dict):
        raise ValueError(f"{location}: 'row' must be an object")
    if text is None and not row:
        raise ValueError(f"{location}: either 'input' or 'row' is required")

    row_data = {str(key): "" if value is None else str(value) for key, value in (row or {}).items()}
    output_name = payload.get("filename")
    if output_name is None:
        output_name = next(
            (value for key, value in row_data.items() if key.lower() == _ROW_FILENAME_COLUMN),
            None,
        )
    return TaskDefinition(
        flow_input={"input": text} if text is not None else {},
        row_data=row_data,
        output_name=str(output_name) if output_name else None,
    )


def _task_line(task: TaskRecord) -> str:
    line = (
        f"Task {task.id}: status={task.status.value} "
        f"remote_id={task.remote_id or '-'} duration={task.duration_formatted}"
    )
    if task.credits is not None:
        line += f" credits={task.credits:g}"
    if task.error:
        return f"{line} error={task.error}"
    if task.result is not None:
        return f"{line} result={_preview(task.result)}"
    return line


def _preview(text: str) -> str:
    flat = " ".join(text.split())
    if len(flat) <= _PREVIEW_CHARS:
        return flat
    return flat[: _PREVIEW_CHARS - 3] + "..."
