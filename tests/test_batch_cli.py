from __future__ import annotations

import json
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from flow_batch.main import flow_batch
from flow_batch.scheduler import controllers
from flow_batch.scheduler.client import EchoFlowClient
from flow_batch.scheduler.controllers import load_tasks_file

pytestmark = [
    allure.epic("Batch Scheduling"),
    allure.feature("CLI"),
]


@pytest.fixture(autouse=True)
def _fast_polling(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("FLOW_BATCH_POLL_INTERVAL_SECONDS", "0.01")
    monkeypatch.delenv("FLOW_BATCH_WORKSPACE_ID", raising=False)
    monkeypatch.delenv("FLOW_BATCH_EXECUTION_MODE", raising=False)
    monkeypatch.delenv("FLOW_BATCH_WRITE_OUTPUT", raising=False)


def test_run_with_echo_client_prints_summary_and_results() -> None:
    runner = CliRunner()

    result = runner.invoke(
        flow_batch,
        ["run", "--flow-id", "flow-1", "--echo", "--input", "alpha", "--input", "beta"],
    )

    assert result.exit_code == 0, result.output
    lines = result.output.splitlines()
    assert lines[0].startswith("Batch summary: tasks=2 done=2 failed=0")
    assert "result=alpha" in lines[1]
    assert "result=beta" in lines[2]


def test_run_session_mode_from_tasks_file_writes_outputs(tmp_path: Path) -> None:
    tasks_file = tmp_path / "tasks.jsonl"
    tasks_file.write_text(
        "\n".join(
            [
                json.dumps({"input": "first", "filename": "first.txt"}),
                "",
                json.dumps({"row": {"topic": "tides", "filename": "tides.txt"}}),
            ],
        ),
        "utf-8",
    )
    output_dir = tmp_path / "out"
    runner = CliRunner()

    result = runner.invoke(
        flow_batch,
        [
            "run",
            "--flow-id",
            "flow-1",
            "--echo",
            "--mode",
            "with_session",
            "--tasks-file",
            str(tasks_file),
            "--write-output",
            "--output-dir",
            str(output_dir),
        ],
    )

    assert result.exit_code == 0, result.output
    assert "done=2" in result.output
    assert (output_dir / "first.txt").read_text("utf-8") == "first"
    assert (output_dir / "tides.txt").read_text("utf-8") == "topic: tides"


def test_existing_outputs_are_skipped(tmp_path: Path) -> None:
    tasks_file = tmp_path / "tasks.jsonl"
    tasks_file.write_text(json.dumps({"input": "first", "filename": "first.txt"}) + "\n", "utf-8")
    output_dir = tmp_path / "out"
    output_dir.mkdir()
    (output_dir / "first.txt").write_text("kept", "utf-8")
    runner = CliRunner()

    result = runner.invoke(
        flow_batch,
        [
            "run",
            "--flow-id",
            "flow-1",
            "--echo",
            "--tasks-file",
            str(tasks_file),
            "--write-output",
            "--no-overwrite",
            "--output-dir",
            str(output_dir),
        ],
    )

    assert result.exit_code == 0, result.output
    assert "skipped=1" in result.output
    assert "result=File already exists" in result.output
    assert (output_dir / "first.txt").read_text("utf-8") == "kept"


def test_remote_run_without_workspace_fails_with_clear_message() -> None:
    runner = CliRunner()

    result = runner.invoke(flow_batch, ["run", "--flow-id", "flow-1", "--input", "alpha"])

    assert result.exit_code != 0
    assert "workspace id is required" in result.output


def test_run_without_tasks_fails() -> None:
    runner = CliRunner()

    result = runner.invoke(flow_batch, ["run", "--flow-id", "flow-1", "--echo"])

    assert result.exit_code != 0
    assert "No tasks to run" in result.output


def test_load_tasks_file_reports_bad_lines(tmp_path: Path) -> None:
    tasks_file = tmp_path / "tasks.jsonl"
    tasks_file.write_text('{"input": "ok"}\n{"row": "not an object"}\n', "utf-8")

    with pytest.raises(ValueError, match=r"tasks.jsonl:2: 'row' must be an object"):
        load_tasks_file(tasks_file)

    tasks_file.write_text("{broken\n", "utf-8")
    with pytest.raises(ValueError, match=r"tasks.jsonl:1: invalid JSON"):
        load_tasks_file(tasks_file)


def test_poll_interval_option_overrides_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("FLOW_BATCH_POLL_INTERVAL_SECONDS", "3600")
    intervals: list[float] = []

    class _RecordingDispatcher(controllers.BatchDispatcher):
        def __init__(self, **kwargs) -> None:
            intervals.append(kwargs["settings"].poll_interval_seconds)
            super().__init__(**kwargs)

    monkeypatch.setattr(controllers, "BatchDispatcher", _RecordingDispatcher)
    monkeypatch.setattr(controllers, "EchoFlowClient", lambda: EchoFlowClient(pending_polls=2))
    runner = CliRunner()

    result = runner.invoke(
        flow_batch,
        ["run", "--flow-id", "flow-1", "--echo", "--poll-interval", "0.01", "--input", "alpha"],
    )

    assert result.exit_code == 0, result.output
    assert intervals == [0.01]
    assert "done=1" in result.output


def test_poll_interval_must_be_positive() -> None:
    runner = CliRunner()

    result = runner.invoke(
        flow_batch,
        ["run", "--flow-id", "flow-1", "--echo", "--poll-interval", "0", "--input", "alpha"],
    )

    assert result.exit_code == 2
    assert "--poll-interval" in result.output
