from __future__ import annotations

from pathlib import Path

import allure
import pytest

from flow_batch.config import ApiSettings, BatchSettings, Settings
from flow_batch.scheduler.models import ExecutionMode, TimeoutPolicy

pytestmark = [
    allure.epic("Batch Scheduling"),
    allure.feature("Configuration"),
]

_ENV_NAMES = (
    "FLOW_BATCH_API_BASE_URL",
    "FLOW_BATCH_API_TOKEN",
    "FLOW_BATCH_WORKSPACE_ID",
    "FLOW_BATCH_REQUEST_TIMEOUT_SECONDS",
    "FLOW_BATCH_MAX_RETRIES",
    "FLOW_BATCH_PARALLELISM",
    "FLOW_BATCH_EXECUTION_MODE",
    "FLOW_BATCH_TASK_TIMEOUT_SECONDS",
    "FLOW_BATCH_TIMEOUT_POLICY",
    "FLOW_BATCH_WRITE_OUTPUT",
    "FLOW_BATCH_OVERWRITE_EXISTING",
    "FLOW_BATCH_OUTPUT_DIR",
    "FLOW_BATCH_POLL_INTERVAL_SECONDS",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _ENV_NAMES:
        monkeypatch.delenv(name, raising=False)


def test_from_env_defaults() -> None:
    settings = Settings.from_env()

    assert settings.api.base_url == "https://api.flowhunt.io"
    assert settings.batch.parallelism == 5
    assert settings.batch.execution_mode == ExecutionMode.NORMAL
    assert settings.batch.task_timeout_seconds == 3600
    assert settings.batch.timeout_policy == TimeoutPolicy.MARK_AS_ERROR
    assert settings.batch.write_output is False
    assert settings.batch.overwrite_existing is False
    assert settings.batch.poll_interval_seconds == 2.0


def test_from_env_reads_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("FLOW_BATCH_WORKSPACE_ID", " ws-9 ")
    monkeypatch.setenv("FLOW_BATCH_PARALLELISM", "8")
    monkeypatch.setenv("FLOW_BATCH_EXECUTION_MODE", "with-session")
    monkeypatch.setenv("FLOW_BATCH_TIMEOUT_POLICY", "RETRY")
    monkeypatch.setenv("FLOW_BATCH_WRITE_OUTPUT", "yes")
    monkeypatch.setenv("FLOW_BATCH_OUTPUT_DIR", "results")

    settings = Settings.from_env()

    assert settings.api.workspace_id == "ws-9"
    assert settings.batch.parallelism == 8
    assert settings.batch.execution_mode == ExecutionMode.WITH_SESSION
    assert settings.batch.timeout_policy == TimeoutPolicy.RETRY
    assert settings.batch.write_output is True
    assert settings.batch.output_dir == Path("results")


def test_from_env_rejects_unknown_enum_value(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("FLOW_BATCH_EXECUTION_MODE", "turbo")

    with pytest.raises(ValueError, match="Expected one of: normal, singleton, with_session"):
        Settings.from_env()


def test_from_env_rejects_invalid_boolean(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("FLOW_BATCH_OVERWRITE_EXISTING", "maybe")

    with pytest.raises(ValueError, match="Invalid boolean value for FLOW_BATCH_OVERWRITE_EXISTING"):
        Settings.from_env()


def test_validate_for_run_requires_workspace_for_remote_runs() -> None:
    settings = Settings(api=ApiSettings(workspace_id=""))

    with pytest.raises(ValueError, match="workspace id is required"):
        settings.validate_for_run()
    settings.validate_for_run(require_remote=False)


def test_validate_for_run_rejects_invalid_base_url() -> None:
    settings = Settings(api=ApiSettings(base_url="ftp://flows.example", workspace_id="ws"))

    with pytest.raises(ValueError, match="Invalid FLOW_BATCH_API_BASE_URL"):
        settings.validate_for_run()


@pytest.mark.parametrize(
    ("batch", "message"),
    [
        (BatchSettings(parallelism=0), "FLOW_BATCH_PARALLELISM"),
        (BatchSettings(task_timeout_seconds=0), "FLOW_BATCH_TASK_TIMEOUT_SECONDS"),
        (BatchSettings(poll_interval_seconds=0), "FLOW_BATCH_POLL_INTERVAL_SECONDS"),
    ],
)
def test_validate_for_run_rejects_non_positive_batch_settings(batch: BatchSettings, message: str) -> None:
    settings = Settings(api=ApiSettings(workspace_id="ws"), batch=batch)

    with pytest.raises(ValueError, match=message):
        settings.validate_for_run()
