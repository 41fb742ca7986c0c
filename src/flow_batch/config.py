"""Runtime configuration for the remote API client and batch scheduler."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TypeVar
from urllib.parse import urlparse

from flow_batch.scheduler.models import ExecutionMode, TimeoutPolicy

DEFAULT_API_BASE_URL = "https://api.flowhunt.io"

_EnumT = TypeVar("_EnumT", bound=Enum)


@dataclass(slots=True)
class ApiSettings:
    """Remote flow service connection settings."""

    base_url: str = DEFAULT_API_BASE_URL
    token: str = ""
    workspace_id: str = ""
    request_timeout_seconds: float = 30.0
    max_retries: int = 3


@dataclass(slots=True)
class BatchSettings:
    """Scheduling options consumed by the dispatcher."""

    parallelism: int = 5
    execution_mode: ExecutionMode = ExecutionMode.NORMAL
    task_timeout_seconds: int = 3_600
    timeout_policy: TimeoutPolicy = TimeoutPolicy.MARK_AS_ERROR
    write_output: bool = False
    overwrite_existing: bool = False
    output_dir: Path = Path("output")
    poll_interval_seconds: float = 2.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    api: ApiSettings = field(default_factory=ApiSettings)
    batch: BatchSettings = field(default_factory=BatchSettings)

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from environment with defaults for local use."""

        return cls(
            api=ApiSettings(
                base_url=os.getenv("FLOW_BATCH_API_BASE_URL", DEFAULT_API_BASE_URL).strip(),
                token=os.getenv("FLOW_BATCH_API_TOKEN", "").strip(),
                workspace_id=os.getenv("FLOW_BATCH_WORKSPACE_ID", "").strip(),
                request_timeout_seconds=float(
                    os.getenv("FLOW_BATCH_REQUEST_TIMEOUT_SECONDS", "30.0"),
                ),
                max_retries=int(os.getenv("FLOW_BATCH_MAX_RETRIES", "3")),
            ),
            batch=BatchSettings(
                parallelism=int(os.getenv("FLOW_BATCH_PARALLELISM", "5")),
                execution_mode=_env_enum(
                    "FLOW_BATCH_EXECUTION_MODE",
                    ExecutionMode,
                    default=ExecutionMode.NORMAL,
                ),
                task_timeout_seconds=int(os.getenv("FLOW_BATCH_TASK_TIMEOUT_SECONDS", "3600")),
                timeout_policy=_env_enum(
                    "FLOW_BATCH_TIMEOUT_POLICY",
                    TimeoutPolicy,
                    default=TimeoutPolicy.MARK_AS_ERROR,
                ),
                write_output=_env_bool("FLOW_BATCH_WRITE_OUTPUT", default=False),
                overwrite_existing=_env_bool("FLOW_BATCH_OVERWRITE_EXISTING", default=False),
                output_dir=Path(os.getenv("FLOW_BATCH_OUTPUT_DIR", "output")),
                poll_interval_seconds=float(
                    os.getenv("FLOW_BATCH_POLL_INTERVAL_SECONDS", "2.0"),
                ),
            ),
        )

    def validate_for_run(self, *, require_remote: bool = True) -> None:
        """Raise configuration error if the batch cannot be scheduled."""

        if self.batch.parallelism <= 0:
            raise ValueError("FLOW_BATCH_PARALLELISM must be a positive integer.")
        if self.batch.task_timeout_seconds <= 0:
            raise ValueError("FLOW_BATCH_TASK_TIMEOUT_SECONDS must be a positive integer.")
        if self.batch.poll_interval_seconds <= 0:
            raise ValueError("FLOW_BATCH_POLL_INTERVAL_SECONDS must be > 0.")
        if not require_remote:
            return

        parsed = urlparse(self.api.base_url)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ValueError(
                "Invalid FLOW_BATCH_API_BASE_URL: "
                f"{self.api.base_url!r}. Expected an absolute URL with http:// or https:// scheme.",
            )
        if not self.api.workspace_id:
            raise ValueError(
                "A workspace id is required. Set FLOW_BATCH_WORKSPACE_ID or pass --workspace-id.",
            )
        if self.api.request_timeout_seconds <= 0:
            raise ValueError("FLOW_BATCH_REQUEST_TIMEOUT_SECONDS must be > 0.")
        if self.api.max_retries < 0:
            raise ValueError("FLOW_BATCH_MAX_RETRIES must be >= 0.")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")


def _env_enum(name: str, enum_type: type[_EnumT], default: _EnumT) -> _EnumT:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    normalized = value.strip().lower().replace("-", "_")
    try:
        return enum_type(normalized)
    except ValueError as error:
        allowed = ", ".join(member.value for member in enum_type)
        raise ValueError(
            f"Invalid value for {name}: {value!r}. Expected one of: {allowed}.",
        ) from error
