"""Error types raised by scheduler collaborators."""

from __future__ import annotations


class RemoteInvocationError(RuntimeError):
    """Remote flow service call failed, with retryability hint."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        transient: bool = False,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.transient = transient


class InvalidTransitionError(RuntimeError):
    """Task status change outside of the lifecycle state machine."""

    def __init__(self, task_id: str, status_from: str, status_to: str) -> None:
        super().__init__(f"Invalid task status transition for {task_id}: {status_from} -> {status_to}")
        self.task_id = task_id
        self.status_from = status_from
        self.status_to = status_to


class TaskNotFoundError(KeyError):
    """Task id is not part of the batch."""

    def __init__(self, task_id: str) -> None:
        super().__init__(task_id)
        self.task_id = task_id

    def __str__(self) -> str:
        return f"Task not found: {self.task_id}"
