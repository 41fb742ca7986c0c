"""Timeout and retry decisions for tasks that keep polling without a result."""

from __future__ import annotations

import math
from enum import Enum

from flow_batch.scheduler.models import TimeoutPolicy


class TimeoutAction(str, Enum):
    """Decision for one running task after a status check."""

    CONTINUE = "continue"
    RETRY = "retry"
    FAIL = "fail"


def compute_max_attempts(timeout_seconds: float, poll_interval_seconds: float) -> int:
    """Number of status checks that fit into the task timeout.

    Rounds half up and never returns less than one check.
    """

    if poll_interval_seconds <= 0:
        raise ValueError("poll_interval_seconds must be > 0")
    if timeout_seconds <= 0:
        raise ValueError("timeout_seconds must be > 0")
    return max(1, math.floor(timeout_seconds / poll_interval_seconds + 0.5))


def decide_timeout(attempt_count: int, max_attempts: int, policy: TimeoutPolicy) -> TimeoutAction:
    if attempt_count < max_attempts:
        return TimeoutAction.CONTINUE
    if policy == TimeoutPolicy.RETRY:
        return TimeoutAction.RETRY
    return TimeoutAction.FAIL


def timeout_error_message(timeout_seconds: float) -> str:
    seconds = int(timeout_seconds) if float(timeout_seconds).is_integer() else timeout_seconds
    return f"timed out after {seconds} seconds"
