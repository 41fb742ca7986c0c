"""Remote invocation interface consumed by the dispatcher."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Protocol

from flow_batch.scheduler.models import RemoteTaskResponse, SessionHandle, SessionPollResponse


class RemoteInvocationClient(Protocol):
    """Protocol implemented by remote flow service clients.

    Every method raises ``RemoteInvocationError`` when the call fails.
    """

    async def invoke(
        self,
        *,
        flow_id: str,
        workspace_id: str,
        flow_input: Mapping[str, str],
        singleton: bool = False,
    ) -> RemoteTaskResponse:
        """Start one flow execution."""

    async def check_status(
        self,
        *,
        flow_id: str,
        task_id: str,
        workspace_id: str,
    ) -> RemoteTaskResponse:
        """Fetch the current status of a started execution."""

    async def create_session(self, *, flow_id: str, workspace_id: str) -> SessionHandle:
        """Open a session bound to the flow."""

    async def invoke_session(self, *, session_id: str, workspace_id: str, message: str) -> None:
        """Send the task message into an open session."""

    async def poll_session(
        self,
        *,
        session_id: str,
        workspace_id: str,
        from_timestamp: int,
    ) -> SessionPollResponse:
        """Fetch session events newer than the cursor."""
