"""Async HTTP client for the remote flow service."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

import httpx

from flow_batch import __version__
from flow_batch.scheduler.errors import RemoteInvocationError
from flow_batch.scheduler.models import RemoteTaskResponse, SessionHandle, SessionPollResponse

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_MAX_RETRIES = 3
DEFAULT_USER_AGENT = f"flow-batch/{__version__}"
_TRANSIENT_STATUS_CODES = frozenset({408, 425, 429, 500, 502, 503, 504})


class FlowApiClient:
    """httpx-based implementation of the remote invocation protocol."""

    def __init__(
        self,
        *,
        base_url: str,
        token: str = "",
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers = {
            "Accept": "application/json",
            "User-Agent": DEFAULT_USER_AGENT,
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers=headers,
            transport=transport or httpx.AsyncHTTPTransport(retries=max_retries),
        )

    async def invoke(
        self,
        *,
        flow_id: str,
        workspace_id: str,
        flow_input: Mapping[str, str],
        singleton: bool = False,
    ) -> RemoteTaskResponse:
        endpoint = "invoke_singleton" if singleton else "invoke"
        payload = await self._request(
            "POST",
            f"/flows/{flow_id}/{endpoint}",
            workspace_id=workspace_id,
            json_body={**flow_input, "stream_response": False, "variables": {}},
        )
        response = RemoteTaskResponse.from_payload(_expect_mapping(payload, endpoint))
        logger.info(
            "Flow %s invoked (%s): task_id=%s status=%s",
            flow_id,
            endpoint,
            response.id,
            response.status,
        )
        return response

    async def check_status(
        self,
        *,
        flow_id: str,
        task_id: str,
        workspace_id: str,
    ) -> RemoteTaskResponse:
        payload = await self._request(
            "GET",
            f"/flows/{flow_id}/{task_id}",
            workspace_id=workspace_id,
        )
        response = RemoteTaskResponse.from_payload(_expect_mapping(payload, "status check"))
        if response.id is None:
            response.id = task_id
        return response

    async def create_session(self, *, flow_id: str, workspace_id: str) -> SessionHandle:
        payload = await self._request(
            "POST",
            "/flows/sessions/from_flow/create",
            workspace_id=workspace_id,
            json_body={"flow_id": flow_id},
        )
        session_id = _expect_mapping(payload, "session create").get("session_id")
        return SessionHandle(session_id=str(session_id) if session_id is not None else None)

    async def invoke_session(self, *, session_id: str, workspace_id: str, message: str) -> None:
        await self._request(
            "POST",
            f"/flows/sessions/{session_id}/invoke",
            workspace_id=workspace_id,
            json_body={"message": message},
        )

    async def poll_session(
        self,
        *,
        session_id: str,
        workspace_id: str,
        from_timestamp: int,
    ) -> SessionPollResponse:
        payload = await self._request(
            "POST",
            f"/flows/sessions/{session_id}/invocation_response/{from_timestamp}",
            workspace_id=workspace_id,
        )
        try:
            return SessionPollResponse.from_payload(payload)
        except ValueError as error:
            raise RemoteInvocationError(str(error), transient=True) from error

    async def _request(
        self,
        method: str,
        path: str,
        *,
        workspace_id: str,
        json_body: dict[str, Any] | None = None,
    ) -> Any:
        try:
            response = await self._client.request(
                method,
                path,
                params={"workspace_id": workspace_id},
                json=json_body,
            )
        except httpx.TimeoutException as error:
            logger.warning("Timeout calling %s %s", method, path)
            raise RemoteInvocationError(f"Timeout calling {method} {path}", transient=True) from error
        except httpx.HTTPError as error:
            logger.warning("HTTP error calling %s %s: %s", method, path, error)
            raise RemoteInvocationError(
                f"HTTP error calling {method} {path}: {error}",
                transient=True,
            ) from error

        if not response.is_success:
            message = _error_message(response)
            raise RemoteInvocationError(
                f"HTTP {response.status_code}: {message}",
                status_code=response.status_code,
                transient=response.status_code in _TRANSIENT_STATUS_CODES,
            )
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as error:
            raise RemoteInvocationError(
                f"Invalid JSON from {method} {path}",
                status_code=response.status_code,
                transient=True,
            ) from error

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> FlowApiClient:
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.close()


def _expect_mapping(payload: Any, label: str) -> dict[str, Any]:
    if not isinstance(payload, dict):
        raise RemoteInvocationError(
            f"Unexpected {label} response type: {type(payload).__name__}",
        )
    return payload


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text or response.reason_phrase

    if isinstance(data, dict):
        detail = data.get("detail")
        if isinstance(detail, list) and detail:
            return ", ".join(_format_validation_error(item) for item in detail)
        if isinstance(detail, str):
            return detail
        message = data.get("message") or data.get("error")
        if message:
            return str(message)
    if isinstance(data, str) and data:
        return data
    return response.reason_phrase or "An error occurred"


def _format_validation_error(item: Any) -> str:
    if not isinstance(item, dict):
        return str(item)
    location = item.get("loc") or []
    path = ".".join(str(part) for part in location) if isinstance(location, list) else str(location)
    return f"{path}: {item.get('msg')}"
