"""HTTP client for remote task control endpoints."""

from typing import Any, Literal

import httpx
from pydantic import BaseModel, ConfigDict, field_validator


class ControlClientError(Exception):
    """Raised when control call fails."""

    pass


class ExecuteRequest(BaseModel):
    """Request body for /control/execute."""

    model_config = ConfigDict(frozen=True)

    task_id: str
    uses: str = ""
    execution_id: str = ""
    inputs: dict[str, Any] = {}
    parameters: dict[str, Any] = {}

    @field_validator("task_id")
    @classmethod
    def task_id_not_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("task_id is required")
        return v


class ExecuteResponse(BaseModel):
    """Response from /control/execute."""

    model_config = ConfigDict(frozen=True)

    status: Literal["complete", "running", "failed"]
    task_id: str | None = None
    output: dict[str, Any] | None = None
    error: str | None = None


class StatusResponse(BaseModel):
    """Response from /control/status."""

    model_config = ConfigDict(frozen=True)

    status: Literal["running", "complete", "failed"]
    progress: int | None = None
    error: str | None = None


class OutputResponse(BaseModel):
    """Response from /control/output."""

    model_config = ConfigDict(frozen=True)

    output: dict[str, Any]


class ControlClient:
    """HTTP client for remote task control endpoints."""

    def __init__(self, timeout: float = 30.0, transport: httpx.BaseTransport | None = None):
        """Initialize client with timeout."""
        if timeout <= 0:
            raise ValueError("timeout must be positive")
        self._timeout = timeout
        self._transport = transport

    def _send(self, method: str, url: str, model: type[BaseModel], json: dict | None = None):
        try:
            with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
                response = client.request(method, url, json=json)
        except httpx.ConnectError as e:
            raise ControlClientError(f"Connection failed: {e}") from e
        except httpx.TimeoutException as e:
            raise ControlClientError(f"Request timed out: {e}") from e
        except httpx.RequestError as e:
            raise ControlClientError(f"Request failed: {e}") from e

        if response.status_code >= 400:
            raise ControlClientError(
                f"HTTP {response.status_code}: {response.text}"
            )

        try:
            return model.model_validate(response.json())
        except Exception as e:
            raise ControlClientError(f"Invalid response: {e}") from e

    def execute(
        self,
        base_url: str,
        task_id: str,
        uses: str = "",
        inputs: dict[str, Any] | None = None,
        parameters: dict[str, Any] | None = None,
        execution_id: str = "",
    ) -> ExecuteResponse:
        """Call POST /control/execute."""
        if not base_url or not base_url.strip():
            raise ValueError("base_url is required")

        request = ExecuteRequest(
            task_id=task_id,
            uses=uses,
            execution_id=execution_id,
            inputs=inputs or {},
            parameters=parameters or {},
        )

        url = f"{base_url.rstrip('/')}/control/execute"
        return self._send("POST", url, ExecuteResponse, json=request.model_dump(mode="json"))

    def get_status(self, base_url: str, task_id: str) -> StatusResponse:
        """Call GET /control/status/{task_id}."""
        if not base_url or not base_url.strip():
            raise ValueError("base_url is required")
        if not task_id or not task_id.strip():
            raise ValueError("task_id is required")

        url = f"{base_url.rstrip('/')}/control/status/{task_id}"
        return self._send("GET", url, StatusResponse)

    def get_output(self, base_url: str, task_id: str) -> OutputResponse:
        """Call GET /control/output/{task_id}."""
        if not base_url or not base_url.strip():
            raise ValueError("base_url is required")
        if not task_id or not task_id.strip():
            raise ValueError("task_id is required")

        url = f"{base_url.rstrip('/')}/control/output/{task_id}"
        return self._send("GET", url, OutputResponse)
