"""Request and response models for REST API."""

from typing import Any

from pydantic import BaseModel, ConfigDict, field_validator

from models.state import ExecutionSummary


class StackSubmitRequest(BaseModel):
    """Request to submit and run a stack."""

    model_config = ConfigDict(extra="forbid")

    workflow: dict
    input: dict[str, Any] = {}
    timeout: float = 0
    runtime: str = "simulated"
    runtime_options: dict[str, Any] = {}
    parallel: bool = False

    @field_validator("workflow")
    @classmethod
    def workflow_not_empty(cls, v: dict) -> dict:
        if not v:
            raise ValueError("workflow is required")
        return v

    @field_validator("timeout")
    @classmethod
    def timeout_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("timeout must be non-negative")
        return v


class StackSubmitResponse(BaseModel):
    """Response from stack submission."""

    model_config = ConfigDict(frozen=True)

    stack_id: str
    execution_id: str
    status: str
    execution_order: list[str]


class StackStatusResponse(BaseModel):
    """Response for stack status."""

    model_config = ConfigDict(frozen=True)

    stack_id: str
    run_status: str
    error: str | None = None
    summary: ExecutionSummary


class ErrorResponse(BaseModel):
    """Error response."""

    model_config = ConfigDict(frozen=True)

    detail: str


class HealthResponse(BaseModel):
    """Health check response."""

    model_config = ConfigDict(frozen=True)

    status: str
