"""REST API package."""

from api.app import StackAPI, StackRun
from api.models import (
    ErrorResponse,
    HealthResponse,
    StackStatusResponse,
    StackSubmitRequest,
    StackSubmitResponse,
)

__all__ = [
    "StackAPI",
    "StackRun",
    "ErrorResponse",
    "HealthResponse",
    "StackStatusResponse",
    "StackSubmitRequest",
    "StackSubmitResponse",
]
