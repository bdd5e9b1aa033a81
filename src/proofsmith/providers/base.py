from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any

from pydantic import BaseModel

SCHEMA_ERROR_MARKER = "Invalid schema for response_format"


class ModelInvocationError(RuntimeError):
    """Raised when a model call fails."""

    def __init__(
        self,
        message: str,
        *,
        model_id: str | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.model_id = model_id
        self.retriable = retriable


class ModelTimeoutError(ModelInvocationError):
    """Raised when a model call exceeds its configured timeout."""

    def __init__(self, timeout_ms: int, *, model_id: str | None = None) -> None:
        super().__init__(
            f"Model call timed out after {timeout_ms}ms.", model_id=model_id, retriable=True
        )
        self.timeout_ms = timeout_ms


class SchemaValidationError(ModelInvocationError):
    """Raised when a model responded but its output does not match the expected schema."""

    def __init__(self, detail: str, *, model_id: str | None = None) -> None:
        super().__init__(
            f"{SCHEMA_ERROR_MARKER} 'response': {detail}", model_id=model_id, retriable=False
        )


class EmptyOutputError(ModelInvocationError):
    """Raised when a text stage returns blank output."""


class FallbackExhaustedError(ModelInvocationError):
    """Raised when both the primary and the fallback model failed."""

    def __init__(self, primary_error: BaseException, fallback_error: BaseException) -> None:
        super().__init__(
            "Primary and fallback models failed. "
            f"Primary: {error_message(primary_error)}. "
            f"Fallback: {error_message(fallback_error)}.",
            retriable=False,
        )
        self.primary_error = primary_error
        self.fallback_error = fallback_error


def error_message(error: BaseException) -> str:
    message = str(error).strip()
    return message or type(error).__name__


class ModelProvider(ABC):
    @abstractmethod
    async def invoke(
        self,
        model_id: str,
        system_prompt: str,
        user_prompt: str,
        *,
        schema: type[BaseModel] | None = None,
        temperature: float | None = None,
        timeout_ms: int,
        cancel_event: asyncio.Event | None = None,
    ) -> dict[str, Any] | str:
        """Invoke a model and return a schema-shaped dict, or text when no schema is given."""

    @abstractmethod
    async def stream(
        self,
        model_id: str,
        system_prompt: str,
        user_prompt: str,
        *,
        temperature: float | None = None,
        timeout_ms: int,
        cancel_event: asyncio.Event | None = None,
    ) -> AsyncIterator[str]:
        """Invoke a model and stream textual chunks."""
