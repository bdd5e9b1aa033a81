from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

from proofsmith.providers.base import (
    SCHEMA_ERROR_MARKER,
    FallbackExhaustedError,
    ModelTimeoutError,
    SchemaValidationError,
    error_message,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_TIMEOUT_MS = 20_000

FallbackHook = Callable[[str, str], None]


@dataclass(slots=True)
class FallbackResult(Generic[T]):
    result: T
    model_id: str


def is_schema_validation_error(error: BaseException) -> bool:
    if isinstance(error, SchemaValidationError):
        return True
    return SCHEMA_ERROR_MARKER in error_message(error)


async def with_model_timeout(
    timeout_ms: int,
    run: Callable[[asyncio.Event], Awaitable[T]],
    *,
    model_id: str | None = None,
) -> T:
    """Run one model call under a deadline.

    On expiry the cancel event is set and the in-flight call is cancelled, and a
    ``ModelTimeoutError`` replaces the bare ``TimeoutError``.
    """
    cancel_event = asyncio.Event()
    try:
        return await asyncio.wait_for(run(cancel_event), timeout=timeout_ms / 1000.0)
    except TimeoutError as exc:
        cancel_event.set()
        logger.warning("Model call to %s timed out after %sms", model_id or "<model>", timeout_ms)
        raise ModelTimeoutError(timeout_ms, model_id=model_id) from exc


async def execute_with_fallback(
    primary_model: str,
    fallback_model: str | None,
    run_with_model: Callable[[str], Awaitable[T]],
    *,
    on_fallback: FallbackHook | None = None,
) -> FallbackResult[T]:
    """Run work on the primary model, retrying once on a distinct fallback model.

    Schema-validation failures are re-raised without fallback. Attempts are
    sequential, never raced.
    """
    try:
        return FallbackResult(result=await run_with_model(primary_model), model_id=primary_model)
    except Exception as primary_error:
        if is_schema_validation_error(primary_error):
            raise
        if not fallback_model or fallback_model == primary_model:
            raise

        logger.info(
            "Model %s failed (%s); falling back to %s",
            primary_model,
            error_message(primary_error),
            fallback_model,
        )
        if on_fallback is not None:
            on_fallback(primary_model, fallback_model)

        try:
            result = await run_with_model(fallback_model)
        except Exception as fallback_error:
            raise FallbackExhaustedError(primary_error, fallback_error) from fallback_error
        return FallbackResult(result=result, model_id=fallback_model)


def resolve_timeout_ms(raw: str | None, default: int = DEFAULT_TIMEOUT_MS) -> int:
    if not raw:
        return default
    try:
        parsed = int(raw.strip())
    except ValueError:
        return default
    if parsed <= 0:
        return default
    return parsed
