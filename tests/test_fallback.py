import asyncio

import pytest

from proofsmith.providers.base import (
    FallbackExhaustedError,
    ModelInvocationError,
    ModelTimeoutError,
    SchemaValidationError,
)
from proofsmith.providers.fallback import (
    execute_with_fallback,
    is_schema_validation_error,
    resolve_timeout_ms,
    with_model_timeout,
)


class Recorder:
    def __init__(self, failures: dict[str, Exception] | None = None) -> None:
        self.failures = failures or {}
        self.models: list[str] = []

    async def __call__(self, model_id: str) -> str:
        self.models.append(model_id)
        if model_id in self.failures:
            raise self.failures[model_id]
        return f"answer from {model_id}"


def test_primary_success_skips_fallback() -> None:
    run = Recorder()
    notices: list[tuple[str, str]] = []

    outcome = asyncio.run(
        execute_with_fallback(
            "primary", "backup", run, on_fallback=lambda a, b: notices.append((a, b))
        )
    )

    assert outcome.result == "answer from primary"
    assert outcome.model_id == "primary"
    assert run.models == ["primary"]
    assert notices == []


def test_transport_error_falls_back_once() -> None:
    run = Recorder({"primary": ModelInvocationError("connection reset")})
    notices: list[tuple[str, str]] = []

    outcome = asyncio.run(
        execute_with_fallback(
            "primary", "backup", run, on_fallback=lambda a, b: notices.append((a, b))
        )
    )

    assert outcome.model_id == "backup"
    assert run.models == ["primary", "backup"]
    assert notices == [("primary", "backup")]


def test_schema_error_never_falls_back() -> None:
    run = Recorder({"primary": SchemaValidationError("steps: too short")})

    with pytest.raises(SchemaValidationError):
        asyncio.run(execute_with_fallback("primary", "backup", run))

    assert run.models == ["primary"]


def test_schema_error_detected_by_message_marker() -> None:
    foreign = RuntimeError("400 Invalid schema for response_format 'response': bad")
    run = Recorder({"primary": foreign})

    with pytest.raises(RuntimeError, match="Invalid schema"):
        asyncio.run(execute_with_fallback("primary", "backup", run))

    assert run.models == ["primary"]
    assert is_schema_validation_error(foreign) is True
    assert is_schema_validation_error(ValueError("other")) is False


@pytest.mark.parametrize("fallback", [None, "", "primary"])
def test_missing_or_identical_fallback_reraises(fallback: str | None) -> None:
    error = ModelInvocationError("rate limited")
    run = Recorder({"primary": error})

    with pytest.raises(ModelInvocationError) as excinfo:
        asyncio.run(execute_with_fallback("primary", fallback, run))

    assert excinfo.value is error
    assert run.models == ["primary"]


def test_both_models_failing_reports_both_messages() -> None:
    run = Recorder(
        {
            "primary": ModelInvocationError("primary overloaded"),
            "backup": ModelInvocationError("backup unavailable"),
        }
    )

    with pytest.raises(FallbackExhaustedError) as excinfo:
        asyncio.run(execute_with_fallback("primary", "backup", run))

    message = str(excinfo.value)
    assert message.startswith("Primary and fallback models failed.")
    assert "primary overloaded" in message
    assert "backup unavailable" in message
    assert run.models == ["primary", "backup"]


def test_timeout_raises_model_timeout_and_sets_cancel_event() -> None:
    seen: list[asyncio.Event] = []

    async def slow(cancel_event: asyncio.Event) -> str:
        seen.append(cancel_event)
        await asyncio.sleep(5)
        return "late"

    with pytest.raises(ModelTimeoutError, match="timed out after 20ms") as excinfo:
        asyncio.run(with_model_timeout(20, slow, model_id="slow-model"))

    assert excinfo.value.model_id == "slow-model"
    assert excinfo.value.timeout_ms == 20
    assert seen[0].is_set()


def test_timeout_passes_fast_result_through() -> None:
    async def quick(cancel_event: asyncio.Event) -> str:
        return "done" if not cancel_event.is_set() else "cancelled"

    assert asyncio.run(with_model_timeout(1000, quick)) == "done"


def test_timed_out_primary_falls_back() -> None:
    async def scenario() -> str:
        async def run(model_id: str) -> str:
            if model_id == "primary":
                return await with_model_timeout(
                    10, lambda _event: asyncio.sleep(5, result="late"), model_id=model_id
                )
            return "fallback answer"

        outcome = await execute_with_fallback("primary", "backup", run)
        return outcome.result

    assert asyncio.run(scenario()) == "fallback answer"


@pytest.mark.parametrize(
    ("raw", "expected"),
    [(None, 20_000), ("", 20_000), ("abc", 20_000), ("-5", 20_000), ("0", 20_000), ("1500", 1500)],
)
def test_resolve_timeout_ms(raw: str | None, expected: int) -> None:
    assert resolve_timeout_ms(raw) == expected
