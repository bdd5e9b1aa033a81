from proofsmith.providers.base import (
    EmptyOutputError,
    FallbackExhaustedError,
    ModelInvocationError,
    ModelProvider,
    ModelTimeoutError,
    SchemaValidationError,
)
from proofsmith.providers.fallback import (
    FallbackResult,
    execute_with_fallback,
    is_schema_validation_error,
    with_model_timeout,
)
from proofsmith.providers.openai_provider import OpenAIProvider

__all__ = [
    "EmptyOutputError",
    "FallbackExhaustedError",
    "FallbackResult",
    "ModelInvocationError",
    "ModelProvider",
    "ModelTimeoutError",
    "OpenAIProvider",
    "SchemaValidationError",
    "execute_with_fallback",
    "is_schema_validation_error",
    "with_model_timeout",
]
