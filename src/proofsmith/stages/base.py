from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable
from importlib import resources
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from proofsmith.config import ModelsConfig
from proofsmith.models import ModelTier, describe_validation_error
from proofsmith.providers.base import ModelProvider, SchemaValidationError
from proofsmith.providers.fallback import (
    FallbackHook,
    FallbackResult,
    execute_with_fallback,
    with_model_timeout,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")
SchemaT = TypeVar("SchemaT", bound=BaseModel)

DeltaHook = Callable[[str], None]


def dump_json(payload: Any) -> str:
    if isinstance(payload, BaseModel):
        payload = payload.model_dump(mode="json")
    return json.dumps(payload, ensure_ascii=False, indent=2)


def join_sections(*sections: str | None) -> str:
    return "\n\n".join(section for section in sections if section)


class StageRunner:
    """One pipeline role: prompt building, a fallback-guarded model call, validation."""

    role: str = "stage"
    prompt_file: str | None = None
    fallback_prompt: str = "You are a careful mathematical assistant."
    temperature: float | None = None

    def __init__(self, provider: ModelProvider, models: ModelsConfig) -> None:
        self.provider = provider
        self.models = models
        self.system_prompt = self._load_system_prompt()

    def _load_system_prompt(self) -> str:
        if not self.prompt_file:
            return self.fallback_prompt.strip()
        try:
            prompt_path = resources.files("proofsmith.prompts").joinpath(self.prompt_file)
            return prompt_path.read_text(encoding="utf-8").strip()
        except (FileNotFoundError, ModuleNotFoundError):
            return self.fallback_prompt.strip()

    def model_for(self, tier: ModelTier) -> str:
        if tier == "QUALITY":
            return self.models.quality_model
        return self.models.fast

    async def _with_fallback(
        self,
        primary_model: str,
        run_with_model: Callable[[str], Awaitable[T]],
        on_fallback: FallbackHook | None,
    ) -> FallbackResult[T]:
        return await execute_with_fallback(
            primary_model,
            self.models.fallback_model,
            run_with_model,
            on_fallback=on_fallback,
        )

    async def _invoke(
        self,
        model_id: str,
        user_prompt: str,
        *,
        schema: type[BaseModel] | None = None,
    ) -> dict[str, Any] | str:
        timeout_ms = self.models.timeout_ms
        return await with_model_timeout(
            timeout_ms,
            lambda cancel_event: self.provider.invoke(
                model_id,
                self.system_prompt,
                user_prompt,
                schema=schema,
                temperature=self.temperature,
                timeout_ms=timeout_ms,
                cancel_event=cancel_event,
            ),
            model_id=model_id,
        )

    async def _stream(self, model_id: str, user_prompt: str, on_delta: DeltaHook) -> str:
        timeout_ms = self.models.timeout_ms

        async def _consume(cancel_event: Any) -> str:
            chunks: list[str] = []
            async for chunk in self.provider.stream(
                model_id,
                self.system_prompt,
                user_prompt,
                temperature=self.temperature,
                timeout_ms=timeout_ms,
                cancel_event=cancel_event,
            ):
                chunks.append(chunk)
                on_delta(chunk)
            return "".join(chunks)

        return await with_model_timeout(timeout_ms, _consume, model_id=model_id)

    async def _invoke_structured(
        self, model_id: str, user_prompt: str, schema: type[SchemaT]
    ) -> SchemaT:
        raw = await self._invoke(model_id, user_prompt, schema=schema)
        if isinstance(raw, str):
            try:
                raw = json.loads(raw)
            except json.JSONDecodeError as exc:
                raise SchemaValidationError(
                    f"response is not valid JSON ({exc.msg})", model_id=model_id
                ) from exc
        try:
            return schema.model_validate(raw)
        except ValidationError as exc:
            logger.debug("%s output failed validation on %s", self.role, model_id)
            raise SchemaValidationError(describe_validation_error(exc), model_id=model_id) from exc
