from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from typing import Any

import openai
from openai import AsyncOpenAI
from pydantic import BaseModel, ValidationError

from proofsmith.models import describe_validation_error
from proofsmith.providers.base import (
    ModelInvocationError,
    ModelProvider,
    ModelTimeoutError,
    SchemaValidationError,
)

logger = logging.getLogger(__name__)

JSON_FENCE_PREFIXES = ("```json", "```")


def is_reasoning_model(model_id: str) -> bool:
    return model_id.startswith("gpt-5") or model_id.startswith("o")


def _strip_json_fence(raw: str) -> str:
    text = raw.strip()
    for prefix in JSON_FENCE_PREFIXES:
        if text.startswith(prefix):
            text = text[len(prefix) :]
            if text.endswith("```"):
                text = text[:-3]
            return text.strip()
    return text


class OpenAIProvider(ModelProvider):
    """ModelProvider backed by the OpenAI chat completions API."""

    def __init__(self, *, api_key: str | None = None, client: Any | None = None) -> None:
        self._api_key = api_key
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            try:
                self._client = AsyncOpenAI(api_key=self._api_key)
            except openai.OpenAIError as exc:
                raise ModelInvocationError(
                    "OPENAI_API_KEY is not configured.", retriable=False
                ) from exc
        return self._client

    @staticmethod
    def _messages(system_prompt: str, user_prompt: str) -> list[dict[str, str]]:
        return [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ]

    @staticmethod
    def _sampling_options(model_id: str, temperature: float | None) -> dict[str, Any]:
        if is_reasoning_model(model_id):
            return {"reasoning_effort": "minimal"}
        if temperature is None:
            return {}
        return {"temperature": temperature}

    @staticmethod
    def _extract_text(response: Any) -> str:
        choices = getattr(response, "choices", None) or []
        if not choices:
            return ""
        message = getattr(choices[0], "message", None)
        content = getattr(message, "content", None)
        return content if isinstance(content, str) else ""

    @staticmethod
    def _validate(model_id: str, raw: str, schema: type[BaseModel]) -> dict[str, Any]:
        try:
            parsed = json.loads(_strip_json_fence(raw))
        except json.JSONDecodeError as exc:
            raise SchemaValidationError(
                f"response is not valid JSON ({exc.msg})", model_id=model_id
            ) from exc
        try:
            validated = schema.model_validate(parsed)
        except ValidationError as exc:
            raise SchemaValidationError(describe_validation_error(exc), model_id=model_id) from exc
        return validated.model_dump(mode="json")

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
        request: dict[str, Any] = {
            "model": model_id,
            "messages": self._messages(system_prompt, user_prompt),
            "timeout": timeout_ms / 1000.0,
            **self._sampling_options(model_id, temperature),
        }
        if schema is not None:
            request["response_format"] = {"type": "json_object"}

        try:
            response = await self.client.chat.completions.create(**request)
        except openai.APITimeoutError as exc:
            raise ModelTimeoutError(timeout_ms, model_id=model_id) from exc
        except openai.APIError as exc:
            raise ModelInvocationError(
                f"OpenAI request failed for {model_id}: {exc}", model_id=model_id
            ) from exc

        if cancel_event is not None and cancel_event.is_set():
            raise ModelInvocationError(
                f"Model call to {model_id} was cancelled.", model_id=model_id
            )

        text = self._extract_text(response)
        if schema is None:
            return text
        return self._validate(model_id, text, schema)

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
        try:
            response = await self.client.chat.completions.create(
                model=model_id,
                messages=self._messages(system_prompt, user_prompt),
                stream=True,
                timeout=timeout_ms / 1000.0,
                **self._sampling_options(model_id, temperature),
            )
            async for chunk in response:
                if cancel_event is not None and cancel_event.is_set():
                    logger.debug("Stream from %s cancelled mid-flight", model_id)
                    break
                choices = getattr(chunk, "choices", None) or []
                if not choices:
                    continue
                delta = getattr(choices[0].delta, "content", None)
                if isinstance(delta, str) and delta:
                    yield delta
        except openai.APITimeoutError as exc:
            raise ModelTimeoutError(timeout_ms, model_id=model_id) from exc
        except openai.APIError as exc:
            raise ModelInvocationError(
                f"OpenAI stream failed for {model_id}: {exc}", model_id=model_id
            ) from exc
