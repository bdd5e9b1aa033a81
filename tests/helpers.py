import asyncio
from collections.abc import AsyncIterator
from datetime import UTC, datetime, timedelta
from typing import Any

from pydantic import BaseModel

from proofsmith.config import ModelsConfig
from proofsmith.models import CriticResult, Plan, ScopeResult
from proofsmith.providers.base import ModelProvider

GOOD_DRAFT = (
    "**Proof.** Suppose $\\sqrt{2} = p/q$ in lowest terms.\n\n"
    "Then $p^2 = 2q^2$, so both are even. $\\blacksquare$"
)


def plan_dict(strategy: str = "CONTRADICTION_GENERAL", **overrides: Any) -> dict[str, Any]:
    plan: dict[str, Any] = {
        "meta": {"strategy": strategy, "confidence_score": 0.9, "user_intent": "LEARNING"},
        "setup": {
            "definitions": ["A rational number is p/q with q != 0."],
            "assumptions": [],
            "goal": "Show that sqrt(2) is irrational.",
        },
        "core_logic": {
            "invariant": None,
            "base_cases": [],
            "contradiction_setup": {
                "assumption": "sqrt(2) = p/q in lowest terms",
                "implication": "p and q are both even",
                "climax": "p/q was not in lowest terms",
            },
            "observations": ["Squares of odd numbers are odd."],
        },
        "steps": [
            {"type": "step", "content": "Assume sqrt(2) = p/q in lowest terms."},
            {"type": "math", "content": "p^2 = 2q^2"},
        ],
        "audit_report": {
            "status": "FAIL",
            "attempts": 0,
            "critiques": [],
            "final_verdict": "Pending audit.",
        },
    }
    plan.update(overrides)
    return plan


def critic_dict(status: str = "PASS", gaps: list[str] | None = None) -> dict[str, Any]:
    verdict = "The proof is complete." if status == "PASS" else "The proof has gaps."
    return {"status": status, "gaps": list(gaps or []), "final_verdict": verdict}


def models_config(**overrides: Any) -> ModelsConfig:
    values: dict[str, Any] = {"fast": "fast-model", "quality": "quality-model", "timeout_ms": 2000}
    values.update(overrides)
    return ModelsConfig(**values)


class ScriptedProvider(ModelProvider):
    """Replays canned responses per role.

    Each role has a queue; the last entry repeats once the queue runs dry.
    Exceptions in a queue are raised instead of returned. ``fail_models``
    makes every call on a given model id raise.
    """

    def __init__(
        self,
        *,
        plans: list[Any] | None = None,
        drafts: list[Any] | None = None,
        critiques: list[Any] | None = None,
        followups: list[Any] | None = None,
        scopes: list[Any] | None = None,
        fail_models: dict[str, Exception] | None = None,
        delays: dict[str, float] | None = None,
    ) -> None:
        self.queues: dict[str, list[Any]] = {
            "planner": list(plans if plans is not None else [plan_dict()]),
            "writer": list(drafts if drafts is not None else [GOOD_DRAFT]),
            "critic": list(critiques if critiques is not None else [critic_dict()]),
            "followup": list(followups if followups is not None else ["A short answer."]),
            "scope": list(scopes if scopes is not None else []),
        }
        self.fail_models = fail_models or {}
        self.delays = delays or {}
        self.calls: list[dict[str, Any]] = []

    @staticmethod
    def _role(schema: type[BaseModel] | None, user_prompt: str) -> str:
        if schema is Plan:
            return "planner"
        if schema is CriticResult:
            return "critic"
        if schema is ScopeResult:
            return "scope"
        if "Question:" in user_prompt:
            return "followup"
        return "writer"

    def count(self, role: str) -> int:
        return sum(1 for call in self.calls if call["role"] == role)

    def prompts(self, role: str) -> list[str]:
        return [call["user_prompt"] for call in self.calls if call["role"] == role]

    async def _next(self, role: str, model_id: str, user_prompt: str, streamed: bool) -> Any:
        self.calls.append(
            {"role": role, "model": model_id, "user_prompt": user_prompt, "streamed": streamed}
        )
        if self.delays.get(role):
            await asyncio.sleep(self.delays[role])
        if model_id in self.fail_models:
            raise self.fail_models[model_id]
        queue = self.queues[role]
        if not queue:
            raise AssertionError(f"No scripted response for {role}")
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, Exception):
            raise item
        return item

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
        _ = system_prompt, temperature, timeout_ms, cancel_event
        return await self._next(self._role(schema, user_prompt), model_id, user_prompt, False)

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
        _ = system_prompt, temperature, timeout_ms, cancel_event
        text = str(await self._next("writer", model_id, user_prompt, True))
        middle = len(text) // 2
        for chunk in (text[:middle], text[middle:]):
            if chunk:
                yield chunk


class FrozenClock:
    """UTC clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)
