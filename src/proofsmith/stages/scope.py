from __future__ import annotations

from proofsmith.models import ScopeResult
from proofsmith.stages.base import StageRunner, join_sections


class ScopeClassifierStage(StageRunner):
    role = "scope"
    prompt_file = "scope.md"
    fallback_prompt = """
You decide whether a request asks for a mathematical proof, derivation, or
algorithm-correctness argument. Return JSON only with keys: verdict (ALLOW,
REVIEW or BLOCK), confidence (0 to 1), reason, suggestion.
""".strip()
    temperature = 0.0

    async def classify(self, problem: str, attempt: str | None = None) -> ScopeResult:
        prompt = join_sections(
            "Request:",
            problem,
            f"User attempt:\n{attempt}" if attempt else None,
        )
        outcome = await self._with_fallback(
            self.models.fast,
            lambda model_id: self._invoke_structured(model_id, prompt, ScopeResult),
            None,
        )
        return outcome.result
