from __future__ import annotations

from dataclasses import dataclass

from proofsmith.models import CriticResult, ModelTier, Plan, ProofMode
from proofsmith.providers.fallback import FallbackHook
from proofsmith.stages.base import StageRunner, dump_json, join_sections

MODE_CHECKS: dict[str, str] = {
    "MATH_FORMAL": "Verify that language stays compact and mathematically formal.",
    "EXPLANATORY": (
        "Verify that explanations are clear and each equation is justified in plain language."
    ),
}


@dataclass(slots=True)
class CriticRun:
    critic: CriticResult
    model_id: str


class CriticStage(StageRunner):
    role = "critic"
    prompt_file = "critic.md"
    fallback_prompt = """
You are a strict Formal Logic Auditor.
Evaluate the draft for:
1) missing base cases,
2) hidden assumptions,
3) circular logic.
Return JSON only with keys: status, gaps, final_verdict.
status must be PASS or FAIL.
""".strip()
    temperature = 0.0

    @staticmethod
    def build_user_prompt(plan: Plan, draft: str, mode: ProofMode) -> str:
        return join_sections(
            f"Mode: {mode}",
            "Plan JSON:",
            dump_json(plan),
            "Draft proof markdown:",
            draft,
            "Check contradiction/minimality patterns when relevant to selected strategy.",
            MODE_CHECKS[mode],
        )

    async def run(
        self,
        plan: Plan,
        draft: str,
        mode: ProofMode,
        *,
        model_tier: ModelTier = "FAST",
        on_fallback: FallbackHook | None = None,
    ) -> CriticRun:
        prompt = self.build_user_prompt(plan, draft, mode)
        outcome = await self._with_fallback(
            self.model_for(model_tier),
            lambda model_id: self._invoke_structured(model_id, prompt, CriticResult),
            on_fallback,
        )
        return CriticRun(critic=outcome.result, model_id=outcome.model_id)
