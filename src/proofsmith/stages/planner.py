from __future__ import annotations

from dataclasses import dataclass

from proofsmith.models import Plan, ProofStrategy, UserIntent
from proofsmith.providers.fallback import FallbackHook
from proofsmith.stages.base import StageRunner, join_sections

REPAIR_INSTRUCTION = (
    "Return strict JSON only. Do not add markdown fences, extra prose, or trailing text."
)


@dataclass(slots=True)
class PlannerResult:
    plan: Plan
    model_id: str


class PlannerStage(StageRunner):
    role = "planner"
    prompt_file = "planner.md"
    fallback_prompt = f"""
You are the Logic Architect. Your role is to structure, not to prove.
Select the most suitable strategy from: {", ".join(item.value for item in ProofStrategy)}.
Extract definitions, assumptions, goal, and core logic skeleton.
Output JSON only that matches the required schema.
""".strip()
    temperature = 0.1

    @staticmethod
    def build_user_prompt(
        problem: str,
        attempt: str | None,
        user_intent: UserIntent,
        *,
        repair_mode: bool = False,
    ) -> str:
        return join_sections(
            f"User intent: {user_intent}",
            "Problem:",
            problem,
            "User attempt:" if attempt else None,
            attempt,
            "Return only valid JSON.",
            "All schema keys are required: use [] or null when a field is not applicable.",
            "Set core_logic.contradiction_setup to null when contradiction is not used.",
            "Set audit_report.status to FAIL and attempts to 0 for planning stage.",
            REPAIR_INSTRUCTION if repair_mode else None,
        )

    async def run(
        self,
        problem: str,
        *,
        attempt: str | None = None,
        user_intent: UserIntent = "LEARNING",
        repair_mode: bool = False,
        on_fallback: FallbackHook | None = None,
    ) -> PlannerResult:
        prompt = self.build_user_prompt(problem, attempt, user_intent, repair_mode=repair_mode)
        outcome = await self._with_fallback(
            self.models.fast,
            lambda model_id: self._invoke_structured(model_id, prompt, Plan),
            on_fallback,
        )
        return PlannerResult(plan=outcome.result, model_id=outcome.model_id)
