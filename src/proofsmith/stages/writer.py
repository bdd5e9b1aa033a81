from __future__ import annotations

from dataclasses import dataclass

from proofsmith.latex import normalize_math_delimiters
from proofsmith.models import ModelTier, Plan, ProofMode
from proofsmith.providers.base import EmptyOutputError
from proofsmith.providers.fallback import FallbackHook
from proofsmith.stages.base import DeltaHook, StageRunner, dump_json, join_sections

MODE_INSTRUCTIONS: dict[str, str] = {
    "MATH_FORMAL": " ".join(
        [
            "Mode: MATH_FORMAL.",
            "Write a highly formal, concise theorem-proof style response.",
            "Prefer symbolic derivations and compact argument steps.",
            "Minimize prose and avoid storytelling.",
            "Use KaTeX-compatible delimiters: inline $...$, display $$...$$.",
        ]
    ),
    "EXPLANATORY": " ".join(
        [
            "Mode: EXPLANATORY.",
            "Write an intuitive explanation-first proof with clear transitions.",
            "Keep equations, but explain why each step is valid in plain language.",
            "Still keep rigor and avoid handwaving.",
            "Use KaTeX-compatible delimiters: inline $...$, display $$...$$.",
        ]
    ),
}


@dataclass(slots=True)
class WriterResult:
    markdown: str
    model_id: str


class WriterStage(StageRunner):
    role = "writer"
    prompt_file = "writer.md"
    fallback_prompt = """
You are the Proof Writer.
Write a rigorous proof in markdown.
Do not invent assumptions that contradict the plan.
""".strip()
    temperature = 0.2

    @staticmethod
    def build_user_prompt(
        problem: str,
        plan: Plan,
        mode: ProofMode,
        *,
        attempt: str | None = None,
        previous_draft: str | None = None,
        critic_gaps: list[str] | None = None,
    ) -> str:
        return join_sections(
            MODE_INSTRUCTIONS[mode],
            "Problem:",
            problem,
            "Structured plan JSON:",
            dump_json(plan),
            f"Original user attempt:\n{attempt}" if attempt else None,
            f"Previous draft:\n{previous_draft}" if previous_draft else None,
            "Required fixes:\n- " + "\n- ".join(critic_gaps) if critic_gaps else None,
            "Return markdown only.",
        )

    async def run(
        self,
        problem: str,
        plan: Plan,
        mode: ProofMode,
        *,
        attempt: str | None = None,
        previous_draft: str | None = None,
        critic_gaps: list[str] | None = None,
        model_tier: ModelTier = "FAST",
        on_delta: DeltaHook | None = None,
        on_fallback: FallbackHook | None = None,
    ) -> WriterResult:
        prompt = self.build_user_prompt(
            problem,
            plan,
            mode,
            attempt=attempt,
            previous_draft=previous_draft,
            critic_gaps=critic_gaps,
        )

        async def _write(model_id: str) -> str:
            if on_delta is not None:
                text = await self._stream(model_id, prompt, on_delta)
            else:
                text = str(await self._invoke(model_id, prompt))
            markdown = text.strip()
            if not markdown:
                raise EmptyOutputError("Writer returned an empty draft.", model_id=model_id)
            return normalize_math_delimiters(markdown)

        outcome = await self._with_fallback(self.model_for(model_tier), _write, on_fallback)
        return WriterResult(markdown=outcome.result, model_id=outcome.model_id)
