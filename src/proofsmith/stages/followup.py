from __future__ import annotations

from dataclasses import dataclass

from proofsmith.config import ModelsConfig
from proofsmith.latex import normalize_math_delimiters, trim_to_line_count
from proofsmith.models import FollowupContext, ProofMode
from proofsmith.providers.base import EmptyOutputError, ModelProvider
from proofsmith.providers.fallback import FallbackHook
from proofsmith.stages.base import StageRunner, join_sections


@dataclass(slots=True)
class FollowupResult:
    markdown: str
    model_id: str
    used_context: bool


class FollowupStage(StageRunner):
    role = "followup"
    prompt_file = "followup.md"
    fallback_prompt = """
You are a patient mathematics tutor answering a follow-up question about a proof.
Answer in concise markdown, stay consistent with the given proof, and say so
when the question is outside the proof's scope.
""".strip()
    temperature = 0.3

    def __init__(
        self, provider: ModelProvider, models: ModelsConfig, *, max_lines: int = 60
    ) -> None:
        super().__init__(provider, models)
        self.max_lines = max_lines

    @staticmethod
    def build_user_prompt(
        question: str, mode_hint: ProofMode | None, context: FollowupContext | None
    ) -> str:
        context_block = None
        if context is not None:
            context_block = join_sections(
                f"Original problem:\n{context.problem}",
                f"Strategy: {context.strategy} ({context.variant_role})",
                f"Proof:\n{context.proof_markdown}",
            )
        return join_sections(
            f"Preferred style: {mode_hint}" if mode_hint else None,
            context_block,
            f"Question:\n{question}",
            "Return markdown only. Use inline $...$ and display $$...$$ for math.",
        )

    async def run(
        self,
        question: str,
        *,
        mode_hint: ProofMode | None = None,
        context: FollowupContext | None = None,
        on_fallback: FallbackHook | None = None,
    ) -> FollowupResult:
        prompt = self.build_user_prompt(question, mode_hint, context)

        async def _answer(model_id: str) -> str:
            text = str(await self._invoke(model_id, prompt)).strip()
            if not text:
                raise EmptyOutputError("Follow-up returned empty output.", model_id=model_id)
            return trim_to_line_count(normalize_math_delimiters(text), self.max_lines)

        outcome = await self._with_fallback(self.models.followup_model, _answer, on_fallback)
        return FollowupResult(
            markdown=outcome.result,
            model_id=outcome.model_id,
            used_context=context is not None,
        )
