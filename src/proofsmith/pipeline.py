from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TypeVar

from proofsmith.events import (
    EventSink,
    critique_event,
    draft_complete_event,
    draft_delta_event,
    emit,
    plan_event,
    status_event,
)
from proofsmith.heartbeat import DEFAULT_HEARTBEAT_INTERVAL_SECONDS, with_heartbeat
from proofsmith.latex import lint_latex_markdown
from proofsmith.mental_model import get_mental_model
from proofsmith.models import (
    AuditReport,
    AuditStatus,
    CriticResult,
    FinalProofPayload,
    GenerateProofRequest,
    ModelTier,
    Plan,
    ProofMode,
    VariantRole,
)
from proofsmith.providers.base import error_message
from proofsmith.providers.fallback import FallbackHook
from proofsmith.stages import CriticStage, PlannerResult, PlannerStage, WriterStage

logger = logging.getLogger(__name__)

T = TypeVar("T")

LINT_VERDICT_SUFFIX = " (with LaTeX warnings)"


@dataclass(slots=True)
class VariantResult:
    payload: FinalProofPayload
    models_used: list[str]
    latency_ms: int
    run_id: str


@dataclass(slots=True)
class _RunState:
    """Mutable bookkeeping for a single variant run."""

    sink: EventSink | None
    models_used: list[str] = field(default_factory=list)
    draft: str = ""
    critic: CriticResult | None = None
    attempt: int = 0

    def record_model(self, model_id: str) -> None:
        if model_id not in self.models_used:
            self.models_used.append(model_id)

    @property
    def gaps(self) -> list[str]:
        return list(self.critic.gaps) if self.critic is not None else []


def audit_status_for(critic: CriticResult) -> AuditStatus:
    if critic.status != "PASS":
        return "FAIL"
    return "PASSED_WITH_WARNINGS" if critic.gaps else "PASS"


def merge_lint_warnings(critic: CriticResult, warnings: list[str]) -> CriticResult:
    merged_gaps = [*critic.gaps, *warnings]
    verdict = critic.final_verdict
    if critic.status == "PASS" and merged_gaps:
        verdict = f"{verdict}{LINT_VERDICT_SUFFIX}"
    return CriticResult(status=critic.status, gaps=merged_gaps, final_verdict=verdict)


def writer_status(attempt: int) -> str:
    label = "Drafting..." if attempt == 1 else "Refining Logic..."
    return f"{label} (Attempt {attempt})"


class VariantPipeline:
    """Drives planner -> (writer -> critic)* for one proof variant.

    The pipeline accepts a draft only when the critic passes it and the static
    LaTeX lint adds nothing. When attempts run out the last draft is returned
    with the last critique; a final PASS that only carries lint warnings is
    labelled PASSED_WITH_WARNINGS rather than FAIL.
    """

    def __init__(
        self,
        planner: PlannerStage,
        writer: WriterStage,
        critic: CriticStage,
        *,
        heartbeat_interval_seconds: float = DEFAULT_HEARTBEAT_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.planner = planner
        self.writer = writer
        self.critic = critic
        self.heartbeat_interval_seconds = heartbeat_interval_seconds
        self.clock = clock

    async def _stage(
        self, stage: str, state: _RunState, work: Callable[[], Awaitable[T]]
    ) -> T:
        return await with_heartbeat(
            stage, state.sink, work, interval_seconds=self.heartbeat_interval_seconds
        )

    @staticmethod
    def _fallback_notice(
        state: _RunState, label: str, stage: str, attempt: int | None = None
    ) -> FallbackHook:
        def _notify(from_model: str, to_model: str) -> None:
            emit(
                state.sink,
                status_event(
                    f"{label} model fallback: {from_model} -> {to_model}",
                    stage=stage,
                    attempt=attempt,
                ),
            )

        return _notify

    async def _plan(self, request: GenerateProofRequest, state: _RunState) -> Plan:
        async def _call(stage: str, repair_mode: bool) -> PlannerResult:
            return await self._stage(
                stage,
                state,
                lambda: self.planner.run(
                    request.problem,
                    attempt=request.attempt,
                    user_intent=request.user_intent,
                    repair_mode=repair_mode,
                    on_fallback=self._fallback_notice(state, "Planner", stage),
                ),
            )

        try:
            result = await _call("planner", False)
        except Exception as exc:
            logger.warning("Planner failed (%s); retrying once in repair mode", error_message(exc))
            emit(
                state.sink,
                status_event(
                    "Planner output invalid. Retrying with strict JSON constraints...",
                    stage="planner",
                ),
            )
            result = await _call("planner-repair", True)

        state.record_model(result.model_id)
        emit(state.sink, plan_event(result.plan))
        return result.plan

    async def _write(
        self,
        request: GenerateProofRequest,
        plan: Plan,
        mode: ProofMode,
        model_tier: ModelTier,
        state: _RunState,
    ) -> str:
        attempt = state.attempt
        emit(state.sink, status_event(writer_status(attempt), stage="writer", attempt=attempt))

        on_delta = None
        if state.sink is not None:
            sink = state.sink

            def on_delta(delta: str) -> None:
                sink(draft_delta_event(attempt, delta))

        notice = self._fallback_notice(state, "Writer", "writer", attempt)

        def on_fallback(from_model: str, to_model: str) -> None:
            notice(from_model, to_model)
            # Deltas already streamed belong to the abandoned draft.
            emit(
                state.sink,
                status_event(
                    f"Restarting draft on fallback model... (Attempt {attempt})",
                    stage="writer",
                    attempt=attempt,
                ),
            )

        result = await self._stage(
            f"writer-{attempt}",
            state,
            lambda: self.writer.run(
                request.problem,
                plan,
                mode,
                attempt=request.attempt,
                previous_draft=state.draft or None,
                critic_gaps=state.gaps,
                model_tier=model_tier,
                on_delta=on_delta,
                on_fallback=on_fallback,
            ),
        )
        state.record_model(result.model_id)
        emit(state.sink, draft_complete_event(attempt, result.markdown))
        return result.markdown

    async def _critique(
        self, plan: Plan, draft: str, mode: ProofMode, model_tier: ModelTier, state: _RunState
    ) -> CriticResult:
        attempt = state.attempt
        warnings = lint_latex_markdown(draft)
        emit(
            state.sink,
            status_event(
                f"Critic review in progress... (Attempt {attempt})",
                stage="critic",
                attempt=attempt,
            ),
        )
        result = await self._stage(
            f"critic-{attempt}",
            state,
            lambda: self.critic.run(
                plan,
                draft,
                mode,
                model_tier=model_tier,
                on_fallback=self._fallback_notice(state, "Critic", "critic", attempt),
            ),
        )
        state.record_model(result.model_id)
        merged = merge_lint_warnings(result.critic, warnings)
        emit(state.sink, critique_event(attempt, merged.status, merged.gaps))
        return merged

    async def run(
        self,
        run_id: str,
        request: GenerateProofRequest,
        *,
        mode: ProofMode,
        variant_role: VariantRole,
        is_background: bool,
        model_tier: ModelTier,
        max_attempts: int,
        sink: EventSink | None = None,
        existing_plan: Plan | None = None,
    ) -> VariantResult:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1.")

        started = self.clock()
        state = _RunState(sink=sink)

        emit(sink, status_event("Analyzing Logic Structure...", stage="planner"))
        plan = existing_plan if existing_plan is not None else await self._plan(request, state)

        while state.attempt < max_attempts:
            state.attempt += 1
            state.draft = await self._write(request, plan, mode, model_tier, state)
            state.critic = await self._critique(plan, state.draft, mode, model_tier, state)

            accepted = state.critic.status == "PASS" and not state.critic.gaps
            if accepted:
                break

        critic = state.critic
        assert critic is not None
        logger.info(
            "Run %s (%s) finished after %d attempt(s): %s",
            run_id,
            variant_role,
            state.attempt,
            audit_status_for(critic),
        )
        payload = FinalProofPayload(
            run_id=run_id,
            strategy=plan.meta.strategy,
            attempts=state.attempt,
            mode=mode,
            variant_role=variant_role,
            is_background=is_background,
            plan=plan,
            proof_markdown=state.draft,
            audit=AuditReport(
                status=audit_status_for(critic),
                attempts=state.attempt,
                critiques=list(critic.gaps),
                final_verdict=critic.final_verdict,
            ),
            mental_model=get_mental_model(plan.meta.strategy),
        )
        return VariantResult(
            payload=payload,
            models_used=list(state.models_used),
            latency_ms=int((self.clock() - started) * 1000),
            run_id=run_id,
        )
