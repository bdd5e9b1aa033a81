"""Request-level proof flow.

``ProofService`` is the caller of the variant pipeline: it gates scope, runs
the fast variant while streaming events, stores the result and queues the
background variant. It also answers job status polls and follow-up questions.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable
from datetime import UTC, datetime

from pydantic import ValidationError

from proofsmith.config import ProofsmithConfig
from proofsmith.events import (
    Event,
    EventSink,
    background_queued_event,
    background_update_event,
    emit,
    error_event,
    final_fast_event,
    status_event,
)
from proofsmith.models import (
    BackgroundJobPayload,
    FollowupAnswer,
    FollowupContext,
    FollowupRequest,
    GenerateProofRequest,
    ScopeResult,
    opposite_mode,
)
from proofsmith.pipeline import VariantPipeline, VariantResult
from proofsmith.providers.base import (
    FallbackExhaustedError,
    ModelProvider,
    ModelTimeoutError,
    error_message,
)
from proofsmith.scope import ScopeClassifier, assess_scope, is_admitted
from proofsmith.stages import (
    CriticStage,
    FollowupStage,
    PlannerStage,
    ScopeClassifierStage,
    WriterStage,
)
from proofsmith.store.base import ProofStore, ProofStoreError, StoredVariant, VariantRecord
from proofsmith.worker import JobWorker, KickCache

logger = logging.getLogger(__name__)


def _is_timeout(exc: BaseException) -> bool:
    if isinstance(exc, ModelTimeoutError):
        return True
    return isinstance(exc, FallbackExhaustedError) and isinstance(
        exc.fallback_error, ModelTimeoutError
    )


def _parse_timestamp(raw: str) -> datetime | None:
    try:
        parsed = datetime.fromisoformat(raw)
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


class ProofService:
    def __init__(
        self,
        config: ProofsmithConfig,
        pipeline: VariantPipeline,
        *,
        store: ProofStore | None = None,
        followup_stage: FollowupStage | None = None,
        scope_classifier: ScopeClassifier | None = None,
        kick_cache: KickCache | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.config = config
        self.pipeline = pipeline
        self.store = store
        self.followup_stage = followup_stage
        self.scope_classifier = scope_classifier
        self.kick_cache = kick_cache or KickCache(
            kick_delay_seconds=config.jobs.kick_delay_seconds,
            retrigger_seconds=config.jobs.retrigger_seconds,
        )
        self.clock = clock
        self.worker = (
            JobWorker(
                store,
                pipeline,
                config.models,
                max_attempts=config.pipeline.background_max_attempts,
                default_batch_size=config.jobs.batch_size,
                max_batch_size=config.jobs.max_batch_size,
            )
            if store is not None
            else None
        )
        self._kick_tasks: set[asyncio.Task[object]] = set()

    @classmethod
    def from_provider(
        cls,
        config: ProofsmithConfig,
        provider: ModelProvider,
        *,
        store: ProofStore | None = None,
    ) -> ProofService:
        models = config.models
        pipeline = VariantPipeline(
            PlannerStage(provider, models),
            WriterStage(provider, models),
            CriticStage(provider, models),
            heartbeat_interval_seconds=config.pipeline.heartbeat_interval_seconds,
        )
        return cls(
            config,
            pipeline,
            store=store,
            followup_stage=FollowupStage(
                provider, models, max_lines=config.pipeline.followup_max_lines
            ),
            scope_classifier=ScopeClassifierStage(provider, models).classify,
        )

    async def check_scope(self, request: GenerateProofRequest) -> ScopeResult:
        return await assess_scope(
            request.problem, request.attempt, classifier=self.scope_classifier
        )

    async def generate(
        self,
        request: GenerateProofRequest,
        sink: EventSink | None = None,
        *,
        user_id: str | None = None,
        override_review: bool = False,
    ) -> VariantResult | None:
        scope = await self.check_scope(request)
        if scope.verdict == "BLOCK":
            emit(sink, error_event("SCOPE_BLOCKED", f"{scope.reason} {scope.suggestion}".strip()))
            return None
        if not is_admitted(scope, override_review=override_review):
            emit(sink, error_event("SCOPE_REVIEW", f"{scope.reason} {scope.suggestion}".strip()))
            return None

        run_id = str(uuid.uuid4())
        fast_mode = request.mode_preference
        try:
            result = await self.pipeline.run(
                run_id,
                request,
                mode=fast_mode,
                variant_role="FAST_PRIMARY",
                is_background=False,
                model_tier="FAST",
                max_attempts=self.config.pipeline.fast_max_attempts,
                sink=sink,
            )
        except Exception as exc:
            code = "MODEL_TIMEOUT" if _is_timeout(exc) else "PIPELINE_ERROR"
            logger.error("Run %s failed (%s): %s", run_id, code, error_message(exc))
            emit(sink, error_event(code, error_message(exc)))
            return None

        emit(sink, final_fast_event(result.payload))

        if self.store is None:
            emit(
                sink,
                status_event(
                    "Proof store not configured. Background queue skipped.", stage="background"
                ),
            )
            return result

        self._persist_fast_variant(request, result, user_id, sink)
        self._queue_background_variant(request, result, user_id, sink)
        return result

    def _persist_fast_variant(
        self,
        request: GenerateProofRequest,
        result: VariantResult,
        user_id: str | None,
        sink: EventSink | None,
    ) -> None:
        assert self.store is not None
        try:
            self.store.persist_variant(
                VariantRecord(
                    problem=request.problem,
                    attempt=request.attempt,
                    user_intent=request.user_intent,
                    payload=result.payload,
                    user_id=user_id,
                    models_used=result.models_used,
                    model_primary=self.config.models.fast,
                    model_fallback=self.config.models.fallback_model,
                    latency_ms=result.latency_ms,
                )
            )
        except ProofStoreError as exc:
            logger.warning("Could not persist run %s: %s", result.run_id, exc)
            emit(
                sink,
                status_event(f"Warning: proof was not saved ({exc}).", stage="persist"),
            )

    def _queue_background_variant(
        self,
        request: GenerateProofRequest,
        result: VariantResult,
        user_id: str | None,
        sink: EventSink | None,
    ) -> None:
        assert self.store is not None
        background_mode = opposite_mode(request.mode_preference)
        payload = BackgroundJobPayload(
            run_id=result.run_id,
            problem=request.problem,
            attempt=request.attempt,
            user_intent=request.user_intent,
            plan=result.payload.plan,
            user_id=user_id,
            mode=background_mode,
        )
        try:
            job_id = self.store.enqueue_background_job(result.run_id, payload, user_id)
        except ProofStoreError as exc:
            logger.warning("Could not queue background variant for %s: %s", result.run_id, exc)
            emit(
                sink,
                status_event(
                    f"Warning: background variant was not queued ({exc}).", stage="background"
                ),
            )
            return
        emit(sink, background_queued_event(result.run_id, job_id, background_mode))

    def _maybe_kick(self, job_id: str, queued_at: str) -> None:
        if self.worker is None:
            return
        queued_since = _parse_timestamp(queued_at)
        if queued_since is None:
            return
        queued_for = (self.clock() - queued_since).total_seconds()
        if not self.kick_cache.should_kick(job_id, queued_for):
            return

        logger.info("Kicking queued job %s after %.1fs", job_id, queued_for)
        task = asyncio.create_task(self.worker.process_specific_job(job_id))
        self._kick_tasks.add(task)
        task.add_done_callback(self._kick_finished)

    def _kick_finished(self, task: asyncio.Task[object]) -> None:
        self._kick_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning("Opportunistic job kick failed: %s", task.exception())

    async def wait_for_kicks(self) -> None:
        if self._kick_tasks:
            await asyncio.gather(*self._kick_tasks, return_exceptions=True)

    def job_status(
        self, job_id: str, user_id: str | None = None, *, kick: bool = True
    ) -> Event:
        """Return a ``background_update`` event for a job, kicking it if it looks stuck.

        Must be called from a running event loop when a kick may be scheduled.
        Callers without model credentials pass ``kick=False``; a kick would
        only burn one of the job's attempts.
        """
        if self.store is None:
            raise ProofStoreError("Proof store is not configured.")
        job = self.store.get_job(job_id)
        if job is None:
            raise LookupError("Job not found.")
        if job.user_id and job.user_id != user_id:
            raise PermissionError("Forbidden.")

        mode = job.mode
        if kick and job.status == "QUEUED":
            self._maybe_kick(job.job_id, job.scheduled_at or job.created_at)

        if job.status != "COMPLETED":
            return background_update_event(
                job.run_id, job.job_id, job.status, mode, error=job.last_error
            )

        variant = self.store.get_background_variant(job.run_id)
        if variant is None:
            return background_update_event(
                job.run_id,
                job.job_id,
                job.status,
                mode,
                error="Job completed but proof variant record not found.",
            )
        try:
            proof = variant.to_payload()
        except ValidationError:
            logger.warning("Stored proof for run %s failed validation", job.run_id)
            return background_update_event(
                job.run_id, job.job_id, "FAILED", mode, error="Stored proof data is invalid."
            )
        return background_update_event(job.run_id, job.job_id, job.status, mode, proof=proof)

    def _followup_context(
        self, request: FollowupRequest, user_id: str | None
    ) -> tuple[FollowupContext, StoredVariant]:
        if self.store is None:
            raise ProofStoreError("Proof store is not configured.")
        if not user_id:
            raise PermissionError("Unauthorized.")
        assert request.run_id is not None

        rows = self.store.list_variants_by_run(request.run_id)
        if not rows:
            raise LookupError("Run not found.")
        owned = [row for row in rows if row.user_id == user_id]
        if not owned:
            raise PermissionError("Forbidden.")

        preferred = request.variant_role or "FAST_PRIMARY"
        selected = next((row for row in owned if row.variant_role == preferred), owned[0])
        context = FollowupContext(
            problem=selected.problem,
            strategy=selected.strategy,
            variant_role=selected.variant_role,
            proof_markdown=selected.proof_markdown,
        )
        return context, selected

    async def followup(
        self, request: FollowupRequest, user_id: str | None = None
    ) -> FollowupAnswer:
        if self.followup_stage is None:
            raise RuntimeError("Follow-up answering is not configured.")

        context = None
        mode_hint = request.mode_hint
        if request.run_id:
            context, selected = self._followup_context(request, user_id)
            mode_hint = mode_hint or selected.proof_mode

        result = await self.followup_stage.run(
            request.question, mode_hint=mode_hint, context=context
        )
        return FollowupAnswer(
            answer_markdown=result.markdown,
            model=result.model_id,
            used_context=result.used_context,
        )

    def history(self, user_id: str) -> list[StoredVariant]:
        if self.store is None:
            raise ProofStoreError("Proof store is not configured.")
        return self.store.list_history(user_id)
