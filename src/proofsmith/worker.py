from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass

from pydantic import ValidationError

from proofsmith.config import ModelsConfig
from proofsmith.models import BackgroundJobPayload, GenerateProofRequest, describe_validation_error
from proofsmith.pipeline import VariantPipeline
from proofsmith.providers.base import error_message
from proofsmith.store.base import ProofJob, ProofStore, VariantRecord

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 5
MAX_BATCH_SIZE = 25


def clamp_batch_size(
    raw: int | str | None, default: int = DEFAULT_BATCH_SIZE, maximum: int = MAX_BATCH_SIZE
) -> int:
    if raw is None or raw == "":
        return default
    try:
        parsed = int(raw)
    except (TypeError, ValueError):
        return default
    if parsed <= 0:
        return default
    return min(parsed, maximum)


@dataclass(slots=True)
class JobOutcome:
    success: bool
    requeued: bool


@dataclass(slots=True)
class SweepReport:
    processed: int = 0
    completed: int = 0
    failed: int = 0
    queued_seen: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


class KickCache:
    """Process-local record of recent opportunistic job kicks.

    Only a hint to avoid piling duplicate kicks onto one job; concurrent
    workers are still arbitrated by the store's atomic claim.
    """

    def __init__(
        self,
        *,
        kick_delay_seconds: float = 6,
        retrigger_seconds: float = 15,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.kick_delay_seconds = kick_delay_seconds
        self.retrigger_seconds = retrigger_seconds
        self.clock = clock
        self._last_kick: dict[str, float] = {}

    def should_kick(self, job_id: str, queued_for_seconds: float) -> bool:
        if queued_for_seconds < self.kick_delay_seconds:
            return False
        now = self.clock()
        last = self._last_kick.get(job_id)
        if last is not None and now - last < self.retrigger_seconds:
            return False
        self._last_kick[job_id] = now
        self._prune(now)
        return True

    def _prune(self, now: float) -> None:
        expired = [
            job_id
            for job_id, kicked_at in self._last_kick.items()
            if now - kicked_at >= self.retrigger_seconds
        ]
        for job_id in expired:
            del self._last_kick[job_id]

    def __len__(self) -> int:
        return len(self._last_kick)


class JobWorker:
    def __init__(
        self,
        store: ProofStore,
        pipeline: VariantPipeline,
        models: ModelsConfig,
        *,
        max_attempts: int = 2,
        default_batch_size: int = DEFAULT_BATCH_SIZE,
        max_batch_size: int = MAX_BATCH_SIZE,
    ) -> None:
        self.store = store
        self.pipeline = pipeline
        self.models = models
        self.max_attempts = max_attempts
        self.default_batch_size = default_batch_size
        self.max_batch_size = max_batch_size

    @staticmethod
    def _parse_payload(job: ProofJob) -> BackgroundJobPayload:
        try:
            return BackgroundJobPayload.model_validate(job.payload)
        except ValidationError as exc:
            raise ValueError(
                f"Invalid background job payload: {describe_validation_error(exc)}"
            ) from exc

    async def process_claimed_job(self, job: ProofJob) -> JobOutcome:
        """Run the background variant for a job this worker already claimed."""
        try:
            payload = self._parse_payload(job)
            request = GenerateProofRequest(
                problem=payload.problem,
                attempt=payload.attempt,
                user_intent=payload.user_intent,
                mode_preference=payload.mode,
            )
            variant = await self.pipeline.run(
                payload.run_id,
                request,
                mode=payload.mode,
                variant_role="BACKGROUND_QUALITY",
                is_background=True,
                model_tier="QUALITY",
                max_attempts=self.max_attempts,
                existing_plan=payload.plan,
            )
            self.store.persist_variant(
                VariantRecord(
                    problem=payload.problem,
                    attempt=payload.attempt,
                    user_intent=payload.user_intent,
                    payload=variant.payload,
                    user_id=payload.user_id or job.user_id,
                    models_used=variant.models_used,
                    model_primary=self.models.quality_model,
                    model_fallback=self.models.fallback_model,
                    latency_ms=variant.latency_ms,
                )
            )
            self.store.complete_job(job.job_id)
        except Exception as exc:
            logger.warning("Background job %s failed: %s", job.job_id, error_message(exc))
            requeued = self.store.fail_or_requeue_job(job, error_message(exc))
            return JobOutcome(success=False, requeued=requeued)
        return JobOutcome(success=True, requeued=False)

    async def process_queued_jobs(self, batch_size: int | str | None = None) -> SweepReport:
        size = clamp_batch_size(batch_size, self.default_batch_size, self.max_batch_size)
        jobs = self.store.fetch_pending_jobs(size)
        report = SweepReport(queued_seen=len(jobs))

        for job in jobs:
            if not self.store.claim_job(job.job_id):
                logger.debug("Job %s was claimed elsewhere; skipping", job.job_id)
                continue
            report.processed += 1
            outcome = await self.process_claimed_job(job)
            if outcome.success:
                report.completed += 1
            else:
                report.failed += 1

        logger.info(
            "Job sweep: %d seen, %d processed, %d completed, %d failed",
            report.queued_seen,
            report.processed,
            report.completed,
            report.failed,
        )
        return report

    async def process_specific_job(self, job_id: str) -> JobOutcome | None:
        job = self.store.get_job(job_id)
        if job is None or job.status != "QUEUED":
            return None
        if not self.store.claim_job(job.job_id):
            return None
        return await self.process_claimed_job(job)
