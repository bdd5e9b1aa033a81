from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from proofsmith.mental_model import get_mental_model
from proofsmith.models import (
    AuditReport,
    BackgroundJobPayload,
    FinalProofPayload,
    JobStatus,
    Plan,
    ProofMode,
    UserIntent,
    VariantRole,
)

EXPLAIN_VARIANT_JOB = "EXPLAIN_VARIANT"
HISTORY_LIMIT = 200
RUN_VARIANTS_LIMIT = 8


class ProofStoreError(RuntimeError):
    """Raised when persistence or job-queue operations fail."""


@dataclass(slots=True)
class VariantRecord:
    """One finished proof variant, as handed to the store."""

    problem: str
    user_intent: UserIntent
    payload: FinalProofPayload
    attempt: str | None = None
    user_id: str | None = None
    models_used: list[str] = field(default_factory=list)
    model_primary: str = ""
    model_fallback: str | None = None
    latency_ms: int = 0


@dataclass(slots=True)
class StoredVariant:
    variant_id: str
    run_id: str
    user_id: str | None
    created_at: str
    problem: str
    strategy: str
    proof_markdown: str
    plan: dict[str, Any]
    audit: dict[str, Any]
    audit_status: str
    attempt_count: int
    proof_mode: ProofMode
    variant_role: VariantRole

    def to_payload(self) -> FinalProofPayload:
        """Rebuild the client payload; raises pydantic ValidationError on corrupt rows."""
        plan = Plan.model_validate(self.plan)
        return FinalProofPayload(
            run_id=self.run_id,
            strategy=plan.meta.strategy,
            attempts=max(1, self.attempt_count),
            mode=self.proof_mode,
            variant_role=self.variant_role,
            is_background=self.variant_role == "BACKGROUND_QUALITY",
            plan=plan,
            proof_markdown=self.proof_markdown,
            audit=AuditReport.model_validate(self.audit),
            mental_model=get_mental_model(plan.meta.strategy),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.variant_id,
            "run_id": self.run_id,
            "created_at": self.created_at,
            "problem": self.problem,
            "strategy": self.strategy,
            "audit_status": self.audit_status,
            "attempt_count": self.attempt_count,
            "proof_mode": self.proof_mode,
            "variant_role": self.variant_role,
        }


@dataclass(slots=True)
class ProofJob:
    job_id: str
    run_id: str
    user_id: str | None
    payload: dict[str, Any]
    status: JobStatus
    attempt_count: int
    max_attempts: int
    scheduled_at: str
    job_type: str = EXPLAIN_VARIANT_JOB
    started_at: str | None = None
    finished_at: str | None = None
    last_error: str | None = None
    created_at: str = ""
    updated_at: str = ""

    @property
    def mode(self) -> ProofMode:
        mode = self.payload.get("mode")
        return mode if mode in ("MATH_FORMAL", "EXPLANATORY") else "EXPLANATORY"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.job_id,
            "run_id": self.run_id,
            "user_id": self.user_id,
            "job_type": self.job_type,
            "status": self.status,
            "mode": self.mode,
            "attempt_count": self.attempt_count,
            "max_attempts": self.max_attempts,
            "scheduled_at": self.scheduled_at,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "last_error": self.last_error,
        }


class ProofStore(ABC):
    @abstractmethod
    def persist_variant(self, record: VariantRecord) -> str:
        """Store a finished variant and return its id."""

    @abstractmethod
    def enqueue_background_job(
        self, run_id: str, payload: BackgroundJobPayload, user_id: str | None = None
    ) -> str:
        """Queue a background variant job and return its id."""

    @abstractmethod
    def claim_next_queued_job(self) -> ProofJob | None:
        """Atomically move the oldest due QUEUED job to PROCESSING."""

    @abstractmethod
    def claim_job(self, job_id: str) -> bool:
        """Move one QUEUED job to PROCESSING; False when another caller won."""

    @abstractmethod
    def fetch_pending_jobs(self, batch_size: int) -> list[ProofJob]:
        raise NotImplementedError

    @abstractmethod
    def get_job(self, job_id: str) -> ProofJob | None:
        raise NotImplementedError

    @abstractmethod
    def complete_job(self, job_id: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def fail_or_requeue_job(self, job: ProofJob, error: str) -> bool:
        """Record a failed attempt; return True when the job was requeued."""

    @abstractmethod
    def get_background_variant(self, run_id: str) -> StoredVariant | None:
        raise NotImplementedError

    @abstractmethod
    def list_variants_by_run(self, run_id: str) -> list[StoredVariant]:
        raise NotImplementedError

    @abstractmethod
    def list_history(self, user_id: str) -> list[StoredVariant]:
        raise NotImplementedError
