from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from sqlalchemy import create_engine, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from proofsmith.models import BackgroundJobPayload
from proofsmith.store.base import (
    EXPLAIN_VARIANT_JOB,
    HISTORY_LIMIT,
    RUN_VARIANTS_LIMIT,
    ProofJob,
    ProofStore,
    ProofStoreError,
    StoredVariant,
    VariantRecord,
)
from proofsmith.store.tables import Base, ProofJobRow, ProofRow

logger = logging.getLogger(__name__)

CLAIM_SCAN_LIMIT = 10


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _to_job(row: ProofJobRow) -> ProofJob:
    return ProofJob(
        job_id=row.id,
        run_id=row.run_id,
        user_id=row.user_id,
        job_type=row.job_type,
        payload=dict(row.payload),
        status=row.status,
        attempt_count=row.attempt_count,
        max_attempts=row.max_attempts,
        scheduled_at=row.scheduled_at,
        started_at=row.started_at,
        finished_at=row.finished_at,
        last_error=row.last_error,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _to_variant(row: ProofRow) -> StoredVariant:
    return StoredVariant(
        variant_id=row.id,
        run_id=row.run_id,
        user_id=row.user_id,
        created_at=row.created_at,
        problem=row.problem,
        strategy=row.strategy,
        proof_markdown=row.proof_markdown,
        plan=dict(row.plan),
        audit=dict(row.audit_report),
        audit_status=row.audit_status,
        attempt_count=row.attempt_count,
        proof_mode=row.proof_mode,
        variant_role=row.variant_role,
    )


class SQLiteProofStore(ProofStore):
    """Proof history and background job queue in a SQLite file.

    Every operation runs in its own session, so several workers may share one
    database file. Job claims are decided by a conditional UPDATE and its
    rowcount; there is no in-process lock.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        max_attempts: int = 3,
        requeue_delay_seconds: int = 20,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.db_path = Path(db_path)
        self.max_attempts = max_attempts
        self.requeue_delay_seconds = requeue_delay_seconds
        self.clock = clock
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.engine = create_engine(
            f"sqlite:///{self.db_path}",
            connect_args={"check_same_thread": False, "timeout": 10.0},
            echo=False,
        )
        self._sessions = sessionmaker(
            bind=self.engine, autoflush=False, expire_on_commit=False
        )
        try:
            Base.metadata.create_all(bind=self.engine)
        except SQLAlchemyError as exc:
            raise ProofStoreError(f"Proof store operation failed: {exc}") from exc

    def _now(self) -> str:
        return self.clock().isoformat()

    @contextmanager
    def _session(self) -> Iterator[Session]:
        session = self._sessions()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            raise ProofStoreError(f"Proof store operation failed: {exc}") from exc
        finally:
            session.close()

    def persist_variant(self, record: VariantRecord) -> str:
        payload = record.payload
        variant_id = uuid.uuid4().hex
        with self._session() as session:
            session.add(
                ProofRow(
                    id=variant_id,
                    run_id=payload.run_id,
                    user_id=record.user_id,
                    problem=record.problem,
                    attempt=record.attempt,
                    user_intent=record.user_intent,
                    strategy=str(payload.strategy),
                    confidence_score=payload.plan.meta.confidence_score,
                    plan=payload.plan.model_dump(mode="json"),
                    proof_markdown=payload.proof_markdown,
                    audit_status=payload.audit.status,
                    audit_report=payload.audit.model_dump(mode="json"),
                    attempt_count=payload.attempts,
                    model_primary=record.model_primary,
                    model_fallback=record.model_fallback,
                    models_used=list(record.models_used),
                    latency_ms=record.latency_ms,
                    proof_mode=payload.mode,
                    variant_role=payload.variant_role,
                    created_at=self._now(),
                )
            )
        logger.debug(
            "Persisted %s variant %s for run %s", payload.variant_role, variant_id, payload.run_id
        )
        return variant_id

    def enqueue_background_job(
        self, run_id: str, payload: BackgroundJobPayload, user_id: str | None = None
    ) -> str:
        job_id = uuid.uuid4().hex
        now = self._now()
        with self._session() as session:
            session.add(
                ProofJobRow(
                    id=job_id,
                    run_id=run_id,
                    user_id=user_id,
                    job_type=EXPLAIN_VARIANT_JOB,
                    payload=payload.model_dump(mode="json"),
                    status="QUEUED",
                    attempt_count=0,
                    max_attempts=self.max_attempts,
                    scheduled_at=now,
                    created_at=now,
                    updated_at=now,
                )
            )
        logger.info("Queued background job %s for run %s (%s)", job_id, run_id, payload.mode)
        return job_id

    def claim_job(self, job_id: str) -> bool:
        now = self._now()
        with self._session() as session:
            result = session.execute(
                update(ProofJobRow)
                .where(ProofJobRow.id == job_id, ProofJobRow.status == "QUEUED")
                .values(status="PROCESSING", started_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            claimed = result.rowcount == 1
        if claimed:
            logger.info("Claimed job %s", job_id)
        return claimed

    def fetch_pending_jobs(self, batch_size: int) -> list[ProofJob]:
        with self._session() as session:
            rows = session.scalars(
                select(ProofJobRow)
                .where(ProofJobRow.status == "QUEUED", ProofJobRow.scheduled_at <= self._now())
                .order_by(ProofJobRow.scheduled_at, ProofJobRow.seq)
                .limit(max(0, batch_size))
            ).all()
            return [_to_job(row) for row in rows]

    def claim_next_queued_job(self) -> ProofJob | None:
        for job in self.fetch_pending_jobs(CLAIM_SCAN_LIMIT):
            if self.claim_job(job.job_id):
                return self.get_job(job.job_id)
        return None

    def get_job(self, job_id: str) -> ProofJob | None:
        with self._session() as session:
            row = session.scalars(select(ProofJobRow).where(ProofJobRow.id == job_id)).first()
            return _to_job(row) if row is not None else None

    def complete_job(self, job_id: str) -> None:
        now = self._now()
        with self._session() as session:
            session.execute(
                update(ProofJobRow)
                .where(ProofJobRow.id == job_id)
                .values(status="COMPLETED", finished_at=now, updated_at=now, last_error=None)
                .execution_options(synchronize_session=False)
            )
        logger.info("Completed job %s", job_id)

    def fail_or_requeue_job(self, job: ProofJob, error: str) -> bool:
        next_attempt_count = job.attempt_count + 1
        should_fail = next_attempt_count >= job.max_attempts
        now = self.clock()
        if should_fail:
            status, scheduled_at, finished_at = "FAILED", job.scheduled_at, now.isoformat()
        else:
            retry_at = now + timedelta(seconds=self.requeue_delay_seconds)
            status, scheduled_at, finished_at = "QUEUED", retry_at.isoformat(), None

        with self._session() as session:
            session.execute(
                update(ProofJobRow)
                .where(ProofJobRow.id == job.job_id)
                .values(
                    status=status,
                    attempt_count=next_attempt_count,
                    scheduled_at=scheduled_at,
                    last_error=error,
                    finished_at=finished_at,
                    updated_at=now.isoformat(),
                )
                .execution_options(synchronize_session=False)
            )

        if should_fail:
            logger.warning(
                "Job %s failed permanently after %d attempt(s): %s",
                job.job_id,
                next_attempt_count,
                error,
            )
        else:
            logger.info("Requeued job %s at %s: %s", job.job_id, scheduled_at, error)
        return not should_fail

    def _select_variants(self, *criteria: Any, limit: int) -> list[StoredVariant]:
        with self._session() as session:
            rows = session.scalars(
                select(ProofRow)
                .where(*criteria)
                .order_by(ProofRow.created_at.desc(), ProofRow.seq.desc())
                .limit(limit)
            ).all()
            return [_to_variant(row) for row in rows]

    def get_background_variant(self, run_id: str) -> StoredVariant | None:
        rows = self._select_variants(
            ProofRow.run_id == run_id, ProofRow.variant_role == "BACKGROUND_QUALITY", limit=1
        )
        return rows[0] if rows else None

    def list_variants_by_run(self, run_id: str) -> list[StoredVariant]:
        return self._select_variants(ProofRow.run_id == run_id, limit=RUN_VARIANTS_LIMIT)

    def list_history(self, user_id: str) -> list[StoredVariant]:
        return self._select_variants(ProofRow.user_id == user_id, limit=HISTORY_LIMIT)
