"""SQLAlchemy ORM models for stored proof variants and background jobs."""

from sqlalchemy import JSON, Column, Float, Index, Integer, String, Text
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class ProofRow(Base):
    __tablename__ = "proofs"

    # Insertion order breaks ties between variants stored in the same instant.
    seq = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String(32), unique=True, nullable=False)
    run_id = Column(String(64), nullable=False, index=True)
    user_id = Column(String(255), nullable=True, index=True)

    problem = Column(Text, nullable=False)
    attempt = Column(Text, nullable=True)
    user_intent = Column(String(20), nullable=False)
    strategy = Column(String(40), nullable=False)
    confidence_score = Column(Float, nullable=False)
    plan = Column(JSON, nullable=False)
    proof_markdown = Column(Text, nullable=False)

    audit_status = Column(String(30), nullable=False)
    audit_report = Column(JSON, nullable=False)
    attempt_count = Column(Integer, nullable=False)

    model_primary = Column(String(100), nullable=False)
    model_fallback = Column(String(100), nullable=True)
    models_used = Column(JSON, nullable=False)
    latency_ms = Column(Integer, nullable=False)

    proof_mode = Column(String(20), nullable=False)
    variant_role = Column(String(30), nullable=False)
    created_at = Column(String(40), nullable=False)


class ProofJobRow(Base):
    __tablename__ = "proof_jobs"
    __table_args__ = (Index("proof_jobs_status", "status", "scheduled_at"),)

    seq = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String(32), unique=True, nullable=False)
    run_id = Column(String(64), nullable=False)
    user_id = Column(String(255), nullable=True)
    job_type = Column(String(40), nullable=False)
    payload = Column(JSON, nullable=False)

    # QUEUED -> PROCESSING -> COMPLETED | FAILED; failures may return to QUEUED
    status = Column(String(20), nullable=False, default="QUEUED")
    attempt_count = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False)

    # ISO-8601 UTC strings; lexical order matches time order.
    scheduled_at = Column(String(40), nullable=False)
    started_at = Column(String(40), nullable=True)
    finished_at = Column(String(40), nullable=True)
    last_error = Column(Text, nullable=True)
    created_at = Column(String(40), nullable=False)
    updated_at = Column(String(40), nullable=False)
