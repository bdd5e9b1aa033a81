import asyncio
from pathlib import Path

from helpers import FrozenClock, ScriptedProvider, models_config, plan_dict
from proofsmith.models import BackgroundJobPayload, Plan
from proofsmith.pipeline import VariantPipeline
from proofsmith.stages import CriticStage, PlannerStage, WriterStage
from proofsmith.store import SQLiteProofStore
from proofsmith.worker import JobWorker, KickCache, clamp_batch_size


def _job_payload(run_id: str, mode: str = "EXPLANATORY") -> BackgroundJobPayload:
    return BackgroundJobPayload(
        run_id=run_id,
        problem="Prove by induction that 1 + ... + n = n(n+1)/2.",
        user_intent="LEARNING",
        plan=Plan.model_validate(plan_dict("INDUCTION_WEAK")),
        user_id="alice",
        mode=mode,
    )


def _worker(tmp_path: Path, provider: ScriptedProvider) -> tuple[JobWorker, SQLiteProofStore]:
    models = models_config()
    store = SQLiteProofStore(tmp_path / "proofs.sqlite3", clock=FrozenClock())
    pipeline = VariantPipeline(
        PlannerStage(provider, models),
        WriterStage(provider, models),
        CriticStage(provider, models),
        heartbeat_interval_seconds=60,
    )
    return JobWorker(store, pipeline, models), store


def test_clamp_batch_size() -> None:
    assert clamp_batch_size(None) == 5
    assert clamp_batch_size("") == 5
    assert clamp_batch_size("many") == 5
    assert clamp_batch_size(0) == 5
    assert clamp_batch_size(-3) == 5
    assert clamp_batch_size("7") == 7
    assert clamp_batch_size(100) == 25


def test_kick_cache_waits_for_delay_and_retrigger_window() -> None:
    now = [100.0]
    cache = KickCache(kick_delay_seconds=6, retrigger_seconds=15, clock=lambda: now[0])

    assert cache.should_kick("job-1", queued_for_seconds=2) is False
    assert cache.should_kick("job-1", queued_for_seconds=7) is True
    assert cache.should_kick("job-1", queued_for_seconds=8) is False

    now[0] += 16
    assert cache.should_kick("job-1", queued_for_seconds=23) is True
    assert cache.should_kick("job-2", queued_for_seconds=30) is True
    assert len(cache) == 2


def test_kick_cache_prunes_expired_entries() -> None:
    now = [0.0]
    cache = KickCache(kick_delay_seconds=0, retrigger_seconds=10, clock=lambda: now[0])
    cache.should_kick("old", queued_for_seconds=1)

    now[0] = 20.0
    cache.should_kick("new", queued_for_seconds=1)

    assert len(cache) == 1


def test_sweep_completes_background_variants(tmp_path: Path) -> None:
    provider = ScriptedProvider()
    worker, store = _worker(tmp_path, provider)
    first = store.enqueue_background_job("run-1", _job_payload("run-1"), "alice")
    second = store.enqueue_background_job("run-2", _job_payload("run-2", "MATH_FORMAL"), "alice")

    report = asyncio.run(worker.process_queued_jobs())

    assert report.to_dict() == {"processed": 2, "completed": 2, "failed": 0, "queued_seen": 2}
    for job_id in (first, second):
        job = store.get_job(job_id)
        assert job is not None
        assert job.status == "COMPLETED"

    variant = store.get_background_variant("run-1")
    assert variant is not None
    assert variant.user_id == "alice"
    assert variant.proof_mode == "EXPLANATORY"
    assert variant.strategy == "INDUCTION_WEAK"
    background = store.get_background_variant("run-2")
    assert background is not None
    assert background.proof_mode == "MATH_FORMAL"


def test_background_run_reuses_stored_plan_on_quality_model(tmp_path: Path) -> None:
    provider = ScriptedProvider()
    worker, store = _worker(tmp_path, provider)
    store.enqueue_background_job("run-1", _job_payload("run-1"), "alice")

    asyncio.run(worker.process_queued_jobs(1))

    assert provider.count("planner") == 0
    assert {call["model"] for call in provider.calls} == {"quality-model"}
    assert "Mode: EXPLANATORY." in provider.prompts("writer")[0]


def test_batch_size_limits_the_sweep(tmp_path: Path) -> None:
    worker, store = _worker(tmp_path, ScriptedProvider())
    for index in range(3):
        store.enqueue_background_job(f"run-{index}", _job_payload(f"run-{index}"))

    report = asyncio.run(worker.process_queued_jobs("2"))

    assert report.queued_seen == 2
    assert report.completed == 2
    assert len(store.fetch_pending_jobs(10)) == 1


def test_invalid_payload_is_requeued_with_error(tmp_path: Path) -> None:
    provider = ScriptedProvider()
    worker, store = _worker(tmp_path, provider)
    job_id = store.enqueue_background_job("run-1", _job_payload("run-1"))
    job = store.claim_next_queued_job()
    assert job is not None
    job.payload = {"run_id": "run-1"}

    outcome = asyncio.run(worker.process_claimed_job(job))

    assert outcome.success is False
    assert outcome.requeued is True
    stored = store.get_job(job_id)
    assert stored is not None
    assert stored.status == "QUEUED"
    assert stored.attempt_count == 1
    assert stored.last_error is not None
    assert stored.last_error.startswith("Invalid background job payload")
    assert provider.calls == []


def test_pipeline_failure_counts_as_failed(tmp_path: Path) -> None:
    worker, store = _worker(tmp_path, ScriptedProvider(drafts=[""]))
    job_id = store.enqueue_background_job("run-1", _job_payload("run-1"))

    report = asyncio.run(worker.process_queued_jobs())

    assert report.processed == 1
    assert report.failed == 1
    job = store.get_job(job_id)
    assert job is not None
    assert job.status == "QUEUED"
    assert job.last_error
    assert store.get_background_variant("run-1") is None


def test_process_specific_job(tmp_path: Path) -> None:
    worker, store = _worker(tmp_path, ScriptedProvider())
    job_id = store.enqueue_background_job("run-1", _job_payload("run-1"))

    assert asyncio.run(worker.process_specific_job("missing")) is None

    outcome = asyncio.run(worker.process_specific_job(job_id))
    assert outcome is not None
    assert outcome.success is True

    assert asyncio.run(worker.process_specific_job(job_id)) is None


def test_process_specific_job_skips_claimed_job(tmp_path: Path) -> None:
    provider = ScriptedProvider()
    worker, store = _worker(tmp_path, provider)
    job_id = store.enqueue_background_job("run-1", _job_payload("run-1"))
    assert store.claim_job(job_id) is True

    assert asyncio.run(worker.process_specific_job(job_id)) is None
    assert provider.calls == []
