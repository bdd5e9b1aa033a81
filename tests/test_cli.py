import json
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from click.testing import CliRunner

from helpers import FrozenClock, ScriptedProvider, plan_dict
from proofsmith.cli import cli
from proofsmith.config import load_config
from proofsmith.models import BackgroundJobPayload, Plan
from proofsmith.store import SQLiteProofStore


def _events(output: str) -> list[dict]:
    return [json.loads(line) for line in output.splitlines() if line.startswith("{")]


@pytest.fixture
def provider(tmp_path: Path, monkeypatch) -> ScriptedProvider:
    scripted = ScriptedProvider(followups=["Because $p$ is even."])
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    for key in ("OPENAI_MODEL_FAST", "OPENAI_MODEL_QUALITY", "OPENAI_TIMEOUT_MS"):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setattr("proofsmith.cli._build_provider", lambda config: scripted)
    return scripted


def test_init_writes_config_and_store(tmp_path: Path, provider: ScriptedProvider) -> None:
    result = CliRunner().invoke(cli, ["init"])

    assert result.exit_code == 0
    assert "Initialized Proofsmith in" in result.output
    assert "Fast model: gpt-4.1" in result.output
    assert (tmp_path / "proofsmith.toml").exists()
    assert (tmp_path / ".proofsmith" / "proofs.sqlite3").exists()
    assert load_config(tmp_path / "proofsmith.toml", env={}).jobs.max_attempts == 3


def test_cli_full_proof_lifecycle(tmp_path: Path, provider: ScriptedProvider) -> None:
    runner = CliRunner()
    assert runner.invoke(cli, ["init"]).exit_code == 0

    generate = runner.invoke(
        cli, ["generate", "Prove that sqrt(2) is irrational.", "--user", "alice"]
    )
    assert generate.exit_code == 0
    events = _events(generate.output)
    types = [event["type"] for event in events]
    assert types[0] == "status"
    assert types[-2:] == ["final_fast", "background_queued"]
    run_id = events[-1]["runId"]
    job_id = events[-1]["jobId"]

    queued = runner.invoke(cli, ["job", job_id, "--user", "alice"])
    assert queued.exit_code == 0
    assert _events(queued.output)[0]["status"] == "QUEUED"

    worker = runner.invoke(cli, ["worker", "--batch", "5"])
    assert worker.exit_code == 0
    report = json.loads(worker.output)
    assert report["processed"] == 1
    assert report["completed"] == 1

    done = runner.invoke(cli, ["job", job_id, "--user", "alice"])
    assert done.exit_code == 0
    update = _events(done.output)[0]
    assert update["status"] == "COMPLETED"
    assert update["proof"]["variant_role"] == "BACKGROUND_QUALITY"

    history = runner.invoke(cli, ["history", "--user", "alice", "--json"])
    assert history.exit_code == 0
    rows = json.loads(history.output)
    assert {row["variant_role"] for row in rows} == {"FAST_PRIMARY", "BACKGROUND_QUALITY"}

    followup = runner.invoke(
        cli, ["followup", "Why is p even?", "--run-id", run_id, "--user", "alice"]
    )
    assert followup.exit_code == 0
    assert "Because $p$ is even." in followup.output


def test_generate_requires_api_key(provider: ScriptedProvider, monkeypatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)

    result = CliRunner().invoke(cli, ["generate", "Prove that sqrt(2) is irrational."])

    assert result.exit_code == 1
    assert "OPENAI_API_KEY is not configured." in result.output
    assert provider.calls == []


def test_blocked_generate_exits_nonzero(provider: ScriptedProvider) -> None:
    result = CliRunner().invoke(cli, ["generate", "Write a poem and a short story for my mom"])

    assert result.exit_code == 1
    assert _events(result.output)[-1]["code"] == "SCOPE_BLOCKED"


def test_scope_command_works_without_api_key(provider: ScriptedProvider, monkeypatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)

    result = CliRunner().invoke(cli, ["scope", "Prove by induction that n^2 >= n for n >= 1."])

    assert result.exit_code == 0
    assert json.loads(result.output)["verdict"] == "ALLOW"


def test_job_command_reports_missing_job(provider: ScriptedProvider) -> None:
    result = CliRunner().invoke(cli, ["job", "missing", "--user", "alice"])

    assert result.exit_code == 1
    assert "Job not found." in result.output


def test_followup_other_users_run_is_forbidden(provider: ScriptedProvider) -> None:
    runner = CliRunner()
    generate = runner.invoke(
        cli, ["generate", "Prove that sqrt(2) is irrational.", "--user", "alice"]
    )
    run_id = _events(generate.output)[-1]["runId"]

    result = runner.invoke(cli, ["followup", "Why?", "--run-id", run_id, "--user", "mallory"])

    assert result.exit_code == 1
    assert "Forbidden." in result.output


def test_history_without_proofs(provider: ScriptedProvider) -> None:
    result = CliRunner().invoke(cli, ["history", "--user", "nobody"])

    assert result.exit_code == 0
    assert "No proofs found." in result.output


def test_job_command_without_api_key_does_not_kick(
    tmp_path: Path, provider: ScriptedProvider, monkeypatch
) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    store = SQLiteProofStore(
        tmp_path / ".proofsmith" / "proofs.sqlite3",
        clock=FrozenClock(datetime.now(UTC) - timedelta(minutes=5)),
    )
    payload = BackgroundJobPayload(
        run_id="run-1",
        problem="Prove that sqrt(2) is irrational.",
        user_intent="LEARNING",
        plan=Plan.model_validate(plan_dict()),
    )
    job_id = store.enqueue_background_job("run-1", payload, user_id="alice")

    result = CliRunner().invoke(cli, ["job", job_id, "--user", "alice"])

    assert result.exit_code == 0
    assert _events(result.output)[0]["status"] == "QUEUED"
    job = store.get_job(job_id)
    assert job is not None
    assert job.status == "QUEUED"
    assert job.attempt_count == 0
    assert provider.calls == []
