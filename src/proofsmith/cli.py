from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click
from pydantic import ValidationError

from proofsmith.config import ProofsmithConfig, load_config, save_config
from proofsmith.events import encode_event
from proofsmith.models import (
    PROOF_MODES,
    USER_INTENTS,
    FollowupRequest,
    GenerateProofRequest,
    describe_validation_error,
)
from proofsmith.providers import ModelInvocationError, ModelProvider, OpenAIProvider
from proofsmith.service import ProofService
from proofsmith.store import ProofStore, ProofStoreError, SQLiteProofStore

DEFAULT_CONFIG_FILE = "proofsmith.toml"


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: ProofsmithConfig
    store: ProofStore | None
    service: ProofService


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _build_provider(config: ProofsmithConfig) -> ModelProvider:
    return OpenAIProvider(api_key=config.api_key)


def _open_store(config: ProofsmithConfig, repo_root: Path) -> ProofStore | None:
    if not config.store.enabled:
        return None
    return SQLiteProofStore(
        config.store_path(repo_root),
        max_attempts=config.jobs.max_attempts,
        requeue_delay_seconds=config.jobs.requeue_delay_seconds,
    )


def _load_runtime(repo_root: Path, config_path: Path, *, require_api_key: bool = True) -> Runtime:
    config = load_config(config_path)
    if require_api_key and not config.api_key:
        raise click.ClickException("OPENAI_API_KEY is not configured.")
    try:
        store = _open_store(config, repo_root)
    except ProofStoreError as exc:
        raise click.ClickException(str(exc)) from exc
    service = ProofService.from_provider(config, _build_provider(config), store=store)
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        store=store,
        service=service,
    )


def _runtime(config_value: str, *, require_api_key: bool = True) -> Runtime:
    repo_root = Path.cwd().resolve()
    return _load_runtime(
        repo_root,
        _resolve_config_path(repo_root, config_value),
        require_api_key=require_api_key,
    )


def _echo_json(payload: Any) -> None:
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


def _echo_event(event: dict[str, Any]) -> None:
    click.echo(encode_event(event), nl=False)


@click.group()
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """Proofsmith CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command("init")
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def init_command(config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = load_config(config_path)
    save_config(config_path, config)
    try:
        store = _open_store(config, repo_root)
    except ProofStoreError as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(f"Initialized Proofsmith in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Fast model: {config.models.fast}")
    click.echo(f"Quality model: {config.models.quality_model}")
    if store is not None:
        click.echo(f"Store: {config.store_path(repo_root)}")
    else:
        click.echo("Store: disabled")


@cli.command("generate")
@click.argument("problem")
@click.option("--attempt", default=None, help="The user's own proof attempt.")
@click.option("--intent", type=click.Choice(USER_INTENTS), default="LEARNING", show_default=True)
@click.option("--mode", type=click.Choice(PROOF_MODES), default="MATH_FORMAL", show_default=True)
@click.option("--user", "user_id", default=None)
@click.option("--allow-review", is_flag=True, default=False, help="Proceed on ambiguous scope.")
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def generate_command(
    problem: str,
    attempt: str | None,
    intent: str,
    mode: str,
    user_id: str | None,
    allow_review: bool,
    config_value: str,
) -> None:
    try:
        request = GenerateProofRequest(
            problem=problem, attempt=attempt, user_intent=intent, mode_preference=mode
        )
    except ValidationError as exc:
        raise click.ClickException(
            f"Invalid request: {describe_validation_error(exc)}"
        ) from exc

    runtime = _runtime(config_value)
    result = asyncio.run(
        runtime.service.generate(
            request, _echo_event, user_id=user_id, override_review=allow_review
        )
    )
    if result is None:
        raise SystemExit(1)


@cli.command("scope")
@click.argument("problem")
@click.option("--attempt", default=None)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def scope_command(problem: str, attempt: str | None, config_value: str) -> None:
    try:
        request = GenerateProofRequest(problem=problem, attempt=attempt)
    except ValidationError as exc:
        raise click.ClickException(
            f"Invalid request: {describe_validation_error(exc)}"
        ) from exc
    runtime = _runtime(config_value, require_api_key=False)
    result = asyncio.run(runtime.service.check_scope(request))
    _echo_json(result.model_dump(mode="json"))


@cli.command("worker")
@click.option("--batch", "batch_size", type=int, default=None, help="Jobs to sweep (max 25).")
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def worker_command(batch_size: int | None, config_value: str) -> None:
    runtime = _runtime(config_value)
    if runtime.service.worker is None:
        raise click.ClickException("Proof store is disabled; there is no job queue to process.")
    try:
        report = asyncio.run(runtime.service.worker.process_queued_jobs(batch_size))
    except ProofStoreError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_json(report.to_dict())


@cli.command("job")
@click.argument("job_id")
@click.option("--user", "user_id", default=None)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def job_command(job_id: str, user_id: str | None, config_value: str) -> None:
    runtime = _runtime(config_value, require_api_key=False)
    service = runtime.service

    async def _poll() -> dict[str, Any]:
        event = service.job_status(job_id, user_id, kick=bool(runtime.config.api_key))
        await service.wait_for_kicks()
        return event

    try:
        event = asyncio.run(_poll())
    except (LookupError, PermissionError, ProofStoreError) as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_event(event)


@cli.command("followup")
@click.argument("question")
@click.option("--run-id", default=None)
@click.option(
    "--variant",
    "variant_role",
    type=click.Choice(["FAST_PRIMARY", "BACKGROUND_QUALITY"]),
    default=None,
)
@click.option("--mode", "mode_hint", type=click.Choice(PROOF_MODES), default=None)
@click.option("--user", "user_id", default=None)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def followup_command(
    question: str,
    run_id: str | None,
    variant_role: str | None,
    mode_hint: str | None,
    user_id: str | None,
    config_value: str,
) -> None:
    try:
        request = FollowupRequest(
            question=question, run_id=run_id, variant_role=variant_role, mode_hint=mode_hint
        )
    except ValidationError as exc:
        raise click.ClickException(
            f"Invalid request: {describe_validation_error(exc)}"
        ) from exc

    runtime = _runtime(config_value)
    try:
        answer = asyncio.run(runtime.service.followup(request, user_id))
    except (
        LookupError,
        PermissionError,
        ProofStoreError,
        ModelInvocationError,
    ) as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(answer.answer_markdown)


@cli.command("history")
@click.option("--user", "user_id", required=True)
@click.option("--json", "as_json", is_flag=True, default=False)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def history_command(user_id: str, as_json: bool, config_value: str) -> None:
    runtime = _runtime(config_value, require_api_key=False)
    try:
        rows = runtime.service.history(user_id)
    except ProofStoreError as exc:
        raise click.ClickException(str(exc)) from exc

    if as_json:
        _echo_json([row.to_dict() for row in rows])
        return
    if not rows:
        click.echo("No proofs found.")
        return
    for row in rows:
        click.echo(
            f"{row.run_id[:8]} {row.variant_role:<18} {row.audit_status:<20} "
            f"{row.strategy:<24} {row.problem[:60]}"
        )
