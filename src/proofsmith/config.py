from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from proofsmith.providers.fallback import DEFAULT_TIMEOUT_MS, resolve_timeout_ms

DEFAULT_MODEL_FAST = "gpt-4.1"
ENV_INT_CAP = 300


@dataclass(slots=True)
class ModelsConfig:
    fast: str = DEFAULT_MODEL_FAST
    quality: str = ""
    followup: str = ""
    fallback: str = ""
    timeout_ms: int = DEFAULT_TIMEOUT_MS

    @property
    def quality_model(self) -> str:
        return self.quality or self.fast

    @property
    def followup_model(self) -> str:
        return self.followup or self.fast

    @property
    def fallback_model(self) -> str:
        return self.fallback or self.fast


@dataclass(slots=True)
class PipelineConfig:
    fast_max_attempts: int = 1
    background_max_attempts: int = 2
    heartbeat_interval_seconds: float = 1.2
    followup_max_lines: int = 60


@dataclass(slots=True)
class JobsConfig:
    max_attempts: int = 3
    requeue_delay_seconds: int = 20
    batch_size: int = 5
    max_batch_size: int = 25
    kick_delay_seconds: int = 6
    retrigger_seconds: int = 15


@dataclass(slots=True)
class StoreConfig:
    enabled: bool = True
    path: str = ".proofsmith/proofs.sqlite3"


@dataclass(slots=True)
class ProofsmithConfig:
    models: ModelsConfig = field(default_factory=ModelsConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    jobs: JobsConfig = field(default_factory=JobsConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    api_key: str | None = None

    @classmethod
    def default(cls) -> ProofsmithConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> ProofsmithConfig:
        return cls(
            models=ModelsConfig(**data.get("models", {})),
            pipeline=PipelineConfig(**data.get("pipeline", {})),
            jobs=JobsConfig(**data.get("jobs", {})),
            store=StoreConfig(**data.get("store", {})),
        )

    def to_dict(self) -> dict:
        return {
            "models": {
                "fast": self.models.fast,
                "quality": self.models.quality,
                "followup": self.models.followup,
                "fallback": self.models.fallback,
                "timeout_ms": self.models.timeout_ms,
            },
            "pipeline": {
                "fast_max_attempts": self.pipeline.fast_max_attempts,
                "background_max_attempts": self.pipeline.background_max_attempts,
                "heartbeat_interval_seconds": self.pipeline.heartbeat_interval_seconds,
                "followup_max_lines": self.pipeline.followup_max_lines,
            },
            "jobs": {
                "max_attempts": self.jobs.max_attempts,
                "requeue_delay_seconds": self.jobs.requeue_delay_seconds,
                "batch_size": self.jobs.batch_size,
                "max_batch_size": self.jobs.max_batch_size,
                "kick_delay_seconds": self.jobs.kick_delay_seconds,
                "retrigger_seconds": self.jobs.retrigger_seconds,
            },
            "store": {
                "enabled": self.store.enabled,
                "path": self.store.path,
            },
        }

    def store_path(self, root: Path) -> Path:
        path = Path(self.store.path)
        if not path.is_absolute():
            path = root / path
        return path


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if rendered else "0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: ProofsmithConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in ["models", "pipeline", "jobs", "store"]:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def _positive_int(raw: str | None, fallback: int, cap: int = ENV_INT_CAP) -> int:
    if not raw:
        return fallback
    try:
        parsed = int(raw.strip())
    except ValueError:
        return fallback
    if parsed <= 0:
        return fallback
    return min(parsed, cap)


def _env_text(env: Mapping[str, str], key: str) -> str | None:
    value = env.get(key, "").strip()
    return value or None


def apply_env_overrides(
    config: ProofsmithConfig, env: Mapping[str, str] | None = None
) -> ProofsmithConfig:
    env = os.environ if env is None else env
    config.api_key = _env_text(env, "OPENAI_API_KEY") or config.api_key

    fast = _env_text(env, "OPENAI_MODEL_FAST")
    if fast:
        config.models.fast = fast
    for attr, key in (
        ("quality", "OPENAI_MODEL_QUALITY"),
        ("followup", "OPENAI_MODEL_FOLLOWUP"),
        ("fallback", "OPENAI_MODEL_FALLBACK"),
    ):
        value = _env_text(env, key)
        if value:
            setattr(config.models, attr, value)

    if "OPENAI_TIMEOUT_MS" in env:
        config.models.timeout_ms = resolve_timeout_ms(env.get("OPENAI_TIMEOUT_MS"))

    config.jobs.kick_delay_seconds = _positive_int(
        env.get("OPPORTUNISTIC_JOB_KICK_DELAY_SECONDS"), config.jobs.kick_delay_seconds
    )
    config.jobs.retrigger_seconds = _positive_int(
        env.get("OPPORTUNISTIC_JOB_RETRIGGER_SECONDS"), config.jobs.retrigger_seconds
    )
    return config


def load_config(path: Path, env: Mapping[str, str] | None = None) -> ProofsmithConfig:
    if path.exists():
        config = ProofsmithConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))
    else:
        config = ProofsmithConfig.default()
    return apply_env_overrides(config, env)


def save_config(path: Path, config: ProofsmithConfig) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dumps_toml(config), encoding="utf-8")
