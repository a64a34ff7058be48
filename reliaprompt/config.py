# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Engine configuration."""
import logging
import os
from dataclasses import dataclass, field
from typing import List, Optional

logger = logging.getLogger(__name__)

DEFAULT_RUNS_PER_TEST = 1
DEFAULT_MAX_ITERATIONS = 3
DEFAULT_MAX_CONCURRENCY = 8
DEFAULT_JOB_TTL_SECONDS = 3600
DEFAULT_MAX_JOBS = 100
DEFAULT_DB_PATH = "~/.reliaprompt/reliaprompt.db"

# Default model per provider when a spec names only the provider
DEFAULT_MODELS = {
    "openai": "gpt-4o-mini",
    "anthropic": "claude-sonnet-4-5-20250929",
    "ollama": "llama3.2",
}


def _split_models(raw: str) -> List[str]:
    return [m.strip() for m in raw.split(",") if m.strip()]


def _optional_float(raw: Optional[str]) -> Optional[float]:
    if raw is None or raw.strip() == "":
        return None
    return float(raw)


@dataclass
class EngineConfig:
    """Configuration for test runs and improvement jobs.

    Can be created directly, from a dict, or from environment variables.
    ``models`` holds ``provider:model_id`` specs, e.g. ``openai:gpt-4o``.
    ``judge_model`` is the spec of the model that reviews answers for
    prompts using LLM evaluation mode.
    """
    models: List[str] = field(default_factory=list)
    judge_model: Optional[str] = None
    openai_api_key: str = ""
    anthropic_api_key: str = ""
    ollama_base_url: str = "http://localhost:11434/v1"
    temperature: float = 0.0
    max_tokens: int = 4096

    runs_per_test: int = DEFAULT_RUNS_PER_TEST
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    call_timeout: Optional[float] = None  # seconds, None = wait forever

    # Job registry
    job_ttl_seconds: int = DEFAULT_JOB_TTL_SECONDS
    max_jobs: int = DEFAULT_MAX_JOBS

    db_path: str = DEFAULT_DB_PATH

    @classmethod
    def from_dict(cls, data: dict) -> "EngineConfig":
        models = data.get("models") or []
        if isinstance(models, str):
            models = _split_models(models)
        return cls(
            models=list(models),
            judge_model=data.get("judge_model") or None,
            openai_api_key=data.get("openai_api_key", ""),
            anthropic_api_key=data.get("anthropic_api_key", ""),
            ollama_base_url=data.get("ollama_base_url", "http://localhost:11434/v1"),
            temperature=data.get("temperature", 0.0),
            max_tokens=data.get("max_tokens", 4096),
            runs_per_test=data.get("runs_per_test", DEFAULT_RUNS_PER_TEST),
            max_iterations=data.get("max_iterations", DEFAULT_MAX_ITERATIONS),
            max_concurrency=data.get("max_concurrency", DEFAULT_MAX_CONCURRENCY),
            call_timeout=data.get("call_timeout"),
            job_ttl_seconds=data.get("job_ttl_seconds", DEFAULT_JOB_TTL_SECONDS),
            max_jobs=data.get("max_jobs", DEFAULT_MAX_JOBS),
            db_path=data.get("db_path", DEFAULT_DB_PATH),
        )

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """Create config from environment variables.

        Reads RELIAPROMPT_MODELS, RELIAPROMPT_JUDGE_MODEL, RELIAPROMPT_RUNS_PER_TEST, etc. Provider
        keys fall back to OPENAI_API_KEY / ANTHROPIC_API_KEY.
        """
        return cls(
            models=_split_models(os.getenv("RELIAPROMPT_MODELS", "")),
            judge_model=os.getenv("RELIAPROMPT_JUDGE_MODEL", "").strip() or None,
            openai_api_key=(
                os.getenv("RELIAPROMPT_OPENAI_API_KEY", "") or os.getenv("OPENAI_API_KEY", "")
            ),
            anthropic_api_key=(
                os.getenv("RELIAPROMPT_ANTHROPIC_API_KEY", "") or os.getenv("ANTHROPIC_API_KEY", "")
            ),
            ollama_base_url=os.getenv("RELIAPROMPT_OLLAMA_BASE_URL", "http://localhost:11434/v1"),
            temperature=float(os.getenv("RELIAPROMPT_TEMPERATURE", "0.0")),
            max_tokens=int(os.getenv("RELIAPROMPT_MAX_TOKENS", "4096")),
            runs_per_test=int(os.getenv("RELIAPROMPT_RUNS_PER_TEST", str(DEFAULT_RUNS_PER_TEST))),
            max_iterations=int(os.getenv("RELIAPROMPT_MAX_ITERATIONS", str(DEFAULT_MAX_ITERATIONS))),
            max_concurrency=int(os.getenv("RELIAPROMPT_MAX_CONCURRENCY", str(DEFAULT_MAX_CONCURRENCY))),
            call_timeout=_optional_float(os.getenv("RELIAPROMPT_CALL_TIMEOUT")),
            job_ttl_seconds=int(os.getenv("RELIAPROMPT_JOB_TTL_SECONDS", str(DEFAULT_JOB_TTL_SECONDS))),
            max_jobs=int(os.getenv("RELIAPROMPT_MAX_JOBS", str(DEFAULT_MAX_JOBS))),
            db_path=os.getenv("RELIAPROMPT_DB_PATH", DEFAULT_DB_PATH),
        )

    def __post_init__(self):
        """Validate config values."""
        if self.temperature < 0.0:
            logger.warning("temperature %s < 0, clamping to 0.0", self.temperature)
            self.temperature = 0.0
        elif self.temperature > 2.0:
            logger.warning("temperature %s > 2.0, clamping to 2.0", self.temperature)
            self.temperature = 2.0

        if self.max_tokens < 1:
            logger.warning("max_tokens %s < 1, setting to 1", self.max_tokens)
            self.max_tokens = 1
        elif self.max_tokens > 200_000:
            logger.warning("max_tokens %s > 200000, clamping to 200000", self.max_tokens)
            self.max_tokens = 200_000

        for name in ("runs_per_test", "max_iterations", "max_concurrency", "max_jobs"):
            value = getattr(self, name)
            if value < 1:
                logger.warning("%s %s < 1, setting to 1", name, value)
                setattr(self, name, 1)

        if self.call_timeout is not None and self.call_timeout <= 0:
            logger.warning("call_timeout %s <= 0, disabling timeout", self.call_timeout)
            self.call_timeout = None

        if self.job_ttl_seconds < 0:
            self.job_ttl_seconds = 0

    def __repr__(self) -> str:
        return (
            "EngineConfig(models={!r}, judge_model={!r}, runs_per_test={}, max_iterations={}, "
            "max_concurrency={}, call_timeout={!r}, openai_api_key={!r}, "
            "anthropic_api_key={!r})"
        ).format(
            self.models, self.judge_model, self.runs_per_test, self.max_iterations,
            self.max_concurrency, self.call_timeout,
            _key_hint(self.openai_api_key), _key_hint(self.anthropic_api_key),
        )


def _key_hint(key: str) -> str:
    if not key:
        return ""
    return "{}...".format(key[:4]) if len(key) > 4 else "***"
