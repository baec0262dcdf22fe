"""Configuration helpers for the benefits interview engine."""

from __future__ import annotations

import os
from dataclasses import dataclass
from importlib import import_module
from typing import Optional


@dataclass(slots=True)
class ModelSettings:
    """Holds model-related configuration for the coverage oracle."""

    provider: str
    model: str
    fallback_model: str
    endpoint: Optional[str]
    api_key: str
    api_version: Optional[str]
    request_timeout: float = 30.0


@dataclass(frozen=True, slots=True)
class CompletionThresholds:
    """Idle and size limits shared by the warning text and the policy.

    The warning minutes are derived from the timeout so the two never drift.
    """

    idle_timeout_minutes: float = 5.0
    idle_min_user_messages: int = 10
    max_messages: int = 50

    @property
    def idle_warning_minutes(self) -> float:
        return self.idle_timeout_minutes - 2

    @property
    def idle_final_warning_minutes(self) -> float:
        return self.idle_timeout_minutes - 1


@dataclass(slots=True)
class AppSettings:
    """Top-level application settings loaded from environment variables."""

    model: ModelSettings
    redis_url: Optional[str]
    coverage_debounce_seconds: float
    checkpoint_every: int
    idle_check_seconds: float
    thresholds: CompletionThresholds

    @classmethod
    def load(cls) -> "AppSettings":
        """Load settings from the environment or .env file."""
        _ensure_dotenv()
        provider = os.getenv("MAF_MODEL_PROVIDER", "openai")
        model = os.getenv("MAF_MODEL")
        if not model:
            raise RuntimeError("MAF_MODEL environment variable is required.")
        fallback_model = os.getenv("MAF_FALLBACK_MODEL") or model
        endpoint = os.getenv("MAF_MODEL_ENDPOINT")
        api_key = os.getenv("MAF_MODEL_API_KEY")
        if not api_key:
            raise RuntimeError(
                "MAF_MODEL_API_KEY environment variable is required."
            )
        api_version = os.getenv("MAF_MODEL_API_VERSION")
        request_timeout = _read_float("MAF_MODEL_TIMEOUT", 30.0)
        redis_url = os.getenv("MAF_REDIS_URL", "")
        if not redis_url.strip():
            redis_url = None
        debounce_ms = _read_int("INTERVIEW_COVERAGE_DEBOUNCE_MS", 2000)
        checkpoint_every = _read_int("INTERVIEW_CHECKPOINT_EVERY", 5)
        if checkpoint_every < 1:
            raise RuntimeError(
                "INTERVIEW_CHECKPOINT_EVERY must be at least 1"
            )
        idle_check_seconds = _read_float("INTERVIEW_IDLE_CHECK_SECONDS", 60.0)
        idle_timeout = _read_float("INTERVIEW_IDLE_TIMEOUT_MINUTES", 5.0)
        if idle_timeout <= 2:
            raise RuntimeError(
                "INTERVIEW_IDLE_TIMEOUT_MINUTES must be greater than 2"
            )
        thresholds = CompletionThresholds(
            idle_timeout_minutes=idle_timeout,
            idle_min_user_messages=_read_int(
                "INTERVIEW_IDLE_MIN_USER_MESSAGES", 10
            ),
            max_messages=_read_int("INTERVIEW_MAX_MESSAGES", 50),
        )
        return cls(
            model=ModelSettings(
                provider=provider,
                model=model,
                fallback_model=fallback_model,
                endpoint=endpoint,
                api_key=api_key,
                api_version=api_version,
                request_timeout=request_timeout,
            ),
            redis_url=redis_url,
            coverage_debounce_seconds=debounce_ms / 1000,
            checkpoint_every=checkpoint_every,
            idle_check_seconds=idle_check_seconds,
            thresholds=thresholds,
        )


def _read_int(name: str, default: int) -> int:
    raw = os.getenv(name, str(default))
    try:
        value = int(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be an integer") from exc
    if value < 0:
        raise RuntimeError(f"{name} must not be negative")
    return value


def _read_float(name: str, default: float) -> float:
    raw = os.getenv(name, str(default))
    try:
        value = float(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be a number") from exc
    if value <= 0:
        raise RuntimeError(f"{name} must be positive")
    return value


def _ensure_dotenv() -> None:
    """Load dotenv variables and provide a helpful error if missing."""

    try:
        dotenv_module = import_module("dotenv")
    except ModuleNotFoundError as exc:  # pragma: no cover - optional dep
        raise RuntimeError(
            "python-dotenv is required. Install with `pip install "
            "python-dotenv`."
        ) from exc

    load_dotenv = getattr(dotenv_module, "load_dotenv")
    load_dotenv()
