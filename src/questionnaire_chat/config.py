"""Configuration helpers for the questionnaire chat client."""

from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum
from importlib import import_module
from pathlib import Path
from typing import Optional


class CacheBackend(str, Enum):
    """Available persistence backends for the questionnaire cache."""

    FILE = "file"
    REDIS = "redis"
    MEMORY = "memory"

    @classmethod
    def from_string(
        cls,
        backend: str | None,
        default: Optional["CacheBackend"] = None,
    ) -> "CacheBackend":
        """Normalize arbitrary user input into a valid backend."""
        if not backend:
            if default is None:
                raise ValueError("Cache backend is required.")
            return default
        normalized = backend.strip().lower().replace(" ", "_")
        for candidate in cls:
            if candidate.value == normalized:
                return candidate
        if default is not None:
            return default
        raise ValueError(f"Unsupported cache backend: {backend}")


@dataclass(slots=True)
class BackendSettings:
    """Holds the remote service endpoints and timeouts."""

    base_url: str
    ask_url: str
    request_timeout: float
    generation_timeout: float


@dataclass(slots=True)
class AppSettings:
    """Top-level application settings loaded from environment variables."""

    backend: BackendSettings
    cache_backend: CacheBackend
    cache_path: Path
    redis_url: Optional[str]
    not_found_redirect_seconds: float
    listing_path: str = "/questionnaires"

    @classmethod
    def load(cls) -> "AppSettings":
        """Load settings from the environment or .env file."""
        _ensure_dotenv()
        base_url = os.getenv("QC_API_BASE_URL", "http://localhost:8000")
        base_url = base_url.strip().rstrip("/")
        if not base_url:
            raise RuntimeError("QC_API_BASE_URL must not be empty.")
        ask_url = os.getenv("QC_ASK_URL", "").strip() or f"{base_url}/ask"
        cache_backend = CacheBackend.from_string(
            os.getenv("QC_CACHE_BACKEND"),
            default=CacheBackend.FILE,
        )
        cache_path = Path(
            os.getenv("QC_CACHE_PATH", "outputs/user_questionnaires.json")
        )
        if cache_backend is CacheBackend.FILE:
            cache_path.parent.mkdir(parents=True, exist_ok=True)
        redis_url = os.getenv("QC_REDIS_URL", "redis://localhost:6379/0")
        if redis_url and not redis_url.strip():
            redis_url = None
        request_timeout = _positive_float("QC_REQUEST_TIMEOUT", "15")
        generation_timeout = _positive_float("QC_GENERATION_TIMEOUT", "30")
        redirect_seconds = _positive_float(
            "QC_NOT_FOUND_REDIRECT_SECONDS",
            "5",
            allow_zero=True,
        )
        return cls(
            backend=BackendSettings(
                base_url=base_url,
                ask_url=ask_url,
                request_timeout=request_timeout,
                generation_timeout=generation_timeout,
            ),
            cache_backend=cache_backend,
            cache_path=cache_path,
            redis_url=redis_url,
            not_found_redirect_seconds=redirect_seconds,
        )


def _positive_float(name: str, default: str, *, allow_zero: bool = False) -> float:
    raw = os.getenv(name, default)
    try:
        value = float(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be a number") from exc
    if value < 0 or (value == 0 and not allow_zero):
        raise RuntimeError(f"{name} must be greater than zero")
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
