"""Configuration helpers for the title search workbench."""

from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path
from typing import Final

from dotenv import load_dotenv

load_dotenv()

_DEFAULT_DATA_DIR: Final[str] = "data"
_DEFAULT_STORAGE_KEY: Final[str] = "legalAiProjects"
_DEFAULT_STORAGE_MAX_BYTES: Final[int] = 5 * 1024 * 1024
_DEFAULT_USAGE_DB: Final[str] = "data/usage.sqlite"
_DEFAULT_PLAN_NAME: Final[str] = "Basic"
_DEFAULT_AI_BACKEND: Final[str] = "openai"
_DEFAULT_OPENAI_MODEL: Final[str] = "gpt-4o-mini"
_DEFAULT_OPENAI_REPORT_MODEL: Final[str] = "gpt-4o"
_DEFAULT_OLLAMA_URL: Final[str] = "http://localhost:11434"
_DEFAULT_OLLAMA_MODEL: Final[str] = "llama3.2-vision"
_DEFAULT_OLLAMA_TIMEOUT: Final[float] = 120.0
_DEFAULT_AI_TEMPERATURE: Final[float] = 0.2
_DEFAULT_RATE_LIMIT_BACKOFF: Final[float] = 20.0
_DEFAULT_DERIVE_RETRY_DELAY: Final[float] = 20.0
_DEFAULT_DERIVE_MAX_RETRIES: Final[int] = 5
_DEFAULT_DAY_CHECK_INTERVAL: Final[float] = 60.0
_DEFAULT_POLL_INTERVAL: Final[float] = 0.5
_DEFAULT_UPLOAD_MIN_KBPS: Final[float] = 50.0
_DEFAULT_UPLOAD_MAX_KBPS: Final[float] = 500.0
_DEFAULT_UPLOAD_TICK: Final[float] = 0.1
_DEFAULT_UPLOAD_FAILURE_CHANCE: Final[float] = 0.15
_DEFAULT_OBSERVABILITY_NAMESPACE: Final[str] = "titlesearch"

AI_OPERATIONS: Final[tuple[str, ...]] = (
    "extractTextFromFile",
    "classifyDocument",
    "extractProjectDetailsAndScenario",
    "analyzeDocumentCompleteness",
    "generateReport",
    "reformatReport",
)


def _env_optional_bool(name: str) -> bool | None:
    """Read an optional boolean environment variable."""

    raw = os.getenv(name)
    if raw is None:
        return None
    value = raw.strip().lower()
    if value in {"1", "true", "yes", "on"}:
        return True
    if value in {"0", "false", "no", "off"}:
        return False
    msg = f"Environment variable {name} must be a boolean value (true/false)."
    raise ValueError(msg)


def _env_optional_int(name: str) -> int | None:
    """Read an optional integer environment variable."""

    raw = os.getenv(name)
    if raw is None:
        return None
    value = raw.strip()
    if not value:
        return None
    try:
        return int(value)
    except ValueError as exc:  # pragma: no cover - defensive guard
        raise ValueError(f"Environment variable {name} must be an integer") from exc


def _env_optional_float(name: str) -> float | None:
    raw = os.getenv(name)
    if raw is None:
        return None
    value = raw.strip()
    if not value:
        return None
    try:
        return float(value)
    except ValueError as exc:  # pragma: no cover - defensive guard
        raise ValueError(f"Environment variable {name} must be a float") from exc


def _env_float(name: str, default: float) -> float:
    value = _env_optional_float(name)
    return default if value is None else value


def _env_bool(name: str, default: bool) -> bool:
    value = _env_optional_bool(name)
    if value is None:
        return default
    return value


def _env_retry_limit(name: str, default: int | None) -> int | None:
    """Read a retry bound where ``unbounded`` (or a negative value) disables the cap."""

    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    if raw.strip().lower() in {"unbounded", "none", "inf"}:
        return None
    value = _env_optional_int(name)
    if value is None or value < 0:
        return None
    return value


@dataclass(slots=True)
class Settings:
    """Runtime settings resolved from environment variables."""

    data_dir: str = _DEFAULT_DATA_DIR
    storage_key: str = _DEFAULT_STORAGE_KEY
    storage_max_bytes: int | None = _DEFAULT_STORAGE_MAX_BYTES
    usage_db_path: str = _DEFAULT_USAGE_DB
    default_plan_name: str = _DEFAULT_PLAN_NAME
    ai_backend: str = _DEFAULT_AI_BACKEND
    openai_api_key: str | None = None
    openai_extract_model: str = _DEFAULT_OPENAI_MODEL
    openai_classify_model: str = _DEFAULT_OPENAI_MODEL
    openai_metadata_model: str = _DEFAULT_OPENAI_MODEL
    openai_report_model: str = _DEFAULT_OPENAI_REPORT_MODEL
    openai_reformat_model: str = _DEFAULT_OPENAI_MODEL
    ollama_base_url: str = _DEFAULT_OLLAMA_URL
    ollama_model: str = _DEFAULT_OLLAMA_MODEL
    ollama_request_timeout: float = _DEFAULT_OLLAMA_TIMEOUT
    ai_temperature: float = _DEFAULT_AI_TEMPERATURE
    rate_limit_backoff_seconds: float = _DEFAULT_RATE_LIMIT_BACKOFF
    derive_retry_delay_seconds: float = _DEFAULT_DERIVE_RETRY_DELAY
    derive_max_retries: int | None = _DEFAULT_DERIVE_MAX_RETRIES
    day_check_interval_seconds: float = _DEFAULT_DAY_CHECK_INTERVAL
    pipeline_poll_interval: float = _DEFAULT_POLL_INTERVAL
    upload_min_kbps: float = _DEFAULT_UPLOAD_MIN_KBPS
    upload_max_kbps: float = _DEFAULT_UPLOAD_MAX_KBPS
    upload_tick_seconds: float = _DEFAULT_UPLOAD_TICK
    upload_failure_chance: float = _DEFAULT_UPLOAD_FAILURE_CHANCE
    observability_metrics_enabled: bool = True
    observability_namespace: str = _DEFAULT_OBSERVABILITY_NAMESPACE
    observability_prometheus_enabled: bool = False

    @classmethod
    def from_env(cls) -> "Settings":
        """Create settings using environment variables when available."""

        metrics_enabled = _env_optional_bool("OBSERVABILITY_METRICS_ENABLED")
        storage_max = _env_optional_int("STORAGE_MAX_BYTES")
        return cls(
            data_dir=os.getenv("DATA_DIR", _DEFAULT_DATA_DIR),
            storage_key=os.getenv("STORAGE_KEY", _DEFAULT_STORAGE_KEY),
            storage_max_bytes=_DEFAULT_STORAGE_MAX_BYTES if storage_max is None else (storage_max or None),
            usage_db_path=os.getenv("USAGE_DB_PATH", _DEFAULT_USAGE_DB),
            default_plan_name=os.getenv("DEFAULT_PLAN_NAME", _DEFAULT_PLAN_NAME),
            ai_backend=os.getenv("AI_BACKEND", _DEFAULT_AI_BACKEND),
            openai_api_key=os.getenv("OPENAI_API_KEY"),
            openai_extract_model=os.getenv("OPENAI_EXTRACT_MODEL", _DEFAULT_OPENAI_MODEL),
            openai_classify_model=os.getenv("OPENAI_CLASSIFY_MODEL", _DEFAULT_OPENAI_MODEL),
            openai_metadata_model=os.getenv("OPENAI_METADATA_MODEL", _DEFAULT_OPENAI_MODEL),
            openai_report_model=os.getenv("OPENAI_REPORT_MODEL", _DEFAULT_OPENAI_REPORT_MODEL),
            openai_reformat_model=os.getenv("OPENAI_REFORMAT_MODEL", _DEFAULT_OPENAI_MODEL),
            ollama_base_url=os.getenv("OLLAMA_BASE_URL", _DEFAULT_OLLAMA_URL),
            ollama_model=os.getenv("OLLAMA_MODEL", _DEFAULT_OLLAMA_MODEL),
            ollama_request_timeout=_env_float("OLLAMA_REQUEST_TIMEOUT", _DEFAULT_OLLAMA_TIMEOUT),
            ai_temperature=_env_float("AI_TEMPERATURE", _DEFAULT_AI_TEMPERATURE),
            rate_limit_backoff_seconds=_env_float(
                "RATE_LIMIT_BACKOFF_SECONDS",
                _DEFAULT_RATE_LIMIT_BACKOFF,
            ),
            derive_retry_delay_seconds=_env_float(
                "DERIVE_RETRY_DELAY_SECONDS",
                _DEFAULT_DERIVE_RETRY_DELAY,
            ),
            derive_max_retries=_env_retry_limit("DERIVE_MAX_RETRIES", _DEFAULT_DERIVE_MAX_RETRIES),
            day_check_interval_seconds=_env_float(
                "DAY_CHECK_INTERVAL_SECONDS",
                _DEFAULT_DAY_CHECK_INTERVAL,
            ),
            pipeline_poll_interval=_env_float("PIPELINE_POLL_INTERVAL", _DEFAULT_POLL_INTERVAL),
            upload_min_kbps=_env_float("UPLOAD_MIN_KBPS", _DEFAULT_UPLOAD_MIN_KBPS),
            upload_max_kbps=_env_float("UPLOAD_MAX_KBPS", _DEFAULT_UPLOAD_MAX_KBPS),
            upload_tick_seconds=_env_float("UPLOAD_TICK_SECONDS", _DEFAULT_UPLOAD_TICK),
            upload_failure_chance=_env_float("UPLOAD_FAILURE_CHANCE", _DEFAULT_UPLOAD_FAILURE_CHANCE),
            observability_metrics_enabled=True if metrics_enabled is None else metrics_enabled,
            observability_namespace=os.getenv(
                "OBSERVABILITY_NAMESPACE",
                _DEFAULT_OBSERVABILITY_NAMESPACE,
            ),
            observability_prometheus_enabled=_env_bool("OBSERVABILITY_PROMETHEUS_ENABLED", False),
        )

    @property
    def is_openai_backend(self) -> bool:
        """Return True when AI calls go through the OpenAI Responses API."""

        return self.ai_backend.strip().lower() == "openai"

    @property
    def is_ollama_backend(self) -> bool:
        """Return True when AI calls go to an Ollama-hosted model."""

        return self.ai_backend.strip().lower() == "ollama"

    def model_for(self, operation: str) -> str:
        """Return the model identifier used for an AI gateway operation."""

        if self.is_ollama_backend:
            return self.ollama_model
        if operation == "extractTextFromFile":
            return self.openai_extract_model
        if operation == "classifyDocument":
            return self.openai_classify_model
        if operation == "extractProjectDetailsAndScenario":
            return self.openai_metadata_model
        if operation == "generateReport":
            return self.openai_report_model
        if operation == "reformatReport":
            return self.openai_reformat_model
        raise ValueError(f"Unknown AI operation: {operation}")

    def storage_path(self) -> Path:
        """Return the directory backing the local key-value storage."""

        return Path(self.data_dir).expanduser().resolve() / "storage"

    def build_metrics_recorder(self) -> "MetricsRecorder":
        """Instantiate the configured metrics recorder."""

        from .observability import MetricsRecorder

        return MetricsRecorder(
            enabled=self.observability_metrics_enabled,
            namespace=self.observability_namespace,
            prometheus_enabled=self.observability_prometheus_enabled,
        )


__all__ = ["AI_OPERATIONS", "Settings"]
