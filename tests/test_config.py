from __future__ import annotations

from pathlib import Path

import pytest

from titlesearch.config import Settings


def test_from_env_reads_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("DATA_DIR", str(tmp_path))
    monkeypatch.setenv("AI_BACKEND", "ollama")
    monkeypatch.setenv("OLLAMA_MODEL", "llava:13b")
    monkeypatch.setenv("RATE_LIMIT_BACKOFF_SECONDS", "5")
    monkeypatch.setenv("DERIVE_MAX_RETRIES", "unbounded")
    monkeypatch.setenv("STORAGE_MAX_BYTES", "0")
    monkeypatch.setenv("OBSERVABILITY_PROMETHEUS_ENABLED", "yes")

    settings = Settings.from_env()

    assert settings.is_ollama_backend
    assert not settings.is_openai_backend
    assert settings.model_for("generateReport") == "llava:13b"
    assert settings.rate_limit_backoff_seconds == 5.0
    assert settings.derive_max_retries is None
    assert settings.storage_max_bytes is None
    assert settings.observability_prometheus_enabled
    assert settings.storage_path() == tmp_path.resolve() / "storage"


def test_defaults_follow_the_published_constants(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("DERIVE_MAX_RETRIES", "STORAGE_MAX_BYTES", "AI_BACKEND", "RATE_LIMIT_BACKOFF_SECONDS"):
        monkeypatch.delenv(name, raising=False)

    settings = Settings.from_env()

    assert settings.derive_max_retries == 5
    assert settings.rate_limit_backoff_seconds == 20.0
    assert settings.storage_key == "legalAiProjects"
    assert settings.storage_max_bytes == 5 * 1024 * 1024
    assert settings.is_openai_backend


def test_openai_models_are_chosen_per_operation() -> None:
    settings = Settings(openai_extract_model="extract-model", openai_report_model="report-model")

    assert settings.model_for("extractTextFromFile") == "extract-model"
    assert settings.model_for("generateReport") == "report-model"
    with pytest.raises(ValueError):
        settings.model_for("summarize")


def test_invalid_boolean_is_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("OBSERVABILITY_METRICS_ENABLED", "maybe")

    with pytest.raises(ValueError, match="OBSERVABILITY_METRICS_ENABLED"):
        Settings.from_env()


def test_build_metrics_recorder_uses_namespace() -> None:
    settings = Settings(observability_namespace="titlesearch.dev", observability_prometheus_enabled=True)
    recorder = settings.build_metrics_recorder()

    assert recorder.enabled
    assert recorder.prometheus_enabled
