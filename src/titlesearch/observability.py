"""Metrics helpers for the gateway and pipeline, with optional Prometheus export."""

from __future__ import annotations

import logging
import re
import time
from collections import defaultdict
from contextlib import contextmanager
from typing import Any, Iterator

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

_PROM_NAME_RE = re.compile(r"[^a-zA-Z0-9_]")
_PROM_TYPES = {"counter": Counter, "gauge": Gauge, "histogram": Histogram}

TagKey = tuple[tuple[str, str], ...]


class MetricsRecorder:
    """Emit metrics as structured log lines and, when enabled, Prometheus series.

    Counters and gauges are also kept in memory so the dashboard and tests can
    read the latest values without scraping.
    """

    def __init__(
        self,
        *,
        enabled: bool = True,
        namespace: str = "titlesearch",
        logger: logging.Logger | None = None,
        prometheus_enabled: bool = False,
        registry: CollectorRegistry | None = None,
    ) -> None:
        self._enabled = enabled
        self._namespace = namespace.strip() or "titlesearch"
        self._logger = logger or logging.getLogger("titlesearch.metrics")
        self._prometheus_enabled = prometheus_enabled
        if registry is None and prometheus_enabled:
            registry = CollectorRegistry()
        self._registry = registry
        self._prom_series: dict[tuple[str, str, tuple[str, ...]], Any] = {}
        self._counters: dict[str, dict[TagKey, int]] = defaultdict(lambda: defaultdict(int))
        self._gauges: dict[str, dict[TagKey, float]] = defaultdict(dict)

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def prometheus_enabled(self) -> bool:
        return self._prometheus_enabled and self._registry is not None

    @property
    def prometheus_content_type(self) -> str:
        return CONTENT_TYPE_LATEST

    def render_prometheus(self) -> bytes:
        if not self.prometheus_enabled:
            raise RuntimeError("Prometheus export is disabled")
        return generate_latest(self._registry)

    def increment(self, metric: str, *, value: int = 1, **tags: Any) -> None:
        """Increment a counter metric."""

        if not self._enabled:
            return
        value = int(value)
        clean = _clean_tags(tags)
        self._counters[metric][_tag_key(clean)] += value
        self._emit(metric, {"value": value}, clean)
        self._observe("counter", metric, clean, lambda series: series.inc(max(value, 0)))

    def set_gauge(self, metric: str, value: float, **tags: Any) -> None:
        if not self._enabled:
            return
        clean = _clean_tags(tags)
        self._gauges[metric][_tag_key(clean)] = float(value)
        self._emit(metric, {"value": value}, clean)
        self._observe("gauge", metric, clean, lambda series: series.set(float(value)))

    def record_timing(self, metric: str, duration_seconds: float, **tags: Any) -> None:
        """Emit a timing metric; logs carry milliseconds, Prometheus seconds."""

        if not self._enabled:
            return
        seconds = max(duration_seconds, 0.0)
        clean = _clean_tags(tags)
        self._emit(metric, {"duration_ms": round(seconds * 1000.0, 4)}, clean)
        self._observe("histogram", metric, clean, lambda series: series.observe(seconds))

    @contextmanager
    def track_timing(self, metric: str, **tags: Any) -> Iterator[None]:
        if not self._enabled:
            yield
            return
        start = time.perf_counter()
        try:
            yield
        finally:
            self.record_timing(metric, time.perf_counter() - start, **tags)

    def counter_value(self, metric: str, **tags: Any) -> int:
        """Return the in-memory total for a counter, summed over matching tag sets."""

        wanted = {key: _stringify(value) for key, value in tags.items()}
        total = 0
        for key, value in self._counters.get(metric, {}).items():
            labels = dict(key)
            if all(labels.get(name) == expected for name, expected in wanted.items()):
                total += value
        return total

    def gauge_value(self, metric: str, **tags: Any) -> float | None:
        return self._gauges.get(metric, {}).get(_tag_key(_clean_tags(tags)))

    def _emit(self, metric: str, fields: dict[str, Any], tags: dict[str, str]) -> None:
        parts = [f"{key}={_stringify(value)}" for key, value in sorted(fields.items())]
        parts.extend(f"{key}={value}" for key, value in sorted(tags.items()))
        message = f"{self._namespace}.{metric}"
        if parts:
            message = f"{message} {' '.join(parts)}"
        self._logger.info(message)

    def _observe(self, kind: str, metric: str, tags: dict[str, str], apply) -> None:
        if not self.prometheus_enabled:
            return
        label_names = tuple(sorted(_sanitize_label(name) for name in tags))
        key = (kind, metric, label_names)
        series = self._prom_series.get(key)
        if series is None:
            series = _PROM_TYPES[kind](
                self._prom_metric_name(metric),
                f"{metric} {kind}",
                labelnames=list(label_names),
                registry=self._registry,
            )
            self._prom_series[key] = series
        if label_names:
            labels = {_sanitize_label(name): value for name, value in tags.items()}
            series = series.labels(**labels)
        apply(series)

    def _prom_metric_name(self, metric: str) -> str:
        prefix = _PROM_NAME_RE.sub("_", self._namespace)
        return f"{prefix}_{_PROM_NAME_RE.sub('_', metric)}".strip("_")


def _clean_tags(tags: dict[str, Any]) -> dict[str, str]:
    return {key: _stringify(value) for key, value in tags.items() if value is not None}


def _tag_key(tags: dict[str, str]) -> TagKey:
    return tuple(sorted(tags.items()))


def _sanitize_label(label: str) -> str:
    return _PROM_NAME_RE.sub("_", label) or "label"


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, float):
        return f"{int(value)}" if value.is_integer() else f"{value:.4f}"
    return str(value)


__all__ = ["MetricsRecorder"]
