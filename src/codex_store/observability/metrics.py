"""Process-local metrics for codex writes and change emissions.

The repository counts attempts, conflicts, commits and give-ups per
operation and records commit latency; the channel counts emitted snapshots
and failing subscribers. ``snapshot()`` renders everything as plain JSON
values keyed ``name{label=value,...}``; the CLI prints it with ``--verbose``
and writes it to the session log when a command finishes.
"""

from __future__ import annotations

import math
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Final

from codex_store.domain.models import UTC, JSONValue

if TYPE_CHECKING:
    from collections.abc import Mapping

WRITE_ATTEMPTS: Final[str] = "codex_write_attempts_total"
WRITE_CONFLICTS: Final[str] = "codex_write_conflicts_total"
WRITE_COMMITS: Final[str] = "codex_write_commits_total"
WRITE_EXHAUSTED: Final[str] = "codex_write_exhausted_total"
WRITE_NOOPS: Final[str] = "codex_write_noops_total"
MISSING_TARGETS: Final[str] = "codex_missing_targets_total"
SNAPSHOTS_EMITTED: Final[str] = "codex_snapshots_emitted_total"
SUBSCRIBER_FAILURES: Final[str] = "codex_subscriber_failures_total"
COMMIT_LATENCY_MS: Final[str] = "codex_commit_latency_ms"
CACHED_CODICES: Final[str] = "codex_cached_codices"

_MAX_NAME_LENGTH: Final[int] = 128
_MAX_LABEL_LENGTH: Final[int] = 256

# (metric name, sorted label pairs)
_Series = tuple[str, tuple[tuple[str, str], ...]]


@dataclass(slots=True)
class _Summary:
    """Running count, sum and extremes of observed samples."""

    count: int = 0
    total: float = 0.0
    low: float = math.inf
    high: float = -math.inf

    def add(self, sample: float) -> None:
        self.count += 1
        self.total += sample
        self.low = min(self.low, sample)
        self.high = max(self.high, sample)

    def to_json(self) -> dict[str, JSONValue]:
        return {
            "count": self.count,
            "sum": self.total,
            "min": self.low,
            "max": self.high,
            "avg": self.total / self.count,
        }


class MetricsRegistry:
    """Counters, gauges and latency summaries guarded by one lock.

    ``enabled=False`` still validates every call but records nothing, so the
    repository and channel never check whether metrics are switched on.
    """

    def __init__(self, *, enabled: bool = True) -> None:
        self._enabled = enabled
        self._lock = threading.Lock()
        self._since = datetime.now(tz=UTC)
        self._counters: dict[_Series, float] = {}
        self._gauges: dict[_Series, float] = {}
        self._summaries: dict[_Series, _Summary] = {}

    @property
    def enabled(self) -> bool:
        return self._enabled

    def inc(
        self, name: str, amount: float = 1.0, *, labels: Mapping[str, str] | None = None
    ) -> None:
        series = _series(name, labels)
        delta = _finite(amount, "amount")
        if delta < 0:
            raise ValueError("counter increment amount must be >= 0")
        if self._enabled:
            with self._lock:
                self._counters[series] = self._counters.get(series, 0.0) + delta

    def set_gauge(
        self, name: str, value: float, *, labels: Mapping[str, str] | None = None
    ) -> None:
        series = _series(name, labels)
        reading = _finite(value, "value")
        if self._enabled:
            with self._lock:
                self._gauges[series] = reading

    def observe(
        self, name: str, value: float, *, labels: Mapping[str, str] | None = None
    ) -> None:
        series = _series(name, labels)
        sample = _finite(value, "value")
        if self._enabled:
            with self._lock:
                self._summaries.setdefault(series, _Summary()).add(sample)

    def get_counter(self, name: str, *, labels: Mapping[str, str] | None = None) -> float:
        with self._lock:
            return self._counters.get(_series(name, labels), 0.0)

    def get_gauge(self, name: str, *, labels: Mapping[str, str] | None = None) -> float | None:
        with self._lock:
            return self._gauges.get(_series(name, labels))

    def get_distribution(
        self, name: str, *, labels: Mapping[str, str] | None = None
    ) -> dict[str, JSONValue] | None:
        with self._lock:
            summary = self._summaries.get(_series(name, labels))
            return None if summary is None else summary.to_json()

    def snapshot(self) -> dict[str, JSONValue]:
        """Everything recorded so far, with series sorted by name then labels."""

        with self._lock:
            counters: dict[str, JSONValue] = {
                _render(series): value for series, value in sorted(self._counters.items())
            }
            gauges: dict[str, JSONValue] = {
                _render(series): value for series, value in sorted(self._gauges.items())
            }
            distributions: dict[str, JSONValue] = {
                _render(series): summary.to_json()
                for series, summary in sorted(self._summaries.items())
            }
        return {
            "enabled": self._enabled,
            "since": self._since.isoformat(timespec="seconds").replace("+00:00", "Z"),
            "counters": counters,
            "gauges": gauges,
            "distributions": distributions,
        }


def _series(name: str, labels: Mapping[str, str] | None) -> _Series:
    if not isinstance(name, str):
        raise ValueError(f"metric name must be a string, got {type(name).__name__}")
    cleaned = name.strip()
    if not cleaned:
        raise ValueError("metric name must not be empty")
    if len(cleaned) > _MAX_NAME_LENGTH:
        raise ValueError(f"metric name must be <= {_MAX_NAME_LENGTH} characters")

    pairs: list[tuple[str, str]] = []
    for key, value in (labels or {}).items():
        if not isinstance(key, str) or not key.strip():
            raise ValueError("label keys must be non-empty strings")
        if not isinstance(value, str) or not value.strip():
            raise ValueError(f"label value for {key!r} must be a non-empty string")
        if len(value) > _MAX_LABEL_LENGTH:
            raise ValueError(f"label value for {key!r} exceeds {_MAX_LABEL_LENGTH} characters")
        pairs.append((key.strip(), value.strip()))
    return cleaned, tuple(sorted(pairs))


def _render(series: _Series) -> str:
    name, labels = series
    if not labels:
        return name
    return name + "{" + ",".join(f"{key}={value}" for key, value in labels) + "}"


def _finite(value: float, what: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{what} must be numeric, got {type(value).__name__}")
    number = float(value)
    if not math.isfinite(number):
        raise ValueError(f"{what} must be finite")
    return number


__all__ = [
    "CACHED_CODICES",
    "COMMIT_LATENCY_MS",
    "MISSING_TARGETS",
    "SNAPSHOTS_EMITTED",
    "SUBSCRIBER_FAILURES",
    "WRITE_ATTEMPTS",
    "WRITE_COMMITS",
    "WRITE_CONFLICTS",
    "WRITE_EXHAUSTED",
    "WRITE_NOOPS",
    "MetricsRegistry",
]
