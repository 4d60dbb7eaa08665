"""Metrics recorder interfaces.

The router reports through a duck-typed :class:`MetricsRecorder`. The
default :class:`NoOpMetrics` costs nothing; :class:`InMemoryMetrics` keeps
counters and bounded latency samples for inspection and tests.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Any, Final, Protocol, TypedDict, runtime_checkable

# Metric names emitted by the router.
REQUESTS: Final[str] = "requests"
LATENCY_MS: Final[str] = "latency_ms"
TOKENS_INPUT: Final[str] = "tokens.input"
TOKENS_OUTPUT: Final[str] = "tokens.output"
BREAKER_TRANSITIONS: Final[str] = "circuit_breaker.transitions"

DEFAULT_MAX_SAMPLES = 10_000

_Key = tuple[str, tuple[tuple[str, str], ...]]


@runtime_checkable
class MetricsRecorder(Protocol):
    """Duck-typed protocol for counter/histogram sinks."""

    def increment(self, name: str, value: int = 1, **tags: Any) -> None: ...  # noqa: D102
    def observe(self, name: str, value: float, **tags: Any) -> None: ...  # noqa: D102


@dataclass(frozen=True, slots=True)
class NoOpMetrics:
    """Discards everything."""

    def increment(self, name: str, value: int = 1, **tags: Any) -> None:  # noqa: ARG002
        return None

    def observe(self, name: str, value: float, **tags: Any) -> None:  # noqa: ARG002
        return None


class HistogramStats(TypedDict):
    count: int
    min: float
    max: float
    mean: float
    p50: float
    p95: float
    p99: float


def percentile(sorted_values: list[float], pct: float) -> float:
    """Linear-interpolated percentile of an ascending list (0 when empty)."""
    if not sorted_values:
        return 0.0
    if len(sorted_values) == 1:
        return float(sorted_values[0])
    index = (pct / 100) * (len(sorted_values) - 1)
    lower = int(index)
    upper = min(lower + 1, len(sorted_values) - 1)
    fraction = index - lower
    return sorted_values[lower] + fraction * (sorted_values[upper] - sorted_values[lower])


def summarize(values: list[float]) -> HistogramStats:
    if not values:
        return HistogramStats(count=0, min=0.0, max=0.0, mean=0.0, p50=0.0, p95=0.0, p99=0.0)
    ordered = sorted(values)
    return HistogramStats(
        count=len(ordered),
        min=ordered[0],
        max=ordered[-1],
        mean=sum(ordered) / len(ordered),
        p50=percentile(ordered, 50),
        p95=percentile(ordered, 95),
        p99=percentile(ordered, 99),
    )


def _key(name: str, tags: dict[str, Any]) -> _Key:
    return name, tuple(sorted((k, str(v)) for k, v in tags.items()))


def _format_key(key: _Key) -> str:
    name, tags = key
    if not tags:
        return name
    return name + "{" + ",".join(f"{k}={v}" for k, v in tags) + "}"


class InMemoryMetrics:
    """Counters and histograms keyed by metric name plus tags.

    Histograms keep at most ``max_samples`` recent values per key.
    """

    def __init__(self, *, max_samples: int = DEFAULT_MAX_SAMPLES) -> None:
        self.max_samples = max_samples
        self._counters: dict[_Key, int] = {}
        self._samples: dict[_Key, deque[float]] = {}

    def increment(self, name: str, value: int = 1, **tags: Any) -> None:
        key = _key(name, tags)
        self._counters[key] = self._counters.get(key, 0) + value

    def observe(self, name: str, value: float, **tags: Any) -> None:
        key = _key(name, tags)
        samples = self._samples.get(key)
        if samples is None:
            samples = self._samples[key] = deque(maxlen=self.max_samples)
        samples.append(float(value))

    def counter(self, name: str, **tags: Any) -> int:
        """Sum of every counter named *name* whose tags include *tags*."""
        return sum(v for k, v in self._counters.items() if _matches(k, name, tags))

    def histogram(self, name: str, **tags: Any) -> HistogramStats:
        """Stats over every sample of *name* whose tags include *tags*."""
        values: list[float] = []
        for k, samples in self._samples.items():
            if _matches(k, name, tags):
                values.extend(samples)
        return summarize(values)

    def snapshot(self) -> dict[str, Any]:
        """Plain-dict view: ``{"counters": {...}, "histograms": {...}}``."""
        return {
            "counters": {_format_key(k): v for k, v in sorted(self._counters.items())},
            "histograms": {
                _format_key(k): summarize(list(s)) for k, s in sorted(self._samples.items())
            },
        }

    def reset(self) -> None:
        self._counters.clear()
        self._samples.clear()


def _matches(key: _Key, name: str, tags: dict[str, Any]) -> bool:
    key_name, key_tags = key
    if key_name != name:
        return False
    present = dict(key_tags)
    return all(present.get(k) == str(v) for k, v in tags.items())
