import asyncio
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any

LabelKey = tuple[tuple[str, str], ...]


@dataclass
class Counter:
    value: int = 0

    def add(self, value: int = 1):
        self.value += value


@dataclass
class Histogram:
    values: list[float] = field(default_factory=list)
    sum: float = 0.0

    @property
    def count(self) -> int:
        return len(self.values)

    def record(self, value: float):
        self.values.append(value)
        self.sum += value

    def percentiles(self, *percentiles: float) -> dict[str, float]:
        if not self.values:
            return {f"p{int(p)}": 0.0 for p in percentiles}
        ordered = sorted(self.values)
        last = len(ordered) - 1
        return {
            f"p{int(p)}": ordered[min(int(len(ordered) * p / 100), last)]
            for p in percentiles
        }

    def summary(self) -> dict[str, float]:
        return {
            "count": self.count,
            "sum": round(self.sum, 3),
            "min": min(self.values, default=0),
            "max": max(self.values, default=0),
            **self.percentiles(50, 90, 99),
        }


def _labels_key(labels: dict[str, str] | None) -> LabelKey:
    return tuple(sorted((labels or {}).items()))


def _prometheus_name(name: str) -> str:
    return f"proxy_{name.replace('.', '_')}"


def _prometheus_labels(key: LabelKey) -> str:
    if not key:
        return ""
    return "{" + ",".join(f'{k}="{v}"' for k, v in key) + "}"


class MetricsCollector:
    def __init__(self) -> None:
        self._counters: dict[str, dict[LabelKey, Counter]] = defaultdict(
            lambda: defaultdict(Counter)
        )
        self._histograms: dict[str, dict[LabelKey, Histogram]] = defaultdict(
            lambda: defaultdict(Histogram)
        )
        self._lock = asyncio.Lock()

    async def increment_counter(
        self, name: str, labels: dict[str, str] | None = None, value: int = 1
    ):
        async with self._lock:
            self._counters[name][_labels_key(labels)].add(value)

    async def record_histogram(
        self, name: str, value: float, labels: dict[str, str] | None = None
    ):
        async with self._lock:
            self._histograms[name][_labels_key(labels)].record(value)

    async def counter_value(self, name: str, labels: dict[str, str] | None = None) -> int:
        async with self._lock:
            counter = self._counters.get(name, {}).get(_labels_key(labels))
            return counter.value if counter else 0

    async def get_metrics(self) -> dict[str, Any]:
        # label tuples are flattened to "k=v,k=v" so the result is JSON-serializable
        async with self._lock:
            return {
                "counters": {
                    name: {
                        ",".join(f"{k}={v}" for k, v in key): counter.value
                        for key, counter in by_labels.items()
                    }
                    for name, by_labels in self._counters.items()
                },
                "histograms": {
                    name: {
                        ",".join(f"{k}={v}" for k, v in key): hist.summary()
                        for key, hist in by_labels.items()
                    }
                    for name, by_labels in self._histograms.items()
                },
            }

    async def export_prometheus(self) -> str:
        async with self._lock:
            lines = []

            for name, by_labels in self._counters.items():
                metric = _prometheus_name(name)
                for key, counter in by_labels.items():
                    lines.append(f"{metric}{_prometheus_labels(key)} {counter.value}")

            for name, by_labels in self._histograms.items():
                metric = _prometheus_name(name)
                for key, hist in by_labels.items():
                    if not hist.count:
                        continue
                    suffix = _prometheus_labels(key)
                    lines.append(f"{metric}_sum{suffix} {round(hist.sum, 3)}")
                    lines.append(f"{metric}_count{suffix} {hist.count}")
                    for p, v in hist.percentiles(50, 90, 99).items():
                        lines.append(f"{metric}_{p}{suffix} {v}")

            return "\n".join(lines)

    async def reset(self):
        async with self._lock:
            self._counters.clear()
            self._histograms.clear()
