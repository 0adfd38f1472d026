"""In-process counters and latency histograms for the sentinel."""

from __future__ import annotations

import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, MutableMapping, Tuple

LabelKey = Tuple[Tuple[str, str], ...]


@dataclass
class MetricRegistry:
    """Prometheus-style accounting without an exporter."""

    counters: MutableMapping[Tuple[str, LabelKey], float] = field(default_factory=lambda: defaultdict(float))
    histograms: MutableMapping[Tuple[str, LabelKey], list] = field(default_factory=lambda: defaultdict(list))

    def inc(self, name: str, *, labels: Mapping[str, str] | None = None, amount: float = 1.0) -> None:
        self.counters[self._key(name, labels)] += amount

    def observe(self, name: str, value: float, *, labels: Mapping[str, str] | None = None) -> None:
        self.histograms[self._key(name, labels)].append(value)

    def value(self, name: str, *, labels: Mapping[str, str] | None = None) -> float:
        return self.counters.get(self._key(name, labels), 0.0)

    def total(self, name: str) -> float:
        """Sum of a counter across every label combination."""

        return sum(amount for (metric, _), amount in self.counters.items() if metric == name)

    def snapshot(self) -> Dict[str, Any]:
        counters = [
            {"name": name, "labels": dict(labels), "value": amount}
            for (name, labels), amount in sorted(self.counters.items())
        ]
        histograms = [
            {"name": name, "labels": dict(labels), "count": len(values), "sum": sum(values)}
            for (name, labels), values in sorted(self.histograms.items())
        ]
        return {"counters": counters, "histograms": histograms}

    def _key(self, name: str, labels: Mapping[str, str] | None) -> Tuple[str, LabelKey]:
        return name, tuple(sorted((k, str(v)) for k, v in (labels or {}).items()))


class Timer:
    """Record the elapsed time of a block into a histogram."""

    def __init__(self, registry: MetricRegistry, name: str, *, labels: Mapping[str, str] | None = None) -> None:
        self._registry = registry
        self._name = name
        self._labels = labels
        self._start: float | None = None

    def __enter__(self) -> "Timer":
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self._start is None:
            return
        self._registry.observe(self._name, time.perf_counter() - self._start, labels=self._labels)
