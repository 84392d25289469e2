"""Ship gate metrics for Prometheus.

4 metrics:
1. shipgate_verdicts_total{verdict}                  - Verdicts emitted
2. shipgate_evaluation_duration_seconds              - Full graph run latency
3. shipgate_graph_errors_total{node}                 - Runs halted by an error
4. shipgate_hallucination_candidates_total{type}     - Ghost references found
"""

from __future__ import annotations

import time
from collections.abc import Generator  # noqa: TC003 -- used at runtime by contextmanager
from contextlib import contextmanager

from prometheus_client import CollectorRegistry, Counter, Histogram

# Graph runs include file and store I/O: 10ms to 60s
_LATENCY_BUCKETS = (0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0)


def _histogram(name: str, documentation: str, registry: CollectorRegistry | None) -> Histogram:
    if registry is not None:
        return Histogram(name, documentation, buckets=_LATENCY_BUCKETS, registry=registry)
    return Histogram(name, documentation, buckets=_LATENCY_BUCKETS)


def _counter(name: str, documentation: str, labelnames: list[str], registry: CollectorRegistry | None) -> Counter:
    if registry is not None:
        return Counter(name, documentation, labelnames, registry=registry)
    return Counter(name, documentation, labelnames)


class GateMetrics:
    """Ship gate metric set.

    Pass a custom CollectorRegistry for test isolation; None registers on
    the process-global default registry, so create at most one such
    instance per process.
    """

    def __init__(self, *, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry
        self.verdicts = _counter("shipgate_verdicts", "Ship gate verdicts emitted", ["verdict"], registry)
        self.evaluation_duration = _histogram(
            "shipgate_evaluation_duration_seconds",
            "Time for one ship gate graph run",
            registry,
        )
        self.graph_errors = _counter(
            "shipgate_graph_errors",
            "Ship gate graph runs halted by an error",
            ["node"],
            registry,
        )
        self.hallucination_candidates = _counter(
            "shipgate_hallucination_candidates",
            "Ghost reference candidates reported",
            ["type"],
            registry,
        )

    def record_verdict(self, verdict: str) -> None:
        self.verdicts.labels(verdict=verdict).inc()

    def record_graph_error(self, node: str) -> None:
        self.graph_errors.labels(node=node).inc()

    def record_candidates(self, by_type: dict[str, int]) -> None:
        for kind, count in by_type.items():
            self.hallucination_candidates.labels(type=kind).inc(count)

    @contextmanager
    def timer(self, histogram: Histogram | None = None) -> Generator[None, None, None]:
        """Observe elapsed time on a histogram (evaluation duration by default).

        Duration is always recorded, even if the block raises an exception.
        """
        target = histogram if histogram is not None else self.evaluation_duration
        start = time.monotonic()
        try:
            yield
        finally:
            target.observe(time.monotonic() - start)
