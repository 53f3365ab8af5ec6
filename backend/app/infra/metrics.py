"""INF-03 counter facade for consolidation pipeline metrics."""

from __future__ import annotations

import threading
from collections import defaultdict
from dataclasses import dataclass, field
from typing import DefaultDict, Dict

from .logging import get_logger

logger = get_logger(__name__)

FRAGMENTS_ADMITTED = "fragments_admitted_total"
FRAGMENTS_DUPLICATE = "fragments_duplicate_total"
FRAGMENTS_DENIED = "fragments_access_denied_total"
DRAFTS_COMMITTED = "drafts_committed_total"
VALIDATION_REJECTED = "validation_rejected_total"
VALIDATION_RELEASED = "validation_released_total"
CLAIMS_RECOVERED = "claims_recovered_total"
INVARIANT_VIOLATIONS = "pipeline_invariant_violations_total"
PENDING_READY = "pending_entries_ready"


class MetricsClient:  # pragma: no cover - simple helper
    """Basic counter/gauge interface."""

    def increment(self, metric: str, value: int = 1) -> None:
        raise NotImplementedError

    def gauge(self, metric: str, value: int) -> None:
        raise NotImplementedError

    def snapshot(self) -> Dict[str, Dict[str, int]]:
        return {"counters": {}, "gauges": {}}


@dataclass
class InMemoryMetricsClient(MetricsClient):
    """Process-local counters; the health endpoint reports them via ``snapshot``."""

    counters: DefaultDict[str, int] = field(default_factory=lambda: defaultdict(int))
    gauges: DefaultDict[str, int] = field(default_factory=lambda: defaultdict(int))
    _lock: threading.Lock = field(
        default_factory=threading.Lock, repr=False, compare=False
    )

    def increment(self, metric: str, value: int = 1) -> None:
        with self._lock:
            self.counters[metric] += value
        logger.debug("metrics_increment", extra={"metric": metric, "value": value})

    def gauge(self, metric: str, value: int) -> None:
        with self._lock:
            self.gauges[metric] = value
        logger.debug("metrics_gauge", extra={"metric": metric, "value": value})

    def snapshot(self) -> Dict[str, Dict[str, int]]:
        with self._lock:
            return {"counters": dict(self.counters), "gauges": dict(self.gauges)}


_metrics_singleton: InMemoryMetricsClient | None = None


def get_metrics_client() -> MetricsClient:
    """Return the shared metrics client."""

    global _metrics_singleton
    if _metrics_singleton is None:
        _metrics_singleton = InMemoryMetricsClient()
    return _metrics_singleton
