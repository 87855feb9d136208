import threading
from collections import Counter
from dataclasses import dataclass
from typing import Dict, Optional

from pydantic import BaseModel, Field


@dataclass(frozen=True)
class OperationRecord:
    document_id: str
    # Resolving tier name, or "not_found" / "ambiguous" when nothing resolved
    tier: Optional[str]
    elapsed: float
    cache_hit: bool
    outcome: str


class MetricsSummary(BaseModel):
    total_operations: int = 0
    successful_operations: int = 0
    outcomes: Dict[str, int] = Field(default_factory=dict)
    tiers: Dict[str, int] = Field(default_factory=dict)
    cache_hits: int = 0
    cache_misses: int = 0
    mean_latency_seconds: float = 0.0
    max_latency_seconds: float = 0.0


class MetricsCollector:
    """Aggregate, in-process counters. Nothing here is persisted with documents."""

    def __init__(self):
        self._lock = threading.Lock()
        self.reset()

    def reset(self) -> None:
        with self._lock:
            self._outcomes: Counter = Counter()
            self._tiers: Counter = Counter()
            self._hits = 0
            self._misses = 0
            self._total_elapsed = 0.0
            self._max_elapsed = 0.0
            self._count = 0

    def record(self, record: OperationRecord) -> None:
        with self._lock:
            self._count += 1
            self._outcomes[record.outcome] += 1
            self._tiers[record.tier or "not_found"] += 1
            if record.cache_hit:
                self._hits += 1
            else:
                self._misses += 1
            self._total_elapsed += record.elapsed
            self._max_elapsed = max(self._max_elapsed, record.elapsed)

    def summary(self) -> MetricsSummary:
        with self._lock:
            return MetricsSummary(
                total_operations=self._count,
                successful_operations=self._outcomes.get("applied", 0),
                outcomes=dict(self._outcomes),
                tiers=dict(self._tiers),
                cache_hits=self._hits,
                cache_misses=self._misses,
                mean_latency_seconds=self._total_elapsed / self._count if self._count else 0.0,
                max_latency_seconds=self._max_elapsed,
            )
