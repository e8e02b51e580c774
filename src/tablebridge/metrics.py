"""Write metrics collected by workers and merged on the coordinator.

Workers record into a fresh ``WriteMetrics`` per partition and return it in
their report; the coordinator merges reports into its running totals. Both
counters and the duration histogram merge associatively and commutatively,
so the order in which partitions complete does not matter.
"""

from __future__ import annotations

import math
from collections import Counter
from dataclasses import dataclass, field
from typing import Any

from tablebridge.types import OperationType

# Percentiles reported by DurationHistogram.summary()
SUMMARY_PERCENTILES = (50.0, 90.0, 99.0)


def _bucket(value: int, significant_digits: int) -> int:
    """Round a value down to ``significant_digits`` significant digits."""
    if value < 10 ** significant_digits:
        return value
    magnitude = 10 ** (int(math.log10(value)) + 1 - significant_digits)
    return (value // magnitude) * magnitude


@dataclass
class DurationHistogram:
    """Histogram of partition write durations in milliseconds.

    Values are bucketed to a fixed number of significant digits, so memory
    stays bounded while percentiles stay within about 1% of the true value.
    Count, sum, min and max are exact.

    Attributes:
        significant_digits: Precision of the buckets.
        buckets: Bucket lower bound -> number of samples.
    """

    significant_digits: int = 2
    buckets: Counter = field(default_factory=Counter)
    count: int = 0
    total: int = 0
    min: int | None = None
    max: int | None = None

    def record(self, value_ms: int | float) -> None:
        """Record one duration sample."""
        value = max(0, int(value_ms))
        self.buckets[_bucket(value, self.significant_digits)] += 1
        self.count += 1
        self.total += value
        self.min = value if self.min is None else min(self.min, value)
        self.max = value if self.max is None else max(self.max, value)

    def merge(self, other: "DurationHistogram") -> "DurationHistogram":
        """Combine two histograms into a new one."""
        if other.significant_digits != self.significant_digits:
            raise ValueError("Cannot merge histograms with different precision")
        mins = [v for v in (self.min, other.min) if v is not None]
        maxs = [v for v in (self.max, other.max) if v is not None]
        return DurationHistogram(
            significant_digits=self.significant_digits,
            buckets=self.buckets + other.buckets,
            count=self.count + other.count,
            total=self.total + other.total,
            min=min(mins) if mins else None,
            max=max(maxs) if maxs else None,
        )

    @property
    def mean(self) -> float:
        if self.count == 0:
            return 0.0
        return self.total / self.count

    def percentile(self, percent: float) -> int:
        """Get the bucket holding the given percentile (0-100)."""
        if not 0 <= percent <= 100:
            raise ValueError("percent must be between 0 and 100")
        if self.count == 0:
            return 0
        rank = max(1, math.ceil(self.count * percent / 100))
        seen = 0
        for bucket in sorted(self.buckets):
            seen += self.buckets[bucket]
            if seen >= rank:
                return min(bucket, self.max)
        return self.max

    def summary(self) -> dict[str, Any]:
        summary: dict[str, Any] = {
            "count": self.count,
            "min": self.min or 0,
            "max": self.max or 0,
            "mean": round(self.mean, 3),
        }
        for p in SUMMARY_PERCENTILES:
            summary[f"p{p:g}"] = self.percentile(p)
        return summary

    def __str__(self) -> str:
        return ", ".join(f"{k}={v}" for k, v in self.summary().items())


@dataclass
class WriteMetrics:
    """Mutation counters per operation kind and the duration histogram."""

    counts: Counter = field(default_factory=Counter)
    durations: DurationHistogram = field(default_factory=DurationHistogram)

    def record(self, operation: OperationType, rows: int, elapsed_ms: int | float) -> None:
        """Record one partition execution."""
        self.counts[operation] += rows
        self.durations.record(elapsed_ms)

    def merge(self, other: "WriteMetrics") -> "WriteMetrics":
        merged = Counter(self.counts)
        merged.update(other.counts)
        return WriteMetrics(counts=merged, durations=self.durations.merge(other.durations))

    def count(self, operation: OperationType) -> int:
        return self.counts.get(operation, 0)

    @property
    def num_inserts(self) -> int:
        return self.count(OperationType.INSERT)

    @property
    def num_upserts(self) -> int:
        return self.count(OperationType.UPSERT)

    @property
    def num_updates(self) -> int:
        return self.count(OperationType.UPDATE)

    @property
    def num_deletes(self) -> int:
        return self.count(OperationType.DELETE)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        result: dict[str, Any] = {op.metric_name: self.count(op) for op in OperationType}
        result["write_duration_ms"] = self.durations.summary()
        return result
