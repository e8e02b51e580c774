"""Causal timestamp propagation between the coordinator and workers.

Every worker holds its own connection to the cluster. A connection that has
not observed a write made through another connection may serve stale reads,
so the highest logical write time seen anywhere is carried as a watermark:

1. The coordinator reads its watermark once before dispatching a job.
2. Each worker advances its connection to that value before touching the
   table, and reports its own watermark after the partition completes.
3. The coordinator folds all reports with ``max`` and advances its own
   connection once, after all partitions have completed.

The watermark is only meaningful for a single cluster.
"""

from __future__ import annotations

import logging
import threading
from typing import Iterable

from tablebridge.protocols import Connection

logger = logging.getLogger(__name__)


def merge_timestamps(a: int, b: int) -> int:
    """Combine two watermarks."""
    return max(a, b)


class TimestampAccumulator:
    """Accumulates the maximum of reported watermarks.

    Example:
        >>> acc = TimestampAccumulator()
        >>> acc.add(7)
        >>> acc.merge(TimestampAccumulator(3))
        >>> acc.value
        7
    """

    def __init__(self, timestamp: int = 0) -> None:
        if timestamp < 0:
            raise ValueError("timestamp must be non-negative")
        self._timestamp = timestamp

    @property
    def value(self) -> int:
        return self._timestamp

    @property
    def is_zero(self) -> bool:
        return self._timestamp == 0

    def add(self, timestamp: int) -> None:
        self._timestamp = merge_timestamps(self._timestamp, timestamp)

    def merge(self, other: "TimestampAccumulator") -> None:
        self._timestamp = merge_timestamps(self._timestamp, other.value)

    def copy(self) -> "TimestampAccumulator":
        return TimestampAccumulator(self._timestamp)

    def reset(self) -> None:
        self._timestamp = 0

    def __repr__(self) -> str:
        return f"TimestampAccumulator({self._timestamp})"


class TimestampPropagator:
    """Coordinator-side owner of the watermark for one connection.

    Args:
        connection: The coordinator's connection. It is advanced only by
            ``reduce``.
    """

    def __init__(self, connection: Connection) -> None:
        self._connection = connection
        self._accumulator = TimestampAccumulator(connection.last_propagated_timestamp)
        self._lock = threading.Lock()

    @property
    def value(self) -> int:
        """The combined watermark."""
        return self._accumulator.value

    def snapshot(self) -> int:
        """Watermark to broadcast to every partition of the next job."""
        with self._lock:
            self._accumulator.add(self._connection.last_propagated_timestamp)
            return self._accumulator.value

    @staticmethod
    def synchronize(connection: Connection, prior_watermark: int) -> None:
        """Advance a worker connection to at least ``prior_watermark``."""
        connection.update_last_propagated_timestamp(prior_watermark)

    @staticmethod
    def observe(connection: Connection) -> int:
        """Read a worker connection's watermark after it wrote."""
        return connection.last_propagated_timestamp

    def reduce(self, reported: Iterable[int]) -> int:
        """Fold reported worker watermarks into the coordinator.

        Returns:
            The combined watermark, which the coordinator connection has
            been advanced to.
        """
        with self._lock:
            for timestamp in reported:
                self._accumulator.add(timestamp)
            combined = self._accumulator.value
            self._connection.update_last_propagated_timestamp(combined)
        logger.debug("Coordinator watermark advanced to %d", combined)
        return combined
