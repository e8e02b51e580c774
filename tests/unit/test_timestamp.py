"""Tests for causal timestamp propagation."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from tablebridge.timestamp import TimestampAccumulator, TimestampPropagator, merge_timestamps


class FakeConnection:
    """Connection stub that keeps a monotonic watermark."""

    def __init__(self, timestamp: int = 0) -> None:
        self.last_propagated_timestamp = timestamp
        self.updates: list[int] = []

    def update_last_propagated_timestamp(self, timestamp: int) -> None:
        self.updates.append(timestamp)
        self.last_propagated_timestamp = max(self.last_propagated_timestamp, timestamp)


# =============================================================================
# Accumulator
# =============================================================================


class TestTimestampAccumulator:
    """Tests for TimestampAccumulator."""

    def test_starts_at_zero(self) -> None:
        acc = TimestampAccumulator()
        assert acc.value == 0
        assert acc.is_zero

    def test_add_keeps_maximum(self) -> None:
        acc = TimestampAccumulator()
        for value in (5, 3, 9, 1):
            acc.add(value)
        assert acc.value == 9

    def test_merge(self) -> None:
        acc = TimestampAccumulator(4)
        acc.merge(TimestampAccumulator(10))
        acc.merge(TimestampAccumulator(2))
        assert acc.value == 10

    def test_copy_is_independent(self) -> None:
        acc = TimestampAccumulator(3)
        copy = acc.copy()
        copy.add(8)
        assert acc.value == 3
        assert copy.value == 8

    def test_reset(self) -> None:
        acc = TimestampAccumulator(3)
        acc.reset()
        assert acc.is_zero

    def test_negative_rejected(self) -> None:
        with pytest.raises(ValueError):
            TimestampAccumulator(-1)

    def test_merge_timestamps(self) -> None:
        assert merge_timestamps(3, 7) == merge_timestamps(7, 3) == 7


# =============================================================================
# Propagator
# =============================================================================


class TestTimestampPropagator:
    """Tests for the coordinator-side watermark protocol."""

    def test_snapshot_reads_coordinator(self) -> None:
        propagator = TimestampPropagator(FakeConnection(12))
        assert propagator.snapshot() == 12

    def test_synchronize_never_moves_backwards(self) -> None:
        worker = FakeConnection(50)

        TimestampPropagator.synchronize(worker, 20)
        assert worker.last_propagated_timestamp == 50

        TimestampPropagator.synchronize(worker, 80)
        assert worker.last_propagated_timestamp == 80

    def test_observe(self) -> None:
        assert TimestampPropagator.observe(FakeConnection(33)) == 33

    def test_reduce_takes_maximum_and_updates_once(self) -> None:
        coordinator = FakeConnection(10)
        propagator = TimestampPropagator(coordinator)

        combined = propagator.reduce([15, 40, 22])

        assert combined == 40
        assert coordinator.last_propagated_timestamp == 40
        assert coordinator.updates == [40]

    def test_reduce_is_monotonic(self) -> None:
        coordinator = FakeConnection()
        propagator = TimestampPropagator(coordinator)

        propagator.reduce([30])
        propagator.reduce([5])

        assert propagator.value == 30
        assert coordinator.last_propagated_timestamp == 30

    def test_reduce_with_no_reports(self) -> None:
        coordinator = MagicMock()
        coordinator.last_propagated_timestamp = 7
        propagator = TimestampPropagator(coordinator)

        assert propagator.reduce([]) == 7
        coordinator.update_last_propagated_timestamp.assert_called_once_with(7)
