"""Tests for tablebridge exceptions."""

from __future__ import annotations

import pickle

import pytest

from tablebridge.errors import (
    ConfigurationError,
    RowApplyError,
    StorageConnectionError,
    TableBridgeError,
    WriteFailedError,
)
from tablebridge.executor import PartitionReport


class TestErrors:
    """Tests for messages and pickling of errors."""

    def test_hierarchy(self) -> None:
        for cls in (ConfigurationError, RowApplyError, StorageConnectionError, WriteFailedError):
            assert issubclass(cls, TableBridgeError)

    def test_write_failed_message(self) -> None:
        error = WriteFailedError("users", 3, ["Not found: a", "Not found: b"])
        assert str(error) == (
            "failed to write 3 rows to table 'users'; sample errors: Not found: a; Not found: b"
        )
        assert not error.overflowed

    def test_write_failed_overflow(self) -> None:
        error = WriteFailedError("users", 1000, ["x"], overflowed=True)
        assert "overflowed" in str(error)

    def test_storage_connection_message(self) -> None:
        error = StorageConnectionError(["m1", "m2"], "refused")
        assert str(error) == "Failed to connect to m1,m2: refused"

    @pytest.mark.parametrize(
        "error",
        [
            RowApplyError("Not found", {"id": 1}),
            StorageConnectionError(("m1",), "refused"),
            WriteFailedError("users", 2, ("a", "b"), overflowed=True),
            ConfigurationError("Can't set primary key column 'id' to null"),
        ],
    )
    def test_pickle_keeps_partition_report(self, error: TableBridgeError) -> None:
        error.partition_report = PartitionReport(4, rows_processed=7)

        restored = pickle.loads(pickle.dumps(error))

        assert type(restored) is type(error)
        assert str(restored) == str(error)
        assert restored.partition_report == error.partition_report
