"""Tests for the in-memory storage backend."""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from tablebridge.backends.memory import (
    STATUS_ALREADY_PRESENT,
    STATUS_NOT_FOUND,
    MemoryCluster,
    MemoryClusterConfig,
    MemoryConnection,
    MemoryTable,
    connect,
)
from tablebridge.errors import ConfigurationError, ConversionError, StorageConnectionError, TableBridgeError
from tablebridge.types import (
    ColumnSchema,
    ColumnType,
    ConnectionIdentity,
    FlushMode,
    OperationType,
    TableSchema,
)


@pytest.fixture
def connection(cluster: MemoryCluster) -> MemoryConnection:
    return connect(ConnectionIdentity.of("memory://test-cluster"))


def apply(connection: MemoryConnection, table: str, kind: OperationType, **values) -> None:
    handle = connection.open_table(table)
    operation = handle.new_operation(kind)
    for name, value in values.items():
        index = handle.schema.column_index(name)
        if value is None:
            operation.row.set_null(index)
        else:
            operation.row.set_value(index, handle.schema.columns[index].type, value)
    session = connection.new_session()
    session.apply(operation)
    session.close()
    errors = session.get_pending_errors()
    if errors:
        raise TableBridgeError(errors.statuses())


# =============================================================================
# Schema
# =============================================================================


class TestTableSchema:
    """Tests for table schemas."""

    def test_requires_a_key(self) -> None:
        with pytest.raises(ConfigurationError, match="key column"):
            TableSchema((ColumnSchema("a", ColumnType.STRING),))

    def test_key_columns_are_not_nullable(self) -> None:
        assert ColumnSchema("id", ColumnType.INT64, is_key=True).nullable is False

    def test_decimal_requires_precision(self) -> None:
        with pytest.raises(ConfigurationError, match="precision"):
            ColumnSchema("d", ColumnType.DECIMAL)

    def test_unknown_column(self, users_schema: TableSchema) -> None:
        with pytest.raises(ConfigurationError, match="Unknown column: nope"):
            users_schema.column_index("nope")


# =============================================================================
# Cluster
# =============================================================================


class TestMemoryCluster:
    """Tests for the cluster's row semantics."""

    def test_insert_and_scan(self, connection: MemoryConnection, users_table: str) -> None:
        apply(connection, users_table, OperationType.INSERT, id=1, name="ann", age=30)

        assert connection.scan(users_table) == [
            {"id": 1, "name": "ann", "age": 30, "status": None}
        ]

    def test_duplicate_insert(self, connection: MemoryConnection, users_table: str) -> None:
        apply(connection, users_table, OperationType.INSERT, id=1, name="ann")

        with pytest.raises(TableBridgeError, match="Already present"):
            apply(connection, users_table, OperationType.INSERT, id=1, name="bob")

    def test_upsert_inserts_then_merges(self, connection: MemoryConnection, users_table: str) -> None:
        apply(connection, users_table, OperationType.UPSERT, id=1, name="ann", age=30)
        apply(connection, users_table, OperationType.UPSERT, id=1, name="ann", status="active")

        assert connection.scan(users_table)[0] == {
            "id": 1,
            "name": "ann",
            "age": 30,
            "status": "active",
        }

    def test_update_missing_row(self, connection: MemoryConnection, users_table: str) -> None:
        with pytest.raises(TableBridgeError, match="Not found"):
            apply(connection, users_table, OperationType.UPDATE, id=9, age=1)

    def test_insert_requires_non_nullable_columns(
        self, connection: MemoryConnection, users_table: str
    ) -> None:
        with pytest.raises(TableBridgeError, match="required column: name"):
            apply(connection, users_table, OperationType.INSERT, id=1)

    def test_delete_and_snapshot_read(self, connection: MemoryConnection, users_table: str) -> None:
        apply(connection, users_table, OperationType.INSERT, id=1, name="ann")
        before_delete = connection.last_propagated_timestamp
        apply(connection, users_table, OperationType.DELETE, id=1)

        assert connection.scan(users_table) == []
        assert connection.scan(users_table, snapshot_timestamp=before_delete)[0]["name"] == "ann"

    def test_clock_follows_propagated_timestamp(self, cluster: MemoryCluster, users_table: str) -> None:
        operation = MemoryTable(users_table, cluster.schema(users_table)).new_operation(OperationType.INSERT)
        operation.row.set_value(0, ColumnType.INT64, 1)
        operation.row.set_value(1, ColumnType.STRING, "ann")

        errors, timestamp = cluster.write([operation], propagated_timestamp=500)

        assert errors == []
        assert timestamp == 501
        assert cluster.clock == 501

    def test_timestamps_scan_as_datetimes(self, cluster: MemoryCluster, connection: MemoryConnection) -> None:
        cluster.create_table("events", TableSchema((
            ColumnSchema("id", ColumnType.INT32, is_key=True),
            ColumnSchema("at", ColumnType.UNIXTIME_MICROS),
        )))
        apply(connection, "events", OperationType.INSERT, id=1, at=1_000_000)

        assert connection.scan("events")[0]["at"] == datetime(1970, 1, 1, 0, 0, 1, tzinfo=timezone.utc)

    def test_duplicate_table(self, cluster: MemoryCluster, users_table: str, users_schema: TableSchema) -> None:
        with pytest.raises(ConfigurationError, match="already exists"):
            cluster.create_table(users_table, users_schema)

    def test_registry_shares_clusters(self) -> None:
        assert MemoryCluster.get("a") is MemoryCluster.get("a")
        assert MemoryCluster.get("a") is not MemoryCluster.get("b")

    def test_invalid_config(self) -> None:
        with pytest.raises(ConfigurationError):
            MemoryCluster("bad", MemoryClusterConfig(error_buffer_capacity=0))


# =============================================================================
# Rows
# =============================================================================


class TestMemoryPartialRow:
    """Tests for column slot validation."""

    @pytest.fixture
    def decimal_table(self, cluster: MemoryCluster, connection: MemoryConnection):
        cluster.create_table("prices", TableSchema((
            ColumnSchema("id", ColumnType.INT32, is_key=True),
            ColumnSchema("price", ColumnType.DECIMAL, precision=5, scale=2),
        )))
        return connection.open_table("prices")

    def test_type_mismatch(self, connection: MemoryConnection, users_table: str) -> None:
        row = connection.open_table(users_table).new_operation(OperationType.INSERT).row
        with pytest.raises(ConversionError, match="column 'age' of type int32"):
            row.set_value(2, ColumnType.INT64, 5)

    def test_null_in_non_nullable_column(self, connection: MemoryConnection, users_table: str) -> None:
        row = connection.open_table(users_table).new_operation(OperationType.INSERT).row
        with pytest.raises(ConfigurationError, match="not nullable"):
            row.set_null(0)

    def test_decimal_rescaled(self, decimal_table) -> None:
        row = decimal_table.new_operation(OperationType.INSERT).row
        row.set_value(1, ColumnType.DECIMAL, Decimal("1.5"))
        assert row.values[1] == Decimal("1.50")

    def test_decimal_needs_rounding(self, decimal_table) -> None:
        row = decimal_table.new_operation(OperationType.INSERT).row
        with pytest.raises(ConversionError, match="rounding"):
            row.set_value(1, ColumnType.DECIMAL, Decimal("1.555"))

    def test_decimal_exceeds_precision(self, decimal_table) -> None:
        row = decimal_table.new_operation(OperationType.INSERT).row
        with pytest.raises(ConversionError, match="precision"):
            row.set_value(1, ColumnType.DECIMAL, Decimal("1234.5"))


# =============================================================================
# Sessions
# =============================================================================


class TestMemorySession:
    """Tests for session flushing and error collection."""

    def _insert(self, connection: MemoryConnection, table: str, key: int):
        handle = connection.open_table(table)
        operation = handle.new_operation(OperationType.INSERT)
        operation.row.set_value(0, ColumnType.INT64, key)
        operation.row.set_value(1, ColumnType.STRING, f"user-{key}")
        return operation

    def test_background_flush_on_close(self, connection: MemoryConnection, users_table: str) -> None:
        session = connection.new_session()
        session.set_flush_mode(FlushMode.AUTO_FLUSH_BACKGROUND)
        session.set_mutation_buffer_space(3)

        for key in range(10):
            session.apply(self._insert(connection, users_table, key))
        session.close()

        assert len(connection.scan(users_table)) == 10
        assert session.is_closed

    def test_manual_flush_buffer_limit(self, connection: MemoryConnection, users_table: str) -> None:
        session = connection.new_session()
        session.set_flush_mode(FlushMode.MANUAL_FLUSH)
        session.set_mutation_buffer_space(1)
        session.apply(self._insert(connection, users_table, 1))

        with pytest.raises(TableBridgeError, match="buffer is too big"):
            session.apply(self._insert(connection, users_table, 2))

        assert connection.scan(users_table) == []
        session.flush()
        assert len(connection.scan(users_table)) == 1

    def test_errors_are_collected(self, connection: MemoryConnection, users_table: str) -> None:
        session = connection.new_session()
        session.apply(self._insert(connection, users_table, 1))
        session.apply(self._insert(connection, users_table, 1))
        session.close()

        errors = session.get_pending_errors()
        assert errors.statuses() == [STATUS_ALREADY_PRESENT]
        assert errors.errors[0].row == {"id": 1, "name": "user-1"}
        assert not session.get_pending_errors()

    def test_ignore_duplicates(self, connection: MemoryConnection, users_table: str) -> None:
        session = connection.new_session()
        session.set_ignore_all_duplicate_rows(True)
        session.apply(self._insert(connection, users_table, 1))
        session.apply(self._insert(connection, users_table, 1))
        session.close()

        assert not session.get_pending_errors()

    def test_error_collector_overflow(self, users_schema: TableSchema) -> None:
        cluster = MemoryCluster("small", MemoryClusterConfig(error_buffer_capacity=2))
        cluster.create_table("users", users_schema)
        connection = MemoryConnection(ConnectionIdentity.of("memory://small"), cluster)

        session = connection.new_session()
        for key in range(5):
            operation = connection.open_table("users").new_operation(OperationType.DELETE)
            operation.row.set_value(0, ColumnType.INT64, key)
            session.apply(operation)
        session.close()

        errors = session.get_pending_errors()
        assert len(errors) == 2
        assert errors.overflowed
        assert errors.statuses() == [STATUS_NOT_FOUND, STATUS_NOT_FOUND]

    def test_apply_after_close(self, connection: MemoryConnection, users_table: str) -> None:
        session = connection.new_session()
        session.close()
        session.close()

        with pytest.raises(TableBridgeError, match="closed"):
            session.apply(self._insert(connection, users_table, 1))


# =============================================================================
# Connection
# =============================================================================


class TestMemoryConnection:
    """Tests for watermarks, credentials and lifecycle."""

    def test_watermark_is_monotonic(self, connection: MemoryConnection) -> None:
        connection.update_last_propagated_timestamp(10)
        connection.update_last_propagated_timestamp(4)
        assert connection.last_propagated_timestamp == 10

    def test_writes_advance_watermark(self, connection: MemoryConnection, users_table: str) -> None:
        apply(connection, users_table, OperationType.INSERT, id=1, name="ann")
        assert connection.last_propagated_timestamp == connection.cluster.clock > 0

    def test_credentials_round_trip(self, connection: MemoryConnection) -> None:
        token = connection.export_authentication_credentials()
        other = connect(ConnectionIdentity.of("memory://test-cluster", 100))

        other.import_authentication_credentials(token)

        assert other.credentials == token

    def test_foreign_credentials(self, connection: MemoryConnection) -> None:
        with pytest.raises(StorageConnectionError, match="credentials"):
            connection.import_authentication_credentials(b"kerberos:ticket")

    def test_closed_connection(self, connection: MemoryConnection, users_table: str) -> None:
        connection.close()
        with pytest.raises(StorageConnectionError, match="connection is closed"):
            connection.open_table(users_table)

    def test_masters_must_name_one_cluster(self) -> None:
        with pytest.raises(StorageConnectionError, match="same memory cluster"):
            connect(ConnectionIdentity.of("memory://a,memory://b"))
