"""In-memory storage backend.

This module provides a complete storage cluster that lives in the current
process. Useful for local development and testing. Data is not persisted.

Tables keep every version of a row stamped with the logical write time of
the batch that produced it, so reads can be served at a snapshot timestamp.
The cluster clock never runs behind the watermark a client propagates with
its writes, which gives the same causal guarantee a real cluster gives.

Example:
    >>> cluster = MemoryCluster.get("warehouse")
    >>> cluster.create_table("users", TableSchema((
    ...     ColumnSchema("id", ColumnType.INT64, is_key=True),
    ...     ColumnSchema("name", ColumnType.STRING),
    ... )))
    >>> connection = create_connection(ConnectionIdentity.of("memory://warehouse"))
    >>> rows = connection.scan("users")
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation, localcontext
from typing import Any, ClassVar

from tablebridge.backends import register_backend
from tablebridge.convert import micros_to_datetime
from tablebridge.errors import (
    ConfigurationError,
    ConversionError,
    RowApplyError,
    StorageConnectionError,
    TableBridgeError,
)
from tablebridge.types import (
    ColumnSchema,
    ColumnType,
    ConnectionIdentity,
    FlushMode,
    OperationType,
    RowError,
    RowErrors,
    TableSchema,
)

logger = logging.getLogger(__name__)

SCHEME = "memory"

# Status strings reported for rejected rows
STATUS_ALREADY_PRESENT = "Already present: key already present"
STATUS_NOT_FOUND = "Not found: key not found"


@dataclass
class MemoryClusterConfig:
    """Configuration for an in-memory cluster.

    Attributes:
        error_buffer_capacity: Row errors a session keeps before it only
            records that it overflowed.
    """

    error_buffer_capacity: int = 1000

    def validate(self) -> None:
        if self.error_buffer_capacity <= 0:
            raise ConfigurationError("error_buffer_capacity must be positive")


# =============================================================================
# Rows and Operations
# =============================================================================


class MemoryPartialRow:
    """Column slots of one operation, by column index."""

    def __init__(self, schema: TableSchema) -> None:
        self._schema = schema
        self._values: dict[int, Any] = {}

    def _column(self, index: int) -> ColumnSchema:
        if not 0 <= index < len(self._schema):
            raise ConfigurationError(f"Column index {index} out of range")
        return self._schema.columns[index]

    def set_value(self, index: int, column_type: ColumnType, value: Any) -> None:
        column = self._column(index)
        if column.type is not column_type:
            raise ConversionError(
                f"Can't set column '{column.name}' of type {column.type.value} "
                f"to a {getattr(column_type, 'value', column_type)} value"
            )
        if column_type is ColumnType.DECIMAL:
            value = _fit_decimal(column, value)
        self._values[index] = value

    def set_null(self, index: int) -> None:
        column = self._column(index)
        if not column.nullable:
            raise ConfigurationError(f"Column '{column.name}' is not nullable")
        self._values[index] = None

    def is_set(self, index: int) -> bool:
        return index in self._values

    @property
    def values(self) -> dict[int, Any]:
        return dict(self._values)

    def to_dict(self) -> dict[str, Any]:
        return {self._schema.columns[i].name: v for i, v in sorted(self._values.items())}


def _fit_decimal(column: ColumnSchema, value: Decimal) -> Decimal:
    """Rescale a decimal to the column's scale without rounding."""
    with localcontext() as ctx:
        ctx.prec = 76
        try:
            fitted = value.quantize(Decimal(1).scaleb(-column.scale))
        except InvalidOperation as e:
            raise ConversionError(f"Invalid decimal {value} for column '{column.name}'") from e
    if fitted != value:
        raise ConversionError(
            f"Decimal {value} needs rounding to fit scale {column.scale} of column '{column.name}'"
        )
    if len(fitted.as_tuple().digits) > column.precision:
        raise ConversionError(
            f"Decimal {value} exceeds precision {column.precision} of column '{column.name}'"
        )
    return fitted


@dataclass
class MemoryOperation:
    """A pending mutation against one table."""

    kind: OperationType
    row: MemoryPartialRow
    table_name: str


class MemoryTable:
    """Handle of a table opened through a connection."""

    def __init__(self, name: str, schema: TableSchema) -> None:
        self._name = name
        self._schema = schema

    @property
    def name(self) -> str:
        return self._name

    @property
    def schema(self) -> TableSchema:
        return self._schema

    def new_operation(self, kind: OperationType) -> MemoryOperation:
        return MemoryOperation(kind, MemoryPartialRow(self._schema), self._name)

    def __repr__(self) -> str:
        return f"MemoryTable({self._name!r})"


# =============================================================================
# Cluster
# =============================================================================


@dataclass
class _TableData:
    """All versions of all rows of one table."""

    schema: TableSchema
    versions: dict[tuple, list[tuple[int, dict[str, Any] | None]]] = field(default_factory=dict)

    def latest(self, key: tuple, snapshot: int | None = None) -> dict[str, Any] | None:
        found = None
        for timestamp, row in self.versions.get(key, ()):
            if snapshot is not None and timestamp > snapshot:
                break
            found = row
        return found

    def put(self, key: tuple, timestamp: int, row: dict[str, Any] | None) -> None:
        self.versions.setdefault(key, []).append((timestamp, row))


class MemoryCluster:
    """A storage cluster living in this process.

    Clusters are registered by name; every connection to
    ``memory://<name>`` reaches the same cluster.
    """

    _clusters: ClassVar[dict[str, "MemoryCluster"]] = {}
    _registry_lock: ClassVar[threading.Lock] = threading.Lock()

    def __init__(self, name: str, config: MemoryClusterConfig | None = None) -> None:
        self.name = name
        self.config = config or MemoryClusterConfig()
        self.config.validate()
        self._tables: dict[str, _TableData] = {}
        self._clock = 0
        self._lock = threading.RLock()

    @classmethod
    def get(cls, name: str, config: MemoryClusterConfig | None = None) -> "MemoryCluster":
        """Get the cluster registered under ``name``, creating it if needed."""
        with cls._registry_lock:
            cluster = cls._clusters.get(name)
            if cluster is None:
                cluster = cls(name, config)
                cls._clusters[name] = cluster
            return cluster

    @classmethod
    def drop_all(cls) -> None:
        """Forget every registered cluster."""
        with cls._registry_lock:
            cls._clusters.clear()

    @property
    def clock(self) -> int:
        """Latest logical write time."""
        with self._lock:
            return self._clock

    def create_table(self, name: str, schema: TableSchema) -> None:
        with self._lock:
            if name in self._tables:
                raise ConfigurationError(f"Table already exists: {name}")
            self._tables[name] = _TableData(schema)

    def delete_table(self, name: str) -> None:
        with self._lock:
            self._data(name)
            del self._tables[name]

    def table_exists(self, name: str) -> bool:
        with self._lock:
            return name in self._tables

    def schema(self, name: str) -> TableSchema:
        with self._lock:
            return self._data(name).schema

    def _data(self, name: str) -> _TableData:
        data = self._tables.get(name)
        if data is None:
            raise ConfigurationError(f"Table not found: {name}")
        return data

    def write(
        self,
        operations: list[MemoryOperation],
        propagated_timestamp: int,
        ignore_duplicates: bool = False,
    ) -> tuple[list[RowError], int]:
        """Apply a batch of operations at one new logical timestamp.

        Returns:
            Rejected rows and the timestamp the batch was applied at.
        """
        errors = []
        with self._lock:
            self._clock = max(self._clock, propagated_timestamp) + 1
            timestamp = self._clock
            for operation in operations:
                try:
                    self._apply(operation, timestamp, ignore_duplicates)
                except RowApplyError as e:
                    errors.append(RowError(operation.kind, operation.row.to_dict(), e.status))
        return errors, timestamp

    def _apply(self, operation: MemoryOperation, timestamp: int, ignore_duplicates: bool) -> None:
        data = self._data(operation.table_name)
        schema = data.schema
        values = operation.row.values

        for index in schema.key_indices:
            if values.get(index) is None:
                raise RowApplyError(
                    f"Invalid argument: No value provided for key column: "
                    f"{schema.columns[index].name}",
                    operation.row.to_dict(),
                )
        key = tuple(values[i] for i in schema.key_indices)
        current = data.latest(key)
        kind = operation.kind

        if kind is OperationType.INSERT or (kind is OperationType.UPSERT and current is None):
            if current is not None:
                if ignore_duplicates:
                    return
                raise RowApplyError(STATUS_ALREADY_PRESENT, operation.row.to_dict())
            row = {}
            for index, column in enumerate(schema.columns):
                if index not in values and not column.nullable:
                    raise RowApplyError(
                        f"Invalid argument: No value provided for required column: {column.name}",
                        operation.row.to_dict(),
                    )
                row[column.name] = values.get(index)
            data.put(key, timestamp, row)
            return

        if current is None:
            raise RowApplyError(STATUS_NOT_FOUND, operation.row.to_dict())

        if kind is OperationType.DELETE:
            data.put(key, timestamp, None)
            return

        row = dict(current)
        for index, value in values.items():
            row[schema.columns[index].name] = value
        data.put(key, timestamp, row)

    def scan(self, table_name: str, snapshot_timestamp: int | None = None) -> list[dict[str, Any]]:
        """Read all live rows, optionally as of a logical timestamp."""
        with self._lock:
            data = self._data(table_name)
            rows = [data.latest(key, snapshot_timestamp) for key in sorted(data.versions)]
            schema = data.schema
        timestamp_columns = [c.name for c in schema.columns if c.type is ColumnType.UNIXTIME_MICROS]
        result = []
        for row in rows:
            if row is None:
                continue
            row = dict(row)
            for name in timestamp_columns:
                if row[name] is not None:
                    row[name] = micros_to_datetime(row[name])
            result.append(row)
        return result


# =============================================================================
# Session
# =============================================================================


class MemorySession:
    """Batches operations and sends them to the cluster.

    In ``AUTO_FLUSH_BACKGROUND`` mode a full buffer is handed to a single
    background thread, so batches reach the cluster in the order they were
    applied. ``close()`` waits for every batch still in flight.
    """

    def __init__(self, connection: "MemoryConnection", error_buffer_capacity: int) -> None:
        self._connection = connection
        self._error_capacity = error_buffer_capacity
        self._flush_mode = FlushMode.AUTO_FLUSH_SYNC
        self._buffer_space = 1000
        self._ignore_duplicates = False
        self._buffer: list[MemoryOperation] = []
        self._in_flight: list[Future] = []
        self._flusher: ThreadPoolExecutor | None = None
        self._errors: list[RowError] = []
        self._overflowed = False
        self._closed = False
        self._lock = threading.Lock()

    @property
    def flush_mode(self) -> FlushMode:
        return self._flush_mode

    @property
    def is_closed(self) -> bool:
        return self._closed

    def set_flush_mode(self, mode: FlushMode) -> None:
        if self._buffer:
            raise TableBridgeError("Cannot change flush mode with buffered operations")
        self._flush_mode = mode

    def set_mutation_buffer_space(self, size: int) -> None:
        if size <= 0:
            raise ConfigurationError("mutation buffer space must be positive")
        self._buffer_space = size

    def set_ignore_all_duplicate_rows(self, ignore: bool) -> None:
        self._ignore_duplicates = ignore

    def apply(self, operation: MemoryOperation) -> None:
        if self._closed:
            raise TableBridgeError("Session is closed")

        if self._flush_mode is FlushMode.AUTO_FLUSH_SYNC:
            self._send([operation])
            return

        with self._lock:
            if self._flush_mode is FlushMode.MANUAL_FLUSH and len(self._buffer) >= self._buffer_space:
                raise TableBridgeError("MANUAL_FLUSH is enabled but the buffer is too big")
            self._buffer.append(operation)
            if self._flush_mode is FlushMode.AUTO_FLUSH_BACKGROUND and len(self._buffer) >= self._buffer_space:
                self._submit(self._take_buffer())

    def _take_buffer(self) -> list[MemoryOperation]:
        batch = self._buffer
        self._buffer = []
        return batch

    def _submit(self, batch: list[MemoryOperation]) -> None:
        if self._flusher is None:
            self._flusher = ThreadPoolExecutor(max_workers=1, thread_name_prefix="memory-session-flush")
        self._in_flight.append(self._flusher.submit(self._send, batch))

    def _send(self, batch: list[MemoryOperation]) -> None:
        if not batch:
            return
        connection = self._connection
        errors, timestamp = connection.cluster.write(
            batch, connection.last_propagated_timestamp, self._ignore_duplicates
        )
        connection.update_last_propagated_timestamp(timestamp)
        if errors:
            self._record_errors(errors)

    def _record_errors(self, errors: list[RowError]) -> None:
        with self._lock:
            room = self._error_capacity - len(self._errors)
            self._errors.extend(errors[:max(room, 0)])
            if len(errors) > room:
                self._overflowed = True

    def flush(self) -> None:
        """Send everything buffered and wait for batches in flight."""
        with self._lock:
            batch = self._take_buffer()
            if self._flusher is not None:
                self._submit(batch)
                batch = []
            pending, self._in_flight = self._in_flight, []
        self._send(batch)
        for future in pending:
            future.result()

    def close(self) -> None:
        if self._closed:
            return
        try:
            self.flush()
        finally:
            self._closed = True
            if self._flusher is not None:
                self._flusher.shutdown(wait=True)
            self._connection._forget_session(self)

    def get_pending_errors(self) -> RowErrors:
        """Return and clear the collected row errors."""
        with self._lock:
            pending = RowErrors(tuple(self._errors), self._overflowed)
            self._errors = []
            self._overflowed = False
        return pending

    def count_pending_errors(self) -> int:
        with self._lock:
            return len(self._errors)


# =============================================================================
# Connection
# =============================================================================


class MemoryConnection:
    """A client connection to an in-memory cluster."""

    def __init__(self, identity: ConnectionIdentity, cluster: MemoryCluster) -> None:
        self._identity = identity
        self.cluster = cluster
        self._last_propagated = 0
        self._credentials: bytes | None = None
        self._sessions: list[MemorySession] = []
        self._closed = False
        self._lock = threading.Lock()

    @property
    def identity(self) -> ConnectionIdentity:
        return self._identity

    @property
    def socket_read_timeout_ms(self) -> int | None:
        return self._identity.socket_read_timeout_ms

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def credentials(self) -> bytes | None:
        return self._credentials

    def _check_open(self) -> None:
        if self._closed:
            raise StorageConnectionError(self._identity.master_addresses, "connection is closed")

    def open_table(self, name: str) -> MemoryTable:
        self._check_open()
        return MemoryTable(name, self.cluster.schema(name))

    def new_session(self) -> MemorySession:
        self._check_open()
        session = MemorySession(self, self.cluster.config.error_buffer_capacity)
        with self._lock:
            self._sessions.append(session)
        return session

    def _forget_session(self, session: MemorySession) -> None:
        with self._lock:
            if session in self._sessions:
                self._sessions.remove(session)

    @property
    def last_propagated_timestamp(self) -> int:
        with self._lock:
            return self._last_propagated

    def update_last_propagated_timestamp(self, timestamp: int) -> None:
        with self._lock:
            if timestamp > self._last_propagated:
                self._last_propagated = timestamp

    def export_authentication_credentials(self) -> bytes:
        self._check_open()
        return f"{SCHEME}:{self.cluster.name}".encode("utf-8")

    def import_authentication_credentials(self, credentials: bytes) -> None:
        if not credentials.startswith(f"{SCHEME}:".encode("utf-8")):
            raise StorageConnectionError(
                self._identity.master_addresses, "credentials were not issued by a memory cluster"
            )
        self._credentials = credentials

    # DDL and reads, used by callers that own the cluster

    def create_table(self, name: str, schema: TableSchema) -> MemoryTable:
        self._check_open()
        self.cluster.create_table(name, schema)
        return self.open_table(name)

    def delete_table(self, name: str) -> None:
        self._check_open()
        self.cluster.delete_table(name)

    def table_exists(self, name: str) -> bool:
        return self.cluster.table_exists(name)

    def scan(self, table_name: str, snapshot_timestamp: int | None = None) -> list[dict[str, Any]]:
        self._check_open()
        return self.cluster.scan(table_name, snapshot_timestamp)

    def close(self) -> None:
        """Close open sessions, flushing what they still buffer."""
        if self._closed:
            return
        with self._lock:
            sessions = list(self._sessions)
        for session in sessions:
            session.close()
        self._closed = True
        logger.debug("Closed connection to %s", self._identity)


def _cluster_name(address: str) -> str:
    name = address.split("://", 1)[-1].strip("/")
    if not name:
        raise ConfigurationError(f"Missing cluster name in address {address!r}")
    return name


@register_backend(SCHEME)
def connect(identity: ConnectionIdentity) -> MemoryConnection:
    """Connection factory for ``memory://<cluster>`` addresses."""
    names = {_cluster_name(a) for a in identity.master_addresses}
    if len(names) != 1:
        raise StorageConnectionError(
            identity.master_addresses, "all masters must name the same memory cluster"
        )
    return MemoryConnection(identity, MemoryCluster.get(names.pop()))
