"""Protocols a storage backend implements.

A backend supplies connections; a connection opens tables and sessions and
carries the logical watermark used for causal consistency. The write
pipeline only talks to these protocols.
"""

from __future__ import annotations

from typing import Any, Callable, Protocol, runtime_checkable

from tablebridge.types import (
    ColumnType,
    ConnectionIdentity,
    FlushMode,
    OperationType,
    RowErrors,
    TableSchema,
)


@runtime_checkable
class PartialRow(Protocol):
    """Column slots of one pending mutation."""

    def set_value(self, index: int, column_type: ColumnType, value: Any) -> None:
        """Set a slot; ``column_type`` must match the column's declared type."""
        ...

    def set_null(self, index: int) -> None:
        """Set a slot to an explicit null."""
        ...

    def is_set(self, index: int) -> bool: ...


@runtime_checkable
class Operation(Protocol):
    """A pending insert, upsert, update or delete."""

    @property
    def kind(self) -> OperationType: ...

    @property
    def row(self) -> PartialRow: ...


@runtime_checkable
class Table(Protocol):
    """An opened remote table."""

    @property
    def name(self) -> str: ...

    @property
    def schema(self) -> TableSchema: ...

    def new_operation(self, kind: OperationType) -> Operation: ...


@runtime_checkable
class Session(Protocol):
    """Batches operations for one connection."""

    def set_flush_mode(self, mode: FlushMode) -> None: ...

    def set_mutation_buffer_space(self, size: int) -> None: ...

    def set_ignore_all_duplicate_rows(self, ignore: bool) -> None: ...

    def apply(self, operation: Operation) -> None:
        """Buffer an operation; it may be flushed later in the background."""
        ...

    def flush(self) -> None: ...

    def close(self) -> None:
        """Flush everything still buffered and release the session."""
        ...

    def get_pending_errors(self) -> RowErrors: ...


@runtime_checkable
class Connection(Protocol):
    """A client connection to one storage cluster."""

    @property
    def identity(self) -> ConnectionIdentity: ...

    def open_table(self, name: str) -> Table: ...

    def new_session(self) -> Session: ...

    @property
    def last_propagated_timestamp(self) -> int:
        """Highest logical write time this connection has observed."""
        ...

    def update_last_propagated_timestamp(self, timestamp: int) -> None:
        """Advance the watermark; lower values are ignored."""
        ...

    def export_authentication_credentials(self) -> bytes: ...

    def import_authentication_credentials(self, credentials: bytes) -> None: ...

    def close(self) -> None: ...


ConnectionFactory = Callable[[ConnectionIdentity], Connection]
