"""Core value types shared by the write pipeline.

This module defines the closed set of column types and operation kinds, the
table and source schemas, connection identities, write options and the
row-error containers returned by sessions.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Sequence

from tablebridge.errors import ConfigurationError


# =============================================================================
# Enums
# =============================================================================


class ColumnType(str, Enum):
    """Column types supported by the storage system."""

    STRING = "string"
    BINARY = "binary"
    BOOL = "bool"
    INT8 = "int8"
    INT16 = "int16"
    INT32 = "int32"
    INT64 = "int64"
    FLOAT = "float"
    DOUBLE = "double"
    UNIXTIME_MICROS = "unixtime_micros"
    DECIMAL = "decimal"

    @property
    def is_integer(self) -> bool:
        return self in _INTEGER_BITS

    @property
    def bits(self) -> int:
        """Width of a signed integer type."""
        return _INTEGER_BITS[self]


_INTEGER_BITS = {
    ColumnType.INT8: 8,
    ColumnType.INT16: 16,
    ColumnType.INT32: 32,
    ColumnType.INT64: 64,
}


class OperationType(str, Enum):
    """Kinds of mutation that can be applied to a table."""

    INSERT = "insert"
    UPSERT = "upsert"
    UPDATE = "update"
    DELETE = "delete"

    @property
    def metric_name(self) -> str:
        """Name of the counter incremented for this kind."""
        return f"num_{self.value}s"

    @property
    def past_tense(self) -> str:
        return {
            OperationType.INSERT: "inserted",
            OperationType.UPSERT: "upserted",
            OperationType.UPDATE: "updated",
            OperationType.DELETE: "deleted",
        }[self]


class FlushMode(str, Enum):
    """When a session sends buffered operations to the cluster."""

    AUTO_FLUSH_SYNC = "auto_flush_sync"  # Every apply() is sent immediately
    AUTO_FLUSH_BACKGROUND = "auto_flush_background"  # Full buffers flush in background
    MANUAL_FLUSH = "manual_flush"  # Only flush() and close() send


# =============================================================================
# Schemas
# =============================================================================


@dataclass(frozen=True)
class ColumnSchema:
    """Definition of one column of a remote table.

    Attributes:
        name: Column name.
        type: Declared column type.
        is_key: Whether the column is part of the primary key.
        nullable: Whether the column accepts null. Key columns never do.
        precision: Total digits for DECIMAL columns.
        scale: Fractional digits for DECIMAL columns.
    """

    name: str
    type: ColumnType
    is_key: bool = False
    nullable: bool = True
    precision: int | None = None
    scale: int | None = None

    def __post_init__(self) -> None:
        if self.is_key and self.nullable:
            object.__setattr__(self, "nullable", False)
        if self.type is ColumnType.DECIMAL:
            if self.precision is None:
                raise ConfigurationError(
                    f"DECIMAL column '{self.name}' requires a precision"
                )
            if self.scale is None:
                object.__setattr__(self, "scale", 0)


@dataclass(frozen=True)
class TableSchema:
    """Ordered column definitions of a remote table."""

    columns: tuple[ColumnSchema, ...]
    _index: dict[str, int] = field(default_factory=dict, compare=False, repr=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "columns", tuple(self.columns))
        if not any(c.is_key for c in self.columns):
            raise ConfigurationError("A table schema needs at least one key column")
        self._index.update({c.name: i for i, c in enumerate(self.columns)})

    def column_index(self, name: str) -> int:
        """Get the position of a column by name."""
        try:
            return self._index[name]
        except KeyError:
            raise ConfigurationError(f"Unknown column: {name}") from None

    def column(self, name: str) -> ColumnSchema:
        return self.columns[self.column_index(name)]

    @property
    def key_columns(self) -> tuple[ColumnSchema, ...]:
        return tuple(c for c in self.columns if c.is_key)

    @property
    def key_indices(self) -> tuple[int, ...]:
        return tuple(i for i, c in enumerate(self.columns) if c.is_key)

    def __len__(self) -> int:
        return len(self.columns)


@dataclass(frozen=True)
class SourceField:
    """One column of the input rows.

    ``type`` is a ``ColumnType`` when the engine type has a conversion, and
    the engine's own type object otherwise.
    """

    name: str
    type: ColumnType | Any


# =============================================================================
# Identity and Options
# =============================================================================


@dataclass(frozen=True)
class ConnectionIdentity:
    """Key of a cached connection.

    Attributes:
        master_addresses: Addresses of the cluster masters.
        socket_read_timeout_ms: Optional socket read timeout.
    """

    master_addresses: tuple[str, ...]
    socket_read_timeout_ms: int | None = None

    @classmethod
    def of(
        cls,
        master_addresses: str | Sequence[str],
        socket_read_timeout_ms: int | None = None,
    ) -> "ConnectionIdentity":
        """Build an identity from a comma-separated string or a sequence."""
        if isinstance(master_addresses, str):
            master_addresses = master_addresses.split(",")
        addresses = tuple(a.strip() for a in master_addresses if a.strip())
        if not addresses:
            raise ConfigurationError("At least one master address is required")
        return cls(addresses, socket_read_timeout_ms)

    def __str__(self) -> str:
        return ",".join(self.master_addresses)


@dataclass(frozen=True)
class WriteOptions:
    """Options of a single write call.

    Attributes:
        ignore_duplicate_row_errors: Treat inserts of existing keys as no-ops.
        ignore_null: Leave null values unset instead of writing explicit nulls.
    """

    ignore_duplicate_row_errors: bool = False
    ignore_null: bool = False


# =============================================================================
# Row Errors
# =============================================================================


@dataclass(frozen=True)
class RowError:
    """A mutation rejected by the storage system."""

    operation: OperationType
    row: dict[str, Any]
    status: str

    def __str__(self) -> str:
        return f"{self.status} ({self.operation.value} {self.row})"


@dataclass(frozen=True)
class RowErrors:
    """Row errors collected by a session, plus whether any were dropped."""

    errors: tuple[RowError, ...] = ()
    overflowed: bool = False

    def __len__(self) -> int:
        return len(self.errors)

    def __bool__(self) -> bool:
        return bool(self.errors) or self.overflowed

    def statuses(self, limit: int | None = None) -> list[str]:
        errors = self.errors if limit is None else self.errors[:limit]
        return [e.status for e in errors]
