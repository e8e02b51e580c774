"""Exceptions raised by the write pipeline.

Fatal errors (``ConfigurationError``, ``ConversionError``) abort the
partition that raised them. Per-row rejections from the storage system are
collected by the session as ``RowError`` values and surface on the
coordinator as a single ``WriteFailedError``.
"""

from __future__ import annotations

from typing import Sequence


# =============================================================================
# Exceptions
# =============================================================================


class TableBridgeError(Exception):
    """Base exception for all tablebridge errors."""

    pass


class ConfigurationError(TableBridgeError):
    """Raised when rows, columns or settings cannot describe a valid write.

    Examples are a null primary key value or a column that does not exist in
    the target table.
    """

    pass


class ConversionError(TableBridgeError):
    """Raised when a value cannot be copied into a column slot."""

    pass


class RowApplyError(TableBridgeError):
    """A single mutation rejected by the storage system.

    Row apply errors are accumulated by a session, never raised by the
    executors.
    """

    def __init__(self, status: str, row: dict | None = None) -> None:
        self.status = status
        self.row = row
        super().__init__(status)

    def __reduce__(self):
        return (type(self), (self.status, self.row), self.__dict__)


class StorageConnectionError(TableBridgeError):
    """Raised when a connection to the storage cluster cannot be built."""

    def __init__(self, addresses: Sequence[str], message: str) -> None:
        self.addresses = tuple(addresses)
        self.message = message
        super().__init__(f"Failed to connect to {','.join(self.addresses)}: {message}")

    def __reduce__(self):
        return (type(self), (self.addresses, self.message), self.__dict__)


class WriteFailedError(TableBridgeError):
    """Raised on the coordinator when mutations were rejected.

    Mutations that were accepted before or after the rejected ones remain
    applied.

    Attributes:
        table_name: Target table.
        failure_count: Number of rejected rows across all partitions.
        samples: Up to five status strings of rejected rows.
        overflowed: True if a session dropped errors beyond its capacity.
    """

    def __init__(
        self,
        table_name: str,
        failure_count: int,
        samples: Sequence[str],
        overflowed: bool = False,
    ) -> None:
        self.table_name = table_name
        self.failure_count = failure_count
        self.samples = tuple(samples)
        self.overflowed = overflowed
        message = (
            f"failed to write {failure_count} rows to table '{table_name}'; "
            f"sample errors: {'; '.join(self.samples)}"
        )
        if overflowed:
            message += " (error buffer overflowed, count is a lower bound)"
        super().__init__(message)

    def __reduce__(self):
        return (
            type(self),
            (self.table_name, self.failure_count, self.samples, self.overflowed),
            self.__dict__,
        )
