"""Column value conversion.

Copies typed source values into mutation column slots. Each ``ColumnType``
has exactly one converter; values are checked for an exact representation
and never narrowed or widened. Nulls are the caller's concern.

Example:
    >>> operation = table.new_operation(OperationType.INSERT)
    >>> set_column(operation.row, 0, ColumnType.INT32, 42)
    >>> set_column(operation.row, 1, ColumnType.STRING, "answer")
"""

from __future__ import annotations

import math
import struct
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable

from tablebridge.errors import ConversionError
from tablebridge.protocols import PartialRow
from tablebridge.types import ColumnSchema, ColumnType

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_ONE_MICROSECOND = timedelta(microseconds=1)

# Literal timestamps, e.g. "2024-01-31 12:30:00" or "2024-01-31 12:30:00.250000"
TIMESTAMP_LITERAL_FORMATS = ("%Y-%m-%d %H:%M:%S.%f", "%Y-%m-%d %H:%M:%S")


# =============================================================================
# Per-type converters
# =============================================================================


def _reject(column_type: ColumnType, value: Any) -> ConversionError:
    return ConversionError(
        f"Can't convert {type(value).__name__} value {value!r} to {column_type.value}"
    )


def _to_string(column_type: ColumnType, value: Any) -> str:
    if not isinstance(value, str):
        raise _reject(column_type, value)
    return value


def _to_binary(column_type: ColumnType, value: Any) -> bytes:
    if not isinstance(value, (bytes, bytearray, memoryview)):
        raise _reject(column_type, value)
    return bytes(value)


def _to_bool(column_type: ColumnType, value: Any) -> bool:
    if not isinstance(value, bool):
        raise _reject(column_type, value)
    return value


def _to_integer(column_type: ColumnType, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise _reject(column_type, value)
    limit = 1 << (column_type.bits - 1)
    if not -limit <= value < limit:
        raise ConversionError(f"Value {value} out of range for {column_type.value}")
    return value


def _to_floating(column_type: ColumnType, value: Any) -> float:
    if not isinstance(value, float):
        raise _reject(column_type, value)
    if column_type is ColumnType.FLOAT:
        try:
            struct.pack("f", value)
        except OverflowError:
            raise ConversionError(f"Value {value} out of range for {column_type.value}") from None
    return value


def _to_micros(column_type: ColumnType, value: Any) -> int:
    if not isinstance(value, datetime):
        raise _reject(column_type, value)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return (value - EPOCH) // _ONE_MICROSECOND


def _to_decimal(column_type: ColumnType, value: Any) -> Decimal:
    if not isinstance(value, Decimal) or not value.is_finite():
        raise _reject(column_type, value)
    return value


_CONVERTERS: dict[ColumnType, Callable[[ColumnType, Any], Any]] = {
    ColumnType.STRING: _to_string,
    ColumnType.BINARY: _to_binary,
    ColumnType.BOOL: _to_bool,
    ColumnType.INT8: _to_integer,
    ColumnType.INT16: _to_integer,
    ColumnType.INT32: _to_integer,
    ColumnType.INT64: _to_integer,
    ColumnType.FLOAT: _to_floating,
    ColumnType.DOUBLE: _to_floating,
    ColumnType.UNIXTIME_MICROS: _to_micros,
    ColumnType.DECIMAL: _to_decimal,
}


def supported_types() -> frozenset[ColumnType]:
    """Column types with a converter."""
    return frozenset(_CONVERTERS)


def convert_value(column_type: Any, value: Any) -> Any:
    """Convert a non-null source value to its wire representation.

    Args:
        column_type: Declared source type of the value.
        value: The value, never None.

    Returns:
        The value as stored in a column slot (timestamps become microseconds
        since the epoch).

    Raises:
        ConversionError: If the type is unsupported or the value does not
            have an exact representation in it.
    """
    converter = _CONVERTERS.get(column_type) if isinstance(column_type, ColumnType) else None
    if converter is None:
        raise ConversionError(f"No support for type {column_type}")
    return converter(column_type, value)


def set_column(row: PartialRow, index: int, column_type: Any, value: Any) -> None:
    """Convert ``value`` and copy it into slot ``index`` of ``row``."""
    row.set_value(index, column_type, convert_value(column_type, value))


def micros_to_datetime(micros: int) -> datetime:
    """Turn a stored timestamp back into an aware UTC datetime."""
    return EPOCH + timedelta(microseconds=micros)


# =============================================================================
# Literal parsing
# =============================================================================


def _parse_bool(text: str) -> bool:
    lowered = text.strip().lower()
    if lowered == "true":
        return True
    if lowered == "false":
        return False
    raise ValueError(f"not a boolean: {text!r}")


def _parse_float(text: str) -> float:
    value = float(text)
    if math.isnan(value):
        raise ValueError("NaN is not a valid literal")
    return value


def _parse_float32(text: str) -> float:
    value = _parse_float(text)
    try:
        return struct.unpack("f", struct.pack("f", value))[0]
    except OverflowError:
        raise ValueError(f"{text!r} is out of range for a 32-bit float") from None


def _parse_decimal(text: str) -> Decimal:
    # Decimal literals follow floating point parsing rules
    return Decimal(repr(_parse_float(text)))


def _parse_timestamp(text: str) -> datetime:
    for fmt in TIMESTAMP_LITERAL_FORMATS:
        try:
            return datetime.strptime(text.strip(), fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    raise ValueError(f"expected 'YYYY-MM-DD HH:MM:SS[.ffffff]', got {text!r}")


_LITERAL_PARSERS: dict[ColumnType, Callable[[str], Any]] = {
    ColumnType.STRING: str,
    ColumnType.BINARY: lambda text: text.encode("utf-8"),
    ColumnType.BOOL: _parse_bool,
    ColumnType.INT8: int,
    ColumnType.INT16: int,
    ColumnType.INT32: int,
    ColumnType.INT64: int,
    ColumnType.FLOAT: _parse_float32,
    ColumnType.DOUBLE: _parse_float,
    ColumnType.UNIXTIME_MICROS: _parse_timestamp,
    ColumnType.DECIMAL: _parse_decimal,
}


def parse_literal(column: ColumnSchema, text: str) -> Any:
    """Parse a string literal according to the column's declared type.

    The result is a typed value accepted by ``set_column`` for the same
    column type.

    Raises:
        ConversionError: If the literal does not parse or is out of range.
    """
    try:
        value = _LITERAL_PARSERS[column.type](text)
    except (ValueError, InvalidOperation) as e:
        raise ConversionError(
            f"Invalid literal {text!r} for {column.type.value} column '{column.name}': {e}"
        ) from e
    # Range checks for the fixed-width types
    convert_value(column.type, value)
    return value
