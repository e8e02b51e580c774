"""Partitioned row sources.

Input rows arrive as a Polars DataFrame, a list of records, or a Spark
DataFrame. This module maps engine column types onto ``ColumnType`` and
splits local data into partitions of plain tuples.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Iterator, Mapping, Sequence

import polars as pl

from tablebridge.types import ColumnType, SourceField

if TYPE_CHECKING:
    from pyspark.sql import DataFrame as SparkDataFrame
    from pyspark.sql.types import StructType


# =============================================================================
# Type Mapping
# =============================================================================


_POLARS_TYPES: dict[Any, ColumnType] = {
    pl.String: ColumnType.STRING,
    pl.Binary: ColumnType.BINARY,
    pl.Boolean: ColumnType.BOOL,
    pl.Int8: ColumnType.INT8,
    pl.Int16: ColumnType.INT16,
    pl.Int32: ColumnType.INT32,
    pl.Int64: ColumnType.INT64,
    pl.Float32: ColumnType.FLOAT,
    pl.Float64: ColumnType.DOUBLE,
    pl.Datetime: ColumnType.UNIXTIME_MICROS,
    pl.Decimal: ColumnType.DECIMAL,
}

_SPARK_TYPES: dict[str, ColumnType] = {
    "StringType": ColumnType.STRING,
    "BinaryType": ColumnType.BINARY,
    "BooleanType": ColumnType.BOOL,
    "ByteType": ColumnType.INT8,
    "ShortType": ColumnType.INT16,
    "IntegerType": ColumnType.INT32,
    "LongType": ColumnType.INT64,
    "FloatType": ColumnType.FLOAT,
    "DoubleType": ColumnType.DOUBLE,
    "TimestampType": ColumnType.UNIXTIME_MICROS,
    "DecimalType": ColumnType.DECIMAL,
}


def source_schema_from_polars(schema: Mapping[str, Any]) -> tuple[SourceField, ...]:
    """Map a Polars schema to source fields.

    Types without a conversion keep their Polars dtype, so the write fails
    with a ConversionError naming it once a non-null value is seen.
    """
    return tuple(
        SourceField(name, _POLARS_TYPES.get(dtype.base_type(), dtype))
        for name, dtype in schema.items()
    )


def source_schema_from_spark(struct: "StructType") -> tuple[SourceField, ...]:
    """Map a Spark ``StructType`` to source fields."""
    return tuple(
        SourceField(f.name, _SPARK_TYPES.get(type(f.dataType).__name__, f.dataType))
        for f in struct.fields
    )


def spark_row_values(row: Sequence[Any]) -> tuple:
    """Turn a Spark ``Row`` into a tuple of plain values.

    Spark hands ``TimestampType`` values to Python as naive datetimes in the
    executor's local time zone. They are made UTC-aware here so the converter
    keeps their instant; naive datetimes from other sources are read as UTC.
    """
    return tuple(
        value.astimezone(timezone.utc)
        if isinstance(value, datetime) and value.tzinfo is None
        else value
        for value in row
    )


def is_polars_dataframe(obj: Any) -> bool:
    return type(obj).__name__ == "DataFrame" and type(obj).__module__.startswith("polars")


def is_spark_dataframe(obj: Any) -> bool:
    return type(obj).__name__ == "DataFrame" and "pyspark" in type(obj).__module__


# =============================================================================
# Local Row Source
# =============================================================================


def split_rows(rows: Sequence[Any], num_partitions: int) -> list[list[Any]]:
    """Split rows into at most ``num_partitions`` contiguous, non-empty parts."""
    if num_partitions <= 0:
        raise ValueError("num_partitions must be positive")
    if not rows:
        return []
    size = math.ceil(len(rows) / num_partitions)
    return [list(rows[i:i + size]) for i in range(0, len(rows), size)]


@dataclass
class LocalRowSource:
    """Rows held by the coordinator, already split into partitions.

    Attributes:
        schema: Source fields, in row order.
        partitions: Each partition is a list of row tuples.
    """

    schema: tuple[SourceField, ...]
    partitions: list[list[tuple]]

    @classmethod
    def from_polars(cls, df: pl.DataFrame, num_partitions: int) -> "LocalRowSource":
        """Split a Polars DataFrame into partitions.

        Example:
            >>> source = LocalRowSource.from_polars(df, num_partitions=4)
            >>> len(source.partitions)
            4
        """
        return cls(
            schema=source_schema_from_polars(df.schema),
            partitions=split_rows(list(df.iter_rows()), num_partitions),
        )

    @classmethod
    def from_records(
        cls,
        records: Sequence[Mapping[str, Any]],
        schema: Sequence[SourceField],
        num_partitions: int = 1,
    ) -> "LocalRowSource":
        """Build from dict records; missing keys become nulls."""
        schema = tuple(schema)
        rows = [tuple(record.get(f.name) for f in schema) for record in records]
        return cls(schema=schema, partitions=split_rows(rows, num_partitions))

    @property
    def num_rows(self) -> int:
        return sum(len(p) for p in self.partitions)

    def __iter__(self) -> Iterator[tuple[int, list[tuple]]]:
        return iter(enumerate(self.partitions))
