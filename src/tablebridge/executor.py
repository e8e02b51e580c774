"""Per-partition mutation executors.

An executor runs on a worker and turns one partition of rows into
mutations against a remote table:

1. Acquire the process's cached connection and advance its watermark to
   the one the coordinator broadcast.
2. Open the table and resolve the column mapping once.
3. Open a background-flushing session and apply one operation per row.
4. Close the session on every exit path, then report the observed
   watermark, the metrics and the rows the cluster rejected.

Executors hold no per-partition state, so one instance can serve many
partitions concurrently.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping, Sequence

from tablebridge.cache import ConnectionCache, get_default_cache
from tablebridge.convert import convert_value, parse_literal, set_column
from tablebridge.errors import ConfigurationError
from tablebridge.metrics import WriteMetrics
from tablebridge.protocols import Connection, Operation, Table
from tablebridge.timestamp import TimestampPropagator
from tablebridge.types import (
    ConnectionIdentity,
    FlushMode,
    OperationType,
    RowErrors,
    SourceField,
    WriteOptions,
)

logger = logging.getLogger(__name__)

RowBuilder = Callable[[Sequence[Any]], Operation]


@dataclass(frozen=True)
class PartitionTask:
    """Everything a worker needs to write its partitions.

    Attributes:
        identity: Cluster to connect to.
        table_name: Target table.
        operation: Kind of mutation built for each row.
        schema: Names and types of the input row columns, in row order.
        prior_watermark: Coordinator watermark read before dispatch.
        options: Options of the write call.
        credentials: Authentication token exported by the coordinator.
        mutation_buffer_space: Operations buffered before a background flush.
    """

    identity: ConnectionIdentity
    table_name: str
    operation: OperationType
    schema: tuple[SourceField, ...]
    prior_watermark: int = 0
    options: WriteOptions = field(default_factory=WriteOptions)
    credentials: bytes | None = None
    mutation_buffer_space: int = 1000


@dataclass
class PartitionReport:
    """What a worker sends back after running one partition."""

    partition_id: int
    rows_processed: int = 0
    watermark: int = 0
    metrics: WriteMetrics = field(default_factory=WriteMetrics)
    row_errors: RowErrors = field(default_factory=RowErrors)


class PartitionExecutor(ABC):
    """Shared session lifecycle of the partition executors.

    Args:
        task: Description of the write.
        cache: Connection cache of the worker process.
    """

    def __init__(self, task: PartitionTask, cache: ConnectionCache | None = None) -> None:
        self.task = task
        self._cache = cache if cache is not None else get_default_cache()

    def _connect(self) -> Connection:
        connection = self._cache.acquire(self.task.identity)
        if self.task.credentials is not None:
            connection.import_authentication_credentials(self.task.credentials)
        return connection

    @abstractmethod
    def _row_builder(self, table: Table) -> RowBuilder:
        """Resolve column mappings for ``table`` and return a row builder."""
        ...

    def execute(self, rows: Iterable[Sequence[Any]], partition_id: int = 0) -> PartitionReport:
        """Apply one partition of rows.

        Rows the cluster rejects are collected in the report. Fatal errors
        propagate after the session has been closed; the partially filled
        report is attached to them as ``partition_report``.

        Raises:
            ConfigurationError: A key value is null, or a column is unknown.
            ConversionError: A value cannot be converted to its column.
        """
        task = self.task
        connection = self._connect()
        TimestampPropagator.synchronize(connection, task.prior_watermark)

        table = connection.open_table(task.table_name)
        build = self._row_builder(table)

        session = connection.new_session()
        session.set_flush_mode(FlushMode.AUTO_FLUSH_BACKGROUND)
        session.set_mutation_buffer_space(task.mutation_buffer_space)
        session.set_ignore_all_duplicate_rows(task.options.ignore_duplicate_row_errors)

        report = PartitionReport(partition_id)
        logger.info(
            "applying operations of type '%s' to table '%s'", task.operation.value, task.table_name
        )
        start = time.monotonic()
        failure: BaseException | None = None
        try:
            for row in rows:
                session.apply(build(row))
                report.rows_processed += 1
        except BaseException as e:
            failure = e
            e.partition_report = report
            raise
        finally:
            try:
                session.close()
            except Exception as e:
                if failure is None:
                    e.partition_report = report
                    raise
                # The first failure is the one reported
                logger.error("Closing session on table '%s' failed: %s", task.table_name, e)
            finally:
                report.watermark = TimestampPropagator.observe(connection)
                elapsed_ms = int((time.monotonic() - start) * 1000)
                report.metrics.record(task.operation, report.rows_processed, elapsed_ms)
                logger.info(
                    "applied %d %ss to table '%s' in %dms",
                    report.rows_processed,
                    task.operation.value,
                    task.table_name,
                    elapsed_ms,
                )

        report.row_errors = session.get_pending_errors()
        return report


class WritePartitionExecutor(PartitionExecutor):
    """Inserts, upserts, updates or deletes one row per input row.

    Every input column is written to the table column of the same name.
    Deletes only read key columns. A null in a key column is fatal; a null
    elsewhere becomes an explicit null unless ``ignore_null`` is set, in
    which case the column is left unset and keeps its stored value.

    Example:
        >>> task = PartitionTask(identity, "users", OperationType.UPSERT, schema)
        >>> report = WritePartitionExecutor(task).execute(rows)
        >>> report.row_errors
        RowErrors(errors=(), overflowed=False)
    """

    def _row_builder(self, table: Table) -> RowBuilder:
        table_schema = table.schema
        task = self.task
        is_delete = task.operation is OperationType.DELETE
        ignore_null = task.options.ignore_null

        mapping = []
        for source_index, source_field in enumerate(task.schema):
            target_index = table_schema.column_index(source_field.name)
            column = table_schema.columns[target_index]
            if is_delete and not column.is_key:
                continue
            mapping.append((source_index, target_index, column, source_field.type))

        def build(row: Sequence[Any]) -> Operation:
            operation = table.new_operation(task.operation)
            for source_index, target_index, column, source_type in mapping:
                value = row[source_index]
                if value is None:
                    if column.is_key:
                        raise ConfigurationError(
                            f"Can't set primary key column '{column.name}' to null"
                        )
                    if not ignore_null:
                        operation.row.set_null(target_index)
                else:
                    set_column(operation.row, target_index, source_type, value)
            return operation

        return build


class SelectiveUpdateExecutor(PartitionExecutor):
    """Updates a fixed set of columns to literal values on every input row.

    Key columns are taken from each row; the columns named in
    ``column_values`` are set to their parsed literal (``None`` sets an
    explicit null). All other columns are left unset.

    Args:
        task: Description of the write; its operation must be UPDATE.
        column_values: Column name -> string literal or None.
        cache: Connection cache of the worker process.
    """

    def __init__(
        self,
        task: PartitionTask,
        column_values: Mapping[str, str | None],
        cache: ConnectionCache | None = None,
    ) -> None:
        if task.operation is not OperationType.UPDATE:
            raise ConfigurationError("Selective updates require the UPDATE operation")
        super().__init__(task, cache)
        self.column_values = dict(column_values)

    def _row_builder(self, table: Table) -> RowBuilder:
        table_schema = table.schema
        source_index = {f.name: i for i, f in enumerate(self.task.schema)}

        keys = []
        for column in table_schema.key_columns:
            if column.name not in source_index:
                raise ConfigurationError(f"Key column '{column.name}' is missing from the input rows")
            index = source_index[column.name]
            keys.append((index, table_schema.column_index(column.name), self.task.schema[index].type))

        literals = []
        for name, text in self.column_values.items():
            column = table_schema.column(name)
            if column.is_key:
                raise ConfigurationError(f"Key column '{name}' cannot be set to a literal")
            wire = None if text is None else convert_value(column.type, parse_literal(column, text))
            literals.append((table_schema.column_index(name), column.type, wire))

        def build(row: Sequence[Any]) -> Operation:
            operation = table.new_operation(OperationType.UPDATE)
            for index, target_index, source_type in keys:
                value = row[index]
                if value is None:
                    operation.row.set_null(target_index)
                else:
                    set_column(operation.row, target_index, source_type, value)
            for target_index, column_type, wire in literals:
                if wire is None:
                    operation.row.set_null(target_index)
                else:
                    operation.row.set_value(target_index, column_type, wire)
            return operation

        return build
