"""Coordinator-side entry point of the write pipeline.

A ``BridgeContext`` is created once per application, on the coordinator. It
owns the coordinator's connection, the watermark broadcast to workers and
the metrics merged from them.

Example:
    >>> import polars as pl
    >>> from tablebridge import BridgeContext, WriteOptions
    >>>
    >>> context = BridgeContext("memory://warehouse")
    >>> df = pl.DataFrame({"id": [1, 2], "name": ["a", "b"]})
    >>> context.upsert_rows(df, "users")
    >>> context.num_upserts
    2
    >>> context.insert_rows(df, "users", WriteOptions(ignore_duplicate_row_errors=True))
"""

from __future__ import annotations

import logging
import threading
import warnings
from typing import Any, Mapping, Sequence

from tablebridge.cache import ConnectionCache, get_default_cache
from tablebridge.config import BridgeConfig
from tablebridge.dispatch import LocalDispatcher, PartitionOutcome, SparkDispatcher
from tablebridge.errors import ConfigurationError, WriteFailedError
from tablebridge.executor import (
    PartitionExecutor,
    PartitionTask,
    SelectiveUpdateExecutor,
    WritePartitionExecutor,
)
from tablebridge.metrics import DurationHistogram, WriteMetrics
from tablebridge.partitions import (
    LocalRowSource,
    is_polars_dataframe,
    is_spark_dataframe,
    source_schema_from_spark,
)
from tablebridge.protocols import Connection
from tablebridge.timestamp import TimestampPropagator
from tablebridge.types import ConnectionIdentity, OperationType, SourceField, WriteOptions

logger = logging.getLogger(__name__)

# Number of row error statuses quoted in a WriteFailedError
MAX_ERROR_SAMPLES = 5


class BridgeContext:
    """Writes partitioned DataFrames to tables of one storage cluster.

    Args:
        master_addresses: Cluster master addresses, as a comma-separated
            string or a sequence.
        socket_read_timeout_ms: Optional socket read timeout of the
            connections.
        config: Coordinator and session settings.
        cache: Connection cache. Defaults to the process-wide cache.
    """

    def __init__(
        self,
        master_addresses: str | Sequence[str],
        socket_read_timeout_ms: int | None = None,
        *,
        config: BridgeConfig | None = None,
        cache: ConnectionCache | None = None,
    ) -> None:
        self.identity = ConnectionIdentity.of(master_addresses, socket_read_timeout_ms)
        self.config = config or BridgeConfig()
        self.config.validate()
        self._cache = cache if cache is not None else get_default_cache()

        self._connection = self._cache.acquire(self.identity)
        self._credentials = self._connection.export_authentication_credentials()
        self._propagator = TimestampPropagator(self._connection)

        self._metrics = WriteMetrics()
        self._metrics_lock = threading.Lock()
        self._local_dispatcher = LocalDispatcher(self.config.max_workers)
        self._spark_dispatcher = SparkDispatcher()

    # -------------------------------------------------------------------------
    # Connection and watermark
    # -------------------------------------------------------------------------

    @property
    def connection(self) -> Connection:
        """The coordinator's connection."""
        return self._connection

    @property
    def last_propagated_timestamp(self) -> int:
        """The coordinator's watermark."""
        return self._connection.last_propagated_timestamp

    # -------------------------------------------------------------------------
    # Metrics
    # -------------------------------------------------------------------------

    @property
    def metrics(self) -> WriteMetrics:
        """Totals merged from every partition written through this context."""
        with self._metrics_lock:
            return self._metrics.merge(WriteMetrics())

    @property
    def num_inserts(self) -> int:
        return self.metrics.num_inserts

    @property
    def num_upserts(self) -> int:
        return self.metrics.num_upserts

    @property
    def num_updates(self) -> int:
        return self.metrics.num_updates

    @property
    def num_deletes(self) -> int:
        return self.metrics.num_deletes

    @property
    def duration_histogram(self) -> DurationHistogram:
        return self.metrics.durations

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def insert_rows(self, data: Any, table_name: str, options: WriteOptions | None = None) -> None:
        """Insert the rows of ``data`` into a table."""
        self._write_logged(data, table_name, OperationType.INSERT, options)

    def insert_ignore_rows(self, data: Any, table_name: str) -> None:
        """Insert rows, ignoring rows whose key already exists.

        Deprecated: use ``insert_rows(data, table_name,
        WriteOptions(ignore_duplicate_row_errors=True))``.
        """
        warnings.warn(
            "insert_ignore_rows is deprecated, use insert_rows with "
            "WriteOptions(ignore_duplicate_row_errors=True)",
            DeprecationWarning,
            stacklevel=2,
        )
        self._write_logged(
            data, table_name, OperationType.INSERT, WriteOptions(ignore_duplicate_row_errors=True)
        )

    def upsert_rows(self, data: Any, table_name: str, options: WriteOptions | None = None) -> None:
        """Upsert the rows of ``data`` into a table."""
        self._write_logged(data, table_name, OperationType.UPSERT, options)

    def update_rows(self, data: Any, table_name: str, options: WriteOptions | None = None) -> None:
        """Update existing rows of a table with the rows of ``data``."""
        self._write_logged(data, table_name, OperationType.UPDATE, options)

    def delete_rows(self, data: Any, table_name: str, options: WriteOptions | None = None) -> None:
        """Delete the rows whose keys appear in ``data``.

        Only the key columns of ``data`` are read.
        """
        self._write_logged(data, table_name, OperationType.DELETE, options)

    def _write_logged(
        self,
        data: Any,
        table_name: str,
        operation: OperationType,
        options: WriteOptions | None,
    ) -> None:
        logger.info("writing %s operations to table '%s'", operation.value, table_name)
        self.write(data, table_name, operation, options)
        logger.info(
            "%s %d rows in table '%s'",
            operation.past_tense,
            self.metrics.count(operation),
            table_name,
        )

    def write(
        self,
        data: Any,
        table_name: str,
        operation: OperationType,
        options: WriteOptions | None = None,
    ) -> None:
        """Apply one mutation per row of ``data`` to a table.

        Args:
            data: A Polars DataFrame, a ``LocalRowSource`` or a Spark
                DataFrame.
            table_name: Target table.
            operation: Kind of mutation.
            options: Options of this call.

        Raises:
            WriteFailedError: If the cluster rejected any row. Accepted rows
                stay applied.
            ConfigurationError: If a key value was null or a column unknown.
            ConversionError: If a value could not be converted.
        """
        source = self._source(data)
        task = self._task(source, table_name, operation, options or WriteOptions())
        self._run(source, table_name, operation, WritePartitionExecutor(task, self._cache))

    def update_with_literals(
        self,
        data: Any,
        table_name: str,
        column_values: Mapping[str, str | None],
    ) -> None:
        """Set the given columns to literal values on every row of ``data``.

        Rows are identified by the key columns of ``data``; its other columns
        are ignored. Literals are parsed according to each column's type
        (timestamps as ``YYYY-MM-DD HH:MM:SS[.ffffff]``); ``None`` sets the
        column to null. Columns not named keep their stored values.

        Example:
            >>> context.update_with_literals(keys_df, "users", {"status": "inactive"})
        """
        if not column_values:
            raise ConfigurationError("At least one column value is required")
        source = self._source(data)
        task = self._task(source, table_name, OperationType.UPDATE, WriteOptions())
        executor = SelectiveUpdateExecutor(task, column_values, self._cache)
        self._run(source, table_name, OperationType.UPDATE, executor)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _source(self, data: Any) -> Any:
        """Normalize input to a ``LocalRowSource`` or a Spark DataFrame."""
        if isinstance(data, LocalRowSource) or is_spark_dataframe(data):
            return data
        if is_polars_dataframe(data):
            return LocalRowSource.from_polars(data, self.config.partitions)
        raise ConfigurationError(
            f"Unsupported input {type(data).__name__}; expected a Polars DataFrame, "
            "a LocalRowSource or a Spark DataFrame"
        )

    @staticmethod
    def _schema_of(source: Any) -> tuple[SourceField, ...]:
        if isinstance(source, LocalRowSource):
            return source.schema
        return source_schema_from_spark(source.schema)

    def _task(
        self,
        source: Any,
        table_name: str,
        operation: OperationType,
        options: WriteOptions,
    ) -> PartitionTask:
        return PartitionTask(
            identity=self.identity,
            table_name=table_name,
            operation=operation,
            schema=self._schema_of(source),
            prior_watermark=self._propagator.snapshot(),
            options=options,
            credentials=self._credentials,
            mutation_buffer_space=self.config.mutation_buffer_space,
        )

    def _run(
        self,
        source: Any,
        table_name: str,
        operation: OperationType,
        executor: PartitionExecutor,
    ) -> None:
        if isinstance(source, LocalRowSource):
            outcomes = self._local_dispatcher.dispatch(source, executor)
        else:
            outcomes = self._spark_dispatcher.dispatch(source, executor)
        self._complete(table_name, operation, outcomes)

    def _complete(
        self,
        table_name: str,
        operation: OperationType,
        outcomes: list[PartitionOutcome],
    ) -> None:
        """Reduce worker reports, then fail if any partition failed."""
        reports = [o.report for o in outcomes if o.report is not None]

        self._propagator.reduce(r.watermark for r in reports)
        with self._metrics_lock:
            for report in reports:
                self._metrics = self._metrics.merge(report.metrics)
            durations = self._metrics.durations
        logger.info("completed %s ops: duration histogram: %s", operation.value, durations)

        for outcome in outcomes:
            if outcome.error is not None:
                raise outcome.error

        failed = [r.row_errors for r in reports if r.row_errors]
        if failed:
            samples = [s for errors in failed for s in errors.statuses()][:MAX_ERROR_SAMPLES]
            raise WriteFailedError(
                table_name,
                sum(len(errors) for errors in failed),
                samples,
                overflowed=any(errors.overflowed for errors in failed),
            )
