"""Dispatch of partition executors to workers.

``LocalDispatcher`` runs partitions on a thread pool in this process;
``SparkDispatcher`` runs them on Spark executors. Both return one
``PartitionOutcome`` per partition. Worker failures are captured in the
outcome instead of aborting the job, so sibling partitions always run to
completion and Spark never retries (and re-applies) a partition.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Iterable, Sequence

from tablebridge.executor import PartitionExecutor, PartitionReport
from tablebridge.partitions import LocalRowSource, spark_row_values

if TYPE_CHECKING:
    from pyspark.sql import DataFrame as SparkDataFrame

logger = logging.getLogger(__name__)


@dataclass
class PartitionOutcome:
    """Result of one partition: a report, an error, or both.

    A fatal error carries the report of the rows processed before it.
    """

    partition_id: int
    report: PartitionReport | None = None
    error: BaseException | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


def run_partition(
    executor: PartitionExecutor,
    partition_id: int,
    rows: Iterable[Sequence[Any]],
) -> PartitionOutcome:
    """Run one partition and capture its result."""
    try:
        return PartitionOutcome(partition_id, report=executor.execute(rows, partition_id))
    except Exception as e:
        logger.error("Partition %d of table '%s' failed: %s", partition_id, executor.task.table_name, e)
        return PartitionOutcome(partition_id, report=getattr(e, "partition_report", None), error=e)


class LocalDispatcher:
    """Runs partitions on worker threads of this process.

    Args:
        max_workers: Size of the thread pool.
    """

    def __init__(self, max_workers: int = 4) -> None:
        if max_workers <= 0:
            raise ValueError("max_workers must be positive")
        self.max_workers = max_workers

    def dispatch(self, source: LocalRowSource, executor: PartitionExecutor) -> list[PartitionOutcome]:
        if not source.partitions:
            return []

        outcomes = []
        with ThreadPoolExecutor(
            max_workers=min(self.max_workers, len(source.partitions)),
            thread_name_prefix="tablebridge-worker",
        ) as pool:
            futures = [
                pool.submit(run_partition, executor, partition_id, rows)
                for partition_id, rows in source
            ]
            for future in as_completed(futures):
                outcomes.append(future.result())

        return sorted(outcomes, key=lambda o: o.partition_id)


class SparkDispatcher:
    """Runs partitions on the executors of a Spark DataFrame.

    The executor is pickled to every Spark task. Its connection cache
    unpickles to the default cache of the executor process.
    """

    def dispatch(self, df: "SparkDataFrame", executor: PartitionExecutor) -> list[PartitionOutcome]:
        def run(partition_id: int, rows: Iterable[Any]) -> Iterable[PartitionOutcome]:
            yield run_partition(executor, partition_id, (spark_row_values(row) for row in rows))

        return df.rdd.mapPartitionsWithIndex(run).collect()
