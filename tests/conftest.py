"""Shared fixtures for tablebridge tests.

Every test starts with an empty default connection cache and no registered
in-memory clusters.
"""

from __future__ import annotations

import pytest

from tablebridge.backends.memory import MemoryCluster
from tablebridge.cache import reset_connection_cache
from tablebridge.types import ColumnSchema, ColumnType, TableSchema

CLUSTER_ADDRESS = "memory://test-cluster"


@pytest.fixture(autouse=True)
def clean_state():
    reset_connection_cache()
    MemoryCluster.drop_all()
    yield
    reset_connection_cache()
    MemoryCluster.drop_all()


@pytest.fixture
def cluster() -> MemoryCluster:
    return MemoryCluster.get("test-cluster")


@pytest.fixture
def users_schema() -> TableSchema:
    """Key ``id`` plus a required ``name`` and two nullable columns."""
    return TableSchema((
        ColumnSchema("id", ColumnType.INT64, is_key=True),
        ColumnSchema("name", ColumnType.STRING, nullable=False),
        ColumnSchema("age", ColumnType.INT32),
        ColumnSchema("status", ColumnType.STRING),
    ))


@pytest.fixture
def users_table(cluster: MemoryCluster, users_schema: TableSchema) -> str:
    cluster.create_table("users", users_schema)
    return "users"
