"""Tablebridge - Partitioned DataFrame Writes to Clustered Tabular Storage."""

from tablebridge.context import BridgeContext
from tablebridge.config import BridgeConfig

# Data model
from tablebridge.types import (
    ColumnSchema,
    ColumnType,
    ConnectionIdentity,
    FlushMode,
    OperationType,
    RowError,
    RowErrors,
    SourceField,
    TableSchema,
    WriteOptions,
)

# Errors
from tablebridge.errors import (
    ConfigurationError,
    ConversionError,
    RowApplyError,
    StorageConnectionError,
    TableBridgeError,
    WriteFailedError,
)

# Connections
from tablebridge.cache import ConnectionCache, get_default_cache, reset_connection_cache
from tablebridge.backends import create_connection, register_backend

# Row sources, metrics and watermark
from tablebridge.partitions import LocalRowSource
from tablebridge.metrics import DurationHistogram, WriteMetrics
from tablebridge.timestamp import TimestampAccumulator

__version__ = "0.1.0"

__all__ = [
    # Core
    "BridgeContext",
    "BridgeConfig",
    # Data model
    "ColumnSchema",
    "ColumnType",
    "ConnectionIdentity",
    "FlushMode",
    "OperationType",
    "RowError",
    "RowErrors",
    "SourceField",
    "TableSchema",
    "WriteOptions",
    # Errors
    "TableBridgeError",
    "ConfigurationError",
    "ConversionError",
    "RowApplyError",
    "StorageConnectionError",
    "WriteFailedError",
    # Connections
    "ConnectionCache",
    "get_default_cache",
    "reset_connection_cache",
    "create_connection",
    "register_backend",
    # Row sources, metrics and watermark
    "LocalRowSource",
    "DurationHistogram",
    "WriteMetrics",
    "TimestampAccumulator",
]
