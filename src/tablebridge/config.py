"""Configuration for write calls issued by a ``BridgeContext``."""

from __future__ import annotations

import os
from dataclasses import dataclass

from tablebridge.errors import ConfigurationError


@dataclass
class BridgeConfig:
    """Settings of the coordinator and its worker sessions.

    Attributes:
        max_workers: Worker threads used for local dispatch.
        num_partitions: Partitions a local row source is split into.
            None means one partition per worker.
        mutation_buffer_space: Operations a session buffers before it
            flushes in the background.
    """

    max_workers: int = 4
    num_partitions: int | None = None
    mutation_buffer_space: int = 1000

    def validate(self) -> None:
        """Validate configuration values."""
        if self.max_workers <= 0:
            raise ConfigurationError("max_workers must be positive")
        if self.num_partitions is not None and self.num_partitions <= 0:
            raise ConfigurationError("num_partitions must be positive")
        if self.mutation_buffer_space <= 0:
            raise ConfigurationError("mutation_buffer_space must be positive")

    @property
    def partitions(self) -> int:
        return self.num_partitions or self.max_workers

    @classmethod
    def from_environment(cls) -> "BridgeConfig":
        """Load from environment variables.

        Environment variables:
            TABLEBRIDGE_MAX_WORKERS: Local worker threads (default: 4)
            TABLEBRIDGE_NUM_PARTITIONS: Local partitions (default: max workers)
            TABLEBRIDGE_MUTATION_BUFFER_SPACE: Session buffer size (default: 1000)
        """

        def get_int(key: str, default: int | None) -> int | None:
            value = os.environ.get(key, "").strip()
            if not value:
                return default
            try:
                return int(value)
            except ValueError:
                raise ConfigurationError(f"{key} must be an integer, got {value!r}") from None

        config = cls(
            max_workers=get_int("TABLEBRIDGE_MAX_WORKERS", 4),
            num_partitions=get_int("TABLEBRIDGE_NUM_PARTITIONS", None),
            mutation_buffer_space=get_int("TABLEBRIDGE_MUTATION_BUFFER_SPACE", 1000),
        )
        config.validate()
        return config
