"""Process-wide connection cache.

Connections are expensive to build, so every task in a process that writes
to the same cluster shares one. Each cached connection gets exactly one
``atexit`` handler that closes it, which flushes anything still in flight
when the process exits. Tasks never close cached connections themselves.

Example:
    >>> cache = get_default_cache()
    >>> identity = ConnectionIdentity.of("memory://warehouse")
    >>> connection = cache.acquire(identity)
    >>> assert cache.acquire(identity) is connection
"""

from __future__ import annotations

import atexit
import logging
import threading
from dataclasses import dataclass

from tablebridge.backends import create_connection
from tablebridge.errors import StorageConnectionError
from tablebridge.protocols import Connection, ConnectionFactory
from tablebridge.types import ConnectionIdentity

logger = logging.getLogger(__name__)


class _CloseHandler:
    """Closes one connection, at most once."""

    def __init__(self, identity: ConnectionIdentity, connection: Connection) -> None:
        self._identity = identity
        self._connection = connection
        self._closed = False
        self._lock = threading.Lock()

    def __call__(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        try:
            self._connection.close()
        except Exception as e:
            logger.warning("Error while closing connection to %s: %s", self._identity, e)


@dataclass
class _CacheEntry:
    connection: Connection
    close_handler: _CloseHandler


class ConnectionCache:
    """Registry of shared connections keyed by ``ConnectionIdentity``.

    A pickled cache unpickles to the default cache of the receiving process,
    so the cache can travel with a task to a remote worker without carrying
    live connections.

    Args:
        factory: Builds a connection for an identity. Defaults to resolving
            a registered backend from the address scheme.
    """

    def __init__(self, factory: ConnectionFactory | None = None) -> None:
        self._factory = factory or create_connection
        self._entries: dict[ConnectionIdentity, _CacheEntry] = {}
        self._lock = threading.Lock()

    def acquire(self, identity: ConnectionIdentity) -> Connection:
        """Get the connection for ``identity``, creating it on first use.

        Raises:
            StorageConnectionError: If the connection cannot be built.
                Nothing is cached in that case.
        """
        with self._lock:
            entry = self._entries.get(identity)
            if entry is not None:
                return entry.connection

            logger.debug("Creating connection to %s", identity)
            try:
                connection = self._factory(identity)
            except StorageConnectionError:
                raise
            except Exception as e:
                raise StorageConnectionError(identity.master_addresses, str(e)) from e

            handler = _CloseHandler(identity, connection)
            atexit.register(handler)
            self._entries[identity] = _CacheEntry(connection, handler)
            return connection

    def __contains__(self, identity: ConnectionIdentity) -> bool:
        with self._lock:
            return identity in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _drain(self) -> list[_CacheEntry]:
        with self._lock:
            entries = list(self._entries.values())
            self._entries.clear()
        return entries

    def shutdown_all(self) -> None:
        """Close every cached connection now and forget it."""
        for entry in self._drain():
            entry.close_handler()
            atexit.unregister(entry.close_handler)

    def reset_for_tests(self) -> None:
        """Close and forget all connections so each test starts clean.

        The exit handlers are unregistered, so no connection is closed twice.
        """
        self.shutdown_all()

    def __reduce__(self):
        return (get_default_cache, ())


_default_cache: ConnectionCache | None = None
_default_cache_lock = threading.Lock()


def get_default_cache() -> ConnectionCache:
    """Get the cache shared by everything in this process."""
    global _default_cache
    with _default_cache_lock:
        if _default_cache is None:
            _default_cache = ConnectionCache()
        return _default_cache


def reset_connection_cache() -> None:
    """Test hook: close and forget every connection of the default cache."""
    get_default_cache().reset_for_tests()
