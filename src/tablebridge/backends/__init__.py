"""Storage backends.

A backend is selected by the URI scheme of the first master address, e.g.
``memory://warehouse``. New backends can be registered at runtime.

Example:
    >>> @register_backend("mycluster")
    ... def connect(identity: ConnectionIdentity) -> Connection:
    ...     return MyClusterConnection(identity)
"""

from __future__ import annotations

from typing import Callable

from tablebridge.errors import StorageConnectionError
from tablebridge.protocols import Connection, ConnectionFactory
from tablebridge.types import ConnectionIdentity

# Registry of connection factories by address scheme
_backend_registry: dict[str, ConnectionFactory] = {}


def register_backend(scheme: str) -> Callable[[ConnectionFactory], ConnectionFactory]:
    """Decorator to register a connection factory for an address scheme."""

    def decorator(factory: ConnectionFactory) -> ConnectionFactory:
        _backend_registry[scheme.lower()] = factory
        return factory

    return decorator


def _scheme(address: str) -> str:
    if "://" not in address:
        return ""
    return address.split("://", 1)[0].lower()


def create_connection(identity: ConnectionIdentity) -> Connection:
    """Build a new connection for ``identity``.

    Raises:
        StorageConnectionError: If no backend handles the address scheme.
    """
    scheme = _scheme(identity.master_addresses[0])

    if scheme not in _backend_registry and scheme == "memory":
        # Lazy load built-in backend
        from tablebridge.backends import memory  # noqa: F401

    factory = _backend_registry.get(scheme)
    if factory is None:
        raise StorageConnectionError(
            identity.master_addresses,
            f"no backend registered for scheme {scheme!r}. "
            f"Available: {sorted(set(_backend_registry) | {'memory'})}",
        )
    return factory(identity)


__all__ = ["create_connection", "register_backend"]
