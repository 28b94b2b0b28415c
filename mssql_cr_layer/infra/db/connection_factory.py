"""
Connection pool registry.

A ``ConnectionManager`` maps pool keys (``host|port|database|user``) to
live ``ConnectionPool`` objects.  Requests for a known key reuse its
pool as long as the password matches; a different password closes the
stale pool and opens a new one.  Registry changes are serialized with a
lock, so two threads connecting with the same key never open two pools.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from ...config.connection import ConnectionConfig, build_connection_config
from ...errors import MssqlCrLayerError
from .mssql import open_connection
from .pool import ConnectionPool, Connector


@dataclass
class PooledConnection:
    """Registry entry: the config a pool was opened with, and the pool."""

    config: ConnectionConfig
    pool: ConnectionPool


class ConnectionManager:
    """Resolve connection configs to shared pools."""

    def __init__(self, defaults: Optional[Mapping[str, Any]] = None, connector: Optional[Connector] = None) -> None:
        self._defaults = dict(defaults or {})
        self._connector: Connector = connector or open_connection
        self._entries: Dict[str, PooledConnection] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def resolve(self, override: Optional[Mapping[str, Any]] = None) -> ConnectionConfig:
        """Merge the stored defaults with ``override``."""
        return build_connection_config(self._defaults, override)

    def connect(self, override: Optional[Mapping[str, Any]] = None) -> ConnectionPool:
        """Return the pool for the resolved config, opening it if needed.

        Args:
            override: Per-call settings merged over the stored defaults.

        Returns:
            A connected ``ConnectionPool``.

        Raises:
            ExecutionError: If the server rejects the connection.  Nothing
                is registered in that case.
        """
        cfg = self.resolve(override)
        with self._lock:
            entry = self._entries.get(cfg.key)
            if entry is not None:
                if entry.config.password == cfg.password and not entry.pool.closed:
                    return entry.pool
                logging.info("[connection_factory] credentials changed, replacing pool", extra={"key": cfg.key})
                del self._entries[cfg.key]
                self._close_stale(entry.pool)
            pool = ConnectionPool(cfg, self._connector).connect()
            self._entries[cfg.key] = PooledConnection(cfg, pool)
            logging.info("[connection_factory] pool registered", extra={"key": cfg.key})
            return pool

    @staticmethod
    def _close_stale(pool: ConnectionPool) -> None:
        try:
            pool.close()
        except MssqlCrLayerError as exc:
            logging.warning("[connection_factory] failed to close stale pool", exc_info=exc)

    def close(self) -> None:
        """Close every registered pool, one after another.

        The first failure propagates; pools closed before it are removed
        from the registry, the rest stay registered.
        """
        with self._lock:
            for key in list(self._entries):
                self._entries[key].pool.close()
                del self._entries[key]
