"""
Bounded pool of physical connections for one connection config.

Idle connections are reused most-recently-released first and discarded
once they have been idle for longer than ``idle_timeout_ms``.  At most
``pool_max`` connections exist at any time; ``acquire`` blocks until
one is released.
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from typing import Callable, Iterator, List, Tuple

from ...config.connection import ConnectionConfig
from ...errors import ExecutionError, MssqlCrLayerError
from .mssql import PhysicalConnection

Connector = Callable[[ConnectionConfig], PhysicalConnection]


class ConnectionPool:
    """Pool of ``PhysicalConnection`` objects sharing one ``ConnectionConfig``."""

    def __init__(self, config: ConnectionConfig, connector: Connector) -> None:
        self.config = config
        self._connector = connector
        self._idle: List[Tuple[PhysicalConnection, float]] = []
        self._size = 0
        self._closed = False
        self._cond = threading.Condition()

    @property
    def size(self) -> int:
        """Number of open connections, leased or idle."""
        return self._size

    @property
    def idle_count(self) -> int:
        return len(self._idle)

    @property
    def closed(self) -> bool:
        return self._closed

    def connect(self) -> ConnectionPool:
        """Open one connection to validate the config and keep it idle."""
        self.release(self.acquire())
        return self

    def _prune(self, now: float) -> List[PhysicalConnection]:
        limit = self.config.idle_timeout_ms / 1000.0
        expired = [c for c, since in self._idle if now - since >= limit]
        if expired:
            self._idle = [(c, since) for c, since in self._idle if now - since < limit]
            self._size -= len(expired)
        return expired

    def _discard(self, connections: List[PhysicalConnection]) -> None:
        for connection in connections:
            try:
                connection.close()
            except MssqlCrLayerError as exc:
                logging.warning("[pool] failed to close idle connection", exc_info=exc)

    def acquire(self) -> PhysicalConnection:
        """Lease a connection, opening a new one when none is idle."""
        expired: List[PhysicalConnection] = []
        with self._cond:
            while True:
                if self._closed:
                    raise ExecutionError("Connection pool is closed")
                expired.extend(self._prune(time.monotonic()))
                if self._idle:
                    connection, _ = self._idle.pop()
                    break
                if self._size < self.config.pool_max:
                    self._size += 1
                    connection = None
                    break
                self._cond.wait()
        self._discard(expired)
        if connection is not None:
            return connection
        try:
            return self._connector(self.config)
        except BaseException:
            with self._cond:
                self._size -= 1
                self._cond.notify()
            raise

    def release(self, connection: PhysicalConnection, discard: bool = False) -> None:
        """Return a leased connection to the pool, or close it if ``discard``."""
        with self._cond:
            if discard or self._closed or connection.closed or connection.in_transaction:
                self._size -= 1
                self._cond.notify()
                discard = True
            else:
                self._idle.append((connection, time.monotonic()))
                self._cond.notify()
                discard = False
        if discard:
            self._discard([connection])

    @contextmanager
    def lease(self) -> Iterator[PhysicalConnection]:
        connection = self.acquire()
        try:
            yield connection
        finally:
            self.release(connection)

    def close(self) -> None:
        """Close idle connections; leased ones are closed on release.

        Every idle connection is attempted; the first failure is raised
        afterwards.
        """
        with self._cond:
            self._closed = True
            idle, self._idle = self._idle, []
            self._size -= len(idle)
            self._cond.notify_all()
        logging.info("[pool] closing", extra={"host": self.config.host, "database": self.config.database, "idle": len(idle)})
        first_error = None
        for connection, _ in idle:
            try:
                connection.close()
            except MssqlCrLayerError as exc:
                first_error = first_error or exc
        if first_error is not None:
            raise first_error
