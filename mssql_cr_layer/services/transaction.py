"""
Transaction lifecycle.

A ``Transaction`` leases one physical connection from a pool for its
whole life and moves through ``NOT_STARTED -> ACTIVE -> COMMITTED`` or
``ROLLED_BACK``.  Terminal transactions cannot be reused.

SQL Server may roll a transaction back on its own (deadlock victim,
``XACT_ABORT``), after which an explicit ``ROLLBACK`` fails with "no
corresponding BEGIN TRANSACTION".  The transaction subscribes to the
connection's rollback notifications at begin time and records them in
``rolled_back``; ``rollback`` and the failure paths of ``commit`` and
``run_in_transaction`` skip the explicit rollback once it is set.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Callable, Optional, TypeVar, Union

from ..errors import ConfigurationError, MssqlCrLayerError, TransactionError
from ..infra.db.mssql import PhysicalConnection
from ..infra.db.pool import ConnectionPool

T = TypeVar('T')

DEFAULT_ISOLATION_LEVEL = 'READ_COMMITTED'


class IsolationLevel(Enum):
    READ_UNCOMMITTED = 'READ UNCOMMITTED'
    READ_COMMITTED = 'READ COMMITTED'
    REPEATABLE_READ = 'REPEATABLE READ'
    SERIALIZABLE = 'SERIALIZABLE'
    SNAPSHOT = 'SNAPSHOT'


class TransactionState(Enum):
    NOT_STARTED = 'not_started'
    ACTIVE = 'active'
    COMMITTED = 'committed'
    ROLLED_BACK = 'rolled_back'


def resolve_isolation_level(name: Union[str, IsolationLevel, None]) -> IsolationLevel:
    """Resolve an isolation level name such as ``'SNAPSHOT'``.

    Names are case-insensitive and may use spaces instead of
    underscores.

    Raises:
        ConfigurationError: If the name is not a known isolation level.
    """
    if isinstance(name, IsolationLevel):
        return name
    key = (name or '').strip().upper().replace(' ', '_')
    try:
        return IsolationLevel[key]
    except KeyError:
        valid = ', '.join(level.name for level in IsolationLevel)
        raise ConfigurationError(f"Unknown isolation level {name!r}; expected one of {valid}") from None


class Transaction:
    """Handle over one leased connection running a transaction."""

    def __init__(self, pool: ConnectionPool, isolation_level: IsolationLevel) -> None:
        self.isolation_level = isolation_level
        self.state = TransactionState.NOT_STARTED
        self.rolled_back = False
        self._pool = pool
        self._connection: Optional[PhysicalConnection] = None

    def __repr__(self) -> str:
        return f"<Transaction {self.state.value} isolation={self.isolation_level.name} rolled_back={self.rolled_back}>"

    def _on_rollback(self) -> None:
        if not self.rolled_back:
            self.rolled_back = True
            logging.debug("[transaction] rollback observed", extra={"isolation_level": self.isolation_level.name})

    @property
    def connection(self) -> PhysicalConnection:
        """The transaction's connection; only available while active."""
        if self.state is not TransactionState.ACTIVE or self._connection is None:
            raise TransactionError(f"Transaction is not active (state: {self.state.value})")
        return self._connection

    def begin(self) -> Transaction:
        if self.state is not TransactionState.NOT_STARTED:
            raise TransactionError(f"Transaction already started (state: {self.state.value})")
        connection = self._pool.acquire()
        connection.add_rollback_listener(self._on_rollback)
        try:
            connection.begin(self.isolation_level.value)
        except BaseException:
            self._release(connection)
            raise
        self._connection = connection
        self.state = TransactionState.ACTIVE
        logging.debug("[transaction] begin", extra={"isolation_level": self.isolation_level.name})
        return self

    def _release(self, connection: PhysicalConnection) -> None:
        # Pooled connections go back on the server default isolation level.
        connection.remove_rollback_listener(self._on_rollback)
        discard = False
        if not connection.in_transaction:
            try:
                connection.reset_isolation_level()
            except MssqlCrLayerError as exc:
                logging.warning("[transaction] could not reset isolation level; discarding connection", exc_info=exc)
                discard = True
        self._pool.release(connection, discard=discard)

    def _finish(self, state: TransactionState) -> None:
        connection = self._connection
        self._connection = None
        self.state = state
        if connection is not None:
            self._release(connection)

    def commit(self) -> None:
        """Commit; on failure roll back (unless already rolled back) and re-raise."""
        connection = self.connection
        try:
            connection.commit()
        except BaseException:
            self.rollback_quietly()
            raise
        self._finish(TransactionState.COMMITTED)
        logging.debug("[transaction] committed")

    def rollback(self) -> None:
        """Roll back explicitly, or do nothing if already rolled back.

        A failed ``commit`` rolls back before re-raising, so the usual
        ``commit``/``rollback`` error handler must not fail here.
        """
        if self.state is TransactionState.ROLLED_BACK:
            return
        connection = self.connection
        try:
            if not self.rolled_back:
                connection.rollback()
        finally:
            self._finish(TransactionState.ROLLED_BACK)
        logging.debug("[transaction] rolled back")

    def rollback_quietly(self) -> None:
        """Roll back after another failure; rollback errors are only logged."""
        if self.state is not TransactionState.ACTIVE:
            return
        try:
            self.rollback()
        except MssqlCrLayerError as exc:
            logging.warning("[transaction] rollback after failure also failed", exc_info=exc)


def run_in_transaction(pool: ConnectionPool, isolation_level: IsolationLevel, work: Callable[[Transaction], T]) -> T:
    """Run ``work`` inside a transaction and commit its result.

    Args:
        pool: Pool to lease the transaction's connection from.
        isolation_level: Isolation level for ``BEGIN TRANSACTION``.
        work: Called with the ``Transaction``; every statement it runs
            must pass the transaction in its options.

    Returns:
        Whatever ``work`` returned.

    Raises:
        Exception: The exception raised by ``work`` or by the commit,
            after the transaction has been rolled back.
    """
    transaction = Transaction(pool, isolation_level).begin()
    try:
        result: Any = work(transaction)
    except BaseException:
        transaction.rollback_quietly()
        raise
    transaction.commit()
    return result
