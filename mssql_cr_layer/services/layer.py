"""
SQL Server common requests layer.

``MssqlCrLayer`` is the public entry point::

    layer = MssqlCrLayer({'user': 'sa', 'password': '...', 'host': 'localhost',
                          'database': 'films', 'pool': {'max': 25, 'idleTimeout': 30000}})
    layer.connect()
    layer.execute('INSERT INTO products VALUES ($1, $2, $3)', [1, 'Cheese', 9.99])
    rows = layer.query('SELECT * FROM products WHERE name = @name', {'name': 'Cheese'})

    def work(t):
        layer.execute('DELETE FROM products', None, {'transaction': t})
        return layer.query('SELECT COUNT(*) AS n FROM products', None, {'transaction': t})

    layer.transaction(work, {'ISOLATION_LEVEL': 'SNAPSHOT'})
    layer.close()

Statements run on a connection leased from the pool for the layer's
config, or on the transaction's connection when ``options`` carries a
``transaction``.  Parameterized statements go through ``sp_prepare`` /
``sp_execute`` and are always unprepared afterwards.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Callable, Iterator, List, Mapping, Optional, Sequence, TypeVar, Union

from ..config import config as env_config
from ..errors import MssqlCrLayerError, TransactionError
from ..infra.db.connection_factory import ConnectionManager
from ..infra.db.mssql import PhysicalConnection
from ..infra.db.pool import ConnectionPool, Connector
from ..sql.binder import bind
from ..sql.results import Row, fold_rows
from .transaction import DEFAULT_ISOLATION_LEVEL as _DEFAULT_ISOLATION_LEVEL
from .transaction import IsolationLevel, Transaction, resolve_isolation_level, run_in_transaction

T = TypeVar('T')

Params = Union[Sequence[Any], Mapping[str, Any], None]
Options = Optional[Mapping[str, Any]]


class MssqlCrLayer:
    """Uniform request API over one SQL Server connection config.

    Args:
        config: Connection settings (``user``, ``password``, ``host``,
            ``port``, ``database``, ``pool``, ``options``).  Missing keys
            fall back to the ``MSSQL_*`` environment defaults.
        isolation_level: Default isolation level for transactions.
        connector: Opens a ``PhysicalConnection`` for a config; defaults
            to the pymssql/pyodbc driver.
    """

    dialect = 'mssql'
    delimiters = '[]'
    DEFAULT_ISOLATION_LEVEL = _DEFAULT_ISOLATION_LEVEL

    def __init__(
        self,
        config: Optional[Mapping[str, Any]] = None,
        *,
        isolation_level: Optional[str] = None,
        connector: Optional[Connector] = None,
    ) -> None:
        defaults = env_config.as_connection_mapping()
        for name, value in (config or {}).items():
            if name in ('pool', 'options') and isinstance(value, Mapping):
                defaults[name] = {**defaults.get(name, {}), **value}
            else:
                defaults[name] = value
        self.isolation_level = isolation_level or env_config.MSSQL_ISOLATION_LEVEL or self.DEFAULT_ISOLATION_LEVEL
        self._manager = ConnectionManager(defaults, connector)

    def connect(self, override: Optional[Mapping[str, Any]] = None) -> ConnectionPool:
        """Return the pool for this layer's config (plus ``override``), connecting if needed."""
        return self._manager.connect(override)

    @contextmanager
    def _connection(self, options: Options) -> Iterator[PhysicalConnection]:
        transaction = (options or {}).get('transaction')
        if transaction is not None:
            if not isinstance(transaction, Transaction):
                raise TransactionError(f"Expected a Transaction in options, got {type(transaction).__name__}")
            yield transaction.connection
            return
        with self.connect().lease() as connection:
            yield connection

    def query(self, statement: str, params: Params = None, options: Options = None) -> List[Row]:
        """Execute a query.

        Args:
            statement: SQL text.  With a sequence of ``params`` the
                placeholders ``$1, $2 ...`` are replaced by the matching
                element; with a mapping ``@key`` placeholders are bound by
                key.
            params: Parameter values, or ``None`` to run ``statement``
                as is.
            options: May hold the ``transaction`` to run in.

        Returns:
            The rows of the first result set, duplicate columns folded.

        Raises:
            ArityError: More positional placeholders than values.
            BindingError: A value cannot be bound, or the server reports an
                undeclared variable.
            TruncationError: A value is too wide for its type.
            ExecutionError: Any other driver failure.
        """
        logging.debug("[layer] QUERY", extra={"statement": statement})
        if params is None:
            with self._connection(options) as connection:
                return fold_rows(connection.run(statement))
        bound = bind(statement, params)
        with self._connection(options) as connection:
            handle = connection.prepare(bound.statement, bound.declarations)
            try:
                rows = connection.execute_prepared(handle, bound.values)
            except BaseException:
                self._unprepare_after_failure(connection, handle)
                raise
            connection.unprepare(handle)
        return fold_rows(rows)

    @staticmethod
    def _unprepare_after_failure(connection: PhysicalConnection, handle: int) -> None:
        try:
            connection.unprepare(handle)
        except MssqlCrLayerError as exc:
            logging.warning("[layer] unprepare after a failed execution also failed", exc_info=exc)

    def execute(self, statement: str, params: Params = None, options: Options = None) -> List[Row]:
        """Execute a command; same as ``query``."""
        return self.query(statement, params, options)

    def batch(self, script: str, options: Options = None) -> List[Row]:
        """Execute a multi-statement script without parameter binding."""
        logging.debug("[layer] BATCH", extra={"script": script})
        with self._connection(options) as connection:
            return fold_rows(connection.run(script))

    def _isolation(self, options: Options) -> IsolationLevel:
        return resolve_isolation_level((options or {}).get('ISOLATION_LEVEL') or self.isolation_level)

    def transaction(self, work: Callable[[Transaction], T], options: Options = None) -> T:
        """Run ``work(transaction)`` and commit, or roll back if it raises.

        Every statement inside ``work`` must pass the transaction as the
        ``transaction`` option.  The exception raised by ``work`` (or by
        the commit) propagates after the rollback.
        """
        level = self._isolation(options)
        return run_in_transaction(self.connect(), level, work)

    def begin_transaction(self, options: Options = None) -> Transaction:
        """Begin a transaction to be finished with ``commit`` or ``rollback``."""
        level = self._isolation(options)
        return Transaction(self.connect(), level).begin()

    def commit(self, transaction: Transaction) -> None:
        transaction.commit()

    def rollback(self, transaction: Transaction) -> None:
        transaction.rollback()

    def close(self) -> None:
        """Close all pooled connections."""
        self._manager.close()

    def wrap(self, identifier: str) -> str:
        """Wrap the identifier within the appropriate delimiters."""
        return self.delimiters[0] + identifier + self.delimiters[1]
