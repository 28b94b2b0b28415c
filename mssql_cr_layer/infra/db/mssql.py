"""
SQL Server driver boundary.

Connections are opened with ``pymssql`` when it is installed and fall
back to ``pyodbc`` otherwise (``options['driver']`` forces one of them).
Both are DB-API 2.0 drivers; the only difference this module cares about
is the parameter marker (``%s`` for pymssql, ``?`` for pyodbc).

``PhysicalConnection`` wraps one autocommit DB-API connection and offers
the primitives the rest of the package is built on:

* ``run`` – execute a statement or batch and return its first result set;
* ``prepare`` / ``execute_prepared`` / ``unprepare`` – server side
  prepared statements through ``sp_prepare``, ``sp_execute`` and
  ``sp_unprepare``;
* ``begin`` / ``commit`` / ``rollback`` – explicit T-SQL transactions;
* rollback listeners, notified whenever the open transaction is rolled
  back, including autonomous rollbacks by the server (deadlock victims,
  ``XACT_ABORT``), which are detected through ``@@TRANCOUNT`` after a
  failed statement.

Driver exceptions are translated into the ``mssql_cr_layer.errors``
taxonomy with the driver exception chained as ``__cause__``.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, List, Optional, Sequence

from ...config.connection import ConnectionConfig
from ...errors import ConfigurationError, MssqlCrLayerError, TransactionError, translate_driver_error
from ...sql.results import Row, build_row

RollbackListener = Callable[[], None]

DEFAULT_ODBC_DRIVER = 'ODBC Driver 17 for SQL Server'

# SQL Server's own session default.
SESSION_ISOLATION_LEVEL = 'READ COMMITTED'


def _adapt(value: Any) -> Any:
    # Neither driver binds tz-aware datetimes reliably; the server parses
    # the ISO form into datetimeoffset.
    if isinstance(value, datetime) and value.tzinfo is not None:
        return value.isoformat(sep=' ')
    return value


class PhysicalConnection:
    """One live DB-API connection to SQL Server."""

    def __init__(self, conn: Any, module: Any) -> None:
        self._conn = conn
        self._module = module
        self.driver: str = getattr(module, '__name__', 'unknown')
        self._marker = '%s' if getattr(module, 'paramstyle', 'qmark') in ('format', 'pyformat') else '?'
        self._listeners: List[RollbackListener] = []
        self.in_transaction = False
        self.isolation_level = SESSION_ISOLATION_LEVEL
        self.closed = False

    def _markers(self, count: int) -> str:
        return ', '.join([self._marker] * count)

    def _execute(self, sql: str, values: Optional[Sequence[Any]]) -> Any:
        cursor = self._conn.cursor()
        if values:
            cursor.execute(sql, tuple(_adapt(v) for v in values))
        else:
            cursor.execute(sql)
        return cursor

    def run(self, sql: str, values: Optional[Sequence[Any]] = None) -> List[Row]:
        """Execute ``sql`` and return the rows of its first result set.

        Raises:
            MssqlCrLayerError: The translated driver error.
        """
        cursor = None
        try:
            cursor = self._execute(sql, values)
            while True:
                if cursor.description:
                    columns = [d[0] for d in cursor.description]
                    return [build_row(columns, r) for r in cursor.fetchall()]
                if not cursor.nextset():
                    return []
        except self._module.Error as exc:
            self._check_autonomous_rollback()
            raise translate_driver_error(exc) from exc
        finally:
            if cursor is not None:
                cursor.close()

    def _scalar(self, sql: str, values: Optional[Sequence[Any]], column: str) -> Any:
        """Return the value of ``column`` from the last result set exposing it."""
        cursor = None
        found = None
        try:
            cursor = self._execute(sql, values)
            while True:
                if cursor.description and cursor.description[0][0] == column:
                    row = cursor.fetchone()
                    if row is not None:
                        found = row[0]
                elif cursor.description:
                    cursor.fetchall()
                if not cursor.nextset():
                    return found
        except self._module.Error as exc:
            self._check_autonomous_rollback()
            raise translate_driver_error(exc) from exc
        finally:
            if cursor is not None:
                cursor.close()

    # -- prepared statements --

    def prepare(self, statement: str, declarations: Optional[str]) -> int:
        """Prepare ``statement`` on the server and return its handle."""
        sql = (
            "SET NOCOUNT ON; DECLARE @handle int; "
            f"EXEC sp_prepare @handle OUTPUT, {self._marker}, {self._marker}; "
            "SELECT @handle AS handle"
        )
        handle = self._scalar(sql, (declarations, statement), 'handle')
        if handle is None:
            raise MssqlCrLayerError('sp_prepare returned no statement handle')
        return handle

    def execute_prepared(self, handle: int, values: Sequence[Any]) -> List[Row]:
        sql = f"EXEC sp_execute {self._markers(1 + len(values))}"
        return self.run(sql, (handle, *values))

    def unprepare(self, handle: int) -> None:
        self.run(f"EXEC sp_unprepare {self._marker}", (handle,))

    # -- transactions --

    def add_rollback_listener(self, listener: RollbackListener) -> None:
        self._listeners.append(listener)

    def remove_rollback_listener(self, listener: RollbackListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify_rollback(self) -> None:
        self.in_transaction = False
        for listener in list(self._listeners):
            listener()

    def trancount(self) -> int:
        return self._scalar("SELECT @@TRANCOUNT AS trancount", None, 'trancount') or 0

    def _check_autonomous_rollback(self) -> None:
        if not self.in_transaction:
            return
        try:
            count = self.trancount()
        except MssqlCrLayerError as exc:
            logging.warning("[mssql] could not read @@TRANCOUNT after a failed statement", exc_info=exc)
            return
        if count == 0:
            logging.info("[mssql] transaction rolled back by the server", extra={"driver": self.driver})
            self._notify_rollback()

    def _control(self, sql: str, action: str) -> None:
        try:
            self.run(sql)
        except MssqlCrLayerError as exc:
            raise TransactionError(f"{action} failed: {exc}") from exc

    def begin(self, isolation_level: str) -> None:
        # SET TRANSACTION ISOLATION LEVEL outlives the transaction; see
        # reset_isolation_level.
        self.isolation_level = isolation_level
        self._control(f"SET TRANSACTION ISOLATION LEVEL {isolation_level}; BEGIN TRANSACTION", 'Begin transaction')
        self.in_transaction = True

    def reset_isolation_level(self) -> None:
        """Put the session back on the server default isolation level."""
        if self.isolation_level == SESSION_ISOLATION_LEVEL:
            return
        self._control(f"SET TRANSACTION ISOLATION LEVEL {SESSION_ISOLATION_LEVEL}", 'Reset isolation level')
        self.isolation_level = SESSION_ISOLATION_LEVEL

    def commit(self) -> None:
        self._control("COMMIT TRANSACTION", 'Commit')
        self.in_transaction = False

    def rollback(self) -> None:
        self._control("ROLLBACK TRANSACTION", 'Rollback')
        self._notify_rollback()

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._listeners.clear()
        try:
            self._conn.close()
        except self._module.Error as exc:
            raise translate_driver_error(exc) from exc


def _connect_pymssql(cfg: ConnectionConfig) -> PhysicalConnection:
    import pymssql  # type: ignore[import]

    conn = pymssql.connect(
        server=cfg.host,
        user=cfg.user,
        password=cfg.password,
        database=cfg.database,
        port=cfg.port,
        autocommit=True,
    )
    return PhysicalConnection(conn, pymssql)


def _connect_pyodbc(cfg: ConnectionConfig) -> PhysicalConnection:
    import pyodbc  # type: ignore[import]

    options = cfg.options
    driver = options.get('odbc_driver', DEFAULT_ODBC_DRIVER)
    conn_str = (
        f"DRIVER={{{driver}}};"
        f"SERVER={cfg.host},{cfg.port};"
        f"DATABASE={cfg.database or ''};"
        f"UID={cfg.user or ''};PWD={cfg.password or ''};"
        f"Encrypt={'yes' if options.get('encrypt', True) else 'no'};"
        f"TrustServerCertificate={'yes' if options.get('trust_server_certificate', True) else 'no'};"
    )
    conn = pyodbc.connect(conn_str, autocommit=True)
    return PhysicalConnection(conn, pyodbc)


_DRIVERS = {
    'pymssql': _connect_pymssql,
    'pyodbc': _connect_pyodbc,
}


def _open(cfg: ConnectionConfig) -> PhysicalConnection:
    forced = cfg.options.get('driver')
    if forced:
        if forced not in _DRIVERS:
            raise ConfigurationError(f"Unsupported driver: {forced}")
        return _DRIVERS[forced](cfg)
    # Try pymssql first
    try:
        return _connect_pymssql(cfg)
    except ImportError:
        pass
    # Fallback to pyodbc
    try:
        return _connect_pyodbc(cfg)
    except ImportError:
        raise ImportError(
            "Neither pymssql nor pyodbc is installed. Install one of them to connect to SQL Server."
        ) from None


def open_connection(cfg: ConnectionConfig) -> PhysicalConnection:
    """Open a physical connection for ``cfg``.

    Args:
        cfg: The normalized connection configuration.

    Returns:
        A connected ``PhysicalConnection`` in autocommit mode.

    Raises:
        ImportError: If neither driver is installed.
        ExecutionError: If the server rejects the connection.
    """
    logging.info("[mssql] connecting", extra={"host": cfg.host, "port": cfg.port, "database": cfg.database, "user": cfg.user})
    try:
        connection = _open(cfg)
    except (ImportError, MssqlCrLayerError):
        raise
    except Exception as exc:
        raise translate_driver_error(exc) from exc
    if cfg.options.get('enable_arith_abort', True):
        try:
            connection.run("SET ARITHABORT ON")
        except MssqlCrLayerError:
            try:
                connection.close()
            except MssqlCrLayerError as exc:
                logging.warning("[mssql] failed to close connection after session setup error", exc_info=exc)
            raise
    return connection
