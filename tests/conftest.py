"""Shared test fixtures.

``FakeServer`` stands in for SQL Server behind a DB-API shaped fake
driver, so the layer runs its real prepare/execute/transaction code
paths without a live database.  It understands the control statements
the driver boundary issues (``sp_prepare``, ``sp_execute``,
``sp_unprepare``, ``BEGIN``/``COMMIT``/``ROLLBACK``, ``@@TRANCOUNT``) and a
tiny subset of SQL: ``INSERT INTO t VALUES (...)`` and ``SELECT * FROM t``.
"""

import re
import types

import pytest

from mssql_cr_layer.infra.db.mssql import PhysicalConnection
from mssql_cr_layer.services.layer import MssqlCrLayer


class FakeError(Exception):
    pass


def make_module(paramstyle="qmark"):
    module = types.ModuleType("fakedb")
    module.paramstyle = paramstyle
    module.Error = FakeError
    return module


_INSERT_RE = re.compile(r"^\s*INSERT INTO (\w+)\s+VALUES\s*\((.*)\)\s*$", re.IGNORECASE | re.DOTALL)
_SELECT_RE = re.compile(r"^\s*SELECT \* FROM (\w+)\s*$", re.IGNORECASE)
_VARIABLE_RE = re.compile(r"@(\w+)")


def _split_declarations(declarations):
    if not declarations:
        return []
    return [part.split(" ", 1)[0].lstrip("@") for part in declarations.split(", ")]


def _literal(token, bound):
    token = token.strip()
    if token.startswith("@"):
        return bound[token[1:]]
    if token.startswith("'"):
        return token.strip("'")
    if token.upper() == "NULL":
        return None
    return float(token) if "." in token else int(token)


class FakeCursor:
    def __init__(self, conn):
        self._conn = conn
        self._sets = []
        self.description = None
        self._rows = []
        self.closed = False

    def execute(self, sql, params=None):
        self._conn.server.log.append((sql, params))
        self._sets = self._conn.handle(sql, tuple(params or ()))
        self._advance()

    def _advance(self):
        if self._sets:
            columns, rows = self._sets.pop(0)
            self.description = [(name, None, None, None, None, None, None) for name in columns]
            self._rows = list(rows)
            return True
        self.description = None
        self._rows = []
        return False

    def fetchall(self):
        rows, self._rows = self._rows, []
        return rows

    def fetchone(self):
        return self._rows.pop(0) if self._rows else None

    def nextset(self):
        return self._advance() or None

    def close(self):
        self.closed = True


class FakeConnection:
    def __init__(self, server, cfg):
        self.server = server
        self.cfg = cfg
        self.trancount = 0
        self.pending = []
        self.isolation_level = None
        self.closed = False

    def cursor(self):
        return FakeCursor(self)

    def close(self):
        if self.server.fail_close:
            raise FakeError("close failed")
        self.closed = True

    def handle(self, sql, params):
        server = self.server
        self._maybe_fail(sql)
        if "sp_prepare" in sql:
            declarations, statement = params
            declared = set(_split_declarations(declarations))
            for name in _VARIABLE_RE.findall(statement):
                if name not in declared:
                    raise FakeError(f'Must declare the scalar variable "@{name}".')
            server.next_handle += 1
            server.prepared[server.next_handle] = (statement, declarations)
            return [(("handle",), [(server.next_handle,)])]
        if sql.startswith("EXEC sp_execute "):
            handle, *values = params
            statement, declarations = server.prepared[handle]
            self._maybe_fail(statement)
            bound = dict(zip(_split_declarations(declarations), values))
            server.executed.append((statement, declarations, tuple(values)))
            return self.interpret(statement, bound)
        if sql.startswith("EXEC sp_unprepare "):
            server.unprepared.append(params[0])
            del server.prepared[params[0]]
            return []
        if "BEGIN TRANSACTION" in sql:
            self.isolation_level = sql.split("ISOLATION LEVEL ", 1)[1].split(";", 1)[0]
            server.isolation_levels.append(self.isolation_level)
            self.trancount = 1
            self.pending = []
            return []
        if sql.startswith("SET TRANSACTION ISOLATION LEVEL "):
            self.isolation_level = sql[len("SET TRANSACTION ISOLATION LEVEL "):]
            return []
        if sql == "COMMIT TRANSACTION":
            if self.trancount == 0:
                raise FakeError("The COMMIT TRANSACTION request has no corresponding BEGIN TRANSACTION.")
            for table, row in self.pending:
                server.tables[table].append(row)
            self.pending = []
            self.trancount = 0
            return []
        if sql == "ROLLBACK TRANSACTION":
            if self.trancount == 0:
                raise FakeError("The ROLLBACK TRANSACTION request has no corresponding BEGIN TRANSACTION.")
            self.pending = []
            self.trancount = 0
            return []
        if sql == "SELECT @@TRANCOUNT AS trancount":
            return [(("trancount",), [(self.trancount,)])]
        if sql == "SET ARITHABORT ON":
            return []
        return self.interpret(sql, {})

    def _maybe_fail(self, text):
        for marker, (error, autonomous) in self.server.failures.items():
            if marker in text:
                if autonomous:
                    self.trancount = 0
                    self.pending = []
                raise error

    def interpret(self, statement, bound):
        server = self.server
        if statement in server.results:
            return [server.results[statement]]
        match = _INSERT_RE.match(statement)
        if match:
            table = match.group(1)
            self._require(table)
            row = tuple(_literal(token, bound) for token in match.group(2).split(","))
            if self.trancount:
                self.pending.append((table, row))
            else:
                server.tables[table].append(row)
            return []
        match = _SELECT_RE.match(statement)
        if match:
            table = match.group(1)
            self._require(table)
            rows = server.tables[table] + [row for t, row in self.pending if t == table]
            return [(server.columns[table], rows)]
        return []

    def _require(self, table):
        if table not in self.server.tables:
            raise FakeError(f"Invalid object name '{table}'.")


class FakeServer:
    def __init__(self, paramstyle="qmark"):
        self.module = make_module(paramstyle)
        self.tables = {}
        self.columns = {}
        self.results = {}
        self.failures = {}
        self.prepared = {}
        self.next_handle = 0
        self.executed = []
        self.unprepared = []
        self.isolation_levels = []
        self.log = []
        self.connections = []
        self.logins = []
        self.reject_login = False
        self.fail_close = False

    def create_table(self, name, columns):
        self.tables[name] = []
        self.columns[name] = tuple(columns)

    def fail_on(self, marker, message, autonomous_rollback=False):
        """Raise ``FakeError(message)`` for statements containing ``marker``."""
        self.failures[marker] = (FakeError(message), autonomous_rollback)

    def connector(self, cfg):
        self.logins.append(cfg)
        if self.reject_login:
            raise FakeError(f"Login failed for user '{cfg.user}'.")
        conn = FakeConnection(self, cfg)
        self.connections.append(conn)
        return PhysicalConnection(conn, self.module)


@pytest.fixture
def server():
    return FakeServer()


@pytest.fixture
def layer(server):
    layer = MssqlCrLayer(
        {"user": "sa", "password": "secret", "host": "db", "database": "films", "pool": {"max": 5}},
        connector=server.connector,
    )
    yield layer
    server.fail_close = False
    layer.close()
