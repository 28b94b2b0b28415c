"""Tests for the MssqlCrLayer request API."""

from datetime import datetime, timezone

import pytest

from mssql_cr_layer import ArityError, BindingError, ExecutionError, MssqlCrLayer, Param, TruncationError
from mssql_cr_layer.services import transaction


@pytest.fixture
def products(server):
    server.create_table("products", ["product_no", "name", "price"])
    return server


class TestConstants:
    def test_wrap(self, layer):
        assert layer.wrap("abc") == "[abc]"

    def test_dialect_and_delimiters(self, layer):
        assert layer.dialect == "mssql"
        assert layer.delimiters == "[]"
        assert MssqlCrLayer.DEFAULT_ISOLATION_LEVEL == "READ_COMMITTED"
        assert MssqlCrLayer.DEFAULT_ISOLATION_LEVEL is transaction.DEFAULT_ISOLATION_LEVEL


class TestQuery:
    def test_positional_params_are_prepared(self, layer, products):
        result = layer.execute("INSERT INTO products VALUES ($1, $2, $3)", [3, "Duck", 0.99])
        assert result == []
        statement, declarations, values = products.executed[-1]
        assert statement == "INSERT INTO products VALUES (@p1, @p2, @p3)"
        assert declarations == "@p1 decimal(1,0), @p2 nvarchar(max), @p3 decimal(3,2)"
        assert values == (3, "Duck", 0.99)
        assert products.tables["products"] == [(3, "Duck", 0.99)]

    def test_statement_is_unprepared(self, layer, products):
        layer.query("SELECT * FROM products", [])
        assert products.prepared == {}
        assert len(products.unprepared) == 1

    def test_named_params(self, layer, products):
        layer.execute("INSERT INTO products VALUES (@no, @name, @price)", {"no": 1, "name": "Cheese", "price": 9.99})
        assert products.tables["products"] == [(1, "Cheese", 9.99)]

    def test_rows_are_dicts(self, layer, products):
        products.tables["products"].append((1, "Cheese", 9.99))
        assert layer.query("SELECT * FROM products") == [{"product_no": 1, "name": "Cheese", "price": 9.99}]

    def test_no_params_runs_directly(self, layer, products):
        layer.query("SELECT * FROM products")
        assert products.prepared == {}
        assert products.unprepared == []
        assert products.executed == []

    def test_empty_params(self, layer, products):
        assert layer.query("SELECT * FROM products", []) == []
        assert layer.query("SELECT * FROM products", {}) == []
        assert layer.query("SELECT * FROM products", {"notuseful": False}) == []

    def test_null_and_falsy_values_are_distinct(self, layer, products):
        layer.execute("INSERT INTO products VALUES ($1, $2, $3)", [0, "", None])
        assert products.tables["products"] == [(0, "", None)]
        rows = layer.query("SELECT * FROM products")
        assert rows[0]["product_no"] == 0
        assert rows[0]["name"] == ""
        assert rows[0]["price"] is None

    def test_aware_datetime_is_sent_with_offset(self, layer, server):
        layer.query("SELECT @at", {"at": Param(datetime(2024, 3, 1, 10, tzinfo=timezone.utc), "datetime")})
        assert server.log[-2][1][1] == "2024-03-01 10:00:00+00:00"

    def test_duplicate_columns_are_folded(self, layer, server):
        server.results["SELECT a.id, b.id, a.name, b.name FROM a JOIN b ON a.id = b.id"] = (
            ("id", "id", "name", "name"),
            [(1, 1, "x", "y")],
        )
        rows = layer.query("SELECT a.id, b.id, a.name, b.name FROM a JOIN b ON a.id = b.id")
        assert rows == [{"id": 1, "name": ["x", "y"]}]

    def test_arity_error_before_reaching_server(self, layer, server):
        with pytest.raises(ArityError):
            layer.query("INSERT INTO products VALUES ($1, $2, $3)", [1, 2])
        assert server.log == []

    def test_truncation_before_reaching_server(self, layer, server):
        with pytest.raises(TruncationError):
            layer.query("SELECT $1", [Param("too long", "string", max_length=3)])
        assert server.log == []

    def test_missing_named_parameter(self, layer, products):
        with pytest.raises(BindingError, match="@price"):
            layer.execute("INSERT INTO products VALUES (@no, @name, @price)", {"no": 1, "name": "x"})

    def test_execution_error_still_unprepares(self, layer, products):
        products.fail_on("INSERT INTO products", "Violation of PRIMARY KEY constraint")
        with pytest.raises(ExecutionError, match="PRIMARY KEY") as info:
            layer.execute("INSERT INTO products VALUES ($1, $2, $3)", [1, "x", 1])
        assert products.prepared == {}
        assert len(products.unprepared) == 1
        assert "PRIMARY KEY" in str(info.value.__cause__)

    def test_truncation_reported_by_server(self, layer, products):
        products.fail_on("INSERT INTO products", "String or binary data would be truncated.")
        with pytest.raises(TruncationError):
            layer.execute("INSERT INTO products VALUES ($1, $2, $3)", [1, "x", 1])

    def test_unknown_table(self, layer):
        with pytest.raises(ExecutionError, match="Invalid object name"):
            layer.query("SELECT * FROM films")

    def test_connection_is_returned_to_pool(self, layer, products):
        layer.query("SELECT * FROM products", [])
        layer.query("SELECT * FROM products", [])
        assert len(products.connections) == 1
        assert layer.connect().idle_count == 1


class TestBatch:
    def test_batch_runs_script_as_is(self, layer, server):
        script = "CREATE TABLE x (a int); INSERT INTO x VALUES ($1)"
        assert layer.batch(script) == []
        assert (script, None) in server.log
        assert server.prepared == {} and server.executed == []

    def test_batch_returns_first_result_set(self, layer, server):
        server.results["SELECT 1 AS ok"] = (("ok",), [(1,)])
        assert layer.batch("SELECT 1 AS ok") == [{"ok": 1}]


class TestConnect:
    def test_same_credentials_reuse_the_pool(self, layer, server):
        first = layer.connect()
        assert layer.connect() is first
        assert len(server.connections) == 1

    def test_changed_password_replaces_the_pool(self, layer, server):
        first = layer.connect()
        second = layer.connect({"password": "changed"})
        assert second is not first
        assert first.closed
        assert server.connections[0].closed
        assert len(server.connections) == 2

    def test_different_database_gets_its_own_pool(self, layer, server):
        films = layer.connect()
        other = layer.connect({"database": "other"})
        assert other is not films
        assert not films.closed

    def test_login_failure_propagates(self, layer, server):
        server.reject_login = True
        with pytest.raises(Exception, match="Login failed"):
            layer.connect()

    def test_close_then_query_reconnects(self, layer, products):
        first = layer.connect()
        layer.close()
        assert first.closed
        assert products.connections[0].closed
        layer.query("SELECT * FROM products")
        assert layer.connect() is not first
        assert len(products.connections) == 2

    def test_close_failure_surfaces(self, layer, server):
        layer.connect()
        server.fail_close = True
        with pytest.raises(ExecutionError, match="close failed"):
            layer.close()
