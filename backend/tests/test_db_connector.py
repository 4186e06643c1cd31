"""
Tests for the SQLAlchemy-backed connection and SQL templates.
"""

import threading

import pytest

from console_agent.config import Settings
from console_agent.schemas import ConnectionConfig
from console_agent.services.db_connector import QueryError, SqlAlchemyConnection
from console_agent.services.query_engine import render_query
from console_agent.services.tools.base import ToolContext
from console_agent.services.tools.client import (
    ExecuteSqlInput,
    ValidateSqlInput,
    execute_sql,
    validate_sql,
)


@pytest.fixture
def sqlite_connection():
    connection = SqlAlchemyConnection("sqlite://")
    yield connection
    connection.close()


def test_query_returns_meta_and_rows(sqlite_connection) -> None:
    response = sqlite_connection.query(
        "SELECT :a AS a, 'x' AS b", {"a": 1}
    )
    assert response.json() == {
        "meta": [{"name": "a", "type": ""}, {"name": "b", "type": ""}],
        "data": [[1, "x"]],
        "rows": 1,
    }
    assert response.records() == [{"a": 1, "b": "x"}]


def test_max_rows_option(sqlite_connection) -> None:
    response = sqlite_connection.query(
        "WITH RECURSIVE n(i) AS (SELECT 1 UNION ALL SELECT i + 1 FROM n "
        "WHERE i < 50) SELECT i FROM n",
        options={"max_rows": 5},
    )
    assert response.rows == 5


def test_bad_sql_raises_query_error(sqlite_connection) -> None:
    with pytest.raises(QueryError) as info:
        sqlite_connection.query("SELECT * FROM ghost")
    assert "ghost" in info.value.data
    assert info.value.message.startswith("Query failed:")


def test_connection_config_url() -> None:
    config = ConnectionConfig(
        host="db", port=3307, username="u", password="p@ss", database_name="shop"
    )
    assert config.sqlalchemy_url() == "mysql+pymysql://u:p%40ss@db:3307/shop"
    assert ConnectionConfig(url="sqlite://").sqlalchemy_url() == "sqlite://"


def test_render_query_keeps_used_params_only() -> None:
    sql, params = render_query(
        "SELECT * FROM t WHERE 1=1 "
        "{% if name %} AND name = :name {% endif %}"
        "{% if kind %} AND kind = :kind {% endif %} LIMIT :limit",
        {"name": "a", "kind": "", "limit": "10"},
    )
    assert ":kind" not in sql
    assert params == {"name": "a", "limit": 10}


def test_render_query_double_escaped_tags() -> None:
    sql, _ = render_query("SELECT 1 {%% if x %%}, :x{%% endif %%}", {"x": 2})
    assert sql == "SELECT 1 , :x"


def test_render_query_unbound_placeholder() -> None:
    with pytest.raises(ValueError, match="missing"):
        render_query("SELECT :missing", {})


def test_render_query_ignores_casts() -> None:
    sql, params = render_query("SELECT '1'::int, :v", {"v": 3})
    assert params == {"v": 3}


def test_raw_option_keeps_colons_in_literals(sqlite_connection) -> None:
    response = sqlite_connection.query(
        "SELECT '{\"a\":1}' AS j, 'x :code' AS k", options={"raw": True}
    )
    assert response.records() == [{"j": '{"a":1}', "k": "x :code"}]


def test_sql_tools_run_model_sql_verbatim(sqlite_connection, registry, model) -> None:
    ctx = ToolContext(
        skills=registry,
        model=model,
        settings=Settings(openai_api_key="test", max_result_rows=10),
        connection=sqlite_connection,
    )
    sql = "SELECT '{\"a\":1}' AS j WHERE 'ab :code' LIKE '% :code%'"

    assert validate_sql(ValidateSqlInput(sql=sql), ctx) == {"success": True}
    result = execute_sql(ExecuteSqlInput(sql=sql), ctx)
    assert result["success"] is True
    assert result["rows"] == [{"j": '{"a":1}'}]


def test_engine_created_once_under_concurrency() -> None:
    connection = SqlAlchemyConnection("sqlite://")
    barrier = threading.Barrier(6)
    engines = []

    def worker() -> None:
        barrier.wait()
        engines.append(connection._get_engine())

    threads = [threading.Thread(target=worker) for _ in range(6)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    connection.close()

    assert len({id(e) for e in engines}) == 1
    assert connection._engine is None
