"""
Tests for the connection-bound client tools.
"""

import pytest

from console_agent.services.db_connector import QueryResponse
from console_agent.services.tools.base import ToolExecutionError
from console_agent.services.tools.client import (
    ExecuteSqlInput,
    ExploreSchemaInput,
    GetTablesInput,
    ValidateSqlInput,
    execute_sql,
    explore_schema,
    get_tables,
    validate_read_only,
    validate_sql,
)

from conftest import query_error


def _response(columns, rows):
    return QueryResponse(
        meta=[{"name": c, "type": ""} for c in columns],
        data=rows,
    )


def test_get_tables_binds_only_given_filters(tool_context, connection) -> None:
    connection.on("information_schema.tables", _response(
        ["table_schema", "table_name", "table_type"],
        [["shop", "orders", "BASE TABLE"]],
    ))

    tables = get_tables(
        GetTablesInput(database="shop", limit=20), tool_context
    )

    assert tables == [
        {"database": "shop", "table": "orders", "type": "BASE TABLE"}
    ]
    sent = connection.queries[0]
    assert sent["params"] == {"database": "shop", "limit": 20}
    assert "LIKE" not in sent["sql"]


def test_explore_schema_splits_qualified_names(tool_context, connection) -> None:
    connection.on("information_schema.columns", _response(
        ["column_name", "data_type"],
        [["event_time", "DateTime"], ["metric", "String"], ["value", "Int64"]],
    ))

    described = explore_schema(
        ExploreSchemaInput(tables=[{"table": "system.metric_log"}]),
        tool_context,
    )

    assert described[0]["database"] == "system"
    assert described[0]["table"] == "metric_log"
    assert connection.queries[0]["params"] == {
        "table": "metric_log",
        "database": "system",
    }
    assert "total_columns" not in described[0]


def test_explore_schema_caps_wide_tables(tool_context, connection) -> None:
    connection.on("information_schema.columns", _response(
        ["column_name", "data_type"],
        [[f"c{i}", "Int32"] for i in range(5)],
    ))

    described = explore_schema(
        ExploreSchemaInput(tables=[{"table": "wide"}]), tool_context
    )
    assert len(described[0]["columns"]) == 3
    assert described[0]["total_columns"] == 5


def test_explore_schema_column_filter(tool_context, connection) -> None:
    connection.on("information_schema.columns", _response(
        ["column_name", "data_type"],
        [["id", "Int32"], ["Name", "String"], ["x", "Int8"]],
    ))
    described = explore_schema(
        ExploreSchemaInput(tables=[{"table": "t", "columns": ["name"]}]),
        tool_context,
    )
    assert described[0]["columns"] == [{"name": "Name", "type": "String"}]


def test_validate_sql_reports_server_error(tool_context, connection) -> None:
    connection.on("EXPLAIN", query_error("Unknown table expression"))
    result = validate_sql(ValidateSqlInput(sql="SELECT * FROM ghost;"), tool_context)
    assert result == {"success": False, "error": "Unknown table expression"}
    assert connection.queries[0]["sql"] == "EXPLAIN SELECT * FROM ghost"


def test_validate_sql_success(tool_context) -> None:
    assert validate_sql(ValidateSqlInput(sql="SELECT 1"), tool_context) == {
        "success": True
    }


def test_execute_sql_caps_rows(tool_context, connection) -> None:
    connection.on("FROM numbers", _response(
        ["n"], [[i] for i in range(11)]
    ))

    result = execute_sql(
        ExecuteSqlInput(sql="SELECT n FROM numbers", max_rows=50),
        tool_context,
    )

    assert result["success"] is True
    assert result["row_count"] == 10
    assert result["truncated"] is True
    assert result["rows"][0] == {"n": 0}
    assert connection.queries[0]["options"] == {"max_rows": 11, "raw": True}


def test_execute_sql_refuses_writes(tool_context, connection) -> None:
    with pytest.raises(ToolExecutionError, match="DROP"):
        execute_sql(ExecuteSqlInput(sql="DROP TABLE orders"), tool_context)
    assert connection.queries == []


def test_read_only_guard_ignores_comments() -> None:
    validate_read_only("SELECT 1 -- delete me later")
    with pytest.raises(ToolExecutionError):
        validate_read_only("SELECT 1; DELETE FROM t")
