"""
Client tools: schema discovery and query execution against
the request's own database connection.

The connection is borrowed from ``ToolContext``; the catalog
refuses to dispatch these tools when the request supplied
none.  Metadata lookups go through ``information_schema`` so
they work on any server that exposes it.
"""

import logging
import re
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from console_agent.services.db_connector import QueryError
from console_agent.services.query_engine import render_query
from console_agent.services.tools import names
from console_agent.services.tools.base import (
    CLIENT,
    ToolContext,
    ToolExecutionError,
    ToolSpec,
)
from console_agent.services.tools.metrics import (
    AnalyzeMetricsInput,
    analyze_metrics,
)

logger = logging.getLogger(__name__)

# Write / DDL statements are never executed on the user's behalf.
_DANGEROUS_SQL_RE = re.compile(
    r"\b(DROP|DELETE|TRUNCATE|UPDATE|INSERT|ALTER|CREATE|"
    r"REPLACE|GRANT|REVOKE|EXEC|EXECUTE|CALL|LOAD|INTO\s+OUTFILE"
    r")\b",
    re.IGNORECASE,
)

_SQL_COMMENT_RE = re.compile(r"--[^\n]*|/\*.*?\*/", re.DOTALL)

_GET_TABLES_SQL = """\
SELECT table_schema, table_name, table_type
FROM information_schema.tables
WHERE 1=1
{% if database %} AND table_schema = :database {% endif %}
{% if name_pattern %} AND table_name LIKE :name_pattern {% endif %}
ORDER BY table_schema, table_name
LIMIT :limit
"""

_COLUMNS_SQL = """\
SELECT column_name, data_type
FROM information_schema.columns
WHERE table_name = :table
{% if database %} AND table_schema = :database {% endif %}
ORDER BY ordinal_position
"""


def strip_sql_comments(sql: str) -> str:
    return _SQL_COMMENT_RE.sub(" ", sql)


def validate_read_only(sql: str) -> None:
    """
    Reject SQL that contains write / DDL statements.

    Raises:
        ToolExecutionError: The statement is not read-only.
    """
    match = _DANGEROUS_SQL_RE.search(strip_sql_comments(sql))
    if match:
        raise ToolExecutionError(
            f"Query contains disallowed statement: {match.group(1).upper()}"
        )


# ----- get_tables ----------------------------------------------------


class GetTablesInput(BaseModel):
    """Filters for listing tables; always narrow on big servers."""

    name_pattern: Optional[str] = Field(
        None, description="SQL LIKE pattern on the table name, e.g. '%user%'."
    )
    database: Optional[str] = Field(None, description="Database name.")
    limit: int = Field(100, ge=1, le=1000)


def get_tables(args: GetTablesInput, ctx: ToolContext) -> List[Dict[str, Any]]:
    sql, params = render_query(_GET_TABLES_SQL, args.model_dump())
    response = ctx.connection.query(sql, params)
    return [
        {
            "database": str(row[0] or ""),
            "table": str(row[1] or ""),
            "type": str(row[2] or "") if len(row) > 2 else "",
        }
        for row in response.json()["data"]
    ]


# ----- explore_schema ------------------------------------------------


class TableRef(BaseModel):
    database: Optional[str] = Field(
        None,
        description="Database name. For 'system.metric_log' use 'system'.",
    )
    table: str = Field(
        ...,
        description="Table name only, without the database prefix.",
    )
    columns: Optional[List[str]] = Field(
        None,
        description="Fetch only these columns; omit for all columns.",
    )


class ExploreSchemaInput(BaseModel):
    """Tables to describe, as an object so providers accept it."""

    tables: List[TableRef] = Field(..., min_length=1)


def explore_schema(
    args: ExploreSchemaInput,
    ctx: ToolContext,
) -> List[Dict[str, Any]]:
    max_columns = ctx.settings.schema_max_columns
    described = []
    for ref in args.tables:
        database, table = ref.database, ref.table
        if not database and "." in table:
            database, table = table.split(".", 1)

        sql, params = render_query(
            _COLUMNS_SQL, {"table": table, "database": database}
        )
        rows = ctx.connection.query(sql, params).json()["data"]
        columns = [
            {"name": str(row[0]), "type": str(row[1] or "")}
            for row in rows
        ]
        if ref.columns:
            wanted = {c.lower() for c in ref.columns}
            columns = [c for c in columns if c["name"].lower() in wanted]

        entry: Dict[str, Any] = {
            "database": database or "",
            "table": table,
            "columns": columns[:max_columns],
        }
        if len(columns) > max_columns:
            entry["total_columns"] = len(columns)
        described.append(entry)
    return described


# ----- validate_sql / execute_sql ------------------------------------


class ValidateSqlInput(BaseModel):
    sql: str = Field(..., min_length=1, description="SQL to check.")


def validate_sql(args: ValidateSqlInput, ctx: ToolContext) -> Dict[str, Any]:
    """Ask the server to plan the statement without running it."""
    sql = args.sql.strip().rstrip(";").strip()
    try:
        ctx.connection.query(f"EXPLAIN {sql}", options={"raw": True})
    except QueryError as exc:
        return {"success": False, "error": exc.data or exc.message}
    return {"success": True}


class ExecuteSqlInput(BaseModel):
    sql: str = Field(..., min_length=1, description="Read-only SQL to run.")
    max_rows: Optional[int] = Field(
        None, ge=1, description="Row cap for the returned sample."
    )


def execute_sql(args: ExecuteSqlInput, ctx: ToolContext) -> Dict[str, Any]:
    validate_read_only(args.sql)
    cap = ctx.settings.max_result_rows
    if args.max_rows:
        cap = min(args.max_rows, cap)

    sql = args.sql.strip().rstrip(";").strip()
    try:
        response = ctx.connection.query(
            sql, options={"max_rows": cap + 1, "raw": True}
        )
    except QueryError as exc:
        return {"success": False, "error": exc.data or exc.message}

    payload = response.json()
    data = payload["data"]
    logger.info("[tools] execute_sql fetched %d row(s)", len(data))
    column_names = [m["name"] for m in payload["meta"]]
    return {
        "success": True,
        "columns": payload["meta"],
        "rows": [dict(zip(column_names, row)) for row in data[:cap]],
        "row_count": min(len(data), cap),
        "truncated": len(data) > cap,
    }


def build_client_tools() -> List[ToolSpec]:
    """Return the client namespace tool specs."""
    return [
        ToolSpec(
            name=names.GET_TABLES,
            description=(
                "List tables with optional filters. Always narrow the "
                "result with 'database' or 'name_pattern' on large "
                "servers."
            ),
            input_model=GetTablesInput,
            executor=get_tables,
            namespace=CLIENT,
        ),
        ToolSpec(
            name=names.EXPLORE_SCHEMA,
            description=(
                "Describe the columns of one or more tables. Split "
                "qualified names: 'system.metric_log' is "
                "database='system', table='metric_log'. Pass "
                "'columns' to fetch only the ones you need."
            ),
            input_model=ExploreSchemaInput,
            executor=explore_schema,
            namespace=CLIENT,
        ),
        ToolSpec(
            name=names.VALIDATE_SQL,
            description=(
                "Check a SQL statement for syntax and semantic errors "
                "without running it. Use before presenting SQL."
            ),
            input_model=ValidateSqlInput,
            executor=validate_sql,
            namespace=CLIENT,
        ),
        ToolSpec(
            name=names.EXECUTE_SQL,
            description=(
                "Run a read-only query and return a capped sample of "
                "rows. Write and DDL statements are refused."
            ),
            input_model=ExecuteSqlInput,
            executor=execute_sql,
            namespace=CLIENT,
        ),
        ToolSpec(
            name=names.ANALYZE_METRICS,
            description=(
                "Analyse a historical server metric over a lookback "
                "window or an absolute ISO 8601 range and summarise "
                "its trend. Supported: memory."
            ),
            input_model=AnalyzeMetricsInput,
            executor=analyze_metrics,
            namespace=CLIENT,
        ),
    ]
