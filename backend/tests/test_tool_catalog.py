"""
Tests for tool declaration, validation and dispatch.
"""

import json

import pytest
from pydantic import BaseModel

from console_agent.services.llm import ModelResponse, ToolCallRequest
from console_agent.services.tools import names
from console_agent.services.tools.base import (
    CLIENT,
    SERVER,
    ToolCatalog,
    ToolNotFound,
    ToolSpec,
    ToolValidationError,
)


class _EchoInput(BaseModel):
    text: str


def _echo(args, ctx):
    return {"echo": args.text}


def _boom(args, ctx):
    raise RuntimeError("kaput")


def test_catalog_lists_both_namespaces(catalog: ToolCatalog) -> None:
    assert catalog.names(SERVER) == list(names.SERVER_TOOL_NAMES)
    assert catalog.names(CLIENT) == list(names.CLIENT_TOOL_NAMES)
    assert names.PLAN not in catalog.names()


def test_declarations_follow_requested_order(catalog: ToolCatalog) -> None:
    decls = catalog.declarations(["execute_sql", "nope", "skill"])
    assert [d.name for d in decls] == ["execute_sql", "skill"]
    assert decls[0].input_schema["required"] == ["sql"]


def test_skill_description_lists_available_skills(catalog: ToolCatalog) -> None:
    description = catalog.get(names.SKILL).description
    assert "<skills>" in description
    assert "<name>sql-generation</name>" in description
    assert "<description>Tune queries</description>" in description


def test_duplicate_names_rejected() -> None:
    spec = ToolSpec("echo", "Echo", _EchoInput, _echo)
    with pytest.raises(ValueError, match="Duplicate"):
        ToolCatalog(server=[spec, spec])


def test_namespace_mismatch_rejected() -> None:
    spec = ToolSpec("echo", "Echo", _EchoInput, _echo, namespace=CLIENT)
    with pytest.raises(ValueError, match="namespace"):
        ToolCatalog(server=[spec])


def test_validate_reports_field_errors() -> None:
    spec = ToolSpec("echo", "Echo", _EchoInput, _echo)
    catalog = ToolCatalog(server=[spec])
    with pytest.raises(ToolValidationError, match="text"):
        catalog.validate(spec, {})
    with pytest.raises(ToolValidationError, match="valid JSON"):
        catalog.validate(spec, "{not json")
    assert catalog.validate(spec, '{"text": "hi"}').text == "hi"


def test_unknown_tool_returns_not_found(catalog, tool_context) -> None:
    result = catalog.dispatch(
        ToolCallRequest(id="c1", name="drop_everything", arguments={}),
        tool_context,
    )
    assert isinstance(result, ToolNotFound)
    assert result.is_error
    assert "Unknown tool 'drop_everything'" in result.output["error"]
    assert "generate_sql" in result.output["error"]


def test_invalid_arguments_become_error_result(catalog, tool_context) -> None:
    result = catalog.dispatch(
        ToolCallRequest(id="c1", name="skill", arguments={"names": []}),
        tool_context,
    )
    assert result.is_error
    assert result.output["success"] is False
    assert "names" in result.output["error"]


def test_client_tool_without_connection(catalog, tool_context) -> None:
    tool_context.connection = None
    result = catalog.dispatch(
        ToolCallRequest(
            id="c1", name="execute_sql", arguments={"sql": "SELECT 1"}
        ),
        tool_context,
    )
    assert result.is_error
    assert "needs a database connection" in result.output["error"]


def test_executor_exception_is_contained(tool_context) -> None:
    catalog = ToolCatalog(server=[ToolSpec("boom", "Boom", _EchoInput, _boom)])
    result = catalog.dispatch(
        ToolCallRequest(id="c1", name="boom", arguments='{"text": "x"}'),
        tool_context,
    )
    assert result.is_error
    assert result.output == {"success": False, "error": "kaput"}
    assert result.input == {"text": "x"}


def test_skill_tool_partial_success(catalog, tool_context) -> None:
    result = catalog.dispatch(
        ToolCallRequest(
            id="c1",
            name="skill",
            arguments={"names": ["visualization", "ghost", "SQL-GENERATION"]},
        ),
        tool_context,
    )
    assert not result.is_error
    output = result.output
    assert output.index("# Manual Loaded: visualization") < output.index(
        "# Manual Loaded: sql-generation"
    )
    assert "Note: Skill(s) not found: ghost." in output
    assert "Available skills: optimization, sql-generation, visualization" in output


def test_skill_tool_nothing_found(catalog, tool_context) -> None:
    result = catalog.dispatch(
        ToolCallRequest(id="c1", name="skill", arguments={"names": ["ghost"]}),
        tool_context,
    )
    assert result.output.startswith("No skills found. Requested: ghost.")
    assert "Available: optimization, sql-generation, visualization." in result.output


def test_skill_resource_tool(catalog, tool_context) -> None:
    result = catalog.dispatch(
        ToolCallRequest(
            id="c1",
            name="skill_resource",
            arguments={
                "skill": "optimization",
                "paths": ["rules/filtering.md", "rules/missing.md"],
            },
        ),
        tool_context,
    )
    assert "# Skill Resource: optimization / rules/filtering.md" in result.output
    assert "Filter on the sorting key." in result.output
    assert "Resource(s) not found: rules/missing.md" in result.output


def test_generate_sql_tool_uses_request_context(
    catalog, tool_context, model
) -> None:
    from console_agent.schemas import DatabaseContext

    tool_context.database_context = DatabaseContext(
        database="shop",
        tables=[{"name": "orders", "columns": ["id", "total"]}],
    )
    model.push(ModelResponse(text=json.dumps({
        "sql": "SELECT sum(total) FROM orders",
        "notes": "Sum of totals",
    })))

    result = catalog.dispatch(
        ToolCallRequest(
            id="c1",
            name="generate_sql",
            arguments={"question": "total revenue"},
        ),
        tool_context,
    )
    assert not result.is_error
    assert result.output["sql"] == "SELECT sum(total) FROM orders"
    assert result.output["needs_clarification"] is False

    system_text = "\n".join(
        m["content"] for m in model.calls[0]["messages"]
        if m["role"] == "system"
    )
    assert "Current database: shop" in system_text
    assert '"orders"' in system_text
    assert "# Manual Loaded: sql-generation" in system_text


def test_sub_agent_failure_is_an_error_result(catalog, tool_context, model) -> None:
    model.push(ModelResponse(text="not json"))
    result = catalog.dispatch(
        ToolCallRequest(
            id="c1",
            name="optimize_sql",
            arguments={"sql": "SELECT * FROM t"},
        ),
        tool_context,
    )
    assert result.is_error
    assert "invalid JSON" in result.output["error"]
