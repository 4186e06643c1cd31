"""
Tests for the turn orchestrator.
"""

import json
import threading

import pytest
from pydantic import BaseModel

from console_agent.schemas import (
    ChatMessage,
    ChatRequest,
    DatabaseContext,
    TokenUsage,
    ToolCallPayload,
)
from console_agent.services.agents.orchestrator import (
    Orchestrator,
    prune_validated_sql,
    to_model_messages,
)
from console_agent.services.event_stream import EventStream
from console_agent.services.llm import (
    ModelError,
    ModelResponse,
    ToolCallRequest,
    assistant_message,
    tool_message,
)
from console_agent.services.tools.base import ToolCatalog, ToolSpec


@pytest.fixture
def orchestrator(model, catalog, registry, test_settings) -> Orchestrator:
    return Orchestrator(
        model=model,
        catalog=catalog,
        skills=registry,
        settings=test_settings,
    )


def _request(text: str, **kwargs) -> ChatRequest:
    return ChatRequest(
        messages=[ChatMessage(role="user", content=text)], **kwargs
    )


def _events(stream: EventStream):
    return [e.model_dump(exclude_none=True) for e in stream.history]


def test_plain_answer(orchestrator, model) -> None:
    model.push(ModelResponse(
        text="Hello!",
        usage=TokenUsage(input_tokens=3, output_tokens=2, total_tokens=5),
    ))
    stream = EventStream()

    orchestrator.run_turn(_request("@general hi"), stream)

    events = _events(stream)
    assert [e["type"] for e in events] == ["plan", "text-delta", "done"]
    assert events[0]["intent"] == "general-chat"
    assert events[1]["delta"] == "Hello!"
    done = events[-1]
    assert done["metadata"]["plan"]["intent"] == "general-chat"
    assert done["metadata"]["usage"]["total_tokens"] == 5

    call = model.calls[0]
    assert call["messages"][0]["role"] == "system"
    assert "Database context: none provided." in call["messages"][0]["content"]
    assert [t.name for t in call["tools"]] == [
        "skill", "get_tables", "explore_schema", "generate_sql", "execute_sql",
    ]


def test_concurrent_tool_calls_keep_ordering(model, registry, test_settings) -> None:
    barrier = threading.Barrier(2, timeout=5)

    class _In(BaseModel):
        value: str

    def slow(args, ctx):
        barrier.wait()
        return {"value": args.value}

    catalog = ToolCatalog(server=[
        ToolSpec("first", "First", _In, slow),
        ToolSpec("second", "Second", _In, slow),
    ])
    orchestrator = Orchestrator(model, catalog, registry, settings=test_settings)

    model.push(ModelResponse(tool_calls=[
        ToolCallRequest(id="c1", name="first", arguments={"value": "a"}),
        ToolCallRequest(id="c2", name="second", arguments='{"value": "b"}'),
    ]))
    model.push(ModelResponse(text="Both done."))
    stream = EventStream()

    orchestrator.run_turn(_request("@general run both"), stream)

    types = [e["type"] for e in _events(stream)]
    assert types[:3] == ["plan", "tool-call", "tool-call"]
    assert sorted(types[3:5]) == ["tool-result", "tool-result"]
    assert types[5:] == ["text-delta", "done"]

    second_call = model.calls[1]["messages"]
    assert second_call[-3]["tool_calls"][1]["function"]["name"] == "second"
    assert [m["tool_call_id"] for m in second_call[-2:]] == ["c1", "c2"]
    assert json.loads(second_call[-1]["content"]) == {"value": "b"}


def test_tool_errors_are_fed_back(orchestrator, model) -> None:
    model.push(ModelResponse(tool_calls=[
        ToolCallRequest(id="c1", name="nope", arguments={}),
    ]))
    model.push(ModelResponse(text="Sorry."))
    stream = EventStream()

    orchestrator.run_turn(_request("@general do it"), stream)

    result = [e for e in _events(stream) if e["type"] == "tool-result"][0]
    assert result["is_error"] is True
    assert "Unknown tool 'nope'" in result["output"]["error"]
    assert stream.history[-1].type == "done"


def test_client_tools_use_request_connection(
    model, catalog, registry, test_settings, connection
) -> None:
    orchestrator = Orchestrator(model, catalog, registry, settings=test_settings)
    model.push(ModelResponse(tool_calls=[
        ToolCallRequest(id="c1", name="validate_sql", arguments={"sql": "SELECT 1"}),
    ]))
    model.push(ModelResponse(text="Valid."))
    stream = EventStream()

    orchestrator.run_turn(
        _request(
            "@generator check SELECT 1",
            context=DatabaseContext(database="shop"),
        ),
        stream,
        connection,
    )

    assert connection.queries[0]["sql"] == "EXPLAIN SELECT 1"
    result = [e for e in _events(stream) if e["type"] == "tool-result"][0]
    assert result["output"] == {"success": True}
    assert "Current database: shop" in model.calls[0]["messages"][0]["content"]


def test_planner_failure_still_completes(orchestrator, model) -> None:
    model.push(ModelError("planner down"))
    model.push(ModelResponse(text="Hi there."))
    stream = EventStream()

    orchestrator.run_turn(_request("tell me something"), stream)

    events = _events(stream)
    assert events[0]["intent"] == "general-chat"
    assert events[0]["reasoning"] == "Classification failed"
    assert events[-1]["type"] == "done"


def test_model_failure_emits_single_error(orchestrator, model) -> None:
    model.push(ModelError("quota exceeded"))
    stream = EventStream()

    orchestrator.run_turn(_request("@general hi"), stream)

    events = _events(stream)
    assert [e["type"] for e in events] == ["plan", "error"]
    assert "quota exceeded" in events[-1]["message"]
    assert stream.is_closed


def test_step_limit_ends_with_done(orchestrator, model, test_settings) -> None:
    for i in range(test_settings.max_steps):
        model.push(ModelResponse(tool_calls=[
            ToolCallRequest(id=f"c{i}", name="skill", arguments={"names": ["visualization"]}),
        ]))
    stream = EventStream()

    orchestrator.run_turn(_request("@general loop"), stream)

    events = _events(stream)
    assert events[-1]["type"] == "done"
    assert "step limit" in events[-2]["delta"]
    assert len(model.calls) == test_settings.max_steps


def test_cancelled_stream_stops_quietly(orchestrator, model) -> None:
    model.push(ModelResponse(text="ignored"))
    stream = EventStream()
    stream.cancel()

    orchestrator.run_turn(_request("@general hi"), stream)

    assert stream.history == []
    assert model.calls == []


def test_to_model_messages_round_trips_tool_calls() -> None:
    messages = [
        ChatMessage(role="system", content="client prompt"),
        ChatMessage(role="user", content="q"),
        ChatMessage(
            role="assistant",
            content="",
            tool_calls=[ToolCallPayload(id="c1", name="get_tables", arguments={})],
        ),
        ChatMessage(role="tool", tool_call_id="c1", content="[]"),
    ]
    converted = to_model_messages(messages)
    assert [m["role"] for m in converted] == ["user", "assistant", "tool"]
    assert converted[1]["tool_calls"][0]["function"]["arguments"] == "{}"
    assert converted[2] == {"role": "tool", "tool_call_id": "c1", "content": "[]"}


def test_prune_validated_sql_drops_old_successes_only() -> None:
    ok = ToolCallRequest(id="v1", name="validate_sql", arguments={"sql": "SELECT 1"})
    bad = ToolCallRequest(id="v2", name="validate_sql", arguments={"sql": "SELEC"})
    run = ToolCallRequest(id="e1", name="execute_sql", arguments={"sql": "SELECT 1"})
    current = ToolCallRequest(id="v3", name="validate_sql", arguments={"sql": "SELECT 2"})
    history = [
        {"role": "user", "content": "first"},
        assistant_message("", [ok, bad, run]),
        tool_message("v1", {"success": True}),
        tool_message("v2", {"success": False, "error": "syntax"}),
        tool_message("e1", {"success": True, "rows": []}),
        {"role": "assistant", "content": "Done."},
        {"role": "user", "content": "second"},
        assistant_message("", [current]),
        tool_message("v3", {"success": True}),
    ]

    pruned = prune_validated_sql(history)

    ids = [m.get("tool_call_id") for m in pruned if m["role"] == "tool"]
    assert ids == ["v2", "e1", "v3"]
    assert [c["id"] for c in pruned[1]["tool_calls"]] == ["v2", "e1"]
    assert pruned[-2]["tool_calls"][0]["id"] == "v3"
