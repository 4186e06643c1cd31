"""
Shared fixtures: scripted model, recording connection, skills.

Run with:
$ pytest -q
"""

import json
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

import pytest

from console_agent.config import Settings
from console_agent.services.db_connector import (
    Connection,
    QueryError,
    QueryResponse,
)
from console_agent.services.llm import ModelClient, ModelError, ModelResponse
from console_agent.services.skills import SkillRegistry
from console_agent.services.tools.base import ToolCatalog, ToolContext
from console_agent.services.tools.client import build_client_tools
from console_agent.services.tools.server import build_server_tools


Reply = Union[ModelResponse, Exception]


class ScriptedModelClient(ModelClient):
    """Returns queued replies in order and records every call."""

    def __init__(self, replies: Sequence[Reply] = ()) -> None:
        self.replies: List[Reply] = list(replies)
        self.calls: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def push(self, reply: Reply) -> None:
        self.replies.append(reply)

    def push_json(self, payload: Dict[str, Any]) -> None:
        self.replies.append(ModelResponse(text=json.dumps(payload)))

    def generate(self, messages, tools=None, json_mode=False, temperature=None):
        with self._lock:
            self.calls.append({
                "messages": [dict(m) for m in messages],
                "tools": list(tools or []),
                "json_mode": json_mode,
                "temperature": temperature,
            })
            if not self.replies:
                raise ModelError("no scripted reply left")
            reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


class FakeConnection(Connection):
    """
    Answers queries whose SQL contains a registered fragment.

    The first matching fragment wins; unmatched queries return
    an empty response.
    """

    def __init__(self) -> None:
        self.responses: List[tuple] = []
        self.queries: List[Dict[str, Any]] = []
        self.closed = False

    def on(self, fragment: str, result: Union[QueryResponse, Exception]):
        self.responses.append((fragment, result))
        return self

    def query(self, sql, params=None, options=None):
        self.queries.append({
            "sql": sql,
            "params": dict(params or {}),
            "options": dict(options or {}),
        })
        for fragment, result in self.responses:
            if fragment in sql:
                if isinstance(result, Exception):
                    raise result
                return result
        return QueryResponse()

    def close(self) -> None:
        self.closed = True


def write_skill(
    root: Path,
    dir_name: str,
    name: Optional[str] = None,
    description: str = "",
    body: str = "Body",
) -> Path:
    skill_dir = root / dir_name
    skill_dir.mkdir(parents=True, exist_ok=True)
    front = []
    if name is not None:
        front.append(f"name: {name}")
    if description:
        front.append(f"description: {description}")
    text = body + "\n"
    if front:
        text = "---\n" + "\n".join(front) + "\n---\n" + text
    path = skill_dir / "SKILL.md"
    path.write_text(text, encoding="utf-8")
    return path


@pytest.fixture
def model() -> ScriptedModelClient:
    return ScriptedModelClient()


@pytest.fixture
def connection() -> FakeConnection:
    return FakeConnection()


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        openai_api_key="test",
        max_steps=5,
        max_parallel_tools=4,
        max_result_rows=10,
        schema_max_columns=3,
    )


@pytest.fixture
def skills_dir(tmp_path: Path) -> Path:
    root = tmp_path / "skills"
    write_skill(
        root,
        "sql-generation",
        name="sql-generation",
        description="Write SQL",
        body="Use exact table names.",
    )
    write_skill(
        root,
        "visualization",
        name="visualization",
        description="Pick panels",
        body="Prefer line charts for time series.",
    )
    opt = write_skill(
        root,
        "optimization",
        name="optimization",
        description="Tune queries",
        body="Read rules/filtering.md first.",
    )
    (opt.parent / "rules").mkdir()
    (opt.parent / "rules" / "filtering.md").write_text(
        "Filter on the sorting key.", encoding="utf-8"
    )
    return root


@pytest.fixture
def registry(skills_dir: Path) -> SkillRegistry:
    return SkillRegistry(str(skills_dir))


@pytest.fixture
def catalog(registry: SkillRegistry) -> ToolCatalog:
    return ToolCatalog(
        server=build_server_tools(registry),
        client=build_client_tools(),
    )


@pytest.fixture
def tool_context(registry, model, test_settings, connection) -> ToolContext:
    return ToolContext(
        skills=registry,
        model=model,
        settings=test_settings,
        connection=connection,
    )


def query_error(message: str = "Code: 60. Table does not exist") -> QueryError:
    return QueryError(f"Query failed: {message}", data=message)
