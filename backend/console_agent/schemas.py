"""
Pydantic schemas for the agent core and its API.

Covers the planning data model (intents, plan output, token
usage), skill metadata, the database context handed to the
sub-agents, sub-agent outputs, chat requests, and the events
streamed back to the client.
"""

from enum import Enum
from typing import Optional, List, Any, Dict, Literal, Union
from urllib.parse import quote_plus

from pydantic import BaseModel, Field, field_validator, model_validator


# --- Planning ---------------------------------------------------------

class Intent(str, Enum):
    """Closed set of task categories a chat turn can be routed to."""

    SQL_GENERATION = "sql-generation"
    VISUALIZATION = "visualization"
    OPTIMIZATION = "optimization"
    ANALYSIS = "analysis"
    GENERAL_CHAT = "general-chat"


class TokenUsage(BaseModel):
    """Token accounting reported by the model capability."""

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    reasoning_tokens: int = 0
    cached_input_tokens: int = 0

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
            reasoning_tokens=(
                self.reasoning_tokens + other.reasoning_tokens
            ),
            cached_input_tokens=(
                self.cached_input_tokens + other.cached_input_tokens
            ),
        )


class PlanOutput(BaseModel):
    """Planner result attached to the assistant message."""

    intent: Intent
    title: Optional[str] = None
    reasoning: Optional[str] = None
    usage: Optional[TokenUsage] = None


class ToolDeclaration(BaseModel):
    """What the model sees of a tool: name, purpose, input schema."""

    model_config = {"frozen": True}

    name: str
    description: str
    input_schema: Dict[str, Any]


# --- Skills -----------------------------------------------------------

class SkillMetadata(BaseModel):
    """Front-matter metadata of a skill document."""

    name: str
    description: str = ""


class Skill(SkillMetadata):
    """A discovered skill with its formatted content."""

    content: str


# --- Database context -------------------------------------------------

class ColumnInfo(BaseModel):
    """Schema for a database column."""

    name: str
    type: str = ""


class TableContext(BaseModel):
    """
    A table snapshot passed to the SQL generation agent.

    ``total_columns`` is set when ``columns`` was truncated
    to keep the prompt bounded.
    """

    name: str
    columns: List[ColumnInfo] = []
    total_columns: Optional[int] = None

    @field_validator("columns", mode="before")
    @classmethod
    def accept_plain_names(cls, v: Any) -> Any:
        """Allow ``["col_a", "col_b"]`` as a column list."""
        if isinstance(v, list):
            return [
                {"name": c} if isinstance(c, str) else c
                for c in v
            ]
        return v


class DatabaseContext(BaseModel):
    """Pre-fetched context describing the user's workspace."""

    current_query: Optional[str] = None
    database: Optional[str] = None
    tables: List[TableContext] = []

    def table_names(self) -> set:
        """Return lower-cased table names, bare and qualified."""
        names = set()
        for table in self.tables:
            lowered = table.name.lower()
            names.add(lowered)
            names.add(lowered.split(".")[-1])
            if self.database and "." not in lowered:
                names.add(f"{self.database.lower()}.{lowered}")
        return names

    def truncated(self, max_columns: int) -> "DatabaseContext":
        """
        Return a copy whose wide tables keep only the first
        *max_columns* columns plus the original column count.
        """
        tables = []
        for table in self.tables:
            if len(table.columns) > max_columns:
                tables.append(TableContext(
                    name=table.name,
                    columns=table.columns[:max_columns],
                    total_columns=(
                        table.total_columns or len(table.columns)
                    ),
                ))
            else:
                tables.append(table)
        return self.model_copy(update={"tables": tables})


# --- Sub-agent outputs ------------------------------------------------

class SqlGenerationOutput(BaseModel):
    """Structured reply of the SQL generation agent."""

    sql: str = ""
    notes: str = ""
    assumptions: List[str] = []
    needs_clarification: bool = False
    questions: List[str] = []

    @model_validator(mode="after")
    def check_clarification(self) -> "SqlGenerationOutput":
        """Enforce the sql / questions invariant."""
        if self.needs_clarification and not self.questions:
            raise ValueError(
                "needs_clarification requires at least one question"
            )
        if not self.needs_clarification and not self.sql.strip():
            raise ValueError(
                "sql must be non-empty when no clarification is needed"
            )
        return self


class PanelTitle(BaseModel):
    """Chart title configuration."""

    title: str
    align: Literal["left", "center", "right"] = "left"


class PanelLegend(BaseModel):
    """Legend configuration."""

    placement: Literal["none", "bottom", "right"] = "none"
    values: Optional[
        List[Literal["min", "max", "sum", "avg", "count"]]
    ] = None


class PanelQuery(BaseModel):
    """Query backing a panel."""

    sql: str


class PanelAxis(BaseModel):
    """Y-axis bounds for timeseries panels."""

    min: Optional[float] = None
    max: Optional[float] = None
    minInterval: Optional[float] = None


class PanelDescriptor(BaseModel):
    """Panel spec consumed by the dashboard renderer."""

    type: Literal["line", "bar", "area", "table", "none"]
    titleOption: Optional[PanelTitle] = None
    width: Optional[int] = Field(default=None, ge=1, le=12)
    legendOption: Optional[PanelLegend] = None
    query: PanelQuery
    yAxis: Optional[List[PanelAxis]] = None


class OptimizationOutput(BaseModel):
    """Structured reply of the SQL optimization agent."""

    optimized_sql: str
    rationale: str = ""
    changes: List[str] = []


# --- Chat API ---------------------------------------------------------

class ToolCallPayload(BaseModel):
    """A tool call recorded on an assistant message."""

    id: str
    name: str
    arguments: Union[Dict[str, Any], str] = {}


class ChatMessage(BaseModel):
    """One message of the running conversation."""

    role: Literal["system", "user", "assistant", "tool"]
    content: Optional[str] = ""
    tool_calls: Optional[List[ToolCallPayload]] = None
    tool_call_id: Optional[str] = None
    name: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    @field_validator("content", mode="before")
    @classmethod
    def null_content_as_empty(cls, v: Any) -> Any:
        # assistant messages carrying tool_calls may send null
        return "" if v is None else v


class ConnectionConfig(BaseModel):
    """Request-scoped database connection parameters."""

    url: Optional[str] = None
    driver: str = "mysql+pymysql"
    host: str = Field(default="localhost", max_length=255)
    port: int = Field(default=3306, ge=1, le=65535)
    username: str = Field(default="", max_length=255)
    password: str = Field(default="")
    database_name: str = Field(default="", max_length=255)

    def sqlalchemy_url(self) -> str:
        """Build an SQLAlchemy URL unless one was given."""
        if self.url:
            return self.url
        password = quote_plus(self.password or "")
        return (
            f"{self.driver}://{self.username}:{password}"
            f"@{self.host}:{self.port}/{self.database_name}"
        )


class ChatRequest(BaseModel):
    """Schema for a streamed chat turn."""

    messages: List[ChatMessage] = Field(..., min_length=1)
    context: Optional[DatabaseContext] = None
    connection: Optional[ConnectionConfig] = None


# --- Stream events ----------------------------------------------------

class PlanEvent(BaseModel):
    """Planner outcome, emitted first in every turn."""

    type: Literal["plan"] = "plan"
    intent: Intent
    title: Optional[str] = None
    reasoning: Optional[str] = None
    usage: Optional[TokenUsage] = None


class ToolCallEvent(BaseModel):
    """Emitted when the model requests a tool."""

    type: Literal["tool-call"] = "tool-call"
    tool_call_id: str
    tool_name: str
    input: Any = None


class ToolResultEvent(BaseModel):
    """Emitted once per tool call with its result or error."""

    type: Literal["tool-result"] = "tool-result"
    tool_call_id: str
    tool_name: str
    output: Any = None
    is_error: bool = False


class TextDeltaEvent(BaseModel):
    """A chunk of assistant text."""

    type: Literal["text-delta"] = "text-delta"
    delta: str


class ErrorEvent(BaseModel):
    """Fatal error; terminates the stream."""

    type: Literal["error"] = "error"
    message: str


class DoneEvent(BaseModel):
    """Terminal event of a successful turn."""

    type: Literal["done"] = "done"
    message_id: str
    metadata: Dict[str, Any] = {}


Event = Union[
    PlanEvent,
    ToolCallEvent,
    ToolResultEvent,
    TextDeltaEvent,
    ErrorEvent,
    DoneEvent,
]
