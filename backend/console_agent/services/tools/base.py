"""
Tool Catalog: declarations, validation and dispatch.

Tools live in one of two disjoint namespaces:

* ``server`` tools run inside the agent service (skill
  loading, sub-agent calls);
* ``client`` tools are bound to the request's database
  connection and are refused when none is supplied.

Every call is validated against the tool's pydantic input
model before its executor runs.  Whatever happens, dispatch
returns a ``ToolResult``; nothing raises past this boundary.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Type

from pydantic import BaseModel, ValidationError

from console_agent.config import Settings, settings as default_settings
from console_agent.schemas import DatabaseContext, ToolDeclaration
from console_agent.services.db_connector import Connection
from console_agent.services.llm import ModelClient, ToolCallRequest
from console_agent.services.skills import SkillRegistry

logger = logging.getLogger(__name__)

SERVER = "server"
CLIENT = "client"


class ToolValidationError(ValueError):
    """Tool arguments failed schema validation."""


class ToolExecutionError(RuntimeError):
    """A tool executor could not complete."""


@dataclass
class ToolContext:
    """
    Everything an executor may need besides its input.

    ``connection`` is owned by the request; client tools only
    borrow it.
    """

    skills: SkillRegistry
    model: ModelClient
    settings: Settings = field(default_factory=lambda: default_settings)
    database_context: Optional[DatabaseContext] = None
    connection: Optional[Connection] = None


Executor = Callable[[Any, ToolContext], Any]


@dataclass(frozen=True)
class ToolSpec:
    """A tool's declaration plus the function that runs it."""

    name: str
    description: str
    input_model: Type[BaseModel]
    executor: Executor
    namespace: str = SERVER

    def declaration(self) -> ToolDeclaration:
        return ToolDeclaration(
            name=self.name,
            description=self.description,
            input_schema=self.input_model.model_json_schema(),
        )


@dataclass
class ToolResult:
    """Outcome of one dispatched call."""

    tool_call_id: str
    tool_name: str
    output: Any = None
    is_error: bool = False
    input: Any = None


@dataclass
class ToolNotFound(ToolResult):
    """Result for a call naming a tool the catalog lacks."""

    is_error: bool = True


def error_output(message: str) -> Dict[str, Any]:
    return {"success": False, "error": message}


class ToolCatalog:
    """
    Immutable registry of server and client tools.

    Parameters:
        server (list[ToolSpec]): Server namespace tools.
        client (list[ToolSpec]): Client namespace tools.

    Raises:
        ValueError: A name is registered twice, in either
            namespace.
    """

    def __init__(
        self,
        server: Sequence[ToolSpec] = (),
        client: Sequence[ToolSpec] = (),
    ) -> None:
        self._tools: Dict[str, ToolSpec] = {}
        for namespace, specs in ((SERVER, server), (CLIENT, client)):
            for spec in specs:
                if spec.namespace != namespace:
                    raise ValueError(
                        f"Tool '{spec.name}' declares namespace "
                        f"'{spec.namespace}' but was registered as "
                        f"'{namespace}'"
                    )
                if spec.name in self._tools:
                    raise ValueError(
                        f"Duplicate tool name '{spec.name}'"
                    )
                self._tools[spec.name] = spec

    # ----- lookup ----------------------------------------------------

    def get(self, name: str) -> Optional[ToolSpec]:
        return self._tools.get(name)

    def names(self, namespace: Optional[str] = None) -> List[str]:
        return [
            spec.name for spec in self._tools.values()
            if namespace is None or spec.namespace == namespace
        ]

    def declarations(
        self,
        names: Optional[Sequence[str]] = None,
    ) -> List[ToolDeclaration]:
        """
        Return declarations, optionally limited to *names*.

        Names the catalog does not know are ignored; order
        follows *names* when given.
        """
        if names is None:
            specs = list(self._tools.values())
        else:
            specs = [self._tools[n] for n in names if n in self._tools]
        return [spec.declaration() for spec in specs]

    # ----- dispatch --------------------------------------------------

    def validate(self, spec: ToolSpec, arguments: Any) -> BaseModel:
        """
        Parse *arguments* into the tool's input model.

        Raises:
            ToolValidationError: Arguments are not a JSON object
                or do not match the schema.
        """
        if isinstance(arguments, str):
            try:
                arguments = json.loads(arguments) if arguments.strip() else {}
            except json.JSONDecodeError as exc:
                raise ToolValidationError(
                    f"Arguments for '{spec.name}' are not valid JSON: {exc}"
                ) from exc
        if arguments is None:
            arguments = {}
        if not isinstance(arguments, dict):
            raise ToolValidationError(
                f"Arguments for '{spec.name}' must be a JSON object"
            )
        try:
            return spec.input_model.model_validate(arguments)
        except ValidationError as exc:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'input'}: "
                f"{err['msg']}"
                for err in exc.errors()
            )
            raise ToolValidationError(
                f"Invalid arguments for '{spec.name}': {problems}"
            ) from exc

    def dispatch(
        self,
        call: ToolCallRequest,
        context: ToolContext,
    ) -> ToolResult:
        """
        Validate and run one tool call.

        Parameters:
            call (ToolCallRequest): The model's request.
            context (ToolContext): Request-scoped collaborators.

        Returns:
            ToolResult: The executor's output, or an error
            result the model can read and recover from.
        """
        raw_input = decode_arguments(call.arguments)
        spec = self._tools.get(call.name)
        if spec is None:
            logger.warning("[tools] unknown tool '%s'", call.name)
            return ToolNotFound(
                tool_call_id=call.id,
                tool_name=call.name,
                output=error_output(
                    f"Unknown tool '{call.name}'. Available tools: "
                    + ", ".join(self._tools)
                ),
                input=raw_input,
            )

        try:
            args = self.validate(spec, call.arguments)
        except ToolValidationError as exc:
            logger.info("[tools] rejected call to '%s': %s", spec.name, exc)
            return ToolResult(
                tool_call_id=call.id,
                tool_name=spec.name,
                output=error_output(str(exc)),
                is_error=True,
                input=raw_input,
            )

        if spec.namespace == CLIENT and context.connection is None:
            return ToolResult(
                tool_call_id=call.id,
                tool_name=spec.name,
                output=error_output(
                    f"Tool '{spec.name}' needs a database connection "
                    "and none was provided"
                ),
                is_error=True,
                input=raw_input,
            )

        logger.info("[tools] running '%s' (%s)", spec.name, call.id)
        try:
            output = spec.executor(args, context)
        except ToolExecutionError as exc:
            logger.info("[tools] '%s' refused: %s", spec.name, exc)
            return ToolResult(
                tool_call_id=call.id,
                tool_name=spec.name,
                output=error_output(str(exc)),
                is_error=True,
                input=raw_input,
            )
        except Exception as exc:
            logger.exception("[tools] '%s' failed", spec.name)
            return ToolResult(
                tool_call_id=call.id,
                tool_name=spec.name,
                output=error_output(str(exc) or type(exc).__name__),
                is_error=True,
                input=raw_input,
            )

        if isinstance(output, BaseModel):
            output = output.model_dump(exclude_none=True)
        return ToolResult(
            tool_call_id=call.id,
            tool_name=spec.name,
            output=output,
            is_error=isinstance(output, dict) and output.get("success") is False,
            input=raw_input,
        )


def decode_arguments(arguments: Any) -> Any:
    """Decode JSON-string arguments for display; leave others as is."""
    if isinstance(arguments, str):
        try:
            return json.loads(arguments) if arguments.strip() else {}
        except json.JSONDecodeError:
            return arguments
    return arguments
