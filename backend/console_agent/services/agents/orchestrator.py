"""
Agent orchestrator.

Runs one chat turn end to end and pushes every artifact to
the turn's ``EventStream``:

1. **Planner**     → intent + route, emitted as ``plan``.
2. **Summarizer**  → compacts the history when it is too long.
3. **Main loop**   → the model answers or requests tools;
   requested tools run concurrently through the catalog and
   their results are fed back, up to ``settings.max_steps``.
4. ``done`` with the plan and token usage, or a single
   ``error`` if the turn cannot complete.

A turn runs synchronously on the caller's thread (the HTTP
layer uses a worker thread); only tool calls fan out to a
thread pool.
"""

import json
import logging
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Dict, List, Optional, Sequence

from console_agent.config import Settings, settings as default_settings
from console_agent.schemas import (
    ChatMessage,
    ChatRequest,
    DatabaseContext,
    DoneEvent,
    PlanEvent,
    TextDeltaEvent,
    TokenUsage,
    ToolCallEvent,
    ToolResultEvent,
)
from console_agent.services.agents.planner import IntentRoute, Planner
from console_agent.services.agents.sql_generator import format_database_context
from console_agent.services.agents.summarizer import (
    SummarizerAgent,
    compact_history,
)
from console_agent.services.db_connector import Connection
from console_agent.services.event_stream import EventStream, StreamClosedError
from console_agent.services.llm import (
    ModelClient,
    ModelError,
    ToolCallRequest,
    assistant_message,
    tool_message,
)
from console_agent.services.skills import SkillRegistry
from console_agent.services.tools import names
from console_agent.services.tools.base import (
    ToolCatalog,
    ToolContext,
    ToolResult,
    decode_arguments,
)

logger = logging.getLogger(__name__)


# ----- history helpers ---------------------------------------------------


def to_model_messages(messages: Sequence[ChatMessage]) -> List[Dict[str, Any]]:
    """
    Convert chat messages to the model's message format.

    System messages from the client are dropped; the route
    supplies the system prompt.
    """
    converted: List[Dict[str, Any]] = []
    for message in messages:
        if message.role == "system":
            continue
        if message.role == "tool":
            converted.append(
                tool_message(message.tool_call_id or "", message.content)
            )
        elif message.role == "assistant" and message.tool_calls:
            converted.append(assistant_message(
                message.content,
                [
                    ToolCallRequest(
                        id=call.id,
                        name=call.name,
                        arguments=call.arguments,
                    )
                    for call in message.tool_calls
                ],
            ))
        else:
            converted.append({
                "role": message.role,
                "content": message.content,
            })
    return converted


def prune_validated_sql(
    history: List[Dict[str, Any]],
) -> List[Dict[str, Any]]:
    """
    Drop successful ``validate_sql`` calls from earlier turns.

    Failed validations stay, since they explain how the model
    recovered.  Messages after the last user message belong
    to the active turn and are never touched.
    """
    last_user = max(
        (i for i, m in enumerate(history) if m.get("role") == "user"),
        default=-1,
    )
    if last_user <= 0:
        return history

    drop_ids = set()
    for message in history[:last_user]:
        if message.get("role") != "tool":
            continue
        try:
            output = json.loads(message.get("content") or "")
        except (TypeError, json.JSONDecodeError):
            continue
        if isinstance(output, dict) and output.get("success") is True:
            drop_ids.add(message.get("tool_call_id"))

    validate_ids = set()
    for message in history[:last_user]:
        for call in message.get("tool_calls") or []:
            if call["function"]["name"] == names.VALIDATE_SQL:
                validate_ids.add(call["id"])
    drop_ids &= validate_ids
    if not drop_ids:
        return history

    pruned: List[Dict[str, Any]] = []
    for index, message in enumerate(history):
        if index >= last_user:
            pruned.append(message)
            continue
        if message.get("role") == "tool" and message.get("tool_call_id") in drop_ids:
            continue
        calls = message.get("tool_calls")
        if calls:
            kept = [c for c in calls if c["id"] not in drop_ids]
            message = dict(message)
            if kept:
                message["tool_calls"] = kept
            else:
                message.pop("tool_calls")
                if not message.get("content"):
                    continue
        pruned.append(message)
    return pruned


# ----- orchestrator ------------------------------------------------------


class Orchestrator:
    """
    Coordinates planner, model, tools and the event stream.

    Parameters:
        model (ModelClient): Main-loop and sub-agent model.
        catalog (ToolCatalog): Server and client tools.
        skills (SkillRegistry): Shared skill cache.
        planner (Planner, optional): Defaults to one built
            on *model*.
        summarizer (SummarizerAgent, optional): Same.
        settings (Settings, optional): Limits and defaults.
    """

    def __init__(
        self,
        model: ModelClient,
        catalog: ToolCatalog,
        skills: SkillRegistry,
        planner: Optional[Planner] = None,
        summarizer: Optional[SummarizerAgent] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.model = model
        self.catalog = catalog
        self.skills = skills
        self.settings = settings or default_settings
        self.planner = planner or Planner(
            model, default_intent=self.settings.default_intent
        )
        self.summarizer = summarizer or SummarizerAgent(model)

    def run_turn(
        self,
        request: ChatRequest,
        stream: EventStream,
        connection: Optional[Connection] = None,
    ) -> None:
        """
        Run one chat turn, writing every event to *stream*.

        The stream always ends with exactly one ``done`` or
        ``error`` event unless the consumer cancelled it.
        """
        try:
            self._run(request, stream, connection)
        except StreamClosedError:
            logger.info("[orchestrator] stream closed, turn abandoned")
        except Exception as exc:
            logger.exception("[orchestrator] turn failed")
            if not stream.is_closed:
                stream.fail(_describe_failure(exc))

    def _run(
        self,
        request: ChatRequest,
        stream: EventStream,
        connection: Optional[Connection],
    ) -> None:
        # ---- 1. Plan ------------------------------------------------
        plan = self.planner.plan(request.messages)
        stream.emit(PlanEvent(**plan.output.model_dump()))

        # ---- 2. History ---------------------------------------------
        history = prune_validated_sql(to_model_messages(request.messages))
        history, did_summarize = compact_history(
            self.summarizer,
            history,
            self.settings.context_token_limit,
        )
        if did_summarize:
            logger.info("[orchestrator] history compacted")

        context = ToolContext(
            skills=self.skills,
            model=self.model,
            settings=self.settings,
            database_context=request.context,
            connection=connection,
        )
        messages: List[Dict[str, Any]] = [
            {
                "role": "system",
                "content": self._system_prompt(plan.route, request.context),
            },
            *history,
        ]
        tools = self.catalog.declarations(plan.route.tools)

        usage = plan.output.usage or TokenUsage()

        # ---- 3. Main loop -------------------------------------------
        for step in range(1, self.settings.max_steps + 1):
            logger.info(
                "[orchestrator] step %d intent=%s",
                step,
                plan.intent.value,
            )
            response = self.model.generate(messages, tools=tools or None)
            if response.usage is not None:
                usage = usage + response.usage
            if response.text:
                stream.emit(TextDeltaEvent(delta=response.text))
            if not response.tool_calls:
                break

            messages.append(
                assistant_message(response.text, response.tool_calls)
            )
            results = self._run_tools(response.tool_calls, context, stream)
            for call in response.tool_calls:
                messages.append(
                    tool_message(call.id, results[call.id].output)
                )
        else:
            logger.warning(
                "[orchestrator] stopped after %d steps",
                self.settings.max_steps,
            )
            stream.emit(TextDeltaEvent(
                delta=(
                    "\n\nI stopped after reaching the step limit; "
                    "ask me to continue if you need more."
                ),
            ))

        # ---- 4. Done ------------------------------------------------
        stream.emit(DoneEvent(
            message_id=str(uuid.uuid4()),
            metadata={
                "plan": plan.output.model_dump(mode="json", exclude_none=True),
                "usage": usage.model_dump(),
            },
        ))

    # ----- tools ---------------------------------------------------------

    def _run_tools(
        self,
        calls: Sequence[ToolCallRequest],
        context: ToolContext,
        stream: EventStream,
    ) -> Dict[str, ToolResult]:
        """
        Dispatch *calls* and emit one result per call.

        Every ``tool-call`` event is written before any tool
        runs; results are written in completion order.
        """
        for call in calls:
            stream.emit(ToolCallEvent(
                tool_call_id=call.id,
                tool_name=call.name,
                input=decode_arguments(call.arguments),
            ))

        results: Dict[str, ToolResult] = {}
        if len(calls) == 1:
            result = self.catalog.dispatch(calls[0], context)
            results[calls[0].id] = result
            self._emit_result(stream, calls[0], result)
            return results

        workers = max(1, min(len(calls), self.settings.max_parallel_tools))
        pool = ThreadPoolExecutor(
            max_workers=workers,
            thread_name_prefix="tool",
        )
        try:
            futures = {
                pool.submit(self.catalog.dispatch, call, context): call
                for call in calls
            }
            for future in as_completed(futures):
                call = futures[future]
                result = future.result()
                results[call.id] = result
                self._emit_result(stream, call, result)
        finally:
            pool.shutdown(wait=False, cancel_futures=True)
        return results

    @staticmethod
    def _emit_result(
        stream: EventStream,
        call: ToolCallRequest,
        result: ToolResult,
    ) -> None:
        stream.emit(ToolResultEvent(
            tool_call_id=call.id,
            tool_name=call.name,
            output=result.output,
            is_error=result.is_error,
        ))

    def _system_prompt(
        self,
        route: IntentRoute,
        context: Optional[DatabaseContext],
    ) -> str:
        if context is not None:
            context = context.truncated(self.settings.schema_max_columns)
        return f"{route.system_prompt}\n\n{format_database_context(context)}"


def _describe_failure(exc: Exception) -> str:
    if isinstance(exc, ModelError):
        return f"The language model is unavailable: {exc}"
    return f"The request could not be completed: {exc}"
