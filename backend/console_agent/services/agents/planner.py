"""
Planner: classifies each chat turn into an ``Intent`` and
selects the route (system prompt + allowed tools) the main
loop runs with.

Classification is tiered, cheapest first:

0. **Continuation**: the last message is a tool result, so
   the turn resumes the intent that issued the call.
1. **Keyword override**: ``@generator``, ``@visualizer``,
   ``@optimizer``, ``@analyzer``, ``@general``.
2. **Heuristics**: e.g. chart vocabulary means
   visualization.
3. **Model classification** with a JSON reply.

Any failure degrades to ``settings.default_intent``; the
planner never raises.
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Pattern, Sequence, Tuple

from jinja2.sandbox import SandboxedEnvironment

from console_agent.config import settings
from console_agent.schemas import ChatMessage, Intent, PlanOutput
from console_agent.services.agents.base import BaseAgent, GenerationError
from console_agent.services.llm import ModelClient
from console_agent.services.tools import names

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IntentRoute:
    """How a classified turn is executed."""

    intent: Intent
    description: str
    keyword: str
    system_prompt: str
    tools: Tuple[str, ...]
    heuristics: Optional[Pattern] = None


_SHARED_RULES = """\
Rules:
- Load the relevant skill with the 'skill' tool before
  answering when the task needs domain expertise.
- Discover schema with the schema tools instead of guessing
  table or column names.
- Never run data-modifying statements.
- Answer in markdown with SQL in ```sql code blocks."""


INTENT_ROUTES: Dict[Intent, IntentRoute] = {
    Intent.SQL_GENERATION: IntentRoute(
        intent=Intent.SQL_GENERATION,
        description=(
            "Use this for requests that explicitly ask to 'write SQL', "
            "'generate query', or 'show example SQL'."
        ),
        keyword="@generator",
        system_prompt=(
            "You are a SQL generation assistant for a database console.\n"
            "Use 'generate_sql' to write the query once you know the "
            "schema, check it with 'validate_sql', and only run it with "
            "'execute_sql' when the user wants results.\n\n" + _SHARED_RULES
        ),
        tools=(
            names.SKILL,
            names.SKILL_RESOURCE,
            names.GET_TABLES,
            names.EXPLORE_SCHEMA,
            names.GENERATE_SQL,
            names.VALIDATE_SQL,
            names.EXECUTE_SQL,
        ),
    ),
    Intent.VISUALIZATION: IntentRoute(
        intent=Intent.VISUALIZATION,
        description=(
            "Use this for ANY request to create charts, graphs, or visual "
            "representations (pie, bar, line, etc.). If the user says "
            "'visualize', 'plot', or mentions a chart type, ALWAYS use this."
        ),
        keyword="@visualizer",
        system_prompt=(
            "You are a visualization assistant for a database console.\n"
            "Reuse SQL already present in the conversation; otherwise "
            "produce it with 'generate_sql' and check it with "
            "'validate_sql'. Then you MUST call 'generate_visualization' "
            "with the SQL. Do not describe the panel afterwards; the UI "
            "renders it.\n\n" + _SHARED_RULES
        ),
        tools=(
            names.SKILL,
            names.GET_TABLES,
            names.EXPLORE_SCHEMA,
            names.GENERATE_SQL,
            names.VALIDATE_SQL,
            names.GENERATE_VISUALIZATION,
        ),
        heuristics=re.compile(
            r"\b(visualize|chart|graph|plot|pie|bar|line|histogram|scatter)\b",
            re.IGNORECASE,
        ),
    ),
    Intent.OPTIMIZATION: IntentRoute(
        intent=Intent.OPTIMIZATION,
        description=(
            "Use this for analyzing slow queries, explaining SQL errors, or "
            "tuning performance. Key signals: 'slow', 'optimize', "
            "'performance'."
        ),
        keyword="@optimizer",
        system_prompt=(
            "You are a SQL optimization assistant for a database console.\n"
            "If the conversation contains no SQL, ask the user for the "
            "query and call no tools. Otherwise collect evidence (schema, "
            "'execute_sql' on EXPLAIN output), call 'optimize_sql', and "
            "verify the rewrite with 'validate_sql'. Rank recommendations "
            "by impact, risk and effort.\n\n" + _SHARED_RULES
        ),
        tools=(
            names.SKILL,
            names.SKILL_RESOURCE,
            names.EXPLORE_SCHEMA,
            names.VALIDATE_SQL,
            names.EXECUTE_SQL,
            names.OPTIMIZE_SQL,
        ),
    ),
    Intent.ANALYSIS: IntentRoute(
        intent=Intent.ANALYSIS,
        description=(
            "Use this for questions about server health or historical "
            "resource usage: memory trends, load over time, capacity."
        ),
        keyword="@analyzer",
        system_prompt=(
            "You are a database operations analyst.\n"
            "Use 'analyze_metrics' for historical trends; pass an "
            "absolute ISO 8601 'time_range' when the user names dates, "
            "otherwise a 'time_window' in minutes. Report min, max, "
            "average and trend, and say plainly when a metric is not "
            "supported.\n\n" + _SHARED_RULES
        ),
        tools=(
            names.SKILL,
            names.ANALYZE_METRICS,
            names.GET_TABLES,
            names.EXECUTE_SQL,
        ),
    ),
    Intent.GENERAL_CHAT: IntentRoute(
        intent=Intent.GENERAL_CHAT,
        description=(
            "Use this for greetings, questions about database concepts, "
            "and ANY request to 'show', 'list', 'get', 'calculate', or "
            "'find' ACTUAL data/metadata. NOTE: If they ask to VISUALIZE "
            "that data, you MUST use 'visualization' instead."
        ),
        keyword="@general",
        system_prompt=(
            "You are a helpful assistant for a database console.\n"
            "Answer questions directly; use the schema tools and "
            "'execute_sql' when the user asks for actual data.\n\n"
            + _SHARED_RULES
        ),
        tools=(
            names.SKILL,
            names.GET_TABLES,
            names.EXPLORE_SCHEMA,
            names.GENERATE_SQL,
            names.EXECUTE_SQL,
        ),
    ),
}


_PLANNER_TEMPLATE = """\
You are an Intent Planner for a database console.
Analyze the user's latest message and the conversation history to determine the best expert sub-agent.

Expert Agents:
{% for route in routes %}- '{{ route.intent.value }}': {{ route.description }}
{% endfor %}
If "Last chosen intent" is shown below, prefer it when the user's message is a follow-up (e.g. refinement, time range change) unless they clearly ask for something different.
{% if title_required %}
IMPORTANT: This is the first message in the conversation. You MUST provide a 'title' field with a concise, short (2-5 words) summary title for this session based on the user's message content.

Respond with the appropriate intent and reasoning (and REQUIRED title) in JSON format:
{
  "title": "Concise session title",
  "intent": "{{ intent_options }}",
  "reasoning": "Brief reasoning"
}
{% else %}
Respond with the appropriate intent and reasoning in JSON format:
{
  "intent": "{{ intent_options }}",
  "reasoning": "Brief reasoning"
}
{% endif %}
{% if history %}
CONVERSATION HISTORY (Pruned):
{{ history }}
{% endif %}
{% if last_intent %}
Last chosen intent (for follow-up consistency): {{ last_intent }}
{% endif %}"""

_jinja_env = SandboxedEnvironment(autoescape=False, trim_blocks=True)
_planner_template = _jinja_env.from_string(_PLANNER_TEMPLATE)

_MAX_HISTORY_MESSAGES = 6
_MAX_ASSISTANT_CHARS = 500
_SQL_BLOCK_RE = re.compile(r"```sql[\s\S]*?```")
_JSON_BLOCK_RE = re.compile(r"```json[\s\S]*?```")


@dataclass
class PlanResult:
    """Planner outcome: the wire-level output plus the route."""

    output: PlanOutput
    route: IntentRoute

    @property
    def intent(self) -> Intent:
        return self.output.intent


# ----- helpers ----------------------------------------------------------


def intent_from_key(key: Any) -> Optional[Intent]:
    """Resolve a stored intent string, or None if unknown."""
    if not isinstance(key, str):
        return None
    try:
        return Intent(key.strip().lower())
    except ValueError:
        return None


def previous_intent(messages: Sequence[ChatMessage]) -> Optional[Intent]:
    """
    Intent chosen for an earlier turn, most recent first.

    Read from assistant ``metadata.plan.intent`` (what the
    ``done`` event carries) or ``metadata.intent``.
    """
    for message in reversed(messages):
        if message.role != "assistant" or not message.metadata:
            continue
        plan = message.metadata.get("plan")
        raw = plan.get("intent") if isinstance(plan, dict) else None
        intent = intent_from_key(raw or message.metadata.get("intent"))
        if intent is not None:
            return intent
    return None


def prune_assistant_content(content: str) -> str:
    """Replace code blocks with placeholders and truncate."""
    pruned = _SQL_BLOCK_RE.sub("[Generated SQL]", content)
    pruned = _JSON_BLOCK_RE.sub("[Generated JSON]", pruned)
    if len(pruned) > _MAX_ASSISTANT_CHARS:
        return pruned[:_MAX_ASSISTANT_CHARS] + "... [TRUNCATED]"
    return pruned.strip()


def pruned_history(messages: Sequence[ChatMessage]) -> str:
    """
    Last six user/assistant messages, oldest first, as
    ``ROLE: text`` separated by ``---``.
    """
    collected: List[str] = []
    for message in reversed(messages):
        if len(collected) >= _MAX_HISTORY_MESSAGES:
            break
        if message.role not in ("user", "assistant"):
            continue
        text = message.content or ""
        if not text.strip():
            continue
        if message.role == "assistant":
            text = prune_assistant_content(text)
        else:
            text = text.strip()
        if text:
            collected.append(f"{message.role.upper()}: {text}")
    return "\n---\n".join(reversed(collected))


def title_from_message(text: str) -> Optional[str]:
    """First ten words, at most 64 characters, lower-cased."""
    words = text.lower().split()[:10]
    title = " ".join(words)
    if len(title) > 64:
        title = title[:64].strip()
        last_space = title.rfind(" ")
        if last_space > 32:
            title = title[:last_space]
    return title or None


class Planner(BaseAgent):
    """
    Tiered intent classifier.

    Parameters:
        model (ModelClient): Used only for the last tier.
        routes (dict, optional): Intent to route table.
        default_intent (str, optional): Fallback intent.
    """

    name = "planner"
    temperature = 0.0

    def __init__(
        self,
        model: ModelClient,
        routes: Optional[Dict[Intent, IntentRoute]] = None,
        default_intent: Optional[str] = None,
    ) -> None:
        super().__init__(model)
        self.routes = routes or INTENT_ROUTES
        self.default_intent = (
            intent_from_key(default_intent or settings.default_intent)
            or Intent.GENERAL_CHAT
        )

    def plan(self, messages: Sequence[ChatMessage]) -> PlanResult:
        """
        Classify the latest turn.

        Parameters:
            messages (list[ChatMessage]): Full conversation.

        Returns:
            PlanResult: Always populated; falls back to the
            default intent on any failure.
        """
        user_messages = [m for m in messages if m.role == "user"]
        is_first = len(user_messages) <= 1
        last_intent = previous_intent(messages)

        # 0. continuation after tool results
        if messages and messages[-1].role == "tool" and last_intent:
            return self._result(
                last_intent, "Resuming agent after tool result"
            )

        if not user_messages:
            return self._result(
                self.default_intent, "No user message found"
            )

        last_user = user_messages[-1].content or ""
        content = last_user.strip().lower()
        fallback_title = (
            title_from_message(user_messages[0].content or "")
            if is_first else None
        )

        # 1. keyword override
        for route in self.routes.values():
            if content == route.keyword or content.startswith(
                f"{route.keyword} "
            ):
                return self._result(
                    route.intent, "Keyword override", fallback_title
                )

        # 2. heuristics
        for route in self.routes.values():
            if route.heuristics is not None and route.heuristics.search(
                content
            ):
                return self._result(
                    route.intent,
                    f"{route.intent.value} heuristics detected",
                    fallback_title,
                )

        # 3. model classification
        prompt = self.build_prompt(messages, is_first, last_intent)
        try:
            result, usage = self._call_llm_with_usage(
                [{"role": "user", "content": prompt}]
            )
        except GenerationError as exc:
            logger.warning(
                "[planner] classification failed, defaulting to %s: %s",
                self.default_intent.value,
                exc,
            )
            return self._result(
                self.default_intent,
                "Classification failed",
                fallback_title,
            )

        intent = intent_from_key(result.get("intent"))
        if intent is None or intent not in self.routes:
            logger.warning(
                "[planner] unknown intent %r, defaulting to %s",
                result.get("intent"),
                self.default_intent.value,
            )
            return self._result(
                self.default_intent,
                "Classification returned an unknown intent",
                fallback_title,
            )

        title = None
        if is_first:
            title = str(result.get("title") or "").strip()
            if not title:
                words = last_user.strip().split()[:5]
                title = " ".join(words) or "New Conversation"

        reasoning = result.get("reasoning")
        output = PlanOutput(
            intent=intent,
            title=title,
            reasoning=str(reasoning) if reasoning else None,
            usage=usage,
        )
        logger.info("[planner] intent=%s", intent.value)
        return PlanResult(output=output, route=self.routes[intent])

    def build_prompt(
        self,
        messages: Sequence[ChatMessage],
        title_required: bool,
        last_intent: Optional[Intent] = None,
    ) -> str:
        """Render the classification prompt."""
        routes = list(self.routes.values())
        return _planner_template.render(
            routes=routes,
            intent_options='" | "'.join(r.intent.value for r in routes),
            title_required=title_required,
            history=pruned_history(messages),
            last_intent=last_intent.value if last_intent else None,
        ).strip()

    def _result(
        self,
        intent: Intent,
        reasoning: str,
        title: Optional[str] = None,
    ) -> PlanResult:
        route = self.routes.get(intent) or self.routes[self.default_intent]
        logger.info("[planner] intent=%s (%s)", route.intent.value, reasoning)
        return PlanResult(
            output=PlanOutput(
                intent=route.intent,
                title=title,
                reasoning=reasoning,
            ),
            route=route,
        )
