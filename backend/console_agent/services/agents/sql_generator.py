"""
SQL Generation agent.

Turns a natural-language question plus the pre-fetched
database context into a single SQL statement.  When the
question cannot be answered from the context the agent asks
instead of guessing: ``needs_clarification`` is set and at
least one concrete question is returned.
"""

import re
import json
from datetime import datetime, timezone
from typing import List, Optional, Set

from pydantic import ValidationError

from console_agent.config import settings
from console_agent.schemas import DatabaseContext, SqlGenerationOutput
from console_agent.services.agents.base import BaseAgent, GenerationError


PROMPT = """\
You are a SQL generation expert for an analytical database
console.  Write ONE read-only SQL statement that answers the
user's question using ONLY the tables and columns listed in
the database context.

Rules:
- Use exact table and column names from the context.
- Qualify tables with their database when one is given.
- Format SQL with 2-space indentation.
- Never write DDL or data-modifying statements.
- If the request is ambiguous, or needs a table or column
  that is not in the context, do NOT guess: set
  "needs_clarification" to true and ask specific questions.

Return a JSON object:
{
  "sql": "SELECT ...",
  "notes": "Short explanation of the query logic",
  "assumptions": ["..."],
  "needs_clarification": false,
  "questions": []
}
"""

# FROM / JOIN followed by an identifier; a trailing "(" marks
# a table function or subquery alias and is skipped.
_TABLE_REF_RE = re.compile(
    r"\b(?:FROM|JOIN)\s+([A-Za-z_`\"][\w`\".]*)(\s*\()?",
    re.IGNORECASE,
)
_CTE_RE = re.compile(
    r"(?:\bWITH|,)\s*([A-Za-z_]\w*)\s+AS\s*\(",
    re.IGNORECASE,
)


def referenced_tables(sql: str) -> List[str]:
    """
    Return table names referenced in FROM / JOIN clauses.

    CTE names and table functions are excluded; names are
    lower-cased with quotes removed, in order of appearance.
    """
    ctes = {m.group(1).lower() for m in _CTE_RE.finditer(sql)}
    seen: List[str] = []
    for match in _TABLE_REF_RE.finditer(sql):
        if match.group(2) or _inside_function_call(sql, match.start()):
            continue
        name = match.group(1).replace("`", "").replace('"', "").lower()
        if not name or name in ctes or name in seen:
            continue
        seen.append(name)
    return seen


def _inside_function_call(sql: str, pos: int) -> bool:
    """
    True when *pos* sits inside parentheses that do not open a
    subquery, e.g. ``EXTRACT(YEAR FROM ts)``.
    """
    depth = 0
    for i in range(pos - 1, -1, -1):
        ch = sql[i]
        if ch == ")":
            depth += 1
        elif ch == "(":
            if depth == 0:
                head = sql[i + 1:pos].lstrip().upper()
                return not head.startswith(("SELECT", "WITH"))
            depth -= 1
    return False


def unknown_tables(sql: str, context: DatabaseContext) -> List[str]:
    """Tables the SQL uses that the context does not describe."""
    known: Set[str] = context.table_names()
    return [t for t in referenced_tables(sql) if t not in known]


def format_database_context(context: Optional[DatabaseContext]) -> str:
    """Render the database context as a system prompt section."""
    now = datetime.now(timezone.utc).isoformat()
    if context is None:
        return (
            "Database context: none provided.\n"
            f"Current date/time (UTC): {now}"
        )

    lines = ["Database context:"]
    if context.database:
        lines.append(f"Current database: {context.database}")
    if context.current_query:
        lines.append(f"Current query:\n{context.current_query}")
    if context.tables:
        lines.append("Tables:")
        tables = [
            table.model_dump(exclude_none=True)
            for table in context.tables
        ]
        lines.append(json.dumps(tables, indent=2))
    lines.append(f"Current date/time (UTC): {now}")
    return "\n".join(lines)


class SqlGenerationAgent(BaseAgent):
    """Generate SQL from a question and schema context."""

    name = "sql_generator"
    system_prompt = PROMPT
    temperature = 0.2
    skills = ("sql-generation",)

    def run(
        self,
        question: str,
        context: Optional[DatabaseContext] = None,
    ) -> SqlGenerationOutput:
        """
        Generate SQL for *question*.

        Parameters:
            question (str): The user's data request.
            context (DatabaseContext, optional): Tables,
                columns, current database and query.

        Returns:
            SqlGenerationOutput: SQL or clarification questions.

        Raises:
            GenerationError: The model failed or its reply
                did not match the output schema.
        """
        if context is not None:
            context = context.truncated(settings.schema_max_columns)

        messages = [
            {"role": "system", "content": self._build_system_prompt()},
            {
                "role": "system",
                "content": format_database_context(context),
            },
            {"role": "user", "content": question},
        ]

        result = self._call_llm(messages)
        try:
            output = SqlGenerationOutput.model_validate(result)
        except ValidationError as exc:
            raise GenerationError(
                f"{self.name} returned an invalid result: {exc}"
            ) from exc

        if (
            not output.needs_clarification
            and context is not None
            and context.tables
        ):
            missing = unknown_tables(output.sql, context)
            if missing:
                return SqlGenerationOutput(
                    sql=output.sql,
                    notes=output.notes,
                    assumptions=output.assumptions,
                    needs_clarification=True,
                    questions=[
                        "The query uses "
                        + ", ".join(missing)
                        + ", which is not among the provided tables. "
                        "Which table should be used instead, or can "
                        "you share its schema?"
                    ],
                )
        return output
