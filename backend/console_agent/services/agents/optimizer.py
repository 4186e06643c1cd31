"""
SQL Optimization agent.

Rewrites a query for performance while keeping its result
set.  Diagnostics (EXPLAIN output, query log metrics) and an
optimisation goal can be supplied to focus the rewrite.
"""

from typing import Optional

from pydantic import ValidationError

from console_agent.schemas import OptimizationOutput
from console_agent.services.agents.base import BaseAgent, GenerationError


PROMPT = """\
You are a SQL performance expert.  Rewrite the query so it
runs faster or cheaper while returning exactly the same
result.  Base every change on the SQL and the diagnostics
provided; do not invent table structures.

Prefer, in order: low-risk query rewrites (filters on the
primary/sorting key, pruning selected columns, pushing
predicates into subqueries), then layout suggestions.
Mark each change in the SQL with a short "-- comment".

If nothing can be improved, return the original SQL and say
so in the rationale.

Return a JSON object:
{
  "optimized_sql": "SELECT ...",
  "rationale": "Why the rewrite is faster",
  "changes": ["One line per change"]
}
"""


class OptimizationAgent(BaseAgent):
    """Rewrite SQL for performance."""

    name = "optimizer"
    system_prompt = PROMPT
    temperature = 0.2
    skills = ("optimization",)

    def run(
        self,
        sql: str,
        diagnostics: Optional[str] = None,
        goal: Optional[str] = None,
    ) -> OptimizationOutput:
        """
        Optimise *sql*.

        Parameters:
            sql (str): Query to rewrite.
            diagnostics (str, optional): Plans or metrics.
            goal (str, optional): e.g. ``latency``, ``memory``.

        Returns:
            OptimizationOutput: The rewrite; ``optimized_sql``
            is the original SQL when the model offered none.

        Raises:
            GenerationError: The model failed or its reply
                did not match the output schema.
        """
        parts = [f"SQL to optimize:\n{sql}"]
        if goal:
            parts.append(f"Optimization goal: {goal}")
        if diagnostics:
            parts.append(f"Diagnostics:\n{diagnostics}")

        messages = [
            {"role": "system", "content": self._build_system_prompt()},
            {"role": "user", "content": "\n\n".join(parts)},
        ]

        result = self._call_llm(messages)
        if not str(result.get("optimized_sql") or "").strip():
            result["optimized_sql"] = sql
        try:
            return OptimizationOutput.model_validate(result)
        except ValidationError as exc:
            raise GenerationError(
                f"{self.name} returned an invalid result: {exc}"
            ) from exc
