"""
Visualization agent.

Picks a panel type and presentation options for a SQL query.
The result is always a valid panel descriptor: when the
model fails, or returns something that does not validate,
the agent falls back to a plain table over the same SQL.
"""

import logging
from typing import List, Optional

from pydantic import ValidationError

from console_agent.schemas import PanelDescriptor, PanelQuery
from console_agent.services.agents.base import BaseAgent, GenerationError

logger = logging.getLogger(__name__)


PROMPT = """\
You are a data visualization expert.  Analyse the SQL query
and the user's question and choose the best panel.

Panel types:
1. line / bar / area: the result has a time column
   (DateTime, Date) plus numeric metrics.
2. table: tabular data, text columns, or many columns
   without a clear time dimension.
3. none: single-value results or non-visual data.

Legend:
- "bottom" when grouping by a non-time dimension (status,
  category, region) or when several series are shown.
- "none" for a single metric or time-only grouping.
- When placement is "bottom" or "right", "values" is
  REQUIRED: start with ["min", "max"], add "sum" for SUM(),
  "avg" for AVG(), "count" and "sum" for COUNT().

Return ONLY a JSON object:
{
  "type": "line" | "bar" | "area" | "table" | "none",
  "titleOption": {"title": "...", "align": "left" | "center" | "right"},
  "width": 1-12,
  "legendOption": {"placement": "none" | "bottom" | "right",
                   "values": ["min", "max", ...]},
  "query": {"sql": "<the SQL being visualized>"},
  "yAxis": [{"min": 0, "minInterval": 1}]
}
"yAxis" is optional and only meaningful for timeseries.
"""


def fallback_panel(sql: str) -> PanelDescriptor:
    """Plain table over *sql*."""
    return PanelDescriptor(type="table", query=PanelQuery(sql=sql))


class VisualizationAgent(BaseAgent):
    """Choose a panel descriptor for a query."""

    name = "visualizer"
    system_prompt = PROMPT
    temperature = 0.1
    skills = ("visualization",)

    def run(
        self,
        question: str,
        sql: str,
        columns: Optional[List[str]] = None,
    ) -> PanelDescriptor:
        """
        Build a panel descriptor for *sql*.

        Parameters:
            question (str): The user's original request.
            sql (str): Query to visualize.
            columns (list[str], optional): Result column
                names, when already known.

        Returns:
            PanelDescriptor: Model choice, or a table fallback.
        """
        user_text = f"User question: {question}\n\nSQL to visualize:\n{sql}"
        if columns:
            user_text += "\n\nResult columns: " + ", ".join(columns)

        messages = [
            {"role": "system", "content": self._build_system_prompt()},
            {"role": "user", "content": user_text},
        ]

        try:
            result = self._call_llm(messages)
            if not isinstance(result.get("query"), dict):
                result["query"] = {"sql": sql}
            panel = PanelDescriptor.model_validate(result)
        except (GenerationError, ValidationError) as exc:
            logger.warning(
                "[%s] falling back to table panel: %s", self.name, exc
            )
            return fallback_panel(sql)

        if not panel.query.sql.strip():
            panel = panel.model_copy(update={"query": PanelQuery(sql=sql)})
        return panel
