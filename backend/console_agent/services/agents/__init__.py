"""
Agents of the database console assistant.

Each agent has a dedicated prompt and handles one concern:
- Planner              → intent classification & routing
- SqlGenerationAgent   → SQL from a question + schema context
- VisualizationAgent   → panel descriptor for a query
- OptimizationAgent    → performance rewrites
- SummarizerAgent      → history compaction

The orchestrator runs the planned route's tool loop and
streams every step to the client.
"""

from console_agent.services.agents.orchestrator import Orchestrator

__all__ = ["Orchestrator"]
