"""
Server tools: skill loading and the model-backed sub-agents.

Sub-agent tools wrap ``SqlGenerationAgent``,
``VisualizationAgent`` and ``OptimizationAgent``; they use
the request's ``ModelClient`` and never touch the database.
"""

from typing import Any, Dict, List, Optional

from jinja2.sandbox import SandboxedEnvironment
from pydantic import BaseModel, Field

from console_agent.schemas import DatabaseContext
from console_agent.services.agents.optimizer import OptimizationAgent
from console_agent.services.agents.sql_generator import SqlGenerationAgent
from console_agent.services.agents.visualizer import VisualizationAgent
from console_agent.services.skills import SkillRegistry
from console_agent.services.tools import names
from console_agent.services.tools.base import SERVER, ToolContext, ToolSpec

SKILL_SEPARATOR = "\n\n---\n\n"

_SKILL_DESCRIPTION = """\
Load one or more specialized manuals for a task.

You MUST call this FIRST when a task requires domain expertise (e.g. visualization, SQL generation, optimization).

Usage: pass skill names in 'names', e.g. {"names": ["optimization"]}.
When a manual tells you to read an extra file (e.g. "rules/...md"), load it with the 'skill_resource' tool before giving final recommendations.

Available skills:

<skills>
{% for skill in skills %}  <skill><name>{{ skill.name }}</name><description>{{ skill.description }}</description></skill>
{% endfor %}</skills>"""

_description_template = SandboxedEnvironment(
    autoescape=False,
).from_string(_SKILL_DESCRIPTION)


# ----- skill / skill_resource ------------------------------------------


class SkillInput(BaseModel):
    names: List[str] = Field(
        ..., min_length=1, description="Skill names to load, in order."
    )


class SkillResourceInput(BaseModel):
    skill: str = Field(..., min_length=1, description="Skill name.")
    paths: List[str] = Field(
        ...,
        min_length=1,
        description="Paths relative to the skill folder, e.g. 'rules/x.md'.",
    )


def skill_description(registry: SkillRegistry) -> str:
    return _description_template.render(skills=registry.list_skills())


def load_skills(args: SkillInput, ctx: ToolContext) -> str:
    """
    Concatenate the requested manuals in request order.

    Missing names are reported in a trailing note; when none
    is found the reply says so and lists what exists.
    """
    available = [s.name for s in ctx.skills.list_skills()]
    loaded: List[str] = []
    not_found: List[str] = []
    for name in args.names:
        content = ctx.skills.get_skill(name)
        if content:
            loaded.append(content)
        else:
            not_found.append(name)

    if not loaded:
        return (
            f"No skills found. Requested: {', '.join(args.names)}. "
            f"Available: {', '.join(available)}."
        )

    combined = SKILL_SEPARATOR.join(loaded)
    if not not_found:
        return combined
    return (
        f"{combined}\n\n---\nNote: Skill(s) not found: "
        f"{', '.join(not_found)}. Available skills: "
        f"{', '.join(available)}."
    )


def load_skill_resources(args: SkillResourceInput, ctx: ToolContext) -> str:
    """Read extra files shipped inside one skill's folder."""
    skill = args.skill.strip()
    loaded: List[str] = []
    missing: List[str] = []
    for path in (p.strip() for p in args.paths):
        if not path:
            continue
        content = ctx.skills.get_skill_resource(skill, path)
        if content is None:
            missing.append(path)
        else:
            loaded.append(f"# Skill Resource: {skill} / {path}\n\n{content}")

    if not loaded:
        return (
            f"No resources found for skill '{skill}'. "
            f"Requested: {', '.join(args.paths)}."
        )
    combined = SKILL_SEPARATOR.join(loaded)
    if missing:
        combined += f"\n\n---\nNote: Resource(s) not found: {', '.join(missing)}."
    return combined


# ----- sub-agent tools -------------------------------------------------


class GenerateSqlInput(BaseModel):
    question: str = Field(
        ..., min_length=1, description="The user's question or data request."
    )
    context: Optional[DatabaseContext] = Field(
        None,
        description=(
            "Schema context: database, tables with columns, current "
            "query. Overrides the request context field by field."
        ),
    )


class GenerateVisualizationInput(BaseModel):
    question: str = Field(..., description="The original user question.")
    sql: str = Field(..., min_length=1, description="The SQL to visualize.")
    columns: Optional[List[str]] = Field(
        None, description="Result column names, if known."
    )


class OptimizeSqlInput(BaseModel):
    sql: str = Field(..., min_length=1, description="The SQL to optimize.")
    diagnostics: Optional[str] = Field(
        None, description="EXPLAIN output or query metrics."
    )
    goal: Optional[str] = Field(
        None, description="latency, memory, bytes read, ..."
    )


def merge_context(
    base: Optional[DatabaseContext],
    override: Optional[DatabaseContext],
) -> Optional[DatabaseContext]:
    """Fields set on *override* win over *base*."""
    if override is None:
        return base
    if base is None:
        return override
    update: Dict[str, Any] = {
        key: getattr(override, key)
        for key in override.model_fields_set
        if getattr(override, key) not in (None, [])
    }
    return base.model_copy(update=update)


def generate_sql(args: GenerateSqlInput, ctx: ToolContext) -> Dict[str, Any]:
    agent = SqlGenerationAgent(ctx.model, ctx.skills)
    output = agent.run(
        args.question,
        merge_context(ctx.database_context, args.context),
    )
    return output.model_dump()


def generate_visualization(
    args: GenerateVisualizationInput,
    ctx: ToolContext,
) -> Dict[str, Any]:
    agent = VisualizationAgent(ctx.model, ctx.skills)
    panel = agent.run(args.question, args.sql, args.columns)
    return panel.model_dump(exclude_none=True)


def optimize_sql(args: OptimizeSqlInput, ctx: ToolContext) -> Dict[str, Any]:
    agent = OptimizationAgent(ctx.model, ctx.skills)
    return agent.run(args.sql, args.diagnostics, args.goal).model_dump()


def build_server_tools(registry: SkillRegistry) -> List[ToolSpec]:
    """Return the server namespace tool specs."""
    return [
        ToolSpec(
            name=names.SKILL,
            description=skill_description(registry),
            input_model=SkillInput,
            executor=load_skills,
            namespace=SERVER,
        ),
        ToolSpec(
            name=names.SKILL_RESOURCE,
            description=(
                "Load additional files (rules, references) that a "
                "skill manual points to, by path relative to the "
                "skill folder."
            ),
            input_model=SkillResourceInput,
            executor=load_skill_resources,
            namespace=SERVER,
        ),
        ToolSpec(
            name=names.GENERATE_SQL,
            description=(
                "Generate a SQL query from the user's question and the "
                "schema context. Returns needs_clarification with "
                "questions when the schema does not cover the request."
            ),
            input_model=GenerateSqlInput,
            executor=generate_sql,
            namespace=SERVER,
        ),
        ToolSpec(
            name=names.GENERATE_VISUALIZATION,
            description=(
                "Choose the best panel (line, bar, area, table, none) "
                "for a SQL query and return its descriptor."
            ),
            input_model=GenerateVisualizationInput,
            executor=generate_visualization,
            namespace=SERVER,
        ),
        ToolSpec(
            name=names.OPTIMIZE_SQL,
            description=(
                "Rewrite a SQL query for performance while keeping its "
                "result. Pass diagnostics and a goal when available."
            ),
            input_model=OptimizeSqlInput,
            executor=optimize_sql,
            namespace=SERVER,
        ),
    ]
