"""
Tool name constants shared by the catalog, the planner routes
and the streamed events.
"""

# Server tools: run inside the agent service.
SKILL = "skill"
SKILL_RESOURCE = "skill_resource"
GENERATE_SQL = "generate_sql"
GENERATE_VISUALIZATION = "generate_visualization"
OPTIMIZE_SQL = "optimize_sql"

# Tag of the plan event; never dispatched.
PLAN = "plan"

# Client tools: bound to the request's database connection.
GET_TABLES = "get_tables"
EXPLORE_SCHEMA = "explore_schema"
VALIDATE_SQL = "validate_sql"
EXECUTE_SQL = "execute_sql"
ANALYZE_METRICS = "analyze_metrics"

SERVER_TOOL_NAMES = (
    SKILL,
    SKILL_RESOURCE,
    GENERATE_SQL,
    GENERATE_VISUALIZATION,
    OPTIMIZE_SQL,
)

CLIENT_TOOL_NAMES = (
    GET_TABLES,
    EXPLORE_SCHEMA,
    VALIDATE_SQL,
    EXECUTE_SQL,
    ANALYZE_METRICS,
)
