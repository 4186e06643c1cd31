"""
SQL template rendering for client tools.

Tool SQL is written as a Jinja2 template with conditional
blocks so that optional filters are only emitted when the
model actually supplied them.  Values are always bound as
``:name`` parameters; the template only ever sees booleans.

Example template:
    SELECT table_schema, table_name
    FROM information_schema.tables
    WHERE 1=1
    {% if database %} AND table_schema = :database {% endif %}
    {% if name_pattern %} AND table_name LIKE :name_pattern {% endif %}
    LIMIT :limit

Rendered with ``{"database": "shop", "limit": 20}`` only the
``table_schema`` condition survives.
"""

import re
from typing import Dict, Any, Tuple

from jinja2.sandbox import SandboxedEnvironment


# Sandboxed Jinja2 environment, no file access or imports.
_jinja_env = SandboxedEnvironment(
    autoescape=False,
    keep_trailing_newline=True,
)

_PLACEHOLDER_RE = re.compile(r"(?<!:):([a-zA-Z_][a-zA-Z0-9_]*)")


def _normalize_template(template_str: str) -> str:
    """
    Fix double-escaped Jinja2 tags.

    Converts ``{%% if x %%}`` to ``{% if x %}``.
    """
    template_str = re.sub(r"\{%%", "{%", template_str)
    template_str = re.sub(r"%%}", "%}", template_str)
    return template_str


def render_query(
    template_str: str,
    params: Dict[str, Any],
) -> Tuple[str, Dict[str, Any]]:
    """
    Render a Jinja2 SQL template and return the final SQL
    with only the bound parameters it still references.

    1. Normalise double-escaped Jinja2 delimiters.
    2. Evaluate conditionals with a *boolean-only* context so
       parameter values are never evaluated as expressions.
    3. Keep only params whose ``:name`` placeholder survived.

    Parameters:
        template_str (str): Jinja2-enhanced SQL template.
        params (dict): All available parameter values.

    Returns:
        tuple[str, dict]: (rendered_sql, filtered_params)
    """
    template_str = _normalize_template(template_str)

    context = {
        k: v is not None and v != "" and v != []
        for k, v in params.items()
    }

    template = _jinja_env.from_string(template_str)
    rendered_sql = template.render(**context)

    rendered_sql = re.sub(r"\n\s*\n", "\n", rendered_sql).strip()
    rendered_sql = rendered_sql.rstrip(";").strip()

    used_placeholders = set(_PLACEHOLDER_RE.findall(rendered_sql))

    filtered_params = {}
    for k, v in params.items():
        if k not in used_placeholders:
            continue
        filtered_params[k] = _coerce_numeric(v)

    missing = used_placeholders - set(filtered_params)
    if missing:
        raise ValueError(
            "Unbound query parameters: "
            + ", ".join(sorted(missing))
        )

    return rendered_sql, filtered_params


def _coerce_numeric(value: Any) -> Any:
    """
    Convert a string value to int or float if it looks numeric.

    Clauses like ``LIMIT`` reject string parameters.
    """
    if not isinstance(value, str):
        return value
    try:
        return int(value)
    except ValueError:
        pass
    try:
        return float(value)
    except ValueError:
        return value
