"""
Historical metric analysis client tool.

Reads a time series from the server's metric log, buckets it
by ``granularity_minutes`` and returns the points together
with a ``{min, max, avg, trend}`` summary.  Only ``memory``
(``MemoryTracking`` from ``system.metric_log``) is backed by a
query today; other metric types answer ``success=false`` with
an explanation instead of failing.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Literal, Optional, Sequence

from pydantic import BaseModel, Field

from console_agent.services.db_connector import QueryError
from console_agent.services.query_engine import render_query
from console_agent.services.tools.base import ToolContext

logger = logging.getLogger(__name__)

# Relative change between first and last point below which
# a series counts as flat.
TREND_THRESHOLD = 0.10

_MEMORY_SQL = """\
SELECT
  toStartOfInterval(event_time, INTERVAL :granularity_minutes MINUTE) AS bucket_start,
  avgIf(value, metric = 'MemoryTracking') AS avg_memory_bytes
FROM system.metric_log
WHERE metric = 'MemoryTracking'
{% if range_from %}
  AND event_time >= :range_from AND event_time <= :range_to
{% else %}
  AND event_time >= :window_start
{% endif %}
GROUP BY bucket_start
ORDER BY bucket_start
"""


class TimeRange(BaseModel):
    """Absolute range, ISO 8601 on both ends."""

    model_config = {"populate_by_name": True}

    from_: str = Field(..., alias="from")
    to: str


class AnalyzeMetricsInput(BaseModel):
    """Input of the ``analyze_metrics`` tool."""

    metric_type: Literal["memory", "disk", "query_latency"] = Field(
        ..., description="Metric to analyse."
    )
    time_window: Optional[int] = Field(
        None,
        ge=1,
        description=(
            "Lookback window in minutes. Ignored when time_range "
            "is given."
        ),
    )
    time_range: Optional[TimeRange] = Field(
        None, description="Absolute ISO 8601 range {from, to}."
    )
    granularity_minutes: Optional[int] = Field(
        None, description="Bucket size in minutes. Default 5."
    )


def build_time_filter(
    time_window: Optional[int],
    time_range: Optional[TimeRange],
    default_window: int = 60,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Decide the time filter for a metric query.

    An absolute range wins over a lookback window; with
    neither, *default_window* minutes are used.

    Parameters:
        time_window (int, optional): Lookback in minutes.
        time_range (TimeRange, optional): Absolute range.
        default_window (int): Fallback lookback.
        now (datetime, optional): Reference time, for tests.

    Returns:
        dict: ``params`` to bind plus the echoed
        ``time_window`` or ``time_range``.

    Raises:
        ValueError: Range ends are not ISO 8601 timestamps.
    """
    if time_range is not None and time_range.from_ and time_range.to:
        return {
            "params": {
                "range_from": datetime.fromisoformat(
                    time_range.from_.replace("Z", "+00:00")
                ),
                "range_to": datetime.fromisoformat(
                    time_range.to.replace("Z", "+00:00")
                ),
            },
            "time_range": {"from": time_range.from_, "to": time_range.to},
        }

    minutes = time_window or default_window
    reference = now or datetime.now()
    return {
        "params": {
            "window_start": reference - timedelta(minutes=minutes),
        },
        "time_window": minutes,
    }


def compute_summary(values: Sequence[float]) -> Dict[str, Any]:
    """
    Summarise a series as ``{min, max, avg, trend}``.

    ``trend`` compares the last point with the first: a change
    smaller than 10% of ``max(|first|, 1)`` is ``flat``,
    otherwise ``up`` or ``down``.  An empty series yields
    nulls and ``unknown``.
    """
    if not values:
        return {"min": None, "max": None, "avg": None, "trend": "unknown"}

    first, last = values[0], values[-1]
    delta = last - first
    threshold = max(abs(first), 1) * TREND_THRESHOLD
    if abs(delta) < threshold:
        trend = "flat"
    elif delta > 0:
        trend = "up"
    else:
        trend = "down"

    return {
        "min": min(values),
        "max": max(values),
        "avg": sum(values) / len(values),
        "trend": trend,
    }


def analyze_metrics(
    args: AnalyzeMetricsInput,
    ctx: ToolContext,
) -> Dict[str, Any]:
    """Executor of the ``analyze_metrics`` client tool."""
    granularity = (
        args.granularity_minutes
        if args.granularity_minutes and args.granularity_minutes > 0
        else ctx.settings.default_granularity_minutes
    )
    time_info = build_time_filter(
        args.time_window,
        args.time_range,
        default_window=ctx.settings.default_time_window_minutes,
    )

    result: Dict[str, Any] = {
        "success": False,
        "metric_type": args.metric_type,
        "granularity_minutes": granularity,
        "series": [],
        "summary": compute_summary([]),
    }
    for key in ("time_window", "time_range"):
        if key in time_info:
            result[key] = time_info[key]

    if args.metric_type != "memory":
        result["message"] = (
            "Historical analysis is currently implemented only for "
            "metric_type='memory'."
        )
        return result

    sql, params = render_query(
        _MEMORY_SQL,
        {"granularity_minutes": granularity, **time_info["params"]},
    )
    try:
        response = ctx.connection.query(sql, params)
    except QueryError as exc:
        logger.warning("[metrics] memory query failed: %s", exc)
        result["error"] = exc.data or exc.message
        return result

    series = _to_series(response.json().get("data") or [])
    result.update({
        "success": True,
        "series": series,
        "summary": compute_summary([p["value"] for p in series]),
        "message": (
            "Memory usage trend derived from system.metric_log "
            "(MemoryTracking). Use summary.trend for the overall "
            "direction."
        ),
    })
    return result


def _to_series(rows: List[List[Any]]) -> List[Dict[str, Any]]:
    series = []
    for row in rows:
        bucket = row[0] if row else None
        raw = row[1] if len(row) > 1 else None
        try:
            value = float(raw) if raw is not None else 0.0
        except (TypeError, ValueError):
            value = 0.0
        series.append({
            "timestamp": (
                bucket.isoformat() if isinstance(bucket, datetime)
                else str(bucket)
            ),
            "value": value,
        })
    return series
