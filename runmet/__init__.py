"""RunMet - time-window aggregation and comparison for aim-training runs."""

from .analytics import (
    aggregate_runs,
    compare_aggregations,
    is_improvement,
    percentile,
    select_top_runs,
)
from .cache import RollupCache
from .errors import InvalidWindowError, PresetNotFoundError, RunMetError
from .integrity import IntegrityChecker
from .service import RunAnalyticsService
from .windows import describe_window, resolve_window

__all__ = [
    "RunAnalyticsService",
    "RollupCache",
    "IntegrityChecker",
    "resolve_window",
    "describe_window",
    "aggregate_runs",
    "compare_aggregations",
    "is_improvement",
    "percentile",
    "select_top_runs",
    "RunMetError",
    "InvalidWindowError",
    "PresetNotFoundError",
]

__version__ = "0.1.0"
