"""Pure aggregation and comparison functions that work on runs."""

from collections import defaultdict
from datetime import datetime
from math import ceil
from typing import Dict, Iterable, List, Optional, Sequence

from .models import Run, Window
from .windows import TimezoneArg, get_zone

PERCENTILES = (("p50", 0.5), ("p95", 0.95))
TOP_RUN_SORT_FIELDS = ("score", "accuracy", "avg_ttk")
LOWER_IS_BETTER = frozenset({"ttk", "avg_ttk"})

DAILY_BUCKET_SPAN_SECONDS = 7 * 86400
DAILY_BUCKET_FORMAT = "%Y-%m-%d"


def percentile(sorted_values: Sequence[float], p: float) -> Optional[float]:
    """Nearest-rank percentile of an ascending sequence.

    The index is ``ceil(n * p) - 1`` clamped at zero; no interpolation.
    Returns ``None`` for an empty sequence.
    """
    if not sorted_values:
        return None
    index = ceil(len(sorted_values) * p) - 1
    return sorted_values[max(0, index)]


def filter_runs(runs: Iterable[Run], window: Window, practice: bool = False) -> List[Run]:
    """Apply the scope predicate shared by every aggregation pass.

    Keeps runs whose practice flag equals ``practice`` and whose ``played_at``
    lies inside the inclusive window bounds. A non-empty ``window.task_ids``
    further restricts the task set; an empty one means no restriction.
    """
    task_ids = set(window.task_ids) if window.task_ids else None
    return [
        run
        for run in runs
        if bool(run.is_practice) == practice
        and window.start_time <= run.played_at <= window.end_time
        and (task_ids is None or run.task_id in task_ids)
    ]


def aggregate_runs(
    runs: Iterable[Run],
    window: Window,
    practice: bool = False,
    bucket_tz: TimezoneArg = "UTC",
) -> Dict:
    """Compute overall stats, per-task breakdown and trend buckets for a window.

    All three sections are derived from one filtered list so they can never
    disagree about which runs are in scope.
    """
    scoped = filter_runs(runs, window, practice=practice)

    return {
        "overall": _overall_stats(scoped),
        "by_task": _task_breakdown(scoped),
        "trend": _trend_series(scoped, window, bucket_tz),
        "meta": {
            "start_time": window.start_time.isoformat(),
            "end_time": window.end_time.isoformat(),
            "task_filter": len(window.task_ids) if window.task_ids is not None else None,
            "session_id": window.session_id,
            "practice": practice,
        },
    }


def compare_aggregations(left: Dict, right: Dict) -> Dict:
    """Diff two aggregation results.

    Diffs are ``right - left``. Per-task diffs cover only tasks present on
    both sides; ``meta["has_shared_tasks"]`` tells callers whether there was
    anything to compare at task level.
    """
    right_tasks = {row["task_id"]: row for row in right["by_task"]}
    shared = [row for row in left["by_task"] if row["task_id"] in right_tasks]

    task_comparisons = []
    for left_row in shared:
        right_row = right_tasks[left_row["task_id"]]
        task_comparisons.append(
            {
                "task_id": left_row["task_id"],
                "task_name": left_row["task_name"],
                "left": _task_snapshot(left_row),
                "right": _task_snapshot(right_row),
                "diff": _diff_block(left_row, right_row),
            }
        )

    return {
        "overall": {
            "left": left["overall"],
            "right": right["overall"],
            "diffs": _diff_block(left["overall"], right["overall"]),
        },
        "tasks": task_comparisons,
        "trend": {
            "left": left["trend"],
            "right": right["trend"],
        },
        "meta": {
            "has_shared_tasks": len(shared) > 0,
            "shared_task_count": len(shared),
            "left_run_count": left["overall"]["count"],
            "right_run_count": right["overall"]["count"],
            "left_task_count": len(left["by_task"]),
            "right_task_count": len(right["by_task"]),
        },
    }


def is_improvement(metric: str, diff: Optional[float]) -> Optional[bool]:
    """Whether a diff on ``metric`` is an improvement; ``None`` when unchanged or unknown.

    Lower time-to-kill is better, so a negative ttk diff counts as improved.
    """
    if diff is None or diff == 0:
        return None
    base = metric[: -len("_pct")] if metric.endswith("_pct") else metric
    if base in LOWER_IS_BETTER:
        return diff < 0
    return diff > 0


def select_top_runs(
    runs: Iterable[Run],
    task_id: int,
    window: Window,
    limit: int = 3,
    sort_by: str = "score",
    practice: bool = False,
) -> List[Run]:
    """Best runs of one task inside a window.

    Sorted descending by ``sort_by``, except ``avg_ttk`` which sorts ascending.
    Unknown sort fields fall back to ``score``.
    """
    field = sort_by if sort_by in TOP_RUN_SORT_FIELDS else "score"
    candidates = [
        run
        for run in filter_runs(runs, window.with_task_ids([task_id]), practice=practice)
        if getattr(run, field) is not None
    ]
    candidates.sort(key=lambda run: getattr(run, field), reverse=field != "avg_ttk")
    return candidates[: max(0, limit)]


def _overall_stats(runs: List[Run]) -> Dict:
    scores = _sorted_values(runs, "score")
    accuracies = _sorted_values(runs, "accuracy")
    ttks = _sorted_values(runs, "avg_ttk")
    durations = _sorted_values(runs, "duration")

    overall = {
        "count": len(runs),
        "unique_tasks": len({run.task_id for run in runs if run.task_id is not None}),
        "avg_score": _mean(scores),
        "avg_accuracy": _mean(accuracies),
        "avg_ttk": _mean(ttks),
        "total_duration": float(sum(durations)),
    }
    for name, values in (("score", scores), ("accuracy", accuracies), ("ttk", ttks)):
        for suffix, point in PERCENTILES:
            overall[f"{name}_{suffix}"] = percentile(values, point)
    return overall


def _task_breakdown(runs: List[Run]) -> List[Dict]:
    grouped: Dict[Optional[int], List[Run]] = defaultdict(list)
    for run in runs:
        grouped[run.task_id].append(run)

    rows = []
    for task_id, task_runs in grouped.items():
        scores = _sorted_values(task_runs, "score")
        rows.append(
            {
                "task_id": task_id,
                "task_name": task_runs[0].task_name,
                "count": len(task_runs),
                "avg_score": _mean(scores),
                "avg_accuracy": _mean(_sorted_values(task_runs, "accuracy")),
                "avg_ttk": _mean(_sorted_values(task_runs, "avg_ttk")),
                "max_score": scores[-1] if scores else None,
                "min_score": scores[0] if scores else None,
            }
        )

    rows.sort(
        key=lambda row: (
            row["task_name"] is None,
            row["task_name"] or "",
            row["task_id"] if row["task_id"] is not None else -1,
        )
    )
    return rows


def _trend_series(runs: List[Run], window: Window, bucket_tz: TimezoneArg) -> List[Dict]:
    daily = window.span_seconds > DAILY_BUCKET_SPAN_SECONDS
    zone = get_zone(bucket_tz)

    buckets: Dict[str, List[Run]] = defaultdict(list)
    for run in runs:
        buckets[_bucket_label(run.played_at.astimezone(zone), daily)].append(run)

    # Hourly labels carry the UTC offset, so order by time rather than by text.
    ordered = sorted(buckets.items(), key=lambda item: min(run.played_at for run in item[1]))
    return [
        {
            "bucket": bucket,
            "avg_score": _mean(_sorted_values(bucket_runs, "score")),
            "avg_accuracy": _mean(_sorted_values(bucket_runs, "accuracy")),
            "avg_ttk": _mean(_sorted_values(bucket_runs, "avg_ttk")),
            "count": len(bucket_runs),
        }
        for bucket, bucket_runs in ordered
    ]


def _bucket_label(local: datetime, daily: bool) -> str:
    if daily:
        return local.strftime(DAILY_BUCKET_FORMAT)
    # The offset keeps the repeated hour of a DST fall-back night apart.
    return local.replace(minute=0, second=0, microsecond=0).isoformat()


def _task_snapshot(row: Dict) -> Dict:
    return {
        "count": row["count"],
        "avg_score": row["avg_score"],
        "avg_accuracy": row["avg_accuracy"],
        "avg_ttk": row["avg_ttk"],
    }


def _diff_block(left: Dict, right: Dict) -> Dict:
    block = {}
    for name in ("score", "accuracy", "ttk"):
        left_value = left[f"avg_{name}"]
        right_value = right[f"avg_{name}"]
        block[name] = _diff(left_value, right_value)
        block[f"{name}_pct"] = _diff_pct(left_value, right_value)
    return block


def _diff(left: Optional[float], right: Optional[float]) -> Optional[float]:
    if left is None or right is None:
        return None
    return right - left


def _diff_pct(left: Optional[float], right: Optional[float]) -> Optional[float]:
    # A zero or missing baseline has no meaningful ratio.
    if not left or right is None:
        return None
    return (right / left - 1) * 100


def _sorted_values(runs: Iterable[Run], attribute: str) -> List[float]:
    return sorted(float(value) for value in (getattr(run, attribute) for run in runs) if value is not None)


def _mean(values: Sequence[float]) -> Optional[float]:
    return sum(values) / len(values) if values else None
