"""Rollup computations backing the cache store.

Each function takes runs that are already scoped (non-practice, and for the
task and period variants already narrowed) and returns a flat dict whose
numeric fields are zero rather than ``None`` when there is nothing to
summarise.
"""

from collections import defaultdict
from typing import Dict, Iterable, List, Optional, Sequence

from .models import Run


def compute_overall_rollup(runs: Iterable[Run]) -> Dict:
    """All-time summary across every task."""
    runs = list(runs)
    return {
        "total_runs": len(runs),
        "unique_tasks": len({run.task_id for run in runs if run.task_id is not None}),
        "avg_accuracy": _avg(runs, "accuracy"),
        "max_accuracy": _max(runs, "accuracy"),
        "avg_score": _avg(runs, "score"),
        "max_score": _max(runs, "score"),
        "avg_duration": _avg(runs, "duration"),
        "total_duration": _total(runs, "duration"),
        "avg_ttk": _avg(runs, "avg_ttk"),
        "avg_shots": _avg(runs, "shots"),
        "total_shots": int(_total(runs, "shots")),
        "avg_overshots": _avg(runs, "overshots"),
        "avg_reload_count": _avg(runs, "reloads"),
        "avg_fps": _avg(runs, "fps_avg"),
    }


def compute_task_rollup(
    task_id: int,
    runs: Iterable[Run],
    task_name: Optional[str] = None,
    recent_runs_window: int = 10,
) -> Dict:
    """Summary of one task; ``recent_avg_accuracy`` covers the latest runs only."""
    runs = sorted(runs, key=lambda run: run.played_at)
    if task_name is None and runs:
        task_name = runs[-1].task_name
    recent = runs[-recent_runs_window:] if recent_runs_window > 0 else []

    return {
        "task_id": task_id,
        "task_name": task_name,
        "total_runs": len(runs),
        "avg_accuracy": _avg(runs, "accuracy"),
        "max_accuracy": _max(runs, "accuracy"),
        "avg_score": _avg(runs, "score"),
        "max_score": _max(runs, "score"),
        "avg_ttk": _avg(runs, "avg_ttk"),
        "avg_duration": _avg(runs, "duration"),
        "total_duration": _total(runs, "duration"),
        "avg_shots": _avg(runs, "shots"),
        "total_shots": int(_total(runs, "shots")),
        "recent_avg_accuracy": _avg(recent, "accuracy"),
        "best_score": _max(runs, "score"),
        "best_accuracy": _max(runs, "accuracy"),
        "last_played": runs[-1].played_at.isoformat() if runs else None,
    }


def compute_period_rollup(period: str, runs: Iterable[Run], best_task_min_runs: int = 5) -> Dict:
    """Summary of one canonical period plus its best task by average accuracy.

    A task qualifies as best only with at least ``best_task_min_runs`` runs.
    """
    runs = list(runs)
    best = _best_task(runs, best_task_min_runs)

    return {
        "period": period,
        "total_runs": len(runs),
        "unique_tasks": len({run.task_id for run in runs if run.task_id is not None}),
        "avg_accuracy": _avg(runs, "accuracy"),
        "avg_score": _avg(runs, "score"),
        "avg_duration": _avg(runs, "duration"),
        "best_task_name": best["task_name"] if best else None,
        "best_task_accuracy": best["avg_accuracy"] if best else 0.0,
        "best_task_score": best["max_score"] if best else 0.0,
    }


def _best_task(runs: List[Run], min_runs: int) -> Optional[Dict]:
    grouped: Dict[Optional[int], List[Run]] = defaultdict(list)
    for run in runs:
        if run.task_id is not None:
            grouped[run.task_id].append(run)

    best = None
    for task_id in sorted(grouped):
        task_runs = grouped[task_id]
        accuracies = _values(task_runs, "accuracy")
        if len(task_runs) < min_runs or not accuracies:
            continue
        avg_accuracy = sum(accuracies) / len(accuracies)
        if best is None or avg_accuracy > best["avg_accuracy"]:
            best = {
                "task_name": task_runs[0].task_name,
                "avg_accuracy": avg_accuracy,
                "max_score": _max(task_runs, "score"),
            }
    return best


def _values(runs: Iterable[Run], attribute: str) -> Sequence[float]:
    return [float(value) for value in (getattr(run, attribute) for run in runs) if value is not None]


def _avg(runs: Iterable[Run], attribute: str) -> float:
    values = _values(runs, attribute)
    return sum(values) / len(values) if values else 0.0


def _max(runs: Iterable[Run], attribute: str) -> float:
    values = _values(runs, attribute)
    return max(values) if values else 0.0


def _total(runs: Iterable[Run], attribute: str) -> float:
    return float(sum(_values(runs, attribute)))
