"""In-process rollup cache with explicit rebuild and refresh.

The cache is an optimisation only. Reads never compute: a miss returns
``None`` and the caller falls back to aggregating from the store. Writers are
serialised by one cache-wide lock held from the store read to the final
write, so an older snapshot can never overwrite a newer one.
"""

import copy
import threading
from collections import defaultdict
from datetime import datetime, timezone
from typing import Callable, Dict, Hashable, Iterable, List, Optional, Tuple

import structlog

from .config import Settings
from .models import Run
from .ports import RunRepository
from .rollups import compute_overall_rollup, compute_period_rollup, compute_task_rollup
from .windows import PERIOD_KEYS, TimezoneArg, period_start

log = structlog.get_logger(component="rollup-cache")

ROLLUP_KINDS = ("overall", "task", "period")

RollupKey = Tuple[str, Hashable]


class RollupCache:
    """Denormalized overall, per-task and per-period rollups over a run repository."""

    def __init__(
        self,
        repo: RunRepository,
        tz: TimezoneArg = "UTC",
        clock: Optional[Callable[[], datetime]] = None,
        best_task_min_runs: int = 5,
        recent_runs_window: int = 10,
    ):
        self.repo = repo
        self.tz = tz
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.best_task_min_runs = best_task_min_runs
        self.recent_runs_window = recent_runs_window

        self._rows: Dict[RollupKey, Dict] = {}
        self._write_lock = threading.RLock()

    @classmethod
    def from_settings(
        cls,
        repo: RunRepository,
        settings: Settings,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> "RollupCache":
        """Cache whose calendar and tuning match the service's settings."""
        return cls(
            repo,
            tz=settings.timezone,
            clock=clock,
            best_task_min_runs=settings.best_task_min_runs,
            recent_runs_window=settings.recent_runs_window,
        )

    def read(self, kind: str, key: Hashable = None) -> Optional[Dict]:
        """Return a copy of a cached rollup, or ``None`` on a miss."""
        row = self._rows.get(_rollup_key(kind, key))
        return copy.deepcopy(row) if row is not None else None

    def task_ids(self) -> List[int]:
        """Task ids that currently have a cached rollup."""
        return sorted(key for kind, key in list(self._rows) if kind == "task")

    def rebuild_all(self) -> None:
        """Recompute every rollup from scratch."""
        with self._write_lock:
            runs = self.repo.fetch_runs()
            by_task = _group_by_task(runs)

            self._store(("overall", None), compute_overall_rollup(runs))

            for task_id, task_runs in by_task.items():
                self._store(("task", task_id), self._task_rollup(task_id, task_runs))
            for stale_id in set(self.task_ids()) - set(by_task):
                self._rows.pop(("task", stale_id), None)

            self._refresh_periods_from(runs)
        log.info("cache_rebuilt", runs=len(runs), tasks=len(by_task))

    def refresh_overall(self) -> None:
        with self._write_lock:
            self._store(("overall", None), compute_overall_rollup(self.repo.fetch_runs()))

    def refresh_task(self, task_id: int) -> None:
        """Recompute one task's rollup; a task without runs loses its row."""
        key = ("task", task_id)
        with self._write_lock:
            runs = self.repo.fetch_runs(task_ids=[task_id])
            if not runs:
                self._rows.pop(key, None)
                log.debug("task_rollup_dropped", task_id=task_id)
                return
            self._store(key, self._task_rollup(task_id, runs))

    def refresh_periods(self) -> None:
        with self._write_lock:
            self._refresh_periods_from(self.repo.fetch_runs())

    def on_runs_ingested(self, task_ids: Iterable[int]) -> None:
        """Targeted refresh after new runs land for ``task_ids``."""
        touched = sorted(set(task_ids))
        for task_id in touched:
            self.refresh_task(task_id)
        self.refresh_overall()
        self.refresh_periods()
        log.info("cache_refreshed", tasks=touched)

    def _refresh_periods_from(self, runs: List[Run]) -> None:
        # Caller holds the write lock.
        now = self.clock()
        for period in PERIOD_KEYS:
            start = period_start(period, now, self.tz)
            period_runs = [run for run in runs if start is None or start <= run.played_at <= now]
            rollup = compute_period_rollup(period, period_runs, best_task_min_runs=self.best_task_min_runs)
            self._store(("period", period), rollup)

    def _task_rollup(self, task_id: int, runs: List[Run]) -> Dict:
        return compute_task_rollup(task_id, runs, recent_runs_window=self.recent_runs_window)

    def _store(self, key: RollupKey, data: Dict) -> None:
        # Caller holds the write lock. last_updated only moves when contents change.
        current = self._rows.get(key)
        if current is not None and _without_marker(current) == data:
            return
        self._rows[key] = {**data, "last_updated": self.clock().isoformat()}


def _rollup_key(kind: str, key: Hashable) -> RollupKey:
    if kind not in ROLLUP_KINDS:
        raise ValueError(f"Unknown rollup kind {kind!r}; expected one of {', '.join(ROLLUP_KINDS)}")
    return (kind, None if kind == "overall" else key)


def _group_by_task(runs: Iterable[Run]) -> Dict[int, List[Run]]:
    grouped: Dict[int, List[Run]] = defaultdict(list)
    for run in runs:
        if run.task_id is not None:
            grouped[run.task_id].append(run)
    return dict(grouped)


def _without_marker(row: Dict) -> Dict:
    return {name: value for name, value in row.items() if name != "last_updated"}
