"""Application service orchestrating repositories, the rollup cache and pure analytics."""

from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import structlog

from .analytics import aggregate_runs, compare_aggregations, select_top_runs
from .cache import RollupCache
from .config import Settings
from .errors import InvalidWindowError, PresetNotFoundError
from .models import ComparisonPreset, Run, TrainingSession, Window, WindowSpec
from .rollups import compute_overall_rollup, compute_period_rollup, compute_task_rollup
from .windows import PERIOD_KEYS, describe_window, period_start, resolve_window, session_id_of

log = structlog.get_logger(component="analytics-service")

TASK_SCOPES = ("all", "common")


class RunAnalyticsService:
    """Facade exposing window aggregation, comparisons, presets and summaries.

    ``repo`` must implement both ``RunRepository`` and ``PresetRepository``.
    ``cache`` is optional; every cached read has a direct-computation fallback.
    """

    def __init__(
        self,
        repo,
        cache: Optional[RollupCache] = None,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.repo = repo
        self.cache = cache
        self.settings = settings or Settings()
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def resolve(self, spec: WindowSpec, task_ids: Optional[Sequence[int]] = None) -> Window:
        window, _ = self._resolve(spec, task_ids)
        return window

    def aggregate(
        self,
        spec: WindowSpec,
        task_ids: Optional[Sequence[int]] = None,
        practice: bool = False,
    ) -> Dict:
        window, session = self._resolve(spec, task_ids)
        runs = self._fetch(window, practice=practice)
        result = aggregate_runs(runs, window, practice=practice, bucket_tz=self.settings.timezone)
        result["meta"]["label"] = describe_window(spec, session)
        return result

    def run_comparison(self, left: WindowSpec, right: WindowSpec, task_scope: Any = "all") -> Dict:
        """Compare two windows.

        ``task_scope`` is ``"all"``, ``"common"`` (only tasks played in both
        windows, or everything when none are shared) or a list of task ids.
        """
        _validate_task_scope(task_scope)
        left_window, left_session = self._resolve(left)
        right_window, right_session = self._resolve(right)

        left_runs = self._fetch(left_window)
        right_runs = self._fetch(right_window)

        scope_ids = self._scope_task_ids(task_scope, left_runs, right_runs)
        if scope_ids is not None:
            left_window = left_window.with_task_ids(scope_ids)
            right_window = right_window.with_task_ids(scope_ids)
            if task_scope != "common":
                left_runs = self._fetch(left_window)
                right_runs = self._fetch(right_window)

        tz = self.settings.timezone
        comparison = compare_aggregations(
            aggregate_runs(left_runs, left_window, bucket_tz=tz),
            aggregate_runs(right_runs, right_window, bucket_tz=tz),
        )
        comparison["labels"] = {
            "left": describe_window(left, left_session),
            "right": describe_window(right, right_session),
        }
        comparison["meta"]["task_scope"] = task_scope
        if left_session is not None:
            comparison["meta"]["left_session_id"] = left_session.id
        if right_session is not None:
            comparison["meta"]["right_session_id"] = right_session.id

        log.debug(
            "comparison_run",
            left=comparison["labels"]["left"],
            right=comparison["labels"]["right"],
            shared_tasks=comparison["meta"]["shared_task_count"],
        )
        return comparison

    def save_comparison_preset(
        self,
        name: str,
        left: WindowSpec,
        right: WindowSpec,
        task_scope: Any = "all",
        description: Optional[str] = None,
    ) -> int:
        if not name or not name.strip():
            raise ValueError("Preset name is required")
        _validate_task_scope(task_scope)
        self._resolve(left)
        self._resolve(right)

        preset = ComparisonPreset(
            id=None,
            name=name.strip(),
            description=description,
            left_spec=left,
            right_spec=right,
            task_scope=task_scope,
            created_at=self.clock(),
        )
        preset_id = self.repo.save_comparison_preset(preset)
        log.info("preset_saved", preset_id=preset_id, name=preset.name)
        return preset_id

    def list_comparison_presets(self) -> List[ComparisonPreset]:
        return list(self.repo.list_comparison_presets())

    def run_comparison_preset(self, preset_id: int) -> Dict:
        preset = self.repo.get_comparison_preset(preset_id)
        if preset is None:
            raise PresetNotFoundError(preset_id)
        self.repo.touch_comparison_preset(preset_id, self.clock())
        comparison = self.run_comparison(preset.left_spec, preset.right_spec, preset.task_scope)
        comparison["meta"]["preset_id"] = preset_id
        return comparison

    def delete_comparison_preset(self, preset_id: int) -> bool:
        deleted = self.repo.delete_comparison_preset(preset_id)
        if deleted:
            log.info("preset_deleted", preset_id=preset_id)
        return deleted

    def get_top_runs(
        self,
        task_id: int,
        spec: WindowSpec,
        limit: Optional[int] = None,
        sort_by: str = "score",
        practice: bool = False,
    ) -> List[Run]:
        window, _ = self._resolve(spec)
        runs = self.repo.fetch_runs(window.start_time, window.end_time, [task_id], practice)
        if limit is None:
            limit = self.settings.top_runs_limit
        return select_top_runs(runs, task_id, window, limit=limit, sort_by=sort_by, practice=practice)

    def get_cached_summary(self, period: str) -> Optional[Dict]:
        """Cached rollup for a canonical period, or ``None`` on a miss."""
        _validate_period(period)
        if self.cache is None:
            return None
        return self.cache.read("period", period)

    def get_summary(self, period: str) -> Dict:
        cached = self.get_cached_summary(period)
        if cached is not None:
            return cached

        log.debug("cache_miss", kind="period", key=period)
        now = self.clock()
        start = period_start(period, now, self.settings.timezone)
        runs = self.repo.fetch_runs(start, now if start is not None else None)
        return compute_period_rollup(period, runs, best_task_min_runs=self.settings.best_task_min_runs)

    def get_task_summary(self, task_id: int) -> Dict:
        if self.cache is not None:
            cached = self.cache.read("task", task_id)
            if cached is not None:
                return cached

        log.debug("cache_miss", kind="task", key=task_id)
        runs = self.repo.fetch_runs(task_ids=[task_id])
        return compute_task_rollup(task_id, runs, recent_runs_window=self.settings.recent_runs_window)

    def get_overall_summary(self) -> Dict:
        if self.cache is not None:
            cached = self.cache.read("overall")
            if cached is not None:
                return cached

        log.debug("cache_miss", kind="overall")
        return compute_overall_rollup(self.repo.fetch_runs())

    def on_runs_ingested(self, task_ids: Sequence[int]) -> None:
        if self.cache is not None:
            self.cache.on_runs_ingested(task_ids)

    def _resolve(
        self,
        spec: WindowSpec,
        task_ids: Optional[Sequence[int]] = None,
    ) -> Tuple[Window, Optional[TrainingSession]]:
        session = None
        if isinstance(spec, Mapping) and spec.get("type") == "session":
            session = self.repo.get_session(session_id_of(spec))

        window = resolve_window(
            spec,
            now=self.clock(),
            tz=self.settings.timezone,
            session=session,
            week_start=self.settings.week_start,
        )
        if task_ids is not None:
            window = window.with_task_ids(task_ids)
        return window, session

    def _fetch(self, window: Window, practice: bool = False) -> Sequence[Run]:
        return self.repo.fetch_runs(
            window.start_time,
            window.end_time,
            window.task_ids or None,
            practice,
        )

    def _scope_task_ids(
        self,
        task_scope: Any,
        left_runs: Sequence[Run],
        right_runs: Sequence[Run],
    ) -> Optional[Tuple[int, ...]]:
        if task_scope is None or task_scope == "all":
            return None
        if task_scope == "common":
            left_ids = {run.task_id for run in left_runs if run.task_id is not None}
            right_ids = {run.task_id for run in right_runs if run.task_id is not None}
            shared = tuple(sorted(left_ids & right_ids))
            return shared or None
        return tuple(int(task_id) for task_id in task_scope)


def _validate_task_scope(task_scope: Any) -> None:
    if task_scope is None or task_scope in TASK_SCOPES:
        return
    if isinstance(task_scope, (list, tuple, set, frozenset)):
        try:
            [int(task_id) for task_id in task_scope]
        except (TypeError, ValueError) as exc:
            raise InvalidWindowError(f"Task scope ids must be integers: {task_scope!r}") from exc
        return
    raise InvalidWindowError(f"Unknown task scope {task_scope!r}")


def _validate_period(period: str) -> None:
    if period not in PERIOD_KEYS:
        raise ValueError(f"Unknown period {period!r}; expected one of {', '.join(PERIOD_KEYS)}")
