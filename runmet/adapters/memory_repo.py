"""In-memory repository implementing every RunMet port over plain lists."""

import dataclasses
import threading
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Sequence

from ..models import ComparisonPreset, Run, Task, TrainingSession, normalize_accuracy

_UNDATED = datetime.min.replace(tzinfo=timezone.utc)


class InMemoryRunRepository:
    """Store for tests and demos; runs are kept sorted by ``played_at``."""

    def __init__(
        self,
        tasks: Iterable[Task] = (),
        runs: Iterable[Run] = (),
        sessions: Iterable[TrainingSession] = (),
    ):
        self._lock = threading.Lock()
        self.tasks: Dict[int, Task] = {}
        self.runs: List[Run] = []
        self.sessions: Dict[int, TrainingSession] = {}
        self.goals: Dict[int, bool] = {}
        self.goal_progress: Dict[int, int] = {}
        self.presets: Dict[int, ComparisonPreset] = {}
        self._next_preset_id = 1

        for task in tasks:
            self.add_task(task)
        for run in runs:
            self.add_run(run)
        for session in sessions:
            self.add_session(session)

    def add_task(self, task: Task) -> None:
        self.tasks[task.id] = task

    def add_run(self, run: Run) -> Run:
        """Store a run with raw accuracy; normalisation happens here, once."""
        task = self.tasks.get(run.task_id) if run.task_id is not None else None
        stored = dataclasses.replace(
            run,
            accuracy=normalize_accuracy(run.accuracy),
            task_name=run.task_name if run.task_name is not None else (task.name if task else None),
        )
        with self._lock:
            self.runs.append(stored)
            self.runs.sort(key=lambda item: (item.played_at is None, item.played_at or _UNDATED, item.id))
        return stored

    def add_session(self, session: TrainingSession) -> None:
        self.sessions[session.id] = session

    def add_goal(self, goal_id: int, is_active: bool = True) -> None:
        self.goals[goal_id] = is_active

    def add_goal_progress(self, progress_id: int, goal_id: int) -> None:
        self.goal_progress[progress_id] = goal_id

    def fetch_runs(
        self,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        task_ids: Optional[Sequence[int]] = None,
        practice: bool = False,
    ) -> Sequence[Run]:
        wanted = set(task_ids) if task_ids else None
        with self._lock:
            snapshot = list(self.runs)
        return [
            run
            for run in snapshot
            if run.is_practice == practice
            and run.played_at is not None
            and (start_time is None or run.played_at >= start_time)
            and (end_time is None or run.played_at <= end_time)
            and (wanted is None or run.task_id in wanted)
        ]

    def get_session(self, session_id: int) -> Optional[TrainingSession]:
        return self.sessions.get(session_id)

    def save_comparison_preset(self, preset: ComparisonPreset) -> int:
        with self._lock:
            preset_id = self._next_preset_id
            self._next_preset_id += 1
            self.presets[preset_id] = dataclasses.replace(preset, id=preset_id)
        return preset_id

    def get_comparison_preset(self, preset_id: int) -> Optional[ComparisonPreset]:
        return self.presets.get(preset_id)

    def list_comparison_presets(self) -> Sequence[ComparisonPreset]:
        return sorted(self.presets.values(), key=lambda preset: (preset.created_at, preset.id), reverse=True)

    def touch_comparison_preset(self, preset_id: int, used_at: datetime) -> None:
        preset = self.presets.get(preset_id)
        if preset is not None:
            self.presets[preset_id] = dataclasses.replace(preset, last_used_at=used_at)

    def delete_comparison_preset(self, preset_id: int) -> bool:
        return self.presets.pop(preset_id, None) is not None

    def count_runs(self, practice: bool = False) -> int:
        return sum(1 for run in self.runs if run.is_practice == practice and run.played_at is not None)

    def count_runs_by_task(self, practice: bool = False) -> Dict[int, int]:
        counts: Dict[int, int] = {}
        for run in self.runs:
            if run.is_practice == practice and run.task_id is not None and run.played_at is not None:
                counts[run.task_id] = counts.get(run.task_id, 0) + 1
        return counts

    def count_orphaned_runs(self) -> int:
        return sum(1 for run in self.runs if run.task_id is not None and run.task_id not in self.tasks)

    def count_incomplete_runs(self) -> int:
        return sum(
            1
            for run in self.runs
            if run.task_id is None or run.played_at is None or (run.score is None and run.accuracy is None)
        )

    def count_duplicate_hashes(self) -> int:
        seen: Dict[str, int] = {}
        for run in self.runs:
            if run.hash is not None:
                seen[run.hash] = seen.get(run.hash, 0) + 1
        return sum(1 for count in seen.values() if count > 1)

    def count_orphaned_goal_progress(self) -> int:
        return sum(1 for goal_id in self.goal_progress.values() if goal_id not in self.goals)

    def count_unclosed_sessions(self) -> int:
        return sum(1 for session in self.sessions.values() if not session.is_active and session.ended_at is None)

    def count_table_rows(self) -> Dict[str, int]:
        return {
            "total_runs": len(self.runs),
            "total_tasks": len(self.tasks),
            "total_sessions": len(self.sessions),
            "active_goals": sum(1 for active in self.goals.values() if active),
        }

    def create_missing_tasks(self) -> int:
        missing = sorted({run.task_id for run in self.runs if run.task_id is not None} - set(self.tasks))
        for task_id in missing:
            self.tasks[task_id] = Task(id=task_id, name=f"Unknown task {task_id}")
        with self._lock:
            self.runs = [
                dataclasses.replace(run, task_name=self.tasks[run.task_id].name) if run.task_id in missing else run
                for run in self.runs
            ]
        return len(missing)

    def delete_orphaned_goal_progress(self) -> int:
        orphaned = [progress_id for progress_id, goal_id in self.goal_progress.items() if goal_id not in self.goals]
        for progress_id in orphaned:
            del self.goal_progress[progress_id]
        return len(orphaned)

    def close_unclosed_sessions(self) -> int:
        closed = 0
        for session_id, session in list(self.sessions.items()):
            if not session.is_active and session.ended_at is None:
                self.sessions[session_id] = dataclasses.replace(session, ended_at=session.started_at)
                closed += 1
        return closed
