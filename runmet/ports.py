"""Port definitions for reading runs and owned state from any store."""

from datetime import datetime
from typing import Dict, Optional, Protocol, Sequence

from .models import ComparisonPreset, Run, TrainingSession


class RunRepository(Protocol):
    """Read access to the run history that adapters implement for any backend."""

    def fetch_runs(
        self,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        task_ids: Optional[Sequence[int]] = None,
        practice: bool = False,
    ) -> Sequence[Run]:
        """Return runs ordered by ``played_at``; bounds are inclusive and optional."""

    def get_session(self, session_id: int) -> Optional[TrainingSession]:
        """Return a training session or ``None``."""


class PresetRepository(Protocol):
    """Storage for saved comparison presets."""

    def save_comparison_preset(self, preset: ComparisonPreset) -> int:
        """Persist a new preset and return its id."""

    def get_comparison_preset(self, preset_id: int) -> Optional[ComparisonPreset]:
        """Return one preset or ``None``."""

    def list_comparison_presets(self) -> Sequence[ComparisonPreset]:
        """Return all presets, newest first."""

    def touch_comparison_preset(self, preset_id: int, used_at: datetime) -> None:
        """Record that a preset was just run."""

    def delete_comparison_preset(self, preset_id: int) -> bool:
        """Delete a preset; return whether one existed."""


class MaintenanceRepository(Protocol):
    """Ground-truth counts and repairs used by the integrity checker."""

    def count_runs(self, practice: bool = False) -> int:
        """Number of runs ``fetch_runs`` would return for the practice flag."""

    def count_runs_by_task(self, practice: bool = False) -> Dict[int, int]:
        """Run counts keyed by task id, counting the runs ``fetch_runs`` returns."""

    def count_orphaned_runs(self) -> int:
        """Runs whose task id does not exist."""

    def count_incomplete_runs(self) -> int:
        """Runs missing the task, the timestamp, or both score and accuracy."""

    def count_duplicate_hashes(self) -> int:
        """Distinct content hashes shared by more than one run."""

    def count_orphaned_goal_progress(self) -> int:
        """Goal progress rows whose goal was deleted."""

    def count_unclosed_sessions(self) -> int:
        """Inactive sessions that never got an end time."""

    def count_table_rows(self) -> Dict[str, int]:
        """Row counts for runs, tasks, sessions and active goals."""

    def create_missing_tasks(self) -> int:
        """Insert placeholder tasks for orphaned runs; return how many."""

    def delete_orphaned_goal_progress(self) -> int:
        """Remove goal progress rows without a goal; return how many."""

    def close_unclosed_sessions(self) -> int:
        """Set ``ended_at = started_at`` on inactive sessions without an end."""
