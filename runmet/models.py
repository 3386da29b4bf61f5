"""Core domain models used by the aggregation engine."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Sequence, Union

WindowSpec = Union[str, Dict[str, Any]]


@dataclass(frozen=True)
class Task:
    """A named scenario that runs are played against."""

    id: int
    name: str


@dataclass(frozen=True)
class Run:
    """A single completed trial of a task."""

    id: int
    task_id: Optional[int]
    task_name: Optional[str]
    played_at: datetime
    score: Optional[float]
    accuracy: Optional[float]
    hits: Optional[int] = None
    shots: Optional[int] = None
    duration: Optional[float] = None
    avg_ttk: Optional[float] = None
    overshots: Optional[int] = None
    reloads: Optional[int] = None
    fps_avg: Optional[float] = None
    hash: Optional[str] = None
    meta: Dict[str, Any] = field(default_factory=dict)
    is_practice: bool = False


@dataclass(frozen=True)
class TrainingSession:
    """A manually started block of play with an optional end."""

    id: int
    name: Optional[str]
    started_at: datetime
    ended_at: Optional[datetime]
    is_active: bool = False
    is_practice: bool = False


@dataclass(frozen=True)
class Window:
    """Resolved, inclusive time bounds with an optional task restriction."""

    start_time: datetime
    end_time: datetime
    task_ids: Optional[Sequence[int]] = None
    session_id: Optional[int] = None

    @property
    def span_seconds(self) -> float:
        return (self.end_time - self.start_time).total_seconds()

    def with_task_ids(self, task_ids: Optional[Sequence[int]]) -> "Window":
        return Window(
            start_time=self.start_time,
            end_time=self.end_time,
            task_ids=tuple(task_ids) if task_ids is not None else None,
            session_id=self.session_id,
        )


@dataclass(frozen=True)
class ComparisonPreset:
    """A saved pair of window specs that can be re-run later."""

    id: Optional[int]
    name: str
    description: Optional[str]
    left_spec: WindowSpec
    right_spec: WindowSpec
    task_scope: Any
    created_at: datetime
    last_used_at: Optional[datetime] = None


def normalize_accuracy(value: Optional[float]) -> Optional[float]:
    """Rescale 0-1 fractions to the 0-100 scale; percentages pass through."""
    if value is None:
        return None
    value = float(value)
    if value <= 1:
        return value * 100
    return value
