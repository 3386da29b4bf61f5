"""Shared test fixtures."""

import itertools
from datetime import datetime, timezone

import pytest

from runmet.adapters import InMemoryRunRepository
from runmet.config import Settings
from runmet.models import Run, Task

NOW = datetime(2026, 1, 8, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def clock():
    return lambda: NOW


@pytest.fixture
def settings():
    """Settings pinned to UTC regardless of the environment."""
    return Settings(timezone="UTC", week_start=6, drift_error_threshold=10, top_runs_limit=3)


@pytest.fixture
def make_run():
    """Factory for runs with sequential ids and sensible defaults."""
    ids = itertools.count(1)

    def _make(task_id=1, played_at=NOW, score=100.0, accuracy=50.0, **fields):
        return Run(
            id=fields.pop("id", next(ids)),
            task_id=task_id,
            task_name=fields.pop("task_name", None),
            played_at=played_at,
            score=score,
            accuracy=accuracy,
            **fields,
        )

    return _make


@pytest.fixture
def repo():
    return InMemoryRunRepository(
        tasks=[
            Task(id=1, name="Gridshot"),
            Task(id=2, name="Sixshot"),
            Task(id=3, name="Tracking"),
        ]
    )
