import json
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from runmet.adapters import SQLAlchemyRunRepository, create_schema, create_session_factory
from runmet.adapters.schema import (
    format_timestamp,
    goal_progress,
    goals,
    parse_timestamp,
    runs,
    sessions,
    tasks,
)
from runmet.cache import RollupCache
from runmet.integrity import IntegrityChecker
from runmet.models import ComparisonPreset
from runmet.service import RunAnalyticsService

UTC = timezone.utc
NOW = datetime(2026, 1, 8, 12, 0, tzinfo=UTC)


@pytest.fixture
def db():
    engine = create_engine("sqlite://")
    create_schema(engine)
    with Session(engine) as session:
        yield session


def _insert_run(db, task_id, hours_ago, score=100.0, accuracy=50.0, **fields):
    db.execute(
        runs.insert().values(
            task_id=task_id,
            played_at=format_timestamp(NOW - timedelta(hours=hours_ago)),
            score=score,
            accuracy=accuracy,
            is_practice=fields.pop("is_practice", False),
            **fields,
        )
    )


@pytest.fixture
def seeded(db):
    db.execute(tasks.insert(), [{"id": 1, "name": "Gridshot"}, {"id": 2, "name": "Sixshot"}])
    _insert_run(db, 1, 1, score=120.0, accuracy=0.62, meta=json.dumps({"map": "default"}))
    _insert_run(db, 1, 30, score=100.0, accuracy=55.0)
    _insert_run(db, 2, 2, score=80.0, accuracy=70.0, avg_ttk=0.4)
    _insert_run(db, 2, 3, score=999.0, accuracy=99.0, is_practice=True)
    db.commit()
    return db


def test_timestamp_format_sorts_lexically():
    early = format_timestamp(datetime(2026, 1, 8, 9, 0, tzinfo=UTC))
    late = format_timestamp(datetime(2026, 1, 8, 10, 0, tzinfo=timezone(timedelta(hours=-5))))

    assert early == "2026-01-08T09:00:00.000000Z"
    assert early < late
    assert parse_timestamp(late) == datetime(2026, 1, 8, 15, 0, tzinfo=UTC)
    assert parse_timestamp(None) is None


def test_fetch_runs_filters_and_maps(seeded):
    repo = SQLAlchemyRunRepository(seeded)

    everything = repo.fetch_runs()
    recent = repo.fetch_runs(NOW - timedelta(hours=24), NOW)
    gridshot = repo.fetch_runs(task_ids=[1])
    practice = repo.fetch_runs(practice=True)

    assert [run.score for run in everything] == [100.0, 80.0, 120.0]
    assert [run.score for run in recent] == [80.0, 120.0]
    assert {run.task_name for run in gridshot} == {"Gridshot"}
    assert [run.score for run in practice] == [999.0]

    latest = everything[-1]
    assert latest.accuracy == pytest.approx(62.0)
    assert latest.meta == {"map": "default"}
    assert latest.played_at == NOW - timedelta(hours=1)
    assert everything[1].avg_ttk == 0.4


def test_fetch_runs_bounds_are_inclusive(seeded):
    repo = SQLAlchemyRunRepository(seeded)
    exact = NOW - timedelta(hours=2)

    assert len(repo.fetch_runs(exact, exact)) == 1


def test_orphaned_runs_are_returned_without_a_name(db):
    _insert_run(db, 77, 1)
    db.commit()

    [run] = SQLAlchemyRunRepository(db).fetch_runs()

    assert run.task_id == 77
    assert run.task_name is None


def test_get_session(db):
    db.execute(
        sessions.insert().values(
            id=3,
            name="Evening",
            started_at=format_timestamp(NOW - timedelta(hours=2)),
            ended_at=None,
            is_active=True,
        )
    )
    db.commit()
    repo = SQLAlchemyRunRepository(db)

    session = repo.get_session(3)

    assert session.name == "Evening"
    assert session.started_at == NOW - timedelta(hours=2)
    assert session.ended_at is None
    assert session.is_active is True
    assert repo.get_session(4) is None


def test_preset_round_trip(db):
    repo = SQLAlchemyRunRepository(db)
    preset = ComparisonPreset(
        id=None,
        name="Custom vs week",
        description=None,
        left_spec={"start_time": datetime(2026, 1, 1, tzinfo=UTC), "end_time": "2026-01-02T00:00:00Z"},
        right_spec="thisWeek",
        task_scope=[2, 1],
        created_at=NOW,
    )

    preset_id = repo.save_comparison_preset(preset)
    repo.touch_comparison_preset(preset_id, NOW + timedelta(minutes=5))
    loaded = repo.get_comparison_preset(preset_id)

    assert loaded.id == preset_id
    assert loaded.left_spec["start_time"] == "2026-01-01T00:00:00.000000Z"
    assert loaded.right_spec == "thisWeek"
    assert loaded.task_scope == [2, 1]
    assert loaded.created_at == NOW
    assert loaded.last_used_at == NOW + timedelta(minutes=5)
    assert [item.id for item in repo.list_comparison_presets()] == [preset_id]
    assert repo.delete_comparison_preset(preset_id) is True
    assert repo.delete_comparison_preset(preset_id) is False
    assert repo.get_comparison_preset(preset_id) is None


def test_maintenance_counts_and_repairs(seeded):
    _insert_run(seeded, 9, 4, hash="h1")
    _insert_run(seeded, 9, 5, hash="h1")
    _insert_run(seeded, None, 6, score=None, accuracy=None)
    seeded.execute(goals.insert().values(id=1, title="Reach 60%", is_active=True))
    seeded.execute(goal_progress.insert(), [{"id": 1, "goal_id": 1}, {"id": 2, "goal_id": 5}])
    seeded.execute(
        sessions.insert().values(id=1, name="Stale", started_at=format_timestamp(NOW), ended_at=None, is_active=False)
    )
    seeded.commit()
    repo = SQLAlchemyRunRepository(seeded)

    assert repo.count_runs() == 6
    assert repo.count_runs(practice=True) == 1
    assert repo.count_runs_by_task() == {1: 2, 2: 1, 9: 2}
    assert repo.count_orphaned_runs() == 2
    assert repo.count_incomplete_runs() == 1
    assert repo.count_duplicate_hashes() == 1
    assert repo.count_orphaned_goal_progress() == 1
    assert repo.count_unclosed_sessions() == 1
    assert repo.count_table_rows() == {
        "total_runs": 7,
        "total_tasks": 2,
        "total_sessions": 1,
        "active_goals": 1,
    }

    assert repo.create_missing_tasks() == 1
    assert repo.delete_orphaned_goal_progress() == 1
    assert repo.close_unclosed_sessions() == 1

    assert repo.count_orphaned_runs() == 0
    assert repo.count_orphaned_goal_progress() == 0
    assert repo.count_unclosed_sessions() == 0
    assert {run.task_name for run in repo.fetch_runs(task_ids=[9])} == {"Unknown task 9"}


def test_service_end_to_end_over_sqlite(seeded, settings):
    repo = SQLAlchemyRunRepository(seeded)
    def clock():
        return NOW

    cache = RollupCache.from_settings(repo, settings, clock=clock)
    service = RunAnalyticsService(repo, cache=cache, settings=settings, clock=clock)
    checker = IntegrityChecker(repo, cache, clock=clock)

    today = service.aggregate("today")
    cache.rebuild_all()
    report = checker.run_all_checks()

    assert today["overall"]["count"] == 2
    assert [row["task_name"] for row in today["by_task"]] == ["Gridshot", "Sixshot"]
    assert service.get_cached_summary("all")["total_runs"] == 3
    assert service.get_task_summary(1)["best_score"] == 120.0
    assert report["healthy"] is True


def test_session_factory_creates_tables():
    factory = create_session_factory("sqlite://")

    with factory() as db:
        assert SQLAlchemyRunRepository(db).count_table_rows()["total_runs"] == 0


def test_undated_runs_are_left_out_of_counts_and_rollups(seeded, settings):
    seeded.execute(runs.insert().values(task_id=1, played_at=None, score=50.0, accuracy=40.0, is_practice=False))
    seeded.commit()
    repo = SQLAlchemyRunRepository(seeded)

    def clock():
        return NOW

    cache = RollupCache.from_settings(repo, settings, clock=clock)
    checker = IntegrityChecker(repo, cache, clock=clock)
    cache.rebuild_all()
    report = checker.run_all_checks()

    assert repo.count_runs() == 3
    assert repo.count_runs_by_task() == {1: 2, 2: 1}
    assert repo.count_incomplete_runs() == 1
    assert [issue["category"] for issue in report["issues"]] == ["null_data"]
    assert checker.auto_fix(report)["fixed"] == []
