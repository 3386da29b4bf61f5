from datetime import datetime, timedelta, timezone

import pytest

from runmet.cache import RollupCache
from runmet.config import Settings
from runmet.errors import InvalidWindowError, PresetNotFoundError
from runmet.models import TrainingSession
from runmet.service import RunAnalyticsService

UTC = timezone.utc


class RecordingRepo:
    """Minimal run repository that records the ranges it is asked for."""

    def __init__(self, runs=()):
        self.runs = list(runs)
        self.calls = []

    def fetch_runs(self, start_time=None, end_time=None, task_ids=None, practice=False):
        self.calls.append((start_time, end_time, tuple(task_ids) if task_ids else None, practice))
        return [
            run
            for run in self.runs
            if (start_time is None or run.played_at >= start_time)
            and (end_time is None or run.played_at <= end_time)
            and (not task_ids or run.task_id in task_ids)
            and run.is_practice == practice
        ]

    def get_session(self, session_id):
        return None


@pytest.fixture
def service(repo, settings, clock):
    return RunAnalyticsService(repo, settings=settings, clock=clock)


def _add(repo, make_run, now, hours_ago, task_id, score, **fields):
    return repo.add_run(make_run(task_id=task_id, played_at=now - timedelta(hours=hours_ago), score=score, **fields))


def test_aggregate_resolves_preset_against_clock(make_run, now, settings, clock):
    repo = RecordingRepo([make_run(played_at=now - timedelta(hours=1), task_name="Gridshot")])
    service = RunAnalyticsService(repo, settings=settings, clock=clock)

    result = service.aggregate("today")

    start, end, task_ids, practice = repo.calls[0]
    assert start == datetime(2026, 1, 8, tzinfo=UTC)
    assert end == datetime(2026, 1, 9, tzinfo=UTC) - timedelta(microseconds=1)
    assert task_ids is None
    assert practice is False
    assert result["overall"]["count"] == 1
    assert result["meta"]["label"] == "Today"


def test_aggregate_passes_task_filter_and_practice(repo, make_run, now, service):
    _add(repo, make_run, now, 1, 1, 100.0)
    _add(repo, make_run, now, 1, 2, 200.0)
    _add(repo, make_run, now, 1, 1, 300.0, is_practice=True)

    normal = service.aggregate({"type": "relative", "hours": 24}, task_ids=[1])
    practice = service.aggregate({"type": "relative", "hours": 24}, task_ids=[1], practice=True)

    assert normal["overall"]["avg_score"] == 100.0
    assert practice["overall"]["avg_score"] == 300.0
    assert normal["meta"]["label"] == "Last 24h"


def test_aggregate_session_window(repo, make_run, now, service):
    repo.add_session(
        TrainingSession(id=5, name="Evening", started_at=now - timedelta(hours=3), ended_at=now - timedelta(hours=1))
    )
    _add(repo, make_run, now, 2, 1, 100.0)
    _add(repo, make_run, now, 5, 1, 500.0)

    result = service.aggregate({"type": "session", "session_id": 5})

    assert result["overall"]["count"] == 1
    assert result["meta"]["session_id"] == 5
    assert result["meta"]["label"] == "Evening"


def test_unknown_session_raises(service):
    with pytest.raises(InvalidWindowError):
        service.aggregate({"type": "session", "session_id": 404})
    with pytest.raises(InvalidWindowError):
        service.aggregate({"type": "session"})


def _seed_two_days(repo, make_run, now):
    # Yesterday: tasks 1 and 2. Today: tasks 2 and 3.
    _add(repo, make_run, now, 20, 1, 100.0)
    _add(repo, make_run, now, 20, 2, 100.0)
    _add(repo, make_run, now, 2, 2, 120.0)
    _add(repo, make_run, now, 2, 3, 300.0)


def test_comparison_all_scope(repo, make_run, now, service):
    _seed_two_days(repo, make_run, now)

    comparison = service.run_comparison("yesterday", "today")

    assert comparison["labels"] == {"left": "Yesterday", "right": "Today"}
    assert comparison["meta"]["task_scope"] == "all"
    assert comparison["meta"]["left_run_count"] == 2
    assert comparison["meta"]["right_run_count"] == 2
    assert [row["task_id"] for row in comparison["tasks"]] == [2]
    assert comparison["overall"]["diffs"]["score"] == pytest.approx(110.0)


def test_comparison_common_scope_narrows_to_shared_tasks(repo, make_run, now, service):
    _seed_two_days(repo, make_run, now)

    comparison = service.run_comparison("yesterday", "today", task_scope="common")

    assert comparison["meta"]["left_run_count"] == 1
    assert comparison["meta"]["right_run_count"] == 1
    assert comparison["overall"]["diffs"]["score"] == pytest.approx(20.0)
    assert comparison["overall"]["diffs"]["score_pct"] == pytest.approx(20.0)


def test_comparison_common_scope_without_overlap_keeps_everything(repo, make_run, now, service):
    _add(repo, make_run, now, 20, 1, 100.0)
    _add(repo, make_run, now, 2, 3, 300.0)

    comparison = service.run_comparison("yesterday", "today", task_scope="common")

    assert comparison["meta"]["has_shared_tasks"] is False
    assert comparison["meta"]["left_run_count"] == 1
    assert comparison["meta"]["right_run_count"] == 1


def test_comparison_explicit_task_list(repo, make_run, now, service):
    _seed_two_days(repo, make_run, now)

    comparison = service.run_comparison("yesterday", "today", task_scope=[1, 3])

    assert comparison["meta"]["left_run_count"] == 1
    assert comparison["meta"]["right_run_count"] == 1
    assert comparison["tasks"] == []


def test_comparison_rejects_unknown_scope(service):
    with pytest.raises(InvalidWindowError):
        service.run_comparison("yesterday", "today", task_scope="most")


def test_preset_lifecycle(repo, make_run, now, service):
    _seed_two_days(repo, make_run, now)

    preset_id = service.save_comparison_preset(
        " Day over day ", "yesterday", "today", task_scope="common", description="Daily check"
    )
    presets = service.list_comparison_presets()
    comparison = service.run_comparison_preset(preset_id)

    assert [preset.name for preset in presets] == ["Day over day"]
    assert comparison["meta"]["preset_id"] == preset_id
    assert comparison["meta"]["task_scope"] == "common"
    assert comparison["meta"]["left_run_count"] == 1
    assert repo.get_comparison_preset(preset_id).last_used_at == now

    assert service.delete_comparison_preset(preset_id) is True
    assert service.delete_comparison_preset(preset_id) is False
    with pytest.raises(PresetNotFoundError, match=f"Comparison preset {preset_id} not found"):
        service.run_comparison_preset(preset_id)


def test_preset_validation(service):
    with pytest.raises(ValueError):
        service.save_comparison_preset("   ", "today", "yesterday")
    with pytest.raises(InvalidWindowError):
        service.save_comparison_preset("Bad", "today", "someday")
    assert service.list_comparison_presets() == []


def test_top_runs_uses_configured_limit(repo, make_run, now, service):
    for index, score in enumerate((10.0, 50.0, 30.0, 40.0, 20.0)):
        _add(repo, make_run, now, index + 1, 1, score)
    _add(repo, make_run, now, 1, 2, 999.0)

    top = service.get_top_runs(1, "thisWeek")
    two = service.get_top_runs(1, "thisWeek", limit=2)

    assert [run.score for run in top] == [50.0, 40.0, 30.0]
    assert [run.score for run in two] == [50.0, 40.0]


def test_summary_falls_back_to_computation_without_cache(repo, make_run, now, service):
    _add(repo, make_run, now, 1, 1, 100.0)
    _add(repo, make_run, now, 40, 1, 50.0)

    assert service.get_cached_summary("today") is None
    assert service.get_summary("today")["total_runs"] == 1
    assert service.get_summary("all")["total_runs"] == 2
    assert service.get_overall_summary()["total_runs"] == 2
    assert service.get_task_summary(1)["total_runs"] == 2


def test_summary_reads_cache_when_available(repo, make_run, now, settings, clock):
    _add(repo, make_run, now, 1, 1, 100.0)
    cache = RollupCache.from_settings(repo, settings, clock=clock)
    service = RunAnalyticsService(repo, cache=cache, settings=settings, clock=clock)

    assert service.get_cached_summary("7days") is None
    cache.rebuild_all()
    _add(repo, make_run, now, 1, 1, 200.0)

    assert service.get_cached_summary("7days")["total_runs"] == 1
    service.on_runs_ingested([1])
    assert service.get_summary("7days")["total_runs"] == 2
    assert service.get_task_summary(1)["last_updated"] == now.isoformat()


def test_unknown_period_raises(service):
    with pytest.raises(ValueError):
        service.get_cached_summary("fortnight")


def test_session_id_given_as_text(repo, make_run, now, service):
    repo.add_session(TrainingSession(id=5, name=None, started_at=now - timedelta(hours=3), ended_at=None))
    _add(repo, make_run, now, 2, 1, 100.0)

    result = service.aggregate({"type": "session", "sessionId": "5"})

    assert result["overall"]["count"] == 1
    assert result["meta"]["session_id"] == 5
    assert result["meta"]["label"] == "Session 5"


def test_cache_from_settings_agrees_with_fallback_on_local_today(repo, make_run):
    settings = Settings(timezone="America/New_York")
    now = datetime(2026, 1, 8, 3, 0, tzinfo=UTC)  # 22:00 on Jan 7 in New York

    def clock():
        return now

    repo.add_run(make_run(task_id=1, played_at=datetime(2026, 1, 8, 1, 0, tzinfo=UTC)))
    repo.add_run(make_run(task_id=1, played_at=datetime(2026, 1, 7, 4, 0, tzinfo=UTC)))
    uncached = RunAnalyticsService(repo, settings=settings, clock=clock)
    cache = RollupCache.from_settings(repo, settings, clock=clock)
    cached = RunAnalyticsService(repo, cache=cache, settings=settings, clock=clock)
    cache.rebuild_all()

    assert cache.tz == "America/New_York"
    assert uncached.get_summary("today")["total_runs"] == 1
    assert cached.get_cached_summary("today")["total_runs"] == 1
