"""Two-minute RunMet demo: FastAPI backend over a seeded in-memory store."""

from datetime import datetime, timedelta, timezone
from random import Random
from typing import Any, List, Optional, Union

from fastapi import FastAPI, HTTPException, Query
from pydantic import BaseModel

from runmet import IntegrityChecker, InvalidWindowError, PresetNotFoundError, RollupCache, RunAnalyticsService
from runmet.adapters import InMemoryRunRepository
from runmet.config import Settings
from runmet.logging_config import configure_logging
from runmet.models import Run, Task, TrainingSession

RNG = Random(42)
TASK_NAMES = ("Gridshot", "Sixshot", "Spidershot", "Strafetrack")

settings = Settings()
log = configure_logging(component="two-minute-demo", level=settings.log_level, json_output=False)

app = FastAPI(title="RunMet Two-Minute Demo", version="0.1.0")


class ComparisonRequest(BaseModel):
    left: Union[str, dict]
    right: Union[str, dict]
    task_scope: Any = "all"


class PresetRequest(ComparisonRequest):
    name: str
    description: Optional[str] = None


def _build_demo_repo() -> InMemoryRunRepository:
    now = datetime.now(timezone.utc)
    repo = InMemoryRunRepository(tasks=[Task(id=idx + 1, name=name) for idx, name in enumerate(TASK_NAMES)])

    for idx in range(400):
        task_id = idx % len(TASK_NAMES) + 1
        played_at = now - timedelta(minutes=idx * 47)
        # Older runs are a little worse so comparisons show a trend.
        skill = 1.0 - min(idx, 300) / 1500
        repo.add_run(
            Run(
                id=idx + 1,
                task_id=task_id,
                task_name=None,
                played_at=played_at,
                score=round(max(10.0, RNG.gauss(100 * task_id * skill, 15)), 1),
                accuracy=round(min(1.0, max(0.2, RNG.gauss(0.6 * skill + 0.1, 0.08))), 3),
                shots=RNG.randint(40, 120),
                duration=60.0,
                avg_ttk=round(max(0.15, RNG.gauss(0.55 / skill, 0.07)), 3),
                is_practice=idx % 23 == 0,
            )
        )

    repo.add_session(
        TrainingSession(id=1, name="Morning block", started_at=now - timedelta(hours=6), ended_at=now - timedelta(hours=4))
    )
    return repo


REPO = _build_demo_repo()
CACHE = RollupCache.from_settings(REPO, settings)
CACHE.rebuild_all()
log.info("demo_ready", runs=len(REPO.runs), tasks=len(REPO.tasks))
SERVICE = RunAnalyticsService(REPO, cache=CACHE, settings=settings)
CHECKER = IntegrityChecker(REPO, CACHE, drift_error_threshold=settings.drift_error_threshold)


@app.get("/health")
def health() -> dict:
    return {"status": "ok", "demo": "runmet-two-minute"}


@app.get("/api/aggregate")
def aggregate(window: str = "today", task_ids: Optional[List[int]] = Query(None), practice: bool = False) -> dict:
    try:
        return SERVICE.aggregate(window, task_ids=task_ids, practice=practice)
    except InvalidWindowError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.post("/api/comparisons/run")
def run_comparison(request: ComparisonRequest) -> dict:
    try:
        return SERVICE.run_comparison(request.left, request.right, request.task_scope)
    except InvalidWindowError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.get("/api/comparisons/presets")
def list_presets() -> list:
    return [
        {"id": preset.id, "name": preset.name, "description": preset.description}
        for preset in SERVICE.list_comparison_presets()
    ]


@app.post("/api/comparisons/presets")
def save_preset(request: PresetRequest) -> dict:
    try:
        preset_id = SERVICE.save_comparison_preset(
            request.name, request.left, request.right, request.task_scope, request.description
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"id": preset_id}


@app.post("/api/comparisons/presets/{preset_id}/run")
def run_preset(preset_id: int) -> dict:
    try:
        return SERVICE.run_comparison_preset(preset_id)
    except PresetNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.delete("/api/comparisons/presets/{preset_id}")
def delete_preset(preset_id: int) -> dict:
    if not SERVICE.delete_comparison_preset(preset_id):
        raise HTTPException(status_code=404, detail=f"Comparison preset {preset_id} not found")
    return {"deleted": preset_id}


@app.get("/api/tasks/{task_id}/top-runs")
def top_runs(task_id: int, window: str = "thisWeek", limit: Optional[int] = None, sort_by: str = "score") -> list:
    try:
        runs = SERVICE.get_top_runs(task_id, window, limit=limit, sort_by=sort_by)
    except InvalidWindowError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return [
        {"id": run.id, "played_at": run.played_at.isoformat(), "score": run.score, "accuracy": run.accuracy}
        for run in runs
    ]


@app.get("/api/summary/{period}")
def summary(period: str) -> dict:
    try:
        return SERVICE.get_summary(period)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.get("/api/integrity")
def integrity(fix: bool = False) -> dict:
    report = CHECKER.run_all_checks()
    if fix:
        report["fix_result"] = CHECKER.auto_fix(report)
    report["stats"] = CHECKER.database_stats()
    return report
