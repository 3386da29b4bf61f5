"""SQLAlchemy repository adapter for RunMet."""

import json
from datetime import datetime
from typing import Dict, Optional, Sequence

from sqlalchemy import bindparam, text
from sqlalchemy.orm import Session

from ..models import ComparisonPreset, Run, TrainingSession, normalize_accuracy
from .schema import comparisons, format_timestamp, parse_timestamp

_RUN_COLUMNS = """
    r.id, r.task_id, t.name AS task_name, r.played_at, r.score, r.accuracy,
    r.hits, r.shots, r.duration, r.avg_ttk, r.overshots, r.reloads, r.fps_avg,
    r.hash, r.meta, r.is_practice
"""


class SQLAlchemyRunRepository:
    """Reads runs from relational tables and maps them to domain models.

    Also owns the saved comparison presets and the repair statements used by
    the integrity checker. Storage errors propagate unchanged.
    """

    def __init__(self, db: Session):
        self.db = db

    def fetch_runs(
        self,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        task_ids: Optional[Sequence[int]] = None,
        practice: bool = False,
    ) -> Sequence[Run]:
        clauses = ["r.is_practice = :practice", "r.played_at IS NOT NULL"]
        params: Dict = {"practice": practice}

        if start_time is not None:
            clauses.append("r.played_at >= :start_time")
            params["start_time"] = format_timestamp(start_time)
        if end_time is not None:
            clauses.append("r.played_at <= :end_time")
            params["end_time"] = format_timestamp(end_time)
        if task_ids:
            clauses.append("r.task_id IN :task_ids")
            params["task_ids"] = [int(task_id) for task_id in task_ids]

        statement = text(
            f"""
            SELECT {_RUN_COLUMNS}
            FROM runs r
            LEFT JOIN tasks t ON t.id = r.task_id
            WHERE {" AND ".join(clauses)}
            ORDER BY r.played_at, r.id
            """
        )
        if task_ids:
            statement = statement.bindparams(bindparam("task_ids", expanding=True))

        rows = self.db.execute(statement, params).fetchall()
        return [_to_run(row) for row in rows]

    def get_session(self, session_id: int) -> Optional[TrainingSession]:
        row = self.db.execute(
            text(
                """
                SELECT id, name, started_at, ended_at, is_active, is_practice
                FROM sessions
                WHERE id = :session_id
                """
            ),
            {"session_id": session_id},
        ).first()
        if row is None:
            return None

        return TrainingSession(
            id=row.id,
            name=row.name,
            started_at=parse_timestamp(row.started_at),
            ended_at=parse_timestamp(row.ended_at),
            is_active=bool(row.is_active),
            is_practice=bool(row.is_practice),
        )

    def save_comparison_preset(self, preset: ComparisonPreset) -> int:
        result = self.db.execute(
            comparisons.insert().values(
                name=preset.name,
                description=preset.description,
                left_type=_spec_type(preset.left_spec),
                left_value=_dump_spec(preset.left_spec),
                right_type=_spec_type(preset.right_spec),
                right_value=_dump_spec(preset.right_spec),
                task_scope=json.dumps(_jsonable_scope(preset.task_scope)),
                created_at=format_timestamp(preset.created_at),
            )
        )
        self.db.commit()
        return int(result.inserted_primary_key[0])

    def get_comparison_preset(self, preset_id: int) -> Optional[ComparisonPreset]:
        row = self.db.execute(
            text(
                """
                SELECT id, name, description, left_value, right_value, task_scope,
                       created_at, last_used_at
                FROM comparisons
                WHERE id = :preset_id
                """
            ),
            {"preset_id": preset_id},
        ).first()
        return _to_preset(row) if row is not None else None

    def list_comparison_presets(self) -> Sequence[ComparisonPreset]:
        rows = self.db.execute(
            text(
                """
                SELECT id, name, description, left_value, right_value, task_scope,
                       created_at, last_used_at
                FROM comparisons
                ORDER BY created_at DESC, id DESC
                """
            )
        ).fetchall()
        return [_to_preset(row) for row in rows]

    def touch_comparison_preset(self, preset_id: int, used_at: datetime) -> None:
        self.db.execute(
            text("UPDATE comparisons SET last_used_at = :used_at WHERE id = :preset_id"),
            {"used_at": format_timestamp(used_at), "preset_id": preset_id},
        )
        self.db.commit()

    def delete_comparison_preset(self, preset_id: int) -> bool:
        result = self.db.execute(
            text("DELETE FROM comparisons WHERE id = :preset_id"),
            {"preset_id": preset_id},
        )
        self.db.commit()
        return result.rowcount > 0

    def count_runs(self, practice: bool = False) -> int:
        return self._scalar(
            "SELECT COUNT(*) FROM runs WHERE is_practice = :practice AND played_at IS NOT NULL",
            {"practice": practice},
        )

    def count_runs_by_task(self, practice: bool = False) -> Dict[int, int]:
        rows = self.db.execute(
            text(
                """
                SELECT task_id, COUNT(*) AS run_count
                FROM runs
                WHERE is_practice = :practice AND task_id IS NOT NULL AND played_at IS NOT NULL
                GROUP BY task_id
                """
            ),
            {"practice": practice},
        ).fetchall()
        return {int(row.task_id): int(row.run_count) for row in rows}

    def count_orphaned_runs(self) -> int:
        return self._scalar(
            """
            SELECT COUNT(*) FROM runs
            WHERE task_id IS NOT NULL AND task_id NOT IN (SELECT id FROM tasks)
            """
        )

    def count_incomplete_runs(self) -> int:
        return self._scalar(
            """
            SELECT COUNT(*) FROM runs
            WHERE task_id IS NULL
               OR played_at IS NULL
               OR (score IS NULL AND accuracy IS NULL)
            """
        )

    def count_duplicate_hashes(self) -> int:
        return self._scalar(
            """
            SELECT COUNT(*) FROM (
                SELECT hash FROM runs
                WHERE hash IS NOT NULL
                GROUP BY hash
                HAVING COUNT(*) > 1
            ) AS duplicated
            """
        )

    def count_orphaned_goal_progress(self) -> int:
        return self._scalar(
            "SELECT COUNT(*) FROM goal_progress WHERE goal_id NOT IN (SELECT id FROM goals)"
        )

    def count_unclosed_sessions(self) -> int:
        return self._scalar(
            "SELECT COUNT(*) FROM sessions WHERE is_active = :inactive AND ended_at IS NULL",
            {"inactive": False},
        )

    def count_table_rows(self) -> Dict[str, int]:
        return {
            "total_runs": self._scalar("SELECT COUNT(*) FROM runs"),
            "total_tasks": self._scalar("SELECT COUNT(*) FROM tasks"),
            "total_sessions": self._scalar("SELECT COUNT(*) FROM sessions"),
            "active_goals": self._scalar(
                "SELECT COUNT(*) FROM goals WHERE is_active = :active", {"active": True}
            ),
        }

    def create_missing_tasks(self) -> int:
        rows = self.db.execute(
            text(
                """
                SELECT DISTINCT task_id FROM runs
                WHERE task_id IS NOT NULL AND task_id NOT IN (SELECT id FROM tasks)
                ORDER BY task_id
                """
            )
        ).fetchall()
        for row in rows:
            self.db.execute(
                text("INSERT INTO tasks (id, name) VALUES (:task_id, :name)"),
                {"task_id": row.task_id, "name": f"Unknown task {row.task_id}"},
            )
        self.db.commit()
        return len(rows)

    def delete_orphaned_goal_progress(self) -> int:
        result = self.db.execute(
            text("DELETE FROM goal_progress WHERE goal_id NOT IN (SELECT id FROM goals)")
        )
        self.db.commit()
        return result.rowcount

    def close_unclosed_sessions(self) -> int:
        result = self.db.execute(
            text(
                """
                UPDATE sessions SET ended_at = started_at
                WHERE is_active = :inactive AND ended_at IS NULL
                """
            ),
            {"inactive": False},
        )
        self.db.commit()
        return result.rowcount

    def _scalar(self, sql: str, params: Optional[Dict] = None) -> int:
        return int(self.db.execute(text(sql), params or {}).scalar_one() or 0)


def _to_run(row) -> Run:
    return Run(
        id=row.id,
        task_id=row.task_id,
        task_name=row.task_name,
        played_at=parse_timestamp(row.played_at),
        score=row.score,
        accuracy=normalize_accuracy(row.accuracy),
        hits=row.hits,
        shots=row.shots,
        duration=row.duration,
        avg_ttk=row.avg_ttk,
        overshots=row.overshots,
        reloads=row.reloads,
        fps_avg=row.fps_avg,
        hash=row.hash,
        meta=_parse_meta(row.meta),
        is_practice=bool(row.is_practice),
    )


def _to_preset(row) -> ComparisonPreset:
    return ComparisonPreset(
        id=row.id,
        name=row.name,
        description=row.description,
        left_spec=json.loads(row.left_value),
        right_spec=json.loads(row.right_value),
        task_scope=json.loads(row.task_scope) if row.task_scope else "all",
        created_at=parse_timestamp(row.created_at),
        last_used_at=parse_timestamp(row.last_used_at),
    )


def _spec_type(spec) -> str:
    if isinstance(spec, str):
        return "preset"
    return spec.get("type") or "timeframe"


def _dump_spec(spec) -> str:
    return json.dumps(spec, default=_json_default)


def _json_default(value):
    if isinstance(value, datetime):
        return format_timestamp(value)
    raise TypeError(f"Cannot serialise {type(value).__name__} in a window spec")


def _jsonable_scope(task_scope):
    if isinstance(task_scope, (set, frozenset, tuple)):
        return sorted(task_scope)
    return task_scope


def _parse_meta(raw_meta) -> dict:
    if raw_meta is None:
        return {}
    if isinstance(raw_meta, dict):
        return raw_meta
    try:
        parsed = json.loads(raw_meta)
    except (TypeError, json.JSONDecodeError):
        return {}
    return parsed if isinstance(parsed, dict) else {}
