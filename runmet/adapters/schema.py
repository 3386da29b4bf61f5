"""Relational schema read by the SQLAlchemy adapter.

Timestamps are stored as fixed-width ISO-8601 UTC text
(``2026-01-08T12:00:00.000000Z``) so that lexical comparison in SQL matches
chronological order on every backend.
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Boolean,
    Column,
    Float,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

metadata = MetaData()

tasks = Table(
    "tasks",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(255), unique=True),
    Column("created_at", String(32)),
)

# task_id carries no foreign key: orphaned runs are detected and repaired by
# the integrity checker rather than rejected on insert.
runs = Table(
    "runs",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("task_id", Integer),
    Column("hash", String(64)),
    Column("played_at", String(32)),
    Column("score", Float),
    Column("accuracy", Float),
    Column("hits", Integer),
    Column("shots", Integer),
    Column("duration", Float),
    Column("avg_ttk", Float),
    Column("overshots", Integer),
    Column("reloads", Integer),
    Column("fps_avg", Float),
    Column("meta", Text),
    Column("is_practice", Boolean, nullable=False, default=False),
    Index("runs_task_time_idx", "task_id", "played_at"),
    Index("runs_played_at_idx", "played_at"),
    Index("runs_hash_idx", "hash"),
)

sessions = Table(
    "sessions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(255)),
    Column("notes", Text),
    Column("started_at", String(32), nullable=False),
    Column("ended_at", String(32)),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("is_practice", Boolean, nullable=False, default=False),
    Index("sessions_time_idx", "started_at", "ended_at"),
)

goals = Table(
    "goals",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("title", String(255), nullable=False),
    Column("is_active", Boolean, nullable=False, default=True),
)

goal_progress = Table(
    "goal_progress",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("goal_id", Integer),
    Column("current_value", Float, default=0),
)

comparisons = Table(
    "comparisons",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(255), nullable=False),
    Column("description", Text),
    Column("left_type", String(32), nullable=False),
    Column("left_value", Text, nullable=False),
    Column("right_type", String(32), nullable=False),
    Column("right_value", Text, nullable=False),
    Column("task_scope", Text),
    Column("created_at", String(32), nullable=False),
    Column("last_used_at", String(32)),
)


def create_schema(engine: Engine) -> None:
    metadata.create_all(engine)


def create_session_factory(database_url: str) -> sessionmaker:
    """Engine plus session factory for ``database_url``; tables are created if missing."""
    engine = create_engine(database_url)
    create_schema(engine)
    return sessionmaker(bind=engine)


def format_timestamp(value: datetime) -> str:
    """Render a datetime in the stored UTC text format; naive values are UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def parse_timestamp(raw: Optional[str]) -> Optional[datetime]:
    if raw is None:
        return None
    if isinstance(raw, datetime):
        parsed = raw
    else:
        text_value = raw.strip()
        if text_value.endswith("Z"):
            text_value = text_value[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text_value)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)
