"""Window resolution: symbolic window specs to absolute UTC bounds.

Runs are stored in UTC, but day, week and month boundaries only make sense on
the player's local calendar. Every boundary here is built as a local
wall-clock midnight in an explicit timezone and only then converted to UTC,
so a local day may be 23, 24 or 25 hours long across DST changes.

Nothing in this module touches storage or the system clock unless ``now`` is
omitted.
"""

import math
from collections.abc import Mapping
from datetime import date, datetime, timedelta, timezone, tzinfo
from numbers import Real
from typing import Any, Optional, Sequence, Tuple, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .errors import InvalidWindowError
from .models import TrainingSession, Window, WindowSpec

PRESET_LABELS = {
    "today": "Today",
    "yesterday": "Yesterday",
    "thisWeek": "This Week",
    "lastWeek": "Last Week",
    "thisMonth": "This Month",
    "lastMonth": "Last Month",
}

PERIOD_KEYS = ("today", "7days", "30days", "all")

# Inclusive end bounds stop one tick before the next boundary.
_TICK = timedelta(microseconds=1)

TimezoneArg = Union[str, tzinfo]

# Window keys also accepted in the camelCase spelling used by the desktop client.
KEY_ALIASES = {
    "hours_ago": "hoursAgo",
    "start_time": "startTime",
    "end_time": "endTime",
    "session_id": "sessionId",
    "task_ids": "taskIds",
}


def get_zone(tz: TimezoneArg) -> tzinfo:
    """Return a tzinfo for a name such as ``"Europe/Berlin"`` or pass one through."""
    if isinstance(tz, tzinfo):
        return tz
    if not tz or tz.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(tz)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise InvalidWindowError(f"Unknown timezone {tz!r}") from exc


def local_midnight_utc(day: date, tz: TimezoneArg) -> datetime:
    """UTC instant at which ``day`` starts on the wall clock of ``tz``."""
    zone = get_zone(tz)
    return datetime(day.year, day.month, day.day, tzinfo=zone).astimezone(timezone.utc)


def day_bounds_utc(day: date, tz: TimezoneArg) -> Tuple[datetime, datetime]:
    """Inclusive UTC bounds of one local calendar day."""
    start = local_midnight_utc(day, tz)
    end = local_midnight_utc(day + timedelta(days=1), tz) - _TICK
    return start, end


def week_start_date(day: date, week_start: int = 6) -> date:
    """First day of the week containing ``day`` (0=Monday ... 6=Sunday)."""
    return day - timedelta(days=(day.weekday() - week_start) % 7)


def resolve_window(
    spec: WindowSpec,
    now: Optional[datetime] = None,
    tz: TimezoneArg = "UTC",
    session: Optional[TrainingSession] = None,
    week_start: int = 6,
) -> Window:
    """Resolve a window spec to inclusive UTC bounds.

    Accepted specs:

    - a preset name: ``"today"``, ``"yesterday"``, ``"thisWeek"``,
      ``"lastWeek"``, ``"thisMonth"``, ``"lastMonth"``
    - ``{"type": "preset", "preset": "today"}``
    - ``{"type": "relative", "hours": 24, "hours_ago": 0}``
    - ``{"start_time": ..., "end_time": ...}`` (optionally ``"type": "timeframe"``)
    - ``{"type": "session", "session_id": 3}``; the caller passes the loaded
      ``session``

    Mapping specs may also carry ``task_ids``. Keys are also accepted in
    camelCase (``hoursAgo``, ``startTime``, ``endTime``, ``sessionId``,
    ``taskIds``).

    Raises
    ------
    InvalidWindowError
        For unknown presets, missing sessions and malformed bounds.
    """
    zone = get_zone(tz)
    now = _coerce_timestamp(now, "now") if now is not None else datetime.now(timezone.utc)

    if isinstance(spec, str):
        start, end = _resolve_preset(spec, now, zone, week_start)
        return Window(start_time=start, end_time=end)

    if not isinstance(spec, Mapping):
        raise InvalidWindowError(f"Invalid window definition: {spec!r}")

    task_ids = _coerce_task_ids(spec_field(spec, "task_ids"))
    kind = spec.get("type")

    if kind == "preset":
        start, end = _resolve_preset(spec.get("preset"), now, zone, week_start)
        return Window(start_time=start, end_time=end, task_ids=task_ids)

    if kind == "relative":
        hours = _coerce_hours(spec.get("hours"), "hours", allow_zero=False)
        hours_ago = _coerce_hours(spec_field(spec, "hours_ago", 0), "hours_ago", allow_zero=True)
        try:
            end = now - timedelta(hours=hours_ago)
            start = end - timedelta(hours=hours)
        except (OverflowError, ValueError) as exc:
            raise InvalidWindowError(f"Relative window is out of range: {dict(spec)!r}") from exc
        return Window(start_time=start, end_time=end, task_ids=task_ids)

    if kind == "session":
        session_id = session_id_of(spec)
        if session is None or session.id != session_id:
            raise InvalidWindowError(f"Session {session_id} not found")
        start = _coerce_timestamp(session.started_at, "started_at")
        end = _coerce_timestamp(session.ended_at, "ended_at") if session.ended_at else now
        return Window(start_time=start, end_time=end, task_ids=task_ids, session_id=session.id)

    start_raw = spec_field(spec, "start_time")
    end_raw = spec_field(spec, "end_time")
    if kind in (None, "timeframe") and start_raw is not None and end_raw is not None:
        start = _coerce_timestamp(start_raw, "start_time")
        end = _coerce_timestamp(end_raw, "end_time")
        if start > end:
            raise InvalidWindowError("start_time must not be after end_time")
        return Window(start_time=start, end_time=end, task_ids=task_ids)

    raise InvalidWindowError(f"Invalid window definition: {dict(spec)!r}")


def describe_window(spec: WindowSpec, session: Optional[TrainingSession] = None) -> str:
    """Human readable label for a window spec."""
    if isinstance(spec, str):
        return PRESET_LABELS.get(spec, spec)
    if not isinstance(spec, Mapping):
        return "Unknown"

    kind = spec.get("type")
    if kind == "preset":
        preset = spec.get("preset")
        return PRESET_LABELS.get(preset, str(preset))
    if kind == "relative":
        hours = spec.get("hours", 0)
        hours_ago = spec_field(spec, "hours_ago", 0) or 0
        if hours_ago > 0:
            return f"{_fmt_hours(hours_ago + hours)}h to {_fmt_hours(hours_ago)}h ago"
        return f"Last {_fmt_hours(hours)}h"
    if kind == "session":
        if session is not None and session.name:
            return session.name
        return f"Session {spec_field(spec, 'session_id')}"
    if kind == "timeframe" or (
        spec_field(spec, "start_time") is not None and spec_field(spec, "end_time") is not None
    ):
        return "Custom Range"
    return "Unknown"


def spec_field(spec: Mapping, name: str, default: Any = None) -> Any:
    """Read ``name`` from a window spec, falling back to its camelCase alias."""
    if name in spec:
        return spec[name]
    return spec.get(KEY_ALIASES.get(name, name), default)


def session_id_of(spec: Mapping) -> int:
    """Integer session id of a session spec; ids arriving as strings are converted."""
    raw = spec_field(spec, "session_id")
    if raw is None:
        raise InvalidWindowError("Session window requires a session_id")
    if isinstance(raw, bool):
        raise InvalidWindowError(f"session_id must be an integer, got {raw!r}")
    try:
        return int(raw)
    except (TypeError, ValueError) as exc:
        raise InvalidWindowError(f"session_id must be an integer, got {raw!r}") from exc


def period_start(period: str, now: datetime, tz: TimezoneArg = "UTC") -> Optional[datetime]:
    """Lower bound of a canonical cache period; ``None`` means unbounded."""
    if period == "today":
        local_today = now.astimezone(get_zone(tz)).date()
        return local_midnight_utc(local_today, tz)
    if period == "7days":
        return now - timedelta(days=7)
    if period == "30days":
        return now - timedelta(days=30)
    if period == "all":
        return None
    raise ValueError(f"Unknown period {period!r}; expected one of {', '.join(PERIOD_KEYS)}")


def _resolve_preset(
    preset: Any,
    now: datetime,
    zone: tzinfo,
    week_start: int,
) -> Tuple[datetime, datetime]:
    today = now.astimezone(zone).date()

    if preset == "today":
        return day_bounds_utc(today, zone)
    if preset == "yesterday":
        return day_bounds_utc(today - timedelta(days=1), zone)
    if preset == "thisWeek":
        first = week_start_date(today, week_start)
        return local_midnight_utc(first, zone), now
    if preset == "lastWeek":
        first = week_start_date(today, week_start)
        start = local_midnight_utc(first - timedelta(days=7), zone)
        return start, local_midnight_utc(first, zone) - _TICK
    if preset == "thisMonth":
        return local_midnight_utc(today.replace(day=1), zone), now
    if preset == "lastMonth":
        first_this = today.replace(day=1)
        first_prev = (first_this - timedelta(days=1)).replace(day=1)
        return local_midnight_utc(first_prev, zone), local_midnight_utc(first_this, zone) - _TICK

    raise InvalidWindowError(f"Unknown window preset {preset!r}")


def _coerce_timestamp(value: Any, name: str) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        raw = value.strip()
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(raw)
        except ValueError as exc:
            raise InvalidWindowError(f"{name} is not an ISO-8601 timestamp: {value!r}") from exc
    else:
        raise InvalidWindowError(f"{name} must be a timestamp, got {value!r}")

    # Naive timestamps are in the store's reference frame, which is UTC.
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _coerce_hours(value: Any, name: str, allow_zero: bool) -> float:
    if isinstance(value, bool) or not isinstance(value, Real):
        raise InvalidWindowError(f"{name} must be a number, got {value!r}")
    if not math.isfinite(value):
        raise InvalidWindowError(f"{name} must be finite, got {value!r}")
    if value < 0 or (value == 0 and not allow_zero):
        raise InvalidWindowError(f"{name} must be {'non-negative' if allow_zero else 'positive'}")
    return float(value)


def _coerce_task_ids(value: Any) -> Optional[Sequence[int]]:
    if value is None:
        return None
    if isinstance(value, (str, bytes)) or not isinstance(value, (list, tuple, set, frozenset)):
        raise InvalidWindowError(f"task_ids must be a list of ids, got {value!r}")
    try:
        return tuple(int(task_id) for task_id in value)
    except (TypeError, ValueError) as exc:
        raise InvalidWindowError(f"task_ids must be integers, got {value!r}") from exc


def _fmt_hours(hours: Any) -> str:
    return f"{hours:g}" if isinstance(hours, Real) else str(hours)
