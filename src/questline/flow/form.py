"""Normalization of the schedule-session web form.

The form submits local wall-clock fields in the community's timezone; they are
turned into one timezone-aware UTC timestamp. Local times that do not exist
(spring-forward gap) or exist twice (fall-back fold) are rejected.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import UTC, date, datetime, timedelta, tzinfo

from pydantic import BaseModel, ConfigDict

from questline.errors import ValidationError

REQUIRED_FIELDS = ("year", "month", "day", "hour", "minute")


class ScheduleSessionForm(BaseModel):
    """A validated form submission."""

    model_config = ConfigDict(frozen=True)

    start: datetime
    duration_min: int
    transfer_rsvps: bool = False
    open_game: bool = False


class ProposedSession(BaseModel):
    model_config = ConfigDict(frozen=True)

    start: datetime
    duration_min: int

    @property
    def selectable_years(self) -> list[int]:
        return [self.start.year, self.start.year + 1]


def _is_yes(value: str | None) -> bool:
    return value == "yes"


def resolve_local_time(naive: datetime, tz: tzinfo) -> datetime:
    """Attach *tz* to a naive wall-clock time, rejecting DST gaps and folds.

    Raises
    ------
    ValidationError
        If the local time is ambiguous or non-existent in *tz*.
    """
    earlier = naive.replace(tzinfo=tz, fold=0)
    later = naive.replace(tzinfo=tz, fold=1)
    if earlier.utcoffset() != later.utcoffset():
        raise ValidationError("Seems like the specified time is ambiguous or non-existent")
    return earlier


def parse_duration(raw: str | None, *, default_min: int, max_min: int) -> int:
    """Duration in minutes; unparsable values fall back to the default."""
    if raw is None:
        return default_min
    try:
        duration = int(raw)
    except ValueError:
        return default_min
    if duration < 0:
        return default_min
    return min(duration, max_min)


def parse_schedule_form(
    data: Mapping[str, str],
    *,
    tz: tzinfo,
    default_duration_min: int = 240,
    max_duration_min: int = 720,
) -> ScheduleSessionForm:
    """Validate a submitted form.

    Raises
    ------
    ValidationError
        With a user-facing message if a field is missing or invalid.
    """
    if any(data.get(field) is None for field in REQUIRED_FIELDS):
        raise ValidationError("Seems like the submitted data is incomplete")
    try:
        year, month, day, hour, minute = (int(data[field]) for field in REQUIRED_FIELDS)
    except ValueError as exc:
        raise ValidationError("Seems like the submitted data has an invalid format") from exc

    try:
        local_date = date(year, month, day)
    except ValueError as exc:
        raise ValidationError("Seems like the specified date is invalid") from exc
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise ValidationError("Seems like the specified time is invalid")

    naive = datetime(local_date.year, local_date.month, local_date.day, hour, minute)
    start = resolve_local_time(naive, tz).astimezone(UTC)
    return ScheduleSessionForm(
        start=start,
        duration_min=parse_duration(
            data.get("duration"), default_min=default_duration_min, max_min=max_duration_min
        ),
        transfer_rsvps=_is_yes(data.get("transfer_rsvps")),
        open_game=_is_yes(data.get("open_game")),
    )


def _existing_local_time(naive: datetime, tz: tzinfo) -> datetime:
    # Round-tripping through UTC maps a skipped wall-clock time to a real one
    return naive.replace(tzinfo=tz, fold=0).astimezone(UTC).astimezone(tz)


def propose_next_session(
    latest_start: datetime,
    *,
    tz: tzinfo,
    duration_min: int = 240,
    now: datetime | None = None,
) -> ProposedSession:
    """Suggest the start of the next session.

    One week after *latest_start* in calendar days (so DST changes keep the
    local wall-clock time); if that lies in the past, tomorrow at the same
    local time. A wall-clock time that falls into a spring-forward gap is
    moved forward by the length of the gap.
    """
    local = latest_start.astimezone(tz)
    naive = local.replace(tzinfo=None) + timedelta(days=7)
    proposed = _existing_local_time(naive, tz)
    now_local = (now or datetime.now(UTC)).astimezone(tz)
    if proposed < now_local:
        tomorrow = now_local.date() + timedelta(days=1)
        naive = datetime.combine(tomorrow, local.time().replace(tzinfo=None))
        proposed = _existing_local_time(naive, tz)
    return ProposedSession(start=proposed, duration_min=duration_min)
