"""Normalized event shapes shared by every source adapter.

Adapters translate their API payloads into :class:`SourceEvent` objects; the
reconciler only ever sees these, never raw source payloads.
"""

from __future__ import annotations

import abc
import enum
from datetime import UTC, datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator


class EventSource(enum.StrEnum):
    """External event-hosting services."""

    MEETUP = "meetup"
    SWISSRPG = "swissrpg"


class PersonIdKind(enum.StrEnum):
    """Which identity namespace a :class:`SourcePerson` external id lives in."""

    DISCORD = "discord"
    MEETUP = "meetup"


class SourcePerson(BaseModel):
    """A host or attendee as reported by a source.

    ``external_id`` is kept as the raw string the source sent; the reconciler
    validates it and skips malformed ids one by one.
    """

    model_config = ConfigDict(extra="forbid")

    kind: PersonIdKind
    external_id: str
    display_name: str | None = None


class LegacyLink(BaseModel):
    """Reference to an event on some source whose series this event continues."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    source: EventSource
    external_id: str = Field(min_length=1)


class SourceEvent(BaseModel):
    """One session occurrence, normalized."""

    model_config = ConfigDict(extra="forbid")

    source: EventSource
    external_id: str = Field(min_length=1)
    title: str
    description: str = ""
    start_time: datetime
    url: str
    is_online: bool = False
    urlname: str | None = None
    series_external_id: str | None = None
    series_type: str = "adventure"
    starts_new_series: bool = True
    legacy_link: LegacyLink | None = None
    hosts: list[SourcePerson] = Field(default_factory=list)
    attendees: list[SourcePerson] = Field(default_factory=list)
    num_free_spots: int = 0
    rsvps_closed: bool = False
    venue_city: str | None = None
    discord_category_id: int | None = None

    @field_validator("external_id")
    @classmethod
    def _normalize_external_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("external_id must be a non-empty string")
        return normalized

    @field_validator("start_time")
    @classmethod
    def _require_aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value

    @field_validator("num_free_spots")
    @classmethod
    def _clamp_free_spots(cls, value: int) -> int:
        return max(value, 0)


class EventSourceAdapter(abc.ABC):
    """Contract for one external event source used by a reconciliation pass."""

    @property
    @abc.abstractmethod
    def source(self) -> EventSource:
        """Which source this adapter talks to."""
        ...

    @abc.abstractmethod
    async def fetch_upcoming(self, *, now: datetime | None = None) -> list[SourceEvent]:
        """Return every future session currently published on the source."""
        ...

    @abc.abstractmethod
    async def shutdown(self) -> None:
        """Release adapter resources."""
        ...
