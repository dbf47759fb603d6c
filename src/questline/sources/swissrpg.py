"""SwissRPG REST client and normalization into :class:`SourceEvent`.

SwissRPG models a campaign as an *event* (the series) with nested *sessions*
(the occurrences). Only sessions that start in the future are normalized.
Every call carries the configured API token as a Bearer token.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from questline.errors import TransientSourceError
from questline.sources._http import DEFAULT_TIMEOUT, decode_response, send
from questline.sources.base import (
    EventSource,
    EventSourceAdapter,
    LegacyLink,
    PersonIdKind,
    SourceEvent,
    SourcePerson,
)

logger = logging.getLogger(__name__)

SOURCE_NAME = EventSource.SWISSRPG.value
LOCATION_TAG_TYPE = "location"
ONLINE_LOCATION_CODE = "online"
START_FORMAT = "%Y-%m-%d %H:%M"


# ---------------------------------------------------------------------------
# Wire schema
# ---------------------------------------------------------------------------


class _Wire(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class SwissRPGUser(_Wire):
    discord_id: str = Field(alias="discordId")
    username: str = ""


class SwissRPGTag(_Wire):
    code: str
    value: str = ""
    tag_type: str = Field(alias="tagType")


class SwissRPGSession(_Wire):
    uuid: str
    number: int | None = None
    start: datetime
    attendees: list[SwissRPGUser] = Field(default_factory=list)
    rsvp_open: bool = Field(default=True, alias="rsvpOpen")
    open_seats: int = Field(default=0, alias="openSeats")

    @field_validator("start")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


class SwissRPGEvent(_Wire):
    uuid: str
    title: str
    organisers: list[SwissRPGUser] = Field(default_factory=list)
    description: str | None = None
    current_session: SwissRPGSession | None = Field(default=None, alias="currentSession")
    upcoming_sessions: list[SwissRPGSession] = Field(default_factory=list, alias="upcomingSessions")
    legacy_id: int | None = Field(default=None, alias="legacyId")
    tags: list[SwissRPGTag] = Field(default_factory=list)
    public_url: str = Field(default="", alias="publicUrl")

    def sessions(self) -> list[SwissRPGSession]:
        sessions = [] if self.current_session is None else [self.current_session]
        seen = {session.uuid for session in sessions}
        sessions.extend(s for s in self.upcoming_sessions if s.uuid not in seen)
        return sessions


class ScheduleSessionRequest(_Wire):
    """Body of ``PUT /api/events/{uuid}``; creates the next session of a series."""

    start: str
    duration: int = 240
    include_players: bool = Field(default=True, alias="includePlayers")


class MigrateEventRequest(_Wire):
    """Body of ``POST /api/migrate``; turns a Meetup series into a SwissRPG event."""

    title: str
    start: str
    organisers: list[str] = Field(default_factory=list)
    attendees: list[str] = Field(default_factory=list)
    legacy_id: int = Field(alias="legacyId")
    description: str | None = None
    end: str | None = None


def format_start(value: datetime) -> str:
    """Render a start time the way the SwissRPG API expects it (UTC, minute precision)."""
    return value.astimezone(UTC).strftime(START_FORMAT)


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class SwissRPGClient:
    """Thin async client over the SwissRPG REST API."""

    def __init__(
        self,
        *,
        base_url: str,
        api_token: str,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_token = api_token
        self._owns_http_client = http_client is None
        self._http_client = (
            http_client if http_client is not None else httpx.AsyncClient(timeout=DEFAULT_TIMEOUT)
        )

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        allow_empty: bool = False,
    ) -> Any:
        response = await send(
            SOURCE_NAME,
            self._http_client,
            method,
            f"{self._base_url}{path}",
            json=json,
            headers={
                "Authorization": f"Bearer {self._api_token}",
                "Accept": "application/json",
            },
        )
        return decode_response(SOURCE_NAME, response, allow_empty=allow_empty)

    async def get_events(self) -> list[SwissRPGEvent]:
        payload = await self._request("GET", "/api/events")
        if not isinstance(payload, list):
            raise TransientSourceError(SOURCE_NAME, "event list payload must be a JSON array")
        events: list[SwissRPGEvent] = []
        for item in payload:
            try:
                events.append(SwissRPGEvent.model_validate(item))
            except ValidationError as exc:
                uuid = item.get("uuid") if isinstance(item, dict) else None
                logger.warning("Skipping malformed SwissRPG event %s: %s", uuid, exc)
        return events

    async def schedule_session(
        self, event_uuid: str, request: ScheduleSessionRequest
    ) -> SwissRPGEvent:
        payload = await self._request(
            "PUT",
            f"/api/events/{event_uuid}",
            json=request.model_dump(by_alias=True),
        )
        return _parse_event(payload)

    async def migrate_event(self, request: MigrateEventRequest) -> SwissRPGEvent:
        payload = await self._request(
            "POST",
            "/api/migrate",
            json=request.model_dump(by_alias=True),
        )
        return _parse_event(payload)

    async def delete_event(self, event_uuid: str) -> None:
        await self._request("DELETE", f"/api/events/{event_uuid}", allow_empty=True)

    async def get_tags(self, tag_type: str = LOCATION_TAG_TYPE) -> list[SwissRPGTag]:
        payload = await self._request("GET", f"/api/tags/{tag_type}")
        if not isinstance(payload, list):
            raise TransientSourceError(SOURCE_NAME, "tag list payload must be a JSON array")
        return [SwissRPGTag.model_validate(item) for item in payload]


def _parse_event(payload: Any) -> SwissRPGEvent:
    try:
        return SwissRPGEvent.model_validate(payload)
    except ValidationError as exc:
        raise TransientSourceError(SOURCE_NAME, f"unexpected event payload: {exc}") from exc


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------


def _location_tag(event: SwissRPGEvent) -> SwissRPGTag | None:
    return next((tag for tag in event.tags if tag.tag_type == LOCATION_TAG_TYPE), None)


def _discord_person(user: SwissRPGUser) -> SourcePerson:
    return SourcePerson(
        kind=PersonIdKind.DISCORD,
        external_id=user.discord_id,
        display_name=user.username or None,
    )


def normalize_session(event: SwissRPGEvent, session: SwissRPGSession) -> SourceEvent:
    """Build the canonical DTO for one session of *event*."""
    location = _location_tag(event)
    is_online = location is None or location.code == ONLINE_LOCATION_CODE
    venue_city = None if is_online or location is None else (location.value or location.code)
    legacy_link = (
        LegacyLink(source=EventSource.MEETUP, external_id=str(event.legacy_id))
        if event.legacy_id
        else None
    )
    return SourceEvent(
        source=EventSource.SWISSRPG,
        external_id=session.uuid,
        title=event.title,
        description=event.description or "",
        start_time=session.start,
        url=event.public_url,
        is_online=is_online,
        series_external_id=event.uuid,
        legacy_link=legacy_link,
        hosts=[_discord_person(u) for u in event.organisers],
        attendees=[_discord_person(u) for u in session.attendees],
        num_free_spots=max(session.open_seats, 0),
        rsvps_closed=not session.rsvp_open,
        venue_city=venue_city,
    )


def upcoming_source_events(events: list[SwissRPGEvent], now: datetime) -> list[SourceEvent]:
    """Normalize every session of *events* that starts after *now*."""
    normalized: list[SourceEvent] = []
    for event in events:
        for session in event.sessions():
            if session.start > now:
                normalized.append(normalize_session(event, session))
    return normalized


class SwissRPGSource(EventSourceAdapter):
    """Reconciliation adapter backed by :class:`SwissRPGClient`."""

    def __init__(self, client: SwissRPGClient) -> None:
        self.client = client

    @property
    def source(self) -> EventSource:
        return EventSource.SWISSRPG

    async def fetch_upcoming(self, *, now: datetime | None = None) -> list[SourceEvent]:
        events = await self.client.get_events()
        return upcoming_source_events(events, now or datetime.now(UTC))

    async def shutdown(self) -> None:
        await self.client.aclose()
