"""Meetup GraphQL client, event cloning, and normalization into :class:`SourceEvent`.

Series membership of a Meetup event is driven by description shortcodes
(see :mod:`questline.shortcodes`): ``[new adventure]`` / ``[new campaign]``
start a series, ``[campaign X]`` continues the series of Meetup event ``X``.
Events carrying neither are reported with ``starts_new_series=False`` and are
only reconciled if they are already bound.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from questline import shortcodes
from questline.errors import (
    AuthenticationError,
    QuestlineError,
    SourceUnavailableError,
    TransientSourceError,
)
from questline.errors import ValidationError as ShortcodeError
from questline.sources._http import DEFAULT_TIMEOUT, decode_response, send
from questline.sources.base import (
    EventSource,
    EventSourceAdapter,
    LegacyLink,
    PersonIdKind,
    SourceEvent,
    SourcePerson,
)

if TYPE_CHECKING:
    from questline.credentials import CredentialBackedClientProvider, CredentialRefreshGuard

logger = logging.getLogger(__name__)

SOURCE_NAME = EventSource.MEETUP.value
MAX_EVENT_NAME_UTF16_LEN = 80
_AUTH_ERROR_CODES = frozenset({"UNAUTHENTICATED", "UNAUTHORIZED", "AUTHENTICATION_FAILURE"})


# ---------------------------------------------------------------------------
# Wire schema
# ---------------------------------------------------------------------------


class _Wire(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class MeetupMember(_Wire):
    id: str
    name: str | None = None


class MeetupVenue(_Wire):
    id: str
    city: str | None = None


class MeetupEvent(_Wire):
    id: str
    title: str = "No title"
    description: str = ""
    date_time: datetime = Field(alias="dateTime")
    duration: str | None = None
    event_url: str = Field(default="", alias="eventUrl")
    short_url: str | None = Field(default=None, alias="shortUrl")
    is_online: bool = Field(default=False, alias="isOnline")
    group_urlname: str = Field(default="", alias="groupUrlname")
    hosts: list[MeetupMember] = Field(default_factory=list)
    venue: MeetupVenue | None = None
    max_tickets: int = Field(default=0, alias="maxTickets")
    going: int = 0
    rsvps_closed: bool = Field(default=False, alias="rsvpsClosed")
    featured_photo_id: str | None = Field(default=None, alias="featuredPhotoId")
    how_to_find_us: str | None = Field(default=None, alias="howToFindUs")
    guest_limit: int | None = Field(default=None, alias="guestLimit")

    @field_validator("date_time")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        return value if value.tzinfo is not None else value.replace(tzinfo=UTC)

    @property
    def num_free_spots(self) -> int:
        if self.max_tickets <= 0:
            return 0
        return max(self.max_tickets - self.going, 0)


class MeetupRSVP(_Wire):
    id: str | None = None
    member: MeetupMember
    status: str = "YES"

    @property
    def is_yes(self) -> bool:
        return self.status.upper() in ("YES", "ATTENDING")


class NewEvent(_Wire):
    """Input of the ``createEvent`` mutation."""

    group_urlname: str = Field(alias="groupUrlname")
    title: str
    description: str
    start_date_time: datetime = Field(alias="startDateTime")
    duration: str | None = None
    venue_id: str = Field(alias="venueId")
    hosts: list[str] = Field(default_factory=list, alias="eventHostIds")
    rsvp_limit: int | None = Field(default=None, alias="rsvpLimit")
    guest_limit: int | None = Field(default=None, alias="guestLimit")
    featured_photo_id: str | None = Field(default=None, alias="featuredPhotoId")
    how_to_find_us: str | None = Field(default=None, alias="howToFindUs")
    publish: bool = True

    def to_input(self) -> dict[str, Any]:
        data = self.model_dump(by_alias=True, exclude_none=True)
        data["startDateTime"] = self.start_date_time.isoformat()
        return data


# ---------------------------------------------------------------------------
# GraphQL documents
# ---------------------------------------------------------------------------

_EVENT_FIELDS = """
    id
    title
    description
    dateTime
    duration
    eventUrl
    shortUrl
    isOnline
    groupUrlname: group { urlname }
    hosts { id name }
    venue { id city }
    maxTickets
    going
    rsvpsClosed: rsvpSettings { rsvpsClosed }
    featuredPhotoId: featuredEventPhoto { id }
    howToFindUs
    guestLimit: rsvpSettings { guestLimit }
"""

UPCOMING_EVENTS_QUERY = (
    """
query ($urlname: String!) {
  groupByUrlname(urlname: $urlname) {
    upcomingEvents(input: {first: 200}) {
      edges { node {"""
    + _EVENT_FIELDS
    + """} }
    }
  }
}
"""
)

EVENT_QUERY = (
    """
query ($eventId: ID!) {
  event(id: $eventId) {"""
    + _EVENT_FIELDS
    + """}
}
"""
)

CREATE_EVENT_MUTATION = (
    """
mutation ($input: CreateEventInput!) {
  createEvent(input: $input) {
    event {"""
    + _EVENT_FIELDS
    + """}
    errors { message code field }
  }
}
"""
)

CLOSE_RSVPS_MUTATION = """
mutation ($input: CloseEventRsvpsInput!) {
  closeEventRsvps(input: $input) {
    errors { message code field }
  }
}
"""

RSVPS_QUERY = """
query ($eventId: ID!) {
  event(id: $eventId) {
    tickets(input: {first: 500}) {
      edges { node { id status member { id name } } }
    }
  }
}
"""

RSVP_MUTATION = """
mutation ($input: RsvpInput!) {
  rsvp(input: $input) {
    ticket { id status member { id name } }
    errors { message code field }
  }
}
"""


def _flatten_event(node: dict[str, Any]) -> dict[str, Any]:
    """Collapse the nested objects aliased in ``_EVENT_FIELDS`` to scalars."""
    flat = {key: value for key, value in node.items() if value is not None}
    for key, inner in (
        ("groupUrlname", "urlname"),
        ("rsvpsClosed", "rsvpsClosed"),
        ("featuredPhotoId", "id"),
        ("guestLimit", "guestLimit"),
    ):
        value = flat.get(key)
        if isinstance(value, dict):
            flat[key] = value.get(inner)
        if flat.get(key) is None:
            flat.pop(key, None)
    return flat


def _parse_event(node: Any) -> MeetupEvent:
    if not isinstance(node, dict):
        raise TransientSourceError(SOURCE_NAME, "event payload must be a JSON object")
    try:
        return MeetupEvent.model_validate(_flatten_event(node))
    except ValidationError as exc:
        raise TransientSourceError(SOURCE_NAME, f"unexpected event payload: {exc}") from exc


def _raise_for_errors(errors: Any) -> None:
    if not errors:
        return
    if not isinstance(errors, list):
        errors = [errors]
    messages: list[str] = []
    for error in errors:
        if not isinstance(error, dict):
            messages.append(str(error))
            continue
        code = error.get("code") or (error.get("extensions") or {}).get("code")
        message = str(error.get("message") or code or "unknown error")
        if isinstance(code, str) and code.upper() in _AUTH_ERROR_CODES:
            raise AuthenticationError(SOURCE_NAME, message)
        messages.append(message)
    raise TransientSourceError(SOURCE_NAME, "; ".join(messages)[:300])


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class MeetupClient:
    """GraphQL client authenticated as one Meetup member.

    Instances are cheap and immutable; a new one is built whenever the access
    token changes.
    """

    def __init__(
        self,
        *,
        api_url: str,
        access_token: str,
        http_client: httpx.AsyncClient,
    ) -> None:
        self._api_url = api_url
        self._access_token = access_token
        self._http_client = http_client

    async def _execute(self, query: str, variables: dict[str, Any]) -> dict[str, Any]:
        response = await send(
            SOURCE_NAME,
            self._http_client,
            "POST",
            self._api_url,
            json={"query": query, "variables": variables},
            headers={
                "Authorization": f"Bearer {self._access_token}",
                "Accept": "application/json",
            },
        )
        payload = decode_response(SOURCE_NAME, response)
        if not isinstance(payload, dict):
            raise TransientSourceError(SOURCE_NAME, "GraphQL payload must be a JSON object")
        _raise_for_errors(payload.get("errors"))
        data = payload.get("data")
        if not isinstance(data, dict):
            raise TransientSourceError(SOURCE_NAME, "GraphQL payload has no data")
        return data

    async def upcoming_events(self, urlname: str) -> list[MeetupEvent]:
        # Meetup caps a page at 200 events; groups never have that many upcoming
        data = await self._execute(UPCOMING_EVENTS_QUERY, {"urlname": urlname})
        group = data.get("groupByUrlname") or {}
        edges = (group.get("upcomingEvents") or {}).get("edges") or []
        events: list[MeetupEvent] = []
        for edge in edges:
            node = edge.get("node") if isinstance(edge, dict) else None
            try:
                events.append(_parse_event(node))
            except TransientSourceError as exc:
                logger.warning("Skipping malformed Meetup event in %s: %s", urlname, exc)
        return events

    async def get_event(self, event_id: str) -> MeetupEvent | None:
        data = await self._execute(EVENT_QUERY, {"eventId": event_id})
        node = data.get("event")
        if node is None:
            return None
        return _parse_event(node)

    async def create_event(self, new_event: NewEvent) -> MeetupEvent:
        data = await self._execute(CREATE_EVENT_MUTATION, {"input": new_event.to_input()})
        result = data.get("createEvent") or {}
        _raise_for_errors(result.get("errors"))
        return _parse_event(result.get("event"))

    async def close_rsvps(self, event_id: str) -> None:
        data = await self._execute(CLOSE_RSVPS_MUTATION, {"input": {"eventId": event_id}})
        _raise_for_errors((data.get("closeEventRsvps") or {}).get("errors"))

    async def get_rsvps(self, event_id: str) -> list[MeetupRSVP]:
        data = await self._execute(RSVPS_QUERY, {"eventId": event_id})
        event = data.get("event") or {}
        edges = (event.get("tickets") or {}).get("edges") or []
        rsvps: list[MeetupRSVP] = []
        for edge in edges:
            node = edge.get("node") if isinstance(edge, dict) else None
            try:
                rsvps.append(MeetupRSVP.model_validate(node))
            except ValidationError as exc:
                logger.warning("Skipping malformed RSVP on Meetup event %s: %s", event_id, exc)
        return rsvps

    async def rsvp(self, event_id: str, *, attending: bool = True) -> MeetupRSVP:
        response = "YES" if attending else "NO"
        data = await self._execute(
            RSVP_MUTATION, {"input": {"eventId": event_id, "response": response}}
        )
        result = data.get("rsvp") or {}
        _raise_for_errors(result.get("errors"))
        try:
            return MeetupRSVP.model_validate(result.get("ticket"))
        except ValidationError as exc:
            raise TransientSourceError(SOURCE_NAME, f"unexpected RSVP payload: {exc}") from exc


def client_factory(
    api_url: str, http_client: httpx.AsyncClient | None = None
) -> Callable[[str], MeetupClient]:
    """Return a callable that builds a :class:`MeetupClient` for an access token."""
    shared = http_client if http_client is not None else httpx.AsyncClient(timeout=DEFAULT_TIMEOUT)

    def _make(access_token: str) -> MeetupClient:
        return MeetupClient(api_url=api_url, access_token=access_token, http_client=shared)

    return _make


# ---------------------------------------------------------------------------
# Cloning
# ---------------------------------------------------------------------------


NewEventHook = Callable[[NewEvent], NewEvent]


async def clone_event(
    client: MeetupClient,
    event_id: str,
    hook: NewEventHook | None = None,
) -> MeetupEvent:
    """Publish a copy of *event_id*, letting *hook* rewrite it before creation."""
    event = await client.get_event(event_id)
    if event is None:
        raise QuestlineError(f"Meetup event {event_id} was not found")
    if event.venue is None:
        raise QuestlineError("Cannot clone a Meetup event that doesn't have a venue")

    new_event = NewEvent(
        group_urlname=event.group_urlname,
        title=event.title,
        description=event.description,
        start_date_time=event.date_time,
        duration=event.duration,
        venue_id=event.venue.id,
        hosts=[host.id for host in event.hosts],
        rsvp_limit=event.max_tickets or None,
        guest_limit=event.guest_limit,
        featured_photo_id=event.featured_photo_id,
        how_to_find_us=event.how_to_find_us,
    )
    if hook is not None:
        new_event = hook(new_event)
    return await client.create_event(new_event)


@dataclass
class CloneRSVPResult:
    cloned: list[MeetupRSVP]
    num_success: int = 0
    num_failure: int = 0
    latest_error: str | None = None


async def clone_rsvps(
    client: MeetupClient,
    guard: CredentialRefreshGuard[MeetupClient],
    src_event_id: str,
    dst_event_id: str,
) -> CloneRSVPResult:
    """RSVP every "yes" member of *src_event_id* to *dst_event_id* with their own token.

    Per-member failures are counted and logged; they do not abort the transfer.
    """
    rsvps = [rsvp for rsvp in await client.get_rsvps(src_event_id) if rsvp.is_yes]
    result = CloneRSVPResult(cloned=[])
    for rsvp in rsvps:
        member_id = rsvp.member.id

        async def _rsvp(user_client: MeetupClient) -> MeetupRSVP:
            return await user_client.rsvp(dst_event_id, attending=True)

        try:
            cloned = await guard.call_with_refresh(_rsvp, member_id)
        except QuestlineError as exc:
            logger.warning(
                "Could not RSVP Meetup member %s to event %s: %s", member_id, dst_event_id, exc
            )
            result.num_failure += 1
            result.latest_error = str(exc)
            continue
        result.cloned.append(cloned)
        result.num_success += 1
    return result


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------


def _meetup_person(member: MeetupMember) -> SourcePerson:
    return SourcePerson(kind=PersonIdKind.MEETUP, external_id=member.id, display_name=member.name)


def normalize_event(event: MeetupEvent, rsvps: list[MeetupRSVP] | None = None) -> SourceEvent:
    """Build the canonical DTO for a Meetup event.

    Raises
    ------
    questline.errors.ValidationError
        If the description names a channel without starting a new series.
    """
    description = event.description
    new_series_type = shortcodes.series_type(description)
    if shortcodes.channel_id(description) is not None and new_series_type is None:
        raise ShortcodeError(
            f'Meetup event "{event.title}" indicates a channel but does not start a new series'
        )

    linked = shortcodes.linked_event_id(description)
    legacy_link = None
    if linked is not None and linked != event.id:
        legacy_link = LegacyLink(source=EventSource.MEETUP, external_id=linked)

    is_online = event.is_online or shortcodes.ONLINE.search(description) is not None
    closed = event.rsvps_closed or shortcodes.CLOSED.search(description) is not None
    return SourceEvent(
        source=EventSource.MEETUP,
        external_id=event.id,
        title=event.title,
        description=description,
        start_time=event.date_time,
        url=event.short_url or event.event_url,
        is_online=is_online,
        urlname=event.group_urlname or None,
        series_type=new_series_type or "adventure",
        starts_new_series=new_series_type is not None,
        legacy_link=legacy_link,
        hosts=[_meetup_person(host) for host in event.hosts],
        attendees=[_meetup_person(rsvp.member) for rsvp in rsvps or [] if rsvp.is_yes],
        num_free_spots=event.num_free_spots,
        rsvps_closed=closed,
        venue_city=None if event.venue is None else event.venue.city,
    )


class MeetupSource(EventSourceAdapter):
    """Reconciliation adapter over the organizer's Meetup account.

    The organizer client comes from a :class:`CredentialBackedClientProvider`;
    every request goes through the refresh guard.
    """

    def __init__(
        self,
        *,
        guard: CredentialRefreshGuard[MeetupClient],
        organizer_id: int | str,
        group_urlnames: list[str],
        rate_limit_delay_s: float = 1.0,
    ) -> None:
        self._guard = guard
        self._organizer_id = organizer_id
        self._group_urlnames = list(group_urlnames)
        self._rate_limit_delay_s = rate_limit_delay_s

    @property
    def source(self) -> EventSource:
        return EventSource.MEETUP

    @property
    def provider(self) -> CredentialBackedClientProvider[MeetupClient]:
        return self._guard.provider_for(self._organizer_id)

    @property
    def guard(self) -> CredentialRefreshGuard[MeetupClient]:
        return self._guard

    async def call(self, make_call: Callable[[MeetupClient], Any]) -> Any:
        """Run *make_call* as the organizer through the refresh guard."""
        return await self._guard.call_with_refresh(make_call, self._organizer_id)

    async def fetch_upcoming(self, *, now: datetime | None = None) -> list[SourceEvent]:
        if not self._group_urlnames:
            raise SourceUnavailableError("No Meetup group urlnames configured")
        now = now or datetime.now(UTC)
        normalized: list[SourceEvent] = []
        for urlname in self._group_urlnames:
            events = await self.call(lambda client, u=urlname: client.upcoming_events(u))
            for event in events:
                if event.date_time <= now:
                    continue
                # One request per second against the Meetup API
                await asyncio.sleep(self._rate_limit_delay_s)
                try:
                    rsvps = await self.call(lambda client, e=event.id: client.get_rsvps(e))
                    normalized.append(normalize_event(event, rsvps))
                except (ShortcodeError, TransientSourceError) as exc:
                    logger.warning("Skipping Meetup event %s: %s", event.id, exc)
        return normalized

    async def shutdown(self) -> None:
        return None
