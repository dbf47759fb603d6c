"""Free-spots pass: combine the latest results of both sources into one listing."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Protocol

from questline.sources.base import SourceEvent

logger = logging.getLogger(__name__)


class EventCollector:
    """Events gathered by one reconciliation pass, in fetch order."""

    def __init__(self, events: Iterable[SourceEvent] = ()) -> None:
        self._events: list[SourceEvent] = list(events)

    def extend(self, events: Iterable[SourceEvent]) -> None:
        self._events.extend(events)

    def merge(self, other: EventCollector) -> EventCollector:
        return EventCollector([*self._events, *other._events])

    @property
    def events(self) -> list[SourceEvent]:
        return list(self._events)

    def __len__(self) -> int:
        return len(self._events)

    def open_events(self, now: datetime | None = None) -> list[SourceEvent]:
        """Future events with free spots whose RSVPs are still open, earliest first."""
        now = now or datetime.now(UTC)
        open_events = [
            event
            for event in self._events
            if event.start_time > now and event.num_free_spots > 0 and not event.rsvps_closed
        ]
        return sorted(open_events, key=lambda event: event.start_time)


class FreeSpotsPublisher(Protocol):
    async def publish(self, events: list[SourceEvent]) -> None: ...


class LoggingFreeSpotsPublisher:
    """Default publisher: writes one summary line per open event to the log."""

    async def publish(self, events: list[SourceEvent]) -> None:
        if not events:
            logger.info("No open events with free spots")
            return
        logger.info("%d open events with free spots", len(events))
        for event in events:
            logger.info(
                "Free spots: %s (%s, %s) starts %s, %d spots, %s",
                event.title,
                event.source,
                "online" if event.is_online else (event.venue_city or "offline"),
                event.start_time.isoformat(),
                event.num_free_spots,
                event.url,
            )


async def publish_free_spots(
    collectors: Iterable[EventCollector],
    publisher: FreeSpotsPublisher,
    *,
    now: datetime | None = None,
) -> int:
    """Merge *collectors*, publish the open events and return how many there were."""
    merged = EventCollector()
    for collector in collectors:
        merged = merged.merge(collector)
    events = merged.open_events(now)
    await publisher.publish(events)
    return len(events)
