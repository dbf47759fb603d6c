"""Source adapters: Meetup (GraphQL) and SwissRPG (REST)."""

from questline.sources.base import (
    EventSource,
    EventSourceAdapter,
    LegacyLink,
    PersonIdKind,
    SourceEvent,
    SourcePerson,
)

__all__ = [
    "EventSource",
    "EventSourceAdapter",
    "LegacyLink",
    "PersonIdKind",
    "SourceEvent",
    "SourcePerson",
]
