"""Postgres persistence for the canonical series/event model.

Writes happen through :meth:`PostgresEventStore.unit_of_work`, which yields a
:class:`PostgresReconcileTx` bound to one transaction. Reads used by the
scheduling flow go straight through the pool.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Iterable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from datetime import datetime
from typing import Any, Protocol

import asyncpg
from pydantic import BaseModel, ConfigDict

from questline.db import Database
from questline.errors import PersistenceError
from questline.sources.base import EventSource, LegacyLink, PersonIdKind, SourceEvent

logger = logging.getLogger(__name__)

_BINDING_TABLES = {
    EventSource.MEETUP: ("meetup_event", "meetup_id"),
    EventSource.SWISSRPG: ("swissrpg_event", "swissrpg_id"),
}
_MEMBER_COLUMNS = {
    PersonIdKind.DISCORD: ("discord_id", "discord_nick"),
    PersonIdKind.MEETUP: ("meetup_id", "meetup_name"),
}


class Binding(BaseModel):
    """Existing link between a source event and its canonical event row."""

    model_config = ConfigDict(frozen=True)

    binding_id: int
    event_id: int
    series_id: int


class SeriesRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    type: str
    swissrpg_event_series_id: str | None = None


class CanonicalEvent(BaseModel):
    """One canonical event row together with its source bindings."""

    model_config = ConfigDict(frozen=True)

    id: int
    series_id: int
    start_time: datetime
    title: str
    description: str
    is_online: bool
    discord_category_id: int | None = None
    meetup_id: str | None = None
    meetup_urlname: str | None = None
    meetup_url: str | None = None
    swissrpg_id: str | None = None
    swissrpg_url: str | None = None

    @property
    def source(self) -> EventSource | None:
        """Source the event lives on; SwissRPG wins if both bindings exist."""
        if self.swissrpg_id is not None:
            return EventSource.SWISSRPG
        if self.meetup_id is not None:
            return EventSource.MEETUP
        return None

    @property
    def url(self) -> str | None:
        return self.swissrpg_url if self.swissrpg_id is not None else self.meetup_url


class ReconcileTx(Protocol):
    """Operations available inside one reconciliation transaction."""

    async def lock_binding(self, source: EventSource, external_id: str) -> Binding | None: ...

    async def series_for_event(self, link: LegacyLink) -> int | None: ...

    async def series_for_source_series(
        self, source: EventSource, series_external_id: str
    ) -> int | None: ...

    async def create_series(self, series_type: str) -> int: ...

    async def get_source_series_id(self, series_id: int) -> str | None: ...

    async def set_source_series_id(self, series_id: int, series_external_id: str) -> None: ...

    async def insert_event(self, series_id: int, event: SourceEvent) -> int: ...

    async def update_event(self, event_id: int, series_id: int, event: SourceEvent) -> None: ...

    async def insert_binding(self, event_id: int, event: SourceEvent) -> None: ...

    async def get_or_create_member(
        self, kind: PersonIdKind, external_id: int, display_name: str | None
    ) -> int: ...

    async def add_host(self, event_id: int, member_id: int) -> None: ...

    async def replace_participants(self, event_id: int, member_ids: Iterable[int]) -> None: ...


class EventStore(Protocol):
    """Persistence contract used by the reconciler and the scheduling flow."""

    def unit_of_work(self) -> AbstractAsyncContextManager[ReconcileTx]: ...

    async def get_series(self, series_id: int) -> SeriesRecord | None: ...

    async def get_events_for_series(self, series_id: int) -> list[CanonicalEvent]: ...

    async def record_swissrpg_series(self, series_id: int, swissrpg_series_id: str) -> bool: ...

    async def host_discord_ids(self, event_id: int) -> list[int]: ...

    async def participant_discord_ids(self, event_id: int) -> list[int]: ...


class PostgresReconcileTx:
    """asyncpg implementation of :class:`ReconcileTx` bound to one connection."""

    def __init__(self, conn: asyncpg.Connection) -> None:
        self._conn = conn

    async def lock_binding(self, source: EventSource, external_id: str) -> Binding | None:
        table, column = _BINDING_TABLES[source]
        row = await self._conn.fetchrow(
            f"""
            SELECT {table}.id AS binding_id, event.id AS event_id, event.event_series_id
            FROM {table}
            INNER JOIN event ON {table}.event_id = event.id
            WHERE {table}.{column} = $1
            FOR UPDATE
            """,
            external_id,
        )
        if row is None:
            return None
        return Binding(
            binding_id=row["binding_id"],
            event_id=row["event_id"],
            series_id=row["event_series_id"],
        )

    async def series_for_event(self, link: LegacyLink) -> int | None:
        table, column = _BINDING_TABLES[link.source]
        return await self._conn.fetchval(
            f"""
            SELECT event.event_series_id
            FROM event
            INNER JOIN {table} ON event.id = {table}.event_id
            WHERE {table}.{column} = $1
            """,
            link.external_id,
        )

    async def series_for_source_series(
        self, source: EventSource, series_external_id: str
    ) -> int | None:
        if source is not EventSource.SWISSRPG:
            return None
        return await self._conn.fetchval(
            "SELECT id FROM event_series WHERE swissrpg_event_series_id = $1",
            series_external_id,
        )

    async def create_series(self, series_type: str) -> int:
        return await self._conn.fetchval(
            'INSERT INTO event_series ("type") VALUES ($1) RETURNING id',
            series_type,
        )

    async def get_source_series_id(self, series_id: int) -> str | None:
        return await self._conn.fetchval(
            "SELECT swissrpg_event_series_id FROM event_series WHERE id = $1 FOR UPDATE",
            series_id,
        )

    async def set_source_series_id(self, series_id: int, series_external_id: str) -> None:
        await self._conn.execute(
            """
            UPDATE event_series SET swissrpg_event_series_id = $2
            WHERE id = $1 AND swissrpg_event_series_id IS NULL
            """,
            series_id,
            series_external_id,
        )

    async def insert_event(self, series_id: int, event: SourceEvent) -> int:
        return await self._conn.fetchval(
            """
            INSERT INTO event
                (event_series_id, start_time, title, description, is_online, discord_category_id)
            VALUES ($1, $2, $3, $4, $5, $6)
            RETURNING id
            """,
            series_id,
            event.start_time,
            event.title,
            event.description,
            event.is_online,
            event.discord_category_id,
        )

    async def update_event(self, event_id: int, series_id: int, event: SourceEvent) -> None:
        await self._conn.execute(
            """
            UPDATE event
            SET event_series_id = $1, start_time = $2, title = $3, description = $4,
                is_online = $5,
                discord_category_id = COALESCE($6, discord_category_id)
            WHERE id = $7
            """,
            series_id,
            event.start_time,
            event.title,
            event.description,
            event.is_online,
            event.discord_category_id,
            event_id,
        )

    async def insert_binding(self, event_id: int, event: SourceEvent) -> None:
        if event.source is EventSource.MEETUP:
            await self._conn.execute(
                """
                INSERT INTO meetup_event (event_id, meetup_id, urlname, url)
                VALUES ($1, $2, $3, $4)
                """,
                event_id,
                event.external_id,
                event.urlname or "",
                event.url,
            )
        else:
            await self._conn.execute(
                "INSERT INTO swissrpg_event (event_id, swissrpg_id, url) VALUES ($1, $2, $3)",
                event_id,
                event.external_id,
                event.url,
            )

    async def get_or_create_member(
        self, kind: PersonIdKind, external_id: int, display_name: str | None
    ) -> int:
        id_column, name_column = _MEMBER_COLUMNS[kind]
        member_id = await self._conn.fetchval(
            f"""
            INSERT INTO member ({id_column}, {name_column}) VALUES ($1, $2)
            ON CONFLICT ({id_column}) DO NOTHING
            RETURNING id
            """,
            external_id,
            display_name,
        )
        if member_id is None:
            member_id = await self._conn.fetchval(
                f"SELECT id FROM member WHERE {id_column} = $1",
                external_id,
            )
        return member_id

    async def add_host(self, event_id: int, member_id: int) -> None:
        await self._conn.execute(
            "INSERT INTO event_host (event_id, member_id) VALUES ($1, $2) ON CONFLICT DO NOTHING",
            event_id,
            member_id,
        )

    async def replace_participants(self, event_id: int, member_ids: Iterable[int]) -> None:
        ids = list(dict.fromkeys(member_ids))
        await self._conn.execute(
            "DELETE FROM event_participant WHERE event_id = $1 AND NOT (member_id = ANY($2))",
            event_id,
            ids,
        )
        if ids:
            await self._conn.executemany(
                """
                INSERT INTO event_participant (event_id, member_id) VALUES ($1, $2)
                ON CONFLICT DO NOTHING
                """,
                [(event_id, member_id) for member_id in ids],
            )


_EVENT_SELECT = """
    SELECT event.id, event.event_series_id, event.start_time, event.title,
           event.description, event.is_online, event.discord_category_id,
           meetup_event.meetup_id, meetup_event.urlname AS meetup_urlname,
           meetup_event.url AS meetup_url,
           swissrpg_event.swissrpg_id, swissrpg_event.url AS swissrpg_url
    FROM event
    LEFT JOIN meetup_event ON meetup_event.event_id = event.id
    LEFT JOIN swissrpg_event ON swissrpg_event.event_id = event.id
"""


def _row_to_event(row: Any) -> CanonicalEvent:
    return CanonicalEvent(
        id=row["id"],
        series_id=row["event_series_id"],
        start_time=row["start_time"],
        title=row["title"],
        description=row["description"],
        is_online=row["is_online"],
        discord_category_id=row["discord_category_id"],
        meetup_id=row["meetup_id"],
        meetup_urlname=row["meetup_urlname"],
        meetup_url=row["meetup_url"],
        swissrpg_id=row["swissrpg_id"],
        swissrpg_url=row["swissrpg_url"],
    )


class PostgresEventStore:
    """:class:`EventStore` backed by the asyncpg pool of a :class:`Database`."""

    def __init__(self, db: Database) -> None:
        self._db = db

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncIterator[PostgresReconcileTx]:
        """Run the block in one transaction; database failures become PersistenceError."""
        try:
            async with self._db.transaction() as conn:
                yield PostgresReconcileTx(conn)
        except (asyncpg.PostgresError, asyncpg.InterfaceError) as exc:
            raise PersistenceError(f"Reconciliation transaction failed: {exc}") from exc

    async def get_series(self, series_id: int) -> SeriesRecord | None:
        row = await self._db.fetchrow(
            'SELECT id, "type", swissrpg_event_series_id FROM event_series WHERE id = $1',
            series_id,
        )
        if row is None:
            return None
        return SeriesRecord(
            id=row["id"],
            type=row["type"],
            swissrpg_event_series_id=row["swissrpg_event_series_id"],
        )

    async def get_events_for_series(self, series_id: int) -> list[CanonicalEvent]:
        """All events of a series, latest start first."""
        rows = await self._db.fetch(
            _EVENT_SELECT
            + " WHERE event.event_series_id = $1 ORDER BY event.start_time DESC, event.id DESC",
            series_id,
        )
        return [_row_to_event(row) for row in rows]

    async def get_event_by_binding(
        self, source: EventSource, external_id: str
    ) -> CanonicalEvent | None:
        table, column = _BINDING_TABLES[source]
        row = await self._db.fetchrow(_EVENT_SELECT + f" WHERE {table}.{column} = $1", external_id)
        return None if row is None else _row_to_event(row)

    async def record_swissrpg_series(self, series_id: int, swissrpg_series_id: str) -> bool:
        """Set the series' SwissRPG link unless one is already recorded."""
        status = await self._db.execute(
            """
            UPDATE event_series SET swissrpg_event_series_id = $2
            WHERE id = $1 AND swissrpg_event_series_id IS NULL
            """,
            series_id,
            swissrpg_series_id,
        )
        return status.endswith(" 1")

    async def host_discord_ids(self, event_id: int) -> list[int]:
        rows = await self._db.fetch(
            """
            SELECT member.discord_id
            FROM member
            INNER JOIN event_host ON member.id = event_host.member_id
            WHERE event_host.event_id = $1 AND member.discord_id IS NOT NULL
            ORDER BY member.id
            """,
            event_id,
        )
        return [row["discord_id"] for row in rows]

    async def participant_discord_ids(self, event_id: int) -> list[int]:
        rows = await self._db.fetch(
            """
            SELECT member.discord_id
            FROM member
            INNER JOIN event_participant ON member.id = event_participant.member_id
            WHERE event_participant.event_id = $1 AND member.discord_id IS NOT NULL
            ORDER BY member.id
            """,
            event_id,
        )
        return [row["discord_id"] for row in rows]
