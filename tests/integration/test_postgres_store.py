"""Reconciliation against a real, migrated Postgres database."""

from __future__ import annotations

import shutil

import pytest

from questline.errors import DataConflictError
from questline.reconcile.reconciler import EventReconciler, ReconcileOutcome
from questline.reconcile.store import PostgresEventStore
from questline.sources.base import EventSource, LegacyLink, PersonIdKind, SourcePerson
from tests.conftest import make_source_event

docker_available = shutil.which("docker") is not None
pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(not docker_available, reason="Docker not available"),
]

CORE_TABLES = {
    "event_series",
    "event",
    "meetup_event",
    "swissrpg_event",
    "member",
    "event_host",
    "event_participant",
}


def _discord(*ids: str) -> list[SourcePerson]:
    return [SourcePerson(kind=PersonIdKind.DISCORD, external_id=i) for i in ids]


def _meetup_event(external_id: str, **overrides):
    values = {
        "source": EventSource.MEETUP,
        "external_id": external_id,
        "url": f"https://meetu.ps/e/{external_id}",
        "urlname": "swissrpg-zurich",
        "series_external_id": None,
    }
    values.update(overrides)
    return make_source_event(**values)


async def test_migrations_create_core_tables(provisioned_database):
    async with provisioned_database() as db:
        rows = await db.fetch(
            "SELECT table_name FROM information_schema.tables WHERE table_schema = 'public'"
        )
        version = await db.fetchval("SELECT version_num FROM alembic_version")

    assert CORE_TABLES <= {row["table_name"] for row in rows}
    assert version == "core_001"


async def test_create_then_update(provisioned_database):
    async with provisioned_database() as db:
        store = PostgresEventStore(db)
        reconciler = EventReconciler(store)

        assert await reconciler.reconcile(make_source_event()) is ReconcileOutcome.CREATED
        renamed = make_source_event(title="Curse of Strahd II")
        assert await reconciler.reconcile(renamed) is ReconcileOutcome.UPDATED

        event = await store.get_event_by_binding(EventSource.SWISSRPG, "sess-1")
        assert event is not None
        assert event.title == "Curse of Strahd II"
        assert event.source is EventSource.SWISSRPG
        series = await store.get_series(event.series_id)
        assert series.swissrpg_event_series_id == "series-1"
        assert [e.id for e in await store.get_events_for_series(event.series_id)] == [event.id]


async def test_legacy_link_joins_meetup_series(provisioned_database):
    async with provisioned_database() as db:
        store = PostgresEventStore(db)
        reconciler = EventReconciler(store)

        await reconciler.reconcile(_meetup_event("1001"))
        await reconciler.reconcile(
            make_source_event(
                external_id="sess-2",
                start_time=make_source_event().start_time.replace(day=8),
                legacy_link=LegacyLink(source=EventSource.MEETUP, external_id="1001"),
            )
        )

        meetup = await store.get_event_by_binding(EventSource.MEETUP, "1001")
        swissrpg = await store.get_event_by_binding(EventSource.SWISSRPG, "sess-2")
        assert meetup.series_id == swissrpg.series_id
        events = await store.get_events_for_series(meetup.series_id)
        assert [e.id for e in events] == [swissrpg.id, meetup.id]
        assert not await store.record_swissrpg_series(meetup.series_id, "other")


async def test_hosts_and_participants(provisioned_database):
    async with provisioned_database() as db:
        store = PostgresEventStore(db)
        reconciler = EventReconciler(store)

        await reconciler.reconcile(
            make_source_event(hosts=_discord("111"), attendees=_discord("222", "333"))
        )
        await reconciler.reconcile(
            make_source_event(hosts=_discord("111"), attendees=_discord("333", "not-a-number"))
        )

        event = await store.get_event_by_binding(EventSource.SWISSRPG, "sess-1")
        assert await store.host_discord_ids(event.id) == [111]
        assert await store.participant_discord_ids(event.id) == [333]


async def test_conflict_rolls_back(provisioned_database):
    async with provisioned_database() as db:
        store = PostgresEventStore(db)
        reconciler = EventReconciler(store)

        await reconciler.reconcile(_meetup_event("1001"))
        await reconciler.reconcile(make_source_event(external_id="sess-b", series_external_id="B"))

        conflicting = make_source_event(
            external_id="sess-c",
            series_external_id="B",
            legacy_link=LegacyLink(source=EventSource.MEETUP, external_id="1001"),
        )
        with pytest.raises(DataConflictError):
            await reconciler.reconcile(conflicting)

        assert await store.get_event_by_binding(EventSource.SWISSRPG, "sess-c") is None
        assert await db.fetchval("SELECT count(*) FROM event") == 2
