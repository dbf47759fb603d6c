"""Shared test doubles for the questline test suite.

``InMemoryEventStore`` implements the ``EventStore`` / ``ReconcileTx``
protocols over plain dicts with rollback on error, and ``FakeRedis`` covers
the handful of ``redis.asyncio`` calls the engine makes. Test modules import
the classes via ``from tests.conftest import ...``.
"""

from __future__ import annotations

import copy
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import pytest

from questline.errors import PersistenceError
from questline.reconcile.store import Binding, CanonicalEvent, SeriesRecord
from questline.sources.base import EventSource, LegacyLink, PersonIdKind, SourceEvent

# ---------------------------------------------------------------------------
# In-memory event store
# ---------------------------------------------------------------------------


@dataclass
class _StoreState:
    series: dict[int, dict[str, Any]] = field(default_factory=dict)
    events: dict[int, dict[str, Any]] = field(default_factory=dict)
    # (source, external_id) -> {"id", "event_id", "urlname", "url"}
    bindings: dict[tuple[EventSource, str], dict[str, Any]] = field(default_factory=dict)
    members: dict[int, dict[str, Any]] = field(default_factory=dict)
    hosts: set[tuple[int, int]] = field(default_factory=set)
    participants: set[tuple[int, int]] = field(default_factory=set)
    next_id: int = 1


class InMemoryReconcileTx:
    def __init__(self, store: InMemoryEventStore) -> None:
        self._store = store

    @property
    def _state(self) -> _StoreState:
        return self._store.state

    def _new_id(self) -> int:
        value = self._state.next_id
        self._state.next_id += 1
        return value

    async def lock_binding(self, source: EventSource, external_id: str) -> Binding | None:
        row = self._state.bindings.get((source, external_id))
        if row is None:
            return None
        event = self._state.events[row["event_id"]]
        return Binding(binding_id=row["id"], event_id=row["event_id"], series_id=event["series_id"])

    async def series_for_event(self, link: LegacyLink) -> int | None:
        row = self._state.bindings.get((link.source, link.external_id))
        if row is None:
            return None
        return self._state.events[row["event_id"]]["series_id"]

    async def series_for_source_series(
        self, source: EventSource, series_external_id: str
    ) -> int | None:
        if source is not EventSource.SWISSRPG:
            return None
        for series_id, series in self._state.series.items():
            if series["swissrpg_event_series_id"] == series_external_id:
                return series_id
        return None

    async def create_series(self, series_type: str) -> int:
        series_id = self._new_id()
        self._state.series[series_id] = {"type": series_type, "swissrpg_event_series_id": None}
        return series_id

    async def get_source_series_id(self, series_id: int) -> str | None:
        return self._state.series[series_id]["swissrpg_event_series_id"]

    async def set_source_series_id(self, series_id: int, series_external_id: str) -> None:
        series = self._state.series[series_id]
        if series["swissrpg_event_series_id"] is None:
            series["swissrpg_event_series_id"] = series_external_id

    def _check_failure(self, event: SourceEvent) -> None:
        if event.external_id in self._store.failing_external_ids:
            raise PersistenceError(f"simulated failure writing {event.external_id}")

    async def insert_event(self, series_id: int, event: SourceEvent) -> int:
        self._check_failure(event)
        event_id = self._new_id()
        self._state.events[event_id] = {
            "series_id": series_id,
            "start_time": event.start_time,
            "title": event.title,
            "description": event.description,
            "is_online": event.is_online,
            "discord_category_id": event.discord_category_id,
        }
        return event_id

    async def update_event(self, event_id: int, series_id: int, event: SourceEvent) -> None:
        self._check_failure(event)
        row = self._state.events[event_id]
        row.update(
            series_id=series_id,
            start_time=event.start_time,
            title=event.title,
            description=event.description,
            is_online=event.is_online,
        )
        if event.discord_category_id is not None:
            row["discord_category_id"] = event.discord_category_id

    async def insert_binding(self, event_id: int, event: SourceEvent) -> None:
        key = (event.source, event.external_id)
        if key in self._state.bindings:
            raise PersistenceError(f"duplicate binding {key}")
        self._state.bindings[key] = {
            "id": self._new_id(),
            "event_id": event_id,
            "urlname": event.urlname,
            "url": event.url,
        }

    async def get_or_create_member(
        self, kind: PersonIdKind, external_id: int, display_name: str | None
    ) -> int:
        id_column = "discord_id" if kind is PersonIdKind.DISCORD else "meetup_id"
        for member_id, member in self._state.members.items():
            if member[id_column] == external_id:
                return member_id
        member_id = self._new_id()
        self._state.members[member_id] = {
            "discord_id": None,
            "meetup_id": None,
            id_column: external_id,
            "name": display_name,
        }
        return member_id

    async def add_host(self, event_id: int, member_id: int) -> None:
        self._state.hosts.add((event_id, member_id))

    async def replace_participants(self, event_id: int, member_ids: Iterable[int]) -> None:
        wanted = set(member_ids)
        self._state.participants = {
            (e, m) for e, m in self._state.participants if e != event_id or m in wanted
        }
        self._state.participants |= {(event_id, m) for m in wanted}


class InMemoryEventStore:
    """Dict-backed ``EventStore``; a failing unit of work restores the prior state."""

    def __init__(self) -> None:
        self.state = _StoreState()
        self.failing_external_ids: set[str] = set()
        self.units_of_work = 0

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncIterator[InMemoryReconcileTx]:
        self.units_of_work += 1
        snapshot = copy.deepcopy(self.state)
        try:
            yield InMemoryReconcileTx(self)
        except BaseException:
            self.state = snapshot
            raise

    # -- EventStore reads -------------------------------------------------

    async def get_series(self, series_id: int) -> SeriesRecord | None:
        series = self.state.series.get(series_id)
        if series is None:
            return None
        return SeriesRecord(
            id=series_id,
            type=series["type"],
            swissrpg_event_series_id=series["swissrpg_event_series_id"],
        )

    def _canonical(self, event_id: int) -> CanonicalEvent:
        row = self.state.events[event_id]
        meetup = swissrpg = None
        for (source, external_id), binding in self.state.bindings.items():
            if binding["event_id"] != event_id:
                continue
            if source is EventSource.MEETUP:
                meetup = (external_id, binding)
            else:
                swissrpg = (external_id, binding)
        return CanonicalEvent(
            id=event_id,
            series_id=row["series_id"],
            start_time=row["start_time"],
            title=row["title"],
            description=row["description"],
            is_online=row["is_online"],
            discord_category_id=row["discord_category_id"],
            meetup_id=meetup[0] if meetup else None,
            meetup_urlname=meetup[1]["urlname"] if meetup else None,
            meetup_url=meetup[1]["url"] if meetup else None,
            swissrpg_id=swissrpg[0] if swissrpg else None,
            swissrpg_url=swissrpg[1]["url"] if swissrpg else None,
        )

    async def get_events_for_series(self, series_id: int) -> list[CanonicalEvent]:
        events = [
            self._canonical(event_id)
            for event_id, row in self.state.events.items()
            if row["series_id"] == series_id
        ]
        return sorted(events, key=lambda e: (e.start_time, e.id), reverse=True)

    async def record_swissrpg_series(self, series_id: int, swissrpg_series_id: str) -> bool:
        series = self.state.series.get(series_id)
        if series is None or series["swissrpg_event_series_id"] is not None:
            return False
        series["swissrpg_event_series_id"] = swissrpg_series_id
        return True

    def _discord_ids(self, pairs: set[tuple[int, int]], event_id: int) -> list[int]:
        return sorted(
            self.state.members[m]["discord_id"]
            for e, m in pairs
            if e == event_id and self.state.members[m]["discord_id"] is not None
        )

    async def host_discord_ids(self, event_id: int) -> list[int]:
        return self._discord_ids(self.state.hosts, event_id)

    async def participant_discord_ids(self, event_id: int) -> list[int]:
        return self._discord_ids(self.state.participants, event_id)

    # -- Test helpers -----------------------------------------------------

    def event_by_binding(self, source: EventSource, external_id: str) -> CanonicalEvent | None:
        row = self.state.bindings.get((source, external_id))
        return None if row is None else self._canonical(row["event_id"])

    def participant_external_ids(self, event_id: int) -> set[int]:
        result = set()
        for e, m in self.state.participants:
            if e == event_id:
                member = self.state.members[m]
                result.add(member["discord_id"] or member["meetup_id"])
        return result

    def seed_series(self, *, swissrpg_event_series_id: str | None = None) -> int:
        series_id = self.state.next_id
        self.state.next_id += 1
        self.state.series[series_id] = {
            "type": "campaign",
            "swissrpg_event_series_id": swissrpg_event_series_id,
        }
        return series_id


# ---------------------------------------------------------------------------
# Fake Redis
# ---------------------------------------------------------------------------


class FakePipeline:
    def __init__(self, redis: FakeRedis) -> None:
        self._redis = redis
        self._ops: list[tuple[str, tuple[Any, ...], dict[str, Any]]] = []

    async def __aenter__(self) -> FakePipeline:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self._ops.clear()

    def hset(self, *args: Any, **kwargs: Any) -> FakePipeline:
        self._ops.append(("hset", args, kwargs))
        return self

    def expire(self, *args: Any, **kwargs: Any) -> FakePipeline:
        self._ops.append(("expire", args, kwargs))
        return self

    async def execute(self) -> list[Any]:
        results = []
        for name, args, kwargs in self._ops:
            results.append(await getattr(self._redis, name)(*args, **kwargs))
        self._ops.clear()
        return results


class FakeRedis:
    """Subset of ``redis.asyncio.Redis`` with ``decode_responses=True`` semantics."""

    def __init__(self) -> None:
        self.strings: dict[str, str] = {}
        self.hashes: dict[str, dict[str, str]] = {}
        self.sets: dict[str, set[str]] = {}
        self.ttls: dict[str, int] = {}
        self.closed = False

    def pipeline(self, transaction: bool = True) -> FakePipeline:
        return FakePipeline(self)

    async def hset(
        self,
        name: str,
        key: str | None = None,
        value: Any = None,
        mapping: dict[str, Any] | None = None,
    ) -> int:
        target = self.hashes.setdefault(name, {})
        items = dict(mapping or {})
        if key is not None:
            items[key] = value
        added = sum(1 for k in items if k not in target)
        target.update({k: str(v) for k, v in items.items()})
        return added

    async def hget(self, name: str, key: str) -> str | None:
        return self.hashes.get(name, {}).get(key)

    async def expire(self, name: str, seconds: int) -> bool:
        if name not in self.hashes and name not in self.strings:
            return False
        self.ttls[name] = seconds
        return True

    async def delete(self, *names: str) -> int:
        removed = 0
        for name in names:
            for bucket in (self.strings, self.hashes, self.sets):
                if bucket.pop(name, None) is not None:
                    removed += 1
            self.ttls.pop(name, None)
        return removed

    async def get(self, name: str) -> str | None:
        return self.strings.get(name)

    async def set(
        self, name: str, value: Any, *, nx: bool = False, ex: int | None = None
    ) -> bool | None:
        if nx and name in self.strings:
            return None
        self.strings[name] = str(value)
        if ex is not None:
            self.ttls[name] = ex
        return True

    async def mget(self, keys: list[str]) -> list[str | None]:
        return [self.strings.get(k) for k in keys]

    async def sadd(self, name: str, *values: Any) -> int:
        target = self.sets.setdefault(name, set())
        before = len(target)
        target.update(str(v) for v in values)
        return len(target) - before

    async def sismember(self, name: str, value: Any) -> bool:
        return str(value) in self.sets.get(name, set())

    def register_script(self, script: str) -> Any:
        """Return a callable that runs the compare-and-swap script in Python."""

        async def _run(keys: list[str], args: list[str]) -> int:
            current = self.strings.get(keys[0], "")
            if current != args[0]:
                return 0
            if args[1] == "":
                self.strings.pop(keys[0], None)
            else:
                self.strings[keys[0]] = args[1]
            return 1

        return _run

    async def aclose(self) -> None:
        self.closed = True

    def expire_now(self, name: str) -> None:
        """Simulate the TTL of *name* lapsing."""
        self.hashes.pop(name, None)
        self.strings.pop(name, None)
        self.ttls.pop(name, None)


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


def make_source_event(**overrides: Any) -> SourceEvent:
    """Build a SwissRPG ``SourceEvent`` with sensible defaults."""
    values: dict[str, Any] = {
        "source": EventSource.SWISSRPG,
        "external_id": "sess-1",
        "title": "Curse of Strahd",
        "description": "Gothic horror",
        "start_time": datetime(2030, 3, 1, 18, 0, tzinfo=UTC),
        "url": "https://app.swissrpg.ch/events/sess-1",
        "series_external_id": "series-1",
        "series_type": "campaign",
        "starts_new_series": True,
    }
    values.update(overrides)
    return SourceEvent(**values)


@pytest.fixture
def event_store() -> InMemoryEventStore:
    return InMemoryEventStore()


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()
