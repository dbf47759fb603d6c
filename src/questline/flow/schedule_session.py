"""Schedule-session flow: one-shot Redis token driving "schedule the next session".

Lifecycle of a flow key ``flow:schedule_session:<id>``:

- ``ScheduleSessionFlow.new`` stores ``{event_series_id}`` with a TTL.
- ``ScheduleSessionFlow.retrieve`` reads it back (``None`` once expired).
- ``SessionScheduler.schedule`` first claims ``<key>:lock`` with SET NX so
  only one submission runs at a time, then creates the next session. On
  success both keys are deleted; on failure only the claim is released, so
  the same link can be retried until the TTL lapses.

Redis is the only record of a flow; nothing is cached in process.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
from datetime import datetime
from typing import Any

from opentelemetry import trace
from pydantic import BaseModel
from redis.asyncio import Redis
from redis.exceptions import RedisError

from questline.config import FlowConfig, ScheduleTarget
from questline.errors import FlowError, FlowInProgressError, FlowNotFoundError, QuestlineError
from questline.flow.rewrite import rewrite_new_event
from questline.reconcile.reconciler import EventReconciler
from questline.reconcile.store import CanonicalEvent, EventStore
from questline.sources.base import EventSource
from questline.sources.meetup import (
    MeetupClient,
    MeetupEvent,
    MeetupSource,
    NewEvent,
    clone_event,
    clone_rsvps,
    normalize_event,
)
from questline.sources.swissrpg import (
    MigrateEventRequest,
    ScheduleSessionRequest,
    SwissRPGClient,
    SwissRPGEvent,
    format_start,
)

logger = logging.getLogger(__name__)
_tracer = trace.get_tracer("questline")

FLOW_KEY_TEMPLATE = "flow:schedule_session:{flow_id}"
SERIES_FIELD = "event_series_id"


def flow_key(flow_id: int) -> str:
    return FLOW_KEY_TEMPLATE.format(flow_id=flow_id)


class ScheduleSessionFlow:
    """Handle on one flow token; carries no state beyond what Redis holds."""

    def __init__(self, flow_id: int, event_series_id: int) -> None:
        self.id = flow_id
        self.event_series_id = event_series_id

    def __repr__(self) -> str:
        return f"ScheduleSessionFlow(id={self.id}, event_series_id={self.event_series_id})"

    @property
    def key(self) -> str:
        return flow_key(self.id)

    @classmethod
    async def new(
        cls, redis: Redis, event_series_id: int, *, ttl_s: int = 600
    ) -> ScheduleSessionFlow:
        """Create a flow for *event_series_id* under a fresh random 64-bit id."""
        flow = cls(secrets.randbits(64), event_series_id)
        async with redis.pipeline(transaction=True) as pipe:
            pipe.hset(flow.key, SERIES_FIELD, event_series_id)
            pipe.expire(flow.key, ttl_s)
            await pipe.execute()
        logger.info("Created schedule session flow %s for series %s", flow.id, event_series_id)
        return flow

    @classmethod
    async def retrieve(cls, redis: Redis, flow_id: int) -> ScheduleSessionFlow | None:
        raw = await redis.hget(flow_key(flow_id), SERIES_FIELD)
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode()
        try:
            event_series_id = int(raw)
        except ValueError:
            logger.warning("Flow %s holds an invalid series id %r", flow_id, raw)
            return None
        return cls(flow_id, event_series_id)

    @property
    def claim_key(self) -> str:
        return f"{self.key}:lock"

    async def claim(self, redis: Redis, *, ttl_s: int) -> bool:
        """Take the single-submitter lock; ``False`` if another submission holds it."""
        return bool(await redis.set(self.claim_key, "1", nx=True, ex=ttl_s))

    async def release(self, redis: Redis) -> None:
        await redis.delete(self.claim_key)

    async def delete(self, redis: Redis) -> None:
        await redis.delete(self.key, self.claim_key)


class ScheduleSessionResult(BaseModel):
    """What the user sees after a successful submission."""

    source: EventSource
    title: str
    link: str
    series_external_id: str | None = None
    migrated: bool = False
    closed_rsvps: bool = False
    transferred_rsvps: int | None = None


class SessionScheduler:
    """Executes a schedule-session flow against the configured target source.

    By default every new session is created on SwissRPG, migrating a Meetup
    series first when it has no SwissRPG series yet. With
    ``schedule_target = "meetup"`` the previous Meetup event is cloned instead.
    """

    def __init__(
        self,
        *,
        redis: Redis,
        store: EventStore,
        reconciler: EventReconciler,
        config: FlowConfig,
        swissrpg_client: SwissRPGClient | None = None,
        meetup_source: MeetupSource | None = None,
    ) -> None:
        self._redis = redis
        self._store = store
        self._reconciler = reconciler
        self._config = config
        self._swissrpg_client = swissrpg_client
        self._meetup_source = meetup_source
        self._background: set[asyncio.Task[Any]] = set()

    async def schedule(
        self,
        flow: ScheduleSessionFlow,
        start: datetime,
        *,
        is_open_event: bool,
        transfer_rsvps: bool = False,
        duration_min: int | None = None,
    ) -> ScheduleSessionResult:
        """Create the session following the latest event of the flow's series.

        Raises
        ------
        FlowInProgressError
            If another submission of the same flow holds the claim.
        FlowNotFoundError
            If the flow was completed or expired since it was retrieved.
        FlowError
            With a user-facing message if any step fails. The flow key is
            kept and the claim released so the same link can be used again.
        """
        duration = duration_min if duration_min is not None else self._config.default_duration_min
        if not await flow.claim(self._redis, ttl_s=self._config.ttl_s):
            logger.info("Flow %s is already being submitted", flow.id)
            raise FlowInProgressError(flow.id)

        try:
            if await ScheduleSessionFlow.retrieve(self._redis, flow.id) is None:
                # Completed by an earlier submission
                raise FlowNotFoundError(flow.id)
            result = await self._run(
                flow,
                start,
                duration,
                is_open_event=is_open_event,
                transfer_rsvps=transfer_rsvps,
            )
        except BaseException:
            await self._release_flow(flow)
            raise

        await self._delete_flow(flow)
        return result

    async def _run(
        self,
        flow: ScheduleSessionFlow,
        start: datetime,
        duration_min: int,
        *,
        is_open_event: bool,
        transfer_rsvps: bool,
    ) -> ScheduleSessionResult:
        with _tracer.start_as_current_span("questline.flow.schedule") as span:
            span.set_attribute("flow_id", str(flow.id))
            span.set_attribute("event_series_id", flow.event_series_id)

            events = await self._store.get_events_for_series(flow.event_series_id)
            if not events:
                raise FlowError(
                    "Could not find an existing event to schedule a follow up session for"
                )
            latest = events[0]
            span.set_attribute("latest_event_id", latest.id)

            if self._config.schedule_target is ScheduleTarget.MEETUP:
                result = await self._schedule_meetup(
                    flow, latest, start, is_open_event=is_open_event, transfer_rsvps=transfer_rsvps
                )
            else:
                result = await self._schedule_swissrpg_target(flow, latest, start, duration_min)
            span.set_attribute("target", str(result.source))
            return result

    # -- SwissRPG -----------------------------------------------------------

    def _require_swissrpg(self) -> SwissRPGClient:
        if self._swissrpg_client is None:
            raise FlowError("SwissRPG client not available")
        return self._swissrpg_client

    async def _schedule_swissrpg_target(
        self,
        flow: ScheduleSessionFlow,
        latest: CanonicalEvent,
        start: datetime,
        duration_min: int,
    ) -> ScheduleSessionResult:
        client = self._require_swissrpg()
        series = await self._store.get_series(flow.event_series_id)
        swissrpg_series_id = series.swissrpg_event_series_id if series is not None else None

        source = latest.source
        if source is None:
            raise FlowError(
                "Could not determine the source of the latest event (neither Meetup nor SwissRPG)"
            )
        if source is EventSource.MEETUP and swissrpg_series_id is None:
            return await self._migrate_and_schedule(client, flow, latest, start, duration_min)
        if swissrpg_series_id is None:
            logger.error(
                "Series %s has a SwissRPG event but no SwissRPG series id", flow.event_series_id
            )
            raise FlowError(
                f"Event series {flow.event_series_id} does not have a SwissRPG event series ID"
            )

        event = await self._continue_swissrpg_series(
            client, swissrpg_series_id, start, duration_min
        )
        return _swissrpg_result(event)

    async def _continue_swissrpg_series(
        self,
        client: SwissRPGClient,
        swissrpg_series_id: str,
        start: datetime,
        duration_min: int,
    ) -> SwissRPGEvent:
        request = ScheduleSessionRequest(start=format_start(start), duration=duration_min)
        try:
            return await client.schedule_session(swissrpg_series_id, request)
        except QuestlineError as exc:
            raise FlowError(
                f"Failed to schedule SwissRPG session for event series {swissrpg_series_id}: {exc}"
            ) from exc

    async def _migrate_and_schedule(
        self,
        client: SwissRPGClient,
        flow: ScheduleSessionFlow,
        latest: CanonicalEvent,
        start: datetime,
        duration_min: int,
    ) -> ScheduleSessionResult:
        meetup_id = latest.meetup_id or ""
        if not meetup_id.isdigit():
            raise FlowError(f"Meetup event id {meetup_id!r} cannot be migrated to SwissRPG")
        logger.info(
            "Migrating Meetup event %s of series %s to SwissRPG",
            meetup_id,
            flow.event_series_id,
        )

        hosts = await self._store.host_discord_ids(latest.id)
        attendees = await self._store.participant_discord_ids(latest.id)
        request = MigrateEventRequest(
            title=latest.title,
            start=format_start(latest.start_time),
            organisers=[str(discord_id) for discord_id in hosts],
            attendees=[str(discord_id) for discord_id in attendees],
            legacy_id=int(meetup_id),
            description=latest.description,
        )
        try:
            migrated = await client.migrate_event(request)
        except QuestlineError as exc:
            raise FlowError(
                f"Failed to migrate Meetup event {meetup_id} to SwissRPG: {exc}"
            ) from exc
        logger.info(
            "Migrated series %s to SwissRPG series %s", flow.event_series_id, migrated.uuid
        )

        if not await self._store.record_swissrpg_series(flow.event_series_id, migrated.uuid):
            logger.warning(
                "Series %s already had a SwissRPG series id; migrated series is %s",
                flow.event_series_id,
                migrated.uuid,
            )

        event = await self._continue_swissrpg_series(client, migrated.uuid, start, duration_min)
        result = _swissrpg_result(event)
        result.migrated = True
        return result

    # -- Meetup (direct continuation) ---------------------------------------

    async def _schedule_meetup(
        self,
        flow: ScheduleSessionFlow,
        latest: CanonicalEvent,
        start: datetime,
        *,
        is_open_event: bool,
        transfer_rsvps: bool,
    ) -> ScheduleSessionResult:
        meetup = self._meetup_source
        if meetup is None:
            raise FlowError("Meetup client not available")
        if latest.meetup_id is None:
            raise FlowError("The latest event of this series is not a Meetup event")
        original_id = latest.meetup_id

        def hook(new_event: NewEvent) -> NewEvent:
            new_event = new_event.model_copy(
                update={"title": latest.title, "description": latest.description}
            )
            return rewrite_new_event(
                new_event,
                start=start,
                original_event_id=original_id,
                is_open_event=is_open_event,
            )

        try:
            new_event: MeetupEvent = await meetup.call(
                lambda client: clone_event(client, original_id, hook)
            )
        except QuestlineError as exc:
            raise FlowError(f"Failed to create the Meetup event: {exc}") from exc
        logger.info("Cloned Meetup event %s as %s", original_id, new_event.id)

        transferred: int | None = None
        if transfer_rsvps:
            transferred = await self._transfer_rsvps(meetup, original_id, new_event.id)
        closed = await self._close_rsvps(meetup, new_event.id)

        self._spawn(self._reconcile_clone(new_event), name=f"reconcile-clone-{new_event.id}")
        return ScheduleSessionResult(
            source=EventSource.MEETUP,
            title=new_event.title,
            link=new_event.short_url or new_event.event_url,
            closed_rsvps=closed,
            transferred_rsvps=transferred,
        )

    async def _transfer_rsvps(self, meetup: MeetupSource, src_id: str, dst_id: str) -> int:
        async def _clone(client: MeetupClient) -> Any:
            return await clone_rsvps(client, meetup.guard, src_id, dst_id)

        try:
            result = await meetup.call(_clone)
        except QuestlineError as exc:
            logger.warning("Could not transfer RSVPs from %s to %s: %s", src_id, dst_id, exc)
            return 0
        if result.num_failure:
            logger.warning(
                "Transferred %d RSVPs to %s, %d failed (latest error: %s)",
                result.num_success,
                dst_id,
                result.num_failure,
                result.latest_error,
            )
        return result.num_success

    async def _close_rsvps(self, meetup: MeetupSource, event_id: str) -> bool:
        try:
            await meetup.call(lambda client: client.close_rsvps(event_id))
        except QuestlineError as exc:
            logger.warning("RSVPs of Meetup event %s could not be closed: %s", event_id, exc)
            return False
        return True

    async def _reconcile_clone(self, new_event: MeetupEvent) -> None:
        await self._reconciler.reconcile(normalize_event(new_event))

    # -- Bookkeeping --------------------------------------------------------

    def _spawn(self, coro: Any, *, name: str) -> None:
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: asyncio.Task[Any]) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Background task %s failed: %s", task.get_name(), exc, exc_info=exc
            )

    async def wait_background(self, timeout: float | None = None) -> None:
        """Wait for spawned reconciliations, cancelling any still running after *timeout*."""
        if not self._background:
            return
        pending = set(self._background)
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)

    async def _release_flow(self, flow: ScheduleSessionFlow) -> None:
        try:
            await flow.release(self._redis)
        except RedisError as exc:
            # The claim still expires on its own
            logger.warning("Could not release flow %s: %s", flow.id, exc)

    async def _delete_flow(self, flow: ScheduleSessionFlow) -> None:
        try:
            await flow.delete(self._redis)
        except RedisError as exc:
            # The key still expires on its own
            logger.warning("Could not delete flow %s: %s", flow.id, exc)


def _swissrpg_result(event: SwissRPGEvent) -> ScheduleSessionResult:
    return ScheduleSessionResult(
        source=EventSource.SWISSRPG,
        title=event.title,
        link=event.public_url,
        series_external_id=event.uuid,
    )
