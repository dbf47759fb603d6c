"""Event Reconciler: upsert one normalized source event into the canonical model.

Each call to :meth:`EventReconciler.reconcile` runs in its own transaction:
the existing binding row is locked with ``SELECT ... FOR UPDATE``, the target
series is resolved, then the event, its binding, its hosts (insert-if-absent)
and its participants (exact mirror of the reported attendees) are written.
Any error rolls back that one event only.

:func:`run_reconciliation_pass` drives a full pass for one source adapter and
isolates failures per event.
"""

from __future__ import annotations

import enum
import logging
from datetime import UTC, datetime

from opentelemetry import trace
from pydantic import BaseModel

from questline.errors import DataConflictError, PersistenceError, ValidationError
from questline.free_spots import EventCollector
from questline.reconcile.series import SeriesResolver
from questline.reconcile.store import EventStore, ReconcileTx
from questline.sources.base import EventSourceAdapter, SourceEvent, SourcePerson

logger = logging.getLogger(__name__)
_tracer = trace.get_tracer("questline")

# Member ids are stored in signed BIGINT columns
_MAX_MEMBER_ID = 2**63 - 1


class ReconcileOutcome(enum.StrEnum):
    CREATED = "created"
    UPDATED = "updated"
    SKIPPED = "skipped"


class ReconcileSummary(BaseModel):
    """Counters for one reconciliation pass."""

    source: str
    fetched: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    conflicts: int = 0
    failed: int = 0
    started_at: datetime | None = None
    finished_at: datetime | None = None

    def record(self, outcome: ReconcileOutcome) -> None:
        if outcome is ReconcileOutcome.CREATED:
            self.created += 1
        elif outcome is ReconcileOutcome.UPDATED:
            self.updated += 1
        else:
            self.skipped += 1


def parse_person_id(person: SourcePerson) -> int:
    """Validate and convert a person's external id.

    Discord ids must be non-zero unsigned 64-bit integers, Meetup member ids
    positive integers. Both must fit the member table's BIGINT columns.

    Raises
    ------
    ValidationError
        If the id is not a usable integer.
    """
    raw = person.external_id.strip()
    if not raw.isdigit():
        raise ValidationError(f"Invalid {person.kind} id {person.external_id!r}")
    value = int(raw)
    if value == 0 or value > _MAX_MEMBER_ID:
        raise ValidationError(f"{person.kind} id {person.external_id!r} is out of range")
    return value


class EventReconciler:
    """Transactional, idempotent upsert of :class:`SourceEvent` objects."""

    def __init__(self, store: EventStore, resolver: SeriesResolver | None = None) -> None:
        self._store = store
        self._resolver = resolver or SeriesResolver()

    async def reconcile(self, event: SourceEvent) -> ReconcileOutcome:
        """Reconcile one event.

        Raises
        ------
        DataConflictError
            If the event's series indications disagree. Nothing is written.
        PersistenceError
            If the transaction fails. Nothing is written.
        """
        with _tracer.start_as_current_span("questline.reconcile.event") as span:
            span.set_attribute("source", str(event.source))
            span.set_attribute("external_id", event.external_id)
            async with self._store.unit_of_work() as tx:
                binding = await tx.lock_binding(event.source, event.external_id)
                resolution = await self._resolver.resolve(tx, event, binding)
                if resolution.series_id is None:
                    logger.info(
                        "Skipping %s event %s: %s",
                        event.source,
                        event.external_id,
                        resolution.skip_reason,
                    )
                    span.set_attribute("outcome", ReconcileOutcome.SKIPPED.value)
                    return ReconcileOutcome.SKIPPED

                series_id = resolution.series_id
                span.set_attribute("series_id", series_id)
                if binding is not None:
                    event_id = binding.event_id
                    await tx.update_event(event_id, series_id, event)
                    outcome = ReconcileOutcome.UPDATED
                else:
                    event_id = await tx.insert_event(series_id, event)
                    await tx.insert_binding(event_id, event)
                    outcome = ReconcileOutcome.CREATED

                for host in event.hosts:
                    member_id = await self._member_id(tx, host, event)
                    if member_id is not None:
                        await tx.add_host(event_id, member_id)

                participant_ids: list[int] = []
                for attendee in event.attendees:
                    member_id = await self._member_id(tx, attendee, event)
                    if member_id is not None:
                        participant_ids.append(member_id)
                await tx.replace_participants(event_id, participant_ids)

            span.set_attribute("outcome", outcome.value)
            return outcome

    async def _member_id(
        self, tx: ReconcileTx, person: SourcePerson, event: SourceEvent
    ) -> int | None:
        try:
            external_id = parse_person_id(person)
        except ValidationError as exc:
            logger.warning(
                "Skipping person on %s event %s: %s", event.source, event.external_id, exc
            )
            return None
        return await tx.get_or_create_member(person.kind, external_id, person.display_name)

    async def reconcile_all(self, source: str, events: list[SourceEvent]) -> ReconcileSummary:
        """Reconcile *events* one by one; a failing event never stops the rest."""
        summary = ReconcileSummary(
            source=source, fetched=len(events), started_at=datetime.now(UTC)
        )
        for event in events:
            try:
                outcome = await self.reconcile(event)
            except DataConflictError as exc:
                logger.warning(
                    "Series conflict for %s event %s: %s", source, event.external_id, exc
                )
                summary.conflicts += 1
            except PersistenceError:
                logger.exception("Failed to persist %s event %s", source, event.external_id)
                summary.failed += 1
            except Exception:
                logger.exception(
                    "Unexpected error reconciling %s event %s", source, event.external_id
                )
                summary.failed += 1
            else:
                summary.record(outcome)
        summary.finished_at = datetime.now(UTC)
        return summary


async def run_reconciliation_pass(
    adapter: EventSourceAdapter,
    reconciler: EventReconciler,
    *,
    now: datetime | None = None,
) -> tuple[ReconcileSummary, EventCollector]:
    """Fetch every upcoming event of *adapter* and reconcile it.

    Errors while fetching propagate to the caller (the scheduler logs them and
    retries on the next tick). Returns the pass summary and an
    :class:`EventCollector` holding the fetched events for the free-spots pass.
    """
    source = str(adapter.source)
    with _tracer.start_as_current_span("questline.reconcile.pass") as span:
        span.set_attribute("source", source)
        events = await adapter.fetch_upcoming(now=now)
        summary = await reconciler.reconcile_all(source, events)
        span.set_attribute("fetched", summary.fetched)
        span.set_attribute("failures", summary.failed + summary.conflicts)

    collector = EventCollector()
    collector.extend(events)
    logger.info(
        "Reconciled %s: %d fetched, %d created, %d updated, %d skipped, %d conflicts, %d failed",
        source,
        summary.fetched,
        summary.created,
        summary.updated,
        summary.skipped,
        summary.conflicts,
        summary.failed,
    )
    return summary, collector

