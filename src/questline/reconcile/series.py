"""Series Resolver: decide which canonical series an incoming event belongs to.

Precedence for one incoming event:

1. the series of its existing binding,
2. the series of the event its legacy link points at,
3. the series already recorded for its source-side series id,
4. a brand-new series (only if the event announces one).

Every indication that is present must agree; a disagreement raises
:class:`DataConflictError` and nothing is written for that event.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from questline.errors import DataConflictError
from questline.reconcile.store import Binding, CanonicalEvent, EventStore, ReconcileTx
from questline.sources.base import EventSource, SourceEvent

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SeriesResolution:
    """Outcome of :meth:`SeriesResolver.resolve`.

    ``series_id`` is ``None`` when the event must be skipped; ``skip_reason``
    then says why.
    """

    series_id: int | None
    created: bool = False
    skip_reason: str | None = None

    @classmethod
    def skip(cls, reason: str) -> SeriesResolution:
        return cls(series_id=None, skip_reason=reason)


class SeriesResolver:
    async def resolve(
        self,
        tx: ReconcileTx,
        event: SourceEvent,
        binding: Binding | None,
    ) -> SeriesResolution:
        """Resolve the target series for *event* inside the caller's transaction.

        Raises
        ------
        DataConflictError
            If the binding, the legacy link and the recorded source series
            point at different canonical series.
        """
        legacy_series_id: int | None = None
        if event.legacy_link is not None:
            legacy_series_id = await tx.series_for_event(event.legacy_link)
            if legacy_series_id is None:
                return SeriesResolution.skip(
                    f"legacy {event.legacy_link.source} event "
                    f"{event.legacy_link.external_id} is not known"
                )

        source_series_id: int | None = None
        if event.series_external_id is not None:
            source_series_id = await tx.series_for_source_series(
                event.source, event.series_external_id
            )

        candidates = [
            ("binding", binding.series_id if binding is not None else None),
            ("legacy link", legacy_series_id),
            ("source series", source_series_id),
        ]
        indicated = [(label, series_id) for label, series_id in candidates if series_id is not None]
        if len({series_id for _, series_id in indicated}) > 1:
            details = ", ".join(f"{label}={series_id}" for label, series_id in indicated)
            raise DataConflictError(
                f"{event.source} event {event.external_id} resolves to conflicting series "
                f"({details})"
            )

        created = False
        if indicated:
            series_id = indicated[0][1]
        elif event.starts_new_series:
            series_id = await tx.create_series(event.series_type)
            created = True
            logger.info(
                "Created %s series %s for %s event %s",
                event.series_type,
                series_id,
                event.source,
                event.external_id,
            )
        else:
            return SeriesResolution.skip("event neither continues nor starts a series")

        await self._link_source_series(tx, event, series_id)
        return SeriesResolution(series_id=series_id, created=created)

    async def _link_source_series(
        self, tx: ReconcileTx, event: SourceEvent, series_id: int
    ) -> None:
        if event.source is not EventSource.SWISSRPG or event.series_external_id is None:
            return
        recorded = await tx.get_source_series_id(series_id)
        if recorded is None:
            await tx.set_source_series_id(series_id, event.series_external_id)
        elif recorded != event.series_external_id:
            raise DataConflictError(
                f"Series {series_id} is linked to SwissRPG series {recorded}, "
                f"but event {event.external_id} reports {event.series_external_id}"
            )


async def latest_event(store: EventStore, series_id: int) -> CanonicalEvent | None:
    """Most recent event of a series; the latest start time wins."""
    events = await store.get_events_for_series(series_id)
    return events[0] if events else None
