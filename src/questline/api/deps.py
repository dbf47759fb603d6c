"""Runtime collaborators shared by the API routers.

The daemon builds one :class:`FlowServices` and hands it to
:func:`questline.api.app.create_app`, which wires it into the routers'
dependency stubs.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

from redis.asyncio import Redis

from questline.config import FlowConfig
from questline.flow.schedule_session import SessionScheduler
from questline.reconcile.store import EventStore


class ServiceShuttingDownError(Exception):
    """Raised by request handlers once the process-wide shutdown flag is set."""


@dataclass
class FlowServices:
    redis: Redis
    store: EventStore
    scheduler: SessionScheduler
    config: FlowConfig
    shutdown_event: asyncio.Event = field(default_factory=asyncio.Event)

    def ensure_accepting(self) -> None:
        """Decline new work while the process is shutting down."""
        if self.shutdown_event.is_set():
            raise ServiceShuttingDownError("Service is shutting down, please retry shortly")
