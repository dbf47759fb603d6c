"""Questline daemon: wires every component together and owns their lifecycle.

Startup sequence:

1. Configure logging (service context ``questline``)
2. Provision the database and run the ``core`` migration chain
3. Open the asyncpg pool and the Redis client
4. Build the source adapters (Meetup through the credential refresh guard)
5. Build reconciler, session scheduler and recurring sync scheduler
6. Start the sync loops and the uvicorn web server

Shutdown sets the process-wide shutdown flag first, so the web handlers
decline new work, then stops the sync loops and gives in-flight work a
bounded grace period before closing connections.
"""

from __future__ import annotations

import asyncio
import logging

import httpx
import uvicorn
from redis import asyncio as aioredis
from redis.asyncio import Redis

from questline.api.app import create_app
from questline.api.deps import FlowServices
from questline.config import QuestlineConfig
from questline.core.logging import configure_logging
from questline.credentials import CredentialRefreshGuard, OAuth2Consumer, TokenStore
from questline.db import Database
from questline.flow.schedule_session import SessionScheduler
from questline.free_spots import LoggingFreeSpotsPublisher
from questline.migrations import run_migrations
from questline.reconcile.reconciler import EventReconciler
from questline.reconcile.store import PostgresEventStore
from questline.sources._http import DEFAULT_TIMEOUT
from questline.sources.base import EventSourceAdapter
from questline.sources.meetup import MeetupClient, MeetupSource, client_factory
from questline.sources.swissrpg import SwissRPGClient, SwissRPGSource
from questline.tasks.sync import RecurringSyncScheduler

logger = logging.getLogger(__name__)


class QuestlineDaemon:
    """Process-level container for the engine's long-lived resources."""

    def __init__(self, config: QuestlineConfig) -> None:
        self.config = config
        self.shutdown_event = asyncio.Event()

        self.db: Database | None = None
        self.redis: Redis | None = None
        self.http_client: httpx.AsyncClient | None = None
        self.oauth_consumer: OAuth2Consumer | None = None
        self.swissrpg_client: SwissRPGClient | None = None
        self.meetup_source: MeetupSource | None = None
        self.adapters: list[EventSourceAdapter] = []

        self.store: PostgresEventStore | None = None
        self.reconciler: EventReconciler | None = None
        self.session_scheduler: SessionScheduler | None = None
        self.sync_scheduler: RecurringSyncScheduler | None = None

        self._server: uvicorn.Server | None = None
        self._server_task: asyncio.Task[None] | None = None

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------

    async def open(self, *, migrate: bool = True) -> None:
        """Connect to Postgres and Redis and build every component."""
        cfg = self.config
        self.db = Database.from_url(
            cfg.database.url,
            default_db_name=cfg.database.name,
            min_pool_size=cfg.database.min_pool_size,
            max_pool_size=cfg.database.max_pool_size,
        )
        if migrate:
            await self.db.provision()
            # Alembic drives a synchronous engine
            await asyncio.to_thread(run_migrations, self.db.dsn)
        await self.db.connect()
        self.redis = aioredis.from_url(cfg.redis.url, decode_responses=True)
        self.http_client = httpx.AsyncClient(timeout=DEFAULT_TIMEOUT)

        self.adapters = []
        if cfg.meetup.enabled:
            self.meetup_source = self._build_meetup_source()
            self.adapters.append(self.meetup_source)
        if cfg.swissrpg.enabled:
            self.swissrpg_client = SwissRPGClient(
                base_url=cfg.swissrpg.base_url,
                api_token=cfg.swissrpg.api_token or "",
                http_client=self.http_client,
            )
            self.adapters.append(SwissRPGSource(self.swissrpg_client))
        if not self.adapters:
            logger.warning("No event source is enabled; sync passes will be idle")

        self.store = PostgresEventStore(self.db)
        self.reconciler = EventReconciler(self.store)
        self.session_scheduler = SessionScheduler(
            redis=self.redis,
            store=self.store,
            reconciler=self.reconciler,
            config=cfg.flow,
            swissrpg_client=self.swissrpg_client,
            meetup_source=self.meetup_source,
        )
        self.sync_scheduler = RecurringSyncScheduler(
            config=cfg.sync,
            reconciler=self.reconciler,
            adapters=self.adapters,
            publisher=LoggingFreeSpotsPublisher(),
        )

    def _build_meetup_source(self) -> MeetupSource:
        cfg = self.config.meetup
        assert self.redis is not None and self.http_client is not None
        self.oauth_consumer = OAuth2Consumer(
            token_url=cfg.oauth_token_url,
            client_id=cfg.client_id or "",
            client_secret=cfg.client_secret or "",
            token_store=TokenStore(self.redis),
            http_client=self.http_client,
        )
        guard: CredentialRefreshGuard[MeetupClient] = CredentialRefreshGuard(
            consumer=self.oauth_consumer,
            client_factory=client_factory(cfg.api_url, self.http_client),
        )
        return MeetupSource(
            guard=guard,
            organizer_id=cfg.organizer_id or 0,
            group_urlnames=cfg.group_urlnames,
            rate_limit_delay_s=self.config.sync.rate_limit_delay_s,
        )

    def flow_services(self) -> FlowServices:
        if self.redis is None or self.store is None or self.session_scheduler is None:
            raise RuntimeError("Daemon is not open")
        return FlowServices(
            redis=self.redis,
            store=self.store,
            scheduler=self.session_scheduler,
            config=self.config.flow,
            shutdown_event=self.shutdown_event,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Open resources, start the sync loops and the web server."""
        configure_logging(
            level=self.config.logging.level,
            fmt=self.config.logging.format,
            log_root=self.config.logging.log_root,
            service_name="questline",
        )
        await self.open()
        assert self.sync_scheduler is not None
        self.sync_scheduler.start()
        await self._start_web_server()
        logger.info("Questline running on %s:%s", self.config.web.host, self.config.web.port)

    async def _start_web_server(self) -> None:
        app = create_app(self.flow_services())
        config = uvicorn.Config(
            app,
            host=self.config.web.host,
            port=self.config.web.port,
            log_level="info",
            timeout_graceful_shutdown=int(self.config.shutdown_timeout_s),
        )
        self._server = uvicorn.Server(config)
        self._server_task = asyncio.create_task(self._server.serve(), name="web-server")

    async def shutdown(self) -> None:
        """Graceful shutdown.

        1. Set the shutdown flag so handlers decline new work
        2. Stop the recurring sync loops
        3. Stop the web server, letting in-flight requests finish
        4. Wait (bounded) for background reconciliations spawned by flows
        5. Close HTTP, Redis and Postgres connections
        """
        logger.info("Shutting down questline")
        self.shutdown_event.set()
        timeout = self.config.shutdown_timeout_s

        if self.sync_scheduler is not None:
            await self.sync_scheduler.stop()

        if self._server is not None:
            self._server.should_exit = True
        if self._server_task is not None:
            try:
                await asyncio.wait_for(self._server_task, timeout=timeout)
            except TimeoutError:
                logger.warning("Web server did not stop within %ss", timeout)
            except Exception:
                logger.exception("Error while stopping web server")
            self._server_task = None
            self._server = None

        if self.session_scheduler is not None:
            await self.session_scheduler.wait_background(timeout=timeout)

        await self.close()
        logger.info("Questline shutdown complete")

    async def close(self) -> None:
        for adapter in self.adapters:
            try:
                await adapter.shutdown()
            except Exception:
                logger.exception("Error during shutdown of %s adapter", adapter.source)
        if self.http_client is not None:
            await self.http_client.aclose()
            self.http_client = None
        if self.redis is not None:
            await self.redis.aclose()
            self.redis = None
        if self.db is not None:
            await self.db.close()
