"""Process-level wiring for the sync engine.

SyncPlatform builds exactly one of each collaborator (cache, connector
registry, OAuth state tracker and sweeper, task scheduler, orchestrator) and
hands them to the host, which passes the orchestrator by reference to its
HTTP or CLI layer. ``sync_platform()`` is the lifespan helper: it configures
logging, starts background jobs and tears everything down on exit.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from dataclasses import dataclass

import structlog

from src.crm_sync.auth.oauth import OAuthStateSweeper, OAuthStateTracker
from src.crm_sync.config import Settings, get_settings
from src.crm_sync.connectors.registry import ConnectorRegistry
from src.crm_sync.core.cache import CacheService, InMemoryCache, RedisCache, close_redis, get_redis_pool
from src.crm_sync.core.logging import configure_structlog
from src.crm_sync.core.scheduling import APSchedulerTaskScheduler, TaskScheduler
from src.crm_sync.sync.orchestrator import SyncOrchestrator
from src.crm_sync.sync.store import ClientStore

logger = structlog.get_logger(__name__)


@dataclass
class SyncPlatform:
    settings: Settings
    cache: CacheService
    registry: ConnectorRegistry
    oauth: OAuthStateTracker
    oauth_sweeper: OAuthStateSweeper
    scheduler: TaskScheduler
    orchestrator: SyncOrchestrator
    uses_redis: bool = False

    @classmethod
    def create(
        cls,
        settings: Settings | None = None,
        *,
        cache: CacheService | None = None,
        store: ClientStore | None = None,
        scheduler: TaskScheduler | None = None,
    ) -> SyncPlatform:
        """Build the collaborators.

        Without an explicit cache, mock mode and the test environment use an
        InMemoryCache; everything else uses Redis.
        """
        settings = settings or get_settings()
        uses_redis = False
        if cache is None:
            if settings.CRM_USE_MOCKS or settings.is_test:
                cache = InMemoryCache()
            else:
                cache = RedisCache(get_redis_pool(), prefix=settings.CACHE_KEY_PREFIX)
                uses_redis = True

        registry = ConnectorRegistry(use_mocks=settings.CRM_USE_MOCKS)
        oauth = OAuthStateTracker(state_ttl_seconds=settings.OAUTH_STATE_TTL_SECONDS)
        scheduler = scheduler or APSchedulerTaskScheduler()
        orchestrator = SyncOrchestrator(
            cache,
            registry=registry,
            store=store,
            scheduler=scheduler,
            defaults=settings.sync_defaults(),
        )
        return cls(
            settings=settings,
            cache=cache,
            registry=registry,
            oauth=oauth,
            oauth_sweeper=OAuthStateSweeper(oauth, settings.OAUTH_CLEANUP_INTERVAL_SECONDS),
            scheduler=scheduler,
            orchestrator=orchestrator,
            uses_redis=uses_redis,
        )

    def start(self) -> None:
        self.oauth_sweeper.start()
        logger.info(
            "sync_platform.started",
            environment=self.settings.ENVIRONMENT.value,
            mocks=self.settings.CRM_USE_MOCKS,
            redis=self.uses_redis,
        )

    async def aclose(self) -> None:
        """Stop background work, wait for in-flight syncs, release transports."""
        self.oauth_sweeper.stop()
        await self.orchestrator.shutdown()
        await self.registry.aclose()
        if self.uses_redis:
            await close_redis()
        logger.info("sync_platform.stopped")


@asynccontextmanager
async def sync_platform(settings: Settings | None = None, **overrides) -> AsyncGenerator[SyncPlatform, None]:
    """Lifespan helper: configure logging, start, and always shut down."""
    settings = settings or get_settings()
    configure_structlog(settings)
    platform = SyncPlatform.create(settings, **overrides)
    platform.start()
    try:
        yield platform
    finally:
        await platform.aclose()
