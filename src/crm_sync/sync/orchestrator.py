"""Sync orchestrator: recurring, de-duplicated CRM syncs with conflict queueing.

One SyncOrchestrator is constructed by the host process and shared by
reference. Per (system, credential) target it guarantees:

- single-flight: concurrent start_sync() calls share one in-flight run
- a global ceiling on in-flight runs; excess requests fail fast with
  SyncCapacityError instead of queueing
- connector.sync_clients() runs through the retry executor; failures land
  in SyncStatus.errors and are never raised
- after a successful pull, local records awaiting push are diffed against
  fresh remote state and divergences are queued as pending conflicts (never
  auto-resolved)
- unless the run ended in a hard error, the next run is scheduled on the
  TaskScheduler after ``sync_interval_minutes``

stop_sync() only prevents future runs. A run already in flight completes
and then reports ``paused``.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog

from src.crm_sync.config import get_settings
from src.crm_sync.connectors.adapter import CRMConnector
from src.crm_sync.connectors.registry import ConnectorRegistry
from src.crm_sync.connectors.schemas import CRMClient, CRMConfig, CRMSystem, SyncErrorDetail
from src.crm_sync.core.cache import CacheService
from src.crm_sync.core.monitoring import (
    client_cache_requests_total,
    conflicts_detected_total,
    sync_duration_seconds,
    sync_in_flight,
    sync_runs_total,
)
from src.crm_sync.core.scheduling import APSchedulerTaskScheduler, TaskScheduler
from src.crm_sync.resilience.retry import create_config, execute_with_retry, is_retryable_error
from src.crm_sync.sync.conflicts import diff_fields, local_create, local_patch
from src.crm_sync.sync.errors import (
    ConflictAlreadyResolvedError,
    ConflictNotFoundError,
    SyncAlreadyRunningError,
    SyncCapacityError,
)
from src.crm_sync.sync.schemas import (
    CacheStats,
    ConflictResolution,
    LocalClientRecord,
    ResolutionState,
    SyncConfig,
    SyncState,
    SyncStatus,
)
from src.crm_sync.sync.store import ClientStore, InMemoryClientStore

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _tag(system: CRMSystem | str) -> str:
    return system.value if isinstance(system, CRMSystem) else str(system)


def sync_key(system: CRMSystem | str, credential_id: str) -> str:
    return f"{_tag(system)}-{credential_id}"


def client_cache_key(system: CRMSystem | str, remote_id: str) -> str:
    return f"crm_client:{_tag(system)}:{remote_id}"


def last_sync_cache_key(system: CRMSystem | str, credential_id: str) -> str:
    return f"crm_sync:{_tag(system)}:{credential_id}"


class SyncOrchestrator:
    """Starts, stops and schedules CRM syncs and tracks their outcome.

    Args:
        cache: Key-value store for last-sync stamps and cached remote clients.
        registry: Resolves connectors for start_sync_for(). Defaults to a
            registry honouring CRM_USE_MOCKS.
        store: Platform-side client store for bidirectional sync.
        scheduler: Task scheduler for recurring runs. Defaults to APScheduler.
        defaults: Base SyncConfig; per-call overrides are merged on top.
        clock: Wall-clock source for timestamps.
        retry_sleep: Sleep used between retry attempts.
    """

    def __init__(
        self,
        cache: CacheService,
        registry: ConnectorRegistry | None = None,
        store: ClientStore | None = None,
        scheduler: TaskScheduler | None = None,
        defaults: SyncConfig | None = None,
        clock: Callable[[], datetime] | None = None,
        retry_sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        settings = get_settings()
        self._cache = cache
        self._registry = registry or ConnectorRegistry(use_mocks=settings.CRM_USE_MOCKS)
        self._clock = clock or _utcnow
        self._store = store or InMemoryClientStore(clock=self._clock)
        self._scheduler = scheduler or APSchedulerTaskScheduler()
        self._defaults = defaults or settings.sync_defaults()
        self._retry_sleep = retry_sleep

        self._active: dict[str, asyncio.Task[SyncStatus]] = {}
        self._statuses: dict[str, SyncStatus] = {}
        self._conflicts: dict[str, ConflictResolution] = {}
        self._paused: set[str] = set()
        self._cache_hits = 0
        self._cache_misses = 0

    @property
    def registry(self) -> ConnectorRegistry:
        return self._registry

    @property
    def store(self) -> ClientStore:
        return self._store

    @property
    def scheduler(self) -> TaskScheduler:
        return self._scheduler

    def _resolve_config(self, config: SyncConfig | dict[str, Any] | None) -> SyncConfig:
        if config is None:
            return self._defaults
        if isinstance(config, SyncConfig):
            return config
        return SyncConfig.model_validate({**self._defaults.model_dump(), **config})

    # ── Sync lifecycle ──────────────────────────────────────────────────────

    async def start_sync(
        self,
        connector: CRMConnector,
        config: SyncConfig | dict[str, Any] | None = None,
        *,
        join_existing: bool = True,
    ) -> SyncStatus:
        """Run a sync for the connector's target, or join the one in flight.

        Raises:
            SyncAlreadyRunningError: a run is in flight and join_existing is False.
            SyncCapacityError: the concurrency ceiling is reached.
        """
        config = self._resolve_config(config)
        key = sync_key(connector.system, connector.credential_id)

        running = self._active.get(key)
        if running is not None:
            if not join_existing:
                raise SyncAlreadyRunningError(key)
            logger.info("crm_sync.joined_in_flight", key=key)
            return await asyncio.shield(running)

        if len(self._active) >= config.max_concurrent_syncs:
            logger.warning("crm_sync.capacity_reached", key=key, limit=config.max_concurrent_syncs)
            raise SyncCapacityError(config.max_concurrent_syncs)

        self._paused.discard(key)
        logger.info(
            "crm_sync.started",
            key=key,
            bidirectional=config.enable_bidirectional_sync,
            interval_minutes=config.sync_interval_minutes,
        )
        task = asyncio.create_task(self._run(connector, config, key), name=f"crm-sync:{key}")
        self._active[key] = task
        sync_in_flight.set(len(self._active))
        return await asyncio.shield(task)

    async def start_sync_for(
        self,
        crm_config: CRMConfig,
        config: SyncConfig | dict[str, Any] | None = None,
    ) -> SyncStatus:
        """Resolve the connector through the registry, then start_sync()."""
        connector = self._registry.create_connector(crm_config)
        return await self.start_sync(connector, config)

    async def force_sync(
        self,
        connector: CRMConnector,
        config: SyncConfig | dict[str, Any] | None = None,
    ) -> SyncStatus:
        """Cancel any pending scheduled run and sync now.

        Single-flight and the concurrency ceiling still apply.
        """
        key = sync_key(connector.system, connector.credential_id)
        self._scheduler.cancel(key)
        self._paused.discard(key)
        logger.info("crm_sync.forced", key=key)
        return await self.start_sync(connector, config)

    def stop_sync(self, system: CRMSystem | str, credential_id: str) -> None:
        """Cancel the pending scheduled run and mark the target paused."""
        key = sync_key(system, credential_id)
        self._scheduler.cancel(key)
        self._paused.add(key)

        status = self._statuses.get(key)
        if status is not None and key not in self._active:
            status.state = SyncState.PAUSED
            status.next_sync_time = None
        logger.info("crm_sync.stopped", key=key, in_flight=key in self._active)

    def stop_all_syncs(self) -> None:
        for status in list(self._statuses.values()):
            self.stop_sync(status.system, status.credential_id)
        for run in self._scheduler.pending():
            run.cancel()
        logger.info("crm_sync.all_stopped", targets=len(self._statuses))

    def get_sync_status(self, system: CRMSystem | str, credential_id: str) -> SyncStatus | None:
        return self._statuses.get(sync_key(system, credential_id))

    def get_all_sync_statuses(self) -> list[SyncStatus]:
        return list(self._statuses.values())

    def is_syncing(self, system: CRMSystem | str, credential_id: str) -> bool:
        return sync_key(system, credential_id) in self._active

    @property
    def active_sync_count(self) -> int:
        return len(self._active)

    # ── Run execution ───────────────────────────────────────────────────────

    async def _run(self, connector: CRMConnector, config: SyncConfig, key: str) -> SyncStatus:
        try:
            status = await self._perform_sync(connector, config, key)
        finally:
            self._active.pop(key, None)
            sync_in_flight.set(len(self._active))

        if key in self._paused:
            status.state = SyncState.PAUSED
            status.next_sync_time = None
            logger.info("crm_sync.paused_after_run", key=key)
        elif status.state is SyncState.ERROR and not status.has_retryable_errors:
            status.next_sync_time = None
            self._scheduler.cancel(key)
            logger.warning("crm_sync.not_rescheduled", key=key, errors=len(status.errors))
        else:
            self._schedule_next(connector, config, key)

        self._statuses[key] = status
        return status

    async def _perform_sync(self, connector: CRMConnector, config: SyncConfig, key: str) -> SyncStatus:
        system = connector.system
        started = time.perf_counter()
        started_at = self._clock()
        status = SyncStatus(
            system=system,
            credential_id=connector.credential_id,
            state=SyncState.SYNCING,
            last_sync_time=started_at,
        )
        self._statuses[key] = status

        try:
            stamp_key = last_sync_cache_key(system, connector.credential_id)
            raw = await self._cache.get(stamp_key)
            last_sync_time = datetime.fromisoformat(raw) if raw else None

            outcome = await execute_with_retry(
                lambda: connector.sync_clients(last_sync_time),
                create_config(config.retry_preset),
                label=f"crm_sync.{system}",
                sleep=self._retry_sleep,
            )

            if outcome.success and outcome.result is not None:
                result = outcome.result
                status.clients_processed = result.clients_processed
                status.clients_updated = result.clients_updated
                status.clients_created = result.clients_created
                status.errors = list(result.errors)

                if config.enable_bidirectional_sync:
                    await self._process_bidirectional_sync(connector, config)

                await self._cache.set(stamp_key, started_at.isoformat(), ttl=config.last_sync_ttl_seconds)
                status.success = result.success
                status.state = SyncState.IDLE if result.success else SyncState.ERROR
            else:
                error = outcome.error
                status.success = False
                status.state = SyncState.ERROR
                status.errors.append(
                    SyncErrorDetail(
                        message=(getattr(error, "message", None) or str(error) or "Sync failed"),
                        code=getattr(error, "code", None),
                        retryable=is_retryable_error(error) if error is not None else True,
                    )
                )
        except Exception as exc:
            logger.exception("crm_sync.failed", key=key)
            status.success = False
            status.state = SyncState.ERROR
            status.errors.append(SyncErrorDetail(message=str(exc) or type(exc).__name__, retryable=False))

        status.duration_seconds = time.perf_counter() - started
        status.last_sync_time = self._clock()

        sync_runs_total.labels(system=system, outcome=status.state.value).inc()
        sync_duration_seconds.labels(system=system).observe(status.duration_seconds)
        logger.info(
            "crm_sync.completed",
            key=key,
            state=status.state.value,
            processed=status.clients_processed,
            updated=status.clients_updated,
            created=status.clients_created,
            errors=len(status.errors),
            duration_seconds=round(status.duration_seconds, 3),
        )
        return status

    def _schedule_next(self, connector: CRMConnector, config: SyncConfig, key: str) -> None:
        delay = config.sync_interval_minutes * 60
        status = self._statuses.get(key)
        if status is not None:
            status.next_sync_time = self._clock() + timedelta(seconds=delay)

        async def _scheduled_run() -> None:
            try:
                await self.start_sync(connector, config)
            except SyncCapacityError:
                logger.warning("crm_sync.scheduled_run_deferred", key=key)
                if key not in self._paused:
                    self._schedule_next(connector, config, key)

        self._scheduler.schedule(key, delay, _scheduled_run)
        logger.debug("crm_sync.next_run_scheduled", key=key, delay_seconds=delay)

    # ── Bidirectional sync ──────────────────────────────────────────────────

    async def _process_bidirectional_sync(self, connector: CRMConnector, config: SyncConfig) -> None:
        system = connector.system
        credential_id = connector.credential_id
        records = await self._store.get_clients_needing_push(system, credential_id, limit=config.batch_size)

        pushed = created = conflicts = skipped = 0
        for record in records:
            try:
                if record.remote_id is None:
                    remote = await connector.create_client(local_create(record))
                    await self._store.mark_synced(record.id, remote.id, self._clock())
                    await self.set_cached_client(system, remote, ttl=config.client_cache_ttl_seconds)
                    created += 1
                    continue

                remote = await connector.get_client(record.remote_id)
                await self.set_cached_client(system, remote, ttl=config.client_cache_ttl_seconds)

                fields = diff_fields(record, remote)
                if not fields:
                    await self._store.mark_synced(record.id, remote.id, self._clock())
                elif record.last_synced_at is None or remote.updated_at > record.last_synced_at:
                    self._record_conflict(record, remote, fields)
                    conflicts += 1
                else:
                    await connector.update_client(record.remote_id, local_patch(record))
                    await self.invalidate_cached_client(system, record.remote_id)
                    await self._store.mark_synced(record.id, record.remote_id, self._clock())
                    pushed += 1
            except Exception as exc:
                skipped += 1
                logger.warning(
                    "crm_sync.push_skipped",
                    system=system,
                    client_id=record.id,
                    remote_id=record.remote_id,
                    error=str(exc),
                )

        logger.info(
            "crm_sync.bidirectional_completed",
            system=system,
            candidates=len(records),
            pushed=pushed,
            created=created,
            conflicts=conflicts,
            skipped=skipped,
        )

    def _record_conflict(self, record: LocalClientRecord, remote: CRMClient, fields: list[str]) -> None:
        existing = self._conflicts.get(record.id)
        if existing is not None and existing.resolution is not ResolutionState.PENDING:
            logger.info("crm_sync.conflict_reopened", client_id=record.id, previous=existing.resolution.value)
        self._conflicts[record.id] = ConflictResolution(
            client_id=record.id,
            system=record.system,
            credential_id=record.credential_id,
            remote_id=remote.id,
            crm_data=remote,
            platform_data=record,
            conflict_fields=fields,
            detected_at=self._clock(),
        )
        conflicts_detected_total.labels(system=record.system).inc()
        logger.info("crm_sync.conflict_detected", client_id=record.id, remote_id=remote.id, fields=fields)

    # ── Conflicts ───────────────────────────────────────────────────────────

    def get_pending_conflicts(self) -> list[ConflictResolution]:
        return [c for c in self._conflicts.values() if c.resolution is ResolutionState.PENDING]

    def get_conflict(self, client_id: str) -> ConflictResolution | None:
        return self._conflicts.get(client_id)

    async def resolve_conflict(
        self,
        client_id: str,
        resolution: ResolutionState | str,
        resolved_by: str,
        merged_data: dict[str, Any] | None = None,
    ) -> ConflictResolution:
        """Apply one resolution to a pending conflict and make it terminal.

        Raises:
            ConflictNotFoundError: no conflict recorded for the client.
            ConflictAlreadyResolvedError: the conflict is already terminal.
            ValueError: resolution is ``pending``, or ``merged`` without data.
        """
        resolution = ResolutionState(resolution)
        conflict = self._conflicts.get(client_id)
        if conflict is None:
            raise ConflictNotFoundError(client_id)
        if conflict.resolution is not ResolutionState.PENDING:
            raise ConflictAlreadyResolvedError(client_id, conflict.resolution.value)
        if resolution is ResolutionState.PENDING:
            raise ValueError("A conflict cannot be resolved to pending")
        if resolution is ResolutionState.MERGED and not merged_data:
            raise ValueError("Merged resolution requires merged_data")

        if resolution is ResolutionState.CRM_WINS:
            await self._store.apply_remote_data(client_id, conflict.crm_data)
        elif resolution is ResolutionState.PLATFORM_WINS:
            await self._store.apply_local_data(conflict.platform_data)
        else:
            await self._store.apply_merged_data(client_id, merged_data or {})

        conflict.resolution = resolution
        conflict.resolved_at = self._clock()
        conflict.resolved_by = resolved_by
        await self.invalidate_cached_client(conflict.system, conflict.remote_id)

        logger.info(
            "crm_sync.conflict_resolved",
            client_id=client_id,
            resolution=resolution.value,
            resolved_by=resolved_by,
        )
        return conflict

    # ── Client cache ────────────────────────────────────────────────────────

    async def get_cached_client(self, system: CRMSystem | str, remote_id: str) -> CRMClient | None:
        raw = await self._cache.get(client_cache_key(system, remote_id))
        if raw is None:
            self._cache_misses += 1
            client_cache_requests_total.labels(result="miss").inc()
            return None
        self._cache_hits += 1
        client_cache_requests_total.labels(result="hit").inc()
        return CRMClient.model_validate_json(raw)

    async def set_cached_client(self, system: CRMSystem | str, client: CRMClient, ttl: int | None = None) -> None:
        ttl = ttl if ttl is not None else self._defaults.client_cache_ttl_seconds
        await self._cache.set(client_cache_key(system, client.id), client.model_dump_json(), ttl=ttl)

    async def invalidate_cached_client(self, system: CRMSystem | str, remote_id: str) -> bool:
        return await self._cache.delete(client_cache_key(system, remote_id)) > 0

    async def fetch_client(self, connector: CRMConnector, remote_id: str) -> CRMClient:
        """Read-through lookup: serve from cache, else fetch and cache."""
        cached = await self.get_cached_client(connector.system, remote_id)
        if cached is not None:
            return cached
        client = await connector.get_client(remote_id)
        await self.set_cached_client(connector.system, client)
        return client

    async def get_cache_stats(self, system: CRMSystem | str | None = None) -> CacheStats:
        pattern = client_cache_key(system, "*") if system is not None else "crm_client:*"
        cached = await self._cache.keys(pattern)
        lookups = self._cache_hits + self._cache_misses
        return CacheStats(
            total_cached=len(cached),
            hits=self._cache_hits,
            misses=self._cache_misses,
            hit_rate=self._cache_hits / lookups if lookups else 0.0,
        )

    # ── Cleanup ─────────────────────────────────────────────────────────────

    def clear_all_sync_data(self) -> None:
        """Forget statuses, conflicts and schedules. In-flight runs still finish."""
        for run in self._scheduler.pending():
            run.cancel()
        self._statuses.clear()
        self._conflicts.clear()
        self._paused.clear()
        self._cache_hits = 0
        self._cache_misses = 0
        logger.info("crm_sync.data_cleared")

    async def shutdown(self) -> None:
        """Cancel scheduled runs and wait for in-flight runs to finish."""
        self._paused.update(self._active)
        self._scheduler.shutdown()
        if self._active:
            await asyncio.gather(*self._active.values(), return_exceptions=True)
        logger.info("crm_sync.shutdown")
