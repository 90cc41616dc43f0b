"""Tests for SyncOrchestrator.

Covers single-flight de-duplication, the concurrency ceiling, retry
integration, recurring scheduling, stop/force semantics, bidirectional push,
conflict queueing and resolution, and the client cache. Time is virtual:
the ManualTaskScheduler only fires runs when the test advances it.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from src.crm_sync.connectors.exceptions import CRMApiError, CRMAuthError
from src.crm_sync.connectors.schemas import Address, CRMClientCreate, CRMClientPatch, CRMSystem
from src.crm_sync.sync.errors import (
    ConflictAlreadyResolvedError,
    ConflictNotFoundError,
    SyncAlreadyRunningError,
    SyncCapacityError,
)
from src.crm_sync.sync.orchestrator import (
    SyncOrchestrator,
    client_cache_key,
    last_sync_cache_key,
    sync_key,
)
from src.crm_sync.sync.schemas import LocalClientRecord, ResolutionState, SyncConfig, SyncState
from tests.factories import make_crm_config


# ── Helpers ────────────────────────────────────────────────────────────────


class Gate:
    """Sleep replacement that blocks until released, to hold a run in flight."""

    def __init__(self) -> None:
        self.entered = asyncio.Event()
        self.released = asyncio.Event()

    async def __call__(self, seconds: float) -> None:
        self.entered.set()
        await self.released.wait()


def _gated(make_mock, client_id: str = "cred-1"):
    gate = Gate()
    connector = make_mock(client_id=client_id, sleep=gate)
    connector.latency = 1.0
    return connector, gate


def _local(**overrides) -> LocalClientRecord:
    defaults = {
        "id": "local-1",
        "system": "zoho",
        "credential_id": "cred-1",
        "remote_id": "zoho_00001",
        "name": "Eleanor Whitfield",
        "email": "eleanor.whitfield@example.com",
        "phone": "555-0101",
        "company": "Whitfield Holdings",
        "address": Address(city="Boston", state="MA", country="US"),
        "needs_push": True,
    }
    defaults.update(overrides)
    return LocalClientRecord(**defaults)


# ── Keys ───────────────────────────────────────────────────────────────────


class TestKeys:
    """Cache and scheduler key formats."""

    def test_key_formats(self):
        """Sync, client-cache and last-sync keys use the documented namespaces."""
        assert sync_key(CRMSystem.ZOHO, "cred") == "zoho-cred"
        assert client_cache_key("hubspot", "51") == "crm_client:hubspot:51"
        assert last_sync_cache_key(CRMSystem.SALESFORCE, "cred") == "crm_sync:salesforce:cred"


# ── Basic runs ─────────────────────────────────────────────────────────────


class TestStartSync:
    """Basic start_sync runs against a mock connector."""

    async def test_successful_run(self, orchestrator, mock_connector, clock, scheduler):
        """A clean run reports counts, goes idle and schedules the next run."""
        status = await orchestrator.start_sync(mock_connector)

        assert status.state is SyncState.IDLE
        assert status.success is True
        assert status.clients_processed == 3
        assert status.clients_created == 3
        assert status.errors == []
        assert status.next_sync_time == clock.now() + timedelta(minutes=30)
        assert scheduler.get("zoho-cred-1") is not None
        assert orchestrator.get_sync_status("zoho", "cred-1") is status
        assert orchestrator.is_syncing("zoho", "cred-1") is False

    async def test_stores_last_sync_stamp(self, orchestrator, mock_connector, cache, clock):
        """The run start time is cached as the last-sync stamp."""
        started = clock.now()
        await orchestrator.start_sync(mock_connector)
        assert await cache.get("crm_sync:zoho:cred-1") == started.isoformat()

    async def test_second_run_is_incremental(self, orchestrator, mock_connector, clock):
        """A later run only picks up records changed since the stamp."""
        await orchestrator.start_sync(mock_connector)
        clock.advance(60)
        mock_connector.add_client(CRMClientCreate(name="Newcomer"))

        status = await orchestrator.start_sync(mock_connector)

        assert status.clients_processed == 1
        assert status.clients_created == 1

    async def test_dict_override_merges_with_defaults(self, orchestrator, mock_connector, clock):
        """Dict overrides merge onto the orchestrator defaults."""
        status = await orchestrator.start_sync(mock_connector, {"sync_interval_minutes": 5})
        assert status.next_sync_time == clock.now() + timedelta(minutes=5)

    async def test_start_sync_for_uses_registry(self, orchestrator):
        """start_sync_for resolves and memoizes the connector via the registry."""
        config = make_crm_config(CRMSystem.HUBSPOT, "portal-1")

        status = await orchestrator.start_sync_for(config)

        assert status.state is SyncState.IDLE
        assert status.system == "hubspot"
        assert orchestrator.registry.get_connector("hubspot", "portal-1") is not None

    async def test_statuses_listing(self, orchestrator, make_mock):
        """get_all_sync_statuses returns one status per target."""
        await orchestrator.start_sync(make_mock(client_id="a"))
        await orchestrator.start_sync(make_mock(CRMSystem.HUBSPOT, client_id="b"))

        keys = {(s.system, s.credential_id) for s in orchestrator.get_all_sync_statuses()}
        assert keys == {("zoho", "a"), ("hubspot", "b")}


# ── Single-flight and capacity ─────────────────────────────────────────────


class TestConcurrency:
    """Single-flight de-duplication and the concurrency ceiling."""

    async def test_concurrent_starts_share_one_run(self, orchestrator, mock_connector):
        """Two concurrent starts share one run and one sync call."""
        first, second = await asyncio.gather(
            orchestrator.start_sync(mock_connector),
            orchestrator.start_sync(mock_connector),
        )

        assert mock_connector.sync_calls == 1
        assert first is second
        assert orchestrator.active_sync_count == 0

    async def test_join_existing_false_raises(self, orchestrator, make_mock):
        """Opting out of joining raises SyncAlreadyRunningError."""
        connector, gate = _gated(make_mock)
        run = asyncio.create_task(orchestrator.start_sync(connector))
        await gate.entered.wait()

        assert orchestrator.is_syncing("zoho", "cred-1") is True
        with pytest.raises(SyncAlreadyRunningError):
            await orchestrator.start_sync(connector, join_existing=False)

        gate.released.set()
        status = await run
        assert status.state is SyncState.IDLE

    async def test_capacity_ceiling(self, orchestrator, make_mock):
        """Starts beyond the ceiling fail fast; one fewer succeeds."""
        a, gate = _gated(make_mock, "a")
        b = make_mock(client_id="b")
        config = SyncConfig(max_concurrent_syncs=1)

        run = asyncio.create_task(orchestrator.start_sync(a, config))
        await gate.entered.wait()

        with pytest.raises(SyncCapacityError, match=r"Maximum concurrent syncs \(1\) reached"):
            await orchestrator.start_sync(b, config)

        assert b.sync_calls == 0
        gate.released.set()
        await run

        status = await orchestrator.start_sync(b, config)
        assert status.state is SyncState.IDLE

    async def test_capacity_deferred_scheduled_run_rearms(self, orchestrator, make_mock, scheduler):
        """A scheduled run that hits the ceiling re-arms for the next interval."""
        config = SyncConfig(max_concurrent_syncs=1, sync_interval_minutes=1)
        a = make_mock(client_id="a")
        await orchestrator.start_sync(a, config)

        b, gate = _gated(make_mock, "b")
        run = asyncio.create_task(orchestrator.start_sync(b, config))
        await gate.entered.wait()

        assert await scheduler.advance(60) == 1
        assert a.sync_calls == 1
        assert scheduler.get("zoho-a") is not None

        gate.released.set()
        await run
        await scheduler.advance(60)
        assert a.sync_calls == 2


# ── Failures and retries ───────────────────────────────────────────────────


class TestFailures:
    """Retry integration and error recording."""

    async def test_network_error_retried_then_recorded(self, orchestrator, mock_connector, scheduler):
        """ECONNRESET is retried per the standard preset, then recorded as retryable."""
        mock_connector.fail_next(ConnectionError("ECONNRESET"), times=10)

        status = await orchestrator.start_sync(mock_connector)

        assert mock_connector.sync_calls == 4
        assert status.state is SyncState.ERROR
        assert status.success is False
        assert len(status.errors) == 1
        assert status.errors[0].message == "ECONNRESET"
        assert status.errors[0].retryable is True
        assert status.next_sync_time is not None
        assert scheduler.get("zoho-cred-1") is not None

    async def test_recovers_within_retry_budget(self, orchestrator, mock_connector):
        """Transient failures inside the retry budget still end idle."""
        mock_connector.fail_next(CRMApiError("busy", "zoho", "SERVER_ERROR", retryable=True), times=2)

        status = await orchestrator.start_sync(mock_connector)

        assert mock_connector.sync_calls == 3
        assert status.state is SyncState.IDLE

    async def test_auth_error_is_a_hard_error(self, orchestrator, mock_connector, scheduler):
        """Auth failures are not retried and cancel the schedule."""
        mock_connector.fail_next(CRMAuthError("Unauthorized", "zoho", status_code=401))

        status = await orchestrator.start_sync(mock_connector)

        assert mock_connector.sync_calls == 1
        assert status.state is SyncState.ERROR
        assert status.errors[0].code == "AUTH_ERROR"
        assert status.errors[0].retryable is False
        assert status.next_sync_time is None
        assert scheduler.get("zoho-cred-1") is None

    async def test_failed_run_keeps_previous_stamp(self, orchestrator, mock_connector, cache, clock):
        """A failed run leaves the last-sync stamp untouched."""
        started = clock.now()
        await orchestrator.start_sync(mock_connector)
        clock.advance(60)
        mock_connector.fail_next(CRMAuthError("Unauthorized", "zoho"))

        await orchestrator.start_sync(mock_connector)

        assert await cache.get("crm_sync:zoho:cred-1") == started.isoformat()


# ── Scheduling, stop and force ─────────────────────────────────────────────


class TestScheduling:
    """Recurring runs, stop, force and shutdown."""

    async def test_scheduled_run_fires_after_interval(self, orchestrator, mock_connector, scheduler):
        """The next run fires only once the interval elapses."""
        await orchestrator.start_sync(mock_connector)

        assert await scheduler.advance(29 * 60) == 0
        assert await scheduler.advance(60) == 1
        assert mock_connector.sync_calls == 2
        assert scheduler.get("zoho-cred-1") is not None

    async def test_stop_sync_cancels_schedule(self, orchestrator, mock_connector, scheduler):
        """stop_sync pauses the target and cancels its timer."""
        await orchestrator.start_sync(mock_connector)

        orchestrator.stop_sync("zoho", "cred-1")

        status = orchestrator.get_sync_status("zoho", "cred-1")
        assert status.state is SyncState.PAUSED
        assert status.next_sync_time is None
        assert await scheduler.advance(3600) == 0
        assert mock_connector.sync_calls == 1

    async def test_stop_during_run_reports_paused(self, orchestrator, make_mock, scheduler):
        """Stopping mid-run lets the run finish, then reports paused."""
        connector, gate = _gated(make_mock)
        run = asyncio.create_task(orchestrator.start_sync(connector))
        await gate.entered.wait()

        orchestrator.stop_sync("zoho", "cred-1")
        gate.released.set()
        status = await run

        assert status.state is SyncState.PAUSED
        assert status.clients_processed == 3
        assert status.next_sync_time is None
        assert scheduler.get("zoho-cred-1") is None

    async def test_start_after_stop_resumes(self, orchestrator, mock_connector, scheduler):
        """Starting a paused target resumes scheduling."""
        await orchestrator.start_sync(mock_connector)
        orchestrator.stop_sync("zoho", "cred-1")

        status = await orchestrator.start_sync(mock_connector)

        assert status.state is SyncState.IDLE
        assert scheduler.get("zoho-cred-1") is not None

    async def test_force_sync_runs_now_and_rearms(self, orchestrator, mock_connector, scheduler, clock):
        """force_sync cancels the pending timer, runs now and re-arms."""
        await orchestrator.start_sync(mock_connector)
        original = scheduler.get("zoho-cred-1")
        clock.advance(600)

        status = await orchestrator.force_sync(mock_connector)

        assert mock_connector.sync_calls == 2
        assert original.cancelled is True
        assert status.next_sync_time == clock.now() + timedelta(minutes=30)

    async def test_stop_all_syncs(self, orchestrator, make_mock, scheduler):
        """stop_all_syncs pauses every target and empties the scheduler."""
        await orchestrator.start_sync(make_mock(client_id="a"))
        await orchestrator.start_sync(make_mock(client_id="b"))

        orchestrator.stop_all_syncs()

        assert scheduler.pending() == []
        assert {s.state for s in orchestrator.get_all_sync_statuses()} == {SyncState.PAUSED}

    async def test_clear_all_sync_data(self, orchestrator, mock_connector, scheduler):
        """clear_all_sync_data drops statuses and pending timers."""
        await orchestrator.start_sync(mock_connector)

        orchestrator.clear_all_sync_data()

        assert orchestrator.get_all_sync_statuses() == []
        assert scheduler.pending() == []

    async def test_shutdown_waits_for_in_flight(self, orchestrator, make_mock, scheduler):
        """shutdown waits for the in-flight run before returning."""
        connector, gate = _gated(make_mock)
        run = asyncio.create_task(orchestrator.start_sync(connector))
        await gate.entered.wait()

        shutdown = asyncio.create_task(orchestrator.shutdown())
        await asyncio.sleep(0)
        assert shutdown.done() is False

        gate.released.set()
        await shutdown
        status = await run
        assert status.state is SyncState.PAUSED
        assert scheduler.pending() == []


# ── Bidirectional sync ─────────────────────────────────────────────────────


class TestBidirectionalSync:
    """Pushing local records back and raising conflicts."""

    async def test_creates_unlinked_records(self, orchestrator, mock_connector, store):
        """Local records without a remote id are created remotely."""
        store.add(_local(remote_id=None, name="Ada Lovelace", email="ada@example.com"))

        await orchestrator.start_sync(mock_connector)

        record = store.get("local-1")
        assert record.remote_id == "zoho_00004"
        assert record.needs_push is False
        assert [c.name for c in mock_connector.clients][-1] == "Ada Lovelace"

    async def test_pushes_local_edit_when_remote_untouched(self, orchestrator, mock_connector, store, clock):
        """Local edits are pushed when the remote has not changed since last sync."""
        clock.advance(120)
        store.add(_local(email="new@example.com", last_synced_at=clock.now()))

        await orchestrator.start_sync(mock_connector)

        remote = next(c for c in mock_connector.clients if c.id == "zoho_00001")
        assert remote.email == "new@example.com"
        assert store.get("local-1").needs_push is False
        assert orchestrator.get_pending_conflicts() == []

    async def test_no_diff_just_marks_synced(self, orchestrator, mock_connector, store):
        """Identical records are only marked synced."""
        store.add(_local())

        await orchestrator.start_sync(mock_connector)

        assert store.get("local-1").needs_push is False
        assert orchestrator.get_pending_conflicts() == []

    async def test_divergent_remote_raises_conflict(self, orchestrator, mock_connector, store, clock):
        """A diff against a remote changed since last sync queues a conflict."""
        store.add(_local(email="mine@example.com", last_synced_at=clock.now() - timedelta(hours=1)))

        await orchestrator.start_sync(mock_connector)

        conflicts = orchestrator.get_pending_conflicts()
        assert len(conflicts) == 1
        conflict = conflicts[0]
        assert conflict.client_id == "local-1"
        assert conflict.remote_id == "zoho_00001"
        assert conflict.conflict_fields == ["email"]
        assert conflict.crm_data.email == "eleanor.whitfield@example.com"
        assert conflict.platform_data.email == "mine@example.com"
        assert store.get("local-1").needs_push is True
        remote = next(c for c in mock_connector.clients if c.id == "zoho_00001")
        assert remote.email == "eleanor.whitfield@example.com"

    async def test_never_synced_record_with_diff_is_conflict(self, orchestrator, mock_connector, store):
        """A never-synced record that differs is treated as a conflict."""
        store.add(_local(phone="555-0000"))

        await orchestrator.start_sync(mock_connector)

        assert orchestrator.get_conflict("local-1").conflict_fields == ["phone"]

    async def test_push_failure_skips_record(self, orchestrator, mock_connector, store):
        """A failed remote fetch skips the record without failing the run."""
        store.add(_local(remote_id="zoho_99999"))

        status = await orchestrator.start_sync(mock_connector)

        assert status.state is SyncState.IDLE
        assert store.get("local-1").needs_push is True

    async def test_disabled_bidirectional(self, orchestrator, mock_connector, store):
        """No push-back happens when bidirectional sync is off."""
        store.add(_local(remote_id=None, name="Ada Lovelace"))

        await orchestrator.start_sync(mock_connector, {"enable_bidirectional_sync": False})

        assert store.get("local-1").remote_id is None
        assert len(mock_connector.clients) == 3


# ── Conflict resolution ────────────────────────────────────────────────────


class TestResolveConflict:
    """resolve_conflict actions and their guards."""

    @pytest.fixture
    async def conflicted(self, orchestrator, mock_connector, store, clock):
        store.add(_local(email="mine@example.com", last_synced_at=clock.now() - timedelta(hours=1)))
        await orchestrator.start_sync(mock_connector)
        return orchestrator

    async def test_crm_wins(self, conflicted, store, clock):
        """crm_wins applies the remote snapshot locally."""
        resolved = await conflicted.resolve_conflict("local-1", ResolutionState.CRM_WINS, "agent-42")

        assert resolved.resolution is ResolutionState.CRM_WINS
        assert resolved.resolved_by == "agent-42"
        assert resolved.resolved_at == clock.now()
        record = store.get("local-1")
        assert record.email == "eleanor.whitfield@example.com"
        assert record.needs_push is False
        assert conflicted.get_pending_conflicts() == []

    async def test_platform_wins_pushes_on_next_run(self, conflicted, mock_connector, store):
        """platform_wins keeps the local copy and pushes it on the next run."""
        await conflicted.resolve_conflict("local-1", "platform_wins", "agent-42")
        assert store.get("local-1").needs_push is True

        await conflicted.force_sync(mock_connector)

        remote = next(c for c in mock_connector.clients if c.id == "zoho_00001")
        assert remote.email == "mine@example.com"
        assert conflicted.get_pending_conflicts() == []

    async def test_merged(self, conflicted, store):
        """merged applies caller-supplied data."""
        await conflicted.resolve_conflict(
            "local-1", ResolutionState.MERGED, "agent-42", merged_data={"email": "merged@example.com"}
        )
        assert store.get("local-1").email == "merged@example.com"

    async def test_merged_requires_data(self, conflicted):
        """merged without data raises ValueError."""
        with pytest.raises(ValueError):
            await conflicted.resolve_conflict("local-1", ResolutionState.MERGED, "agent-42")

    async def test_cannot_resolve_to_pending(self, conflicted):
        """pending is not a valid resolution."""
        with pytest.raises(ValueError):
            await conflicted.resolve_conflict("local-1", ResolutionState.PENDING, "agent-42")

    async def test_resolve_twice(self, conflicted):
        """Resolved conflicts are terminal."""
        await conflicted.resolve_conflict("local-1", ResolutionState.CRM_WINS, "agent-42")
        with pytest.raises(ConflictAlreadyResolvedError):
            await conflicted.resolve_conflict("local-1", ResolutionState.PLATFORM_WINS, "agent-7")

    async def test_unknown_conflict(self, orchestrator):
        """Resolving an unknown record raises ConflictNotFoundError."""
        with pytest.raises(ConflictNotFoundError):
            await orchestrator.resolve_conflict("nobody", ResolutionState.CRM_WINS, "agent-42")

    async def test_resolution_invalidates_cached_client(self, conflicted, cache):
        """Resolution drops the cached remote copy."""
        assert await cache.get("crm_client:zoho:zoho_00001") is not None
        await conflicted.resolve_conflict("local-1", ResolutionState.CRM_WINS, "agent-42")
        assert await cache.get("crm_client:zoho:zoho_00001") is None


# ── Client cache ───────────────────────────────────────────────────────────


class TestClientCache:
    """Read-through client cache and its statistics."""

    async def test_fetch_client_read_through(self, orchestrator, mock_connector):
        """A cache hit avoids the connector and is counted in stats."""
        first = await orchestrator.fetch_client(mock_connector, "zoho_00002")
        await mock_connector.update_client("zoho_00002", CRMClientPatch(phone="555-7777"))
        second = await orchestrator.fetch_client(mock_connector, "zoho_00002")

        assert first.name == "Marcus Delgado"
        assert second.phone == first.phone

        stats = await orchestrator.get_cache_stats("zoho")
        assert stats.hits == 1
        assert stats.misses == 1
        assert stats.total_cached == 1
        assert stats.hit_rate == 0.5

    async def test_invalidate(self, orchestrator, mock_connector):
        """Invalidation reports whether an entry was removed."""
        await orchestrator.fetch_client(mock_connector, "zoho_00001")

        assert await orchestrator.invalidate_cached_client("zoho", "zoho_00001") is True
        assert await orchestrator.invalidate_cached_client("zoho", "zoho_00001") is False
        assert await orchestrator.get_cached_client("zoho", "zoho_00001") is None

    async def test_cache_ttl(self, orchestrator, mock_connector, cache):
        """Explicit TTLs win; the default is six hours."""
        client = await mock_connector.get_client("zoho_00001")
        await orchestrator.set_cached_client("zoho", client, ttl=60)
        assert cache.ttl("crm_client:zoho:zoho_00001") == 60

        await orchestrator.set_cached_client("zoho", client)
        assert cache.ttl("crm_client:zoho:zoho_00001") == 6 * 60 * 60

    async def test_stats_empty(self, orchestrator):
        """An empty cache reports zero entries and a zero hit rate."""
        stats = await orchestrator.get_cache_stats()
        assert stats.total_cached == 0
        assert stats.hit_rate == 0.0


class TestDefaults:
    """Orchestrator construction without collaborators."""

    async def test_default_collaborators(self, cache):
        """Default registry builds real vendor adapters."""
        orch = SyncOrchestrator(cache)
        assert orch.registry.use_mocks is False
        await orch.shutdown()
