"""Shared fixtures for the sync engine tests.

Provides:
- Virtual clock + manual task scheduler (nothing waits on real time)
- InMemoryCache and InMemoryClientStore bound to the virtual clock
- MockConnector factory and a ready-made Zoho mock connector
- SyncOrchestrator wired to all of the above with mock connectors
"""

from __future__ import annotations

import os

os.environ["ENVIRONMENT"] = "test"

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402

from src.crm_sync.config import get_settings  # noqa: E402
from src.crm_sync.connectors.mock import MockConnector  # noqa: E402
from src.crm_sync.connectors.registry import ConnectorRegistry  # noqa: E402
from src.crm_sync.connectors.schemas import CRMSystem  # noqa: E402
from src.crm_sync.core.cache import InMemoryCache  # noqa: E402
from src.crm_sync.core.scheduling import ManualTaskScheduler, VirtualClock  # noqa: E402
from src.crm_sync.sync.orchestrator import SyncOrchestrator  # noqa: E402
from src.crm_sync.sync.schemas import SyncConfig  # noqa: E402
from src.crm_sync.sync.store import InMemoryClientStore  # noqa: E402
from tests.factories import make_crm_config  # noqa: E402

get_settings.cache_clear()


@pytest.fixture
def clock() -> VirtualClock:
    return VirtualClock()


@pytest.fixture
def scheduler(clock) -> ManualTaskScheduler:
    return ManualTaskScheduler(clock)


@pytest.fixture
def cache(clock) -> InMemoryCache:
    return InMemoryCache(clock=clock.monotonic)


@pytest.fixture
def store(clock) -> InMemoryClientStore:
    return InMemoryClientStore(clock=clock.now)


@pytest.fixture
def make_mock(clock):
    """Factory for MockConnectors on the virtual clock."""

    def _make(system: CRMSystem | str = CRMSystem.ZOHO, client_id: str = "cred-1", **kwargs) -> MockConnector:
        kwargs.setdefault("clock", clock.now)
        kwargs.setdefault("sleep", clock.sleep)
        return MockConnector(make_crm_config(system, client_id), **kwargs)

    return _make


@pytest.fixture
def mock_connector(make_mock) -> MockConnector:
    return make_mock()


@pytest.fixture
def sync_config() -> SyncConfig:
    return SyncConfig(
        batch_size=50,
        max_concurrent_syncs=3,
        sync_interval_minutes=30,
        enable_bidirectional_sync=True,
    )


@pytest_asyncio.fixture
async def orchestrator(cache, store, scheduler, clock, sync_config):
    """SyncOrchestrator on virtual time, shut down after the test."""
    orch = SyncOrchestrator(
        cache,
        registry=ConnectorRegistry(use_mocks=True),
        store=store,
        scheduler=scheduler,
        defaults=sync_config,
        clock=clock.now,
        retry_sleep=clock.sleep,
    )
    yield orch
    await orch.shutdown()
