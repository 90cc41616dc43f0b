"""Sync engine -- recurring CRM pulls, push-back, and conflict queueing.

Provides:
- SyncOrchestrator: single-flight, capacity-bounded sync runs per
  (system, credential) with scheduled re-runs and a client cache
- ClientStore / InMemoryClientStore: platform-side client persistence boundary
- diff_fields: field-level local-vs-remote comparison
"""

from src.crm_sync.sync.conflicts import diff_fields
from src.crm_sync.sync.errors import (
    ConflictAlreadyResolvedError,
    ConflictNotFoundError,
    SyncAlreadyRunningError,
    SyncCapacityError,
    SyncError,
)
from src.crm_sync.sync.orchestrator import SyncOrchestrator
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

__all__ = [
    "SyncOrchestrator",
    "ClientStore",
    "InMemoryClientStore",
    "diff_fields",
    "SyncError",
    "SyncCapacityError",
    "SyncAlreadyRunningError",
    "ConflictNotFoundError",
    "ConflictAlreadyResolvedError",
    "CacheStats",
    "ConflictResolution",
    "LocalClientRecord",
    "ResolutionState",
    "SyncConfig",
    "SyncState",
    "SyncStatus",
]
