"""Pydantic schemas for the sync orchestrator.

- SyncConfig: per-run tuning (batching, concurrency ceiling, interval, TTLs)
- SyncState / SyncStatus: per-target lifecycle record
- ResolutionState / ConflictResolution: queued local-vs-remote divergence
- LocalClientRecord: the platform-side copy of a client, as seen by the store
- CacheStats: client cache counters
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from src.crm_sync.connectors.schemas import Address, CRMClient, SyncErrorDetail


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncConfig(BaseModel):
    """Tuning for a sync target. Defaults mirror the SYNC_* settings."""

    batch_size: int = Field(default=100, ge=1)
    max_concurrent_syncs: int = Field(default=3, ge=1)
    sync_interval_minutes: float = Field(default=30, gt=0)
    enable_bidirectional_sync: bool = True
    client_cache_ttl_seconds: int = 6 * 60 * 60
    last_sync_ttl_seconds: int = 24 * 60 * 60
    retry_preset: str = "standard"


class SyncState(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    ERROR = "error"
    PAUSED = "paused"


class SyncStatus(BaseModel):
    """Lifecycle record for one (system, credential) sync target.

    Overwritten by every run; only clear_all_sync_data() removes it.
    """

    system: str
    credential_id: str
    state: SyncState = SyncState.IDLE
    success: bool = False
    clients_processed: int = 0
    clients_updated: int = 0
    clients_created: int = 0
    errors: list[SyncErrorDetail] = Field(default_factory=list)
    last_sync_time: datetime | None = None
    next_sync_time: datetime | None = None
    duration_seconds: float = 0.0

    @property
    def has_retryable_errors(self) -> bool:
        return any(error.retryable for error in self.errors)


class ResolutionState(str, Enum):
    PENDING = "pending"
    CRM_WINS = "crm_wins"
    PLATFORM_WINS = "platform_wins"
    MERGED = "merged"


class LocalClientRecord(BaseModel):
    """Platform-side client record linked (or to be linked) to a remote one."""

    id: str
    system: str
    credential_id: str
    remote_id: str | None = None
    name: str = ""
    email: str = ""
    phone: str = ""
    company: str | None = None
    address: Address | None = None
    custom_fields: dict[str, Any] = Field(default_factory=dict)
    updated_at: datetime = Field(default_factory=_utcnow)
    last_synced_at: datetime | None = None
    needs_push: bool = False


class ConflictResolution(BaseModel):
    """A detected divergence, keyed by local client id."""

    client_id: str
    system: str
    credential_id: str
    remote_id: str
    crm_data: CRMClient
    platform_data: LocalClientRecord
    conflict_fields: list[str]
    resolution: ResolutionState = ResolutionState.PENDING
    detected_at: datetime = Field(default_factory=_utcnow)
    resolved_at: datetime | None = None
    resolved_by: str | None = None


class CacheStats(BaseModel):
    total_cached: int = 0
    hits: int = 0
    misses: int = 0
    hit_rate: float = 0.0
