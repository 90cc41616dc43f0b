"""Errors raised by the sync orchestrator's public methods.

Sync run failures are never raised; they are recorded in SyncStatus.errors.
These cover the cases callers must tell apart: "try later" (capacity),
"already running" (single-flight opt-out), and conflict bookkeeping.
"""

from __future__ import annotations


class SyncError(Exception):
    """Base class for orchestrator errors."""


class SyncCapacityError(SyncError):
    def __init__(self, limit: int) -> None:
        super().__init__(f"Maximum concurrent syncs ({limit}) reached")
        self.limit = limit


class SyncAlreadyRunningError(SyncError):
    def __init__(self, key: str) -> None:
        super().__init__(f"Sync already running for {key}")
        self.key = key


class ConflictNotFoundError(SyncError):
    def __init__(self, client_id: str) -> None:
        super().__init__(f"No conflict found for client {client_id}")
        self.client_id = client_id


class ConflictAlreadyResolvedError(SyncError):
    def __init__(self, client_id: str, resolution: str) -> None:
        super().__init__(f"Conflict for client {client_id} already resolved as {resolution}")
        self.client_id = client_id
        self.resolution = resolution
