"""Durable client store boundary used by bidirectional sync.

The orchestrator never persists client data itself. It asks a ClientStore
for local records awaiting push and delegates conflict resolutions to it.
InMemoryClientStore is the reference implementation used in development
and tests.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any, Protocol

import structlog

from src.crm_sync.connectors.schemas import Address, CRMClient
from src.crm_sync.sync.schemas import LocalClientRecord

logger = structlog.get_logger(__name__)


class ClientStore(Protocol):
    """Platform-side client persistence."""

    async def get_clients_needing_push(
        self, system: str, credential_id: str, limit: int
    ) -> list[LocalClientRecord]: ...

    async def mark_synced(self, client_id: str, remote_id: str, synced_at: datetime) -> None: ...

    async def apply_remote_data(self, client_id: str, remote: CRMClient) -> None: ...

    async def apply_local_data(self, record: LocalClientRecord) -> None: ...

    async def apply_merged_data(self, client_id: str, merged: dict[str, Any]) -> None: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryClientStore:
    """Dict-backed ClientStore.

    Resolutions that keep local data (platform_wins, merged) flag the record
    for push and stamp ``last_synced_at``, so the next bidirectional walk
    writes it to the CRM instead of raising the same conflict again.
    """

    def __init__(self, clock: Callable[[], datetime] = _utcnow) -> None:
        self._clock = clock
        self._records: dict[str, LocalClientRecord] = {}

    def add(self, record: LocalClientRecord) -> LocalClientRecord:
        self._records[record.id] = record.model_copy(deep=True)
        return record

    def get(self, client_id: str) -> LocalClientRecord | None:
        record = self._records.get(client_id)
        return record.model_copy(deep=True) if record else None

    def _require(self, client_id: str) -> LocalClientRecord:
        record = self._records.get(client_id)
        if record is None:
            raise KeyError(f"Unknown local client {client_id}")
        return record

    async def get_clients_needing_push(
        self, system: str, credential_id: str, limit: int
    ) -> list[LocalClientRecord]:
        pending = [
            record
            for record in self._records.values()
            if record.needs_push and record.system == system and record.credential_id == credential_id
        ]
        pending.sort(key=lambda record: record.updated_at)
        return [record.model_copy(deep=True) for record in pending[:limit]]

    async def mark_synced(self, client_id: str, remote_id: str, synced_at: datetime) -> None:
        record = self._require(client_id)
        record.remote_id = remote_id
        record.last_synced_at = synced_at
        record.needs_push = False

    async def apply_remote_data(self, client_id: str, remote: CRMClient) -> None:
        record = self._require(client_id)
        record.name = remote.name
        record.email = remote.email
        record.phone = remote.phone
        record.company = remote.company
        record.address = remote.address.model_copy() if remote.address else None
        record.custom_fields = {**record.custom_fields, **remote.custom_fields}
        record.remote_id = remote.id
        record.last_synced_at = self._clock()
        record.updated_at = self._clock()
        record.needs_push = False
        logger.debug("client_store.remote_applied", client_id=client_id)

    async def apply_local_data(self, record: LocalClientRecord) -> None:
        stored = self._require(record.id)
        updated = record.model_copy(
            update={"needs_push": True, "last_synced_at": self._clock(), "remote_id": stored.remote_id},
            deep=True,
        )
        self._records[record.id] = updated
        logger.debug("client_store.local_applied", client_id=record.id)

    async def apply_merged_data(self, client_id: str, merged: dict[str, Any]) -> None:
        record = self._require(client_id)
        for field, value in merged.items():
            if field == "address" and value is not None:
                record.address = value if isinstance(value, Address) else Address.model_validate(value)
            elif field == "custom_fields":
                record.custom_fields = {**record.custom_fields, **value}
            elif field in LocalClientRecord.model_fields and field not in ("id", "system", "credential_id"):
                setattr(record, field, value)
        record.updated_at = self._clock()
        record.last_synced_at = self._clock()
        record.needs_push = True
        logger.debug("client_store.merged_applied", client_id=client_id, fields=sorted(merged))
