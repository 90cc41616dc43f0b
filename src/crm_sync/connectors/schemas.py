"""Pydantic schemas for the connector contract.

Defines the vendor-neutral shapes every CRM connector speaks:
- CRMSystem: supported vendor tags
- CRMConfig: credential + endpoint configuration, with optional vendor fields
- AuthTokens: OAuth token bundle
- CRMClient / Address: normalized client record
- QueryOptions / Pagination / RateLimitInfo / ApiResponse: list API payloads
- SyncErrorDetail / SyncResult: outcome of connector.sync_clients()
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Generic, Literal, TypeVar

from pydantic import BaseModel, Field

T = TypeVar("T")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CRMSystem(str, Enum):
    """Supported CRM vendors."""

    ZOHO = "zoho"
    SALESFORCE = "salesforce"
    HUBSPOT = "hubspot"
    AGENCYBLOC = "agencybloc"


# ── Configuration ───────────────────────────────────────────────────────────


class CRMConfig(BaseModel):
    """Connection configuration for one external CRM account.

    ``client_id`` is the credential identifier: together with ``system`` it
    forms the SyncTarget key used throughout the engine.
    """

    system: CRMSystem | str
    client_id: str = ""
    client_secret: str = ""
    redirect_uri: str = ""
    scopes: list[str] = Field(default_factory=list)
    base_url: str = ""
    api_version: str | None = None

    # Vendor-specific
    datacenter: Literal["us", "eu", "in", "au", "jp"] | None = None  # zoho
    instance_url: str | None = None  # salesforce
    is_sandbox: bool = False  # salesforce
    portal_id: str | None = None  # hubspot
    environment: Literal["production", "sandbox"] | None = None  # agencybloc

    @property
    def system_tag(self) -> str:
        return self.system.value if isinstance(self.system, CRMSystem) else str(self.system)


class AuthTokens(BaseModel):
    """OAuth token bundle returned by authenticate()/refresh_token()."""

    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None
    token_type: str = "Bearer"
    scope: str | None = None


# ── Client records ──────────────────────────────────────────────────────────


class Address(BaseModel):
    street: str | None = None
    city: str | None = None
    state: str | None = None
    zip_code: str | None = None
    country: str | None = None


class CRMClient(BaseModel):
    """Normalized client record as seen in a remote CRM."""

    id: str
    name: str = ""
    email: str = ""
    phone: str = ""
    company: str | None = None
    address: Address | None = None
    custom_fields: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    last_activity: datetime | None = None


class CRMClientCreate(BaseModel):
    """Payload for connector.create_client()."""

    name: str
    email: str = ""
    phone: str = ""
    company: str | None = None
    address: Address | None = None
    custom_fields: dict[str, Any] = Field(default_factory=dict)


class CRMClientPatch(BaseModel):
    """Partial update for connector.update_client(). Unset fields are untouched."""

    name: str | None = None
    email: str | None = None
    phone: str | None = None
    company: str | None = None
    address: Address | None = None
    custom_fields: dict[str, Any] | None = None


# ── Query / response payloads ───────────────────────────────────────────────


class QueryOptions(BaseModel):
    """Options accepted by connector.get_clients()."""

    page: int = 1
    page_size: int = 100
    modified_since: datetime | None = None
    search_query: str | None = None
    fields: list[str] = Field(default_factory=list)
    sort_by: str | None = None
    sort_order: Literal["asc", "desc"] = "asc"
    page_token: str | None = None


class Pagination(BaseModel):
    page: int
    page_size: int
    total_pages: int = 0
    total_records: int = 0
    has_next: bool = False
    next_page_token: str | None = None


class RateLimitInfo(BaseModel):
    """Rate-limit metadata reported by the vendor, when available."""

    remaining: int
    limit: int
    reset_time: datetime


class ApiResponse(BaseModel, Generic[T]):
    """One page of results plus pagination and rate-limit metadata."""

    data: T
    pagination: Pagination | None = None
    rate_limit: RateLimitInfo | None = None


# ── Sync results ────────────────────────────────────────────────────────────


class SyncErrorDetail(BaseModel):
    """A single error recorded during a sync run."""

    message: str
    client_id: str | None = None
    code: str | None = None
    retryable: bool = False


class SyncResult(BaseModel):
    """Outcome of connector.sync_clients()."""

    success: bool = False
    clients_processed: int = 0
    clients_updated: int = 0
    clients_created: int = 0
    errors: list[SyncErrorDetail] = Field(default_factory=list)
    last_sync_time: datetime = Field(default_factory=_utcnow)
    next_sync_time: datetime | None = None
