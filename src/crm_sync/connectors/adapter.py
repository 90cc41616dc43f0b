"""CRM connector abstract base class -- the contract every vendor adapter implements.

Every CRM backend (Zoho, Salesforce, HubSpot, AgencyBloc, and the in-memory
MockConnector) implements this ABC. The SyncOrchestrator only ever talks to
this interface, so adding a vendor never touches orchestration code.

Adapters must raise CRMAuthError for rejected credentials (never retried)
and CRMRateLimitError / CRMApiError(retryable=...) for everything else so
the retry executor can classify failures.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime

from src.crm_sync.connectors.schemas import (
    ApiResponse,
    AuthTokens,
    CRMClient,
    CRMClientCreate,
    CRMClientPatch,
    CRMConfig,
    QueryOptions,
    SyncResult,
)


class CRMConnector(ABC):
    """Abstract interface for CRM vendor operations.

    Attributes:
        system: Vendor tag (e.g. "zoho").
        config: Connection configuration; ``config.client_id`` is the credential id.

    Methods:
        authenticate: Exchange an authorization code for tokens.
        refresh_token: Exchange a refresh token for fresh tokens.
        validate_token: Check whether tokens are still usable.
        get_clients: Fetch one page of client records.
        get_client: Fetch a single client by remote id.
        update_client: Patch a client, return the updated record.
        create_client: Create a client, return the created record.
        sync_clients: Walk every client modified since a timestamp.
        health_check: Cheap liveness check against the vendor API.
    """

    system: str
    config: CRMConfig

    @property
    def credential_id(self) -> str:
        return self.config.client_id

    @abstractmethod
    async def authenticate(self, auth_code: str) -> AuthTokens:
        """Exchange an authorization code for tokens."""
        ...

    @abstractmethod
    async def refresh_token(self, refresh_token: str) -> AuthTokens:
        """Exchange a refresh token for new tokens."""
        ...

    @abstractmethod
    async def validate_token(self, tokens: AuthTokens) -> bool:
        """Return True if the tokens are present, unexpired and accepted."""
        ...

    @abstractmethod
    async def get_clients(self, options: QueryOptions | None = None) -> ApiResponse[list[CRMClient]]:
        """Fetch one page of clients matching the query options."""
        ...

    @abstractmethod
    async def get_client(self, client_id: str) -> CRMClient:
        """Fetch a client by remote id."""
        ...

    @abstractmethod
    async def update_client(self, client_id: str, data: CRMClientPatch) -> CRMClient:
        """Update a client by remote id."""
        ...

    @abstractmethod
    async def create_client(self, data: CRMClientCreate) -> CRMClient:
        """Create a client."""
        ...

    @abstractmethod
    async def sync_clients(self, last_sync_time: datetime | None = None) -> SyncResult:
        """Walk all clients modified since last_sync_time (all clients if None)."""
        ...

    @abstractmethod
    async def health_check(self) -> bool:
        """Return True if the vendor API is reachable with current credentials."""
        ...

    async def aclose(self) -> None:
        """Release transport resources. No-op by default."""
        return None
