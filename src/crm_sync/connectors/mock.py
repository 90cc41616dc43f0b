"""In-memory mock connector for development and tests.

MockConnector satisfies the full connector contract without any network
access. It is deterministic: no random failures or latency unless a test
asks for them through the control methods:

- add_client(): seed a record
- set_healthy(): toggle the simulated service health
- fail_next(): make the next N operations raise a given exception
- latency: seconds passed to the injected sleep before every operation
- sync_calls: number of sync_clients() invocations so far
"""

from __future__ import annotations

import asyncio
import itertools
from collections import deque
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone

import structlog

from src.crm_sync.connectors.adapter import CRMConnector
from src.crm_sync.connectors.exceptions import CRMApiError, CRMAuthError
from src.crm_sync.connectors.schemas import (
    Address,
    ApiResponse,
    AuthTokens,
    CRMClient,
    CRMClientCreate,
    CRMClientPatch,
    CRMConfig,
    Pagination,
    QueryOptions,
    RateLimitInfo,
    SyncResult,
)

logger = structlog.get_logger(__name__)

INVALID_AUTH_CODE = "invalid_code"

_SEED_CLIENTS = [
    ("Eleanor Whitfield", "eleanor.whitfield@example.com", "555-0101", "Whitfield Holdings", "Boston", "MA"),
    ("Marcus Delgado", "marcus.delgado@example.com", "555-0102", "Delgado Family Trust", "Austin", "TX"),
    ("Priya Raman", "priya.raman@example.com", "555-0103", None, "Seattle", "WA"),
]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MockConnector(CRMConnector):
    """Deterministic in-memory CRM.

    Args:
        config: Connection configuration; ``config.system`` sets the vendor tag.
        seed: Populate the three default sample clients.
        clock: Wall-clock source for record timestamps and token expiry.
        sleep: Awaitable sleep used for simulated latency.
    """

    def __init__(
        self,
        config: CRMConfig,
        *,
        seed: bool = True,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.config = config
        self.system = config.system_tag
        self.latency = 0.0
        self.sync_calls = 0
        self._clock = clock
        self._sleep = sleep
        self._healthy = True
        self._tokens: AuthTokens | None = None
        self._clients: dict[str, CRMClient] = {}
        self._failures: deque[BaseException] = deque()
        self._ids = itertools.count(1)
        if seed:
            self._seed()

    def _seed(self) -> None:
        for name, email, phone, company, city, state in _SEED_CLIENTS:
            self.add_client(
                CRMClientCreate(
                    name=name,
                    email=email,
                    phone=phone,
                    company=company,
                    address=Address(city=city, state=state, country="US"),
                )
            )

    # ── Control methods ─────────────────────────────────────────────────────

    def add_client(self, data: CRMClientCreate, updated_at: datetime | None = None) -> CRMClient:
        now = self._clock()
        client = CRMClient(
            id=f"{self.system}_{next(self._ids):05d}",
            created_at=now,
            updated_at=updated_at or now,
            **data.model_dump(),
        )
        self._clients[client.id] = client
        return client.model_copy(deep=True)

    def set_healthy(self, healthy: bool) -> None:
        self._healthy = healthy
        logger.info("mock_crm.health_set", system=self.system, healthy=healthy)

    def fail_next(self, exc: BaseException, times: int = 1) -> None:
        """Raise ``exc`` from the next ``times`` data operations."""
        self._failures.extend([exc] * times)

    @property
    def clients(self) -> list[CRMClient]:
        return [client.model_copy(deep=True) for client in self._clients.values()]

    async def _enter(self) -> None:
        if self.latency:
            await self._sleep(self.latency)
        if self._failures:
            raise self._failures.popleft()
        if not self._healthy:
            raise CRMApiError(
                f"Mock {self.system} service unavailable",
                self.system,
                "SERVICE_UNAVAILABLE",
                retryable=True,
                status_code=503,
            )

    def _lookup(self, client_id: str) -> CRMClient:
        client = self._clients.get(client_id)
        if client is None:
            raise CRMApiError(f"Client {client_id} not found", self.system, "NOT_FOUND", status_code=404)
        return client

    # ── Authentication ──────────────────────────────────────────────────────

    def _issue_tokens(self, refresh_token: str | None = None) -> AuthTokens:
        stamp = int(self._clock().timestamp() * 1000)
        self._tokens = AuthTokens(
            access_token=f"mock_access_token_{self.system}_{stamp}",
            refresh_token=refresh_token or f"mock_refresh_token_{self.system}_{stamp}",
            expires_at=self._clock() + timedelta(hours=1),
            scope=" ".join(self.config.scopes) or None,
        )
        return self._tokens

    async def authenticate(self, auth_code: str) -> AuthTokens:
        if self.latency:
            await self._sleep(self.latency)
        if auth_code == INVALID_AUTH_CODE:
            raise CRMAuthError("Invalid authorization code", self.system, status_code=401)
        logger.info("mock_crm.authenticated", system=self.system)
        return self._issue_tokens()

    async def refresh_token(self, refresh_token: str) -> AuthTokens:
        if self.latency:
            await self._sleep(self.latency)
        if self._tokens is None or self._tokens.refresh_token != refresh_token:
            raise CRMAuthError("Invalid refresh token", self.system, status_code=401)
        return self._issue_tokens(refresh_token)

    async def validate_token(self, tokens: AuthTokens) -> bool:
        if not tokens.access_token:
            return False
        if tokens.expires_at is not None and tokens.expires_at <= self._clock():
            return False
        return self._healthy

    # ── Client data ─────────────────────────────────────────────────────────

    async def get_clients(self, options: QueryOptions | None = None) -> ApiResponse[list[CRMClient]]:
        options = options or QueryOptions()
        await self._enter()

        clients = list(self._clients.values())
        if options.search_query:
            query = options.search_query.lower()
            clients = [
                c for c in clients
                if query in c.name.lower() or query in c.email.lower() or query in c.phone
            ]
        if options.modified_since:
            clients = [c for c in clients if c.updated_at > options.modified_since]
        if options.sort_by:
            clients.sort(
                key=lambda c: (getattr(c, options.sort_by, None) is None, getattr(c, options.sort_by, None) or ""),
                reverse=options.sort_order == "desc",
            )

        start = (options.page - 1) * options.page_size
        end = start + options.page_size
        return ApiResponse[list[CRMClient]](
            data=[c.model_copy(deep=True) for c in clients[start:end]],
            pagination=Pagination(
                page=options.page,
                page_size=options.page_size,
                total_pages=-(-len(clients) // options.page_size),
                total_records=len(clients),
                has_next=end < len(clients),
            ),
            rate_limit=RateLimitInfo(
                remaining=4900,
                limit=5000,
                reset_time=self._clock() + timedelta(hours=1),
            ),
        )

    async def get_client(self, client_id: str) -> CRMClient:
        await self._enter()
        return self._lookup(client_id).model_copy(deep=True)

    async def update_client(self, client_id: str, data: CRMClientPatch) -> CRMClient:
        await self._enter()
        existing = self._lookup(client_id)
        updated = existing.model_copy(
            update={**data.model_dump(exclude_none=True), "updated_at": self._clock()},
            deep=True,
        )
        if data.address is not None:
            updated.address = data.address.model_copy()
        self._clients[client_id] = updated
        logger.debug("mock_crm.client_updated", system=self.system, client_id=client_id)
        return updated.model_copy(deep=True)

    async def create_client(self, data: CRMClientCreate) -> CRMClient:
        await self._enter()
        client = self.add_client(data)
        logger.debug("mock_crm.client_created", system=self.system, client_id=client.id)
        return client

    async def sync_clients(self, last_sync_time: datetime | None = None) -> SyncResult:
        self.sync_calls += 1
        await self._enter()

        changed = [
            c for c in self._clients.values()
            if last_sync_time is None or c.updated_at > last_sync_time
        ]
        created = sum(1 for c in changed if last_sync_time is None or c.created_at > last_sync_time)
        result = SyncResult(
            success=True,
            clients_processed=len(changed),
            clients_created=created,
            clients_updated=len(changed) - created,
            last_sync_time=self._clock(),
        )
        logger.info(
            "mock_crm.sync_completed",
            system=self.system,
            processed=result.clients_processed,
            call=self.sync_calls,
        )
        return result

    async def health_check(self) -> bool:
        return self._healthy
