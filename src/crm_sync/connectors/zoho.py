"""Zoho CRM adapter (Contacts module, REST API v2)."""

from __future__ import annotations

from typing import Any

import structlog

from src.crm_sync.connectors.exceptions import CRMApiError
from src.crm_sync.connectors.field_mapping import ZOHO_FIELD_MAP, from_vendor_record, to_vendor_record
from src.crm_sync.connectors.http import HTTPConnector, parse_rate_limit
from src.crm_sync.connectors.schemas import (
    ApiResponse,
    AuthTokens,
    CRMClient,
    CRMClientCreate,
    CRMClientPatch,
    CRMSystem,
    Pagination,
    QueryOptions,
)

logger = structlog.get_logger(__name__)

ZOHO_MAX_PAGE_SIZE = 200
CONTACTS_PATH = "/crm/v2/Contacts"


class ZohoConnector(HTTPConnector):
    """Zoho CRM connector. Requires ``config.datacenter``."""

    system = CRMSystem.ZOHO.value
    token_path = "/oauth/v2/token"
    health_path = "/crm/v2/org"

    def _authorization(self, tokens: AuthTokens) -> str:
        return f"Zoho-oauthtoken {tokens.access_token}"

    def _on_token_payload(self, payload: dict[str, Any]) -> None:
        # Zoho returns the datacenter's API host with every token.
        api_domain = payload.get("api_domain")
        if api_domain:
            self._client.base_url = api_domain.rstrip("/")

    def _first_record(self, body: dict[str, Any], client_id: str) -> dict[str, Any]:
        records = body.get("data") or []
        if not records:
            raise CRMApiError(f"Client {client_id} not found", self.system, "NOT_FOUND", status_code=404)
        return records[0]

    def _written_id(self, body: dict[str, Any]) -> str:
        record = (body.get("data") or [{}])[0]
        if record.get("status") == "error":
            raise CRMApiError(
                record.get("message", "Write rejected"),
                self.system,
                str(record.get("code", "BAD_REQUEST")),
            )
        return str(record.get("details", {}).get("id", ""))

    async def get_clients(self, options: QueryOptions | None = None) -> ApiResponse[list[CRMClient]]:
        options = options or QueryOptions()
        per_page = min(options.page_size, ZOHO_MAX_PAGE_SIZE)
        params: dict[str, Any] = {"page": options.page, "per_page": per_page}
        if options.fields:
            params["fields"] = ",".join(options.fields)
        if options.sort_by:
            params["sort_by"] = options.sort_by
            params["sort_order"] = options.sort_order
        headers = {}
        if options.modified_since:
            headers["If-Modified-Since"] = options.modified_since.isoformat()

        path = CONTACTS_PATH
        if options.search_query:
            path = f"{CONTACTS_PATH}/search"
            params["word"] = options.search_query

        response = await self._request("GET", path, params=params, headers=headers)
        body = response.json() if response.status_code != 204 else {}
        info = body.get("info", {})
        clients = [from_vendor_record(raw, ZOHO_FIELD_MAP) for raw in body.get("data", [])]
        return ApiResponse[list[CRMClient]](
            data=clients,
            pagination=Pagination(
                page=int(info.get("page", options.page)),
                page_size=int(info.get("per_page", per_page)),
                total_records=int(info.get("count", len(clients))),
                has_next=bool(info.get("more_records", False)),
            ),
            rate_limit=parse_rate_limit(response.headers),
        )

    async def get_client(self, client_id: str) -> CRMClient:
        response = await self._request("GET", f"{CONTACTS_PATH}/{client_id}")
        return from_vendor_record(self._first_record(response.json(), client_id), ZOHO_FIELD_MAP)

    async def update_client(self, client_id: str, data: CRMClientPatch) -> CRMClient:
        payload = {"data": [to_vendor_record(data, ZOHO_FIELD_MAP)]}
        response = await self._request("PUT", f"{CONTACTS_PATH}/{client_id}", json=payload)
        self._written_id(response.json())
        return await self.get_client(client_id)

    async def create_client(self, data: CRMClientCreate) -> CRMClient:
        payload = {"data": [to_vendor_record(data, ZOHO_FIELD_MAP)]}
        response = await self._request("POST", CONTACTS_PATH, json=payload)
        client_id = self._written_id(response.json())
        logger.info("crm.client_created", system=self.system, client_id=client_id)
        return await self.get_client(client_id)
