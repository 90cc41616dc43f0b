"""AgencyBloc adapter (contacts REST API v1)."""

from __future__ import annotations

from typing import Any

import structlog

from src.crm_sync.connectors.field_mapping import AGENCYBLOC_FIELD_MAP, from_vendor_record, to_vendor_record
from src.crm_sync.connectors.http import HTTPConnector, parse_rate_limit
from src.crm_sync.connectors.schemas import (
    ApiResponse,
    CRMClient,
    CRMClientCreate,
    CRMClientPatch,
    CRMSystem,
    Pagination,
    QueryOptions,
)

logger = structlog.get_logger(__name__)

CONTACTS_PATH = "/api/v1/contacts"


class AgencyBlocConnector(HTTPConnector):
    system = CRMSystem.AGENCYBLOC.value
    token_path = "/oauth/token"
    health_path = "/api/v1/ping"

    async def get_clients(self, options: QueryOptions | None = None) -> ApiResponse[list[CRMClient]]:
        options = options or QueryOptions()
        params: dict[str, Any] = {"page": options.page, "pageSize": options.page_size}
        if options.modified_since:
            params["modifiedSince"] = options.modified_since.isoformat()
        if options.search_query:
            params["search"] = options.search_query
        if options.fields:
            params["fields"] = ",".join(options.fields)
        if options.sort_by:
            params["sortBy"] = options.sort_by
            params["sortOrder"] = options.sort_order

        response = await self._request("GET", CONTACTS_PATH, params=params)
        body = response.json()
        clients = [from_vendor_record(raw, AGENCYBLOC_FIELD_MAP) for raw in body.get("contacts", [])]
        page = int(body.get("page", options.page))
        total_pages = int(body.get("totalPages", 0))
        return ApiResponse[list[CRMClient]](
            data=clients,
            pagination=Pagination(
                page=page,
                page_size=int(body.get("pageSize", options.page_size)),
                total_pages=total_pages,
                total_records=int(body.get("totalRecords", len(clients))),
                has_next=page < total_pages,
            ),
            rate_limit=parse_rate_limit(response.headers),
        )

    async def get_client(self, client_id: str) -> CRMClient:
        response = await self._request("GET", f"{CONTACTS_PATH}/{client_id}")
        return from_vendor_record(response.json(), AGENCYBLOC_FIELD_MAP)

    async def update_client(self, client_id: str, data: CRMClientPatch) -> CRMClient:
        response = await self._request(
            "PUT",
            f"{CONTACTS_PATH}/{client_id}",
            json=to_vendor_record(data, AGENCYBLOC_FIELD_MAP),
        )
        return from_vendor_record(response.json(), AGENCYBLOC_FIELD_MAP)

    async def create_client(self, data: CRMClientCreate) -> CRMClient:
        response = await self._request("POST", CONTACTS_PATH, json=to_vendor_record(data, AGENCYBLOC_FIELD_MAP))
        client = from_vendor_record(response.json(), AGENCYBLOC_FIELD_MAP)
        logger.info("crm.client_created", system=self.system, client_id=client.id)
        return client
