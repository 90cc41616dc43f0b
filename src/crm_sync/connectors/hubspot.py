"""HubSpot adapter (CRM v3 contacts object).

HubSpot pages with an opaque ``after`` cursor; modified-since and free-text
queries go through the search endpoint instead of the list endpoint.
"""

from __future__ import annotations

from typing import Any

import structlog

from src.crm_sync.connectors.field_mapping import HUBSPOT_FIELD_MAP, from_vendor_record, to_vendor_record
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

CONTACTS_PATH = "/crm/v3/objects/contacts"
HUBSPOT_MAX_PAGE_SIZE = 100

_PROPERTIES = [
    HUBSPOT_FIELD_MAP.first_name_field,
    HUBSPOT_FIELD_MAP.last_name_field,
    *HUBSPOT_FIELD_MAP.fields.values(),
    HUBSPOT_FIELD_MAP.created_field,
    HUBSPOT_FIELD_MAP.updated_field,
    HUBSPOT_FIELD_MAP.activity_field,
]


class HubSpotConnector(HTTPConnector):
    """HubSpot connector. ``config.portal_id`` identifies the account."""

    system = CRMSystem.HUBSPOT.value
    token_path = "/oauth/v1/token"
    health_path = f"{CONTACTS_PATH}?limit=1"

    def _search_body(self, options: QueryOptions, limit: int) -> dict[str, Any]:
        body: dict[str, Any] = {"limit": limit, "properties": options.fields or _PROPERTIES}
        if options.modified_since:
            body["filterGroups"] = [
                {
                    "filters": [
                        {
                            "propertyName": HUBSPOT_FIELD_MAP.updated_field,
                            "operator": "GT",
                            "value": str(int(options.modified_since.timestamp() * 1000)),
                        }
                    ]
                }
            ]
        if options.search_query:
            body["query"] = options.search_query
        if options.sort_by:
            body["sorts"] = [
                {
                    "propertyName": options.sort_by,
                    "direction": "ASCENDING" if options.sort_order == "asc" else "DESCENDING",
                }
            ]
        if options.page_token:
            body["after"] = options.page_token
        return body

    async def get_clients(self, options: QueryOptions | None = None) -> ApiResponse[list[CRMClient]]:
        options = options or QueryOptions()
        limit = min(options.page_size, HUBSPOT_MAX_PAGE_SIZE)

        if options.modified_since or options.search_query or options.sort_by:
            response = await self._request(
                "POST",
                f"{CONTACTS_PATH}/search",
                json=self._search_body(options, limit),
            )
        else:
            params: dict[str, Any] = {
                "limit": limit,
                "properties": ",".join(options.fields or _PROPERTIES),
            }
            if options.page_token:
                params["after"] = options.page_token
            response = await self._request("GET", CONTACTS_PATH, params=params)

        body = response.json()
        clients = [from_vendor_record(raw, HUBSPOT_FIELD_MAP) for raw in body.get("results", [])]
        next_token = body.get("paging", {}).get("next", {}).get("after")
        return ApiResponse[list[CRMClient]](
            data=clients,
            pagination=Pagination(
                page=options.page,
                page_size=limit,
                total_records=int(body.get("total", len(clients))),
                has_next=next_token is not None,
                next_page_token=next_token,
            ),
            rate_limit=parse_rate_limit(response.headers),
        )

    async def get_client(self, client_id: str) -> CRMClient:
        response = await self._request(
            "GET",
            f"{CONTACTS_PATH}/{client_id}",
            params={"properties": ",".join(_PROPERTIES)},
        )
        return from_vendor_record(response.json(), HUBSPOT_FIELD_MAP)

    async def update_client(self, client_id: str, data: CRMClientPatch) -> CRMClient:
        response = await self._request(
            "PATCH",
            f"{CONTACTS_PATH}/{client_id}",
            json=to_vendor_record(data, HUBSPOT_FIELD_MAP),
        )
        return from_vendor_record(response.json(), HUBSPOT_FIELD_MAP)

    async def create_client(self, data: CRMClientCreate) -> CRMClient:
        response = await self._request("POST", CONTACTS_PATH, json=to_vendor_record(data, HUBSPOT_FIELD_MAP))
        client = from_vendor_record(response.json(), HUBSPOT_FIELD_MAP)
        logger.info("crm.client_created", system=self.system, client_id=client.id)
        return client
