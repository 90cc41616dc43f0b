"""Salesforce adapter (Contact sObject via the REST query API).

Requests go to the org's ``instance_url``, which Salesforce returns with
every token response; until then ``config.base_url`` is used.
"""

from __future__ import annotations

from datetime import timezone
from typing import Any

import structlog

from src.crm_sync.connectors.field_mapping import (
    SALESFORCE_FIELD_MAP,
    from_vendor_record,
    to_vendor_record,
)
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

DEFAULT_API_VERSION = "v58.0"

_SELECT_FIELDS = [
    SALESFORCE_FIELD_MAP.id_field,
    SALESFORCE_FIELD_MAP.full_name_field,
    SALESFORCE_FIELD_MAP.first_name_field,
    SALESFORCE_FIELD_MAP.last_name_field,
    *SALESFORCE_FIELD_MAP.fields.values(),
    SALESFORCE_FIELD_MAP.created_field,
    SALESFORCE_FIELD_MAP.updated_field,
    SALESFORCE_FIELD_MAP.activity_field,
]


def _soql_literal(value: str) -> str:
    return value.replace("\\", "\\\\").replace("'", "\\'")


class SalesforceConnector(HTTPConnector):
    system = CRMSystem.SALESFORCE.value
    token_path = "/services/oauth2/token"

    @property
    def api_version(self) -> str:
        return self.config.api_version or DEFAULT_API_VERSION

    @property
    def health_path(self) -> str:  # type: ignore[override]
        return f"/services/data/{self.api_version}/limits"

    def api_base_url(self) -> str:
        return (self.config.instance_url or self.config.base_url).rstrip("/")

    def _on_token_payload(self, payload: dict[str, Any]) -> None:
        instance_url = payload.get("instance_url")
        if instance_url and instance_url != self.config.instance_url:
            self.config.instance_url = instance_url
            self._client.base_url = instance_url.rstrip("/")
            logger.info("crm.instance_url_adopted", system=self.system, instance_url=instance_url)

    def _sobject_path(self, client_id: str | None = None) -> str:
        path = f"/services/data/{self.api_version}/sobjects/Contact"
        return f"{path}/{client_id}" if client_id else path

    def build_query(self, options: QueryOptions) -> str:
        """Build the SOQL statement for one page of contacts."""
        fields = options.fields or _SELECT_FIELDS
        clauses = []
        if options.modified_since:
            stamp = options.modified_since.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
            clauses.append(f"LastModifiedDate > {stamp}")
        if options.search_query:
            term = _soql_literal(options.search_query)
            clauses.append(f"(Name LIKE '%{term}%' OR Email LIKE '%{term}%')")

        soql = f"SELECT {', '.join(fields)} FROM Contact"
        if clauses:
            soql += " WHERE " + " AND ".join(clauses)
        soql += f" ORDER BY {options.sort_by or 'LastModifiedDate'} {options.sort_order.upper()}"
        soql += f" LIMIT {options.page_size} OFFSET {(options.page - 1) * options.page_size}"
        return soql

    async def get_clients(self, options: QueryOptions | None = None) -> ApiResponse[list[CRMClient]]:
        options = options or QueryOptions()
        response = await self._request(
            "GET",
            f"/services/data/{self.api_version}/query",
            params={"q": self.build_query(options)},
        )
        body = response.json()
        total = int(body.get("totalSize", 0))
        clients = [from_vendor_record(raw, SALESFORCE_FIELD_MAP) for raw in body.get("records", [])]
        seen = (options.page - 1) * options.page_size + len(clients)
        return ApiResponse[list[CRMClient]](
            data=clients,
            pagination=Pagination(
                page=options.page,
                page_size=options.page_size,
                total_pages=-(-total // options.page_size) if options.page_size else 0,
                total_records=total,
                has_next=seen < total,
            ),
            rate_limit=parse_rate_limit(response.headers),
        )

    async def get_client(self, client_id: str) -> CRMClient:
        response = await self._request("GET", self._sobject_path(client_id))
        return from_vendor_record(response.json(), SALESFORCE_FIELD_MAP)

    async def update_client(self, client_id: str, data: CRMClientPatch) -> CRMClient:
        await self._request("PATCH", self._sobject_path(client_id), json=to_vendor_record(data, SALESFORCE_FIELD_MAP))
        return await self.get_client(client_id)

    async def create_client(self, data: CRMClientCreate) -> CRMClient:
        response = await self._request("POST", self._sobject_path(), json=to_vendor_record(data, SALESFORCE_FIELD_MAP))
        client_id = str(response.json().get("id", ""))
        logger.info("crm.client_created", system=self.system, client_id=client_id)
        return await self.get_client(client_id)
