"""Vendor payload <-> CRMClient field mappings.

Defines:
- VendorFieldMap: table describing where each normalized field lives in a
  vendor's record (id, name parts, scalar fields, timestamps).
- ZOHO_FIELD_MAP, SALESFORCE_FIELD_MAP, HUBSPOT_FIELD_MAP, AGENCYBLOC_FIELD_MAP.
- from_vendor_record(): vendor dict -> CRMClient. Unmapped vendor keys land
  in ``custom_fields``.
- to_vendor_record(): CRMClientCreate / CRMClientPatch -> vendor dict.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from src.crm_sync.connectors.schemas import Address, CRMClient, CRMClientCreate, CRMClientPatch

ADDRESS_PARTS = ("street", "city", "state", "zip_code", "country")


@dataclass(frozen=True)
class VendorFieldMap:
    """Where each normalized field lives in a vendor record.

    ``fields`` maps internal names (``email``, ``address.city``, ...) to
    vendor keys. When ``properties_key`` is set, everything except the id is
    nested under that key (HubSpot style).
    """

    id_field: str
    first_name_field: str
    last_name_field: str
    created_field: str
    updated_field: str
    full_name_field: str | None = None
    activity_field: str | None = None
    properties_key: str | None = None
    fields: dict[str, str] = field(default_factory=dict)

    def vendor_keys(self) -> set[str]:
        keys = {
            self.id_field,
            self.first_name_field,
            self.last_name_field,
            self.created_field,
            self.updated_field,
            *self.fields.values(),
        }
        if self.full_name_field:
            keys.add(self.full_name_field)
        if self.activity_field:
            keys.add(self.activity_field)
        return keys


# ── Vendor Maps ─────────────────────────────────────────────────────────────

ZOHO_FIELD_MAP = VendorFieldMap(
    id_field="id",
    first_name_field="First_Name",
    last_name_field="Last_Name",
    created_field="Created_Time",
    updated_field="Modified_Time",
    activity_field="Last_Activity_Time",
    fields={
        "email": "Email",
        "phone": "Phone",
        "company": "Account_Name",
        "address.street": "Mailing_Street",
        "address.city": "Mailing_City",
        "address.state": "Mailing_State",
        "address.zip_code": "Mailing_Code",
        "address.country": "Mailing_Country",
    },
)

SALESFORCE_FIELD_MAP = VendorFieldMap(
    id_field="Id",
    full_name_field="Name",
    first_name_field="FirstName",
    last_name_field="LastName",
    created_field="CreatedDate",
    updated_field="LastModifiedDate",
    activity_field="LastActivityDate",
    fields={
        "email": "Email",
        "phone": "Phone",
        "company": "Account_Name__c",
        "address.street": "MailingStreet",
        "address.city": "MailingCity",
        "address.state": "MailingState",
        "address.zip_code": "MailingPostalCode",
        "address.country": "MailingCountry",
    },
)

HUBSPOT_FIELD_MAP = VendorFieldMap(
    id_field="id",
    first_name_field="firstname",
    last_name_field="lastname",
    created_field="createdate",
    updated_field="lastmodifieddate",
    activity_field="notes_last_contacted",
    properties_key="properties",
    fields={
        "email": "email",
        "phone": "phone",
        "company": "company",
        "address.street": "address",
        "address.city": "city",
        "address.state": "state",
        "address.zip_code": "zip",
        "address.country": "country",
    },
)

AGENCYBLOC_FIELD_MAP = VendorFieldMap(
    id_field="ContactId",
    first_name_field="FirstName",
    last_name_field="LastName",
    created_field="DateCreated",
    updated_field="DateModified",
    activity_field="LastContactDate",
    fields={
        "email": "Email",
        "phone": "Phone",
        "company": "CompanyName",
        "address.street": "Address1",
        "address.city": "City",
        "address.state": "State",
        "address.zip_code": "Zip",
        "address.country": "Country",
    },
)


# ── Conversion Functions ────────────────────────────────────────────────────


def parse_vendor_datetime(value: Any) -> datetime | None:
    """Parse ISO-8601 strings (``Z`` suffix allowed) and epoch milliseconds."""
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)) or (isinstance(value, str) and value.isdigit()):
        parsed = datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def split_name(name: str) -> tuple[str, str]:
    """Split a display name into (first, last). Single words fill both."""
    parts = name.split()
    if not parts:
        return "", ""
    first = parts[0]
    last = " ".join(parts[1:]) or first
    return first, last


def from_vendor_record(raw: dict[str, Any], field_map: VendorFieldMap) -> CRMClient:
    """Convert a vendor record to a normalized CRMClient."""
    props = raw.get(field_map.properties_key, {}) if field_map.properties_key else raw

    full_name = props.get(field_map.full_name_field) if field_map.full_name_field else None
    if not full_name:
        first = props.get(field_map.first_name_field) or ""
        last = props.get(field_map.last_name_field) or ""
        full_name = f"{first} {last}".strip()

    values: dict[str, Any] = {}
    address: dict[str, Any] = {}
    for internal, vendor_key in field_map.fields.items():
        value = props.get(vendor_key)
        # Lookup fields (Zoho Account_Name) arrive as {"name": ..., "id": ...}
        if isinstance(value, dict):
            value = value.get("name")
        if internal.startswith("address."):
            address[internal.split(".", 1)[1]] = value
        else:
            values[internal] = value

    known = field_map.vendor_keys()
    custom_fields = {
        key: value
        for key, value in props.items()
        if key not in known and value is not None
    }

    now = datetime.now(timezone.utc)
    return CRMClient(
        id=str(raw.get(field_map.id_field, "")),
        name=full_name or values.get("company") or "",
        email=values.get("email") or "",
        phone=values.get("phone") or "",
        company=values.get("company"),
        address=Address(**address) if any(address.values()) else None,
        custom_fields=custom_fields,
        created_at=parse_vendor_datetime(props.get(field_map.created_field)) or now,
        updated_at=parse_vendor_datetime(props.get(field_map.updated_field)) or now,
        last_activity=(
            parse_vendor_datetime(props.get(field_map.activity_field))
            if field_map.activity_field
            else None
        ),
    )


def to_vendor_record(
    data: CRMClientCreate | CRMClientPatch,
    field_map: VendorFieldMap,
) -> dict[str, Any]:
    """Convert a create/patch payload to vendor fields.

    Only fields that are set on the payload are emitted, so patches never
    blank out remote values. HubSpot-style maps wrap the result in the
    properties key.
    """
    fields = data.model_dump(exclude_none=True)
    record: dict[str, Any] = {}

    if fields.get("name"):
        first, last = split_name(fields["name"])
        record[field_map.first_name_field] = first
        record[field_map.last_name_field] = last

    for internal, vendor_key in field_map.fields.items():
        if internal.startswith("address."):
            part = internal.split(".", 1)[1]
            address = fields.get("address") or {}
            if address.get(part) is not None:
                record[vendor_key] = address[part]
        elif internal in fields:
            record[vendor_key] = fields[internal]

    record.update(fields.get("custom_fields") or {})

    if field_map.properties_key:
        return {field_map.properties_key: record}
    return record
