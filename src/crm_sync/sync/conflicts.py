"""Field-level comparison between a local record and its remote copy.

Compared fields: name, email, phone, company, each address part, and every
custom field present on the local record. Values are compared after
stripping whitespace, with None and "" treated as equal; emails compare
case-insensitively.
"""

from __future__ import annotations

from typing import Any

from src.crm_sync.connectors.field_mapping import ADDRESS_PARTS
from src.crm_sync.connectors.schemas import CRMClient, CRMClientCreate, CRMClientPatch
from src.crm_sync.sync.schemas import LocalClientRecord

SCALAR_FIELDS = ("name", "email", "phone", "company")


def _normalize(value: Any, casefold: bool = False) -> Any:
    if value is None:
        return ""
    if isinstance(value, str):
        value = value.strip()
        return value.casefold() if casefold else value
    return value


def diff_fields(local: LocalClientRecord, remote: CRMClient) -> list[str]:
    """Names of fields whose values differ, e.g. ``["email", "address.city"]``."""
    changed = [
        field
        for field in SCALAR_FIELDS
        if _normalize(getattr(local, field), field == "email")
        != _normalize(getattr(remote, field), field == "email")
    ]

    for part in ADDRESS_PARTS:
        local_value = getattr(local.address, part) if local.address else None
        remote_value = getattr(remote.address, part) if remote.address else None
        if _normalize(local_value) != _normalize(remote_value):
            changed.append(f"address.{part}")

    for key, value in local.custom_fields.items():
        if _normalize(value) != _normalize(remote.custom_fields.get(key)):
            changed.append(f"custom_fields.{key}")

    return changed


def local_patch(local: LocalClientRecord) -> CRMClientPatch:
    """Patch carrying every local value, used to push a local edit."""
    return CRMClientPatch(
        name=local.name,
        email=local.email,
        phone=local.phone,
        company=local.company,
        address=local.address,
        custom_fields=local.custom_fields or None,
    )


def local_create(local: LocalClientRecord) -> CRMClientCreate:
    return CRMClientCreate(
        name=local.name,
        email=local.email,
        phone=local.phone,
        company=local.company,
        address=local.address,
        custom_fields=local.custom_fields,
    )
