"""Connector registry: one memoized connector per (system, credential).

Maps vendor tags to constructor callables instead of switching on the tag,
so new vendors are added with register_factory() and nothing else changes.
Validation failures are reported in a ConfigValidation result rather than
raised, so callers can batch-validate configurations.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping

import structlog
from pydantic import BaseModel, Field

from src.crm_sync.connectors.adapter import CRMConnector
from src.crm_sync.connectors.agencybloc import AgencyBlocConnector
from src.crm_sync.connectors.exceptions import UnsupportedSystemError
from src.crm_sync.connectors.hubspot import HubSpotConnector
from src.crm_sync.connectors.mock import MockConnector
from src.crm_sync.connectors.salesforce import SalesforceConnector
from src.crm_sync.connectors.schemas import CRMConfig, CRMSystem
from src.crm_sync.connectors.zoho import ZohoConnector

logger = structlog.get_logger(__name__)

ConnectorFactory = Callable[[CRMConfig], CRMConnector]

DEFAULT_FACTORIES: dict[str, ConnectorFactory] = {
    CRMSystem.ZOHO.value: ZohoConnector,
    CRMSystem.SALESFORCE.value: SalesforceConnector,
    CRMSystem.HUBSPOT.value: HubSpotConnector,
    CRMSystem.AGENCYBLOC.value: AgencyBlocConnector,
}

_REQUIRED_FIELDS = ("system", "client_id", "client_secret", "redirect_uri", "base_url")

# field -> True if missing it is an error, False if only a warning
_VENDOR_REQUIREMENTS: dict[str, dict[str, bool]] = {
    CRMSystem.ZOHO.value: {"datacenter": True},
    CRMSystem.SALESFORCE.value: {"instance_url": False},
    CRMSystem.HUBSPOT.value: {"portal_id": True},
    CRMSystem.AGENCYBLOC.value: {"environment": True},
}


class ConfigValidation(BaseModel):
    is_valid: bool
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


def connector_key(system: CRMSystem | str, credential_id: str) -> str:
    tag = system.value if isinstance(system, CRMSystem) else str(system)
    return f"{tag}-{credential_id}"


class ConnectorRegistry:
    """Creates and memoizes connectors.

    Args:
        factories: Vendor tag -> constructor. Defaults to the four REST adapters.
        use_mocks: Build MockConnector instances for every vendor instead.
    """

    def __init__(
        self,
        factories: Mapping[str, ConnectorFactory] | None = None,
        use_mocks: bool = False,
    ) -> None:
        self._factories: dict[str, ConnectorFactory] = {}
        source = factories if factories is not None else DEFAULT_FACTORIES
        for system, factory in source.items():
            self.register_factory(system, MockConnector if use_mocks else factory)
        self._connectors: dict[str, CRMConnector] = {}
        self.use_mocks = use_mocks

    def register_factory(self, system: CRMSystem | str, factory: ConnectorFactory) -> None:
        if not callable(factory):
            raise TypeError(f"Connector factory for {system} must be callable")
        tag = system.value if isinstance(system, CRMSystem) else str(system)
        self._factories[tag] = factory
        logger.debug("connector_registry.factory_registered", system=tag)

    @property
    def supported_systems(self) -> list[str]:
        return sorted(self._factories)

    def create_connector(self, config: CRMConfig) -> CRMConnector:
        """Return the memoized connector for the config, building it on first use."""
        key = connector_key(config.system, config.client_id)
        existing = self._connectors.get(key)
        if existing is not None:
            return existing

        factory = self._factories.get(config.system_tag)
        if factory is None:
            raise UnsupportedSystemError(config.system_tag)

        connector = factory(config)
        self._connectors[key] = connector
        logger.info(
            "connector_registry.connector_created",
            system=config.system_tag,
            credential_id=config.client_id,
            base_url=config.base_url,
            mock=self.use_mocks,
        )
        return connector

    def get_connector(self, system: CRMSystem | str, credential_id: str) -> CRMConnector | None:
        return self._connectors.get(connector_key(system, credential_id))

    def remove_connector(self, system: CRMSystem | str, credential_id: str) -> CRMConnector | None:
        """Forget a connector. The caller owns closing the returned instance."""
        connector = self._connectors.pop(connector_key(system, credential_id), None)
        if connector is not None:
            logger.info("connector_registry.connector_removed", system=str(system), credential_id=credential_id)
        return connector

    def get_all_connectors(self) -> list[CRMConnector]:
        return list(self._connectors.values())

    def clear_all(self) -> None:
        self._connectors.clear()
        logger.info("connector_registry.cleared")

    @staticmethod
    def create_default_configs() -> dict[str, dict]:
        """Partial configs with each vendor's public endpoints and scopes."""
        return {
            CRMSystem.ZOHO.value: {
                "system": CRMSystem.ZOHO,
                "base_url": "https://accounts.zoho.com",
                "scopes": ["ZohoCRM.modules.ALL", "ZohoCRM.settings.ALL"],
                "api_version": "v2",
            },
            CRMSystem.SALESFORCE.value: {
                "system": CRMSystem.SALESFORCE,
                "base_url": "https://login.salesforce.com",
                "scopes": ["api", "refresh_token", "offline_access"],
                "api_version": "v58.0",
            },
            CRMSystem.HUBSPOT.value: {
                "system": CRMSystem.HUBSPOT,
                "base_url": "https://api.hubapi.com",
                "scopes": ["contacts", "crm.objects.contacts.read", "crm.objects.contacts.write"],
                "api_version": "v3",
            },
            CRMSystem.AGENCYBLOC.value: {
                "system": CRMSystem.AGENCYBLOC,
                "base_url": "https://api.agencybloc.com",
                "scopes": ["contacts:read", "contacts:write"],
                "api_version": "v1",
            },
        }

    def validate_config(self, config: CRMConfig) -> ConfigValidation:
        errors: list[str] = []
        warnings: list[str] = []

        for field in _REQUIRED_FIELDS:
            if not getattr(config, field):
                errors.append(f"Missing required field: {field}")

        tag = config.system_tag
        if tag not in self._factories:
            errors.append(f"Unsupported CRM system: {tag}")

        for field, required in _VENDOR_REQUIREMENTS.get(tag, {}).items():
            if getattr(config, field):
                continue
            if required:
                errors.append(f"{tag} config missing {field}")
            else:
                warnings.append(f"{tag} config missing {field} (set during authentication)")

        if errors:
            logger.error("connector_registry.config_invalid", system=tag, errors=errors)
        elif warnings:
            logger.warning("connector_registry.config_warnings", system=tag, warnings=warnings)
        return ConfigValidation(is_valid=not errors, errors=errors, warnings=warnings)

    async def test_all_connections(self) -> dict[str, bool]:
        """Health-check every memoized connector. Never raises."""
        results: dict[str, bool] = {}
        for key, connector in list(self._connectors.items()):
            try:
                results[key] = await connector.health_check()
            except Exception as exc:
                logger.error("connector_registry.health_check_failed", connector=key, error=str(exc))
                results[key] = False
            else:
                logger.info("connector_registry.health_checked", connector=key, healthy=results[key])
        return results

    async def aclose(self) -> None:
        """Close every connector's transport and forget them."""
        for connector in list(self._connectors.values()):
            await connector.aclose()
        self.clear_all()
