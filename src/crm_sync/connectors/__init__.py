"""CRM connector layer -- pluggable vendor adapters behind one contract.

Provides the CRMConnector interface with concrete implementations:
- ZohoConnector, SalesforceConnector, HubSpotConnector, AgencyBlocConnector:
  httpx-based REST adapters sharing HTTPConnector plumbing
- MockConnector: deterministic in-memory connector for development and tests
- ConnectorRegistry: memoizes one connector per (system, credential)
"""

from src.crm_sync.connectors.adapter import CRMConnector
from src.crm_sync.connectors.agencybloc import AgencyBlocConnector
from src.crm_sync.connectors.exceptions import (
    CircuitOpenError,
    CRMApiError,
    CRMAuthError,
    CRMError,
    CRMRateLimitError,
    UnsupportedSystemError,
)
from src.crm_sync.connectors.http import HTTPConnector
from src.crm_sync.connectors.hubspot import HubSpotConnector
from src.crm_sync.connectors.mock import MockConnector
from src.crm_sync.connectors.registry import ConfigValidation, ConnectorRegistry
from src.crm_sync.connectors.salesforce import SalesforceConnector
from src.crm_sync.connectors.schemas import (
    AuthTokens,
    CRMClient,
    CRMClientCreate,
    CRMClientPatch,
    CRMConfig,
    CRMSystem,
    QueryOptions,
    SyncResult,
)
from src.crm_sync.connectors.zoho import ZohoConnector

__all__ = [
    "CRMConnector",
    "HTTPConnector",
    "ZohoConnector",
    "SalesforceConnector",
    "HubSpotConnector",
    "AgencyBlocConnector",
    "MockConnector",
    "ConnectorRegistry",
    "ConfigValidation",
    "CRMError",
    "CRMAuthError",
    "CRMRateLimitError",
    "CRMApiError",
    "CircuitOpenError",
    "UnsupportedSystemError",
    "AuthTokens",
    "CRMClient",
    "CRMClientCreate",
    "CRMClientPatch",
    "CRMConfig",
    "CRMSystem",
    "QueryOptions",
    "SyncResult",
]
