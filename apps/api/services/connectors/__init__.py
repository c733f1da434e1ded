"""Public connector provider utilities."""

from services.connectors.providers import (
    BaseConnectorProvider,
    connector_capabilities,
    get_connector_provider,
)
from services.connectors.types import (
    ConnectorUnavailableError,
    ManagedAccount,
    PlatformKey,
    PublishReceipt,
    SUPPORTED_PLATFORMS,
    TokenGrant,
    TokenIntrospection,
)

__all__ = [
    "BaseConnectorProvider",
    "ConnectorUnavailableError",
    "ManagedAccount",
    "PlatformKey",
    "PublishReceipt",
    "SUPPORTED_PLATFORMS",
    "TokenGrant",
    "TokenIntrospection",
    "connector_capabilities",
    "get_connector_provider",
]
