"""
Configuration for the shift sync core.

Configuration can be provided directly or via environment variables.

Environment Variables:
    NIGHTGUARD_COSMOS_ENDPOINT: Cosmos DB endpoint URL
    NIGHTGUARD_COSMOS_KEY: Cosmos DB key (if using key auth)
    NIGHTGUARD_COSMOS_AUTH_METHOD: Auth method (default: default_credential)
    NIGHTGUARD_COSMOS_DATABASE: Database name (default: nightguard)
    NIGHTGUARD_CACHE_PATH: Directory for the offline snapshot cache
    NIGHTGUARD_ROLLOVER_INTERVAL: Seconds between shift rollover checks
    NIGHTGUARD_POLL_INTERVAL: Seconds between remote change polls
    NIGHTGUARD_RECONNECT_DELAY: Seconds to wait before re-subscribing
    NIGHTGUARD_INACTIVITY_LIMIT: Idle seconds before forced logout
    NIGHTGUARD_INACTIVITY_CHECK_INTERVAL: Seconds between inactivity checks
    NIGHTGUARD_HISTORY_LIMIT: Number of past shifts to load
    NIGHTGUARD_LOG_LEVEL: Level for the package logger (default: INFO)
    NIGHTGUARD_LOG_JSON: "true" to emit single-line JSON logs on stdout
    AZURE_TENANT_ID: Azure tenant ID (for service principal)
    AZURE_CLIENT_ID: Azure client ID (for service principal/managed identity)
    AZURE_CLIENT_SECRET: Azure client secret (for service principal)
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from .exceptions import AuthenticationError

DEFAULT_ROLLOVER_INTERVAL = 60.0
DEFAULT_POLL_INTERVAL = 2.0
DEFAULT_RECONNECT_DELAY = 5.0
DEFAULT_INACTIVITY_LIMIT = 2 * 60 * 60.0
DEFAULT_INACTIVITY_CHECK_INTERVAL = 60.0
DEFAULT_HISTORY_LIMIT = 30


class CosmosAuthMethod(Enum):
    """Authentication method for Cosmos DB.

    KEY: Use account key
    DEFAULT_CREDENTIAL: Use Azure DefaultAzureCredential (recommended)
    MANAGED_IDENTITY: Use Azure Managed Identity explicitly
    SERVICE_PRINCIPAL: Use Service Principal with client_id/client_secret
    """

    KEY = "key"
    DEFAULT_CREDENTIAL = "default_credential"
    MANAGED_IDENTITY = "managed_identity"
    SERVICE_PRINCIPAL = "service_principal"


def _float_env(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass
class CoreConfig:
    """Configuration for the sync core.

    Attributes:
        cosmos_endpoint: Cosmos DB endpoint URL
        cosmos_auth_method: Authentication method (default: DEFAULT_CREDENTIAL)
        cosmos_key: Cosmos DB key (only for KEY auth method)
        cosmos_database: Cosmos DB database name
        shifts_container: Container holding one document per (venue, shift)
        alerts_container: Container holding venue alerts
        config_container: Container holding venue configuration documents

        azure_tenant_id: Azure tenant ID (for SERVICE_PRINCIPAL)
        azure_client_id: Azure client/app ID (for SERVICE_PRINCIPAL/MANAGED_IDENTITY)
        azure_client_secret: Azure client secret (for SERVICE_PRINCIPAL)

        cache_path: Directory for the local offline snapshot cache
        rollover_interval: Seconds between rollover checks
        poll_interval: Seconds between remote change polls
        reconnect_delay: Seconds to wait before re-subscribing after an error
        inactivity_limit: Idle seconds before forced logout
        inactivity_check_interval: Seconds between inactivity checks
        history_limit: Maximum number of past shifts to load
    """

    cosmos_endpoint: str | None = None
    cosmos_auth_method: CosmosAuthMethod = CosmosAuthMethod.DEFAULT_CREDENTIAL
    cosmos_key: str | None = None
    cosmos_database: str = "nightguard"
    shifts_container: str = "shifts"
    alerts_container: str = "alerts"
    config_container: str = "venue_config"

    azure_tenant_id: str | None = None
    azure_client_id: str | None = None
    azure_client_secret: str | None = None

    cache_path: str | None = None
    rollover_interval: float = DEFAULT_ROLLOVER_INTERVAL
    poll_interval: float = DEFAULT_POLL_INTERVAL
    reconnect_delay: float = DEFAULT_RECONNECT_DELAY
    inactivity_limit: float = DEFAULT_INACTIVITY_LIMIT
    inactivity_check_interval: float = DEFAULT_INACTIVITY_CHECK_INTERVAL
    history_limit: int = DEFAULT_HISTORY_LIMIT

    log_level: str = "INFO"
    log_json: bool = False

    @property
    def cache_dir(self) -> Path:
        """Resolved directory for the offline snapshot cache."""
        if self.cache_path:
            return Path(self.cache_path).expanduser()
        return Path.home() / ".nightguard" / "cache"

    @classmethod
    def from_environment(cls) -> CoreConfig:
        """Create configuration from environment variables.

        Returns:
            CoreConfig populated from environment variables
        """
        auth_method_str = os.environ.get("NIGHTGUARD_COSMOS_AUTH_METHOD", "default_credential")
        try:
            auth_method = CosmosAuthMethod(auth_method_str.lower())
        except ValueError:
            auth_method = CosmosAuthMethod.DEFAULT_CREDENTIAL

        return cls(
            cosmos_endpoint=os.environ.get("NIGHTGUARD_COSMOS_ENDPOINT"),
            cosmos_auth_method=auth_method,
            cosmos_key=os.environ.get("NIGHTGUARD_COSMOS_KEY"),
            cosmos_database=os.environ.get("NIGHTGUARD_COSMOS_DATABASE", "nightguard"),
            azure_tenant_id=os.environ.get("AZURE_TENANT_ID"),
            azure_client_id=os.environ.get("AZURE_CLIENT_ID"),
            azure_client_secret=os.environ.get("AZURE_CLIENT_SECRET"),
            cache_path=os.environ.get("NIGHTGUARD_CACHE_PATH"),
            rollover_interval=_float_env("NIGHTGUARD_ROLLOVER_INTERVAL", DEFAULT_ROLLOVER_INTERVAL),
            poll_interval=_float_env("NIGHTGUARD_POLL_INTERVAL", DEFAULT_POLL_INTERVAL),
            reconnect_delay=_float_env("NIGHTGUARD_RECONNECT_DELAY", DEFAULT_RECONNECT_DELAY),
            inactivity_limit=_float_env("NIGHTGUARD_INACTIVITY_LIMIT", DEFAULT_INACTIVITY_LIMIT),
            inactivity_check_interval=_float_env(
                "NIGHTGUARD_INACTIVITY_CHECK_INTERVAL", DEFAULT_INACTIVITY_CHECK_INTERVAL
            ),
            history_limit=int(_float_env("NIGHTGUARD_HISTORY_LIMIT", DEFAULT_HISTORY_LIMIT)),
            log_level=os.environ.get("NIGHTGUARD_LOG_LEVEL", "INFO").upper(),
            log_json=os.environ.get("NIGHTGUARD_LOG_JSON", "").lower() in ("1", "true", "yes"),
        )


def get_credential(config: CoreConfig) -> Any:
    """Get the appropriate Cosmos credential based on auth method.

    Args:
        config: Core configuration with auth settings

    Returns:
        Credential object for Cosmos DB authentication

    Raises:
        AuthenticationError: If credential cannot be created
    """
    endpoint = config.cosmos_endpoint or "cosmos"
    auth_method = config.cosmos_auth_method

    if auth_method == CosmosAuthMethod.KEY:
        if not config.cosmos_key:
            raise AuthenticationError(endpoint, "cosmos_key required for KEY authentication")
        return config.cosmos_key

    if auth_method == CosmosAuthMethod.DEFAULT_CREDENTIAL:
        from azure.identity.aio import DefaultAzureCredential

        return DefaultAzureCredential()

    if auth_method == CosmosAuthMethod.MANAGED_IDENTITY:
        from azure.identity.aio import ManagedIdentityCredential

        # If client_id is provided, use user-assigned managed identity
        if config.azure_client_id:
            return ManagedIdentityCredential(client_id=config.azure_client_id)
        return ManagedIdentityCredential()

    if auth_method == CosmosAuthMethod.SERVICE_PRINCIPAL:
        if not all([config.azure_tenant_id, config.azure_client_id, config.azure_client_secret]):
            raise AuthenticationError(
                endpoint,
                "azure_tenant_id, azure_client_id, and azure_client_secret "
                "required for SERVICE_PRINCIPAL authentication",
            )
        from azure.identity.aio import ClientSecretCredential

        return ClientSecretCredential(
            tenant_id=config.azure_tenant_id,
            client_id=config.azure_client_id,
            client_secret=config.azure_client_secret,
        )

    raise AuthenticationError(endpoint, f"Unsupported auth method: {auth_method}")
