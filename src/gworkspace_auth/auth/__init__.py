"""Authentication for Google Workspace.

Two providers share one interface: service accounts for server-to-server
access and OAuth2 for acting on behalf of a user. OAuth2 tokens are kept in
the OS keyring, with an encrypted file as fallback.

Quick Start:
    ```python
    from gworkspace_auth.auth import create_auth_provider

    provider = create_auth_provider()

    result = await provider.get_auth_client()
    if result.is_ok():
        credentials = result.value
    ```
"""

from gworkspace_auth.auth.factory import (
    create_auth_provider,
    determine_auth_type,
    validate_auth_config,
)
from gworkspace_auth.auth.metrics import AuthMetrics
from gworkspace_auth.auth.models import (
    AuthInfo,
    ClientConfig,
    CorruptionType,
    OAuth2Token,
    StoredCredentials,
    TokenInfo,
    TokenStatus,
)
from gworkspace_auth.auth.oauth_provider import OAuth2AuthProvider
from gworkspace_auth.auth.provider import AuthProvider, AuthProviderType
from gworkspace_auth.auth.service_account_provider import ServiceAccountAuthProvider
from gworkspace_auth.auth.token_storage import TokenStorage

__all__ = [
    "AuthProvider",
    "AuthProviderType",
    "OAuth2AuthProvider",
    "ServiceAccountAuthProvider",
    "create_auth_provider",
    "determine_auth_type",
    "validate_auth_config",
    "TokenStorage",
    "AuthMetrics",
    "AuthInfo",
    "ClientConfig",
    "CorruptionType",
    "OAuth2Token",
    "StoredCredentials",
    "TokenInfo",
    "TokenStatus",
]
