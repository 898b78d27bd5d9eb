"""Selection and construction of the configured AuthProvider.

Mode selection:

1. ``GOOGLE_AUTH_MODE`` if set
2. Service account if a key path is configured (also when OAuth2 is too)
3. OAuth2 if only a client ID is configured
4. Service account otherwise, which then fails validation
"""

import logging
from pathlib import Path
from urllib.parse import urlparse

from gworkspace_auth.auth.metrics import AuthMetrics
from gworkspace_auth.auth.oauth_provider import OAuth2AuthProvider
from gworkspace_auth.auth.provider import AuthProvider, AuthProviderType
from gworkspace_auth.auth.service_account_provider import ServiceAccountAuthProvider
from gworkspace_auth.auth.token_storage import TokenStorage
from gworkspace_auth.config import (
    DEFAULT_OAUTH_PORT,
    GOOGLE_SCOPES,
    EnvironmentConfig,
    OAuth2Config,
    default_redirect_uri,
    load_environment_config,
    redirect_uri_port,
)
from gworkspace_auth.errors import (
    GoogleAuthError,
    GoogleAuthInvalidCredentialsError,
    GoogleAuthMissingCredentialsError,
    GoogleWorkspaceError,
)
from gworkspace_auth.result import Result, err, ok

logger = logging.getLogger(__name__)


def determine_auth_type(config: EnvironmentConfig) -> AuthProviderType:
    """Pick the provider type for a configuration."""
    if config.auth_mode:
        return config.auth_mode
    if config.service_account_key_path:
        return "service-account"
    if config.oauth_client_id:
        return "oauth2"
    return "service-account"


def validate_auth_config(config: EnvironmentConfig, auth_type: AuthProviderType) -> Result[None]:
    """Check that the configuration has what ``auth_type`` needs.

    Returns:
        ``ok(None)``, or an error naming the missing or malformed setting.
    """
    if auth_type == "service-account":
        if not config.service_account_key_path:
            return err(
                GoogleAuthMissingCredentialsError(
                    "service-account",
                    {
                        "operation": "MISSING_SERVICE_ACCOUNT_KEY",
                        "message": "Service account authentication requires "
                        "GOOGLE_SERVICE_ACCOUNT_KEY_PATH to be set",
                    },
                )
            )
        return ok(None)

    if not config.oauth_client_id:
        return err(
            GoogleAuthMissingCredentialsError(
                "oauth2",
                {
                    "operation": "MISSING_OAUTH_CLIENT_ID",
                    "message": "OAuth2 authentication requires GOOGLE_OAUTH_CLIENT_ID to be set",
                },
            )
        )
    if not config.oauth_client_secret:
        return err(
            GoogleAuthMissingCredentialsError(
                "oauth2",
                {
                    "operation": "MISSING_OAUTH_CLIENT_SECRET",
                    "message": "OAuth2 authentication requires "
                    "GOOGLE_OAUTH_CLIENT_SECRET to be set",
                },
            )
        )
    if config.oauth_redirect_uri:
        parsed = urlparse(config.oauth_redirect_uri)
        uri_port = redirect_uri_port(config.oauth_redirect_uri)
        if parsed.scheme not in ("http", "https") or not parsed.netloc or uri_port is None:
            return err(
                GoogleAuthInvalidCredentialsError(
                    "oauth2",
                    {
                        "operation": "INVALID_OAUTH_REDIRECT_URI",
                        "message": "GOOGLE_OAUTH_REDIRECT_URI must be a valid URL",
                    },
                )
            )
        if config.oauth_port and config.oauth_port != uri_port:
            return err(
                GoogleAuthInvalidCredentialsError(
                    "oauth2",
                    {
                        "operation": "OAUTH_PORT_MISMATCH",
                        "message": f"GOOGLE_OAUTH_PORT={config.oauth_port} does not match "
                        f"the GOOGLE_OAUTH_REDIRECT_URI port {uri_port}",
                    },
                )
            )
    return ok(None)


def oauth2_config_from_environment(config: EnvironmentConfig) -> OAuth2Config:
    """Build the OAuth2 client configuration from parsed settings."""
    port = config.oauth_port
    if port is None and config.oauth_redirect_uri:
        port = redirect_uri_port(config.oauth_redirect_uri)
    port = port or DEFAULT_OAUTH_PORT
    return OAuth2Config(
        client_id=config.oauth_client_id or "",
        client_secret=config.oauth_client_secret or "",
        redirect_uri=config.oauth_redirect_uri or default_redirect_uri(port),
        scopes=list(config.oauth_scopes or GOOGLE_SCOPES),
        port=port,
    )


def create_auth_provider(
    config: EnvironmentConfig | None = None,
    token_storage: TokenStorage | None = None,
    metrics: AuthMetrics | None = None,
) -> AuthProvider:
    """Create the provider selected by ``config``.

    Args:
        config: Parsed settings. Read from the environment when omitted.
        token_storage: Token store for OAuth2.
        metrics: Metrics emitter for OAuth2.

    Returns:
        An uninitialized AuthProvider.

    Raises:
        GoogleAuthError: If the configuration is incomplete or the provider
            cannot be built.
    """
    config = config or load_environment_config()
    auth_type = determine_auth_type(config)
    logger.info(
        "Creating %s authentication provider (%s)",
        auth_type,
        "explicit mode" if config.auth_mode else "auto-detected",
    )

    validation = validate_auth_config(config, auth_type)
    if validation.is_err():
        logger.error("Authentication configuration invalid: %s", validation.error.message)
        raise validation.error

    try:
        if auth_type == "service-account":
            return ServiceAccountAuthProvider(config.service_account_key_path, environment=config)

        if token_storage is None:
            token_path = config.token_path
            token_storage = TokenStorage(
                token_path=Path(token_path).expanduser() if token_path else None,
                metrics=metrics,
            )
        return OAuth2AuthProvider(
            oauth2_config_from_environment(config),
            token_storage,
            metrics=metrics,
            environment=config,
        )
    except GoogleAuthError:
        raise
    except GoogleWorkspaceError as e:
        raise GoogleAuthError(
            f"Failed to create {auth_type} authentication provider: {e.message}",
            auth_type,
            {"operation": "AUTH_FACTORY_ERROR"},
            e,
        ) from e
