"""Service account authentication provider.

Loads a service account JSON key and mints access tokens for
``GOOGLE_SCOPES``. No user interaction is involved, and tokens can always be
fetched again while the key is valid.
"""

import asyncio
import logging
from collections.abc import Mapping
from datetime import timezone
from pathlib import Path
from typing import Any

from google.auth.transport.requests import Request
from google.oauth2 import service_account

from gworkspace_auth.auth.models import AuthInfo, TokenInfo
from gworkspace_auth.auth.provider import AuthProvider, AuthProviderType
from gworkspace_auth.config import GOOGLE_SCOPES, EnvironmentConfig, RetryConfig
from gworkspace_auth.errors import (
    GoogleAuthError,
    GoogleAuthInvalidCredentialsError,
    GoogleAuthMissingCredentialsError,
    create_auth_error,
)
from gworkspace_auth.result import Result, err, ok
from gworkspace_auth.services.base import GoogleService

logger = logging.getLogger(__name__)


class ServiceAccountAuthProvider(GoogleService, AuthProvider):
    """AuthProvider backed by a service account key file.

    Attributes:
        key_path: Path to the JSON key.
        scopes: Scopes requested for every token.

    Example:
        ```python
        provider = ServiceAccountAuthProvider("/secrets/sa-key.json")
        result = await provider.get_auth_client()
        ```
    """

    auth_type: AuthProviderType = "service-account"

    def __init__(
        self,
        key_path: str | Path | None,
        retry_config: RetryConfig | Mapping[str, Any] | None = None,
        environment: EnvironmentConfig | None = None,
        scopes: list[str] | None = None,
    ) -> None:
        """Initialize the provider.

        Args:
            key_path: Service account key file.
            retry_config: Retry policy or overrides for initialization.
            environment: Parsed configuration.
            scopes: Scopes to request. Defaults to GOOGLE_SCOPES.

        Raises:
            GoogleAuthMissingCredentialsError: If no key path is given.
        """
        if not key_path or not str(key_path).strip():
            raise GoogleAuthMissingCredentialsError(
                "service-account",
                {"message": "Service account key path is required"},
            )
        super().__init__(retry_config, environment)
        self.key_path = Path(key_path).expanduser()
        self.scopes = list(scopes or GOOGLE_SCOPES)
        self._credentials: service_account.Credentials | None = None
        self._init_task: asyncio.Task | None = None

    def get_service_name(self) -> str:
        return "ServiceAccountAuthProvider"

    async def initialize(self) -> Result[None]:
        """Load the key file. Concurrent calls share one load."""
        if self._init_task is None or self._init_task.done():
            self._init_task = asyncio.ensure_future(self._perform_initialization())
        task = self._init_task
        try:
            return await asyncio.shield(task)
        finally:
            if task.done() and self._init_task is task:
                self._init_task = None

    async def get_auth_client(self) -> Result[service_account.Credentials]:
        if self._credentials is None:
            init_result = await self.initialize()
            if init_result.is_err():
                return err(init_result.error)

        if self._credentials is None:
            return err(
                GoogleAuthError(
                    "Auth service not properly initialized",
                    "service-account",
                    {"service": self.get_service_name()},
                )
            )
        return ok(self._credentials)

    async def validate_auth(self) -> Result[bool]:
        """Fetch a token to prove the key works. Never returns an error."""
        context = self.create_context("validate_auth")

        client_result = await self.get_auth_client()
        if client_result.is_err():
            logger.warning(
                "Service account validation failed during initialization: %s",
                client_result.error.message,
                extra={"request_id": context.request_id},
            )
            return ok(False)

        credentials = client_result.value
        try:
            await self._fetch_token(credentials)
        except Exception as e:
            auth_error = create_auth_error(
                e,
                "service-account",
                {"service": self.get_service_name(), "request_id": context.request_id},
            )
            logger.warning(
                "Service account token validation failed: %s",
                auth_error.message,
                extra={"request_id": context.request_id},
            )
            return ok(False)

        is_valid = bool(credentials.token)
        logger.debug("Service account validation completed (valid: %s)", is_valid)
        return ok(is_valid)

    async def refresh_token(self) -> Result[None]:
        context = self.create_context("refresh_token")
        if self._credentials is None:
            return err(
                GoogleAuthError(
                    "Cannot refresh token: auth client not initialized",
                    "service-account",
                    {"service": self.get_service_name()},
                )
            )

        try:
            await self._fetch_token(self._credentials)
        except Exception as e:
            auth_error = create_auth_error(
                e,
                "service-account",
                {"service": self.get_service_name(), "request_id": context.request_id},
            )
            logger.error("Service account token refresh failed: %s", auth_error.message)
            return err(auth_error)

        logger.info("Service account token refreshed")
        return ok(None)

    async def get_auth_info(self) -> Result[AuthInfo]:
        validation = await self.validate_auth()
        is_authenticated = bool(validation.value)

        token_info = None
        credentials = self._credentials
        if credentials is not None and credentials.token:
            expires_at = None
            if credentials.expiry is not None:
                expires_at = credentials.expiry.replace(tzinfo=timezone.utc)
            token_info = TokenInfo(expires_at=expires_at, has_token=True)

        return ok(
            AuthInfo(
                is_authenticated=is_authenticated,
                auth_type="service-account",
                key_file=str(self.key_path),
                scopes=list(self.scopes),
                token_info=token_info,
            )
        )

    async def health_check(self) -> Result[bool]:
        return await self.validate_auth()

    async def _perform_initialization(self) -> Result[None]:
        context = self.create_context("initialize", {"key_path": str(self.key_path)})

        async def load() -> None:
            if not self.key_path.exists():
                raise GoogleAuthMissingCredentialsError(
                    "service-account",
                    {"file_path": str(self.key_path), "error": "Key file not found"},
                )
            try:
                self._credentials = service_account.Credentials.from_service_account_file(
                    str(self.key_path), scopes=self.scopes
                )
            except Exception as e:
                raise GoogleAuthInvalidCredentialsError(
                    "service-account",
                    {"file_path": str(self.key_path), "error": str(e)},
                ) from e
            logger.info(
                "Service account authentication initialized (%s, %d scopes)",
                self.key_path,
                len(self.scopes),
            )

        return await self.execute_with_retry(load, context)

    @staticmethod
    async def _fetch_token(credentials: service_account.Credentials) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, credentials.refresh, Request())
