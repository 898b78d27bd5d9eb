"""OAuth2 authentication provider for Google Workspace.

Runs the installed-app OAuth2 flow with google-auth-oauthlib: a loopback
listener receives the redirect, the authorization code is exchanged for
tokens, and the tokens are persisted through ``TokenStorage``. Tokens are
refreshed silently when expired, and proactively shortly before expiry.

Concurrent callers never race: initialization, the interactive flow and
token refresh each run at most once at a time, with later callers awaiting
the same in-flight task.

Environment Variables:
    GOOGLE_OAUTH2_PROACTIVE_REFRESH: ``false`` disables proactive refresh
    GOOGLE_OAUTH2_REFRESH_THRESHOLD: Refresh window before expiry in ms
    GOOGLE_OAUTH2_REFRESH_JITTER: Random extra window in ms
    GWORKSPACE_AUTH_ENV: ``test`` skips the browser and waits 5s, not 5min
"""

import asyncio
import functools
import logging
import secrets
import sys
import webbrowser
from collections.abc import Awaitable, Callable, Mapping
from datetime import datetime, timezone
from typing import Any, TypeVar
from urllib.parse import urlparse

import google.auth.exceptions
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import Flow

from gworkspace_auth.auth.callback_server import OAuthCallbackServer
from gworkspace_auth.auth.metrics import AuthMetrics
from gworkspace_auth.auth.models import (
    AuthInfo,
    ClientConfig,
    OAuth2Token,
    StoredCredentials,
    TokenInfo,
    now_ms,
)
from gworkspace_auth.auth.provider import AuthProvider, AuthProviderType
from gworkspace_auth.auth.token_storage import TokenStorage
from gworkspace_auth.auth.token_utils import calculate_refresh_window
from gworkspace_auth.config import (
    DEFAULT_OAUTH_PORT,
    EnvironmentConfig,
    OAuth2Config,
    RetryConfig,
    default_redirect_uri,
    redirect_uri_port,
)
from gworkspace_auth.errors import (
    GoogleConfigError,
    GoogleOAuth2Error,
    GoogleOAuth2NetworkError,
    GoogleOAuth2RefreshTokenExpiredError,
    GoogleOAuth2StateMismatchError,
    GoogleOAuth2TokenStorageError,
    GoogleOAuth2UserDeniedError,
    GoogleServiceError,
    GoogleWorkspaceError,
)
from gworkspace_auth.result import Result, err, ok
from gworkspace_auth.services.base import GoogleService

logger = logging.getLogger(__name__)

T = TypeVar("T")

GOOGLE_AUTH_URI = "https://accounts.google.com/o/oauth2/auth"
GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"  # nosec B105 - public endpoint

AUTH_TIMEOUT_MS = 300_000
TEST_AUTH_TIMEOUT_MS = 5_000
CALLBACK_POLL_INTERVAL_S = 0.1
MIN_REFRESH_INTERVAL_MS = 30_000


def validate_oauth2_config(config: OAuth2Config) -> OAuth2Config:
    """Check required fields and fill in the port and redirect URI.

    Args:
        config: Client configuration as supplied.

    Returns:
        Configuration with ``port`` and ``redirect_uri`` set.

    Raises:
        GoogleConfigError: If a required value is missing or malformed.
    """
    if not config.client_id or not config.client_id.strip():
        raise GoogleConfigError("OAuth2Config: client_id is required")
    if not config.client_secret or not config.client_secret.strip():
        raise GoogleConfigError("OAuth2Config: client_secret is required")
    if not config.scopes:
        raise GoogleConfigError("OAuth2Config: scopes must be a non-empty list")

    redirect_uri = config.redirect_uri
    if redirect_uri:
        parsed = urlparse(redirect_uri)
        uri_port = redirect_uri_port(redirect_uri)
        if parsed.scheme not in ("http", "https") or not parsed.netloc or uri_port is None:
            raise GoogleConfigError(
                "OAuth2Config: redirect_uri must be a valid URL",
                context={"redirect_uri": redirect_uri},
            )
        port = config.port or uri_port
        if port != uri_port:
            raise GoogleConfigError(
                f"OAuth2Config: port {port} does not match redirect_uri port {uri_port}",
                context={"redirect_uri": redirect_uri, "port": port},
            )
    else:
        port = config.port or DEFAULT_OAUTH_PORT
        redirect_uri = default_redirect_uri(port)
    return config.model_copy(update={"port": port, "redirect_uri": redirect_uri})


class OAuth2AuthProvider(GoogleService, AuthProvider):
    """AuthProvider backed by a user's OAuth2 consent.

    Attributes:
        config: Validated client configuration.
        token_storage: Persistent token store.

    Example:
        ```python
        provider = OAuth2AuthProvider(
            OAuth2Config(client_id="123.apps.googleusercontent.com", client_secret="..."),
            TokenStorage(),
        )
        result = await provider.get_auth_client()
        if result.is_ok():
            credentials = result.value
        ```
    """

    auth_type: AuthProviderType = "oauth2"

    def __init__(
        self,
        config: OAuth2Config,
        token_storage: TokenStorage | None = None,
        retry_config: RetryConfig | Mapping[str, Any] | None = None,
        metrics: AuthMetrics | None = None,
        environment: EnvironmentConfig | None = None,
        auth_timeout_ms: int | None = None,
    ) -> None:
        """Initialize the provider.

        Args:
            config: OAuth2 client configuration.
            token_storage: Token store. Creates default if not provided.
            retry_config: Retry policy or overrides for initialization.
            metrics: Metrics emitter for refresh events.
            environment: Parsed configuration; read from the environment
                when omitted.
            auth_timeout_ms: How long to wait for the browser redirect.

        Raises:
            GoogleConfigError: If the client configuration is invalid.
        """
        self.config = validate_oauth2_config(config)
        super().__init__(retry_config, environment)
        self.token_storage = token_storage or TokenStorage()
        self._metrics = metrics or AuthMetrics()
        if auth_timeout_ms is None:
            test_mode = self.environment.test_mode
            auth_timeout_ms = TEST_AUTH_TIMEOUT_MS if test_mode else AUTH_TIMEOUT_MS
        self.auth_timeout_ms = auth_timeout_ms

        self._credentials: Credentials | None = None
        self._initialized = False
        self._init_task: asyncio.Task | None = None
        self._auth_flow_task: asyncio.Task | None = None
        self._refresh_task: asyncio.Task | None = None
        self._last_refresh_attempt: int | None = None

    def get_service_name(self) -> str:
        return "OAuth2AuthProvider"

    def get_service_version(self) -> str:
        return "1.0.0"

    @property
    def credentials(self) -> Credentials | None:
        """Live credentials, if any."""
        return self._credentials

    # -------------------------------------------------------------------------
    # AuthProvider API
    # -------------------------------------------------------------------------

    async def initialize(self) -> Result[None]:
        """Load stored tokens. Never starts the browser flow.

        Concurrent calls share a single in-flight initialization.
        """
        if self._initialized:
            return ok(None)
        self._init_task = self._shared(self._init_task, self._perform_initialization)
        task = self._init_task
        try:
            return await asyncio.shield(task)
        finally:
            if task.done() and self._init_task is task:
                self._init_task = None

    async def get_auth_client(self) -> Result[Credentials]:
        """Return valid credentials, running the consent flow if needed."""
        init_result = await self.initialize()
        if init_result.is_err():
            return err(self.convert_auth_error(init_result.error))

        validation = await self.validate_auth()
        if validation.is_err():
            return err(validation.error)
        if validation.value and self._credentials is not None:
            return ok(self._credentials)

        try:
            credentials = await self._perform_auth_flow()
        except Exception as e:
            return err(self.convert_auth_error(e))
        return ok(credentials)

    async def validate_auth(self) -> Result[bool]:
        """Check the access token, refreshing it when due.

        Returns ``ok(False)`` rather than an error when a refresh fails, so
        callers can fall back to re-authorization.
        """
        credentials = self._credentials
        if credentials is None or not credentials.token:
            return ok(False)

        try:
            expiry_ms = self._expiry_ms(credentials)
            if (
                self.environment.proactive_refresh
                and expiry_ms is not None
                and credentials.refresh_token
            ):
                refreshed = await self._maybe_refresh_proactively(expiry_ms)
                if refreshed is not None:
                    return ok(refreshed)

            if expiry_ms is not None and expiry_ms <= now_ms():
                if not credentials.refresh_token:
                    logger.info("OAuth2 access token expired and no refresh token is stored")
                    return ok(False)
                try:
                    await self._shared_refresh("reactive")
                except Exception:
                    return ok(False)
                return ok(True)

            return ok(True)
        except Exception as e:
            return err(self.convert_auth_error(e))

    async def refresh_token(self) -> Result[None]:
        """Refresh the access token now."""
        if not self._initialized:
            return err(self._not_initialized("refresh_token"))

        if self._credentials is None or not self._credentials.refresh_token:
            return err(
                GoogleOAuth2RefreshTokenExpiredError(
                    {"operation": "refresh_token", "client_id": self.config.client_id}
                )
            )

        try:
            await self._shared_refresh("explicit")
        except Exception as e:
            converted = self.convert_auth_error(e)
            if not isinstance(converted, (GoogleOAuth2NetworkError, GoogleOAuth2TokenStorageError)):
                converted = GoogleOAuth2RefreshTokenExpiredError(
                    {
                        "operation": "refresh_token",
                        "client_id": self.config.client_id,
                        "error": str(e),
                    }
                )
            logger.error("Failed to refresh OAuth2 tokens: %s", converted.message)
            return err(converted)
        return ok(None)

    async def get_auth_info(self) -> Result[AuthInfo]:
        if not self._initialized:
            return err(self._not_initialized("get_auth_info"))

        credentials = self._credentials
        has_token = bool(credentials is not None and credentials.token)
        expires_at: datetime | None = None
        if credentials is not None and credentials.expiry is not None:
            expires_at = credentials.expiry.replace(tzinfo=timezone.utc)
        scopes = list(credentials.scopes or []) if credentials is not None else []

        return ok(
            AuthInfo(
                is_authenticated=has_token,
                auth_type="oauth2",
                key_file=self.config.client_id,
                scopes=scopes or list(self.config.scopes),
                token_info=TokenInfo(expires_at=expires_at, has_token=True) if has_token else None,
            )
        )

    async def health_check(self) -> Result[bool]:
        if not self._initialized:
            return ok(False)
        try:
            has_tokens = await self._run_blocking(self.token_storage.has_tokens)
        except Exception as e:
            logger.error("OAuth2AuthProvider health check failed: %s", e)
            return ok(False)
        return ok(has_tokens)

    async def logout(self) -> None:
        """Forget the live credentials and delete stored tokens."""
        self._credentials = None
        self._last_refresh_attempt = None
        await self._run_blocking(self.token_storage.delete_tokens)
        logger.info("OAuth2 tokens removed for client %s", self.config.client_id)

    # -------------------------------------------------------------------------
    # Error conversion
    # -------------------------------------------------------------------------

    def convert_auth_error(self, error: BaseException | None) -> GoogleWorkspaceError:
        """Map a failure from the OAuth2 machinery to a domain error.

        Domain errors pass through unchanged.
        """
        if isinstance(error, GoogleWorkspaceError):
            return error

        message = str(error)
        lowered = message.lower()
        context = {"operation": "convert_auth_error", "original_error": message}

        if "refresh token" in lowered or "invalid_grant" in lowered:
            return GoogleOAuth2RefreshTokenExpiredError(context)
        if "access_denied" in lowered or "user denied" in lowered:
            return GoogleOAuth2UserDeniedError(context)
        network_types = (google.auth.exceptions.TransportError, ConnectionError, TimeoutError)
        if (
            isinstance(error, network_types)
            or "network" in lowered
            or "connection refused" in lowered
            or "timeout" in lowered
        ):
            return GoogleOAuth2NetworkError(message, error, {"operation": "convert_auth_error"})

        return GoogleOAuth2Error(
            message,
            "GOOGLE_OAUTH2_ERROR",
            401,
            {"operation": "convert_auth_error"},
            error,
        )

    # -------------------------------------------------------------------------
    # Initialization
    # -------------------------------------------------------------------------

    async def _perform_initialization(self) -> Result[None]:
        context = self.create_context("initialize")

        async def load() -> None:
            await self._load_stored_tokens()

        result = await self.execute_with_retry(load, context)
        if result.is_ok():
            self._initialized = True
            logger.info(
                "OAuth2AuthProvider initialized (client %s, stored tokens: %s)",
                self.config.client_id,
                self._credentials is not None,
            )
        return result

    async def _load_stored_tokens(self) -> None:
        try:
            stored = await self._run_blocking(self.token_storage.get_tokens)
        except Exception as e:
            logger.warning("Failed to load stored OAuth2 tokens: %s", e)
            return

        if stored is None:
            return
        if stored.client_config.client_id != self.config.client_id:
            logger.warning(
                "Stored tokens are for a different client (%s), ignoring",
                stored.client_config.client_id,
            )
            return

        self._credentials = self._token_to_credentials(stored.tokens)
        logger.info(
            "Loaded stored OAuth2 tokens (refresh token: %s, stored at %s)",
            bool(stored.tokens.refresh_token),
            datetime.fromtimestamp(stored.stored_at / 1000, tz=timezone.utc).isoformat(),
        )

    async def _save_current_tokens(self) -> None:
        credentials = self._credentials
        if credentials is None or not credentials.token:
            return

        stored = StoredCredentials(
            tokens=self._credentials_to_token(credentials),
            client_config=ClientConfig(client_id=self.config.client_id, scopes=self.config.scopes),
        )
        try:
            await self._run_blocking(self.token_storage.save_tokens, stored)
        except GoogleOAuth2TokenStorageError:
            raise
        except Exception as e:
            raise GoogleOAuth2TokenStorageError(
                "save",
                e,
                {"operation": "save_current_tokens", "client_id": self.config.client_id},
            ) from e
        logger.debug("Saved OAuth2 tokens (refresh token: %s)", bool(credentials.refresh_token))

    # -------------------------------------------------------------------------
    # Refresh
    # -------------------------------------------------------------------------

    async def _maybe_refresh_proactively(self, expiry_ms: int) -> bool | None:
        """Refresh when inside the proactive window.

        Returns:
            True or False when a refresh was attempted or joined, None when
            no proactive refresh applies.
        """
        threshold = self.environment.refresh_threshold_ms
        window = calculate_refresh_window(expiry_ms, threshold, self.environment.refresh_jitter_ms)
        if not window.should_refresh:
            return None

        current = now_ms()
        time_until_expiry = expiry_ms - current

        if self._refresh_task is not None:
            logger.info("Waiting for in-flight OAuth2 token refresh")
            try:
                await self._shared_refresh("proactive", time_until_expiry)
            except Exception as e:
                logger.warning("Shared OAuth2 token refresh failed: %s", e)
                return False
            return True

        if (
            self._last_refresh_attempt is not None
            and current - self._last_refresh_attempt < MIN_REFRESH_INTERVAL_MS
        ):
            logger.info(
                "Skipping proactive refresh, last attempt %dms ago",
                current - self._last_refresh_attempt,
            )
            return None

        self._last_refresh_attempt = current
        self._metrics.emit_refresh_proactive(time_until_expiry, threshold)
        try:
            await self._shared_refresh("proactive", time_until_expiry)
        except Exception as e:
            logger.error("Proactive OAuth2 token refresh failed: %s", e)
            return False
        self._last_refresh_attempt = None
        return True

    async def _shared_refresh(
        self, refresh_type: str, time_until_expiry: int | None = None
    ) -> None:
        self._refresh_task = self._shared(
            self._refresh_task,
            functools.partial(self._execute_refresh, refresh_type, time_until_expiry),
        )
        task = self._refresh_task
        try:
            await asyncio.shield(task)
        finally:
            if task.done() and self._refresh_task is task:
                self._refresh_task = None

    async def _execute_refresh(self, refresh_type: str, time_until_expiry: int | None) -> None:
        started = now_ms()
        credentials = self._credentials
        if credentials is None:
            self._metrics.emit_refresh_failure(
                "oauth2_client_not_initialized", now_ms() - started, refresh_type
            )
            raise self._not_initialized("refresh")

        logger.info("Refreshing OAuth2 tokens (%s)", refresh_type)
        try:
            await self._run_blocking(credentials.refresh, Request())
            await self._save_current_tokens()
        except Exception as e:
            self._metrics.emit_refresh_failure(str(e), now_ms() - started, refresh_type)
            logger.error("OAuth2 token refresh failed (%s): %s", refresh_type, e)
            raise

        self._metrics.emit_refresh_success(now_ms() - started, refresh_type, time_until_expiry)
        logger.info("OAuth2 token refresh completed (%s)", refresh_type)

    # -------------------------------------------------------------------------
    # Interactive flow
    # -------------------------------------------------------------------------

    async def _perform_auth_flow(self) -> Credentials:
        self._auth_flow_task = self._shared(self._auth_flow_task, self._execute_auth_flow)
        task = self._auth_flow_task
        try:
            return await asyncio.shield(task)
        finally:
            if task.done() and self._auth_flow_task is task:
                self._auth_flow_task = None

    def _create_flow(self) -> Flow:
        client_config = {
            "web": {
                "client_id": self.config.client_id,
                "client_secret": self.config.client_secret,
                "auth_uri": GOOGLE_AUTH_URI,
                "token_uri": GOOGLE_TOKEN_URI,
                "redirect_uris": [self.config.redirect_uri],
            }
        }
        return Flow.from_client_config(
            client_config,
            scopes=self.config.scopes,
            redirect_uri=self.config.redirect_uri,
        )

    async def _execute_auth_flow(self) -> Credentials:
        flow = self._create_flow()
        state = secrets.token_urlsafe(32)
        auth_url, _ = flow.authorization_url(
            access_type="offline",
            prompt="consent",
            state=state,
        )
        logger.info(
            "Starting OAuth2 authorization flow (scopes: %s)", ", ".join(self.config.scopes)
        )

        server = OAuthCallbackServer(self.config.redirect_uri, self.config.port)
        server.start()
        try:
            self._open_browser(auth_url)
            code = await self._wait_for_callback(server, state)
            await self._run_blocking(functools.partial(flow.fetch_token, code=code))
            self._credentials = flow.credentials
            self._initialized = True
            self._last_refresh_attempt = None
            await self._save_current_tokens()
            logger.info(
                "OAuth2 authorization completed (refresh token: %s)",
                bool(self._credentials.refresh_token),
            )
            return self._credentials
        finally:
            await self._run_blocking(server.close)

    def _open_browser(self, auth_url: str) -> None:
        if self.environment.test_mode:
            logger.info("Skipping browser launch in test mode")
            return

        try:
            opened = webbrowser.open(auth_url)
        except webbrowser.Error as e:
            logger.warning("Failed to open browser automatically: %s", e)
            opened = False

        if not opened:
            print(
                "\nPlease open the following URL in your browser to authorize the application:",
                file=sys.stderr,
            )
            print(f"{auth_url}\n", file=sys.stderr)

    async def _wait_for_callback(self, server: OAuthCallbackServer, expected_state: str) -> str:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.auth_timeout_ms / 1000

        while True:
            result = server.result
            if result.error:
                if result.error == "access_denied":
                    raise GoogleOAuth2UserDeniedError(
                        {
                            "operation": "wait_for_callback",
                            "redirect_uri": self.config.redirect_uri,
                            "scopes": self.config.scopes,
                        }
                    )
                raise GoogleOAuth2NetworkError(
                    f"Authorization error: {result.error}",
                    context={"operation": "wait_for_callback", "error": result.error},
                )

            if result.code:
                if not secrets.compare_digest(result.state or "", expected_state):
                    logger.error("OAuth2 callback state mismatch, rejecting authorization code")
                    raise GoogleOAuth2StateMismatchError(
                        {"operation": "wait_for_callback", "state_received": bool(result.state)}
                    )
                return result.code

            if loop.time() >= deadline:
                raise GoogleOAuth2NetworkError(
                    f"Authorization timeout after {self.auth_timeout_ms}ms",
                    context={"operation": "wait_for_callback", "timeout_ms": self.auth_timeout_ms},
                )
            await asyncio.sleep(CALLBACK_POLL_INTERVAL_S)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def _shared(
        task: asyncio.Task | None, factory: Callable[[], Awaitable[Any]]
    ) -> asyncio.Task:
        """Reuse the running task or start a new one."""
        if task is not None and not task.done():
            return task
        return asyncio.ensure_future(factory())

    @staticmethod
    async def _run_blocking(func: Callable[..., T], *args: Any) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func, *args)

    def _not_initialized(self, operation: str) -> GoogleServiceError:
        return GoogleServiceError(
            "OAuth2 provider not initialized",
            self.get_service_name(),
            "OAUTH2_CLIENT_NOT_INITIALIZED",
            500,
            {"operation": operation},
        )

    @staticmethod
    def _expiry_ms(credentials: Credentials) -> int | None:
        if credentials.expiry is None:
            return None
        return int(credentials.expiry.replace(tzinfo=timezone.utc).timestamp() * 1000)

    def _credentials_to_token(self, credentials: Credentials) -> OAuth2Token:
        """Convert google-auth Credentials to the stored token model."""
        scopes = credentials.scopes or self.config.scopes
        return OAuth2Token(  # nosec B106 - "Bearer" is OAuth token type, not a password
            access_token=credentials.token,
            refresh_token=credentials.refresh_token,
            expiry_date=self._expiry_ms(credentials),
            token_type="Bearer",
            scope=" ".join(scopes),
            id_token=credentials.id_token,
        )

    def _token_to_credentials(self, token: OAuth2Token) -> Credentials:
        """Convert a stored token to google-auth Credentials."""
        # google-auth compares expiry against naive UTC datetimes
        expiry = None
        if token.expires_at is not None:
            expiry = token.expires_at.replace(tzinfo=None)
        scopes = token.scope.split() if token.scope else list(self.config.scopes)
        return Credentials(
            token=token.access_token,
            refresh_token=token.refresh_token,
            id_token=token.id_token,
            token_uri=GOOGLE_TOKEN_URI,
            client_id=self.config.client_id,
            client_secret=self.config.client_secret,
            scopes=scopes,
            expiry=expiry,
        )
