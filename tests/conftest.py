"""Shared pytest fixtures for gworkspace-auth tests.

This module provides reusable fixtures for token storage, configuration,
OAuth2 providers and Google credential mocks.
"""

import io
from collections.abc import Generator
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from gworkspace_auth.auth.models import ClientConfig, OAuth2Token, StoredCredentials, now_ms
from gworkspace_auth.config import EnvironmentConfig, OAuth2Config, RetryConfig

TEST_CLIENT_ID = "test-client-id.apps.googleusercontent.com"
TEST_CLIENT_SECRET = "test-client-secret"  # pragma: allowlist secret

# =============================================================================
# Keyring Doubles
# =============================================================================


class InMemoryKeyring:
    """Keyring backend keeping passwords in a dict."""

    def __init__(self) -> None:
        self.passwords: dict[tuple[str, str], str] = {}

    def set_password(self, service_name: str, username: str, password: str) -> None:
        self.passwords[(service_name, username)] = password

    def get_password(self, service_name: str, username: str) -> str | None:
        return self.passwords.get((service_name, username))

    def delete_password(self, service_name: str, username: str) -> None:
        if (service_name, username) not in self.passwords:
            raise KeyError(f"No password for {service_name}/{username}")
        del self.passwords[(service_name, username)]


class UnavailableKeyring:
    """Keyring backend that fails like a headless system without a keyring."""

    def set_password(self, service_name: str, username: str, password: str) -> None:
        raise RuntimeError("No recommended backend was available")

    def get_password(self, service_name: str, username: str) -> str | None:
        raise RuntimeError("No recommended backend was available")

    def delete_password(self, service_name: str, username: str) -> None:
        raise RuntimeError("No recommended backend was available")


@pytest.fixture
def memory_keyring() -> InMemoryKeyring:
    """Create an empty in-memory keyring."""
    return InMemoryKeyring()


@pytest.fixture
def unavailable_keyring() -> UnavailableKeyring:
    """Create a keyring that is never available."""
    return UnavailableKeyring()


# =============================================================================
# Token Fixtures
# =============================================================================


@pytest.fixture
def valid_token() -> OAuth2Token:
    """Create a valid, non-expired OAuth2 token."""
    return OAuth2Token(
        access_token="test_access_token_abc123",
        refresh_token="test_refresh_token_xyz789",
        expiry_date=now_ms() + 3_600_000,
        scope="https://www.googleapis.com/auth/spreadsheets",
        token_type="Bearer",
    )


@pytest.fixture
def expired_token() -> OAuth2Token:
    """Create an expired OAuth2 token."""
    return OAuth2Token(
        access_token="expired_access_token",
        refresh_token="test_refresh_token",
        expiry_date=now_ms() - 3_600_000,
        token_type="Bearer",
    )


@pytest.fixture
def stored_credentials(valid_token: OAuth2Token) -> StoredCredentials:
    """Create a complete credential set for the test client."""
    return StoredCredentials(
        tokens=valid_token,
        client_config=ClientConfig(
            client_id=TEST_CLIENT_ID,
            scopes=["https://www.googleapis.com/auth/spreadsheets"],
        ),
    )


# =============================================================================
# Token Storage Fixtures
# =============================================================================


@pytest.fixture
def temp_token_path(tmp_path: Path) -> Path:
    """Get the path for a temporary encrypted token file."""
    return tmp_path / ".config" / "gworkspace-auth" / "oauth2-tokens.enc"


@pytest.fixture
def metrics_stream() -> io.StringIO:
    """Capture AUTH_METRIC lines."""
    return io.StringIO()


@pytest.fixture
def auth_metrics(metrics_stream: io.StringIO):
    """Create an enabled metrics emitter writing to a buffer."""
    from gworkspace_auth.auth.metrics import AuthMetrics

    return AuthMetrics(enabled=True, stream=metrics_stream)


@pytest.fixture
def token_storage(temp_token_path: Path, memory_keyring: InMemoryKeyring, auth_metrics):
    """Create a TokenStorage with an in-memory keyring and temporary file."""
    from gworkspace_auth.auth.token_storage import TokenStorage

    return TokenStorage(
        token_path=temp_token_path, keyring_backend=memory_keyring, metrics=auth_metrics
    )


@pytest.fixture
def file_token_storage(
    temp_token_path: Path, unavailable_keyring: UnavailableKeyring, auth_metrics
):
    """Create a TokenStorage whose keyring is unavailable."""
    from gworkspace_auth.auth.token_storage import TokenStorage

    return TokenStorage(
        token_path=temp_token_path, keyring_backend=unavailable_keyring, metrics=auth_metrics
    )


# =============================================================================
# Configuration Fixtures
# =============================================================================


@pytest.fixture
def fast_retry_config() -> RetryConfig:
    """Create a retry policy with short delays and no jitter."""
    return RetryConfig(
        max_attempts=3,
        initial_delay_ms=10,
        max_delay_ms=100,
        backoff_multiplier=2.0,
        jitter_factor=0.0,
    )


@pytest.fixture
def test_environment() -> EnvironmentConfig:
    """Create configuration for test mode with proactive refresh on."""
    return EnvironmentConfig(test_mode=True)


@pytest.fixture
def oauth2_config() -> OAuth2Config:
    """Create a valid OAuth2 client configuration."""
    return OAuth2Config(
        client_id=TEST_CLIENT_ID,
        client_secret=TEST_CLIENT_SECRET,
        scopes=["https://www.googleapis.com/auth/spreadsheets"],
        port=3000,
    )


# =============================================================================
# OAuth2 Provider Fixtures
# =============================================================================


@pytest.fixture
def oauth_provider(
    oauth2_config: OAuth2Config,
    token_storage,
    fast_retry_config: RetryConfig,
    test_environment: EnvironmentConfig,
    auth_metrics,
):
    """Create an OAuth2AuthProvider with in-memory storage."""
    from gworkspace_auth.auth.oauth_provider import OAuth2AuthProvider

    return OAuth2AuthProvider(
        oauth2_config,
        token_storage,
        retry_config=fast_retry_config,
        metrics=auth_metrics,
        environment=test_environment,
        auth_timeout_ms=500,
    )


# =============================================================================
# Mock Google Credentials
# =============================================================================


@pytest.fixture
def mock_google_credentials() -> MagicMock:
    """Create a mock Google OAuth2 Credentials object."""
    mock_creds = MagicMock()
    mock_creds.token = "mock_access_token"
    mock_creds.refresh_token = "mock_refresh_token"
    mock_creds.expiry = (datetime.now(timezone.utc) + timedelta(hours=1)).replace(tzinfo=None)
    mock_creds.id_token = None
    mock_creds.scopes = ["https://www.googleapis.com/auth/spreadsheets"]
    return mock_creds


# =============================================================================
# Environment Isolation
# =============================================================================


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    """Remove configuration variables that would leak into tests."""
    for name in (
        "GOOGLE_AUTH_MODE",
        "GOOGLE_SERVICE_ACCOUNT_KEY_PATH",
        "GOOGLE_OAUTH_CLIENT_ID",
        "GOOGLE_OAUTH_CLIENT_SECRET",
        "GOOGLE_OAUTH_REDIRECT_URI",
        "GOOGLE_OAUTH_SCOPES",
        "GOOGLE_OAUTH_PORT",
        "GOOGLE_OAUTH2_PROACTIVE_REFRESH",
        "GOOGLE_OAUTH2_REFRESH_THRESHOLD",
        "GOOGLE_OAUTH2_REFRESH_JITTER",
        "GOOGLE_RETRY_MAX_ATTEMPTS",
        "GOOGLE_RETRY_BASE_DELAY",
        "GOOGLE_RETRY_MAX_DELAY",
        "GOOGLE_RETRY_JITTER",
        "GOOGLE_RETRY_RETRIABLE_CODES",
        "GOOGLE_REQUEST_TIMEOUT",
        "GOOGLE_TOTAL_TIMEOUT",
        "GWORKSPACE_AUTH_TOKEN_PATH",
        "GWORKSPACE_AUTH_ENV",
        "GWORKSPACE_AUTH_CONFIG",
        "AUTH_METRICS",
    ):
        monkeypatch.delenv(name, raising=False)
    yield


# =============================================================================
# CLI Test Fixtures
# =============================================================================


@pytest.fixture
def cli_runner():
    """Create a Click CLI test runner."""
    from click.testing import CliRunner

    return CliRunner()
