"""Configuration for Google Workspace authentication and retries.

Values come from three layers, highest precedence first:

1. Environment variables
2. An optional YAML file named by ``GWORKSPACE_AUTH_CONFIG``
3. Hard-coded defaults

Invalid values never abort startup: each one falls back to its default and
is reported at DEBUG level.

Environment Variables:
    GOOGLE_AUTH_MODE: ``service-account`` or ``oauth2`` (auto-detected if unset)
    GOOGLE_SERVICE_ACCOUNT_KEY_PATH: Path to a service account JSON key
    GOOGLE_OAUTH_CLIENT_ID: OAuth2 client ID
    GOOGLE_OAUTH_CLIENT_SECRET: OAuth2 client secret
    GOOGLE_OAUTH_REDIRECT_URI: Redirect URI (default: http://localhost:{port}/oauth2callback)
    GOOGLE_OAUTH_SCOPES: Comma-separated scopes
    GOOGLE_OAUTH_PORT: Callback listener port (default: redirect URI port, else 3000)
    GOOGLE_OAUTH2_PROACTIVE_REFRESH: Refresh before expiry (default: true)
    GOOGLE_OAUTH2_REFRESH_THRESHOLD: Proactive refresh window in ms (default: 300000)
    GOOGLE_OAUTH2_REFRESH_JITTER: Random extra window in ms (default: 60000)
    GOOGLE_RETRY_MAX_ATTEMPTS: Attempts per operation (default: 3)
    GOOGLE_RETRY_BASE_DELAY: Initial backoff in ms (default: 1000)
    GOOGLE_RETRY_MAX_DELAY: Backoff ceiling in ms (default: 30000)
    GOOGLE_RETRY_JITTER: Jitter factor 0..1 (default: 0.1)
    GOOGLE_RETRY_RETRIABLE_CODES: Comma-separated HTTP codes (default: 429,500,502,503,504)
    GOOGLE_REQUEST_TIMEOUT: Per-request timeout in ms (default: 30000)
    GOOGLE_TOTAL_TIMEOUT: Whole-operation timeout in ms (default: 120000)
    GWORKSPACE_AUTH_TOKEN_PATH: Encrypted token file location
    GWORKSPACE_AUTH_ENV: ``test`` shortens the OAuth2 wait and skips the browser
"""

import logging
import os
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any, Literal
from urllib.parse import urlparse

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

logger = logging.getLogger(__name__)

# Scopes requested by service accounts and by default for OAuth2 clients
GOOGLE_SCOPES = [
    "https://www.googleapis.com/auth/spreadsheets",
    "https://www.googleapis.com/auth/drive.file",
    "https://www.googleapis.com/auth/calendar",
]

VALID_RETRIABLE_CODES = frozenset({429, 500, 502, 503, 504})

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_INITIAL_DELAY_MS = 1000
DEFAULT_MAX_DELAY_MS = 30000
DEFAULT_BACKOFF_MULTIPLIER = 2.0
DEFAULT_JITTER_FACTOR = 0.1
DEFAULT_RETRIABLE_CODES = (429, 500, 502, 503, 504)
DEFAULT_REQUEST_TIMEOUT_MS = 30000
DEFAULT_TOTAL_TIMEOUT_MS = 120000

DEFAULT_OAUTH_PORT = 3000
DEFAULT_REFRESH_THRESHOLD_MS = 300000
DEFAULT_REFRESH_JITTER_MS = 60000

CONFIG_FILE_ENV = "GWORKSPACE_AUTH_CONFIG"

AuthMode = Literal["service-account", "oauth2"]


def default_redirect_uri(port: int = DEFAULT_OAUTH_PORT) -> str:
    """Build the loopback redirect URI for a callback port."""
    return f"http://localhost:{port}/oauth2callback"


def redirect_uri_port(redirect_uri: str) -> int | None:
    """Return the port a redirect URI points at.

    An explicit port wins; otherwise the scheme's default port is used.
    Returns None for URIs that are not http(s) or carry an invalid port.
    """
    parsed = urlparse(redirect_uri)
    try:
        port = parsed.port
    except ValueError:
        return None
    if port is not None:
        return port
    return {"http": 80, "https": 443}.get(parsed.scheme)


class RetryConfig(BaseModel):
    """Immutable retry policy for one service instance.

    Attributes:
        max_attempts: Total invocations allowed, including the first.
        initial_delay_ms: Backoff before the second attempt.
        max_delay_ms: Ceiling for computed backoff.
        backoff_multiplier: Growth factor per attempt.
        jitter_factor: Fraction of the capped delay added at random.
        retriable_codes: HTTP statuses that are always retried.
        request_timeout_ms: Ceiling for a single attempt, if any.
        total_timeout_ms: Ceiling for the whole retry loop, if any.
    """

    max_attempts: int = Field(default=DEFAULT_MAX_ATTEMPTS, ge=1, description="Total attempts")
    initial_delay_ms: int = Field(
        default=DEFAULT_INITIAL_DELAY_MS, gt=0, description="First backoff in ms"
    )
    max_delay_ms: int = Field(default=DEFAULT_MAX_DELAY_MS, gt=0, description="Backoff cap in ms")
    backoff_multiplier: float = Field(
        default=DEFAULT_BACKOFF_MULTIPLIER, gt=0, description="Backoff growth factor"
    )
    jitter_factor: float = Field(
        default=DEFAULT_JITTER_FACTOR, ge=0, le=1, description="Random delay fraction"
    )
    retriable_codes: frozenset[int] = Field(
        default=frozenset(DEFAULT_RETRIABLE_CODES), description="Retried HTTP statuses"
    )
    request_timeout_ms: int | None = Field(default=None, gt=0, description="Per-attempt timeout")
    total_timeout_ms: int | None = Field(default=None, gt=0, description="Whole-loop timeout")

    model_config = {"frozen": True}

    @field_validator("retriable_codes", mode="before")
    @classmethod
    def _filter_codes(cls, value: Any) -> frozenset[int]:
        """Keep only the statuses that can legitimately be retried."""
        return normalize_retriable_codes(value)

    @model_validator(mode="after")
    def _check_delays(self) -> "RetryConfig":
        if self.max_delay_ms < self.initial_delay_ms:
            raise ValueError("max_delay_ms must be greater than or equal to initial_delay_ms")
        return self

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "RetryConfig":
        """Build a config accepting alternate key spellings.

        ``base_delay``, ``base_delay_ms`` and ``initial_delay`` all mean
        ``initial_delay_ms``; ``max_delay`` means ``max_delay_ms``;
        ``jitter`` means ``jitter_factor``.

        Args:
            data: Raw configuration mapping.

        Returns:
            Validated RetryConfig.
        """
        return cls(**canonical_retry_keys(data))


_RETRY_KEY_ALIASES = {
    "base_delay": "initial_delay_ms",
    "base_delay_ms": "initial_delay_ms",
    "initial_delay": "initial_delay_ms",
    "max_delay": "max_delay_ms",
    "jitter": "jitter_factor",
}


def canonical_retry_keys(data: Mapping[str, Any]) -> dict[str, Any]:
    """Rename alias keys to their canonical RetryConfig field names."""
    canonical: dict[str, Any] = {}
    for key, value in data.items():
        if value is None:
            continue
        canonical.setdefault(_RETRY_KEY_ALIASES.get(key, key), value)
    return canonical


def normalize_retriable_codes(value: Any) -> frozenset[int]:
    """Filter an iterable or comma-separated string of codes to the valid set."""
    if value is None:
        return frozenset(DEFAULT_RETRIABLE_CODES)
    if isinstance(value, str):
        value = value.split(",")
    codes = set()
    for item in value if isinstance(value, Iterable) else [value]:
        try:
            code = int(str(item).strip())
        except ValueError:
            continue
        if code in VALID_RETRIABLE_CODES:
            codes.add(code)
    return frozenset(codes)


class OAuth2Config(BaseModel):
    """OAuth2 client configuration.

    Attributes:
        client_id: Google OAuth client ID.
        client_secret: Google OAuth client secret.
        redirect_uri: Loopback redirect URI registered with Google.
        scopes: Scopes to request.
        port: Port for the local callback listener.
    """

    client_id: str = Field(..., description="OAuth client ID")
    client_secret: str = Field(default="", description="OAuth client secret")
    redirect_uri: str | None = Field(default=None, description="Redirect URI")
    scopes: list[str] = Field(default_factory=lambda: list(GOOGLE_SCOPES), description="Scopes")
    port: int | None = Field(default=None, description="Callback listener port")


class EnvironmentConfig(BaseModel):
    """Parsed process configuration."""

    auth_mode: AuthMode | None = None
    service_account_key_path: str | None = None
    oauth_client_id: str | None = None
    oauth_client_secret: str | None = None
    oauth_redirect_uri: str | None = None
    oauth_scopes: list[str] | None = None
    oauth_port: int | None = None
    proactive_refresh: bool = True
    refresh_threshold_ms: int = DEFAULT_REFRESH_THRESHOLD_MS
    refresh_jitter_ms: int = DEFAULT_REFRESH_JITTER_MS
    retry_max_attempts: int | None = None
    retry_base_delay_ms: int | None = None
    retry_max_delay_ms: int | None = None
    retry_jitter: float | None = None
    retry_retriable_codes: frozenset[int] | None = None
    request_timeout_ms: int = DEFAULT_REQUEST_TIMEOUT_MS
    total_timeout_ms: int = DEFAULT_TOTAL_TIMEOUT_MS
    token_path: str | None = None
    test_mode: bool = False


# =============================================================================
# Parsing helpers
# =============================================================================


def _effective(value: str | None) -> str | None:
    if value is None or not str(value).strip():
        return None
    return str(value).strip()


def _parse_int(raw: str | None, name: str, minimum: int = 1) -> int | None:
    value = _effective(raw)
    if value is None:
        return None
    try:
        parsed = int(value)
    except ValueError:
        logger.debug("Ignoring %s=%r: not an integer", name, value)
        return None
    if parsed < minimum:
        logger.debug("Ignoring %s=%r: below %d", name, value, minimum)
        return None
    return parsed


def _int_or_default(
    values: Mapping[str, str], name: str, default: int, minimum: int = 1
) -> int:
    parsed = _parse_int(values.get(name), name, minimum)
    return default if parsed is None else parsed


def _parse_float(raw: str | None, name: str, low: float, high: float) -> float | None:
    value = _effective(raw)
    if value is None:
        return None
    try:
        parsed = float(value)
    except ValueError:
        logger.debug("Ignoring %s=%r: not a number", name, value)
        return None
    if not low <= parsed <= high:
        logger.debug("Ignoring %s=%r: outside [%s, %s]", name, value, low, high)
        return None
    return parsed


def _parse_bool(raw: str | None, default: bool) -> bool:
    value = _effective(raw)
    if value is None:
        return default
    return value.lower() not in ("0", "false", "off", "no")


def load_yaml_config(path: str | Path | None) -> dict[str, Any]:
    """Load the optional YAML configuration file.

    Args:
        path: File location. None disables file configuration.

    Returns:
        Parsed mapping, or an empty dict if the file is absent or unreadable.
    """
    if not path:
        return {}
    config_path = Path(path).expanduser()
    if not config_path.exists():
        logger.warning("Configuration file not found: %s", config_path)
        return {}
    try:
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.error("Error loading configuration file %s: %s", config_path, e)
        return {}
    if not isinstance(data, dict):
        logger.warning("Configuration file %s is not a mapping, ignoring", config_path)
        return {}
    return data


def _yaml_to_env(data: Mapping[str, Any]) -> dict[str, str]:
    """Flatten YAML sections into the equivalent environment variable names."""
    sections = {
        "auth": {
            "mode": "GOOGLE_AUTH_MODE",
            "service_account_key_path": "GOOGLE_SERVICE_ACCOUNT_KEY_PATH",
        },
        "oauth": {
            "client_id": "GOOGLE_OAUTH_CLIENT_ID",
            "redirect_uri": "GOOGLE_OAUTH_REDIRECT_URI",
            "scopes": "GOOGLE_OAUTH_SCOPES",
            "port": "GOOGLE_OAUTH_PORT",
            "proactive_refresh": "GOOGLE_OAUTH2_PROACTIVE_REFRESH",
            "refresh_threshold": "GOOGLE_OAUTH2_REFRESH_THRESHOLD",
            "refresh_jitter": "GOOGLE_OAUTH2_REFRESH_JITTER",
        },
        "retry": {
            "max_attempts": "GOOGLE_RETRY_MAX_ATTEMPTS",
            "base_delay": "GOOGLE_RETRY_BASE_DELAY",
            "max_delay": "GOOGLE_RETRY_MAX_DELAY",
            "jitter": "GOOGLE_RETRY_JITTER",
            "retriable_codes": "GOOGLE_RETRY_RETRIABLE_CODES",
        },
        "timeouts": {
            "request": "GOOGLE_REQUEST_TIMEOUT",
            "total": "GOOGLE_TOTAL_TIMEOUT",
        },
    }
    env: dict[str, str] = {}
    for section, keys in sections.items():
        values = data.get(section) or {}
        if not isinstance(values, dict):
            continue
        for key, env_name in keys.items():
            if values.get(key) is None:
                continue
            value = values[key]
            if isinstance(value, (list, tuple)):
                value = ",".join(str(v) for v in value)
            elif isinstance(value, bool):
                value = "true" if value else "false"
            env[env_name] = str(value)
    return env


def load_environment_config(environ: Mapping[str, str] | None = None) -> EnvironmentConfig:
    """Parse configuration from the environment and optional YAML file.

    Args:
        environ: Variables to read. Defaults to ``os.environ``.

    Returns:
        EnvironmentConfig with invalid values replaced by defaults.
    """
    if environ is None:
        environ = os.environ
    merged: dict[str, str] = {
        **_yaml_to_env(load_yaml_config(environ.get(CONFIG_FILE_ENV))),
        **{k: v for k, v in environ.items() if v is not None},
    }

    auth_mode = _effective(merged.get("GOOGLE_AUTH_MODE"))
    if auth_mode not in (None, "service-account", "oauth2"):
        logger.debug("Ignoring GOOGLE_AUTH_MODE=%r", auth_mode)
        auth_mode = None

    client_id = _effective(merged.get("GOOGLE_OAUTH_CLIENT_ID"))
    port = _parse_int(merged.get("GOOGLE_OAUTH_PORT"), "GOOGLE_OAUTH_PORT")
    if port is not None and port > 65535:
        logger.debug("Ignoring GOOGLE_OAUTH_PORT=%d: not a valid port", port)
        port = None

    redirect_uri = _effective(merged.get("GOOGLE_OAUTH_REDIRECT_URI"))
    if port is None and redirect_uri:
        port = redirect_uri_port(redirect_uri)
    if port is None and client_id:
        port = DEFAULT_OAUTH_PORT
    if redirect_uri is None and client_id:
        redirect_uri = default_redirect_uri(port or DEFAULT_OAUTH_PORT)

    scopes_raw = _effective(merged.get("GOOGLE_OAUTH_SCOPES"))
    scopes: list[str] | None = None
    if scopes_raw:
        scopes = [s.strip() for s in scopes_raw.split(",") if s.strip()]
    elif client_id:
        scopes = list(GOOGLE_SCOPES)

    base_delay = _parse_int(merged.get("GOOGLE_RETRY_BASE_DELAY"), "GOOGLE_RETRY_BASE_DELAY")
    max_delay = _parse_int(merged.get("GOOGLE_RETRY_MAX_DELAY"), "GOOGLE_RETRY_MAX_DELAY")
    # Compare against the other delay's effective value, default included
    effective_base = DEFAULT_INITIAL_DELAY_MS if base_delay is None else base_delay
    effective_max = DEFAULT_MAX_DELAY_MS if max_delay is None else max_delay
    if effective_max < effective_base:
        logger.debug(
            "Ignoring retry delays: GOOGLE_RETRY_MAX_DELAY=%d below GOOGLE_RETRY_BASE_DELAY=%d",
            effective_max,
            effective_base,
        )
        base_delay = max_delay = None

    codes_raw = _effective(merged.get("GOOGLE_RETRY_RETRIABLE_CODES"))
    codes = normalize_retriable_codes(codes_raw) if codes_raw else None

    return EnvironmentConfig(
        auth_mode=auth_mode,
        service_account_key_path=_effective(merged.get("GOOGLE_SERVICE_ACCOUNT_KEY_PATH")),
        oauth_client_id=client_id,
        oauth_client_secret=_effective(merged.get("GOOGLE_OAUTH_CLIENT_SECRET")),
        oauth_redirect_uri=redirect_uri,
        oauth_scopes=scopes,
        oauth_port=port,
        proactive_refresh=_parse_bool(merged.get("GOOGLE_OAUTH2_PROACTIVE_REFRESH"), True),
        refresh_threshold_ms=_int_or_default(
            merged, "GOOGLE_OAUTH2_REFRESH_THRESHOLD", DEFAULT_REFRESH_THRESHOLD_MS, minimum=0
        ),
        refresh_jitter_ms=_int_or_default(
            merged, "GOOGLE_OAUTH2_REFRESH_JITTER", DEFAULT_REFRESH_JITTER_MS, minimum=0
        ),
        retry_max_attempts=_parse_int(
            merged.get("GOOGLE_RETRY_MAX_ATTEMPTS"), "GOOGLE_RETRY_MAX_ATTEMPTS"
        ),
        retry_base_delay_ms=base_delay,
        retry_max_delay_ms=max_delay,
        retry_jitter=_parse_float(merged.get("GOOGLE_RETRY_JITTER"), "GOOGLE_RETRY_JITTER", 0, 1),
        retry_retriable_codes=codes,
        request_timeout_ms=_int_or_default(
            merged, "GOOGLE_REQUEST_TIMEOUT", DEFAULT_REQUEST_TIMEOUT_MS
        ),
        total_timeout_ms=_int_or_default(merged, "GOOGLE_TOTAL_TIMEOUT", DEFAULT_TOTAL_TIMEOUT_MS),
        token_path=_effective(merged.get("GWORKSPACE_AUTH_TOKEN_PATH")),
        test_mode=(_effective(merged.get("GWORKSPACE_AUTH_ENV")) or "").lower() == "test",
    )


def create_retry_config_from_env(environ: Mapping[str, str] | None = None) -> RetryConfig:
    """Build a RetryConfig from environment values over defaults."""
    env = load_environment_config(environ)
    return merge_retry_config(env)


def merge_retry_config(
    env: EnvironmentConfig, overrides: RetryConfig | Mapping[str, Any] | None = None
) -> RetryConfig:
    """Merge explicit overrides over environment values over defaults.

    Args:
        env: Parsed environment configuration.
        overrides: A complete RetryConfig (used as-is) or a partial mapping
            whose keys may use any accepted alias spelling.

    Returns:
        Immutable RetryConfig.
    """
    if isinstance(overrides, RetryConfig):
        return overrides

    from_env: dict[str, Any] = {
        "max_attempts": env.retry_max_attempts,
        "initial_delay_ms": env.retry_base_delay_ms,
        "max_delay_ms": env.retry_max_delay_ms,
        "jitter_factor": env.retry_jitter,
        "retriable_codes": env.retry_retriable_codes,
        "request_timeout_ms": env.request_timeout_ms,
        "total_timeout_ms": env.total_timeout_ms,
    }
    merged = {k: v for k, v in from_env.items() if v is not None}
    merged.update(canonical_retry_keys(overrides or {}))
    return RetryConfig(**merged)
