"""Error taxonomy for Google Workspace authentication and API calls.

Every failure that crosses a public boundary is one of the classes below.
The set is closed: each class belongs to exactly one ``ErrorKind`` and
declares its retryability as a class attribute, so retry decisions never
depend on runtime shape inspection.

Hierarchy:
    GoogleWorkspaceError
    ├── GoogleAuthError
    │   ├── GoogleAuthTokenExpiredError
    │   ├── GoogleAuthInvalidCredentialsError
    │   ├── GoogleAuthMissingCredentialsError
    │   └── GoogleOAuth2Error
    │       ├── GoogleOAuth2AuthorizationRequiredError
    │       ├── GoogleOAuth2UserDeniedError
    │       ├── GoogleOAuth2StateMismatchError
    │       ├── GoogleOAuth2RefreshTokenExpiredError
    │       ├── GoogleOAuth2NetworkError
    │       └── GoogleOAuth2TokenStorageError
    ├── GoogleTokenCacheCorruptedError
    ├── GoogleTimeoutError
    ├── GoogleOperationCancelledError
    ├── GoogleServiceError
    └── GoogleConfigError
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Literal

from gworkspace_auth.normalization import normalize_error

AuthType = Literal["service-account", "oauth2"]
TimeoutType = Literal["request", "total"]
StorageSource = Literal["keyring", "file"]


class ErrorKind(str, Enum):
    """Closed set of error kinds."""

    AUTH = "auth"
    TIMEOUT = "timeout"
    STORAGE = "storage"
    SERVICE = "service"
    CONFIG = "config"
    CANCELLED = "cancelled"


class GoogleWorkspaceError(Exception):
    """Base class for all domain errors.

    Attributes:
        message: Human-readable description.
        error_code: Stable machine-readable code.
        status_code: HTTP-like status code.
        context: Structured diagnostic data.
        timestamp: When the error was created (UTC).
        retry_after_ms: Server-requested retry delay, if any.
    """

    kind: ClassVar[ErrorKind] = ErrorKind.SERVICE
    default_code: ClassVar[str] = "GOOGLE_WORKSPACE_ERROR"
    default_status: ClassVar[int] = 500
    retryable: ClassVar[bool] = False

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        status_code: int | None = None,
        context: dict[str, Any] | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.default_code
        self.status_code = self.default_status if status_code is None else status_code
        self.context: dict[str, Any] = dict(context or {})
        self.timestamp = datetime.now(timezone.utc)
        self.retry_after_ms: int | None = None
        if cause is not None:
            self.__cause__ = cause

    def is_retryable(self) -> bool:
        """Whether retrying the failed operation may succeed."""
        return self.retryable

    def to_dict(self) -> dict[str, Any]:
        """Serialize the error for structured logging."""
        data: dict[str, Any] = {
            "name": type(self).__name__,
            "kind": self.kind.value,
            "message": self.message,
            "code": self.error_code,
            "status_code": self.status_code,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "retryable": self.is_retryable(),
        }
        if self.retry_after_ms is not None:
            data["retry_after_ms"] = self.retry_after_ms
        if self.__cause__ is not None:
            data["cause"] = str(self.__cause__)
        return data


# =============================================================================
# Authentication errors
# =============================================================================


class GoogleAuthError(GoogleWorkspaceError):
    """Authentication failure."""

    kind = ErrorKind.AUTH
    default_code = "GOOGLE_AUTH_ERROR"
    default_status = 401

    def __init__(
        self,
        message: str,
        auth_type: AuthType = "service-account",
        context: dict[str, Any] | None = None,
        cause: BaseException | None = None,
        error_code: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(
            message, error_code, status_code, {"auth_type": auth_type, **(context or {})}, cause
        )
        self.auth_type = auth_type


class GoogleAuthTokenExpiredError(GoogleAuthError):
    """Access token expired; a refresh may fix it."""

    default_code = "GOOGLE_AUTH_TOKEN_EXPIRED"
    retryable = True

    def __init__(
        self, auth_type: AuthType = "service-account", context: dict[str, Any] | None = None
    ) -> None:
        super().__init__("Authentication token has expired", auth_type, context)


class GoogleAuthInvalidCredentialsError(GoogleAuthError):
    """Credentials were rejected or could not be loaded."""

    default_code = "GOOGLE_AUTH_INVALID_CREDENTIALS"
    default_status = 403

    def __init__(
        self, auth_type: AuthType = "service-account", context: dict[str, Any] | None = None
    ) -> None:
        super().__init__("Invalid authentication credentials", auth_type, context)


class GoogleAuthMissingCredentialsError(GoogleAuthError):
    """Required credentials are not configured."""

    default_code = "GOOGLE_AUTH_MISSING_CREDENTIALS"

    def __init__(
        self, auth_type: AuthType = "service-account", context: dict[str, Any] | None = None
    ) -> None:
        super().__init__("Missing authentication credentials", auth_type, context)


class GoogleOAuth2Error(GoogleAuthError):
    """OAuth2 flow failure."""

    default_code = "GOOGLE_OAUTH2_ERROR"

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        status_code: int | None = None,
        context: dict[str, Any] | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(
            message,
            "oauth2",
            context,
            cause,
            error_code=error_code,
            status_code=status_code,
        )


class GoogleOAuth2AuthorizationRequiredError(GoogleOAuth2Error):
    """User consent has not been granted yet."""

    default_code = "GOOGLE_OAUTH2_AUTHORIZATION_REQUIRED"

    def __init__(self, context: dict[str, Any] | None = None) -> None:
        super().__init__(
            "OAuth2 authorization required. Please complete the authorization flow.",
            context=context,
        )


class GoogleOAuth2UserDeniedError(GoogleOAuth2Error):
    """The user declined the consent screen."""

    default_code = "GOOGLE_OAUTH2_USER_DENIED"
    default_status = 403

    def __init__(self, context: dict[str, Any] | None = None) -> None:
        super().__init__(
            "User denied OAuth2 authorization. Grant access to continue.",
            context=context,
        )


class GoogleOAuth2StateMismatchError(GoogleOAuth2Error):
    """The callback ``state`` did not match the one issued for the flow."""

    default_code = "GOOGLE_OAUTH2_STATE_MISMATCH"
    default_status = 400

    def __init__(self, context: dict[str, Any] | None = None) -> None:
        super().__init__(
            "State parameter mismatch - possible CSRF attack. Authorization was rejected.",
            context=context,
        )


class GoogleOAuth2RefreshTokenExpiredError(GoogleOAuth2Error):
    """Refresh token is missing, revoked or expired."""

    default_code = "GOOGLE_OAUTH2_REFRESH_TOKEN_EXPIRED"

    def __init__(self, context: dict[str, Any] | None = None) -> None:
        super().__init__(
            "OAuth2 refresh token has expired. Re-authorization required.",
            context=context,
        )


class GoogleOAuth2NetworkError(GoogleOAuth2Error):
    """Network or timeout failure during the OAuth2 flow."""

    default_code = "GOOGLE_OAUTH2_NETWORK_ERROR"
    default_status = 503
    retryable = True

    def __init__(
        self,
        message: str,
        cause: BaseException | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, context=context, cause=cause)


class GoogleOAuth2TokenStorageError(GoogleOAuth2Error):
    """Tokens could not be saved, loaded or deleted."""

    kind = ErrorKind.STORAGE
    default_code = "GOOGLE_OAUTH2_TOKEN_STORAGE_ERROR"
    default_status = 500

    def __init__(
        self,
        operation: str,
        cause: BaseException | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        detail = f": {cause}" if cause is not None else ""
        super().__init__(
            f"Failed to {operation} OAuth2 tokens{detail}",
            context={"operation": operation, **(context or {})},
            cause=cause,
        )
        self.operation = operation


# =============================================================================
# Storage, timeout and service errors
# =============================================================================


class GoogleTokenCacheCorruptedError(GoogleWorkspaceError):
    """Persisted credentials exist but cannot be decoded or validated.

    Never retried: the caller should re-authenticate.
    """

    kind = ErrorKind.STORAGE
    default_code = "GOOGLE_TOKEN_CACHE_CORRUPTED"

    def __init__(
        self,
        source: StorageSource,
        corruption_type: str,
        backup_path: str | None = None,
        cause: BaseException | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            f"Token cache corrupted (source: {source}, type: {corruption_type}). "
            "Please re-authenticate.",
            context={
                "source": source,
                "corruption_type": corruption_type,
                "backup_path": backup_path,
                **(context or {}),
            },
            cause=cause,
        )
        self.source = source
        self.corruption_type = corruption_type
        self.backup_path = backup_path


class GoogleTimeoutError(GoogleWorkspaceError):
    """A single request or the whole retry loop ran out of time.

    Request timeouts are retry-eligible; total timeouts are terminal.
    """

    kind = ErrorKind.TIMEOUT
    default_code = "TIMEOUT_ERROR"
    default_status = 408

    def __init__(
        self,
        message: str,
        timeout_type: TimeoutType,
        timeout_ms: int,
        context: dict[str, Any] | None = None,
        elapsed_ms: int | None = None,
        completed_attempts: int | None = None,
    ) -> None:
        extra: dict[str, Any] = {"timeout_type": timeout_type, "timeout_ms": timeout_ms}
        if elapsed_ms is not None:
            extra["elapsed_ms"] = elapsed_ms
        if completed_attempts is not None:
            extra["completed_attempts"] = completed_attempts
        super().__init__(message, context={**(context or {}), **extra})
        self.timeout_type = timeout_type
        self.timeout_ms = timeout_ms
        self.elapsed_ms = elapsed_ms
        self.completed_attempts = completed_attempts

    def is_retryable(self) -> bool:
        return self.timeout_type == "request"


class GoogleOperationCancelledError(GoogleWorkspaceError):
    """The caller cancelled the operation."""

    kind = ErrorKind.CANCELLED
    default_code = "OPERATION_CANCELLED"
    default_status = 499

    def __init__(
        self, message: str = "Operation cancelled", context: dict[str, Any] | None = None
    ) -> None:
        super().__init__(message, context=context)


class GoogleServiceError(GoogleWorkspaceError):
    """Vendor API failure carrying the original HTTP status."""

    kind = ErrorKind.SERVICE
    default_code = "GOOGLE_SERVICE_ERROR"

    def __init__(
        self,
        message: str,
        service: str,
        error_code: str | None = None,
        status_code: int = 500,
        context: dict[str, Any] | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(
            message, error_code, status_code, {"service": service, **(context or {})}, cause
        )
        self.service = service

    def is_retryable(self) -> bool:
        return self.status_code >= 500 or self.status_code == 429


class GoogleConfigError(GoogleWorkspaceError):
    """Invalid or incomplete configuration."""

    kind = ErrorKind.CONFIG
    default_code = "GOOGLE_CONFIG_ERROR"


# =============================================================================
# Factories
# =============================================================================

_EXPIRED_REASONS = frozenset({"authError", "expired", "tokenExpired"})
_INVALID_REASONS = frozenset({"forbidden", "invalid", "invalidCredentials"})
_MISSING_REASONS = frozenset({"required", "missing", "missingCredentials"})


def create_auth_error(
    cause: BaseException | None,
    auth_type: AuthType = "service-account",
    context: dict[str, Any] | None = None,
) -> GoogleAuthError:
    """Classify a raw failure into the most specific auth error.

    Structured reason first, then HTTP status, then message keywords (only
    when no reason was reported).

    Args:
        cause: The raw failure.
        auth_type: Which provider observed the failure.
        context: Extra diagnostic data.

    Returns:
        A GoogleAuthError subclass instance.
    """
    if isinstance(cause, GoogleAuthError):
        return cause

    normalized = normalize_error(cause)
    enriched: dict[str, Any] = {
        "http_status": normalized.http_status,
        "reason": normalized.reason,
        **(context or {}),
    }

    error: GoogleAuthError | None = None
    if cause is None:
        return GoogleAuthError("Unknown authentication error", auth_type, enriched)

    if normalized.reason in _EXPIRED_REASONS:
        error = GoogleAuthTokenExpiredError(auth_type, enriched)
    elif normalized.reason in _INVALID_REASONS:
        error = GoogleAuthInvalidCredentialsError(auth_type, enriched)
    elif normalized.reason in _MISSING_REASONS:
        error = GoogleAuthMissingCredentialsError(auth_type, enriched)
    elif normalized.http_status == 401:
        lowered = normalized.message.lower()
        if "missing" in lowered or "required" in lowered:
            error = GoogleAuthMissingCredentialsError(auth_type, enriched)
        else:
            error = GoogleAuthTokenExpiredError(auth_type, enriched)
    elif normalized.http_status == 403:
        error = GoogleAuthInvalidCredentialsError(auth_type, enriched)
    elif normalized.reason is None:
        lowered = str(cause).lower()
        if "token" in lowered and "expired" in lowered:
            error = GoogleAuthTokenExpiredError(auth_type, enriched)
        elif "credential" in lowered or "invalid" in lowered:
            error = GoogleAuthInvalidCredentialsError(auth_type, enriched)
        elif "missing" in lowered or "required" in lowered:
            error = GoogleAuthMissingCredentialsError(auth_type, enriched)

    if error is None:
        return GoogleAuthError(normalized.message, auth_type, enriched, cause)

    # Prefer the API's own message over the stock text
    if normalized.message and normalized.message != str(cause):
        error.message = normalized.message
        error.args = (normalized.message,)
    error.__cause__ = cause
    return error
