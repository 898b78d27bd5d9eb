"""Normalization of heterogeneous failures into one error shape.

Google APIs report failures in several ways: an ``httpx.HTTPStatusError``
with a JSON ``{"error": {...}}`` body, SDK exceptions exposing ``status_code``
or ``code`` attributes, or plain exceptions whose message mentions a status.
``normalize_error`` reduces all of them to a ``NormalizedError`` so retry
classification never has to care which client produced the failure.

Extraction priority:
    1. Structured JSON error body on an attached response
    2. HTTP status of the attached response
    3. ``status_code`` / ``code`` / ``status`` attributes on the error
    4. A status code mentioned in the message text

Retry delays come from an explicit ``retry_after_ms`` attribute, then the
``Retry-After`` header, then a "retry after N" or "retry in N" phrase in
the message.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any

import httpx

RETRYABLE_REASONS = frozenset(
    {
        "rateLimitExceeded",
        "userRateLimitExceeded",
        "quotaExceeded",
        "backendError",
        "internalServerError",
    }
)

_STATUS_IN_MESSAGE = re.compile(r"(?:status|code)\s+(\d{3})", re.IGNORECASE)
_BARE_STATUS = re.compile(r"\b([3-5]\d{2})\b")
_RETRY_HINT_IN_MESSAGE = re.compile(r"retry (?:after|in) (\d+)", re.IGNORECASE)


@dataclass(frozen=True)
class NormalizedError:
    """Uniform view of a raw failure.

    Attributes:
        message: Best available human-readable message.
        http_status: HTTP status code, if one could be determined.
        status: Google API status string (e.g. ``PERMISSION_DENIED``).
        reason: Google API error reason (e.g. ``rateLimitExceeded``).
        domain: Google API error domain (e.g. ``usageLimits``).
        details: Raw ``details`` list from the error body.
        is_retryable: Whether the failure is transient by status or reason.
        retry_after_ms: Server-requested delay before retrying.
        original_error: The exception that was normalized.
    """

    message: str
    http_status: int | None = None
    status: str | None = None
    reason: str | None = None
    domain: str | None = None
    details: list[Any] = field(default_factory=list)
    is_retryable: bool = False
    retry_after_ms: int | None = None
    original_error: BaseException | None = None


def is_error_retryable(http_status: int | None, reason: str | None = None) -> bool:
    """Decide whether a status/reason pair describes a transient failure.

    Args:
        http_status: HTTP status code, if known.
        reason: Google API error reason, if known.

    Returns:
        True for 5xx, 429 or a rate-limit/backend reason.
    """
    if reason in RETRYABLE_REASONS:
        return True
    if http_status is None:
        return False
    return http_status == 429 or 500 <= http_status < 600


def parse_retry_after(value: str | None) -> int | None:
    """Convert a ``Retry-After`` header value into milliseconds.

    Accepts both delta-seconds and HTTP-date forms. Unparseable values
    yield None.
    """
    if not value:
        return None
    value = value.strip()
    if value.isdigit():
        return int(value) * 1000
    try:
        retry_at = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=timezone.utc)
    delta = (retry_at - datetime.now(timezone.utc)).total_seconds()
    return max(0, int(delta * 1000))


def _valid_status(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int) and 100 <= value <= 599:
        return value
    if isinstance(value, str) and value.isdigit():
        code = int(value)
        if 100 <= code <= 599:
            return code
    return None


def _response_of(error: BaseException) -> Any:
    if isinstance(error, httpx.HTTPStatusError):
        return error.response
    return getattr(error, "response", None)


def _response_status(response: Any) -> int | None:
    if response is None:
        return None
    for attr in ("status_code", "status"):
        status = _valid_status(getattr(response, attr, None))
        if status is not None:
            return status
    return None


def _response_body(response: Any) -> dict[str, Any] | None:
    """Return the ``error`` object of a Google JSON error body, if present."""
    if response is None:
        return None

    body: Any = getattr(response, "data", None)
    if body is None and callable(getattr(response, "json", None)):
        try:
            body = response.json()
        except ValueError:
            body = None

    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        error_body: dict[str, Any] = body["error"]
        return error_body
    return None


def _response_retry_after(response: Any) -> int | None:
    headers = getattr(response, "headers", None)
    if not headers:
        return None
    try:
        value = headers.get("retry-after") or headers.get("Retry-After")
    except AttributeError:
        return None
    return parse_retry_after(value)


def _status_from_message(message: str) -> int | None:
    match = _STATUS_IN_MESSAGE.search(message)
    if match:
        return _valid_status(match.group(1))
    match = _BARE_STATUS.search(message)
    if match:
        return _valid_status(match.group(1))
    return None


def _retry_after_from_message(message: str) -> int | None:
    """Read a "retry after N" or "retry in N" hint, in seconds, from the text."""
    match = _RETRY_HINT_IN_MESSAGE.search(message)
    return int(match.group(1)) * 1000 if match else None


def normalize_error(error: BaseException | None) -> NormalizedError:
    """Extract a ``NormalizedError`` from any raised exception.

    Args:
        error: The raw failure. None produces an "Unknown error" shape.

    Returns:
        NormalizedError describing the failure.

    Example:
        >>> request = httpx.Request("GET", "https://sheets.googleapis.com")
        >>> response = httpx.Response(429, request=request)
        >>> normalize_error(httpx.HTTPStatusError("rate", request=request, response=response))
        NormalizedError(message='rate', http_status=429, ...)
    """
    if error is None:
        return NormalizedError(message="Unknown error")

    message = str(error) or type(error).__name__
    explicit_retry_after = getattr(error, "retry_after_ms", None)
    if not isinstance(explicit_retry_after, int) or isinstance(explicit_retry_after, bool):
        explicit_retry_after = None

    response = _response_of(error)
    retry_after_ms = explicit_retry_after or _response_retry_after(response)
    if retry_after_ms is None:
        retry_after_ms = _retry_after_from_message(message)

    # 1. Structured Google error body
    body = _response_body(response)
    if body is not None:
        errors = body.get("errors") or []
        first = errors[0] if errors and isinstance(errors[0], dict) else {}
        http_status = _valid_status(body.get("code")) or _response_status(response)
        reason = first.get("reason")
        return NormalizedError(
            message=body.get("message") or first.get("message") or message,
            http_status=http_status,
            status=body.get("status"),
            reason=reason,
            domain=first.get("domain"),
            details=list(body.get("details") or []),
            is_retryable=is_error_retryable(http_status, reason),
            retry_after_ms=retry_after_ms,
            original_error=error,
        )

    # 2. Status of an attached response
    http_status = _response_status(response)

    # 3. Status-like attributes on the error itself
    if http_status is None:
        for attr in ("status_code", "code", "status"):
            http_status = _valid_status(getattr(error, attr, None))
            if http_status is not None:
                break

    # 4. Status mentioned in the message
    if http_status is None:
        http_status = _status_from_message(message)

    return NormalizedError(
        message=message,
        http_status=http_status,
        is_retryable=is_error_retryable(http_status),
        retry_after_ms=retry_after_ms,
        original_error=error,
    )
