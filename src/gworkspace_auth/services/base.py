"""Base class for services that call Google APIs.

Subclasses wrap each vendor call in ``execute_with_retry`` and get
backoff, timeouts, error conversion and structured logging for free.

Example:
    ```python
    class SheetsService(GoogleService):
        def get_service_name(self) -> str:
            return "SheetsService"

        async def read_range(self, spreadsheet_id: str, a1: str) -> Result[dict]:
            context = self.create_context("read_range", {"spreadsheet_id": spreadsheet_id})
            return await self.execute_with_retry(lambda: self._fetch(spreadsheet_id, a1), context)
    ```
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import Any, TypeVar

from gworkspace_auth.config import (
    EnvironmentConfig,
    RetryConfig,
    load_environment_config,
    merge_retry_config,
)
from gworkspace_auth.errors import GoogleServiceError, GoogleWorkspaceError, create_auth_error
from gworkspace_auth.normalization import normalize_error
from gworkspace_auth.result import Result
from gworkspace_auth.retry import Operation, RequestContext, RetryExecutor, generate_request_id

logger = logging.getLogger(__name__)

T = TypeVar("T")

AUTH_REASONS = frozenset(
    {"authError", "forbidden", "invalid", "required", "missing", "expired", "tokenExpired"}
)


class GoogleService(ABC):
    """Shared retry and error-handling behavior for Google services.

    Attributes:
        retry_config: Immutable retry policy for this instance.
        environment: Parsed process configuration.
    """

    def __init__(
        self,
        retry_config: RetryConfig | Mapping[str, Any] | None = None,
        environment: EnvironmentConfig | None = None,
    ) -> None:
        """Initialize the service.

        Args:
            retry_config: Complete policy, or partial overrides merged over
                environment values and defaults.
            environment: Parsed configuration. Read from the process
                environment when omitted.
        """
        self.environment = environment or load_environment_config()
        self.retry_config = merge_retry_config(self.environment, retry_config)
        self._executor = RetryExecutor(
            self.retry_config, self.get_service_name(), convert_error=self.convert_error
        )
        logger.debug(
            "%s initialized (max attempts %d, initial delay %dms, max delay %dms, codes %s)",
            self.get_service_name(),
            self.retry_config.max_attempts,
            self.retry_config.initial_delay_ms,
            self.retry_config.max_delay_ms,
            sorted(self.retry_config.retriable_codes),
        )

    @abstractmethod
    def get_service_name(self) -> str:
        """Service label used in logs, request IDs and errors."""

    def get_service_version(self) -> str:
        return "v1"

    def create_context(
        self, operation_name: str, data: dict[str, Any] | None = None
    ) -> RequestContext:
        """Create a logging context with a fresh request ID."""
        return RequestContext(
            operation_name=operation_name,
            request_id=generate_request_id(self.get_service_name()),
            data=dict(data or {}),
        )

    async def execute_with_retry(
        self,
        operation: Operation[T],
        context: RequestContext | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> Result[T]:
        """Run ``operation`` under this service's retry policy.

        Args:
            operation: Zero-argument coroutine function, safe to repeat.
            context: Logging context; created if omitted.
            cancel_event: Setting it ends the call as cancelled.

        Returns:
            Result with the operation's value or the final domain error.
        """
        context = context or self.create_context("operation")
        return await self._executor.execute(operation, context, cancel_event)

    def convert_service_specific_error(
        self, error: BaseException, context: RequestContext
    ) -> GoogleWorkspaceError | None:
        """Hook for subclasses with their own error mapping."""
        return None

    def convert_error(self, error: BaseException, context: RequestContext) -> GoogleWorkspaceError:
        """Convert a raw failure into a domain error.

        Order: service-specific hook, pass-through of domain errors,
        structured auth reasons, 401/403, auth keywords in the message
        (only when no reason was reported), then a generic service error
        carrying the original status or 500.

        Args:
            error: What the operation raised.
            context: Context of the failing call.

        Returns:
            A GoogleWorkspaceError.
        """
        specific = self.convert_service_specific_error(error, context)
        if specific is not None:
            return specific

        if isinstance(error, GoogleWorkspaceError):
            return error

        normalized = normalize_error(error)
        enriched = {
            "service": self.get_service_name(),
            "request_id": context.request_id,
            **context.data,
        }

        if normalized.reason in AUTH_REASONS:
            return create_auth_error(error, "service-account", enriched)

        if normalized.http_status in (401, 403):
            return create_auth_error(error, "service-account", enriched)

        if normalized.reason is None:
            message = str(error).lower()
            if "auth" in message or "credential" in message or "token" in message:
                return create_auth_error(error, "service-account", enriched)

        converted = GoogleServiceError(
            normalized.message,
            self.get_service_name(),
            status_code=normalized.http_status or 500,
            context={**enriched, "reason": normalized.reason},
            cause=error,
        )
        converted.retry_after_ms = normalized.retry_after_ms
        return converted
