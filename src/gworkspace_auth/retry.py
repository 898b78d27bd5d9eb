"""Retry execution with exponential backoff, jitter and timeouts.

``RetryExecutor.execute`` runs a zero-argument coroutine function until it
succeeds, a failure is classified as non-retryable, the attempts are
used up, or the total deadline passes. It never raises domain errors; the
outcome is always a ``Result``.

Each attempt runs as its own task so it can be aborted without aborting
the loop: a per-request timeout cancels only the current attempt, while
the caller's ``cancel_event`` and the total deadline end the whole call.

Example:
    ```python
    executor = RetryExecutor(RetryConfig(max_attempts=5), service_name="sheets")

    async def read_range():
        response = await client.get(url)
        response.raise_for_status()
        return response.json()

    result = await executor.execute(read_range, RequestContext("read_range"))
    ```
"""

import asyncio
import logging
import random
import secrets
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from gworkspace_auth.config import RetryConfig
from gworkspace_auth.errors import (
    GoogleOperationCancelledError,
    GoogleServiceError,
    GoogleTimeoutError,
    GoogleWorkspaceError,
)
from gworkspace_auth.normalization import normalize_error
from gworkspace_auth.result import Result, err, ok

logger = logging.getLogger(__name__)

T = TypeVar("T")

Operation = Callable[[], Awaitable[T]]
ErrorConverter = Callable[[BaseException, "RequestContext"], GoogleWorkspaceError]


def generate_request_id(service_name: str) -> str:
    """Build a request ID of the form ``{service}-{epoch_ms}-{random}``."""
    return f"{service_name}-{int(time.time() * 1000)}-{secrets.token_hex(5)[:9]}"


@dataclass
class RequestContext:
    """Per-call context carried into every log entry.

    Attributes:
        operation_name: Logical operation, e.g. ``read_range``.
        request_id: Correlation ID; generated when omitted.
        data: Extra structured fields for logs and errors.
    """

    operation_name: str
    request_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)


@dataclass
class RetryAttemptState:
    """Ephemeral state of one ``execute`` call."""

    attempt: int = 0
    completed_attempts: int = 0
    last_error: GoogleWorkspaceError | None = None
    started_at: float = field(default_factory=time.monotonic)
    deadline: float | None = None

    @property
    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started_at) * 1000)

    def remaining_s(self) -> float | None:
        if self.deadline is None:
            return None
        return self.deadline - time.monotonic()


class _TotalDeadlineReached(Exception):
    """Internal signal that the total deadline passed mid-attempt or mid-sleep."""


def should_retry(
    raw_error: BaseException, typed_error: GoogleWorkspaceError, config: RetryConfig
) -> tuple[bool, str]:
    """Decide whether a failed attempt should be retried.

    First match wins:
        1. A domain error that declares itself non-retryable stops.
        2. A normalized status listed in ``retriable_codes`` retries.
        3. Any other 4xx stops, except 429 which always retries.
        4. The normalized error's own retryable flag.
        5. The typed error's ``is_retryable()``.

    Args:
        raw_error: What the operation raised.
        typed_error: The converted domain error.
        config: Active retry policy.

    Returns:
        Tuple of (retry?, reason) where reason is a stable log token.
    """
    if isinstance(raw_error, GoogleWorkspaceError) and not raw_error.is_retryable():
        return False, "error_override_not_retryable"

    # Domain errors carry their own retryability; status extraction is for raw failures
    if not isinstance(raw_error, GoogleWorkspaceError):
        normalized = normalize_error(raw_error)
        status = normalized.http_status

        if status is not None and status in config.retriable_codes:
            return True, "retriable_http_status"

        if status is not None and 400 <= status < 500:
            if status == 429:
                return True, "rate_limit_retryable"
            return False, f"non_retriable_http_status:{status}"

        if normalized.is_retryable:
            return True, f"normalized_retryable:{normalized.reason or f'status_{status}'}"

    if not typed_error.is_retryable():
        return False, "error_not_retryable"
    return True, "error_is_retryable"


def calculate_delay(
    attempt: int,
    config: RetryConfig,
    typed_error: GoogleWorkspaceError | None = None,
    raw_error: BaseException | None = None,
) -> int:
    """Compute the backoff before the next attempt, in milliseconds.

    A server-provided ``retry_after_ms`` is used verbatim and is not capped.
    Otherwise the delay is ``min(initial * multiplier^(attempt-1), max)``
    plus up to ``jitter_factor`` of that value at random.

    Args:
        attempt: The attempt that just failed (1-based).
        config: Active retry policy.
        typed_error: Converted error, checked for ``retry_after_ms``.
        raw_error: Raw error, checked for ``retry_after_ms``.
    """
    for source in (typed_error, raw_error):
        retry_after = getattr(source, "retry_after_ms", None)
        if isinstance(retry_after, int) and not isinstance(retry_after, bool) and retry_after >= 0:
            return retry_after

    base = config.initial_delay_ms * config.backoff_multiplier ** (attempt - 1)
    capped = min(base, config.max_delay_ms)
    jitter = capped * config.jitter_factor * random.random()
    return int(capped + jitter)


def _default_converter(service_name: str) -> ErrorConverter:
    def convert(error: BaseException, context: RequestContext) -> GoogleWorkspaceError:
        if isinstance(error, GoogleWorkspaceError):
            return error
        normalized = normalize_error(error)
        converted = GoogleServiceError(
            normalized.message,
            service_name,
            status_code=normalized.http_status or 500,
            context=dict(context.data),
            cause=error,
        )
        converted.retry_after_ms = normalized.retry_after_ms
        return converted

    return convert


class RetryExecutor:
    """Bounded retry loop for one service.

    Attributes:
        config: Immutable retry policy.
        service_name: Used in request IDs and log messages.
    """

    def __init__(
        self,
        config: RetryConfig,
        service_name: str,
        convert_error: ErrorConverter | None = None,
    ) -> None:
        """Initialize the executor.

        Args:
            config: Retry policy.
            service_name: Service label for logs and request IDs.
            convert_error: Maps raw failures to domain errors. Defaults to
                wrapping them in GoogleServiceError.
        """
        self.config = config
        self.service_name = service_name
        self._convert_error = convert_error or _default_converter(service_name)

    async def execute(
        self,
        operation: Operation[T],
        context: RequestContext | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> Result[T]:
        """Run ``operation`` with retries.

        Args:
            operation: Zero-argument coroutine function. It may be invoked
                several times and must be safe to repeat.
            context: Logging context; a request ID is generated if missing.
            cancel_event: Setting it aborts the current attempt and ends the
                call with GoogleOperationCancelledError.

        Returns:
            Result holding the operation's value or the last domain error.
        """
        context = context or RequestContext(operation_name="operation")
        if not context.request_id:
            context.request_id = generate_request_id(self.service_name)

        log_fields = {
            "service": self.service_name,
            "operation": context.operation_name,
            "request_id": context.request_id,
        }

        if cancel_event is not None and cancel_event.is_set():
            return err(GoogleOperationCancelledError(context=log_fields))

        state = RetryAttemptState()
        if self.config.total_timeout_ms is not None:
            state.deadline = state.started_at + self.config.total_timeout_ms / 1000

        logger.info(
            "%s: starting %s (request %s, max attempts %d)",
            self.service_name,
            context.operation_name,
            context.request_id,
            self.config.max_attempts,
            extra=log_fields,
        )

        while state.attempt < self.config.max_attempts:
            state.attempt += 1
            is_final = state.attempt >= self.config.max_attempts
            logger.debug(
                "%s: attempt %d/%d for %s",
                self.service_name,
                state.attempt,
                self.config.max_attempts,
                context.operation_name,
                extra={**log_fields, "attempt": state.attempt},
            )

            try:
                value = await self._run_attempt(operation, state, cancel_event, log_fields)
                if state.attempt > 1:
                    logger.info(
                        "%s: %s succeeded on attempt %d",
                        self.service_name,
                        context.operation_name,
                        state.attempt,
                        extra={**log_fields, "attempt": state.attempt},
                    )
                return ok(value)
            except _TotalDeadlineReached:
                return err(self._total_timeout(state, log_fields))
            except GoogleOperationCancelledError as cancelled:
                return err(cancelled)
            except Exception as e:
                raw_error = e
                typed_error = self._convert_error(raw_error, context)
                state.last_error = typed_error
                state.completed_attempts += 1

            retry, reason = should_retry(raw_error, typed_error, self.config)
            if not retry:
                logger.error(
                    "%s: non-retryable error in %s: %s",
                    self.service_name,
                    context.operation_name,
                    typed_error.message,
                    extra={
                        **log_fields,
                        "attempt": state.attempt,
                        "retry_skipped_reason": reason,
                        "status_code": typed_error.status_code,
                        "error": typed_error.to_dict(),
                    },
                )
                return err(typed_error)

            fields = {
                **log_fields,
                "attempt": state.attempt,
                "max_attempts": self.config.max_attempts,
                "is_final_attempt": is_final,
                "retry_reason": reason,
            }
            if is_final:
                logger.warning(
                    "%s: attempt %d/%d of %s failed: %s",
                    self.service_name,
                    state.attempt,
                    self.config.max_attempts,
                    context.operation_name,
                    typed_error.message,
                    extra=fields,
                )
                break

            delay_ms = calculate_delay(state.attempt, self.config, typed_error, raw_error)
            logger.warning(
                "%s: attempt %d/%d of %s failed: %s (next retry in %dms)",
                self.service_name,
                state.attempt,
                self.config.max_attempts,
                context.operation_name,
                typed_error.message,
                delay_ms,
                extra={**fields, "next_retry_in_ms": delay_ms},
            )
            logger.info("%s: retrying in %dms", self.service_name, delay_ms, extra=fields)

            try:
                await self._sleep(delay_ms, state, cancel_event)
            except _TotalDeadlineReached:
                return err(self._total_timeout(state, log_fields))
            except GoogleOperationCancelledError as cancelled:
                return err(cancelled)

        # max_attempts >= 1, so the loop body ran and recorded a failure
        last_error = typed_error
        logger.error(
            "%s: all retry attempts exhausted for %s",
            self.service_name,
            context.operation_name,
            extra={
                **log_fields,
                "attempts": state.attempt,
                "error": last_error.to_dict(),
            },
        )
        return err(last_error)

    async def _run_attempt(
        self,
        operation: Operation[T],
        state: RetryAttemptState,
        cancel_event: asyncio.Event | None,
        log_fields: dict[str, Any],
    ) -> T:
        """Run one attempt raced against its timeouts and the cancel event."""
        remaining = state.remaining_s()
        if remaining is not None and remaining <= 0:
            raise _TotalDeadlineReached()

        request_timeout = (
            self.config.request_timeout_ms / 1000
            if self.config.request_timeout_ms is not None
            else None
        )
        wait_for = request_timeout
        total_bound = False
        if remaining is not None and (wait_for is None or remaining < wait_for):
            wait_for = remaining
            total_bound = True

        task = asyncio.ensure_future(operation())
        waiters: set[asyncio.Future[Any]] = {task}
        cancel_waiter: asyncio.Future[Any] | None = None
        if cancel_event is not None:
            cancel_waiter = asyncio.ensure_future(cancel_event.wait())
            waiters.add(cancel_waiter)

        try:
            done, _ = await asyncio.wait(
                waiters, timeout=wait_for, return_when=asyncio.FIRST_COMPLETED
            )
            if task in done:
                return task.result()

            await _cancel_task(task)
            if cancel_waiter is not None and cancel_waiter in done:
                raise GoogleOperationCancelledError(context=log_fields)
            if total_bound:
                raise _TotalDeadlineReached()

            timeout_ms = self.config.request_timeout_ms or 0
            raise GoogleTimeoutError(
                f"Request timed out after {timeout_ms}ms",
                "request",
                timeout_ms,
                context={**log_fields, "attempt": state.attempt},
            )
        finally:
            if not task.done():
                await _cancel_task(task)
            if cancel_waiter is not None and not cancel_waiter.done():
                cancel_waiter.cancel()

    async def _sleep(
        self, delay_ms: int, state: RetryAttemptState, cancel_event: asyncio.Event | None
    ) -> None:
        """Back off, never past the total deadline."""
        delay_s = delay_ms / 1000
        remaining = state.remaining_s()
        overshoots = remaining is not None and delay_s >= remaining
        if remaining is not None:
            delay_s = max(0.0, min(delay_s, remaining))

        if cancel_event is None:
            await asyncio.sleep(delay_s)
        else:
            try:
                await asyncio.wait_for(cancel_event.wait(), timeout=delay_s)
            except asyncio.TimeoutError:
                pass
            else:
                raise GoogleOperationCancelledError()

        if overshoots:
            raise _TotalDeadlineReached()

    def _total_timeout(
        self, state: RetryAttemptState, log_fields: dict[str, Any]
    ) -> GoogleTimeoutError:
        timeout_ms = self.config.total_timeout_ms or 0
        error = GoogleTimeoutError(
            f"Operation timed out after {timeout_ms}ms total",
            "total",
            timeout_ms,
            context=log_fields,
            elapsed_ms=state.elapsed_ms,
            completed_attempts=state.completed_attempts,
        )
        logger.error(
            "%s: total timeout of %dms exceeded after %d attempt(s)",
            self.service_name,
            timeout_ms,
            error.completed_attempts,
            extra={**log_fields, "error": error.to_dict()},
        )
        return error


async def _cancel_task(task: "asyncio.Future[Any]") -> None:
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    except Exception as e:
        logger.debug("Cancelled attempt finished with %s", type(e).__name__)
