"""Proactive refresh timing for OAuth2 access tokens.

A token is refreshed once ``now`` passes ``expiry - threshold - jitter``,
where jitter is drawn uniformly from ``[0, jitter_ms]``. Jitter only ever
moves the refresh earlier, which spreads refreshes of many processes
sharing one token across the window.
"""

import random
from collections.abc import Callable
from dataclasses import dataclass

from gworkspace_auth.auth.models import now_ms
from gworkspace_auth.config import DEFAULT_REFRESH_JITTER_MS, DEFAULT_REFRESH_THRESHOLD_MS


@dataclass(frozen=True)
class RefreshWindow:
    """When a token should be refreshed.

    Attributes:
        should_refresh: Whether the refresh time has been reached.
        refresh_at_ms: Planned refresh time, epoch ms, never in the past.
        time_until_refresh_ms: Milliseconds until ``refresh_at_ms``.
        expiry_ms: Token expiry, epoch ms.
        threshold_ms: Threshold used for the calculation.
    """

    should_refresh: bool
    refresh_at_ms: int
    time_until_refresh_ms: int
    expiry_ms: int
    threshold_ms: int


def calculate_refresh_window(
    expiry_ms: int,
    threshold_ms: int = DEFAULT_REFRESH_THRESHOLD_MS,
    jitter_ms: int = DEFAULT_REFRESH_JITTER_MS,
    now: Callable[[], int] = now_ms,
    random_int: Callable[[int], int] | None = None,
) -> RefreshWindow:
    """Compute the refresh window for a token.

    Args:
        expiry_ms: Token expiry as epoch milliseconds.
        threshold_ms: How long before expiry to refresh. Zero disables
            proactive refresh; only expired tokens are refreshed.
        jitter_ms: Upper bound of the random early offset.
        now: Clock returning epoch ms.
        random_int: Returns an int in ``[0, n]``; uniform by default.

    Returns:
        RefreshWindow for the token.

    Raises:
        ValueError: If the threshold or jitter is negative.
    """
    if threshold_ms < 0:
        raise ValueError(f"Refresh threshold cannot be negative (provided: {threshold_ms})")
    if jitter_ms < 0:
        raise ValueError(f"Jitter value cannot be negative (provided: {jitter_ms})")

    current = now()
    if expiry_ms <= current:
        return RefreshWindow(True, current, 0, expiry_ms, threshold_ms)

    if threshold_ms == 0:
        return RefreshWindow(False, expiry_ms, expiry_ms - current, expiry_ms, threshold_ms)

    if jitter_ms > 0:
        jitter = random_int(jitter_ms) if random_int else random.randint(0, jitter_ms)
    else:
        jitter = 0

    refresh_at = max(expiry_ms - threshold_ms - jitter, current)
    return RefreshWindow(
        should_refresh=refresh_at <= current,
        refresh_at_ms=refresh_at,
        time_until_refresh_ms=refresh_at - current,
        expiry_ms=expiry_ms,
        threshold_ms=threshold_ms,
    )


def is_expiring_soon(
    expiry_ms: int,
    threshold_ms: int = DEFAULT_REFRESH_THRESHOLD_MS,
    jitter_ms: int = DEFAULT_REFRESH_JITTER_MS,
) -> bool:
    """Whether a token is due for refresh now."""
    return calculate_refresh_window(expiry_ms, threshold_ms, jitter_ms).should_refresh
