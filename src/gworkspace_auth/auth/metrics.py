"""Lightweight authentication metrics.

Events are written to stderr as single ``AUTH_METRIC`` lines so they can
be scraped from MCP server logs without a metrics backend:

    AUTH_METRIC event=refresh_success duration=412 type=proactive

Set ``AUTH_METRICS=off`` (or ``false``/``0``) to disable emission.
"""

import logging
import os
import re
import sys
from typing import Any, TextIO

logger = logging.getLogger(__name__)

_UNSAFE = re.compile(r"[^a-zA-Z0-9._-]")
_REPEATED_UNDERSCORE = re.compile(r"_+")


def sanitize_value(value: str) -> str:
    """Reduce a value to ``[a-zA-Z0-9._-]`` so lines stay parseable."""
    if not value:
        return value
    cleaned = _REPEATED_UNDERSCORE.sub("_", _UNSAFE.sub("_", value))
    return cleaned.strip("_")


class AuthMetrics:
    """Emitter for token refresh and cache corruption events.

    Attributes:
        enabled: Whether events are written.
    """

    def __init__(self, enabled: bool | None = None, stream: TextIO | None = None) -> None:
        """Initialize the emitter.

        Args:
            enabled: Force emission on or off. Read from ``AUTH_METRICS``
                when omitted.
            stream: Destination. Defaults to ``sys.stderr`` at emit time.
        """
        if enabled is None:
            setting = os.environ.get("AUTH_METRICS", "").strip().lower()
            enabled = setting not in ("off", "false", "0")
        self.enabled = enabled
        self._stream = stream

    def emit_refresh_success(
        self,
        duration: int,
        type: str | None = None,
        time_until_expiry: int | None = None,
    ) -> None:
        if not self.enabled:
            return
        self._emit(
            "refresh_success",
            {"duration": duration, "type": type, "timeUntilExpiry": time_until_expiry},
        )

    def emit_refresh_failure(
        self,
        error: str,
        duration: int,
        type: str | None = None,
        retry_count: int | None = None,
    ) -> None:
        if not self.enabled:
            return
        self._emit(
            "refresh_failure",
            {"error": error, "duration": duration, "type": type, "retryCount": retry_count},
        )

    def emit_refresh_proactive(self, time_until_expiry: int, threshold: int | None = None) -> None:
        if not self.enabled:
            return
        self._emit(
            "refresh_proactive",
            {"timeUntilExpiry": time_until_expiry, "threshold": threshold},
        )

    def emit_cache_corrupted(
        self,
        source: str,
        corruption_type: str,
        recoverable: bool = False,
        error_type: str | None = None,
    ) -> None:
        if not self.enabled:
            return
        self._emit(
            "cache_corrupted",
            {
                "source": source,
                "corruptionType": corruption_type.lower(),
                "recoverable": recoverable,
                "errorType": error_type,
            },
        )

    def _emit(self, event: str, data: dict[str, Any]) -> None:
        pairs = [f"event={event}"]
        for key, value in data.items():
            if value is None:
                continue
            if isinstance(value, bool):
                rendered = "true" if value else "false"
            elif isinstance(value, str):
                rendered = sanitize_value(value)
            else:
                rendered = str(value)
            pairs.append(f"{key}={rendered}")

        stream = self._stream or sys.stderr
        try:
            stream.write(f"AUTH_METRIC {' '.join(pairs)}\n")
        except (OSError, ValueError) as e:
            # Closed or broken stream
            logger.debug("Failed to emit auth metric %s: %s", event, e)
