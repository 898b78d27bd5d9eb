"""Success-or-failure values returned across public boundaries.

``AuthProvider`` methods and ``execute_with_retry`` never raise domain
errors to their callers; they return a ``Result`` instead.

Example:
    ```python
    result = await provider.get_auth_client()
    if result.is_err():
        logger.error("Auth failed: %s", result.error.message)
        return
    credentials = result.value
    ```
"""

from dataclasses import dataclass
from typing import Generic, TypeVar

from gworkspace_auth.errors import GoogleWorkspaceError

T = TypeVar("T")


@dataclass(frozen=True)
class Result(Generic[T]):
    """Either a value or a ``GoogleWorkspaceError``."""

    value: T | None = None
    error: GoogleWorkspaceError | None = None

    def is_ok(self) -> bool:
        return self.error is None

    def is_err(self) -> bool:
        return self.error is not None

    def unwrap(self) -> T:
        """Return the value, raising the carried error on failure."""
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]

    def unwrap_or(self, default: T) -> T:
        if self.error is not None:
            return default
        return self.value  # type: ignore[return-value]


def ok(value: T | None = None) -> Result[T]:
    """Build a successful result."""
    return Result(value=value)


def err(error: GoogleWorkspaceError) -> Result[T]:
    """Build a failed result."""
    return Result(error=error)
