"""Common interface for authentication providers.

Both providers hand out ``google.auth`` credentials objects that Google API
clients accept directly. Every method returns a ``Result``; domain errors
never escape as exceptions.
"""

from abc import ABC, abstractmethod
from typing import Literal

from google.auth.credentials import Credentials

from gworkspace_auth.auth.models import AuthInfo
from gworkspace_auth.result import Result

AuthProviderType = Literal["service-account", "oauth2"]


class AuthProvider(ABC):
    """Source of authenticated credentials for Google API calls.

    Example:
        ```python
        provider = create_auth_provider()
        result = await provider.get_auth_client()
        if result.is_ok():
            sheets = build("sheets", "v4", credentials=result.value)
        ```
    """

    auth_type: AuthProviderType

    @abstractmethod
    async def initialize(self) -> Result[None]:
        """Prepare credentials; may be called more than once."""

    @abstractmethod
    async def get_auth_client(self) -> Result[Credentials]:
        """Return credentials ready for API calls.

        OAuth2 providers may run the interactive consent flow here when no
        usable tokens are stored.
        """

    @abstractmethod
    async def validate_auth(self) -> Result[bool]:
        """Check whether the current credentials can be used right now."""

    @abstractmethod
    async def refresh_token(self) -> Result[None]:
        """Obtain a fresh access token."""

    @abstractmethod
    async def get_auth_info(self) -> Result[AuthInfo]:
        """Describe the current authentication state."""

    @abstractmethod
    async def health_check(self) -> Result[bool]:
        """Report whether the provider is ready to serve requests."""
