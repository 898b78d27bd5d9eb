"""Data models for stored OAuth2 credentials and auth status.

The persisted JSON shape uses camelCase keys (``clientConfig``,
``clientId``, ``storedAt``) so token caches written by other clients of
the same layout stay readable. Python code uses the snake_case names.
"""

import time
from datetime import datetime, timezone
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field


def now_ms() -> int:
    """Current time as epoch milliseconds."""
    return int(time.time() * 1000)


class TokenStatus(str, Enum):
    """Status of the stored credential set."""

    VALID = "valid"
    EXPIRED = "expired"
    MISSING = "missing"
    CORRUPTED = "corrupted"


class CorruptionType(str, Enum):
    """Why stored credential bytes could not be used."""

    ENCRYPTION = "ENCRYPTION_CORRUPTION"
    JSON = "JSON_CORRUPTION"
    STRUCTURE = "STRUCTURE_CORRUPTION"


class OAuth2Token(BaseModel):
    """OAuth2 token set as returned by Google's token endpoint.

    Attributes:
        access_token: Bearer token for API calls.
        refresh_token: Long-lived token for obtaining new access tokens.
        expiry_date: Expiration as epoch milliseconds.
        token_type: Usually "Bearer".
        scope: Space-separated scopes granted by the user.
        id_token: OpenID Connect ID token, if requested.
    """

    access_token: str = Field(..., description="Access token")
    refresh_token: str | None = Field(default=None, description="Refresh token")
    expiry_date: int | None = Field(default=None, description="Expiry in epoch ms")
    token_type: str | None = Field(default="Bearer", description="Token type")
    scope: str | None = Field(default=None, description="Granted scopes")
    id_token: str | None = Field(default=None, description="OpenID Connect ID token")

    @property
    def expires_at(self) -> datetime | None:
        if self.expiry_date is None:
            return None
        return datetime.fromtimestamp(self.expiry_date / 1000, tz=timezone.utc)

    def expires_in_ms(self) -> int | None:
        """Milliseconds until expiry (negative once expired), None if unknown."""
        if self.expiry_date is None:
            return None
        return self.expiry_date - now_ms()

    def is_expired(self, buffer_seconds: int = 0) -> bool:
        """Check whether the token is expired or expires within the buffer.

        Tokens without an expiry are treated as not expired.
        """
        remaining = self.expires_in_ms()
        if remaining is None:
            return False
        return remaining <= buffer_seconds * 1000


class ClientConfig(BaseModel):
    """The OAuth2 client a token set was issued to."""

    client_id: str = Field(..., alias="clientId", description="OAuth client ID")
    scopes: list[str] = Field(default_factory=list, description="Requested scopes")

    model_config = {"populate_by_name": True}


class StoredCredentials(BaseModel):
    """One persisted OAuth2 credential set.

    Attributes:
        tokens: The token set.
        client_config: Client the tokens belong to.
        stored_at: When the set was written, epoch ms.
        user_id: Account identifier, if known.
    """

    tokens: OAuth2Token
    client_config: ClientConfig = Field(..., alias="clientConfig")
    stored_at: int = Field(default_factory=now_ms, alias="storedAt")
    user_id: str | None = Field(default=None, alias="userId")

    model_config = {"populate_by_name": True}

    def to_storage_json(self) -> str:
        """Serialize using the persisted camelCase layout."""
        return self.model_dump_json(by_alias=True, exclude_none=True)


class CorruptionRecord(BaseModel):
    """Diagnostic record of a detected corruption; never retried."""

    source: Literal["keyring", "file"]
    corruption_type: CorruptionType
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    backup_path: str | None = None
    recoverable: bool = False


class TokenInfo(BaseModel):
    """Summary of the live access token."""

    expires_at: datetime | None = None
    has_token: bool = False


class AuthInfo(BaseModel):
    """Authentication state reported by an AuthProvider.

    Attributes:
        is_authenticated: Whether valid credentials are available now.
        auth_type: ``service-account`` or ``oauth2``.
        key_file: Key file path (service account) or client ID (OAuth2).
        scopes: Scopes the provider requests.
        token_info: Access token details, when known.
    """

    is_authenticated: bool
    auth_type: Literal["service-account", "oauth2"]
    key_file: str
    scopes: list[str] = Field(default_factory=list)
    token_info: TokenInfo | None = None
