"""Secure OAuth2 token storage for Google Workspace.

Tokens are kept in the OS credential store through ``keyring`` when one is
available, with an encrypted file as fallback:

    Keyring:  service "gworkspace-auth", account "oauth2-tokens"
    File:     ~/.config/gworkspace-auth/oauth2-tokens.enc (mode 600)

Stored bytes that can no longer be decrypted, parsed or validated are
treated as corruption, never as "no tokens". A corrupted file is renamed
to ``<path>.corrupted-<epoch_ms>`` for inspection and a corrupted keyring
entry is deleted. In both cases a ``cache_corrupted`` metric is emitted and
``GoogleTokenCacheCorruptedError`` is raised so the caller can prompt for
re-authentication.

Concurrent writers in different processes are not coordinated; the last
write wins.
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Protocol

import keyring
from pydantic import ValidationError

from gworkspace_auth.auth.encryption import TokenCipher, TokenDecryptionError
from gworkspace_auth.auth.metrics import AuthMetrics
from gworkspace_auth.auth.models import (
    CorruptionRecord,
    CorruptionType,
    StoredCredentials,
    TokenStatus,
    now_ms,
)
from gworkspace_auth.errors import (
    GoogleOAuth2TokenStorageError,
    GoogleTokenCacheCorruptedError,
)

logger = logging.getLogger(__name__)

SERVICE_NAME = "gworkspace-auth"
ACCOUNT_NAME = "oauth2-tokens"

CONFIG_DIR = Path.home() / ".config" / SERVICE_NAME
TOKEN_FILE = CONFIG_DIR / "oauth2-tokens.enc"


def get_token_path() -> Path:
    """Get the encrypted token file path.

    Returns:
        ``GWORKSPACE_AUTH_TOKEN_PATH`` if set, else
        ~/.config/gworkspace-auth/oauth2-tokens.enc.
    """
    override = os.environ.get("GWORKSPACE_AUTH_TOKEN_PATH", "").strip()
    if override:
        return Path(override).expanduser()
    return TOKEN_FILE


class KeyringBackend(Protocol):
    """The subset of the ``keyring`` API used for token storage."""

    def set_password(self, service_name: str, username: str, password: str) -> None: ...

    def get_password(self, service_name: str, username: str) -> str | None: ...

    def delete_password(self, service_name: str, username: str) -> None: ...


def get_missing_fields(data: Any) -> list[str]:
    """List required credential fields that are absent or mistyped.

    Required: ``tokens.access_token`` and ``clientConfig.clientId`` as
    non-empty strings, ``storedAt`` as a number.

    Args:
        data: Decoded credential object.

    Returns:
        Dotted paths of the offending fields; empty when valid.
    """
    if not isinstance(data, dict):
        return ["tokens", "clientConfig", "storedAt"]

    missing: list[str] = []
    tokens = data.get("tokens")
    if not isinstance(tokens, dict):
        missing.append("tokens")
    elif not isinstance(tokens.get("access_token"), str) or not tokens["access_token"]:
        missing.append("tokens.access_token")

    client_config = data.get("clientConfig")
    if not isinstance(client_config, dict):
        missing.append("clientConfig")
    elif not isinstance(client_config.get("clientId"), str) or not client_config["clientId"]:
        missing.append("clientConfig.clientId")

    stored_at = data.get("storedAt")
    if isinstance(stored_at, bool) or not isinstance(stored_at, (int, float)):
        missing.append("storedAt")
    return missing


class _Corruption(Exception):
    """Internal marker carrying the classification of unusable stored bytes."""

    def __init__(
        self, corruption_type: CorruptionType, detail: str, cause: BaseException | None = None
    ) -> None:
        super().__init__(detail)
        self.corruption_type = corruption_type
        self.cause = cause


class TokenStorage:
    """Keyring-first OAuth2 credential storage with an encrypted file fallback.

    Methods are synchronous; async callers should run them in an executor.

    Attributes:
        token_path: Path of the encrypted fallback file.

    Example:
        ```python
        storage = TokenStorage()

        credentials = StoredCredentials(
            tokens=OAuth2Token(access_token="ya29...", refresh_token="1//..."),
            client_config=ClientConfig(client_id="123.apps.googleusercontent.com"),
        )
        storage.save_tokens(credentials)

        stored = storage.get_tokens()
        if stored:
            print(f"Stored at: {stored.stored_at}")
        ```
    """

    def __init__(
        self,
        token_path: Path | None = None,
        keyring_backend: KeyringBackend | None = None,
        cipher: TokenCipher | None = None,
        metrics: AuthMetrics | None = None,
    ) -> None:
        """Initialize token storage.

        Args:
            token_path: Custom path for the encrypted token file.
            keyring_backend: Object with keyring's set/get/delete_password
                functions. Defaults to the ``keyring`` module.
            cipher: File cipher. Defaults to a machine-derived key.
            metrics: Metrics emitter for corruption events.
        """
        self.token_path = token_path or get_token_path()
        self._keyring: KeyringBackend = keyring_backend or keyring  # type: ignore[assignment]
        self._cipher = cipher or TokenCipher(SERVICE_NAME, ACCOUNT_NAME)
        self._metrics = metrics or AuthMetrics()

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def save_tokens(self, credentials: StoredCredentials | dict[str, Any]) -> None:
        """Persist a credential set, preferring the OS store.

        Args:
            credentials: Credentials model or its camelCase dict form.

        Raises:
            GoogleOAuth2TokenStorageError: If required fields are missing, or
                if both the keyring and the file write fail.
        """
        if isinstance(credentials, StoredCredentials):
            data = credentials.model_dump(by_alias=True, exclude_none=True)
        else:
            data = credentials

        missing = get_missing_fields(data)
        if missing:
            raise GoogleOAuth2TokenStorageError(
                "save",
                context={
                    "reason": f"Invalid credentials structure: missing {', '.join(missing)}",
                    "missing_fields": missing,
                },
            )

        if not isinstance(credentials, StoredCredentials):
            try:
                credentials = StoredCredentials.model_validate(data)
            except ValidationError as e:
                raise GoogleOAuth2TokenStorageError(
                    "save",
                    e,
                    context={"reason": f"Invalid credentials structure: {e.error_count()} errors"},
                ) from e
        serialized = credentials.to_storage_json()
        try:
            self._keyring.set_password(SERVICE_NAME, ACCOUNT_NAME, serialized)
            logger.debug("Saved OAuth2 tokens to OS keyring")
            return
        except Exception as keyring_error:
            logger.debug("Keyring unavailable, falling back to encrypted file: %s", keyring_error)
            try:
                self._save_to_file(serialized)
                logger.debug("Saved OAuth2 tokens to %s", self.token_path)
            except Exception as file_error:
                raise GoogleOAuth2TokenStorageError(
                    "save",
                    file_error,
                    context={
                        "keyring_error": str(keyring_error),
                        "file_error": str(file_error),
                    },
                ) from file_error

    def get_tokens(self) -> StoredCredentials | None:
        """Load the stored credential set.

        The keyring is consulted first. If its entry is corrupted, the file
        is tried as a recovery source; when the file has nothing usable the
        keyring corruption error is raised.

        Returns:
            StoredCredentials, or None if nothing is stored.

        Raises:
            GoogleTokenCacheCorruptedError: If stored data is corrupted and
                no usable copy exists.
        """
        keyring_corruption: GoogleTokenCacheCorruptedError | None = None
        try:
            credentials = self._get_from_keyring()
            if credentials is not None:
                return credentials
        except GoogleTokenCacheCorruptedError as e:
            keyring_corruption = e
        except Exception as e:
            logger.debug("Keyring read failed, trying encrypted file: %s", e)

        try:
            credentials = self._get_from_file()
        except GoogleTokenCacheCorruptedError:
            if keyring_corruption is not None:
                raise keyring_corruption
            raise

        if credentials is None and keyring_corruption is not None:
            raise keyring_corruption
        if credentials is not None and keyring_corruption is not None:
            logger.warning("Recovered OAuth2 tokens from encrypted file after keyring corruption")
        return credentials

    def delete_tokens(self) -> None:
        """Remove stored tokens from both backends, ignoring failures."""
        try:
            self._keyring.delete_password(SERVICE_NAME, ACCOUNT_NAME)
        except Exception as e:
            logger.debug("Keyring delete skipped: %s", e)

        try:
            self.token_path.unlink()
        except OSError as e:
            logger.debug("Token file delete skipped: %s", e)

    def has_tokens(self) -> bool:
        """Check whether either backend holds tokens."""
        try:
            if self._keyring.get_password(SERVICE_NAME, ACCOUNT_NAME) is not None:
                return True
        except Exception as e:
            logger.debug("Keyring check failed: %s", e)
        return self.token_path.exists()

    def get_status(self) -> TokenStatus:
        """Get the status of the stored credential set.

        Returns:
            TokenStatus; CORRUPTED when stored data could not be used.
        """
        try:
            stored = self.get_tokens()
        except GoogleTokenCacheCorruptedError:
            return TokenStatus.CORRUPTED

        if stored is None:
            return TokenStatus.MISSING
        if stored.tokens.is_expired() and not stored.tokens.refresh_token:
            return TokenStatus.EXPIRED
        return TokenStatus.VALID

    # -------------------------------------------------------------------------
    # Keyring backend
    # -------------------------------------------------------------------------

    def _get_from_keyring(self) -> StoredCredentials | None:
        serialized = self._keyring.get_password(SERVICE_NAME, ACCOUNT_NAME)
        if not serialized:
            return None

        try:
            return self._parse(serialized)
        except _Corruption as corruption:
            record = CorruptionRecord(source="keyring", corruption_type=corruption.corruption_type)
            self._handle_keyring_corruption(record, corruption)
            raise GoogleTokenCacheCorruptedError(
                "keyring",
                record.corruption_type.value,
                cause=corruption.cause,
                context={"error": str(corruption)},
            ) from corruption.cause

    def _handle_keyring_corruption(
        self, record: CorruptionRecord, corruption: _Corruption
    ) -> None:
        """Delete the unusable entry; the OS store offers no backup slot."""
        try:
            self._keyring.delete_password(SERVICE_NAME, ACCOUNT_NAME)
        except Exception as e:
            logger.warning("Failed to delete corrupted keyring entry: %s", e)

        self._metrics.emit_cache_corrupted(
            source=record.source,
            corruption_type=record.corruption_type.value,
            recoverable=record.recoverable,
            error_type=type(corruption.cause).__name__ if corruption.cause else None,
        )
        logger.error(
            "OAuth2 token cache corrupted in OS keyring (%s); entry removed, "
            "re-authentication required",
            record.corruption_type.value,
            extra={"corruption": record.model_dump(mode="json")},
        )

    # -------------------------------------------------------------------------
    # File backend
    # -------------------------------------------------------------------------

    def _ensure_config_dir(self) -> None:
        """Create the token directory with owner-only permissions if needed."""
        config_dir = self.token_path.parent
        if not config_dir.exists():
            config_dir.mkdir(parents=True, mode=0o700)

    def _save_to_file(self, serialized: str) -> None:
        self._ensure_config_dir()
        payload = self._cipher.encrypt(serialized)

        # Mode 600 from creation
        fd = os.open(self.token_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w") as f:
            f.write(payload)
        self.token_path.chmod(0o600)

    def _get_from_file(self) -> StoredCredentials | None:
        try:
            raw = self.token_path.read_bytes()
        except OSError:
            return None

        try:
            serialized = self._cipher.decrypt(raw.decode("utf-8"))
            return self._parse(serialized)
        except (TokenDecryptionError, UnicodeDecodeError) as e:
            corruption = _Corruption(CorruptionType.ENCRYPTION, str(e), e)
        except _Corruption as e:
            corruption = e

        record = CorruptionRecord(source="file", corruption_type=corruption.corruption_type)
        record.backup_path = self._handle_file_corruption(record, corruption)
        raise GoogleTokenCacheCorruptedError(
            "file",
            record.corruption_type.value,
            backup_path=record.backup_path,
            cause=corruption.cause,
            context={"error": str(corruption)},
        ) from corruption.cause

    def _handle_file_corruption(
        self, record: CorruptionRecord, corruption: _Corruption
    ) -> str | None:
        """Move the corrupted file aside and report it.

        Returns:
            Backup path, or None if the rename failed.
        """
        backup_path: Path | None = self.token_path.with_name(
            f"{self.token_path.name}.corrupted-{now_ms()}"
        )
        try:
            self.token_path.rename(backup_path)
        except OSError as e:
            logger.error("Failed to back up corrupted token file %s: %s", self.token_path, e)
            backup_path = None

        self._metrics.emit_cache_corrupted(
            source=record.source,
            corruption_type=record.corruption_type.value,
            recoverable=record.recoverable,
            error_type=type(corruption.cause).__name__ if corruption.cause else None,
        )
        logger.error(
            "OAuth2 token file corrupted (%s); moved to %s, re-authentication required",
            record.corruption_type.value,
            backup_path,
            extra={"corruption": record.model_dump(mode="json")},
        )
        return str(backup_path) if backup_path else None

    # -------------------------------------------------------------------------
    # Parsing
    # -------------------------------------------------------------------------

    @staticmethod
    def _parse(serialized: str) -> StoredCredentials:
        """Decode and validate stored JSON.

        Raises:
            _Corruption: JSON_CORRUPTION for undecodable text,
                STRUCTURE_CORRUPTION for a decodable object missing fields.
        """
        try:
            data = json.loads(serialized)
        except json.JSONDecodeError as e:
            raise _Corruption(CorruptionType.JSON, f"Invalid JSON: {e}", e) from e

        missing = get_missing_fields(data)
        if missing:
            raise _Corruption(
                CorruptionType.STRUCTURE,
                f"Missing required credential fields: {', '.join(missing)}",
            )
        try:
            return StoredCredentials.model_validate(data)
        except ValidationError as e:
            raise _Corruption(
                CorruptionType.STRUCTURE, f"Invalid credential structure: {e}", e
            ) from e
