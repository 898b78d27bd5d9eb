"""Unit tests for TokenStorage class.

Tests cover keyring-first persistence, the encrypted file fallback,
corruption detection and recovery, and status reporting.
"""

import io
import json
from pathlib import Path
from unittest.mock import patch

import pytest

from gworkspace_auth.auth.models import (
    ClientConfig,
    CorruptionType,
    OAuth2Token,
    StoredCredentials,
    TokenStatus,
    now_ms,
)
from gworkspace_auth.auth.token_storage import (
    ACCOUNT_NAME,
    SERVICE_NAME,
    TokenStorage,
    get_missing_fields,
    get_token_path,
)
from gworkspace_auth.errors import GoogleOAuth2TokenStorageError, GoogleTokenCacheCorruptedError

KEYRING_KEY = (SERVICE_NAME, ACCOUNT_NAME)


@pytest.mark.unit
class TestTokenStorageInit:
    """Tests for TokenStorage initialization."""

    def test_should_create_storage_with_custom_path(self, temp_token_path: Path) -> None:
        """Verify storage accepts custom token path."""
        storage = TokenStorage(token_path=temp_token_path)
        assert storage.token_path == temp_token_path

    def test_should_use_default_path(self) -> None:
        """Verify default path is under ~/.config/gworkspace-auth."""
        path = get_token_path()
        assert path.name == "oauth2-tokens.enc"
        assert path.parent.name == "gworkspace-auth"

    def test_should_honor_token_path_override(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Verify GWORKSPACE_AUTH_TOKEN_PATH overrides the default path."""
        override = tmp_path / "custom.enc"
        monkeypatch.setenv("GWORKSPACE_AUTH_TOKEN_PATH", str(override))

        assert get_token_path() == override
        assert TokenStorage().token_path == override

    def test_should_not_touch_filesystem_on_creation(self, temp_token_path: Path) -> None:
        """Verify the token directory is created lazily."""
        TokenStorage(token_path=temp_token_path)
        assert not temp_token_path.parent.exists()


@pytest.mark.unit
class TestGetMissingFields:
    """Tests for credential structure validation."""

    def test_should_accept_complete_structure(self) -> None:
        """Verify a complete credential object has no missing fields."""
        data = {
            "tokens": {"access_token": "abc"},
            "clientConfig": {"clientId": "client"},
            "storedAt": 1,
        }
        assert get_missing_fields(data) == []

    def test_should_report_nested_paths(self) -> None:
        """Verify missing nested fields are reported with dotted paths."""
        data = {"tokens": {}, "clientConfig": {"clientId": ""}, "storedAt": "yesterday"}
        assert get_missing_fields(data) == [
            "tokens.access_token",
            "clientConfig.clientId",
            "storedAt",
        ]

    def test_should_report_missing_sections(self) -> None:
        """Verify absent sections are reported by name."""
        assert get_missing_fields({"storedAt": 1}) == ["tokens", "clientConfig"]

    def test_should_reject_non_objects(self) -> None:
        """Verify non-dict input reports every required field."""
        assert get_missing_fields(["tokens"]) == ["tokens", "clientConfig", "storedAt"]


@pytest.mark.unit
class TestTokenStorageSave:
    """Tests for TokenStorage.save_tokens() method."""

    def test_should_save_to_keyring_when_available(
        self,
        token_storage: TokenStorage,
        memory_keyring,
        stored_credentials: StoredCredentials,
    ) -> None:
        """Verify tokens go to the OS keyring and no file is written."""
        token_storage.save_tokens(stored_credentials)

        data = json.loads(memory_keyring.passwords[KEYRING_KEY])
        assert data["tokens"]["access_token"] == "test_access_token_abc123"
        assert data["clientConfig"]["clientId"] == stored_credentials.client_config.client_id
        assert not token_storage.token_path.exists()

    def test_should_fall_back_to_encrypted_file(
        self, file_token_storage: TokenStorage, stored_credentials: StoredCredentials
    ) -> None:
        """Verify tokens are written encrypted when the keyring fails."""
        file_token_storage.save_tokens(stored_credentials)

        content = file_token_storage.token_path.read_text()
        assert "test_access_token_abc123" not in content
        assert "clientConfig" not in content

    def test_should_set_secure_permissions(
        self, file_token_storage: TokenStorage, stored_credentials: StoredCredentials
    ) -> None:
        """Verify token file has mode 600 and its directory mode 700."""
        file_token_storage.save_tokens(stored_credentials)

        token_path = file_token_storage.token_path
        assert token_path.stat().st_mode & 0o777 == 0o600
        assert token_path.parent.stat().st_mode & 0o777 == 0o700

    def test_should_accept_dict_credentials(self, token_storage: TokenStorage) -> None:
        """Verify the camelCase dict form can be saved."""
        token_storage.save_tokens(
            {
                "tokens": {"access_token": "abc", "refresh_token": "def"},
                "clientConfig": {"clientId": "client", "scopes": []},
                "storedAt": now_ms(),
            }
        )

        stored = token_storage.get_tokens()
        assert stored is not None
        assert stored.tokens.refresh_token == "def"

    def test_should_reject_incomplete_credentials(
        self, token_storage: TokenStorage, memory_keyring
    ) -> None:
        """Verify incomplete credentials are rejected before any write."""
        with pytest.raises(GoogleOAuth2TokenStorageError) as exc_info:
            token_storage.save_tokens(
                {"tokens": {}, "clientConfig": {"clientId": "client"}, "storedAt": 1}
            )

        assert exc_info.value.context["missing_fields"] == ["tokens.access_token"]
        assert "tokens.access_token" in exc_info.value.context["reason"]
        assert memory_keyring.passwords == {}

    def test_should_write_storage_json_layout(
        self,
        token_storage: TokenStorage,
        memory_keyring,
        stored_credentials: StoredCredentials,
    ) -> None:
        """Verify the keyring entry is the model's storage JSON."""
        token_storage.save_tokens(stored_credentials)
        assert memory_keyring.passwords[KEYRING_KEY] == stored_credentials.to_storage_json()

    def test_should_reject_mistyped_credentials(
        self, token_storage: TokenStorage, memory_keyring
    ) -> None:
        """Verify dict credentials with invalid field types are rejected before any write."""
        with pytest.raises(GoogleOAuth2TokenStorageError) as exc_info:
            token_storage.save_tokens(
                {
                    "tokens": {"access_token": "abc", "expiry_date": "tomorrow"},
                    "clientConfig": {"clientId": "client"},
                    "storedAt": 1,
                }
            )

        assert "Invalid credentials structure" in exc_info.value.context["reason"]
        assert memory_keyring.passwords == {}

    def test_should_raise_when_both_backends_fail(
        self, file_token_storage: TokenStorage, stored_credentials: StoredCredentials
    ) -> None:
        """Verify a storage error carries both backend failures."""
        with patch.object(
            file_token_storage, "_save_to_file", side_effect=OSError("Disk full")
        ):
            with pytest.raises(GoogleOAuth2TokenStorageError) as exc_info:
                file_token_storage.save_tokens(stored_credentials)

        context = exc_info.value.context
        assert context["operation"] == "save"
        assert "No recommended backend" in context["keyring_error"]
        assert context["file_error"] == "Disk full"


@pytest.mark.unit
class TestTokenStorageGet:
    """Tests for TokenStorage.get_tokens() method."""

    def test_should_return_none_when_nothing_stored(self, token_storage: TokenStorage) -> None:
        """Verify None when neither backend has tokens."""
        assert token_storage.get_tokens() is None

    def test_should_retrieve_from_keyring(
        self, token_storage: TokenStorage, stored_credentials: StoredCredentials
    ) -> None:
        """Verify stored tokens are read back from the keyring."""
        token_storage.save_tokens(stored_credentials)

        retrieved = token_storage.get_tokens()

        assert retrieved is not None
        assert retrieved.tokens.access_token == stored_credentials.tokens.access_token
        assert retrieved.tokens.refresh_token == stored_credentials.tokens.refresh_token
        assert retrieved.tokens.expiry_date == stored_credentials.tokens.expiry_date
        assert retrieved.stored_at == stored_credentials.stored_at

    def test_should_retrieve_from_file(
        self, file_token_storage: TokenStorage, stored_credentials: StoredCredentials
    ) -> None:
        """Verify tokens are read from the file when the keyring fails."""
        file_token_storage.save_tokens(stored_credentials)

        retrieved = file_token_storage.get_tokens()

        assert retrieved is not None
        assert retrieved.tokens.access_token == stored_credentials.tokens.access_token
        assert retrieved.client_config.client_id == stored_credentials.client_config.client_id

    def test_should_preserve_tokens_without_refresh_token(
        self, token_storage: TokenStorage
    ) -> None:
        """Verify a token set without refresh_token is stored correctly."""
        credentials = StoredCredentials(
            tokens=OAuth2Token(access_token="access_only", expiry_date=now_ms() + 60_000),
            client_config=ClientConfig(client_id="client"),
        )
        token_storage.save_tokens(credentials)

        retrieved = token_storage.get_tokens()

        assert retrieved is not None
        assert retrieved.tokens.refresh_token is None


@pytest.mark.unit
class TestTokenStorageKeyringCorruption:
    """Tests for corrupted keyring entries."""

    def test_should_raise_on_invalid_json(
        self, token_storage: TokenStorage, memory_keyring
    ) -> None:
        """Verify undecodable keyring data is reported, not treated as missing."""
        memory_keyring.passwords[KEYRING_KEY] = "not valid json {{{"

        with pytest.raises(GoogleTokenCacheCorruptedError) as exc_info:
            token_storage.get_tokens()

        assert exc_info.value.source == "keyring"
        assert exc_info.value.corruption_type == CorruptionType.JSON.value
        assert exc_info.value.is_retryable() is False

    def test_should_delete_corrupted_entry(
        self, token_storage: TokenStorage, memory_keyring
    ) -> None:
        """Verify the corrupted keyring entry is removed."""
        memory_keyring.passwords[KEYRING_KEY] = "not valid json"

        with pytest.raises(GoogleTokenCacheCorruptedError):
            token_storage.get_tokens()

        assert KEYRING_KEY not in memory_keyring.passwords
        assert token_storage.get_tokens() is None

    def test_should_detect_structure_corruption(
        self, token_storage: TokenStorage, memory_keyring
    ) -> None:
        """Verify decodable data missing required fields is STRUCTURE corruption."""
        memory_keyring.passwords[KEYRING_KEY] = json.dumps(
            {"tokens": {"refresh_token": "x"}, "clientConfig": {"clientId": "c"}, "storedAt": 1}
        )

        with pytest.raises(GoogleTokenCacheCorruptedError) as exc_info:
            token_storage.get_tokens()

        assert exc_info.value.corruption_type == CorruptionType.STRUCTURE.value

    def test_should_emit_corruption_metric(
        self, token_storage: TokenStorage, memory_keyring, metrics_stream: io.StringIO
    ) -> None:
        """Verify a cache_corrupted metric line is written."""
        memory_keyring.passwords[KEYRING_KEY] = "not valid json"

        with pytest.raises(GoogleTokenCacheCorruptedError):
            token_storage.get_tokens()

        line = metrics_stream.getvalue().strip()
        assert line.startswith("AUTH_METRIC event=cache_corrupted")
        assert "source=keyring" in line
        assert "corruptionType=json_corruption" in line
        assert "recoverable=false" in line
        assert "errorType=JSONDecodeError" in line

    def test_should_recover_from_valid_file(
        self,
        token_storage: TokenStorage,
        memory_keyring,
        stored_credentials: StoredCredentials,
    ) -> None:
        """Verify a readable file copy is returned when the keyring entry is corrupted."""
        token_storage._save_to_file(stored_credentials.to_storage_json())
        memory_keyring.passwords[KEYRING_KEY] = "not valid json"

        retrieved = token_storage.get_tokens()

        assert retrieved is not None
        assert retrieved.tokens.access_token == stored_credentials.tokens.access_token

    def test_should_raise_keyring_error_when_file_also_corrupted(
        self, token_storage: TokenStorage, memory_keyring
    ) -> None:
        """Verify the keyring corruption is reported when the file is unusable too."""
        token_storage._ensure_config_dir()
        token_storage.token_path.write_text("garbage")
        memory_keyring.passwords[KEYRING_KEY] = "not valid json"

        with pytest.raises(GoogleTokenCacheCorruptedError) as exc_info:
            token_storage.get_tokens()

        assert exc_info.value.source == "keyring"


@pytest.mark.unit
class TestTokenStorageFileCorruption:
    """Tests for corrupted token files."""

    def test_should_detect_encryption_corruption(self, file_token_storage: TokenStorage) -> None:
        """Verify undecryptable file content is ENCRYPTION corruption."""
        file_token_storage._ensure_config_dir()
        file_token_storage.token_path.write_text("definitely not ciphertext")

        with pytest.raises(GoogleTokenCacheCorruptedError) as exc_info:
            file_token_storage.get_tokens()

        assert exc_info.value.source == "file"
        assert exc_info.value.corruption_type == CorruptionType.ENCRYPTION.value

    def test_should_detect_json_corruption(self, file_token_storage: TokenStorage) -> None:
        """Verify decryptable but undecodable content is JSON corruption."""
        file_token_storage._save_to_file("not valid json {{{")

        with pytest.raises(GoogleTokenCacheCorruptedError) as exc_info:
            file_token_storage.get_tokens()

        assert exc_info.value.corruption_type == CorruptionType.JSON.value

    def test_should_back_up_corrupted_file(self, file_token_storage: TokenStorage) -> None:
        """Verify the corrupted file is renamed with a timestamp suffix."""
        token_path = file_token_storage.token_path
        file_token_storage._ensure_config_dir()
        token_path.write_text("corrupted")

        with pytest.raises(GoogleTokenCacheCorruptedError) as exc_info:
            file_token_storage.get_tokens()

        backup_path = exc_info.value.backup_path
        assert backup_path is not None
        assert Path(backup_path).name.startswith(f"{token_path.name}.corrupted-")
        assert Path(backup_path).read_text() == "corrupted"
        assert not token_path.exists()
        assert exc_info.value.context["backup_path"] == backup_path

    def test_should_return_none_after_backup(self, file_token_storage: TokenStorage) -> None:
        """Verify the next read after a backup reports no tokens."""
        file_token_storage._ensure_config_dir()
        file_token_storage.token_path.write_text("corrupted")

        with pytest.raises(GoogleTokenCacheCorruptedError):
            file_token_storage.get_tokens()

        assert file_token_storage.get_tokens() is None

    def test_should_emit_file_corruption_metric(
        self, file_token_storage: TokenStorage, metrics_stream: io.StringIO
    ) -> None:
        """Verify a cache_corrupted metric is emitted for the file source."""
        file_token_storage._ensure_config_dir()
        file_token_storage.token_path.write_text("corrupted")

        with pytest.raises(GoogleTokenCacheCorruptedError):
            file_token_storage.get_tokens()

        line = metrics_stream.getvalue()
        assert "source=file" in line
        assert "corruptionType=encryption_corruption" in line

    def test_should_back_up_binary_file(
        self, file_token_storage: TokenStorage, metrics_stream: io.StringIO
    ) -> None:
        """Verify non-UTF-8 file content is ENCRYPTION corruption and is moved aside."""
        token_path = file_token_storage.token_path
        file_token_storage._ensure_config_dir()
        token_path.write_bytes(b"\xff\xfe\x00garbage\x80")

        with pytest.raises(GoogleTokenCacheCorruptedError) as exc_info:
            file_token_storage.get_tokens()

        assert exc_info.value.corruption_type == CorruptionType.ENCRYPTION.value
        backup_path = exc_info.value.backup_path
        assert backup_path is not None
        assert Path(backup_path).read_bytes() == b"\xff\xfe\x00garbage\x80"
        assert not token_path.exists()
        assert "corruptionType=encryption_corruption" in metrics_stream.getvalue()

    def test_should_report_binary_file_as_corrupted(
        self, file_token_storage: TokenStorage
    ) -> None:
        """Verify status reports CORRUPTED instead of raising for a binary file."""
        file_token_storage._ensure_config_dir()
        file_token_storage.token_path.write_bytes(b"\x80\x81\x82")

        assert file_token_storage.get_status() == TokenStatus.CORRUPTED


@pytest.mark.unit
class TestTokenStorageDelete:
    """Tests for TokenStorage.delete_tokens() method."""

    def test_should_delete_from_both_backends(
        self,
        token_storage: TokenStorage,
        memory_keyring,
        stored_credentials: StoredCredentials,
    ) -> None:
        """Verify deletion clears the keyring entry and the file."""
        token_storage.save_tokens(stored_credentials)
        token_storage._save_to_file(stored_credentials.to_storage_json())

        token_storage.delete_tokens()

        assert memory_keyring.passwords == {}
        assert not token_storage.token_path.exists()
        assert token_storage.get_tokens() is None

    def test_should_ignore_missing_tokens(self, token_storage: TokenStorage) -> None:
        """Verify deleting when nothing is stored does not raise."""
        token_storage.delete_tokens()

    def test_should_ignore_unavailable_keyring(
        self, file_token_storage: TokenStorage, stored_credentials: StoredCredentials
    ) -> None:
        """Verify keyring failures do not stop file deletion."""
        file_token_storage.save_tokens(stored_credentials)

        file_token_storage.delete_tokens()

        assert not file_token_storage.token_path.exists()


@pytest.mark.unit
class TestTokenStorageStatus:
    """Tests for TokenStorage.has_tokens() and get_status()."""

    def test_should_report_has_tokens(
        self, token_storage: TokenStorage, stored_credentials: StoredCredentials
    ) -> None:
        """Verify has_tokens reflects stored state."""
        assert token_storage.has_tokens() is False
        token_storage.save_tokens(stored_credentials)
        assert token_storage.has_tokens() is True

    def test_should_report_file_tokens_without_keyring(
        self, file_token_storage: TokenStorage, stored_credentials: StoredCredentials
    ) -> None:
        """Verify has_tokens checks the file when the keyring fails."""
        file_token_storage.save_tokens(stored_credentials)
        assert file_token_storage.has_tokens() is True

    def test_should_return_valid_for_non_expired_token(
        self, token_storage: TokenStorage, stored_credentials: StoredCredentials
    ) -> None:
        """Verify VALID status for non-expired token."""
        token_storage.save_tokens(stored_credentials)
        assert token_storage.get_status() == TokenStatus.VALID

    def test_should_return_valid_for_refreshable_expired_token(
        self, token_storage: TokenStorage, expired_token: OAuth2Token
    ) -> None:
        """Verify an expired token with a refresh token still counts as VALID."""
        token_storage.save_tokens(
            StoredCredentials(tokens=expired_token, client_config=ClientConfig(client_id="c"))
        )
        assert token_storage.get_status() == TokenStatus.VALID

    def test_should_return_expired_without_refresh_token(
        self, token_storage: TokenStorage
    ) -> None:
        """Verify EXPIRED status for an expired token that cannot be refreshed."""
        token_storage.save_tokens(
            StoredCredentials(
                tokens=OAuth2Token(access_token="old", expiry_date=now_ms() - 1000),
                client_config=ClientConfig(client_id="c"),
            )
        )
        assert token_storage.get_status() == TokenStatus.EXPIRED

    def test_should_return_missing_when_empty(self, token_storage: TokenStorage) -> None:
        """Verify MISSING status when no token exists."""
        assert token_storage.get_status() == TokenStatus.MISSING

    def test_should_return_corrupted_for_bad_data(
        self, token_storage: TokenStorage, memory_keyring
    ) -> None:
        """Verify CORRUPTED status when stored data is unusable."""
        memory_keyring.passwords[KEYRING_KEY] = "{broken"
        assert token_storage.get_status() == TokenStatus.CORRUPTED
