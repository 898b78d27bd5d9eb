"""Unit tests for token file encryption."""

import json

import pytest

from gworkspace_auth.auth.encryption import (
    NONCE_LENGTH,
    TAG_LENGTH,
    TokenCipher,
    TokenDecryptionError,
    zero_buffer,
)

SECRET_PAYLOAD = json.dumps({"accessToken": "ya29.super-secret", "refreshToken": "1//refresh"})


@pytest.fixture
def cipher() -> TokenCipher:
    return TokenCipher("gworkspace-auth", "oauth2-tokens", identity="/home/tester:svc:acct")


@pytest.mark.unit
class TestTokenCipher:
    """Tests for TokenCipher."""

    def test_should_decrypt_what_it_encrypts(self, cipher: TokenCipher) -> None:
        """Verify the payload survives encryption."""
        assert cipher.decrypt(cipher.encrypt(SECRET_PAYLOAD)) == SECRET_PAYLOAD

    def test_should_not_expose_plaintext(self, cipher: TokenCipher) -> None:
        """Verify tokens never appear in the encrypted payload."""
        payload = cipher.encrypt(SECRET_PAYLOAD)

        assert "ya29" not in payload
        assert "ya29".encode().hex() not in payload
        assert "refresh" not in bytes.fromhex(payload).decode("latin-1")

    def test_should_use_fresh_nonce_each_time(self, cipher: TokenCipher) -> None:
        """Verify encrypting the same text twice gives different payloads."""
        assert cipher.encrypt(SECRET_PAYLOAD) != cipher.encrypt(SECRET_PAYLOAD)

    def test_should_emit_hex_with_nonce_and_tag(self, cipher: TokenCipher) -> None:
        """Verify the payload layout is nonce, ciphertext and tag."""
        payload = cipher.encrypt("abc")
        assert len(bytes.fromhex(payload)) == NONCE_LENGTH + 3 + TAG_LENGTH

    def test_should_reject_tampered_payload(self, cipher: TokenCipher) -> None:
        """Verify a flipped byte fails authentication."""
        raw = bytearray(bytes.fromhex(cipher.encrypt(SECRET_PAYLOAD)))
        raw[NONCE_LENGTH + 1] ^= 0xFF

        with pytest.raises(TokenDecryptionError, match="authentication failed"):
            cipher.decrypt(raw.hex())

    def test_should_reject_other_identity(self, cipher: TokenCipher) -> None:
        """Verify a payload from another identity cannot be decrypted."""
        other = TokenCipher("gworkspace-auth", "oauth2-tokens", identity="/home/other:svc:acct")

        with pytest.raises(TokenDecryptionError):
            other.decrypt(cipher.encrypt(SECRET_PAYLOAD))

    def test_should_reject_non_hex(self, cipher: TokenCipher) -> None:
        """Verify non-hex input is reported as an encoding error."""
        with pytest.raises(TokenDecryptionError, match="encoding"):
            cipher.decrypt("{not hex}")

    def test_should_reject_short_payload(self, cipher: TokenCipher) -> None:
        """Verify payloads shorter than nonce and tag are rejected."""
        with pytest.raises(TokenDecryptionError, match="too short"):
            cipher.decrypt("00" * (NONCE_LENGTH + TAG_LENGTH - 1))

    def test_should_derive_identity_from_home(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Verify the default identity includes home, service and account."""
        monkeypatch.setenv("HOME", "/home/alex")
        cipher = TokenCipher("svc", "acct")
        assert cipher.identity.endswith(":svc:acct")
        assert "alex" in cipher.identity


@pytest.mark.unit
class TestZeroBuffer:
    """Tests for zero_buffer()."""

    def test_should_zero_in_place(self) -> None:
        """Verify every byte is overwritten."""
        buffer = bytearray(b"secret")
        zero_buffer(buffer)
        assert buffer == bytearray(6)
