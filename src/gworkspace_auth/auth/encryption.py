"""At-rest obfuscation for the token file.

The key is derived deterministically from the user's home directory and
the keyring service/account names, so any process running as the same
user on the same machine can derive it again. This keeps tokens out of
plain sight in backups and casual file browsing. It is not a defense
against a local attacker who can read the file and knows this scheme.

Format: ``hex(nonce || AES-256-GCM ciphertext || tag)``.
"""

import os
from pathlib import Path

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

KEY_LENGTH = 32
NONCE_LENGTH = 12
TAG_LENGTH = 16
KDF_ITERATIONS = 100_000
KDF_SALT = b"gworkspace-auth/token-file/v1"
ASSOCIATED_DATA = b"gworkspace-auth-oauth2-tokens"


class TokenDecryptionError(Exception):
    """Ciphertext could not be decoded, authenticated or decrypted."""


def zero_buffer(buffer: bytearray) -> None:
    """Overwrite a sensitive buffer in place."""
    for i in range(len(buffer)):
        buffer[i] = 0


class TokenCipher:
    """AES-256-GCM with a machine-derived key.

    Attributes:
        identity: Input to key derivation.
    """

    def __init__(self, service: str, account: str, identity: str | None = None) -> None:
        self.identity = identity or f"{Path.home()}:{service}:{account}"

    def _derive_key(self) -> bytearray:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_LENGTH,
            salt=KDF_SALT,
            iterations=KDF_ITERATIONS,
        )
        return bytearray(kdf.derive(self.identity.encode("utf-8")))

    def encrypt(self, plaintext: str) -> str:
        """Encrypt text and return the hex payload."""
        key = self._derive_key()
        data = bytearray(plaintext.encode("utf-8"))
        try:
            nonce = os.urandom(NONCE_LENGTH)
            ciphertext = AESGCM(bytes(key)).encrypt(nonce, bytes(data), ASSOCIATED_DATA)
            return (nonce + ciphertext).hex()
        finally:
            zero_buffer(key)
            zero_buffer(data)

    def decrypt(self, payload: str) -> str:
        """Decrypt a hex payload produced by ``encrypt``.

        Raises:
            TokenDecryptionError: If the payload is malformed or was not
                produced with this key.
        """
        try:
            raw = bytes.fromhex(payload.strip())
        except ValueError as e:
            raise TokenDecryptionError(f"Invalid ciphertext encoding: {e}") from e

        if len(raw) < NONCE_LENGTH + TAG_LENGTH:
            raise TokenDecryptionError("Invalid ciphertext: payload too short")

        key = self._derive_key()
        plaintext = bytearray()
        try:
            try:
                plaintext = bytearray(
                    AESGCM(bytes(key)).decrypt(
                        raw[:NONCE_LENGTH], raw[NONCE_LENGTH:], ASSOCIATED_DATA
                    )
                )
            except InvalidTag as e:
                raise TokenDecryptionError("Failed to decrypt: cipher authentication failed") from e
            try:
                return plaintext.decode("utf-8")
            except UnicodeDecodeError as e:
                raise TokenDecryptionError("Failed to decrypt: invalid plaintext encoding") from e
        finally:
            zero_buffer(key)
            zero_buffer(plaintext)
