"""
Authenticated encryption for OAuth tokens at rest.

Blob layout: nonce (16 bytes) + ciphertext + GCM tag (16 bytes), base64 encoded.
"""
from __future__ import annotations

import base64
import binascii
import logging
import secrets

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from rlsguard.errors import ConfigurationError, IntegrityError, InvalidInputError

LOGGER = logging.getLogger(__name__)

NONCE_LENGTH = 16
TAG_LENGTH = 16
KEY_LENGTH = 32


def _decode_key(key_hex: str) -> bytes:
    if not key_hex:
        raise ConfigurationError(
            "ENCRYPTION_KEY is required. Generate one with: openssl rand -hex 32"
        )
    if len(key_hex) != KEY_LENGTH * 2:
        raise ConfigurationError(
            f"ENCRYPTION_KEY must be {KEY_LENGTH * 2} hex characters ({KEY_LENGTH} bytes). "
            "Generate one with: openssl rand -hex 32"
        )
    try:
        return bytes.fromhex(key_hex)
    except ValueError as exc:
        raise ConfigurationError("ENCRYPTION_KEY must be hex encoded") from exc


class CredentialVault:
    def __init__(self, key_hex: str):
        self._aead = AESGCM(_decode_key(key_hex))

    def seal(self, plaintext: str) -> str:
        if not plaintext:
            raise InvalidInputError("Cannot encrypt empty string")
        nonce = secrets.token_bytes(NONCE_LENGTH)
        # AESGCM appends the tag to the ciphertext
        sealed = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        return base64.b64encode(nonce + sealed).decode("ascii")

    def unseal(self, blob: str) -> str:
        if not blob:
            raise InvalidInputError("Cannot decrypt empty string")
        try:
            combined = base64.b64decode(blob, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise IntegrityError("Encrypted value is not valid base64") from exc
        if len(combined) < NONCE_LENGTH + TAG_LENGTH:
            raise IntegrityError("Encrypted value is truncated")
        nonce, sealed = combined[:NONCE_LENGTH], combined[NONCE_LENGTH:]
        try:
            plaintext = self._aead.decrypt(nonce, sealed, None)
        except InvalidTag as exc:
            raise IntegrityError("Encrypted value failed authentication (tampered or wrong key)") from exc
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise IntegrityError("Decrypted value is not valid UTF-8") from exc

    def self_test(self) -> None:
        """Round-trip a probe value so a broken key fails at startup, not on first use."""
        probe = f"self-test-{secrets.token_hex(8)}"
        if self.unseal(self.seal(probe)) != probe:
            raise ConfigurationError("Encryption validation failed: decrypted value does not match")
        LOGGER.info("Credential vault self-test passed")
