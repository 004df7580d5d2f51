"""
Field-level encryption for personal data at rest.

Envelope format, all parts base64 and colon-joined:

    iv(16 bytes) : salt(64 bytes) : tag(16 bytes) : ciphertext

Every value gets its own salt, and the AES-256-GCM key for that value is
derived from the master key with PBKDF2-HMAC-SHA256. Identical plaintexts
therefore never produce identical envelopes, and any modification of the
envelope fails tag verification.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import logging
import secrets
from typing import Any, Iterable, Mapping, MutableMapping

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from warden.errors import CryptoFailure, ValidationError

logger = logging.getLogger("warden.crypto")

IV_LENGTH = 16
SALT_LENGTH = 64
TAG_LENGTH = 16
KEY_LENGTH = 32
ITERATIONS = 100_000
MASTER_KEY_SALT = b"encryption-salt"
DEVELOPMENT_PASSPHRASE = "temporary-dev-key-change-in-production"
ENVELOPE_SEPARATOR = ":"


class DecryptionFailure(CryptoFailure):
    default_code = "decryption_failed"


def _pbkdf2(secret: bytes, salt: bytes, iterations: int = ITERATIONS) -> bytes:
    kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=KEY_LENGTH, salt=salt, iterations=iterations)
    return kdf.derive(secret)


def derive_master_key(raw_key: str | None, app_env: str = "development") -> bytes:
    """Turn the configured ENCRYPTION_KEY into a 32-byte AES key.

    A 64-character hex string is taken as the key itself; anything else is a
    passphrase run through PBKDF2. Without a key, production refuses to start
    and every other environment falls back to a fixed development key.
    """
    if not raw_key:
        if app_env == "production":
            raise RuntimeError("ENCRYPTION_KEY is not configured")
        logger.warning("ENCRYPTION_KEY is not configured; using the temporary development key (env=%s)", app_env)
        return _pbkdf2(DEVELOPMENT_PASSPHRASE.encode("utf-8"), MASTER_KEY_SALT)
    if len(raw_key) == KEY_LENGTH * 2:
        try:
            return bytes.fromhex(raw_key)
        except ValueError:
            pass
    return _pbkdf2(raw_key.encode("utf-8"), MASTER_KEY_SALT)


def search_hash(text: str) -> str:
    return hashlib.sha256(text.strip().lower().encode("utf-8")).hexdigest()


def verify_search_hash(text: str, stored_hash: str) -> bool:
    return hmac.compare_digest(search_hash(text).encode("utf-8"), str(stored_hash).encode("utf-8"))


def legacy_plaintext(value: str) -> str:
    # Migration shim: rows written before field encryption hold plain values.
    # Remove once every row has been re-encrypted.
    logger.warning("legacy plaintext value returned without decryption (length=%d)", len(value))
    return value


class CryptoEngine:
    def __init__(self, master_key: bytes, iterations: int = ITERATIONS) -> None:
        if len(master_key) != KEY_LENGTH:
            raise ValueError("Master key must be exactly 32 bytes")
        self._master_key = master_key
        self.iterations = iterations

    @classmethod
    def from_settings(cls, settings) -> "CryptoEngine":
        return cls(derive_master_key(settings.encryption_key, settings.app_env))

    def encrypt(self, plaintext: str | None, max_length: int | None = None) -> str | None:
        if not plaintext:
            return None
        if max_length is not None and len(plaintext) > max_length:
            raise ValidationError("value_too_long", f"Value exceeds {max_length} characters")
        iv = secrets.token_bytes(IV_LENGTH)
        salt = secrets.token_bytes(SALT_LENGTH)
        key = _pbkdf2(self._master_key, salt, self.iterations)
        sealed = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return ENVELOPE_SEPARATOR.join(
            base64.b64encode(part).decode("ascii") for part in (iv, salt, tag, ciphertext)
        )

    def decrypt(self, envelope: str | None) -> str | None:
        """Return the plaintext, or None when the envelope cannot be opened."""
        if not envelope:
            return None
        if ENVELOPE_SEPARATOR not in envelope:
            return legacy_plaintext(envelope)
        try:
            return self._open(envelope)
        except DecryptionFailure as exc:
            logger.error("decryption failed: %s", exc.message)
            return None

    def decrypt_required(self, envelope: str | None) -> str:
        """Strict variant for secrets: no legacy passthrough, failures raise."""
        if not envelope or ENVELOPE_SEPARATOR not in envelope:
            raise DecryptionFailure("decryption_failed", "Value is not an encrypted envelope")
        return self._open(envelope)

    def decrypt_or_raw(self, value: str | None) -> str | None:
        """Display fields only: fall back to the stored value when decryption fails."""
        if not value:
            return value
        plaintext = self.decrypt(value)
        if plaintext is None:
            logger.warning("decrypt fallback: returning stored value for undecryptable field")
            return value
        return plaintext

    def encrypt_fields(
        self,
        data: Mapping[str, Any],
        fields: Iterable[str],
        max_lengths: Mapping[str, int] | None = None,
    ) -> dict[str, Any]:
        encrypted = dict(data)
        limits = max_lengths or {}
        for field_name in fields:
            value = encrypted.get(field_name)
            if value is None:
                continue
            limit = limits.get(field_name)
            text = str(value)
            if limit:
                text = text[:limit]
            encrypted[field_name] = self.encrypt(text, limit)
        return encrypted

    def decrypt_fields(self, data: MutableMapping[str, Any] | Mapping[str, Any], fields: Iterable[str]) -> dict[str, Any]:
        decrypted = dict(data)
        for field_name in fields:
            value = decrypted.get(field_name)
            if value is None:
                continue
            decrypted[field_name] = self.decrypt_or_raw(str(value))
        return decrypted

    def search_hash(self, text: str) -> str:
        return search_hash(text)

    def verify_search_hash(self, text: str, stored_hash: str) -> bool:
        return verify_search_hash(text, stored_hash)

    def _open(self, envelope: str) -> str:
        parts = envelope.split(ENVELOPE_SEPARATOR)
        if len(parts) != 4:
            raise DecryptionFailure("malformed_envelope", "Encrypted value must have 4 parts")
        try:
            iv, salt, tag, ciphertext = (base64.b64decode(part, validate=True) for part in parts)
        except (binascii.Error, ValueError) as exc:
            raise DecryptionFailure("malformed_envelope", "Encrypted value is not valid base64") from exc
        if len(iv) != IV_LENGTH or len(salt) != SALT_LENGTH or len(tag) != TAG_LENGTH:
            raise DecryptionFailure("malformed_envelope", "Encrypted value has invalid component sizes")
        key = _pbkdf2(self._master_key, salt, self.iterations)
        try:
            plaintext = AESGCM(key).decrypt(iv, ciphertext + tag, None)
        except InvalidTag as exc:
            raise DecryptionFailure("tag_mismatch", "Authentication tag verification failed") from exc
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecryptionFailure("malformed_plaintext", "Decrypted value is not UTF-8") from exc
