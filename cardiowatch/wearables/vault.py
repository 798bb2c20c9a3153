"""AES-256-GCM credential vault for OAuth tokens and device push secrets.

Stored values have the self-describing form::

    base64(nonce):base64(tag):base64(ciphertext)

The key is derived once from the configured secret with scrypt and held as
process-wide state.  Call :func:`init_vault` exactly once at startup (the
FastAPI lifespan does this); tests build throwaway :class:`CredentialVault`
instances directly.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import logging
import secrets
import threading

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

logger = logging.getLogger("cardiowatch.wearables.vault")

# Existing ciphertexts were produced with these parameters.
_KDF_SALT = b"cardiowatch-salt"
_KEY_LENGTH = 32
_NONCE_LENGTH = 16
_TAG_LENGTH = 16


class EncryptionError(Exception):
    """Raised when encryption or decryption fails.

    The message never includes the input or the key.
    """


class CredentialFormatError(EncryptionError):
    """Raised by strict decryption when a value is not in vault format."""


def secure_compare(a: str | None, b: str | None) -> bool:
    """Constant-time string comparison.  ``None`` never matches."""
    if a is None or b is None:
        return False
    a_bytes = a.encode("utf-8")
    b_bytes = b.encode("utf-8")
    if len(a_bytes) != len(b_bytes):
        return False
    return hmac.compare_digest(a_bytes, b_bytes)


class CredentialVault:
    """Symmetric authenticated encryption for credentials at rest.

    Usage::

        vault = CredentialVault(secret=settings.encryption_key)
        stored = vault.encrypt(tokens.access_token)
        access_token = vault.decrypt(stored)
    """

    def __init__(self, secret: str) -> None:
        """Derive the 256-bit key from ``secret``.

        Args:
            secret: The configured encryption secret.

        Raises:
            EncryptionError: If the secret is empty.
        """
        if not secret or not secret.strip():
            raise EncryptionError("Encryption secret must not be empty")
        kdf = Scrypt(salt=_KDF_SALT, length=_KEY_LENGTH, n=2**14, r=8, p=1)
        self._aesgcm = AESGCM(kdf.derive(secret.encode("utf-8")))

    # ------------------------------------------------------------------
    # Core cipher operations
    # ------------------------------------------------------------------

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a string with a fresh random nonce.

        Args:
            plaintext: Value to protect. The empty string maps to itself.

        Returns:
            ``nonce:tag:ciphertext`` with each part base64-encoded.

        Raises:
            EncryptionError: If the cipher fails.
        """
        if plaintext == "":
            return ""
        nonce = secrets.token_bytes(_NONCE_LENGTH)
        try:
            sealed = self._aesgcm.encrypt(nonce, plaintext.encode("utf-8"), None)
        except (TypeError, ValueError, OverflowError) as exc:
            raise EncryptionError("Encryption failed") from exc
        ciphertext, tag = sealed[:-_TAG_LENGTH], sealed[-_TAG_LENGTH:]
        return ":".join(
            base64.b64encode(part).decode("ascii") for part in (nonce, tag, ciphertext)
        )

    def decrypt(self, value: str, strict: bool = False) -> str:
        """Decrypt a vault-format string.

        Values without exactly three colon-separated parts are treated as
        legacy plaintext and returned unchanged, unless ``strict`` is set.

        Args:
            value:  Stored value.
            strict: Reject anything not in vault format.

        Returns:
            The plaintext.

        Raises:
            CredentialFormatError: ``strict`` and the value is not vault format.
            EncryptionError: The value is vault format but fails to
                decode or authenticate.
        """
        if value == "":
            return ""
        parts = value.split(":")
        if len(parts) != 3:
            if strict:
                raise CredentialFormatError("Value is not in vault format")
            return value
        try:
            nonce, tag, ciphertext = (base64.b64decode(p, validate=True) for p in parts)
            plaintext = self._aesgcm.decrypt(nonce, ciphertext + tag, None)
            return plaintext.decode("utf-8")
        except (binascii.Error, ValueError, InvalidTag) as exc:
            raise EncryptionError("Decryption failed") from exc

    @staticmethod
    def is_encrypted(value: str | None) -> bool:
        """Return True when ``value`` has the vault's three-part shape."""
        if not value:
            return False
        parts = value.split(":")
        if len(parts) != 3:
            return False
        try:
            nonce, tag, _ = (base64.b64decode(p, validate=True) for p in parts)
        except (binascii.Error, ValueError):
            return False
        return len(nonce) == _NONCE_LENGTH and len(tag) == _TAG_LENGTH

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def hash(value: str) -> str:
        """SHA-256 hex digest, used for lookup of one-time state values."""
        return hashlib.sha256(value.encode("utf-8")).hexdigest()

    @staticmethod
    def generate_token(nbytes: int = 32) -> str:
        """Random hex token (push tokens, OAuth state, PKCE verifiers)."""
        return secrets.token_hex(nbytes)


# ---------------------------------------------------------------------------
# Process-wide vault
# ---------------------------------------------------------------------------

_vault: CredentialVault | None = None
_vault_lock = threading.Lock()


def init_vault(secret: str) -> CredentialVault:
    """Initialize the process-wide vault.  Call once at app startup.

    Raises:
        RuntimeError: If the vault is already initialized.
    """
    global _vault
    with _vault_lock:
        if _vault is not None:
            raise RuntimeError("Credential vault already initialized")
        _vault = CredentialVault(secret)
    logger.info("Credential vault initialized")
    return _vault


def get_vault() -> CredentialVault:
    if _vault is None:
        raise RuntimeError("Credential vault not initialized; call init_vault() first")
    return _vault


def close_vault() -> None:
    """Drop the process-wide vault.  Call at app shutdown."""
    global _vault
    with _vault_lock:
        _vault = None
