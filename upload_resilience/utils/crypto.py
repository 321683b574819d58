"""
Credential encryption for stored cloud storage tokens.

Access and refresh credentials are opaque to the resilience engine and are
kept Fernet-encrypted at rest. MultiFernet allows key rotation: the first key
encrypts, every configured key is tried on decryption.
"""

from typing import Iterable, List, Optional

from cryptography.fernet import Fernet, InvalidToken, MultiFernet


class CryptoServiceError(Exception):
    """Credential encryption is misconfigured or failed."""


class DecryptionError(CryptoServiceError):
    """Stored credential could not be decrypted with any configured key."""


def _fernet(key_b64: str, setting: str) -> Fernet:
    try:
        return Fernet(key_b64.encode())
    except (ValueError, TypeError) as e:
        raise CryptoServiceError(f"Invalid key in {setting}: {e}") from e


def _split_keys(raw: Optional[str]) -> Iterable[str]:
    return (part.strip() for part in (raw or "").split(",") if part.strip())


class CryptoService:
    """
    Encrypts and decrypts credential material with key rotation support.

    Usage:
        crypto = CryptoService(settings.fernet_key, settings.fernet_keys)
        stored = crypto.encrypt_token(grant.access_token)
        access_token = crypto.decrypt_token(stored)
    """

    def __init__(self, primary_key_b64: str, additional_keys: Optional[str] = None):
        """
        Args:
            primary_key_b64: Base64 Fernet key used for encryption (FERNET_KEY)
            additional_keys: Comma-separated retired keys still accepted for
                decryption (FERNET_KEYS)
        """
        if not primary_key_b64:
            raise CryptoServiceError("A Fernet key is required for token storage")

        ring: List[Fernet] = [_fernet(primary_key_b64, "FERNET_KEY")]
        ring.extend(_fernet(key, "FERNET_KEYS") for key in _split_keys(additional_keys))
        self._ring = MultiFernet(ring)
        self._ring_size = len(ring)

    def encrypt_token(self, plaintext_token: str) -> bytes:
        """Encrypt a credential with the newest key."""
        if not plaintext_token:
            raise CryptoServiceError("Refusing to store an empty credential")
        return self._ring.encrypt(plaintext_token.encode("utf-8"))

    def decrypt_token(self, ciphertext: bytes) -> str:
        """
        Decrypt a stored credential.

        Raises:
            DecryptionError: If no configured key can decrypt the ciphertext
        """
        if not ciphertext:
            raise DecryptionError("Stored credential is empty")
        try:
            return self._ring.decrypt(ciphertext).decode("utf-8")
        except InvalidToken as e:
            raise DecryptionError(
                f"Stored credential does not match any of the {self._ring_size} configured keys"
            ) from e

    def rotate_token(self, old_ciphertext: bytes) -> bytes:
        """Re-encrypt a stored credential with the current key."""
        try:
            return self._ring.rotate(old_ciphertext)
        except InvalidToken as e:
            raise DecryptionError("Stored credential cannot be rotated") from e
