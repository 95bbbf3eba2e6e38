from __future__ import annotations

import binascii
from base64 import urlsafe_b64decode

import structlog
from cryptography.fernet import Fernet, InvalidToken

logger = structlog.get_logger(__name__)


class CipherConfigurationError(RuntimeError):
    pass


class DecryptionError(RuntimeError):
    pass


def generate_key() -> str:
    return Fernet.generate_key().decode("utf-8")


class SecretCipher:
    """Symmetric encryption for tenant connection strings at rest.

    The key is process-wide and configured separately from the registry, so a
    registry dump alone never yields usable credentials.
    """

    def __init__(self, key: str) -> None:
        if not key:
            raise CipherConfigurationError("CONNECTION_ENCRYPTION_KEY is not set.")
        try:
            decoded = urlsafe_b64decode(key.encode("utf-8"))
        except (binascii.Error, ValueError) as exc:
            raise CipherConfigurationError("CONNECTION_ENCRYPTION_KEY is not valid base64.") from exc
        if len(decoded) != 32:
            raise CipherConfigurationError(
                f"CONNECTION_ENCRYPTION_KEY must decode to 32 bytes, got {len(decoded)}."
            )
        self._fernet = Fernet(key.encode("utf-8"))

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("utf-8")

    def decrypt(self, ciphertext: str) -> str:
        try:
            return self._fernet.decrypt(ciphertext.encode("utf-8")).decode("utf-8")
        except (InvalidToken, UnicodeError) as exc:
            logger.error("secret_decryption_failed", error=type(exc).__name__)
            raise DecryptionError("Ciphertext is invalid or was tampered with.") from exc
