"""
Encryption of refresh tokens at rest (Fernet, with key rotation via MultiFernet).
Keys from DRIVE_TOKEN_ENCRYPTION_KEYS, newest first. Without keys tokens are stored as-is (dev only).
"""
import logging

from cryptography.fernet import Fernet, InvalidToken, MultiFernet

from drive_connect.errors import TokenStoreError

logger = logging.getLogger(__name__)

PLAINTEXT_VERSION = "plain"
FERNET_VERSION = "fernet-v1"


def generate_key() -> str:
    """New Fernet key for DRIVE_TOKEN_ENCRYPTION_KEYS."""
    return Fernet.generate_key().decode("ascii")


class TokenCipher:
    def __init__(self, keys: list[str] | None = None):
        keys = [k for k in (keys or []) if k]
        if keys:
            try:
                self._fernet = MultiFernet([Fernet(k.encode("ascii")) for k in keys])
            except ValueError as e:
                raise TokenStoreError("Invalid token encryption key") from e
        else:
            self._fernet = None
            logger.warning("No DRIVE_TOKEN_ENCRYPTION_KEYS configured; refresh tokens stored unencrypted")

    @property
    def enabled(self) -> bool:
        return self._fernet is not None

    @property
    def key_version(self) -> str:
        return FERNET_VERSION if self.enabled else PLAINTEXT_VERSION

    def encrypt(self, value: str) -> str:
        if self._fernet is None:
            return value
        return self._fernet.encrypt(value.encode("utf-8")).decode("ascii")

    def decrypt(self, value: str, key_version: str = FERNET_VERSION) -> str:
        if key_version == PLAINTEXT_VERSION:
            return value
        if self._fernet is None:
            raise TokenStoreError("Encrypted token found but no encryption key configured")
        try:
            return self._fernet.decrypt(value.encode("ascii")).decode("utf-8")
        except InvalidToken as e:
            raise TokenStoreError("Stored token could not be decrypted") from e
