"""
Durable refresh-token storage keyed by user id.

The OAuth flow depends only on the save/read/delete contract (TokenStore). Writes are
last-write-wins: a second consent for the same user replaces the stored token.
"""
import logging
import threading
from typing import Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from drive_connect.errors import TokenStoreError
from drive_connect.models import StoredRefreshToken
from drive_connect.token_cipher import TokenCipher

logger = logging.getLogger(__name__)


class TokenStore(Protocol):
    def save(self, user_id: str, refresh_token: str) -> None: ...

    def read(self, user_id: str) -> str | None: ...

    def delete(self, user_id: str) -> None: ...


class InMemoryTokenStore:
    """Process-local store for tests and single-process development. Not durable."""

    def __init__(self):
        self._tokens: dict[str, str] = {}
        self._lock = threading.Lock()

    def save(self, user_id: str, refresh_token: str) -> None:
        with self._lock:
            self._tokens[user_id] = refresh_token

    def read(self, user_id: str) -> str | None:
        with self._lock:
            return self._tokens.get(user_id)

    def delete(self, user_id: str) -> None:
        with self._lock:
            self._tokens.pop(user_id, None)


class SqlTokenStore:
    """SQLAlchemy-backed store; tokens encrypted with TokenCipher before they reach the database."""

    def __init__(self, session_factory: sessionmaker, cipher: TokenCipher):
        self._session_factory = session_factory
        self._cipher = cipher

    def _session(self) -> Session:
        return self._session_factory()

    def save(self, user_id: str, refresh_token: str) -> None:
        if not user_id or not refresh_token:
            raise TokenStoreError("user_id and refresh_token are required")
        db = self._session()
        try:
            row = db.get(StoredRefreshToken, user_id)
            encrypted = self._cipher.encrypt(refresh_token)
            if row is None:
                db.add(
                    StoredRefreshToken(
                        user_id=user_id,
                        encrypted_token=encrypted,
                        key_version=self._cipher.key_version,
                    )
                )
            else:
                row.encrypted_token = encrypted
                row.key_version = self._cipher.key_version
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise TokenStoreError("Failed to save refresh token") from e
        finally:
            db.close()

    def read(self, user_id: str) -> str | None:
        db = self._session()
        try:
            row = db.get(StoredRefreshToken, user_id)
            if row is None:
                return None
            return self._cipher.decrypt(row.encrypted_token, row.key_version)
        except SQLAlchemyError as e:
            raise TokenStoreError("Failed to read refresh token") from e
        finally:
            db.close()

    def delete(self, user_id: str) -> None:
        db = self._session()
        try:
            row = db.get(StoredRefreshToken, user_id)
            if row is not None:
                db.delete(row)
                db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise TokenStoreError("Failed to delete refresh token") from e
        finally:
            db.close()
