"""Lookup of backend endpoints and credentials."""
import logging
import os
from abc import ABC, abstractmethod
from typing import Optional

from sqlalchemy.orm import Session

from phonocoach.config import settings
from phonocoach.errors import SecretMissing
from phonocoach.models.base import SessionLocal
from phonocoach.models.models import SecureStorage

logger = logging.getLogger(__name__)


class SecretStore(ABC):
    """Named secret lookup. Values are never logged."""

    def get(self, name: str) -> str:
        value = self._lookup(name)
        if not value:
            logger.error(f"Secret '{name}' is not configured")
            raise SecretMissing(name)
        return value

    @abstractmethod
    def _lookup(self, name: str) -> Optional[str]:
        """Raw value of a secret, or None. Must be implemented by subclasses."""
        raise NotImplementedError("Subclasses must implement this method")


class DatabaseSecretStore(SecretStore):
    """Secrets kept in the secure_storage table."""

    def __init__(self, db: Optional[Session] = None):
        self.db = db

    def _lookup(self, name: str) -> Optional[str]:
        if self.db is not None:
            return self._query(self.db, name)
        db = SessionLocal()
        try:
            return self._query(db, name)
        finally:
            db.close()

    @staticmethod
    def _query(db: Session, name: str) -> Optional[str]:
        row = db.query(SecureStorage).filter(SecureStorage.key_name == name).first()
        return row.key_value if row else None

    def set(self, name: str, value: str) -> None:
        """Create or replace a secret."""
        db = self.db or SessionLocal()
        try:
            row = db.query(SecureStorage).filter(SecureStorage.key_name == name).first()
            if row:
                row.key_value = value
            else:
                db.add(SecureStorage(key_name=name, key_value=value))
            db.commit()
            logger.info(f"Secret '{name}' stored")
        finally:
            if self.db is None:
                db.close()


class EnvironmentSecretStore(SecretStore):
    """Secrets read from environment variables of the same name."""

    def _lookup(self, name: str) -> Optional[str]:
        return os.getenv(name)


def get_secret_store(db: Optional[Session] = None) -> SecretStore:
    """Secret store selected by SECRET_BACKEND."""
    if settings.gateway.secret_backend == "env":
        return EnvironmentSecretStore()
    return DatabaseSecretStore(db)
