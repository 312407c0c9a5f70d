"""
SecureStore — async key/value storage for opaque string blobs.

The store knows nothing about tokens, expiry or encryption; all structure
is imposed by ``TokenVault``.  Values handed to a store are always
ciphertext.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Dict, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from connectors.errors import StorageError
from database.models import SecureBlob

logger = logging.getLogger(__name__)


class SecureStore(ABC):
    """Abstract interface for the secure blob store."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Return the blob stored under *key*, or None."""
        ...

    @abstractmethod
    async def set(self, key: str, value: str) -> None:
        """Persist *value* under *key* as a single atomic write."""
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove *key*.  Deleting a missing key is a no-op."""
        ...


class InMemorySecureStore(SecureStore):
    """
    Process-local store.

    ``available`` can be flipped to False to simulate secure storage being
    unavailable; every operation then raises ``StorageError``.
    """

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self.data: Dict[str, str] = dict(initial or {})
        self.available = True

    def _check(self, key: str) -> None:
        if not self.available:
            raise StorageError("Secure storage is unavailable", key=key)

    async def get(self, key: str) -> Optional[str]:
        self._check(key)
        return self.data.get(key)

    async def set(self, key: str, value: str) -> None:
        self._check(key)
        self.data[key] = value

    async def delete(self, key: str) -> None:
        self._check(key)
        self.data.pop(key, None)


class ScopedSecureStore(SecureStore):
    """Prefixes every key with a namespace so several vaults can share one store."""

    def __init__(self, inner: SecureStore, namespace: str):
        self._inner = inner
        self._prefix = f"{namespace}:"

    async def get(self, key: str) -> Optional[str]:
        return await self._inner.get(self._prefix + key)

    async def set(self, key: str, value: str) -> None:
        await self._inner.set(self._prefix + key, value)

    async def delete(self, key: str) -> None:
        await self._inner.delete(self._prefix + key)


class DatabaseSecureStore(SecureStore):
    """SQLAlchemy-backed store; one row per blob, one transaction per write."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get(self, key: str) -> Optional[str]:
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(SecureBlob.value).where(SecureBlob.key == key)
                )
                return result.scalar_one_or_none()
        except SQLAlchemyError as exc:
            logger.error("Secure store read failed for key %s: %s", key, exc.__class__.__name__)
            raise StorageError("Secure storage read failed", key=key, original_error=exc) from exc

    async def set(self, key: str, value: str) -> None:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    await session.merge(SecureBlob(key=key, value=value))
        except SQLAlchemyError as exc:
            logger.error("Secure store write failed for key %s: %s", key, exc.__class__.__name__)
            raise StorageError("Secure storage write failed", key=key, original_error=exc) from exc

    async def delete(self, key: str) -> None:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    await session.execute(delete(SecureBlob).where(SecureBlob.key == key))
        except SQLAlchemyError as exc:
            logger.error("Secure store delete failed for key %s: %s", key, exc.__class__.__name__)
            raise StorageError("Secure storage delete failed", key=key, original_error=exc) from exc
