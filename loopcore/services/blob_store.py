"""Named JSON artifact storage.

The pipeline, the settings manager and the device sync state machine all
keep their values here. Values are serialized as canonical JSON, so saving
an equal value twice stores the same bytes.
"""

import json
from abc import ABC, abstractmethod
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from loopcore.core.errors import StoreWriteFailed
from loopcore.core.pipeline.keys import canonical_json
from loopcore.database import get_session_maker
from loopcore.logging_config import get_logger
from loopcore.models.blob import StoredBlob

logger = get_logger(__name__)


class BlobStore(ABC):
    """Key -> JSON value store (last writer wins)."""

    @abstractmethod
    async def save(self, key: str, value: Any) -> None:
        """Store ``value`` under ``key``.

        Raises:
            StoreWriteFailed: The value could not be persisted
        """

    @abstractmethod
    async def retrieve_raw(self, key: str) -> str | None:
        """Return the stored JSON text, or None when ``key`` was never saved."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove ``key`` (no-op when absent)."""

    async def retrieve(self, key: str, default: Any = None) -> Any:
        """Return the decoded value, or ``default`` when ``key`` was never saved."""
        raw = await self.retrieve_raw(key)
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Stored value is not valid JSON, using default", key=key)
            return default


class InMemoryBlobStore(BlobStore):
    """Blob store kept in a dict (tests and simulators)."""

    def __init__(self, initial: dict[str, Any] | None = None):
        self._values: dict[str, str] = {}
        for key, value in (initial or {}).items():
            self._values[key] = canonical_json(value)

    async def save(self, key: str, value: Any) -> None:
        try:
            self._values[key] = canonical_json(value)
        except (TypeError, ValueError) as e:
            raise StoreWriteFailed(f"Cannot serialize value for {key}: {e}") from e

    async def retrieve_raw(self, key: str) -> str | None:
        return self._values.get(key)

    async def delete(self, key: str) -> None:
        self._values.pop(key, None)

    def keys(self) -> list[str]:
        return sorted(self._values)


class SqlBlobStore(BlobStore):
    """Blob store backed by the ``blobs`` table."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession] | None = None):
        self._session_maker = session_maker

    @property
    def session_maker(self) -> async_sessionmaker[AsyncSession]:
        return self._session_maker or get_session_maker()

    async def save(self, key: str, value: Any) -> None:
        try:
            value_json = canonical_json(value)
        except (TypeError, ValueError) as e:
            raise StoreWriteFailed(f"Cannot serialize value for {key}: {e}") from e

        try:
            async with self.session_maker() as session:
                blob = await session.get(StoredBlob, key)
                if blob is None:
                    session.add(StoredBlob(key=key, value_json=value_json))
                elif blob.value_json != value_json:
                    blob.value_json = value_json
                await session.commit()
        except SQLAlchemyError as e:
            logger.error("Failed to save blob", key=key, error=str(e))
            raise StoreWriteFailed(f"Failed to save {key}") from e

    async def retrieve_raw(self, key: str) -> str | None:
        async with self.session_maker() as session:
            result = await session.execute(
                select(StoredBlob.value_json).where(StoredBlob.key == key)
            )
            return result.scalar_one_or_none()

    async def delete(self, key: str) -> None:
        try:
            async with self.session_maker() as session:
                await session.execute(delete(StoredBlob).where(StoredBlob.key == key))
                await session.commit()
        except SQLAlchemyError as e:
            logger.error("Failed to delete blob", key=key, error=str(e))
            raise StoreWriteFailed(f"Failed to delete {key}") from e
