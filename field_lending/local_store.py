"""
Durable Local Store Module

Device-local key/value persistence that survives process restarts. The
offline queue keeps its whole state under a single key here, so a value is
always a complete serialized document, never a delta.
"""

from abc import ABC, abstractmethod
from typing import Dict, Optional, Union
import logging

from .async_storage import AsyncStorageAdapter, AsyncStorageInterface
from .exceptions import LocalStoreError
from .storage import StorageInterface

logger = logging.getLogger("field_lending.local_store")


class KeyValueStore(ABC):
    """Abstract durable key/value surface"""

    @abstractmethod
    async def get_item(self, key: str) -> Optional[str]:
        """Stored value, None when the key was never written"""
        pass

    @abstractmethod
    async def set_item(self, key: str, value: str) -> None:
        """Replace the value; durable once this returns"""
        pass

    @abstractmethod
    async def remove_item(self, key: str) -> None:
        pass

    async def close(self) -> None:
        pass


class InMemoryKeyValueStore(KeyValueStore):
    """Process-local store for tests; share one instance to simulate a restart"""

    def __init__(self):
        self._items: Dict[str, str] = {}

    async def get_item(self, key: str) -> Optional[str]:
        return self._items.get(key)

    async def set_item(self, key: str, value: str) -> None:
        if not isinstance(value, str):
            raise LocalStoreError(f"Values must be strings, got {type(value).__name__}")
        self._items[key] = value

    async def remove_item(self, key: str) -> None:
        self._items.pop(key, None)


class StorageKeyValueStore(KeyValueStore):
    """
    Key/value view over a table of a storage backend.

    With SQLiteStorage underneath, values survive restarts and a completed
    set_item() is committed to disk. Backend failures surface as
    LocalStoreError. Pass the same AsyncStorageAdapter the loan repository
    uses so queue writes never land inside one of its transactions.
    """

    def __init__(self, storage: Union[StorageInterface, AsyncStorageInterface], table: str = "local_kv"):
        if isinstance(storage, StorageInterface):
            storage = AsyncStorageAdapter(storage)
        self.storage = storage
        self.table = table

    async def get_item(self, key: str) -> Optional[str]:
        try:
            record = await self.storage.load(self.table, key)
        except Exception as e:
            raise LocalStoreError(f"Failed to read '{key}': {e}") from e
        return record["value"] if record else None

    async def set_item(self, key: str, value: str) -> None:
        try:
            await self.storage.save(self.table, key, {"value": value})
        except Exception as e:
            logger.error(f"Local store write failed for '{key}': {e}")
            raise LocalStoreError(f"Failed to write '{key}': {e}") from e

    async def remove_item(self, key: str) -> None:
        try:
            await self.storage.delete(self.table, key)
        except Exception as e:
            raise LocalStoreError(f"Failed to remove '{key}': {e}") from e

    async def close(self) -> None:
        await self.storage.close()
