"""
Async Storage Backend Module

Coroutine interface over the table/record storage backends. The synchronous
backends run in a worker thread behind an asyncio lock so callers on the
event loop never block on SQLite I/O.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union
from pathlib import Path
from contextlib import asynccontextmanager
import asyncio

from .storage import StorageInterface, InMemoryStorage, SQLiteStorage


class AsyncStorageInterface(ABC):
    """Abstract interface for async storage backends"""
    
    @abstractmethod
    async def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        pass
    
    @abstractmethod
    async def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        pass
    
    @abstractmethod
    async def load_all(self, table: str) -> List[Dict[str, Any]]:
        pass
    
    @abstractmethod
    async def delete(self, table: str, record_id: str) -> bool:
        pass
    
    @abstractmethod
    async def exists(self, table: str, record_id: str) -> bool:
        pass
    
    @abstractmethod
    async def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        pass
    
    @abstractmethod
    async def count(self, table: str) -> int:
        pass
    
    @abstractmethod
    async def clear_table(self, table: str) -> None:
        pass
    
    async def close(self) -> None:
        """Close storage connection (default no-op)"""
        pass
    
    async def begin_transaction(self) -> None:
        pass
    
    async def commit(self) -> None:
        pass
    
    async def rollback(self) -> None:
        pass
    
    @asynccontextmanager
    async def atomic(self):
        """Context manager for atomic operations"""
        await self.begin_transaction()
        try:
            yield
            await self.commit()
        except Exception:
            await self.rollback()
            raise


class AsyncStorageAdapter(AsyncStorageInterface):
    """Runs a synchronous StorageInterface off the event loop"""
    
    def __init__(self, sync_storage: StorageInterface):
        self._sync_storage = sync_storage
        self._lock = asyncio.Lock()
        # Task holding an open atomic() block; its own calls skip the lock
        self._owner: Optional[asyncio.Task] = None
    
    @property
    def sync_storage(self) -> StorageInterface:
        return self._sync_storage
    
    async def _run(self, func, *args):
        if self._owner is not None and self._owner is asyncio.current_task():
            return await asyncio.to_thread(func, *args)
        async with self._lock:
            return await asyncio.to_thread(func, *args)
    
    async def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        await self._run(self._sync_storage.save, table, record_id, data)
    
    async def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        return await self._run(self._sync_storage.load, table, record_id)
    
    async def load_all(self, table: str) -> List[Dict[str, Any]]:
        return await self._run(self._sync_storage.load_all, table)
    
    async def delete(self, table: str, record_id: str) -> bool:
        return await self._run(self._sync_storage.delete, table, record_id)
    
    async def exists(self, table: str, record_id: str) -> bool:
        return await self._run(self._sync_storage.exists, table, record_id)
    
    async def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        return await self._run(self._sync_storage.find, table, filters)
    
    async def count(self, table: str) -> int:
        return await self._run(self._sync_storage.count, table)
    
    async def clear_table(self, table: str) -> None:
        await self._run(self._sync_storage.clear_table, table)
    
    async def close(self) -> None:
        await self._run(self._sync_storage.close)
    
    async def begin_transaction(self) -> None:
        await self._run(self._sync_storage.begin_transaction)
    
    async def commit(self) -> None:
        await self._run(self._sync_storage.commit)
    
    async def rollback(self) -> None:
        await self._run(self._sync_storage.rollback)
    
    @asynccontextmanager
    async def atomic(self):
        """
        Exclusive transaction on the wrapped backend.
        
        Other callers of this adapter wait until the block commits or rolls
        back, so their writes never end up inside it.
        """
        async with self._lock:
            self._owner = asyncio.current_task()
            try:
                await asyncio.to_thread(self._sync_storage.begin_transaction)
                try:
                    yield
                except BaseException:
                    await asyncio.to_thread(self._sync_storage.rollback)
                    raise
                await asyncio.to_thread(self._sync_storage.commit)
            finally:
                self._owner = None


class AsyncInMemoryStorage(AsyncStorageAdapter):
    """Async wrapper around InMemoryStorage"""
    
    def __init__(self):
        super().__init__(InMemoryStorage())


class AsyncSQLiteStorage(AsyncStorageAdapter):
    """Async wrapper around SQLiteStorage"""
    
    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        super().__init__(SQLiteStorage(db_path))


def create_async_storage(storage_path: Optional[str] = None) -> AsyncStorageInterface:
    """SQLite when a path is given, in-memory otherwise"""
    if storage_path:
        return AsyncSQLiteStorage(storage_path)
    return AsyncInMemoryStorage()
