"""
Offline Mutation Queue Module

Durably buffers mutations a field agent makes while disconnected. The local
store is the source of truth: an item is written there, as part of a full
rewrite of the queue document, before any attempt to reach the remote store.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional
import asyncio
import json
import logging
import uuid

from .clock import Clock, SystemClock, ensure_utc
from .connectivity import ConnectivityMonitor
from .exceptions import LocalStoreError, ValidationError
from .local_store import KeyValueStore
from .logging_config import log_action
from .repository import LoanRepository

logger = logging.getLogger("field_lending.queue")

DEFAULT_STORAGE_KEY = "field-lending-offline-queue"
DEFAULT_RETENTION = timedelta(days=7)


class ActionType(Enum):
    """Kinds of mutation the queue can carry"""
    LOAN = "loan"
    PAYMENT = "payment"
    COLLECTION = "collection"
    BORROWER = "borrower"


class QueueStatus(Enum):
    PENDING = "pending"
    SYNCED = "synced"
    FAILED = "failed"


@dataclass
class QueueItem:
    """A buffered mutation owned by one field agent"""
    id: str
    user_id: str
    action_type: ActionType
    payload: Dict[str, Any]
    created_at: datetime
    status: QueueStatus = QueueStatus.PENDING
    error_message: Optional[str] = None
    synced_at: Optional[datetime] = None
    attempts: int = 0

    def to_dict(self) -> Dict[str, Any]:
        """Local persisted form"""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "action_type": self.action_type.value,
            "payload": self.payload,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "error_message": self.error_message,
            "synced_at": self.synced_at.isoformat() if self.synced_at else None,
            "attempts": self.attempts,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'QueueItem':
        synced_at = data.get("synced_at")
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            action_type=ActionType(data["action_type"]),
            payload=data.get("payload") or {},
            created_at=ensure_utc(datetime.fromisoformat(data["created_at"])),
            status=QueueStatus(data.get("status", QueueStatus.PENDING.value)),
            error_message=data.get("error_message"),
            synced_at=ensure_utc(datetime.fromisoformat(synced_at)) if synced_at else None,
            attempts=data.get("attempts", 0),
        )

    def to_mirror(self) -> Dict[str, Any]:
        """Remote mirror schema"""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "action_type": self.action_type.value,
            "data": self.payload,
            "status": self.status.value,
            "synced_at": self.synced_at.isoformat() if self.synced_at else None,
            "error_message": self.error_message,
        }


@dataclass
class QueueStats:
    total: int = 0
    pending: int = 0
    synced: int = 0
    failed: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "total": self.total,
            "pending": self.pending,
            "synced": self.synced,
            "failed": self.failed,
        }


class OfflineQueue:
    """
    Durable per-device queue of pending mutations.

    One instance per process, shared by the recorder and the sync
    coordinator. Every mutation rewrites the whole queue document under
    storage_key.
    """

    def __init__(
        self,
        local_store: KeyValueStore,
        clock: Optional[Clock] = None,
        remote: Optional[LoanRepository] = None,
        connectivity: Optional[ConnectivityMonitor] = None,
        storage_key: str = DEFAULT_STORAGE_KEY,
        retention: timedelta = DEFAULT_RETENTION
    ):
        self.local_store = local_store
        self.clock = clock or SystemClock()
        self.remote = remote
        self.connectivity = connectivity
        self.storage_key = storage_key
        self.retention = retention
        self._lock = asyncio.Lock()

    async def load(self) -> List[QueueItem]:
        """Read the whole queue from the local store, in enqueue order"""
        raw = await self.local_store.get_item(self.storage_key)
        if not raw:
            return []
        try:
            return [QueueItem.from_dict(entry) for entry in json.loads(raw)]
        except (ValueError, KeyError, TypeError) as e:
            # Refuse to continue: rewriting would destroy unsynced mutations
            raise LocalStoreError(f"Offline queue under '{self.storage_key}' is corrupt: {e}") from e

    async def save(self, items: Iterable[QueueItem]) -> None:
        """Rewrite the whole queue document"""
        document = json.dumps([item.to_dict() for item in items], default=str)
        await self.local_store.set_item(self.storage_key, document)

    async def enqueue(self, action_type, payload: Dict[str, Any], user_id: str) -> QueueItem:
        """
        Durably record a mutation for later sync.

        Args:
            action_type: ActionType or its string value
            payload: JSON-serializable mutation data
            user_id: Field agent who owns the mutation

        Returns:
            The persisted pending QueueItem

        Raises:
            ValidationError: unknown action type or missing user
            LocalStoreError: the local write failed; nothing was recorded
        """
        try:
            action_type = ActionType(action_type)
        except ValueError:
            raise ValidationError(f"Unknown action type: {action_type}")
        if not user_id:
            raise ValidationError("Queue items need an owning user_id")

        item = QueueItem(
            id=str(uuid.uuid4()),
            user_id=user_id,
            action_type=action_type,
            payload=json.loads(json.dumps(payload, default=str)),
            created_at=self.clock.now(),
        )

        async with self._lock:
            items = await self.load()
            items.append(item)
            await self.save(items)

        log_action(
            logger, "info", f"Queued {action_type.value} mutation",
            user_id=user_id, action="queue_enqueue", resource=item.id
        )

        await self._mirror(item)
        return item

    async def _mirror(self, item: QueueItem) -> None:
        """Best-effort copy to the remote store; the local record is authoritative"""
        if self.remote is None or (self.connectivity and not self.connectivity.is_online):
            return
        try:
            await self.remote.mirror_queue_item(item.to_mirror())
        except Exception as e:
            logger.warning(f"Remote mirror of queue item {item.id} failed, will sync later: {e}")

    async def get_queue_stats(self) -> QueueStats:
        """Counts over the whole local queue (all users on this device)"""
        stats = QueueStats()
        for item in await self.load():
            stats.total += 1
            if item.status == QueueStatus.PENDING:
                stats.pending += 1
            elif item.status == QueueStatus.SYNCED:
                stats.synced += 1
            elif item.status == QueueStatus.FAILED:
                stats.failed += 1
        return stats

    async def get_pending_count(self) -> int:
        return (await self.get_queue_stats()).pending

    async def pending_items(self, user_id: Optional[str] = None) -> List[QueueItem]:
        """Pending items in enqueue order, optionally for one user"""
        return [
            item for item in await self.load()
            if item.status == QueueStatus.PENDING and (user_id is None or item.user_id == user_id)
        ]

    async def failed_items(self, user_id: Optional[str] = None) -> List[QueueItem]:
        return [
            item for item in await self.load()
            if item.status == QueueStatus.FAILED and (user_id is None or item.user_id == user_id)
        ]

    async def get_item(self, item_id: str) -> Optional[QueueItem]:
        for item in await self.load():
            if item.id == item_id:
                return item
        return None

    async def update_items(self, updated: Iterable[QueueItem]) -> None:
        """
        Write back changed items by id into a fresh read of the queue.

        Items enqueued after the caller loaded its copy are kept.
        """
        changes = {item.id: item for item in updated}
        if not changes:
            return
        async with self._lock:
            items = [changes.get(item.id, item) for item in await self.load()]
            await self.save(items)

    async def cleanup_old_items(self) -> int:
        """Drop synced items older than the retention window; returns how many"""
        cutoff = self.clock.now() - self.retention
        async with self._lock:
            items = await self.load()
            kept = [
                item for item in items
                if not (item.status == QueueStatus.SYNCED and item.created_at < cutoff)
            ]
            removed = len(items) - len(kept)
            if removed:
                await self.save(kept)
        if removed:
            logger.info(f"Removed {removed} synced queue item(s) older than {self.retention.days} days")
        return removed

    async def retry_failed(self, user_id: str, item_ids: Optional[Iterable[str]] = None) -> int:
        """
        Put failed items back to pending so the next sync re-applies them.

        Args:
            user_id: Only this user's items are touched
            item_ids: Restrict to these ids; all failed items of the user when None

        Returns:
            Number of items re-submitted
        """
        wanted = set(item_ids) if item_ids is not None else None
        resubmitted = []
        for item in await self.load():
            if item.status != QueueStatus.FAILED or item.user_id != user_id:
                continue
            if wanted is not None and item.id not in wanted:
                continue
            item.status = QueueStatus.PENDING
            item.error_message = None
            resubmitted.append(item)

        await self.update_items(resubmitted)
        if resubmitted:
            log_action(
                logger, "info", f"Re-submitted {len(resubmitted)} failed item(s)",
                user_id=user_id, action="queue_retry"
            )
        return len(resubmitted)

    async def clear(self) -> None:
        async with self._lock:
            await self.local_store.remove_item(self.storage_key)
