"""
Sync Coordinator Module

Drains one agent's pending queue items into the remote store, in the order
they were enqueued. One coordinator per process; overlapping drains (a
reconnect event firing during a manual sync, say) are refused rather than
interleaved.
"""

from dataclasses import dataclass
from typing import Dict, Iterable, Optional
import logging

from .clock import Clock, SystemClock
from .connectivity import ConnectivityMonitor
from .exceptions import ConnectivityError, RemoteApplyError
from .logging_config import log_action
from .offline_queue import OfflineQueue, QueueItem, QueueStatus
from .recorder import MutationApplier
from .repository import LoanRepository

logger = logging.getLogger("field_lending.sync")


@dataclass
class SyncResult:
    success: int = 0
    failed: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {"success": self.success, "failed": self.failed}


class SyncCoordinator:
    """idle -> syncing -> idle, single-flight across all users"""

    def __init__(
        self,
        queue: OfflineQueue,
        applier: MutationApplier,
        connectivity: ConnectivityMonitor,
        clock: Optional[Clock] = None,
        remote: Optional[LoanRepository] = None
    ):
        self.queue = queue
        self.applier = applier
        self.connectivity = connectivity
        self.clock = clock or SystemClock()
        self.remote = remote
        self._syncing = False

    @property
    def is_syncing(self) -> bool:
        return self._syncing

    async def sync(self, user_id: str) -> SyncResult:
        """
        Apply the user's pending items and persist their outcomes.

        Returns SyncResult(0, 0) without touching the queue when another
        sync is in flight or the device is offline.
        """
        if self._syncing:
            logger.info(f"Sync for {user_id} skipped, another sync is in flight")
            return SyncResult()

        # Claimed before the first await
        self._syncing = True
        try:
            try:
                self.connectivity.require_online()
            except ConnectivityError as e:
                logger.info(f"Sync for {user_id} skipped: {e}")
                return SyncResult()

            items = await self.queue.pending_items(user_id)
            if not items:
                return SyncResult()

            result = SyncResult()
            for item in items:
                if await self._apply(item):
                    result.success += 1
                else:
                    result.failed += 1

            await self.queue.update_items(items)
            await self._mirror_statuses(items)
            await self.queue.cleanup_old_items()

            log_action(
                logger, "info",
                f"Sync finished: {result.success} synced, {result.failed} failed",
                user_id=user_id, action="queue_sync", extra=result.to_dict()
            )
            return result
        finally:
            self._syncing = False

    async def _apply(self, item: QueueItem) -> bool:
        item.attempts += 1
        try:
            await self.applier.apply(item)
        except Exception as e:
            error = e if isinstance(e, RemoteApplyError) else RemoteApplyError(str(e))
            item.status = QueueStatus.FAILED
            item.error_message = str(error) or type(e).__name__
            logger.warning(
                f"Queue item {item.id} ({item.action_type.value}) failed: {type(e).__name__}: {error}"
            )
            return False

        item.status = QueueStatus.SYNCED
        item.synced_at = self.clock.now()
        item.error_message = None
        return True

    async def _mirror_statuses(self, items: Iterable[QueueItem]) -> None:
        if self.remote is None:
            return
        for item in items:
            try:
                await self.remote.update_queue_item(item.id, {
                    "status": item.status.value,
                    "synced_at": item.synced_at.isoformat() if item.synced_at else None,
                    "error_message": item.error_message,
                })
            except Exception as e:
                logger.warning(f"Remote status mirror of queue item {item.id} failed: {e}")

    async def resubmit_failed(self, user_id: str, item_ids: Optional[Iterable[str]] = None) -> int:
        """Explicitly put failed items back to pending; there is no automatic retry"""
        return await self.queue.retry_failed(user_id, item_ids)
