"""
Lending System Module

Wires the collection core together: one storage backend, one offline queue,
one recorder and one sync coordinator per process, all sharing the same
clock and connectivity monitor.
"""

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Optional
import logging

from .async_storage import AsyncStorageAdapter
from .clock import Clock, SystemClock
from .config import FieldLendingConfig, get_config
from .connectivity import ConnectivityMonitor
from .local_store import KeyValueStore, StorageKeyValueStore
from .offline_queue import OfflineQueue
from .recorder import CollectionRecorder, MutationApplier
from .remote_client import HttpLoanRepository
from .repository import LoanRepository, StorageLoanRepository
from .schedule import compute_schedule, summarize_schedule
from .storage import InMemoryStorage, SQLiteStorage, StorageInterface
from .sync import SyncCoordinator, SyncResult

logger = logging.getLogger("field_lending.system")


class LendingSystem:
    """Field lending core with all components initialized"""

    def __init__(
        self,
        config: Optional[FieldLendingConfig] = None,
        clock: Optional[Clock] = None,
        repository: Optional[LoanRepository] = None,
        local_store: Optional[KeyValueStore] = None,
        connectivity: Optional[ConnectivityMonitor] = None
    ):
        self.config = config or get_config()
        self.clock = clock or SystemClock()
        self.connectivity = connectivity or ConnectivityMonitor(online=self.config.start_online)

        # Initialize storage; one adapter so queue writes and loan transactions never interleave
        self.storage = self._create_storage()
        self.async_storage = AsyncStorageAdapter(self.storage)
        self.repository = repository or self._create_repository()
        self.local_store = local_store or StorageKeyValueStore(self.async_storage)

        # Initialize core components
        self.queue = OfflineQueue(
            self.local_store,
            clock=self.clock,
            remote=self.repository,
            connectivity=self.connectivity,
            storage_key=self.config.queue_storage_key,
            retention=timedelta(days=self.config.queue_retention_days)
        )
        self.recorder = CollectionRecorder(
            self.repository,
            self.queue,
            self.connectivity,
            clock=self.clock,
            default_missed_penalty=Decimal(self.config.default_missed_penalty),
            amount_tolerance=Decimal(self.config.amount_tolerance)
        )
        self.applier = MutationApplier(self.recorder, self.repository)
        self.coordinator = SyncCoordinator(
            self.queue, self.applier, self.connectivity,
            clock=self.clock, remote=self.repository
        )

        # Agent whose queue is drained automatically on reconnect
        self.active_user: Optional[str] = None
        if self.config.sync_on_reconnect:
            self.connectivity.add_reconnect_listener(self._sync_active_user)

    def _create_storage(self) -> StorageInterface:
        path = self.config.storage_path
        if not path or path == ":memory:":
            return InMemoryStorage()
        return SQLiteStorage(path)

    def _create_repository(self) -> LoanRepository:
        if self.config.remote_url:
            logger.info(f"Using remote store at {self.config.remote_url}")
            return HttpLoanRepository(
                base_url=self.config.remote_url,
                timeout=self.config.remote_timeout,
                api_key=self.config.remote_api_key or None
            )
        return StorageLoanRepository(self.async_storage)

    async def _sync_active_user(self) -> None:
        if self.active_user is None:
            logger.info("Connectivity restored with no active agent, nothing to sync")
            return
        await self.coordinator.sync(self.active_user)

    async def compute_schedule(self, loan_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Schedule of a loan with its roll-up, recomputed from the stored records.

        Raises:
            LoanNotFoundError: unknown loan
            InvalidScheduleError: the loan's dates or total are malformed
        """
        loan = await self.repository.get_loan_by_id(loan_id)
        payments = await self.repository.get_payments_by_loan(loan_id)
        missed = await self.repository.get_missed_payments_by_loan(loan_id)

        terms = compute_schedule(loan, payments, missed, now or self.clock.now())
        return {
            "loan": loan,
            "terms": terms,
            "summary": summarize_schedule(terms),
        }

    async def sync(self, user_id: Optional[str] = None) -> SyncResult:
        """Drain a user's queue; the user becomes the active agent"""
        if user_id:
            self.active_user = user_id
        if self.active_user is None:
            return SyncResult()
        return await self.coordinator.sync(self.active_user)

    async def close(self) -> None:
        await self.repository.close()
        self.storage.close()
