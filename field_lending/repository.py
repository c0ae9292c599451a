"""
Loan Repository Module

The narrow persistence contract the collection core consumes, plus an
implementation over the async storage backends. Every create is idempotent
by record id: writing a record whose id already exists returns the stored
record unchanged, which is what makes replayed queue items safe.
"""

from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple
import logging
import uuid

from .async_storage import AsyncStorageInterface
from .exceptions import LoanNotFoundError
from .models import Loan, MissedPayment, Payment, Penalty

logger = logging.getLogger("field_lending.repository")


class LoanRepository(ABC):
    """Remote store contract used by the recorder and the sync coordinator"""

    @abstractmethod
    async def get_loan_by_id(self, loan_id: str) -> Loan:
        """Raises LoanNotFoundError when the loan does not exist"""
        pass

    @abstractmethod
    async def save_loan(self, loan: Loan) -> Loan:
        pass

    @abstractmethod
    async def create_loan(self, data: Dict[str, Any]) -> Loan:
        pass

    @abstractmethod
    async def create_borrower(self, data: Dict[str, Any]) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def create_payment(self, payment: Payment) -> Tuple[Payment, bool]:
        """Stored payment and whether this call inserted it"""
        pass

    @abstractmethod
    async def create_missed_payment(self, missed: MissedPayment) -> MissedPayment:
        pass

    @abstractmethod
    async def update_missed_payment(self, missed: MissedPayment) -> MissedPayment:
        pass

    @abstractmethod
    async def create_penalty(self, penalty: Penalty) -> Penalty:
        pass

    @abstractmethod
    async def get_payments_by_loan(self, loan_id: str) -> List[Payment]:
        pass

    @abstractmethod
    async def get_missed_payments_by_loan(self, loan_id: str) -> List[MissedPayment]:
        pass

    @abstractmethod
    async def get_penalties_by_loan(self, loan_id: str) -> List[Penalty]:
        pass

    @abstractmethod
    async def mirror_queue_item(self, item: Dict[str, Any]) -> None:
        """Insert a queue item using the remote mirror schema"""
        pass

    @abstractmethod
    async def update_queue_item(self, item_id: str, changes: Dict[str, Any]) -> None:
        pass

    @asynccontextmanager
    async def atomic(self):
        """Group writes so they land together (no-op where the store has no transactions)"""
        yield

    async def health_check(self) -> bool:
        return True

    async def close(self) -> None:
        pass


class StorageLoanRepository(LoanRepository):
    """LoanRepository backed by an AsyncStorageInterface"""

    def __init__(self, storage: AsyncStorageInterface):
        self.storage = storage

        self.loans_table = "loans"
        self.borrowers_table = "borrowers"
        self.payments_table = "payments"
        self.missed_payments_table = "missed_payments"
        self.penalties_table = "penalties"
        self.queue_table = "offline_queue"

    @asynccontextmanager
    async def atomic(self):
        async with self.storage.atomic():
            yield

    async def get_loan_by_id(self, loan_id: str) -> Loan:
        data = await self.storage.load(self.loans_table, loan_id)
        if not data:
            raise LoanNotFoundError(f"Loan {loan_id} not found")
        return Loan.from_dict(data)

    async def save_loan(self, loan: Loan) -> Loan:
        loan.updated_at = datetime.now(timezone.utc)
        await self.storage.save(self.loans_table, loan.id, loan.to_dict())
        return loan

    async def create_loan(self, data: Dict[str, Any]) -> Loan:
        record = _with_record_defaults(data)
        existing = await self.storage.load(self.loans_table, record["id"])
        if existing:
            return Loan.from_dict(existing)
        loan = Loan.from_dict(record)
        await self.storage.save(self.loans_table, loan.id, loan.to_dict())
        return loan

    async def create_borrower(self, data: Dict[str, Any]) -> Dict[str, Any]:
        record = _with_record_defaults(data)
        existing = await self.storage.load(self.borrowers_table, record["id"])
        if existing:
            return existing
        await self.storage.save(self.borrowers_table, record["id"], record)
        return record

    async def _create_once(self, table: str, record):
        existing = await self.storage.load(table, record.id)
        if existing:
            logger.debug(f"{table} record {record.id} already stored, keeping original")
            return type(record).from_dict(existing), False
        await self.storage.save(table, record.id, record.to_dict())
        return record, True

    async def create_payment(self, payment: Payment) -> Tuple[Payment, bool]:
        return await self._create_once(self.payments_table, payment)

    async def create_missed_payment(self, missed: MissedPayment) -> MissedPayment:
        missed, _ = await self._create_once(self.missed_payments_table, missed)
        return missed

    async def update_missed_payment(self, missed: MissedPayment) -> MissedPayment:
        missed.updated_at = datetime.now(timezone.utc)
        await self.storage.save(self.missed_payments_table, missed.id, missed.to_dict())
        return missed

    async def create_penalty(self, penalty: Penalty) -> Penalty:
        penalty, _ = await self._create_once(self.penalties_table, penalty)
        return penalty

    async def get_payments_by_loan(self, loan_id: str) -> List[Payment]:
        rows = await self.storage.find(self.payments_table, {"loan_id": loan_id})
        return sorted((Payment.from_dict(row) for row in rows), key=lambda p: p.paid_at)

    async def get_missed_payments_by_loan(self, loan_id: str) -> List[MissedPayment]:
        rows = await self.storage.find(self.missed_payments_table, {"loan_id": loan_id})
        return sorted((MissedPayment.from_dict(row) for row in rows), key=lambda m: m.term_number)

    async def get_penalties_by_loan(self, loan_id: str) -> List[Penalty]:
        rows = await self.storage.find(self.penalties_table, {"loan_id": loan_id})
        return [Penalty.from_dict(row) for row in rows]

    async def mirror_queue_item(self, item: Dict[str, Any]) -> None:
        await self.storage.save(self.queue_table, item["id"], item)

    async def update_queue_item(self, item_id: str, changes: Dict[str, Any]) -> None:
        existing = await self.storage.load(self.queue_table, item_id)
        if existing is None:
            # The enqueue-time mirror may never have reached us
            existing = {"id": item_id}
        existing.update(changes)
        await self.storage.save(self.queue_table, item_id, existing)

    async def get_queue_mirror(self, item_id: str) -> Optional[Dict[str, Any]]:
        return await self.storage.load(self.queue_table, item_id)

    async def close(self) -> None:
        await self.storage.close()


def _with_record_defaults(data: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of data with id/created_at/updated_at filled in"""
    record = dict(data)
    now = datetime.now(timezone.utc).isoformat()
    record.setdefault("id", str(uuid.uuid4()))
    record.setdefault("created_at", now)
    record.setdefault("updated_at", now)
    return record
