"""
Domain Records Module

Loans, payments, missed payments and penalties as they are stored and
exchanged with the remote store. All amounts are Decimal, all timestamps
aware UTC datetimes.
"""

from dataclasses import dataclass, fields
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Union, get_args, get_origin, get_type_hints

from .amounts import MINOR_UNIT, ZERO, to_amount, within_tolerance
from .clock import ensure_utc


class RepaymentFrequency(Enum):
    """How often a loan installment falls due"""
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class LoanStatus(Enum):
    """Loan lifecycle states"""
    ACTIVE = "active"
    COMPLETED = "completed"       # Fully repaid
    OVERDUE = "overdue"           # Past due date with a balance
    DEFAULTED = "defaulted"       # Set by an operator, never cleared automatically


class PaymentMethod(Enum):
    CASH = "cash"
    UPI = "upi"
    PHONEPE = "phonepe"
    QR = "qr"
    OTHER = "other"


class PenaltyType(Enum):
    MISSED = "missed"
    DELAYED = "delayed"
    PARTIAL = "partial"


def _unwrap_optional(hint):
    if get_origin(hint) is Union:
        args = [arg for arg in get_args(hint) if arg is not type(None)]
        if len(args) == 1:
            return args[0]
    return hint


def _to_storage_value(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _to_storage_value(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_to_storage_value(v) for v in value]
    return value


def _from_storage_value(hint, value: Any) -> Any:
    if value is None:
        return None
    hint = _unwrap_optional(hint)
    if hint is datetime:
        return ensure_utc(value if isinstance(value, datetime) else datetime.fromisoformat(value))
    if hint is Decimal:
        return Decimal(str(value))
    if isinstance(hint, type) and issubclass(hint, Enum):
        return hint(value)
    return value


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-safe dictionary for storage"""
        return {f.name: _to_storage_value(getattr(self, f.name)) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]):
        """Create instance from a stored dictionary, ignoring unknown keys"""
        hints = get_type_hints(cls)
        kwargs = {}
        for f in fields(cls):
            if f.name in data:
                kwargs[f.name] = _from_storage_value(hints[f.name], data[f.name])
        return cls(**kwargs)


@dataclass
class Loan(StorageRecord):
    """Loan terms plus running repayment aggregates"""
    borrower_id: str
    amount: Decimal                     # Principal
    interest_rate: Decimal
    tenure: int                         # Duration units (days in practice)
    repayment_frequency: RepaymentFrequency
    total_amount: Decimal               # Principal + interest, what must be repaid
    disbursed_at: datetime
    due_date: datetime
    paid_amount: Decimal = ZERO
    remaining_amount: Optional[Decimal] = None
    status: LoanStatus = LoanStatus.ACTIVE
    line_id: Optional[str] = None
    agent_id: Optional[str] = None
    completed_at: Optional[datetime] = None

    def __post_init__(self):
        self.amount = to_amount(self.amount)
        self.total_amount = to_amount(self.total_amount)
        self.paid_amount = to_amount(self.paid_amount)
        if self.remaining_amount is None:
            self.remaining_amount = self.total_amount - self.paid_amount
        self.remaining_amount = to_amount(self.remaining_amount)
        self.interest_rate = Decimal(str(self.interest_rate))
        self.disbursed_at = ensure_utc(self.disbursed_at)
        self.due_date = ensure_utc(self.due_date)
        if isinstance(self.repayment_frequency, str):
            self.repayment_frequency = RepaymentFrequency(self.repayment_frequency)
        if isinstance(self.status, str):
            self.status = LoanStatus(self.status)

    @property
    def is_completed(self) -> bool:
        return self.status == LoanStatus.COMPLETED

    def is_balanced(self, tolerance: Decimal = MINOR_UNIT) -> bool:
        """paid + remaining == total within tolerance, and nothing negative"""
        if self.remaining_amount < ZERO:
            return False
        return within_tolerance(self.paid_amount + self.remaining_amount, self.total_amount, tolerance)


@dataclass
class Payment(StorageRecord):
    """An amount received against a loan. Never modified after creation."""
    loan_id: str
    borrower_id: str
    amount: Decimal
    paid_at: datetime
    method: PaymentMethod = PaymentMethod.CASH
    agent_id: Optional[str] = None
    transaction_id: Optional[str] = None
    notes: Optional[str] = None
    is_offline: bool = False

    def __post_init__(self):
        self.amount = to_amount(self.amount)
        if self.amount <= ZERO:
            raise ValueError(f"Payment amount must be positive, got {self.amount}")
        self.paid_at = ensure_utc(self.paid_at)
        if isinstance(self.method, str):
            self.method = PaymentMethod(self.method)


@dataclass
class MissedPayment(StorageRecord):
    """A scheduled installment the agent reported as not collected"""
    loan_id: str
    expected_date: datetime
    term_number: int
    amount_expected: Decimal
    reason: str
    marked_by: Optional[str] = None
    borrower_id: Optional[str] = None
    paid_later: bool = False
    settled_by_payment_id: Optional[str] = None

    def __post_init__(self):
        self.amount_expected = to_amount(self.amount_expected)
        self.expected_date = ensure_utc(self.expected_date)


@dataclass
class Penalty(StorageRecord):
    """Fine raised alongside a missed payment"""
    loan_id: str
    borrower_id: str
    penalty_type: PenaltyType
    amount: Decimal
    reason: str
    line_id: Optional[str] = None
    term_number: Optional[int] = None
    missed_payment_id: Optional[str] = None
    is_paid: bool = False

    def __post_init__(self):
        self.amount = to_amount(self.amount)
        if isinstance(self.penalty_type, str):
            self.penalty_type = PenaltyType(self.penalty_type)
