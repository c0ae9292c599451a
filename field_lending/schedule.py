"""
Repayment Schedule Module

Derives a loan's repayment calendar and the settlement status of every term
from the loan terms, its payments and its missed-payment reports. Schedules
are never stored: they are recomputed on every read so they cannot drift from
the records they summarize.
"""

from bisect import bisect_right
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Dict, Iterable, List, Optional
import calendar

from .amounts import ZERO, split_evenly, to_amount
from .clock import ensure_utc
from .exceptions import InvalidScheduleError
from .models import Loan, MissedPayment, Payment, RepaymentFrequency


class TermStatus(Enum):
    """Settlement status of a single term"""
    PENDING = "pending"
    PAID = "paid"
    PARTIAL = "partial"
    MISSED = "missed"
    OVERDUE = "overdue"


FIXED_TERM_LENGTHS = {
    RepaymentFrequency.DAILY: timedelta(days=1),
    RepaymentFrequency.WEEKLY: timedelta(days=7),
}


@dataclass
class ScheduleTerm:
    """One installment interval [due_date, ends_at)"""
    term_number: int
    due_date: datetime
    ends_at: datetime
    amount_due: Decimal
    amount_paid: Decimal
    status: TermStatus
    payment_ids: List[str] = field(default_factory=list)
    missed_payment_id: Optional[str] = None

    @property
    def outstanding(self) -> Decimal:
        return max(self.amount_due - self.amount_paid, ZERO)

    def to_dict(self) -> Dict:
        return {
            "term_number": self.term_number,
            "due_date": self.due_date.isoformat(),
            "ends_at": self.ends_at.isoformat(),
            "amount_due": str(self.amount_due),
            "amount_paid": str(self.amount_paid),
            "status": self.status.value,
            "payment_ids": list(self.payment_ids),
            "missed_payment_id": self.missed_payment_id,
        }


@dataclass
class ScheduleSummary:
    """Roll-up of a computed schedule"""
    total_terms: int
    total_due: Decimal
    total_paid: Decimal
    status_counts: Dict[str, int]
    next_due_term: Optional[int] = None
    next_due_date: Optional[datetime] = None

    def to_dict(self) -> Dict:
        return {
            "total_terms": self.total_terms,
            "total_due": str(self.total_due),
            "total_paid": str(self.total_paid),
            "status_counts": dict(self.status_counts),
            "next_due_term": self.next_due_term,
            "next_due_date": self.next_due_date.isoformat() if self.next_due_date else None,
        }


def add_months(start: datetime, months: int) -> datetime:
    """Add months to a datetime, clamping the day to the target month's end"""
    month = start.month - 1 + months
    year = start.year + month // 12
    month = month % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def _validate(loan: Loan) -> None:
    if loan.due_date <= loan.disbursed_at:
        raise InvalidScheduleError(
            f"Loan {loan.id}: due date {loan.due_date.isoformat()} is not after "
            f"disbursement {loan.disbursed_at.isoformat()}"
        )
    if loan.total_amount <= ZERO:
        raise InvalidScheduleError(
            f"Loan {loan.id}: total amount must be positive, got {loan.total_amount}"
        )


def term_start(loan: Loan, index: int) -> datetime:
    """Start of the 0-based term index"""
    length = FIXED_TERM_LENGTHS.get(loan.repayment_frequency)
    if length is not None:
        return loan.disbursed_at + length * index
    # Monthly terms are always offset from disbursement to avoid day drift
    return add_months(loan.disbursed_at, index)


def count_terms(loan: Loan) -> int:
    """Number of terms between disbursement and due date, rounded up"""
    _validate(loan)
    span = loan.due_date - loan.disbursed_at
    length = FIXED_TERM_LENGTHS.get(loan.repayment_frequency)
    if length is not None:
        whole, rest = divmod(span, length)
        return whole + (1 if rest else 0)

    terms = 1
    while add_months(loan.disbursed_at, terms) < loan.due_date:
        terms += 1
    return terms


def term_boundaries(loan: Loan) -> List[datetime]:
    """Term starts plus the end of the final term (len == terms + 1)"""
    return [term_start(loan, index) for index in range(count_terms(loan) + 1)]


def _bucket(boundaries: List[datetime], when: datetime) -> Optional[int]:
    index = bisect_right(boundaries, ensure_utc(when)) - 1
    if index < 0 or index >= len(boundaries) - 1:
        return None
    return index


def term_index_for(loan: Loan, when: datetime) -> Optional[int]:
    """0-based index of the term containing when, None outside the schedule"""
    return _bucket(term_boundaries(loan), when)


def installment_amount(loan: Loan) -> Decimal:
    """Regular per-term amount (the final term may carry a few extra minor units)"""
    return split_evenly(loan.total_amount, count_terms(loan))[0]


def _term_status(amount_due: Decimal, amount_paid: Decimal, blocked: bool,
                 starts_at: datetime, now: datetime) -> TermStatus:
    if blocked:
        return TermStatus.MISSED
    if amount_paid >= amount_due:
        return TermStatus.PAID
    if amount_paid > ZERO:
        return TermStatus.PARTIAL
    if starts_at < now:
        return TermStatus.OVERDUE
    return TermStatus.PENDING


def compute_schedule(
    loan: Loan,
    payments: Iterable[Payment],
    missed_payments: Iterable[MissedPayment],
    now: datetime
) -> List[ScheduleTerm]:
    """
    Build the repayment schedule of a loan.

    Args:
        loan: Loan whose terms drive the calendar
        payments: Payments made against the loan, bucketed by paid_at
        missed_payments: Missed-payment reports, bucketed by expected_date
        now: Reference time used to tell overdue terms from pending ones

    Returns:
        Terms in order, term_number starting at 1

    Raises:
        InvalidScheduleError: due date not after disbursement, or non-positive total
    """
    now = ensure_utc(now)
    boundaries = term_boundaries(loan)
    total_terms = len(boundaries) - 1
    dues = split_evenly(loan.total_amount, total_terms)

    paid = [ZERO] * total_terms
    payment_ids: List[List[str]] = [[] for _ in range(total_terms)]
    for payment in sorted(payments, key=lambda p: p.paid_at):
        index = _bucket(boundaries, payment.paid_at)
        if index is None:
            continue
        paid[index] += payment.amount
        payment_ids[index].append(payment.id)

    blocking: List[Optional[str]] = [None] * total_terms
    settled: List[Optional[str]] = [None] * total_terms
    for missed in missed_payments:
        index = _bucket(boundaries, missed.expected_date)
        if index is None:
            continue
        if not missed.paid_later:
            blocking[index] = blocking[index] or missed.id
        else:
            settled[index] = settled[index] or missed.id

    terms = []
    for index in range(total_terms):
        terms.append(ScheduleTerm(
            term_number=index + 1,
            due_date=boundaries[index],
            ends_at=boundaries[index + 1],
            amount_due=dues[index],
            amount_paid=paid[index],
            status=_term_status(dues[index], paid[index], blocking[index] is not None,
                                boundaries[index], now),
            payment_ids=payment_ids[index],
            missed_payment_id=blocking[index] or settled[index],
        ))
    return terms


def summarize_schedule(terms: List[ScheduleTerm]) -> ScheduleSummary:
    """Status counts, totals and the earliest term that is not fully paid"""
    counts = {status.value: 0 for status in TermStatus}
    for term in terms:
        counts[term.status.value] += 1

    next_term = next((t for t in terms if t.status != TermStatus.PAID), None)
    return ScheduleSummary(
        total_terms=len(terms),
        total_due=sum((t.amount_due for t in terms), ZERO),
        total_paid=sum((t.amount_paid for t in terms), ZERO),
        status_counts=counts,
        next_due_term=next_term.term_number if next_term else None,
        next_due_date=next_term.due_date if next_term else None,
    )


def find_settled_missed_payments(
    loan: Loan,
    payments: Iterable[Payment],
    missed_payments: Iterable[MissedPayment]
) -> List[MissedPayment]:
    """
    Missed payments that later payments have caught up with.

    Payments settle the oldest obligations first: a missed term counts as
    paid later once the loan's cumulative payments reach the cumulative
    amount due through that term. Returns updated copies with paid_later set
    and settled_by_payment_id pointing at the payment that crossed the
    threshold; the inputs are not modified.
    """
    dues = split_evenly(loan.total_amount, count_terms(loan))
    cumulative_due = []
    running = ZERO
    for due in dues:
        running += due
        cumulative_due.append(running)

    ordered = sorted(payments, key=lambda p: (p.paid_at, p.id))
    settled = []
    for missed in sorted(missed_payments, key=lambda m: m.term_number):
        if missed.paid_later or not 1 <= missed.term_number <= len(dues):
            continue
        threshold = cumulative_due[missed.term_number - 1]
        paid_so_far = ZERO
        for payment in ordered:
            paid_so_far += to_amount(payment.amount)
            if paid_so_far >= threshold:
                settled.append(replace(
                    missed, paid_later=True, settled_by_payment_id=payment.id
                ))
                break
    return settled
