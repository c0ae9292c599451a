"""
Collection Recorder Module

Turns a field agent's collection report (paid or missed) into payments,
missed-payment reports and penalties. Online reports are applied to the
remote store directly; offline ones go through the offline queue and are
applied later by the sync coordinator through the same code path.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union
import logging
import uuid

from pydantic import ValidationError as PydanticValidationError

from .amounts import MINOR_UNIT, ZERO, split_evenly, to_amount
from .clock import Clock, SystemClock
from .connectivity import ConnectivityMonitor
from .exceptions import ConnectivityError, InvalidScheduleError, RemoteApplyError, ValidationError
from .logging_config import log_action
from .models import Loan, LoanStatus, MissedPayment, Payment, Penalty, PenaltyType
from .offline_queue import ActionType, OfflineQueue, QueueItem
from .repository import LoanRepository
from .schedule import count_terms, find_settled_missed_payments, term_index_for, term_start
from .schemas import CollectionKind, MissedCollectionPayload, PaidCollectionPayload

logger = logging.getLogger("field_lending.recorder")

# Namespace for ids derived from a mutation's idempotency key
RECORD_NAMESPACE = uuid.UUID("6f1c2a4e-3b57-4d8e-9a0f-5c2e7b9d1e43")

CollectionPayload = Union[PaidCollectionPayload, MissedCollectionPayload]


class CollectionMode(Enum):
    APPLIED = "applied"
    QUEUED = "queued"


@dataclass
class CollectionOutcome:
    """What applying one collection changed in the remote store"""
    kind: CollectionKind
    loan: Loan
    payment: Optional[Payment] = None
    missed_payment: Optional[MissedPayment] = None
    penalty: Optional[Penalty] = None
    overpayment: Decimal = ZERO
    settled_missed_payment_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "loan": self.loan.to_dict(),
            "payment": self.payment.to_dict() if self.payment else None,
            "missed_payment": self.missed_payment.to_dict() if self.missed_payment else None,
            "penalty": self.penalty.to_dict() if self.penalty else None,
            "overpayment": str(self.overpayment),
            "settled_missed_payment_ids": list(self.settled_missed_payment_ids),
        }


@dataclass
class CollectionResult:
    """Returned to the agent; only mode tells an applied report from a queued one"""
    mode: CollectionMode
    result: Union[CollectionOutcome, QueueItem]

    def to_dict(self) -> Dict[str, Any]:
        return {"mode": self.mode.value, "result": self.result.to_dict()}


def derive_record_id(key: str, record_type: str) -> str:
    """Deterministic record id for one mutation, so replays hit the same record"""
    return str(uuid.uuid5(RECORD_NAMESPACE, f"{record_type}:{key}"))


def apply_payment_to_loan(loan: Loan, amount: Decimal) -> Decimal:
    """
    Add one payment to the loan's running totals.

    paid_amount grows and remaining_amount shrinks by amount, with
    remaining_amount clamped at zero. Returns the part of amount beyond the
    outstanding balance (zero when none). The loan is updated in place.
    """
    amount = to_amount(amount)
    outstanding = max(loan.remaining_amount, ZERO)
    applied = min(amount, outstanding)
    loan.paid_amount = loan.paid_amount + applied
    loan.remaining_amount = outstanding - applied
    return amount - applied


def evaluate_loan_status(loan: Loan, now: datetime) -> LoanStatus:
    """Re-derive the loan status after a collection; updates the loan in place"""
    if loan.status == LoanStatus.DEFAULTED:
        return loan.status
    if loan.remaining_amount <= ZERO:
        if loan.status != LoanStatus.COMPLETED:
            loan.completed_at = now
        loan.status = LoanStatus.COMPLETED
    elif now > loan.due_date:
        loan.status = LoanStatus.OVERDUE
    else:
        loan.status = LoanStatus.ACTIVE
    return loan.status


class CollectionRecorder:
    """
    Records collections against loans, online or through the offline queue.
    """

    def __init__(
        self,
        repository: LoanRepository,
        queue: OfflineQueue,
        connectivity: ConnectivityMonitor,
        clock: Optional[Clock] = None,
        default_missed_penalty: Decimal = ZERO,
        amount_tolerance: Decimal = MINOR_UNIT
    ):
        self.repository = repository
        self.queue = queue
        self.connectivity = connectivity
        self.clock = clock or SystemClock()
        self.default_missed_penalty = to_amount(default_missed_penalty)
        self.amount_tolerance = Decimal(amount_tolerance)

    def validate(self, kind, payload: Dict[str, Any]) -> Tuple[CollectionKind, CollectionPayload]:
        """
        Parse a raw payload for the given kind.

        Raises:
            ValidationError: unknown kind or malformed payload
        """
        try:
            kind = CollectionKind(kind)
        except ValueError:
            raise ValidationError(f"Unknown collection kind: {kind}")

        model = PaidCollectionPayload if kind == CollectionKind.PAID else MissedCollectionPayload
        try:
            return kind, model.model_validate(payload or {})
        except PydanticValidationError as e:
            raise ValidationError(
                f"Invalid {kind.value} collection payload",
                errors=e.errors(include_url=False, include_context=False, include_input=False)
            ) from e

    async def record_collection(self, kind, loan_id: str, payload: Dict[str, Any],
                                actor: str) -> CollectionResult:
        """
        Record a collection report.

        Args:
            kind: "paid" or "missed"
            loan_id: Loan the report is about
            payload: Raw report fields, validated before anything is written
            actor: Field agent making the report

        Returns:
            CollectionResult with mode applied (remote store updated) or
            queued (durably buffered for the next sync)

        Raises:
            ValidationError: malformed report; nothing was written
            LoanNotFoundError: online and the loan does not exist
            LocalStoreError: the report could not be queued
        """
        kind, validated = self.validate(kind, payload)
        if not loan_id:
            raise ValidationError("loan_id is required")
        if not actor:
            raise ValidationError("actor is required")

        # Pin the observation time now so a later sync buckets it correctly
        now = self.clock.now()
        if kind == CollectionKind.PAID and validated.paid_at is None:
            validated.paid_at = now
        if kind == CollectionKind.MISSED and validated.expected_date is None and validated.term_number is None:
            validated.expected_date = now

        client_ref = str(uuid.uuid4())
        if self.connectivity.is_online:
            try:
                outcome = await self.apply_collection(kind, loan_id, validated, actor, client_ref)
                return CollectionResult(CollectionMode.APPLIED, outcome)
            except ConnectivityError as e:
                logger.warning(f"Remote store unreachable while recording on loan {loan_id}, queueing: {e}")
                self.connectivity.mark_offline()

        item = await self.queue.enqueue(
            ActionType.COLLECTION,
            {
                "kind": kind.value,
                "loan_id": loan_id,
                "actor": actor,
                "client_ref": client_ref,
                "data": validated.model_dump(mode="json", exclude_none=True),
            },
            actor
        )
        return CollectionResult(CollectionMode.QUEUED, item)

    async def apply_collection(self, kind: CollectionKind, loan_id: str, validated: CollectionPayload,
                               actor: str, client_ref: str, is_offline: bool = False) -> CollectionOutcome:
        """Apply a validated report to the remote store; safe to repeat with the same client_ref"""
        if kind == CollectionKind.PAID:
            return await self._apply_paid(loan_id, validated, actor, client_ref, is_offline)
        return await self._apply_missed(loan_id, validated, actor, client_ref)

    async def _apply_paid(self, loan_id: str, validated: PaidCollectionPayload, actor: str,
                          client_ref: str, is_offline: bool) -> CollectionOutcome:
        async with self.repository.atomic():
            return await self._apply_paid_writes(loan_id, validated, actor, client_ref, is_offline)

    async def _apply_paid_writes(self, loan_id: str, validated: PaidCollectionPayload, actor: str,
                                 client_ref: str, is_offline: bool) -> CollectionOutcome:
        loan = await self.repository.get_loan_by_id(loan_id)
        now = self.clock.now()

        payment, created = await self.repository.create_payment(Payment(
            id=derive_record_id(client_ref, "payment"),
            created_at=now,
            updated_at=now,
            loan_id=loan.id,
            borrower_id=loan.borrower_id,
            amount=validated.amount,
            paid_at=validated.paid_at or now,
            method=validated.method,
            agent_id=actor,
            transaction_id=validated.transaction_id,
            notes=validated.notes,
            is_offline=is_offline,
        ))

        overpayment = ZERO
        if created:
            overpayment = apply_payment_to_loan(loan, payment.amount)
        else:
            # Replayed mutation; the totals already include this payment
            logger.info(f"Payment {payment.id} on loan {loan.id} already recorded, totals unchanged")

        if overpayment > ZERO:
            log_action(
                logger, "warning", f"Over-payment of {overpayment} on loan {loan.id} clamped",
                user_id=actor, action="overpayment", resource=loan.id,
                extra={"payment_id": payment.id, "overpayment": str(overpayment)}
            )
        if not loan.is_balanced(self.amount_tolerance):
            logger.warning(
                f"Loan {loan.id} out of balance: paid {loan.paid_amount} + remaining "
                f"{loan.remaining_amount} != total {loan.total_amount}"
            )

        payments = await self.repository.get_payments_by_loan(loan.id)
        if all(p.id != payment.id for p in payments):
            payments.append(payment)

        settled = await self._settle_missed_payments(loan, payments)

        evaluate_loan_status(loan, now)
        loan = await self.repository.save_loan(loan)

        log_action(
            logger, "info", f"Recorded payment of {payment.amount} on loan {loan.id}",
            user_id=actor, action="collection_paid", resource=loan.id,
            extra={"payment_id": payment.id, "remaining_amount": str(loan.remaining_amount)}
        )
        return CollectionOutcome(
            kind=CollectionKind.PAID,
            loan=loan,
            payment=payment,
            overpayment=overpayment,
            settled_missed_payment_ids=[m.id for m in settled],
        )

    async def _settle_missed_payments(self, loan: Loan, payments: List[Payment]) -> List[MissedPayment]:
        missed = await self.repository.get_missed_payments_by_loan(loan.id)
        if not missed:
            return []
        try:
            settled = find_settled_missed_payments(loan, payments, missed)
        except InvalidScheduleError as e:
            logger.warning(f"Cannot settle missed payments on loan {loan.id}: {e}")
            return []
        for record in settled:
            await self.repository.update_missed_payment(record)
            logger.info(f"Missed term {record.term_number} on loan {loan.id} settled by payment {record.settled_by_payment_id}")
        return settled

    async def _apply_missed(self, loan_id: str, validated: MissedCollectionPayload, actor: str,
                            client_ref: str) -> CollectionOutcome:
        async with self.repository.atomic():
            return await self._apply_missed_writes(loan_id, validated, actor, client_ref)

    async def _apply_missed_writes(self, loan_id: str, validated: MissedCollectionPayload, actor: str,
                                   client_ref: str) -> CollectionOutcome:
        loan = await self.repository.get_loan_by_id(loan_id)
        now = self.clock.now()

        term_number, expected_date, amount_expected = self._locate_missed_term(loan, validated, now)

        missed = await self.repository.create_missed_payment(MissedPayment(
            id=derive_record_id(client_ref, "missed"),
            created_at=now,
            updated_at=now,
            loan_id=loan.id,
            expected_date=expected_date,
            term_number=term_number,
            amount_expected=amount_expected,
            reason=validated.reason,
            marked_by=actor,
            borrower_id=loan.borrower_id,
        ))

        penalty_amount = validated.penalty_amount
        if penalty_amount is None:
            penalty_amount = self.default_missed_penalty

        penalty = None
        if to_amount(penalty_amount) > ZERO:
            penalty = await self.repository.create_penalty(Penalty(
                id=derive_record_id(client_ref, "penalty"),
                created_at=now,
                updated_at=now,
                loan_id=loan.id,
                borrower_id=loan.borrower_id,
                penalty_type=PenaltyType.MISSED,
                amount=penalty_amount,
                reason=validated.penalty_reason or validated.reason,
                line_id=loan.line_id,
                term_number=term_number,
                missed_payment_id=missed.id,
            ))

        evaluate_loan_status(loan, now)
        loan = await self.repository.save_loan(loan)

        log_action(
            logger, "info", f"Recorded missed term {term_number} on loan {loan.id}",
            user_id=actor, action="collection_missed", resource=loan.id,
            extra={"missed_payment_id": missed.id, "penalty_id": penalty.id if penalty else None}
        )
        return CollectionOutcome(
            kind=CollectionKind.MISSED,
            loan=loan,
            missed_payment=missed,
            penalty=penalty,
        )

    def _locate_missed_term(self, loan: Loan, validated: MissedCollectionPayload,
                            now: datetime) -> Tuple[int, datetime, Decimal]:
        """Fill term number, expected date and expected amount from the schedule"""
        total_terms = count_terms(loan)

        if validated.term_number is not None:
            if validated.term_number > total_terms:
                raise ValidationError(
                    f"Loan {loan.id} has {total_terms} terms, got term {validated.term_number}"
                )
            index = validated.term_number - 1
            expected_date = validated.expected_date or term_start(loan, index)
            if term_index_for(loan, expected_date) != index:
                raise ValidationError(
                    f"{expected_date.isoformat()} does not fall in term {validated.term_number} "
                    f"of loan {loan.id}"
                )
        else:
            expected_date = validated.expected_date or now
            index = term_index_for(loan, expected_date)
            if index is None:
                raise ValidationError(
                    f"{expected_date.isoformat()} is outside the schedule of loan {loan.id}"
                )

        amount_expected = validated.amount_expected
        if amount_expected is None:
            amount_expected = split_evenly(loan.total_amount, total_terms)[index]
        return index + 1, expected_date, to_amount(amount_expected)


class MutationApplier:
    """Applies queued mutations through the same functions the online path uses"""

    def __init__(self, recorder: CollectionRecorder, repository: LoanRepository):
        self.recorder = recorder
        self.repository = repository
        self._handlers = {
            ActionType.COLLECTION: self._apply_collection,
            ActionType.PAYMENT: self._apply_payment,
            ActionType.LOAN: self._apply_loan,
            ActionType.BORROWER: self._apply_borrower,
        }

    async def apply(self, item: QueueItem) -> Any:
        """
        Apply one queue item to the remote store.

        Raises:
            RemoteApplyError: unknown action type or the remote store rejected it
            ConnectivityError: the remote store could not be reached
            ValidationError: the queued payload is malformed
        """
        handler = self._handlers.get(item.action_type)
        if handler is None:
            raise RemoteApplyError(f"No handler for action type {item.action_type}")
        return await handler(item)

    async def _apply_collection(self, item: QueueItem) -> CollectionOutcome:
        payload = item.payload
        if "loan_id" not in payload:
            raise ValidationError(f"Queue item {item.id} has no loan_id")
        kind, validated = self.recorder.validate(payload.get("kind"), payload.get("data", {}))
        return await self.recorder.apply_collection(
            kind,
            payload["loan_id"],
            validated,
            payload.get("actor") or item.user_id,
            payload.get("client_ref") or item.id,
            is_offline=True
        )

    async def _apply_payment(self, item: QueueItem) -> CollectionOutcome:
        data = dict(item.payload)
        loan_id = data.pop("loan_id", None)
        if not loan_id:
            raise ValidationError(f"Queue item {item.id} has no loan_id")
        kind, validated = self.recorder.validate(CollectionKind.PAID, data)
        return await self.recorder.apply_collection(
            kind, loan_id, validated, item.user_id, item.id, is_offline=True
        )

    async def _apply_loan(self, item: QueueItem) -> Loan:
        data = dict(item.payload)
        data.setdefault("id", derive_record_id(item.id, "loan"))
        data.setdefault("agent_id", item.user_id)
        try:
            return await self.repository.create_loan(data)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Queue item {item.id} has an invalid loan payload: {e}") from e

    async def _apply_borrower(self, item: QueueItem) -> Dict[str, Any]:
        data = dict(item.payload)
        data.setdefault("id", derive_record_id(item.id, "borrower"))
        return await self.repository.create_borrower(data)
