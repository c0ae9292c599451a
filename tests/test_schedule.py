"""
Tests for the repayment schedule calculator
"""

import pytest
from datetime import datetime, timezone
from decimal import Decimal

from field_lending.exceptions import InvalidScheduleError
from field_lending.models import MissedPayment, Payment, RepaymentFrequency
from field_lending.schedule import (
    TermStatus, add_months, compute_schedule, count_terms, find_settled_missed_payments,
    installment_amount, summarize_schedule, term_index_for
)


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def payment(payment_id: str, amount: str, paid_at: datetime) -> Payment:
    return Payment(
        id=payment_id,
        created_at=paid_at,
        updated_at=paid_at,
        loan_id="loan_001",
        borrower_id="borrower_001",
        amount=Decimal(amount),
        paid_at=paid_at,
    )


def missed(missed_id: str, term_number: int, expected: datetime, paid_later: bool = False) -> MissedPayment:
    return MissedPayment(
        id=missed_id,
        created_at=expected,
        updated_at=expected,
        loan_id="loan_001",
        expected_date=expected,
        term_number=term_number,
        amount_expected=Decimal("100.00"),
        reason="absent",
        paid_later=paid_later,
    )


class TestTermCount:
    """Test counting terms from the frequency and date span"""

    def test_daily_terms(self, make_loan):
        assert count_terms(make_loan()) == 10

    def test_partial_final_period_rounds_up(self, make_loan):
        loan = make_loan(due_date=utc(2024, 1, 11, 6))
        assert count_terms(loan) == 11

    def test_weekly_terms(self, make_loan):
        loan = make_loan(repayment_frequency=RepaymentFrequency.WEEKLY, due_date=utc(2024, 1, 29))
        assert count_terms(loan) == 4

        loan = make_loan(repayment_frequency=RepaymentFrequency.WEEKLY, due_date=utc(2024, 1, 30))
        assert count_terms(loan) == 5

    def test_monthly_terms_clamp_to_month_end(self, make_loan):
        loan = make_loan(
            repayment_frequency=RepaymentFrequency.MONTHLY,
            disbursed_at=utc(2024, 1, 31),
            due_date=utc(2024, 4, 30)
        )
        terms = compute_schedule(loan, [], [], utc(2024, 1, 31))

        assert len(terms) == count_terms(loan) == 3
        assert [t.due_date for t in terms] == [utc(2024, 1, 31), utc(2024, 2, 29), utc(2024, 3, 31)]
        assert terms[-1].ends_at == utc(2024, 4, 30)

    def test_add_months_across_year_end(self):
        assert add_months(utc(2023, 11, 30), 3) == utc(2024, 2, 29)
        assert add_months(utc(2023, 12, 15), 1) == utc(2024, 1, 15)


class TestScheduleAmounts:
    """Test the per-term amounts"""

    def test_reference_loan_has_ten_terms_of_100(self, make_loan):
        terms = compute_schedule(make_loan(), [], [], utc(2024, 1, 1))

        assert len(terms) == 10
        assert all(t.amount_due == Decimal("100.00") for t in terms)
        assert [t.term_number for t in terms] == list(range(1, 11))

    def test_amounts_sum_to_total_when_not_divisible(self, make_loan):
        loan = make_loan(due_date=utc(2024, 1, 4))
        terms = compute_schedule(loan, [], [], utc(2024, 1, 1))

        assert [t.amount_due for t in terms] == [Decimal("333.33"), Decimal("333.33"), Decimal("333.34")]
        assert sum(t.amount_due for t in terms) == loan.total_amount

    def test_installments_truncate_and_last_term_takes_remainder(self, make_loan):
        """66.666... is cut to 66.66, never rounded up to 66.67"""
        loan = make_loan(total_amount=Decimal("200"), due_date=utc(2024, 1, 4))
        terms = compute_schedule(loan, [], [], utc(2024, 1, 1))

        assert [t.amount_due for t in terms] == [Decimal("66.66"), Decimal("66.66"), Decimal("66.68")]

    def test_tiny_total_never_produces_negative_installments(self, make_loan):
        loan = make_loan(total_amount=Decimal("0.05"))
        terms = compute_schedule(loan, [], [], utc(2024, 1, 1))

        assert all(t.amount_due >= Decimal("0") for t in terms)
        assert sum(t.amount_due for t in terms) == Decimal("0.05")

    def test_installment_amount(self, make_loan):
        assert installment_amount(make_loan()) == Decimal("100.00")


class TestTermStatus:
    """Test settlement status per term"""

    def test_payment_marks_its_term_paid(self, make_loan):
        """A payment of 100 on 2024-01-03 settles term 3"""
        payments = [payment("pay_1", "100", utc(2024, 1, 3, 10))]
        terms = compute_schedule(make_loan(), payments, [], utc(2024, 1, 3, 12))

        assert terms[2].status == TermStatus.PAID
        assert terms[2].due_date == utc(2024, 1, 3)
        assert terms[2].ends_at == utc(2024, 1, 4)
        assert terms[2].payment_ids == ["pay_1"]
        assert terms[0].status == TermStatus.OVERDUE
        assert terms[1].status == TermStatus.OVERDUE
        assert all(t.status == TermStatus.PENDING for t in terms[3:])

    def test_later_terms_overdue_as_time_passes(self, make_loan):
        payments = [payment("pay_1", "100", utc(2024, 1, 3, 10))]
        terms = compute_schedule(make_loan(), payments, [], utc(2024, 1, 20))

        assert terms[2].status == TermStatus.PAID
        assert all(t.status == TermStatus.OVERDUE for t in terms if t.term_number != 3)

    def test_partial_payment(self, make_loan):
        payments = [payment("pay_1", "40", utc(2024, 1, 4, 9))]
        terms = compute_schedule(make_loan(), payments, [], utc(2024, 1, 1))

        assert terms[3].status == TermStatus.PARTIAL
        assert terms[3].outstanding == Decimal("60.00")

    def test_boundary_instant_belongs_to_next_term(self, make_loan):
        payments = [payment("pay_1", "100", utc(2024, 1, 2))]
        terms = compute_schedule(make_loan(), payments, [], utc(2024, 1, 1))

        assert terms[0].amount_paid == Decimal("0.00")
        assert terms[1].status == TermStatus.PAID

    def test_payments_outside_schedule_are_ignored(self, make_loan):
        payments = [
            payment("early", "100", utc(2023, 12, 31)),
            payment("late", "100", utc(2024, 1, 11)),
        ]
        terms = compute_schedule(make_loan(), payments, [], utc(2024, 1, 1))

        assert sum(t.amount_paid for t in terms) == Decimal("0.00")

    def test_unsettled_missed_payment_blocks_paid(self, make_loan):
        payments = [payment("pay_1", "100", utc(2024, 1, 2, 15))]
        reports = [missed("m_1", 2, utc(2024, 1, 2, 9))]
        terms = compute_schedule(make_loan(), payments, reports, utc(2024, 1, 3))

        assert terms[1].status == TermStatus.MISSED
        assert terms[1].missed_payment_id == "m_1"

    def test_missed_paid_later_is_never_missed(self, make_loan):
        reports = [missed("m_1", 2, utc(2024, 1, 2, 9), paid_later=True)]
        terms = compute_schedule(make_loan(), [], reports, utc(2024, 1, 1))

        assert terms[1].status == TermStatus.PENDING
        assert all(t.status != TermStatus.MISSED for t in terms)

        payments = [payment("pay_1", "100", utc(2024, 1, 2, 15))]
        terms = compute_schedule(make_loan(), payments, reports, utc(2024, 1, 3))
        assert terms[1].status == TermStatus.PAID
        assert terms[1].missed_payment_id == "m_1"


class TestScheduleValidation:
    """Test malformed loans"""

    def test_due_date_not_after_disbursement(self, make_loan):
        loan = make_loan(due_date=utc(2024, 1, 1))
        with pytest.raises(InvalidScheduleError):
            compute_schedule(loan, [], [], utc(2024, 1, 1))

    def test_non_positive_total(self, make_loan):
        loan = make_loan(total_amount=Decimal("0"))
        with pytest.raises(InvalidScheduleError):
            compute_schedule(loan, [], [], utc(2024, 1, 1))


class TestScheduleHelpers:
    """Test lookups and roll-ups built on the schedule"""

    def test_term_index_for(self, make_loan):
        loan = make_loan()
        assert term_index_for(loan, utc(2024, 1, 3, 10)) == 2
        assert term_index_for(loan, utc(2024, 1, 1)) == 0
        assert term_index_for(loan, utc(2024, 1, 11)) is None
        assert term_index_for(loan, utc(2023, 12, 31)) is None

    def test_summary(self, make_loan):
        payments = [
            payment("pay_1", "100", utc(2024, 1, 1, 10)),
            payment("pay_2", "50", utc(2024, 1, 2, 10)),
        ]
        summary = summarize_schedule(compute_schedule(make_loan(), payments, [], utc(2024, 1, 2, 12)))

        assert summary.total_terms == 10
        assert summary.total_due == Decimal("1000.00")
        assert summary.total_paid == Decimal("150.00")
        assert summary.status_counts["paid"] == 1
        assert summary.status_counts["partial"] == 1
        assert summary.status_counts["pending"] == 8
        assert summary.next_due_term == 2
        assert summary.next_due_date == utc(2024, 1, 2)

    def test_summary_of_fully_paid_schedule(self, make_loan):
        loan = make_loan(due_date=utc(2024, 1, 2))
        payments = [payment("pay_1", "1000", utc(2024, 1, 1, 10))]
        summary = summarize_schedule(compute_schedule(loan, payments, [], utc(2024, 1, 1, 12)))

        assert summary.next_due_term is None
        assert summary.to_dict()["next_due_date"] is None


class TestSettledMissedPayments:
    """Test matching later payments to missed terms"""

    def test_settled_once_cumulative_payments_cover_the_term(self, make_loan):
        reports = [missed("m_2", 2, utc(2024, 1, 2, 9))]
        payments = [
            payment("pay_1", "100", utc(2024, 1, 1, 10)),
            payment("pay_3", "100", utc(2024, 1, 3, 10)),
        ]

        settled = find_settled_missed_payments(make_loan(), payments, reports)

        assert len(settled) == 1
        assert settled[0].id == "m_2"
        assert settled[0].paid_later is True
        assert settled[0].settled_by_payment_id == "pay_3"
        # Inputs are untouched
        assert reports[0].paid_later is False

    def test_not_settled_while_short(self, make_loan):
        reports = [missed("m_2", 2, utc(2024, 1, 2, 9))]
        payments = [payment("pay_1", "150", utc(2024, 1, 3, 10))]

        assert find_settled_missed_payments(make_loan(), payments, reports) == []

    def test_already_settled_reports_are_skipped(self, make_loan):
        reports = [missed("m_1", 1, utc(2024, 1, 1, 9), paid_later=True)]
        payments = [payment("pay_1", "500", utc(2024, 1, 3, 10))]

        assert find_settled_missed_payments(make_loan(), payments, reports) == []
