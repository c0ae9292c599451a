"""
Shared fixtures for the field lending tests
"""

import pytest
from datetime import datetime, timezone
from decimal import Decimal

from field_lending.clock import FixedClock
from field_lending.models import Loan, RepaymentFrequency


@pytest.fixture
def clock():
    """Clock pinned inside the reference loan's schedule"""
    return FixedClock(datetime(2024, 1, 5, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def make_loan():
    """Factory for loans; defaults to 1000 over ten daily terms from 2024-01-01"""
    def _make_loan(**overrides) -> Loan:
        created = datetime(2024, 1, 1, tzinfo=timezone.utc)
        values = {
            "id": "loan_001",
            "created_at": created,
            "updated_at": created,
            "borrower_id": "borrower_001",
            "amount": Decimal("900.00"),
            "interest_rate": Decimal("0.10"),
            "tenure": 10,
            "repayment_frequency": RepaymentFrequency.DAILY,
            "total_amount": Decimal("1000.00"),
            "disbursed_at": datetime(2024, 1, 1, tzinfo=timezone.utc),
            "due_date": datetime(2024, 1, 11, tzinfo=timezone.utc),
            "line_id": "line_north",
            "agent_id": "agent_001",
        }
        values.update(overrides)
        return Loan(**values)
    return _make_loan
