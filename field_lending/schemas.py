"""
Pydantic schemas for collection payloads and API requests
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field, field_validator

from .models import PaymentMethod


class CollectionKind(str, Enum):
    """What the agent observed at the borrower's door"""
    PAID = "paid"
    MISSED = "missed"


class PaidCollectionPayload(BaseModel):
    amount: Decimal = Field(..., gt=0, description="Amount collected")
    method: PaymentMethod = Field(..., description="cash, upi, phonepe, qr or other")
    transaction_id: Optional[str] = None
    paid_at: Optional[datetime] = Field(None, description="Defaults to the time of recording")
    notes: Optional[str] = None


class MissedCollectionPayload(BaseModel):
    reason: str = Field(..., description="Why the installment was not collected")
    expected_date: Optional[datetime] = Field(None, description="Defaults to the time of recording")
    term_number: Optional[int] = Field(None, ge=1)
    amount_expected: Optional[Decimal] = Field(None, ge=0)
    penalty_amount: Optional[Decimal] = Field(None, ge=0)
    penalty_reason: Optional[str] = None

    @field_validator("reason")
    @classmethod
    def reason_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("reason must not be blank")
        return value


# API schemas
class RecordCollectionRequest(BaseModel):
    kind: CollectionKind
    actor: str = Field(..., min_length=1, description="Field agent recording the collection")
    payload: Dict[str, Any] = Field(default_factory=dict)


class SyncRequest(BaseModel):
    user_id: str = Field(..., min_length=1)


class RetryRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    item_ids: Optional[List[str]] = None


class ConnectivityRequest(BaseModel):
    online: bool
