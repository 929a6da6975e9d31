import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class CommissionStatus(str, Enum):
    pending = "PENDING"
    approved = "APPROVED"
    paid = "PAID"
    cancelled = "CANCELLED"


class CommissionBatch(BaseModel):
    ids: List[uuid.UUID]


class CommissionPay(CommissionBatch):
    payment_ref: str = Field(min_length=1, max_length=100)


class CommissionAdjust(BaseModel):
    amount: Decimal = Field(ge=0)
    reason: Optional[str] = None


class CommissionResponse(BaseModel):
    id: uuid.UUID
    rental_id: uuid.UUID
    agent_id: uuid.UUID
    rate: Decimal
    flat_amount: Optional[Decimal] = None
    base_amount: Decimal
    amount: Decimal
    status: CommissionStatus
    approved_at: Optional[datetime] = None
    approved_by: Optional[uuid.UUID] = None
    paid_at: Optional[datetime] = None
    payment_ref: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


class CommissionSummaryResponse(BaseModel):
    pending: Decimal
    approved: Decimal
    paid: Decimal
    cancelled: Decimal
    counts: Dict[str, int]

    class Config:
        from_attributes = True
