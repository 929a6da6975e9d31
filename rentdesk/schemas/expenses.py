import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class ExpenseCategory(str, Enum):
    fuel = "FUEL"
    maintenance = "MAINTENANCE"
    repair = "REPAIR"
    insurance = "INSURANCE"
    registration = "REGISTRATION"
    taxes = "TAXES"
    cleaning = "CLEANING"
    parking = "PARKING"
    toll = "TOLL"
    fine = "FINE"
    accessories = "ACCESSORIES"
    other = "OTHER"


class ExpenseCreate(BaseModel):
    vehicle_id: Optional[uuid.UUID] = None
    category: ExpenseCategory
    description: str = Field(min_length=1, max_length=255)
    amount: Decimal = Field(gt=0)
    date: Optional[datetime] = None
    vendor: Optional[str] = None
    invoice_number: Optional[str] = None


class ExpenseResponse(BaseModel):
    id: uuid.UUID
    vehicle_id: Optional[uuid.UUID] = None
    category: ExpenseCategory
    description: str
    amount: Decimal
    date: datetime
    vendor: Optional[str] = None
    invoice_number: Optional[str] = None
    created_by: Optional[uuid.UUID] = None
    created_at: datetime

    class Config:
        from_attributes = True
