import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class RentalStatus(str, Enum):
    active = "ACTIVE"
    overdue = "OVERDUE"
    completed = "COMPLETED"
    cancelled = "CANCELLED"


class RentalCreate(BaseModel):
    vehicle_id: uuid.UUID
    agent_id: Optional[uuid.UUID] = None  # defaults to the acting user
    customer_ids: List[uuid.UUID] = Field(min_length=1)
    start_date: datetime
    expected_end_date: datetime
    daily_rate: Optional[Decimal] = Field(default=None, ge=0)
    discount: Decimal = Field(default=Decimal("0"), ge=0)
    extra_charges: Decimal = Field(default=Decimal("0"), ge=0)
    deposit_amount: Optional[Decimal] = Field(default=None, ge=0)
    start_mileage: Optional[int] = Field(default=None, ge=0)
    fuel_level_start: Optional[int] = Field(default=None, ge=0, le=100)
    pickup_location: Optional[str] = None
    dropoff_location: Optional[str] = None
    notes: Optional[str] = None


class RentalSign(BaseModel):
    customer_signature: str
    agent_signature: str


class RentalTermsUpdate(BaseModel):
    daily_rate: Optional[Decimal] = Field(default=None, ge=0)
    discount: Optional[Decimal] = Field(default=None, ge=0)
    extra_charges: Optional[Decimal] = Field(default=None, ge=0)
    deposit_amount: Optional[Decimal] = Field(default=None, ge=0)
    start_date: Optional[datetime] = None
    expected_end_date: Optional[datetime] = None


class RentalNotesUpdate(BaseModel):
    notes: Optional[str] = None
    dropoff_location: Optional[str] = None


class RentalComplete(BaseModel):
    end_mileage: Optional[int] = Field(default=None, ge=0)
    actual_end_date: Optional[datetime] = None
    deposit_returned: Optional[Decimal] = None
    fuel_level_end: Optional[int] = Field(default=None, ge=0, le=100)
    return_condition: Optional[str] = None
    extra_charges: Optional[Decimal] = Field(default=None, ge=0)  # Late days or damages billed at return


class RentalCancel(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class RentalSignerResponse(BaseModel):
    customer_id: uuid.UUID
    position: int

    class Config:
        from_attributes = True


class RentalResponse(BaseModel):
    id: uuid.UUID
    contract_number: str
    reservation_id: Optional[uuid.UUID] = None
    vehicle_id: uuid.UUID
    agent_id: uuid.UUID
    signers: List[RentalSignerResponse] = []
    start_date: datetime
    expected_end_date: datetime
    actual_end_date: Optional[datetime] = None
    start_mileage: int
    end_mileage: Optional[int] = None
    pickup_location: Optional[str] = None
    dropoff_location: Optional[str] = None
    daily_rate: Decimal
    tax_rate: Decimal
    total_days: int
    subtotal: Decimal
    taxes: Decimal
    discount: Decimal
    extra_charges: Decimal
    total_amount: Decimal
    deposit_amount: Decimal
    deposit_returned: Decimal
    fuel_level_start: Optional[int] = None
    fuel_level_end: Optional[int] = None
    return_condition: Optional[str] = None
    status: RentalStatus
    effective_status: Optional[RentalStatus] = None
    signed_at: Optional[datetime] = None
    notes: Optional[str] = None
    cancellation_reason: Optional[str] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: datetime
    updated_at: Optional[datetime] = None
    warnings: List[Dict[str, Any]] = []

    class Config:
        from_attributes = True
