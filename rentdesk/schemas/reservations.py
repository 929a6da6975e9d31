import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, model_validator


class ReservationStatus(str, Enum):
    pending = "PENDING"
    confirmed = "CONFIRMED"
    cancelled = "CANCELLED"
    completed = "COMPLETED"
    no_show = "NO_SHOW"


class PaymentStatus(str, Enum):
    pending = "PENDING"
    partial = "PARTIAL"
    paid = "PAID"
    refunded = "REFUNDED"


class QuoteRequest(BaseModel):
    vehicle_id: uuid.UUID
    start_date: datetime
    end_date: datetime
    discount: Decimal = Field(default=Decimal("0"), ge=0)


class QuoteResponse(BaseModel):
    vehicle_id: uuid.UUID
    available: bool
    total_days: int
    daily_rate: Decimal
    subtotal: Decimal
    tax_rate: Decimal
    taxes: Decimal
    discount: Decimal
    total: Decimal
    total_display: dict


class ReservationCreate(BaseModel):
    vehicle_id: uuid.UUID
    start_date: datetime
    end_date: datetime
    customer_id: Optional[uuid.UUID] = None
    customer_name: Optional[str] = Field(default=None, max_length=120)
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    customer_id_number: Optional[str] = None
    customer_id_type: Optional[str] = None
    pickup_location: Optional[str] = None
    dropoff_location: Optional[str] = None
    discount: Decimal = Field(default=Decimal("0"), ge=0)
    customer_notes: Optional[str] = None

    @model_validator(mode="after")
    def _needs_customer(self):
        if not self.customer_id and not (self.customer_name or "").strip():
            raise ValueError("customer_id or customer_name is required")
        return self


class ReservationCancel(BaseModel):
    reason: Optional[str] = None


class ReservationPayment(BaseModel):
    payment_status: PaymentStatus
    payment_method: Optional[str] = None
    payment_reference: Optional[str] = None


class ReservationConvert(BaseModel):
    agent_id: Optional[uuid.UUID] = None  # defaults to the acting user
    customer_ids: Optional[List[uuid.UUID]] = None
    start_date: Optional[datetime] = None
    expected_end_date: Optional[datetime] = None
    daily_rate: Optional[Decimal] = Field(default=None, ge=0)
    discount: Optional[Decimal] = Field(default=None, ge=0)
    extra_charges: Decimal = Field(default=Decimal("0"), ge=0)
    deposit_amount: Optional[Decimal] = Field(default=None, ge=0)
    start_mileage: Optional[int] = Field(default=None, ge=0)
    fuel_level_start: Optional[int] = Field(default=None, ge=0, le=100)
    pickup_location: Optional[str] = None
    dropoff_location: Optional[str] = None
    notes: Optional[str] = None
    complete_reservation: Optional[bool] = None


class ReservationResponse(BaseModel):
    id: uuid.UUID
    reservation_code: str
    vehicle_id: uuid.UUID
    customer_id: Optional[uuid.UUID] = None
    customer_name: str
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    start_date: datetime
    end_date: datetime
    pickup_location: Optional[str] = None
    dropoff_location: Optional[str] = None
    daily_rate: Decimal
    total_days: int
    subtotal: Decimal
    taxes: Decimal
    discount: Decimal
    total_amount: Decimal
    deposit_amount: Decimal
    payment_status: PaymentStatus
    payment_method: Optional[str] = None
    payment_reference: Optional[str] = None
    status: ReservationStatus
    customer_notes: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True
