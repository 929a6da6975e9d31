import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class VehicleStatus(str, Enum):
    available = "AVAILABLE"
    reserved = "RESERVED"
    rented = "RENTED"
    maintenance = "MAINTENANCE"
    out_of_service = "OUT_OF_SERVICE"


class VehicleCreate(BaseModel):
    brand: str = Field(min_length=1, max_length=50)
    model: str = Field(min_length=1, max_length=50)
    year: Optional[int] = None
    license_plate: str = Field(min_length=1, max_length=15)
    daily_rate: Decimal = Field(ge=0)
    weekly_rate: Optional[Decimal] = Field(default=None, ge=0)
    monthly_rate: Optional[Decimal] = Field(default=None, ge=0)
    deposit_amount: Decimal = Field(default=Decimal("0"), ge=0)
    commission_amount: Optional[Decimal] = Field(default=None, ge=0)
    mileage: int = Field(default=0, ge=0)


class VehicleUpdate(BaseModel):
    """Rate edits never touch existing contracts; rentals keep their snapshot"""
    daily_rate: Optional[Decimal] = Field(default=None, ge=0)
    weekly_rate: Optional[Decimal] = Field(default=None, ge=0)
    monthly_rate: Optional[Decimal] = Field(default=None, ge=0)
    deposit_amount: Optional[Decimal] = Field(default=None, ge=0)
    commission_amount: Optional[Decimal] = Field(default=None, ge=0)
    mileage: Optional[int] = Field(default=None, ge=0)


class VehicleResponse(BaseModel):
    id: uuid.UUID
    brand: str
    model: str
    year: Optional[int] = None
    license_plate: str
    daily_rate: Decimal
    weekly_rate: Optional[Decimal] = None
    monthly_rate: Optional[Decimal] = None
    deposit_amount: Decimal
    commission_amount: Optional[Decimal] = None
    mileage: int
    status: VehicleStatus
    is_active: bool
    created_at: datetime
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class VehicleStatusLogResponse(BaseModel):
    id: uuid.UUID
    vehicle_id: uuid.UUID
    previous_status: str
    new_status: str
    reason: str
    source_type: Optional[str] = None
    source_id: Optional[uuid.UUID] = None
    actor_id: Optional[uuid.UUID] = None
    created_at: datetime

    class Config:
        from_attributes = True
