import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class IdType(str, Enum):
    cedula = "CEDULA"
    passport = "PASSPORT"
    license = "LICENSE"


class CustomerCreate(BaseModel):
    first_name: str = Field(min_length=1, max_length=50)
    last_name: str = Field(min_length=1, max_length=50)
    email: Optional[str] = None
    phone: Optional[str] = None
    id_type: IdType = IdType.cedula
    id_number: Optional[str] = None
    license_number: Optional[str] = None


class CustomerBlacklist(BaseModel):
    is_blacklisted: bool = True
    reason: Optional[str] = Field(default=None, max_length=500)


class CustomerResponse(BaseModel):
    id: uuid.UUID
    first_name: str
    last_name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    id_type: str
    id_number: Optional[str] = None
    license_number: Optional[str] = None
    is_active: bool
    is_blacklisted: bool
    blacklist_reason: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True
