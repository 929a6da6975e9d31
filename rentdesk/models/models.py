import uuid
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import (
    String,
    DateTime,
    Boolean,
    ForeignKey,
    Integer,
    Numeric,
    JSON,
    UniqueConstraint,
    Text,
    Index,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship, Mapped, mapped_column

from ..db import Base


def uuid_pk() -> Mapped[uuid.UUID]:
    return mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)


def money_column(**kwargs) -> Mapped[Decimal]:
    return mapped_column(Numeric(12, 2), **kwargs)


class User(Base):
    """Back-office users: super admins, admins, agents, and customer accounts"""
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = uuid_pk()
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    first_name: Mapped[str] = mapped_column(String(50), nullable=False)
    last_name: Mapped[str] = mapped_column(String(50), nullable=False, default="")
    phone: Mapped[Optional[str]] = mapped_column(String(20))
    role: Mapped[str] = mapped_column(String(20), nullable=False, default="AGENT", index=True)  # SUPER_ADMIN|ADMIN|AGENT|CUSTOMER
    commission_rate: Mapped[Optional[Decimal]] = mapped_column(Numeric(5, 2))  # Percent of rental subtotal
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    @property
    def full_name(self) -> str:
        return " ".join(p for p in [self.first_name, self.last_name] if p).strip()


class Vehicle(Base):
    """Rentable vehicles; never deleted, only deactivated"""
    __tablename__ = "vehicles"

    id: Mapped[uuid.UUID] = uuid_pk()
    brand: Mapped[str] = mapped_column(String(50), nullable=False)
    model: Mapped[str] = mapped_column(String(50), nullable=False)
    year: Mapped[Optional[int]] = mapped_column(Integer)
    license_plate: Mapped[str] = mapped_column(String(15), unique=True, nullable=False, index=True)
    daily_rate: Mapped[Decimal] = money_column(nullable=False)
    weekly_rate: Mapped[Optional[Decimal]] = money_column()
    monthly_rate: Mapped[Optional[Decimal]] = money_column()
    deposit_amount: Mapped[Decimal] = money_column(nullable=False, default=Decimal("0"))
    commission_amount: Mapped[Optional[Decimal]] = money_column()  # Flat commission per rented day
    mileage: Mapped[int] = mapped_column(Integer, default=0)
    status: Mapped[str] = mapped_column(String(20), default="AVAILABLE", index=True)  # AVAILABLE|RESERVED|RENTED|MAINTENANCE|OUT_OF_SERVICE
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    status_logs = relationship("VehicleStatusLog", back_populates="vehicle", order_by="VehicleStatusLog.created_at.desc()")

    @property
    def display_name(self) -> str:
        return " ".join(str(p) for p in [self.brand, self.model, self.year] if p)


class Customer(Base):
    """Renters; blacklisting is a flag surfaced to operators, not a lifecycle state"""
    __tablename__ = "customers"

    id: Mapped[uuid.UUID] = uuid_pk()
    first_name: Mapped[str] = mapped_column(String(50), nullable=False)
    last_name: Mapped[str] = mapped_column(String(50), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(255), index=True)
    phone: Mapped[Optional[str]] = mapped_column(String(20))
    id_type: Mapped[str] = mapped_column(String(20), default="CEDULA")  # CEDULA|PASSPORT|LICENSE
    id_number: Mapped[Optional[str]] = mapped_column(String(30), index=True)
    license_number: Mapped[Optional[str]] = mapped_column(String(30))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    is_blacklisted: Mapped[bool] = mapped_column(Boolean, default=False)
    blacklist_reason: Mapped[Optional[str]] = mapped_column(String(500))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class Reservation(Base):
    """Pre-contract booking hold on a vehicle"""
    __tablename__ = "reservations"

    id: Mapped[uuid.UUID] = uuid_pk()
    reservation_code: Mapped[str] = mapped_column(String(30), unique=True, nullable=False, index=True)
    vehicle_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("vehicles.id"), nullable=False, index=True)
    customer_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("customers.id", ondelete="SET NULL"), index=True)
    # Contact snapshot taken at intake
    customer_name: Mapped[str] = mapped_column(String(120), nullable=False)
    customer_email: Mapped[Optional[str]] = mapped_column(String(255))
    customer_phone: Mapped[Optional[str]] = mapped_column(String(20))
    customer_id_number: Mapped[Optional[str]] = mapped_column(String(30))
    customer_id_type: Mapped[Optional[str]] = mapped_column(String(20))
    start_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)  # Naive UTC
    end_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)  # Naive UTC
    pickup_location: Mapped[Optional[str]] = mapped_column(String(255))
    dropoff_location: Mapped[Optional[str]] = mapped_column(String(255))
    daily_rate: Mapped[Decimal] = money_column(nullable=False)
    total_days: Mapped[int] = mapped_column(Integer, nullable=False)
    subtotal: Mapped[Decimal] = money_column(nullable=False)
    taxes: Mapped[Decimal] = money_column(nullable=False, default=Decimal("0"))
    discount: Mapped[Decimal] = money_column(nullable=False, default=Decimal("0"))
    total_amount: Mapped[Decimal] = money_column(nullable=False)
    deposit_amount: Mapped[Decimal] = money_column(nullable=False, default=Decimal("0"))
    payment_status: Mapped[str] = mapped_column(String(20), default="PENDING")  # PENDING|PARTIAL|PAID|REFUNDED
    payment_method: Mapped[Optional[str]] = mapped_column(String(50))
    payment_reference: Mapped[Optional[str]] = mapped_column(String(100))
    status: Mapped[str] = mapped_column(String(20), default="PENDING", index=True)  # PENDING|CONFIRMED|CANCELLED|COMPLETED|NO_SHOW
    customer_notes: Mapped[Optional[str]] = mapped_column(Text)
    internal_notes: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    vehicle = relationship("Vehicle")
    customer = relationship("Customer")
    rental = relationship("Rental", back_populates="reservation", uselist=False)

    __table_args__ = (
        Index('idx_reservation_vehicle_dates', 'vehicle_id', 'start_date', 'end_date'),
    )


class RentalCustomer(Base):
    """Ordered signers of a contract; position 0 is the primary customer"""
    __tablename__ = "rental_customers"

    id: Mapped[uuid.UUID] = uuid_pk()
    rental_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("rentals.id", ondelete="CASCADE"), nullable=False, index=True)
    customer_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("customers.id"), nullable=False, index=True)
    position: Mapped[int] = mapped_column(Integer, default=0)

    customer = relationship("Customer")

    __table_args__ = (
        UniqueConstraint("rental_id", "customer_id", name="uq_rental_customer"),
    )


class Rental(Base):
    """The rental contract"""
    __tablename__ = "rentals"

    id: Mapped[uuid.UUID] = uuid_pk()
    contract_number: Mapped[str] = mapped_column(String(30), unique=True, nullable=False, index=True)
    reservation_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("reservations.id"), unique=True)
    vehicle_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("vehicles.id"), nullable=False, index=True)
    agent_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)
    start_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    expected_end_date: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    actual_end_date: Mapped[Optional[datetime]] = mapped_column(DateTime)
    start_mileage: Mapped[int] = mapped_column(Integer, default=0)
    end_mileage: Mapped[Optional[int]] = mapped_column(Integer)
    pickup_location: Mapped[Optional[str]] = mapped_column(String(255))
    dropoff_location: Mapped[Optional[str]] = mapped_column(String(255))
    # Pricing snapshot, independent of later vehicle price edits
    daily_rate: Mapped[Decimal] = money_column(nullable=False)
    tax_rate: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False, default=Decimal("0"))
    total_days: Mapped[int] = mapped_column(Integer, nullable=False)
    subtotal: Mapped[Decimal] = money_column(nullable=False)
    taxes: Mapped[Decimal] = money_column(nullable=False, default=Decimal("0"))
    discount: Mapped[Decimal] = money_column(nullable=False, default=Decimal("0"))
    extra_charges: Mapped[Decimal] = money_column(nullable=False, default=Decimal("0"))
    total_amount: Mapped[Decimal] = money_column(nullable=False)
    deposit_amount: Mapped[Decimal] = money_column(nullable=False, default=Decimal("0"))
    deposit_returned: Mapped[Decimal] = money_column(nullable=False, default=Decimal("0"))
    fuel_level_start: Mapped[Optional[int]] = mapped_column(Integer)  # Percent
    fuel_level_end: Mapped[Optional[int]] = mapped_column(Integer)  # Percent
    return_condition: Mapped[Optional[str]] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String(20), default="ACTIVE", index=True)  # ACTIVE|COMPLETED|CANCELLED|OVERDUE
    # Signatures move once from null to set
    customer_signature: Mapped[Optional[str]] = mapped_column(Text)
    agent_signature: Mapped[Optional[str]] = mapped_column(Text)
    signed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    contract_snapshot: Mapped[Optional[dict]] = mapped_column(JSON)  # Frozen at signing
    notes: Mapped[Optional[str]] = mapped_column(Text)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(String(500))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    vehicle = relationship("Vehicle")
    agent = relationship("User", foreign_keys=[agent_id])
    reservation = relationship("Reservation", back_populates="rental")
    signers: Mapped[List[RentalCustomer]] = relationship(
        "RentalCustomer", cascade="all, delete-orphan", order_by="RentalCustomer.position"
    )
    commission = relationship("Commission", back_populates="rental", uselist=False)

    __table_args__ = (
        Index('idx_rental_vehicle_status', 'vehicle_id', 'status'),
    )

    @property
    def customers(self) -> List[Customer]:
        return [s.customer for s in self.signers]

    @property
    def primary_customer(self) -> Optional[Customer]:
        return self.signers[0].customer if self.signers else None


class Commission(Base):
    """Agent commission derived from a rental; one row per rental"""
    __tablename__ = "commissions"

    id: Mapped[uuid.UUID] = uuid_pk()
    rental_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("rentals.id"), unique=True, nullable=False)
    agent_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)
    rate: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False, default=Decimal("0"))  # Percent snapshot, 0 for flat
    flat_amount: Mapped[Optional[Decimal]] = money_column()  # Per-day snapshot for flat commissions
    base_amount: Mapped[Decimal] = money_column(nullable=False)
    amount: Mapped[Decimal] = money_column(nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="PENDING", index=True)  # PENDING|APPROVED|PAID|CANCELLED
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    approved_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    payment_ref: Mapped[Optional[str]] = mapped_column(String(100))
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    rental = relationship("Rental", back_populates="commission")
    agent = relationship("User", foreign_keys=[agent_id])


class Expense(Base):
    """Vehicle ledger entries consumed by the profitability report"""
    __tablename__ = "expenses"

    id: Mapped[uuid.UUID] = uuid_pk()
    vehicle_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("vehicles.id"), index=True)
    category: Mapped[str] = mapped_column(String(30), nullable=False, index=True)  # FUEL|MAINTENANCE|REPAIR|INSURANCE|...
    description: Mapped[str] = mapped_column(String(255), nullable=False)
    amount: Mapped[Decimal] = money_column(nullable=False)
    date: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    vendor: Mapped[Optional[str]] = mapped_column(String(100))
    invoice_number: Mapped[Optional[str]] = mapped_column(String(50))
    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index('idx_expense_vehicle_date', 'vehicle_id', 'date'),
    )


class VehicleStatusLog(Base):
    """Every vehicle status transition written by the availability guard"""
    __tablename__ = "vehicle_status_logs"

    id: Mapped[uuid.UUID] = uuid_pk()
    vehicle_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("vehicles.id", ondelete="CASCADE"), nullable=False, index=True)
    previous_status: Mapped[str] = mapped_column(String(20), nullable=False)
    new_status: Mapped[str] = mapped_column(String(20), nullable=False)
    reason: Mapped[str] = mapped_column(String(50), nullable=False)  # reserve|lock|release|maintenance|out_of_service|return_to_service
    source_type: Mapped[Optional[str]] = mapped_column(String(20))  # reservation|rental|manual
    source_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    actor_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    vehicle = relationship("Vehicle", back_populates="status_logs")

    __table_args__ = (
        Index('idx_vehicle_status_log_vehicle_date', 'vehicle_id', 'created_at'),
    )


class AuditLog(Base):
    """Append-only audit log for every engine transition"""
    __tablename__ = "audit_logs"

    id: Mapped[uuid.UUID] = uuid_pk()
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)  # vehicle|reservation|rental|commission
    entity_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(50), nullable=False)  # CREATE|CONFIRM|CANCEL|SIGN|COMPLETE|APPROVE|PAY|...
    actor_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), index=True)
    actor_role: Mapped[Optional[str]] = mapped_column(String(50))
    source: Mapped[Optional[str]] = mapped_column(String(50))  # api|system|script
    changes_json: Mapped[Optional[dict]] = mapped_column(JSON)  # Before/after diff
    timestamp_utc: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    context: Mapped[Optional[dict]] = mapped_column(JSON)
    integrity_hash: Mapped[Optional[str]] = mapped_column(String(64))  # SHA256 hash for integrity verification

    __table_args__ = (
        Index('idx_audit_entity', 'entity_type', 'entity_id'),
        Index('idx_audit_actor', 'actor_id', 'timestamp_utc'),
    )


class Notification(Base):
    """Outbox of notification events and document-render requests"""
    __tablename__ = "notifications"

    id: Mapped[uuid.UUID] = uuid_pk()
    audience: Mapped[str] = mapped_column(String(20), nullable=False)  # customer|admin|renderer
    channel: Mapped[str] = mapped_column(String(20), nullable=False)  # email|document
    recipient: Mapped[Optional[str]] = mapped_column(String(255))
    template_key: Mapped[str] = mapped_column(String(100), nullable=False)
    entity_type: Mapped[Optional[str]] = mapped_column(String(50))
    entity_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), index=True)
    payload_json: Mapped[Optional[dict]] = mapped_column(JSON)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    status: Mapped[str] = mapped_column(String(20), default="pending")  # pending|sent|failed
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index('idx_notifications_status', 'status', 'created_at'),
    )


class DocumentSequence(Base):
    """Last issued number per document prefix and year"""
    __tablename__ = "document_sequences"

    id: Mapped[uuid.UUID] = uuid_pk()
    prefix: Mapped[str] = mapped_column(String(20), nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    last_value: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("prefix", "year", name="uq_document_sequence"),
    )
