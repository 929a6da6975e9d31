"""
Reservation state machine.

PENDING -> CONFIRMED -> COMPLETED
PENDING/CONFIRMED -> CANCELLED
CONFIRMED -> NO_SHOW

Each public operation is one transaction (rentdesk.db.atomic): the reservation
row, the vehicle hold, the audit entry and any outbox rows commit together.
"""
import uuid
from datetime import datetime
from typing import List, Optional, Sequence, Tuple

import structlog
from sqlalchemy.orm import Session

from ..config import settings
from ..db import atomic
from ..models.models import Customer, Rental, Reservation
from . import availability, visibility
from .audit import create_audit_log
from .errors import InvalidDateRange, InvalidInput, InvalidTransition, NotFound
from .money import MoneyConfig, Number, Quote, quote
from .notifications import send_reservation_created
from .numbering import next_number
from .permissions import Actor, PermissionTable, default_permissions
from .time_rules import to_utc_naive, utcnow

logger = structlog.get_logger(__name__)

PENDING = "PENDING"
CONFIRMED = "CONFIRMED"
CANCELLED = "CANCELLED"
COMPLETED = "COMPLETED"
NO_SHOW = "NO_SHOW"

TERMINAL = (CANCELLED, COMPLETED, NO_SHOW)
PAYMENT_STATUSES = ("PENDING", "PARTIAL", "PAID", "REFUNDED")


def get_reservation(
    db: Session,
    reservation_id,
    for_update: bool = False,
    actor: Optional[Actor] = None,
    permissions: PermissionTable = default_permissions,
) -> Reservation:
    query = db.query(Reservation).filter(Reservation.id == availability.as_uuid(reservation_id, "Reservation"))
    query = visibility.scope_reservations(db, query, actor, permissions)
    if for_update:
        query = query.with_for_update()
    reservation = query.first()
    if not reservation:
        raise NotFound("Reservation", reservation_id)
    return reservation


def list_reservations(
    db: Session,
    status: Optional[str] = None,
    vehicle_id: Optional[uuid.UUID] = None,
    customer_id: Optional[uuid.UUID] = None,
    limit: int = 50,
    offset: int = 0,
    actor: Optional[Actor] = None,
    permissions: PermissionTable = default_permissions,
) -> List[Reservation]:
    """Customers only see reservations booked under their own e-mail."""
    query = visibility.scope_reservations(db, db.query(Reservation), actor, permissions)
    if status:
        query = query.filter(Reservation.status == status)
    if vehicle_id:
        query = query.filter(Reservation.vehicle_id == vehicle_id)
    if customer_id:
        query = query.filter(Reservation.customer_id == customer_id)
    return query.order_by(Reservation.start_date.desc()).limit(limit).offset(offset).all()


def quote_reservation(
    db: Session,
    money: MoneyConfig,
    vehicle_id,
    start_date: datetime,
    end_date: datetime,
    discount: Number = 0,
) -> Tuple[Quote, bool]:
    """Price a prospective reservation and report whether the vehicle is free. Writes nothing."""
    start, end = _normalize_range(start_date, end_date)
    vehicle = availability.load_vehicle(db, vehicle_id, for_update=False)
    return quote(money, vehicle.daily_rate, start, end, discount=discount), availability.is_available(db, vehicle.id, start, end)


def create_reservation(
    db: Session,
    money: MoneyConfig,
    vehicle_id,
    start_date: datetime,
    end_date: datetime,
    customer_name: Optional[str] = None,
    customer_email: Optional[str] = None,
    customer_phone: Optional[str] = None,
    customer_id=None,
    customer_id_number: Optional[str] = None,
    customer_id_type: Optional[str] = None,
    pickup_location: Optional[str] = None,
    dropoff_location: Optional[str] = None,
    discount: Number = 0,
    customer_notes: Optional[str] = None,
    actor: Optional[Actor] = None,
    permissions: PermissionTable = default_permissions,
) -> Reservation:
    """
    Book a vehicle for a date range.

    The vehicle must be AVAILABLE with no overlapping hold; it moves to
    RESERVED. Pricing is quoted from the vehicle's current daily rate and
    stored on the reservation.
    """
    permissions.require(actor, "reservation:create")
    start, end = _normalize_range(start_date, end_date)

    with atomic(db):
        customer = None
        if customer_id:
            customer = db.get(Customer, availability.as_uuid(customer_id, "Customer"))
            if not customer:
                raise NotFound("Customer", customer_id)
        name = (customer_name or (customer.full_name if customer else "") or "").strip()
        if not name:
            raise InvalidInput("A customer name or customer record is required")

        reservation_id = uuid.uuid4()
        vehicle = availability.reserve(db, vehicle_id, start, end, reservation_id=reservation_id, actor=actor)
        q = quote(money, vehicle.daily_rate, start, end, discount=discount)

        reservation = Reservation(
            id=reservation_id,
            reservation_code=next_number(db, Reservation.reservation_code, settings.reservation_prefix),
            vehicle=vehicle,
            customer=customer,
            customer_name=name,
            customer_email=customer_email or (customer.email if customer else None),
            customer_phone=customer_phone or (customer.phone if customer else None),
            customer_id_number=customer_id_number or (customer.id_number if customer else None),
            customer_id_type=customer_id_type or (customer.id_type if customer else None),
            start_date=start,
            end_date=end,
            pickup_location=pickup_location,
            dropoff_location=dropoff_location,
            daily_rate=q.daily_rate,
            total_days=q.total_days,
            subtotal=q.subtotal,
            taxes=q.taxes,
            discount=q.discount,
            total_amount=q.total,
            deposit_amount=vehicle.deposit_amount,
            status=PENDING,
            customer_notes=customer_notes,
            created_at=utcnow(),
        )
        db.add(reservation)
        db.flush()

        send_reservation_created(db, reservation, money)
        create_audit_log(
            db,
            entity_type="reservation",
            entity_id=reservation.id,
            action="CREATE",
            actor=actor,
            context={
                "reservation_code": reservation.reservation_code,
                "vehicle_id": vehicle.id,
                "start_date": start,
                "end_date": end,
                "total_amount": reservation.total_amount,
            },
        )

    logger.info(
        "reservation_created",
        reservation_id=str(reservation.id),
        reservation_code=reservation.reservation_code,
        vehicle_id=str(reservation.vehicle_id),
        total=str(reservation.total_amount),
    )
    return reservation


def confirm(
    db: Session,
    reservation_id,
    actor: Optional[Actor] = None,
    permissions: PermissionTable = default_permissions,
) -> Reservation:
    """PENDING -> CONFIRMED. Re-confirming is an InvalidTransition, not a no-op."""
    permissions.require(actor, "reservation:confirm")
    with atomic(db):
        reservation = get_reservation(db, reservation_id, for_update=True)
        _transition(db, reservation, (PENDING,), CONFIRMED, "CONFIRM", actor)
    return reservation


def cancel(
    db: Session,
    reservation_id,
    reason: Optional[str] = None,
    actor: Optional[Actor] = None,
    permissions: PermissionTable = default_permissions,
) -> Reservation:
    permissions.require(actor, "reservation:cancel")
    with atomic(db):
        reservation = get_reservation(db, reservation_id, for_update=True)
        _require_unconverted(reservation, CANCELLED)
        _transition(db, reservation, (PENDING, CONFIRMED), CANCELLED, "CANCEL", actor, reason=reason)
        if reason:
            reservation.internal_notes = _append_note(reservation.internal_notes, f"Cancelled: {reason}")
        availability.release(db, reservation.vehicle_id, "reservation", reservation.id, actor)
    return reservation


def complete(
    db: Session,
    reservation_id,
    actor: Optional[Actor] = None,
    permissions: PermissionTable = default_permissions,
) -> Reservation:
    """CONFIRMED -> COMPLETED, typically once the reservation has become a rental."""
    permissions.require(actor, "reservation:complete")
    with atomic(db):
        reservation = get_reservation(db, reservation_id, for_update=True)
        _complete(db, reservation, actor)
    return reservation


def mark_no_show(
    db: Session,
    reservation_id,
    actor: Optional[Actor] = None,
    permissions: PermissionTable = default_permissions,
) -> Reservation:
    permissions.require(actor, "reservation:no_show")
    with atomic(db):
        reservation = get_reservation(db, reservation_id, for_update=True)
        _require_unconverted(reservation, NO_SHOW)
        _transition(db, reservation, (CONFIRMED,), NO_SHOW, "NO_SHOW", actor)
        availability.release(db, reservation.vehicle_id, "reservation", reservation.id, actor)
    return reservation


def update_payment(
    db: Session,
    reservation_id,
    payment_status: str,
    payment_method: Optional[str] = None,
    payment_reference: Optional[str] = None,
    actor: Optional[Actor] = None,
    permissions: PermissionTable = default_permissions,
) -> Reservation:
    permissions.require(actor, "reservation:payment")
    payment_status = (payment_status or "").upper()
    if payment_status not in PAYMENT_STATUSES:
        raise InvalidInput(f"Unknown payment status: {payment_status}", allowed=list(PAYMENT_STATUSES))

    with atomic(db):
        reservation = get_reservation(db, reservation_id, for_update=True)
        if reservation.status == CANCELLED:
            raise InvalidTransition(
                "reservation", reservation.status, f"payment {payment_status}",
                "Payments cannot be recorded on a cancelled reservation",
            )
        before = {
            "payment_status": reservation.payment_status,
            "payment_method": reservation.payment_method,
            "payment_reference": reservation.payment_reference,
        }
        reservation.payment_status = payment_status
        if payment_method is not None:
            reservation.payment_method = payment_method
        if payment_reference is not None:
            reservation.payment_reference = payment_reference
        reservation.updated_at = utcnow()
        after = {
            "payment_status": reservation.payment_status,
            "payment_method": reservation.payment_method,
            "payment_reference": reservation.payment_reference,
        }
        create_audit_log(
            db,
            entity_type="reservation",
            entity_id=reservation.id,
            action="PAYMENT",
            actor=actor,
            changes_json={k: {"before": before[k], "after": after[k]} for k in after if before[k] != after[k]},
        )
    return reservation


def convert_to_rental(
    db: Session,
    money: MoneyConfig,
    reservation_id,
    agent_id,
    customer_ids: Optional[Sequence] = None,
    start_date: Optional[datetime] = None,
    expected_end_date: Optional[datetime] = None,
    daily_rate: Optional[Number] = None,
    discount: Optional[Number] = None,
    extra_charges: Number = 0,
    deposit_amount: Optional[Number] = None,
    start_mileage: Optional[int] = None,
    fuel_level_start: Optional[int] = None,
    pickup_location: Optional[str] = None,
    dropoff_location: Optional[str] = None,
    notes: Optional[str] = None,
    complete_reservation: Optional[bool] = None,
    actor: Optional[Actor] = None,
    permissions: PermissionTable = default_permissions,
) -> Rental:
    """
    Turn a CONFIRMED reservation into a rental contract.

    The reservation's vehicle, customer, dates, rate and discount are the
    defaults; any of them may be overridden. The rental takes over the
    reservation's hold on the vehicle.

    complete_reservation decides whether the reservation is advanced to
    COMPLETED in the same transaction; None defers to the
    COMPLETE_RESERVATION_ON_CONVERT setting. When it is not advanced the
    reservation stays CONFIRMED but no longer holds the vehicle.
    """
    from .rentals import create_rental_in_session

    permissions.require(actor, "reservation:convert")
    permissions.require(actor, "rental:create")
    if complete_reservation is None:
        complete_reservation = settings.complete_reservation_on_convert

    with atomic(db):
        reservation = get_reservation(db, reservation_id, for_update=True)
        if reservation.status != CONFIRMED:
            raise InvalidTransition("reservation", reservation.status, "rental")
        if reservation.rental is not None:
            raise InvalidTransition(
                "reservation", reservation.status, "rental",
                f"Reservation {reservation.reservation_code} was already converted",
            )

        if customer_ids is None:
            customer_ids = [_customer_for(db, reservation).id]

        rental = create_rental_in_session(
            db,
            money,
            vehicle_id=reservation.vehicle_id,
            agent_id=agent_id,
            customer_ids=customer_ids,
            start_date=start_date or reservation.start_date,
            expected_end_date=expected_end_date or reservation.end_date,
            daily_rate=reservation.daily_rate if daily_rate is None else daily_rate,
            discount=reservation.discount if discount is None else discount,
            extra_charges=extra_charges,
            deposit_amount=reservation.deposit_amount if deposit_amount is None else deposit_amount,
            start_mileage=start_mileage,
            fuel_level_start=fuel_level_start,
            pickup_location=pickup_location or reservation.pickup_location,
            dropoff_location=dropoff_location or reservation.dropoff_location,
            notes=notes,
            reservation=reservation,
            actor=actor,
        )
        create_audit_log(
            db,
            entity_type="reservation",
            entity_id=reservation.id,
            action="CONVERT",
            actor=actor,
            context={"rental_id": rental.id, "contract_number": rental.contract_number},
        )
        if complete_reservation:
            _complete(db, reservation, actor)

    logger.info(
        "reservation_converted",
        reservation_id=str(reservation.id),
        rental_id=str(rental.id),
        completed=bool(complete_reservation),
    )
    return rental


def _customer_for(db: Session, reservation: Reservation) -> Customer:
    """The reservation's customer record, created from its contact snapshot if it has none."""
    if reservation.customer is not None:
        return reservation.customer
    first, _, last = reservation.customer_name.strip().partition(" ")
    customer = Customer(
        first_name=first,
        last_name=last.strip(),
        email=reservation.customer_email,
        phone=reservation.customer_phone,
        id_type=reservation.customer_id_type or "CEDULA",
        id_number=reservation.customer_id_number,
        created_at=utcnow(),
    )
    db.add(customer)
    db.flush()
    reservation.customer = customer
    return customer


def _require_unconverted(reservation: Reservation, target: str) -> None:
    # A converted reservation can only be completed; its rental is cancelled on its own
    if reservation.rental is not None:
        raise InvalidTransition(
            "reservation",
            reservation.status,
            target,
            f"Reservation {reservation.reservation_code} became contract {reservation.rental.contract_number}",
        )


def _complete(db: Session, reservation: Reservation, actor: Optional[Actor]) -> None:
    _transition(db, reservation, (CONFIRMED,), COMPLETED, "COMPLETE", actor)
    # An unconverted reservation still holds the vehicle
    if reservation.rental is None:
        availability.release(db, reservation.vehicle_id, "reservation", reservation.id, actor)


def _transition(
    db: Session,
    reservation: Reservation,
    allowed_from: tuple,
    target: str,
    action: str,
    actor: Optional[Actor],
    reason: Optional[str] = None,
) -> None:
    if reservation.status not in allowed_from:
        raise InvalidTransition("reservation", reservation.status, target)
    previous = reservation.status
    reservation.status = target
    reservation.updated_at = utcnow()
    db.flush()
    create_audit_log(
        db,
        entity_type="reservation",
        entity_id=reservation.id,
        action=action,
        actor=actor,
        changes_json={"status": {"before": previous, "after": target}},
        context={"reason": reason} if reason else None,
    )
    logger.info(
        "reservation_status_changed",
        reservation_id=str(reservation.id),
        previous=previous,
        new=target,
    )


def _normalize_range(start_date, end_date) -> Tuple[datetime, datetime]:
    start, end = to_utc_naive(start_date), to_utc_naive(end_date)
    if end <= start:
        raise InvalidDateRange("End date must be after start date", start=start, end=end)
    return start, end


def _append_note(existing: Optional[str], line: str) -> str:
    return f"{existing}\n{line}" if existing else line
