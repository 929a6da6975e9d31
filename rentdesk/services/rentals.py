"""
Rental contract state machine.

ACTIVE -> COMPLETED | CANCELLED | OVERDUE, OVERDUE -> COMPLETED | CANCELLED.
COMPLETED and CANCELLED are terminal. OVERDUE is normally derived at read
time (effective_status); mark_overdue stores it explicitly.

Once signed_at is set the contract's price and date fields are frozen.
"""
import dataclasses
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Sequence

import structlog
from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from ..config import settings
from ..db import atomic
from ..models.models import Customer, Rental, RentalCustomer, Reservation, User
from . import availability, commissions, visibility
from .audit import compute_diff, create_audit_log
from .documents import build_contract_snapshot, completion_render_payload
from .errors import (
    ContractAlreadySigned,
    InvalidAmount,
    InvalidDateRange,
    InvalidInput,
    InvalidTransition,
    NotFound,
)
from .money import MoneyConfig, Number, quantize_money, quote, total
from .notifications import request_contract_render, send_rental_created
from .numbering import next_number
from .permissions import Actor, PermissionTable, default_permissions
from .time_rules import to_utc_naive, utcnow

logger = structlog.get_logger(__name__)

ACTIVE = "ACTIVE"
OVERDUE = "OVERDUE"
COMPLETED = "COMPLETED"
CANCELLED = "CANCELLED"

OPEN = (ACTIVE, OVERDUE)
SIGNATURE_PREFIX = "data:image/"


def get_rental(
    db: Session,
    rental_id,
    for_update: bool = False,
    actor: Optional[Actor] = None,
    permissions: PermissionTable = default_permissions,
) -> Rental:
    """Rentals outside the actor's read scope are reported as not found."""
    query = db.query(Rental).filter(Rental.id == availability.as_uuid(rental_id, "Rental"))
    query = visibility.scope_rentals(db, query, actor, permissions)
    if for_update:
        query = query.with_for_update()
    rental = query.first()
    if not rental:
        raise NotFound("Rental", rental_id)
    return rental


def list_rentals(
    db: Session,
    status: Optional[str] = None,
    vehicle_id: Optional[uuid.UUID] = None,
    agent_id: Optional[uuid.UUID] = None,
    limit: int = 50,
    offset: int = 0,
    actor: Optional[Actor] = None,
    permissions: PermissionTable = default_permissions,
) -> List[Rental]:
    query = visibility.scope_rentals(db, db.query(Rental), actor, permissions)
    if status:
        query = query.filter(Rental.status == status)
    if vehicle_id:
        query = query.filter(Rental.vehicle_id == vehicle_id)
    if agent_id:
        query = query.filter(Rental.agent_id == agent_id)
    return query.order_by(Rental.created_at.desc()).limit(limit).offset(offset).all()


def create_rental(
    db: Session,
    money: MoneyConfig,
    vehicle_id,
    agent_id,
    customer_ids: Sequence,
    start_date: datetime,
    expected_end_date: datetime,
    actor: Optional[Actor] = None,
    permissions: PermissionTable = default_permissions,
    **fields,
) -> Rental:
    """
    Open a rental contract directly (without a reservation).

    The vehicle must be AVAILABLE; it moves to RENTED. Rate, deposit and tax
    rate are snapshotted on the contract and the agent's commission is
    accrued in the same transaction.
    """
    permissions.require(actor, "rental:create")
    with atomic(db):
        rental = create_rental_in_session(
            db,
            money,
            vehicle_id=vehicle_id,
            agent_id=agent_id,
            customer_ids=customer_ids,
            start_date=start_date,
            expected_end_date=expected_end_date,
            actor=actor,
            **fields,
        )
    return rental


def create_rental_in_session(
    db: Session,
    money: MoneyConfig,
    vehicle_id,
    agent_id,
    customer_ids: Sequence,
    start_date: datetime,
    expected_end_date: datetime,
    daily_rate: Optional[Number] = None,
    discount: Number = 0,
    extra_charges: Number = 0,
    deposit_amount: Optional[Number] = None,
    start_mileage: Optional[int] = None,
    fuel_level_start: Optional[int] = None,
    pickup_location: Optional[str] = None,
    dropoff_location: Optional[str] = None,
    notes: Optional[str] = None,
    reservation: Optional[Reservation] = None,
    actor: Optional[Actor] = None,
) -> Rental:
    """Rental creation without its own commit; the caller owns the transaction."""
    start, end = to_utc_naive(start_date), to_utc_naive(expected_end_date)
    if end <= start:
        raise InvalidDateRange("Expected end date must be after start date", start=start, end=end)

    agent = db.get(User, availability.as_uuid(agent_id, "User"))
    if not agent:
        raise NotFound("User", agent_id)
    customers = _load_customers(db, customer_ids)

    rental_id = uuid.uuid4()
    vehicle = availability.lock(db, vehicle_id, start, end, reservation=reservation, rental_id=rental_id, actor=actor)

    rate = vehicle.daily_rate if daily_rate is None else daily_rate
    deposit = quantize_money(vehicle.deposit_amount if deposit_amount is None else deposit_amount)
    if deposit < 0:
        raise InvalidAmount(f"deposit_amount cannot be negative, got: {deposit}")
    q = quote(money, rate, start, end, discount=discount, extra_charges=extra_charges)

    rental = Rental(
        id=rental_id,
        contract_number=next_number(db, Rental.contract_number, settings.contract_prefix),
        reservation=reservation,
        vehicle=vehicle,
        agent=agent,
        start_date=start,
        expected_end_date=end,
        start_mileage=vehicle.mileage if start_mileage is None else start_mileage,
        fuel_level_start=fuel_level_start,
        pickup_location=pickup_location,
        dropoff_location=dropoff_location,
        daily_rate=q.daily_rate,
        tax_rate=q.tax_rate,
        total_days=q.total_days,
        subtotal=q.subtotal,
        taxes=q.taxes,
        discount=q.discount,
        extra_charges=q.extra_charges,
        total_amount=q.total,
        deposit_amount=deposit,
        deposit_returned=Decimal('0.00'),
        status=ACTIVE,
        notes=notes,
        created_by=getattr(actor, "id", None),
        created_at=utcnow(),
        signers=[RentalCustomer(customer=c, position=i) for i, c in enumerate(customers)],
    )
    db.add(rental)
    db.flush()

    commission = commissions.accrue_for_rental(db, rental, actor)
    send_rental_created(db, rental, money)
    create_audit_log(
        db,
        entity_type="rental",
        entity_id=rental.id,
        action="CREATE",
        actor=actor,
        context={
            "contract_number": rental.contract_number,
            "vehicle_id": vehicle.id,
            "reservation_id": reservation.id if reservation else None,
            "total_amount": rental.total_amount,
            "commission_id": commission.id if commission else None,
        },
    )
    logger.info(
        "rental_created",
        rental_id=str(rental.id),
        contract_number=rental.contract_number,
        vehicle_id=str(vehicle.id),
        agent_id=str(agent.id),
        total=str(rental.total_amount),
    )
    return rental


def sign(
    db: Session,
    money: MoneyConfig,
    rental_id,
    customer_signature: str,
    agent_signature: str,
    actor: Optional[Actor] = None,
    permissions: PermissionTable = default_permissions,
) -> Rental:
    """
    Sign the contract once. Freezes the contract snapshot and hands it to the
    document renderer.
    """
    permissions.require(actor, "rental:sign")
    with atomic(db):
        rental = get_rental(db, rental_id, for_update=True)
        if rental.signed_at is not None:
            raise ContractAlreadySigned(
                f"Contract {rental.contract_number} is already signed",
                rental_id=rental.id,
                signed_at=rental.signed_at,
            )
        if rental.status not in OPEN:
            raise InvalidTransition("rental", rental.status, "signed")
        for name, value in (("customer_signature", customer_signature), ("agent_signature", agent_signature)):
            if not value or not value.startswith(SIGNATURE_PREFIX):
                raise InvalidInput(f"{name} must be a non-empty image data URL", field=name)

        rental.customer_signature = customer_signature
        rental.agent_signature = agent_signature
        rental.signed_at = utcnow()
        rental.updated_at = rental.signed_at
        db.flush()

        snapshot = build_contract_snapshot(rental, money)
        rental.contract_snapshot = snapshot
        request_contract_render(db, rental, "sign", snapshot)
        create_audit_log(
            db,
            entity_type="rental",
            entity_id=rental.id,
            action="SIGN",
            actor=actor,
            context={"contract_number": rental.contract_number, "signed_at": rental.signed_at},
        )
    logger.info("rental_signed", rental_id=str(rental.id), contract_number=rental.contract_number)
    return rental


def update_terms(
    db: Session,
    money: MoneyConfig,
    rental_id,
    daily_rate: Optional[Number] = None,
    discount: Optional[Number] = None,
    extra_charges: Optional[Number] = None,
    deposit_amount: Optional[Number] = None,
    start_date: Optional[datetime] = None,
    expected_end_date: Optional[datetime] = None,
    actor: Optional[Actor] = None,
    permissions: PermissionTable = default_permissions,
) -> Rental:
    """
    Edit price/date fields of an unsigned open contract and re-quote it with
    the contract's own tax rate. New dates must not collide with other holds.
    """
    permissions.require(actor, "rental:update")
    with atomic(db):
        rental = get_rental(db, rental_id, for_update=True)
        if rental.signed_at is not None:
            raise ContractAlreadySigned(
                f"Contract {rental.contract_number} is signed; its terms can no longer change",
                rental_id=rental.id,
            )
        if rental.status not in OPEN:
            raise InvalidTransition("rental", rental.status, "updated")

        before = _terms(rental)
        start = to_utc_naive(start_date) if start_date is not None else rental.start_date
        end = to_utc_naive(expected_end_date) if expected_end_date is not None else rental.expected_end_date
        if end <= start:
            raise InvalidDateRange("Expected end date must be after start date", start=start, end=end)
        if (start, end) != (rental.start_date, rental.expected_end_date):
            vehicle = availability.load_vehicle(db, rental.vehicle_id)
            availability.ensure_no_conflict(
                db, vehicle, start, end,
                exclude_rental_id=rental.id,
                exclude_reservation_id=rental.reservation_id,
            )

        contract_money = dataclasses.replace(money, tax_rate=rental.tax_rate, apply_tax=rental.tax_rate > 0)
        q = quote(
            contract_money,
            rental.daily_rate if daily_rate is None else daily_rate,
            start,
            end,
            discount=rental.discount if discount is None else discount,
            extra_charges=rental.extra_charges if extra_charges is None else extra_charges,
        )
        if deposit_amount is not None:
            deposit = quantize_money(deposit_amount)
            if deposit < 0:
                raise InvalidAmount(f"deposit_amount cannot be negative, got: {deposit}")
            rental.deposit_amount = deposit

        rental.start_date = start
        rental.expected_end_date = end
        rental.daily_rate = q.daily_rate
        rental.total_days = q.total_days
        rental.subtotal = q.subtotal
        rental.taxes = q.taxes
        rental.discount = q.discount
        rental.extra_charges = q.extra_charges
        rental.total_amount = q.total
        rental.updated_at = utcnow()
        db.flush()

        commissions.sync_pending_for_rental(db, rental, actor)
        create_audit_log(
            db,
            entity_type="rental",
            entity_id=rental.id,
            action="UPDATE_TERMS",
            actor=actor,
            changes_json=compute_diff(before, _terms(rental)),
        )
    return rental


def update_notes(
    db: Session,
    rental_id,
    notes: Optional[str] = None,
    dropoff_location: Optional[str] = None,
    actor: Optional[Actor] = None,
    permissions: PermissionTable = default_permissions,
) -> Rental:
    """Non-contract fields stay editable after signing."""
    permissions.require(actor, "rental:update")
    with atomic(db):
        rental = get_rental(db, rental_id, for_update=True)
        before = {"notes": rental.notes, "dropoff_location": rental.dropoff_location}
        if notes is not None:
            rental.notes = notes
        if dropoff_location is not None:
            rental.dropoff_location = dropoff_location
        rental.updated_at = utcnow()
        create_audit_log(
            db,
            entity_type="rental",
            entity_id=rental.id,
            action="UPDATE_NOTES",
            actor=actor,
            changes_json=compute_diff(before, {"notes": rental.notes, "dropoff_location": rental.dropoff_location}),
        )
    return rental


def complete(
    db: Session,
    money: MoneyConfig,
    rental_id,
    end_mileage: Optional[int] = None,
    actual_end_date: Optional[datetime] = None,
    deposit_returned: Optional[Number] = None,
    fuel_level_end: Optional[int] = None,
    return_condition: Optional[str] = None,
    extra_charges: Optional[Number] = None,
    actor: Optional[Actor] = None,
    permissions: PermissionTable = default_permissions,
) -> Rental:
    """
    Close an ACTIVE/OVERDUE rental and release its vehicle.

    Late days are never computed here. The operator bills them by passing
    extra_charges, which replaces the contract's extra charges and re-totals
    it; this is the one price change allowed on a signed contract. The signed
    snapshot itself stays frozen and the render gets a separate completion
    block.
    """
    permissions.require(actor, "rental:complete")
    with atomic(db):
        rental = get_rental(db, rental_id, for_update=True)
        if rental.status not in OPEN:
            raise InvalidTransition("rental", rental.status, COMPLETED)

        if end_mileage is not None and end_mileage < (rental.start_mileage or 0):
            raise InvalidInput(
                f"End mileage {end_mileage} is below start mileage {rental.start_mileage}",
                field="end_mileage",
            )
        returned = rental.deposit_returned if deposit_returned is None else quantize_money(deposit_returned)
        if returned < 0 or returned > rental.deposit_amount:
            raise InvalidAmount(
                f"deposit_returned must be between 0 and {rental.deposit_amount}, got: {returned}",
                field="deposit_returned",
            )
        ended = to_utc_naive(actual_end_date) if actual_end_date is not None else utcnow()
        if ended < rental.start_date:
            raise InvalidDateRange("Actual end date is before the rental start", start=rental.start_date, end=ended)

        charges = {}
        if extra_charges is not None:
            extra = quantize_money(extra_charges)
            if extra < 0:
                raise InvalidAmount(f"extra_charges cannot be negative, got: {extra}", field="extra_charges")
            new_total = total(rental.subtotal, rental.taxes, rental.discount, extra)
            charges = compute_diff(
                {"extra_charges": rental.extra_charges, "total_amount": rental.total_amount},
                {"extra_charges": extra, "total_amount": new_total},
            )
            rental.extra_charges = extra
            rental.total_amount = new_total

        previous = rental.status
        now = utcnow()
        rental.status = COMPLETED
        rental.actual_end_date = ended
        rental.end_mileage = end_mileage
        rental.deposit_returned = returned
        rental.fuel_level_end = fuel_level_end
        rental.return_condition = return_condition
        rental.completed_at = now
        rental.updated_at = now

        vehicle = availability.load_vehicle(db, rental.vehicle_id)
        if end_mileage is not None and end_mileage > (vehicle.mileage or 0):
            vehicle.mileage = end_mileage
        db.flush()

        availability.release(db, vehicle.id, "rental", rental.id, actor)
        commissions.accrue_for_rental(db, rental, actor)
        request_contract_render(db, rental, "complete", completion_render_payload(rental, money))
        create_audit_log(
            db,
            entity_type="rental",
            entity_id=rental.id,
            action="COMPLETE",
            actor=actor,
            changes_json={"status": {"before": previous, "after": COMPLETED}, **charges},
            context={"end_mileage": end_mileage, "deposit_returned": returned, "actual_end_date": ended},
        )
    logger.info("rental_completed", rental_id=str(rental.id), contract_number=rental.contract_number)
    return rental


def cancel(
    db: Session,
    rental_id,
    reason: Optional[str] = None,
    actor: Optional[Actor] = None,
    permissions: PermissionTable = default_permissions,
) -> Rental:
    """Cancel an open rental, release its vehicle and cancel its unpaid commission."""
    permissions.require(actor, "rental:cancel")
    with atomic(db):
        rental = get_rental(db, rental_id, for_update=True)
        if rental.status not in OPEN:
            raise InvalidTransition("rental", rental.status, CANCELLED)

        previous = rental.status
        now = utcnow()
        rental.status = CANCELLED
        rental.cancellation_reason = reason
        rental.cancelled_at = now
        rental.updated_at = now
        db.flush()

        availability.release(db, rental.vehicle_id, "rental", rental.id, actor)
        cancelled = commissions.cancel_for_rental(db, rental.id, actor)
        create_audit_log(
            db,
            entity_type="rental",
            entity_id=rental.id,
            action="CANCEL",
            actor=actor,
            changes_json={"status": {"before": previous, "after": CANCELLED}},
            context={"reason": reason, "cancelled_commissions": [c.id for c in cancelled]},
        )
    logger.info(
        "rental_cancelled",
        rental_id=str(rental.id),
        contract_number=rental.contract_number,
        cancelled_commissions=len(cancelled),
    )
    return rental


def effective_status(rental: Rental, now: Optional[datetime] = None) -> str:
    """Stored status, with ACTIVE past its expected end reported as OVERDUE."""
    now = now or utcnow()
    if rental.status == ACTIVE and now > rental.expected_end_date:
        return OVERDUE
    return rental.status


def list_overdue(
    db: Session,
    now: Optional[datetime] = None,
    actor: Optional[Actor] = None,
    permissions: PermissionTable = default_permissions,
) -> List[Rental]:
    now = now or utcnow()
    return (
        visibility.scope_rentals(db, db.query(Rental), actor, permissions)
        .filter(or_(
            Rental.status == OVERDUE,
            and_(Rental.status == ACTIVE, Rental.expected_end_date < now),
        ))
        .order_by(Rental.expected_end_date)
        .all()
    )


def mark_overdue(
    db: Session,
    now: Optional[datetime] = None,
    actor: Optional[Actor] = None,
    permissions: PermissionTable = default_permissions,
) -> List[Rental]:
    """Store OVERDUE on every ACTIVE rental past its expected end."""
    permissions.require(actor, "rental:mark_overdue")
    now = now or utcnow()
    with atomic(db):
        rentals = (
            db.query(Rental)
            .filter(Rental.status == ACTIVE, Rental.expected_end_date < now)
            .with_for_update()
            .all()
        )
        for rental in rentals:
            rental.status = OVERDUE
            rental.updated_at = now
            create_audit_log(
                db,
                entity_type="rental",
                entity_id=rental.id,
                action="MARK_OVERDUE",
                actor=actor,
                changes_json={"status": {"before": ACTIVE, "after": OVERDUE}},
                context={"expected_end_date": rental.expected_end_date},
            )
    if rentals:
        logger.info("rentals_marked_overdue", count=len(rentals))
    return rentals


def customer_warnings(rental: Rental) -> List[Dict]:
    """Signers an operator should look at twice. Never blocks anything."""
    warnings = []
    for customer in rental.customers:
        if customer.is_blacklisted:
            warnings.append({
                "customer_id": str(customer.id),
                "name": customer.full_name,
                "reason": "blacklisted",
                "detail": customer.blacklist_reason,
            })
        if not customer.is_active:
            warnings.append({
                "customer_id": str(customer.id),
                "name": customer.full_name,
                "reason": "inactive",
                "detail": None,
            })
    return warnings


def get_contract_snapshot(
    db: Session,
    money: MoneyConfig,
    rental_id,
    actor: Optional[Actor] = None,
    permissions: PermissionTable = default_permissions,
) -> Dict:
    """The frozen snapshot once signed; a live preview before that."""
    rental = get_rental(db, rental_id, actor=actor, permissions=permissions)
    if rental.contract_snapshot is not None:
        return rental.contract_snapshot
    return build_contract_snapshot(rental, money)


def _load_customers(db: Session, customer_ids: Sequence) -> List[Customer]:
    ordered = []
    for raw in customer_ids or []:
        cid = availability.as_uuid(raw, "Customer")
        if cid not in ordered:
            ordered.append(cid)
    if not ordered:
        raise InvalidInput("A rental needs at least one customer", field="customer_ids")
    customers = []
    for cid in ordered:
        customer = db.get(Customer, cid)
        if not customer:
            raise NotFound("Customer", cid)
        customers.append(customer)
    return customers


def _terms(rental: Rental) -> Dict:
    return {
        "start_date": rental.start_date,
        "expected_end_date": rental.expected_end_date,
        "daily_rate": rental.daily_rate,
        "total_days": rental.total_days,
        "subtotal": rental.subtotal,
        "taxes": rental.taxes,
        "discount": rental.discount,
        "extra_charges": rental.extra_charges,
        "total_amount": rental.total_amount,
        "deposit_amount": rental.deposit_amount,
    }
