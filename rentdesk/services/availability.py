"""
Vehicle availability guard.
HARD STOP rule: a vehicle cannot be held by two reservations/rentals over overlapping dates.

Every function here runs inside the caller's transaction (see rentdesk.db.atomic)
and reads the vehicle row FOR UPDATE, so the conflict check and the status
write cannot race with a competing request.
"""
import uuid
from datetime import datetime
from typing import List, Optional

import structlog
from sqlalchemy.orm import Session

from ..models.models import Reservation, Rental, Vehicle, VehicleStatusLog
from .audit import create_audit_log
from .errors import InvalidDateRange, InvalidTransition, NotFound, VehicleUnavailable
from .permissions import Actor, PermissionTable, default_permissions
from .time_rules import utcnow

logger = structlog.get_logger(__name__)

AVAILABLE = "AVAILABLE"
RESERVED = "RESERVED"
RENTED = "RENTED"
MAINTENANCE = "MAINTENANCE"
OUT_OF_SERVICE = "OUT_OF_SERVICE"

HOLDING_RESERVATION_STATUSES = ("PENDING", "CONFIRMED")
HOLDING_RENTAL_STATUSES = ("ACTIVE", "OVERDUE")


def load_vehicle(db: Session, vehicle_id, for_update: bool = True) -> Vehicle:
    query = db.query(Vehicle).filter(Vehicle.id == as_uuid(vehicle_id, "Vehicle"))
    if for_update:
        query = query.with_for_update()
    vehicle = query.first()
    if not vehicle:
        raise NotFound("Vehicle", vehicle_id)
    return vehicle


def find_conflicts(
    db: Session,
    vehicle_id: uuid.UUID,
    start: datetime,
    end: datetime,
    exclude_reservation_id: Optional[uuid.UUID] = None,
    exclude_rental_id: Optional[uuid.UUID] = None,
) -> list:
    """
    Get reservations and rentals holding the vehicle over [start, end].

    A reservation that has already been converted into a rental no longer
    holds the vehicle on its own; the rental does.
    """
    reservations = db.query(Reservation).filter(
        Reservation.vehicle_id == vehicle_id,
        Reservation.status.in_(HOLDING_RESERVATION_STATUSES),
        Reservation.start_date <= end,
        Reservation.end_date >= start,
        ~Reservation.rental.has(),
    )
    if exclude_reservation_id:
        reservations = reservations.filter(Reservation.id != exclude_reservation_id)

    rentals = db.query(Rental).filter(
        Rental.vehicle_id == vehicle_id,
        Rental.status.in_(HOLDING_RENTAL_STATUSES),
        Rental.start_date <= end,
        Rental.expected_end_date >= start,
    )
    if exclude_rental_id:
        rentals = rentals.filter(Rental.id != exclude_rental_id)

    return reservations.all() + rentals.all()


def active_holders(db: Session, vehicle_id: uuid.UUID) -> list:
    """Reservations and rentals currently holding the vehicle, whatever their dates."""
    reservations = db.query(Reservation).filter(
        Reservation.vehicle_id == vehicle_id,
        Reservation.status.in_(HOLDING_RESERVATION_STATUSES),
        ~Reservation.rental.has(),
    ).all()
    rentals = db.query(Rental).filter(
        Rental.vehicle_id == vehicle_id,
        Rental.status.in_(HOLDING_RENTAL_STATUSES),
    ).all()
    return reservations + rentals


def is_available(db: Session, vehicle_id, start: datetime, end: datetime) -> bool:
    """Read-only availability check used for quoting; takes no lock."""
    vehicle = load_vehicle(db, vehicle_id, for_update=False)
    if not vehicle.is_active or vehicle.status != AVAILABLE:
        return False
    return not find_conflicts(db, vehicle.id, start, end)


def reserve(
    db: Session,
    vehicle_id,
    start: datetime,
    end: datetime,
    reservation_id: Optional[uuid.UUID] = None,
    actor: Optional[Actor] = None,
) -> Vehicle:
    """Hold an AVAILABLE vehicle for a reservation (-> RESERVED)."""
    _check_range(start, end)
    vehicle = load_vehicle(db, vehicle_id)
    if not vehicle.is_active or vehicle.status != AVAILABLE:
        raise VehicleUnavailable(
            f"Vehicle {vehicle.license_plate} is not available",
            vehicle_id=vehicle.id,
            status=vehicle.status,
        )
    ensure_no_conflict(db, vehicle, start, end, exclude_reservation_id=reservation_id)
    _set_status(db, vehicle, RESERVED, "reserve", "reservation", reservation_id, actor)
    return vehicle


def lock(
    db: Session,
    vehicle_id,
    start: datetime,
    end: datetime,
    reservation: Optional[Reservation] = None,
    rental_id: Optional[uuid.UUID] = None,
    actor: Optional[Actor] = None,
) -> Vehicle:
    """
    Hand the vehicle over to a rental (-> RENTED).

    Direct rentals need an AVAILABLE vehicle. A rental converted from a
    reservation may also take the vehicle that reservation holds (RESERVED).
    """
    _check_range(start, end)
    vehicle = load_vehicle(db, vehicle_id)
    held_by_reservation = (
        reservation is not None
        and reservation.vehicle_id == vehicle.id
        and reservation.status in HOLDING_RESERVATION_STATUSES
        and vehicle.status == RESERVED
    )
    if not vehicle.is_active or not (vehicle.status == AVAILABLE or held_by_reservation):
        raise VehicleUnavailable(
            f"Vehicle {vehicle.license_plate} is not available",
            vehicle_id=vehicle.id,
            status=vehicle.status,
        )
    ensure_no_conflict(
        db,
        vehicle,
        start,
        end,
        exclude_reservation_id=reservation.id if reservation is not None else None,
        exclude_rental_id=rental_id,
    )
    _set_status(db, vehicle, RENTED, "lock", "rental", rental_id, actor)
    return vehicle


def release(
    db: Session,
    vehicle_id,
    source_type: Optional[str] = None,
    source_id: Optional[uuid.UUID] = None,
    actor: Optional[Actor] = None,
) -> Vehicle:
    """
    Free a RESERVED/RENTED vehicle. Idempotent: releasing an AVAILABLE
    vehicle is a no-op, and MAINTENANCE/OUT_OF_SERVICE are left untouched.
    """
    vehicle = load_vehicle(db, vehicle_id)
    if vehicle.status not in (RESERVED, RENTED):
        return vehicle

    db.flush()
    remaining = active_holders(db, vehicle.id)
    if any(isinstance(h, Rental) for h in remaining):
        target = RENTED
    elif remaining:
        target = RESERVED
    else:
        target = AVAILABLE

    if target != vehicle.status:
        _set_status(db, vehicle, target, "release", source_type, source_id, actor)
    return vehicle


def mark_maintenance(
    db: Session,
    vehicle_id,
    actor: Optional[Actor] = None,
    permissions: PermissionTable = default_permissions,
) -> Vehicle:
    permissions.require(actor, "vehicle:maintenance")
    return _manual_status(db, vehicle_id, MAINTENANCE, "maintenance", actor)


def mark_out_of_service(
    db: Session,
    vehicle_id,
    actor: Optional[Actor] = None,
    permissions: PermissionTable = default_permissions,
) -> Vehicle:
    permissions.require(actor, "vehicle:maintenance")
    return _manual_status(db, vehicle_id, OUT_OF_SERVICE, "out_of_service", actor)


def return_to_service(
    db: Session,
    vehicle_id,
    actor: Optional[Actor] = None,
    permissions: PermissionTable = default_permissions,
) -> Vehicle:
    permissions.require(actor, "vehicle:maintenance")
    vehicle = load_vehicle(db, vehicle_id)
    if vehicle.status == AVAILABLE:
        return vehicle
    if vehicle.status not in (MAINTENANCE, OUT_OF_SERVICE):
        raise InvalidTransition("vehicle", vehicle.status, AVAILABLE)
    _set_status(db, vehicle, AVAILABLE, "return_to_service", "manual", None, actor)
    return vehicle


def list_status_changes(db: Session, vehicle_id, limit: int = 100, offset: int = 0) -> List[VehicleStatusLog]:
    vehicle = load_vehicle(db, vehicle_id, for_update=False)
    return (
        db.query(VehicleStatusLog)
        .filter(VehicleStatusLog.vehicle_id == vehicle.id)
        .order_by(VehicleStatusLog.created_at.desc())
        .limit(limit)
        .offset(offset)
        .all()
    )


def _manual_status(db: Session, vehicle_id, target: str, reason: str, actor: Optional[Actor]) -> Vehicle:
    vehicle = load_vehicle(db, vehicle_id)
    if vehicle.status == target:
        return vehicle
    if vehicle.status in (RESERVED, RENTED):
        raise VehicleUnavailable(
            f"Vehicle {vehicle.license_plate} is {vehicle.status.lower()} and cannot be taken out of service",
            vehicle_id=vehicle.id,
            status=vehicle.status,
        )
    _set_status(db, vehicle, target, reason, "manual", None, actor)
    return vehicle


def ensure_no_conflict(db: Session, vehicle: Vehicle, start: datetime, end: datetime, **exclude) -> None:
    conflicts = find_conflicts(db, vehicle.id, start, end, **exclude)
    if conflicts:
        holder = conflicts[0]
        raise VehicleUnavailable(
            "The selected dates are not available",
            vehicle_id=vehicle.id,
            holder_type=type(holder).__name__.lower(),
            holder_id=holder.id,
        )


def _set_status(
    db: Session,
    vehicle: Vehicle,
    new_status: str,
    reason: str,
    source_type: Optional[str],
    source_id: Optional[uuid.UUID],
    actor: Optional[Actor],
) -> None:
    previous = vehicle.status
    vehicle.status = new_status
    vehicle.updated_at = utcnow()
    db.add(VehicleStatusLog(
        vehicle_id=vehicle.id,
        previous_status=previous,
        new_status=new_status,
        reason=reason,
        source_type=source_type,
        source_id=source_id,
        actor_id=getattr(actor, "id", None),
        created_at=utcnow(),
    ))
    create_audit_log(
        db,
        entity_type="vehicle",
        entity_id=vehicle.id,
        action="STATUS_CHANGE",
        actor=actor,
        changes_json={"status": {"before": previous, "after": new_status}},
        context={"reason": reason, "source_type": source_type, "source_id": source_id},
    )
    logger.info(
        "vehicle_status_changed",
        vehicle_id=str(vehicle.id),
        previous=previous,
        new=new_status,
        reason=reason,
    )


def _check_range(start: datetime, end: datetime) -> None:
    if end <= start:
        raise InvalidDateRange("End date must be after start date", start=start, end=end)


def as_uuid(value, entity: str) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        raise NotFound(entity, value) from None
