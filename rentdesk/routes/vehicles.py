import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ..db import atomic, get_db
from ..auth.security import get_actor, get_permissions, require_capability
from ..models.models import Vehicle
from ..schemas.vehicles import (
    VehicleCreate,
    VehicleUpdate,
    VehicleResponse,
    VehicleStatus,
    VehicleStatusLogResponse,
)
from ..services import availability
from ..services.audit import compute_diff, create_audit_log
from ..services.permissions import Actor, PermissionTable
from ..services.time_rules import utcnow

router = APIRouter(prefix="/vehicles", tags=["vehicles"])


@router.post("", response_model=VehicleResponse, status_code=201)
def create_vehicle(
    payload: VehicleCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_capability("vehicle:manage")),
):
    plate = payload.license_plate.strip().upper()
    if db.query(Vehicle).filter(Vehicle.license_plate == plate).first():
        raise HTTPException(status_code=409, detail=f"License plate {plate} already exists")
    with atomic(db):
        vehicle = Vehicle(**payload.model_dump(exclude={"license_plate"}), license_plate=plate, status=availability.AVAILABLE)
        db.add(vehicle)
        db.flush()
        create_audit_log(
            db,
            entity_type="vehicle",
            entity_id=vehicle.id,
            action="CREATE",
            actor=actor,
            source="api",
            context={"license_plate": plate, "daily_rate": vehicle.daily_rate},
        )
    return vehicle


@router.get("", response_model=List[VehicleResponse])
def list_vehicles(
    status: Optional[VehicleStatus] = None,
    include_inactive: bool = False,
    limit: int = Query(50, le=200),
    offset: int = 0,
    db: Session = Depends(get_db),
    _actor: Actor = Depends(get_actor),
):
    query = db.query(Vehicle)
    if status:
        query = query.filter(Vehicle.status == status.value)
    if not include_inactive:
        query = query.filter(Vehicle.is_active.is_(True))
    return query.order_by(Vehicle.brand, Vehicle.model).limit(limit).offset(offset).all()


@router.get("/{vehicle_id}", response_model=VehicleResponse)
def get_vehicle(vehicle_id: uuid.UUID, db: Session = Depends(get_db), _actor: Actor = Depends(get_actor)):
    return availability.load_vehicle(db, vehicle_id, for_update=False)


@router.patch("/{vehicle_id}", response_model=VehicleResponse)
def update_vehicle(
    vehicle_id: uuid.UUID,
    payload: VehicleUpdate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_capability("vehicle:manage")),
):
    data = payload.model_dump(exclude_unset=True)
    with atomic(db):
        vehicle = availability.load_vehicle(db, vehicle_id)
        before = {k: getattr(vehicle, k) for k in data}
        for key, value in data.items():
            setattr(vehicle, key, value)
        vehicle.updated_at = utcnow()
        create_audit_log(
            db,
            entity_type="vehicle",
            entity_id=vehicle.id,
            action="UPDATE",
            actor=actor,
            source="api",
            changes_json=compute_diff(before, data),
        )
    return vehicle


@router.post("/{vehicle_id}/maintenance", response_model=VehicleResponse)
def send_to_maintenance(
    vehicle_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    permissions: PermissionTable = Depends(get_permissions),
):
    with atomic(db):
        vehicle = availability.mark_maintenance(db, vehicle_id, actor=actor, permissions=permissions)
    return vehicle


@router.post("/{vehicle_id}/out-of-service", response_model=VehicleResponse)
def take_out_of_service(
    vehicle_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    permissions: PermissionTable = Depends(get_permissions),
):
    with atomic(db):
        vehicle = availability.mark_out_of_service(db, vehicle_id, actor=actor, permissions=permissions)
    return vehicle


@router.post("/{vehicle_id}/return-to-service", response_model=VehicleResponse)
def return_to_service(
    vehicle_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    permissions: PermissionTable = Depends(get_permissions),
):
    with atomic(db):
        vehicle = availability.return_to_service(db, vehicle_id, actor=actor, permissions=permissions)
    return vehicle


@router.delete("/{vehicle_id}", response_model=VehicleResponse)
def deactivate_vehicle(
    vehicle_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_capability("vehicle:manage")),
):
    """Vehicles are never deleted; a held vehicle cannot be deactivated"""
    with atomic(db):
        vehicle = availability.load_vehicle(db, vehicle_id)
        if availability.active_holders(db, vehicle.id):
            raise HTTPException(status_code=409, detail="Vehicle has open reservations or rentals")
        vehicle.is_active = False
        vehicle.updated_at = utcnow()
        create_audit_log(
            db,
            entity_type="vehicle",
            entity_id=vehicle.id,
            action="DEACTIVATE",
            actor=actor,
            source="api",
            changes_json={"is_active": {"before": True, "after": False}},
        )
    return vehicle


@router.get("/{vehicle_id}/status-log", response_model=List[VehicleStatusLogResponse])
def vehicle_status_log(
    vehicle_id: uuid.UUID,
    limit: int = Query(100, le=500),
    offset: int = 0,
    db: Session = Depends(get_db),
    _actor: Actor = Depends(get_actor),
):
    return availability.list_status_changes(db, vehicle_id, limit=limit, offset=offset)
