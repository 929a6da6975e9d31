import uuid
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..config import get_money_config
from ..db import get_db
from ..auth.security import get_actor, get_permissions
from ..models.models import Rental
from ..schemas.rentals import (
    RentalCancel,
    RentalComplete,
    RentalCreate,
    RentalNotesUpdate,
    RentalResponse,
    RentalSign,
    RentalStatus,
    RentalTermsUpdate,
)
from ..services import rentals as rental_service
from ..services.money import MoneyConfig
from ..services.permissions import Actor, PermissionTable

router = APIRouter(prefix="/rentals", tags=["rentals"])


def rental_response(rental: Rental) -> RentalResponse:
    response = RentalResponse.model_validate(rental)
    return response.model_copy(update={
        "effective_status": RentalStatus(rental_service.effective_status(rental)),
        "warnings": rental_service.customer_warnings(rental),
    })


@router.post("", response_model=RentalResponse, status_code=201)
def create_rental(
    payload: RentalCreate,
    db: Session = Depends(get_db),
    money: MoneyConfig = Depends(get_money_config),
    actor: Actor = Depends(get_actor),
    permissions: PermissionTable = Depends(get_permissions),
):
    data = payload.model_dump(exclude={"agent_id"})
    rental = rental_service.create_rental(
        db,
        money,
        agent_id=payload.agent_id or actor.id,
        actor=actor,
        permissions=permissions,
        **data,
    )
    return rental_response(rental)


@router.get("", response_model=List[RentalResponse])
def list_rentals(
    status: Optional[RentalStatus] = None,
    vehicle_id: Optional[uuid.UUID] = None,
    agent_id: Optional[uuid.UUID] = None,
    limit: int = Query(50, le=200),
    offset: int = 0,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    permissions: PermissionTable = Depends(get_permissions),
):
    rentals = rental_service.list_rentals(
        db,
        status=status.value if status else None,
        vehicle_id=vehicle_id,
        agent_id=agent_id,
        limit=limit,
        offset=offset,
        actor=actor,
        permissions=permissions,
    )
    return [rental_response(r) for r in rentals]


@router.get("/overdue", response_model=List[RentalResponse])
def list_overdue(
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    permissions: PermissionTable = Depends(get_permissions),
):
    return [rental_response(r) for r in rental_service.list_overdue(db, actor=actor, permissions=permissions)]


@router.post("/mark-overdue", response_model=List[RentalResponse])
def mark_overdue(
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    permissions: PermissionTable = Depends(get_permissions),
):
    return [rental_response(r) for r in rental_service.mark_overdue(db, actor=actor, permissions=permissions)]


@router.get("/{rental_id}", response_model=RentalResponse)
def get_rental(
    rental_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    permissions: PermissionTable = Depends(get_permissions),
):
    return rental_response(rental_service.get_rental(db, rental_id, actor=actor, permissions=permissions))


@router.get("/{rental_id}/snapshot")
def get_snapshot(
    rental_id: uuid.UUID,
    db: Session = Depends(get_db),
    money: MoneyConfig = Depends(get_money_config),
    actor: Actor = Depends(get_actor),
    permissions: PermissionTable = Depends(get_permissions),
) -> Dict[str, Any]:
    return rental_service.get_contract_snapshot(db, money, rental_id, actor=actor, permissions=permissions)


@router.post("/{rental_id}/sign", response_model=RentalResponse)
def sign_rental(
    rental_id: uuid.UUID,
    payload: RentalSign,
    db: Session = Depends(get_db),
    money: MoneyConfig = Depends(get_money_config),
    actor: Actor = Depends(get_actor),
    permissions: PermissionTable = Depends(get_permissions),
):
    rental = rental_service.sign(
        db,
        money,
        rental_id,
        payload.customer_signature,
        payload.agent_signature,
        actor=actor,
        permissions=permissions,
    )
    return rental_response(rental)


@router.patch("/{rental_id}/terms", response_model=RentalResponse)
def update_terms(
    rental_id: uuid.UUID,
    payload: RentalTermsUpdate,
    db: Session = Depends(get_db),
    money: MoneyConfig = Depends(get_money_config),
    actor: Actor = Depends(get_actor),
    permissions: PermissionTable = Depends(get_permissions),
):
    rental = rental_service.update_terms(
        db, money, rental_id, actor=actor, permissions=permissions, **payload.model_dump(exclude_unset=True)
    )
    return rental_response(rental)


@router.patch("/{rental_id}/notes", response_model=RentalResponse)
def update_notes(
    rental_id: uuid.UUID,
    payload: RentalNotesUpdate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    permissions: PermissionTable = Depends(get_permissions),
):
    rental = rental_service.update_notes(
        db, rental_id, actor=actor, permissions=permissions, **payload.model_dump(exclude_unset=True)
    )
    return rental_response(rental)


@router.post("/{rental_id}/complete", response_model=RentalResponse)
def complete_rental(
    rental_id: uuid.UUID,
    payload: RentalComplete,
    db: Session = Depends(get_db),
    money: MoneyConfig = Depends(get_money_config),
    actor: Actor = Depends(get_actor),
    permissions: PermissionTable = Depends(get_permissions),
):
    rental = rental_service.complete(
        db, money, rental_id, actor=actor, permissions=permissions, **payload.model_dump()
    )
    return rental_response(rental)


@router.post("/{rental_id}/cancel", response_model=RentalResponse)
def cancel_rental(
    rental_id: uuid.UUID,
    payload: Optional[RentalCancel] = None,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    permissions: PermissionTable = Depends(get_permissions),
):
    reason = payload.reason if payload else None
    return rental_response(rental_service.cancel(db, rental_id, reason=reason, actor=actor, permissions=permissions))
