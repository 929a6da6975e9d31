import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..config import get_money_config
from ..db import get_db
from ..auth.security import get_actor, get_permissions
from ..schemas.reservations import (
    QuoteRequest,
    QuoteResponse,
    ReservationCancel,
    ReservationConvert,
    ReservationCreate,
    ReservationPayment,
    ReservationResponse,
    ReservationStatus,
)
from ..schemas.rentals import RentalResponse
from ..services import reservations as reservation_service
from ..services.money import MoneyConfig, format_dual
from ..services.permissions import Actor, PermissionTable
from .rentals import rental_response

router = APIRouter(prefix="/reservations", tags=["reservations"])


@router.post("/quote", response_model=QuoteResponse)
def quote_reservation(
    payload: QuoteRequest,
    db: Session = Depends(get_db),
    money: MoneyConfig = Depends(get_money_config),
    _actor: Actor = Depends(get_actor),
):
    q, available = reservation_service.quote_reservation(
        db, money, payload.vehicle_id, payload.start_date, payload.end_date, discount=payload.discount
    )
    return QuoteResponse(
        vehicle_id=payload.vehicle_id,
        available=available,
        total_days=q.total_days,
        daily_rate=q.daily_rate,
        subtotal=q.subtotal,
        tax_rate=q.tax_rate,
        taxes=q.taxes,
        discount=q.discount,
        total=q.total,
        total_display=format_dual(q.total, money),
    )


@router.post("", response_model=ReservationResponse, status_code=201)
def create_reservation(
    payload: ReservationCreate,
    db: Session = Depends(get_db),
    money: MoneyConfig = Depends(get_money_config),
    actor: Actor = Depends(get_actor),
    permissions: PermissionTable = Depends(get_permissions),
):
    return reservation_service.create_reservation(
        db, money, actor=actor, permissions=permissions, **payload.model_dump()
    )


@router.get("", response_model=List[ReservationResponse])
def list_reservations(
    status: Optional[ReservationStatus] = None,
    vehicle_id: Optional[uuid.UUID] = None,
    customer_id: Optional[uuid.UUID] = None,
    limit: int = Query(50, le=200),
    offset: int = 0,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    permissions: PermissionTable = Depends(get_permissions),
):
    return reservation_service.list_reservations(
        db,
        status=status.value if status else None,
        vehicle_id=vehicle_id,
        customer_id=customer_id,
        limit=limit,
        offset=offset,
        actor=actor,
        permissions=permissions,
    )


@router.get("/{reservation_id}", response_model=ReservationResponse)
def get_reservation(
    reservation_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    permissions: PermissionTable = Depends(get_permissions),
):
    return reservation_service.get_reservation(db, reservation_id, actor=actor, permissions=permissions)


@router.post("/{reservation_id}/confirm", response_model=ReservationResponse)
def confirm_reservation(
    reservation_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    permissions: PermissionTable = Depends(get_permissions),
):
    return reservation_service.confirm(db, reservation_id, actor=actor, permissions=permissions)


@router.post("/{reservation_id}/cancel", response_model=ReservationResponse)
def cancel_reservation(
    reservation_id: uuid.UUID,
    payload: Optional[ReservationCancel] = None,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    permissions: PermissionTable = Depends(get_permissions),
):
    reason = payload.reason if payload else None
    return reservation_service.cancel(db, reservation_id, reason=reason, actor=actor, permissions=permissions)


@router.post("/{reservation_id}/complete", response_model=ReservationResponse)
def complete_reservation(
    reservation_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    permissions: PermissionTable = Depends(get_permissions),
):
    return reservation_service.complete(db, reservation_id, actor=actor, permissions=permissions)


@router.post("/{reservation_id}/no-show", response_model=ReservationResponse)
def no_show_reservation(
    reservation_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    permissions: PermissionTable = Depends(get_permissions),
):
    return reservation_service.mark_no_show(db, reservation_id, actor=actor, permissions=permissions)


@router.post("/{reservation_id}/payment", response_model=ReservationResponse)
def update_payment(
    reservation_id: uuid.UUID,
    payload: ReservationPayment,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    permissions: PermissionTable = Depends(get_permissions),
):
    return reservation_service.update_payment(
        db,
        reservation_id,
        payload.payment_status.value,
        payment_method=payload.payment_method,
        payment_reference=payload.payment_reference,
        actor=actor,
        permissions=permissions,
    )


@router.post("/{reservation_id}/convert", response_model=RentalResponse, status_code=201)
def convert_reservation(
    reservation_id: uuid.UUID,
    payload: ReservationConvert,
    db: Session = Depends(get_db),
    money: MoneyConfig = Depends(get_money_config),
    actor: Actor = Depends(get_actor),
    permissions: PermissionTable = Depends(get_permissions),
):
    data = payload.model_dump(exclude={"agent_id"})
    rental = reservation_service.convert_to_rental(
        db,
        money,
        reservation_id,
        agent_id=payload.agent_id or actor.id,
        actor=actor,
        permissions=permissions,
        **data,
    )
    return rental_response(rental)
