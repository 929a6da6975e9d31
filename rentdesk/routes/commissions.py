import uuid
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..db import get_db
from ..auth.security import get_actor, get_permissions
from ..schemas.commissions import (
    CommissionAdjust,
    CommissionBatch,
    CommissionPay,
    CommissionResponse,
    CommissionStatus,
    CommissionSummaryResponse,
)
from ..services import commissions as commission_service
from ..services.permissions import Actor, PermissionTable

router = APIRouter(prefix="/commissions", tags=["commissions"])


@router.get("", response_model=List[CommissionResponse])
def list_commissions(
    agent_id: Optional[uuid.UUID] = None,
    status: Optional[CommissionStatus] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: int = Query(50, le=200),
    offset: int = 0,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    permissions: PermissionTable = Depends(get_permissions),
):
    return commission_service.list_commissions(
        db,
        agent_id=agent_id,
        status=status.value if status else None,
        start=start,
        end=end,
        limit=limit,
        offset=offset,
        actor=actor,
        permissions=permissions,
    )


@router.get("/summary", response_model=CommissionSummaryResponse)
def commission_summary(
    agent_id: Optional[uuid.UUID] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    permissions: PermissionTable = Depends(get_permissions),
):
    return commission_service.summarize(
        db, agent_id=agent_id, start=start, end=end, actor=actor, permissions=permissions
    )


@router.post("/approve", response_model=List[CommissionResponse])
def approve_commissions(
    payload: CommissionBatch,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    permissions: PermissionTable = Depends(get_permissions),
):
    return commission_service.approve(db, payload.ids, actor=actor, permissions=permissions)


@router.post("/pay", response_model=List[CommissionResponse])
def pay_commissions(
    payload: CommissionPay,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    permissions: PermissionTable = Depends(get_permissions),
):
    return commission_service.pay(db, payload.ids, payload.payment_ref, actor=actor, permissions=permissions)


@router.patch("/{commission_id}", response_model=CommissionResponse)
def adjust_commission(
    commission_id: uuid.UUID,
    payload: CommissionAdjust,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    permissions: PermissionTable = Depends(get_permissions),
):
    return commission_service.adjust_amount(
        db, commission_id, payload.amount, actor=actor, reason=payload.reason, permissions=permissions
    )
