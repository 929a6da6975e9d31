import uuid

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..db import atomic, get_db
from ..auth.security import require_capability
from ..models.models import Customer
from ..schemas.customers import CustomerBlacklist, CustomerCreate, CustomerResponse
from ..services.audit import create_audit_log
from ..services.permissions import Actor

router = APIRouter(prefix="/customers", tags=["customers"])


def _get_customer(db: Session, customer_id: uuid.UUID) -> Customer:
    customer = db.get(Customer, customer_id)
    if not customer:
        raise HTTPException(status_code=404, detail="Customer not found")
    return customer


@router.post("", response_model=CustomerResponse, status_code=201)
def create_customer(
    payload: CustomerCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_capability("customer:manage")),
):
    with atomic(db):
        customer = Customer(**payload.model_dump(exclude={"id_type"}), id_type=payload.id_type.value)
        db.add(customer)
        db.flush()
        create_audit_log(
            db,
            entity_type="customer",
            entity_id=customer.id,
            action="CREATE",
            actor=actor,
            source="api",
        )
    return customer


@router.get("/{customer_id}", response_model=CustomerResponse)
def get_customer(
    customer_id: uuid.UUID,
    db: Session = Depends(get_db),
    _actor: Actor = Depends(require_capability("customer:manage")),
):
    return _get_customer(db, customer_id)


@router.post("/{customer_id}/blacklist", response_model=CustomerResponse)
def blacklist_customer(
    customer_id: uuid.UUID,
    payload: CustomerBlacklist,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_capability("customer:blacklist")),
):
    """Flag only: rentals for a blacklisted customer surface a warning, they are not blocked"""
    with atomic(db):
        customer = _get_customer(db, customer_id)
        before = customer.is_blacklisted
        customer.is_blacklisted = payload.is_blacklisted
        customer.blacklist_reason = payload.reason if payload.is_blacklisted else None
        create_audit_log(
            db,
            entity_type="customer",
            entity_id=customer.id,
            action="BLACKLIST" if payload.is_blacklisted else "UNBLACKLIST",
            actor=actor,
            source="api",
            changes_json={"is_blacklisted": {"before": before, "after": payload.is_blacklisted}},
            context={"reason": payload.reason},
        )
    return customer
