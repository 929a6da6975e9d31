import uuid
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..db import atomic, get_db
from ..auth.security import require_capability
from ..models.models import Expense
from ..schemas.expenses import ExpenseCategory, ExpenseCreate, ExpenseResponse
from ..services.availability import load_vehicle
from ..services.audit import create_audit_log
from ..services.money import quantize_money
from ..services.permissions import Actor
from ..services.time_rules import to_utc_naive, utcnow

router = APIRouter(prefix="/expenses", tags=["expenses"])


@router.post("", response_model=ExpenseResponse, status_code=201)
def create_expense(
    payload: ExpenseCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_capability("expense:create")),
):
    with atomic(db):
        if payload.vehicle_id:
            load_vehicle(db, payload.vehicle_id, for_update=False)
        expense = Expense(
            vehicle_id=payload.vehicle_id,
            category=payload.category.value,
            description=payload.description,
            amount=quantize_money(payload.amount),
            date=to_utc_naive(payload.date) if payload.date else utcnow(),
            vendor=payload.vendor,
            invoice_number=payload.invoice_number,
            created_by=actor.id,
        )
        db.add(expense)
        db.flush()
        create_audit_log(
            db,
            entity_type="expense",
            entity_id=expense.id,
            action="CREATE",
            actor=actor,
            source="api",
            context={"vehicle_id": expense.vehicle_id, "category": expense.category, "amount": expense.amount},
        )
    return expense


@router.get("", response_model=List[ExpenseResponse])
def list_expenses(
    vehicle_id: Optional[uuid.UUID] = None,
    category: Optional[ExpenseCategory] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: int = Query(50, le=200),
    offset: int = 0,
    db: Session = Depends(get_db),
    _actor: Actor = Depends(require_capability("report:profitability")),
):
    query = db.query(Expense)
    if vehicle_id:
        query = query.filter(Expense.vehicle_id == vehicle_id)
    if category:
        query = query.filter(Expense.category == category.value)
    if start:
        query = query.filter(Expense.date >= to_utc_naive(start))
    if end:
        query = query.filter(Expense.date <= to_utc_naive(end))
    return query.order_by(Expense.date.desc()).limit(limit).offset(offset).all()
