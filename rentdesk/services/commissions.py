"""
Commission engine.

A rental accrues exactly one commission for its agent. Commissions then move
through their own workflow (PENDING -> APPROVED -> PAID), in batches that
either apply entirely or not at all. PENDING/APPROVED commissions are
cancelled only through their rental's cancellation.
"""
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

import structlog
from sqlalchemy.orm import Session

from ..db import atomic
from ..models.models import Commission, Rental, User, Vehicle
from . import visibility
from .audit import create_audit_log
from .errors import InvalidAmount, InvalidInput, InvalidTransition, MixedStatusBatch, NotFound, PermissionDenied
from .money import quantize_money, to_decimal
from .permissions import Actor, PermissionTable, default_permissions
from .time_rules import to_utc_naive, utcnow

logger = structlog.get_logger(__name__)

PENDING = "PENDING"
APPROVED = "APPROVED"
PAID = "PAID"
CANCELLED = "CANCELLED"

CANCELLABLE = (PENDING, APPROVED)


@dataclass(frozen=True)
class CommissionTerms:
    rate: Decimal
    base_amount: Decimal
    amount: Decimal
    flat_amount: Optional[Decimal] = None


@dataclass
class CommissionSummary:
    pending: Decimal = Decimal('0.00')
    approved: Decimal = Decimal('0.00')
    paid: Decimal = Decimal('0.00')
    cancelled: Decimal = Decimal('0.00')
    counts: Dict[str, int] = field(default_factory=dict)


def compute_terms(vehicle: Vehicle, agent: Optional[User], subtotal: Decimal, total_days: int) -> Optional[CommissionTerms]:
    """
    Commission owed for a rental, or None when nothing is owed.

    A flat per-day amount on the vehicle takes precedence; otherwise the
    agent's percentage of the rental subtotal applies.
    """
    flat = to_decimal(vehicle.commission_amount or 0)
    if flat > 0:
        return CommissionTerms(
            rate=Decimal('0'),
            base_amount=quantize_money(subtotal),
            amount=quantize_money(flat * total_days),
            flat_amount=quantize_money(flat),
        )
    rate = to_decimal(agent.commission_rate or 0) if agent else Decimal('0')
    if rate > 0:
        return CommissionTerms(
            rate=rate,
            base_amount=quantize_money(subtotal),
            amount=quantize_money(to_decimal(subtotal) * rate / Decimal('100')),
        )
    return None


def accrue_for_rental(db: Session, rental: Rental, actor: Optional[Actor] = None) -> Optional[Commission]:
    """
    Create the rental's PENDING commission if it qualifies and has none yet.
    Safe to call again: an existing commission is returned untouched.
    """
    existing = db.query(Commission).filter(Commission.rental_id == rental.id).first()
    if existing:
        return existing

    vehicle = rental.vehicle or db.get(Vehicle, rental.vehicle_id)
    agent = rental.agent or db.get(User, rental.agent_id)
    terms = compute_terms(vehicle, agent, rental.subtotal, rental.total_days)
    if terms is None or terms.amount <= 0:
        return None

    commission = Commission(
        rental_id=rental.id,
        agent_id=rental.agent_id,
        rate=terms.rate,
        flat_amount=terms.flat_amount,
        base_amount=terms.base_amount,
        amount=terms.amount,
        status=PENDING,
        created_at=utcnow(),
    )
    db.add(commission)
    db.flush()
    create_audit_log(
        db,
        entity_type="commission",
        entity_id=commission.id,
        action="CREATE",
        actor=actor,
        context={"rental_id": rental.id, "agent_id": rental.agent_id, "amount": terms.amount, "rate": terms.rate},
    )
    logger.info("commission_accrued", rental_id=str(rental.id), agent_id=str(rental.agent_id), amount=str(terms.amount))
    return commission


def sync_pending_for_rental(db: Session, rental: Rental, actor: Optional[Actor] = None) -> Optional[Commission]:
    """
    Follow a re-priced rental. Only a PENDING commission is recalculated;
    approved or paid amounts are changed through adjust_amount.

    The rate or flat per-day amount snapshotted at accrual is reapplied to the
    new subtotal and days. Later edits to the agent or vehicle do not count.
    """
    commission = db.query(Commission).filter(Commission.rental_id == rental.id).first()
    if commission is None:
        return accrue_for_rental(db, rental, actor)
    if commission.status != PENDING:
        return commission

    base_amount = quantize_money(rental.subtotal)
    if commission.rate and commission.rate > 0:
        amount = quantize_money(base_amount * to_decimal(commission.rate) / Decimal('100'))
    elif commission.flat_amount:
        amount = quantize_money(to_decimal(commission.flat_amount) * rental.total_days)
    else:
        amount = commission.amount
    if amount != commission.amount or base_amount != commission.base_amount:
        previous = commission.amount
        commission.base_amount = base_amount
        commission.amount = amount
        commission.updated_at = utcnow()
        create_audit_log(
            db,
            entity_type="commission",
            entity_id=commission.id,
            action="RECALCULATE",
            actor=actor,
            changes_json={"amount": {"before": previous, "after": amount}},
            context={"rental_id": rental.id},
        )
        db.flush()
    return commission


def cancel_for_rental(db: Session, rental_id: uuid.UUID, actor: Optional[Actor] = None) -> List[Commission]:
    """Cascade a rental cancellation; PAID commissions are historical and stay PAID."""
    commissions = (
        db.query(Commission)
        .filter(Commission.rental_id == rental_id, Commission.status.in_(CANCELLABLE))
        .with_for_update()
        .all()
    )
    now = utcnow()
    for commission in commissions:
        previous = commission.status
        commission.status = CANCELLED
        commission.cancelled_at = now
        commission.updated_at = now
        create_audit_log(
            db,
            entity_type="commission",
            entity_id=commission.id,
            action="CANCEL",
            actor=actor,
            changes_json={"status": {"before": previous, "after": CANCELLED}},
            context={"rental_id": rental_id, "cascade": True},
        )
    db.flush()
    return commissions


def approve(
    db: Session,
    ids: Iterable,
    actor: Optional[Actor] = None,
    permissions: PermissionTable = default_permissions,
) -> List[Commission]:
    """Approve a batch; every commission must be PENDING or nothing changes."""
    permissions.require(actor, "commission:approve")
    with atomic(db):
        batch = _load_batch(db, ids)
        _require_status(batch, PENDING)
        now = utcnow()
        for commission in batch:
            commission.status = APPROVED
            commission.approved_at = now
            commission.approved_by = getattr(actor, "id", None)
            commission.updated_at = now
            create_audit_log(
                db,
                entity_type="commission",
                entity_id=commission.id,
                action="APPROVE",
                actor=actor,
                changes_json={"status": {"before": PENDING, "after": APPROVED}},
                context={"batch": [c.id for c in batch]},
            )
    logger.info("commission_batch_approved", count=len(batch), total=str(_sum(batch)))
    return batch


def pay(
    db: Session,
    ids: Iterable,
    payment_ref: str,
    actor: Optional[Actor] = None,
    permissions: PermissionTable = default_permissions,
) -> List[Commission]:
    """Pay a batch; every commission must be APPROVED or nothing changes."""
    permissions.require(actor, "commission:pay")
    payment_ref = (payment_ref or "").strip()
    if not payment_ref:
        raise InvalidInput("A payment reference is required to pay commissions")

    with atomic(db):
        batch = _load_batch(db, ids)
        _require_status(batch, APPROVED)
        now = utcnow()
        for commission in batch:
            commission.status = PAID
            commission.paid_at = now
            commission.payment_ref = payment_ref
            commission.updated_at = now
            create_audit_log(
                db,
                entity_type="commission",
                entity_id=commission.id,
                action="PAY",
                actor=actor,
                changes_json={"status": {"before": APPROVED, "after": PAID}},
                context={"payment_ref": payment_ref, "batch": [c.id for c in batch]},
            )
    logger.info("commission_batch_paid", count=len(batch), payment_ref=payment_ref, total=str(_sum(batch)))
    return batch


def adjust_amount(
    db: Session,
    commission_id,
    amount,
    actor: Optional[Actor] = None,
    reason: Optional[str] = None,
    permissions: PermissionTable = default_permissions,
) -> Commission:
    """
    Correct a commission amount. Altering a PAID commission needs the
    commission:alter_paid capability; cancelled commissions are final.

    System calls (actor None) skip both the commission:adjust and the
    commission:alter_paid checks.
    """
    permissions.require(actor, "commission:adjust")
    new_amount = quantize_money(amount)
    if new_amount < 0:
        raise InvalidAmount(f"Commission amount cannot be negative, got: {new_amount}")

    with atomic(db):
        commission = _load_batch(db, [commission_id])[0]
        if commission.status == PAID and actor is not None and not permissions.allows(actor.role, "commission:alter_paid"):
            raise PermissionDenied(
                "Only administrators may alter a paid commission",
                role=actor.role,
                action="commission:alter_paid",
            )
        if commission.status == CANCELLED:
            raise InvalidTransition("commission", CANCELLED, "adjusted", "Cancelled commissions cannot be adjusted")
        previous = commission.amount
        commission.amount = new_amount
        commission.updated_at = utcnow()
        create_audit_log(
            db,
            entity_type="commission",
            entity_id=commission.id,
            action="ADJUST",
            actor=actor,
            changes_json={"amount": {"before": previous, "after": new_amount}},
            context={"reason": reason, "status": commission.status},
        )
    return commission


def list_commissions(
    db: Session,
    agent_id: Optional[uuid.UUID] = None,
    status: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: int = 50,
    offset: int = 0,
    actor: Optional[Actor] = None,
    permissions: PermissionTable = default_permissions,
) -> List[Commission]:
    """Agents see only their own commissions; customers see none."""
    permissions.require(actor, "commission:view")
    query = visibility.scope_commissions(_filtered(db, agent_id, status, start, end), actor, permissions)
    return query.order_by(Commission.created_at.desc()).limit(limit).offset(offset).all()


def summarize(
    db: Session,
    agent_id: Optional[uuid.UUID] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    actor: Optional[Actor] = None,
    permissions: PermissionTable = default_permissions,
) -> CommissionSummary:
    """Totals per status, recomputed from the current rows on every call."""
    permissions.require(actor, "commission:view")
    summary = CommissionSummary()
    query = visibility.scope_commissions(_filtered(db, agent_id, None, start, end), actor, permissions)
    for commission in query.all():
        key = commission.status.lower()
        setattr(summary, key, getattr(summary, key) + commission.amount)
        summary.counts[commission.status] = summary.counts.get(commission.status, 0) + 1
    for key in ("pending", "approved", "paid", "cancelled"):
        setattr(summary, key, quantize_money(getattr(summary, key)))
    return summary


def _filtered(db: Session, agent_id, status, start, end):
    query = db.query(Commission)
    if agent_id:
        query = query.filter(Commission.agent_id == agent_id)
    if status:
        query = query.filter(Commission.status == status)
    if start:
        query = query.filter(Commission.created_at >= to_utc_naive(start))
    if end:
        query = query.filter(Commission.created_at <= to_utc_naive(end))
    return query


def _load_batch(db: Session, ids: Iterable) -> List[Commission]:
    wanted = []
    for raw in ids or []:
        try:
            value = raw if isinstance(raw, uuid.UUID) else uuid.UUID(str(raw))
        except (TypeError, ValueError):
            raise NotFound("Commission", raw) from None
        if value not in wanted:
            wanted.append(value)
    if not wanted:
        raise InvalidInput("At least one commission id is required")

    rows = (
        db.query(Commission)
        .filter(Commission.id.in_(wanted))
        .with_for_update()
        .all()
    )
    by_id = {c.id: c for c in rows}
    for value in wanted:
        if value not in by_id:
            raise NotFound("Commission", value)
    return [by_id[value] for value in wanted]


def _require_status(batch: List[Commission], expected: str) -> None:
    offending = [str(c.id) for c in batch if c.status != expected]
    if offending:
        raise MixedStatusBatch(expected, offending)


def _sum(batch: List[Commission]) -> Decimal:
    return quantize_money(sum((c.amount for c in batch), Decimal('0')))
