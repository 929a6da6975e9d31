from decimal import Decimal

import pytest

from conftest import START, days
from rentdesk.models.models import AuditLog, Commission
from rentdesk.services import commissions, rentals
from rentdesk.services.errors import (
    InvalidAmount,
    InvalidInput,
    InvalidTransition,
    MixedStatusBatch,
    NotFound,
    PermissionDenied,
)
from rentdesk.services.permissions import default_permissions


@pytest.fixture
def make_commission(db, money, make_vehicle, agent, customer):
    """Each call opens a 3-day rental on a fresh vehicle and returns its commission."""
    def _make():
        rental = rentals.create_rental(
            db, money, vehicle_id=make_vehicle().id, agent_id=agent.id,
            customer_ids=[customer.id], start_date=START, expected_end_date=days(3),
        )
        return db.query(Commission).filter_by(rental_id=rental.id).one()
    return _make


def _statuses(db, batch):
    for commission in batch:
        db.refresh(commission)
    return [c.status for c in batch]


class TestAccrual:

    def test_accrue_is_idempotent(self, db, open_rental):
        first = commissions.accrue_for_rental(db, open_rental)
        second = commissions.accrue_for_rental(db, open_rental)
        db.commit()
        assert first.id == second.id
        assert db.query(Commission).count() == 1

    def test_commission_is_attached_to_rental_agent(self, db, open_rental, agent):
        commission = db.query(Commission).one()
        assert commission.agent_id == agent.id
        assert commission.rental_id == open_rental.id


class TestBatches:

    def test_approve_then_pay(self, db, make_commission, admin_actor):
        batch = [make_commission(), make_commission()]
        commissions.approve(db, [c.id for c in batch], actor=admin_actor)
        assert _statuses(db, batch) == ["APPROVED", "APPROVED"]
        assert batch[0].approved_by == admin_actor.id

        commissions.pay(db, [c.id for c in batch], payment_ref="TRX-2030-01", actor=admin_actor)
        assert _statuses(db, batch) == ["PAID", "PAID"]
        assert {c.payment_ref for c in batch} == {"TRX-2030-01"}
        assert all(c.paid_at is not None for c in batch)

    def test_mixed_batch_changes_nothing(self, db, make_commission):
        approved, pending = make_commission(), make_commission()
        commissions.approve(db, [approved.id])
        with pytest.raises(MixedStatusBatch) as excinfo:
            commissions.pay(db, [approved.id, pending.id], payment_ref="TRX-1")
        assert excinfo.value.details["offending"] == [str(pending.id)]
        assert _statuses(db, [approved, pending]) == ["APPROVED", "PENDING"]
        assert db.query(AuditLog).filter_by(action="PAY").count() == 0

    def test_pay_requires_reference(self, db, make_commission):
        commission = make_commission()
        commissions.approve(db, [commission.id])
        with pytest.raises(InvalidInput):
            commissions.pay(db, [commission.id], payment_ref="   ")
        assert _statuses(db, [commission]) == ["APPROVED"]

    def test_pending_cannot_be_paid(self, db, make_commission):
        commission = make_commission()
        with pytest.raises(MixedStatusBatch):
            commissions.pay(db, [commission.id], payment_ref="TRX-1")

    def test_unknown_id_rejects_whole_batch(self, db, make_commission):
        commission = make_commission()
        with pytest.raises(NotFound):
            commissions.approve(db, [commission.id, "00000000-0000-0000-0000-00000000beef"])
        assert _statuses(db, [commission]) == ["PENDING"]

    def test_empty_batch(self, db):
        with pytest.raises(InvalidInput):
            commissions.approve(db, [])

    def test_duplicate_ids_collapse(self, db, make_commission):
        commission = make_commission()
        batch = commissions.approve(db, [commission.id, str(commission.id)])
        assert len(batch) == 1

    def test_agents_cannot_approve(self, db, make_commission, agent_actor):
        commission = make_commission()
        with pytest.raises(PermissionDenied):
            commissions.approve(db, [commission.id], actor=agent_actor)

    def test_cancelled_commission_cannot_be_approved(self, db, open_rental):
        rentals.cancel(db, open_rental.id)
        commission = db.query(Commission).one()
        with pytest.raises(MixedStatusBatch):
            commissions.approve(db, [commission.id])


class TestAdjust:

    def test_adjust_pending(self, db, make_commission, admin_actor):
        commission = make_commission()
        commissions.adjust_amount(db, commission.id, Decimal("12.5"), actor=admin_actor, reason="Shared sale")
        assert commission.amount == Decimal("12.50")
        entry = db.query(AuditLog).filter_by(entity_id=commission.id, action="ADJUST").one()
        assert entry.context["reason"] == "Shared sale"

    def test_admin_may_alter_paid(self, db, make_commission, admin_actor):
        commission = make_commission()
        commissions.approve(db, [commission.id])
        commissions.pay(db, [commission.id], payment_ref="TRX-9")
        commissions.adjust_amount(db, commission.id, Decimal("10"), actor=admin_actor)
        assert commission.amount == Decimal("10.00")
        assert commission.status == "PAID"

    def test_paid_needs_alter_paid_capability(self, db, make_commission, agent_actor):
        permissions = default_permissions.with_overrides({("AGENT", "commission:adjust"): True})
        commission = make_commission()
        commissions.approve(db, [commission.id])
        commissions.pay(db, [commission.id], payment_ref="TRX-9")
        with pytest.raises(PermissionDenied):
            commissions.adjust_amount(db, commission.id, Decimal("1"), actor=agent_actor, permissions=permissions)
        assert commission.amount == Decimal("15.00")

    def test_system_call_may_alter_paid(self, db, make_commission):
        commission = make_commission()
        commissions.approve(db, [commission.id])
        commissions.pay(db, [commission.id], payment_ref="TRX-9")
        commissions.adjust_amount(db, commission.id, Decimal("11"), reason="Payroll import")
        assert commission.amount == Decimal("11.00")
        assert commission.status == "PAID"

    def test_override_allows_pending_adjustment(self, db, make_commission, agent_actor):
        permissions = default_permissions.with_overrides({("AGENT", "commission:adjust"): True})
        commission = make_commission()
        commissions.adjust_amount(db, commission.id, Decimal("14"), actor=agent_actor, permissions=permissions)
        assert commission.amount == Decimal("14.00")

    def test_negative_amount(self, db, make_commission):
        commission = make_commission()
        with pytest.raises(InvalidAmount):
            commissions.adjust_amount(db, commission.id, Decimal("-1"))

    def test_cancelled_is_final(self, db, open_rental):
        rentals.cancel(db, open_rental.id)
        commission = db.query(Commission).one()
        with pytest.raises(InvalidTransition):
            commissions.adjust_amount(db, commission.id, Decimal("5"))


class TestSummary:

    def test_totals_per_status(self, db, make_commission):
        paid, approved, pending = make_commission(), make_commission(), make_commission()
        commissions.approve(db, [paid.id, approved.id])
        commissions.pay(db, [paid.id], payment_ref="TRX-1")

        summary = commissions.summarize(db, agent_id=paid.agent_id)
        assert summary.paid == Decimal("15.00")
        assert summary.approved == Decimal("15.00")
        assert summary.pending == Decimal("15.00")
        assert summary.cancelled == Decimal("0.00")
        assert summary.counts == {"PAID": 1, "APPROVED": 1, "PENDING": 1}

    def test_filters_by_agent(self, db, money, make_commission, make_user, make_vehicle, customer):
        make_commission()
        other = make_user(commission_rate=Decimal("20"))
        rentals.create_rental(
            db, money, vehicle_id=make_vehicle().id, agent_id=other.id,
            customer_ids=[customer.id], start_date=START, expected_end_date=days(3),
        )
        summary = commissions.summarize(db, agent_id=other.id)
        assert summary.pending == Decimal("30.00")
        assert [c.agent_id for c in commissions.list_commissions(db, agent_id=other.id)] == [other.id]

    def test_empty(self, db):
        summary = commissions.summarize(db)
        assert summary.pending == Decimal("0.00")
        assert summary.counts == {}

    def test_list_by_status(self, db, make_commission):
        make_commission()
        second = make_commission()
        commissions.approve(db, [second.id])
        assert [c.id for c in commissions.list_commissions(db, status="APPROVED")] == [second.id]
