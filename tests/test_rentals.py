import dataclasses
from decimal import Decimal

import pytest

from conftest import START, days
from rentdesk.models.models import AuditLog, Commission, Notification, Rental, Reservation
from rentdesk.services import commissions, rentals
from rentdesk.services.errors import (
    ContractAlreadySigned,
    InvalidAmount,
    InvalidDateRange,
    InvalidInput,
    InvalidTransition,
    NotFound,
    PermissionDenied,
    VehicleUnavailable,
)
from rentdesk.services.permissions import Actor
from rentdesk.services.time_rules import utcnow

SIGNATURE = "data:image/png;base64,iVBORw0KGgo="


def _render_events(db, rental):
    rows = db.query(Notification).filter_by(entity_id=rental.id, template_key="contract_render").all()
    return [row.payload_json["event"] for row in rows]


def _render_payload(db, rental, event):
    rows = db.query(Notification).filter_by(entity_id=rental.id, template_key="contract_render").all()
    return next(row.payload_json for row in rows if row.payload_json["event"] == event)


class TestCreate:

    def test_snapshots_pricing_and_locks_vehicle(self, open_rental, vehicle):
        assert open_rental.status == "ACTIVE"
        assert open_rental.contract_number == f"CTR-{utcnow().year}-000001"
        assert open_rental.daily_rate == Decimal("50.00")
        assert open_rental.tax_rate == Decimal("18.00")
        assert open_rental.total_amount == Decimal("177.00")
        assert open_rental.deposit_amount == Decimal("200.00")
        assert open_rental.start_mileage == 10000
        assert vehicle.status == "RENTED"

    def test_price_edits_on_vehicle_do_not_touch_contract(self, db, open_rental, vehicle):
        vehicle.daily_rate = Decimal("80")
        db.commit()
        assert open_rental.daily_rate == Decimal("50.00")
        assert open_rental.total_amount == Decimal("177.00")

    def test_contract_numbers_are_sequential(self, db, money, open_rental, make_vehicle, agent, customer):
        other = rentals.create_rental(
            db, money, vehicle_id=make_vehicle().id, agent_id=agent.id,
            customer_ids=[customer.id], start_date=START, expected_end_date=days(2),
        )
        assert other.contract_number == f"CTR-{utcnow().year}-000002"

    def test_agent_percentage_commission(self, db, open_rental):
        commission = db.query(Commission).filter_by(rental_id=open_rental.id).one()
        assert commission.status == "PENDING"
        assert commission.rate == Decimal("10.00")
        assert commission.base_amount == Decimal("150.00")
        assert commission.amount == Decimal("15.00")

    def test_flat_vehicle_commission_takes_precedence(self, db, money, make_vehicle, agent, customer):
        vehicle = make_vehicle(commission_amount=Decimal("5"))
        rental = rentals.create_rental(
            db, money, vehicle_id=vehicle.id, agent_id=agent.id,
            customer_ids=[customer.id], start_date=START, expected_end_date=days(3),
        )
        commission = db.query(Commission).filter_by(rental_id=rental.id).one()
        assert commission.amount == Decimal("15.00")
        assert commission.rate == Decimal("0")

    def test_no_commission_without_rate(self, db, money, vehicle, make_user, customer):
        agent = make_user(commission_rate=None)
        rentals.create_rental(
            db, money, vehicle_id=vehicle.id, agent_id=agent.id,
            customer_ids=[customer.id], start_date=START, expected_end_date=days(3),
        )
        assert db.query(Commission).count() == 0

    def test_vehicle_must_be_available(self, db, money, make_vehicle, agent, customer):
        vehicle = make_vehicle(status="MAINTENANCE")
        with pytest.raises(VehicleUnavailable):
            rentals.create_rental(
                db, money, vehicle_id=vehicle.id, agent_id=agent.id,
                customer_ids=[customer.id], start_date=START, expected_end_date=days(3),
            )
        assert db.query(Rental).count() == 0

    def test_rented_vehicle_cannot_be_rented_again(self, db, money, open_rental, agent, customer):
        with pytest.raises(VehicleUnavailable):
            rentals.create_rental(
                db, money, vehicle_id=open_rental.vehicle_id, agent_id=agent.id,
                customer_ids=[customer.id], start_date=days(10), expected_end_date=days(12),
            )

    def test_requires_customers(self, db, money, vehicle, agent):
        with pytest.raises(InvalidInput):
            rentals.create_rental(
                db, money, vehicle_id=vehicle.id, agent_id=agent.id,
                customer_ids=[], start_date=START, expected_end_date=days(3),
            )

    def test_unknown_agent(self, db, money, vehicle, customer):
        with pytest.raises(NotFound):
            rentals.create_rental(
                db, money, vehicle_id=vehicle.id, agent_id="00000000-0000-0000-0000-000000000001",
                customer_ids=[customer.id], start_date=START, expected_end_date=days(3),
            )

    def test_end_must_follow_start(self, db, money, vehicle, agent, customer):
        with pytest.raises(InvalidDateRange):
            rentals.create_rental(
                db, money, vehicle_id=vehicle.id, agent_id=agent.id,
                customer_ids=[customer.id], start_date=START, expected_end_date=START,
            )

    def test_signers_keep_order_without_duplicates(self, db, money, vehicle, agent, make_customer):
        first, second = make_customer(), make_customer()
        rental = rentals.create_rental(
            db, money, vehicle_id=vehicle.id, agent_id=agent.id,
            customer_ids=[second.id, first.id, second.id], start_date=START, expected_end_date=days(3),
        )
        assert [c.id for c in rental.customers] == [second.id, first.id]
        assert rental.primary_customer.id == second.id

    def test_customer_role_cannot_open_rentals(self, db, money, vehicle, agent, customer):
        with pytest.raises(PermissionDenied):
            rentals.create_rental(
                db, money, vehicle_id=vehicle.id, agent_id=agent.id,
                customer_ids=[customer.id], start_date=START, expected_end_date=days(3),
                actor=Actor(id=None, role="CUSTOMER"),
            )

    def test_failed_side_effect_rolls_back_and_retry_is_clean(self, db, money, vehicle, agent, customer, monkeypatch):
        calls = {"n": 0}
        real = rentals.send_rental_created

        def flaky(*args, **kwargs):
            calls["n"] += 1
            if calls["n"] == 1:
                raise RuntimeError("mail relay down")
            return real(*args, **kwargs)

        monkeypatch.setattr(rentals, "send_rental_created", flaky)

        def attempt():
            return rentals.create_rental(
                db, money, vehicle_id=vehicle.id, agent_id=agent.id,
                customer_ids=[customer.id], start_date=START, expected_end_date=days(3),
            )

        with pytest.raises(RuntimeError):
            attempt()
        assert db.query(Rental).count() == 0
        assert db.query(Commission).count() == 0
        assert vehicle.status == "AVAILABLE"

        rental = attempt()
        assert db.query(Rental).count() == 1
        assert db.query(Commission).count() == 1
        assert rental.contract_number.endswith("-000001")
        assert vehicle.status == "RENTED"

    def test_blacklisted_customer_is_a_warning_only(self, db, money, vehicle, agent, make_customer):
        flagged = make_customer(is_blacklisted=True, blacklist_reason="Unpaid damages")
        rental = rentals.create_rental(
            db, money, vehicle_id=vehicle.id, agent_id=agent.id,
            customer_ids=[flagged.id], start_date=START, expected_end_date=days(3),
        )
        warnings = rentals.customer_warnings(rental)
        assert [(w["reason"], w["detail"]) for w in warnings] == [("blacklisted", "Unpaid damages")]


class TestSign:

    def test_sign_freezes_snapshot(self, db, money, open_rental):
        rentals.sign(db, money, open_rental.id, SIGNATURE, SIGNATURE)
        assert open_rental.signed_at is not None
        snapshot = open_rental.contract_snapshot
        assert snapshot["contract_number"] == open_rental.contract_number
        assert snapshot["pricing"]["total_amount"] == "177.00"
        assert snapshot["signatures"]["customer"] == SIGNATURE
        assert _render_events(db, open_rental) == ["sign"]

    def test_sign_twice(self, db, money, open_rental):
        rentals.sign(db, money, open_rental.id, SIGNATURE, SIGNATURE)
        with pytest.raises(ContractAlreadySigned):
            rentals.sign(db, money, open_rental.id, SIGNATURE, SIGNATURE)

    @pytest.mark.parametrize("customer_signature, agent_signature", [
        ("", SIGNATURE),
        (SIGNATURE, None),
        ("not-an-image", SIGNATURE),
    ])
    def test_signatures_must_be_image_data(self, db, money, open_rental, customer_signature, agent_signature):
        with pytest.raises(InvalidInput):
            rentals.sign(db, money, open_rental.id, customer_signature, agent_signature)
        assert open_rental.signed_at is None

    def test_cancelled_rental_cannot_be_signed(self, db, money, open_rental):
        rentals.cancel(db, open_rental.id)
        with pytest.raises(InvalidTransition):
            rentals.sign(db, money, open_rental.id, SIGNATURE, SIGNATURE)

    def test_snapshot_is_live_until_signed(self, db, money, open_rental):
        preview = rentals.get_contract_snapshot(db, money, open_rental.id)
        assert preview["signatures"]["signed_at"] is None

        rentals.sign(db, money, open_rental.id, SIGNATURE, SIGNATURE)
        rentals.update_notes(db, open_rental.id, notes="Scratch on rear bumper")
        frozen = rentals.get_contract_snapshot(db, money, open_rental.id)
        assert frozen["notes"] is None
        assert frozen["signatures"]["signed_at"] is not None


class TestTerms:

    def test_update_requotes_and_syncs_commission(self, db, money, open_rental):
        rentals.update_terms(db, money, open_rental.id, daily_rate=Decimal("60"))
        assert open_rental.subtotal == Decimal("180.00")
        assert open_rental.taxes == Decimal("32.40")
        assert open_rental.total_amount == Decimal("212.40")
        commission = db.query(Commission).filter_by(rental_id=open_rental.id).one()
        assert commission.amount == Decimal("18.00")

    def test_contract_keeps_its_tax_rate(self, db, money, open_rental):
        untaxed = dataclasses.replace(money, tax_rate=Decimal("0"), apply_tax=False)
        rentals.update_terms(db, untaxed, open_rental.id, extra_charges=Decimal("10"))
        assert open_rental.taxes == Decimal("27.00")
        assert open_rental.total_amount == Decimal("187.00")

    def test_extending_dates(self, db, money, open_rental):
        rentals.update_terms(db, money, open_rental.id, expected_end_date=days(5))
        assert open_rental.total_days == 5
        assert open_rental.total_amount == Decimal("295.00")

    def test_extension_cannot_collide(self, db, money, open_rental):
        db.add(Reservation(
            reservation_code="RES-HOLD-1",
            vehicle_id=open_rental.vehicle_id,
            customer_name="Other Renter",
            start_date=days(6),
            end_date=days(8),
            daily_rate=Decimal("50"),
            total_days=2,
            subtotal=Decimal("100"),
            total_amount=Decimal("100"),
            status="CONFIRMED",
        ))
        db.commit()
        with pytest.raises(VehicleUnavailable):
            rentals.update_terms(db, money, open_rental.id, expected_end_date=days(7))
        assert open_rental.expected_end_date == days(3)

    def test_signed_terms_are_frozen(self, db, money, open_rental):
        rentals.sign(db, money, open_rental.id, SIGNATURE, SIGNATURE)
        with pytest.raises(ContractAlreadySigned):
            rentals.update_terms(db, money, open_rental.id, discount=Decimal("10"))
        assert open_rental.total_amount == Decimal("177.00")

    def test_notes_editable_after_signing(self, db, money, open_rental):
        rentals.sign(db, money, open_rental.id, SIGNATURE, SIGNATURE)
        rentals.update_notes(db, open_rental.id, notes="Child seat", dropoff_location="Airport")
        assert open_rental.notes == "Child seat"
        assert open_rental.dropoff_location == "Airport"

    def test_approved_commission_is_not_resynced(self, db, money, open_rental):
        commission = db.query(Commission).filter_by(rental_id=open_rental.id).one()
        commissions.approve(db, [commission.id])
        rentals.update_terms(db, money, open_rental.id, daily_rate=Decimal("60"))
        assert commission.amount == Decimal("15.00")

    def test_resync_uses_the_accrued_rate(self, db, money, open_rental, agent):
        agent.commission_rate = Decimal("20")
        db.commit()
        rentals.update_terms(db, money, open_rental.id, daily_rate=Decimal("60"))
        commission = db.query(Commission).filter_by(rental_id=open_rental.id).one()
        assert commission.rate == Decimal("10.00")
        assert commission.base_amount == Decimal("180.00")
        assert commission.amount == Decimal("18.00")

    def test_resync_uses_the_accrued_flat_amount(self, db, money, make_vehicle, agent, customer):
        flat_vehicle = make_vehicle(commission_amount=Decimal("5"))
        rental = rentals.create_rental(
            db, money, vehicle_id=flat_vehicle.id, agent_id=agent.id,
            customer_ids=[customer.id], start_date=START, expected_end_date=days(3),
        )
        assert rental.commission.amount == Decimal("15.00")
        assert rental.commission.flat_amount == Decimal("5.00")

        flat_vehicle.commission_amount = Decimal("9")
        db.commit()
        rentals.update_terms(db, money, rental.id, expected_end_date=days(5))
        assert rental.commission.rate == Decimal("0")
        assert rental.commission.amount == Decimal("25.00")


class TestComplete:

    def test_complete(self, db, money, open_rental, vehicle):
        rentals.complete(
            db, money, open_rental.id,
            end_mileage=10450, actual_end_date=days(3), deposit_returned=Decimal("200"),
            fuel_level_end=75, return_condition="Clean",
        )
        assert open_rental.status == "COMPLETED"
        assert open_rental.end_mileage == 10450
        assert open_rental.deposit_returned == Decimal("200.00")
        assert open_rental.total_amount == Decimal("177.00")
        assert vehicle.status == "AVAILABLE"
        assert vehicle.mileage == 10450
        assert db.query(Commission).filter_by(rental_id=open_rental.id).one().status == "PENDING"
        assert _render_events(db, open_rental) == ["complete"]

    def test_completion_render_keeps_the_signed_snapshot(self, db, money, open_rental, customer):
        rentals.sign(db, money, open_rental.id, SIGNATURE, SIGNATURE)
        signed_name = open_rental.contract_snapshot["customers"][0]["name"]
        customer.first_name = "Renamed"
        db.commit()

        rentals.complete(
            db, money, open_rental.id,
            end_mileage=10300, actual_end_date=days(3), deposit_returned=Decimal("150"), fuel_level_end=50,
        )
        snapshot = _render_payload(db, open_rental, "complete")["snapshot"]
        assert snapshot["customers"][0]["name"] == signed_name
        assert snapshot["status"] == "ACTIVE"
        assert snapshot["completion"]["end_mileage"] == 10300
        assert snapshot["completion"]["deposit_returned"] == "150.00"
        assert snapshot["completion"]["fuel_level_end"] == 50
        assert "completion" not in open_rental.contract_snapshot
        assert open_rental.contract_snapshot["customers"][0]["name"] == signed_name

    def test_late_charges_on_a_signed_contract(self, db, money, open_rental):
        rentals.sign(db, money, open_rental.id, SIGNATURE, SIGNATURE)
        rentals.complete(db, money, open_rental.id, actual_end_date=days(4), extra_charges=Decimal("50"))
        assert open_rental.extra_charges == Decimal("50.00")
        assert open_rental.total_amount == Decimal("227.00")
        assert open_rental.contract_snapshot["pricing"]["total_amount"] == "177.00"

        entry = db.query(AuditLog).filter_by(entity_id=open_rental.id, action="COMPLETE").one()
        assert entry.changes_json["total_amount"] == {"before": "177.00", "after": "227.00"}
        completion = _render_payload(db, open_rental, "complete")["snapshot"]["completion"]
        assert completion["total_amount"] == "227.00"
        assert completion["extra_charges"] == "50.00"

    def test_completion_without_extra_charges_keeps_total(self, db, money, open_rental):
        rentals.update_terms(db, money, open_rental.id, extra_charges=Decimal("10"))
        rentals.complete(db, money, open_rental.id, actual_end_date=days(3))
        assert open_rental.extra_charges == Decimal("10.00")
        assert open_rental.total_amount == Decimal("187.00")

    def test_negative_extra_charges(self, db, money, open_rental):
        with pytest.raises(InvalidAmount):
            rentals.complete(db, money, open_rental.id, actual_end_date=days(3), extra_charges=Decimal("-5"))
        assert open_rental.status == "ACTIVE"
        assert open_rental.total_amount == Decimal("177.00")

    def test_mileage_cannot_go_backwards(self, db, money, open_rental, vehicle):
        with pytest.raises(InvalidInput):
            rentals.complete(db, money, open_rental.id, end_mileage=9000, actual_end_date=days(3))
        assert open_rental.status == "ACTIVE"
        assert vehicle.status == "RENTED"

    @pytest.mark.parametrize("returned", [Decimal("-1"), Decimal("200.01")])
    def test_deposit_returned_bounds(self, db, money, open_rental, returned):
        with pytest.raises(InvalidAmount):
            rentals.complete(db, money, open_rental.id, deposit_returned=returned, actual_end_date=days(3))

    def test_actual_end_before_start(self, db, money, open_rental):
        with pytest.raises(InvalidDateRange):
            rentals.complete(db, money, open_rental.id, actual_end_date=days(-1))

    def test_terminal_rental_cannot_complete(self, db, money, open_rental):
        rentals.complete(db, money, open_rental.id, actual_end_date=days(3))
        with pytest.raises(InvalidTransition):
            rentals.complete(db, money, open_rental.id, actual_end_date=days(3))

    def test_vehicle_free_for_next_rental(self, db, money, open_rental, agent, customer):
        rentals.complete(db, money, open_rental.id, actual_end_date=days(3))
        nxt = rentals.create_rental(
            db, money, vehicle_id=open_rental.vehicle_id, agent_id=agent.id,
            customer_ids=[customer.id], start_date=days(4), expected_end_date=days(6),
        )
        assert nxt.status == "ACTIVE"


class TestCancel:

    def test_cancel_releases_and_cascades(self, db, open_rental, vehicle):
        rentals.cancel(db, open_rental.id, reason="Customer no longer travelling")
        assert open_rental.status == "CANCELLED"
        assert open_rental.cancellation_reason == "Customer no longer travelling"
        assert vehicle.status == "AVAILABLE"
        assert db.query(Commission).filter_by(rental_id=open_rental.id).one().status == "CANCELLED"

    def test_paid_commission_survives_cancellation(self, db, open_rental):
        commission = db.query(Commission).filter_by(rental_id=open_rental.id).one()
        commissions.approve(db, [commission.id])
        commissions.pay(db, [commission.id], payment_ref="TRX-100")
        rentals.cancel(db, open_rental.id)
        assert commission.status == "PAID"

    def test_cancel_twice(self, db, open_rental):
        rentals.cancel(db, open_rental.id)
        with pytest.raises(InvalidTransition):
            rentals.cancel(db, open_rental.id)


class TestOverdue:

    def test_effective_status(self, open_rental):
        assert rentals.effective_status(open_rental, now=days(2)) == "ACTIVE"
        assert rentals.effective_status(open_rental, now=days(4)) == "OVERDUE"
        assert open_rental.status == "ACTIVE"

    def test_list_overdue(self, db, open_rental):
        assert rentals.list_overdue(db, now=days(2)) == []
        assert [r.id for r in rentals.list_overdue(db, now=days(4))] == [open_rental.id]

    def test_mark_overdue_then_complete(self, db, money, open_rental, admin_actor):
        marked = rentals.mark_overdue(db, now=days(4), actor=admin_actor)
        assert [r.id for r in marked] == [open_rental.id]
        assert open_rental.status == "OVERDUE"
        assert rentals.mark_overdue(db, now=days(4), actor=admin_actor) == []

        rentals.complete(db, money, open_rental.id, actual_end_date=days(4))
        assert open_rental.status == "COMPLETED"

    def test_agents_cannot_mark_overdue(self, db, open_rental, agent_actor):
        with pytest.raises(PermissionDenied):
            rentals.mark_overdue(db, now=days(4), actor=agent_actor)
