from decimal import Decimal

from conftest import START
from rentdesk.models.models import DocumentSequence, Reservation
from rentdesk.services.numbering import next_number


def _reservation(code, vehicle_id):
    return Reservation(
        reservation_code=code,
        vehicle_id=vehicle_id,
        customer_name="Legacy Booking",
        start_date=START,
        end_date=START,
        daily_rate=Decimal("50"),
        total_days=1,
        subtotal=Decimal("50"),
        total_amount=Decimal("50"),
        status="COMPLETED",
    )


def test_numbers_are_sequential_per_prefix_and_year(db):
    column = Reservation.reservation_code
    assert next_number(db, column, "RES", year=2030) == "RES-2030-000001"
    assert next_number(db, column, "RES", year=2030) == "RES-2030-000002"
    assert next_number(db, column, "RES", year=2031) == "RES-2031-000001"
    assert next_number(db, column, "QTE", year=2030) == "QTE-2030-000001"

    counter = db.query(DocumentSequence).filter_by(prefix="RES", year=2030).one()
    assert counter.last_value == 2


def test_counter_is_seeded_from_issued_numbers(db, vehicle):
    for code in ("RES-2030-000007", "RES-2030-1000000", "RES-2029-000050"):
        db.add(_reservation(code, vehicle.id))
    db.commit()

    # Numeric, not lexical: the wider number is the highest
    assert next_number(db, Reservation.reservation_code, "RES", year=2030) == "RES-2030-1000001"


def test_counter_survives_across_transactions(db):
    column = Reservation.reservation_code
    next_number(db, column, "CTR", year=2030)
    db.commit()
    assert next_number(db, column, "CTR", year=2030) == "CTR-2030-000002"


def test_rolled_back_number_is_reissued(db):
    column = Reservation.reservation_code
    next_number(db, column, "CTR", year=2030)
    db.commit()
    assert next_number(db, column, "CTR", year=2030) == "CTR-2030-000002"
    db.rollback()
    assert next_number(db, column, "CTR", year=2030) == "CTR-2030-000002"
