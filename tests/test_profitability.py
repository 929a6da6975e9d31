from decimal import Decimal

import pytest

from conftest import days
from rentdesk.models.models import Expense
from rentdesk.services import profitability, rentals
from rentdesk.services.errors import NotFound


@pytest.fixture
def add_expense(db):
    def _add(vehicle, amount, category="MAINTENANCE", date=None):
        expense = Expense(
            vehicle_id=vehicle.id,
            category=category,
            description=f"{category.title()} expense",
            amount=Decimal(amount),
            date=date or days(1),
        )
        db.add(expense)
        db.commit()
        return expense
    return _add


@pytest.fixture
def completed_rental(db, money, open_rental):
    return rentals.complete(db, money, open_rental.id, end_mileage=10300, actual_end_date=days(3))


class TestPercentage:

    @pytest.mark.parametrize("part, whole, expected", [
        (127, 177, Decimal("71.75")),
        (127, 50, Decimal("254.00")),
        (-20, 100, Decimal("-20.00")),
        (10, 0, Decimal("0.00")),
    ])
    def test_percentage(self, part, whole, expected):
        assert profitability.percentage(part, whole) == expected


class TestVehicleProfitability:

    def test_vehicle_without_activity(self, db, vehicle):
        report = profitability.vehicle_profitability(db, vehicle.id)
        assert report.revenue == Decimal("0.00")
        assert report.expenses == Decimal("0.00")
        assert report.profit_margin == Decimal("0.00")
        assert report.roi == Decimal("0.00")
        assert report.total_rentals == 0
        assert report.avg_daily_rate == Decimal("50.00")

    def test_completed_rental_and_expense(self, db, vehicle, completed_rental, add_expense):
        add_expense(vehicle, "50")
        report = profitability.vehicle_profitability(db, vehicle.id)
        assert report.revenue == Decimal("177.00")
        assert report.expenses == Decimal("50.00")
        assert report.net_profit == Decimal("127.00")
        assert report.profit_margin == Decimal("71.75")
        assert report.roi == Decimal("254.00")
        assert report.total_rentals == 1
        assert report.total_rented_days == 3
        assert report.avg_daily_rate == Decimal("59.00")
        assert report.commissions == Decimal("15.00")
        assert report.expenses_by_category == {"MAINTENANCE": Decimal("50.00")}

    def test_expenses_grouped_by_category(self, db, vehicle, add_expense):
        add_expense(vehicle, "30", category="FUEL")
        add_expense(vehicle, "20", category="FUEL")
        add_expense(vehicle, "100", category="INSURANCE")
        report = profitability.vehicle_profitability(db, vehicle.id)
        assert report.expenses_by_category == {"FUEL": Decimal("50.00"), "INSURANCE": Decimal("100.00")}
        assert report.net_profit == Decimal("-150.00")

    def test_open_rentals_are_not_revenue(self, db, vehicle, open_rental):
        report = profitability.vehicle_profitability(db, vehicle.id)
        assert report.revenue == Decimal("0.00")
        assert report.total_rentals == 0

    def test_window_excludes_outside_activity(self, db, vehicle, completed_rental, add_expense):
        add_expense(vehicle, "50")
        report = profitability.vehicle_profitability(db, vehicle.id, start=days(10), end=days(20))
        assert report.revenue == Decimal("0.00")
        assert report.expenses == Decimal("0.00")

    def test_window_overlapping_rental(self, db, vehicle, completed_rental):
        report = profitability.vehicle_profitability(db, vehicle.id, start=days(2), end=days(10))
        assert report.revenue == Decimal("177.00")

    def test_unknown_vehicle(self, db):
        with pytest.raises(NotFound):
            profitability.vehicle_profitability(db, "00000000-0000-0000-0000-000000000002")


class TestFleetProfitability:

    def test_totals(self, db, vehicle, make_vehicle, completed_rental, add_expense):
        idle = make_vehicle()
        add_expense(vehicle, "50")
        add_expense(idle, "10", category="CLEANING")
        report = profitability.fleet_profitability(db)
        assert [r.license_plate for r in report.vehicles] == [vehicle.license_plate, idle.license_plate]
        assert report.total_revenue == Decimal("177.00")
        assert report.total_expenses == Decimal("60.00")
        assert report.net_profit == Decimal("117.00")
        assert report.total_rentals == 1
        assert report.avg_revenue_per_vehicle == Decimal("88.50")

    def test_inactive_vehicles_are_optional(self, db, vehicle, make_vehicle):
        make_vehicle(is_active=False)
        assert len(profitability.fleet_profitability(db).vehicles) == 1
        assert len(profitability.fleet_profitability(db, include_inactive=True).vehicles) == 2

    def test_empty_fleet(self, db):
        report = profitability.fleet_profitability(db)
        assert report.vehicles == []
        assert report.total_revenue == Decimal("0.00")
        assert report.avg_revenue_per_vehicle == Decimal("0.00")
