"""
Profitability report.
Read-only projections over completed rentals and expenses; an empty window
yields zeros, never an error.
"""
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..models.models import Commission, Expense, Rental, Vehicle
from .availability import load_vehicle
from .money import quantize_money, to_decimal

ZERO = Decimal('0.00')


@dataclass
class VehicleProfitability:
    vehicle_id: uuid.UUID
    vehicle_name: str
    license_plate: str
    revenue: Decimal = ZERO
    expenses: Decimal = ZERO
    net_profit: Decimal = ZERO
    profit_margin: Decimal = ZERO
    roi: Decimal = ZERO
    total_rentals: int = 0
    total_rented_days: int = 0
    avg_daily_rate: Decimal = ZERO
    commissions: Decimal = ZERO
    expenses_by_category: Dict[str, Decimal] = field(default_factory=dict)


@dataclass
class FleetProfitability:
    vehicles: List[VehicleProfitability]
    total_revenue: Decimal = ZERO
    total_expenses: Decimal = ZERO
    net_profit: Decimal = ZERO
    profit_margin: Decimal = ZERO
    roi: Decimal = ZERO
    total_rentals: int = 0
    avg_revenue_per_vehicle: Decimal = ZERO


def percentage(part, whole) -> Decimal:
    """part / whole * 100 rounded to 2 places; 0 when whole is not positive."""
    whole = to_decimal(whole)
    if whole <= 0:
        return ZERO
    return quantize_money(to_decimal(part) / whole * Decimal('100'))


def vehicle_profitability(
    db: Session,
    vehicle_id,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> VehicleProfitability:
    vehicle = load_vehicle(db, vehicle_id, for_update=False)
    return _for_vehicle(db, vehicle, start, end)


def fleet_profitability(
    db: Session,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    include_inactive: bool = False,
) -> FleetProfitability:
    query = db.query(Vehicle)
    if not include_inactive:
        query = query.filter(Vehicle.is_active.is_(True))
    rows = [_for_vehicle(db, v, start, end) for v in query.order_by(Vehicle.license_plate).all()]

    revenue = quantize_money(sum((r.revenue for r in rows), ZERO))
    expenses = quantize_money(sum((r.expenses for r in rows), ZERO))
    net = revenue - expenses
    return FleetProfitability(
        vehicles=rows,
        total_revenue=revenue,
        total_expenses=expenses,
        net_profit=net,
        profit_margin=percentage(net, revenue),
        roi=percentage(net, expenses),
        total_rentals=sum(r.total_rentals for r in rows),
        avg_revenue_per_vehicle=quantize_money(revenue / len(rows)) if rows else ZERO,
    )


def _for_vehicle(db: Session, vehicle: Vehicle, start: Optional[datetime], end: Optional[datetime]) -> VehicleProfitability:
    rentals = _completed_rentals(db, vehicle.id, start, end)
    revenue = quantize_money(sum((to_decimal(r.total_amount) for r in rentals), ZERO))
    rented_days = sum(r.total_days for r in rentals)

    by_category: Dict[str, Decimal] = {}
    expense_query = db.query(Expense.category, func.sum(Expense.amount)).filter(Expense.vehicle_id == vehicle.id)
    if start:
        expense_query = expense_query.filter(Expense.date >= start)
    if end:
        expense_query = expense_query.filter(Expense.date <= end)
    for category, amount in expense_query.group_by(Expense.category).all():
        by_category[category] = quantize_money(amount or 0)
    expenses = quantize_money(sum(by_category.values(), ZERO))

    commission_total = ZERO
    if rentals:
        commission_sum = (
            db.query(func.sum(Commission.amount))
            .filter(Commission.rental_id.in_([r.id for r in rentals]), Commission.status != "CANCELLED")
            .scalar()
        )
        commission_total = quantize_money(commission_sum or 0)

    net = revenue - expenses
    return VehicleProfitability(
        vehicle_id=vehicle.id,
        vehicle_name=vehicle.display_name,
        license_plate=vehicle.license_plate,
        revenue=revenue,
        expenses=expenses,
        net_profit=net,
        profit_margin=percentage(net, revenue),
        roi=percentage(net, expenses),
        total_rentals=len(rentals),
        total_rented_days=rented_days,
        avg_daily_rate=quantize_money(revenue / rented_days) if rented_days else quantize_money(vehicle.daily_rate),
        commissions=commission_total,
        expenses_by_category=by_category,
    )


def _completed_rentals(db: Session, vehicle_id: uuid.UUID, start: Optional[datetime], end: Optional[datetime]) -> List[Rental]:
    # Overlap uses the actual return date when known
    query = db.query(Rental).filter(Rental.vehicle_id == vehicle_id, Rental.status == "COMPLETED")
    if end:
        query = query.filter(Rental.start_date <= end)
    if start:
        query = query.filter(func.coalesce(Rental.actual_end_date, Rental.expected_end_date) >= start)
    return query.all()
