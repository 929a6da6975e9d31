import uuid
from decimal import Decimal
from typing import Dict, List

from pydantic import BaseModel


class VehicleProfitabilityResponse(BaseModel):
    vehicle_id: uuid.UUID
    vehicle_name: str
    license_plate: str
    revenue: Decimal
    expenses: Decimal
    net_profit: Decimal
    profit_margin: Decimal
    roi: Decimal
    total_rentals: int
    total_rented_days: int
    avg_daily_rate: Decimal
    commissions: Decimal
    expenses_by_category: Dict[str, Decimal]

    class Config:
        from_attributes = True


class FleetProfitabilityResponse(BaseModel):
    vehicles: List[VehicleProfitabilityResponse]
    total_revenue: Decimal
    total_expenses: Decimal
    net_profit: Decimal
    profit_margin: Decimal
    roi: Decimal
    total_rentals: int
    avg_revenue_per_vehicle: Decimal

    class Config:
        from_attributes = True
