import uuid
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..db import get_db
from ..auth.security import require_capability
from ..schemas.reports import FleetProfitabilityResponse, VehicleProfitabilityResponse
from ..services import profitability
from ..services.permissions import Actor
from ..services.time_rules import to_utc_naive

router = APIRouter(prefix="/reports", tags=["reports"])


def _window(start: Optional[datetime], end: Optional[datetime]):
    return (to_utc_naive(start) if start else None, to_utc_naive(end) if end else None)


@router.get("/profitability", response_model=FleetProfitabilityResponse)
def fleet_report(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    include_inactive: bool = False,
    db: Session = Depends(get_db),
    _actor: Actor = Depends(require_capability("report:profitability")),
):
    start, end = _window(start, end)
    return profitability.fleet_profitability(db, start=start, end=end, include_inactive=include_inactive)


@router.get("/profitability/{vehicle_id}", response_model=VehicleProfitabilityResponse)
def vehicle_report(
    vehicle_id: uuid.UUID,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    db: Session = Depends(get_db),
    _actor: Actor = Depends(require_capability("report:profitability")),
):
    start, end = _window(start, end)
    return profitability.vehicle_profitability(db, vehicle_id, start=start, end=end)
