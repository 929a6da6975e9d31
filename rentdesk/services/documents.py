"""
Contract snapshot builder.

The snapshot is the complete field set an external renderer needs to produce
the contract document. It is frozen onto the rental when the contract is
signed and never rebuilt afterwards.
"""
from typing import Dict, Optional

from ..models.models import Rental
from .money import MoneyConfig, format_dual
from .time_rules import utc_to_local


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def _local(value) -> Optional[str]:
    local = utc_to_local(value)
    return local.isoformat() if local else None


def _money(value) -> Optional[str]:
    return str(value) if value is not None else None


def build_contract_snapshot(rental: Rental, money: MoneyConfig) -> Dict:
    vehicle = rental.vehicle
    agent = rental.agent
    customers = []
    for signer in rental.signers:
        customer = signer.customer
        customers.append({
            "position": signer.position,
            "customer_id": str(customer.id),
            "name": customer.full_name,
            "email": customer.email,
            "phone": customer.phone,
            "id_type": customer.id_type,
            "id_number": customer.id_number,
            "license_number": customer.license_number,
        })

    return {
        "contract_number": rental.contract_number,
        "status": rental.status,
        "reservation_code": rental.reservation.reservation_code if rental.reservation else None,
        "vehicle": {
            "vehicle_id": str(vehicle.id),
            "name": vehicle.display_name,
            "brand": vehicle.brand,
            "model": vehicle.model,
            "year": vehicle.year,
            "license_plate": vehicle.license_plate,
        },
        "agent": {
            "agent_id": str(agent.id) if agent else None,
            "name": agent.full_name if agent else None,
        },
        "customers": customers,
        "dates": {
            "start_date": _iso(rental.start_date),
            "expected_end_date": _iso(rental.expected_end_date),
            "actual_end_date": _iso(rental.actual_end_date),
            "start_date_local": _local(rental.start_date),
            "expected_end_date_local": _local(rental.expected_end_date),
        },
        "locations": {
            "pickup": rental.pickup_location,
            "dropoff": rental.dropoff_location,
        },
        "mileage": {
            "start": rental.start_mileage,
            "end": rental.end_mileage,
        },
        "fuel": {
            "start": rental.fuel_level_start,
            "end": rental.fuel_level_end,
        },
        "pricing": {
            "currency": money.currency,
            "daily_rate": _money(rental.daily_rate),
            "total_days": rental.total_days,
            "subtotal": _money(rental.subtotal),
            "tax_rate": _money(rental.tax_rate),
            "taxes": _money(rental.taxes),
            "discount": _money(rental.discount),
            "extra_charges": _money(rental.extra_charges),
            "total_amount": _money(rental.total_amount),
            "deposit_amount": _money(rental.deposit_amount),
            "deposit_returned": _money(rental.deposit_returned),
            "total_display": format_dual(rental.total_amount, money),
            "deposit_display": format_dual(rental.deposit_amount, money),
        },
        "signatures": {
            "customer": rental.customer_signature,
            "agent": rental.agent_signature,
            "signed_at": _iso(rental.signed_at),
        },
        "return_condition": rental.return_condition,
        "notes": rental.notes,
    }


def build_completion(rental: Rental, money: MoneyConfig) -> Dict:
    """Return-time facts sent alongside the signed snapshot on completion."""
    return {
        "actual_end_date": _iso(rental.actual_end_date),
        "actual_end_date_local": _local(rental.actual_end_date),
        "end_mileage": rental.end_mileage,
        "fuel_level_end": rental.fuel_level_end,
        "return_condition": rental.return_condition,
        "deposit_returned": _money(rental.deposit_returned),
        "extra_charges": _money(rental.extra_charges),
        "total_amount": _money(rental.total_amount),
        "total_display": format_dual(rental.total_amount, money),
    }


def completion_render_payload(rental: Rental, money: MoneyConfig) -> Dict:
    """
    Snapshot for the completion render. A signed contract keeps its frozen
    snapshot; only the completion block is new.
    """
    if rental.contract_snapshot is not None:
        snapshot = dict(rental.contract_snapshot)
    else:
        snapshot = build_contract_snapshot(rental, money)
    snapshot["completion"] = build_completion(rental, money)
    return snapshot
