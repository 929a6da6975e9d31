"""
Notification outbox.
Records customer- and admin-facing notification events and document-render
requests; delivery is handled outside the engine.
"""
from typing import Optional, Dict, List
from sqlalchemy.orm import Session
import structlog

from ..models.models import Notification, Reservation, Rental
from ..config import settings
from .money import MoneyConfig, format_dual
from .time_rules import utc_to_local

logger = structlog.get_logger(__name__)


def create_notification(
    db: Session,
    audience: str,
    channel: str,
    template_key: str,
    payload_json: Optional[Dict] = None,
    recipient: Optional[str] = None,
    entity_type: Optional[str] = None,
    entity_id=None,
) -> Optional[Notification]:
    """
    Add a notification record to the current transaction.
    E-mail notifications are skipped when ENABLE_EMAIL is off or no recipient is known.

    Returns:
        Notification object if created, None if skipped
    """
    if channel == "email" and (not settings.enable_email or not recipient):
        return None

    notification = Notification(
        audience=audience,
        channel=channel,
        recipient=recipient,
        template_key=template_key,
        entity_type=entity_type,
        entity_id=entity_id,
        payload_json=payload_json,
        status="pending"
    )
    db.add(notification)
    db.flush()
    return notification


def _format_local(value) -> Optional[str]:
    local = utc_to_local(value)
    return local.isoformat() if local else None


def reservation_payload(reservation: Reservation, money: MoneyConfig) -> Dict:
    vehicle = reservation.vehicle
    return {
        "reservation_code": reservation.reservation_code,
        "customer_name": reservation.customer_name,
        "customer_email": reservation.customer_email,
        "customer_phone": reservation.customer_phone,
        "vehicle_name": vehicle.display_name if vehicle else None,
        "start_date": _format_local(reservation.start_date),
        "end_date": _format_local(reservation.end_date),
        "total_days": reservation.total_days,
        "total_amount": str(reservation.total_amount),
        "total_display": format_dual(reservation.total_amount, money),
        "pickup_location": reservation.pickup_location,
    }


def rental_payload(rental: Rental, money: MoneyConfig) -> Dict:
    vehicle = rental.vehicle
    customer = rental.primary_customer
    return {
        "contract_number": rental.contract_number,
        "customer_name": customer.full_name if customer else None,
        "customer_email": customer.email if customer else None,
        "customer_phone": customer.phone if customer else None,
        "vehicle_name": vehicle.display_name if vehicle else None,
        "license_plate": vehicle.license_plate if vehicle else None,
        "start_date": _format_local(rental.start_date),
        "expected_end_date": _format_local(rental.expected_end_date),
        "total_days": rental.total_days,
        "daily_rate": str(rental.daily_rate),
        "total_amount": str(rental.total_amount),
        "deposit_amount": str(rental.deposit_amount),
        "total_display": format_dual(rental.total_amount, money),
        "pickup_location": rental.pickup_location,
        "agent_name": rental.agent.full_name if rental.agent else None,
    }


def _send_pair(db: Session, template_key: str, payload: Dict, customer_email: Optional[str], entity_type: str, entity_id) -> List[Notification]:
    created = []
    for audience, recipient in (("customer", customer_email), ("admin", settings.admin_email)):
        notification = create_notification(
            db,
            audience=audience,
            channel="email",
            template_key=template_key,
            payload_json=payload,
            recipient=recipient,
            entity_type=entity_type,
            entity_id=entity_id,
        )
        if notification:
            created.append(notification)
    logger.info("notification_queued", template_key=template_key, entity_id=str(entity_id), count=len(created))
    return created


def send_reservation_created(db: Session, reservation: Reservation, money: MoneyConfig) -> List[Notification]:
    payload = reservation_payload(reservation, money)
    return _send_pair(db, "reservation_created", payload, reservation.customer_email, "reservation", reservation.id)


def send_rental_created(db: Session, rental: Rental, money: MoneyConfig) -> List[Notification]:
    payload = rental_payload(rental, money)
    return _send_pair(db, "rental_created", payload, payload["customer_email"], "rental", rental.id)


def request_contract_render(db: Session, rental: Rental, event: str, snapshot: Dict) -> Notification:
    """Hand the frozen contract snapshot to the external renderer."""
    return create_notification(
        db,
        audience="renderer",
        channel="document",
        template_key="contract_render",
        payload_json={"event": event, "snapshot": snapshot},
        entity_type="rental",
        entity_id=rental.id,
    )
