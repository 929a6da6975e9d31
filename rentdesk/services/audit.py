"""
Audit trail for engine transitions.

Rows are append-only and carry a SHA256 of their canonical JSON salted with
a secret, so a stored entry can be re-checked with verify_integrity.
"""
import hashlib
import json
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from ..config import settings
from ..models.models import AuditLog
from .time_rules import utcnow


def create_audit_log(
    db: Session,
    entity_type: str,
    entity_id,
    action: str,
    actor=None,
    source: Optional[str] = None,
    changes_json: Optional[Dict] = None,
    context: Optional[Dict] = None,
    integrity_secret: Optional[str] = None
) -> AuditLog:
    """
    Add an audit entry to the current transaction.

    Args:
        db: Database session
        entity_type: vehicle|reservation|rental|commission|customer|expense
        entity_id: Entity ID
        action: CREATE|CONFIRM|CANCEL|SIGN|COMPLETE|APPROVE|PAY|...
        actor: Acting user (Actor) or None for system actions
        source: api|system|script
        changes_json: Before/after diff, usually from compute_diff
        context: Extra facts (vehicle_id, contract_number, batch ids, ...)
        integrity_secret: Defaults to AUDIT_SECRET, then JWT_SECRET

    Returns:
        Flushed AuditLog; the caller's transaction commits it
    """
    actor_id = getattr(actor, "id", None)
    entry = AuditLog(
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        actor_id=actor_id,
        actor_role=getattr(actor, "role", None) or "system",
        source=source or "system",
        changes_json=_jsonable(changes_json),
        timestamp_utc=utcnow(),
        context=_jsonable(context),
    )
    secret = _secret(integrity_secret)
    if secret:
        entry.integrity_hash = _sign(entry, secret)

    db.add(entry)
    db.flush()
    return entry


def verify_integrity(entry: AuditLog, integrity_secret: Optional[str] = None) -> bool:
    """True when the stored hash still matches the row's content."""
    secret = _secret(integrity_secret)
    if not secret or not entry.integrity_hash:
        return False
    return entry.integrity_hash == _sign(entry, secret)


def compute_diff(before: Dict, after: Dict) -> Dict:
    """Changed keys only, as {"key": {"before": ..., "after": ...}}."""
    diff = {}
    for key in set(before) | set(after):
        before_val = before.get(key)
        after_val = after.get(key)
        if before_val != after_val:
            diff[key] = {"before": before_val, "after": after_val}
    return diff


def _secret(explicit: Optional[str]) -> Optional[str]:
    if explicit is not None:
        return explicit
    return settings.audit_secret or settings.jwt_secret


def _sign(entry: AuditLog, secret: str) -> str:
    canonical = {
        "entity_type": entry.entity_type,
        "entity_id": str(entry.entity_id),
        "action": entry.action,
        "actor_id": str(entry.actor_id) if entry.actor_id else None,
        "actor_role": entry.actor_role,
        "source": entry.source,
        "timestamp_utc": entry.timestamp_utc.isoformat(),
        "changes": entry.changes_json,
        "context": entry.context,
    }
    # None values are dropped so optional columns do not change the hash
    canonical = {k: v for k, v in canonical.items() if v is not None}
    payload = json.dumps(canonical, sort_keys=True, default=str)
    return hashlib.sha256(f"{payload}:{secret}".encode()).hexdigest()


def _jsonable(data: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    # JSON columns cannot hold Decimal/UUID/datetime
    if data is None:
        return None
    return json.loads(json.dumps(data, default=str))
