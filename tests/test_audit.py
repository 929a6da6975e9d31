from decimal import Decimal

from rentdesk.models.models import AuditLog
from rentdesk.services.audit import compute_diff, create_audit_log, verify_integrity
from rentdesk.services.permissions import Actor


def test_entry_is_signed_and_verifiable(db, vehicle, admin):
    entry = create_audit_log(
        db,
        entity_type="vehicle",
        entity_id=vehicle.id,
        action="UPDATE",
        actor=Actor(id=admin.id, role="ADMIN"),
        source="api",
        changes_json={"daily_rate": {"before": Decimal("50.00"), "after": Decimal("55.00")}},
        integrity_secret="s3cret",
    )
    db.commit()

    stored = db.query(AuditLog).filter_by(id=entry.id).one()
    assert stored.changes_json == {"daily_rate": {"before": "50.00", "after": "55.00"}}
    assert stored.actor_role == "ADMIN"
    assert verify_integrity(stored, "s3cret")
    assert not verify_integrity(stored, "other")


def test_tampering_is_detected(db, vehicle):
    entry = create_audit_log(db, "vehicle", vehicle.id, "MAINTENANCE", integrity_secret="s3cret")
    db.commit()
    entry.action = "RETURN_TO_SERVICE"
    assert not verify_integrity(entry, "s3cret")


def test_system_actor(db, vehicle):
    entry = create_audit_log(db, "vehicle", vehicle.id, "RELEASE")
    assert entry.actor_id is None
    assert entry.actor_role == "system"
    assert entry.source == "system"


def test_compute_diff_keeps_changed_keys_only():
    before = {"notes": None, "dropoff_location": "Airport", "daily_rate": 50}
    after = {"notes": "Child seat", "dropoff_location": "Airport", "daily_rate": 50}
    assert compute_diff(before, after) == {"notes": {"before": None, "after": "Child seat"}}
