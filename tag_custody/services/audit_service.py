import json
from datetime import datetime, timezone

from sqlalchemy.orm import Session

from tag_custody.errors import NotFoundError
from tag_custody.models.audit_log import AuditEvidence, AuditLogEntry
from tag_custody.models.inventory_unit import InventoryUnit
from tag_custody.schemas.inventory import EvidenceFile

UNIT_TABLE = "inventory_units"


def record_transition(
    db: Session,
    entity_id: str,
    action: str,
    old_value: str | None,
    new_value: str | None,
    actor_id: str,
    reason: str = "",
    details: dict | None = None,
    field_name: str = "status",
    entity_table: str = UNIT_TABLE,
) -> AuditLogEntry:
    """Add one audit row to the current transaction. Committed or rolled back with it."""
    entry = AuditLogEntry(
        entity_table=entity_table,
        entity_id=entity_id,
        action=action,
        field_name=field_name,
        old_value=old_value,
        new_value=new_value,
        reason=reason,
        details=json.dumps(details or {}, default=str),
        actor_id=actor_id,
        created_at=datetime.now(timezone.utc),
    )
    db.add(entry)
    return entry


def attach_evidence(entry: AuditLogEntry, files: list[EvidenceFile], actor_id: str) -> list[AuditEvidence]:
    """Link evidence file references to an audit entry in the same transaction."""
    attached = []
    for f in files:
        evidence = AuditEvidence(
            file_name=f.name,
            file_type=f.type or "document",
            file_path=f.path,
            uploaded_by=f.uploaded_by or actor_id,
        )
        entry.evidence.append(evidence)
        attached.append(evidence)
    return attached


def unit_history(db: Session, uid: str) -> list[AuditLogEntry]:
    """All audit entries for a UID, oldest first."""
    if not db.query(InventoryUnit.id).filter(InventoryUnit.uid == uid).first():
        raise NotFoundError("Unit", uid)
    return (
        db.query(AuditLogEntry)
        .filter(AuditLogEntry.entity_table == UNIT_TABLE, AuditLogEntry.entity_id == uid)
        .order_by(AuditLogEntry.id)
        .all()
    )


def replay_status(db: Session, uid: str) -> str | None:
    """Rebuild a unit's status from its audit trail alone."""
    status = None
    for entry in unit_history(db, uid):
        if entry.field_name != "status":
            continue
        if entry.old_value != status:
            raise ValueError(
                f"Audit trail for {uid} is broken at entry {entry.id}: "
                f"expected {status}, found {entry.old_value}"
            )
        status = entry.new_value
    return status



def unit_evidence(db: Session, uid: str) -> list[AuditEvidence]:
    """Every evidence file attached to a UID's audit trail, oldest first."""
    return (
        db.query(AuditEvidence)
        .join(AuditLogEntry, AuditEvidence.audit_log_id == AuditLogEntry.id)
        .filter(AuditLogEntry.entity_table == UNIT_TABLE, AuditLogEntry.entity_id == uid)
        .order_by(AuditEvidence.id)
        .all()
    )
