"""
Audit logging service.
Append-only audit log with integrity hashing, scoped per organization.
"""
import hashlib
import json
from datetime import datetime
from typing import Optional, Dict
from fastapi.encoders import jsonable_encoder
from sqlalchemy.orm import Session

from ..models.models import AuditLog
from ..config import settings


def compute_integrity_hash(canonical_data: Dict, integrity_secret: str) -> str:
    canonical = {k: v for k, v in canonical_data.items() if v is not None}
    canonical_json = json.dumps(canonical, sort_keys=True, default=str)
    return hashlib.sha256(f"{canonical_json}:{integrity_secret}".encode()).hexdigest()


def _canonical(log: AuditLog) -> Dict:
    return {
        "organization_id": str(log.organization_id),
        "entity_type": log.entity_type,
        "entity_id": str(log.entity_id),
        "action": log.action,
        "actor_id": str(log.actor_id) if log.actor_id else None,
        "actor_role": log.actor_role,
        "source": log.source,
        "timestamp_utc": log.timestamp_utc.replace(tzinfo=None).isoformat(),
        "changes": log.changes_json,
        "context": log.context,
    }


def create_audit_log(
    db: Session,
    organization_id,
    entity_type: str,
    entity_id,
    action: str,
    actor_id=None,
    actor_role: Optional[str] = None,
    source: Optional[str] = None,
    changes_json: Optional[Dict] = None,
    context: Optional[Dict] = None,
    integrity_secret: Optional[str] = None,
) -> AuditLog:
    """
    Append an audit log entry. The caller owns the transaction.

    Args:
        db: Database session
        organization_id: Tenant the entity belongs to
        entity_type: quote|invoice|job|product|consumable|work_order|...
        entity_id: Entity ID
        action: CREATE|UPDATE|DELETE|STATUS_CHANGE|SEND|PAYMENT|ADJUST|...
        actor_id: User ID who performed the action
        actor_role: Role of the actor
        source: api|portal|system|script
        changes_json: Before/after diff
        context: Additional context
        integrity_secret: Secret for integrity hash (defaults to JWT_SECRET)

    Returns:
        The pending AuditLog row
    """
    audit_log = AuditLog(
        organization_id=organization_id,
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        actor_id=actor_id,
        actor_role=actor_role,
        source=source or "api",
        changes_json=jsonable_encoder(changes_json) if changes_json is not None else None,
        timestamp_utc=datetime.utcnow(),
        context=jsonable_encoder(context) if context is not None else None,
    )
    secret = integrity_secret if integrity_secret is not None else settings.jwt_secret
    if secret:
        audit_log.integrity_hash = compute_integrity_hash(_canonical(audit_log), secret)

    db.add(audit_log)
    db.flush()
    return audit_log


def verify_audit_log(log: AuditLog, integrity_secret: Optional[str] = None) -> bool:
    secret = integrity_secret if integrity_secret is not None else settings.jwt_secret
    if not log.integrity_hash or not secret:
        return False
    return compute_integrity_hash(_canonical(log), secret) == log.integrity_hash


def get_audit_logs(
    db: Session,
    organization_id,
    entity_type: Optional[str] = None,
    entity_id=None,
    limit: int = 100,
    offset: int = 0,
) -> list:
    """
    Audit logs for one organization, newest first.

    Args:
        db: Database session
        organization_id: Tenant filter
        entity_type: Filter by entity type
        entity_id: Filter by entity ID
        limit: Maximum number of results
        offset: Offset for pagination
    """
    query = db.query(AuditLog).filter(AuditLog.organization_id == organization_id)
    if entity_type:
        query = query.filter(AuditLog.entity_type == entity_type)
    if entity_id:
        query = query.filter(AuditLog.entity_id == entity_id)
    return query.order_by(AuditLog.timestamp_utc.desc()).limit(limit).offset(offset).all()


def compute_diff(before: Dict, after: Dict) -> Dict:
    """Before/after values for keys whose value changed."""
    diff = {}
    for key in set(before.keys()) | set(after.keys()):
        before_val = before.get(key)
        after_val = after.get(key)
        if before_val != after_val:
            diff[key] = {"before": before_val, "after": after_val}
    return diff
