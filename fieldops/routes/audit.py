import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..db import get_db
from ..auth.security import require_permissions
from ..models.models import AuditLog, User
from ..schemas.auth import AuditLogResponse
from ..services.audit import get_audit_logs, verify_audit_log
from ..services.tenancy import get_scoped_or_404


router = APIRouter(prefix="/audit-logs", tags=["audit"])


@router.get("", response_model=List[AuditLogResponse])
def list_audit_logs(
    entity_type: Optional[str] = Query(None),
    entity_id: Optional[uuid.UUID] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("audit:read")),
):
    return get_audit_logs(db, user.organization_id, entity_type, entity_id, limit, offset)


@router.get("/{log_id}/verify")
def verify_audit_log_entry(
    log_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("audit:read")),
):
    """Recompute the integrity hash of one entry."""
    log = get_scoped_or_404(db, AuditLog, log_id, user.organization_id, "Audit log")
    return {"id": str(log.id), "valid": verify_audit_log(log)}
