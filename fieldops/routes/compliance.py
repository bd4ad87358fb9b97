import uuid
from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ..db import get_db
from ..auth.security import require_permissions, require_roles, has_permission
from ..models.models import User, SpillKitCheck, SpillIncident, DriverCredential
from ..schemas.fleet import (
    SpillKitCheckCreate,
    SpillKitCheckResponse,
    SpillIncidentCreate,
    SpillIncidentClose,
    SpillIncidentResponse,
    DriverCredentialUpdate,
    DriverCredentialResponse,
)
from ..services import compliance as compliance_service
from ..services.tenancy import get_scoped_or_404, scoped


router = APIRouter(prefix="/compliance", tags=["compliance"])


# ---------- SPILL KITS ----------
@router.get("/spill-kits", response_model=List[SpillKitCheckResponse])
def list_spill_kit_checks(
    vehicle_id: Optional[uuid.UUID] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("compliance:read")),
):
    query = scoped(db, SpillKitCheck, user.organization_id)
    if vehicle_id:
        query = query.filter(SpillKitCheck.vehicle_id == vehicle_id)
    return query.order_by(SpillKitCheck.checked_at.desc()).limit(limit).all()


@router.post("/spill-kits", response_model=SpillKitCheckResponse)
def record_spill_kit_check(
    payload: SpillKitCheckCreate,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("compliance:write")),
):
    check = compliance_service.record_spill_kit_check(db, user.organization_id, payload.model_dump(), user)
    db.commit()
    db.refresh(check)
    return check


@router.get("/spill-kits/report")
def spill_kit_report(
    max_age_days: int = Query(30, ge=1, le=365),
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("compliance:read")),
):
    return compliance_service.spill_kit_compliance_report(db, user.organization_id, max_age_days)


@router.get("/spill-kits/required-items")
def spill_kit_required_items(user: User = Depends(require_permissions("compliance:read", "compliance:write"))):
    return {"items": compliance_service.required_spill_kit_items(user.organization)}


# ---------- SPILL INCIDENTS ----------
@router.get("/incidents", response_model=List[SpillIncidentResponse])
def list_incidents(
    status: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("compliance:read")),
):
    query = scoped(db, SpillIncident, user.organization_id)
    if status:
        query = query.filter(SpillIncident.status == status)
    return query.order_by(SpillIncident.occurred_at.desc()).all()


@router.post("/incidents", response_model=SpillIncidentResponse)
def report_incident(
    payload: SpillIncidentCreate,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("compliance:write")),
):
    incident = compliance_service.create_spill_incident(db, user.organization_id, payload.model_dump(), user)
    db.commit()
    db.refresh(incident)
    return incident


@router.get("/incidents/{incident_id}", response_model=SpillIncidentResponse)
def get_incident(
    incident_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("compliance:read")),
):
    return get_scoped_or_404(db, SpillIncident, incident_id, user.organization_id, "Incident")


@router.post("/incidents/{incident_id}/close", response_model=SpillIncidentResponse)
def close_incident(
    incident_id: uuid.UUID,
    payload: Optional[SpillIncidentClose] = None,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("compliance:write")),
):
    incident = get_scoped_or_404(db, SpillIncident, incident_id, user.organization_id, "Incident")
    compliance_service.close_spill_incident(db, incident, payload.cleanup_actions if payload else None)
    db.commit()
    db.refresh(incident)
    return incident


# ---------- DRIVER CREDENTIALS ----------
@router.get("/drivers/{driver_id}/credentials", response_model=DriverCredentialResponse)
def get_driver_credentials(
    driver_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("compliance:read", "compliance:write")),
):
    if driver_id != user.id and not has_permission(user, "compliance:read"):
        raise HTTPException(status_code=403, detail="Forbidden")
    driver = get_scoped_or_404(db, User, driver_id, user.organization_id, "Driver")
    cred = db.query(DriverCredential).filter(DriverCredential.driver_id == driver.id).first()
    if not cred:
        raise HTTPException(status_code=404, detail="No credentials on file")
    return cred


@router.put("/drivers/{driver_id}/credentials", response_model=DriverCredentialResponse)
def update_driver_credentials(
    driver_id: uuid.UUID,
    payload: DriverCredentialUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles("owner", "admin", "dispatcher")),
):
    driver = get_scoped_or_404(db, User, driver_id, user.organization_id, "Driver")
    cred = compliance_service.upsert_driver_credential(db, driver, payload.model_dump(exclude_unset=True))
    db.commit()
    db.refresh(cred)
    return cred


@router.post("/check-expirations")
def run_expiration_check(
    db: Session = Depends(get_db),
    user: User = Depends(require_roles("owner", "admin", "dispatcher")),
):
    """Send due credential reminders for this organization."""
    result = compliance_service.check_driver_expirations(db, user.organization_id)
    db.commit()
    return result


# ---------- REPORTS ----------
@router.get("/daily-report")
def daily_report(
    day: Optional[date] = Query(None),
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("compliance:read")),
):
    return compliance_service.generate_daily_compliance_report(db, user.organization_id, day)


@router.get("/notification-counts")
def notification_counts(
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("compliance:read")),
):
    return compliance_service.get_compliance_notification_counts(db, user.organization_id)
