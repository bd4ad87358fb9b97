from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..db import get_db
from ..auth.security import get_current_user, require_roles
from ..errors import ValidationFailed
from ..models.models import User
from ..schemas.auth import OrganizationPublic, OrganizationResponse, OrganizationSettingsUpdate
from ..services.tenancy import get_organization_by_subdomain
from ..services.timezones import is_valid_timezone, TIMEZONE_OPTIONS


router = APIRouter(prefix="/organizations", tags=["organizations"])


@router.get("/by-subdomain/{subdomain}", response_model=OrganizationPublic)
def organization_by_subdomain(subdomain: str, db: Session = Depends(get_db)):
    return get_organization_by_subdomain(db, subdomain)


@router.get("/current", response_model=OrganizationResponse)
def current_organization(user: User = Depends(get_current_user)):
    return user.organization


@router.put("/current/settings", response_model=OrganizationResponse)
def update_organization_settings(
    payload: OrganizationSettingsUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles("owner", "admin")),
):
    org = user.organization
    data = payload.model_dump(exclude_unset=True)
    if "timezone" in data and not is_valid_timezone(data["timezone"]):
        raise ValidationFailed(f"Unknown timezone: {data['timezone']}")
    for field, value in data.items():
        if field.endswith("_prefix"):
            value = (value or "").strip().upper()
            if not value:
                raise ValidationFailed(f"{field} cannot be empty")
        setattr(org, field, value)
    org.updated_at = datetime.now(timezone.utc)
    db.commit()
    db.refresh(org)
    return org


@router.get("/timezones")
def timezone_options():
    return [{"value": value, "label": label} for value, label in TIMEZONE_OPTIONS]
