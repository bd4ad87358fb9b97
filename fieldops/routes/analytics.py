from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..db import get_db
from ..auth.security import require_permissions
from ..models.models import User
from ..services import analytics as analytics_service
from ..services.timezones import local_now


router = APIRouter(prefix="/analytics", tags=["analytics"])


@router.get("/revenue")
def revenue(
    start: Optional[date] = Query(None),
    end: Optional[date] = Query(None),
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("analytics:read")),
):
    """Defaults to the current month to date."""
    end = end or date.today()
    start = start or end.replace(day=1)
    return analytics_service.calculate_revenue_analytics(db, user.organization_id, start, end)


@router.get("/maintenance")
def maintenance(
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("analytics:read", "maintenance:read")),
):
    return analytics_service.get_maintenance_kpis(db, user.organization_id)


@router.get("/dashboard")
def dashboard(
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("analytics:read")),
):
    """Counts for the organization's local today."""
    today = local_now(user.organization.timezone if user.organization else None).date()
    return analytics_service.get_dashboard(db, user.organization_id, today)
