from datetime import datetime, time, timezone
from typing import List, Optional

import pytz
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ..db import get_db
from ..auth.security import get_current_user, has_permission
from ..models.models import User, NotificationPreference, NotificationLog
from ..schemas.auth import (
    NotificationPreferenceUpdate,
    NotificationPreferenceResponse,
    NotificationLogResponse,
    TestNotificationRequest,
)
from ..services.notifications import notify_user


router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("/preferences", response_model=NotificationPreferenceResponse)
def get_preferences(db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    pref = db.query(NotificationPreference).filter(NotificationPreference.user_id == user.id).first()
    if not pref:
        return NotificationPreferenceResponse()
    return pref


@router.put("/preferences", response_model=NotificationPreferenceResponse)
def update_preferences(
    payload: NotificationPreferenceUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    data = payload.model_dump(exclude_unset=True)
    quiet = data.get("quiet_hours")
    if quiet:
        try:
            time.fromisoformat(quiet["start"])
            time.fromisoformat(quiet["end"])
        except ValueError:
            raise HTTPException(status_code=400, detail="Quiet hours must be HH:MM")
        if quiet.get("timezone") and quiet["timezone"] not in pytz.all_timezones_set:
            raise HTTPException(status_code=400, detail="Unknown timezone")

    pref = db.query(NotificationPreference).filter(NotificationPreference.user_id == user.id).first()
    if not pref:
        pref = NotificationPreference(organization_id=user.organization_id, user_id=user.id)
        db.add(pref)
    for field, value in data.items():
        setattr(pref, field, value)
    pref.updated_at = datetime.now(timezone.utc)
    db.commit()
    db.refresh(pref)
    return pref


@router.get("/logs", response_model=List[NotificationLogResponse])
def list_logs(
    channel: Optional[str] = Query(None),
    status: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    """Organization-wide for auditors, otherwise the caller's own notifications."""
    query = db.query(NotificationLog).filter(NotificationLog.organization_id == user.organization_id)
    if not has_permission(user, "audit:read"):
        query = query.filter(NotificationLog.user_id == user.id)
    if channel:
        query = query.filter(NotificationLog.channel == channel)
    if status:
        query = query.filter(NotificationLog.status == status)
    return query.order_by(NotificationLog.created_at.desc()).limit(limit).all()


@router.post("/test", response_model=List[NotificationLogResponse])
def send_test(
    payload: TestNotificationRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    if payload.channel not in ("email", "sms"):
        raise HTTPException(status_code=400, detail="channel must be email or sms")
    logs = notify_user(db, user, "Test notification", payload.message, channels=(payload.channel,),
                       related_entity="test")
    db.commit()
    for log in logs:
        db.refresh(log)
    return logs
