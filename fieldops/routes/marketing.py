import uuid
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ..db import get_db
from ..auth.security import require_permissions
from ..models.models import User, CommunicationTemplate, MarketingCampaign, QRFeedback
from ..schemas.marketing import (
    CommunicationTemplateCreate,
    CommunicationTemplateUpdate,
    CommunicationTemplateResponse,
    CampaignCreate,
    CampaignUpdate,
    CampaignResponse,
    QRFeedbackResponse,
)
from ..services import marketing as marketing_service
from ..services.customers import customer_type_counts
from ..services.tenancy import get_scoped_or_404, scoped


router = APIRouter(prefix="/marketing", tags=["marketing"])


def _campaign(db: Session, campaign_id, user: User) -> MarketingCampaign:
    return get_scoped_or_404(db, MarketingCampaign, campaign_id, user.organization_id, "Campaign")


def _check_template(db: Session, template_id, channel: str, user: User) -> None:
    template = get_scoped_or_404(db, CommunicationTemplate, template_id, user.organization_id, "Template")
    if template.channel != channel:
        raise HTTPException(status_code=400, detail="Template channel does not match campaign channel")


# ---------- TEMPLATES ----------
@router.get("/templates", response_model=List[CommunicationTemplateResponse])
def list_templates(
    channel: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("marketing:read")),
):
    query = scoped(db, CommunicationTemplate, user.organization_id)
    if channel:
        query = query.filter(CommunicationTemplate.channel == channel)
    return query.order_by(CommunicationTemplate.name.asc()).all()


@router.post("/templates", response_model=CommunicationTemplateResponse)
def create_template(
    payload: CommunicationTemplateCreate,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("marketing:write")),
):
    if not payload.name.strip() or not payload.body.strip():
        raise HTTPException(status_code=400, detail="Name and body are required")
    template = CommunicationTemplate(
        organization_id=user.organization_id,
        name=payload.name.strip(),
        channel=payload.channel.value,
        subject=payload.subject,
        body=payload.body,
    )
    db.add(template)
    db.commit()
    db.refresh(template)
    return template


@router.get("/templates/{template_id}", response_model=CommunicationTemplateResponse)
def get_template(
    template_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("marketing:read")),
):
    return get_scoped_or_404(db, CommunicationTemplate, template_id, user.organization_id, "Template")


@router.put("/templates/{template_id}", response_model=CommunicationTemplateResponse)
def update_template(
    template_id: uuid.UUID,
    payload: CommunicationTemplateUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("marketing:write")),
):
    template = get_scoped_or_404(db, CommunicationTemplate, template_id, user.organization_id, "Template")
    for field, value in payload.model_dump(exclude_unset=True).items():
        setattr(template, field, value)
    template.updated_at = datetime.now(timezone.utc)
    db.commit()
    db.refresh(template)
    return template


@router.delete("/templates/{template_id}")
def delete_template(
    template_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("marketing:write")),
):
    template = get_scoped_or_404(db, CommunicationTemplate, template_id, user.organization_id, "Template")
    db.delete(template)
    db.commit()
    return {"status": "ok"}


# ---------- CAMPAIGNS ----------
@router.get("/campaigns", response_model=List[CampaignResponse])
def list_campaigns(
    status: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("marketing:read")),
):
    query = scoped(db, MarketingCampaign, user.organization_id)
    if status:
        query = query.filter(MarketingCampaign.status == status)
    return query.order_by(MarketingCampaign.created_at.desc()).all()


@router.post("/campaigns", response_model=CampaignResponse)
def create_campaign(
    payload: CampaignCreate,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("marketing:write")),
):
    data = payload.model_dump()
    data["channel"] = payload.channel.value
    marketing_service.validate_campaign(data)
    if data.get("template_id"):
        _check_template(db, data["template_id"], data["channel"], user)
    elif not (data.get("body") or "").strip():
        raise HTTPException(status_code=400, detail="A template or a body is required")
    campaign = MarketingCampaign(organization_id=user.organization_id, created_by=user.id, **data)
    db.add(campaign)
    db.commit()
    db.refresh(campaign)
    return campaign


@router.post("/campaigns/run-scheduled")
def run_scheduled(
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("marketing:write")),
):
    """Send this organization's scheduled campaigns whose time has come."""
    sent = marketing_service.run_scheduled_campaigns(db, organization_id=user.organization_id)
    db.commit()
    return {"sent": len(sent), "campaign_ids": [str(c.id) for c in sent]}


@router.get("/campaigns/{campaign_id}", response_model=CampaignResponse)
def get_campaign(
    campaign_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("marketing:read")),
):
    return _campaign(db, campaign_id, user)


@router.put("/campaigns/{campaign_id}", response_model=CampaignResponse)
def update_campaign(
    campaign_id: uuid.UUID,
    payload: CampaignUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("marketing:write")),
):
    campaign = _campaign(db, campaign_id, user)
    if campaign.status not in marketing_service.SENDABLE_STATUSES:
        raise HTTPException(status_code=409, detail=f"Campaign is {campaign.status} and can no longer be edited")
    data = payload.model_dump(exclude_unset=True)
    if data.get("status") == "scheduled" and "scheduled_at" not in data:
        data["scheduled_at"] = campaign.scheduled_at
    marketing_service.validate_campaign(data)
    if data.get("template_id"):
        _check_template(db, data["template_id"], campaign.channel, user)
    for field, value in data.items():
        setattr(campaign, field, value)
    db.commit()
    db.refresh(campaign)
    return campaign


@router.delete("/campaigns/{campaign_id}")
def delete_campaign(
    campaign_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("marketing:write")),
):
    campaign = _campaign(db, campaign_id, user)
    if campaign.status == "sending":
        raise HTTPException(status_code=409, detail="Campaign is being sent")
    db.delete(campaign)
    db.commit()
    return {"status": "ok"}


@router.get("/campaigns/{campaign_id}/audience")
def campaign_audience(
    campaign_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("marketing:read")),
):
    campaign = _campaign(db, campaign_id, user)
    customers = marketing_service.campaign_audience(db, campaign)
    return {
        "count": len(customers),
        "recipients": [
            {
                "customer_id": str(c.id),
                "name": c.name,
                "customer_type": c.customer_type,
                "address": c.phone if campaign.channel == "sms" else c.email,
            }
            for c in customers
        ],
    }


@router.post("/campaigns/{campaign_id}/send", response_model=CampaignResponse)
def send_campaign(
    campaign_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("marketing:write")),
):
    campaign = marketing_service.send_campaign(db, _campaign(db, campaign_id, user))
    db.commit()
    db.refresh(campaign)
    return campaign


@router.get("/customer-type-counts")
def marketing_customer_type_counts(
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("marketing:read")),
):
    return customer_type_counts(db, user.organization_id)


# ---------- QR FEEDBACK ----------
@router.get("/qr-feedback", response_model=List[QRFeedbackResponse])
def list_qr_feedback(
    unread_only: bool = Query(False),
    feedback_type: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("marketing:read", "inventory:read")),
):
    query = scoped(db, QRFeedback, user.organization_id)
    if unread_only:
        query = query.filter(QRFeedback.is_read.is_(False))
    if feedback_type:
        query = query.filter(QRFeedback.feedback_type == feedback_type)
    return query.order_by(QRFeedback.created_at.desc()).all()


@router.put("/qr-feedback/{feedback_id}/read", response_model=QRFeedbackResponse)
def mark_qr_feedback_read(
    feedback_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("marketing:write", "inventory:write")),
):
    feedback = get_scoped_or_404(db, QRFeedback, feedback_id, user.organization_id, "Feedback")
    marketing_service.mark_feedback_read(db, feedback)
    db.commit()
    db.refresh(feedback)
    return feedback
