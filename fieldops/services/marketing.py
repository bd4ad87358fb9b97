"""
Marketing campaigns, communication templates and QR feedback from units in the field.
"""
import re
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any

import structlog
from sqlalchemy.orm import Session

from ..errors import ConflictError, NotFoundError, ValidationFailed
from ..models.models import (
    Customer,
    MarketingCampaign,
    Organization,
    ProductItem,
    QRFeedback,
)
from .notifications import send_email, send_sms
from .timezones import as_utc

logger = structlog.get_logger(__name__)

CHANNELS = ("email", "sms")
CAMPAIGN_STATUSES = ("draft", "scheduled", "sending", "sent", "failed")
SENDABLE_STATUSES = ("draft", "scheduled")
FEEDBACK_TYPES = ("assistance", "comment")

_PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z0-9_]+)\s*\}\}")


def render_template(text: Optional[str], context: Dict[str, Any]) -> str:
    """Replace {{ key }} placeholders. Unknown keys render as an empty string."""
    if not text:
        return ""

    def _sub(match):
        value = context.get(match.group(1))
        return "" if value is None else str(value)

    return _PLACEHOLDER.sub(_sub, text)


def _content(campaign: MarketingCampaign):
    template = campaign.template
    subject = campaign.subject or (template.subject if template else None) or campaign.name
    body = campaign.body or (template.body if template else None)
    if not body:
        raise ValidationFailed("Campaign has no body and no template")
    return subject, body


def validate_campaign(data: Dict[str, Any]) -> None:
    if data.get("channel") and data["channel"] not in CHANNELS:
        raise ValidationFailed(f"channel must be one of: {', '.join(CHANNELS)}")
    if data.get("status") and data["status"] not in SENDABLE_STATUSES:
        raise ValidationFailed("Campaign status can only be set to draft or scheduled")
    if data.get("status") == "scheduled" and not data.get("scheduled_at"):
        raise ValidationFailed("scheduled_at is required for scheduled campaigns")


def campaign_audience(db: Session, campaign: MarketingCampaign) -> List[Customer]:
    q = db.query(Customer).filter(
        Customer.organization_id == campaign.organization_id,
        Customer.deleted_at.is_(None),
    )
    if campaign.target_customer_types:
        q = q.filter(Customer.customer_type.in_(campaign.target_customer_types))
    if campaign.channel == "sms":
        q = q.filter(Customer.phone.isnot(None), Customer.phone != "")
    else:
        q = q.filter(Customer.email.isnot(None), Customer.email != "")
    return q.order_by(Customer.name).all()


def send_campaign(db: Session, campaign: MarketingCampaign) -> MarketingCampaign:
    if campaign.status not in SENDABLE_STATUSES:
        raise ConflictError(f"Campaign is {campaign.status} and cannot be sent")
    subject, body = _content(campaign)
    org = db.get(Organization, campaign.organization_id)
    campaign.status = "sending"
    db.flush()

    audience = campaign_audience(db, campaign)
    delivered = failed = 0
    for customer in audience:
        context = {
            "customer_name": customer.name,
            "company_name": (org.company_name or org.name) if org else "",
        }
        text = render_template(body, context)
        if campaign.channel == "sms":
            log = send_sms(db, campaign.organization_id, customer.phone, text,
                           campaign_id=campaign.id, customer_id=customer.id)
        else:
            log = send_email(db, campaign.organization_id, customer.email, render_template(subject, context), text,
                             campaign_id=campaign.id, customer_id=customer.id)
        if log.status == "sent":
            delivered += 1
        else:
            failed += 1

    campaign.recipients_count = len(audience)
    campaign.delivered_count = delivered
    campaign.failed_count = failed
    campaign.status = "failed" if audience and not delivered else "sent"
    campaign.sent_at = datetime.now(timezone.utc)
    campaign.updated_at = campaign.sent_at
    db.flush()
    logger.info("campaign_sent", campaign_id=str(campaign.id), recipients=len(audience),
                delivered=delivered, failed=failed)
    return campaign


def run_scheduled_campaigns(db: Session, now: Optional[datetime] = None,
                            organization_id=None) -> List[MarketingCampaign]:
    now = now or datetime.now(timezone.utc)
    q = db.query(MarketingCampaign).filter(
        MarketingCampaign.status == "scheduled",
        MarketingCampaign.scheduled_at.isnot(None),
    )
    if organization_id is not None:
        q = q.filter(MarketingCampaign.organization_id == organization_id)
    sent = []
    for campaign in q.all():
        if as_utc(campaign.scheduled_at) <= now:
            sent.append(send_campaign(db, campaign))
    return sent


# ---------- QR FEEDBACK ----------
def submit_qr_feedback(db: Session, data: Dict[str, Any]) -> QRFeedback:
    """
    Store feedback left from a unit's QR code and email the organization.
    The email is best-effort; the feedback is kept whatever the delivery outcome.
    """
    if data.get("feedback_type") not in FEEDBACK_TYPES:
        raise ValidationFailed(f"feedback_type must be one of: {', '.join(FEEDBACK_TYPES)}")
    message = (data.get("customer_message") or "").strip()
    if not message:
        raise ValidationFailed("Message is required")
    item = db.get(ProductItem, data.get("product_item_id"))
    if item is None:
        raise NotFoundError("Unit not found")

    feedback = QRFeedback(
        organization_id=item.organization_id,
        product_item_id=item.id,
        feedback_type=data["feedback_type"],
        customer_message=message,
        customer_email=data.get("customer_email"),
        customer_phone=data.get("customer_phone"),
        photo_url=data.get("photo_url"),
    )
    db.add(feedback)
    db.flush()

    org = db.get(Organization, item.organization_id)
    recipient = org.qr_feedback_email or org.support_email
    if feedback.feedback_type == "assistance":
        subject = f"URGENT: Assistance Needed - Unit {item.item_code}"
    else:
        subject = f"New feedback - Unit {item.item_code}"
    body = "\n".join(line for line in [
        f"Unit: {item.item_code}",
        f"Type: {feedback.feedback_type}",
        f"Message: {message}",
        f"Email: {feedback.customer_email}" if feedback.customer_email else None,
        f"Phone: {feedback.customer_phone}" if feedback.customer_phone else None,
        f"Photo: {feedback.photo_url}" if feedback.photo_url else None,
    ] if line)
    send_email(db, item.organization_id, recipient, subject, body, related_entity=f"qr_feedback:{feedback.id}")
    logger.info("qr_feedback_received", feedback_id=str(feedback.id), feedback_type=feedback.feedback_type)
    return feedback


def mark_feedback_read(db: Session, feedback: QRFeedback) -> QRFeedback:
    feedback.is_read = True
    db.flush()
    return feedback
