"""
Customer portal tokens and the data exposed through them.
"""
import secrets
from datetime import date, datetime, timedelta, timezone
from typing import Optional, List, Dict, Any

import structlog
from sqlalchemy.orm import Session

from ..config import settings
from ..errors import ValidationFailed, NotFoundError
from ..models.models import (
    Customer,
    CustomerPortalToken,
    CustomerServiceLocation,
    Invoice,
    Job,
    Quote,
    ServiceRequest,
    User,
)
from .timezones import as_utc

logger = structlog.get_logger(__name__)

PORTAL_FEATURES = ("jobs", "quotes", "invoices", "service_requests")
REQUEST_TYPES = ("service", "pickup", "delivery", "repair", "other")
REQUEST_STATUSES = ("submitted", "reviewed", "scheduled", "completed", "cancelled")


class InvalidPortalToken(Exception):
    pass


def _new_token() -> str:
    return secrets.token_urlsafe(32)


def generate_customer_portal_token(db: Session, customer: Customer, user: Optional[User] = None) -> CustomerPortalToken:
    """Issue a long-lived token and deactivate the customer's previous active tokens."""
    for old in (
        db.query(CustomerPortalToken)
        .filter(CustomerPortalToken.customer_id == customer.id, CustomerPortalToken.is_active.is_(True))
        .all()
    ):
        old.is_active = False
    token = CustomerPortalToken(
        organization_id=customer.organization_id,
        customer_id=customer.id,
        token=_new_token(),
        expires_at=datetime.now(timezone.utc) + timedelta(hours=settings.portal_token_ttl_hours),
        one_time_use=False,
        features=list(PORTAL_FEATURES),
        created_by=user.id if user else None,
    )
    db.add(token)
    db.flush()
    return token


def generate_enhanced_portal_token(
    db: Session,
    customer: Customer,
    expiration_hours: int = 72,
    one_time_use: bool = False,
    features: Optional[List[str]] = None,
    user: Optional[User] = None,
) -> CustomerPortalToken:
    if expiration_hours <= 0:
        raise ValidationFailed("expiration_hours must be positive")
    features = list(features) if features else list(PORTAL_FEATURES)
    unknown = [f for f in features if f not in PORTAL_FEATURES]
    if unknown:
        raise ValidationFailed(f"Unknown portal features: {', '.join(unknown)}")
    token = CustomerPortalToken(
        organization_id=customer.organization_id,
        customer_id=customer.id,
        token=_new_token(),
        expires_at=datetime.now(timezone.utc) + timedelta(hours=expiration_hours),
        one_time_use=one_time_use,
        features=features,
        created_by=user.id if user else None,
    )
    db.add(token)
    db.flush()
    return token


def validate_customer_portal_token(db: Session, token: str, now: Optional[datetime] = None) -> CustomerPortalToken:
    """
    Return the active token row or raise InvalidPortalToken.

    A one-time token is consumed by its first successful validation.
    """
    now = now or datetime.now(timezone.utc)
    row = db.query(CustomerPortalToken).filter(CustomerPortalToken.token == token).first()
    if row is None or not row.is_active:
        raise InvalidPortalToken("Invalid portal link")
    if row.expires_at is not None and as_utc(row.expires_at) <= now:
        raise InvalidPortalToken("Portal link has expired")
    if row.one_time_use and row.used_at is not None:
        raise InvalidPortalToken("Portal link has already been used")
    customer = db.get(Customer, row.customer_id)
    if customer is None or customer.deleted_at is not None:
        raise InvalidPortalToken("Invalid portal link")

    row.last_accessed_at = now
    if row.one_time_use:
        row.used_at = now
        row.is_active = False
    db.flush()
    return row


def has_feature(token: CustomerPortalToken, feature: str) -> bool:
    return feature in (token.features or PORTAL_FEATURES)


def portal_summary(db: Session, token: CustomerPortalToken, today: Optional[date] = None) -> Dict[str, Any]:
    today = today or date.today()
    customer = db.get(Customer, token.customer_id)
    out: Dict[str, Any] = {
        "customer": {"id": customer.id, "name": customer.name, "email": customer.email, "phone": customer.phone},
        "features": token.features or list(PORTAL_FEATURES),
    }
    if has_feature(token, "jobs"):
        jobs = (
            db.query(Job)
            .filter(Job.customer_id == customer.id, Job.scheduled_date >= today, Job.status != "cancelled")
            .order_by(Job.scheduled_date)
            .limit(50)
            .all()
        )
        out["upcoming_jobs"] = [
            {"id": j.id, "job_number": j.job_number, "job_type": j.job_type, "scheduled_date": j.scheduled_date,
             "scheduled_time": j.scheduled_time, "status": j.status}
            for j in jobs
        ]
    if has_feature(token, "quotes"):
        quotes = (
            db.query(Quote)
            .filter(Quote.customer_id == customer.id, Quote.deleted_at.is_(None), Quote.status.in_(("sent", "accepted")))
            .order_by(Quote.created_at.desc())
            .all()
        )
        out["open_quotes"] = [
            {"id": q.id, "quote_number": q.quote_number, "status": q.status, "total_amount": q.total_amount,
             "expiration_date": q.expiration_date}
            for q in quotes
        ]
    if has_feature(token, "invoices"):
        invoices = (
            db.query(Invoice)
            .filter(Invoice.customer_id == customer.id, Invoice.status.in_(("unpaid", "partial", "overdue")))
            .order_by(Invoice.due_date)
            .all()
        )
        out["unpaid_invoices"] = [
            {"id": i.id, "invoice_number": i.invoice_number, "status": i.status, "amount": i.amount,
             "balance_due": i.balance_due, "due_date": i.due_date}
            for i in invoices
        ]
    return out


def create_service_request(db: Session, token: CustomerPortalToken, data: Dict[str, Any]) -> ServiceRequest:
    if data.get("request_type") not in REQUEST_TYPES:
        raise ValidationFailed(f"request_type must be one of: {', '.join(REQUEST_TYPES)}")
    if not (data.get("description") or "").strip():
        raise ValidationFailed("Description is required")
    location_id = data.get("location_id")
    if location_id:
        loc = (
            db.query(CustomerServiceLocation)
            .filter(CustomerServiceLocation.id == location_id, CustomerServiceLocation.customer_id == token.customer_id)
            .first()
        )
        if loc is None:
            raise NotFoundError("Service location not found")
    req = ServiceRequest(
        organization_id=token.organization_id,
        customer_id=token.customer_id,
        request_type=data["request_type"],
        description=data["description"].strip(),
        preferred_date=data.get("preferred_date"),
        location_id=location_id,
        contact_name=data.get("contact_name"),
        contact_phone=data.get("contact_phone"),
        status="submitted",
    )
    db.add(req)
    db.flush()
    logger.info("service_request_submitted", request_id=str(req.id), customer_id=str(token.customer_id))
    return req


def update_service_request_status(db: Session, req: ServiceRequest, status: str) -> ServiceRequest:
    if status not in REQUEST_STATUSES:
        raise ValidationFailed(f"status must be one of: {', '.join(REQUEST_STATUSES)}")
    req.status = status
    req.updated_at = datetime.now(timezone.utc)
    db.flush()
    return req
