import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from sqlalchemy.orm import Session

from ..db import get_db
from ..auth.security import require_permissions
from ..models.models import User, Quote, Organization
from ..schemas.billing import (
    QuoteCreate,
    QuoteUpdate,
    QuoteResponse,
    QuoteStatus,
    QuoteStatusUpdate,
    QuoteSendRequest,
    GenerateJobsRequest,
    InvoiceResponse,
)
from ..services import billing as billing_service
from ..services.pdf import render_quote_pdf
from ..services.tenancy import scoped


router = APIRouter(prefix="/quotes", tags=["quotes"])


def _quote(db: Session, quote_id, user: User) -> Quote:
    quote = (
        scoped(db, Quote, user.organization_id)
        .filter(Quote.id == quote_id, Quote.deleted_at.is_(None))
        .first()
    )
    if not quote:
        raise HTTPException(status_code=404, detail="Quote not found")
    return quote


def _quote_data(payload, exclude_unset: bool = False) -> dict:
    data = payload.model_dump(exclude_unset=exclude_unset)
    if data.get("discount_type") is not None:
        data["discount_type"] = data["discount_type"].value
    return data


@router.get("", response_model=List[QuoteResponse])
def list_quotes(
    status: Optional[QuoteStatus] = Query(None),
    customer_id: Optional[uuid.UUID] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("billing:read")),
):
    query = scoped(db, Quote, user.organization_id).filter(Quote.deleted_at.is_(None))
    if status:
        query = query.filter(Quote.status == status.value)
    if customer_id:
        query = query.filter(Quote.customer_id == customer_id)
    return query.order_by(Quote.created_at.desc()).offset(offset).limit(limit).all()


@router.get("/metrics")
def quote_metrics(
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("billing:read")),
):
    return billing_service.get_quote_metrics(db, user.organization_id)


@router.post("", response_model=QuoteResponse)
def create_quote(
    payload: QuoteCreate,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("billing:write")),
):
    quote = billing_service.create_quote(db, user.organization_id, _quote_data(payload), user)
    db.commit()
    db.refresh(quote)
    return quote


@router.get("/{quote_id}", response_model=QuoteResponse)
def get_quote(
    quote_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("billing:read")),
):
    return _quote(db, quote_id, user)


@router.put("/{quote_id}", response_model=QuoteResponse)
def update_quote(
    quote_id: uuid.UUID,
    payload: QuoteUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("billing:write")),
):
    quote = billing_service.update_quote(db, _quote(db, quote_id, user), _quote_data(payload, True), user)
    db.commit()
    db.refresh(quote)
    return quote


@router.put("/{quote_id}/status", response_model=QuoteResponse)
def update_quote_status(
    quote_id: uuid.UUID,
    payload: QuoteStatusUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("billing:write")),
):
    quote = billing_service.set_quote_status(db, _quote(db, quote_id, user), payload.status.value, user)
    db.commit()
    db.refresh(quote)
    return quote


@router.post("/{quote_id}/send")
def send_quote(
    quote_id: uuid.UUID,
    payload: Optional[QuoteSendRequest] = None,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("billing:write")),
):
    result = billing_service.send_quote(db, _quote(db, quote_id, user), user, payload.to if payload else None)
    db.commit()
    return result


@router.get("/{quote_id}/pdf")
def quote_pdf(
    quote_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("billing:read")),
):
    quote = _quote(db, quote_id, user)
    org = db.get(Organization, user.organization_id)
    content = render_quote_pdf(org, quote)
    return Response(
        content=content,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{quote.quote_number}.pdf"'},
    )


@router.post("/{quote_id}/convert-to-invoice", response_model=InvoiceResponse)
def convert_to_invoice(
    quote_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("billing:write")),
):
    invoice = billing_service.generate_invoice_from_quote(db, _quote(db, quote_id, user), user)
    db.commit()
    db.refresh(invoice)
    return invoice


@router.post("/{quote_id}/generate-jobs")
def generate_jobs(
    quote_id: uuid.UUID,
    payload: Optional[GenerateJobsRequest] = None,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("billing:write")),
):
    """Create the delivery and pickup jobs for a quote's rental window."""
    driver_id = payload.driver_id if payload else None
    if driver_id:
        driver = db.query(User).filter(User.id == driver_id, User.organization_id == user.organization_id).first()
        if not driver:
            raise HTTPException(status_code=404, detail="Driver not found")
    result = billing_service.generate_jobs_from_quote(db, _quote(db, quote_id, user), user, driver_id)
    db.commit()
    return result


@router.delete("/{quote_id}")
def delete_quote(
    quote_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("billing:write")),
):
    billing_service.soft_delete_quote(db, _quote(db, quote_id, user), user)
    db.commit()
    return {"status": "ok"}
