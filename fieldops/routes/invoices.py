import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from sqlalchemy.orm import Session

from ..db import get_db
from ..auth.security import require_permissions
from ..models.models import User, Invoice, Organization, Job
from ..schemas.billing import (
    InvoiceCreate,
    InvoiceResponse,
    PaymentCreate,
    PaymentResponse,
    DismissOverdueRequest,
)
from ..services import billing as billing_service
from ..services.pdf import render_invoice_pdf
from ..services.tenancy import get_scoped_or_404, scoped


router = APIRouter(prefix="/invoices", tags=["invoices"])


def _invoice(db: Session, invoice_id, user: User) -> Invoice:
    return get_scoped_or_404(db, Invoice, invoice_id, user.organization_id, "Invoice")


@router.get("", response_model=List[InvoiceResponse])
def list_invoices(
    status: Optional[str] = Query(None),
    customer_id: Optional[uuid.UUID] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("billing:read")),
):
    query = scoped(db, Invoice, user.organization_id)
    if status:
        query = query.filter(Invoice.status == status)
    if customer_id:
        query = query.filter(Invoice.customer_id == customer_id)
    return query.order_by(Invoice.created_at.desc()).offset(offset).limit(limit).all()


@router.post("", response_model=InvoiceResponse)
def create_invoice(
    payload: InvoiceCreate,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("billing:write")),
):
    data = payload.model_dump()
    if data.get("discount_type") is not None:
        data["discount_type"] = data["discount_type"].value
    if data.get("job_id"):
        get_scoped_or_404(db, Job, data["job_id"], user.organization_id, "Job")
    invoice = billing_service.create_invoice(db, user.organization_id, data, user)
    db.commit()
    db.refresh(invoice)
    return invoice


# ---------- OVERDUE ----------
@router.get("/metrics")
def invoice_metrics(
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("billing:read")),
):
    return billing_service.get_invoice_metrics(db, user.organization_id)


@router.get("/overdue")
def overdue_invoices(
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("billing:read")),
):
    return billing_service.get_overdue_invoices(db, user.organization_id)


@router.get("/overdue/count")
def overdue_invoices_count(
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("billing:read")),
):
    return {"count": billing_service.get_overdue_invoices_count(db, user.organization_id)}


@router.post("/overdue/refresh")
def refresh_overdue(
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("billing:write")),
):
    """Flip past-due open invoices to overdue."""
    updated = billing_service.update_overdue_invoices(db, user.organization_id)
    db.commit()
    return {"updated": updated}


@router.get("/{invoice_id}", response_model=InvoiceResponse)
def get_invoice(
    invoice_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("billing:read")),
):
    return _invoice(db, invoice_id, user)


@router.post("/{invoice_id}/dismiss-overdue")
def dismiss_overdue(
    invoice_id: uuid.UUID,
    payload: Optional[DismissOverdueRequest] = None,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("billing:write")),
):
    invoice = _invoice(db, invoice_id, user)
    dismissal = billing_service.dismiss_overdue_invoice(db, invoice, payload.reason if payload else None, user)
    db.commit()
    return {"invoice_id": str(invoice.id), "dismissal_id": str(dismissal.id), "status": "dismissed"}


# ---------- PAYMENTS ----------
@router.get("/{invoice_id}/payments", response_model=List[PaymentResponse])
def list_payments(
    invoice_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("billing:read")),
):
    return _invoice(db, invoice_id, user).payments


@router.post("/{invoice_id}/payments", response_model=PaymentResponse)
def add_payment(
    invoice_id: uuid.UUID,
    payload: PaymentCreate,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("billing:write")),
):
    invoice = _invoice(db, invoice_id, user)
    payment = billing_service.record_payment(
        db, invoice, payload.amount, payload.method.value, payload.reference, user
    )
    db.commit()
    db.refresh(payment)
    return payment


@router.get("/{invoice_id}/pdf")
def invoice_pdf(
    invoice_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("billing:read")),
):
    invoice = _invoice(db, invoice_id, user)
    org = db.get(Organization, user.organization_id)
    return Response(
        content=render_invoice_pdf(org, invoice),
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{invoice.invoice_number}.pdf"'},
    )


@router.post("/{invoice_id}/cancel", response_model=InvoiceResponse)
def cancel_invoice(
    invoice_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("billing:write")),
):
    invoice = _invoice(db, invoice_id, user)
    if invoice.status == "paid":
        raise HTTPException(status_code=409, detail="Cannot cancel a paid invoice")
    invoice = billing_service.cancel_invoice(db, invoice, user)
    db.commit()
    db.refresh(invoice)
    return invoice
