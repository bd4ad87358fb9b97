"""
Quotes, invoices and payments.

All money values are floats rounded half-up to cents by money().
"""
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, List, Dict, Any, Iterable

import structlog
from sqlalchemy import func
from sqlalchemy.orm import Session

from ..errors import ConflictError, NotFoundError, ValidationFailed, TransitionNotAllowed
from ..models.models import (
    Customer,
    Invoice,
    InvoiceItem,
    InvoiceOverdueDismissal,
    Job,
    Organization,
    Payment,
    Product,
    Quote,
    QuoteItem,
    User,
)
from .audit import compute_diff, create_audit_log
from .jobs import create_job
from .notifications import send_email
from .numbering import next_number
from .tenancy import get_scoped_or_404
from .pdf import render_quote_pdf

logger = structlog.get_logger(__name__)

QUOTE_STATUSES = ("draft", "sent", "accepted", "declined", "expired")
QUOTE_TRANSITIONS = {
    "draft": ("sent", "accepted", "declined"),
    "sent": ("accepted", "declined", "expired"),
    "accepted": (),
    "declined": (),
    "expired": (),
}
EDITABLE_QUOTE_STATUSES = ("draft", "sent")
OPEN_INVOICE_STATUSES = ("unpaid", "partial", "overdue")
PAYMENT_METHODS = ("cash", "check", "card", "ach", "other")


def money(value) -> float:
    return float(Decimal(str(value or 0)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def calculate_totals(
    items: Iterable[Dict[str, Any]],
    discount_type: Optional[str] = None,
    discount_value: float = 0.0,
    additional_fees: float = 0.0,
    tax_rate: float = 0.0,
) -> Dict[str, Any]:
    """
    Compute line totals and document totals.

    Percentage discounts are capped at 100%, fixed discounts at the subtotal.
    Tax (tax_rate in percent) applies to subtotal - discount + fees.
    """
    if (discount_value or 0) < 0 or (additional_fees or 0) < 0 or (tax_rate or 0) < 0:
        raise ValidationFailed("Discount, fees and tax rate must not be negative")
    if discount_type not in (None, "percentage", "fixed"):
        raise ValidationFailed(f"Unknown discount type: {discount_type}")

    lines = []
    for item in items:
        qty = item.get("quantity") or 0
        price = item.get("unit_price") or 0
        if qty < 0 or price < 0:
            raise ValidationFailed("Quantity and unit price must not be negative")
        lines.append(money(Decimal(str(qty)) * Decimal(str(price))))
    subtotal = money(sum(Decimal(str(v)) for v in lines))

    discount = 0.0
    if discount_type == "percentage":
        discount = money(Decimal(str(subtotal)) * Decimal(str(min(discount_value or 0, 100))) / 100)
    elif discount_type == "fixed":
        discount = money(min(discount_value or 0, subtotal))

    fees = money(additional_fees)
    taxable = money(subtotal - discount + fees)
    tax = money(Decimal(str(taxable)) * Decimal(str(tax_rate or 0)) / 100)
    return {
        "line_totals": lines,
        "subtotal": subtotal,
        "discount_amount": discount,
        "additional_fees": fees,
        "taxable_amount": taxable,
        "tax_amount": tax,
        "total": money(taxable + tax),
    }


# ---------- QUOTES ----------
def get_next_quote_number(db: Session, organization_id) -> str:
    return next_number(db, organization_id, "quote")


def _quote_items(db: Session, organization_id, items: List[Dict[str, Any]]) -> List[QuoteItem]:
    out = []
    for idx, raw in enumerate(items):
        name = raw.get("name")
        if raw.get("product_id"):
            product = (
                db.query(Product)
                .filter(Product.id == raw["product_id"], Product.organization_id == organization_id)
                .first()
            )
            if product is None:
                raise NotFoundError("Product not found")
            name = name or product.name
        if not name:
            raise ValidationFailed("Line item name is required")
        start, end = raw.get("rental_start_date"), raw.get("rental_end_date")
        if start and end and end < start:
            raise ValidationFailed("Rental end date must be on or after start date")
        out.append(QuoteItem(
            organization_id=organization_id,
            product_id=raw.get("product_id"),
            name=name,
            description=raw.get("description"),
            quantity=raw.get("quantity", 1),
            unit_price=raw.get("unit_price", 0.0),
            line_item_type=raw.get("line_item_type") or ("inventory" if raw.get("product_id") else "service"),
            rental_start_date=start,
            rental_end_date=end,
            service_frequency=raw.get("service_frequency"),
            sort_order=idx,
        ))
    return out


def _apply_quote_totals(quote: Quote) -> None:
    totals = calculate_totals(
        [{"quantity": i.quantity, "unit_price": i.unit_price} for i in quote.items],
        quote.discount_type,
        quote.discount_value,
        quote.additional_fees,
        quote.tax_rate,
    )
    for item, line_total in zip(quote.items, totals["line_totals"]):
        item.line_total = line_total
    quote.subtotal = totals["subtotal"]
    quote.discount_amount = totals["discount_amount"]
    quote.additional_fees = totals["additional_fees"]
    quote.tax_amount = totals["tax_amount"]
    quote.total_amount = totals["total"]


def create_quote(db: Session, organization_id, data: Dict[str, Any], user: Optional[User] = None) -> Quote:
    customer = (
        db.query(Customer)
        .filter(Customer.id == data["customer_id"], Customer.organization_id == organization_id,
                Customer.deleted_at.is_(None))
        .first()
    )
    if customer is None:
        raise NotFoundError("Customer not found")
    org = db.get(Organization, organization_id)
    quote = Quote(
        organization_id=organization_id,
        quote_number=get_next_quote_number(db, organization_id),
        customer_id=customer.id,
        status="draft",
        discount_type=data.get("discount_type"),
        discount_value=data.get("discount_value") or 0.0,
        additional_fees=data.get("additional_fees") or 0.0,
        tax_rate=data["tax_rate"] if data.get("tax_rate") is not None else (org.default_tax_rate or 0.0),
        expiration_date=data.get("expiration_date"),
        terms=data.get("terms"),
        notes=data.get("notes"),
        created_by=user.id if user else None,
    )
    quote.items = _quote_items(db, organization_id, data.get("items") or [])
    _apply_quote_totals(quote)
    db.add(quote)
    db.flush()
    create_audit_log(db, organization_id, "quote", quote.id, "CREATE", actor_id=user.id if user else None,
                     changes_json={"quote_number": quote.quote_number, "total_amount": quote.total_amount})
    return quote


def _totals_snapshot(quote: Quote) -> Dict[str, Any]:
    return {name: getattr(quote, name) for name in ("subtotal", "discount_amount", "tax_amount", "total_amount")}


def update_quote(db: Session, quote: Quote, data: Dict[str, Any], user: Optional[User] = None) -> Quote:
    if quote.deleted_at is not None:
        raise NotFoundError("Quote not found")
    if quote.status not in EDITABLE_QUOTE_STATUSES:
        raise ConflictError(f"Quote is {quote.status} and can no longer be edited")
    before = _totals_snapshot(quote)
    for field in ("discount_type", "discount_value", "additional_fees", "tax_rate", "expiration_date", "terms", "notes"):
        if field in data:
            setattr(quote, field, data[field])
    if data.get("items") is not None:
        quote.items = _quote_items(db, quote.organization_id, data["items"])
    _apply_quote_totals(quote)
    quote.updated_at = datetime.now(timezone.utc)
    db.flush()
    create_audit_log(db, quote.organization_id, "quote", quote.id, "UPDATE", actor_id=user.id if user else None,
                     changes_json=compute_diff(before, _totals_snapshot(quote)))
    return quote


def set_quote_status(db: Session, quote: Quote, new_status: str, user: Optional[User] = None) -> Quote:
    if new_status not in QUOTE_STATUSES:
        raise ValidationFailed(f"Unknown quote status: {new_status}")
    if new_status not in QUOTE_TRANSITIONS.get(quote.status, ()):
        raise TransitionNotAllowed(quote.status, new_status)
    old = quote.status
    quote.status = new_status
    if new_status == "sent":
        quote.sent_at = datetime.now(timezone.utc)
    quote.updated_at = datetime.now(timezone.utc)
    db.flush()
    create_audit_log(db, quote.organization_id, "quote", quote.id, "STATUS_CHANGE", actor_id=user.id if user else None,
                     changes_json={"status": {"before": old, "after": new_status}})
    return quote


def send_quote(db: Session, quote: Quote, user: Optional[User] = None, to: Optional[str] = None) -> Dict[str, Any]:
    """
    Mark a quote sent and email it with the PDF attached.

    Delivery is best-effort: the quote is marked sent even when the email is
    skipped or fails, and the notification status is returned.
    """
    if quote.deleted_at is not None:
        raise NotFoundError("Quote not found")
    if quote.status not in ("draft", "sent"):
        raise TransitionNotAllowed(quote.status, "sent")
    if quote.status == "draft":
        set_quote_status(db, quote, "sent", user)
    else:
        quote.sent_at = datetime.now(timezone.utc)

    org = db.get(Organization, quote.organization_id)
    recipient = to or (quote.customer.email if quote.customer else None)
    company = org.company_name or org.name
    body = (
        f"Hello {quote.customer.name if quote.customer else ''},\n\n"
        f"Please find attached quote {quote.quote_number} from {company} "
        f"for a total of ${quote.total_amount:,.2f}.\n"
    )
    if quote.expiration_date:
        body += f"This quote is valid until {quote.expiration_date:%B %d, %Y}.\n"
    log = send_email(
        db,
        quote.organization_id,
        recipient,
        f"Quote {quote.quote_number} from {company}",
        body,
        attachments=[(f"{quote.quote_number}.pdf", render_quote_pdf(org, quote), "application/pdf")],
        customer_id=quote.customer_id,
        related_entity=f"quote:{quote.id}",
    )
    db.flush()
    return {"quote_id": quote.id, "status": quote.status, "email_status": log.status, "recipient": recipient}


def generate_jobs_from_quote(db: Session, quote: Quote, user: Optional[User] = None,
                             driver_id=None) -> Dict[str, Any]:
    """
    Create a delivery job on the earliest rental start and a pickup job on the
    latest rental end, reserving the quoted equipment for the whole window.
    """
    if quote.deleted_at is not None:
        raise NotFoundError("Quote not found")
    if quote.status in ("declined", "expired"):
        raise ConflictError(f"Cannot schedule a {quote.status} quote")
    rentals = [i for i in quote.items if i.line_item_type == "inventory" and i.product_id and i.rental_start_date]
    if not rentals:
        raise ValidationFailed("Quote has no inventory items with rental dates")

    start = min(i.rental_start_date for i in rentals)
    end = max(i.rental_end_date or i.rental_start_date for i in rentals)

    equipment: Dict[Any, int] = {}
    for item in rentals:
        equipment[item.product_id] = equipment.get(item.product_id, 0) + int(item.quantity or 0)

    delivery = create_job(db, quote.organization_id, {
        "job_type": "delivery",
        "customer_id": quote.customer_id,
        "scheduled_date": start,
        "driver_id": driver_id,
        "quote_id": quote.id,
        "notes": f"Delivery for quote {quote.quote_number}",
        "equipment": [
            {"strategy": "bulk", "product_id": pid, "quantity": qty, "return_date": end}
            for pid, qty in equipment.items() if qty > 0
        ],
    }, user)
    pickup = create_job(db, quote.organization_id, {
        "job_type": "pickup",
        "customer_id": quote.customer_id,
        "scheduled_date": end,
        "driver_id": driver_id,
        "quote_id": quote.id,
        "parent_job_id": delivery.id,
        "notes": f"Pickup for quote {quote.quote_number}",
    }, user)
    logger.info("jobs_generated_from_quote", quote_id=str(quote.id), delivery=delivery.job_number,
                pickup=pickup.job_number)
    return {"jobs_created": 2, "job_ids": [delivery.id, pickup.id]}


def soft_delete_quote(db: Session, quote: Quote, user: Optional[User] = None) -> Quote:
    if quote.deleted_at is not None:
        raise NotFoundError("Quote not found")
    quote.deleted_at = datetime.now(timezone.utc)
    quote.deleted_by = user.id if user else None
    db.flush()
    create_audit_log(db, quote.organization_id, "quote", quote.id, "DELETE", actor_id=user.id if user else None)
    return quote


def expire_quotes(db: Session, organization_id, today: Optional[date] = None) -> int:
    today = today or date.today()
    quotes = (
        db.query(Quote)
        .filter(
            Quote.organization_id == organization_id,
            Quote.status == "sent",
            Quote.deleted_at.is_(None),
            Quote.expiration_date.isnot(None),
            Quote.expiration_date < today,
        )
        .all()
    )
    for q in quotes:
        q.status = "expired"
        q.updated_at = datetime.now(timezone.utc)
    db.flush()
    return len(quotes)


# ---------- INVOICES ----------
def get_next_invoice_number(db: Session, organization_id) -> str:
    return next_number(db, organization_id, "invoice")


def generate_invoice_from_quote(db: Session, quote: Quote, user: Optional[User] = None) -> Invoice:
    """Copy a quote into a new unpaid invoice and mark the quote accepted."""
    if quote.deleted_at is not None:
        raise NotFoundError("Quote not found")
    existing = (
        db.query(Invoice)
        .filter(Invoice.quote_id == quote.id, Invoice.status != "cancelled")
        .first()
    )
    if existing is not None:
        raise ConflictError(f"Quote already invoiced as {existing.invoice_number}")
    if quote.status not in ("draft", "sent", "accepted"):
        raise ConflictError(f"Cannot invoice a {quote.status} quote")

    org = db.get(Organization, quote.organization_id)
    invoice = Invoice(
        organization_id=quote.organization_id,
        invoice_number=get_next_invoice_number(db, quote.organization_id),
        customer_id=quote.customer_id,
        quote_id=quote.id,
        status="unpaid",
        subtotal=quote.subtotal,
        discount_amount=quote.discount_amount,
        additional_fees=quote.additional_fees,
        tax_rate=quote.tax_rate,
        tax_amount=quote.tax_amount,
        amount=quote.total_amount,
        amount_paid=0.0,
        issue_date=date.today(),
        due_date=date.today() + timedelta(days=org.invoice_due_days or 30),
        notes=quote.notes,
        created_by=user.id if user else None,
    )
    invoice.items = [
        InvoiceItem(
            organization_id=quote.organization_id,
            product_id=qi.product_id,
            name=qi.name,
            description=qi.description,
            quantity=qi.quantity,
            unit_price=qi.unit_price,
            line_total=qi.line_total,
            sort_order=qi.sort_order,
        )
        for qi in quote.items
    ]
    db.add(invoice)
    if quote.status != "accepted":
        quote.status = "accepted"
        quote.updated_at = datetime.now(timezone.utc)
    db.flush()
    create_audit_log(db, quote.organization_id, "invoice", invoice.id, "CREATE", actor_id=user.id if user else None,
                     changes_json={"invoice_number": invoice.invoice_number, "amount": invoice.amount},
                     context={"quote_id": quote.id})
    logger.info("invoice_generated", invoice_id=str(invoice.id), quote_id=str(quote.id))
    return invoice


def create_invoice(db: Session, organization_id, data: Dict[str, Any], user: Optional[User] = None) -> Invoice:
    customer = (
        db.query(Customer)
        .filter(Customer.id == data["customer_id"], Customer.organization_id == organization_id)
        .first()
    )
    if customer is None:
        raise NotFoundError("Customer not found")
    org = db.get(Organization, organization_id)
    raw_items = data.get("items") or []
    job = get_scoped_or_404(db, Job, data["job_id"], organization_id, "Job") if data.get("job_id") else None
    tax_rate = data["tax_rate"] if data.get("tax_rate") is not None else (org.default_tax_rate or 0.0)
    totals = calculate_totals(raw_items, data.get("discount_type"), data.get("discount_value") or 0.0,
                              data.get("additional_fees") or 0.0, tax_rate)
    invoice = Invoice(
        organization_id=organization_id,
        invoice_number=get_next_invoice_number(db, organization_id),
        customer_id=customer.id,
        job_id=job.id if job else None,
        status="unpaid",
        subtotal=totals["subtotal"],
        discount_amount=totals["discount_amount"],
        additional_fees=totals["additional_fees"],
        tax_rate=tax_rate,
        tax_amount=totals["tax_amount"],
        amount=totals["total"],
        issue_date=date.today(),
        due_date=data.get("due_date") or date.today() + timedelta(days=org.invoice_due_days or 30),
        notes=data.get("notes"),
        created_by=user.id if user else None,
    )
    invoice.items = [
        InvoiceItem(
            organization_id=organization_id,
            product_id=raw.get("product_id"),
            name=raw["name"],
            description=raw.get("description"),
            quantity=raw.get("quantity", 1),
            unit_price=raw.get("unit_price", 0.0),
            line_total=line_total,
            sort_order=idx,
        )
        for idx, (raw, line_total) in enumerate(zip(raw_items, totals["line_totals"]))
    ]
    db.add(invoice)
    db.flush()
    create_audit_log(db, organization_id, "invoice", invoice.id, "CREATE", actor_id=user.id if user else None,
                     changes_json={"invoice_number": invoice.invoice_number, "amount": invoice.amount})
    return invoice


def record_payment(
    db: Session,
    invoice: Invoice,
    amount: float,
    method: str = "other",
    reference: Optional[str] = None,
    user: Optional[User] = None,
) -> Payment:
    if invoice.status == "cancelled":
        raise ConflictError("Cannot record a payment on a cancelled invoice")
    amount = money(amount)
    if amount <= 0:
        raise ValidationFailed("Payment amount must be positive")
    if method not in PAYMENT_METHODS:
        raise ValidationFailed(f"Unknown payment method: {method}")
    balance = invoice.balance_due
    if amount > balance:
        raise ValidationFailed(f"Payment of {amount:.2f} exceeds balance due of {balance:.2f}")

    payment = Payment(
        organization_id=invoice.organization_id,
        invoice_id=invoice.id,
        amount=amount,
        method=method,
        reference=reference,
        recorded_by=user.id if user else None,
    )
    db.add(payment)
    invoice.amount_paid = money((invoice.amount_paid or 0) + amount)
    invoice.status = "paid" if invoice.balance_due <= 0 else "partial"
    invoice.updated_at = datetime.now(timezone.utc)
    db.flush()
    create_audit_log(db, invoice.organization_id, "invoice", invoice.id, "PAYMENT", actor_id=user.id if user else None,
                     changes_json={"amount": amount, "method": method, "status": invoice.status})
    return payment


def cancel_invoice(db: Session, invoice: Invoice, user: Optional[User] = None) -> Invoice:
    if invoice.amount_paid and invoice.amount_paid > 0:
        raise ConflictError("Cannot cancel an invoice with payments")
    if invoice.status == "cancelled":
        return invoice
    old = invoice.status
    invoice.status = "cancelled"
    invoice.updated_at = datetime.now(timezone.utc)
    db.flush()
    create_audit_log(db, invoice.organization_id, "invoice", invoice.id, "STATUS_CHANGE",
                     actor_id=user.id if user else None, changes_json={"status": {"before": old, "after": "cancelled"}})
    return invoice


def _overdue_query(db: Session, organization_id, today: date):
    dismissed = db.query(InvoiceOverdueDismissal.invoice_id).filter(
        InvoiceOverdueDismissal.organization_id == organization_id
    )
    return db.query(Invoice).filter(
        Invoice.organization_id == organization_id,
        Invoice.status.in_(OPEN_INVOICE_STATUSES),
        Invoice.due_date.isnot(None),
        Invoice.due_date < today,
        Invoice.id.notin_(dismissed),
    )


def get_overdue_invoices(db: Session, organization_id, today: Optional[date] = None) -> List[Dict[str, Any]]:
    today = today or date.today()
    rows = _overdue_query(db, organization_id, today).order_by(Invoice.due_date).all()
    return [
        {
            "invoice_id": inv.id,
            "invoice_number": inv.invoice_number,
            "customer_id": inv.customer_id,
            "customer_name": inv.customer.name if inv.customer else None,
            "amount": inv.amount,
            "balance_due": inv.balance_due,
            "due_date": inv.due_date,
            "days_overdue": (today - inv.due_date).days,
            "status": inv.status,
        }
        for inv in rows
    ]


def get_overdue_invoices_count(db: Session, organization_id, today: Optional[date] = None) -> int:
    return _overdue_query(db, organization_id, today or date.today()).count()


def update_overdue_invoices(db: Session, organization_id, today: Optional[date] = None) -> int:
    invoices = _overdue_query(db, organization_id, today or date.today()).filter(Invoice.status != "overdue").all()
    for inv in invoices:
        inv.status = "overdue"
        inv.updated_at = datetime.now(timezone.utc)
    db.flush()
    if invoices:
        logger.info("invoices_marked_overdue", organization_id=str(organization_id), count=len(invoices))
    return len(invoices)


def dismiss_overdue_invoice(db: Session, invoice: Invoice, reason: Optional[str] = None,
                            user: Optional[User] = None) -> InvoiceOverdueDismissal:
    exists = db.query(InvoiceOverdueDismissal).filter(InvoiceOverdueDismissal.invoice_id == invoice.id).first()
    if exists:
        raise ConflictError("Overdue notice already dismissed")
    dismissal = InvoiceOverdueDismissal(
        organization_id=invoice.organization_id,
        invoice_id=invoice.id,
        reason=reason,
        dismissed_by=user.id if user else None,
    )
    db.add(dismissal)
    db.flush()
    return dismissal


# ---------- METRICS ----------
def get_quote_metrics(db: Session, organization_id) -> Dict[str, Any]:
    rows = (
        db.query(Quote.status, func.count(Quote.id), func.coalesce(func.sum(Quote.total_amount), 0))
        .filter(Quote.organization_id == organization_id, Quote.deleted_at.is_(None))
        .group_by(Quote.status)
        .all()
    )
    by_status = {status: {"count": count, "value": money(value)} for status, count, value in rows}
    total = sum(v["count"] for v in by_status.values())
    decided = sum(by_status.get(s, {}).get("count", 0) for s in ("sent", "accepted", "declined", "expired"))
    accepted = by_status.get("accepted", {"count": 0, "value": 0.0})
    return {
        "total_quotes": total,
        "by_status": by_status,
        "total_value": money(sum(v["value"] for v in by_status.values())),
        "accepted_value": accepted["value"],
        "conversion_rate": round(accepted["count"] / decided * 100, 1) if decided else 0.0,
    }


def get_invoice_metrics(db: Session, organization_id, today: Optional[date] = None) -> Dict[str, Any]:
    invoices = (
        db.query(Invoice)
        .filter(Invoice.organization_id == organization_id, Invoice.status != "cancelled")
        .all()
    )
    overdue = get_overdue_invoices(db, organization_id, today)
    by_status: Dict[str, int] = {}
    for inv in invoices:
        by_status[inv.status] = by_status.get(inv.status, 0) + 1
    return {
        "total_invoices": len(invoices),
        "by_status": by_status,
        "total_invoiced": money(sum(i.amount or 0 for i in invoices)),
        "total_paid": money(sum(i.amount_paid or 0 for i in invoices)),
        "total_outstanding": money(sum(i.balance_due for i in invoices)),
        "overdue_count": len(overdue),
        "overdue_amount": money(sum(o["balance_due"] for o in overdue)),
    }
