"""
Customer records: contacts, service locations and notes.
"""
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any

import structlog
from sqlalchemy import or_, func
from sqlalchemy.orm import Session

from ..errors import NotFoundError, ValidationFailed
from ..models.models import (
    Customer,
    CustomerContact,
    CustomerServiceLocation,
    CustomerNote,
    User,
)
from .timezones import get_timezone_from_zip, is_valid_timezone

logger = structlog.get_logger(__name__)

CUSTOMER_TYPES = (
    "events_festivals",
    "sports_recreation",
    "municipal_government",
    "commercial",
    "construction",
    "emergency_disaster_relief",
    "private_events_weddings",
    "not_selected",
)


def normalize_customer_type(value: Optional[str]) -> str:
    """Map free text ("Sports & Recreation", "commercial") to a customer type."""
    if not value:
        return "not_selected"
    key = "_".join(value.strip().lower().replace("&", " ").replace("/", " ").replace("-", " ").split())
    return key if key in CUSTOMER_TYPES else "not_selected"


def get_customer(db: Session, organization_id, customer_id) -> Customer:
    customer = (
        db.query(Customer)
        .filter(Customer.id == customer_id, Customer.organization_id == organization_id,
                Customer.deleted_at.is_(None))
        .first()
    )
    if customer is None:
        raise NotFoundError("Customer not found")
    return customer


def search_customers(
    db: Session,
    organization_id,
    q: Optional[str] = None,
    customer_type: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> List[Customer]:
    query = db.query(Customer).filter(Customer.organization_id == organization_id, Customer.deleted_at.is_(None))
    if q:
        like = f"%{q.strip()}%"
        query = query.filter(or_(Customer.name.ilike(like), Customer.email.ilike(like), Customer.phone.ilike(like)))
    if customer_type:
        query = query.filter(Customer.customer_type == customer_type)
    return query.order_by(Customer.name).offset(offset).limit(limit).all()


def create_customer(db: Session, organization_id, data: Dict[str, Any]) -> Customer:
    if not (data.get("name") or "").strip():
        raise ValidationFailed("Customer name is required")
    data = dict(data)
    data["customer_type"] = normalize_customer_type(data.get("customer_type"))
    customer = Customer(organization_id=organization_id, **data)
    db.add(customer)
    db.flush()
    logger.info("customer_created", customer_id=str(customer.id))
    return customer


def update_customer(db: Session, customer: Customer, data: Dict[str, Any]) -> Customer:
    for key, value in data.items():
        if key == "customer_type":
            value = normalize_customer_type(value)
        setattr(customer, key, value)
    customer.updated_at = datetime.now(timezone.utc)
    db.flush()
    return customer


def soft_delete_customer(db: Session, customer: Customer) -> Customer:
    customer.deleted_at = datetime.now(timezone.utc)
    db.flush()
    return customer


def customer_type_counts(db: Session, organization_id) -> Dict[str, Dict[str, int]]:
    """Per customer type: total, with email, with phone and with both."""
    counts = {t: {"total": 0, "with_email": 0, "with_phone": 0, "with_both": 0} for t in CUSTOMER_TYPES}
    rows = (
        db.query(Customer.customer_type, Customer.email, Customer.phone)
        .filter(Customer.organization_id == organization_id, Customer.deleted_at.is_(None))
        .all()
    )
    for ctype, email, phone in rows:
        bucket = counts.setdefault(ctype or "not_selected", {"total": 0, "with_email": 0, "with_phone": 0, "with_both": 0})
        bucket["total"] += 1
        if email:
            bucket["with_email"] += 1
        if phone:
            bucket["with_phone"] += 1
        if email and phone:
            bucket["with_both"] += 1
    return counts


# ---------- CONTACTS ----------
def _clear_primary(db: Session, customer: Customer, keep_id=None) -> None:
    q = db.query(CustomerContact).filter(CustomerContact.customer_id == customer.id, CustomerContact.is_primary.is_(True))
    if keep_id is not None:
        q = q.filter(CustomerContact.id != keep_id)
    for c in q.all():
        c.is_primary = False


def add_contact(db: Session, customer: Customer, data: Dict[str, Any]) -> CustomerContact:
    contact = CustomerContact(organization_id=customer.organization_id, customer_id=customer.id, **data)
    if contact.is_primary:
        _clear_primary(db, customer)
    db.add(contact)
    db.flush()
    return contact


def update_contact(db: Session, contact: CustomerContact, data: Dict[str, Any]) -> CustomerContact:
    for key, value in data.items():
        setattr(contact, key, value)
    if contact.is_primary:
        _clear_primary(db, contact.customer, keep_id=contact.id)
    db.flush()
    return contact


# ---------- SERVICE LOCATIONS ----------
def add_service_location(db: Session, customer: Customer, data: Dict[str, Any]) -> CustomerServiceLocation:
    """The first location becomes the default; the timezone is derived from the ZIP when absent."""
    data = dict(data)
    tz = data.get("timezone")
    if tz and not is_valid_timezone(tz):
        raise ValidationFailed(f"Unknown timezone: {tz}")
    if not tz:
        data["timezone"] = get_timezone_from_zip(data.get("zip"), data.get("state"))

    has_any = (
        db.query(func.count(CustomerServiceLocation.id))
        .filter(CustomerServiceLocation.customer_id == customer.id)
        .scalar()
    )
    if not has_any:
        data["is_default"] = True
    location = CustomerServiceLocation(organization_id=customer.organization_id, customer_id=customer.id, **data)
    if location.is_default:
        _clear_default_location(db, customer)
    db.add(location)
    db.flush()
    return location


def _clear_default_location(db: Session, customer: Customer, keep_id=None) -> None:
    q = db.query(CustomerServiceLocation).filter(
        CustomerServiceLocation.customer_id == customer.id, CustomerServiceLocation.is_default.is_(True)
    )
    if keep_id is not None:
        q = q.filter(CustomerServiceLocation.id != keep_id)
    for loc in q.all():
        loc.is_default = False


def update_service_location(db: Session, location: CustomerServiceLocation, data: Dict[str, Any]) -> CustomerServiceLocation:
    tz = data.get("timezone")
    if tz and not is_valid_timezone(tz):
        raise ValidationFailed(f"Unknown timezone: {tz}")
    for key, value in data.items():
        setattr(location, key, value)
    if ("zip" in data or "state" in data) and not tz:
        location.timezone = get_timezone_from_zip(location.zip, location.state)
    if location.is_default:
        _clear_default_location(db, location.customer, keep_id=location.id)
    db.flush()
    return location


# ---------- NOTES ----------
def add_customer_note(db: Session, customer: Customer, note_text: str, is_important: bool = False,
                      user: Optional[User] = None) -> CustomerNote:
    if not note_text or not note_text.strip():
        raise ValidationFailed("Note text is required")
    note = CustomerNote(
        organization_id=customer.organization_id,
        customer_id=customer.id,
        note_text=note_text.strip(),
        is_important=is_important,
        created_by=user.id if user else None,
    )
    db.add(note)
    db.flush()
    return note


def update_customer_note(db: Session, note: CustomerNote, note_text: Optional[str] = None,
                         is_important: Optional[bool] = None, user: Optional[User] = None) -> CustomerNote:
    if note_text is not None:
        if not note_text.strip():
            raise ValidationFailed("Note text is required")
        note.note_text = note_text.strip()
    if is_important is not None:
        note.is_important = is_important
    note.updated_at = datetime.now(timezone.utc)
    note.updated_by = user.id if user else None
    db.flush()
    return note


def get_customer_notes_with_users(db: Session, customer: Customer) -> List[Dict[str, Any]]:
    notes = (
        db.query(CustomerNote)
        .filter(CustomerNote.customer_id == customer.id)
        .order_by(CustomerNote.created_at.desc())
        .all()
    )
    return [
        {
            "id": n.id,
            "note_text": n.note_text,
            "is_important": n.is_important,
            "created_at": n.created_at,
            "updated_at": n.updated_at,
            "created_by": n.created_by,
            "author_name": n.author.full_name if n.author else None,
        }
        for n in notes
    ]
