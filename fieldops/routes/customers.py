import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, UploadFile, File
from fastapi.responses import Response
from sqlalchemy.orm import Session

from ..db import get_db
from ..auth.security import require_permissions
from ..models.models import User, CustomerContact, CustomerServiceLocation, CustomerNote, ServiceRequest
from ..schemas.customers import (
    CustomerCreate,
    CustomerUpdate,
    CustomerResponse,
    CustomerType,
    ContactCreate,
    ContactUpdate,
    ContactResponse,
    ServiceLocationCreate,
    ServiceLocationUpdate,
    ServiceLocationResponse,
    NoteCreate,
    NoteUpdate,
    NoteResponse,
    CsvImportResult,
    PortalTokenCreate,
    PortalTokenResponse,
    ServiceRequestResponse,
    ServiceRequestStatusUpdate,
)
from ..services import customers as customer_service
from ..services import csv_io
from ..services.portal import generate_customer_portal_token, generate_enhanced_portal_token, update_service_request_status
from ..services.tenancy import get_scoped_or_404, scoped


router = APIRouter(prefix="/customers", tags=["customers"])
requests_router = APIRouter(prefix="/service-requests", tags=["customers"])


def _csv_response(content: str, filename: str) -> Response:
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


# ---------- CUSTOMERS ----------
@router.get("", response_model=List[CustomerResponse])
def list_customers(
    q: Optional[str] = Query(None),
    customer_type: Optional[CustomerType] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("customers:read")),
):
    """List customers, optionally searching name, email and phone"""
    return customer_service.search_customers(
        db, user.organization_id, q=q, customer_type=customer_type.value if customer_type else None,
        limit=limit, offset=offset,
    )


@router.get("/type-counts")
def customer_type_counts(
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("customers:read")),
):
    return customer_service.customer_type_counts(db, user.organization_id)


@router.get("/csv/template")
def customers_csv_template(_=Depends(require_permissions("customers:read"))):
    return _csv_response(csv_io.customer_csv_template(), "customers_template.csv")


@router.get("/csv/export")
def customers_csv_export(
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("customers:read")),
):
    return _csv_response(csv_io.export_customers_csv(db, user.organization_id), "customers.csv")


@router.post("/csv/import", response_model=CsvImportResult)
async def customers_csv_import(
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("customers:write")),
):
    content = await file.read()
    result = csv_io.import_customers_csv(db, user.organization_id, content)
    db.commit()
    return result


@router.post("", response_model=CustomerResponse)
def create_customer(
    payload: CustomerCreate,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("customers:write")),
):
    customer = customer_service.create_customer(db, user.organization_id, payload.model_dump(mode="json"))
    db.commit()
    db.refresh(customer)
    return customer


@router.get("/{customer_id}", response_model=CustomerResponse)
def get_customer(
    customer_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("customers:read")),
):
    return customer_service.get_customer(db, user.organization_id, customer_id)


@router.put("/{customer_id}", response_model=CustomerResponse)
def update_customer(
    customer_id: uuid.UUID,
    payload: CustomerUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("customers:write")),
):
    customer = customer_service.get_customer(db, user.organization_id, customer_id)
    data = payload.model_dump(mode="json", exclude_unset=True)
    if "name" in data and not (data["name"] or "").strip():
        raise HTTPException(status_code=400, detail="Customer name is required")
    customer_service.update_customer(db, customer, data)
    db.commit()
    db.refresh(customer)
    return customer


@router.delete("/{customer_id}")
def delete_customer(
    customer_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("customers:write")),
):
    customer = customer_service.get_customer(db, user.organization_id, customer_id)
    customer_service.soft_delete_customer(db, customer)
    db.commit()
    return {"status": "ok"}


# ---------- CONTACTS ----------
@router.get("/{customer_id}/contacts", response_model=List[ContactResponse])
def list_contacts(
    customer_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("customers:read")),
):
    customer = customer_service.get_customer(db, user.organization_id, customer_id)
    return (
        db.query(CustomerContact)
        .filter(CustomerContact.customer_id == customer.id)
        .order_by(CustomerContact.is_primary.desc(), CustomerContact.first_name)
        .all()
    )


@router.post("/{customer_id}/contacts", response_model=ContactResponse)
def create_contact(
    customer_id: uuid.UUID,
    payload: ContactCreate,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("customers:write")),
):
    customer = customer_service.get_customer(db, user.organization_id, customer_id)
    contact = customer_service.add_contact(db, customer, payload.model_dump())
    db.commit()
    db.refresh(contact)
    return contact


@router.put("/{customer_id}/contacts/{contact_id}", response_model=ContactResponse)
def update_contact(
    customer_id: uuid.UUID,
    contact_id: uuid.UUID,
    payload: ContactUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("customers:write")),
):
    customer = customer_service.get_customer(db, user.organization_id, customer_id)
    contact = (
        db.query(CustomerContact)
        .filter(CustomerContact.id == contact_id, CustomerContact.customer_id == customer.id)
        .first()
    )
    if not contact:
        raise HTTPException(status_code=404, detail="Contact not found")
    customer_service.update_contact(db, contact, payload.model_dump(exclude_unset=True))
    db.commit()
    db.refresh(contact)
    return contact


@router.delete("/{customer_id}/contacts/{contact_id}")
def delete_contact(
    customer_id: uuid.UUID,
    contact_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("customers:write")),
):
    customer = customer_service.get_customer(db, user.organization_id, customer_id)
    contact = (
        db.query(CustomerContact)
        .filter(CustomerContact.id == contact_id, CustomerContact.customer_id == customer.id)
        .first()
    )
    if not contact:
        raise HTTPException(status_code=404, detail="Contact not found")
    db.delete(contact)
    db.commit()
    return {"status": "ok"}


# ---------- SERVICE LOCATIONS ----------
@router.get("/{customer_id}/locations", response_model=List[ServiceLocationResponse])
def list_locations(
    customer_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("customers:read")),
):
    customer = customer_service.get_customer(db, user.organization_id, customer_id)
    return (
        db.query(CustomerServiceLocation)
        .filter(CustomerServiceLocation.customer_id == customer.id)
        .order_by(CustomerServiceLocation.is_default.desc(), CustomerServiceLocation.name)
        .all()
    )


@router.post("/{customer_id}/locations", response_model=ServiceLocationResponse)
def create_location(
    customer_id: uuid.UUID,
    payload: ServiceLocationCreate,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("customers:write")),
):
    customer = customer_service.get_customer(db, user.organization_id, customer_id)
    location = customer_service.add_service_location(db, customer, payload.model_dump())
    db.commit()
    db.refresh(location)
    return location


@router.put("/{customer_id}/locations/{location_id}", response_model=ServiceLocationResponse)
def update_location(
    customer_id: uuid.UUID,
    location_id: uuid.UUID,
    payload: ServiceLocationUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("customers:write")),
):
    customer = customer_service.get_customer(db, user.organization_id, customer_id)
    location = (
        db.query(CustomerServiceLocation)
        .filter(CustomerServiceLocation.id == location_id, CustomerServiceLocation.customer_id == customer.id)
        .first()
    )
    if not location:
        raise HTTPException(status_code=404, detail="Service location not found")
    customer_service.update_service_location(db, location, payload.model_dump(exclude_unset=True))
    db.commit()
    db.refresh(location)
    return location


# ---------- NOTES ----------
@router.get("/{customer_id}/notes", response_model=List[NoteResponse])
def list_notes(
    customer_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("customers:read")),
):
    customer = customer_service.get_customer(db, user.organization_id, customer_id)
    return [
        NoteResponse(customer_id=customer.id, **row)
        for row in customer_service.get_customer_notes_with_users(db, customer)
    ]


@router.post("/{customer_id}/notes", response_model=NoteResponse)
def create_note(
    customer_id: uuid.UUID,
    payload: NoteCreate,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("customers:write")),
):
    customer = customer_service.get_customer(db, user.organization_id, customer_id)
    note = customer_service.add_customer_note(db, customer, payload.note_text, payload.is_important, user=user)
    db.commit()
    db.refresh(note)
    return NoteResponse(
        id=note.id,
        customer_id=customer.id,
        note_text=note.note_text,
        is_important=note.is_important,
        created_by=note.created_by,
        author_name=user.full_name,
        created_at=note.created_at,
        updated_at=note.updated_at,
    )


@router.put("/{customer_id}/notes/{note_id}", response_model=NoteResponse)
def update_note(
    customer_id: uuid.UUID,
    note_id: uuid.UUID,
    payload: NoteUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("customers:write")),
):
    customer = customer_service.get_customer(db, user.organization_id, customer_id)
    note = db.query(CustomerNote).filter(CustomerNote.id == note_id, CustomerNote.customer_id == customer.id).first()
    if not note:
        raise HTTPException(status_code=404, detail="Note not found")
    customer_service.update_customer_note(db, note, payload.note_text, payload.is_important, user=user)
    db.commit()
    db.refresh(note)
    return NoteResponse(
        id=note.id,
        customer_id=customer.id,
        note_text=note.note_text,
        is_important=note.is_important,
        created_by=note.created_by,
        author_name=note.author.full_name if note.author else None,
        created_at=note.created_at,
        updated_at=note.updated_at,
    )


# ---------- PORTAL ----------
@router.post("/{customer_id}/portal-tokens", response_model=PortalTokenResponse)
def create_portal_token(
    customer_id: uuid.UUID,
    payload: PortalTokenCreate,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("customers:write")),
):
    """Without expiration_hours a long-lived link replaces the customer's previous ones."""
    customer = customer_service.get_customer(db, user.organization_id, customer_id)
    if payload.expiration_hours is None and not payload.one_time_use and not payload.features:
        token = generate_customer_portal_token(db, customer, user=user)
    else:
        token = generate_enhanced_portal_token(
            db,
            customer,
            expiration_hours=payload.expiration_hours or 72,
            one_time_use=payload.one_time_use,
            features=payload.features,
            user=user,
        )
    db.commit()
    db.refresh(token)
    return token


@requests_router.get("", response_model=List[ServiceRequestResponse])
def list_service_requests(
    status: Optional[str] = Query(None),
    customer_id: Optional[uuid.UUID] = Query(None),
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("customers:read")),
):
    query = scoped(db, ServiceRequest, user.organization_id)
    if status:
        query = query.filter(ServiceRequest.status == status)
    if customer_id:
        query = query.filter(ServiceRequest.customer_id == customer_id)
    return query.order_by(ServiceRequest.created_at.desc()).limit(500).all()


@requests_router.put("/{request_id}/status", response_model=ServiceRequestResponse)
def update_request_status(
    request_id: uuid.UUID,
    payload: ServiceRequestStatusUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("customers:write")),
):
    req = get_scoped_or_404(db, ServiceRequest, request_id, user.organization_id, "Service request")
    update_service_request_status(db, req, payload.status)
    db.commit()
    db.refresh(req)
    return req
