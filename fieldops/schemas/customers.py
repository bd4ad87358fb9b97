import uuid
from datetime import date, datetime
from typing import Optional, List
from enum import Enum

from pydantic import BaseModel, EmailStr, Field, field_validator


class CustomerType(str, Enum):
    events_festivals = "events_festivals"
    sports_recreation = "sports_recreation"
    municipal_government = "municipal_government"
    commercial = "commercial"
    construction = "construction"
    emergency_disaster_relief = "emergency_disaster_relief"
    private_events_weddings = "private_events_weddings"
    not_selected = "not_selected"


class CustomerBase(BaseModel):
    name: str
    customer_type: CustomerType = CustomerType.not_selected
    email: Optional[EmailStr] = None
    phone: Optional[str] = None

    # Service address
    service_street: Optional[str] = None
    service_street2: Optional[str] = None
    service_city: Optional[str] = None
    service_state: Optional[str] = None
    service_zip: Optional[str] = None

    # Billing address
    billing_differs_from_service: bool = False
    billing_street: Optional[str] = None
    billing_street2: Optional[str] = None
    billing_city: Optional[str] = None
    billing_state: Optional[str] = None
    billing_zip: Optional[str] = None

    deposit_required: bool = False
    credit_not_approved: bool = False
    important_information: Optional[str] = None
    notes: Optional[str] = None

    @field_validator('email', 'phone', 'service_street', 'service_street2', 'service_city', 'service_state', 'service_zip', 'billing_street', 'billing_street2', 'billing_city', 'billing_state', 'billing_zip', 'important_information', 'notes', mode='before')
    @classmethod
    def empty_to_none(cls, v):
        if v is None:
            return None
        v = str(v).strip()
        return v or None


class CustomerCreate(CustomerBase):
    @field_validator('name')
    @classmethod
    def name_required(cls, v):
        v = (v or "").strip()
        if not v:
            raise ValueError("name is required")
        return v


class CustomerUpdate(BaseModel):
    name: Optional[str] = None
    customer_type: Optional[CustomerType] = None
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    service_street: Optional[str] = None
    service_street2: Optional[str] = None
    service_city: Optional[str] = None
    service_state: Optional[str] = None
    service_zip: Optional[str] = None
    billing_differs_from_service: Optional[bool] = None
    billing_street: Optional[str] = None
    billing_street2: Optional[str] = None
    billing_city: Optional[str] = None
    billing_state: Optional[str] = None
    billing_zip: Optional[str] = None
    deposit_required: Optional[bool] = None
    credit_not_approved: Optional[bool] = None
    important_information: Optional[str] = None
    notes: Optional[str] = None


class CustomerResponse(CustomerBase):
    id: uuid.UUID
    email: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# Contacts
class ContactCreate(BaseModel):
    first_name: str
    last_name: Optional[str] = None
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    title: Optional[str] = None
    is_primary: bool = False


class ContactUpdate(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    title: Optional[str] = None
    is_primary: Optional[bool] = None


class ContactResponse(BaseModel):
    id: uuid.UUID
    customer_id: uuid.UUID
    first_name: str
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    title: Optional[str] = None
    is_primary: bool

    class Config:
        from_attributes = True


# Service locations
class ServiceLocationCreate(BaseModel):
    name: str
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip: Optional[str] = None
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)
    timezone: Optional[str] = None
    is_default: bool = False
    access_instructions: Optional[str] = None


class ServiceLocationUpdate(BaseModel):
    name: Optional[str] = None
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip: Optional[str] = None
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)
    timezone: Optional[str] = None
    is_default: Optional[bool] = None
    access_instructions: Optional[str] = None


class ServiceLocationResponse(ServiceLocationCreate):
    id: uuid.UUID
    customer_id: uuid.UUID

    class Config:
        from_attributes = True


# Notes
class NoteCreate(BaseModel):
    note_text: str
    is_important: bool = False


class NoteUpdate(BaseModel):
    note_text: Optional[str] = None
    is_important: Optional[bool] = None


class NoteResponse(BaseModel):
    id: uuid.UUID
    customer_id: uuid.UUID
    note_text: str
    is_important: bool
    created_by: Optional[uuid.UUID] = None
    author_name: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None


class CsvImportResult(BaseModel):
    success: int
    failed: int
    errors: List[dict] = []


# Portal
class PortalTokenCreate(BaseModel):
    expiration_hours: Optional[int] = Field(default=None, gt=0)
    one_time_use: bool = False
    features: Optional[List[str]] = None


class PortalTokenResponse(BaseModel):
    id: uuid.UUID
    customer_id: uuid.UUID
    token: str
    expires_at: Optional[datetime] = None
    one_time_use: bool
    features: Optional[List[str]] = None
    is_active: bool

    class Config:
        from_attributes = True


class ServiceRequestCreate(BaseModel):
    request_type: str
    description: str
    preferred_date: Optional[date] = None
    location_id: Optional[uuid.UUID] = None
    contact_name: Optional[str] = None
    contact_phone: Optional[str] = None


class ServiceRequestStatusUpdate(BaseModel):
    status: str


class ServiceRequestResponse(BaseModel):
    id: uuid.UUID
    customer_id: uuid.UUID
    request_type: str
    description: str
    preferred_date: Optional[date] = None
    location_id: Optional[uuid.UUID] = None
    contact_name: Optional[str] = None
    contact_phone: Optional[str] = None
    status: str
    created_at: datetime

    class Config:
        from_attributes = True
