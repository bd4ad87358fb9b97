import uuid
from datetime import datetime
from typing import Optional, List
from enum import Enum

from pydantic import BaseModel, EmailStr, Field, field_validator


class RoleName(str, Enum):
    owner = "owner"
    admin = "admin"
    dispatcher = "dispatcher"
    driver = "driver"
    customer = "customer"


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class RefreshRequest(BaseModel):
    refresh_token: str


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"


class MeResponse(BaseModel):
    id: uuid.UUID
    email: EmailStr
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    organization_id: uuid.UUID
    roles: List[str] = []
    permissions: List[str] = []


class InviteRequest(BaseModel):
    email: EmailStr
    role: RoleName = RoleName.driver
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None

    @field_validator('first_name', 'last_name', 'phone', mode='before')
    @classmethod
    def empty_to_none(cls, v):
        if v is None:
            return None
        v = str(v).strip()
        return v or None


class InviteResponse(BaseModel):
    id: uuid.UUID
    email: EmailStr
    role: str
    status: str
    expires_at: datetime
    email_status: Optional[str] = None

    class Config:
        from_attributes = True


class InviteInfo(BaseModel):
    email: EmailStr
    role: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    organization_name: str
    expires_at: datetime


class RegisterRequest(BaseModel):
    invite_token: str
    password: str = Field(min_length=8)
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None


# Organizations
class OrganizationPublic(BaseModel):
    id: uuid.UUID
    name: str
    subdomain: str
    company_name: Optional[str] = None
    timezone: str

    class Config:
        from_attributes = True


class OrganizationResponse(OrganizationPublic):
    support_email: Optional[str] = None
    qr_feedback_email: Optional[str] = None
    phone: Optional[str] = None
    default_tax_rate: float = 0.0
    invoice_due_days: int = 30
    spill_kit_required_items: Optional[List[str]] = None
    delivery_prefix: str
    pickup_prefix: str
    partial_pickup_prefix: str
    service_prefix: str
    survey_prefix: str
    quote_prefix: str
    invoice_prefix: str
    work_order_prefix: str


class OrganizationSettingsUpdate(BaseModel):
    name: Optional[str] = None
    company_name: Optional[str] = None
    support_email: Optional[EmailStr] = None
    qr_feedback_email: Optional[EmailStr] = None
    phone: Optional[str] = None
    timezone: Optional[str] = None
    default_tax_rate: Optional[float] = Field(default=None, ge=0, le=100)
    invoice_due_days: Optional[int] = Field(default=None, ge=0)
    spill_kit_required_items: Optional[List[str]] = None
    delivery_prefix: Optional[str] = None
    pickup_prefix: Optional[str] = None
    partial_pickup_prefix: Optional[str] = None
    service_prefix: Optional[str] = None
    survey_prefix: Optional[str] = None
    quote_prefix: Optional[str] = None
    invoice_prefix: Optional[str] = None
    work_order_prefix: Optional[str] = None


# Notifications
class QuietHours(BaseModel):
    start: str
    end: str
    timezone: Optional[str] = None


class NotificationPreferenceUpdate(BaseModel):
    email: Optional[bool] = None
    sms: Optional[bool] = None
    push: Optional[bool] = None
    quiet_hours: Optional[QuietHours] = None


class NotificationPreferenceResponse(BaseModel):
    email: bool = True
    sms: bool = True
    push: bool = True
    quiet_hours: Optional[QuietHours] = None

    class Config:
        from_attributes = True


class NotificationLogResponse(BaseModel):
    id: uuid.UUID
    channel: str
    recipient: str
    subject: Optional[str] = None
    status: str
    error: Optional[str] = None
    related_entity: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class TestNotificationRequest(BaseModel):
    channel: str = "email"
    message: str = "This is a test notification."


class AuditLogResponse(BaseModel):
    id: uuid.UUID
    entity_type: str
    entity_id: uuid.UUID
    action: str
    actor_id: Optional[uuid.UUID] = None
    actor_role: Optional[str] = None
    source: Optional[str] = None
    changes_json: Optional[dict] = None
    context: Optional[dict] = None
    timestamp_utc: datetime
    integrity_hash: Optional[str] = None

    class Config:
        from_attributes = True
