import uuid
from datetime import datetime
from typing import List, Optional
from enum import Enum

from pydantic import BaseModel, EmailStr, field_validator


class Channel(str, Enum):
    email = "email"
    sms = "sms"


class FeedbackType(str, Enum):
    assistance = "assistance"
    comment = "comment"


class CommunicationTemplateCreate(BaseModel):
    name: str
    channel: Channel
    subject: Optional[str] = None
    body: str


class CommunicationTemplateUpdate(BaseModel):
    name: Optional[str] = None
    subject: Optional[str] = None
    body: Optional[str] = None


class CommunicationTemplateResponse(BaseModel):
    id: uuid.UUID
    name: str
    channel: str
    subject: Optional[str] = None
    body: str
    created_at: datetime

    class Config:
        from_attributes = True


class CampaignCreate(BaseModel):
    name: str
    channel: Channel
    template_id: Optional[uuid.UUID] = None
    subject: Optional[str] = None
    body: Optional[str] = None
    target_customer_types: Optional[List[str]] = None
    status: str = "draft"
    scheduled_at: Optional[datetime] = None


class CampaignUpdate(BaseModel):
    name: Optional[str] = None
    template_id: Optional[uuid.UUID] = None
    subject: Optional[str] = None
    body: Optional[str] = None
    target_customer_types: Optional[List[str]] = None
    status: Optional[str] = None
    scheduled_at: Optional[datetime] = None


class CampaignResponse(BaseModel):
    id: uuid.UUID
    name: str
    channel: str
    template_id: Optional[uuid.UUID] = None
    subject: Optional[str] = None
    body: Optional[str] = None
    target_customer_types: Optional[List[str]] = None
    status: str
    scheduled_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    recipients_count: int
    delivered_count: int
    failed_count: int
    created_at: datetime

    class Config:
        from_attributes = True


class QRFeedbackCreate(BaseModel):
    product_item_id: uuid.UUID
    feedback_type: FeedbackType
    customer_message: str
    customer_email: Optional[EmailStr] = None
    customer_phone: Optional[str] = None
    photo_url: Optional[str] = None

    @field_validator("customer_email", "customer_phone", "photo_url", mode="before")
    @classmethod
    def empty_to_none(cls, v):
        if v is None:
            return None
        v = str(v).strip()
        return v or None


class QRFeedbackResponse(BaseModel):
    id: uuid.UUID
    product_item_id: uuid.UUID
    feedback_type: str
    customer_message: str
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    photo_url: Optional[str] = None
    is_read: bool
    created_at: datetime

    class Config:
        from_attributes = True
