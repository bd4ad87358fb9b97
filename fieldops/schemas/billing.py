import uuid
from datetime import date, datetime
from typing import List, Optional
from enum import Enum

from pydantic import BaseModel, Field


class DiscountType(str, Enum):
    percentage = "percentage"
    fixed = "fixed"


class QuoteStatus(str, Enum):
    draft = "draft"
    sent = "sent"
    accepted = "accepted"
    declined = "declined"
    expired = "expired"


class PaymentMethod(str, Enum):
    cash = "cash"
    check = "check"
    card = "card"
    ach = "ach"
    other = "other"


class QuoteItemIn(BaseModel):
    product_id: Optional[uuid.UUID] = None
    name: Optional[str] = None
    description: Optional[str] = None
    quantity: float = Field(default=1, ge=0)
    unit_price: float = Field(default=0.0, ge=0)
    line_item_type: Optional[str] = None  # inventory|service|fee
    rental_start_date: Optional[date] = None
    rental_end_date: Optional[date] = None
    service_frequency: Optional[str] = None


class QuoteCreate(BaseModel):
    customer_id: uuid.UUID
    discount_type: Optional[DiscountType] = None
    discount_value: float = Field(default=0.0, ge=0)
    additional_fees: float = Field(default=0.0, ge=0)
    tax_rate: Optional[float] = Field(default=None, ge=0, le=100)
    expiration_date: Optional[date] = None
    terms: Optional[str] = None
    notes: Optional[str] = None
    items: List[QuoteItemIn] = []


class QuoteUpdate(BaseModel):
    discount_type: Optional[DiscountType] = None
    discount_value: Optional[float] = Field(default=None, ge=0)
    additional_fees: Optional[float] = Field(default=None, ge=0)
    tax_rate: Optional[float] = Field(default=None, ge=0, le=100)
    expiration_date: Optional[date] = None
    terms: Optional[str] = None
    notes: Optional[str] = None
    items: Optional[List[QuoteItemIn]] = None


class QuoteItemResponse(BaseModel):
    id: uuid.UUID
    product_id: Optional[uuid.UUID] = None
    name: str
    description: Optional[str] = None
    quantity: float
    unit_price: float
    line_total: float
    line_item_type: str
    rental_start_date: Optional[date] = None
    rental_end_date: Optional[date] = None
    service_frequency: Optional[str] = None

    class Config:
        from_attributes = True


class QuoteResponse(BaseModel):
    id: uuid.UUID
    quote_number: str
    customer_id: uuid.UUID
    status: str
    subtotal: float
    discount_type: Optional[str] = None
    discount_value: float
    discount_amount: float
    additional_fees: float
    tax_rate: float
    tax_amount: float
    total_amount: float
    expiration_date: Optional[date] = None
    terms: Optional[str] = None
    notes: Optional[str] = None
    sent_at: Optional[datetime] = None
    created_at: datetime
    items: List[QuoteItemResponse] = []

    class Config:
        from_attributes = True


class QuoteStatusUpdate(BaseModel):
    status: QuoteStatus


class QuoteSendRequest(BaseModel):
    to: Optional[str] = None


class GenerateJobsRequest(BaseModel):
    driver_id: Optional[uuid.UUID] = None


class InvoiceItemIn(BaseModel):
    product_id: Optional[uuid.UUID] = None
    name: str
    description: Optional[str] = None
    quantity: float = Field(default=1, ge=0)
    unit_price: float = Field(default=0.0, ge=0)


class InvoiceCreate(BaseModel):
    customer_id: uuid.UUID
    job_id: Optional[uuid.UUID] = None
    items: List[InvoiceItemIn] = []
    discount_type: Optional[DiscountType] = None
    discount_value: float = Field(default=0.0, ge=0)
    additional_fees: float = Field(default=0.0, ge=0)
    tax_rate: Optional[float] = Field(default=None, ge=0, le=100)
    due_date: Optional[date] = None
    notes: Optional[str] = None


class InvoiceItemResponse(BaseModel):
    id: uuid.UUID
    product_id: Optional[uuid.UUID] = None
    name: str
    description: Optional[str] = None
    quantity: float
    unit_price: float
    line_total: float

    class Config:
        from_attributes = True


class PaymentCreate(BaseModel):
    amount: float = Field(gt=0)
    method: PaymentMethod = PaymentMethod.other
    reference: Optional[str] = None


class PaymentResponse(BaseModel):
    id: uuid.UUID
    invoice_id: uuid.UUID
    amount: float
    method: str
    reference: Optional[str] = None
    paid_at: datetime

    class Config:
        from_attributes = True


class InvoiceResponse(BaseModel):
    id: uuid.UUID
    invoice_number: str
    customer_id: uuid.UUID
    quote_id: Optional[uuid.UUID] = None
    job_id: Optional[uuid.UUID] = None
    status: str
    subtotal: float
    discount_amount: float
    additional_fees: float
    tax_rate: float
    tax_amount: float
    amount: float
    amount_paid: float
    balance_due: float
    issue_date: date
    due_date: Optional[date] = None
    notes: Optional[str] = None
    created_at: datetime
    items: List[InvoiceItemResponse] = []
    payments: List[PaymentResponse] = []

    class Config:
        from_attributes = True


class DismissOverdueRequest(BaseModel):
    reason: Optional[str] = None
