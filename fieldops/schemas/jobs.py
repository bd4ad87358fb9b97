import uuid
from datetime import date, datetime
from typing import List, Optional
from enum import Enum

from pydantic import BaseModel, Field, field_validator, model_validator


class JobType(str, Enum):
    delivery = "delivery"
    pickup = "pickup"
    partial_pickup = "partial-pickup"
    service = "service"
    on_site_survey = "on-site-survey"


class JobStatus(str, Enum):
    unassigned = "unassigned"
    assigned = "assigned"
    in_progress = "in_progress"
    completed = "completed"
    cancelled = "cancelled"


class EquipmentRequest(BaseModel):
    strategy: str = "bulk"  # bulk|specific
    product_id: Optional[uuid.UUID] = None
    quantity: int = Field(default=1, gt=0)
    item_ids: List[uuid.UUID] = []
    return_date: Optional[date] = None

    @model_validator(mode="after")
    def check_strategy(self):
        if self.strategy not in ("bulk", "specific"):
            raise ValueError("strategy must be bulk or specific")
        if self.strategy == "bulk" and self.product_id is None:
            raise ValueError("product_id is required for bulk equipment")
        if self.strategy == "specific" and not self.item_ids:
            raise ValueError("item_ids are required for specific equipment")
        return self


class JobConsumableRequest(BaseModel):
    consumable_id: uuid.UUID
    quantity: int = Field(gt=0)


class JobCreate(BaseModel):
    job_type: JobType
    customer_id: uuid.UUID
    scheduled_date: date
    scheduled_time: Optional[str] = None
    driver_id: Optional[uuid.UUID] = None
    vehicle_id: Optional[uuid.UUID] = None
    service_location_id: Optional[uuid.UUID] = None
    timezone: Optional[str] = None
    notes: Optional[str] = None
    special_instructions: Optional[str] = None
    quote_id: Optional[uuid.UUID] = None
    parent_job_id: Optional[uuid.UUID] = None
    total_price: Optional[float] = Field(default=None, ge=0)
    equipment: List[EquipmentRequest] = []
    billing_method: Optional[str] = None
    consumables: List[JobConsumableRequest] = []
    bundle_id: Optional[uuid.UUID] = None

    @field_validator("scheduled_time", "timezone", "notes", "special_instructions", mode="before")
    @classmethod
    def empty_to_none(cls, v):
        if v is None:
            return None
        v = str(v).strip()
        return v or None


class JobUpdate(BaseModel):
    scheduled_date: Optional[date] = None
    scheduled_time: Optional[str] = None
    driver_id: Optional[uuid.UUID] = None
    vehicle_id: Optional[uuid.UUID] = None
    notes: Optional[str] = None
    special_instructions: Optional[str] = None
    total_price: Optional[float] = Field(default=None, ge=0)


class JobStatusUpdate(BaseModel):
    status: JobStatus
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)
    notes: Optional[str] = None


class JobResponse(BaseModel):
    id: uuid.UUID
    job_number: str
    job_type: str
    customer_id: uuid.UUID
    service_location_id: Optional[uuid.UUID] = None
    driver_id: Optional[uuid.UUID] = None
    vehicle_id: Optional[uuid.UUID] = None
    scheduled_date: date
    scheduled_time: Optional[str] = None
    timezone: Optional[str] = None
    status: str
    notes: Optional[str] = None
    special_instructions: Optional[str] = None
    quote_id: Optional[uuid.UUID] = None
    parent_job_id: Optional[uuid.UUID] = None
    billing_method: Optional[str] = None
    total_price: Optional[float] = None
    actual_completion_time: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


class JobStatusLogResponse(BaseModel):
    id: uuid.UUID
    old_status: Optional[str] = None
    new_status: str
    changed_by: Optional[uuid.UUID] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    notes: Optional[str] = None
    changed_at: datetime

    class Config:
        from_attributes = True


class JobNoteCreate(BaseModel):
    note_text: str
    note_type: str = "general"


class JobNoteResponse(BaseModel):
    id: uuid.UUID
    job_id: uuid.UUID
    author_id: Optional[uuid.UUID] = None
    note_text: str
    note_type: str
    created_at: datetime

    class Config:
        from_attributes = True


class AssignmentResponse(BaseModel):
    id: uuid.UUID
    product_id: Optional[uuid.UUID] = None
    product_item_id: Optional[uuid.UUID] = None
    quantity: int
    assigned_date: date
    return_date: Optional[date] = None
    status: str

    class Config:
        from_attributes = True


class JobConsumablesRequest(BaseModel):
    billing_method: str
    items: List[JobConsumableRequest] = []
    bundle_id: Optional[uuid.UUID] = None
    bundle_quantity: int = Field(default=1, gt=0)


class JobConsumableResponse(BaseModel):
    id: uuid.UUID
    consumable_id: uuid.UUID
    quantity: int
    unit_price: float
    line_total: float
    billing_method: str

    class Config:
        from_attributes = True
