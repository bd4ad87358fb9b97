import uuid
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator
import enum


class ItemStatus(str, enum.Enum):
    available = "available"
    assigned = "assigned"
    deployed = "deployed"
    maintenance = "maintenance"
    retired = "retired"


class StorageLocationBase(BaseModel):
    name: str
    address: Optional[str] = None
    description: Optional[str] = None
    is_default: bool = False

    @field_validator("address", "description", mode="before")
    @classmethod
    def empty_str_to_none(cls, v):
        if v is None:
            return None
        v = str(v).strip()
        return v or None


class StorageLocationCreate(StorageLocationBase):
    pass


class StorageLocationResponse(StorageLocationBase):
    id: uuid.UUID
    is_active: bool

    class Config:
        from_attributes = True


class ProductBase(BaseModel):
    name: str
    description: Optional[str] = None
    low_stock_threshold: Optional[int] = Field(default=None, ge=0)
    track_inventory: bool = True
    default_storage_location_id: Optional[uuid.UUID] = None
    default_price_per_day: Optional[float] = Field(default=None, ge=0)
    fixed_price: Optional[float] = Field(default=None, ge=0)


class ProductCreate(ProductBase):
    stock_total: int = Field(default=0, ge=0)


class ProductUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    low_stock_threshold: Optional[int] = Field(default=None, ge=0)
    track_inventory: Optional[bool] = None
    default_storage_location_id: Optional[uuid.UUID] = None
    default_price_per_day: Optional[float] = Field(default=None, ge=0)
    fixed_price: Optional[float] = Field(default=None, ge=0)


class ProductResponse(ProductBase):
    id: uuid.UUID
    stock_total: int
    created_at: datetime

    class Config:
        from_attributes = True


class ProductItemResponse(BaseModel):
    id: uuid.UUID
    product_id: uuid.UUID
    item_code: str
    status: str
    current_storage_location_id: Optional[uuid.UUID] = None
    condition: Optional[str] = None
    color: Optional[str] = None
    notes: Optional[str] = None

    class Config:
        from_attributes = True


class ProductItemUpdate(BaseModel):
    status: Optional[ItemStatus] = None
    current_storage_location_id: Optional[uuid.UUID] = None
    condition: Optional[str] = None
    color: Optional[str] = None
    notes: Optional[str] = None


class StockAdjustRequest(BaseModel):
    quantity_change: int
    reason: str
    notes: Optional[str] = None

    @field_validator("quantity_change")
    @classmethod
    def non_zero(cls, v):
        if v == 0:
            raise ValueError("quantity_change must be non-zero")
        return v


class QuantityRequest(BaseModel):
    quantity: int = Field(gt=0)


class LocationTransferRequest(BaseModel):
    from_location_id: uuid.UUID
    to_location_id: uuid.UUID
    quantity: int = Field(gt=0)
    reason: Optional[str] = None


class StockAdjustmentResponse(BaseModel):
    id: uuid.UUID
    quantity_change: int
    previous_quantity: int
    new_quantity: int
    reason: str
    notes: Optional[str] = None
    adjusted_by: Optional[uuid.UUID] = None
    created_at: datetime

    class Config:
        from_attributes = True


# Consumables
class ConsumableBase(BaseModel):
    name: str
    category: str = "other"
    sku: Optional[str] = None
    unit_cost: float = Field(default=0.0, ge=0)
    unit_price: float = Field(default=0.0, ge=0)
    reorder_threshold: int = Field(default=0, ge=0)
    default_storage_location_id: Optional[uuid.UUID] = None


class ConsumableCreate(ConsumableBase):
    on_hand_qty: int = Field(default=0, ge=0)


class ConsumableUpdate(BaseModel):
    name: Optional[str] = None
    category: Optional[str] = None
    sku: Optional[str] = None
    unit_cost: Optional[float] = Field(default=None, ge=0)
    unit_price: Optional[float] = Field(default=None, ge=0)
    reorder_threshold: Optional[int] = Field(default=None, ge=0)
    default_storage_location_id: Optional[uuid.UUID] = None
    is_active: Optional[bool] = None


class ConsumableResponse(ConsumableBase):
    id: uuid.UUID
    on_hand_qty: int
    is_active: bool

    class Config:
        from_attributes = True


class ConsumableAdjustRequest(BaseModel):
    quantity_change: int
    adjustment_type: str = "adjust"
    location_id: Optional[uuid.UUID] = None
    reason: Optional[str] = None


class ConsumableLedgerEntry(BaseModel):
    id: uuid.UUID
    storage_location_id: Optional[uuid.UUID] = None
    adjustment_type: str
    previous_quantity: int
    quantity_change: int
    new_quantity: int
    reason: Optional[str] = None
    reference_id: Optional[uuid.UUID] = None
    adjusted_by: Optional[uuid.UUID] = None
    created_at: datetime

    class Config:
        from_attributes = True


class BundleItemIn(BaseModel):
    consumable_id: uuid.UUID
    quantity: int = Field(default=1, gt=0)


class BundleCreate(BaseModel):
    name: str
    description: Optional[str] = None
    price: Optional[float] = Field(default=None, ge=0)
    items: List[BundleItemIn] = []


class BundleItemResponse(BaseModel):
    consumable_id: uuid.UUID
    quantity: int

    class Config:
        from_attributes = True


class BundleResponse(BaseModel):
    id: uuid.UUID
    name: str
    description: Optional[str] = None
    price: Optional[float] = None
    items: List[BundleItemResponse] = []

    class Config:
        from_attributes = True
