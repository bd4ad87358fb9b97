"""
Pydantic schemas for fleet, maintenance, work orders and compliance.
"""
from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from datetime import datetime, date
import uuid
from enum import Enum


class VehicleStatus(str, Enum):
    active = "active"
    maintenance = "maintenance"
    out_of_service = "out_of_service"
    retired = "retired"


class WorkOrderPriority(str, Enum):
    low = "low"
    normal = "normal"
    high = "high"
    critical = "critical"


class WorkOrderStatus(str, Enum):
    open = "open"
    in_progress = "in_progress"
    awaiting_parts = "awaiting_parts"
    vendor = "vendor"
    on_hold = "on_hold"
    verification = "verification"
    completed = "completed"


class PartSource(str, Enum):
    truck_stock = "truck_stock"
    warehouse = "warehouse"
    vendor = "vendor"


class FuelSourceType(str, Enum):
    retail = "retail"
    yard_tank = "yard_tank"
    mobile_vendor = "mobile_vendor"


# Vehicle Schemas
class VehicleBase(BaseModel):
    license_plate: str
    vin: Optional[str] = None
    make: Optional[str] = None
    model: Optional[str] = None
    year: Optional[int] = None
    nickname: Optional[str] = None
    vehicle_type: Optional[str] = None
    fuel_type: Optional[str] = None
    current_mileage: Optional[int] = Field(default=None, ge=0)
    current_hours: Optional[float] = Field(default=None, ge=0)
    maintenance_interval_miles: Optional[int] = Field(default=None, gt=0)
    next_maintenance_due_miles: Optional[int] = None
    next_maintenance_due_date: Optional[date] = None
    registration_expiry: Optional[date] = None
    insurance_expiry: Optional[date] = None
    notes: Optional[str] = None


class VehicleCreate(VehicleBase):
    status: VehicleStatus = VehicleStatus.active


class VehicleUpdate(BaseModel):
    license_plate: Optional[str] = None
    vin: Optional[str] = None
    make: Optional[str] = None
    model: Optional[str] = None
    year: Optional[int] = None
    nickname: Optional[str] = None
    vehicle_type: Optional[str] = None
    fuel_type: Optional[str] = None
    status: Optional[VehicleStatus] = None
    current_mileage: Optional[int] = Field(default=None, ge=0)
    current_hours: Optional[float] = Field(default=None, ge=0)
    maintenance_interval_miles: Optional[int] = Field(default=None, gt=0)
    next_maintenance_due_miles: Optional[int] = None
    next_maintenance_due_date: Optional[date] = None
    registration_expiry: Optional[date] = None
    insurance_expiry: Optional[date] = None
    notes: Optional[str] = None


class VehicleResponse(VehicleBase):
    id: uuid.UUID
    status: str
    created_at: datetime
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# Documents
class VehicleDocumentCreate(BaseModel):
    document_type: str
    name: str
    document_number: Optional[str] = None
    issue_date: Optional[date] = None
    expiry_date: Optional[date] = None
    file_url: Optional[str] = None


class VehicleDocumentResponse(VehicleDocumentCreate):
    id: uuid.UUID
    vehicle_id: uuid.UUID
    created_at: datetime

    class Config:
        from_attributes = True


# Maintenance
class MaintenanceRecordCreate(BaseModel):
    maintenance_type: str = "other"
    description: Optional[str] = None
    service_date: Optional[date] = None
    mileage: Optional[int] = Field(default=None, ge=0)
    cost: float = Field(default=0.0, ge=0)
    vendor_id: Optional[uuid.UUID] = None
    work_order_id: Optional[uuid.UUID] = None


class MaintenanceRecordResponse(BaseModel):
    id: uuid.UUID
    vehicle_id: uuid.UUID
    maintenance_type: str
    description: Optional[str] = None
    service_date: date
    mileage: Optional[int] = None
    cost: float
    vendor_id: Optional[uuid.UUID] = None
    work_order_id: Optional[uuid.UUID] = None
    created_at: datetime

    class Config:
        from_attributes = True


class PMScheduleCreate(BaseModel):
    task_name: str
    interval_miles: Optional[int] = Field(default=None, gt=0)
    interval_days: Optional[int] = Field(default=None, gt=0)
    last_done_mileage: Optional[int] = Field(default=None, ge=0)
    last_done_date: Optional[date] = None


class PMScheduleResponse(PMScheduleCreate):
    id: uuid.UUID
    vehicle_id: uuid.UUID
    is_active: bool

    class Config:
        from_attributes = True


class PMCompleteRequest(BaseModel):
    mileage: Optional[int] = Field(default=None, ge=0)
    done_date: Optional[date] = None
    cost: float = Field(default=0.0, ge=0)
    notes: Optional[str] = None


# DVIR
class DefectIn(BaseModel):
    item: str
    severity: str = "minor"
    notes: Optional[str] = None


class DVIRCreate(BaseModel):
    vehicle_id: uuid.UUID
    inspection_type: str = "pre_trip"
    odometer: Optional[int] = Field(default=None, ge=0)
    checklist_results: Dict[str, str] = {}
    defects: List[DefectIn] = []
    vehicle_safe_to_operate: bool = True
    signature_name: Optional[str] = None
    notes: Optional[str] = None


class DVIRResponse(BaseModel):
    id: uuid.UUID
    vehicle_id: uuid.UUID
    driver_id: Optional[uuid.UUID] = None
    inspection_type: str
    odometer: Optional[int] = None
    checklist_results: Optional[Dict[str, Any]] = None
    defects: Optional[List[Dict[str, Any]]] = None
    status: str
    vehicle_safe_to_operate: bool
    signature_name: Optional[str] = None
    notes: Optional[str] = None
    auto_generated_work_order_id: Optional[uuid.UUID] = None
    submitted_at: datetime

    class Config:
        from_attributes = True


# Fuel
class FuelLogCreate(BaseModel):
    vehicle_id: uuid.UUID
    driver_id: Optional[uuid.UUID] = None
    log_date: Optional[date] = None
    gallons: float = Field(gt=0)
    cost_per_gallon: Optional[float] = Field(default=None, ge=0)
    total_cost: Optional[float] = Field(default=None, ge=0)
    odometer_reading: Optional[int] = Field(default=None, ge=0)
    fuel_station: Optional[str] = None
    source_type: FuelSourceType = FuelSourceType.retail
    notes: Optional[str] = None


class FuelLogResponse(BaseModel):
    id: uuid.UUID
    vehicle_id: uuid.UUID
    driver_id: Optional[uuid.UUID] = None
    log_date: date
    gallons: float
    cost_per_gallon: Optional[float] = None
    total_cost: float
    odometer_reading: Optional[int] = None
    fuel_station: Optional[str] = None
    source_type: str
    notes: Optional[str] = None

    class Config:
        from_attributes = True


# Work orders
class WorkOrderCreate(BaseModel):
    asset_id: uuid.UUID
    asset_type: str = "vehicle"
    description: str
    priority: WorkOrderPriority = WorkOrderPriority.normal
    due_date: Optional[date] = None
    assigned_to: Optional[uuid.UUID] = None
    vendor_id: Optional[uuid.UUID] = None
    meter_open_miles: Optional[int] = Field(default=None, ge=0)
    meter_open_hours: Optional[float] = Field(default=None, ge=0)
    driver_verification_required: bool = False
    labor_cost: float = Field(default=0.0, ge=0)


class WorkOrderUpdate(BaseModel):
    description: Optional[str] = None
    priority: Optional[WorkOrderPriority] = None
    due_date: Optional[date] = None
    assigned_to: Optional[uuid.UUID] = None
    vendor_id: Optional[uuid.UUID] = None
    resolution_notes: Optional[str] = None
    meter_close_miles: Optional[int] = Field(default=None, ge=0)
    meter_close_hours: Optional[float] = Field(default=None, ge=0)
    driver_verification_required: Optional[bool] = None
    labor_cost: Optional[float] = Field(default=None, ge=0)


class WorkOrderStatusUpdate(BaseModel):
    status: WorkOrderStatus
    message: Optional[str] = None


class WorkOrderPartCreate(BaseModel):
    part_id: Optional[uuid.UUID] = None
    name: Optional[str] = None
    quantity: int = Field(default=1, gt=0)
    unit_cost: Optional[float] = Field(default=None, ge=0)
    source: PartSource = PartSource.warehouse


class WorkOrderPartResponse(BaseModel):
    id: uuid.UUID
    part_id: Optional[uuid.UUID] = None
    name: str
    quantity: int
    unit_cost: float
    source: str
    on_hand_qty: Optional[int] = None


class WorkOrderHistoryResponse(BaseModel):
    id: uuid.UUID
    from_status: Optional[str] = None
    to_status: str
    message: str
    changed_by: Optional[uuid.UUID] = None
    created_at: datetime

    class Config:
        from_attributes = True


class WorkOrderResponse(BaseModel):
    id: uuid.UUID
    work_order_number: str
    asset_id: uuid.UUID
    asset_type: str
    source: str
    source_id: Optional[uuid.UUID] = None
    priority: str
    status: str
    description: str
    due_date: Optional[date] = None
    assigned_to: Optional[uuid.UUID] = None
    vendor_id: Optional[uuid.UUID] = None
    technician_signature: Optional[Dict[str, Any]] = None
    resolution_notes: Optional[str] = None
    meter_open_miles: Optional[int] = None
    meter_close_miles: Optional[int] = None
    meter_open_hours: Optional[float] = None
    meter_close_hours: Optional[float] = None
    driver_verification_required: bool
    driver_verification: Optional[Dict[str, Any]] = None
    labor_cost: float
    created_at: datetime
    closed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class WorkOrderDetail(WorkOrderResponse):
    parts: List[WorkOrderPartResponse] = []
    history: List[WorkOrderHistoryResponse] = []
    total_cost: float = 0.0
    rules: Dict[str, Any] = {}


class SignatureRequest(BaseModel):
    name: Optional[str] = None


class MaintenancePartCreate(BaseModel):
    name: str
    sku: Optional[str] = None
    quantity_on_hand: int = Field(default=0, ge=0)
    unit_cost: float = Field(default=0.0, ge=0)
    reorder_level: int = Field(default=0, ge=0)


class MaintenancePartResponse(MaintenancePartCreate):
    id: uuid.UUID

    class Config:
        from_attributes = True


class VendorCreate(BaseModel):
    name: str
    contact_name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None


class VendorResponse(VendorCreate):
    id: uuid.UUID
    is_active: bool

    class Config:
        from_attributes = True


# Compliance
class SpillKitCheckCreate(BaseModel):
    vehicle_id: uuid.UUID
    has_kit: bool = True
    contents: Dict[str, bool] = {}
    kit_expiration_date: Optional[date] = None
    notes: Optional[str] = None


class SpillKitCheckResponse(BaseModel):
    id: uuid.UUID
    vehicle_id: uuid.UUID
    checked_by: Optional[uuid.UUID] = None
    checked_at: datetime
    has_kit: bool
    contents: Optional[Dict[str, Any]] = None
    missing_items: Optional[List[str]] = None
    kit_expiration_date: Optional[date] = None
    status: str
    notes: Optional[str] = None

    class Config:
        from_attributes = True


class SpillIncidentCreate(BaseModel):
    vehicle_id: Optional[uuid.UUID] = None
    job_id: Optional[uuid.UUID] = None
    driver_id: Optional[uuid.UUID] = None
    occurred_at: Optional[datetime] = None
    material: str
    quantity_gallons: float = Field(default=0.0, ge=0)
    location_description: Optional[str] = None
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)
    cleanup_actions: Optional[str] = None
    reported_to_authorities: bool = False


class SpillIncidentClose(BaseModel):
    cleanup_actions: Optional[str] = None


class SpillIncidentResponse(BaseModel):
    id: uuid.UUID
    vehicle_id: Optional[uuid.UUID] = None
    job_id: Optional[uuid.UUID] = None
    driver_id: Optional[uuid.UUID] = None
    occurred_at: datetime
    material: str
    quantity_gallons: float
    location_description: Optional[str] = None
    cleanup_actions: Optional[str] = None
    reported_to_authorities: bool
    status: str
    closed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class DriverCredentialUpdate(BaseModel):
    license_number: Optional[str] = None
    license_class: Optional[str] = None
    license_expiry_date: Optional[date] = None
    medical_card_expiry_date: Optional[date] = None
    training_next_due: Optional[date] = None


class DriverCredentialResponse(DriverCredentialUpdate):
    id: uuid.UUID
    driver_id: uuid.UUID
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True
