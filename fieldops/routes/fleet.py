import uuid
from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ..db import get_db
from ..auth.security import require_permissions
from ..models.models import (
    User,
    Vehicle,
    VehicleDocument,
    MaintenanceRecord,
    PMSchedule,
    VehicleInspection,
    FuelLog,
)
from ..schemas.fleet import (
    VehicleCreate,
    VehicleUpdate,
    VehicleResponse,
    VehicleStatus,
    VehicleDocumentCreate,
    VehicleDocumentResponse,
    MaintenanceRecordCreate,
    MaintenanceRecordResponse,
    PMScheduleCreate,
    PMScheduleResponse,
    PMCompleteRequest,
    DVIRCreate,
    DVIRResponse,
    FuelLogCreate,
    FuelLogResponse,
    WorkOrderResponse,
)
from ..services import fleet as fleet_service
from ..services import fuel as fuel_service
from ..services.dvir import submit_dvir, ensure_dvir_work_order
from ..services.tenancy import get_scoped_or_404, scoped


router = APIRouter(prefix="/fleet", tags=["fleet"])


def _vehicle(db: Session, vehicle_id, user: User) -> Vehicle:
    return get_scoped_or_404(db, Vehicle, vehicle_id, user.organization_id, "Vehicle")


def _enum_values(data: dict) -> dict:
    return {k: (v.value if hasattr(v, "value") else v) for k, v in data.items()}


# ---------- VEHICLES ----------
@router.get("/vehicles", response_model=List[VehicleResponse])
def list_vehicles(
    status: Optional[VehicleStatus] = Query(None),
    include_retired: bool = Query(False),
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("fleet:read")),
):
    query = scoped(db, Vehicle, user.organization_id)
    if status:
        query = query.filter(Vehicle.status == status.value)
    elif not include_retired:
        query = query.filter(Vehicle.status != "retired")
    return query.order_by(Vehicle.license_plate.asc()).all()


@router.get("/vehicles/available", response_model=List[VehicleResponse])
def available_vehicles(
    start: date = Query(...),
    end: date = Query(...),
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("fleet:read", "jobs:read")),
):
    return fleet_service.get_available_vehicles(db, user.organization_id, start, end)


@router.post("/vehicles", response_model=VehicleResponse)
def create_vehicle(
    payload: VehicleCreate,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("fleet:write")),
):
    vehicle = fleet_service.create_vehicle(db, user.organization_id, _enum_values(payload.model_dump()))
    db.commit()
    db.refresh(vehicle)
    return vehicle


@router.get("/vehicles/{vehicle_id}", response_model=VehicleResponse)
def get_vehicle(
    vehicle_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("fleet:read")),
):
    return _vehicle(db, vehicle_id, user)


@router.put("/vehicles/{vehicle_id}", response_model=VehicleResponse)
def update_vehicle(
    vehicle_id: uuid.UUID,
    payload: VehicleUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("fleet:write")),
):
    vehicle = fleet_service.update_vehicle(
        db, _vehicle(db, vehicle_id, user), _enum_values(payload.model_dump(exclude_unset=True))
    )
    db.commit()
    db.refresh(vehicle)
    return vehicle


@router.delete("/vehicles/{vehicle_id}")
def retire_vehicle(
    vehicle_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("fleet:write")),
):
    fleet_service.retire_vehicle(db, _vehicle(db, vehicle_id, user))
    db.commit()
    return {"status": "ok"}


# ---------- DOCUMENTS ----------
@router.get("/documents/expiring")
def expiring_documents(
    days: int = Query(30, ge=0, le=365),
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("fleet:read")),
):
    return fleet_service.expiring_documents(db, user.organization_id, days)


@router.get("/vehicles/{vehicle_id}/documents", response_model=List[VehicleDocumentResponse])
def list_documents(
    vehicle_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("fleet:read")),
):
    vehicle = _vehicle(db, vehicle_id, user)
    return (
        db.query(VehicleDocument)
        .filter(VehicleDocument.vehicle_id == vehicle.id)
        .order_by(VehicleDocument.expiry_date.asc())
        .all()
    )


@router.post("/vehicles/{vehicle_id}/documents", response_model=VehicleDocumentResponse)
def add_document(
    vehicle_id: uuid.UUID,
    payload: VehicleDocumentCreate,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("fleet:write")),
):
    vehicle = _vehicle(db, vehicle_id, user)
    if payload.issue_date and payload.expiry_date and payload.expiry_date < payload.issue_date:
        raise HTTPException(status_code=400, detail="Expiry date must be on or after issue date")
    doc = VehicleDocument(organization_id=user.organization_id, vehicle_id=vehicle.id, **payload.model_dump())
    db.add(doc)
    db.commit()
    db.refresh(doc)
    return doc


@router.delete("/documents/{document_id}")
def delete_document(
    document_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("fleet:write")),
):
    doc = get_scoped_or_404(db, VehicleDocument, document_id, user.organization_id, "Document")
    db.delete(doc)
    db.commit()
    return {"status": "ok"}


# ---------- MAINTENANCE ----------
@router.get("/vehicles/{vehicle_id}/maintenance", response_model=List[MaintenanceRecordResponse])
def list_maintenance(
    vehicle_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("fleet:read", "maintenance:read")),
):
    vehicle = _vehicle(db, vehicle_id, user)
    return (
        db.query(MaintenanceRecord)
        .filter(MaintenanceRecord.vehicle_id == vehicle.id)
        .order_by(MaintenanceRecord.service_date.desc())
        .all()
    )


@router.post("/vehicles/{vehicle_id}/maintenance", response_model=MaintenanceRecordResponse)
def add_maintenance(
    vehicle_id: uuid.UUID,
    payload: MaintenanceRecordCreate,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("maintenance:write")),
):
    record = fleet_service.add_maintenance_record(db, _vehicle(db, vehicle_id, user), payload.model_dump(), user)
    db.commit()
    db.refresh(record)
    return record


# ---------- PREVENTIVE MAINTENANCE ----------
@router.get("/pm/due")
def pm_due(
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("fleet:read", "maintenance:read")),
):
    return fleet_service.pm_due_list(db, user.organization_id)


@router.get("/vehicles/{vehicle_id}/pm", response_model=List[PMScheduleResponse])
def list_pm(
    vehicle_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("fleet:read", "maintenance:read")),
):
    vehicle = _vehicle(db, vehicle_id, user)
    return db.query(PMSchedule).filter(PMSchedule.vehicle_id == vehicle.id).order_by(PMSchedule.task_name).all()


@router.post("/vehicles/{vehicle_id}/pm", response_model=PMScheduleResponse)
def create_pm(
    vehicle_id: uuid.UUID,
    payload: PMScheduleCreate,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("maintenance:write")),
):
    vehicle = _vehicle(db, vehicle_id, user)
    if not payload.interval_miles and not payload.interval_days:
        raise HTTPException(status_code=400, detail="interval_miles or interval_days is required")
    schedule = PMSchedule(organization_id=user.organization_id, vehicle_id=vehicle.id, **payload.model_dump())
    db.add(schedule)
    db.commit()
    db.refresh(schedule)
    return schedule


@router.post("/pm/{schedule_id}/complete", response_model=MaintenanceRecordResponse)
def complete_pm(
    schedule_id: uuid.UUID,
    payload: PMCompleteRequest,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("maintenance:write")),
):
    schedule = get_scoped_or_404(db, PMSchedule, schedule_id, user.organization_id, "PM schedule")
    record = fleet_service.complete_pm(
        db, schedule, payload.mileage, payload.done_date, payload.cost, payload.notes, user
    )
    db.commit()
    db.refresh(record)
    return record


@router.delete("/pm/{schedule_id}")
def deactivate_pm(
    schedule_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("maintenance:write")),
):
    schedule = get_scoped_or_404(db, PMSchedule, schedule_id, user.organization_id, "PM schedule")
    schedule.is_active = False
    db.commit()
    return {"status": "ok"}


# ---------- DVIR ----------
@router.get("/dvirs", response_model=List[DVIRResponse])
def list_dvirs(
    vehicle_id: Optional[uuid.UUID] = Query(None),
    status: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("fleet:read")),
):
    query = scoped(db, VehicleInspection, user.organization_id)
    if vehicle_id:
        query = query.filter(VehicleInspection.vehicle_id == vehicle_id)
    if status:
        query = query.filter(VehicleInspection.status == status)
    return query.order_by(VehicleInspection.submitted_at.desc()).limit(limit).all()


@router.post("/dvirs", response_model=DVIRResponse)
def create_dvir(
    payload: DVIRCreate,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("fleet:dvir:write")),
):
    inspection = submit_dvir(db, user.organization_id, payload.model_dump(), user)
    db.commit()
    db.refresh(inspection)
    return inspection


@router.get("/dvirs/{inspection_id}", response_model=DVIRResponse)
def get_dvir(
    inspection_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("fleet:read")),
):
    return get_scoped_or_404(db, VehicleInspection, inspection_id, user.organization_id, "Inspection")


@router.post("/dvirs/{inspection_id}/work-order", response_model=WorkOrderResponse)
def dvir_work_order(
    inspection_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("maintenance:write", "fleet:write")),
):
    """Open (or return) the work order for an inspection's defects."""
    inspection = get_scoped_or_404(db, VehicleInspection, inspection_id, user.organization_id, "Inspection")
    wo = ensure_dvir_work_order(db, inspection, user)
    if wo is None:
        raise HTTPException(status_code=400, detail="Inspection has no defects")
    db.commit()
    db.refresh(wo)
    return wo


# ---------- FUEL ----------
@router.get("/fuel", response_model=List[FuelLogResponse])
def list_fuel_logs(
    vehicle_id: Optional[uuid.UUID] = Query(None),
    date_from: Optional[date] = Query(None),
    date_to: Optional[date] = Query(None),
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("fleet:read")),
):
    query = scoped(db, FuelLog, user.organization_id)
    if vehicle_id:
        query = query.filter(FuelLog.vehicle_id == vehicle_id)
    if date_from:
        query = query.filter(FuelLog.log_date >= date_from)
    if date_to:
        query = query.filter(FuelLog.log_date <= date_to)
    return query.order_by(FuelLog.log_date.desc()).all()


@router.post("/fuel", response_model=FuelLogResponse)
def create_fuel_log(
    payload: FuelLogCreate,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("fleet:fuel:write")),
):
    data = payload.model_dump()
    data["source_type"] = payload.source_type.value
    if data.get("driver_id"):
        get_scoped_or_404(db, User, data["driver_id"], user.organization_id, "Driver")
    log = fuel_service.create_fuel_log(db, user.organization_id, data, user)
    db.commit()
    db.refresh(log)
    return log


@router.get("/fuel/recent")
def recent_fuel_logs(
    limit: int = Query(20, ge=1, le=200),
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("fleet:read")),
):
    return fuel_service.get_recent_fuel_logs(db, user.organization_id, limit)


@router.get("/fuel/analytics")
def fuel_analytics(
    date_from: Optional[date] = Query(None),
    date_to: Optional[date] = Query(None),
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("fleet:read", "analytics:read")),
):
    if date_from and date_to and date_to < date_from:
        raise HTTPException(status_code=400, detail="date_to must be on or after date_from")
    logs = fuel_service.fetch_fuel_logs(db, user.organization_id, date_from, date_to)
    return {
        "date_from": date_from,
        "date_to": date_to,
        "vendor_performance": fuel_service.vendor_performance(logs),
        "cost_per_mile": fuel_service.cost_per_mile(logs),
        "fleet_mpg": fuel_service.fleet_mpg(logs),
        "source_comparison": fuel_service.source_comparison(logs),
    }
