"""
Vehicles, documents, maintenance records and preventive maintenance.
"""
from datetime import date, datetime, timedelta, timezone
from typing import Optional, List, Dict, Any

import structlog
from sqlalchemy import and_
from sqlalchemy.orm import Session

from ..errors import ConflictError, ValidationFailed
from ..models.models import (
    Job,
    MaintenanceRecord,
    MaintenanceVendor,
    PMSchedule,
    Vehicle,
    VehicleDocument,
    User,
    WorkOrder,
)
from .tenancy import get_scoped_or_404

logger = structlog.get_logger(__name__)

VEHICLE_STATUSES = ("active", "maintenance", "out_of_service", "retired")
MAINTENANCE_TYPES = ("preventive", "repair", "inspection", "other")
PM_DUE_SOON_MILES = 500
PM_DUE_SOON_DAYS = 14


def create_vehicle(db: Session, organization_id, data: Dict[str, Any]) -> Vehicle:
    plate = (data.get("license_plate") or "").strip().upper()
    if not plate:
        raise ValidationFailed("License plate is required")
    exists = (
        db.query(Vehicle)
        .filter(Vehicle.organization_id == organization_id, Vehicle.license_plate == plate)
        .first()
    )
    if exists:
        raise ConflictError(f"A vehicle with plate {plate} already exists")
    data = dict(data, license_plate=plate)
    vehicle = Vehicle(organization_id=organization_id, **data)
    if vehicle.maintenance_interval_miles and vehicle.current_mileage is not None and not vehicle.next_maintenance_due_miles:
        vehicle.next_maintenance_due_miles = vehicle.current_mileage + vehicle.maintenance_interval_miles
    db.add(vehicle)
    db.flush()
    return vehicle


def update_vehicle(db: Session, vehicle: Vehicle, data: Dict[str, Any]) -> Vehicle:
    if "license_plate" in data and data["license_plate"]:
        plate = data["license_plate"].strip().upper()
        clash = (
            db.query(Vehicle)
            .filter(Vehicle.organization_id == vehicle.organization_id, Vehicle.license_plate == plate,
                    Vehicle.id != vehicle.id)
            .first()
        )
        if clash:
            raise ConflictError(f"A vehicle with plate {plate} already exists")
        data = dict(data, license_plate=plate)
    if data.get("status") and data["status"] not in VEHICLE_STATUSES:
        raise ValidationFailed(f"Unknown vehicle status: {data['status']}")
    data = dict(data)
    mileage = data.pop("current_mileage", None)
    for key, value in data.items():
        setattr(vehicle, key, value)
    if mileage is not None:
        record_mileage(db, vehicle, mileage)
    vehicle.updated_at = datetime.now(timezone.utc)
    db.flush()
    return vehicle


def retire_vehicle(db: Session, vehicle: Vehicle) -> Vehicle:
    vehicle.status = "retired"
    vehicle.updated_at = datetime.now(timezone.utc)
    db.flush()
    return vehicle


def record_mileage(db: Session, vehicle: Vehicle, odometer: Optional[int]) -> bool:
    """Move the odometer forward. Lower or missing readings are ignored."""
    if odometer is None or odometer < 0:
        return False
    if vehicle.current_mileage is not None and odometer <= vehicle.current_mileage:
        return False
    vehicle.current_mileage = odometer
    vehicle.updated_at = datetime.now(timezone.utc)
    db.flush()
    return True


# ---------- MAINTENANCE ----------
def add_maintenance_record(db: Session, vehicle: Vehicle, data: Dict[str, Any],
                           user: Optional[User] = None) -> MaintenanceRecord:
    if data.get("maintenance_type", "other") not in MAINTENANCE_TYPES:
        raise ValidationFailed(f"Unknown maintenance type: {data.get('maintenance_type')}")
    if (data.get("cost") or 0) < 0:
        raise ValidationFailed("Cost must not be negative")
    if data.get("vendor_id"):
        get_scoped_or_404(db, MaintenanceVendor, data["vendor_id"], vehicle.organization_id, "Vendor")
    if data.get("work_order_id"):
        get_scoped_or_404(db, WorkOrder, data["work_order_id"], vehicle.organization_id, "Work order")
    record = MaintenanceRecord(
        organization_id=vehicle.organization_id,
        vehicle_id=vehicle.id,
        maintenance_type=data.get("maintenance_type", "other"),
        description=data.get("description"),
        service_date=data.get("service_date") or date.today(),
        mileage=data.get("mileage"),
        cost=data.get("cost") or 0.0,
        vendor_id=data.get("vendor_id"),
        work_order_id=data.get("work_order_id"),
        created_by=user.id if user else None,
    )
    db.add(record)
    if record.mileage is not None:
        record_mileage(db, vehicle, record.mileage)
        if vehicle.maintenance_interval_miles:
            vehicle.next_maintenance_due_miles = record.mileage + vehicle.maintenance_interval_miles
    db.flush()
    logger.info("maintenance_recorded", vehicle_id=str(vehicle.id), maintenance_type=record.maintenance_type)
    return record


def pm_due_status(schedule: PMSchedule, vehicle: Vehicle, today: Optional[date] = None) -> Dict[str, Any]:
    """
    Compute the next due point of a PM schedule.

    overdue when either the mileage or the date has been reached,
    due_soon within PM_DUE_SOON_MILES miles or PM_DUE_SOON_DAYS days.
    """
    today = today or date.today()
    next_miles = None
    next_date = None
    miles_remaining = None
    days_remaining = None
    if schedule.interval_miles:
        next_miles = (schedule.last_done_mileage or 0) + schedule.interval_miles
        if vehicle.current_mileage is not None:
            miles_remaining = next_miles - vehicle.current_mileage
    if schedule.interval_days:
        base = schedule.last_done_date or (schedule.created_at.date() if schedule.created_at else today)
        next_date = base + timedelta(days=schedule.interval_days)
        days_remaining = (next_date - today).days

    status = "ok"
    if (miles_remaining is not None and miles_remaining <= 0) or (days_remaining is not None and days_remaining <= 0):
        status = "overdue"
    elif (miles_remaining is not None and miles_remaining <= PM_DUE_SOON_MILES) or (
        days_remaining is not None and days_remaining <= PM_DUE_SOON_DAYS
    ):
        status = "due_soon"
    return {
        "schedule_id": schedule.id,
        "vehicle_id": vehicle.id,
        "license_plate": vehicle.license_plate,
        "task_name": schedule.task_name,
        "next_due_miles": next_miles,
        "next_due_date": next_date,
        "miles_remaining": miles_remaining,
        "days_remaining": days_remaining,
        "status": status,
    }


def pm_due_list(db: Session, organization_id, today: Optional[date] = None) -> List[Dict[str, Any]]:
    rows = (
        db.query(PMSchedule, Vehicle)
        .join(Vehicle, Vehicle.id == PMSchedule.vehicle_id)
        .filter(
            PMSchedule.organization_id == organization_id,
            PMSchedule.is_active.is_(True),
            Vehicle.status != "retired",
        )
        .all()
    )
    out = [pm_due_status(s, v, today) for s, v in rows]
    out = [r for r in out if r["status"] != "ok"]
    out.sort(key=lambda r: (r["status"] != "overdue", r["days_remaining"] if r["days_remaining"] is not None else 10 ** 6))
    return out


def complete_pm(db: Session, schedule: PMSchedule, mileage: Optional[int] = None, done_date: Optional[date] = None,
                cost: float = 0.0, notes: Optional[str] = None, user: Optional[User] = None) -> MaintenanceRecord:
    vehicle = db.get(Vehicle, schedule.vehicle_id)
    done_date = done_date or date.today()
    schedule.last_done_date = done_date
    schedule.last_done_mileage = mileage if mileage is not None else vehicle.current_mileage
    return add_maintenance_record(db, vehicle, {
        "maintenance_type": "preventive",
        "description": notes or schedule.task_name,
        "service_date": done_date,
        "mileage": mileage,
        "cost": cost,
    }, user)


# ---------- AVAILABILITY / DOCUMENTS ----------
def get_available_vehicles(db: Session, organization_id, start: date, end: date) -> List[Vehicle]:
    """Active vehicles with no non-cancelled job scheduled in [start, end]."""
    if end < start:
        raise ValidationFailed("end must be on or after start")
    busy = db.query(Job.vehicle_id).filter(
        Job.organization_id == organization_id,
        Job.vehicle_id.isnot(None),
        Job.status != "cancelled",
        and_(Job.scheduled_date >= start, Job.scheduled_date <= end),
    )
    return (
        db.query(Vehicle)
        .filter(Vehicle.organization_id == organization_id, Vehicle.status == "active", Vehicle.id.notin_(busy))
        .order_by(Vehicle.license_plate)
        .all()
    )


def expiring_documents(db: Session, organization_id, days: int = 30, today: Optional[date] = None) -> List[Dict[str, Any]]:
    today = today or date.today()
    docs = (
        db.query(VehicleDocument)
        .filter(
            VehicleDocument.organization_id == organization_id,
            VehicleDocument.expiry_date.isnot(None),
            VehicleDocument.expiry_date <= today + timedelta(days=days),
        )
        .order_by(VehicleDocument.expiry_date)
        .all()
    )
    return [
        {
            "id": d.id,
            "vehicle_id": d.vehicle_id,
            "license_plate": d.vehicle.license_plate if d.vehicle else None,
            "document_type": d.document_type,
            "name": d.name,
            "expiry_date": d.expiry_date,
            "days_until_expiry": (d.expiry_date - today).days,
            "expired": d.expiry_date < today,
        }
        for d in docs
    ]
