"""
Fuel logs and fuel analytics.

The analytics functions work on any sequence of fuel log rows so they can be
computed over a query result or a test fixture alike.
"""
from collections import defaultdict
from datetime import date
from typing import Optional, List, Dict, Any, Iterable

import structlog
from sqlalchemy.orm import Session, joinedload

from ..errors import NotFoundError, ValidationFailed
from ..models.models import FuelLog, User, Vehicle
from .fleet import record_mileage

logger = structlog.get_logger(__name__)

SOURCE_TYPES = ("retail", "yard_tank", "mobile_vendor")


def create_fuel_log(db: Session, organization_id, data: Dict[str, Any], driver: Optional[User] = None) -> FuelLog:
    vehicle = (
        db.query(Vehicle)
        .filter(Vehicle.id == data["vehicle_id"], Vehicle.organization_id == organization_id)
        .first()
    )
    if vehicle is None:
        raise NotFoundError("Vehicle not found")
    gallons = data.get("gallons") or 0
    if gallons <= 0:
        raise ValidationFailed("Gallons must be positive")
    source_type = data.get("source_type") or "retail"
    if source_type not in SOURCE_TYPES:
        raise ValidationFailed(f"source_type must be one of: {', '.join(SOURCE_TYPES)}")

    total = data.get("total_cost")
    cpg = data.get("cost_per_gallon")
    if total is None and cpg is not None:
        total = round(gallons * cpg, 2)
    if cpg is None and total:
        cpg = round(total / gallons, 3)

    log = FuelLog(
        organization_id=organization_id,
        vehicle_id=vehicle.id,
        driver_id=data.get("driver_id") or (driver.id if driver else None),
        log_date=data.get("log_date") or date.today(),
        gallons=gallons,
        cost_per_gallon=cpg,
        total_cost=total or 0.0,
        odometer_reading=data.get("odometer_reading"),
        fuel_station=data.get("fuel_station"),
        source_type=source_type,
        notes=data.get("notes"),
    )
    db.add(log)
    if log.odometer_reading is not None:
        record_mileage(db, vehicle, log.odometer_reading)
    db.flush()
    return log


def fetch_fuel_logs(db: Session, organization_id, date_from: Optional[date] = None,
                    date_to: Optional[date] = None) -> List[FuelLog]:
    q = (
        db.query(FuelLog)
        .options(joinedload(FuelLog.vehicle), joinedload(FuelLog.driver))
        .filter(FuelLog.organization_id == organization_id)
    )
    if date_from:
        q = q.filter(FuelLog.log_date >= date_from)
    if date_to:
        q = q.filter(FuelLog.log_date <= date_to)
    return q.order_by(FuelLog.log_date, FuelLog.odometer_reading).all()


def _plate(log) -> Optional[str]:
    vehicle = getattr(log, "vehicle", None)
    return vehicle.license_plate if vehicle is not None else None


def vendor_performance(logs: Iterable) -> List[Dict[str, Any]]:
    groups: Dict[str, Dict[str, Any]] = {}
    for log in logs:
        name = (log.fuel_station or "").strip() or "Unknown"
        g = groups.setdefault(name, {"vendor": name, "total_gallons": 0.0, "total_cost": 0.0,
                                     "purchase_count": 0, "last_purchase_date": None})
        g["total_gallons"] += log.gallons or 0
        g["total_cost"] += log.total_cost or 0
        g["purchase_count"] += 1
        if g["last_purchase_date"] is None or log.log_date > g["last_purchase_date"]:
            g["last_purchase_date"] = log.log_date
    out = []
    for g in groups.values():
        g["total_gallons"] = round(g["total_gallons"], 2)
        g["total_cost"] = round(g["total_cost"], 2)
        g["avg_cost_per_gallon"] = round(g["total_cost"] / g["total_gallons"], 3) if g["total_gallons"] else 0.0
        out.append(g)
    out.sort(key=lambda g: g["total_cost"], reverse=True)
    return out


def _per_vehicle(logs: Iterable) -> Dict[Any, Dict[str, Any]]:
    vehicles: Dict[Any, Dict[str, Any]] = defaultdict(
        lambda: {"license_plate": None, "gallons": 0.0, "cost": 0.0, "readings": []}
    )
    for log in logs:
        v = vehicles[log.vehicle_id]
        v["license_plate"] = v["license_plate"] or _plate(log)
        v["gallons"] += log.gallons or 0
        v["cost"] += log.total_cost or 0
        if log.odometer_reading is not None:
            v["readings"].append((log.log_date, log.odometer_reading))
    for v in vehicles.values():
        readings = sorted(v["readings"])
        v["miles"] = readings[-1][1] - readings[0][1] if len(readings) >= 2 else 0
    return vehicles


def cost_per_mile(logs: Iterable) -> Dict[str, Any]:
    """Per-vehicle cost per mile over the odometer span of the window."""
    rows = []
    total_cost = 0.0
    total_miles = 0
    for vehicle_id, v in _per_vehicle(logs).items():
        if v["miles"] <= 0:
            continue
        total_cost += v["cost"]
        total_miles += v["miles"]
        rows.append({
            "vehicle_id": vehicle_id,
            "license_plate": v["license_plate"],
            "miles": v["miles"],
            "total_cost": round(v["cost"], 2),
            "cost_per_mile": round(v["cost"] / v["miles"], 3),
        })
    rows.sort(key=lambda r: r["cost_per_mile"], reverse=True)
    return {
        "vehicles": rows,
        "fleet_cost_per_mile": round(total_cost / total_miles, 3) if total_miles else 0.0,
    }


def fleet_mpg(logs: Iterable) -> Dict[str, Any]:
    rows = []
    total_miles = 0
    total_gallons = 0.0
    for vehicle_id, v in _per_vehicle(logs).items():
        if v["miles"] <= 0 or not v["gallons"]:
            continue
        mpg = v["miles"] / v["gallons"]
        if mpg <= 0:
            continue
        total_miles += v["miles"]
        total_gallons += v["gallons"]
        rows.append({
            "vehicle_id": vehicle_id,
            "license_plate": v["license_plate"],
            "miles": v["miles"],
            "gallons": round(v["gallons"], 2),
            "mpg": round(mpg, 2),
        })
    rows.sort(key=lambda r: r["mpg"], reverse=True)
    return {
        "vehicles": rows,
        "fleet_avg_mpg": round(total_miles / total_gallons, 2) if total_gallons else 0.0,
    }


def source_comparison(logs: Iterable) -> List[Dict[str, Any]]:
    groups: Dict[str, Dict[str, Any]] = {}
    for log in logs:
        key = log.source_type or "retail"
        g = groups.setdefault(key, {"source_type": key, "total_gallons": 0.0, "total_cost": 0.0, "count": 0})
        g["total_gallons"] += log.gallons or 0
        g["total_cost"] += log.total_cost or 0
        g["count"] += 1
    out = []
    for g in groups.values():
        g["total_gallons"] = round(g["total_gallons"], 2)
        g["total_cost"] = round(g["total_cost"], 2)
        g["avg_cost_per_gallon"] = round(g["total_cost"] / g["total_gallons"], 3) if g["total_gallons"] else 0.0
        out.append(g)
    out.sort(key=lambda g: g["total_cost"], reverse=True)
    return out


def get_recent_fuel_logs(db: Session, organization_id, limit: int = 20) -> List[Dict[str, Any]]:
    logs = (
        db.query(FuelLog)
        .options(joinedload(FuelLog.vehicle), joinedload(FuelLog.driver))
        .filter(FuelLog.organization_id == organization_id)
        .order_by(FuelLog.log_date.desc(), FuelLog.created_at.desc())
        .limit(limit)
        .all()
    )
    return [
        {
            "id": log.id,
            "log_date": log.log_date,
            "vehicle_id": log.vehicle_id,
            "license_plate": _plate(log),
            "driver_name": log.driver.full_name if log.driver else None,
            "gallons": log.gallons,
            "total_cost": log.total_cost,
            "fuel_station": log.fuel_station,
            "source_type": log.source_type,
        }
        for log in logs
    ]
