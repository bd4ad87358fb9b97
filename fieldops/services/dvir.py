"""
Driver Vehicle Inspection Reports.
"""
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List

import structlog
from sqlalchemy.orm import Session

from ..errors import NotFoundError, ValidationFailed
from ..models.models import User, Vehicle, VehicleInspection, WorkOrder
from .fleet import record_mileage
from .work_orders import create_work_order

logger = structlog.get_logger(__name__)

INSPECTION_TYPES = ("pre_trip", "post_trip")
CHECK_RESULTS = ("pass", "fail", "na")
DEFECT_SEVERITIES = ("minor", "major", "critical")


def _validate(data: Dict[str, Any]) -> None:
    if data.get("inspection_type", "pre_trip") not in INSPECTION_TYPES:
        raise ValidationFailed(f"inspection_type must be one of: {', '.join(INSPECTION_TYPES)}")
    for item, result in (data.get("checklist_results") or {}).items():
        if result not in CHECK_RESULTS:
            raise ValidationFailed(f"Checklist item {item} has invalid result: {result}")
    for defect in data.get("defects") or []:
        if not defect.get("item"):
            raise ValidationFailed("Each defect needs an item")
        if defect.get("severity") not in DEFECT_SEVERITIES:
            raise ValidationFailed(f"Defect severity must be one of: {', '.join(DEFECT_SEVERITIES)}")


def _serious_defects(inspection: VehicleInspection) -> List[Dict[str, Any]]:
    return [d for d in inspection.defects or [] if d.get("severity") in ("major", "critical")]


def submit_dvir(db: Session, organization_id, data: Dict[str, Any], driver: Optional[User] = None) -> VehicleInspection:
    """
    Record an inspection.

    The inspection fails when any checklist item failed or any defect was
    reported. Major or critical defects open a work order; a critical defect
    takes the vehicle out of service.
    """
    _validate(data)
    vehicle = (
        db.query(Vehicle)
        .filter(Vehicle.id == data["vehicle_id"], Vehicle.organization_id == organization_id)
        .first()
    )
    if vehicle is None:
        raise NotFoundError("Vehicle not found")

    checklist = data.get("checklist_results") or {}
    defects = data.get("defects") or []
    failed = any(v == "fail" for v in checklist.values()) or bool(defects)
    critical = any(d.get("severity") == "critical" for d in defects)

    inspection = VehicleInspection(
        organization_id=organization_id,
        vehicle_id=vehicle.id,
        driver_id=driver.id if driver else None,
        inspection_type=data.get("inspection_type", "pre_trip"),
        odometer=data.get("odometer"),
        checklist_results=checklist,
        defects=defects,
        status="fail" if failed else "pass",
        vehicle_safe_to_operate=data.get("vehicle_safe_to_operate", True) is not False and not critical,
        signature_name=data.get("signature_name"),
        notes=data.get("notes"),
        submitted_at=datetime.now(timezone.utc),
    )
    db.add(inspection)
    db.flush()

    if inspection.odometer is not None:
        record_mileage(db, vehicle, inspection.odometer)
    if _serious_defects(inspection):
        ensure_dvir_work_order(db, inspection, driver)
    if critical and vehicle.status != "retired":
        vehicle.status = "out_of_service"
        vehicle.updated_at = datetime.now(timezone.utc)
        logger.warning("vehicle_out_of_service", vehicle_id=str(vehicle.id), inspection_id=str(inspection.id))
    db.flush()
    logger.info("dvir_submitted", inspection_id=str(inspection.id), status=inspection.status, defects=len(defects))
    return inspection


def ensure_dvir_work_order(db: Session, inspection: VehicleInspection, user: Optional[User] = None) -> Optional[WorkOrder]:
    """Create the work order for an inspection's defects once; later calls return it."""
    if inspection.auto_generated_work_order_id:
        return db.get(WorkOrder, inspection.auto_generated_work_order_id)
    defects = inspection.defects or []
    if not defects:
        return None
    severities = {d.get("severity") for d in defects}
    priority = "critical" if "critical" in severities else ("high" if "major" in severities else "normal")
    lines = "; ".join(
        f"{d['item']} ({d['severity']})" + (f": {d['notes']}" if d.get("notes") else "") for d in defects
    )
    wo = create_work_order(db, inspection.organization_id, {
        "asset_id": inspection.vehicle_id,
        "asset_type": "vehicle",
        "source": "dvir",
        "source_id": inspection.id,
        "priority": priority,
        "description": f"DVIR defects: {lines}",
        "meter_open_miles": inspection.odometer,
        "driver_verification_required": True,
    }, user)
    inspection.auto_generated_work_order_id = wo.id
    db.flush()
    return wo
