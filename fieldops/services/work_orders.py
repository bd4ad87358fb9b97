"""
Work order lifecycle: creation, status transitions, parts and sign-offs.
"""
import csv
import io
from datetime import date, datetime, timezone
from typing import Optional, List, Dict, Any

import structlog
from sqlalchemy.orm import Session

from ..errors import ConflictError, NotFoundError, ValidationFailed, TransitionNotAllowed
from ..models.models import (
    MaintenancePart,
    MaintenanceVendor,
    User,
    Vehicle,
    WorkOrder,
    WorkOrderHistory,
    WorkOrderPart,
)
from . import work_order_rules as rules
from .audit import create_audit_log
from .fleet import add_maintenance_record, record_mileage
from .numbering import next_number
from .tenancy import get_scoped_or_404

logger = structlog.get_logger(__name__)

OPEN_STATUSES = tuple(s for s in rules.WORK_ORDER_STATUSES if s != "completed")


def _history(db: Session, wo: WorkOrder, from_status: Optional[str], to_status: str, user_id=None,
             message: Optional[str] = None) -> WorkOrderHistory:
    entry = WorkOrderHistory(
        organization_id=wo.organization_id,
        work_order_id=wo.id,
        from_status=from_status,
        to_status=to_status,
        message=message or rules.get_status_transition_message(from_status, to_status),
        changed_by=user_id,
    )
    db.add(entry)
    return entry


def part_view(p: WorkOrderPart) -> Dict[str, Any]:
    """Part line with the stocked on-hand quantity, as the rules expect."""
    return {
        "id": p.id,
        "part_id": p.part_id,
        "name": p.name,
        "quantity": p.quantity,
        "unit_cost": p.unit_cost,
        "source": p.source,
        "on_hand_qty": p.part.quantity_on_hand if p.part is not None else None,
    }


def work_order_cost(wo: WorkOrder) -> float:
    parts = sum((p.quantity or 0) * (p.unit_cost or 0) for p in wo.parts)
    return round(parts + (wo.labor_cost or 0), 2)


def create_work_order(db: Session, organization_id, data: Dict[str, Any], user: Optional[User] = None) -> WorkOrder:
    data = dict(data)
    data.setdefault("priority", "normal")
    check = rules.validate_work_order(data)
    if not check.allowed:
        raise ValidationFailed(check.reason)
    if data["priority"] not in rules.PRIORITIES:
        raise ValidationFailed(f"Unknown priority: {data['priority']}")
    vehicle = (
        db.query(Vehicle)
        .filter(Vehicle.id == data["asset_id"], Vehicle.organization_id == organization_id)
        .first()
    )
    if vehicle is None:
        raise NotFoundError("Asset not found")
    if data.get("vendor_id"):
        _get_vendor(db, organization_id, data["vendor_id"])
    if data.get("assigned_to"):
        get_scoped_or_404(db, User, data["assigned_to"], organization_id, "Assignee")

    wo = WorkOrder(
        organization_id=organization_id,
        work_order_number=next_number(db, organization_id, "work_order"),
        asset_id=vehicle.id,
        asset_type=data.get("asset_type") or "vehicle",
        source=data.get("source") or "manual",
        source_id=data.get("source_id"),
        priority=data["priority"],
        status="open",
        description=data["description"].strip(),
        due_date=data["due_date"] if data.get("due_date") else rules.get_default_due_date_for_priority(data["priority"]),
        assigned_to=data.get("assigned_to"),
        vendor_id=data.get("vendor_id"),
        meter_open_miles=data.get("meter_open_miles", vehicle.current_mileage),
        meter_open_hours=data.get("meter_open_hours", vehicle.current_hours),
        driver_verification_required=bool(data.get("driver_verification_required")),
        labor_cost=data.get("labor_cost") or 0.0,
        created_by=user.id if user else None,
    )
    db.add(wo)
    db.flush()
    _history(db, wo, None, "open", user.id if user else None)
    create_audit_log(db, organization_id, "work_order", wo.id, "CREATE", actor_id=user.id if user else None,
                     changes_json={"work_order_number": wo.work_order_number, "priority": wo.priority,
                                   "source": wo.source})
    db.flush()
    logger.info("work_order_created", work_order_id=str(wo.id), number=wo.work_order_number, source=wo.source)
    return wo


def update_work_order(db: Session, wo: WorkOrder, data: Dict[str, Any]) -> WorkOrder:
    if wo.status == "completed":
        raise ConflictError("Completed work orders cannot be edited")
    if "status" in data:
        raise ValidationFailed("Use the status endpoint to change status")
    if data.get("priority") and data["priority"] not in rules.PRIORITIES:
        raise ValidationFailed(f"Unknown priority: {data['priority']}")
    if data.get("vendor_id"):
        _get_vendor(db, wo.organization_id, data["vendor_id"])
    if data.get("assigned_to"):
        get_scoped_or_404(db, User, data["assigned_to"], wo.organization_id, "Assignee")
    for key, value in data.items():
        setattr(wo, key, value)
    check = rules.validate_work_order(wo)
    if not check.allowed:
        raise ValidationFailed(check.reason)
    wo.updated_at = datetime.now(timezone.utc)
    db.flush()
    return wo


def transition_work_order(db: Session, wo: WorkOrder, new_status: str, user: Optional[User] = None,
                          message: Optional[str] = None) -> WorkOrder:
    if new_status not in rules.WORK_ORDER_STATUSES:
        raise ValidationFailed(f"Unknown work order status: {new_status}")
    result = rules.can_move_to_status(wo, new_status)
    if not result.allowed:
        raise TransitionNotAllowed(wo.status, new_status, result.reason)

    old = wo.status
    now = datetime.now(timezone.utc)
    wo.status = new_status
    wo.updated_at = now
    _history(db, wo, old, new_status, user.id if user else None, message)

    if new_status == "completed":
        wo.closed_at = now
        _complete(db, wo, user)

    create_audit_log(db, wo.organization_id, "work_order", wo.id, "STATUS_CHANGE",
                     actor_id=user.id if user else None,
                     changes_json={"status": {"before": old, "after": new_status}})
    db.flush()
    logger.info("work_order_status_changed", work_order_id=str(wo.id), old_status=old, new_status=new_status)
    return wo


def _complete(db: Session, wo: WorkOrder, user: Optional[User]) -> None:
    vehicle = db.get(Vehicle, wo.asset_id)
    if wo.meter_close_miles:
        record_mileage(db, vehicle, wo.meter_close_miles)
    if wo.meter_close_hours and (vehicle.current_hours or 0) < wo.meter_close_hours:
        vehicle.current_hours = wo.meter_close_hours
    add_maintenance_record(db, vehicle, {
        "maintenance_type": "preventive" if wo.source == "pm" else "repair",
        "description": f"{wo.work_order_number}: {wo.resolution_notes or wo.description}",
        "service_date": date.today(),
        "mileage": wo.meter_close_miles,
        "cost": work_order_cost(wo),
        "vendor_id": wo.vendor_id,
        "work_order_id": wo.id,
    }, user)

    if vehicle.status in ("out_of_service", "maintenance"):
        others = (
            db.query(WorkOrder)
            .filter(
                WorkOrder.asset_id == vehicle.id,
                WorkOrder.id != wo.id,
                WorkOrder.status.in_(OPEN_STATUSES),
            )
            .count()
        )
        if not others:
            vehicle.status = "active"
            vehicle.updated_at = datetime.now(timezone.utc)
            logger.info("vehicle_returned_to_service", vehicle_id=str(vehicle.id))


# ---------- PARTS ----------
def add_part(db: Session, wo: WorkOrder, data: Dict[str, Any], user: Optional[User] = None) -> WorkOrderPart:
    """
    Add a part line. Warehouse parts are drawn from stock when enough is on
    hand; a short stocked part moves an in-progress order to awaiting_parts.
    """
    if wo.status == "completed":
        raise ConflictError("Cannot add parts to a completed work order")
    source = data.get("source") or "warehouse"
    if source not in rules.PART_SOURCES:
        raise ValidationFailed(f"Unknown part source: {source}")
    qty = int(data.get("quantity") or 1)
    if qty <= 0:
        raise ValidationFailed("Quantity must be positive")

    stocked = None
    if data.get("part_id"):
        stocked = (
            db.query(MaintenancePart)
            .filter(MaintenancePart.id == data["part_id"], MaintenancePart.organization_id == wo.organization_id)
            .first()
        )
        if stocked is None:
            raise NotFoundError("Part not found")
    name = data.get("name") or (stocked.name if stocked else None)
    if not name:
        raise ValidationFailed("Part name is required")

    line = WorkOrderPart(
        organization_id=wo.organization_id,
        work_order_id=wo.id,
        part_id=stocked.id if stocked else None,
        name=name,
        quantity=qty,
        unit_cost=data["unit_cost"] if data.get("unit_cost") is not None else (stocked.unit_cost if stocked else 0.0),
        source=source,
    )
    view = {"quantity": qty, "source": source, "on_hand_qty": stocked.quantity_on_hand if stocked else None}
    short = rules.get_part_shortage(view) if source in rules.STOCKED_SOURCES else 0
    if stocked is not None and source == "warehouse" and not short:
        stocked.quantity_on_hand -= qty
    wo.parts.append(line)
    db.flush()

    if short and wo.status == "in_progress":
        transition_work_order(db, wo, "awaiting_parts", user, message=f"Waiting for parts to arrive: {name} short by {short}")
    return line


def _get_vendor(db: Session, organization_id, vendor_id) -> MaintenanceVendor:
    vendor = (
        db.query(MaintenanceVendor)
        .filter(MaintenanceVendor.id == vendor_id, MaintenanceVendor.organization_id == organization_id)
        .first()
    )
    if vendor is None:
        raise NotFoundError("Vendor not found")
    return vendor


# ---------- SIGN-OFFS ----------
def sign_technician(db: Session, wo: WorkOrder, name: str, user: Optional[User] = None) -> WorkOrder:
    if not (name or "").strip():
        raise ValidationFailed("Signature name is required")
    wo.technician_signature = {
        "name": name.strip(),
        "signed_at": datetime.now(timezone.utc).isoformat(),
        "user_id": str(user.id) if user else None,
    }
    wo.updated_at = datetime.now(timezone.utc)
    db.flush()
    return wo


def verify_driver(db: Session, wo: WorkOrder, user: User, name: Optional[str] = None) -> WorkOrder:
    if not wo.technician_signature:
        raise ConflictError("Technician must sign before driver verification")
    wo.driver_verification = {
        "user_id": str(user.id),
        "name": (name or user.full_name).strip(),
        "verified_at": datetime.now(timezone.utc).isoformat(),
    }
    wo.updated_at = datetime.now(timezone.utc)
    db.flush()
    return wo


# ---------- EXPORT ----------
CSV_HEADERS = [
    "Work Order Number", "Status", "Priority", "Asset", "Asset Type", "Source", "Description", "Due Date",
    "Opened At", "Closed At", "Meter at Open", "Meter at Close", "Parts Cost", "Labor Cost", "Total Cost",
    "Resolution Notes", "Technician Signature", "Driver Verified",
]


def export_work_orders_csv(work_orders: List[WorkOrder]) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf, quoting=csv.QUOTE_ALL)
    writer.writerow(CSV_HEADERS)
    for wo in work_orders:
        parts_cost = round(sum((p.quantity or 0) * (p.unit_cost or 0) for p in wo.parts), 2)
        writer.writerow([
            wo.work_order_number,
            wo.status,
            wo.priority,
            wo.vehicle.license_plate if wo.vehicle else wo.asset_id,
            wo.asset_type,
            wo.source,
            wo.description or "",
            wo.due_date.isoformat() if wo.due_date else "",
            wo.created_at.strftime("%Y-%m-%d %H:%M") if wo.created_at else "",
            wo.closed_at.strftime("%Y-%m-%d %H:%M") if wo.closed_at else "",
            wo.meter_open_miles if wo.meter_open_miles is not None else "",
            wo.meter_close_miles if wo.meter_close_miles is not None else "",
            parts_cost,
            wo.labor_cost or 0,
            work_order_cost(wo),
            wo.resolution_notes or "",
            "Yes" if wo.technician_signature else "No",
            "Yes" if wo.driver_verification else "No",
        ])
    return buf.getvalue()
