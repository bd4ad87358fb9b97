import uuid
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from sqlalchemy.orm import Session

from ..db import get_db
from ..auth.security import require_permissions
from ..models.models import User, WorkOrder, MaintenancePart, MaintenanceVendor
from ..schemas.fleet import (
    WorkOrderCreate,
    WorkOrderUpdate,
    WorkOrderResponse,
    WorkOrderDetail,
    WorkOrderStatus,
    WorkOrderPriority,
    WorkOrderStatusUpdate,
    WorkOrderPartCreate,
    WorkOrderPartResponse,
    WorkOrderHistoryResponse,
    SignatureRequest,
    MaintenancePartCreate,
    MaintenancePartResponse,
    VendorCreate,
    VendorResponse,
)
from ..services import work_orders as wo_service
from ..services import work_order_rules as rules
from ..services.tenancy import get_scoped_or_404, scoped


router = APIRouter(prefix="/work-orders", tags=["work-orders"])


def _work_order(db: Session, work_order_id, user: User) -> WorkOrder:
    return get_scoped_or_404(db, WorkOrder, work_order_id, user.organization_id, "Work order")


def _detail(wo: WorkOrder) -> WorkOrderDetail:
    base = WorkOrderResponse.model_validate(wo).model_dump()
    parts = [wo_service.part_view(p) for p in wo.parts]
    rule_view = {
        "asset_id": wo.asset_id,
        "asset_type": wo.asset_type,
        "status": wo.status,
        "description": wo.description,
        "priority": wo.priority,
        "technician_signature": wo.technician_signature,
        "resolution_notes": wo.resolution_notes,
        "meter_close_miles": wo.meter_close_miles,
        "meter_close_hours": wo.meter_close_hours,
        "driver_verification_required": wo.driver_verification_required,
        "driver_verification": wo.driver_verification,
        "vendor_id": wo.vendor_id,
        "parts": parts,
    }
    summary = rules.summarize_rules(rule_view)
    summary["overdue"] = rules.is_work_order_overdue(wo)
    summary["age_days"] = rules.get_work_order_age(wo)
    summary["short_parts"] = [p["name"] for p in rules.get_short_parts(parts)]
    return WorkOrderDetail(
        **base,
        parts=[WorkOrderPartResponse(**p) for p in parts],
        history=[WorkOrderHistoryResponse.model_validate(h) for h in wo.history],
        total_cost=wo_service.work_order_cost(wo),
        rules=summary,
    )


def _filtered(db: Session, user: User, status, priority, asset_id, open_only: bool):
    query = scoped(db, WorkOrder, user.organization_id)
    if status:
        query = query.filter(WorkOrder.status == status.value)
    elif open_only:
        query = query.filter(WorkOrder.status.in_(wo_service.OPEN_STATUSES))
    if priority:
        query = query.filter(WorkOrder.priority == priority.value)
    if asset_id:
        query = query.filter(WorkOrder.asset_id == asset_id)
    return query.order_by(WorkOrder.created_at.desc())


# ---------- WORK ORDERS ----------
@router.get("", response_model=List[WorkOrderResponse])
def list_work_orders(
    status: Optional[WorkOrderStatus] = Query(None),
    priority: Optional[WorkOrderPriority] = Query(None),
    asset_id: Optional[uuid.UUID] = Query(None),
    open_only: bool = Query(False),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("maintenance:read")),
):
    return _filtered(db, user, status, priority, asset_id, open_only).offset(offset).limit(limit).all()


@router.get("/export")
def export_work_orders(
    status: Optional[WorkOrderStatus] = Query(None),
    priority: Optional[WorkOrderPriority] = Query(None),
    asset_id: Optional[uuid.UUID] = Query(None),
    open_only: bool = Query(False),
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("maintenance:read")),
):
    rows = _filtered(db, user, status, priority, asset_id, open_only).all()
    content = wo_service.export_work_orders_csv(rows)
    filename = f"work_orders_{datetime.now(timezone.utc):%Y%m%d}.csv"
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


# ---------- PARTS INVENTORY ----------
@router.get("/parts-inventory", response_model=List[MaintenancePartResponse])
def list_parts_inventory(
    low_only: bool = Query(False),
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("maintenance:read")),
):
    query = scoped(db, MaintenancePart, user.organization_id)
    if low_only:
        query = query.filter(MaintenancePart.quantity_on_hand <= MaintenancePart.reorder_level)
    return query.order_by(MaintenancePart.name.asc()).all()


@router.post("/parts-inventory", response_model=MaintenancePartResponse)
def create_part(
    payload: MaintenancePartCreate,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("maintenance:write")),
):
    if not payload.name.strip():
        raise HTTPException(status_code=400, detail="Part name is required")
    part = MaintenancePart(organization_id=user.organization_id, **payload.model_dump())
    db.add(part)
    db.commit()
    db.refresh(part)
    return part


@router.put("/parts-inventory/{part_id}", response_model=MaintenancePartResponse)
def update_part(
    part_id: uuid.UUID,
    payload: MaintenancePartCreate,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("maintenance:write")),
):
    part = get_scoped_or_404(db, MaintenancePart, part_id, user.organization_id, "Part")
    for field, value in payload.model_dump(exclude_unset=True).items():
        setattr(part, field, value)
    db.commit()
    db.refresh(part)
    return part


# ---------- VENDORS ----------
@router.get("/vendors", response_model=List[VendorResponse])
def list_vendors(
    include_inactive: bool = Query(False),
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("maintenance:read")),
):
    query = scoped(db, MaintenanceVendor, user.organization_id)
    if not include_inactive:
        query = query.filter(MaintenanceVendor.is_active.is_(True))
    return query.order_by(MaintenanceVendor.name.asc()).all()


@router.post("/vendors", response_model=VendorResponse)
def create_vendor(
    payload: VendorCreate,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("maintenance:write")),
):
    if not payload.name.strip():
        raise HTTPException(status_code=400, detail="Vendor name is required")
    vendor = MaintenanceVendor(organization_id=user.organization_id, **payload.model_dump())
    db.add(vendor)
    db.commit()
    db.refresh(vendor)
    return vendor


@router.put("/vendors/{vendor_id}", response_model=VendorResponse)
def update_vendor(
    vendor_id: uuid.UUID,
    payload: VendorCreate,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("maintenance:write")),
):
    vendor = get_scoped_or_404(db, MaintenanceVendor, vendor_id, user.organization_id, "Vendor")
    for field, value in payload.model_dump(exclude_unset=True).items():
        setattr(vendor, field, value)
    db.commit()
    db.refresh(vendor)
    return vendor


@router.delete("/vendors/{vendor_id}")
def deactivate_vendor(
    vendor_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("maintenance:write")),
):
    vendor = get_scoped_or_404(db, MaintenanceVendor, vendor_id, user.organization_id, "Vendor")
    vendor.is_active = False
    db.commit()
    return {"status": "ok"}


@router.post("", response_model=WorkOrderDetail)
def create_work_order(
    payload: WorkOrderCreate,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("maintenance:write")),
):
    data = payload.model_dump(exclude_unset=True)
    data["priority"] = payload.priority.value
    data["description"] = payload.description
    data["asset_id"] = payload.asset_id
    wo = wo_service.create_work_order(db, user.organization_id, data, user)
    db.commit()
    db.refresh(wo)
    return _detail(wo)


@router.get("/{work_order_id}", response_model=WorkOrderDetail)
def get_work_order(
    work_order_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("maintenance:read")),
):
    return _detail(_work_order(db, work_order_id, user))


@router.put("/{work_order_id}", response_model=WorkOrderDetail)
def update_work_order(
    work_order_id: uuid.UUID,
    payload: WorkOrderUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("maintenance:write")),
):
    data = payload.model_dump(exclude_unset=True)
    if data.get("priority") is not None:
        data["priority"] = data["priority"].value
    wo = wo_service.update_work_order(db, _work_order(db, work_order_id, user), data)
    db.commit()
    db.refresh(wo)
    return _detail(wo)


@router.put("/{work_order_id}/status", response_model=WorkOrderDetail)
def update_work_order_status(
    work_order_id: uuid.UUID,
    payload: WorkOrderStatusUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("maintenance:write")),
):
    wo = wo_service.transition_work_order(
        db, _work_order(db, work_order_id, user), payload.status.value, user, payload.message
    )
    db.commit()
    db.refresh(wo)
    return _detail(wo)


@router.post("/{work_order_id}/parts", response_model=WorkOrderDetail)
def add_work_order_part(
    work_order_id: uuid.UUID,
    payload: WorkOrderPartCreate,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("maintenance:write")),
):
    wo = _work_order(db, work_order_id, user)
    data = payload.model_dump()
    data["source"] = payload.source.value
    wo_service.add_part(db, wo, data, user)
    db.commit()
    db.refresh(wo)
    return _detail(wo)


@router.post("/{work_order_id}/sign", response_model=WorkOrderDetail)
def sign_work_order(
    work_order_id: uuid.UUID,
    payload: SignatureRequest,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("maintenance:write")),
):
    wo = _work_order(db, work_order_id, user)
    wo_service.sign_technician(db, wo, payload.name or user.full_name, user)
    db.commit()
    db.refresh(wo)
    return _detail(wo)


@router.post("/{work_order_id}/verify", response_model=WorkOrderDetail)
def verify_work_order(
    work_order_id: uuid.UUID,
    payload: Optional[SignatureRequest] = None,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("maintenance:write", "fleet:dvir:write")),
):
    """Driver sign-off that the repair was checked."""
    wo = _work_order(db, work_order_id, user)
    wo_service.verify_driver(db, wo, user, payload.name if payload else None)
    db.commit()
    db.refresh(wo)
    return _detail(wo)
