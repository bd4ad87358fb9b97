"""
Equipment stock service.

A product has a master stock count (Product.stock_total). Part of it is
individually tracked as ProductItem rows; the remainder is the bulk pool.
Reservations against jobs are EquipmentAssignment rows, either bulk
(product + quantity) or for one tracked item.
"""
import re
import uuid
from datetime import date, datetime, timezone
from typing import Optional, List, Dict, Any

import structlog
from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from ..errors import InsufficientStockError, ValidationFailed, ConflictError
from ..models.models import (
    Product,
    ProductItem,
    ProductLocationStock,
    StockAdjustment,
    StorageLocation,
    EquipmentAssignment,
    Job,
)

logger = structlog.get_logger(__name__)

ACTIVE_ASSIGNMENT_STATUSES = ("reserved", "assigned", "delivered")
UNAVAILABLE_ITEM_STATUSES = ("maintenance", "retired")


# ---------- ITEM CODES ----------
def generate_item_code(product_name: str, sequence_number: int) -> str:
    """
    Build an item code from product initials and a sequence.

    "Standard Portable Toilet", 7 -> "SPT-0007"
    """
    words = [re.sub(r"[^A-Za-z0-9]", "", w) for w in (product_name or "").split()]
    initials = "".join(w[0] for w in words if w)[:3].upper()
    return f"{initials or 'ITM'}-{sequence_number:04d}"


def next_item_code(db: Session, product: Product) -> str:
    prefix = generate_item_code(product.name, 0).rsplit("-", 1)[0]
    existing = {
        code for (code,) in db.query(ProductItem.item_code)
        .filter(
            ProductItem.organization_id == product.organization_id,
            ProductItem.item_code.like(f"{prefix}-%"),
        )
        .all()
    }
    seq = len(existing) + 1
    while generate_item_code(product.name, seq) in existing:
        seq += 1
    return generate_item_code(product.name, seq)


# ---------- LOCATIONS ----------
def get_default_location(db: Session, product: Product) -> Optional[StorageLocation]:
    if product.default_storage_location_id:
        loc = db.get(StorageLocation, product.default_storage_location_id)
        if loc:
            return loc
    return (
        db.query(StorageLocation)
        .filter(
            StorageLocation.organization_id == product.organization_id,
            StorageLocation.is_default.is_(True),
            StorageLocation.is_active.is_(True),
        )
        .first()
    )


def _location_row(db: Session, product: Product, location_id: uuid.UUID) -> ProductLocationStock:
    row = (
        db.query(ProductLocationStock)
        .filter(
            ProductLocationStock.product_id == product.id,
            ProductLocationStock.storage_location_id == location_id,
        )
        .first()
    )
    if row is None:
        row = ProductLocationStock(
            organization_id=product.organization_id,
            product_id=product.id,
            storage_location_id=location_id,
            quantity=0,
        )
        db.add(row)
        db.flush()
    return row


def transfer_location_stock(db: Session, product: Product, from_location_id, to_location_id, quantity: int) -> Dict[str, int]:
    if quantity <= 0:
        raise ValidationFailed("Quantity must be positive")
    if from_location_id == to_location_id:
        raise ValidationFailed("Source and destination must differ")
    source = _location_row(db, product, from_location_id)
    if source.quantity < quantity:
        raise InsufficientStockError("Not enough stock at source location", requested=quantity, available=source.quantity)
    dest = _location_row(db, product, to_location_id)
    now = datetime.now(timezone.utc)
    source.quantity -= quantity
    dest.quantity += quantity
    source.updated_at = now
    dest.updated_at = now
    db.flush()
    return {"from_quantity": source.quantity, "to_quantity": dest.quantity}


# ---------- UNIFIED STOCK ----------
def _tracked_items(db: Session, product: Product) -> List[ProductItem]:
    return (
        db.query(ProductItem)
        .filter(ProductItem.product_id == product.id, ProductItem.status != "retired")
        .all()
    )


def _bulk_assignments(db: Session, product: Product):
    return db.query(EquipmentAssignment).filter(
        EquipmentAssignment.product_id == product.id,
        EquipmentAssignment.product_item_id.is_(None),
        EquipmentAssignment.status.in_(ACTIVE_ASSIGNMENT_STATUSES),
    )


def _overlapping(query, start: date, end: date):
    return query.filter(
        EquipmentAssignment.assigned_date <= end,
        or_(EquipmentAssignment.return_date.is_(None), EquipmentAssignment.return_date >= start),
    )


def get_unified_product_stock(db: Session, product: Product, today: Optional[date] = None) -> Dict[str, Any]:
    """
    Stock picture for one product.

    Returns master stock, individual item counts by status, the bulk pool
    and its on-job/reserved split, totals, the tracking method and the
    low/critical/inconsistency flags.
    """
    today = today or date.today()
    master = product.stock_total or 0
    items = _tracked_items(db, product)

    future_item_ids = set()
    if items:
        future_item_ids = {
            a.product_item_id for a in db.query(EquipmentAssignment).filter(
                EquipmentAssignment.product_item_id.in_([i.id for i in items]),
                EquipmentAssignment.status.in_(ACTIVE_ASSIGNMENT_STATUSES),
                EquipmentAssignment.assigned_date > today,
            )
        }
    individual = {
        "total_tracked": len(items),
        "available": sum(1 for i in items if i.status == "available"),
        "assigned": sum(1 for i in items if i.status == "assigned" and i.id not in future_item_ids),
        "reserved": sum(1 for i in items if i.status == "assigned" and i.id in future_item_ids),
        "on_job": sum(1 for i in items if i.status == "deployed"),
        "maintenance": sum(1 for i in items if i.status == "maintenance"),
    }

    bulk_pool = max(0, master - len(items))
    bulk_on_job = 0
    bulk_reserved = 0
    for a in _bulk_assignments(db, product):
        if a.assigned_date > today:
            bulk_reserved += a.quantity
        elif a.return_date is None or a.return_date >= today:
            bulk_on_job += a.quantity
    bulk_available = max(0, bulk_pool - bulk_on_job)

    if items and bulk_pool:
        tracking_method = "hybrid"
    elif items:
        tracking_method = "individual"
    elif bulk_pool:
        tracking_method = "bulk"
    else:
        tracking_method = "none"

    physically_available = individual["available"] + bulk_available
    pct = (physically_available / master * 100.0) if master else 0.0
    threshold = product.low_stock_threshold
    is_low = pct < 20 or (threshold is not None and physically_available <= threshold)

    return {
        "product_id": product.id,
        "product_name": product.name,
        "master_stock": master,
        "individual_items": individual,
        "bulk_stock": {
            "pool_available": bulk_available,
            "pool_total": bulk_pool,
            "on_job": bulk_on_job,
            "reserved": bulk_reserved,
        },
        "totals": {
            "physically_available": physically_available,
            "total_on_job": individual["on_job"] + individual["assigned"] + bulk_on_job,
            "total_reserved": individual["reserved"] + bulk_reserved,
            "total_maintenance": individual["maintenance"],
        },
        "tracking_method": tracking_method,
        "is_low_stock": is_low,
        "is_critical_stock": pct < 10,
        "has_inconsistency": len(items) + bulk_pool != master,
        "location_breakdown": [
            {"storage_location_id": r.storage_location_id, "quantity": r.quantity}
            for r in db.query(ProductLocationStock).filter(ProductLocationStock.product_id == product.id)
        ],
    }


def low_stock_products(db: Session, organization_id) -> List[Dict[str, Any]]:
    products = (
        db.query(Product)
        .filter(Product.organization_id == organization_id, Product.track_inventory.is_(True))
        .order_by(Product.name)
        .all()
    )
    out = []
    for p in products:
        stock = get_unified_product_stock(db, p)
        if stock["is_low_stock"]:
            out.append(stock)
    return out


# ---------- MASTER STOCK ----------
def adjust_master_stock(
    db: Session,
    product: Product,
    quantity_change: int,
    reason: str,
    notes: Optional[str] = None,
    user_id=None,
) -> Dict[str, Any]:
    """
    Apply a signed change to master stock, floored at zero, mirrored into
    the default location's stock row and logged as a StockAdjustment.
    """
    if not reason or not reason.strip():
        raise ValidationFailed("Reason is required")

    old_stock = product.stock_total or 0
    new_stock = max(0, old_stock + quantity_change)
    product.stock_total = new_stock
    product.updated_at = datetime.now(timezone.utc)

    location = get_default_location(db, product)
    if location:
        row = _location_row(db, product, location.id)
        row.quantity = max(0, (row.quantity or 0) + quantity_change)
        row.updated_at = product.updated_at

    db.add(StockAdjustment(
        organization_id=product.organization_id,
        product_id=product.id,
        quantity_change=quantity_change,
        previous_quantity=old_stock,
        new_quantity=new_stock,
        reason=reason.strip(),
        notes=notes,
        adjusted_by=user_id,
    ))
    db.flush()

    tracked = len(_tracked_items(db, product))
    logger.info("stock_adjusted", product_id=str(product.id), old_stock=old_stock, new_stock=new_stock, reason=reason)
    return {
        "success": True,
        "old_stock": old_stock,
        "new_stock": new_stock,
        "quantity_change": quantity_change,
        "individual_items_count": tracked,
        "bulk_pool": max(0, new_stock - tracked),
        "reason": reason.strip(),
    }


def _create_items(db: Session, product: Product, quantity: int, location: Optional[StorageLocation]) -> List[ProductItem]:
    created = []
    for _ in range(quantity):
        item = ProductItem(
            organization_id=product.organization_id,
            product_id=product.id,
            item_code=next_item_code(db, product),
            status="available",
            current_storage_location_id=location.id if location else None,
        )
        db.add(item)
        db.flush()
        created.append(item)
    return created


def convert_bulk_to_tracked(db: Session, product: Product, quantity: int) -> List[ProductItem]:
    """Move units from the bulk pool into tracked items. Master stock is unchanged."""
    if quantity <= 0:
        raise ValidationFailed("Quantity must be positive")
    pool = max(0, (product.stock_total or 0) - len(_tracked_items(db, product)))
    if quantity > pool:
        raise InsufficientStockError("Not enough bulk stock to convert", requested=quantity, available=pool)
    items = _create_items(db, product, quantity, get_default_location(db, product))
    logger.info("bulk_converted", product_id=str(product.id), quantity=quantity)
    return items


def add_tracked_inventory(db: Session, product: Product, quantity: int, user_id=None) -> List[ProductItem]:
    """Create new tracked items and raise master stock by the same amount."""
    if quantity <= 0:
        raise ValidationFailed("Quantity must be positive")
    items = _create_items(db, product, quantity, get_default_location(db, product))
    adjust_master_stock(db, product, quantity, "Tracked inventory added", user_id=user_id)
    return items


def sync_product_stock_totals(db: Session, organization_id) -> Dict[str, Any]:
    """Raise master stock wherever it is below the tracked item count."""
    tracked_counts = dict(
        db.query(ProductItem.product_id, func.count(ProductItem.id))
        .filter(ProductItem.organization_id == organization_id, ProductItem.status != "retired")
        .group_by(ProductItem.product_id)
        .all()
    )
    fixed = 0
    for product in db.query(Product).filter(Product.organization_id == organization_id):
        count = tracked_counts.get(product.id, 0)
        if (product.stock_total or 0) < count:
            product.stock_total = count
            product.updated_at = datetime.now(timezone.utc)
            fixed += 1
    db.flush()
    return {"success": True, "products_fixed": fixed}


# ---------- AVAILABILITY ----------
def check_unit_availability(db: Session, item: ProductItem, start: date, end: date, exclude_job_id=None) -> bool:
    if item.status in UNAVAILABLE_ITEM_STATUSES:
        return False
    q = _overlapping(
        db.query(EquipmentAssignment).filter(
            EquipmentAssignment.product_item_id == item.id,
            EquipmentAssignment.status.in_(ACTIVE_ASSIGNMENT_STATUSES),
        ),
        start,
        end,
    )
    if exclude_job_id:
        q = q.filter(EquipmentAssignment.job_id != exclude_job_id)
    return q.first() is None


def get_available_units(db: Session, product: Product, start: date, end: date) -> List[ProductItem]:
    return [i for i in _tracked_items(db, product) if check_unit_availability(db, i, start, end)]


def get_product_availability(db: Session, product: Product, start: date, end: date) -> Dict[str, int]:
    if end < start:
        raise ValidationFailed("End date must be on or after start date")
    items = _tracked_items(db, product)
    bulk_pool = max(0, (product.stock_total or 0) - len(items))
    reserved = _overlapping(_bulk_assignments(db, product), start, end).with_entities(
        func.coalesce(func.sum(EquipmentAssignment.quantity), 0)
    ).scalar() or 0
    tracked_available = sum(1 for i in items if check_unit_availability(db, i, start, end))
    bulk_available = max(0, bulk_pool - int(reserved))
    return {
        "total": product.stock_total or 0,
        "tracked_available": tracked_available,
        "bulk_available": bulk_available,
        "available": tracked_available + bulk_available,
    }


# ---------- RESERVATIONS ----------
def reserve_equipment_for_job(
    db: Session,
    job: Job,
    product: Product,
    quantity: int,
    assignment_date: date,
    return_date: Optional[date] = None,
) -> Dict[str, Any]:
    """Reserve bulk units of a product for a job over a date window."""
    if quantity <= 0:
        raise ValidationFailed("Quantity must be positive")
    end = return_date or assignment_date
    availability = get_product_availability(db, product, assignment_date, end)
    if quantity > availability["bulk_available"]:
        raise InsufficientStockError(
            f"Only {availability['bulk_available']} units of {product.name} available",
            requested=quantity,
            available=availability["bulk_available"],
        )
    location = get_default_location(db, product)
    assignment = EquipmentAssignment(
        organization_id=job.organization_id,
        job_id=job.id,
        product_id=product.id,
        quantity=quantity,
        assigned_date=assignment_date,
        return_date=return_date,
        status="reserved",
        source_storage_location_id=location.id if location else None,
    )
    db.add(assignment)
    db.flush()
    logger.info("equipment_reserved", job_id=str(job.id), product_id=str(product.id), quantity=quantity)
    return {"success": True, "assignment_id": assignment.id, "reserved": quantity}


def reserve_specific_item_for_job(
    db: Session,
    job: Job,
    item: ProductItem,
    assignment_date: date,
    return_date: Optional[date] = None,
) -> EquipmentAssignment:
    end = return_date or assignment_date
    if not check_unit_availability(db, item, assignment_date, end):
        raise ConflictError(f"Unit {item.item_code} is not available for the requested dates")
    assignment = EquipmentAssignment(
        organization_id=job.organization_id,
        job_id=job.id,
        product_id=item.product_id,
        product_item_id=item.id,
        quantity=1,
        assigned_date=assignment_date,
        return_date=return_date,
        status="assigned",
        source_storage_location_id=item.current_storage_location_id,
    )
    item.status = "assigned"
    item.updated_at = datetime.now(timezone.utc)
    db.add(assignment)
    db.flush()
    return assignment


def job_assignments(db: Session, job: Job) -> List[EquipmentAssignment]:
    return (
        db.query(EquipmentAssignment)
        .filter(EquipmentAssignment.job_id == job.id)
        .order_by(EquipmentAssignment.created_at)
        .all()
    )


def release_job_assignments(db: Session, job: Job) -> int:
    """Cancel a job's open reservations and free its tracked items."""
    released = 0
    for a in job_assignments(db, job):
        if a.status in ("reserved", "assigned"):
            a.status = "cancelled"
            a.updated_at = datetime.now(timezone.utc)
            released += 1
    db.flush()
    for a in job_assignments(db, job):
        if a.status == "cancelled" and a.product_item is not None and a.product_item.status == "assigned":
            free_item_if_idle(db, a.product_item)
    db.flush()
    return released


def free_item_if_idle(db: Session, item: ProductItem) -> None:
    """Make a tracked unit available unless another active assignment still holds it."""
    db.flush()
    held = (
        db.query(EquipmentAssignment)
        .filter(
            EquipmentAssignment.product_item_id == item.id,
            EquipmentAssignment.status.in_(ACTIVE_ASSIGNMENT_STATUSES),
        )
        .count()
    )
    item.status = "assigned" if held else "available"
