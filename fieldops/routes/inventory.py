import uuid
from datetime import date, datetime, timezone
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ..db import get_db
from ..auth.security import require_permissions
from ..models.models import User, StorageLocation, Product, ProductItem, StockAdjustment, EquipmentAssignment
from ..schemas.inventory import (
    StorageLocationCreate,
    StorageLocationResponse,
    ProductCreate,
    ProductUpdate,
    ProductResponse,
    ProductItemResponse,
    ProductItemUpdate,
    ItemStatus,
    StockAdjustRequest,
    QuantityRequest,
    LocationTransferRequest,
    StockAdjustmentResponse,
)
from ..services import stock as stock_service
from ..services.audit import create_audit_log
from ..services.tenancy import get_scoped_or_404, scoped


router = APIRouter(prefix="/inventory", tags=["inventory"])


def _product(db: Session, product_id, user: User) -> Product:
    return get_scoped_or_404(db, Product, product_id, user.organization_id, "Product")


def _clear_default_locations(db: Session, organization_id, keep_id=None) -> None:
    q = scoped(db, StorageLocation, organization_id).filter(StorageLocation.is_default.is_(True))
    if keep_id is not None:
        q = q.filter(StorageLocation.id != keep_id)
    for loc in q.all():
        loc.is_default = False


# ---------- STORAGE LOCATIONS ----------
@router.get("/locations", response_model=List[StorageLocationResponse])
def list_locations(
    include_inactive: bool = Query(False),
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("inventory:read")),
):
    query = scoped(db, StorageLocation, user.organization_id)
    if not include_inactive:
        query = query.filter(StorageLocation.is_active.is_(True))
    return query.order_by(StorageLocation.name.asc()).all()


@router.post("/locations", response_model=StorageLocationResponse)
def create_location(
    payload: StorageLocationCreate,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("inventory:write")),
):
    name = payload.name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="Location name is required")
    if payload.is_default:
        _clear_default_locations(db, user.organization_id)
    loc = StorageLocation(organization_id=user.organization_id, **payload.model_dump(exclude={"name"}), name=name)
    db.add(loc)
    db.commit()
    db.refresh(loc)
    return loc


@router.put("/locations/{location_id}", response_model=StorageLocationResponse)
def update_location(
    location_id: uuid.UUID,
    payload: StorageLocationCreate,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("inventory:write")),
):
    loc = get_scoped_or_404(db, StorageLocation, location_id, user.organization_id, "Storage location")
    for field, value in payload.model_dump(exclude_unset=True).items():
        setattr(loc, field, value)
    if loc.is_default:
        _clear_default_locations(db, user.organization_id, keep_id=loc.id)
    db.commit()
    db.refresh(loc)
    return loc


@router.delete("/locations/{location_id}")
def deactivate_location(
    location_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("inventory:write")),
):
    loc = get_scoped_or_404(db, StorageLocation, location_id, user.organization_id, "Storage location")
    loc.is_active = False
    loc.is_default = False
    db.commit()
    return {"status": "ok"}


# ---------- PRODUCTS ----------
@router.get("/products", response_model=List[ProductResponse])
def list_products(
    search: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("inventory:read")),
):
    query = scoped(db, Product, user.organization_id)
    if search:
        query = query.filter(Product.name.ilike(f"%{search}%"))
    return query.order_by(Product.name.asc()).all()


@router.get("/products/low-stock")
def list_low_stock(
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("inventory:read")),
):
    return stock_service.low_stock_products(db, user.organization_id)


@router.post("/products/sync-totals")
def sync_totals(
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("inventory:write")),
):
    result = stock_service.sync_product_stock_totals(db, user.organization_id)
    db.commit()
    return result


@router.post("/products", response_model=ProductResponse)
def create_product(
    payload: ProductCreate,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("inventory:write")),
):
    data = payload.model_dump(exclude={"stock_total"})
    if not data["name"].strip():
        raise HTTPException(status_code=400, detail="Product name is required")
    if data.get("default_storage_location_id"):
        get_scoped_or_404(db, StorageLocation, data["default_storage_location_id"], user.organization_id, "Storage location")
    product = Product(organization_id=user.organization_id, stock_total=0, **data)
    db.add(product)
    db.flush()
    if payload.stock_total:
        stock_service.adjust_master_stock(db, product, payload.stock_total, "Initial stock", user_id=user.id)
    db.commit()
    db.refresh(product)
    return product


@router.get("/products/{product_id}", response_model=ProductResponse)
def get_product(
    product_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("inventory:read")),
):
    return _product(db, product_id, user)


@router.put("/products/{product_id}", response_model=ProductResponse)
def update_product(
    product_id: uuid.UUID,
    payload: ProductUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("inventory:write")),
):
    product = _product(db, product_id, user)
    data = payload.model_dump(exclude_unset=True)
    if data.get("default_storage_location_id"):
        get_scoped_or_404(db, StorageLocation, data["default_storage_location_id"], user.organization_id, "Storage location")
    for field, value in data.items():
        setattr(product, field, value)
    product.updated_at = datetime.now(timezone.utc)
    db.commit()
    db.refresh(product)
    return product


@router.delete("/products/{product_id}")
def delete_product(
    product_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("inventory:write")),
):
    product = _product(db, product_id, user)
    active = (
        db.query(EquipmentAssignment)
        .filter(
            EquipmentAssignment.product_id == product.id,
            EquipmentAssignment.status.in_(stock_service.ACTIVE_ASSIGNMENT_STATUSES),
        )
        .first()
    )
    if active is not None:
        raise HTTPException(status_code=409, detail="Product has active reservations")
    db.delete(product)
    db.commit()
    return {"status": "ok"}


# ---------- STOCK ----------
@router.get("/products/{product_id}/stock")
def product_stock(
    product_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("inventory:read")),
):
    return stock_service.get_unified_product_stock(db, _product(db, product_id, user))


@router.post("/products/{product_id}/adjust")
def adjust_stock(
    product_id: uuid.UUID,
    payload: StockAdjustRequest,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("inventory:write")),
):
    product = _product(db, product_id, user)
    result = stock_service.adjust_master_stock(
        db, product, payload.quantity_change, payload.reason, payload.notes, user_id=user.id
    )
    create_audit_log(
        db, user.organization_id, "product", product.id, "STOCK_ADJUST", actor_id=user.id,
        changes_json={"stock_total": {"before": result["old_stock"], "after": result["new_stock"]}},
        context={"reason": result["reason"]},
    )
    db.commit()
    return result


@router.post("/products/{product_id}/convert-bulk", response_model=List[ProductItemResponse])
def convert_bulk(
    product_id: uuid.UUID,
    payload: QuantityRequest,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("inventory:write")),
):
    items = stock_service.convert_bulk_to_tracked(db, _product(db, product_id, user), payload.quantity)
    db.commit()
    return items


@router.post("/products/{product_id}/add-tracked", response_model=List[ProductItemResponse])
def add_tracked(
    product_id: uuid.UUID,
    payload: QuantityRequest,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("inventory:write")),
):
    items = stock_service.add_tracked_inventory(db, _product(db, product_id, user), payload.quantity, user_id=user.id)
    db.commit()
    return items


@router.get("/products/{product_id}/availability")
def product_availability(
    product_id: uuid.UUID,
    start: date = Query(...),
    end: date = Query(...),
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("inventory:read")),
):
    product = _product(db, product_id, user)
    result = stock_service.get_product_availability(db, product, start, end)
    result["available_units"] = [
        {"id": str(i.id), "item_code": i.item_code}
        for i in stock_service.get_available_units(db, product, start, end)
    ]
    return result


@router.get("/products/{product_id}/adjustments", response_model=List[StockAdjustmentResponse])
def stock_adjustments(
    product_id: uuid.UUID,
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("inventory:read")),
):
    product = _product(db, product_id, user)
    return (
        db.query(StockAdjustment)
        .filter(StockAdjustment.product_id == product.id)
        .order_by(StockAdjustment.created_at.desc())
        .limit(limit)
        .all()
    )


@router.post("/products/{product_id}/transfer")
def transfer_stock(
    product_id: uuid.UUID,
    payload: LocationTransferRequest,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("inventory:write")),
):
    product = _product(db, product_id, user)
    for loc_id in (payload.from_location_id, payload.to_location_id):
        get_scoped_or_404(db, StorageLocation, loc_id, user.organization_id, "Storage location")
    result = stock_service.transfer_location_stock(
        db, product, payload.from_location_id, payload.to_location_id, payload.quantity
    )
    db.commit()
    return result


# ---------- ITEMS ----------
@router.get("/products/{product_id}/items", response_model=List[ProductItemResponse])
def list_items(
    product_id: uuid.UUID,
    status: Optional[ItemStatus] = Query(None),
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("inventory:read")),
):
    product = _product(db, product_id, user)
    query = db.query(ProductItem).filter(ProductItem.product_id == product.id)
    if status:
        query = query.filter(ProductItem.status == status.value)
    return query.order_by(ProductItem.item_code.asc()).all()


@router.get("/items/{item_id}", response_model=ProductItemResponse)
def get_item(
    item_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("inventory:read")),
):
    return get_scoped_or_404(db, ProductItem, item_id, user.organization_id, "Unit")


@router.put("/items/{item_id}", response_model=ProductItemResponse)
def update_item(
    item_id: uuid.UUID,
    payload: ProductItemUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("inventory:write")),
):
    item = get_scoped_or_404(db, ProductItem, item_id, user.organization_id, "Unit")
    data = payload.model_dump(exclude_unset=True)
    if "status" in data and data["status"] is not None:
        data["status"] = data["status"].value
    if data.get("current_storage_location_id"):
        get_scoped_or_404(db, StorageLocation, data["current_storage_location_id"], user.organization_id, "Storage location")
    for field, value in data.items():
        setattr(item, field, value)
    item.updated_at = datetime.now(timezone.utc)
    db.commit()
    db.refresh(item)
    return item
