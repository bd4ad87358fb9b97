import uuid
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..db import get_db
from ..auth.security import require_permissions
from ..models.models import User, Consumable, ConsumableBundle, ConsumableBundleItem, StorageLocation
from ..schemas.inventory import (
    ConsumableCreate,
    ConsumableUpdate,
    ConsumableResponse,
    ConsumableAdjustRequest,
    ConsumableLedgerEntry,
    BundleCreate,
    BundleResponse,
)
from ..services import consumables as consumable_service
from ..services.tenancy import get_scoped_or_404, scoped


router = APIRouter(prefix="/consumables", tags=["consumables"])


class ConsumableTransferRequest(BaseModel):
    from_location_id: uuid.UUID
    to_location_id: uuid.UUID
    quantity: int = Field(gt=0)
    reason: Optional[str] = None


def _consumable(db: Session, consumable_id, user: User) -> Consumable:
    return get_scoped_or_404(db, Consumable, consumable_id, user.organization_id, "Consumable")


def _bundle_items(db: Session, bundle: ConsumableBundle, items, organization_id) -> None:
    bundle.items.clear()
    for it in items:
        get_scoped_or_404(db, Consumable, it.consumable_id, organization_id, "Consumable")
        bundle.items.append(ConsumableBundleItem(
            organization_id=organization_id, consumable_id=it.consumable_id, quantity=it.quantity,
        ))


# ---------- CONSUMABLES ----------
@router.get("", response_model=List[ConsumableResponse])
def list_consumables(
    category: Optional[str] = Query(None),
    include_inactive: bool = Query(False),
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("inventory:read")),
):
    query = scoped(db, Consumable, user.organization_id)
    if category:
        query = query.filter(Consumable.category == category)
    if not include_inactive:
        query = query.filter(Consumable.is_active.is_(True))
    return query.order_by(Consumable.name.asc()).all()


@router.get("/low-stock", response_model=List[ConsumableResponse])
def list_low_stock(
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("inventory:read")),
):
    return consumable_service.low_stock_consumables(db, user.organization_id)


# ---------- BUNDLES ----------
@router.get("/bundles", response_model=List[BundleResponse])
def list_bundles(
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("inventory:read")),
):
    return scoped(db, ConsumableBundle, user.organization_id).order_by(ConsumableBundle.name.asc()).all()


@router.post("/bundles", response_model=BundleResponse)
def create_bundle(
    payload: BundleCreate,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("inventory:write")),
):
    if not payload.name.strip():
        raise HTTPException(status_code=400, detail="Bundle name is required")
    bundle = ConsumableBundle(
        organization_id=user.organization_id,
        name=payload.name.strip(),
        description=payload.description,
        price=payload.price,
    )
    db.add(bundle)
    _bundle_items(db, bundle, payload.items, user.organization_id)
    db.commit()
    db.refresh(bundle)
    return bundle


@router.put("/bundles/{bundle_id}", response_model=BundleResponse)
def update_bundle(
    bundle_id: uuid.UUID,
    payload: BundleCreate,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("inventory:write")),
):
    bundle = get_scoped_or_404(db, ConsumableBundle, bundle_id, user.organization_id, "Bundle")
    bundle.name = payload.name.strip() or bundle.name
    bundle.description = payload.description
    bundle.price = payload.price
    _bundle_items(db, bundle, payload.items, user.organization_id)
    db.commit()
    db.refresh(bundle)
    return bundle


@router.delete("/bundles/{bundle_id}")
def delete_bundle(
    bundle_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("inventory:write")),
):
    bundle = get_scoped_or_404(db, ConsumableBundle, bundle_id, user.organization_id, "Bundle")
    db.delete(bundle)
    db.commit()
    return {"status": "ok"}


@router.post("", response_model=ConsumableResponse)
def create_consumable(
    payload: ConsumableCreate,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("inventory:write")),
):
    if not payload.name.strip():
        raise HTTPException(status_code=400, detail="Consumable name is required")
    data = payload.model_dump(exclude={"on_hand_qty"})
    if data.get("default_storage_location_id"):
        get_scoped_or_404(db, StorageLocation, data["default_storage_location_id"], user.organization_id, "Storage location")
    consumable = Consumable(organization_id=user.organization_id, on_hand_qty=0, **data)
    db.add(consumable)
    db.flush()
    if payload.on_hand_qty:
        consumable_service.adjust_consumable_stock(
            db, consumable, payload.on_hand_qty, "receive", reason="Initial stock", user_id=user.id
        )
    db.commit()
    db.refresh(consumable)
    return consumable


@router.get("/{consumable_id}", response_model=ConsumableResponse)
def get_consumable(
    consumable_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("inventory:read")),
):
    return _consumable(db, consumable_id, user)


@router.put("/{consumable_id}", response_model=ConsumableResponse)
def update_consumable(
    consumable_id: uuid.UUID,
    payload: ConsumableUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("inventory:write")),
):
    consumable = _consumable(db, consumable_id, user)
    data = payload.model_dump(exclude_unset=True)
    if data.get("default_storage_location_id"):
        get_scoped_or_404(db, StorageLocation, data["default_storage_location_id"], user.organization_id, "Storage location")
    for field, value in data.items():
        setattr(consumable, field, value)
    consumable.updated_at = datetime.now(timezone.utc)
    db.commit()
    db.refresh(consumable)
    return consumable


@router.delete("/{consumable_id}")
def deactivate_consumable(
    consumable_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("inventory:write")),
):
    consumable = _consumable(db, consumable_id, user)
    consumable.is_active = False
    db.commit()
    return {"status": "ok"}


# ---------- STOCK ----------
@router.post("/{consumable_id}/adjust", response_model=ConsumableLedgerEntry)
def adjust_consumable(
    consumable_id: uuid.UUID,
    payload: ConsumableAdjustRequest,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("inventory:write")),
):
    consumable = _consumable(db, consumable_id, user)
    if payload.location_id:
        get_scoped_or_404(db, StorageLocation, payload.location_id, user.organization_id, "Storage location")
    entry = consumable_service.adjust_consumable_stock(
        db, consumable, payload.quantity_change, payload.adjustment_type,
        location_id=payload.location_id, reason=payload.reason, user_id=user.id,
    )
    db.commit()
    db.refresh(entry)
    return entry


@router.post("/{consumable_id}/transfer")
def transfer_consumable(
    consumable_id: uuid.UUID,
    payload: ConsumableTransferRequest,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("inventory:write")),
):
    consumable = _consumable(db, consumable_id, user)
    for loc_id in (payload.from_location_id, payload.to_location_id):
        get_scoped_or_404(db, StorageLocation, loc_id, user.organization_id, "Storage location")
    result = consumable_service.transfer_consumable(
        db, consumable, payload.from_location_id, payload.to_location_id, payload.quantity,
        user_id=user.id, reason=payload.reason,
    )
    db.commit()
    return result


@router.get("/{consumable_id}/ledger", response_model=List[ConsumableLedgerEntry])
def consumable_ledger(
    consumable_id: uuid.UUID,
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("inventory:read")),
):
    return consumable_service.ledger(db, _consumable(db, consumable_id, user), limit)


@router.post("/{consumable_id}/reconcile")
def reconcile(
    consumable_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("inventory:write")),
):
    result = consumable_service.reconcile_consumable(db, _consumable(db, consumable_id, user))
    db.commit()
    return result

