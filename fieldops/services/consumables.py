"""
Consumable stock ledger.

Consumable.on_hand_qty equals the sum of its location stock rows whenever any
exist. Every quantity change writes one ConsumableStockAdjustment per
affected location.
"""
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any

import structlog
from sqlalchemy import func
from sqlalchemy.orm import Session

from ..errors import InsufficientStockError, ValidationFailed, NotFoundError
from ..models.models import (
    Consumable,
    ConsumableLocationStock,
    ConsumableStockAdjustment,
    ConsumableBundle,
    JobConsumable,
    Job,
)

logger = structlog.get_logger(__name__)

ADJUSTMENT_TYPES = ("receive", "use", "adjust", "transfer_in", "transfer_out", "job_usage")
BILLING_METHODS = ("per-use", "bundle", "subscription")


def _location_rows(db: Session, consumable: Consumable) -> List[ConsumableLocationStock]:
    return db.query(ConsumableLocationStock).filter(ConsumableLocationStock.consumable_id == consumable.id).all()


def _location_row(db: Session, consumable: Consumable, location_id, create: bool = True) -> Optional[ConsumableLocationStock]:
    row = (
        db.query(ConsumableLocationStock)
        .filter(
            ConsumableLocationStock.consumable_id == consumable.id,
            ConsumableLocationStock.storage_location_id == location_id,
        )
        .first()
    )
    if row is None and create:
        # First location row takes over the untracked on-hand quantity
        seed = 0 if _location_rows(db, consumable) else (consumable.on_hand_qty or 0)
        row = ConsumableLocationStock(
            organization_id=consumable.organization_id,
            consumable_id=consumable.id,
            storage_location_id=location_id,
            quantity=seed,
        )
        db.add(row)
        db.flush()
    return row


def _sync_on_hand(db: Session, consumable: Consumable) -> None:
    total = (
        db.query(func.coalesce(func.sum(ConsumableLocationStock.quantity), 0))
        .filter(ConsumableLocationStock.consumable_id == consumable.id)
        .scalar()
    )
    consumable.on_hand_qty = int(total or 0)


def adjust_consumable_stock(
    db: Session,
    consumable: Consumable,
    quantity_change: int,
    adjustment_type: str = "adjust",
    location_id=None,
    reason: Optional[str] = None,
    reference_id=None,
    user_id=None,
    clamp: bool = False,
) -> ConsumableStockAdjustment:
    """
    Apply a signed quantity change and write the ledger row.

    A reduction below zero raises InsufficientStockError unless clamp is set,
    in which case the quantity stops at zero and the ledger records the
    change actually applied.
    """
    if adjustment_type not in ADJUSTMENT_TYPES:
        raise ValidationFailed(f"Unknown adjustment type: {adjustment_type}")
    if quantity_change == 0:
        raise ValidationFailed("Quantity change must be non-zero")

    location_id = location_id or consumable.default_storage_location_id
    has_locations = bool(_location_rows(db, consumable))
    if has_locations and not location_id:
        raise ValidationFailed("Storage location is required for location-tracked consumables")

    if location_id:
        row = _location_row(db, consumable, location_id)
        previous = row.quantity or 0
    else:
        row = None
        previous = consumable.on_hand_qty or 0

    new_qty = previous + quantity_change
    if new_qty < 0:
        if not clamp:
            raise InsufficientStockError(
                f"Insufficient stock for {consumable.name}", requested=-quantity_change, available=previous
            )
        new_qty = 0
    applied = new_qty - previous
    now = datetime.now(timezone.utc)

    if row is not None:
        row.quantity = new_qty
        row.updated_at = now
        db.flush()
        _sync_on_hand(db, consumable)
    else:
        consumable.on_hand_qty = new_qty
    consumable.updated_at = now

    entry = ConsumableStockAdjustment(
        organization_id=consumable.organization_id,
        consumable_id=consumable.id,
        storage_location_id=location_id,
        adjustment_type=adjustment_type,
        previous_quantity=previous,
        quantity_change=applied,
        new_quantity=new_qty,
        reason=reason,
        reference_id=reference_id,
        adjusted_by=user_id,
    )
    db.add(entry)
    db.flush()
    if consumable.on_hand_qty <= (consumable.reorder_threshold or 0):
        logger.info("consumable_low_stock", consumable_id=str(consumable.id), on_hand=consumable.on_hand_qty)
    return entry


def transfer_consumable(db: Session, consumable: Consumable, from_location_id, to_location_id, quantity: int,
                        user_id=None, reason: Optional[str] = None) -> Dict[str, Any]:
    if quantity <= 0:
        raise ValidationFailed("Quantity must be positive")
    if from_location_id == to_location_id:
        raise ValidationFailed("Source and destination must differ")
    source = _location_row(db, consumable, from_location_id, create=False)
    available = source.quantity if source else 0
    if available < quantity:
        raise InsufficientStockError("Not enough stock at source location", requested=quantity, available=available)
    out_entry = adjust_consumable_stock(db, consumable, -quantity, "transfer_out", from_location_id, reason, user_id=user_id)
    in_entry = adjust_consumable_stock(db, consumable, quantity, "transfer_in", to_location_id, reason, user_id=user_id)
    return {
        "from_quantity": out_entry.new_quantity,
        "to_quantity": in_entry.new_quantity,
        "on_hand_qty": consumable.on_hand_qty,
    }


def _deduct_job_usage(db: Session, consumable: Consumable, quantity: int, job: Job, user_id=None) -> None:
    """
    Take job usage out of stock without ever failing.

    Location-tracked consumables are drawn from the default location first,
    then from the fullest locations, one ledger row per location touched.
    Whatever stock cannot cover is dropped.
    """
    reason = f"Job {job.job_number}"
    rows = _location_rows(db, consumable)
    if not rows:
        adjust_consumable_stock(db, consumable, -quantity, "job_usage", reason=reason, reference_id=job.id,
                                user_id=user_id, clamp=True)
        return
    default_id = consumable.default_storage_location_id
    rows.sort(key=lambda r: (r.storage_location_id != default_id, -(r.quantity or 0)))
    remaining = quantity
    for row in rows:
        take = min(remaining, row.quantity or 0)
        if take <= 0:
            continue
        adjust_consumable_stock(db, consumable, -take, "job_usage", row.storage_location_id, reason,
                                reference_id=job.id, user_id=user_id)
        remaining -= take
        if not remaining:
            return
    if remaining == quantity:
        # nothing on hand anywhere; record the shortfall against the first location
        adjust_consumable_stock(db, consumable, -quantity, "job_usage", rows[0].storage_location_id, reason,
                                reference_id=job.id, user_id=user_id, clamp=True)
    else:
        logger.warning("job_usage_short", consumable_id=str(consumable.id), job_id=str(job.id), short=remaining)


def process_job_consumables(
    db: Session,
    job: Job,
    billing_method: str,
    items: Optional[List[Dict[str, Any]]] = None,
    bundle_id=None,
    bundle_quantity: int = 1,
    user_id=None,
) -> List[JobConsumable]:
    """
    Record consumables used on a job.

    per-use: each item is billed and deducted from stock.
    bundle: the bundle's items (times bundle_quantity) are recorded and deducted.
    subscription: usage is recorded without touching stock or billing.
    Job usage never blocks on stock: deductions stop at zero.
    """
    if billing_method not in BILLING_METHODS:
        raise ValidationFailed(f"Unknown billing method: {billing_method}")

    lines: List[tuple] = []
    if billing_method == "bundle":
        if not bundle_id:
            raise ValidationFailed("bundle_id is required for bundle billing")
        bundle = (
            db.query(ConsumableBundle)
            .filter(ConsumableBundle.id == bundle_id, ConsumableBundle.organization_id == job.organization_id)
            .first()
        )
        if bundle is None:
            raise NotFoundError("Bundle not found")
        for bi in bundle.items:
            lines.append((bi.consumable, bi.quantity * bundle_quantity))
    else:
        for raw in items or []:
            consumable = (
                db.query(Consumable)
                .filter(Consumable.id == raw["consumable_id"], Consumable.organization_id == job.organization_id)
                .first()
            )
            if consumable is None:
                raise NotFoundError("Consumable not found")
            qty = int(raw.get("quantity") or 0)
            if qty <= 0:
                raise ValidationFailed("Quantity must be positive")
            lines.append((consumable, qty))

    created = []
    for consumable, qty in lines:
        unit_price = 0.0 if billing_method == "subscription" else (consumable.unit_price or 0.0)
        jc = JobConsumable(
            organization_id=job.organization_id,
            job_id=job.id,
            consumable_id=consumable.id,
            quantity=qty,
            unit_price=unit_price,
            line_total=round(unit_price * qty, 2),
            billing_method=billing_method,
        )
        db.add(jc)
        created.append(jc)
        if billing_method != "subscription":
            _deduct_job_usage(db, consumable, qty, job, user_id)
    db.flush()
    return created


def low_stock_consumables(db: Session, organization_id) -> List[Consumable]:
    return (
        db.query(Consumable)
        .filter(
            Consumable.organization_id == organization_id,
            Consumable.is_active.is_(True),
            Consumable.on_hand_qty <= Consumable.reorder_threshold,
        )
        .order_by(Consumable.name)
        .all()
    )


def reconcile_consumable(db: Session, consumable: Consumable) -> Dict[str, Any]:
    """Reset on_hand_qty to the location total and report the drift."""
    previous = consumable.on_hand_qty or 0
    if not _location_rows(db, consumable):
        return {"consumable_id": consumable.id, "previous_on_hand": previous, "on_hand_qty": previous, "drift": 0}
    _sync_on_hand(db, consumable)
    db.flush()
    drift = previous - consumable.on_hand_qty
    if drift:
        logger.warning("consumable_drift_corrected", consumable_id=str(consumable.id), drift=drift)
    return {
        "consumable_id": consumable.id,
        "previous_on_hand": previous,
        "on_hand_qty": consumable.on_hand_qty,
        "drift": drift,
    }


def ledger(db: Session, consumable: Consumable, limit: int = 100) -> List[ConsumableStockAdjustment]:
    return (
        db.query(ConsumableStockAdjustment)
        .filter(ConsumableStockAdjustment.consumable_id == consumable.id)
        .order_by(ConsumableStockAdjustment.created_at.desc())
        .limit(limit)
        .all()
    )
