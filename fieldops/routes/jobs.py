import uuid
from datetime import date, datetime, timezone
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..db import get_db
from ..auth.security import require_permissions, has_permission
from ..models.models import User, Job, JobStatusLog, JobConsumable, Product, ProductItem, Vehicle
from ..schemas.jobs import (
    JobCreate,
    JobUpdate,
    JobResponse,
    JobStatus,
    JobType,
    JobStatusUpdate,
    JobStatusLogResponse,
    JobNoteCreate,
    JobNoteResponse,
    AssignmentResponse,
    JobConsumablesRequest,
    JobConsumableResponse,
)
from ..services import jobs as job_service
from ..services import stock as stock_service
from ..services.audit import compute_diff, create_audit_log
from ..services.consumables import process_job_consumables
from ..services.tenancy import get_scoped_or_404, scoped


router = APIRouter(prefix="/jobs", tags=["jobs"])


class ReserveRequest(BaseModel):
    product_id: uuid.UUID
    quantity: int = Field(default=1, gt=0)
    return_date: Optional[date] = None


class ReserveItemRequest(BaseModel):
    item_id: uuid.UUID
    return_date: Optional[date] = None


def _job(db: Session, job_id, user: User) -> Job:
    return get_scoped_or_404(db, Job, job_id, user.organization_id, "Job")


def _driver_job(db: Session, job_id, user: User) -> Job:
    """Dispatch may touch any job; a driver only the jobs assigned to them."""
    job = _job(db, job_id, user)
    if not has_permission(user, "jobs:write") and job.driver_id != user.id:
        raise HTTPException(status_code=403, detail="Job is not assigned to you")
    return job


# ---------- JOBS ----------
@router.get("", response_model=List[JobResponse])
def list_jobs(
    scheduled_date: Optional[date] = Query(None, alias="date"),
    status: Optional[JobStatus] = Query(None),
    driver_id: Optional[uuid.UUID] = Query(None),
    job_type: Optional[JobType] = Query(None),
    customer_id: Optional[uuid.UUID] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("jobs:read")),
):
    query = scoped(db, Job, user.organization_id)
    if scheduled_date:
        query = query.filter(Job.scheduled_date == scheduled_date)
    if status:
        query = query.filter(Job.status == status.value)
    if driver_id:
        query = query.filter(Job.driver_id == driver_id)
    if job_type:
        query = query.filter(Job.job_type == job_type.value)
    if customer_id:
        query = query.filter(Job.customer_id == customer_id)
    return (
        query.order_by(Job.scheduled_date.asc(), Job.scheduled_time.asc())
        .offset(offset)
        .limit(limit)
        .all()
    )


@router.get("/driver/me", response_model=List[JobResponse])
def my_jobs(
    from_date: Optional[date] = Query(None),
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("jobs:driver")),
):
    """Today's and upcoming jobs for the signed-in driver."""
    return job_service.driver_jobs(db, user, from_date)


@router.post("", response_model=JobResponse)
def create_job(
    payload: JobCreate,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("jobs:write")),
):
    job = job_service.create_job(db, user.organization_id, payload.model_dump(mode="python"), user)
    db.commit()
    db.refresh(job)
    return job


@router.get("/{job_id}", response_model=JobResponse)
def get_job(
    job_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("jobs:read")),
):
    return _job(db, job_id, user)


@router.put("/{job_id}", response_model=JobResponse)
def update_job(
    job_id: uuid.UUID,
    payload: JobUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("jobs:write")),
):
    job = _job(db, job_id, user)
    if job.status in ("completed", "cancelled"):
        raise HTTPException(status_code=409, detail=f"Cannot edit a {job.status} job")
    data = payload.model_dump(exclude_unset=True)
    if data.get("driver_id"):
        get_scoped_or_404(db, User, data["driver_id"], user.organization_id, "Driver")
    if data.get("vehicle_id"):
        get_scoped_or_404(db, Vehicle, data["vehicle_id"], user.organization_id, "Vehicle")
    before = {k: getattr(job, k) for k in data}
    for field, value in data.items():
        setattr(job, field, value)
    # Giving an unassigned job a driver assigns it
    if job.status == "unassigned" and job.driver_id:
        job_service.log_job_status_change(db, job, "assigned", user.id, notes="Driver assigned")
    job.updated_at = datetime.now(timezone.utc)
    create_audit_log(
        db, user.organization_id, "job", job.id, "UPDATE", actor_id=user.id,
        changes_json=compute_diff(before, {k: getattr(job, k) for k in data}),
    )
    db.commit()
    db.refresh(job)
    return job


@router.put("/{job_id}/status", response_model=JobStatusLogResponse)
def update_job_status(
    job_id: uuid.UUID,
    payload: JobStatusUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("jobs:write", "jobs:driver")),
):
    job = _driver_job(db, job_id, user)
    entry = job_service.log_job_status_change(
        db, job, payload.status.value, user.id, payload.latitude, payload.longitude, payload.notes
    )
    db.commit()
    db.refresh(entry)
    return entry


@router.get("/{job_id}/status-logs", response_model=List[JobStatusLogResponse])
def job_status_logs(
    job_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("jobs:read")),
):
    job = _job(db, job_id, user)
    return (
        db.query(JobStatusLog)
        .filter(JobStatusLog.job_id == job.id)
        .order_by(JobStatusLog.changed_at.asc())
        .all()
    )


# ---------- NOTES ----------
@router.get("/{job_id}/notes", response_model=List[JobNoteResponse])
def list_job_notes(
    job_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("jobs:read")),
):
    return job_service.get_job_notes(db, _job(db, job_id, user))


@router.post("/{job_id}/notes", response_model=JobNoteResponse)
def add_job_note(
    job_id: uuid.UUID,
    payload: JobNoteCreate,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("jobs:write", "jobs:driver")),
):
    job = _driver_job(db, job_id, user)
    if payload.note_type not in ("general", "issue", "customer", "safety"):
        raise HTTPException(status_code=400, detail="Invalid note type")
    note = job_service.add_job_note(db, job, payload.note_text, user.id, payload.note_type)
    db.commit()
    db.refresh(note)
    return note


# ---------- EQUIPMENT ----------
@router.post("/{job_id}/reserve")
def reserve_equipment(
    job_id: uuid.UUID,
    payload: ReserveRequest,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("jobs:write")),
):
    job = _job(db, job_id, user)
    product = get_scoped_or_404(db, Product, payload.product_id, user.organization_id, "Product")
    result = stock_service.reserve_equipment_for_job(
        db, job, product, payload.quantity, job.scheduled_date, payload.return_date
    )
    db.commit()
    return result


@router.post("/{job_id}/reserve-item", response_model=AssignmentResponse)
def reserve_item(
    job_id: uuid.UUID,
    payload: ReserveItemRequest,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("jobs:write")),
):
    job = _job(db, job_id, user)
    item = get_scoped_or_404(db, ProductItem, payload.item_id, user.organization_id, "Unit")
    assignment = stock_service.reserve_specific_item_for_job(
        db, job, item, job.scheduled_date, payload.return_date
    )
    db.commit()
    db.refresh(assignment)
    return assignment


@router.get("/{job_id}/assignments", response_model=List[AssignmentResponse])
def list_assignments(
    job_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("jobs:read")),
):
    return stock_service.job_assignments(db, _job(db, job_id, user))


# ---------- CONSUMABLES ----------
@router.get("/{job_id}/consumables", response_model=List[JobConsumableResponse])
def list_job_consumables(
    job_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("jobs:read")),
):
    job = _job(db, job_id, user)
    return db.query(JobConsumable).filter(JobConsumable.job_id == job.id).order_by(JobConsumable.created_at).all()


@router.post("/{job_id}/consumables", response_model=List[JobConsumableResponse])
def add_job_consumables(
    job_id: uuid.UUID,
    payload: JobConsumablesRequest,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("jobs:write", "jobs:driver")),
):
    job = _driver_job(db, job_id, user)
    lines = process_job_consumables(
        db, job, payload.billing_method,
        [i.model_dump() for i in payload.items],
        payload.bundle_id, payload.bundle_quantity, user_id=user.id,
    )
    if job.billing_method is None:
        job.billing_method = payload.billing_method
    db.commit()
    for line in lines:
        db.refresh(line)
    return lines
