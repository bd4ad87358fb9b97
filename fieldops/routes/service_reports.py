import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ..db import get_db
from ..auth.security import require_permissions, require_roles, has_permission
from ..models.models import User, Job, ReportTemplate, TemplateVersion, ServiceReport
from ..schemas.reports import (
    ReportTemplateCreate,
    ReportTemplateUpdate,
    ReportTemplateResponse,
    TemplateVersionResponse,
    RollbackRequest,
    EvaluateRequest,
    ServiceReportCreate,
    ServiceReportUpdate,
    ServiceReportResponse,
    ReportStatusUpdate,
)
from ..services import service_reports as report_service
from ..services.tenancy import get_scoped_or_404, scoped


router = APIRouter(prefix="/service-reports", tags=["service-reports"])


def _template(db: Session, template_id, user: User) -> ReportTemplate:
    return get_scoped_or_404(db, ReportTemplate, template_id, user.organization_id, "Template")


def _report(db: Session, report_id, user: User) -> ServiceReport:
    report = get_scoped_or_404(db, ServiceReport, report_id, user.organization_id, "Report")
    if not has_permission(user, "jobs:write") and report.created_by != user.id:
        job = db.get(Job, report.job_id) if report.job_id else None
        if job is None or job.driver_id != user.id:
            raise HTTPException(status_code=403, detail="Forbidden")
    return report


# ---------- TEMPLATES ----------
@router.get("/templates", response_model=List[ReportTemplateResponse])
def list_templates(
    template_type: Optional[str] = Query(None),
    include_inactive: bool = Query(False),
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("reports:read")),
):
    query = scoped(db, ReportTemplate, user.organization_id)
    if template_type:
        query = query.filter(ReportTemplate.template_type == template_type)
    if not include_inactive:
        query = query.filter(ReportTemplate.is_active.is_(True))
    return query.order_by(ReportTemplate.name.asc()).all()


@router.post("/templates", response_model=ReportTemplateResponse)
def create_template(
    payload: ReportTemplateCreate,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles("owner", "admin", "dispatcher")),
):
    template = report_service.create_template(db, user.organization_id, payload.model_dump(), user)
    db.commit()
    db.refresh(template)
    return template


@router.get("/templates/{template_id}", response_model=ReportTemplateResponse)
def get_template(
    template_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("reports:read")),
):
    return _template(db, template_id, user)


@router.put("/templates/{template_id}", response_model=ReportTemplateResponse)
def update_template(
    template_id: uuid.UUID,
    payload: ReportTemplateUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles("owner", "admin", "dispatcher")),
):
    template = _template(db, template_id, user)
    data = payload.model_dump(exclude_unset=True)
    change_summary = data.pop("change_summary", None)
    if "name" in data and not (data["name"] or "").strip():
        raise HTTPException(status_code=400, detail="Template name is required")
    report_service.update_template(db, template, data, user, change_summary)
    db.commit()
    db.refresh(template)
    return template


@router.delete("/templates/{template_id}")
def deactivate_template(
    template_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles("owner", "admin", "dispatcher")),
):
    """Templates stay on file for the reports already filled from them."""
    template = _template(db, template_id, user)
    report_service.update_template(db, template, {"is_active": False}, user)
    db.commit()
    return {"status": "ok"}


@router.get("/templates/{template_id}/versions", response_model=List[TemplateVersionResponse])
def list_template_versions(
    template_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("reports:read")),
):
    template = _template(db, template_id, user)
    return (
        db.query(TemplateVersion)
        .filter(TemplateVersion.template_id == template.id)
        .order_by(TemplateVersion.version_number.desc())
        .all()
    )


@router.post("/templates/{template_id}/rollback", response_model=ReportTemplateResponse)
def rollback_template(
    template_id: uuid.UUID,
    payload: RollbackRequest,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles("owner", "admin", "dispatcher")),
):
    template = _template(db, template_id, user)
    report_service.rollback_template_version(db, template, payload.target_version, payload.reason, user)
    db.commit()
    db.refresh(template)
    return template


@router.post("/templates/{template_id}/evaluate")
def evaluate_template(
    template_id: uuid.UUID,
    payload: EvaluateRequest,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("reports:read")),
):
    return report_service.evaluate_report(_template(db, template_id, user), payload.form_data, payload.units)


# ---------- REPORTS ----------
@router.post("/evaluate")
def evaluate_report(
    payload: EvaluateRequest,
    template_id: uuid.UUID = Query(...),
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("reports:read")),
):
    """Preview requirements, fees and blocking issues for unsaved form data."""
    return report_service.evaluate_report(_template(db, template_id, user), payload.form_data, payload.units)


@router.get("", response_model=List[ServiceReportResponse])
def list_reports(
    status: Optional[str] = Query(None),
    job_id: Optional[uuid.UUID] = Query(None),
    template_id: Optional[uuid.UUID] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("reports:read")),
):
    query = scoped(db, ServiceReport, user.organization_id)
    if not has_permission(user, "jobs:write"):
        query = query.filter(ServiceReport.created_by == user.id)
    if status:
        query = query.filter(ServiceReport.status == status)
    if job_id:
        query = query.filter(ServiceReport.job_id == job_id)
    if template_id:
        query = query.filter(ServiceReport.template_id == template_id)
    return query.order_by(ServiceReport.created_at.desc()).offset(offset).limit(limit).all()


@router.post("", response_model=ServiceReportResponse)
def create_report(
    payload: ServiceReportCreate,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("reports:write")),
):
    data = payload.model_dump()
    if data.get("job_id") and not has_permission(user, "jobs:write"):
        job = get_scoped_or_404(db, Job, data["job_id"], user.organization_id, "Job")
        if job.driver_id != user.id:
            raise HTTPException(status_code=403, detail="Job is not assigned to you")
    report = report_service.create_service_report(db, user.organization_id, data, user)
    db.commit()
    db.refresh(report)
    return report


@router.get("/{report_id}", response_model=ServiceReportResponse)
def get_report(
    report_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("reports:read")),
):
    return _report(db, report_id, user)


@router.put("/{report_id}", response_model=ServiceReportResponse)
def update_report(
    report_id: uuid.UUID,
    payload: ServiceReportUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("reports:write")),
):
    report = report_service.update_service_report(
        db, _report(db, report_id, user), payload.model_dump(exclude_unset=True)
    )
    db.commit()
    db.refresh(report)
    return report


@router.put("/{report_id}/status", response_model=ServiceReportResponse)
def update_report_status(
    report_id: uuid.UUID,
    payload: ReportStatusUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(require_permissions("reports:write")),
):
    report = _report(db, report_id, user)
    if payload.status in ("approved", "rejected") and not has_permission(user, "jobs:write"):
        raise HTTPException(status_code=403, detail="Only dispatch can review reports")
    report_service.transition_report_status(db, report, payload.status, user)
    db.commit()
    db.refresh(report)
    return report
