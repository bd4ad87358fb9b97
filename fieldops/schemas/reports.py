import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ReportTemplateCreate(BaseModel):
    name: str
    template_type: str = "service"
    fields: List[Dict[str, Any]] = []
    auto_requirements: List[Dict[str, Any]] = []
    fee_rules: List[Dict[str, Any]] = []
    default_rules: List[Dict[str, Any]] = []
    unit_loop_enabled: bool = False


class ReportTemplateUpdate(BaseModel):
    name: Optional[str] = None
    template_type: Optional[str] = None
    fields: Optional[List[Dict[str, Any]]] = None
    auto_requirements: Optional[List[Dict[str, Any]]] = None
    fee_rules: Optional[List[Dict[str, Any]]] = None
    default_rules: Optional[List[Dict[str, Any]]] = None
    unit_loop_enabled: Optional[bool] = None
    is_active: Optional[bool] = None
    change_summary: Optional[str] = None


class ReportTemplateResponse(BaseModel):
    id: uuid.UUID
    name: str
    template_type: str
    fields: Optional[List[Dict[str, Any]]] = None
    auto_requirements: Optional[List[Dict[str, Any]]] = None
    fee_rules: Optional[List[Dict[str, Any]]] = None
    default_rules: Optional[List[Dict[str, Any]]] = None
    unit_loop_enabled: bool
    current_version: int
    is_active: bool
    created_at: datetime
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class TemplateVersionResponse(BaseModel):
    id: uuid.UUID
    version_number: int
    snapshot: Dict[str, Any]
    change_summary: Optional[str] = None
    created_by: Optional[uuid.UUID] = None
    created_at: datetime

    class Config:
        from_attributes = True


class RollbackRequest(BaseModel):
    target_version: int = Field(gt=0)
    reason: Optional[str] = None


class EvaluateRequest(BaseModel):
    form_data: Dict[str, Any] = {}
    units: List[Dict[str, Any]] = []


class ServiceReportCreate(BaseModel):
    template_id: uuid.UUID
    job_id: Optional[uuid.UUID] = None
    form_data: Dict[str, Any] = {}
    units: List[Dict[str, Any]] = []


class ServiceReportUpdate(BaseModel):
    form_data: Optional[Dict[str, Any]] = None
    units: Optional[List[Dict[str, Any]]] = None


class ReportStatusUpdate(BaseModel):
    status: str


class ServiceReportResponse(BaseModel):
    id: uuid.UUID
    report_number: str
    job_id: Optional[uuid.UUID] = None
    template_id: uuid.UUID
    template_version: int
    form_data: Optional[Dict[str, Any]] = None
    units: Optional[List[Dict[str, Any]]] = None
    status: str
    automation_audit: Optional[Dict[str, Any]] = None
    fee_recommendations: Optional[List[Dict[str, Any]]] = None
    created_at: datetime
    submitted_at: Optional[datetime] = None

    class Config:
        from_attributes = True
