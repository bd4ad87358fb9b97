"""
Unauthenticated endpoints: the customer portal (token in the path) and
feedback left from a unit's QR code.
"""
from typing import List

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..db import get_db
from ..models.models import ServiceRequest
from ..schemas.customers import ServiceRequestCreate, ServiceRequestResponse
from ..schemas.marketing import QRFeedbackCreate
from ..services.marketing import submit_qr_feedback
from ..services.portal import (
    validate_customer_portal_token,
    portal_summary,
    create_service_request,
    has_feature,
)


router = APIRouter(prefix="/portal", tags=["portal"])
public_router = APIRouter(prefix="/public", tags=["public"])


@router.get("/{token}")
def get_portal(token: str, db: Session = Depends(get_db)):
    row = validate_customer_portal_token(db, token)
    summary = portal_summary(db, row)
    db.commit()
    return summary


@router.get("/{token}/service-requests", response_model=List[ServiceRequestResponse])
def list_portal_service_requests(token: str, db: Session = Depends(get_db)):
    row = validate_customer_portal_token(db, token)
    if not has_feature(row, "service_requests"):
        db.commit()
        raise HTTPException(status_code=403, detail="Service requests are not enabled for this link")
    requests = (
        db.query(ServiceRequest)
        .filter(ServiceRequest.customer_id == row.customer_id)
        .order_by(ServiceRequest.created_at.desc())
        .all()
    )
    db.commit()
    return requests


@router.post("/{token}/service-requests", response_model=ServiceRequestResponse)
def submit_portal_service_request(token: str, payload: ServiceRequestCreate, db: Session = Depends(get_db)):
    row = validate_customer_portal_token(db, token)
    if not has_feature(row, "service_requests"):
        db.commit()
        raise HTTPException(status_code=403, detail="Service requests are not enabled for this link")
    req = create_service_request(db, row, payload.model_dump())
    db.commit()
    db.refresh(req)
    return req


@public_router.post("/qr-feedback")
def post_qr_feedback(payload: QRFeedbackCreate, db: Session = Depends(get_db)):
    data = payload.model_dump()
    data["feedback_type"] = payload.feedback_type.value
    feedback = submit_qr_feedback(db, data)
    db.commit()
    return {"id": str(feedback.id), "status": "received"}
