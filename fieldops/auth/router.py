import uuid
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..db import get_db
from ..config import settings
from ..models.models import User, UserInvitation, Organization
from ..schemas.auth import (
    InviteRequest,
    InviteResponse,
    InviteInfo,
    RegisterRequest,
    LoginRequest,
    RefreshRequest,
    TokenResponse,
    MeResponse,
)
from ..services.notifications import send_email
from ..services.tenancy import tenant_url
from ..services.timezones import as_utc
from .security import (
    get_password_hash,
    verify_password,
    create_access_token,
    create_refresh_token,
    decode_token,
    get_current_user,
    get_user_permission_map,
    require_roles,
    ensure_role,
)
import structlog


router = APIRouter(prefix="/auth", tags=["auth"])
logger = structlog.get_logger(__name__)


def _tokens_for(user: User) -> TokenResponse:
    roles = [r.name for r in user.roles]
    access = create_access_token(str(user.id), str(user.organization_id), roles=roles)
    refresh = create_refresh_token(str(user.id))
    return TokenResponse(access_token=access, refresh_token=refresh)


def _open_invitation(db: Session, token: str) -> UserInvitation:
    inv: Optional[UserInvitation] = db.query(UserInvitation).filter(UserInvitation.token == token).first()
    if not inv:
        raise HTTPException(status_code=404, detail="Invalid invite")
    now_utc = datetime.now(timezone.utc)
    if inv.status == "accepted" or inv.accepted_at is not None:
        raise HTTPException(status_code=400, detail="Invitation already accepted")
    if inv.status == "expired" or as_utc(inv.expires_at) < now_utc:
        raise HTTPException(status_code=400, detail="Invitation has expired")
    return inv


@router.post("/login", response_model=TokenResponse)
def login(req: LoginRequest, db: Session = Depends(get_db)):
    user = db.query(User).filter(User.email == req.email.lower()).first()
    if not user or not verify_password(req.password, user.password_hash):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    if not user.is_active:
        raise HTTPException(status_code=401, detail="User not active")
    user.last_login_at = datetime.now(timezone.utc)
    db.commit()
    logger.info("user_login", user_id=str(user.id))
    return _tokens_for(user)


@router.post("/refresh", response_model=TokenResponse)
def refresh(req: RefreshRequest, db: Session = Depends(get_db)):
    payload = decode_token(req.refresh_token)
    if payload.get("type") != "refresh":
        raise HTTPException(status_code=400, detail="Invalid refresh token")
    try:
        user_id = uuid.UUID(str(payload.get("sub")))
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid subject")
    user = db.query(User).filter(User.id == user_id).first()
    if user is None or not user.is_active:
        raise HTTPException(status_code=401, detail="User not active")
    return _tokens_for(user)


@router.get("/me", response_model=MeResponse)
def me(user: User = Depends(get_current_user)):
    granted = sorted(k for k, v in get_user_permission_map(user).items() if v)
    return MeResponse(
        id=user.id,
        email=user.email,
        first_name=user.first_name,
        last_name=user.last_name,
        organization_id=user.organization_id,
        roles=[r.name for r in user.roles],
        permissions=granted,
    )


@router.post("/invite", response_model=InviteResponse)
def invite_user(
    req: InviteRequest,
    db: Session = Depends(get_db),
    user: User = Depends(require_roles("owner", "admin")),
):
    email = req.email.lower()
    if db.query(User).filter(User.email == email).first():
        raise HTTPException(status_code=409, detail="A user with this email already exists")
    now_utc = datetime.now(timezone.utc)
    pending = (
        db.query(UserInvitation)
        .filter(
            UserInvitation.organization_id == user.organization_id,
            UserInvitation.email == email,
            UserInvitation.status == "pending",
        )
        .all()
    )
    for p in pending:
        if as_utc(p.expires_at) > now_utc:
            raise HTTPException(status_code=409, detail="A pending invitation already exists for this email")
        p.status = "expired"

    inv = UserInvitation(
        organization_id=user.organization_id,
        email=email,
        first_name=req.first_name,
        last_name=req.last_name,
        phone=req.phone,
        role=req.role.value,
        token=secrets.token_urlsafe(32),
        status="pending",
        invited_by=user.id,
        expires_at=now_utc + timedelta(days=settings.invite_ttl_days),
    )
    db.add(inv)
    db.flush()

    # Email is best-effort; the invitation stands even when delivery fails
    link = tenant_url(user.organization, f"/register?token={inv.token}")
    log = send_email(
        db,
        user.organization_id,
        email,
        f"You're invited to {user.organization.company_name or user.organization.name}",
        f"You have been invited as {inv.role}. Accept the invitation here: {link}",
        related_entity=f"invitation:{inv.id}",
    )
    db.commit()
    db.refresh(inv)
    logger.info("user_invited", invitation_id=str(inv.id), role=inv.role, email_status=log.status)
    return InviteResponse(
        id=inv.id,
        email=inv.email,
        role=inv.role,
        status=inv.status,
        expires_at=inv.expires_at,
        email_status=log.status,
    )


@router.get("/invite/{token}", response_model=InviteInfo)
def invite_validate(token: str, db: Session = Depends(get_db)):
    inv = _open_invitation(db, token)
    org = db.get(Organization, inv.organization_id)
    return InviteInfo(
        email=inv.email,
        role=inv.role,
        first_name=inv.first_name,
        last_name=inv.last_name,
        organization_name=org.company_name or org.name,
        expires_at=inv.expires_at,
    )


@router.post("/register", response_model=TokenResponse)
def register(payload: RegisterRequest, db: Session = Depends(get_db)):
    inv = _open_invitation(db, payload.invite_token)
    existing = db.query(User).filter(User.email == inv.email).first()
    if existing:
        raise HTTPException(status_code=409, detail="Email already registered. Please log in.")
    user = User(
        organization_id=inv.organization_id,
        email=inv.email,
        first_name=payload.first_name or inv.first_name,
        last_name=payload.last_name or inv.last_name,
        phone=payload.phone or inv.phone,
        password_hash=get_password_hash(payload.password),
        is_active=True,
        status="active",
    )
    user.roles.append(ensure_role(db, inv.role))
    db.add(user)
    inv.status = "accepted"
    inv.accepted_at = datetime.now(timezone.utc)
    db.commit()
    db.refresh(user)
    logger.info("user_registered", user_id=str(user.id), role=inv.role)
    return _tokens_for(user)
