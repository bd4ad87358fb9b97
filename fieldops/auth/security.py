import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional, List

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from passlib.context import CryptContext
import bcrypt
from sqlalchemy.orm import Session

from ..config import settings
from ..db import get_db
from ..models.models import User, Role


pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")
http_bearer = HTTPBearer(auto_error=False)

BYPASS_ROLES = {"owner", "admin"}

# Seeded onto Role.permissions. owner/admin bypass checks entirely.
DEFAULT_ROLE_PERMISSIONS = {
    "owner": {},
    "admin": {},
    "dispatcher": {
        "customers:read": True,
        "customers:write": True,
        "jobs:read": True,
        "jobs:write": True,
        "inventory:read": True,
        "inventory:write": True,
        "billing:read": True,
        "billing:write": True,
        "fleet:access": True,
        "fleet:read": True,
        "fleet:write": True,
        "fleet:dvir:write": True,
        "fleet:fuel:write": True,
        "maintenance:read": True,
        "maintenance:write": True,
        "compliance:read": True,
        "marketing:read": True,
        "marketing:write": True,
        "reports:read": True,
        "reports:write": True,
        "analytics:read": True,
        "audit:read": True,
    },
    "driver": {
        "jobs:read": True,
        "jobs:driver": True,
        "inventory:read": True,
        "fleet:access": True,
        "fleet:read": True,
        "fleet:dvir:write": True,
        "fleet:fuel:write": True,
        "compliance:write": True,
        "reports:read": True,
        "reports:write": True,
    },
    "customer": {},
}


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain: str, hashed: str) -> bool:
    # Legacy bcrypt hashes ($2a$/$2b$/$2y$) are checked with the bcrypt module directly
    if hashed.startswith(("$2a$", "$2b$", "$2y$")):
        pb = plain.encode("utf-8")[:72]
        try:
            return bcrypt.checkpw(pb, hashed.encode("utf-8"))
        except ValueError:
            return False
    try:
        return pwd_context.verify(plain, hashed)
    except ValueError:
        return False


def _create_token(sub: str, ttl_seconds: int, extra: Optional[dict] = None) -> str:
    now = datetime.now(tz=timezone.utc)
    payload = {
        "sub": sub,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(seconds=ttl_seconds)).timestamp()),
        "jti": str(uuid.uuid4()),
    }
    if extra:
        payload.update(extra)
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def create_access_token(user_id: str, organization_id: str, roles: Optional[List[str]] = None) -> str:
    return _create_token(user_id, settings.jwt_ttl_seconds, extra={"org": organization_id, "roles": roles or []})


def create_refresh_token(user_id: str) -> str:
    return _create_token(user_id, settings.refresh_ttl_seconds, extra={"type": "refresh"})


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")


def get_current_user(
    creds: Optional[HTTPAuthorizationCredentials] = Depends(http_bearer),
    db: Session = Depends(get_db),
) -> User:
    if creds is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    payload = decode_token(creds.credentials)
    if payload.get("type") == "refresh":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    try:
        user_uuid = uuid.UUID(str(payload.get("sub")))
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid subject")
    user = db.query(User).filter(User.id == user_uuid).first()
    if user is None or not user.is_active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not active")
    if not user.organization or not user.organization.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Organization inactive")
    return user


def role_names(user: User) -> set:
    return {(getattr(r, "name", None) or "").lower() for r in user.roles}


def require_roles(*required_roles: str):
    """Require at least one of the given roles."""
    def _dep(user: User = Depends(get_current_user)):
        if not role_names(user) & {r.lower() for r in required_roles}:
            raise HTTPException(status_code=403, detail="Forbidden")
        return user

    return _dep


def require_permissions(*required_permissions: str):
    """
    Require at least one of the specified permissions (OR logic).
    Owner and admin roles bypass the check.
    """
    def _dep(user: User = Depends(get_current_user)):
        if not any(has_permission(user, perm) for perm in required_permissions):
            raise HTTPException(status_code=403, detail="Forbidden")
        return user

    return _dep


def get_user_permission_map(user: User) -> dict:
    """Combined permission map from roles and user overrides"""
    perm_map = {}
    for r in user.roles:
        if getattr(r, "permissions", None):
            perm_map.update(r.permissions)
    if getattr(user, "permissions_override", None):
        perm_map.update(user.permissions_override)
    return perm_map


def has_permission(user: User, perm: str) -> bool:
    if role_names(user) & BYPASS_ROLES:
        return True

    perm_map = get_user_permission_map(user)

    # area:sub:action permissions need area:access (e.g. fleet:dvir:write -> fleet:access)
    parts = perm.split(":")
    if len(parts) >= 3:
        area_access_key = f"{parts[0]}:access"
        if not perm_map.get(area_access_key):
            return False

    return bool(perm_map.get(perm))


def ensure_role(db: Session, name: str) -> Role:
    """Fetch a role by name, creating it with the default permission map when missing."""
    role = db.query(Role).filter(Role.name == name).first()
    if role is None:
        role = Role(name=name, description=name.title(), permissions=dict(DEFAULT_ROLE_PERMISSIONS.get(name, {})))
        db.add(role)
        db.flush()
    return role


def seed_default_roles(db: Session) -> int:
    """Create any missing default roles. Existing permission maps are left alone."""
    created = 0
    for name in DEFAULT_ROLE_PERMISSIONS:
        if db.query(Role).filter(Role.name == name).first() is None:
            ensure_role(db, name)
            created += 1
    return created
