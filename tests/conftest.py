"""
Shared fixtures: an in-memory SQLite database bound through the get_db
override, one organization with a user per role, and bearer headers.
"""
import os
import uuid
from datetime import date

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["AUTO_CREATE_DB"] = "false"
os.environ["RATE_LIMIT"] = "10000/minute"
os.environ["ROOT_DOMAIN"] = "fieldops.test"
os.environ["SMTP_HOST"] = ""
os.environ["SMS_GATEWAY_URL"] = ""
os.environ["JWT_SECRET"] = "test-secret"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from fieldops.db import Base, get_db
from fieldops.main import app
from fieldops.auth.security import create_access_token, ensure_role, get_password_hash, seed_default_roles
from fieldops.models.models import Organization, User, Customer, Vehicle


engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


def override_get_db():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


app.dependency_overrides[get_db] = override_get_db


@pytest.fixture
def db():
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def client(db):
    return TestClient(app)


def make_org(db, subdomain: str = "acme") -> Organization:
    org = Organization(
        name=f"{subdomain.title()} Sanitation",
        subdomain=subdomain,
        company_name=f"{subdomain.title()} Sanitation LLC",
        support_email=f"ops@{subdomain}-ops.com",
        timezone="America/Chicago",
        default_tax_rate=0.0,
    )
    db.add(org)
    db.flush()
    return org


def make_user(db, org: Organization, role: str, email: str = None) -> User:
    user = User(
        organization_id=org.id,
        email=email or f"{role}-{uuid.uuid4().hex[:6]}@{org.subdomain}-ops.com",
        first_name=role.title(),
        last_name="Tester",
        password_hash=get_password_hash("secret123"),
    )
    user.roles.append(ensure_role(db, role))
    db.add(user)
    db.flush()
    return user


def auth_headers(user: User) -> dict:
    token = create_access_token(str(user.id), str(user.organization_id), roles=[r.name for r in user.roles])
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def org(db):
    seed_default_roles(db)
    org = make_org(db)
    db.commit()
    return org


@pytest.fixture
def users(db, org):
    created = {role: make_user(db, org, role) for role in ("owner", "admin", "dispatcher", "driver", "customer")}
    db.commit()
    return created


@pytest.fixture
def headers(users):
    return {role: auth_headers(user) for role, user in users.items()}


@pytest.fixture
def customer(db, org):
    c = Customer(
        organization_id=org.id,
        name="Riverside Festival",
        customer_type="events_festivals",
        email="events@riverside-fest.com",
        phone="555-0142",
        service_street="100 River Rd",
        service_city="Springfield",
        service_state="IL",
        service_zip="62701",
    )
    db.add(c)
    db.commit()
    return c


@pytest.fixture
def vehicle(db, org):
    v = Vehicle(
        organization_id=org.id,
        license_plate="TRK-101",
        make="Ford",
        model="F-550",
        year=2021,
        status="active",
        current_mileage=42000,
        registration_expiry=date(2030, 1, 1),
    )
    db.add(v)
    db.commit()
    return v


@pytest.fixture
def other_org(db, org):
    """A dispatcher in a second, unrelated organization, with their headers."""
    other = make_org(db, "globex")
    user = make_user(db, other, "dispatcher")
    db.commit()
    return user, auth_headers(user)


@pytest.fixture
def other_org_headers(other_org):
    return other_org[1]


@pytest.fixture
def second_driver(db, org, users):
    """A driver other than users["driver"], with their own headers."""
    user = make_user(db, org, "driver")
    db.commit()
    return user, auth_headers(user)
