from fieldops.models.models import UserInvitation


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_login_and_me(client, users):
    driver = users["driver"]
    resp = client.post("/auth/login", json={"email": driver.email, "password": "secret123"})
    assert resp.status_code == 200
    token = resp.json()["access_token"]

    me = client.get("/auth/me", headers={"Authorization": f"Bearer {token}"}).json()
    assert me["roles"] == ["driver"]
    assert "jobs:driver" in me["permissions"]
    assert "billing:read" not in me["permissions"]


def test_login_rejects_wrong_password(client, users):
    resp = client.post("/auth/login", json={"email": users["owner"].email, "password": "nope"})
    assert resp.status_code == 401


def test_requests_without_token_are_401(client, org):
    assert client.get("/customers").status_code == 401


def test_invite_and_register(client, db, headers):
    resp = client.post("/auth/invite", json={"email": "New.Driver@acme-ops.com", "role": "driver"},
                       headers=headers["owner"])
    assert resp.status_code == 200
    body = resp.json()
    assert body["email"] == "new.driver@acme-ops.com"
    assert body["email_status"] == "skipped"

    dup = client.post("/auth/invite", json={"email": "new.driver@acme-ops.com"}, headers=headers["owner"])
    assert dup.status_code == 409

    token = db.query(UserInvitation).filter(UserInvitation.email == "new.driver@acme-ops.com").one().token
    info = client.get(f"/auth/invite/{token}").json()
    assert info["organization_name"] == "Acme Sanitation LLC"

    reg = client.post("/auth/register", json={"invite_token": token, "password": "longenough1"})
    assert reg.status_code == 200
    again = client.post("/auth/register", json={"invite_token": token, "password": "longenough1"})
    assert again.status_code == 400


def test_only_owner_or_admin_can_invite(client, headers):
    resp = client.post("/auth/invite", json={"email": "x@acme-ops.com"}, headers=headers["dispatcher"])
    assert resp.status_code == 403


def test_organization_by_subdomain(client, org):
    resp = client.get("/organizations/by-subdomain/ACME")
    assert resp.status_code == 200
    assert resp.json()["subdomain"] == "acme"
    assert client.get("/organizations/by-subdomain/nobody").status_code == 404


def test_update_settings_validates_timezone(client, headers):
    bad = client.put("/organizations/current/settings", json={"timezone": "Mars/Base"}, headers=headers["admin"])
    assert bad.status_code == 400

    ok = client.put("/organizations/current/settings",
                    json={"timezone": "America/Denver", "quote_prefix": " est "}, headers=headers["admin"])
    assert ok.status_code == 200
    assert ok.json()["timezone"] == "America/Denver"

    denied = client.put("/organizations/current/settings", json={"name": "X"}, headers=headers["dispatcher"])
    assert denied.status_code == 403


def test_cross_tenant_ids_are_404(client, headers, customer, other_org_headers):
    assert client.get(f"/customers/{customer.id}", headers=headers["dispatcher"]).status_code == 200
    assert client.get(f"/customers/{customer.id}", headers=other_org_headers).status_code == 404


def test_audit_logs_require_permission(client, headers, customer):
    assert client.get("/audit-logs", headers=headers["driver"]).status_code == 403
    assert client.get("/audit-logs", headers=headers["dispatcher"]).status_code == 200
