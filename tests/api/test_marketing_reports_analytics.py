from datetime import date, datetime, timedelta, timezone

import pytest


OVERFLOW = [{"field": "tank_level", "operator": "greater_than", "value": 80}]


@pytest.fixture
def report_template(client, headers):
    r = client.post(
        "/service-reports/templates",
        json={
            "name": "Routine Service",
            "template_type": "service",
            "fields": [{"id": "tank_level", "type": "number"}, {"id": "overflow_notes", "type": "text"}],
            "auto_requirements": [{"id": "r1", "name": "Overflow notes", "conditions": OVERFLOW,
                                   "required_fields": ["overflow_notes"]}],
            "fee_rules": [{"id": "f1", "fee_id": "overflow", "fee_name": "Overflow cleanup", "fee_amount": 45,
                           "scope": "per_job", "conditions": OVERFLOW}],
            "default_rules": [{"field_id": "service_date", "source": "system", "source_field": "current_date"}],
        },
        headers=headers["dispatcher"],
    )
    assert r.status_code == 200, r.text
    return r.json()


# ---------- MARKETING ----------
def test_campaign_needs_matching_template(client, headers):
    template = client.post(
        "/marketing/templates",
        json={"name": "Spring promo", "channel": "email", "subject": "Spring", "body": "Hi {{ customer_name }}"},
        headers=headers["dispatcher"],
    ).json()

    r = client.post(
        "/marketing/campaigns", json={"name": "Texts", "channel": "sms", "template_id": template["id"]},
        headers=headers["dispatcher"],
    )
    assert r.status_code == 400

    r = client.post("/marketing/campaigns", json={"name": "Empty", "channel": "email"}, headers=headers["dispatcher"])
    assert r.status_code == 400

    r = client.post(
        "/marketing/campaigns", json={"name": "Later", "channel": "email", "body": "x", "status": "scheduled"},
        headers=headers["dispatcher"],
    )
    assert r.status_code == 400


def test_campaign_audience_and_send(client, headers, customer):
    client.post("/customers", json={"name": "No Email Co"}, headers=headers["dispatcher"])
    campaign = client.post(
        "/marketing/campaigns",
        json={"name": "Festival season", "channel": "email", "subject": "Book early",
              "body": "Hello {{ customer_name }}"},
        headers=headers["dispatcher"],
    ).json()

    audience = client.get(f"/marketing/campaigns/{campaign['id']}/audience", headers=headers["dispatcher"]).json()
    assert audience["count"] == 1
    assert audience["recipients"][0]["address"] == "events@riverside-fest.com"

    r = client.post(f"/marketing/campaigns/{campaign['id']}/send", headers=headers["dispatcher"])
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["recipients_count"] == 1
    assert body["delivered_count"] == 0
    assert body["failed_count"] == 1
    assert body["status"] == "failed"

    again = client.post(f"/marketing/campaigns/{campaign['id']}/send", headers=headers["dispatcher"])
    assert again.status_code == 409
    edit = client.put(f"/marketing/campaigns/{campaign['id']}", json={"name": "Renamed"}, headers=headers["dispatcher"])
    assert edit.status_code == 409


def test_targeted_audience_filters_by_type(client, headers, customer):
    campaign = client.post(
        "/marketing/campaigns",
        json={"name": "Builders", "channel": "email", "body": "Site units", "target_customer_types": ["construction"]},
        headers=headers["dispatcher"],
    ).json()
    audience = client.get(f"/marketing/campaigns/{campaign['id']}/audience", headers=headers["dispatcher"]).json()
    assert audience["count"] == 0


def test_run_scheduled_campaigns(client, headers, customer):
    past = (datetime.now(timezone.utc) - timedelta(hours=1)).isoformat()
    campaign = client.post(
        "/marketing/campaigns",
        json={"name": "Quiet", "channel": "email", "body": "x", "status": "scheduled", "scheduled_at": past,
              "target_customer_types": ["construction"]},
        headers=headers["dispatcher"],
    ).json()

    r = client.post("/marketing/campaigns/run-scheduled", headers=headers["dispatcher"])
    assert r.json() == {"sent": 1, "campaign_ids": [campaign["id"]]}
    sent = client.get(f"/marketing/campaigns/{campaign['id']}", headers=headers["dispatcher"]).json()
    assert sent["status"] == "sent"
    assert sent["recipients_count"] == 0


def test_driver_has_no_marketing_access(client, headers):
    assert client.get("/marketing/campaigns", headers=headers["driver"]).status_code == 403


# ---------- NOTIFICATIONS ----------
def test_preferences_default_and_validation(client, headers):
    prefs = client.get("/notifications/preferences", headers=headers["driver"]).json()
    assert prefs["email"] is True
    assert prefs["quiet_hours"] is None

    bad_time = client.put(
        "/notifications/preferences", json={"quiet_hours": {"start": "25:00", "end": "06:00"}},
        headers=headers["driver"],
    )
    assert bad_time.status_code == 400
    bad_tz = client.put(
        "/notifications/preferences",
        json={"quiet_hours": {"start": "22:00", "end": "06:00", "timezone": "Mars/Olympus"}},
        headers=headers["driver"],
    )
    assert bad_tz.status_code == 400


def test_disabled_channel_is_logged_as_skipped(client, headers):
    r = client.put("/notifications/preferences", json={"email": False}, headers=headers["driver"])
    assert r.status_code == 200
    assert r.json()["email"] is False

    logs = client.post("/notifications/test", json={"channel": "email"}, headers=headers["driver"]).json()
    assert len(logs) == 1
    assert logs[0]["status"] == "skipped"
    assert logs[0]["error"] == "Suppressed by preferences"

    bad = client.post("/notifications/test", json={"channel": "pigeon"}, headers=headers["driver"])
    assert bad.status_code == 400


def test_notification_logs_visibility(client, headers):
    client.post("/notifications/test", json={"channel": "email"}, headers=headers["driver"])
    client.post("/notifications/test", json={"channel": "email"}, headers=headers["dispatcher"])

    assert len(client.get("/notifications/logs", headers=headers["driver"]).json()) == 1
    assert len(client.get("/notifications/logs", headers=headers["owner"]).json()) == 2


# ---------- SERVICE REPORTS ----------
def test_template_versions_and_rollback(client, headers, report_template):
    tid = report_template["id"]
    assert report_template["current_version"] == 1

    same = client.put(f"/service-reports/templates/{tid}", json={"name": "Routine Service"},
                      headers=headers["dispatcher"])
    assert same.json()["current_version"] == 1

    renamed = client.put(f"/service-reports/templates/{tid}",
                         json={"name": "Routine Service v2", "change_summary": "Rename"},
                         headers=headers["dispatcher"])
    assert renamed.json()["current_version"] == 2

    versions = client.get(f"/service-reports/templates/{tid}/versions", headers=headers["dispatcher"]).json()
    assert [v["version_number"] for v in versions] == [2, 1]
    assert versions[0]["change_summary"] == "Rename"

    r = client.post(f"/service-reports/templates/{tid}/rollback", json={"target_version": 1, "reason": "Typo"},
                    headers=headers["dispatcher"])
    assert r.status_code == 200, r.text
    assert r.json()["name"] == "Routine Service"
    assert r.json()["current_version"] == 3

    current = client.post(f"/service-reports/templates/{tid}/rollback", json={"target_version": 3},
                          headers=headers["dispatcher"])
    assert current.status_code == 409
    missing = client.post(f"/service-reports/templates/{tid}/rollback", json={"target_version": 9},
                          headers=headers["dispatcher"])
    assert missing.status_code == 404


def test_driver_cannot_manage_templates(client, headers):
    r = client.post("/service-reports/templates", json={"name": "Mine"}, headers=headers["driver"])
    assert r.status_code == 403


def test_evaluate_template(client, headers, report_template):
    r = client.post(f"/service-reports/templates/{report_template['id']}/evaluate",
                    json={"form_data": {"tank_level": 95}}, headers=headers["driver"])
    body = r.json()
    assert body["required_fields"] == ["overflow_notes"]
    assert body["triggered_rules"] == ["r1"]
    assert body["fee_recommendations"][0]["fee_amount"] == 45
    assert body["issues"][0]["field_id"] == "overflow_notes"


def test_report_submit_and_review(client, headers, report_template):
    r = client.post(
        "/service-reports",
        json={"template_id": report_template["id"], "form_data": {"tank_level": 95}},
        headers=headers["driver"],
    )
    assert r.status_code == 200, r.text
    report = r.json()
    assert report["report_number"] == f"SERVICE-{date.today():%Y%m%d}-001"
    assert report["status"] == "draft"
    assert "service_date" in report["form_data"]
    assert report["fee_recommendations"][0]["fee_id"] == "overflow"

    url = f"/service-reports/{report['id']}"
    blocked = client.put(f"{url}/status", json={"status": "submitted"}, headers=headers["driver"])
    assert blocked.status_code == 400
    assert blocked.json()["errors"]["issues"][0]["field_id"] == "overflow_notes"

    client.put(url, json={"form_data": {"overflow_notes": "Pumped and sanitized"}}, headers=headers["driver"])
    submitted = client.put(f"{url}/status", json={"status": "submitted"}, headers=headers["driver"])
    assert submitted.status_code == 200
    assert submitted.json()["submitted_at"] is not None

    assert client.put(f"{url}/status", json={"status": "approved"}, headers=headers["driver"]).status_code == 403
    approved = client.put(f"{url}/status", json={"status": "approved"}, headers=headers["dispatcher"])
    assert approved.status_code == 200
    assert approved.json()["status"] == "approved"

    edit = client.put(url, json={"form_data": {"tank_level": 10}}, headers=headers["dispatcher"])
    assert edit.status_code == 409


def test_report_numbers_increment_per_day(client, headers, report_template):
    first = client.post("/service-reports", json={"template_id": report_template["id"]}, headers=headers["driver"])
    second = client.post("/service-reports", json={"template_id": report_template["id"]}, headers=headers["driver"])
    assert first.json()["report_number"].endswith("-001")
    assert second.json()["report_number"].endswith("-002")


def test_drivers_only_see_their_own_reports(client, headers, report_template, second_driver):
    _, other_headers = second_driver
    report = client.post("/service-reports", json={"template_id": report_template["id"]},
                         headers=headers["driver"]).json()

    assert client.get("/service-reports", headers=other_headers).json() == []
    assert client.get(f"/service-reports/{report['id']}", headers=other_headers).status_code == 403
    assert len(client.get("/service-reports", headers=headers["dispatcher"]).json()) == 1


# ---------- ANALYTICS ----------
def test_revenue_analytics(client, headers, customer):
    invoice = client.post(
        "/invoices",
        json={"customer_id": str(customer.id), "items": [{"name": "Weekend rental", "quantity": 1, "unit_price": 300}]},
        headers=headers["dispatcher"],
    ).json()
    client.post(f"/invoices/{invoice['id']}/payments", json={"amount": 100}, headers=headers["dispatcher"])

    window = {"start": (date.today() - timedelta(days=1)).isoformat(),
              "end": (date.today() + timedelta(days=1)).isoformat()}
    body = client.get("/analytics/revenue", params=window, headers=headers["dispatcher"]).json()
    assert body["total_invoiced"] == 300.0
    assert body["total_collected"] == 100.0
    assert body["total_outstanding"] == 200.0
    assert body["invoice_count"] == 1
    assert body["revenue_by_customer_type"] == {"events_festivals": 300.0}
    assert body["quote_conversion_rate"] == 0.0


def test_revenue_window_must_be_ordered(client, headers):
    r = client.get("/analytics/revenue", params={"start": "2030-02-01", "end": "2030-01-01"},
                   headers=headers["dispatcher"])
    assert r.status_code == 400


def test_maintenance_kpis_after_critical_inspection(client, headers, vehicle):
    client.post(
        "/fleet/dvirs",
        json={"vehicle_id": str(vehicle.id), "defects": [{"item": "Steering", "severity": "critical"}]},
        headers=headers["driver"],
    )
    kpis = client.get("/analytics/maintenance", headers=headers["dispatcher"]).json()
    assert kpis["open_work_orders"] == 1
    assert kpis["open_by_status"] == {"open": 1}
    assert kpis["vehicles_out_of_service"] == 1


def test_dashboard_access(client, headers, org):
    dashboard = client.get("/analytics/dashboard", headers=headers["dispatcher"])
    assert dashboard.status_code == 200
    assert dashboard.json()["jobs_today"]["total"] == 0
    assert client.get("/analytics/dashboard", headers=headers["driver"]).status_code == 403
