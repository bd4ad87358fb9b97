from datetime import date, timedelta

import pytest

from fieldops.services.timezones import local_now


FULL_KIT = {
    "Absorbent Pads": True,
    "absorbent socks": True,
    "gloves": True,
    "goggles": True,
    "disposal bags": True,
    "deodorizer": True,
}


@pytest.fixture
def work_order(client, headers, vehicle):
    r = client.post(
        "/work-orders",
        json={"asset_id": str(vehicle.id), "description": "Replace brake pads", "priority": "high"},
        headers=headers["dispatcher"],
    )
    assert r.status_code == 200, r.text
    return r.json()


def _move(client, headers, wo_id, status):
    return client.put(f"/work-orders/{wo_id}/status", json={"status": status}, headers=headers)


# ---------- VEHICLES ----------
def test_vehicle_crud_and_scoping(client, headers, other_org_headers):
    r = client.post(
        "/fleet/vehicles",
        json={"license_plate": "TRK-202", "make": "Isuzu", "current_mileage": 1200},
        headers=headers["dispatcher"],
    )
    assert r.status_code == 200, r.text
    vehicle = r.json()
    assert vehicle["status"] == "active"

    assert client.get(f"/fleet/vehicles/{vehicle['id']}", headers=other_org_headers).status_code == 404
    assert client.post("/fleet/vehicles", json={"license_plate": "X"}, headers=headers["driver"]).status_code == 403

    assert client.delete(f"/fleet/vehicles/{vehicle['id']}", headers=headers["dispatcher"]).status_code == 200
    plates = [v["license_plate"] for v in client.get("/fleet/vehicles", headers=headers["dispatcher"]).json()]
    assert "TRK-202" not in plates


# ---------- WORK ORDERS ----------
def test_work_order_numbering_and_due_date(work_order):
    assert work_order["work_order_number"] == "WO-00001"
    assert work_order["status"] == "open"
    assert work_order["meter_open_miles"] == 42000
    assert work_order["due_date"] == (date.today() + timedelta(days=3)).isoformat()
    assert work_order["history"][0]["message"] == "Work order created with status: open"
    assert work_order["rules"]["next_statuses"] == [{"status": "in_progress", "allowed": True, "reason": None}]


def test_work_order_requires_description(client, headers, vehicle):
    r = client.post(
        "/work-orders", json={"asset_id": str(vehicle.id), "description": "   "}, headers=headers["dispatcher"]
    )
    assert r.status_code == 400
    assert r.json()["detail"] == "Problem description is required"


def test_work_order_completion_rules(client, headers, vehicle, work_order):
    wo_id = work_order["id"]
    assert _move(client, headers["dispatcher"], wo_id, "completed").status_code == 409
    assert _move(client, headers["dispatcher"], wo_id, "in_progress").status_code == 200

    r = _move(client, headers["dispatcher"], wo_id, "awaiting_parts")
    assert r.status_code == 409
    assert r.json()["detail"] == "Add at least one part to move to Awaiting Parts status"

    r = _move(client, headers["dispatcher"], wo_id, "verification")
    assert r.json()["detail"] == "Technician must sign off on work before moving to Verification"

    client.post(f"/work-orders/{wo_id}/sign", json={"name": "Pat Mechanic"}, headers=headers["dispatcher"])
    assert _move(client, headers["dispatcher"], wo_id, "verification").status_code == 200

    r = _move(client, headers["dispatcher"], wo_id, "completed")
    assert r.json()["detail"] == "Resolution notes are required before completion"

    client.put(
        f"/work-orders/{wo_id}",
        json={"resolution_notes": "Pads and rotors replaced", "meter_close_miles": 42150, "labor_cost": 180},
        headers=headers["dispatcher"],
    )
    r = _move(client, headers["dispatcher"], wo_id, "completed")
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["status"] == "completed"
    assert body["closed_at"] is not None
    assert body["total_cost"] == 180.0

    assert client.get(f"/fleet/vehicles/{vehicle.id}", headers=headers["dispatcher"]).json()["current_mileage"] == 42150
    records = client.get(f"/fleet/vehicles/{vehicle.id}/maintenance", headers=headers["dispatcher"]).json()
    assert records[0]["maintenance_type"] == "repair"

    edit = client.put(f"/work-orders/{wo_id}", json={"description": "changed"}, headers=headers["dispatcher"])
    assert edit.status_code == 409


def test_short_part_moves_to_awaiting_parts(client, headers, work_order):
    part = client.post(
        "/work-orders/parts-inventory",
        json={"name": "Brake pad set", "quantity_on_hand": 1, "unit_cost": 45.0},
        headers=headers["dispatcher"],
    ).json()
    _move(client, headers["dispatcher"], work_order["id"], "in_progress")

    r = client.post(
        f"/work-orders/{work_order['id']}/parts",
        json={"part_id": part["id"], "quantity": 2},
        headers=headers["dispatcher"],
    )
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["status"] == "awaiting_parts"
    assert body["rules"]["short_parts"] == ["Brake pad set"]
    assert body["total_cost"] == 90.0


def test_work_order_csv_export(client, headers, work_order):
    r = client.get("/work-orders/export", headers=headers["dispatcher"])
    assert r.status_code == 200
    assert "WO-00001" in r.text
    assert "TRK-101" in r.text


# ---------- DVIR ----------
def test_clean_dvir_passes(client, headers, vehicle):
    r = client.post(
        "/fleet/dvirs",
        json={"vehicle_id": str(vehicle.id), "odometer": 42100, "checklist_results": {"brakes": "pass"}},
        headers=headers["driver"],
    )
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["status"] == "pass"
    assert body["auto_generated_work_order_id"] is None
    assert client.get(f"/fleet/vehicles/{vehicle.id}", headers=headers["dispatcher"]).json()["current_mileage"] == 42100


def test_critical_defect_opens_work_order(client, headers, vehicle):
    r = client.post(
        "/fleet/dvirs",
        json={"vehicle_id": str(vehicle.id), "odometer": 41000,
              "checklist_results": {"brakes": "fail"},
              "defects": [{"item": "Brakes", "severity": "critical", "notes": "Grinding"}]},
        headers=headers["driver"],
    )
    assert r.status_code == 200, r.text
    dvir = r.json()
    assert dvir["status"] == "fail"
    assert dvir["vehicle_safe_to_operate"] is False

    vehicle_now = client.get(f"/fleet/vehicles/{vehicle.id}", headers=headers["dispatcher"]).json()
    assert vehicle_now["status"] == "out_of_service"
    assert vehicle_now["current_mileage"] == 42000

    wo = client.get(f"/work-orders/{dvir['auto_generated_work_order_id']}", headers=headers["dispatcher"]).json()
    assert wo["priority"] == "critical"
    assert wo["source"] == "dvir"
    assert wo["driver_verification_required"] is True

    again = client.post(f"/fleet/dvirs/{dvir['id']}/work-order", headers=headers["dispatcher"])
    assert again.json()["id"] == wo["id"]


def test_dvir_work_order_needs_driver_verification(client, headers, vehicle):
    dvir = client.post(
        "/fleet/dvirs",
        json={"vehicle_id": str(vehicle.id),
              "defects": [{"item": "Tail light", "severity": "major"}]},
        headers=headers["driver"],
    ).json()
    wo_id = dvir["auto_generated_work_order_id"]
    d = headers["dispatcher"]
    _move(client, d, wo_id, "in_progress")
    client.post(f"/work-orders/{wo_id}/sign", json={"name": "Pat Mechanic"}, headers=d)
    _move(client, d, wo_id, "verification")
    client.put(f"/work-orders/{wo_id}", json={"resolution_notes": "Bulb replaced", "meter_close_miles": 42010},
               headers=d)

    r = _move(client, d, wo_id, "completed")
    assert r.json()["detail"] == "Driver verification is required before completion"

    assert client.post(f"/work-orders/{wo_id}/verify", headers=headers["driver"]).status_code == 200
    assert _move(client, d, wo_id, "completed").status_code == 200


def test_dvir_rejects_unknown_severity(client, headers, vehicle):
    r = client.post(
        "/fleet/dvirs",
        json={"vehicle_id": str(vehicle.id), "defects": [{"item": "Mirror", "severity": "cosmetic"}]},
        headers=headers["driver"],
    )
    assert r.status_code == 400


# ---------- FUEL ----------
def test_fuel_log_derives_cost_and_mileage(client, headers, vehicle):
    r = client.post(
        "/fleet/fuel",
        json={"vehicle_id": str(vehicle.id), "gallons": 20, "cost_per_gallon": 3.999, "odometer_reading": 42300,
              "fuel_station": "Pilot"},
        headers=headers["driver"],
    )
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["total_cost"] == 79.98
    assert body["source_type"] == "retail"
    assert client.get(f"/fleet/vehicles/{vehicle.id}", headers=headers["dispatcher"]).json()["current_mileage"] == 42300

    analytics = client.get("/fleet/fuel/analytics", headers=headers["dispatcher"])
    assert analytics.status_code == 200
    assert set(analytics.json()) >= {"vendor_performance", "cost_per_mile", "fleet_mpg", "source_comparison"}


# ---------- COMPLIANCE ----------
def test_spill_kit_check_is_case_insensitive(client, headers, vehicle):
    r = client.post(
        "/compliance/spill-kits",
        json={"vehicle_id": str(vehicle.id), "contents": FULL_KIT},
        headers=headers["driver"],
    )
    assert r.status_code == 200, r.text
    assert r.json()["status"] == "compliant"
    assert r.json()["missing_items"] == []


def test_spill_kit_missing_items(client, headers, vehicle):
    contents = dict(FULL_KIT, goggles=False)
    r = client.post(
        "/compliance/spill-kits",
        json={"vehicle_id": str(vehicle.id), "contents": contents},
        headers=headers["driver"],
    )
    assert r.json()["status"] == "non_compliant"
    assert r.json()["missing_items"] == ["goggles"]

    report = client.get("/compliance/spill-kits/report", headers=headers["dispatcher"]).json()
    assert report["counts"]["non_compliant"] == 1


def test_dispatcher_cannot_record_compliance(client, headers, vehicle):
    r = client.post(
        "/compliance/spill-kits", json={"vehicle_id": str(vehicle.id), "contents": FULL_KIT},
        headers=headers["dispatcher"],
    )
    assert r.status_code == 403


def test_spill_incident_close_needs_cleanup(client, headers, vehicle):
    incident = client.post(
        "/compliance/incidents",
        json={"vehicle_id": str(vehicle.id), "material": "Septic waste", "quantity_gallons": 5},
        headers=headers["driver"],
    ).json()
    assert incident["status"] == "open"

    r = client.post(f"/compliance/incidents/{incident['id']}/close", headers=headers["driver"])
    assert r.status_code == 400
    r = client.post(
        f"/compliance/incidents/{incident['id']}/close",
        json={"cleanup_actions": "Absorbed and bagged"},
        headers=headers["driver"],
    )
    assert r.status_code == 200
    assert r.json()["status"] == "closed"

    counts = client.get("/compliance/notification-counts", headers=headers["dispatcher"]).json()
    assert counts["open_spill_incidents"] == 0


def test_credential_reminders_are_deduplicated(client, headers, users):
    driver = users["driver"]
    r = client.put(
        f"/compliance/drivers/{driver.id}/credentials",
        json={"license_number": "D1234567", "license_expiry_date": (date.today() + timedelta(days=7)).isoformat()},
        headers=headers["dispatcher"],
    )
    assert r.status_code == 200, r.text

    first = client.post("/compliance/check-expirations", headers=headers["dispatcher"]).json()
    assert first == {"checked": 1, "notifications": 1, "critical": 1}
    second = client.post("/compliance/check-expirations", headers=headers["dispatcher"]).json()
    assert second["notifications"] == 0

    own = client.get(f"/compliance/drivers/{driver.id}/credentials", headers=headers["driver"])
    assert own.status_code == 200
    assert own.json()["license_number"] == "D1234567"


def test_driver_cannot_read_other_credentials(client, headers, second_driver):
    other, _ = second_driver
    r = client.get(f"/compliance/drivers/{other.id}/credentials", headers=headers["driver"])
    assert r.status_code == 403


def test_driver_cannot_edit_credentials(client, headers, users):
    r = client.put(
        f"/compliance/drivers/{users['driver'].id}/credentials",
        json={"license_number": "FAKE"},
        headers=headers["driver"],
    )
    assert r.status_code == 403


def _foreign_job(client, headers):
    outsider = client.post("/customers", json={"name": "Globex Yard"}, headers=headers).json()
    r = client.post(
        "/jobs",
        json={"job_type": "delivery", "customer_id": outsider["id"], "scheduled_date": date.today().isoformat()},
        headers=headers,
    )
    assert r.status_code == 200, r.text
    return r.json()


def test_links_to_other_organizations_are_404(client, headers, users, vehicle, work_order, other_org):
    outsider, other_headers = other_org
    job = _foreign_job(client, other_headers)

    r = client.post(
        "/compliance/incidents",
        json={"vehicle_id": str(vehicle.id), "job_id": job["id"], "material": "Septic waste"},
        headers=headers["driver"],
    )
    assert r.status_code == 404
    r = client.post(
        "/compliance/incidents",
        json={"vehicle_id": str(vehicle.id), "driver_id": str(outsider.id), "material": "Septic waste"},
        headers=headers["driver"],
    )
    assert r.status_code == 404

    r = client.post(
        "/work-orders",
        json={"asset_id": str(vehicle.id), "description": "Fix lights", "assigned_to": str(outsider.id)},
        headers=headers["dispatcher"],
    )
    assert r.status_code == 404
    r = client.put(f"/work-orders/{work_order['id']}", json={"assigned_to": str(outsider.id)},
                   headers=headers["dispatcher"])
    assert r.status_code == 404
    r = client.put(f"/work-orders/{work_order['id']}", json={"assigned_to": str(users["dispatcher"].id)},
                   headers=headers["dispatcher"])
    assert r.status_code == 200, r.text


# ---------- AVAILABILITY / DOCUMENTS ----------
def test_available_vehicles_skip_booked_days(client, headers, customer, vehicle):
    spare = client.post("/fleet/vehicles", json={"license_plate": "TRK-303"}, headers=headers["dispatcher"]).json()
    booked = date.today() + timedelta(days=5)
    r = client.post(
        "/jobs",
        json={"job_type": "delivery", "customer_id": str(customer.id), "scheduled_date": booked.isoformat(),
              "vehicle_id": str(vehicle.id)},
        headers=headers["dispatcher"],
    )
    assert r.status_code == 200, r.text

    def plates(start, end):
        r = client.get("/fleet/vehicles/available", params={"start": start.isoformat(), "end": end.isoformat()},
                       headers=headers["dispatcher"])
        assert r.status_code == 200, r.text
        return [v["license_plate"] for v in r.json()]

    assert plates(booked, booked) == [spare["license_plate"]]
    assert plates(booked - timedelta(days=3), booked + timedelta(days=3)) == ["TRK-303"]
    assert plates(booked + timedelta(days=1), booked + timedelta(days=2)) == ["TRK-101", "TRK-303"]

    r = client.get("/fleet/vehicles/available", params={"start": booked.isoformat(),
                                                        "end": (booked - timedelta(days=1)).isoformat()},
                   headers=headers["dispatcher"])
    assert r.status_code == 400


def test_expiring_documents(client, headers, vehicle):
    today = date.today()
    url = f"/fleet/vehicles/{vehicle.id}/documents"
    for name, offset in (("Insurance card", -5), ("Registration", 10), ("Emissions", 100)):
        r = client.post(url, json={"document_type": "other", "name": name,
                                   "expiry_date": (today + timedelta(days=offset)).isoformat()},
                        headers=headers["dispatcher"])
        assert r.status_code == 200, r.text

    soon = client.get("/fleet/documents/expiring", params={"days": 30}, headers=headers["dispatcher"]).json()
    assert [(d["name"], d["days_until_expiry"], d["expired"]) for d in soon] == [
        ("Insurance card", -5, True),
        ("Registration", 10, False),
    ]
    assert soon[0]["license_plate"] == "TRK-101"

    wide = client.get("/fleet/documents/expiring", params={"days": 120}, headers=headers["dispatcher"]).json()
    assert len(wide) == 3

    bad = client.post(url, json={"document_type": "other", "name": "Permit", "issue_date": today.isoformat(),
                                 "expiry_date": (today - timedelta(days=1)).isoformat()},
                      headers=headers["dispatcher"])
    assert bad.status_code == 400


# ---------- MAINTENANCE / PM ----------
def test_maintenance_moves_next_due_mileage(client, headers, vehicle):
    r = client.put(f"/fleet/vehicles/{vehicle.id}", json={"maintenance_interval_miles": 5000},
                   headers=headers["dispatcher"])
    assert r.status_code == 200, r.text

    url = f"/fleet/vehicles/{vehicle.id}/maintenance"
    r = client.post(url, json={"maintenance_type": "repair", "description": "Alternator", "mileage": 43000,
                               "cost": 250}, headers=headers["dispatcher"])
    assert r.status_code == 200, r.text
    assert r.json()["service_date"] == date.today().isoformat()

    truck = client.get(f"/fleet/vehicles/{vehicle.id}", headers=headers["dispatcher"]).json()
    assert truck["current_mileage"] == 43000
    assert truck["next_maintenance_due_miles"] == 48000

    bad = client.post(url, json={"maintenance_type": "detailing"}, headers=headers["dispatcher"])
    assert bad.status_code == 400
    assert len(client.get(url, headers=headers["dispatcher"]).json()) == 1


def test_pm_due_and_completion(client, headers, vehicle):
    today = date.today()
    url = f"/fleet/vehicles/{vehicle.id}/pm"
    schedules = {}
    for body in (
        {"task_name": "Oil change", "interval_miles": 5000, "last_done_mileage": 37300},
        {"task_name": "Brake inspection", "interval_days": 90,
         "last_done_date": (today - timedelta(days=100)).isoformat()},
        {"task_name": "Annual inspection", "interval_days": 365, "last_done_date": today.isoformat()},
    ):
        r = client.post(url, json=body, headers=headers["dispatcher"])
        assert r.status_code == 200, r.text
        schedules[body["task_name"]] = r.json()

    assert client.post(url, json={"task_name": "Wash"}, headers=headers["dispatcher"]).status_code == 400

    due = client.get("/fleet/pm/due", headers=headers["dispatcher"]).json()
    assert [(d["task_name"], d["status"]) for d in due] == [("Brake inspection", "overdue"), ("Oil change", "due_soon")]
    assert due[0]["days_remaining"] == -10
    assert due[1]["next_due_miles"] == 42300
    assert due[1]["miles_remaining"] == 300

    r = client.post(f"/fleet/pm/{schedules['Oil change']['id']}/complete", json={"mileage": 42100, "cost": 89.5},
                    headers=headers["dispatcher"])
    assert r.status_code == 200, r.text
    record = r.json()
    assert record["maintenance_type"] == "preventive"
    assert record["description"] == "Oil change"
    assert record["mileage"] == 42100

    due = client.get("/fleet/pm/due", headers=headers["dispatcher"]).json()
    assert [d["task_name"] for d in due] == ["Brake inspection"]
    oil = [s for s in client.get(url, headers=headers["dispatcher"]).json() if s["task_name"] == "Oil change"][0]
    assert oil["last_done_mileage"] == 42100
    assert oil["last_done_date"] == today.isoformat()


def test_daily_report_uses_organization_day(client, headers, vehicle):
    r = client.post(
        "/fleet/dvirs",
        json={"vehicle_id": str(vehicle.id), "checklist_results": {"brakes": "pass"}},
        headers=headers["driver"],
    )
    assert r.status_code == 200, r.text

    local_day = local_now("America/Chicago").date()
    report = client.get("/compliance/daily-report", headers=headers["dispatcher"])
    assert report.status_code == 200, report.text
    body = report.json()
    assert body["date"] == local_day.isoformat()
    assert body["dvirs_submitted"] == 1
    assert body["dvirs_failed"] == 0

    previous = client.get("/compliance/daily-report", params={"day": (local_day - timedelta(days=1)).isoformat()},
                          headers=headers["dispatcher"]).json()
    assert previous["dvirs_submitted"] == 0

    assert client.get("/compliance/daily-report", headers=headers["driver"]).status_code == 403
