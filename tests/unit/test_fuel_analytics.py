from datetime import date
from types import SimpleNamespace

from fieldops.services import fuel


def _log(vehicle_id, day, gallons, cost, odometer, station="Pilot", source="retail", plate=None):
    return SimpleNamespace(
        vehicle_id=vehicle_id,
        vehicle=SimpleNamespace(license_plate=plate or f"PL-{vehicle_id}"),
        log_date=date(2026, 2, day),
        gallons=gallons,
        total_cost=cost,
        odometer_reading=odometer,
        fuel_station=station,
        source_type=source,
    )


LOGS = [
    _log("a", 1, 20.0, 80.0, 10000),
    _log("a", 8, 25.0, 100.0, 10300, station="Love's"),
    _log("b", 2, 30.0, 105.0, 5000, station=" ", source="yard_tank"),
    _log("b", 9, 30.0, 105.0, 5200, source="yard_tank"),
    _log("c", 3, 10.0, 40.0, None, source="mobile_vendor"),
]


def test_vendor_performance_groups_blank_names_as_unknown():
    rows = {r["vendor"]: r for r in fuel.vendor_performance(LOGS)}
    assert set(rows) == {"Pilot", "Love's", "Unknown"}
    assert rows["Pilot"]["purchase_count"] == 3
    assert rows["Pilot"]["total_cost"] == 225.0
    assert rows["Pilot"]["avg_cost_per_gallon"] == round(225.0 / 60.0, 3)
    assert rows["Pilot"]["last_purchase_date"] == date(2026, 2, 9)


def test_cost_per_mile_uses_odometer_span():
    result = fuel.cost_per_mile(LOGS)
    by_vehicle = {r["vehicle_id"]: r for r in result["vehicles"]}
    assert set(by_vehicle) == {"a", "b"}
    assert by_vehicle["a"]["miles"] == 300
    assert by_vehicle["a"]["cost_per_mile"] == 0.6
    assert by_vehicle["b"]["cost_per_mile"] == 1.05
    assert result["fleet_cost_per_mile"] == round(390.0 / 500, 3)


def test_fleet_mpg():
    result = fuel.fleet_mpg(LOGS)
    assert [r["vehicle_id"] for r in result["vehicles"]] == ["a", "b"]
    assert result["vehicles"][0]["mpg"] == round(300 / 45.0, 2)
    assert result["fleet_avg_mpg"] == round(500 / 105.0, 2)


def test_source_comparison_sorted_by_cost():
    rows = fuel.source_comparison(LOGS)
    assert [r["source_type"] for r in rows] == ["yard_tank", "retail", "mobile_vendor"]
    assert rows[0]["count"] == 2


def test_empty_logs():
    assert fuel.vendor_performance([]) == []
    assert fuel.cost_per_mile([]) == {"vehicles": [], "fleet_cost_per_mile": 0.0}
    assert fuel.fleet_mpg([])["fleet_avg_mpg"] == 0.0
