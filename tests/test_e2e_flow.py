"""
End-to-end flow through the HTTP API:

    tariff -> quote -> session start -> live estimate -> completion
    -> historical import -> new tariff version -> dry run -> apply -> aggregates
"""
import time
from datetime import datetime, timezone

TARIFF_V1 = {
    "base_rate": 80,
    "grace_minutes": 15,
    "block_minutes": 30,
    "block_rate": 40,
    "night_start_hour": 22,
    "night_multiplier": 1.5,
    "late_surcharge": 20,
    "overnight_fine": 500,
    "closing_hour": 22,
    "notes": "opening tariff",
    "created_by": "ops",
}


def iso(hour: int, minute: int = 0, day: int = 2) -> str:
    return datetime(2025, 6, day, hour, minute, tzinfo=timezone.utc).isoformat()


def _create_tariff(client, **overrides):
    r = client.post("/api/v1/tariffs/", json={**TARIFF_V1, **overrides})
    assert r.status_code == 201, r.text
    return r.json()["data"]


def _import_session(client, booking_ref, start, end, stored_amount):
    r = client.post("/api/v1/sessions/", json={
        "booking_ref": booking_ref,
        "start_time": start,
        "end_time": end,
        "stored_amount": stored_amount,
    })
    assert r.status_code == 201, r.text
    return r.json()["data"]


def _wait_for_run(client, run_id, timeout=10.0):
    deadline = time.time() + timeout
    while time.time() < deadline:
        r = client.get(f"/api/v1/reconciliation/runs/{run_id}")
        assert r.status_code == 200, r.text
        run = r.json()["data"]["run"]
        if run["status"] in ("COMPLETED", "FAILED"):
            return run
        time.sleep(0.1)
    raise AssertionError(f"run {run_id} did not finish within {timeout}s")


def test_full_billing_and_reconciliation_flow(client, fixed_clock):
    # 1. Tariff v1 and a quote for an interval crossing into the night window
    tariff = _create_tariff(client)
    assert tariff["version"] == 1
    assert tariff["night_multiplier"] == 1.5

    r = client.post("/api/v1/tariffs/quote", json={"start_time": iso(21, 30), "end_time": iso(23)})
    assert r.status_code == 200, r.text
    quote = r.json()["data"]
    assert quote["total_amount"] == 164.0
    assert quote["base_amount"] == 80.0
    assert quote["blocks"] == 1
    assert quote["night_adjustment"] == 44.0
    assert quote["tariff_version"] == 1

    # 2. Start a session and watch its running amount
    r = client.post("/api/v1/sessions/", json={
        "booking_ref": "BK-1",
        "start_time": iso(9),
        "expected_end_time": iso(10),
    })
    assert r.status_code == 201, r.text
    session = r.json()["data"]
    session_id = session["id"]
    assert session["is_active"] is True
    assert session["business_date"] == "2025-06-02"

    fixed_clock(datetime(2025, 6, 2, 9, 40, tzinfo=timezone.utc))
    r = client.get(f"/api/v1/sessions/{session_id}/estimate")
    assert r.status_code == 200, r.text
    assert r.json()["data"]["estimate"]["total_amount"] == 80.0

    fixed_clock(datetime(2025, 6, 2, 10, 50, tzinfo=timezone.utc))
    r = client.get("/api/v1/sessions/active/estimates")
    assert r.status_code == 200, r.text
    estimates = r.json()["data"]
    assert estimates["tariff_version"] == 1
    assert estimates["total_estimated"] == 160.0
    assert [item["session_id"] for item in estimates["items"]] == [session_id]

    # 3. Complete 50 minutes after the expected return: one started late hour
    r = client.post(f"/api/v1/sessions/{session_id}/complete", json={})
    assert r.status_code == 200, r.text
    completed = r.json()["data"]
    assert completed["breakdown"]["total_amount"] == 160.0
    assert completed["adjustments"]["late_surcharge"] == 20.0
    assert completed["amount_due"] == 180.0
    assert completed["daily_total_revenue"] == 160.0
    assert completed["session"]["is_active"] is False
    assert completed["session"]["stored_amount"] == 160.0

    # 4. Historical sessions priced by a legacy system
    short = _import_session(client, "BK-2", iso(12), iso(12, 40), 70)
    night = _import_session(client, "BK-3", iso(21, 30), iso(23), 164)

    r = client.get("/api/v1/sessions/", params={"state": "completed", "on_date": "2025-06-02"})
    assert r.status_code == 200
    assert len(r.json()["data"]["items"]) == 3

    # 5. A new tariff version becomes active
    v2 = _create_tariff(client, block_rate=50, notes="block rate raised")
    assert v2["version"] == 2
    r = client.get("/api/v1/tariffs/active")
    assert r.status_code == 200
    active = r.json()["data"]
    assert active["tariff"]["version"] == 2
    assert active["base_window_minutes"] == 75

    # 6. Dry run previews the differences without touching stored amounts
    r = client.post("/api/v1/reconciliation/run", json={"mode": "dry_run", "requested_by": "ops"})
    assert r.status_code == 200, r.text
    dry = r.json()["data"]
    assert dry["status"] == "COMPLETED"
    assert dry["mode"] == "dry_run"
    assert dry["tariff_version"] == 2
    assert dry["counts"]["processed"] == 3
    assert dry["counts"]["changed"] == 3
    assert dry["counts"]["aggregates_recomputed"] == 0
    assert dry["totals"]["old_total"] == 394.0
    assert dry["totals"]["new_total"] == 439.0
    assert dry["totals"]["difference"] == 45.0
    assert dry["touched_dates"] == ["2025-06-02"]

    r = client.get(f"/api/v1/sessions/{session_id}")
    assert r.json()["data"]["stored_amount"] == 160.0
    assert r.json()["data"]["last_reconciled_run_id"] is None

    r = client.get(f"/api/v1/reconciliation/runs/{dry['id']}", params={"sort_by": "difference"})
    assert r.status_code == 200, r.text
    report = r.json()["data"]
    items = report["records"]["items"]
    assert [i["session_id"] for i in items] == [session_id, night["id"], short["id"]]
    assert [i["difference"] for i in items] == [20.0, 15.0, 10.0]
    assert items[2]["old_amount"] == 70.0
    assert items[2]["new_amount"] == 80.0
    assert report["statistics"]["increases"] == 3
    assert report["statistics"]["max_increase"] == 20.0

    # 7. Apply commits the new amounts and rebuilds the day's aggregate
    r = client.post("/api/v1/reconciliation/run", json={"mode": "apply", "start_date": "2025-06-01", "end_date": "2025-06-30"})
    assert r.status_code == 200, r.text
    applied = r.json()["data"]
    assert applied["status"] == "COMPLETED"
    assert applied["scope"]["label"] == "2025-06-01..2025-06-30"
    assert applied["totals"]["difference"] == 45.0
    assert applied["counts"]["aggregates_recomputed"] == 1

    r = client.get(f"/api/v1/sessions/{short['id']}")
    assert r.json()["data"]["stored_amount"] == 80.0
    assert r.json()["data"]["tariff_version"] == 2
    assert r.json()["data"]["last_reconciled_run_id"] == applied["id"]

    r = client.get("/api/v1/aggregates/daily", params={"start_date": "2025-06-02", "end_date": "2025-06-02"})
    assert r.status_code == 200
    daily = r.json()["data"]
    assert daily["total_revenue"] == 439.0
    assert daily["session_count"] == 3
    assert daily["items"][0]["adjustment_total"] == 20.0
    assert daily["items"][0]["last_run_id"] == applied["id"]

    # 8. Re-applying the same tariff changes nothing
    r = client.post("/api/v1/reconciliation/run", json={"mode": "apply"})
    assert r.status_code == 200, r.text
    again = r.json()["data"]
    assert again["totals"]["difference"] == 0.0
    assert again["counts"]["changed"] == 0
    assert again["counts"]["unchanged"] == 3

    r = client.get("/api/v1/reconciliation/status")
    assert r.status_code == 200
    status = r.json()["data"]
    assert status["completed_sessions"] == 3
    assert status["reconciled_sessions"] == 3
    assert status["coverage_percent"] == 100.0
    assert status["last_completed_run_id"] == again["id"]
    assert status["runs"]["COMPLETED"] == 3
    assert status["locks"]["held"] == {}

    r = client.get("/api/v1/reconciliation/runs", params={"mode": "apply"})
    assert [run["id"] for run in r.json()["data"]["items"]] == [again["id"], applied["id"]]


def test_async_run_is_processed_by_worker(client):
    _create_tariff(client)
    _import_session(client, "BK-10", iso(9), iso(10, 50), 150)

    r = client.post("/api/v1/reconciliation/run", json={"mode": "apply", "run_async": True})
    assert r.status_code == 200, r.text
    data = r.json()["data"]
    assert data["status"] == "CREATED"

    run = _wait_for_run(client, data["run_id"])
    assert run["status"] == "COMPLETED"
    assert run["totals"]["difference"] == 10.0

    r = client.get("/api/v1/sessions/", params={"state": "completed"})
    assert r.json()["data"]["items"][0]["stored_amount"] == 160.0

    r = client.get("/api/v1/reconciliation/queue")
    assert r.status_code == 200
    queue = r.json()["data"]
    assert queue["snapshot"]["backend"] == "memory"
    assert queue["pending_run_ids"] == []
    assert queue["worker"] is not None


def test_tariff_versions_are_listed_newest_first(client):
    _create_tariff(client)
    _create_tariff(client, base_rate=90)
    r = client.get("/api/v1/tariffs/")
    assert r.status_code == 200
    assert [t["version"] for t in r.json()["data"]["items"]] == [2, 1]

    r = client.get("/api/v1/tariffs/1")
    assert r.status_code == 200
    assert r.json()["data"]["base_rate"] == 80.0

    # quoting against an older version by number
    r = client.post("/api/v1/tariffs/quote", json={"start_time": iso(9), "duration_minutes": 40, "tariff_version": 1})
    assert r.json()["data"]["total_amount"] == 80.0
    r = client.post("/api/v1/tariffs/quote", json={"start_time": iso(9), "duration_minutes": 40})
    assert r.json()["data"]["total_amount"] == 90.0


def test_health_endpoints(client):
    r = client.get("/health")
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "healthy"
    assert body["service"] == "rental-billing-engine"

    r = client.get("/")
    assert r.status_code == 200

    # no tariff yet: the service is up but degraded
    r = client.get("/health/detailed")
    assert r.status_code == 200
    detailed = r.json()
    assert detailed["status"] == "degraded"
    assert detailed["checks"]["database"] == "healthy"

    _create_tariff(client)
    r = client.get("/health/detailed")
    assert r.json()["status"] == "healthy"
    assert r.json()["checks"]["tariff"]["active_version"] == 1


def test_request_id_is_echoed(client):
    r = client.get("/api/v1/sessions/999", headers={"X-Request-ID": "req-abc"})
    assert r.status_code == 404
    assert r.headers["X-Request-ID"] == "req-abc"
    body = r.json()
    assert body["success"] is False
    assert body["code"] == "session_not_found"
    assert body["request_id"] == "req-abc"
    assert "X-Process-Time" in r.headers
