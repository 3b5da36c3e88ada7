import asyncio
import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

import app as app_module  # noqa: E402
from route_providers import HaversineRouteProvider  # noqa: E402


@pytest.fixture
def client(tmp_path):
    app_module.app.state.engine = app_module.build_engine(
        tmp_path,
        provider=HaversineRouteProvider(),
        config_path=tmp_path / "missing.json",
    )
    yield TestClient(app_module.app)
    app_module.app.state.engine = None


STOP = {"stop_id": "stop-elm", "lat": 38.0293, "lng": -78.4767, "name": "Elm St"}


def test_health_reports_provider(client):
    resp = client.get("/v1/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "ok"
    assert body["provider"] == "haversine_fallback"
    assert body["vehicles"] == 0


def test_engine_not_started_is_503():
    app_module.app.state.engine = None
    resp = TestClient(app_module.app).get("/v1/health")
    assert resp.status_code == 503


def test_invalid_coordinates_are_rejected(client):
    resp = client.post("/v1/positions", json={"vehicle_id": "bus-12", "lat": 91, "lng": 0})
    assert resp.status_code == 422
    assert resp.json()["detail"] == {"reason": "invalid_coordinates"}
    assert client.get("/v1/vehicles").json() == {"vehicles": []}


def test_non_mapping_report_is_400(client):
    resp = client.post("/v1/positions", json=["not-a-report"])
    assert resp.status_code == 400


def test_next_stop_then_ingest_yields_eta_and_proximity_alert(client):
    resp = client.put(
        "/v1/vehicles/bus-12/next_stop",
        json={**STOP, "route_id": "R1", "vehicle_label": "Bus 12", "recipients": ["guardian-1"]},
    )
    assert resp.status_code == 200
    assert resp.json()["next_stop"]["stop_id"] == "stop-elm"

    resp = client.post("/v1/positions", json={"vehicle_id": "bus-12", "lat": 38.0300, "lng": -78.4770})
    assert resp.status_code == 200
    body = resp.json()
    assert body["accepted"] is True
    assert body["eta"]["provider_name"] == "haversine_fallback"
    assert body["eta"]["proximity"] == "immediate"
    assert len(body["alerts"]) == 1

    eta = client.get("/v1/vehicles/bus-12/eta").json()
    assert eta["tracking_unavailable"] is False
    assert eta["proximity"] == "immediate"

    alerts = client.get("/v1/alerts", params={"alert_type": "proximity"}).json()["alerts"]
    assert [a["id"] for a in alerts] == body["alerts"]
    assert alerts[0]["notification_status"] == "sent"


def test_batch_ingest_reports_each_sample(client):
    resp = client.post(
        "/v1/positions",
        json=[
            {"vehicle_id": "bus-1", "lat": 38.03, "lng": -78.47},
            {"vehicle_id": "", "lat": 38.03, "lng": -78.47},
        ],
    )
    assert resp.status_code == 200
    results = resp.json()["results"]
    assert results[0]["accepted"] is True
    assert results[1] == {"accepted": False, "reason": "missing_vehicle_id", "alerts": []}


def test_unknown_vehicle_is_404(client):
    assert client.get("/v1/vehicles/ghost/eta").status_code == 404
    assert client.delete("/v1/vehicles/ghost").status_code == 404
    resp = client.post("/v1/vehicles/ghost/route_etas", json={"stops": [STOP]})
    assert resp.status_code == 404


def test_route_etas_and_end_tracking(client):
    client.post("/v1/positions", json={"vehicle_id": "bus-1", "lat": 38.0336, "lng": -78.5080})
    resp = client.post(
        "/v1/vehicles/bus-1/route_etas",
        json={"stops": [STOP, {"stop_id": "stop-oak", "lat": 38.04, "lng": -78.48}]},
    )
    assert resp.status_code == 200
    stops = resp.json()["stops"]
    assert [s["sequence"] for s in stops] == [1, 2]
    assert stops[1]["eta_minutes"] >= stops[0]["eta_minutes"]

    assert client.delete("/v1/vehicles/bus-1").json()["status"] == "removed"
    assert client.get("/v1/vehicles").json() == {"vehicles": []}


def test_route_polyline_validation(client):
    ok = client.put("/v1/routes/R1/polyline", json={"stop_coordinates": [[38.0, -78.0], [38.1, -78.1]]})
    assert ok.status_code == 200 and ok.json()["stops"] == 2
    bad = client.put("/v1/routes/R1/polyline", json={"stop_coordinates": [[99.0, -78.0]]})
    assert bad.status_code == 422


def test_overlapping_assignment_is_409_with_conflicts(client):
    first = client.post(
        "/v1/assignments",
        json={"student_id": "S", "route_id": "R1", "effective_date": "2024-01-01", "end_date": "2024-06-30"},
    )
    assert first.status_code == 200
    first_id = first.json()["assignment"]["id"]
    assert first.json()["version"] == 1

    clash = client.post(
        "/v1/assignments",
        json={"student_id": "S", "route_id": "R2", "effective_date": "2024-03-01"},
    )
    assert clash.status_code == 409
    detail = clash.json()["detail"]
    assert [c["id"] for c in detail["conflicts"]] == [first_id]
    assert detail["candidate"]["route_id"] == "R2"

    listed = client.get("/v1/students/S/assignments").json()
    assert [a["id"] for a in listed["assignments"]] == [first_id]


def test_assignment_validation_and_stale_version(client):
    bad = client.post(
        "/v1/assignments",
        json={"student_id": "S", "route_id": "R1", "effective_date": "2024-06-01", "end_date": "2024-01-01"},
    )
    assert bad.status_code == 422

    stale = client.post(
        "/v1/assignments",
        json={"student_id": "S", "route_id": "R1", "effective_date": "2024-01-01", "expected_version": 3},
    )
    assert stale.status_code == 409
    assert client.post("/v1/assignments/nope/extend", json={"end_date": "2025-01-01"}).status_code == 404


def test_very_late_pickup_raises_high_alert_and_notifies(client):
    created = client.post(
        "/v1/attendance",
        json={
            "student_id": "s-1",
            "route_id": "R1",
            "date": "2024-05-01",
            "session": "morning",
            "scheduled_time": "2024-05-01T07:30:00Z",
            "student_name": "Ava Jones",
            "recipients": ["guardian-1"],
        },
    )
    assert created.status_code == 200
    attendance_id = created.json()["attendance"]["event_id"]

    resp = client.post(
        f"/v1/attendance/{attendance_id}/present",
        json={"actual_time": "2024-05-01T07:50:00Z", "location": "Elm St"},
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["attendance"]["delay_minutes"] == 20
    assert body["attendance"]["delay_label"] == "very_late"
    assert [a["severity"] for a in body["alerts"]] == ["high"]
    assert body["alerts"][0]["notification_status"] == "sent"

    stored = client.get(f"/v1/attendance/{attendance_id}").json()["attendance"]
    assert [n["type"] for n in stored["parent_notifications"]] == ["late"]

    summary = client.get("/v1/attendance/summary", params={"student_id": "s-1"}).json()
    assert summary["total_present"] == 1 and summary["late_count"] == 1

    locked = client.post(f"/v1/attendance/{attendance_id}/absent", json={"reason": "no_show"})
    assert locked.status_code == 409


def test_special_needs_absence_raises_compliance_alert(client):
    created = client.post(
        "/v1/attendance",
        json={"student_id": "s-2", "route_id": "R1", "date": "2024-05-01", "student_has_special_needs": True},
    )
    attendance_id = created.json()["attendance"]["event_id"]
    resp = client.post(f"/v1/attendance/{attendance_id}/absent", json={"reason": "no_show"})
    assert resp.status_code == 200
    kinds = sorted(a["alert_type"] for a in resp.json()["alerts"])
    assert kinds == ["attendance", "compliance"]

    assert client.get("/v1/attendance/missing").status_code == 404


def test_alert_lifecycle_over_http(client):
    raised = client.post(
        "/v1/alerts/safety",
        json={"kind": "emergency", "title": "Breakdown", "message": "Bus 12 stopped on Route 29", "vehicle_id": "bus-12"},
    )
    assert raised.status_code == 200
    alert = raised.json()["alert"]
    assert alert["severity"] == "critical" and alert["status"] == "pending"

    open_alerts = client.get("/v1/alerts/open").json()
    assert [a["id"] for a in open_alerts["critical"]] == [alert["id"]]

    ack = client.post(f"/v1/alerts/{alert['id']}/acknowledge", json={"by": "dispatch"})
    assert ack.json()["alert"]["acknowledged_by"] == "dispatch"
    resolved = client.post(f"/v1/alerts/{alert['id']}/resolve", json={"notes": "towed", "by": "dispatch"})
    assert resolved.json()["alert"]["status"] == "resolved"

    illegal = client.post(f"/v1/alerts/{alert['id']}/dismiss")
    assert illegal.status_code == 409
    assert client.post("/v1/alerts/missing/acknowledge").status_code == 404

    stats = client.get("/v1/alerts/stats").json()
    assert stats["total_alerts"] == 1 and stats["resolved_alerts"] == 1


def test_safety_alert_requires_fields(client):
    assert client.post("/v1/alerts/safety", json={"kind": "emergency"}).status_code == 422


def test_push_subscribe_and_unsubscribe(client):
    assert client.get("/v1/push/vapid-public-key").status_code == 503

    missing_ref = client.post(
        "/v1/push/subscribe",
        json={"endpoint": "https://push.test/a", "keys": {"p256dh": "k", "auth": "a"}},
    )
    assert missing_ref.status_code == 400

    resp = client.post(
        "/v1/push/subscribe",
        json={"recipient_ref": "guardian-1", "endpoint": "https://push.test/a", "keys": {"p256dh": "k", "auth": "a"}},
    )
    assert resp.json() == {"status": "subscribed", "new": True}
    gone = client.post("/v1/push/unsubscribe", json={"endpoint": "https://push.test/a"})
    assert gone.json() == {"status": "unsubscribed", "found": True}


def test_position_log_is_queryable_by_window_and_vehicle(client):
    client.post(
        "/v1/positions",
        json=[
            {"vehicle_id": "bus-1", "lat": 38.03, "lng": -78.47, "captured_at": "2024-05-01T07:00:00Z"},
            {"vehicle_id": "bus-2", "lat": 38.04, "lng": -78.48, "captured_at": "2024-05-01T07:01:00Z"},
            {"vehicle_id": "bus-1", "lat": 38.05, "lng": -78.49, "captured_at": "2024-05-01T07:02:00Z"},
        ],
    )
    window = {"start": "2024-05-01T06:59:00Z", "end": "2024-05-01T07:05:00Z"}

    every = client.get("/v1/positions", params=window).json()
    assert every["count"] == 3
    assert [p["vehicle_id"] for p in every["positions"]] == ["bus-1", "bus-2", "bus-1"]

    one = client.get("/v1/positions", params={**window, "vehicle_id": "bus-1"}).json()
    assert [p["latitude"] for p in one["positions"]] == [38.03, 38.05]

    early = client.get("/v1/positions", params={"start": "2024-05-01T06:00:00Z", "end": "2024-05-01T07:00:30Z"})
    assert early.json()["count"] == 1

    backwards = client.get("/v1/positions", params={"start": window["end"], "end": window["start"]})
    assert backwards.status_code == 422
    assert client.get("/v1/positions", params={"start": "yesterday", "end": window["end"]}).status_code == 422


def test_deactivate_with_end_before_start_is_422(client):
    created = client.post(
        "/v1/assignments",
        json={"student_id": "S", "route_id": "R1", "effective_date": "2024-03-01"},
    ).json()["assignment"]
    resp = client.post(f"/v1/assignments/{created['id']}/deactivate", json={"end_date": "2024-02-01"})
    assert resp.status_code == 422
    listed = client.get("/v1/students/S/assignments").json()["assignments"]
    assert listed[0]["status"] == "active"


def test_attendance_and_alerts_survive_restart(client, tmp_path):
    created = client.post(
        "/v1/attendance",
        json={
            "student_id": "s-2",
            "route_id": "R1",
            "date": "2024-05-01",
            "student_name": "Ben Ortiz",
            "student_has_special_needs": True,
            "recipients": ["guardian-2"],
        },
    )
    attendance_id = created.json()["attendance"]["event_id"]
    absent = client.post(f"/v1/attendance/{attendance_id}/absent", json={"reason": "no_show"}).json()
    before = client.get(f"/v1/attendance/{attendance_id}").json()["attendance"]
    alert_ids = sorted(a["id"] for a in absent["alerts"])

    restarted = app_module.build_engine(
        tmp_path,
        provider=HaversineRouteProvider(),
        config_path=tmp_path / "missing.json",
    )
    counts = asyncio.run(app_module.load_records(restarted))
    app_module.app.state.engine = restarted

    assert counts == {"assignments": 0, "attendance": 1, "alerts": len(alert_ids)}
    assert restarted.attendance_recipients[attendance_id] == ["guardian-2"]
    after = client.get(f"/v1/attendance/{attendance_id}")
    assert after.status_code == 200
    assert after.json()["attendance"] == before
    listed = client.get("/v1/alerts").json()["alerts"]
    assert sorted(a["id"] for a in listed) == alert_ids
    assert client.get("/v1/alerts/stats").json()["total_alerts"] == len(alert_ids)
