"""
School Bus Tracking Service: Engine API (FastAPI)

Purpose
=======
Ingest bus telemetry, estimate arrival at each bus's next stop, classify
student attendance, guard route assignments against overlaps, and raise and
deliver alerts to guardians and dispatch.

Key features
------------
- Position ingest with coordinate validation and a daily CSV position log.
- ETA to next stop through a pluggable route provider (OSRM, OpenRouteService,
  local OSM graph, haversine fallback), with timeout and bounded retry.
- Proximity, attendance and safety alerts with a pending/acknowledged/resolved
  lifecycle and Web Push delivery.
- Conflict-checked student-to-route assignments.
- Live map over Server-Sent Events (SSE), one reconciler per connection.

Run
---
$ uvicorn app:app --reload --port 8080

Environment
-----------
- PYTHON >= 3.10
- pip install -e .
"""

from __future__ import annotations
from typing import List, Dict, Optional, Any
from dataclasses import dataclass, field
import asyncio, os
from datetime import date, datetime
from pathlib import Path

from fastapi import Body, FastAPI, HTTPException, Query, Request
from fastapi.responses import StreamingResponse

from alerts import AlertDispatcher, AttendanceTrigger, InvalidAlertTransition, SafetyTrigger
from assignments import Assignment, AssignmentWriter, ConflictDetected, StaleSnapshot, parse_date
from attendance import (
    AttendanceEvent,
    AttendanceLocked,
    AttendanceMeta,
    EventType,
    Session,
    attendance_pattern,
    summarize_attendance,
)
from eta_estimator import ETAEstimator, Stop
from live_map import LiveMapReconciler, QueueMapView, TrackingEventBus
from notifications import ConsoleChannel, NotificationRouter, WebPushChannel
from position_ingest import parse_iso8601_utc, valid_coordinates
from position_storage import PositionStorage
from push_subscriptions import PushSubscriptionStore
from repository import JsonFileRepository
from route_providers import RouteProvider, RouteProviderError, build_route_provider
from tracking_service import TrackingService, load_engine_config

# ---------------------------
# Config
# ---------------------------
DATA_DIRS = [Path(p) for p in os.getenv("DATA_DIRS", "/data").split(":")]
PRIMARY_DATA_DIR = DATA_DIRS[0]

ETA_PROVIDER = os.getenv("ETA_PROVIDER", "osrm")
ENGINE_CONFIG_PATH = Path(os.getenv("ENGINE_CONFIG_PATH", "config/engine.json"))
NOTIFICATION_RETRY_S = float(os.getenv("NOTIFICATION_RETRY_S", "60"))
SSE_KEEPALIVE_S = float(os.getenv("SSE_KEEPALIVE_S", "15"))

# Push notifications (Web Push)
VAPID_PUBLIC_KEY = os.getenv("VAPID_PUBLIC_KEY", "")
VAPID_PRIVATE_KEY = os.getenv("VAPID_PRIVATE_KEY", "")
VAPID_SUBJECT = os.getenv("VAPID_SUBJECT", "mailto:transport@example.org")

ATTENDANCE_KIND = "attendance"


# ---------------------------
# Engine wiring
# ---------------------------
@dataclass
class Engine:
    repository: JsonFileRepository
    push_store: PushSubscriptionStore
    notifier: NotificationRouter
    estimator: ETAEstimator
    dispatcher: AlertDispatcher
    bus: TrackingEventBus
    tracking: TrackingService
    assignments: AssignmentWriter
    attendance: Dict[str, AttendanceEvent] = field(default_factory=dict)
    attendance_recipients: Dict[str, List[str]] = field(default_factory=dict)
    tasks: List[asyncio.Task] = field(default_factory=list)


def build_engine(
    data_dir: Path,
    *,
    provider: Optional[RouteProvider] = None,
    config_path: Path = ENGINE_CONFIG_PATH,
) -> Engine:
    config = load_engine_config(config_path)
    if provider is None:
        provider = build_route_provider(config.eta_provider or ETA_PROVIDER)
    repository = JsonFileRepository(data_dir / "engine_records.json")
    push_store = PushSubscriptionStore(JsonFileRepository(data_dir / "push_subscriptions.json"))
    notifier = NotificationRouter()
    if VAPID_PUBLIC_KEY and VAPID_PRIVATE_KEY:
        notifier.register(WebPushChannel(push_store, VAPID_PRIVATE_KEY, VAPID_SUBJECT))
    else:
        print("[app] VAPID keys not configured; push notifications go to the console")
        notifier.register(ConsoleChannel())
        notifier.register(ConsoleChannel("push"))
    estimator = ETAEstimator(provider)
    dispatcher = AlertDispatcher(notifier, repository)
    bus = TrackingEventBus()
    tracking = TrackingService(
        estimator,
        dispatcher,
        bus,
        PositionStorage(data_dir / "positions"),
        config=config,
    )
    return Engine(
        repository=repository,
        push_store=push_store,
        notifier=notifier,
        estimator=estimator,
        dispatcher=dispatcher,
        bus=bus,
        tracking=tracking,
        assignments=AssignmentWriter(repository),
    )


# ---------------------------
# App & state
# ---------------------------
app = FastAPI(title="School Bus Tracking Engine")


def _engine() -> Engine:
    engine = getattr(app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="engine not started")
    return engine


async def load_records(engine: Engine) -> Dict[str, int]:
    """Reload persisted assignments, attendance and alerts into a fresh engine."""
    counts = {"assignments": await engine.assignments.load(), "attendance": 0}
    for raw in await engine.repository.list(ATTENDANCE_KIND):
        try:
            event = AttendanceEvent.from_dict(raw)
        except (KeyError, ValueError, TypeError) as exc:
            print(f"[app] skipping malformed attendance record {raw.get('id')}: {exc}")
            continue
        engine.attendance[event.event_id] = event
        recipients = raw.get("recipients")
        if recipients:
            engine.attendance_recipients[event.event_id] = [str(r) for r in recipients]
        counts["attendance"] += 1
    counts["alerts"] = await engine.dispatcher.load()
    return counts


@app.on_event("startup")
async def init_engine() -> None:
    engine = getattr(app.state, "engine", None)
    if engine is None:
        engine = build_engine(PRIMARY_DATA_DIR)
        app.state.engine = engine
    counts = await load_records(engine)
    print(
        f"[app] engine ready provider={engine.estimator.provider.name} "
        f"assignments={counts['assignments']} attendance={counts['attendance']} alerts={counts['alerts']}"
    )

    async def notification_retrier():
        while True:
            await asyncio.sleep(NOTIFICATION_RETRY_S)
            try:
                if engine.dispatcher.pending_notifications:
                    delivered = await engine.dispatcher.retry_failed_notifications()
                    print(f"[app] notification retry delivered {delivered}")
            except Exception as exc:
                print(f"[app] notification retry error: {exc}")

    engine.tasks.append(asyncio.create_task(engine.tracking.run_stale_sweeper()))
    engine.tasks.append(asyncio.create_task(notification_retrier()))


@app.on_event("shutdown")
async def shutdown_engine() -> None:
    engine = getattr(app.state, "engine", None)
    if engine is None:
        return
    for task in engine.tasks:
        task.cancel()
    engine.tasks.clear()


# ---------------------------
# Helpers
# ---------------------------
def _parse_stop(payload: Dict[str, Any]) -> Stop:
    stop_id = payload.get("stop_id") or payload.get("id")
    try:
        lat = float(payload.get("lat"))
        lng = float(payload.get("lng"))
    except (TypeError, ValueError):
        raise HTTPException(status_code=422, detail="stop requires numeric lat and lng")
    if not stop_id or not valid_coordinates(lat, lng):
        raise HTTPException(status_code=422, detail="stop requires stop_id and valid coordinates")
    return Stop(stop_id=str(stop_id), lat=lat, lng=lng, name=payload.get("name"))


def _parse_timestamp(value: Any, name: str) -> Optional[datetime]:
    if value is None or value == "":
        return None
    try:
        return parse_iso8601_utc(str(value))
    except ValueError:
        raise HTTPException(status_code=422, detail=f"{name} must be an ISO-8601 timestamp")


def _conflict_body(exc: ConflictDetected) -> Dict[str, Any]:
    return {
        "message": str(exc),
        "candidate": exc.candidate.to_dict(),
        "conflicts": [c.to_dict() for c in exc.conflicts],
    }


def _attendance_or_404(engine: Engine, attendance_id: str) -> AttendanceEvent:
    event = engine.attendance.get(attendance_id)
    if event is None:
        raise HTTPException(status_code=404, detail="attendance record not found")
    return event


async def _save_attendance(engine: Engine, event: AttendanceEvent) -> None:
    recipients = engine.attendance_recipients.get(event.event_id, [])
    await engine.repository.save(ATTENDANCE_KIND, {**event.to_dict(), "id": event.event_id, "recipients": recipients})


async def _dispatch_attendance_alerts(engine: Engine, event: AttendanceEvent) -> List[Dict[str, Any]]:
    raised = []
    recipients = engine.attendance_recipients.get(event.event_id, [])
    if event.notification_type is not None:
        record = await engine.dispatcher.dispatch(AttendanceTrigger(event, recipients=recipients))
        raised.append(record.to_dict())
    if event.affects_safety_compliance:
        record = await engine.dispatcher.dispatch(SafetyTrigger.compliance(event))
        raised.append(record.to_dict())
    return raised


# ---------------------------
# Health
# ---------------------------
@app.get("/v1/health")
async def health():
    engine = _engine()
    return {
        "status": "ok",
        "provider": engine.estimator.provider.name,
        "vehicles": len(engine.tracking.tracks),
        "map_subscribers": engine.bus.subscriber_count,
        "pending_notifications": engine.dispatcher.pending_notifications,
    }


# ---------------------------
# Positions & vehicles
# ---------------------------
@app.post("/v1/positions")
async def ingest_positions(payload: Any = Body(...)):
    engine = _engine()
    if isinstance(payload, list):
        results = []
        for item in payload:
            try:
                outcome = await engine.tracking.ingest(item)
            except TypeError as exc:
                raise HTTPException(status_code=400, detail=str(exc)) from exc
            results.append(outcome.to_dict())
        return {"results": results}
    try:
        outcome = await engine.tracking.ingest(payload)
    except TypeError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if not outcome.ingest.ok:
        raise HTTPException(status_code=422, detail={"reason": outcome.ingest.reason.value})
    return outcome.to_dict()


@app.get("/v1/positions")
async def query_positions(
    start: str = Query(...),
    end: str = Query(...),
    vehicle_id: Optional[str] = Query(None, description="Comma-separated vehicle ids"),
):
    """Logged samples in a time window, oldest first."""
    engine = _engine()
    storage = engine.tracking.storage
    if storage is None:
        raise HTTPException(status_code=503, detail="position log not configured")
    start_dt = _parse_timestamp(start, "start")
    end_dt = _parse_timestamp(end, "end")
    if end_dt < start_dt:
        raise HTTPException(status_code=422, detail="end must not precede start")
    vehicle_ids = {v.strip() for v in (vehicle_id or "").split(",") if v.strip()} or None
    samples = await asyncio.to_thread(storage.query_samples, start_dt, end_dt, vehicle_ids)
    return {"count": len(samples), "positions": [s.to_dict() for s in samples]}


@app.put("/v1/vehicles/{vehicle_id}/next_stop")
async def set_next_stop(vehicle_id: str, payload: Dict[str, Any] = Body(...)):
    engine = _engine()
    stop = _parse_stop(payload)
    recipients = payload.get("recipients") or []
    if not isinstance(recipients, list):
        raise HTTPException(status_code=422, detail="recipients must be a list")
    engine.tracking.set_next_stop(
        vehicle_id,
        stop,
        route_id=payload.get("route_id"),
        vehicle_label=payload.get("vehicle_label"),
        recipients=[str(r) for r in recipients],
    )
    return engine.tracking.vehicle_status(vehicle_id)


@app.get("/v1/vehicles")
async def list_vehicles():
    return {"vehicles": _engine().tracking.vehicles()}


@app.get("/v1/vehicles/{vehicle_id}/eta")
async def vehicle_eta(vehicle_id: str):
    try:
        return _engine().tracking.vehicle_status(vehicle_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="vehicle not tracked")


@app.post("/v1/vehicles/{vehicle_id}/route_etas")
async def vehicle_route_etas(vehicle_id: str, payload: Dict[str, Any] = Body(...)):
    engine = _engine()
    raw_stops = payload.get("stops")
    if not isinstance(raw_stops, list) or not raw_stops:
        raise HTTPException(status_code=422, detail="stops must be a non-empty list")
    stops = [_parse_stop(s) for s in raw_stops if isinstance(s, dict)]
    try:
        etas = await engine.tracking.route_etas(vehicle_id, stops)
    except KeyError:
        raise HTTPException(status_code=404, detail="vehicle has no position")
    except RouteProviderError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return {"vehicle_id": vehicle_id, "stops": [e.to_dict() for e in etas]}


@app.delete("/v1/vehicles/{vehicle_id}")
async def end_vehicle_tracking(vehicle_id: str):
    removed = await _engine().tracking.end_tracking(vehicle_id)
    if not removed:
        raise HTTPException(status_code=404, detail="vehicle not tracked")
    return {"status": "removed", "vehicle_id": vehicle_id}


@app.put("/v1/routes/{route_id}/polyline")
async def publish_route_polyline(route_id: str, payload: Dict[str, Any] = Body(...)):
    coords = payload.get("stop_coordinates")
    if not isinstance(coords, list):
        raise HTTPException(status_code=422, detail="stop_coordinates must be a list of [lat, lng]")
    try:
        pairs = [(float(c[0]), float(c[1])) for c in coords]
    except (TypeError, ValueError, IndexError):
        raise HTTPException(status_code=422, detail="stop_coordinates must be a list of [lat, lng]")
    if not all(valid_coordinates(lat, lng) for lat, lng in pairs):
        raise HTTPException(status_code=422, detail="invalid coordinates in stop_coordinates")
    _engine().tracking.publish_route(route_id, pairs)
    return {"status": "ok", "route_id": route_id, "stops": len(pairs)}


# ---------------------------
# Assignments
# ---------------------------
@app.post("/v1/assignments")
async def create_assignment(payload: Dict[str, Any] = Body(...)):
    engine = _engine()
    try:
        candidate = Assignment.from_dict(payload)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    expected = payload.get("expected_version")
    try:
        saved = await engine.assignments.create(
            candidate, expected_version=int(expected) if expected is not None else None
        )
    except ConflictDetected as exc:
        raise HTTPException(status_code=409, detail=_conflict_body(exc)) from exc
    except StaleSnapshot as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return {"assignment": saved.to_dict(), "version": engine.assignments.version(saved.student_id)}


@app.get("/v1/students/{student_id}/assignments")
async def student_assignments(student_id: str):
    writer = _engine().assignments
    return {
        "student_id": student_id,
        "version": writer.version(student_id),
        "assignments": [a.to_dict() for a in writer.for_student(student_id)],
    }


@app.post("/v1/assignments/{assignment_id}/extend")
async def extend_assignment(assignment_id: str, payload: Dict[str, Any] = Body(...)):
    engine = _engine()
    try:
        new_end = parse_date(payload.get("end_date"))
        updated = await engine.assignments.extend(assignment_id, new_end)
    except KeyError:
        raise HTTPException(status_code=404, detail="assignment not found")
    except ConflictDetected as exc:
        raise HTTPException(status_code=409, detail=_conflict_body(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return {"assignment": updated.to_dict()}


@app.post("/v1/assignments/{assignment_id}/deactivate")
async def deactivate_assignment(assignment_id: str, payload: Optional[Dict[str, Any]] = Body(None)):
    engine = _engine()
    try:
        end_date = parse_date((payload or {}).get("end_date"))
        updated = await engine.assignments.deactivate(assignment_id, end_date)
    except KeyError:
        raise HTTPException(status_code=404, detail="assignment not found")
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return {"assignment": updated.to_dict()}


# ---------------------------
# Attendance
# ---------------------------
@app.post("/v1/attendance")
async def create_attendance(payload: Dict[str, Any] = Body(...)):
    engine = _engine()
    student_id = payload.get("student_id")
    route_id = payload.get("route_id")
    if not student_id or not route_id:
        raise HTTPException(status_code=422, detail="student_id and route_id are required")
    try:
        day = parse_date(payload.get("date")) or date.today()
        session = Session(payload.get("session") or Session.MORNING.value)
        event_type = EventType(payload.get("event_type") or EventType.PICKUP.value)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    event = AttendanceEvent(
        student_id=str(student_id),
        route_id=str(route_id),
        date=day,
        session=session,
        scheduled_time=_parse_timestamp(payload.get("scheduled_time"), "scheduled_time"),
        assignment_id=payload.get("assignment_id"),
        event_type=event_type,
        student_name=payload.get("student_name"),
        route_name=payload.get("route_name"),
        student_has_special_needs=bool(payload.get("student_has_special_needs")),
        meta=AttendanceMeta.from_dict(payload.get("meta")),
    )
    engine.attendance[event.event_id] = event
    recipients = payload.get("recipients") or []
    engine.attendance_recipients[event.event_id] = [str(r) for r in recipients if r]
    await _save_attendance(engine, event)
    return {"attendance": event.to_dict()}


@app.get("/v1/attendance/summary")
async def attendance_summary(student_id: Optional[str] = Query(None), route_id: Optional[str] = Query(None)):
    events = [
        e for e in _engine().attendance.values()
        if (student_id is None or e.student_id == student_id) and (route_id is None or e.route_id == route_id)
    ]
    return summarize_attendance(events)


@app.get("/v1/students/{student_id}/attendance_pattern")
async def student_attendance_pattern(student_id: str, days: int = Query(30, ge=1, le=366)):
    return {
        "student_id": student_id,
        "pattern": attendance_pattern(_engine().attendance.values(), student_id, days=days),
    }


@app.get("/v1/attendance/{attendance_id}")
async def get_attendance(attendance_id: str):
    return {"attendance": _attendance_or_404(_engine(), attendance_id).to_dict()}


@app.post("/v1/attendance/{attendance_id}/present")
async def mark_attendance_present(attendance_id: str, payload: Optional[Dict[str, Any]] = Body(None)):
    engine = _engine()
    event = _attendance_or_404(engine, attendance_id)
    payload = payload or {}
    coordinates = payload.get("coordinates")
    coords = None
    if isinstance(coordinates, (list, tuple)) and len(coordinates) == 2:
        try:
            coords = (float(coordinates[0]), float(coordinates[1]))
        except (TypeError, ValueError):
            raise HTTPException(status_code=422, detail="coordinates must be [lat, lng]")
    try:
        event.mark_present(
            payload.get("location"),
            coords,
            now=_parse_timestamp(payload.get("actual_time"), "actual_time"),
        )
    except AttendanceLocked as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    alerts = await _dispatch_attendance_alerts(engine, event)
    await _save_attendance(engine, event)
    return {"attendance": event.to_dict(), "alerts": alerts}


@app.post("/v1/attendance/{attendance_id}/absent")
async def mark_attendance_absent(attendance_id: str, payload: Optional[Dict[str, Any]] = Body(None)):
    engine = _engine()
    event = _attendance_or_404(engine, attendance_id)
    reason = (payload or {}).get("reason") or EventType.NO_SHOW.value
    try:
        event.mark_absent(reason)
    except AttendanceLocked as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    alerts = await _dispatch_attendance_alerts(engine, event)
    await _save_attendance(engine, event)
    return {"attendance": event.to_dict(), "alerts": alerts}


@app.post("/v1/attendance/{attendance_id}/notes")
async def add_attendance_note(attendance_id: str, payload: Dict[str, Any] = Body(...)):
    engine = _engine()
    event = _attendance_or_404(engine, attendance_id)
    event.add_note(str(payload.get("note") or ""))
    await _save_attendance(engine, event)
    return {"attendance": event.to_dict()}


# ---------------------------
# Alerts
# ---------------------------
@app.get("/v1/alerts")
async def list_alerts(
    status: Optional[str] = Query(None),
    severity: Optional[str] = Query(None),
    alert_type: Optional[str] = Query(None),
    vehicle_id: Optional[str] = Query(None),
    open_only: bool = Query(False),
):
    records = _engine().dispatcher.list_alerts(
        status=status,
        severity=severity,
        alert_type=alert_type,
        vehicle_id=vehicle_id,
        open_only=open_only,
    )
    return {"alerts": [r.to_dict() for r in records]}


@app.get("/v1/alerts/open")
async def open_alerts():
    grouped = _engine().dispatcher.open_by_severity()
    return {severity: [r.to_dict() for r in records] for severity, records in grouped.items()}


@app.get("/v1/alerts/stats")
async def alert_stats(
    date_from: Optional[str] = Query(None),
    date_to: Optional[str] = Query(None),
):
    return _engine().dispatcher.statistics(
        _parse_timestamp(date_from, "date_from"),
        _parse_timestamp(date_to, "date_to"),
    )


@app.post("/v1/alerts/safety")
async def raise_safety_alert(payload: Dict[str, Any] = Body(...)):
    kind = payload.get("kind")
    title = payload.get("title")
    message = payload.get("message")
    if not kind or not title or not message:
        raise HTTPException(status_code=422, detail="kind, title and message are required")
    trigger = SafetyTrigger(
        kind=str(kind),
        title=str(title),
        message=str(message),
        vehicle_id=payload.get("vehicle_id"),
        student_id=payload.get("student_id"),
        route_id=payload.get("route_id"),
        data=payload.get("data") or {},
        recipients=[str(r) for r in payload.get("recipients") or []],
    )
    record = await _engine().dispatcher.dispatch(trigger)
    return {"alert": record.to_dict()}


@app.post("/v1/alerts/retry")
async def retry_notifications():
    dispatcher = _engine().dispatcher
    delivered = await dispatcher.retry_failed_notifications()
    return {"delivered": delivered, "pending": dispatcher.pending_notifications}


@app.post("/v1/alerts/{alert_id}/acknowledge")
async def acknowledge_alert(alert_id: str, payload: Optional[Dict[str, Any]] = Body(None)):
    try:
        record = await _engine().dispatcher.acknowledge(alert_id, by=(payload or {}).get("by"))
    except KeyError:
        raise HTTPException(status_code=404, detail="alert not found")
    except InvalidAlertTransition as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return {"alert": record.to_dict()}


@app.post("/v1/alerts/{alert_id}/resolve")
async def resolve_alert(alert_id: str, payload: Optional[Dict[str, Any]] = Body(None)):
    payload = payload or {}
    try:
        record = await _engine().dispatcher.resolve(alert_id, notes=payload.get("notes"), by=payload.get("by"))
    except KeyError:
        raise HTTPException(status_code=404, detail="alert not found")
    except InvalidAlertTransition as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return {"alert": record.to_dict()}


@app.post("/v1/alerts/{alert_id}/dismiss")
async def dismiss_alert(alert_id: str):
    try:
        record = await _engine().dispatcher.dismiss(alert_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="alert not found")
    except InvalidAlertTransition as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return {"alert": record.to_dict()}


# ---------------------------
# Push Notifications API
# ---------------------------
@app.get("/v1/push/vapid-public-key")
async def get_vapid_public_key():
    """Return the VAPID public key for push subscription."""
    if not VAPID_PUBLIC_KEY:
        raise HTTPException(status_code=503, detail="Push notifications not configured")
    return {"publicKey": VAPID_PUBLIC_KEY}


@app.post("/v1/push/subscribe")
async def push_subscribe(request: Request):
    """Register a guardian's browser for push notifications."""
    data = await request.json()
    recipient_ref = data.get("recipient_ref")
    endpoint = data.get("endpoint")
    keys = data.get("keys") or {}
    if not recipient_ref or not endpoint or not keys.get("p256dh") or not keys.get("auth"):
        raise HTTPException(status_code=400, detail="Invalid subscription data")
    user_agent = request.headers.get("user-agent")
    is_new = await _engine().push_store.add_subscription(str(recipient_ref), endpoint, keys, user_agent)
    return {"status": "subscribed", "new": is_new}


@app.post("/v1/push/unsubscribe")
async def push_unsubscribe(request: Request):
    data = await request.json()
    endpoint = data.get("endpoint")
    if not endpoint:
        raise HTTPException(status_code=400, detail="Missing endpoint")
    removed = await _engine().push_store.remove_subscription(endpoint)
    return {"status": "unsubscribed", "found": removed}


# ---------------------------
# SSE: Live map
# ---------------------------
@app.get("/v1/stream/map")
async def stream_map(request: Request):
    """SSE stream of map mutations for one map view.

    Each connection gets its own reconciler seeded from the current snapshot;
    closing the connection unmounts it and detaches it from the event bus.
    """
    engine = _engine()
    view = QueueMapView()
    reconciler = LiveMapReconciler(view)

    async def gen():
        reconciler.subscribe(engine.bus)
        try:
            while True:
                if await request.is_disconnected():
                    break
                if view.overflowed:
                    # Client reconnects and starts over from a fresh snapshot
                    yield 'data: {"op": "resync"}\n\n'
                    break
                try:
                    encoded = await asyncio.wait_for(view.queue.get(), timeout=SSE_KEEPALIVE_S)
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    continue
                yield encoded
        finally:
            reconciler.unmount()
    return StreamingResponse(gen(), media_type="text/event-stream")
