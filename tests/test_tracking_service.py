import asyncio
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from alerts import AlertDispatcher  # noqa: E402
from eta_estimator import ETAEstimator, ProximityLevel, Stop  # noqa: E402
from live_map import (  # noqa: E402
    STATUS_IN_TRANSIT,
    STATUS_TRACKING_UNAVAILABLE,
    RemoveEvent,
    RouteEvent,
    TrackingEventBus,
    VehicleEvent,
)
from position_storage import PositionStorage  # noqa: E402
from route_providers import RouteEstimate  # noqa: E402
from tracking_service import (  # noqa: E402
    STATUS_AT_STOP,
    EngineConfig,
    TrackingService,
    load_engine_config,
)


NOW = datetime(2024, 5, 1, 7, 30, tzinfo=timezone.utc)
STOP = Stop("stop-elm", 38.0293, -78.4767, "Elm St")


class Clock:
    def __init__(self):
        self.now = NOW

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class StaticProvider:
    name = "static"

    def __init__(self, distance_km=0.3, duration_minutes=1.0):
        self.distance_km = distance_km
        self.duration_minutes = duration_minutes

    async def compute_route(self, origin, destination, options=None):
        return RouteEstimate(self.distance_km, self.duration_minutes, self.name)


class GatedProvider(StaticProvider):
    """Holds the first route call until the test opens the gate."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.started = asyncio.Event()
        self.gate = asyncio.Event()
        self.calls = 0

    async def compute_route(self, origin, destination, options=None):
        self.calls += 1
        if self.calls == 1:
            self.started.set()
            await self.gate.wait()
        return await super().compute_route(origin, destination, options)


class RecordingBus(TrackingEventBus):
    def __init__(self):
        super().__init__()
        self.events = []

    def publish(self, event):
        self.events.append(event)
        super().publish(event)


def _service(provider=None, config=None, storage=None):
    clock = Clock()

    async def no_sleep(_delay):
        return None

    estimator = ETAEstimator(provider or StaticProvider(), clock=clock, sleep=no_sleep)
    dispatcher = AlertDispatcher(clock=clock)
    bus = RecordingBus()
    service = TrackingService(estimator, dispatcher, bus, storage, config=config, stale_after_s=120, clock=clock)
    return service, bus, clock


def _report(lat=38.0300, lng=-78.4770, **extra):
    report = {"vehicle_id": "bus-12", "lat": lat, "lng": lng, "captured_at": NOW.isoformat()}
    report.update(extra)
    return report


def test_rejected_sample_publishes_nothing(capsys):
    service, bus, _ = _service()
    outcome = asyncio.run(service.ingest(_report(lat=91.0)))
    assert not outcome.ingest.ok
    assert outcome.to_dict()["reason"] == "invalid_coordinates"
    assert bus.events == []
    assert service.tracks == {}
    assert "[ingest] rejected" in capsys.readouterr().out


def test_ingest_with_next_stop_raises_one_proximity_alert():
    service, bus, _ = _service()
    service.set_next_stop("bus-12", STOP, route_id="R1", vehicle_label="Bus 12")

    async def run():
        first = await service.ingest(_report())
        second = await service.ingest(_report())
        return first, second

    first, second = asyncio.run(run())
    assert first.eta.ok
    assert first.eta.result.proximity == ProximityLevel.VERY_CLOSE
    assert len(service.dispatcher.alerts) == 1
    assert first.alerts[0].alert_id == second.alerts[0].alert_id
    assert "arriving NOW at Elm St" in first.alerts[0].message

    vehicle_events = [e for e in bus.events if isinstance(e, VehicleEvent)]
    assert len(vehicle_events) == 2
    assert vehicle_events[-1].status == STATUS_AT_STOP
    assert "Next stop: Elm St (1 minute)" in vehicle_events[-1].popup_content


def test_far_vehicle_is_in_transit_without_alert():
    service, bus, _ = _service(StaticProvider(distance_km=12.0, duration_minutes=25.0))
    service.set_next_stop("bus-12", STOP)
    outcome = asyncio.run(service.ingest(_report(lat=38.10, lng=-78.60)))
    assert outcome.eta.ok and outcome.alerts == []
    assert bus.events[-1].status == STATUS_IN_TRANSIT


def test_out_of_order_sample_is_skipped():
    service, bus, _ = _service()

    async def run():
        await service.ingest(_report())
        earlier = _report(lat=38.0310, captured_at=(NOW - timedelta(seconds=30)).isoformat())
        return await service.ingest(earlier)

    outcome = asyncio.run(run())
    assert outcome.skipped == "out_of_order"
    assert len(bus.events) == 1
    assert service.tracks["bus-12"].last_sample.latitude == 38.0300


def test_untracked_route_is_skipped():
    service, bus, _ = _service(config=EngineConfig(tracked_route_ids={"R1"}))
    outcome = asyncio.run(service.ingest(_report(route_id="R9")))
    assert outcome.skipped == "untracked_route"
    assert outcome.to_dict()["skipped"] == "untracked_route"
    assert bus.events == []


def test_speeding_alert_raised_once_while_over_limit():
    service, _, _ = _service(config=EngineConfig(speed_limit_kmh=50))

    async def run():
        first = await service.ingest(_report(speed=20))
        second = await service.ingest(_report(speed=21))
        slow = await service.ingest(_report(speed=5))
        again = await service.ingest(_report(speed=20))
        return first, second, slow, again

    first, second, slow, again = asyncio.run(run())
    assert [a.alert_type for a in first.alerts] == ["speeding"]
    assert second.alerts == [] and slow.alerts == []
    assert len(again.alerts) == 1
    assert len(service.dispatcher.list_alerts(alert_type="speeding")) == 2


def test_end_tracking_publishes_remove_and_forgets_vehicle():
    service, bus, _ = _service()
    service.set_next_stop("bus-12", STOP)

    async def run():
        await service.ingest(_report())
        ended = await service.end_tracking("bus-12")
        again = await service.end_tracking("bus-12")
        return ended, again

    ended, again = asyncio.run(run())
    assert ended and not again
    assert bus.events[-1] == RemoveEvent("bus-12")
    assert service.estimator.live_result("bus-12") is None
    assert bus.snapshot() == ([], [])
    with pytest.raises(KeyError):
        service.vehicle_status("bus-12")


def test_stale_sweep_marks_tracking_unavailable_once(capsys):
    service, bus, clock = _service()
    asyncio.run(service.ingest(_report()))
    assert service.sweep_stale() == []

    clock.advance(seconds=121)
    assert service.sweep_stale() == ["bus-12"]
    assert service.sweep_stale() == []
    assert bus.events[-1].status == STATUS_TRACKING_UNAVAILABLE
    assert "Tracking unavailable" in bus.events[-1].popup_content
    status = service.vehicle_status("bus-12")
    assert status["tracking_unavailable"] is True
    assert status["status"] == STATUS_TRACKING_UNAVAILABLE
    assert "tracking unavailable: bus-12" in capsys.readouterr().out


def test_changing_next_stop_allows_new_alert_for_old_stop():
    service, _, _ = _service()
    other = Stop("stop-oak", 38.0400, -78.4800, "Oak Ave")

    async def run():
        service.set_next_stop("bus-12", STOP)
        await service.ingest(_report())
        service.set_next_stop("bus-12", other)
        service.set_next_stop("bus-12", STOP)
        await service.ingest(_report())

    asyncio.run(run())
    assert len(service.dispatcher.list_alerts(alert_type="proximity")) == 2


def test_route_etas_and_publish_route():
    service, bus, _ = _service(StaticProvider(distance_km=1.0, duration_minutes=3.0))
    stops = [STOP, Stop("stop-oak", 38.0400, -78.4800, "Oak Ave")]

    with pytest.raises(KeyError):
        asyncio.run(service.route_etas("bus-12", stops))

    asyncio.run(service.ingest(_report()))
    etas = asyncio.run(service.route_etas("bus-12", stops))
    assert [e.cumulative_minutes for e in etas] == [3.0, 6.0]

    service.publish_route("R1", [(38.0293, -78.4767), ("38.04", "-78.48")])
    assert bus.events[-1] == RouteEvent("R1", ((38.0293, -78.4767), (38.04, -78.48)))


def test_accepted_samples_are_logged(tmp_path):
    storage = PositionStorage(tmp_path)
    service, _, _ = _service(storage=storage)
    asyncio.run(service.ingest(_report()))
    logged = storage.query_samples(NOW - timedelta(minutes=1), NOW + timedelta(minutes=1))
    assert [s.vehicle_id for s in logged] == ["bus-12"]


def test_load_engine_config(tmp_path, capsys):
    path = tmp_path / "engine.json"
    assert load_engine_config(path) == EngineConfig()

    path.write_text('{"tracked_route_ids": ["R1", " R2 "], "eta_provider": "OSRM", "speed_limit_kmh": 55}')
    config = load_engine_config(path)
    assert config.tracked_route_ids == {"R1", "R2"}
    assert config.eta_provider == "osrm"
    assert config.speed_limit_kmh == 55.0
    assert config.tracks_route("R2") and not config.tracks_route("R3")
    assert config.tracks_route(None)

    path.write_text("{broken")
    assert load_engine_config(path) == EngineConfig()
    assert "[tracking] failed to load config" in capsys.readouterr().out


def test_slow_estimate_for_older_sample_cannot_move_marker_backward():
    provider = GatedProvider(distance_km=4.0, duration_minutes=9.0)
    service, bus, _ = _service(provider)
    service.set_next_stop("bus-12", STOP)
    older = _report(lat=38.0200, lng=-78.4700, captured_at=(NOW - timedelta(seconds=10)).isoformat())
    newer = _report(lat=38.0250, lng=-78.4720)

    async def run():
        first = asyncio.create_task(service.ingest(older))
        await provider.started.wait()
        second = asyncio.create_task(service.ingest(newer))
        await asyncio.sleep(0)
        provider.gate.set()
        return await asyncio.gather(first, second)

    first, second = asyncio.run(run())
    assert first.skipped is None and second.skipped is None
    published = [e for e in bus.events if isinstance(e, VehicleEvent)]
    assert [e.lat for e in published] == [38.0200, 38.0250]
    vehicles, _ = bus.snapshot()
    assert (vehicles[0].lat, vehicles[0].lng) == (38.0250, -78.4720)
    latest = service.tracks["bus-12"].last_sample
    assert latest.latitude == 38.0250
    assert service.estimator.live_result("bus-12").origin_sample_id == latest.sample_id


def test_end_tracking_during_in_flight_ingest_keeps_vehicle_removed():
    provider = GatedProvider()
    service, bus, _ = _service(provider)
    service.set_next_stop("bus-12", STOP)

    async def run():
        pending = asyncio.create_task(service.ingest(_report()))
        await provider.started.wait()
        ended = await service.end_tracking("bus-12")
        provider.gate.set()
        return ended, await pending

    ended, outcome = asyncio.run(run())
    assert ended
    assert outcome.skipped == "tracking_ended"
    assert outcome.alerts == []
    assert bus.events == [RemoveEvent("bus-12")]
    assert bus.snapshot() == ([], [])
    assert service.estimator.live_result("bus-12") is None
    assert "bus-12" not in service.tracks
    assert service.dispatcher.alerts == {}


def test_vehicle_status_reports_last_published_status():
    service, bus, clock = _service()
    service.set_next_stop("bus-12", STOP)
    asyncio.run(service.ingest(_report()))
    assert bus.events[-1].status == STATUS_AT_STOP
    assert service.vehicle_status("bus-12")["status"] == STATUS_AT_STOP

    asyncio.run(service.ingest(_report(lat=38.10, lng=-78.60)))
    assert service.vehicle_status("bus-12")["status"] == STATUS_IN_TRANSIT

    clock.advance(seconds=121)
    assert service.vehicle_status("bus-12")["status"] == STATUS_TRACKING_UNAVAILABLE
