"""Wires the per-vehicle data flow together.

    raw report -> accept -> position log -> ETA to next stop
               -> proximity / speeding alerts -> live map event
"""
from __future__ import annotations

import asyncio
import json
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Set

from alerts import AlertDispatcher, AlertRecord, ProximityTrigger, SafetyTrigger
from eta_estimator import ETAEstimator, EstimateOutcome, ETAResult, Stop, StopETA, format_eta, is_near_stop
from live_map import (
    STATUS_IN_TRANSIT,
    STATUS_TRACKING_UNAVAILABLE,
    LatLng,
    RemoveEvent,
    RouteEvent,
    TrackingEventBus,
    VehicleEvent,
)
from position_ingest import IngestResult, PositionSample, accept, isoformat_z
from position_storage import PositionStorage


STALE_POSITION_S = float(os.getenv("STALE_POSITION_S", "120"))
STALE_SWEEP_INTERVAL_S = float(os.getenv("STALE_SWEEP_INTERVAL_S", "15"))
DEFAULT_ENGINE_CONFIG_PATH = Path(os.getenv("ENGINE_CONFIG_PATH", "config/engine.json"))

STATUS_AT_STOP = "at_stop"
MPS_TO_KMH = 3.6


@dataclass
class EngineConfig:
    tracked_route_ids: Set[str] = field(default_factory=set)
    eta_provider: Optional[str] = None
    speed_limit_kmh: Optional[float] = None

    def tracks_route(self, route_id: Optional[str]) -> bool:
        # An empty set tracks everything, as does a vehicle with no route yet
        if not self.tracked_route_ids or route_id is None:
            return True
        return route_id in self.tracked_route_ids


def load_engine_config(path: Path = DEFAULT_ENGINE_CONFIG_PATH) -> EngineConfig:
    """Load engine overrides from JSON; a missing or malformed file yields defaults."""
    config = EngineConfig()
    if not path.exists():
        return config
    try:
        raw = json.loads(path.read_text())
        if not isinstance(raw, dict):
            raise ValueError("top-level value must be an object")
        route_ids_raw = raw.get("tracked_route_ids")
        if isinstance(route_ids_raw, list):
            for item in route_ids_raw:
                if item is None:
                    continue
                config.tracked_route_ids.add(str(item).strip())
        provider = raw.get("eta_provider")
        if provider:
            config.eta_provider = str(provider).strip().lower()
        limit = raw.get("speed_limit_kmh")
        if limit is not None:
            config.speed_limit_kmh = float(limit)
    except Exception as exc:
        print(f"[tracking] failed to load config {path}: {exc}")
        return EngineConfig()
    return config


@dataclass
class VehicleTrack:
    vehicle_id: str
    last_sample: Optional[PositionSample] = None
    next_stop: Optional[Stop] = None
    route_id: Optional[str] = None
    vehicle_label: Optional[str] = None
    recipients: List[str] = field(default_factory=list)
    unavailable: bool = False
    speeding: bool = False
    last_status: Optional[str] = None

    @property
    def label(self) -> str:
        return self.vehicle_label or f"Bus {self.vehicle_id}"


@dataclass
class IngestOutcome:
    ingest: IngestResult
    eta: Optional[EstimateOutcome] = None
    alerts: List[AlertRecord] = field(default_factory=list)
    skipped: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"accepted": self.ingest.ok}
        if self.ingest.reason is not None:
            payload["reason"] = self.ingest.reason.value
        if self.ingest.sample is not None:
            payload["sample"] = self.ingest.sample.to_dict()
        if self.skipped:
            payload["skipped"] = self.skipped
        if self.eta is not None:
            payload["eta"] = self.eta.result.to_dict() if self.eta.ok else None
            if not self.eta.ok:
                payload["eta_error"] = self.eta.error.value if self.eta.error else None
        payload["alerts"] = [a.alert_id for a in self.alerts]
        return payload


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def build_popup(track: VehicleTrack, eta: Optional[ETAResult]) -> str:
    sample = track.last_sample
    lines = [track.label]
    if track.route_id:
        lines.append(f"Route: {track.route_id}")
    if sample is not None and sample.speed_mps is not None:
        lines.append(f"Speed: {sample.speed_mps * MPS_TO_KMH:.0f} km/h")
    if track.next_stop is not None:
        stop_name = track.next_stop.name or track.next_stop.stop_id
        if eta is not None and eta.destination_key == track.next_stop.stop_id:
            lines.append(f"Next stop: {stop_name} ({format_eta(eta.duration_minutes)})")
        else:
            lines.append(f"Next stop: {stop_name}")
    if track.unavailable:
        lines.append("Tracking unavailable")
    return "\n".join(lines)


class TrackingService:
    def __init__(
        self,
        estimator: ETAEstimator,
        dispatcher: AlertDispatcher,
        bus: TrackingEventBus,
        storage: Optional[PositionStorage] = None,
        *,
        config: Optional[EngineConfig] = None,
        stale_after_s: float = STALE_POSITION_S,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.estimator = estimator
        self.dispatcher = dispatcher
        self.bus = bus
        self.storage = storage
        self.config = config or EngineConfig()
        self.stale_after_s = stale_after_s
        self._clock = clock
        self.tracks: Dict[str, VehicleTrack] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def _track(self, vehicle_id: str) -> VehicleTrack:
        track = self.tracks.get(vehicle_id)
        if track is None:
            track = VehicleTrack(vehicle_id=vehicle_id)
            self.tracks[vehicle_id] = track
        return track

    def _lock_for(self, vehicle_id: str) -> asyncio.Lock:
        lock = self._locks.get(vehicle_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[vehicle_id] = lock
        return lock

    def _is_current(self, track: VehicleTrack, sample: PositionSample) -> bool:
        return self.tracks.get(track.vehicle_id) is track and track.last_sample is sample

    # Ingest ---------------------------------------------------------
    async def ingest(self, raw: Dict[str, Any]) -> IngestOutcome:
        result = accept(raw, received_at=self._clock())
        if not result.ok:
            vehicle = raw.get("vehicle_id") or raw.get("vehicleId") or "?"
            print(f"[ingest] rejected sample vehicle={vehicle}: {result.reason.value}")
            return IngestOutcome(ingest=result)

        # One sample at a time per vehicle, so the marker only moves forward
        async with self._lock_for(result.sample.vehicle_id):
            return await self._ingest_locked(raw, result)

    async def _ingest_locked(self, raw: Dict[str, Any], result: IngestResult) -> IngestOutcome:
        sample = result.sample
        route_id = raw.get("route_id") or raw.get("routeId")
        existing = self.tracks.get(sample.vehicle_id)
        effective_route = (existing.route_id if existing else None) or (str(route_id) if route_id else None)
        if not self.config.tracks_route(effective_route):
            return IngestOutcome(ingest=result, skipped="untracked_route")

        track = self._track(sample.vehicle_id)
        if route_id and not track.route_id:
            track.route_id = str(route_id)
        previous = track.last_sample
        if previous is not None and sample.captured_at < previous.captured_at:
            print(
                f"[ingest] out-of-order sample vehicle={sample.vehicle_id} "
                f"{isoformat_z(sample.captured_at)} < {isoformat_z(previous.captured_at)}; ignored"
            )
            return IngestOutcome(ingest=result, skipped="out_of_order")
        track.last_sample = sample
        track.unavailable = False

        if self.storage is not None:
            try:
                self.storage.write_samples([sample])
            except OSError as exc:
                print(f"[tracking] failed to persist sample for {sample.vehicle_id}: {exc}")

        outcome = IngestOutcome(ingest=result)
        speeding = await self._check_speed(track, sample)
        if speeding is not None:
            outcome.alerts.append(speeding)

        eta_result: Optional[ETAResult] = None
        if track.next_stop is not None:
            next_stop = track.next_stop
            outcome.eta = await self.estimator.estimate_with_retry(sample.vehicle_id, sample, next_stop)
            if not self._is_current(track, sample):
                return self._superseded(track, outcome)
            if outcome.eta.ok:
                eta_result = outcome.eta.result
                trigger = ProximityTrigger.from_eta(
                    eta_result,
                    route_id=track.route_id,
                    stop_name=next_stop.name,
                    vehicle_label=track.vehicle_label,
                    recipients=list(track.recipients),
                )
                alert = await self.dispatcher.dispatch(trigger)
                if alert is not None:
                    outcome.alerts.append(alert)
            else:
                eta_result = self.estimator.live_result(sample.vehicle_id)

        if not self._is_current(track, sample):
            return self._superseded(track, outcome)
        status = STATUS_IN_TRANSIT
        if track.next_stop is not None and is_near_stop(sample, track.next_stop):
            status = STATUS_AT_STOP
        track.last_status = status
        self.bus.publish(VehicleEvent.from_sample(sample, status=status, popup_content=build_popup(track, eta_result)))
        return outcome

    def _superseded(self, track: VehicleTrack, outcome: IngestOutcome) -> IngestOutcome:
        if self.tracks.get(track.vehicle_id) is not track:
            # Tracking ended while the estimate was in flight
            self.estimator.forget(track.vehicle_id)
            outcome.skipped = "tracking_ended"
        else:
            outcome.skipped = "superseded"
        return outcome

    async def _check_speed(self, track: VehicleTrack, sample: PositionSample) -> Optional[AlertRecord]:
        limit = self.config.speed_limit_kmh
        if not limit or sample.speed_mps is None:
            return None
        speed_kmh = sample.speed_mps * MPS_TO_KMH
        if speed_kmh <= limit:
            track.speeding = False
            return None
        if track.speeding:
            return None
        track.speeding = True
        return await self.dispatcher.dispatch(
            SafetyTrigger.speeding(track.vehicle_id, speed_kmh, limit, route_id=track.route_id)
        )

    # Vehicle lifecycle ----------------------------------------------
    def set_next_stop(
        self,
        vehicle_id: str,
        stop: Stop,
        *,
        route_id: Optional[str] = None,
        vehicle_label: Optional[str] = None,
        recipients: Iterable[str] = (),
    ) -> VehicleTrack:
        track = self._track(vehicle_id)
        if track.next_stop is not None and track.next_stop.stop_id != stop.stop_id:
            # Old stop is behind us; a later approach to it alerts again
            self.dispatcher.clear_proximity(vehicle_id, track.next_stop.stop_id)
        track.next_stop = stop
        if route_id:
            track.route_id = route_id
        if vehicle_label:
            track.vehicle_label = vehicle_label
        track.recipients = [r for r in recipients if r]
        return track

    async def end_tracking(self, vehicle_id: str) -> bool:
        # Not serialized with ingest; an in-flight sample sees the track gone and drops its result
        track = self.tracks.pop(vehicle_id, None)
        if track is None:
            return False
        self.estimator.forget(vehicle_id)
        self.dispatcher.clear_vehicle(vehicle_id)
        self.bus.publish(RemoveEvent(vehicle_id))
        print(f"[tracking] ended tracking for {vehicle_id}")
        return True

    def publish_route(self, route_id: str, stop_coordinates: Sequence[LatLng]) -> None:
        coords = tuple((float(lat), float(lng)) for lat, lng in stop_coordinates)
        self.bus.publish(RouteEvent(route_id=route_id, stop_coordinates=coords))

    async def route_etas(self, vehicle_id: str, stops: Sequence[Stop]) -> List[StopETA]:
        track = self.tracks.get(vehicle_id)
        if track is None or track.last_sample is None:
            raise KeyError(vehicle_id)
        return await self.estimator.estimate_route(vehicle_id, track.last_sample, stops)

    # Status ---------------------------------------------------------
    def is_position_stale(self, track: VehicleTrack, now: Optional[datetime] = None) -> bool:
        if track.last_sample is None:
            return True
        now = now or self._clock()
        return (now - track.last_sample.captured_at).total_seconds() > self.stale_after_s

    def vehicle_status(self, vehicle_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        track = self.tracks.get(vehicle_id)
        if track is None:
            raise KeyError(vehicle_id)
        now = now or self._clock()
        stale = self.is_position_stale(track, now)
        eta = self.estimator.live_result(vehicle_id)
        level = eta.proximity if eta else None
        return {
            "vehicle_id": vehicle_id,
            "label": track.label,
            "route_id": track.route_id,
            "status": STATUS_TRACKING_UNAVAILABLE if stale else (track.last_status or STATUS_IN_TRANSIT),
            "tracking_unavailable": stale,
            "position": track.last_sample.to_dict() if track.last_sample else None,
            "next_stop": {
                "stop_id": track.next_stop.stop_id,
                "name": track.next_stop.name,
                "lat": track.next_stop.lat,
                "lng": track.next_stop.lng,
            } if track.next_stop else None,
            "eta": eta.to_dict() if eta else None,
            "eta_stale": self.estimator.is_stale(vehicle_id, now),
            "proximity": level.value if level else None,
        }

    def vehicles(self, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        now = now or self._clock()
        return [self.vehicle_status(vid, now) for vid in sorted(self.tracks)]

    def sweep_stale(self, now: Optional[datetime] = None) -> List[str]:
        """Flag vehicles whose last fix is too old; their markers stay but show unavailable."""
        now = now or self._clock()
        flagged: List[str] = []
        for track in self.tracks.values():
            if track.unavailable or track.last_sample is None:
                continue
            if not self.is_position_stale(track, now):
                continue
            track.unavailable = True
            track.last_status = STATUS_TRACKING_UNAVAILABLE
            flagged.append(track.vehicle_id)
            sample = track.last_sample
            self.bus.publish(
                VehicleEvent.from_sample(
                    sample,
                    status=STATUS_TRACKING_UNAVAILABLE,
                    popup_content=build_popup(track, self.estimator.live_result(track.vehicle_id)),
                )
            )
        if flagged:
            print(f"[tracking] tracking unavailable: {', '.join(flagged)}")
        return flagged

    async def run_stale_sweeper(self, interval_s: float = STALE_SWEEP_INTERVAL_S) -> None:
        while True:
            try:
                self.sweep_stale()
            except Exception as exc:
                print(f"[tracking] stale sweep error: {exc}")
            await asyncio.sleep(interval_s)


__all__ = [
    "EngineConfig",
    "IngestOutcome",
    "TrackingService",
    "VehicleTrack",
    "build_popup",
    "load_engine_config",
]
