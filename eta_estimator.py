from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from position_ingest import PositionSample, isoformat_z
from route_providers import RouteProvider, RouteProviderError, haversine_km


ETA_TIMEOUT_S = float(os.getenv("ETA_TIMEOUT_S", "10"))
ETA_MAX_RETRIES = int(os.getenv("ETA_MAX_RETRIES", "2"))
ETA_BACKOFF_S = float(os.getenv("ETA_BACKOFF_S", "0.5"))
ETA_BACKOFF_CAP_S = float(os.getenv("ETA_BACKOFF_CAP_S", "4"))
ETA_STALE_S = float(os.getenv("ETA_STALE_S", "300"))

# Proximity thresholds
IMMEDIATE_KM = 0.2
VERY_CLOSE_KM = 0.5
CLOSE_MINUTES = 2.0
APPROACHING_MINUTES = 10.0

NEAR_STOP_THRESHOLD_KM = 0.5


class ProximityLevel(str, Enum):
    APPROACHING = "approaching"
    CLOSE = "close"
    VERY_CLOSE = "very_close"
    IMMEDIATE = "immediate"


class EstimationError(str, Enum):
    PROVIDER_UNAVAILABLE = "provider_unavailable"


def classify_proximity(distance_km: float, eta_minutes: float) -> Optional[ProximityLevel]:
    """Bucket a (distance, eta) pair. ``None`` means no alert is warranted."""
    if distance_km <= IMMEDIATE_KM:
        return ProximityLevel.IMMEDIATE
    if distance_km <= VERY_CLOSE_KM:
        return ProximityLevel.VERY_CLOSE
    if eta_minutes <= CLOSE_MINUTES:
        return ProximityLevel.CLOSE
    if eta_minutes <= APPROACHING_MINUTES:
        return ProximityLevel.APPROACHING
    return None


def format_eta(minutes: float) -> str:
    if minutes < 1:
        return "Arriving now"
    if round(minutes) == 1:
        return "1 minute"
    if minutes < 60:
        return f"{round(minutes)} minutes"
    hours = int(minutes // 60)
    mins = round(minutes % 60)
    return f"{hours}h {mins}m"


@dataclass(frozen=True)
class Stop:
    stop_id: str
    lat: float
    lng: float
    name: Optional[str] = None


@dataclass
class ETAResult:
    vehicle_id: str
    origin_sample_id: str
    destination_key: str
    distance_km: float
    duration_minutes: float
    computed_at: datetime
    provider_name: str

    @property
    def proximity(self) -> Optional[ProximityLevel]:
        return classify_proximity(self.distance_km, self.duration_minutes)

    @property
    def estimated_arrival_at(self) -> datetime:
        return self.computed_at + timedelta(minutes=self.duration_minutes)

    def to_dict(self) -> Dict[str, Any]:
        level = self.proximity
        return {
            "vehicle_id": self.vehicle_id,
            "origin_sample_id": self.origin_sample_id,
            "destination_key": self.destination_key,
            "distance_km": self.distance_km,
            "duration_minutes": self.duration_minutes,
            "eta_text": format_eta(self.duration_minutes),
            "estimated_arrival_at": isoformat_z(self.estimated_arrival_at),
            "computed_at": isoformat_z(self.computed_at),
            "provider_name": self.provider_name,
            "proximity": level.value if level else None,
        }


@dataclass
class EstimateOutcome:
    result: Optional[ETAResult] = None
    error: Optional[EstimationError] = None
    detail: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.result is not None


@dataclass
class StopETA:
    stop: Stop
    sequence: int
    distance_km: float
    duration_minutes: float
    cumulative_minutes: float
    estimated_arrival_at: datetime
    provider_name: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stop_id": self.stop.stop_id,
            "stop_name": self.stop.name,
            "sequence": self.sequence,
            "distance_km": self.distance_km,
            "duration_minutes": self.duration_minutes,
            "eta_minutes": self.cumulative_minutes,
            "estimated_arrival_at": isoformat_z(self.estimated_arrival_at),
            "provider_name": self.provider_name,
        }


def is_near_stop(position: PositionSample, stop: Stop, threshold_km: float = NEAR_STOP_THRESHOLD_KM) -> bool:
    return haversine_km(position.latitude, position.longitude, stop.lat, stop.lng) <= threshold_km


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ETAEstimator:
    """
    Computes distance/duration to a vehicle's next stop through an injected
    route provider and keeps exactly one live result per vehicle.

    A failed computation leaves the previous result in place but marks it
    stale, so displays can show "ETA may be out of date" instead of an error.
    History is not retained here.
    """

    def __init__(
        self,
        provider: RouteProvider,
        *,
        timeout_s: float = ETA_TIMEOUT_S,
        max_retries: int = ETA_MAX_RETRIES,
        backoff_s: float = ETA_BACKOFF_S,
        backoff_cap_s: float = ETA_BACKOFF_CAP_S,
        stale_after_s: float = ETA_STALE_S,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.provider = provider
        self.timeout_s = timeout_s
        self.max_retries = max(0, max_retries)
        self.backoff_s = backoff_s
        self.backoff_cap_s = backoff_cap_s
        self.stale_after_s = stale_after_s
        self._clock = clock
        self._sleep = sleep
        self._live: Dict[str, ETAResult] = {}
        self._failed_at: Dict[str, datetime] = {}

    async def estimate(
        self,
        vehicle_id: str,
        position: PositionSample,
        destination: Stop,
        provider: Optional[RouteProvider] = None,
    ) -> EstimateOutcome:
        """One attempt, bounded by ``timeout_s``. Timeouts count as unavailable."""
        route_provider = provider or self.provider
        try:
            estimate = await asyncio.wait_for(
                route_provider.compute_route(
                    (position.latitude, position.longitude),
                    (destination.lat, destination.lng),
                ),
                timeout=self.timeout_s,
            )
        except asyncio.TimeoutError:
            return self._unavailable(vehicle_id, f"{route_provider.name} timed out after {self.timeout_s:.1f}s")
        except RouteProviderError as exc:
            return self._unavailable(vehicle_id, str(exc))

        result = ETAResult(
            vehicle_id=vehicle_id,
            origin_sample_id=position.sample_id,
            destination_key=destination.stop_id,
            distance_km=float(estimate.distance_km),
            duration_minutes=float(estimate.duration_minutes),
            computed_at=self._clock(),
            provider_name=estimate.provider_name,
        )
        self._live[vehicle_id] = result
        self._failed_at.pop(vehicle_id, None)
        return EstimateOutcome(result=result)

    async def estimate_with_retry(
        self,
        vehicle_id: str,
        position: PositionSample,
        destination: Stop,
        provider: Optional[RouteProvider] = None,
    ) -> EstimateOutcome:
        """Retry ``ProviderUnavailable`` with capped exponential backoff."""
        outcome = await self.estimate(vehicle_id, position, destination, provider)
        attempt = 0
        while not outcome.ok and attempt < self.max_retries:
            delay = min(self.backoff_cap_s, self.backoff_s * (2 ** attempt))
            attempt += 1
            print(
                f"[eta] retry {attempt}/{self.max_retries} for vehicle={vehicle_id} "
                f"in {delay:.2f}s ({outcome.detail})"
            )
            await self._sleep(delay)
            outcome = await self.estimate(vehicle_id, position, destination, provider)
        return outcome

    async def estimate_route(
        self,
        vehicle_id: str,
        position: PositionSample,
        stops: Sequence[Stop],
        provider: Optional[RouteProvider] = None,
    ) -> List[StopETA]:
        """Cumulative ETAs over an ordered stop list; each leg starts at the previous stop.

        Does not touch the vehicle's live result. Raises ``RouteProviderError``
        if any leg cannot be computed.
        """
        route_provider = provider or self.provider
        now = self._clock()
        origin = (position.latitude, position.longitude)
        cumulative = 0.0
        etas: List[StopETA] = []
        for index, stop in enumerate(stops):
            try:
                leg = await asyncio.wait_for(
                    route_provider.compute_route(origin, (stop.lat, stop.lng)),
                    timeout=self.timeout_s,
                )
            except asyncio.TimeoutError as exc:
                raise RouteProviderError(f"{route_provider.name} timed out on stop {stop.stop_id}") from exc
            cumulative += float(leg.duration_minutes)
            etas.append(
                StopETA(
                    stop=stop,
                    sequence=index + 1,
                    distance_km=float(leg.distance_km),
                    duration_minutes=float(leg.duration_minutes),
                    cumulative_minutes=round(cumulative, 1),
                    estimated_arrival_at=now + timedelta(minutes=cumulative),
                    provider_name=leg.provider_name,
                )
            )
            origin = (stop.lat, stop.lng)
        return etas

    def live_result(self, vehicle_id: str) -> Optional[ETAResult]:
        return self._live.get(vehicle_id)

    def is_stale(self, vehicle_id: str, now: Optional[datetime] = None) -> bool:
        result = self._live.get(vehicle_id)
        if result is None:
            return True
        if vehicle_id in self._failed_at:
            return True
        now = now or self._clock()
        return (now - result.computed_at).total_seconds() > self.stale_after_s

    def forget(self, vehicle_id: str) -> None:
        self._live.pop(vehicle_id, None)
        self._failed_at.pop(vehicle_id, None)

    def _unavailable(self, vehicle_id: str, detail: str) -> EstimateOutcome:
        print(f"[eta] provider unavailable for vehicle={vehicle_id}: {detail}")
        self._failed_at[vehicle_id] = self._clock()
        return EstimateOutcome(error=EstimationError.PROVIDER_UNAVAILABLE, detail=detail)


__all__ = [
    "ETAEstimator",
    "ETAResult",
    "EstimateOutcome",
    "EstimationError",
    "ProximityLevel",
    "Stop",
    "StopETA",
    "classify_proximity",
    "format_eta",
    "is_near_stop",
]
