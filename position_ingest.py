"""Validation and normalization of raw GPS reports.

``accept`` is pure: it never persists or forwards anything. Callers decide what
to do with an accepted sample (log it, estimate an ETA, publish a map event).
"""
from __future__ import annotations

import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional


MPH_TO_MPS = 0.44704
KMH_TO_MPS = 1000.0 / 3600.0
KNOT_TO_MPS = 1852.0 / 3600.0

SPEED_UNIT_FACTORS = {
    "mps": 1.0,
    "m/s": 1.0,
    "kmh": KMH_TO_MPS,
    "kph": KMH_TO_MPS,
    "km/h": KMH_TO_MPS,
    "mph": MPH_TO_MPS,
    "knots": KNOT_TO_MPS,
    "kn": KNOT_TO_MPS,
}


class RejectReason(str, Enum):
    INVALID_COORDINATES = "invalid_coordinates"
    MISSING_VEHICLE_ID = "missing_vehicle_id"


def _to_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_iso8601_utc(value: str) -> datetime:
    text = value.strip()
    if text.lower().endswith("z"):
        text = text[:-1] + "+00:00"
    return _to_utc(datetime.fromisoformat(text))


def isoformat_z(dt: datetime) -> str:
    return _to_utc(dt).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class PositionSample:
    """An accepted, normalized position report. Immutable once accepted."""
    vehicle_id: str
    latitude: float
    longitude: float
    captured_at: datetime
    trip_id: Optional[str] = None
    speed_mps: Optional[float] = None
    heading_deg: Optional[float] = None
    altitude_m: Optional[float] = None
    accuracy_m: Optional[float] = None
    sample_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sample_id": self.sample_id,
            "vehicle_id": self.vehicle_id,
            "trip_id": self.trip_id,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "speed_mps": self.speed_mps,
            "heading_deg": self.heading_deg,
            "altitude_m": self.altitude_m,
            "accuracy_m": self.accuracy_m,
            "captured_at": isoformat_z(self.captured_at),
        }


@dataclass(frozen=True)
class IngestResult:
    sample: Optional[PositionSample] = None
    reason: Optional[RejectReason] = None

    @property
    def ok(self) -> bool:
        return self.sample is not None


def _parse_float(value: Optional[object]) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(parsed) or math.isinf(parsed):
        return None
    return parsed


def _first(raw: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = raw.get(key)
        if value is not None:
            return value
    return None


def valid_coordinates(lat: Optional[float], lng: Optional[float]) -> bool:
    if lat is None or lng is None:
        return False
    return -90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0


def normalize_speed(value: Optional[object], unit: Optional[str] = None) -> Optional[float]:
    """Convert a speed reading to meters per second.

    Negative readings are how most trackers say "unknown", so they map to None.
    Unrecognised units are treated as m/s.
    """
    speed = _parse_float(value)
    if speed is None or speed < 0:
        return None
    factor = SPEED_UNIT_FACTORS.get((unit or "mps").strip().lower(), 1.0)
    return speed * factor


def normalize_heading(value: Optional[object]) -> Optional[float]:
    heading = _parse_float(value)
    if heading is None:
        return None
    return heading % 360.0


def _parse_captured_at(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return _to_utc(value)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        # Epoch milliseconds are what the device gateways send.
        seconds = value / 1000.0 if value > 1e11 else float(value)
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    if isinstance(value, str) and value.strip():
        try:
            return parse_iso8601_utc(value)
        except ValueError:
            return None
    return None


def accept(raw: Mapping[str, Any], *, received_at: Optional[datetime] = None) -> IngestResult:
    """Validate one raw telemetry report.

    Coordinates outside [-90, 90] x [-180, 180], or missing, are rejected with
    ``RejectReason.INVALID_COORDINATES``. A report that is not a mapping at all
    is a malformed input shape and raises ``TypeError``.
    """
    if not isinstance(raw, Mapping):
        raise TypeError(f"position report must be a mapping, got {type(raw).__name__}")

    vehicle_id = _first(raw, "vehicle_id", "vehicleId", "VehicleID")
    if vehicle_id is None or not str(vehicle_id).strip():
        return IngestResult(reason=RejectReason.MISSING_VEHICLE_ID)

    lat = _parse_float(_first(raw, "latitude", "lat", "Latitude"))
    lng = _parse_float(_first(raw, "longitude", "lng", "lon", "Longitude"))
    if not valid_coordinates(lat, lng):
        return IngestResult(reason=RejectReason.INVALID_COORDINATES)

    captured_at = _parse_captured_at(_first(raw, "captured_at", "capturedAt", "timestamp"))
    if captured_at is None:
        captured_at = _to_utc(received_at) if received_at else datetime.now(timezone.utc)

    trip_id = _first(raw, "trip_id", "tripId")
    sample = PositionSample(
        vehicle_id=str(vehicle_id).strip(),
        trip_id=str(trip_id) if trip_id is not None else None,
        latitude=lat,
        longitude=lng,
        speed_mps=normalize_speed(raw.get("speed"), _first(raw, "speed_unit", "speedUnit")),
        heading_deg=normalize_heading(_first(raw, "heading", "heading_deg")),
        altitude_m=_parse_float(_first(raw, "altitude", "altitude_m")),
        accuracy_m=_parse_float(_first(raw, "accuracy", "accuracy_m")),
        captured_at=captured_at,
    )
    return IngestResult(sample=sample)


__all__ = [
    "IngestResult",
    "PositionSample",
    "RejectReason",
    "accept",
    "isoformat_z",
    "normalize_heading",
    "normalize_speed",
    "parse_iso8601_utc",
    "valid_coordinates",
]
