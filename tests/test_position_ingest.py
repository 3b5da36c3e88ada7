import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from position_ingest import (  # noqa: E402
    RejectReason,
    accept,
    normalize_heading,
    normalize_speed,
    parse_iso8601_utc,
)


def test_latitude_out_of_range_is_rejected():
    result = accept({"vehicle_id": "bus-7", "lat": 91, "lng": 0})
    assert not result.ok
    assert result.sample is None
    assert result.reason == RejectReason.INVALID_COORDINATES


@pytest.mark.parametrize(
    "lat,lng",
    [(-90, -180), (90, 180), (0, 0), (38.0293, -78.4767), (-33.8688, 151.2093), (89.9999, -179.9999)],
)
def test_in_range_coordinates_are_accepted(lat, lng):
    result = accept({"vehicle_id": "bus-7", "latitude": lat, "longitude": lng})
    assert result.ok
    assert result.sample.latitude == lat
    assert result.sample.longitude == lng


@pytest.mark.parametrize(
    "lat,lng",
    [(90.0001, 0), (-90.5, 10), (0, 180.01), (0, -181), (None, 10), ("abc", 10), (float("nan"), 0)],
)
def test_out_of_range_or_unparseable_coordinates_are_rejected(lat, lng):
    result = accept({"vehicle_id": "bus-7", "lat": lat, "lng": lng})
    assert result.reason == RejectReason.INVALID_COORDINATES


def test_missing_vehicle_id_is_rejected():
    result = accept({"lat": 38.0, "lng": -78.0})
    assert result.reason == RejectReason.MISSING_VEHICLE_ID


def test_non_mapping_report_is_a_hard_failure():
    with pytest.raises(TypeError):
        accept([38.0, -78.0])


def test_captured_at_accepts_iso_and_epoch_millis():
    iso = accept({"vehicle_id": "b", "lat": 1, "lng": 1, "captured_at": "2024-05-01T12:00:00Z"})
    millis = accept({"vehicle_id": "b", "lat": 1, "lng": 1, "timestamp": 1714564800000})
    expected = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    assert iso.sample.captured_at == expected
    assert millis.sample.captured_at == expected


def test_missing_timestamp_falls_back_to_receive_time():
    received = datetime(2024, 5, 1, 7, 30, tzinfo=timezone.utc)
    result = accept({"vehicle_id": "b", "lat": 1, "lng": 1}, received_at=received)
    assert result.sample.captured_at == received


def test_speed_and_heading_normalization():
    assert normalize_speed(36, "kmh") == pytest.approx(10.0)
    assert normalize_speed(10, "mph") == pytest.approx(4.4704)
    assert normalize_speed(-1) is None
    assert normalize_speed("fast") is None
    assert normalize_heading(370) == pytest.approx(10.0)
    assert normalize_heading(-90) == pytest.approx(270.0)


def test_sample_fields_are_normalized():
    result = accept(
        {
            "vehicleId": " bus-9 ",
            "lat": "38.03",
            "lon": "-78.47",
            "speed": 72,
            "speed_unit": "kmh",
            "heading": 450,
            "trip_id": 12,
        }
    )
    sample = result.sample
    assert sample.vehicle_id == "bus-9"
    assert sample.trip_id == "12"
    assert sample.speed_mps == pytest.approx(20.0)
    assert sample.heading_deg == pytest.approx(90.0)
    assert sample.to_dict()["captured_at"].endswith("Z")


def test_parse_iso8601_utc_converts_offsets():
    dt = parse_iso8601_utc("2024-05-01T08:00:00-04:00")
    assert dt == datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
