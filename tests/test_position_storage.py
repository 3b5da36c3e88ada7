import csv
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from position_ingest import PositionSample  # noqa: E402
from position_storage import PositionStorage  # noqa: E402


def _sample(ts: datetime, vehicle_id="bus-1", speed=None) -> PositionSample:
    return PositionSample(
        vehicle_id=vehicle_id,
        latitude=38.0336,
        longitude=-78.508,
        captured_at=ts,
        speed_mps=speed,
    )


def test_write_samples_groups_by_utc_day_and_query(tmp_path):
    storage = PositionStorage(tmp_path)
    day_one_ts = datetime(2024, 5, 1, 23, 30, tzinfo=timezone.utc)
    day_two_ts = datetime(2024, 5, 2, 0, 15, tzinfo=timezone.utc)

    storage.write_samples([_sample(day_one_ts, speed=8.5), _sample(day_two_ts)])

    with (tmp_path / "2024-05-01.csv").open() as f:
        rows_day_one = list(csv.reader(f))
    assert [row[0] for row in rows_day_one] == ["2024-05-01T23:30:00Z"]
    assert (tmp_path / "2024-05-02.csv").exists()

    queried = storage.query_samples(day_one_ts - timedelta(hours=1), day_two_ts + timedelta(hours=1))
    assert [s.captured_at for s in queried] == [day_one_ts, day_two_ts]
    assert queried[0].speed_mps == 8.5
    assert queried[1].speed_mps is None
    assert queried[0].latitude == 38.0336


def test_query_filters_by_vehicle_and_window(tmp_path):
    storage = PositionStorage(tmp_path)
    base = datetime(2024, 5, 1, 7, 0, tzinfo=timezone.utc)
    storage.write_samples(
        [
            _sample(base, "bus-1"),
            _sample(base + timedelta(minutes=5), "bus-2"),
            _sample(base + timedelta(minutes=10), "bus-1"),
        ]
    )
    only_bus_one = storage.query_samples(base, base + timedelta(hours=1), {"bus-1"})
    assert [s.vehicle_id for s in only_bus_one] == ["bus-1", "bus-1"]
    window = storage.query_samples(base + timedelta(minutes=1), base + timedelta(minutes=6))
    assert [s.vehicle_id for s in window] == ["bus-2"]
    assert storage.query_samples(base, base - timedelta(minutes=1)) == []


def test_malformed_rows_are_skipped(tmp_path):
    storage = PositionStorage(tmp_path)
    ts = datetime(2024, 5, 1, 7, 0, tzinfo=timezone.utc)
    storage.write_samples([_sample(ts)])
    with (tmp_path / "2024-05-01.csv").open("a") as f:
        f.write("garbage,row\n")
        f.write("not-a-date,bus-1,,1,2,,,,,x\n")
    assert len(storage.query_samples(ts - timedelta(hours=1), ts + timedelta(hours=1))) == 1
    assert storage.query_samples(ts + timedelta(days=1), ts + timedelta(days=2)) == []
