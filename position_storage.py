from __future__ import annotations

from datetime import datetime, timedelta
from pathlib import Path
from typing import Iterator, List, Optional, Sequence, Set
import csv

from position_ingest import PositionSample, _to_utc, isoformat_z, parse_iso8601_utc


COLUMNS = [
    "captured_at",
    "vehicle_id",
    "trip_id",
    "latitude",
    "longitude",
    "speed_mps",
    "heading_deg",
    "altitude_m",
    "accuracy_m",
    "sample_id",
]


def _fmt(value: Optional[float], places: int) -> str:
    return "" if value is None else f"{value:.{places}f}"


def _opt_float(value: str) -> Optional[float]:
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def sample_to_row(sample: PositionSample) -> List[str]:
    return [
        isoformat_z(sample.captured_at),
        sample.vehicle_id,
        sample.trip_id or "",
        f"{sample.latitude:.7f}",
        f"{sample.longitude:.7f}",
        _fmt(sample.speed_mps, 3),
        _fmt(sample.heading_deg, 1),
        _fmt(sample.altitude_m, 1),
        _fmt(sample.accuracy_m, 1),
        sample.sample_id,
    ]


def sample_from_row(row: Sequence[str]) -> Optional[PositionSample]:
    if len(row) < len(COLUMNS):
        return None
    try:
        captured_at = parse_iso8601_utc(row[0])
        latitude = float(row[3])
        longitude = float(row[4])
    except ValueError:
        return None
    if not row[1]:
        return None
    return PositionSample(
        vehicle_id=row[1],
        latitude=latitude,
        longitude=longitude,
        captured_at=captured_at,
        trip_id=row[2] or None,
        speed_mps=_opt_float(row[5]),
        heading_deg=_opt_float(row[6]),
        altitude_m=_opt_float(row[7]),
        accuracy_m=_opt_float(row[8]),
        sample_id=row[9],
    )


class PositionStorage:
    """Accepted position samples, one CSV file per UTC day."""

    def __init__(self, base_dir: Path):
        self.base_dir = base_dir

    def _file_for_date(self, dt: datetime) -> Path:
        return self.base_dir / f"{_to_utc(dt).date().isoformat()}.csv"

    def write_samples(self, samples: Sequence[PositionSample]) -> None:
        if not samples:
            return
        self.base_dir.mkdir(parents=True, exist_ok=True)
        grouped_rows: dict[Path, List[List[str]]] = {}
        for sample in samples:
            path = self._file_for_date(sample.captured_at)
            grouped_rows.setdefault(path, []).append(sample_to_row(sample))

        for path, rows in grouped_rows.items():
            with path.open("a", newline="") as f:
                writer = csv.writer(f)
                writer.writerows(rows)

    def _day_files(self, start: datetime, end: datetime) -> Iterator[Path]:
        """Existing log files for every UTC day touched by [start, end]."""
        day = start.date()
        while day <= end.date():
            path = self.base_dir / f"{day.isoformat()}.csv"
            if path.exists():
                yield path
            day += timedelta(days=1)

    def query_samples(
        self,
        start: datetime,
        end: datetime,
        vehicle_ids: Optional[Set[str]] = None,
    ) -> List[PositionSample]:
        """Logged samples captured within [start, end], oldest first."""
        start_utc = _to_utc(start)
        end_utc = _to_utc(end)
        samples: List[PositionSample] = []
        for path in self._day_files(start_utc, end_utc):
            with path.open("r", newline="") as f:
                for sample in filter(None, map(sample_from_row, csv.reader(f))):
                    if not start_utc <= sample.captured_at <= end_utc:
                        continue
                    if vehicle_ids and sample.vehicle_id not in vehicle_ids:
                        continue
                    samples.append(sample)
        samples.sort(key=lambda s: s.captured_at)
        return samples


__all__ = ["PositionStorage", "sample_from_row", "sample_to_row"]
