from __future__ import annotations

import csv
import io
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Any, Iterator, Mapping
from zoneinfo import ZoneInfo

from .records import FileRecordStore


logger = logging.getLogger("solarwatch.timeseries")

MEASUREMENT_FIELDS: tuple[str, ...] = (
    "batt_v",
    "batt_a",
    "soc",
    "pv_v",
    "pv_a",
    "pv_w",
    "load_w",
    "temp_c",
    "charge_state",
)

# Column set is fixed by contract, not by what a device happens to send.
CSV_FIELDS: tuple[str, ...] = ("ts", "iso", "seq") + MEASUREMENT_FIELDS


@dataclass(frozen=True)
class Sample:
    ts: int
    seq: int
    metrics: Mapping[str, Any] = field(default_factory=dict)


def local_datetime(ts: int, tz: ZoneInfo) -> datetime:
    return datetime.fromtimestamp(int(ts), tz=tz)


def iso_local(ts: int, tz: ZoneInfo) -> str:
    return local_datetime(ts, tz).isoformat()


def partition_month(ts: int, tz: ZoneInfo) -> str:
    return local_datetime(ts, tz).strftime("%Y-%m")


def _cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, (int, float, str)):
        return str(value)
    # Nested structures have no column to live in.
    return ""


def sample_row(sample: Sample, tz: ZoneInfo) -> list[str]:
    row = [str(int(sample.ts)), iso_local(sample.ts, tz), str(int(sample.seq))]
    row.extend(_cell(sample.metrics.get(k)) for k in MEASUREMENT_FIELDS)
    return row


def _encode_csv(rows: list[list[str]] | list[tuple[str, ...]]) -> bytes:
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerows(rows)
    return buf.getvalue().encode("utf-8")


HEADER_BYTES = _encode_csv([CSV_FIELDS])


def months_between(start: date, end: date) -> list[str]:
    """``YYYY-MM`` for every calendar month touched by ``[start, end]``."""

    months: list[str] = []
    cur = start.replace(day=1)
    while cur <= end:
        months.append(cur.strftime("%Y-%m"))
        cur = (cur.replace(day=28) + timedelta(days=4)).replace(day=1)
    return months


class TimeSeriesStore:
    """Append-only CSV partitions: ``<root>/<device>/log/<YYYY-MM>.csv``."""

    def __init__(self, root: str, *, tz: ZoneInfo) -> None:
        self.records = FileRecordStore(root)
        self.tz = tz

    def partition_key(self, device_id: str, ym: str) -> tuple[str, str, str]:
        return (device_id, "log", f"{ym}.csv")

    def append(self, device_id: str, sample: Sample) -> str:
        """Append one row; returns the partition month it landed in."""

        ym = partition_month(sample.ts, self.tz)
        created = self.records.append(
            self.partition_key(device_id, ym),
            _encode_csv([sample_row(sample, self.tz)]),
            header=HEADER_BYTES,
        )
        if created:
            logger.info("New partition", extra={"fields": {"device_id": device_id, "month": ym}})
        return ym

    def read_partition(self, device_id: str, ym: str) -> bytes | None:
        path = self.records.path_for(self.partition_key(device_id, ym))
        if not path.exists():
            return None
        return path.read_bytes()

    def iter_range(self, device_id: str, start: date, end: date) -> Iterator[list[str]]:
        """Yield the header once, then rows with ``ts`` inside the local-day range.

        Yields nothing when no partition file covers the range.
        """

        from_ts = int(datetime.combine(start, time(0, 0, 0), tzinfo=self.tz).timestamp())
        to_ts = int(datetime.combine(end, time(23, 59, 59), tzinfo=self.tz).timestamp())

        header_written = False
        for ym in months_between(start, end):
            path = self.records.path_for(self.partition_key(device_id, ym))
            if not path.exists():
                continue
            with path.open("r", encoding="utf-8", newline="") as handle:
                reader = csv.reader(handle)
                header = next(reader, None)
                if not header or "ts" not in header:
                    continue
                ts_idx = header.index("ts")
                if not header_written:
                    yield header
                    header_written = True
                for row in reader:
                    if len(row) <= ts_idx:
                        continue
                    try:
                        ts = int(row[ts_idx])
                    except ValueError:
                        continue
                    if from_ts <= ts <= to_ts:
                        yield row

    def has_any_partition(self, device_id: str, start: date, end: date) -> bool:
        return any(
            self.records.exists(self.partition_key(device_id, ym)) for ym in months_between(start, end)
        )


def encode_rows(rows: list[list[str]]) -> bytes:
    return _encode_csv(rows)
