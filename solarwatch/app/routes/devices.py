from __future__ import annotations

import re
from datetime import date, datetime
from typing import List
from zoneinfo import ZoneInfo

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import Response

from ..config import Settings
from ..registry import is_valid_device_id, load_registry
from ..schemas import DeviceLatestOut, LatestListResponse
from ..security import app_settings
from ..services.snapshots import LatestSnapshotStore
from ..services.timeseries import TimeSeriesStore, encode_rows
from ..services.watchdog import WatchdogStateStore

router = APIRouter(prefix="/api/v1", tags=["devices"])

_YM_RE = re.compile(r"^\d{4}-\d{2}$")
_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_BOM = b"\xef\xbb\xbf"


def _require_device_id(device_id: str) -> str:
    if not is_valid_device_id(device_id):
        raise HTTPException(status_code=400, detail="device must match [A-Za-z0-9_-]+")
    return device_id


def _timeseries(settings: Settings) -> TimeSeriesStore:
    return TimeSeriesStore(settings.data_dir, tz=ZoneInfo(settings.timezone))


def _parse_day(value: str, name: str) -> date:
    if not _DATE_RE.match(value or ""):
        raise HTTPException(status_code=400, detail=f"{name} must be YYYY-MM-DD")
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise HTTPException(status_code=400, detail="invalid date")


def list_latest(settings: Settings) -> LatestListResponse:
    snapshots = LatestSnapshotStore(settings.data_dir)
    states = WatchdogStateStore(settings.state_dir)
    items: List[DeviceLatestOut] = []
    for d in load_registry(settings):
        items.append(
            DeviceLatestOut(
                id=d.id,
                name=d.name,
                latest=snapshots.read(d.id),
                state=states.read(d.id),
            )
        )
    return LatestListResponse(items=items)


def month_history(settings: Settings, device_id: str, ym: str | None) -> Response:
    _require_device_id(device_id)
    month = ym or datetime.now(ZoneInfo(settings.timezone)).strftime("%Y-%m")
    if not _YM_RE.match(month):
        raise HTTPException(status_code=400, detail="ym must be YYYY-MM")

    body = _timeseries(settings).read_partition(device_id, month)
    if body is None:
        raise HTTPException(status_code=404, detail="not found")
    return Response(content=body, media_type="text/csv; charset=utf-8")


def range_export(settings: Settings, device_id: str, from_: str, to: str) -> Response:
    _require_device_id(device_id)
    start = _parse_day(from_, "from")
    end = _parse_day(to, "to")
    if end < start:
        raise HTTPException(status_code=400, detail="to must be >= from")
    if (end - start).days >= settings.export_max_days:
        raise HTTPException(
            status_code=400, detail=f"range too large (max {settings.export_max_days} days)"
        )

    store = _timeseries(settings)
    if not store.has_any_partition(device_id, start, end):
        raise HTTPException(status_code=404, detail="no data")

    # Excel needs the BOM to read the file as UTF-8.
    body = _BOM + encode_rows(list(store.iter_range(device_id, start, end)))
    filename = f"{device_id}_{from_}_to_{to}.csv"
    return Response(
        content=body,
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/latest", response_model=LatestListResponse)
def get_latest(request: Request) -> LatestListResponse:
    """Every registered device with its latest snapshot and watchdog state."""

    return list_latest(app_settings(request))


@router.get("/devices/{device_id}/history")
def get_history(
    request: Request,
    device_id: str,
    ym: str | None = Query(None, description="Calendar month, YYYY-MM (defaults to the current month)"),
) -> Response:
    return month_history(app_settings(request), device_id, ym)


@router.get("/devices/{device_id}/export")
def get_export(
    request: Request,
    device_id: str,
    from_: str = Query(..., alias="from", description="First day, YYYY-MM-DD"),
    to: str = Query(..., description="Last day, YYYY-MM-DD"),
) -> Response:
    """CSV export across month partitions, filtered by sample ts."""

    return range_export(app_settings(request), device_id, from_, to)
