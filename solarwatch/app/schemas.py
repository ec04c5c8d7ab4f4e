from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel


class IngestResponse(BaseModel):
    ok: bool = True
    device: str
    server_ts: int


class IngestErrorResponse(BaseModel):
    ok: bool = False
    error: str


class DeviceLatestOut(BaseModel):
    id: str
    name: str
    latest: Optional[Dict[str, Any]] = None
    state: Optional[Dict[str, Any]] = None


class LatestListResponse(BaseModel):
    ok: bool = True
    items: List[DeviceLatestOut]


class RecipientsResponse(BaseModel):
    ok: bool = True
    emails: List[str]


class WatchdogRunResponse(BaseModel):
    ok: bool = True
    evaluated: int
    alerts_sent: int
    alerts_failed: int
    skipped: int
