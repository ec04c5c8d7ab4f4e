from __future__ import annotations

import json

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from ..registry import load_runtime_config
from ..schemas import IngestErrorResponse, IngestResponse
from ..security import app_settings
from ..services.ingestion import (
    EMPTY_BODY,
    INVALID_JSON,
    IngestError,
    build_stores,
    ingest_sample,
)


router = APIRouter(prefix="/api/v1", tags=["ingest"])

_ERROR_RESPONSES = {
    400: {"model": IngestErrorResponse, "description": "Malformed or unsupported payload"},
    403: {"model": IngestErrorResponse, "description": "Unknown device or authentication failure"},
    500: {"model": IngestErrorResponse, "description": "Storage failure"},
}


def _reject(reason: str, status_code: int) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=IngestErrorResponse(error=reason).model_dump(),
    )


@router.post("/ingest", response_model=IngestResponse, responses=_ERROR_RESPONSES)
async def ingest(request: Request):
    """Ingest one sample from a charge-controller device.

    The body is parsed here rather than through a pydantic model: devices
    expect the flat ``{ok, error}`` envelope with a distinct reason per
    rejection, in pipeline order.
    """

    raw = await request.body()
    if not raw.strip():
        return _reject(EMPTY_BODY, 400)
    try:
        payload = json.loads(raw)
    except (ValueError, UnicodeDecodeError):
        return _reject(INVALID_JSON, 400)

    settings = app_settings(request)
    config = load_runtime_config(settings)
    remote_addr = request.client.host if request.client else ""

    try:
        accepted = await run_in_threadpool(
            ingest_sample,
            payload,
            config=config,
            stores=build_stores(settings),
            remote_addr=remote_addr,
        )
    except IngestError as exc:
        return _reject(exc.reason, exc.status_code)

    return IngestResponse(device=accepted.device, server_ts=accepted.server_ts)
