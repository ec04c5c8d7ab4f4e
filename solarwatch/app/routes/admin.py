from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from starlette.concurrency import run_in_threadpool

from ..jobs.watchdog import run_watchdog_pass
from ..schemas import WatchdogRunResponse
from ..security import app_settings, require_admin

router = APIRouter(prefix="/api/v1", tags=["admin"], dependencies=[Depends(require_admin)])


@router.post("/watchdog/run", response_model=WatchdogRunResponse)
async def trigger_watchdog(request: Request) -> WatchdogRunResponse:
    """Run one watchdog pass now.

    Overlapping passes are not guarded here; avoid triggering while the
    scheduler is mid-run.
    """

    summary = await run_in_threadpool(run_watchdog_pass, app_settings(request))
    return WatchdogRunResponse(
        evaluated=summary.evaluated,
        alerts_sent=summary.alerts_sent,
        alerts_failed=summary.alerts_failed,
        skipped=summary.skipped,
    )
