from __future__ import annotations

import logging
import time
from zoneinfo import ZoneInfo

from ..config import Settings, settings as global_settings
from ..observability import (
    close_operational_log,
    configure_logging,
    open_operational_log,
    record_watchdog_run_metric,
)
from ..registry import load_runtime_config
from ..services.notifications import build_notifier
from ..services.watchdog import WatchdogRunSummary, logger as watchdog_logger, run_once


logger = logging.getLogger("solarwatch.job.watchdog")


def run_watchdog_pass(_settings: Settings | None = None) -> WatchdogRunSummary:
    """Load registry/recipients fresh, run one pass, keep the dated operational log."""

    settings = _settings or global_settings
    config = load_runtime_config(settings)
    handler = open_operational_log(
        watchdog_logger, log_dir=settings.log_dir, prefix="watchdog", tz=ZoneInfo(settings.timezone)
    )
    start = time.perf_counter()
    success = False
    try:
        summary = run_once(config, build_notifier(settings))
        success = True
        return summary
    finally:
        close_operational_log(watchdog_logger, handler)
        record_watchdog_run_metric(duration_ms=(time.perf_counter() - start) * 1000.0, success=success)


def main() -> None:
    settings = global_settings
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    configure_logging(level=level, log_format=settings.log_format)

    summary = run_watchdog_pass()
    logger.info(
        "watchdog complete",
        extra={
            "fields": {
                "evaluated": summary.evaluated,
                "alerts_sent": summary.alerts_sent,
                "alerts_failed": summary.alerts_failed,
                "skipped": summary.skipped,
            }
        },
    )
    print(f"OK sent={summary.alerts_sent}")


if __name__ == "__main__":
    main()
