from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from zoneinfo import ZoneInfo

from solarwatch.app.observability import (
    JsonFormatter,
    JsonLogConfig,
    close_operational_log,
    open_operational_log,
    record_alert_dispatch_metric,
    record_ingest_metric,
    record_watchdog_run_metric,
)


def test_operational_log_appends_plain_lines(tmp_path: Path) -> None:
    logger = logging.getLogger("solarwatch.test.oplog")
    logger.setLevel(logging.WARNING)

    handler = open_operational_log(logger, log_dir=str(tmp_path / "logs"), prefix="watchdog")
    logger.info("SKIP %s : latest snapshot not found", "X9")
    logger.info("DONE sent=%s", 0)
    close_operational_log(logger, handler)

    assert logger.level == logging.WARNING
    files = list((tmp_path / "logs").glob("watchdog_*.log"))
    assert len(files) == 1
    lines = files[0].read_text("utf-8").splitlines()
    assert lines[0].endswith(" SKIP X9 : latest snapshot not found")
    assert lines[1].endswith(" DONE sent=0")

    # Detached: later records do not reach the file.
    logger.warning("after close")
    assert "after close" not in files[0].read_text("utf-8")


def test_operational_log_is_dated_in_configured_zone(tmp_path: Path) -> None:
    tz = ZoneInfo("Pacific/Kiritimati")
    logger = logging.getLogger("solarwatch.test.oplog.zoned")

    handler = open_operational_log(logger, log_dir=str(tmp_path), prefix="watchdog", tz=tz)
    logger.info("DONE sent=%s", 1)
    close_operational_log(logger, handler)

    path = tmp_path / f"watchdog_{datetime.now(tz).strftime('%Y%m%d')}.log"
    line = path.read_text("utf-8").splitlines()[0]
    assert line.endswith("+14:00 DONE sent=1")


def test_json_formatter_carries_fields() -> None:
    record = logging.LogRecord("solarwatch.ingest", logging.INFO, __file__, 1, "Ingest %s", ("ok",), None)
    record.fields = {"device_id": "X1"}
    out = json.loads(JsonFormatter(JsonLogConfig()).format(record))
    assert out["message"] == "Ingest ok"
    assert out["fields"] == {"device_id": "X1"}
    assert out["service"] == "solarwatch"


def test_metric_recorders_are_noops_without_otel() -> None:
    record_ingest_metric(outcome="rejected", reason="auth failed")
    record_alert_dispatch_metric(alert_type="OFFLINE", delivered=False)
    record_watchdog_run_metric(duration_ms=1.0, success=True)
