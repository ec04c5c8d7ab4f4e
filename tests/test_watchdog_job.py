from __future__ import annotations

import time
from pathlib import Path

from solarwatch.app.jobs import watchdog as watchdog_job
from solarwatch.app.services.snapshots import LatestSnapshotStore


def test_run_watchdog_pass_writes_dated_operational_log(make_settings, write_devices, write_recipients, monkeypatch, capsys) -> None:
    write_devices([{"id": "X1", "name": "Roof", "secret": "s", "offline_grace_sec": 60}, {"id": "GHOST"}])
    write_recipients(["ops@example.com"])
    settings = make_settings()
    LatestSnapshotStore(settings.data_dir).write("X1", {"ts": int(time.time()) - 3600})

    monkeypatch.setattr(watchdog_job, "global_settings", settings)
    watchdog_job.main()

    assert capsys.readouterr().out.strip() == "OK sent=1"

    logs = list(Path(settings.log_dir).glob("watchdog_*.log"))
    assert len(logs) == 1
    text = logs[0].read_text("utf-8")
    assert "SKIP GHOST : latest snapshot not found" in text
    # The default log transport reports failure: nothing was delivered.
    assert "MAIL OFFLINE X1 ok=0" in text
    assert text.rstrip().endswith("DONE sent=1")


def test_run_watchdog_pass_with_empty_registry(make_settings) -> None:
    settings = make_settings()
    summary = watchdog_job.run_watchdog_pass(settings)
    assert (summary.evaluated, summary.alerts_sent, summary.skipped) == (0, 0, 0)
