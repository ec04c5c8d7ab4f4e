from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from solarwatch.app.registry import load_runtime_config
from solarwatch.app.services.ingestion import (
    IngestError,
    build_stores,
    coerce_int,
    ingest_sample,
    resolve_timestamp,
)
from solarwatch.app.services.records import StorageError


NOW = 1700000000


@pytest.fixture
def env(make_settings, write_devices):
    write_devices(
        [
            {"id": "X1", "name": "Roof", "secret": "s3cret", "offline_grace_sec": 900},
            {"id": "NOSECRET", "name": "Unprovisioned"},
        ]
    )
    settings = make_settings()
    return load_runtime_config(settings), build_stores(settings)


def _payload(**overrides: Any) -> dict[str, Any]:
    p: dict[str, Any] = {
        "v": "1.00",
        "device": "X1",
        "secret": "s3cret",
        "ts": NOW,
        "seq": 7,
        "metrics": {"batt_v": 12.6, "soc": 87},
    }
    p.update(overrides)
    return p


def _data_files(root: Path) -> list[Path]:
    return sorted(p for p in root.rglob("*") if p.is_file()) if root.exists() else []


def test_accepted_sample_updates_partition_snapshot_and_contact(env) -> None:
    config, stores = env

    accepted = ingest_sample(_payload(), config=config, stores=stores, now=NOW + 5, remote_addr="10.0.0.9")

    assert accepted.device == "X1"
    assert accepted.server_ts == NOW + 5
    assert accepted.ts == NOW
    assert accepted.partition == "2023-11"
    assert accepted.ts_substituted is False

    latest = stores.snapshots.read("X1")
    assert latest == {
        "v": "1.00",
        "device": "X1",
        "ts": NOW,
        "iso": "2023-11-15T07:13:20+09:00",
        "seq": 7,
        "metrics": {"batt_v": 12.6, "soc": 87},
        "server_rx_ts": NOW + 5,
    }

    contact = stores.snapshots.read_contact("X1")
    assert contact is not None
    assert contact["last_seen_ts"] == NOW + 5
    assert contact["last_seq"] == 7
    assert contact["last_rx_ip"] == "10.0.0.9"
    assert contact["offline"] is False


@pytest.mark.parametrize(
    "payload,reason,status",
    [
        ([1, 2], "invalid json", 400),
        (_payload(v="2.00"), "unsupported version", 400),
        (_payload(v=None), "unsupported version", 400),
        (_payload(device="NOPE"), "unknown device", 403),
        (_payload(device=""), "unknown device", 403),
        (_payload(metrics=None), "metrics missing", 400),
        (_payload(metrics=[1, 2]), "metrics missing", 400),
        (_payload(secret="wrong"), "auth failed", 403),
        (_payload(secret=""), "auth failed", 403),
        (_payload(secret=None), "auth failed", 403),
        (_payload(device="NOSECRET", secret=""), "auth failed", 403),
    ],
)
def test_rejections_have_reason_status_and_no_side_effects(env, payload, reason, status) -> None:
    config, stores = env

    with pytest.raises(IngestError) as err:
        ingest_sample(payload, config=config, stores=stores, now=NOW)

    assert err.value.reason == reason
    assert err.value.status_code == status
    assert _data_files(Path(config.settings.data_dir)) == []


def test_version_is_checked_before_device_lookup(env) -> None:
    config, stores = env
    with pytest.raises(IngestError) as err:
        ingest_sample(_payload(v="0.9", device="NOPE"), config=config, stores=stores, now=NOW)
    assert err.value.reason == "unsupported version"


def test_implausible_device_clock_is_replaced_by_server_time(env) -> None:
    config, stores = env

    accepted = ingest_sample(_payload(ts=NOW - 8 * 86400), config=config, stores=stores, now=NOW)
    assert accepted.ts == NOW
    assert accepted.ts_substituted is True

    accepted = ingest_sample(_payload(ts="garbage"), config=config, stores=stores, now=NOW)
    assert accepted.ts == NOW

    accepted = ingest_sample(_payload(ts=NOW - 6 * 86400), config=config, stores=stores, now=NOW)
    assert accepted.ts == NOW - 6 * 86400
    assert accepted.ts_substituted is False


def test_snapshot_is_overwritten_by_each_accepted_sample(env) -> None:
    config, stores = env

    ingest_sample(_payload(seq=1), config=config, stores=stores, now=NOW)
    ingest_sample(_payload(seq=2, ts=NOW + 60, metrics={"soc": 90}), config=config, stores=stores, now=NOW + 60)

    latest = stores.snapshots.read("X1")
    assert latest is not None
    assert latest["seq"] == 2
    assert latest["metrics"] == {"soc": 90}

    body = stores.timeseries.read_partition("X1", "2023-11") or b""
    assert body.count(b"\n") == 3


def test_contact_record_keeps_watchdog_bookkeeping(env) -> None:
    config, stores = env
    stores.snapshots.records.write(
        ("X1", "state.json"),
        {"offline": True, "last_alert_offline_ts": NOW - 100, "last_alert_recover_ts": 0},
    )

    ingest_sample(_payload(), config=config, stores=stores, now=NOW)

    contact = stores.snapshots.read_contact("X1")
    assert contact is not None
    assert contact["offline"] is True
    assert contact["last_alert_offline_ts"] == NOW - 100
    assert contact["last_seen_ts"] == NOW


def test_storage_failure_leaves_snapshot_untouched(env, monkeypatch) -> None:
    config, stores = env
    ingest_sample(_payload(seq=1), config=config, stores=stores, now=NOW)
    before = stores.snapshots.read("X1")

    def _boom(device_id, sample):
        raise StorageError("cannot open csv")

    monkeypatch.setattr(stores.timeseries, "append", _boom)

    with pytest.raises(IngestError) as err:
        ingest_sample(_payload(seq=2), config=config, stores=stores, now=NOW + 1)

    assert err.value.reason == "cannot open csv"
    assert err.value.status_code == 500
    assert stores.snapshots.read("X1") == before
    assert not [p for p in (Path(config.settings.data_dir) / "X1").iterdir() if p.name.endswith(".tmp")]


def test_contact_record_failure_still_accepts_stored_sample(env, monkeypatch) -> None:
    config, stores = env

    def _boom(device_id, **kwargs):
        raise StorageError("write failed")

    monkeypatch.setattr(stores.snapshots, "touch_contact", _boom)

    accepted = ingest_sample(_payload(seq=3), config=config, stores=stores, now=NOW)

    assert accepted.seq == 3
    assert stores.snapshots.read("X1")["seq"] == 3
    rows = (stores.timeseries.read_partition("X1", "2023-11") or b"").decode("utf-8").splitlines()
    assert len(rows) == 2
    assert stores.snapshots.read_contact("X1") is None


def test_coerce_int_and_resolve_timestamp() -> None:
    assert coerce_int("42") == 42
    assert coerce_int(" 7.9 ") == 7
    assert coerce_int(None) == 0
    assert coerce_int(float("nan")) == 0
    assert coerce_int({"x": 1}) == 0

    assert resolve_timestamp(0, now=NOW, tolerance_s=10) == (NOW, True)
    assert resolve_timestamp(NOW + 10, now=NOW, tolerance_s=10) == (NOW + 10, False)
    assert resolve_timestamp(NOW + 11, now=NOW, tolerance_s=10) == (NOW, True)
