from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Mapping
from zoneinfo import ZoneInfo

from ..config import Settings
from ..observability import record_ingest_metric
from ..registry import RuntimeConfig
from ..security import secrets_match
from .records import StorageError
from .snapshots import LatestSnapshotStore
from .timeseries import Sample, TimeSeriesStore, iso_local


logger = logging.getLogger("solarwatch.ingest")
security_logger = logging.getLogger("solarwatch.security")

# Rejection reasons (machine-readable, part of the device protocol).
EMPTY_BODY = "empty body"
INVALID_JSON = "invalid json"
UNSUPPORTED_VERSION = "unsupported version"
UNKNOWN_DEVICE = "unknown device"
METRICS_MISSING = "metrics missing"
AUTH_FAILED = "auth failed"


class IngestError(Exception):
    def __init__(self, reason: str, status_code: int) -> None:
        super().__init__(reason)
        self.reason = reason
        self.status_code = status_code


@dataclass(frozen=True)
class IngestAccepted:
    device: str
    server_ts: int
    ts: int
    seq: int
    partition: str
    ts_substituted: bool


@dataclass(frozen=True)
class IngestStores:
    timeseries: TimeSeriesStore
    snapshots: LatestSnapshotStore


def build_stores(settings: Settings) -> IngestStores:
    tz = ZoneInfo(settings.timezone)
    return IngestStores(
        timeseries=TimeSeriesStore(settings.data_dir, tz=tz),
        snapshots=LatestSnapshotStore(settings.data_dir),
    )


def coerce_int(value: Any) -> int:
    """Lenient integer read of device-supplied counters; garbage reads as 0."""

    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value == value and abs(value) != float("inf") else 0
    if isinstance(value, str):
        s = value.strip()
        try:
            return int(s)
        except ValueError:
            pass
        try:
            f = float(s)
        except ValueError:
            return 0
        return int(f) if f == f and abs(f) != float("inf") else 0
    return 0


def resolve_timestamp(raw: Any, *, now: int, tolerance_s: int) -> tuple[int, bool]:
    """Device ts if plausible, else server time. Returns (ts, substituted)."""

    ts = coerce_int(raw)
    if ts <= 0 or abs(now - ts) > tolerance_s:
        return now, True
    return ts, False


def validate_payload(payload: Any, config: RuntimeConfig) -> tuple[str, Mapping[str, Any]]:
    """Run the rejection pipeline; returns (device_id, metrics) on success."""

    if not isinstance(payload, dict):
        raise IngestError(INVALID_JSON, 400)

    version = str(payload.get("v") if payload.get("v") is not None else "")
    if version != config.settings.protocol_version:
        raise IngestError(UNSUPPORTED_VERSION, 400)

    device_id = str(payload.get("device") if payload.get("device") is not None else "")
    device = config.registry.get(device_id) if device_id else None
    if device is None:
        security_logger.warning("Ingest from unknown device", extra={"fields": {"device_id": device_id}})
        raise IngestError(UNKNOWN_DEVICE, 403)

    metrics = payload.get("metrics")
    if not isinstance(metrics, dict):
        raise IngestError(METRICS_MISSING, 400)

    provided = payload.get("secret")
    if not secrets_match(device.secret, provided if isinstance(provided, str) else ""):
        security_logger.warning("Device authentication failed", extra={"fields": {"device_id": device_id}})
        raise IngestError(AUTH_FAILED, 403)

    return device_id, metrics


def ingest_sample(
    payload: Any,
    *,
    config: RuntimeConfig,
    stores: IngestStores,
    now: int | None = None,
    remote_addr: str = "",
) -> IngestAccepted:
    """Validate, authenticate and record one sample.

    The snapshot is staged before the partition append and made visible only
    after it, so a storage failure leaves neither store changed. The contact
    record is best effort.
    """

    try:
        device_id, metrics = validate_payload(payload, config)
    except IngestError as exc:
        record_ingest_metric(outcome="rejected", reason=exc.reason)
        raise

    server_ts = int(time.time()) if now is None else int(now)
    ts, substituted = resolve_timestamp(
        payload.get("ts"), now=server_ts, tolerance_s=config.settings.clock_skew_tolerance_s
    )
    if substituted and payload.get("ts") not in (None, 0):
        logger.info(
            "Device clock implausible; using server time",
            extra={"fields": {"device_id": device_id, "device_ts": payload.get("ts"), "server_ts": server_ts}},
        )
    seq = coerce_int(payload.get("seq"))

    snapshot = {
        "v": config.settings.protocol_version,
        "device": device_id,
        "ts": ts,
        "iso": iso_local(ts, stores.timeseries.tz),
        "seq": seq,
        "metrics": metrics,
        "server_rx_ts": server_ts,
    }

    try:
        staged = stores.snapshots.stage(device_id, snapshot)
        try:
            partition = stores.timeseries.append(device_id, Sample(ts=ts, seq=seq, metrics=metrics))
            staged.commit()
        finally:
            staged.discard()
    except StorageError as exc:
        logger.exception("Ingest storage failure", extra={"fields": {"device_id": device_id, "reason": exc.reason}})
        record_ingest_metric(outcome="failed", reason=exc.reason)
        raise IngestError(exc.reason, 500) from exc

    # The sample is committed; a contact record failure is only logged.
    try:
        stores.snapshots.touch_contact(
            device_id,
            last_seen_ts=server_ts,
            last_seen_device_ts=ts,
            last_seq=seq,
            last_rx_ip=remote_addr,
        )
    except StorageError as exc:
        logger.exception(
            "Contact record not updated", extra={"fields": {"device_id": device_id, "reason": exc.reason}}
        )

    record_ingest_metric(outcome="accepted")
    return IngestAccepted(
        device=device_id,
        server_ts=server_ts,
        ts=ts,
        seq=seq,
        partition=partition,
        ts_substituted=substituted,
    )
