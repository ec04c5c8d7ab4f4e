from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Literal, Mapping
from zoneinfo import ZoneInfo

from ..observability import record_alert_dispatch_metric
from ..registry import Device, RuntimeConfig
from .notifications import Notifier
from .records import FileRecordStore, StorageError
from .snapshots import LatestSnapshotStore


logger = logging.getLogger("solarwatch.watchdog")

AlertKind = Literal["OFFLINE", "RECOVER"]

_ALERT_KEYS = ("last_alert_ts", "last_alert_type", "last_alert_ok")


@dataclass(frozen=True)
class WatchdogRunSummary:
    evaluated: int
    alerts_sent: int
    alerts_failed: int
    skipped: int


@dataclass(frozen=True)
class Evaluation:
    device_id: str
    last_seen_ts: int
    age_s: int
    grace_s: int
    offline: bool
    transition: AlertKind | None


class WatchdogStateStore:
    """``<root>/<device>.json``; written by the watchdog only."""

    def __init__(self, root: str) -> None:
        self.records = FileRecordStore(root)

    def read(self, device_id: str) -> dict[str, Any] | None:
        return self.records.read((f"{device_id}.json",))

    def write(self, device_id: str, state: dict[str, Any]) -> None:
        self.records.write((f"{device_id}.json",), state)


def _finite_int(value: float) -> int:
    return int(value) if math.isfinite(value) else 0


def derive_last_seen_ts(snapshot: Mapping[str, Any] | None, tz: ZoneInfo | None = None) -> int:
    """Last contact time from a latest snapshot; 0 when it cannot be derived.

    A naive ``iso`` is read in ``tz`` (the configured zone), else host local time.
    """

    if not snapshot:
        return 0
    ts = snapshot.get("ts")
    if isinstance(ts, (int, float)) and not isinstance(ts, bool):
        return ts if isinstance(ts, int) else _finite_int(ts)
    if isinstance(ts, str):
        try:
            return _finite_int(float(ts.strip()))
        except ValueError:
            pass
    iso = snapshot.get("iso")
    if isinstance(iso, str) and iso.strip():
        raw = iso.strip()
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(raw)
        except ValueError:
            return 0
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=tz) if tz is not None else parsed.astimezone()
        try:
            return int(parsed.timestamp())
        except (OverflowError, ValueError, OSError):
            return 0
    return 0


def compute_liveness(now: int, last_seen_ts: int, grace_s: int) -> tuple[int, bool]:
    """Returns (age_s, offline). Offline strictly when age exceeds grace."""

    age = int(now) - int(last_seen_ts)
    return age, age > grace_s


def detect_transition(previous_offline: bool, offline: bool) -> AlertKind | None:
    if not previous_offline and offline:
        return "OFFLINE"
    if previous_offline and not offline:
        return "RECOVER"
    return None


def _fmt(ts: int, tz: ZoneInfo) -> str:
    try:
        return datetime.fromtimestamp(int(ts), tz=tz).strftime("%Y-%m-%d %H:%M:%S")
    except (OverflowError, ValueError, OSError):
        return str(ts)


def render_alert(
    kind: AlertKind,
    *,
    device: Device,
    last_seen_ts: int,
    age_s: int,
    grace_s: int,
    now: int,
    tz: ZoneInfo,
) -> tuple[str, str]:
    if kind == "OFFLINE":
        subject = f"[Solar Monitor] Communication lost: {device.id} {device.name}"
        body = (
            "Communication loss detected for the following device.\n"
            "\n"
            f"ID: {device.id}\n"
            f"Name: {device.name}\n"
            f"Last received: {_fmt(last_seen_ts, tz)}\n"
            f"Elapsed: {age_s} s\n"
            f"Offline grace: {grace_s} s\n"
            "\n"
            f"Time: {_fmt(now, tz)}\n"
        )
    else:
        subject = f"[Solar Monitor] Communication restored: {device.id} {device.name}"
        body = (
            "Communication has been restored for the following device.\n"
            "\n"
            f"ID: {device.id}\n"
            f"Name: {device.name}\n"
            f"Last received: {_fmt(last_seen_ts, tz)}\n"
            "\n"
            f"Time: {_fmt(now, tz)}\n"
        )
    return subject, body


def evaluate(
    device: Device,
    snapshot: Mapping[str, Any] | None,
    previous_state: Mapping[str, Any] | None,
    *,
    now: int,
    min_grace_s: int = 60,
    tz: ZoneInfo | None = None,
) -> Evaluation | None:
    """Pure single-device evaluation; None when last contact cannot be derived."""

    last_seen = derive_last_seen_ts(snapshot, tz)
    if last_seen <= 0:
        return None
    grace = max(min_grace_s, int(device.offline_grace_s))
    age, offline = compute_liveness(now, last_seen, grace)
    # A device with no prior state is assumed online, so it can never start with RECOVER.
    previous_offline = bool((previous_state or {}).get("offline", False))
    return Evaluation(
        device_id=device.id,
        last_seen_ts=last_seen,
        age_s=age,
        grace_s=grace,
        offline=offline,
        transition=detect_transition(previous_offline, offline),
    )


def run_once(
    config: RuntimeConfig,
    notifier: Notifier,
    *,
    snapshots: LatestSnapshotStore | None = None,
    states: WatchdogStateStore | None = None,
    now: int | None = None,
) -> WatchdogRunSummary:
    """One watchdog pass over every registered device.

    Alerts are edge-triggered: a notification goes out only when the offline
    flag differs from the one persisted by the previous pass. State is written
    for every evaluated device, alert or not, so the next pass has a baseline.
    """

    settings = config.settings
    snapshots = snapshots or LatestSnapshotStore(settings.data_dir)
    states = states or WatchdogStateStore(settings.state_dir)
    tz = ZoneInfo(settings.timezone)
    now_ts = int(time.time()) if now is None else int(now)
    recipients = list(config.recipients.emails)

    evaluated = 0
    sent = 0
    failed = 0
    skipped = 0

    for device in config.registry:
        snapshot = snapshots.read(device.id)
        if snapshot is None:
            # Never reported: liveness is unknown, not offline.
            logger.info("SKIP %s : latest snapshot not found", device.id)
            skipped += 1
            continue

        previous = states.read(device.id) or {}
        ev = evaluate(device, snapshot, previous, now=now_ts, min_grace_s=settings.min_offline_grace_s, tz=tz)
        if ev is None:
            logger.info("SKIP %s : last seen time not derivable", device.id)
            skipped += 1
            continue

        state: dict[str, Any] = {
            "id": device.id,
            "name": device.name,
            "last_seen_ts": ev.last_seen_ts,
            "age_sec": ev.age_s,
            "offline_grace_sec": ev.grace_s,
            "offline": ev.offline,
            "updated_ts": now_ts,
        }
        for k in _ALERT_KEYS:
            if k in previous:
                state[k] = previous[k]

        if ev.transition and recipients:
            subject, body = render_alert(
                ev.transition,
                device=device,
                last_seen_ts=ev.last_seen_ts,
                age_s=ev.age_s,
                grace_s=ev.grace_s,
                now=now_ts,
                tz=tz,
            )
            try:
                ok = bool(
                    notifier.send(
                        recipients, subject, body, config.recipients.from_name, config.recipients.from_mail
                    )
                )
            except Exception:
                logger.exception("Notifier raised", extra={"fields": {"device_id": device.id}})
                ok = False

            state["last_alert_ts"] = now_ts
            state["last_alert_type"] = ev.transition
            state["last_alert_ok"] = ok

            logger.info("MAIL %s %s ok=%s", ev.transition, device.id, "1" if ok else "0")
            record_alert_dispatch_metric(alert_type=ev.transition, delivered=ok)
            sent += 1
            if not ok:
                failed += 1
        elif ev.transition:
            logger.info("NOMAIL %s %s : no recipients configured", ev.transition, device.id)

        try:
            states.write(device.id, state)
        except StorageError as exc:
            # Keep going; the next pass may repeat this device's alert.
            logger.exception(
                "SKIP %s : watchdog state not saved",
                device.id,
                extra={"fields": {"device_id": device.id, "reason": exc.reason}},
            )
            skipped += 1
            continue
        evaluated += 1

    logger.info("DONE sent=%s", sent)
    return WatchdogRunSummary(evaluated=evaluated, alerts_sent=sent, alerts_failed=failed, skipped=skipped)
