from __future__ import annotations

from typing import Any

from .records import FileRecordStore, StagedRecord


# Liveness keys owned by the watchdog side; ingest only seeds their defaults.
_PRESERVED_DEFAULTS: dict[str, Any] = {
    "offline": False,
    "last_alert_offline_ts": 0,
    "last_alert_recover_ts": 0,
}


class LatestSnapshotStore:
    """Per-device ``latest.json`` plus the ingest-side ``state.json`` contact record.

    Layout: ``<root>/<device>/latest.json`` and ``<root>/<device>/state.json``.
    """

    def __init__(self, root: str) -> None:
        self.records = FileRecordStore(root)

    def read(self, device_id: str) -> dict[str, Any] | None:
        return self.records.read((device_id, "latest.json"))

    def exists(self, device_id: str) -> bool:
        return self.records.exists((device_id, "latest.json"))

    def stage(self, device_id: str, snapshot: dict[str, Any]) -> StagedRecord:
        return self.records.stage((device_id, "latest.json"), snapshot)

    def write(self, device_id: str, snapshot: dict[str, Any]) -> None:
        self.records.write((device_id, "latest.json"), snapshot)

    def read_contact(self, device_id: str) -> dict[str, Any] | None:
        return self.records.read((device_id, "state.json"))

    def touch_contact(
        self,
        device_id: str,
        *,
        last_seen_ts: int,
        last_seen_device_ts: int,
        last_seq: int,
        last_rx_ip: str,
    ) -> dict[str, Any]:
        """Update the free fields, leaving offline/alert bookkeeping as found."""

        def _update(state: dict[str, Any]) -> dict[str, Any]:
            state["last_seen_ts"] = int(last_seen_ts)
            state["last_seen_device_ts"] = int(last_seen_device_ts)
            state["last_seq"] = int(last_seq)
            state["last_rx_ip"] = last_rx_ip
            for k, default in _PRESERVED_DEFAULTS.items():
                state.setdefault(k, default)
            return state

        return self.records.read_modify_write((device_id, "state.json"), _update)
