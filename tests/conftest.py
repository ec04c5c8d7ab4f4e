from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Callable

import pytest

from solarwatch.app.config import Settings, load_settings


@pytest.fixture
def make_settings(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Callable[..., Settings]:
    """Settings rooted in tmp_path; keyword overrides are env var names."""

    def _make(**env: str) -> Settings:
        base = {
            "APP_ENV": "dev",
            "ADMIN_API_KEY": "test-admin",
            "DATA_DIR": str(tmp_path / "data"),
            "STATE_DIR": str(tmp_path / "state"),
            "LOG_DIR": str(tmp_path / "logs"),
            "DEVICES_PATH": str(tmp_path / "devices.json"),
            "RECIPIENTS_PATH": str(tmp_path / "alert_recipients.json"),
            "NOTIFIER_KIND": "log",
        }
        base.update(env)
        for k, v in base.items():
            monkeypatch.setenv(k, v)
        return load_settings()

    return _make


@pytest.fixture
def write_devices(tmp_path: Path) -> Callable[[list[dict[str, Any]]], Path]:
    def _write(devices: list[dict[str, Any]]) -> Path:
        path = tmp_path / "devices.json"
        path.write_text(json.dumps({"devices": devices}), encoding="utf-8")
        return path

    return _write


@pytest.fixture
def write_recipients(tmp_path: Path) -> Callable[..., Path]:
    def _write(emails: list[Any], **extra: Any) -> Path:
        path = tmp_path / "alert_recipients.json"
        path.write_text(json.dumps({"emails": emails, **extra}), encoding="utf-8")
        return path

    return _write
