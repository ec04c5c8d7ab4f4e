from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import yaml

from .config import Settings


logger = logging.getLogger("solarwatch.registry")

DEVICE_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")
# Deliberately loose; the mail transport is the final judge.
EMAIL_RE = re.compile(r"^[^@\s,;<>\"]+@[^@\s,;<>\"]+\.[^@\s,;<>\"]+$")

DEFAULT_FROM_NAME = "Solar MPPT Monitor"
DEFAULT_FROM_MAIL = "no-reply@example.com"


class RegistryError(ValueError):
    pass


@dataclass(frozen=True)
class Device:
    id: str
    name: str
    secret: str
    offline_grace_s: int


@dataclass(frozen=True)
class RecipientList:
    emails: tuple[str, ...] = ()
    from_name: str = DEFAULT_FROM_NAME
    from_mail: str = DEFAULT_FROM_MAIL


@dataclass(frozen=True)
class DeviceRegistry:
    devices: tuple[Device, ...] = ()
    _by_id: dict[str, Device] = field(default_factory=dict, repr=False, compare=False)

    def __post_init__(self) -> None:
        # First entry wins on duplicate ids.
        index: dict[str, Device] = {}
        for d in self.devices:
            index.setdefault(d.id, d)
        object.__setattr__(self, "_by_id", index)

    def get(self, device_id: str) -> Device | None:
        return self._by_id.get(device_id)

    def __iter__(self):
        return iter(self.devices)

    def __len__(self) -> int:
        return len(self.devices)


@dataclass(frozen=True)
class RuntimeConfig:
    """Everything one ingest request or watchdog pass needs, loaded once."""

    settings: Settings
    registry: DeviceRegistry
    recipients: RecipientList


def is_valid_device_id(device_id: str) -> bool:
    return bool(DEVICE_ID_RE.match(device_id or ""))


def is_valid_email(value: str) -> bool:
    return bool(EMAIL_RE.match(value or ""))


def read_document(path: str | Path) -> dict[str, Any]:
    """Read a JSON or YAML document. Missing or unreadable files read as ``{}``."""

    p = Path(path)
    if not p.exists():
        return {}
    try:
        data = yaml.safe_load(p.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, yaml.YAMLError):
        logger.warning("Unreadable config document", extra={"fields": {"path": str(p)}})
        return {}
    return data if isinstance(data, dict) else {}


def _grace(raw: Any, *, default: int, minimum: int) -> int:
    if isinstance(raw, bool):
        value = default
    elif isinstance(raw, (int, float)):
        value = int(raw)
    elif isinstance(raw, str) and raw.strip().lstrip("-").isdigit():
        value = int(raw.strip())
    else:
        value = default
    return max(minimum, value)


def parse_registry(data: Mapping[str, Any], *, default_grace_s: int = 900, min_grace_s: int = 60) -> DeviceRegistry:
    raw_devices = data.get("devices") or []
    if not isinstance(raw_devices, list):
        raise RegistryError("'devices' must be a list")

    devices: list[Device] = []
    for entry in raw_devices:
        if not isinstance(entry, dict):
            continue
        device_id = str(entry.get("id") or "").strip()
        if not device_id:
            continue
        if not is_valid_device_id(device_id):
            logger.warning("Ignoring device with invalid id", extra={"fields": {"device_id": device_id}})
            continue
        devices.append(
            Device(
                id=device_id,
                name=str(entry.get("name") or device_id),
                secret=str(entry.get("secret") or ""),
                offline_grace_s=_grace(
                    entry.get("offline_grace_sec"), default=default_grace_s, minimum=min_grace_s
                ),
            )
        )
    return DeviceRegistry(devices=tuple(devices))


def clean_emails(raw: Any, *, validate: bool = False) -> tuple[str, ...]:
    if not isinstance(raw, list):
        return ()
    out: list[str] = []
    for e in raw:
        if not isinstance(e, str):
            continue
        e = e.strip()
        if not e:
            continue
        if validate and not is_valid_email(e):
            continue
        if e not in out:
            out.append(e)
    return tuple(out)


def parse_recipients(data: Mapping[str, Any]) -> RecipientList:
    return RecipientList(
        emails=clean_emails(data.get("emails")),
        from_name=str(data.get("from_name") or DEFAULT_FROM_NAME),
        from_mail=str(data.get("from_mail") or DEFAULT_FROM_MAIL),
    )


def load_registry(settings: Settings) -> DeviceRegistry:
    try:
        return parse_registry(
            read_document(settings.devices_path),
            default_grace_s=settings.default_offline_grace_s,
            min_grace_s=settings.min_offline_grace_s,
        )
    except RegistryError:
        logger.exception("Device registry is malformed; treating as empty")
        return DeviceRegistry()


def load_recipients(settings: Settings) -> RecipientList:
    return parse_recipients(read_document(settings.recipients_path))


def load_runtime_config(settings: Settings) -> RuntimeConfig:
    return RuntimeConfig(
        settings=settings,
        registry=load_registry(settings),
        recipients=load_recipients(settings),
    )
