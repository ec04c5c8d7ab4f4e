from __future__ import annotations

import tomllib
from importlib import metadata
from pathlib import Path


_DIST_NAME = "solarwatch-telemetry"
_UNKNOWN = "0.0.0"

# solarwatch/app/version.py -> repo root
_PYPROJECT = Path(__file__).resolve().parents[2] / "pyproject.toml"


def _version_from_pyproject(path: Path) -> str:
    try:
        data = tomllib.loads(path.read_text("utf-8"))
    except (OSError, tomllib.TOMLDecodeError):
        return _UNKNOWN
    return str((data.get("project") or {}).get("version") or _UNKNOWN)


def get_version() -> str:
    """Installed distribution version, else the one in a source checkout's pyproject.toml."""

    try:
        return metadata.version(_DIST_NAME)
    except metadata.PackageNotFoundError:
        return _version_from_pyproject(_PYPROJECT)


__version__ = get_version()
