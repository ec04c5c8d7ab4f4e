from __future__ import annotations

import hashlib
import math
import random
import re
import time
from typing import Any, Dict


_rng_by_device: dict[str, random.Random] = {}


def _device_index(device_id: str) -> int:
    m = re.search(r"(\d+)$", device_id)
    if not m:
        return 1
    try:
        return max(1, int(m.group(1)))
    except ValueError:
        return 1


def _rng_for(device_id: str) -> random.Random:
    rng = _rng_by_device.get(device_id)
    if rng is not None:
        return rng
    seed_bytes = hashlib.sha256(device_id.encode("utf-8")).digest()[:8]
    seed = int.from_bytes(seed_bytes, "big", signed=False)
    rng = random.Random(seed)
    _rng_by_device[device_id] = rng
    return rng


def _daylight(t: float) -> float:
    """0..1 irradiance factor; a compressed 20 minute "day" so dashboards move."""
    phase = (t % 1200.0) / 1200.0
    return max(0.0, math.sin(phase * 2.0 * math.pi))


def read_metrics(device_id: str, *, now: float | None = None) -> Dict[str, Any]:
    """Mock MPPT charge-controller readings.

    Replace with a real controller integration (Modbus/RS-485, VE.Direct, ...).
    """
    t = time.time() if now is None else float(now)
    idx = _device_index(device_id)
    rng = _rng_for(device_id)

    sun = _daylight(t)
    pv_v = 0.0
    pv_a = 0.0
    if sun > 0.02:
        pv_v = 36.0 + 4.0 * sun + rng.uniform(-0.5, 0.5)
        pv_a = max(0.0, 8.0 * sun - (idx - 1) * 0.2 + rng.uniform(-0.2, 0.2))
    pv_w = pv_v * pv_a

    load_w = 35.0 + 10.0 * math.sin(t / 90.0 + idx) + rng.uniform(-2.0, 2.0)
    load_w = max(0.0, load_w)

    # State of charge drifts with the net energy balance.
    soc = 60.0 + 30.0 * sun + rng.uniform(-1.0, 1.0)
    soc = max(0.0, min(100.0, soc))

    batt_v = 11.9 + 0.016 * soc + rng.uniform(-0.05, 0.05)
    batt_a = (pv_w - load_w) / max(batt_v, 1.0)
    temp_c = 18.0 + 10.0 * sun + rng.uniform(-0.5, 0.5)

    if pv_w <= 1.0:
        charge_state = "night"
    elif soc >= 95.0:
        charge_state = "float"
    elif soc >= 85.0:
        charge_state = "absorption"
    else:
        charge_state = "bulk"

    return {
        "batt_v": round(batt_v, 2),
        "batt_a": round(batt_a, 2),
        "soc": int(round(soc)),
        "pv_v": round(pv_v, 2),
        "pv_a": round(pv_a, 2),
        "pv_w": round(pv_w, 1),
        "load_w": round(load_w, 1),
        "temp_c": round(temp_c, 1),
        "charge_state": charge_state,
    }
