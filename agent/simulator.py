from __future__ import annotations

import argparse
import os
import time
from pathlib import Path
from typing import Any

import requests
from dotenv import load_dotenv

from mock_mppt import read_metrics


PROTOCOL_VERSION = "1.00"


def build_payload(*, device_id: str, secret: str, seq: int, now: float | None = None) -> dict[str, Any]:
    ts = int(time.time() if now is None else now)
    return {
        "v": PROTOCOL_VERSION,
        "device": device_id,
        "secret": secret,
        "ts": ts,
        "seq": seq,
        "metrics": read_metrics(device_id, now=ts),
    }


def post_sample(session: requests.Session, api_url: str, payload: dict[str, Any]) -> requests.Response:
    return session.post(
        api_url.rstrip("/") + "/api/v1/ingest",
        json=payload,
        timeout=10.0,
    )


def main() -> None:
    """SolarWatch device simulator.

    Stands in for charge-controller firmware, with CLI flags that simulate a
    communication outage so the watchdog has something to notice.
    """

    load_dotenv()
    load_dotenv(Path(__file__).resolve().parent / ".env")

    parser = argparse.ArgumentParser(description="SolarWatch device simulator")
    parser.add_argument(
        "--simulate-offline-after-s",
        type=int,
        default=0,
        help="Stop sending after N seconds",
    )
    parser.add_argument(
        "--resume-after-s",
        type=int,
        default=0,
        help="Resume sending after N seconds",
    )
    args = parser.parse_args()

    api_url = os.getenv("SOLARWATCH_API_URL", "http://localhost:8082")
    device_id = os.getenv("SOLARWATCH_DEVICE_ID", "demo-mppt-001")
    secret = os.getenv("SOLARWATCH_DEVICE_SECRET", "dev-device-secret-001")
    interval_s = max(1.0, float(os.getenv("SAMPLE_INTERVAL_S", "60")))

    session = requests.Session()
    start = time.time()
    seq = 0

    print(f"[simulator] device_id={device_id} api={api_url} interval={interval_s}s")
    print(f"[simulator] offline_after={args.simulate_offline_after_s}s resume_after={args.resume_after_s}s")

    while True:
        elapsed = int(time.time() - start)

        offline = args.simulate_offline_after_s > 0 and elapsed >= args.simulate_offline_after_s
        if args.resume_after_s > 0 and elapsed >= args.resume_after_s:
            offline = False

        seq += 1
        payload = build_payload(device_id=device_id, secret=secret, seq=seq)

        if offline:
            print(f"[simulator] OFFLINE -> dropped seq={seq}")
        else:
            try:
                resp = post_sample(session, api_url, payload)
                if 200 <= resp.status_code < 300:
                    m = payload["metrics"]
                    print(
                        "[simulator] sent seq=%s soc=%s%% batt=%sv pv=%sw state=%s"
                        % (seq, m["soc"], m["batt_v"], m["pv_w"], m["charge_state"])
                    )
                else:
                    print(f"[simulator] rejected: {resp.status_code} {resp.text[:200]}")
            except requests.RequestException as e:
                print(f"[simulator] send exception {e!r}")

        time.sleep(interval_s)


if __name__ == "__main__":
    main()
