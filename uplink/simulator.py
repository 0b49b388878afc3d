from __future__ import annotations

import argparse
import json
import logging
import time
import uuid
from pathlib import Path
from typing import Any, Dict

from dotenv import load_dotenv

from .config import INTEGRATION_KEY, UplinkConfig, UplinkConfigError, load_uplink_config_from_env
from .coordinator import FlushCoordinator
from .observability import configure_logging
from .storage import SqliteEventStorage, utcnow_iso
from .transport import HttpTransport

logger = logging.getLogger("uplink.simulator")


def make_event(seq: int, *, name: str = "simulated") -> Dict[str, Any]:
    return {
        "message_id": uuid.uuid4().hex,
        "type": "track",
        "event": name,
        "timestamp": utcnow_iso(),
        "properties": {"seq": seq},
    }


def build_coordinator(config: UplinkConfig) -> FlushCoordinator:
    storage = SqliteEventStorage(config.buffer_path, max_batch_events=config.max_batch_events)

    def _transport(api_key: str, api_host: str) -> HttpTransport:
        return HttpTransport(
            api_host=api_host,
            api_key=api_key,
            timeout_s=config.upload_timeout_s,
            max_workers=config.upload_workers,
        )

    return FlushCoordinator(
        storage=storage,
        settings=config.flush_settings,
        transport=HttpTransport(
            api_host=config.api_host,
            timeout_s=config.upload_timeout_s,
            max_workers=config.upload_workers,
        ),
        transport_factory=_transport,
        retention=config.retention,
    )


def _wait_for_drain(coordinator: FlushCoordinator, *, timeout_s: float) -> bool:
    deadline = time.monotonic() + max(0.0, timeout_s)
    while True:
        coordinator.registry.sweep()
        if coordinator.registry.count() == 0:
            return True
        if time.monotonic() >= deadline:
            return False
        time.sleep(0.1)


def main() -> None:
    load_dotenv()
    load_dotenv(Path(__file__).resolve().parent / ".env")

    parser = argparse.ArgumentParser(description="Queue synthetic events through the uplink flush pipeline")
    parser.add_argument("--events", type=int, default=50, help="Number of events to queue")
    parser.add_argument("--rate", type=float, default=10.0, help="Events per second (0 = as fast as possible)")
    parser.add_argument("--api-host", default=None, help="Apply this apiHost as remote settings")
    parser.add_argument("--api-key", default=None, help="Apply this apiKey as remote settings")
    parser.add_argument(
        "--drain-timeout-s",
        type=float,
        default=30.0,
        help="How long to wait for in-flight uploads before exiting",
    )
    args = parser.parse_args()

    if args.events < 0:
        raise SystemExit("--events must be >= 0")

    try:
        config = load_uplink_config_from_env()
    except UplinkConfigError as exc:
        raise SystemExit(f"[uplink-simulator] invalid config: {exc}") from exc

    configure_logging(level=config.log_level, log_format=config.log_format)

    coordinator = build_coordinator(config)
    coordinator.start()

    if args.api_host or args.api_key:
        coordinator.apply_settings(
            {"integrations": {INTEGRATION_KEY: {"apiKey": args.api_key, "apiHost": args.api_host}}}
        )

    logger.info(
        "simulating events=%s rate=%s api=%s buffer=%s flush_at=%s interval=%ss",
        args.events,
        args.rate,
        config.api_host,
        config.buffer_path,
        config.flush_at,
        config.flush_interval_s,
    )

    min_interval_s = 1.0 / args.rate if args.rate > 0 else 0.0
    try:
        for seq in range(args.events):
            coordinator.queue(make_event(seq))
            if min_interval_s:
                time.sleep(min_interval_s)

        coordinator.enter_background()
        drained = _wait_for_drain(coordinator, timeout_s=args.drain_timeout_s)
        if not drained:
            logger.warning("uploads still in flight after %.1fs", args.drain_timeout_s)
    finally:
        coordinator.close()

    print(json.dumps(coordinator.metrics(), sort_keys=True))


if __name__ == "__main__":
    main()
