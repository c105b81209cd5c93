"""Relay daemon -- polls EKM meters through the gateway and posts to the API.

Foreground loop driven by a TOML config file.  Every sensor message
the gateway reports is relayed to the API; configured meters are read
round-robin.  Shuts down cleanly on SIGINT or SIGTERM.

Example:
    Run from the command line::

        ekmrelay config.toml -v
"""

import argparse
import logging
import signal
import sys
import threading

from ekmrelay.api_client import ApiClient
from ekmrelay.config import FEATURE_FLAGS, load_config
from ekmrelay.cycle import ReadingCycle
from ekmrelay.gateway import SerialGateway

log = logging.getLogger(__name__)

_shutdown = threading.Event()


def _on_signal(signum: int, frame) -> None:
    """Set the module-level shutdown event on SIGINT/SIGTERM."""
    _shutdown.set()


def run(cfg: dict, gateway, api, shutdown: threading.Event, timer_factory=threading.Timer) -> ReadingCycle:
    """Run the relay until *shutdown* is set or the gateway fails.

    Returns the reading cycle so callers can inspect its counters.

    Example:
        >>> cycle = run(cfg, gateway, api, ev)
        >>> cycle.counters["readings_forwarded"]
        12
    """
    cycle = ReadingCycle(
        gateway,
        api,
        cfg["meters"],
        request_timeout=cfg["request_timeout"],
        reading_interval=cfg["reading_interval"],
        timer_factory=timer_factory,
    )

    def on_ready():
        if api.gateway_id is None:
            api.gateway_id = getattr(gateway, "mac_address", None)
        cycle.on_ready()

    try:
        gateway.run(on_ready, cycle.on_message, shutdown)
    finally:
        cycle.stop()
        log.info("cycle counters: %s", cycle.counters)

    return cycle


def main() -> None:
    """CLI entry point -- parse args, load config, run the daemon.

    Example:
        From the shell::

            ekmrelay config.toml
            ekmrelay config.toml -v
    """
    _shutdown.clear()

    parser = argparse.ArgumentParser(description="EKM meter relay")
    parser.add_argument("config", help="path to TOML config file")
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="enable debug logging",
    )
    args = parser.parse_args()

    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        level=level,
    )

    try:
        cfg = load_config(args.config)
    except OSError as exc:
        print("Failed to load %s: %s" % (args.config, exc), file=sys.stderr)
        sys.exit(1)
    except ValueError as exc:
        print("Errors detected in config file:", file=sys.stderr)
        print(exc, file=sys.stderr)
        sys.exit(1)

    signal.signal(signal.SIGINT, _on_signal)
    signal.signal(signal.SIGTERM, _on_signal)

    log.info(
        "starting: port=%s baudrate=%d meters=%d api=%s "
        "timeout=%.0fs interval=%.0fs",
        cfg["port"], cfg["baudrate"], len(cfg["meters"]), cfg["api_url"],
        cfg["request_timeout"], cfg["reading_interval"],
    )

    gateway = SerialGateway(
        cfg["port"], cfg["baudrate"], {flag: cfg[flag] for flag in FEATURE_FLAGS},
    )
    api = ApiClient(cfg["api_url"], gateway_id=cfg["gateway_id"])
    try:
        run(cfg, gateway, api, _shutdown)
    finally:
        gateway.close()
        api.close()
        log.info("shutting down")


if __name__ == "__main__":
    main()
