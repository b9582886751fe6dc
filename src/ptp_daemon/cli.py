"""Command-line interface for the PTP daemon."""

from __future__ import annotations

import argparse
import logging
import signal
import sys
from pathlib import Path

from .config import (
    DEFAULT_METRICS_PORT,
    DEFAULT_PROFILE_DIR,
    DEFAULT_RUN_DIR,
    DEFAULT_UPDATE_INTERVAL,
    DaemonConfig,
)

log = logging.getLogger(__name__)

_SHUTDOWN_SIGNALS = (signal.SIGTERM, signal.SIGINT, signal.SIGHUP, signal.SIGQUIT)


def parse_args(argv: list[str] | None = None) -> DaemonConfig:
    """Parse command-line arguments and return a DaemonConfig."""
    defaults = DaemonConfig()
    parser = argparse.ArgumentParser(
        prog="ptp-daemon",
        description="Supervise linuxptp processes and export clock telemetry",
    )
    parser.add_argument(
        "--update-interval",
        type=int,
        default=DEFAULT_UPDATE_INTERVAL,
        help=f"Seconds between profile re-reads (default: {DEFAULT_UPDATE_INTERVAL})",
    )
    parser.add_argument(
        "--linuxptp-profile-path",
        type=Path,
        default=DEFAULT_PROFILE_DIR,
        help=f"Directory holding the node profiles (default: {DEFAULT_PROFILE_DIR})",
    )
    parser.add_argument(
        "--node-name",
        default=defaults.node_name,
        help="Node name used for the profile file and metric labels (default: $NODE_NAME)",
    )
    parser.add_argument(
        "--metrics-port",
        type=int,
        default=DEFAULT_METRICS_PORT,
        help=f"Prometheus exporter port, 0 to disable (default: {DEFAULT_METRICS_PORT})",
    )
    parser.add_argument(
        "--plugin",
        action="append",
        dest="plugins",
        help="Hardware plugin to register, may be repeated (default: e810)",
    )
    parser.add_argument(
        "--run-dir",
        type=Path,
        default=DEFAULT_RUN_DIR,
        help=f"Directory for generated process configuration (default: {DEFAULT_RUN_DIR})",
    )
    parser.add_argument(
        "--holdover-scan-interval",
        type=float,
        default=defaults.holdover_scan_interval,
        help="Seconds between holdover expiry checks (default: 1.0)",
    )
    parser.add_argument(
        "--restart-backoff",
        type=float,
        default=defaults.restart_backoff,
        help="Seconds before restarting an exited process (default: 1.0)",
    )
    parser.add_argument(
        "--hook-timeout",
        type=float,
        default=defaults.hook_timeout,
        help="Upper bound in seconds for one plugin hook call (default: 30.0)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Log at DEBUG level",
    )

    args = parser.parse_args(argv)

    if args.update_interval <= 0:
        parser.error("--update-interval must be positive")
    if args.holdover_scan_interval <= 0:
        parser.error("--holdover-scan-interval must be positive")

    return DaemonConfig(
        node_name=args.node_name,
        profile_dir=args.linuxptp_profile_path,
        update_interval=args.update_interval,
        run_dir=args.run_dir,
        metrics_port=args.metrics_port,
        plugins=args.plugins if args.plugins is not None else defaults.plugins,
        holdover_scan_interval=args.holdover_scan_interval,
        restart_backoff=args.restart_backoff,
        hook_timeout=args.hook_timeout,
        verbose=args.verbose,
    )


def main(argv: list[str] | None = None) -> None:
    """Entry point for the ptp-daemon CLI."""
    config = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if config.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if not config.node_name:
        log.error("node name is not set (use --node-name or NODE_NAME)")
        sys.exit(2)

    # Import here so --help works without the runtime dependencies loaded
    from .daemon import Daemon

    daemon = Daemon(config)

    def _signal_handler(signum: int, frame: object) -> None:
        log.info("Received %s, shutting down", signal.Signals(signum).name)
        daemon.stop()

    for sig in _SHUTDOWN_SIGNALS:
        signal.signal(sig, _signal_handler)

    log.info(
        "Starting ptp-daemon on node %s, profile %s, update interval %ds",
        config.node_name,
        config.profile_path,
        config.update_interval,
    )
    try:
        if config.metrics_port:
            daemon.sink.serve(config.metrics_port)
        daemon.run()
    except OSError as exc:
        log.error("%s", exc)
        sys.exit(1)
