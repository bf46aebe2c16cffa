"""Command-line interface for the mock robot control process."""

import argparse
import logging
import os
import signal

import leggedlink.config as cfg
from leggedlink.config import TRACE
from leggedlink.mock.robot_server import MockRobotServer

logger = logging.getLogger("leggedlink.cli.mock_server")


def _resolve_log_level(args: argparse.Namespace) -> int:
    # Precedence:
    #   1) Explicit --log-level
    #   2) Verbose / quiet flags
    #   3) Environment-driven TRACE (LEGGEDLINK_TRACE=1 via TRACE_ENABLED)
    #   4) Default INFO
    if args.log_level:
        if args.log_level == "TRACE":
            cfg.TRACE_ENABLED = True
            return TRACE
        return getattr(logging, args.log_level)
    if args.verbose >= 3:
        cfg.TRACE_ENABLED = True
        return TRACE
    if args.verbose >= 2:
        return logging.DEBUG
    if args.verbose == 1:
        return logging.INFO
    if args.quiet:
        return logging.WARNING
    if cfg.TRACE_ENABLED:
        return TRACE
    return logging.INFO


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Mock legged-robot control process")
    parser.add_argument("--host", default=cfg.DEFAULT_HOST, help="TCP bind address")
    parser.add_argument("--port", type=int, default=cfg.DEFAULT_PORT, help="TCP port")
    parser.add_argument(
        "--heartbeat-replies",
        type=int,
        default=None,
        help="Answer only the first N client heartbeats (default: all)",
    )
    parser.add_argument(
        "--status-interval",
        type=float,
        default=1.0,
        help="Seconds between battery/mode status pushes (0 disables)",
    )
    parser.add_argument(
        "--battery", type=int, default=100, help="Reported battery level (0-100)"
    )
    parser.add_argument(
        "--no-ack",
        action="store_true",
        help="Do not report requested modes back as current modes",
    )

    # Verbose logging options
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity; -v=INFO, -vv=DEBUG, -vvv=TRACE",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        help="Enable quiet logging (WARNING level)",
    )
    parser.add_argument(
        "--log-level",
        choices=["TRACE", "DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Set specific log level",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the mock server."""
    args = build_parser().parse_args(argv)
    log_level = _resolve_log_level(args)

    logging.basicConfig(
        level=log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    third_party_log_level = log_level if log_level >= logging.INFO else logging.INFO
    logging.getLogger("numba").setLevel(third_party_log_level)

    # Env vars may override the bind address
    env_host = os.getenv("LEGGEDLINK_MOCK_HOST")
    env_port = os.getenv("LEGGEDLINK_MOCK_PORT")
    host = env_host.strip() if env_host else args.host
    try:
        port = int(env_port) if env_port else args.port
    except (TypeError, ValueError):
        port = args.port

    server = MockRobotServer(
        host=host,
        port=port,
        heartbeat_replies=args.heartbeat_replies,
        ack_mode_requests=not args.no_ack,
        status_interval_s=args.status_interval or None,
        battery_level=max(0, min(100, args.battery)),
    )

    def handle_sigterm(signum, frame):
        """Handle SIGTERM signal for graceful shutdown."""
        logger.info("Received SIGTERM, shutting down...")
        server.stop()
        raise SystemExit(0)

    signal.signal(signal.SIGTERM, handle_sigterm)

    try:
        server.serve_forever()
    except KeyboardInterrupt:
        logger.info("Shutting down...")
    except OSError as e:
        logger.error(f"Failed to start mock server: {e}")
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
