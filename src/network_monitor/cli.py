"""
Command-line entry point.

    network-monitor scan 10.0.0.1-254 --ports 22,80 --sandbox
    network-monitor sweep 10.0.0.5 10.0.0.6 --concurrency 2
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Optional

from .config import MonitorConfig
from .exceptions import MonitorError
from .orchestrator import SCAN_TYPES, ScanOptions, ScanOrchestrator, SweepOptions
from .progress import LoggingProgressSink

logger = logging.getLogger(__name__)


def setup_logging(log_level: str = "INFO") -> None:
    """Configure logging for the CLI."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Network discovery and performance monitor")
    parser.add_argument("--config", type=str, help="Path to config file")
    parser.add_argument("--log-level", type=str, default=None, help="Log level")
    parser.add_argument("--docker-host", type=str, help="Docker daemon URL for the sandbox")

    sub = parser.add_subparsers(dest="command", required=True)

    scan = sub.add_parser("scan", help="Discover devices in an IP range")
    scan.add_argument("ip_range", nargs="?", help="Target range (default from config)")
    scan.add_argument("--ports", type=str, help="Comma-separated ports")
    scan.add_argument("--sandbox", action="store_true", help="Run the scan in a container")
    scan.add_argument("--scan-type", choices=SCAN_TYPES, default="syn")
    scan.add_argument("--service-detection", action="store_true", help="Add -sV")
    scan.add_argument("--ssh-scripts", action="store_true", help="Run SSH auth-method scripts")
    scan.add_argument("--timeout", type=float, help="Scan timeout in seconds")

    sweep = sub.add_parser("sweep", help="Measure latency, bandwidth and uptime")
    sweep.add_argument("ips", nargs="+", help="IP addresses to probe")
    sweep.add_argument("--sandbox", action="store_true", help="Probe through the sandbox")
    sweep.add_argument("--concurrency", type=int, help="IPs probed at once")

    return parser


def load_config(args: argparse.Namespace) -> MonitorConfig:
    if args.config:
        config = MonitorConfig.from_yaml(Path(args.config))
    else:
        config = MonitorConfig.from_env()

    if args.log_level:
        config.log_level = args.log_level
    if args.docker_host:
        config.docker_host = args.docker_host

    config.load_credentials()
    return config


async def run(args: argparse.Namespace, config: MonitorConfig) -> dict:
    orchestrator = ScanOrchestrator(config)
    sink = LoggingProgressSink()

    try:
        if args.command == "scan":
            options = ScanOptions(
                ip_range=args.ip_range,
                ports=args.ports,
                scan_type=args.scan_type,
                service_detection=args.service_detection,
                ssh_scripts=args.ssh_scripts,
                use_sandbox=True if args.sandbox else None,
                timeout=args.timeout,
            )
            grouped = await orchestrator.full_scan(options, sink)
            return {vendor: [d.to_dict() for d in devices] for vendor, devices in grouped.items()}

        options = SweepOptions(
            use_sandbox=True if args.sandbox else None,
            concurrency=args.concurrency,
        )
        return await orchestrator.performance_sweep(args.ips, options, sink)
    finally:
        await orchestrator.close()


def main(argv: Optional[list[str]] = None) -> int:
    """Entry point for the network-monitor command."""
    args = build_parser().parse_args(argv)
    config = load_config(args)
    setup_logging(config.log_level)

    errors = config.validate()
    if errors:
        for err in errors:
            logger.error(f"Config error: {err}")
        return 2

    try:
        result = asyncio.run(run(args, config))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 130
    except MonitorError as e:
        logger.error(str(e))
        return 1

    json.dump(result, sys.stdout, indent=2, default=str)
    sys.stdout.write("\n")
    return 0


if __name__ == "__main__":
    sys.exit(main())
