from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
import threading
from typing import Any, Dict, IO, List, Optional

from .config.config_parser import (
    DEFAULT_LISTEN_ADDRESS,
    DEFAULT_PUSH_JOB,
    MODE_PULL,
    MODE_PUSH,
    parse_duration,
    read_config_file,
)
from .config.logging_config import init_logging
from .errors import ConfigError, PrometheusPluginError
from .plugin import PrometheusPlugin

PLUGIN_NAME = "portmaster-plugin-prometheus"

logger = logging.getLogger("portmaster_prometheus.main")


def build_static_config(args: argparse.Namespace) -> Dict[str, Any]:
    """
    Brief: Build the static configuration written by the install command.

    Inputs:
      - args: Parsed install arguments (namespace, subsystem, address, mode,
        push_interval, push_job_name).

    Outputs:
      - dict ready to be serialized as JSON; the ``push`` block is omitted in
        pull mode.

    Raises:
      - ConfigError: invalid mode or push interval.
    """
    if args.mode not in (MODE_PULL, MODE_PUSH):
        raise ConfigError(f"invalid value for --mode: {args.mode!r}")

    cfg: Dict[str, Any] = {
        "namespace": args.namespace,
        "subsystem": args.subsystem,
        "listenAddress": args.address,
        "mode": args.mode,
    }
    if args.mode == MODE_PUSH:
        cfg["push"] = {
            "interval": parse_duration(args.push_interval),
            "job": args.push_job_name,
        }
    return cfg


def _feed_events(plugin: PrometheusPlugin, stream: IO[str], stop: threading.Event) -> None:
    """Read newline-delimited JSON connection events and report each one."""
    log = logging.getLogger("portmaster_prometheus.main.events")
    for lineno, line in enumerate(stream, start=1):
        if stop.is_set():
            break
        line = line.strip()
        if not line:
            continue
        try:
            data = json.loads(line)
        except json.JSONDecodeError as exc:
            log.warning("Skipping malformed event on line %d: %s", lineno, exc)
            continue
        plugin.report_connection(data)
    log.debug("Event stream closed")


def _install_shutdown_handlers(shutdown_event: threading.Event) -> None:
    def _request_shutdown(signum, _frame):
        logger.info("Received %s, initiating shutdown", signal.Signals(signum).name)
        shutdown_event.set()

    for name in ("SIGTERM", "SIGINT", "SIGHUP"):
        sig = getattr(signal, name, None)
        if sig is None:
            continue
        try:
            signal.signal(sig, _request_shutdown)
        except (ValueError, OSError):  # pragma: no cover - non-main thread or platform
            logger.warning("Could not install %s handler on this platform", name)


def run(args: argparse.Namespace) -> int:
    """
    Run the plugin until a shutdown signal arrives.

    Args:
        args: Parsed ``run`` arguments (config, events).

    Returns:
        0 on clean shutdown, 1 when configuration or initialization fails.
    """
    try:
        cfg = read_config_file(args.config)
    except ConfigError as exc:
        print(str(exc), file=sys.stderr)
        return 1

    init_logging(cfg.logging)
    logger.info("Loaded static configuration from %s", args.config)

    shutdown_event = threading.Event()
    plugin = PrometheusPlugin.from_config(
        cfg, shutdown_event=shutdown_event, config_path=args.config
    )
    try:
        plugin.init()
    except PrometheusPluginError as exc:
        logger.error("Failed to start prometheus reporter: %s", exc)
        return 1

    _install_shutdown_handlers(shutdown_event)

    stream: Optional[IO[str]] = None
    if args.events == "-":
        stream = sys.stdin
    elif args.events:
        try:
            stream = open(args.events, "r", encoding="utf-8")
        except OSError as exc:
            logger.error("Cannot open event stream %s: %s", args.events, exc)
            plugin.shutdown()
            return 1

    feeder: Optional[threading.Thread] = None
    try:
        if stream is not None:
            feeder = threading.Thread(
                target=_feed_events,
                args=(plugin, stream, shutdown_event),
                name="portmaster-prometheus-events",
                daemon=True,
            )
            feeder.start()
        shutdown_event.wait()
    finally:
        logger.info("Stopping prometheus reporter")
        plugin.shutdown()
        if stream is not None and stream is not sys.stdin:
            if feeder is not None:
                feeder.join(timeout=1.0)
            stream.close()
    return 0


def install(args: argparse.Namespace) -> int:
    """
    Write the static configuration derived from the install flags.

    Returns:
        0 on success, 1 for invalid flag values.
    """
    try:
        cfg = build_static_config(args)
    except ConfigError as exc:
        logger.error("%s", exc)
        return 1

    blob = json.dumps(cfg, indent=4)
    if args.output in (None, "-"):
        sys.stdout.write(blob + "\n")
    else:
        with open(args.output, "w", encoding="utf-8") as f:
            f.write(blob + "\n")
        logger.info("Wrote static configuration for %s to %s", PLUGIN_NAME, args.output)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=PLUGIN_NAME,
        description="Export Portmaster connection metrics to Prometheus",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run_parser = sub.add_parser("run", help="Run the reporter plugin")
    run_parser.add_argument(
        "--config", required=True, help="Path to the static configuration (JSON or YAML)"
    )
    run_parser.add_argument(
        "--events",
        default=None,
        help="Read newline-delimited JSON connection events from this file ('-' for stdin)",
    )
    run_parser.set_defaults(func=run)

    install_parser = sub.add_parser("install", help="Write the plugin's static configuration")
    install_parser.add_argument("--namespace", default="", help="The namespace for the prometheus metrics")
    install_parser.add_argument("--subsystem", default="", help="The subsystem for the prometheus metrics")
    install_parser.add_argument(
        "--address",
        default=DEFAULT_LISTEN_ADDRESS,
        help="The listen address for pull mode and the address of the pushgateway in push mode",
    )
    install_parser.add_argument("--mode", default=MODE_PULL, help="The operation mode. Either pull or push")
    install_parser.add_argument(
        "--push-interval", default="0", help="The interval between pushes to the gateway (e.g. 10s)"
    )
    install_parser.add_argument(
        "--push-job-name", default=DEFAULT_PUSH_JOB, help="The name of the job when pushing to the gateway"
    )
    install_parser.add_argument("--output", default=None, help="Write the configuration here instead of stdout")
    install_parser.set_defaults(func=install)

    return parser


def main(argv: List[str] | None = None) -> int:
    """
    Command-line entry point.

    Example use:
        portmaster-prometheus install --mode push --address gw:9091 --push-interval 30s
        portmaster-prometheus run --config plugin.json --events -
    """
    args = build_parser().parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    raise SystemExit(main())  # pragma: no cover
