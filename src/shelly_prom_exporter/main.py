from __future__ import annotations

import argparse
import asyncio
import logging
import os
import time
from collections.abc import Sequence
from dataclasses import dataclass

from prometheus_client import start_http_server

from shelly_prom_exporter.connection import (
    DEFAULT_MINIMUM_REQUEST_INTERVAL_SECONDS,
    METRIC_NAMES,
    PollResult,
    ShellyPlugConnection,
    TargetDevice,
)
from shelly_prom_exporter.exporter import ShellyMetricsPublisher
from shelly_prom_exporter.ws import DEFAULT_CONNECT_TIMEOUT_SECONDS


LOGGER = logging.getLogger("shelly_prom_exporter")


@dataclass(frozen=True)
class AppConfig:
    targets: tuple[TargetDevice, ...]
    poll_interval_seconds: float
    minimum_request_interval_seconds: float
    connect_timeout_seconds: float
    listen_address: str
    listen_port: int
    run_once: bool
    log_level: str


def _float_env(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    return float(value)


def _int_env(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    return int(value)


def _list_env(name: str) -> list[str]:
    value = os.getenv(name)
    if value is None:
        return []
    return [item.strip() for item in value.split(";") if item.strip()]


def _split_assignment(raw: str, option: str) -> tuple[str, str]:
    name, separator, value = raw.partition("=")
    name = name.strip()
    value = value.strip()
    if not separator or not name or not value:
        raise ValueError(f"{option} expects NAME=VALUE, got {raw!r}")
    return name, value


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Prometheus exporter for Shelly Plus Plug telemetry")
    parser.add_argument(
        "--target",
        action="append",
        default=None,
        help="device to poll as NAME=URL, repeatable (env SHELLY_TARGETS, ';' separated)",
    )
    parser.add_argument(
        "--password",
        action="append",
        default=None,
        help="device password as NAME=SECRET, repeatable (env SHELLY_PASSWORDS, ';' separated)",
    )
    parser.add_argument(
        "--ignore",
        action="append",
        default=None,
        help=(
            "metrics to skip for a device as NAME=metric[,metric], repeatable "
            f"(env SHELLY_IGNORE, ';' separated); metrics: {', '.join(METRIC_NAMES)}"
        ),
    )
    parser.add_argument(
        "--poll-interval-seconds",
        type=float,
        default=_float_env("SHELLY_POLL_INTERVAL_SECONDS", 5.0),
        help="interval between telemetry polls",
    )
    parser.add_argument(
        "--min-request-interval-seconds",
        type=float,
        default=_float_env("SHELLY_MIN_REQUEST_INTERVAL_SECONDS", DEFAULT_MINIMUM_REQUEST_INTERVAL_SECONDS),
        help="minimum time between two RPC requests to the same device",
    )
    parser.add_argument(
        "--connect-timeout-seconds",
        type=float,
        default=_float_env("SHELLY_CONNECT_TIMEOUT_SECONDS", DEFAULT_CONNECT_TIMEOUT_SECONDS),
        help="timeout for each websocket handshake",
    )
    parser.add_argument(
        "--listen-address",
        default=os.getenv("SHELLY_LISTEN_ADDRESS", "0.0.0.0"),
        help="http bind address for /metrics endpoint",
    )
    parser.add_argument(
        "--listen-port",
        type=int,
        default=_int_env("SHELLY_LISTEN_PORT", 9924),
        help="http bind port for /metrics endpoint",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="run a single poll and exit",
    )
    parser.add_argument(
        "--log-level",
        default=os.getenv("SHELLY_LOG_LEVEL", "INFO"),
        help="python logging level (DEBUG, INFO, WARNING, ERROR)",
    )
    return parser


def build_targets(
    target_specs: Sequence[str],
    password_specs: Sequence[str],
    ignore_specs: Sequence[str],
) -> tuple[TargetDevice, ...]:
    targets: dict[str, str] = {}
    for raw in target_specs:
        name, url = _split_assignment(raw, "--target")
        if name in targets:
            raise ValueError(f"duplicate target name {name!r}")
        targets[name] = url

    passwords: dict[str, str] = {}
    for raw in password_specs:
        name, password = _split_assignment(raw, "--password")
        if name not in targets:
            raise ValueError(f"--password refers to unknown target {name!r}")
        passwords[name] = password

    ignored: dict[str, set[str]] = {name: set() for name in targets}
    for raw in ignore_specs:
        name, metrics = _split_assignment(raw, "--ignore")
        if name not in targets:
            raise ValueError(f"--ignore refers to unknown target {name!r}")
        for metric in metrics.split(","):
            metric = metric.strip().lower()
            if metric not in METRIC_NAMES:
                raise ValueError(f"unknown metric {metric!r} for --ignore (expected one of {', '.join(METRIC_NAMES)})")
            ignored[name].add(metric)

    return tuple(
        TargetDevice(
            name=name,
            url=url,
            password=passwords.get(name),
            ignore_power="power" in ignored[name],
            ignore_voltage="voltage" in ignored[name],
            ignore_current="current" in ignored[name],
            ignore_temperature="temperature" in ignored[name],
            ignore_relay_state="relay_state" in ignored[name],
        )
        for name, url in targets.items()
    )


def load_config(argv: Sequence[str] | None = None) -> AppConfig:
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    target_specs = args.target if args.target is not None else _list_env("SHELLY_TARGETS")
    password_specs = args.password if args.password is not None else _list_env("SHELLY_PASSWORDS")
    ignore_specs = args.ignore if args.ignore is not None else _list_env("SHELLY_IGNORE")
    if not target_specs:
        parser.error("at least one --target NAME=URL (or SHELLY_TARGETS) is required")
    try:
        targets = build_targets(target_specs, password_specs, ignore_specs)
    except ValueError as error:
        parser.error(str(error))

    return AppConfig(
        targets=targets,
        poll_interval_seconds=args.poll_interval_seconds,
        minimum_request_interval_seconds=args.min_request_interval_seconds,
        connect_timeout_seconds=args.connect_timeout_seconds,
        listen_address=args.listen_address,
        listen_port=args.listen_port,
        run_once=bool(args.once),
        log_level=args.log_level,
    )


async def _run_poll_cycle(
    *,
    connections: Sequence[ShellyPlugConnection],
    metrics: ShellyMetricsPublisher,
) -> list[PollResult]:
    results = await asyncio.gather(*(connection.poll() for connection in connections))
    for connection, result in zip(connections, results):
        target = connection.get_target_name()
        metrics.apply_poll_result(target=target, result=result)
        if result.success:
            LOGGER.info("%s: telemetry poll successful: %d values", target, len(result.values))
        else:
            LOGGER.warning("%s: telemetry poll failed: %s", target, result.error)
    return list(results)


async def run(config: AppConfig, metrics: ShellyMetricsPublisher) -> None:
    connections = [
        ShellyPlugConnection(
            target,
            minimum_request_interval=config.minimum_request_interval_seconds,
            connect_timeout=config.connect_timeout_seconds,
        )
        for target in config.targets
    ]
    try:
        await asyncio.gather(*(connection.start() for connection in connections))

        LOGGER.info("running initial poll on startup")
        await _run_poll_cycle(connections=connections, metrics=metrics)
        if config.run_once:
            return
        next_poll_at = time.monotonic() + config.poll_interval_seconds

        while True:
            sleep_for = max(0.0, next_poll_at - time.monotonic())
            await asyncio.sleep(sleep_for)
            await _run_poll_cycle(connections=connections, metrics=metrics)
            next_poll_at += config.poll_interval_seconds
    finally:
        await asyncio.gather(*(connection.close() for connection in connections))


def main() -> None:
    config = load_config()
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    metrics = ShellyMetricsPublisher()
    start_http_server(
        port=config.listen_port,
        addr=config.listen_address,
        registry=metrics.registry,
    )
    LOGGER.info("metrics server listening on http://%s:%d/metrics", config.listen_address, config.listen_port)

    try:
        asyncio.run(run(config, metrics))
    except KeyboardInterrupt:
        LOGGER.info("shutdown requested, exiting")


if __name__ == "__main__":
    main()
