from __future__ import annotations

import argparse
import logging
import logging.handlers
import os
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Sequence

import yaml
from prometheus_client import start_http_server

from nds_monitor.exporter import NdsMetricsPublisher
from nds_monitor.remote import DEFAULT_KEY_PATH, RemoteConfig, RemoteSession
from nds_monitor.scheduler import ProbeScheduler
from nds_monitor.service import ProbeConfig, ProbeResult
from nds_monitor.storage import (
    DEFAULT_QUEUE_CAPACITY,
    MetricQueue,
    PersistenceWorker,
    StoreConfig,
    StoreConnectionError,
)


__version__ = "0.5.0"
LOGGER = logging.getLogger("nds_monitor")
DEFAULT_CONFIG_FILE = Path("/etc/NDSmonitor/config.yml")
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

# Keys understood in the YAML config file, matched case-insensitively.
_FILE_KEYS = {
    "ndshostname": "host",
    "username": "username",
    "password": "password",
    "name": "name",
    "selfmonitor": "self_monitor",
    "refresh": "poll_interval_seconds",
    "influxdbserver": "influxdb_server",
    "influxdb": "influxdb_database",
    "influxusername": "influxdb_username",
    "influxpassword": "influxdb_password",
    "allowrestart": "allow_restart",
}


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class AppConfig:
    remote: RemoteConfig
    probe: ProbeConfig
    store: StoreConfig
    poll_interval_seconds: float
    queue_capacity: int
    max_in_flight_probes: int
    listen_address: str
    listen_port: int
    log_level: str
    syslog: bool


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


def _bool_env(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return _as_bool(value)


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def split_host_port(value: str, default_port: int = 22) -> tuple[str, int]:
    value = value.strip()
    if value.startswith("["):
        host, _, rest = value[1:].partition("]")
        port = rest.lstrip(":")
        return host, int(port) if port else default_port
    if value.count(":") == 1:
        host, port = value.split(":")
        return host, int(port)
    return value, default_port


def read_config_file(path: Path) -> dict[str, Any]:
    with path.open(encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path} does not contain a mapping")
    values: dict[str, Any] = {}
    for key, value in data.items():
        dest = _FILE_KEYS.get(str(key).strip().lower())
        if dest is None:
            LOGGER.warning("ignoring unknown config key %r in %s", key, path)
            continue
        if value is not None:
            values[dest] = value
    return values


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Poll nodogsplash over ssh and store client metrics in InfluxDB")
    parser.add_argument(
        "--config",
        default=os.getenv("NDS_CONFIG_FILE", str(DEFAULT_CONFIG_FILE)),
        help="yaml config file; used when present",
    )
    parser.add_argument(
        "--host",
        default=os.getenv("NDS_HOST"),
        help="gateway ssh address, optionally host:port",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=_int_env("NDS_PORT", 22),
        help="gateway ssh port when --host has none",
    )
    parser.add_argument(
        "--username",
        default=os.getenv("NDS_USERNAME"),
        help="ssh username on the gateway",
    )
    parser.add_argument(
        "--password",
        default=os.getenv("NDS_PASSWORD"),
        help="ssh password; when unset the private key file is used",
    )
    parser.add_argument(
        "--key-path",
        default=os.getenv("NDS_KEY_PATH", str(DEFAULT_KEY_PATH)),
        help="ssh private key used when no password is set",
    )
    parser.add_argument(
        "--name",
        default=os.getenv("NDS_NAME"),
        help="captive portal name used as the measurement tag (defaults to the host)",
    )
    parser.add_argument(
        "--poll-interval-seconds",
        type=float,
        default=_float_env("NDS_POLL_INTERVAL_SECONDS", 60.0),
        help="interval between probes",
    )
    parser.add_argument(
        "--command-timeout-seconds",
        type=float,
        default=_float_env("NDS_COMMAND_TIMEOUT_SECONDS", 60.0),
        help="timeout for each remote command",
    )
    parser.add_argument(
        "--max-in-flight-probes",
        type=int,
        default=_int_env("NDS_MAX_IN_FLIGHT_PROBES", 1),
        help="probe cycles allowed to run at the same time",
    )
    parser.add_argument(
        "--self-monitor",
        action=argparse.BooleanOptionalAction,
        default=_bool_env("NDS_SELF_MONITOR", False),
        help="record ProbeTime alongside the client metrics",
    )
    parser.add_argument(
        "--allow-restart",
        action=argparse.BooleanOptionalAction,
        default=_bool_env("NDS_ALLOW_RESTART", False),
        help="restart nodogsplash when it is detected as not running",
    )
    parser.add_argument(
        "--influxdb-server",
        default=os.getenv("INFLUXDB_SERVER"),
        help="influxdb url, for example http://influx:8086",
    )
    parser.add_argument(
        "--influxdb-database",
        default=os.getenv("INFLUXDB_DATABASE"),
        help="influxdb database name",
    )
    parser.add_argument(
        "--influxdb-username",
        default=os.getenv("INFLUXDB_USERNAME"),
        help="influxdb username",
    )
    parser.add_argument(
        "--influxdb-password",
        default=os.getenv("INFLUXDB_PASSWORD"),
        help="influxdb password",
    )
    parser.add_argument(
        "--queue-capacity",
        type=int,
        default=_int_env("NDS_QUEUE_CAPACITY", DEFAULT_QUEUE_CAPACITY),
        help="metric batches buffered for the store worker before dropping",
    )
    parser.add_argument(
        "--listen-address",
        default=os.getenv("NDS_LISTEN_ADDRESS", "0.0.0.0"),
        help="http bind address for the self-monitoring /metrics endpoint",
    )
    parser.add_argument(
        "--listen-port",
        type=int,
        default=_int_env("NDS_LISTEN_PORT", 0),
        help="http bind port for /metrics; 0 disables the endpoint",
    )
    parser.add_argument(
        "--log-level",
        default=os.getenv("NDS_LOG_LEVEL", "INFO"),
        help="python logging level (DEBUG, INFO, WARNING, ERROR)",
    )
    parser.add_argument(
        "--syslog",
        action=argparse.BooleanOptionalAction,
        default=_bool_env("NDS_SYSLOG", False),
        help="also log to the local syslog socket",
    )
    return parser


def build_config(args: argparse.Namespace) -> AppConfig:
    if not args.host:
        raise ConfigError("no NDS host specified")
    if not args.username:
        raise ConfigError("no ssh username specified")
    try:
        host, port = split_host_port(str(args.host), int(args.port))
        poll_interval_seconds = float(args.poll_interval_seconds)
    except ValueError as error:
        raise ConfigError(f"bad host or polling time: {error}") from error
    if poll_interval_seconds <= 0:
        raise ConfigError("poll interval must be positive")

    password = str(args.password) if args.password else None
    key_path = Path(args.key_path)
    if password is None and not key_path.is_file():
        raise ConfigError(f"no password set and no ssh key present at {key_path}")

    if not args.influxdb_server:
        raise ConfigError("no influxdb address set")
    if not args.influxdb_database:
        raise ConfigError("no influxdb database set")
    if args.queue_capacity < 1:
        raise ConfigError("queue capacity must be positive")
    if args.max_in_flight_probes < 1:
        raise ConfigError("max in-flight probes must be at least 1")

    command_timeout_seconds = float(args.command_timeout_seconds)
    remote = RemoteConfig(
        host=host,
        port=port,
        username=str(args.username),
        password=password,
        key_path=key_path,
        command_timeout_seconds=command_timeout_seconds,
    )
    probe = ProbeConfig(
        portal_name=str(args.name) if args.name else host,
        database=str(args.influxdb_database),
        self_monitor=_as_bool(args.self_monitor),
        allow_restart=_as_bool(args.allow_restart),
        command_timeout_seconds=command_timeout_seconds,
    )
    store = StoreConfig(
        url=str(args.influxdb_server),
        database=str(args.influxdb_database),
        username=str(args.influxdb_username) if args.influxdb_username else None,
        password=str(args.influxdb_password) if args.influxdb_password else None,
    )
    return AppConfig(
        remote=remote,
        probe=probe,
        store=store,
        poll_interval_seconds=poll_interval_seconds,
        queue_capacity=args.queue_capacity,
        max_in_flight_probes=args.max_in_flight_probes,
        listen_address=args.listen_address,
        listen_port=args.listen_port,
        log_level=str(args.log_level).upper(),
        syslog=bool(args.syslog),
    )


def load_config(argv: Sequence[str] | None = None) -> AppConfig:
    parser = build_arg_parser()
    preliminary, _ = parser.parse_known_args(argv)
    config_path = Path(preliminary.config)
    if config_path.is_file():
        try:
            parser.set_defaults(**read_config_file(config_path))
        except (OSError, yaml.YAMLError, ConfigError) as error:
            parser.error(f"unable to read {config_path}: {error}")
    args = parser.parse_args(argv)
    try:
        return build_config(args)
    except ConfigError as error:
        parser.error(str(error))


def configure_logging(config: AppConfig) -> None:
    logging.basicConfig(level=config.log_level, format=LOG_FORMAT)
    if not config.syslog:
        return
    try:
        handler = logging.handlers.SysLogHandler(address="/dev/log")
    except OSError as error:
        LOGGER.warning("syslog unavailable: %s", error)
        return
    handler.ident = "NDSmonitor: "
    handler.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))
    logging.getLogger().addHandler(handler)


def _log_probe_result(result: ProbeResult) -> None:
    if not result.success:
        LOGGER.warning("ndsctl probe failed: %s", result.error)
    elif result.service_down:
        LOGGER.warning("ndsctl probe recorded nodogsplash error")
    else:
        LOGGER.info(
            "ndsctl probe successful: %d authenticated, %d pre-auth",
            result.authenticated,
            result.preauth,
        )


def main(argv: Sequence[str] | None = None) -> None:
    config = load_config(argv)
    configure_logging(config)
    LOGGER.info("NDS monitor version %s starting up", __version__)

    metric_queue = MetricQueue(config.queue_capacity)
    worker = PersistenceWorker(config.store, metric_queue)
    try:
        worker.start()
    except StoreConnectionError as error:
        LOGGER.critical("unable to connect to store at startup: %s", error)
        raise SystemExit(1) from error

    metrics: NdsMetricsPublisher | None = None
    if config.listen_port:
        metrics = NdsMetricsPublisher()
        start_http_server(
            port=config.listen_port,
            addr=config.listen_address,
            registry=metrics.registry,
        )
        LOGGER.info("metrics server listening on http://%s:%d/metrics", config.listen_address, config.listen_port)

    def on_result(result: ProbeResult) -> None:
        _log_probe_result(result)
        if metrics is not None:
            metrics.apply_probe_result(portal=config.probe.portal_name, result=result)
            metrics.observe_pipeline(metric_queue=metric_queue, worker=worker)

    scheduler = ProbeScheduler(
        remote=RemoteSession(config.remote),
        probe_config=config.probe,
        metric_queue=metric_queue,
        interval_seconds=config.poll_interval_seconds,
        max_in_flight=config.max_in_flight_probes,
        on_result=on_result,
    )
    signal.signal(signal.SIGTERM, lambda _signum, _frame: scheduler.stop())
    LOGGER.info("startup successful, polling %s every %.0fs", config.remote.host, config.poll_interval_seconds)

    try:
        scheduler.run_forever()
    except KeyboardInterrupt:
        LOGGER.info("shutdown requested, exiting")
    finally:
        scheduler.stop()
        metric_queue.close()
        worker.join(timeout=config.store.timeout_seconds)


if __name__ == "__main__":
    main()
