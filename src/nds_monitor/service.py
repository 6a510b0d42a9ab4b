from __future__ import annotations

import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable

import paramiko

from nds_monitor.remote import CommandOutput, RemoteSession, RemoteSessionError, run_on_channel
from nds_monitor.storage import MetricBatch, MetricPoint, MetricQueue


LOGGER = logging.getLogger("nds_monitor")
STATUS_COMMAND = "ndsctl json"
RESTART_COMMAND = "/etc/init.d/nodogsplash restart"
SERVICE_DOWN_MARKER = "ndsctl: nodogsplash probably not started"
AUTHENTICATED_STATE = "Authenticated"
PORTAL_TAG = "Captive Portal"
KIB = 1024
SLOW_PROBE_SECONDS = 180.0
_DECIMAL_RE = re.compile(r"[+-]?[0-9]+")


class CommandError(Exception):
    """Raised when a remote command could not be executed at transport level."""


class StatusDecodeError(ValueError):
    """Raised when the ndsctl status document cannot be decoded."""


@dataclass(frozen=True)
class ProbeConfig:
    portal_name: str
    database: str
    self_monitor: bool = False
    allow_restart: bool = False
    command_timeout_seconds: float = 60.0


@dataclass(frozen=True)
class ClientSession:
    identifier: str
    ip_address: str = ""
    mac_address: str = ""
    start_time: str = ""
    active_time: str = ""
    duration: str = ""
    token: str = ""
    state: str = ""
    downloaded_kib: str = ""
    uploaded_kib: str = ""

    @property
    def authenticated(self) -> bool:
        return self.state == AUTHENTICATED_STATE


@dataclass(frozen=True)
class StatusSnapshot:
    client_count: int
    clients: dict[str, ClientSession] = field(default_factory=dict)


@dataclass(frozen=True)
class FetchResult:
    output: bytes
    exit_status: int
    service_down: bool

    @property
    def text(self) -> str:
        return self.output.decode("utf-8", errors="replace")


@dataclass(frozen=True)
class ProbeResult:
    success: bool
    observed_at: int | None = None
    probe_duration_seconds: float | None = None
    service_down: bool = False
    authenticated: int = 0
    preauth: int = 0
    batch: MetricBatch | None = None
    queued: bool = False
    error: str | None = None


def _field_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def parse_counter(text: str) -> int | None:
    if _DECIMAL_RE.fullmatch(text) is None:
        return None
    return int(text)


def parse_status(output: bytes | str) -> StatusSnapshot:
    """Decode ``ndsctl json`` output into a snapshot.

    Numbers are kept as their decimal text so large counters survive untouched;
    conversion to integers happens in :func:`extract_metrics`.
    """
    if isinstance(output, bytes):
        output = output.decode("utf-8", errors="replace")
    try:
        document = json.loads(output, parse_int=str, parse_float=str)
    except json.JSONDecodeError as error:
        raise StatusDecodeError(f"status output is not JSON: {error}") from error
    if not isinstance(document, dict):
        raise StatusDecodeError("status document is not an object")

    raw_clients = document.get("clients", {})
    if raw_clients is None:
        raw_clients = {}
    if not isinstance(raw_clients, dict):
        raise StatusDecodeError("status clients entry is not an object")

    clients: dict[str, ClientSession] = {}
    for key, record in raw_clients.items():
        if not isinstance(record, dict):
            raise StatusDecodeError(f"client record {key!r} is not an object")
        identifier = _field_text(record.get("id")) or str(key)
        clients[str(key)] = ClientSession(
            identifier=identifier,
            ip_address=_field_text(record.get("ip")),
            mac_address=_field_text(record.get("mac")),
            start_time=_field_text(record.get("added")),
            active_time=_field_text(record.get("active")),
            duration=_field_text(record.get("duration")),
            token=_field_text(record.get("token")),
            state=_field_text(record.get("state")),
            downloaded_kib=_field_text(record.get("downloaded")),
            uploaded_kib=_field_text(record.get("uploaded")),
        )

    client_count = parse_counter(_field_text(document.get("client_list_length")))
    if client_count is None:
        client_count = len(clients)
    return StatusSnapshot(client_count=client_count, clients=clients)


def is_service_down(output: bytes | str) -> bool:
    if isinstance(output, bytes):
        output = output.decode("utf-8", errors="replace")
    return SERVICE_DOWN_MARKER in output


def fetch_status(channel: Any, timeout_seconds: float = 60.0) -> FetchResult:
    try:
        result = run_on_channel(channel, STATUS_COMMAND, timeout_seconds)
    except (paramiko.SSHException, OSError) as error:
        raise CommandError(f"{STATUS_COMMAND} failed: {error}") from error
    service_down = is_service_down(result.output)
    if service_down:
        LOGGER.warning("nodogsplash is not running on remote system")
    elif result.exit_status != 0:
        LOGGER.warning("%s exited with status %d", STATUS_COMMAND, result.exit_status)
        service_down = True
    return FetchResult(output=result.output, exit_status=result.exit_status, service_down=service_down)


def restart_service(remote: RemoteSession) -> CommandOutput | None:
    LOGGER.warning("restarting nodogsplash on %s", remote.config.host)
    try:
        result = remote.run(RESTART_COMMAND)
    except (RemoteSessionError, paramiko.SSHException, OSError) as error:
        LOGGER.error("nodogsplash restart failed: %s", error)
        return None
    LOGGER.info("nodogsplash restart exited %d: %s", result.exit_status, result.text.strip())
    return result


def _session_tags(portal_name: str, session: ClientSession) -> dict[str, str]:
    return {
        PORTAL_TAG: portal_name,
        "Mac_Address": session.mac_address.upper(),
        "Ip_Address": session.ip_address,
        "ID": session.identifier,
        "Token": session.token,
        "Auth": session.state,
    }


def count_sessions(snapshot: StatusSnapshot) -> tuple[int, int]:
    authenticated = sum(1 for session in snapshot.clients.values() if session.authenticated)
    return authenticated, len(snapshot.clients) - authenticated


def extract_metrics(
    snapshot: StatusSnapshot | None,
    *,
    portal_name: str,
    database: str,
    observed_at: int,
    service_down: bool = False,
    probe_time_ns: int | None = None,
) -> MetricBatch:
    portal_tags = {PORTAL_TAG: portal_name}
    points: list[MetricPoint] = []

    def add(measurement: str, tags: dict[str, str], value: float) -> None:
        points.append(MetricPoint(measurement=measurement, tags=tags, value=value, timestamp=observed_at))

    if snapshot is not None and not service_down:
        for session in snapshot.clients.values():
            if not session.authenticated:
                continue
            downloaded = parse_counter(session.downloaded_kib)
            uploaded = parse_counter(session.uploaded_kib)
            if downloaded is None or uploaded is None:
                LOGGER.debug(
                    "skipping traffic counters for %s: downloaded=%r uploaded=%r",
                    session.identifier,
                    session.downloaded_kib,
                    session.uploaded_kib,
                )
                continue
            tags = _session_tags(portal_name, session)
            add("Download_Bytes", tags, downloaded * KIB)
            add("Upload_Bytes", tags, uploaded * KIB)

    if service_down:
        add("NdsError", portal_tags, 1)
    else:
        authenticated, preauth = count_sessions(snapshot) if snapshot is not None else (0, 0)
        add("Authenticated", portal_tags, authenticated)
        add("PreAuth", portal_tags, preauth)
        add("NdsError", portal_tags, 0)

    if probe_time_ns is not None:
        add("ProbeTime", portal_tags, probe_time_ns)

    return MetricBatch(database=database, points=tuple(points))


def probe_once(
    config: ProbeConfig,
    remote: RemoteSession,
    channel: Any,
    metric_queue: MetricQueue,
    *,
    clock: Callable[[], float] = time.time,
) -> ProbeResult:
    """Run one probe cycle: fetch, optional restart, parse, extract and enqueue."""
    observed_at = int(clock())
    monotonic_start = time.monotonic_ns()

    def elapsed_seconds() -> float:
        return (time.monotonic_ns() - monotonic_start) / 1e9

    try:
        fetched = fetch_status(channel, config.command_timeout_seconds)
    except CommandError as error:
        LOGGER.warning("status probe failed: %s", error)
        return ProbeResult(
            success=False,
            observed_at=observed_at,
            probe_duration_seconds=elapsed_seconds(),
            error=str(error),
        )

    snapshot: StatusSnapshot | None = None
    if fetched.service_down:
        if config.allow_restart:
            restart_service(remote)
    else:
        try:
            snapshot = parse_status(fetched.output)
        except StatusDecodeError as error:
            LOGGER.warning("status output could not be decoded: %s", error)
            return ProbeResult(
                success=False,
                observed_at=observed_at,
                probe_duration_seconds=elapsed_seconds(),
                error=str(error),
            )

    probe_time_ns = time.monotonic_ns() - monotonic_start
    batch = extract_metrics(
        snapshot,
        portal_name=config.portal_name,
        database=config.database,
        observed_at=observed_at,
        service_down=fetched.service_down,
        probe_time_ns=probe_time_ns if config.self_monitor else None,
    )
    duration = probe_time_ns / 1e9
    if duration >= SLOW_PROBE_SECONDS:
        LOGGER.warning("probe duration took %.1fs", duration)

    authenticated, preauth = count_sessions(snapshot) if snapshot is not None else (0, 0)
    queued = metric_queue.put(batch)
    return ProbeResult(
        success=True,
        observed_at=observed_at,
        probe_duration_seconds=duration,
        service_down=fetched.service_down,
        authenticated=authenticated,
        preauth=preauth,
        batch=batch,
        queued=queued,
    )
