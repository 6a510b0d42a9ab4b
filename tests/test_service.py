import json
import logging
from dataclasses import dataclass, field

import paramiko
import pytest

from nds_monitor.remote import CommandOutput, RemoteConfig, RemoteSessionError, run_on_channel
from nds_monitor.service import (
    RESTART_COMMAND,
    SERVICE_DOWN_MARKER,
    STATUS_COMMAND,
    CommandError,
    ProbeConfig,
    StatusDecodeError,
    extract_metrics,
    fetch_status,
    parse_counter,
    parse_status,
    probe_once,
)
from nds_monitor.storage import MetricQueue


class FakeChannel:
    def __init__(self, output: bytes = b"", exit_status: int = 0, error: Exception | None = None) -> None:
        self._chunks = [output[i : i + 16] for i in range(0, len(output), 16)]
        self._exit_status = exit_status
        self._error = error
        self.commands: list[str] = []
        self.combined = False
        self.timeout: float | None = None
        self.closed = False

    def settimeout(self, timeout: float) -> None:
        self.timeout = timeout

    def set_combine_stderr(self, combine: bool) -> None:
        self.combined = combine

    def exec_command(self, command: str) -> None:
        if self._error is not None:
            raise self._error
        self.commands.append(command)

    def recv(self, size: int) -> bytes:
        if not self._chunks:
            return b""
        return self._chunks.pop(0)

    def recv_exit_status(self) -> int:
        return self._exit_status

    def close(self) -> None:
        self.closed = True


@dataclass
class FakeRemote:
    config: RemoteConfig = field(default_factory=lambda: RemoteConfig(host="gw01", username="root", password="x"))
    commands: list[str] = field(default_factory=list)
    fail: bool = False

    def run(self, command: str) -> CommandOutput:
        if self.fail:
            raise RemoteSessionError("ssh transport is not active")
        self.commands.append(command)
        return CommandOutput(output=b"Restarting nodogsplash", exit_status=0)


def _client(
    identifier: int,
    *,
    state: str = "Authenticated",
    downloaded: object = 10,
    uploaded: object = 20,
    mac: str = "aa:bb:cc:dd:ee:01",
) -> dict[str, object]:
    return {
        "id": identifier,
        "ip": f"10.0.0.{identifier}",
        "mac": mac,
        "added": 1604700000,
        "active": 1604700100,
        "duration": 100,
        "token": f"tok{identifier}",
        "state": state,
        "downloaded": downloaded,
        "uploaded": uploaded,
    }


def _status_document(*clients: dict[str, object]) -> bytes:
    payload = {
        "client_list_length": str(len(clients)),
        "clients": {str(client["id"]): client for client in clients},
    }
    return json.dumps(payload).encode("utf-8")


def _probe_config(**overrides: object) -> ProbeConfig:
    values: dict[str, object] = {"portal_name": "Lobby", "database": "nds"}
    values.update(overrides)
    return ProbeConfig(**values)  # type: ignore[arg-type]


def test_parse_status_keeps_numbers_as_decimal_text() -> None:
    document = _status_document(_client(1, downloaded=123456789012345678901234567890))
    snapshot = parse_status(document)
    assert snapshot.client_count == 1
    session = snapshot.clients["1"]
    assert session.identifier == "1"
    assert session.ip_address == "10.0.0.1"
    assert session.downloaded_kib == "123456789012345678901234567890"
    assert session.start_time == "1604700000"
    assert session.state == "Authenticated"


def test_parse_status_falls_back_to_record_count() -> None:
    output = json.dumps({"clients": {"7": _client(7)}})
    snapshot = parse_status(output)
    assert snapshot.client_count == 1
    assert snapshot.clients["7"].token == "tok7"


def test_parse_status_accepts_empty_client_list() -> None:
    snapshot = parse_status(b'{"client_list_length":"0","clients":{}}')
    assert snapshot.client_count == 0
    assert snapshot.clients == {}


@pytest.mark.parametrize(
    "output",
    [
        b"",
        b"not json at all",
        b"[1, 2, 3]",
        b'{"client_list_length":"1","clients":[]}',
        b'{"client_list_length":"1","clients":{"1":"oops"}}',
    ],
)
def test_parse_status_rejects_malformed_documents(output: bytes) -> None:
    with pytest.raises(StatusDecodeError):
        parse_status(output)


def test_extract_metrics_converts_kib_to_bytes_and_counts_states() -> None:
    snapshot = parse_status(
        _status_document(
            _client(1),
            _client(2, mac="aa:bb:cc:dd:ee:02"),
            _client(3, state="Preauthenticated", downloaded=5, uploaded=5),
        )
    )
    batch = extract_metrics(snapshot, portal_name="Lobby", database="nds", observed_at=1700000000)

    assert batch.database == "nds"
    assert batch.values("Download_Bytes") == [10240, 10240]
    assert batch.values("Upload_Bytes") == [20480, 20480]
    assert batch.values("Authenticated") == [2]
    assert batch.values("PreAuth") == [1]
    assert batch.values("NdsError") == [0]
    assert batch.values("ProbeTime") == []
    assert len(batch) == 7
    assert all(point.timestamp == 1700000000 for point in batch.points)


def test_extract_metrics_tags_traffic_points_per_session() -> None:
    snapshot = parse_status(_status_document(_client(4, mac="de:ad:be:ef:00:04")))
    batch = extract_metrics(snapshot, portal_name="Lobby", database="nds", observed_at=1)

    download = next(point for point in batch.points if point.measurement == "Download_Bytes")
    assert download.tags == {
        "Captive Portal": "Lobby",
        "Mac_Address": "DE:AD:BE:EF:00:04",
        "Ip_Address": "10.0.0.4",
        "ID": "4",
        "Token": "tok4",
        "Auth": "Authenticated",
    }
    aggregate = next(point for point in batch.points if point.measurement == "Authenticated")
    assert aggregate.tags == {"Captive Portal": "Lobby"}


def test_extract_metrics_counts_every_state_exactly_once() -> None:
    states = ["Authenticated", "authenticated", "", "Preauthenticated", "Authenticated ", "Authenticated"]
    snapshot = parse_status(
        _status_document(*(_client(index + 1, state=state) for index, state in enumerate(states)))
    )
    batch = extract_metrics(snapshot, portal_name="Lobby", database="nds", observed_at=1)

    assert batch.values("Authenticated") == [2]
    assert batch.values("PreAuth") == [4]
    assert batch.values("Authenticated")[0] + batch.values("PreAuth")[0] == len(snapshot.clients)


def test_extract_metrics_matches_state_without_trimming() -> None:
    snapshot = parse_status(
        _status_document(_client(1, state="Authenticated "), _client(2, state="Authenticated"))
    )
    batch = extract_metrics(snapshot, portal_name="Lobby", database="nds", observed_at=1)

    assert snapshot.clients["1"].state == "Authenticated "
    assert batch.values("Authenticated") == [1]
    assert batch.values("PreAuth") == [1]
    assert batch.values("Download_Bytes") == [10240]
    download = next(point for point in batch.points if point.measurement == "Download_Bytes")
    assert download.tags["ID"] == "2"


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("10", 10),
        ("+5", 5),
        ("-3", -3),
        ("123456789012345678901234567890", 123456789012345678901234567890),
        ("1_000", None),
        ("１０", None),
        (" 10", None),
        ("12.5", None),
        ("", None),
    ],
)
def test_parse_counter_accepts_ascii_decimal_only(text: str, expected: int | None) -> None:
    assert parse_counter(text) == expected


def test_extract_metrics_skips_traffic_for_unparseable_counters() -> None:
    snapshot = parse_status(
        _status_document(
            _client(1, downloaded="12.5"),
            _client(2, uploaded="n/a"),
            _client(3, downloaded=1, uploaded=2),
        )
    )
    batch = extract_metrics(snapshot, portal_name="Lobby", database="nds", observed_at=1)

    assert batch.values("Download_Bytes") == [1024]
    assert batch.values("Upload_Bytes") == [2048]
    assert batch.values("Authenticated") == [3]
    assert batch.values("PreAuth") == [0]


def test_extract_metrics_zero_sessions_yields_only_aggregates() -> None:
    snapshot = parse_status(b'{"client_list_length":"0","clients":{}}')
    batch = extract_metrics(snapshot, portal_name="Lobby", database="nds", observed_at=1)

    assert [point.measurement for point in batch.points] == ["Authenticated", "PreAuth", "NdsError"]
    assert [point.value for point in batch.points] == [0, 0, 0]


def test_extract_metrics_service_down_emits_only_error_flag() -> None:
    batch = extract_metrics(None, portal_name="Lobby", database="nds", observed_at=1, service_down=True)
    assert [(point.measurement, point.value) for point in batch.points] == [("NdsError", 1)]


def test_extract_metrics_appends_probe_time() -> None:
    snapshot = parse_status(b'{"client_list_length":"0","clients":{}}')
    batch = extract_metrics(snapshot, portal_name="Lobby", database="nds", observed_at=1, probe_time_ns=1500)
    assert batch.points[-1].measurement == "ProbeTime"
    assert batch.points[-1].value == 1500


def test_run_on_channel_collects_combined_output_and_closes() -> None:
    channel = FakeChannel(output=b"x" * 40, exit_status=3)
    result = run_on_channel(channel, "uptime", 5.0)
    assert result.output == b"x" * 40
    assert result.exit_status == 3
    assert channel.commands == ["uptime"]
    assert channel.combined is True
    assert channel.timeout == 5.0
    assert channel.closed is True


def test_fetch_status_detects_service_down_marker(caplog) -> None:
    channel = FakeChannel(
        output=f"{SERVICE_DOWN_MARKER} (Error: Connection refused)".encode("utf-8"),
        exit_status=1,
    )
    with caplog.at_level(logging.WARNING, logger="nds_monitor"):
        result = fetch_status(channel)
    assert result.service_down is True
    assert channel.commands == [STATUS_COMMAND]
    assert "not running" in caplog.text


def test_fetch_status_treats_failed_exit_status_as_service_down() -> None:
    result = fetch_status(FakeChannel(output=b"ndsctl: unknown error", exit_status=2))
    assert result.service_down is True
    assert result.exit_status == 2


def test_fetch_status_wraps_transport_errors() -> None:
    with pytest.raises(CommandError):
        fetch_status(FakeChannel(error=paramiko.SSHException("channel closed")))


def test_probe_once_enqueues_one_batch() -> None:
    metric_queue = MetricQueue(capacity=5)
    channel = FakeChannel(output=_status_document(_client(1), _client(2), _client(3, state="Preauthenticated")))

    result = probe_once(_probe_config(), FakeRemote(), channel, metric_queue, clock=lambda: 1700000000.9)

    assert result.success is True
    assert result.queued is True
    assert result.authenticated == 2
    assert result.preauth == 1
    assert result.observed_at == 1700000000
    assert metric_queue.depth == 1
    queued = metric_queue.get()
    assert queued is result.batch
    assert queued.values("Download_Bytes") == [10240, 10240]
    assert queued.values("NdsError") == [0]


def test_probe_once_records_probe_time_when_self_monitoring() -> None:
    metric_queue = MetricQueue(capacity=5)
    channel = FakeChannel(output=_status_document(_client(1)))

    result = probe_once(_probe_config(self_monitor=True), FakeRemote(), channel, metric_queue)

    assert result.batch is not None
    probe_times = result.batch.values("ProbeTime")
    assert len(probe_times) == 1
    assert probe_times[0] >= 0


def test_probe_once_restarts_service_when_allowed() -> None:
    metric_queue = MetricQueue(capacity=5)
    remote = FakeRemote()
    channel = FakeChannel(output=SERVICE_DOWN_MARKER.encode("utf-8"), exit_status=1)

    result = probe_once(_probe_config(allow_restart=True), remote, channel, metric_queue)

    assert result.success is True
    assert result.service_down is True
    assert remote.commands == [RESTART_COMMAND]
    assert result.batch is not None
    assert [(point.measurement, point.value) for point in result.batch.points] == [("NdsError", 1)]


def test_probe_once_does_not_restart_without_permission() -> None:
    remote = FakeRemote()
    channel = FakeChannel(output=SERVICE_DOWN_MARKER.encode("utf-8"), exit_status=1)

    result = probe_once(_probe_config(), remote, channel, MetricQueue(capacity=5))

    assert result.service_down is True
    assert remote.commands == []


def test_probe_once_survives_failed_restart(caplog) -> None:
    remote = FakeRemote(fail=True)
    channel = FakeChannel(output=SERVICE_DOWN_MARKER.encode("utf-8"), exit_status=1)

    with caplog.at_level(logging.ERROR, logger="nds_monitor"):
        result = probe_once(_probe_config(allow_restart=True), remote, channel, MetricQueue(capacity=5))

    assert result.success is True
    assert result.queued is True
    assert "restart failed" in caplog.text


def test_probe_once_abandons_cycle_on_decode_error() -> None:
    metric_queue = MetricQueue(capacity=5)
    result = probe_once(_probe_config(), FakeRemote(), FakeChannel(output=b"{truncated"), metric_queue)

    assert result.success is False
    assert result.batch is None
    assert result.error is not None
    assert "JSON" in result.error
    assert metric_queue.depth == 0


def test_probe_once_abandons_cycle_on_transport_error() -> None:
    metric_queue = MetricQueue(capacity=5)
    channel = FakeChannel(error=OSError("connection reset"))

    result = probe_once(_probe_config(), FakeRemote(), channel, metric_queue)

    assert result.success is False
    assert "connection reset" in (result.error or "")
    assert metric_queue.depth == 0


def test_probe_once_completes_when_queue_is_full(caplog) -> None:
    metric_queue = MetricQueue(capacity=1)
    first = probe_once(_probe_config(), FakeRemote(), FakeChannel(output=_status_document()), metric_queue)

    with caplog.at_level(logging.WARNING, logger="nds_monitor.storage"):
        second = probe_once(_probe_config(), FakeRemote(), FakeChannel(output=_status_document()), metric_queue)

    assert first.queued is True
    assert second.success is True
    assert second.queued is False
    assert metric_queue.depth == 1
    assert "queue full" in caplog.text
