from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

import paramiko


LOGGER = logging.getLogger("nds_monitor.remote")
DEFAULT_KEY_PATH = Path("/etc/NDSmonitor/id_rsa")
_READ_CHUNK = 32768


class RemoteSessionError(Exception):
    """Raised when the SSH connection or a command channel cannot be established."""


@dataclass(frozen=True)
class RemoteConfig:
    host: str
    username: str
    port: int = 22
    password: str | None = None
    key_path: Path = DEFAULT_KEY_PATH
    connect_timeout_seconds: float = 30.0
    command_timeout_seconds: float = 60.0

    @property
    def use_key(self) -> bool:
        return not self.password

    def connect_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "hostname": self.host,
            "port": self.port,
            "username": self.username,
            "timeout": self.connect_timeout_seconds,
            "allow_agent": False,
            "look_for_keys": False,
        }
        if self.use_key:
            kwargs["key_filename"] = str(self.key_path)
        else:
            kwargs["password"] = self.password
        return kwargs


@dataclass(frozen=True)
class CommandOutput:
    output: bytes
    exit_status: int

    @property
    def text(self) -> str:
        return self.output.decode("utf-8", errors="replace")


def run_on_channel(channel: Any, command: str, timeout_seconds: float) -> CommandOutput:
    """Run one command on an already opened session channel and collect stdout+stderr.

    The channel is closed afterwards; an SSH session channel only executes once.
    """
    try:
        channel.settimeout(timeout_seconds)
        channel.set_combine_stderr(True)
        channel.exec_command(command)
        chunks: list[bytes] = []
        while True:
            chunk = channel.recv(_READ_CHUNK)
            if not chunk:
                break
            chunks.append(chunk)
        exit_status = channel.recv_exit_status()
    finally:
        channel.close()
    return CommandOutput(output=b"".join(chunks), exit_status=exit_status)


class RemoteSession:
    def __init__(
        self,
        config: RemoteConfig,
        client_factory: Callable[[], paramiko.SSHClient] = paramiko.SSHClient,
    ) -> None:
        self._config = config
        self._client_factory = client_factory
        self._client: paramiko.SSHClient | None = None

    @property
    def config(self) -> RemoteConfig:
        return self._config

    @property
    def is_open(self) -> bool:
        return self._client is not None

    def connect(self) -> None:
        self.close()
        client = self._client_factory()
        # Gateway host keys are not pinned.
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(**self._config.connect_kwargs())
        except (paramiko.SSHException, OSError) as error:
            client.close()
            raise RemoteSessionError(
                f"unable to connect to {self._config.host}:{self._config.port}: {error}"
            ) from error
        LOGGER.info("connected to %s:%d as %s", self._config.host, self._config.port, self._config.username)
        self._client = client

    def open_channel(self) -> paramiko.Channel:
        client = self._client
        if client is None:
            raise RemoteSessionError("no open ssh connection")
        transport = client.get_transport()
        if transport is None or not transport.is_active():
            raise RemoteSessionError("ssh transport is not active")
        try:
            return transport.open_session(timeout=self._config.connect_timeout_seconds)
        except (paramiko.SSHException, OSError) as error:
            raise RemoteSessionError(f"unable to open command channel: {error}") from error

    def run(self, command: str) -> CommandOutput:
        channel = self.open_channel()
        return run_on_channel(channel, command, self._config.command_timeout_seconds)

    def close(self) -> None:
        if self._client is None:
            return
        client, self._client = self._client, None
        client.close()
