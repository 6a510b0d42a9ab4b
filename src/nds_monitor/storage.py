from __future__ import annotations

import enum
import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol
from urllib.parse import urlsplit

from influxdb import InfluxDBClient


LOGGER = logging.getLogger("nds_monitor.storage")
DEFAULT_QUEUE_CAPACITY = 1000
RECONNECT_BACKOFF_SECONDS = 30.0
PING_TIMEOUT_SECONDS = 10.0
_CLOSED = object()


class StoreConnectionError(Exception):
    """Raised when the time-series store cannot be reached."""


@dataclass(frozen=True)
class MetricPoint:
    measurement: str
    tags: dict[str, str]
    value: float
    timestamp: int

    def to_influx(self) -> dict[str, Any]:
        return {
            "measurement": self.measurement,
            "tags": dict(self.tags),
            "time": self.timestamp,
            "fields": {"value": float(self.value)},
        }


@dataclass(frozen=True)
class MetricBatch:
    database: str
    points: tuple[MetricPoint, ...] = ()

    def __len__(self) -> int:
        return len(self.points)

    def values(self, measurement: str) -> list[float]:
        return [point.value for point in self.points if point.measurement == measurement]


@dataclass(frozen=True)
class StoreConfig:
    url: str
    database: str
    username: str | None = None
    password: str | None = None
    timeout_seconds: float = 180.0

    def client_kwargs(self) -> dict[str, Any]:
        parts = urlsplit(self.url if "://" in self.url else f"http://{self.url}")
        ssl = parts.scheme == "https"
        return {
            "host": parts.hostname or "localhost",
            "port": parts.port or 8086,
            "username": self.username or "",
            "password": self.password or "",
            "database": self.database,
            "ssl": ssl,
            "verify_ssl": ssl,
            "timeout": self.timeout_seconds,
            "path": parts.path.strip("/"),
        }


class MetricStore(Protocol):
    def write(self, batch: MetricBatch) -> None: ...

    def ping(self) -> bool: ...

    def close(self) -> None: ...


class InfluxStore:
    def __init__(self, config: StoreConfig, client_factory: Callable[..., Any] = InfluxDBClient) -> None:
        self._config = config
        self._client = client_factory(**config.client_kwargs())

    def write(self, batch: MetricBatch) -> None:
        self._client.write_points(
            [point.to_influx() for point in batch.points],
            time_precision="s",
            database=batch.database,
        )

    def ping(self) -> bool:
        try:
            self._client.ping()
        except Exception as error:
            LOGGER.warning("store ping failed: %s", error)
            return False
        return True

    def close(self) -> None:
        self._client.close()


def connect_influx(config: StoreConfig) -> InfluxStore:
    if not config.url:
        raise StoreConnectionError("no influxdb address set")
    store = InfluxStore(config)
    if not store.ping():
        store.close()
        raise StoreConnectionError(f"influxdb at {config.url} is not answering ping")
    return store


class MetricQueue:
    """Bounded FIFO between probe cycles and the persistence worker.

    ``put`` never blocks: once ``capacity`` batches are waiting the new batch is
    dropped and counted. ``get`` blocks and returns ``None`` once the queue has
    been closed and drained.
    """

    def __init__(self, capacity: int = DEFAULT_QUEUE_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError("queue capacity must be positive")
        self._capacity = capacity
        self._queue: queue.Queue[Any] = queue.Queue()
        self._lock = threading.Lock()
        self._depth = 0
        self._dropped = 0
        self._closed = False

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def depth(self) -> int:
        with self._lock:
            return self._depth

    @property
    def dropped(self) -> int:
        with self._lock:
            return self._dropped

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    def put(self, batch: MetricBatch) -> bool:
        with self._lock:
            if self._closed:
                self._dropped += 1
                LOGGER.warning("metric queue closed, not recording sample")
                return False
            if self._depth >= self._capacity:
                self._dropped += 1
                LOGGER.warning("metric queue full (%d batches), not recording sample", self._depth)
                return False
            self._depth += 1
            self._queue.put_nowait(batch)
        return True

    def get(self) -> MetricBatch | None:
        item = self._queue.get()
        if item is _CLOSED:
            # Leave the marker for any other consumer.
            self._queue.put_nowait(_CLOSED)
            return None
        with self._lock:
            self._depth -= 1
        return item

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._queue.put_nowait(_CLOSED)


class WorkerState(enum.Enum):
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


class WriteOutcome(enum.Enum):
    WRITTEN = "written"
    TRANSIENT_FAILURE = "transient_failure"
    STORE_UNREACHABLE = "store_unreachable"


@dataclass(frozen=True)
class WorkerStatus:
    state: WorkerState = WorkerState.CONNECTED
    error_count: int = 0


def advance(status: WorkerStatus, outcome: WriteOutcome) -> WorkerStatus:
    if outcome is WriteOutcome.WRITTEN:
        return WorkerStatus(WorkerState.CONNECTED, 0)
    if outcome is WriteOutcome.TRANSIENT_FAILURE:
        return WorkerStatus(WorkerState.CONNECTED, status.error_count)
    return WorkerStatus(WorkerState.RECONNECTING, status.error_count + 1)


def backoff_seconds(error_count: int, base_seconds: float = RECONNECT_BACKOFF_SECONDS) -> float:
    return base_seconds * max(0, error_count)


@dataclass
class WorkerCounters:
    written: int = 0
    failed: int = 0
    reconnects: int = 0
    last_error: str | None = field(default=None)


class PersistenceWorker:
    def __init__(
        self,
        config: StoreConfig,
        metric_queue: MetricQueue,
        *,
        store_factory: Callable[[StoreConfig], MetricStore] = connect_influx,
        sleep: Callable[[float], None] = time.sleep,
        backoff_base_seconds: float = RECONNECT_BACKOFF_SECONDS,
    ) -> None:
        self._config = config
        self._queue = metric_queue
        self._store_factory = store_factory
        self._sleep = sleep
        self._backoff_base_seconds = backoff_base_seconds
        self._store: MetricStore | None = None
        self._status = WorkerStatus()
        self._counters = WorkerCounters()
        self._thread: threading.Thread | None = None

    @property
    def status(self) -> WorkerStatus:
        return self._status

    @property
    def counters(self) -> WorkerCounters:
        return self._counters

    def connect(self) -> None:
        try:
            self._store = self._store_factory(self._config)
        except StoreConnectionError:
            raise
        except Exception as error:
            raise StoreConnectionError(f"unable to connect to store at {self._config.url}: {error}") from error
        LOGGER.info("connected to store %s database=%s", self._config.url, self._config.database)

    def start(self) -> None:
        self.connect()
        self._thread = threading.Thread(target=self.run, daemon=True, name="store-worker")
        self._thread.start()

    def join(self, timeout: float | None = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout=timeout)

    def run(self) -> None:
        while True:
            batch = self._queue.get()
            if batch is None:
                break
            self.process(batch)
        if self._store is not None:
            self._store.close()
            self._store = None
        LOGGER.info("store worker stopped: written=%d failed=%d", self._counters.written, self._counters.failed)

    def process(self, batch: MetricBatch) -> WriteOutcome:
        outcome = self._write(batch)
        self._status = advance(self._status, outcome)
        if outcome is WriteOutcome.WRITTEN:
            self._counters.written += 1
            return outcome
        self._counters.failed += 1
        if self._status.state is WorkerState.RECONNECTING:
            self._reconnect()
        return outcome

    def _write(self, batch: MetricBatch) -> WriteOutcome:
        if self._store is None:
            self._counters.last_error = "no store connection"
            LOGGER.warning("dropping batch of %d points: no store connection", len(batch))
            return WriteOutcome.STORE_UNREACHABLE
        try:
            self._store.write(batch)
        except Exception as error:
            self._counters.last_error = str(error)
            LOGGER.warning("store write of %d points failed: %s", len(batch), error)
        else:
            return WriteOutcome.WRITTEN
        if self._store.ping():
            LOGGER.warning("store answers ping; dropping batch after transient write failure")
            return WriteOutcome.TRANSIENT_FAILURE
        return WriteOutcome.STORE_UNREACHABLE

    def _reconnect(self) -> None:
        delay = backoff_seconds(self._status.error_count, self._backoff_base_seconds)
        if self._store is not None:
            self._store.close()
            self._store = None
        LOGGER.warning("sleeping %.0f seconds before trying to reconnect to store", delay)
        self._sleep(delay)
        self._counters.reconnects += 1
        try:
            self.connect()
        except StoreConnectionError as error:
            LOGGER.error("unable to reconnect to store: %s", error)
        self._status = WorkerStatus(WorkerState.CONNECTED, self._status.error_count)
