from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable

from nds_monitor.remote import RemoteSession, RemoteSessionError
from nds_monitor.service import ProbeConfig, ProbeResult, probe_once
from nds_monitor.storage import MetricQueue


LOGGER = logging.getLogger("nds_monitor.scheduler")
LIVENESS_EVERY_TICKS = 30

ProbeFn = Callable[[ProbeConfig, RemoteSession, Any, MetricQueue], ProbeResult]


class ProbeScheduler:
    """Fixed-interval loop that keeps the SSH session alive and launches probe cycles.

    Probe cycles run on a small thread pool so a slow gateway never delays the
    next tick. At most ``max_in_flight`` cycles run at once; a tick that finds
    every slot busy is skipped.
    """

    def __init__(
        self,
        *,
        remote: RemoteSession,
        probe_config: ProbeConfig,
        metric_queue: MetricQueue,
        interval_seconds: float,
        max_in_flight: int = 1,
        on_result: Callable[[ProbeResult], None] | None = None,
        probe: ProbeFn = probe_once,
        liveness_every: int = LIVENESS_EVERY_TICKS,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("poll interval must be positive")
        if max_in_flight < 1:
            raise ValueError("max_in_flight must be at least 1")
        self._remote = remote
        self._probe_config = probe_config
        self._queue = metric_queue
        self._interval_seconds = interval_seconds
        self._max_in_flight = max_in_flight
        self._on_result = on_result
        self._probe = probe
        self._liveness_every = max(1, liveness_every)
        self._slots = threading.BoundedSemaphore(max_in_flight)
        self._executor = ThreadPoolExecutor(max_workers=max_in_flight, thread_name_prefix="probe")
        self._stop_event = threading.Event()
        self._ticks = 0

    @property
    def ticks(self) -> int:
        return self._ticks

    def open_channel(self) -> Any | None:
        if self._remote.is_open:
            try:
                return self._remote.open_channel()
            except RemoteSessionError as error:
                LOGGER.warning("%s", error)

        self._remote.close()
        LOGGER.info("attempting to reconnect to %s", self._remote.config.host)
        try:
            self._remote.connect()
            return self._remote.open_channel()
        except RemoteSessionError as error:
            LOGGER.error("reconnect failed, skipping probe: %s", error)
            return None

    def tick(self) -> Future[ProbeResult] | None:
        self._ticks += 1
        if self._ticks % self._liveness_every == 0:
            LOGGER.info("still active after %d ticks", self._ticks)

        if not self._slots.acquire(blocking=False):
            LOGGER.warning("%d probe cycle(s) still in flight, skipping this tick", self._max_in_flight)
            return None

        channel = self.open_channel()
        if channel is None:
            self._slots.release()
            return None
        return self._executor.submit(self._run_probe, channel)

    def _run_probe(self, channel: Any) -> ProbeResult:
        try:
            result = self._probe(self._probe_config, self._remote, channel, self._queue)
        except Exception as error:
            LOGGER.exception("probe cycle crashed")
            result = ProbeResult(success=False, error=str(error))
        finally:
            self._slots.release()
        if self._on_result is not None:
            try:
                self._on_result(result)
            except Exception:
                LOGGER.exception("probe result handler failed")
        return result

    def run_forever(self) -> None:
        next_tick_at = time.monotonic()
        try:
            while not self._stop_event.is_set():
                self.tick()
                next_tick_at += self._interval_seconds
                now = time.monotonic()
                if next_tick_at < now:
                    next_tick_at = now
                if self._stop_event.wait(next_tick_at - now):
                    break
        finally:
            self._executor.shutdown(wait=True)
            self._remote.close()

    def stop(self) -> None:
        self._stop_event.set()
