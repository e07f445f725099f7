from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from contextlib import contextmanager
from typing import Any, Callable, Iterator

from signalbot.config import ScheduleConfig

LOGGER = logging.getLogger(__name__)


class SymbolLocks:
    """One lock per symbol; decide and reconcile never overlap on the same symbol."""

    def __init__(self) -> None:
        self._locks: dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def get(self, symbol: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(symbol)
            if lock is None:
                lock = threading.Lock()
                self._locks[symbol] = lock
            return lock

    @contextmanager
    def hold(self, symbol: str) -> Iterator[None]:
        lock = self.get(symbol)
        with lock:
            yield


class PeriodicTask:
    """
    Fires `job` every `interval` seconds on a daemon thread.

    The cadence is fixed (next_at += interval) and independent of job
    duration. Ticks that were missed while the thread was late are skipped.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        job: Callable[[], None],
        stop_event: threading.Event,
        *,
        first_delay: float = 0.0,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        if interval <= 0:
            raise ValueError("interval must be > 0")
        self.name = name
        self.interval = float(interval)
        self.job = job
        self.stop_event = stop_event
        self.first_delay = max(0.0, float(first_delay))
        self._monotonic = monotonic
        self._thread: threading.Thread | None = None
        self.ticks = 0
        self.skipped_ticks = 0

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._loop, name=f"task-{self.name}", daemon=True)
        self._thread.start()

    def next_deadline(self, next_at: float, now: float) -> float:
        next_at += self.interval
        if next_at <= now:
            missed = int((now - next_at) // self.interval) + 1
            self.skipped_ticks += missed
            LOGGER.warning("Task %s is late, skipping %d tick(s)", self.name, missed)
            next_at += missed * self.interval
        return next_at

    def _loop(self) -> None:
        next_at = self._monotonic() + self.first_delay
        while not self.stop_event.is_set():
            delay = next_at - self._monotonic()
            if delay > 0 and self.stop_event.wait(delay):
                break
            self.ticks += 1
            try:
                self.job()
            except Exception:
                LOGGER.exception("Periodic task %s failed", self.name)
            next_at = self.next_deadline(next_at, self._monotonic())

    def join(self, timeout: float | None = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)


class Scheduler:
    def __init__(
        self,
        symbols: list[str],
        decide: Callable[[str], Any],
        reconcile: Callable[[str], Any],
        config: ScheduleConfig,
        stop_event: threading.Event,
    ):
        self.symbols = list(symbols)
        self.decide = decide
        self.reconcile = reconcile
        self.config = config
        self.stop_event = stop_event
        self.executor = ThreadPoolExecutor(
            max_workers=config.max_workers,
            thread_name_prefix="signalbot",
        )
        self._running: dict[tuple[str, str], Future] = {}
        self._running_lock = threading.Lock()
        self._tasks: list[PeriodicTask] = []

    def _run_job(self, kind: str, job: Callable[[str], Any], symbol: str) -> Any:
        try:
            return job(symbol)
        except Exception:
            LOGGER.exception("Unhandled %s job error symbol=%s", kind, symbol)
            return None

    def dispatch(self, kind: str, job: Callable[[str], Any], symbol: str) -> Future | None:
        if self.stop_event.is_set():
            return None
        key = (kind, symbol)
        with self._running_lock:
            running = self._running.get(key)
            if running is not None and not running.done():
                LOGGER.info("Skipping %s for %s: previous run still in flight", kind, symbol)
                return None
            future = self.executor.submit(self._run_job, kind, job, symbol)
            self._running[key] = future
        return future

    def dispatch_all(self, kind: str, job: Callable[[str], Any]) -> list[Future]:
        futures = [self.dispatch(kind, job, symbol) for symbol in self.symbols]
        return [future for future in futures if future is not None]

    def run_once(self) -> None:
        wait(self.dispatch_all("reconcile", self.reconcile))
        wait(self.dispatch_all("decide", self.decide))

    def start(self) -> None:
        LOGGER.info(
            "Scheduler starting symbols=%s cycle=%.0fs sync=%.0fs",
            ",".join(self.symbols),
            self.config.cycle_seconds,
            self.config.sync_seconds,
        )
        wait(self.dispatch_all("reconcile", self.reconcile))
        self._tasks = [
            PeriodicTask(
                "decide",
                self.config.cycle_seconds,
                lambda: self.dispatch_all("decide", self.decide),
                self.stop_event,
            ),
            PeriodicTask(
                "reconcile",
                self.config.sync_seconds,
                lambda: self.dispatch_all("reconcile", self.reconcile),
                self.stop_event,
                first_delay=self.config.sync_seconds,
            ),
        ]
        for task in self._tasks:
            task.start()

    def run_forever(self) -> None:
        self.start()
        while not self.stop_event.wait(1.0):
            pass
        self.shutdown()

    def shutdown(self) -> None:
        self.stop_event.set()
        for task in self._tasks:
            task.join(timeout=5.0)
        LOGGER.info("Draining in-flight jobs")
        self.executor.shutdown(wait=True)
        LOGGER.info("Scheduler stopped")
