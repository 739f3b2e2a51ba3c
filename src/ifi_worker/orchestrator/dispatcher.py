"""Fixed-interval queue poller with a single job in flight."""

from __future__ import annotations

import logging
import os
import signal
import threading
import time
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Any, Protocol

from ifi_worker.orchestrator.models import JobStatus, JobView, StaleJobRecovery
from ifi_worker.orchestrator.repository import Datastore
from ifi_worker.storage.common import utc_now

logger = logging.getLogger(__name__)


class JobProcessor(Protocol):
    def process_job(self, job: JobView) -> JobView: ...


class StaleJobRecoverer(Protocol):
    def recover_stale_jobs(self, *, stale_after: timedelta) -> StaleJobRecovery: ...


class HeartbeatSink(Protocol):
    def write_heartbeat(self, payload: Mapping[str, Any]) -> None: ...


class TickOutcome(str, Enum):
    SKIPPED = "skipped"
    IDLE = "idle"
    PROCESSED = "processed"
    ERRORED = "errored"


@dataclass(slots=True)
class DispatcherRunSummary:
    """Aggregate loop counters for CLI reporting."""

    ticks: int = 0
    processed: int = 0
    completed: int = 0
    failed: int = 0
    errored: int = 0
    idle_ticks: int = 0
    skipped_ticks: int = 0
    recovered: int = 0


class Dispatcher:
    """Poll the queue and hand the oldest queued job to the pipeline.

    ``tick`` is guarded by an in-process flag: a tick that starts while another
    one is still processing returns ``SKIPPED`` without touching the queue.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        datastore: Datastore,
        pipeline: JobProcessor,
        heartbeat: HeartbeatSink | None = None,
        stale_job_recoverer: StaleJobRecoverer | None = None,
        poll_interval_seconds: float = 3.0,
        stale_job_seconds: int | None = 1_800,
    ) -> None:
        self.datastore = datastore
        self.pipeline = pipeline
        self.heartbeat = heartbeat
        self.stale_job_recoverer = stale_job_recoverer
        self.poll_interval_seconds = poll_interval_seconds
        self.stale_job_seconds = stale_job_seconds
        self.summary = DispatcherRunSummary()
        self._guard = threading.Lock()
        self._in_flight = False
        self._stop_requested = False
        self._stop_signal_name: str | None = None
        self._started_monotonic = time.monotonic()
        self._started_at = utc_now()

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def tick(self) -> TickOutcome:
        """Process at most one queued job."""

        with self._guard:
            if self._in_flight:
                self.summary.skipped_ticks += 1
                logger.debug("Previous tick still in flight; skipping")
                return TickOutcome.SKIPPED
            self._in_flight = True

        try:
            self.summary.ticks += 1
            outcome = self._run_tick()
        finally:
            with self._guard:
                self._in_flight = False
            self._write_heartbeat()

        if outcome == TickOutcome.IDLE:
            self.summary.idle_ticks += 1
        elif outcome == TickOutcome.ERRORED:
            self.summary.errored += 1
        return outcome

    def run_loop(self, *, max_ticks: int | None = None) -> DispatcherRunSummary:
        """Tick every ``poll_interval_seconds`` until stopped or ``max_ticks`` reached."""

        logger.info("Dispatcher started (poll interval %.1fs)", self.poll_interval_seconds)
        with self._signal_handlers():
            ticks = 0
            while not self._stop_requested:
                if max_ticks is not None and ticks >= max_ticks:
                    break
                started = time.monotonic()
                self.tick()
                ticks += 1
                if max_ticks is not None and ticks >= max_ticks:
                    break
                elapsed = time.monotonic() - started
                self._sleep_with_stop(max(0.0, self.poll_interval_seconds - elapsed))
        logger.info(
            "Dispatcher stopped%s after %d ticks",
            f" on {self._stop_signal_name}" if self._stop_signal_name else "",
            self.summary.ticks,
        )
        return self.summary

    def request_stop(self, *, signal_name: str | None = None) -> None:
        """Stop scheduling new ticks; an in-flight job still runs to completion."""

        self._stop_requested = True
        self._stop_signal_name = signal_name
        if self._in_flight:
            logger.info("Stop requested; waiting for the in-flight job to finish")

    def _run_tick(self) -> TickOutcome:
        try:
            self._recover_stale_jobs()
            job = self.datastore.get_next_queued_job()
            if job is None:
                return TickOutcome.IDLE
            logger.info("Processing job %s (%s)", job.job_id, job.repo)
            result = self.pipeline.process_job(job)
        except Exception:  # noqa: BLE001
            logger.exception("Dispatcher tick failed")
            return TickOutcome.ERRORED

        self.summary.processed += 1
        if result.status == JobStatus.COMPLETE:
            self.summary.completed += 1
        elif result.status == JobStatus.FAILED:
            self.summary.failed += 1
        if not result.is_terminal:
            logger.warning(
                "Job %s returned at non-terminal status %s",
                result.job_id,
                result.status.value,
            )
        return TickOutcome.PROCESSED

    def _recover_stale_jobs(self) -> None:
        if self.stale_job_recoverer is None or not self.stale_job_seconds:
            return
        recovery = self.stale_job_recoverer.recover_stale_jobs(
            stale_after=timedelta(seconds=self.stale_job_seconds),
        )
        recovered = len(recovery.requeued) + len(recovery.completed)
        if recovered:
            self.summary.recovered += recovered
            logger.warning(
                "Recovered stale jobs: requeued=%s completed=%s",
                recovery.requeued,
                recovery.completed,
            )

    def _write_heartbeat(self) -> None:
        if self.heartbeat is None:
            return
        now = utc_now()
        self.heartbeat.write_heartbeat(
            {
                "ts": int(now.timestamp() * 1000),
                "startedAt": int(self._started_at.timestamp() * 1000),
                "uptimeMs": int((time.monotonic() - self._started_monotonic) * 1000),
                "pid": os.getpid(),
            },
        )

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if threading.current_thread() is not threading.main_thread():
            # Signal handlers can only be installed in main thread.
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request_stop(signal_name=name)

        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
