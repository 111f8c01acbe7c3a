"""Sampling scheduler: drives sources, parser, and aggregator on a fixed period."""

from __future__ import annotations

import logging
import random
import threading
import time
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Sequence

from siliconmon_telemetry.errors import MalformedBlock, ParseTimeout, ProcessExited, SourceUnavailable
from siliconmon_telemetry.models import RawBlock, SourceKind, SystemSnapshot
from siliconmon_telemetry.parser import MetricParser
from siliconmon_telemetry.sources import RawSourceReader

from .aggregator import Aggregator
from .channel import SnapshotChannel


logger = logging.getLogger("siliconmon.scheduler")


class SchedulerState(str, Enum):
    IDLE = "Idle"
    SAMPLING = "Sampling"
    PUBLISHING = "Publishing"
    STOPPED = "Stopped"


@dataclass(frozen=True)
class BackoffPolicy:
    base_s: float = 0.25
    cap_s: float = 4.0
    max_restarts: int = 5
    jitter_s: float = 0.15

    def delay(self, attempt: int) -> float:
        delay = min(self.cap_s, self.base_s * (2 ** (max(attempt, 1) - 1)))
        if self.jitter_s > 0:
            delay += random.uniform(0.0, self.jitter_s)
        return delay


@dataclass
class _SourceHealth:
    attempts: int = 0
    restarts: int = 0
    restart_due_at: float | None = None
    restarting: bool = False
    degraded: bool = False
    last_error: str | None = None


@dataclass(frozen=True)
class SchedulerStatus:
    state: SchedulerState
    cycles: int
    period_s: float
    last_cycle_s: float
    restarts: dict[SourceKind, int] = field(default_factory=dict)
    degraded: frozenset[SourceKind] = frozenset()
    last_error: str | None = None


class SamplingScheduler:
    """Runs Idle -> Sampling -> Publishing -> Idle cycles off the render thread.

    Every reader is called concurrently with a per-source deadline; a source
    that misses it is treated as unavailable for the cycle and is not called
    again until its pending read finishes. Exited report processes are
    restarted with capped exponential backoff, and a source that keeps
    failing is marked degraded for good.
    """

    def __init__(
        self,
        readers: Sequence[RawSourceReader],
        aggregator: Aggregator,
        channel: SnapshotChannel,
        parser: MetricParser | None = None,
        period_s: float = 0.5,
        source_deadline_s: float | None = None,
        backoff: BackoffPolicy | None = None,
        epsilon_s: float = 0.05,
        clock=time.monotonic,
    ) -> None:
        self.readers = list(readers)
        self.aggregator = aggregator
        self.channel = channel
        self.parser = parser or MetricParser()
        self.backoff = backoff or BackoffPolicy()
        self.epsilon_s = epsilon_s
        self._clock = clock

        native = [r.native_interval_s for r in self.readers if r.native_interval_s]
        # Never tick faster than the report process can produce new data.
        self.period_s = max([period_s, *native])
        self.deadline_s = min(source_deadline_s or self.period_s, self.period_s)

        self._executor = ThreadPoolExecutor(
            max_workers=max(1, len(self.readers)),
            thread_name_prefix="siliconmon-source",
        )
        self._health: dict[RawSourceReader, _SourceHealth] = {r: _SourceHealth() for r in self.readers}
        self._inflight: dict[RawSourceReader, Future] = {}
        self._previous: SystemSnapshot | None = None
        self._state = SchedulerState.IDLE
        self._cycles = 0
        self._last_cycle_s = 0.0
        self._last_error: str | None = None
        self._events: deque[dict[str, Any]] = deque(maxlen=1000)
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._lock = threading.RLock()

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def status(self) -> SchedulerStatus:
        restarts: dict[SourceKind, int] = {}
        for reader, health in self._health.items():
            restarts[reader.kind] = restarts.get(reader.kind, 0) + health.restarts
        return SchedulerStatus(
            state=self._state,
            cycles=self._cycles,
            period_s=self.period_s,
            last_cycle_s=self._last_cycle_s,
            restarts=restarts,
            degraded=self.degraded_sources(),
            last_error=self._last_error,
        )

    def degraded_sources(self) -> frozenset[SourceKind]:
        return frozenset(r.kind for r, h in self._health.items() if h.degraded)

    def recent_events(self, limit: int = 200) -> list[dict[str, Any]]:
        return list(self._events)[-limit:]

    def _log_event(self, event: str, **fields: Any) -> None:
        row = {
            "ts_utc": datetime.now(timezone.utc).isoformat(),
            "event": event,
            "state": self._state.value,
        }
        row.update(fields)
        self._events.append(row)

    def _set_state(self, state: SchedulerState) -> None:
        self._state = state

    # -- lifecycle -------------------------------------------------------

    def start(self) -> None:
        with self._lock:
            if self._thread is not None:
                return
            for reader in self.readers:
                try:
                    reader.start()
                except SourceUnavailable as exc:
                    health = self._health[reader]
                    logger.warning(
                        "source %s failed to start: %s",
                        reader.kind.value,
                        exc,
                        extra={"event": "source_start_failed", "source": reader.kind.value},
                    )
                    self._log_event("source_start_failed", source=reader.kind.value, error=str(exc))
                    if reader.restartable:
                        self._schedule_restart(reader, health, exc)
                    else:
                        self._mark_degraded(reader, health)

            self._stop.clear()
            thread = threading.Thread(target=self._run, name="siliconmon-sampler", daemon=True)
            thread.start()
            self._thread = thread
            self._log_event("scheduler_started", period_s=self.period_s, deadline_s=self.deadline_s)
            logger.info(
                "sampling every %.3fs (deadline %.3fs)",
                self.period_s,
                self.deadline_s,
                extra={"event": "scheduler_started"},
            )

    def stop(self, timeout: float | None = None) -> None:
        with self._lock:
            self._stop.set()
            thread, self._thread = self._thread, None
            if thread is not None:
                thread.join(timeout=self.period_s + self.deadline_s + self.epsilon_s if timeout is None else timeout)
                if thread.is_alive():
                    logger.warning("sampler thread still running at shutdown", extra={"event": "scheduler_stop_slow"})
            self._executor.shutdown(wait=False, cancel_futures=True)
            for reader in self.readers:
                try:
                    reader.close()
                except Exception:
                    logger.exception(
                        "closing %s failed",
                        reader.kind.value,
                        extra={"event": "source_close_failed", "source": reader.kind.value},
                    )
            self._inflight.clear()
            self._set_state(SchedulerState.STOPPED)
            self._log_event("scheduler_stopped", cycles=self._cycles)

    def __enter__(self) -> "SamplingScheduler":
        self.start()
        return self

    def __exit__(self, *_exc) -> None:
        self.stop()

    def _run(self) -> None:
        next_tick = self._clock()
        while not self._stop.is_set():
            try:
                self.run_cycle()
            except Exception as exc:
                self._last_error = str(exc)
                self._set_state(SchedulerState.IDLE)
                logger.exception("sampling cycle failed", extra={"event": "cycle_error"})
            next_tick += self.period_s
            delay = next_tick - self._clock()
            if delay < 0:
                next_tick = self._clock()
                delay = 0.0
            if self._stop.wait(delay):
                break

    # -- one cycle -------------------------------------------------------

    def run_cycle(self) -> SystemSnapshot:
        started = self._clock()
        self._set_state(SchedulerState.SAMPLING)
        blocks = self._collect(started)

        samples = []
        for block in blocks:
            try:
                samples.append(self.parser.parse(block))
            except MalformedBlock as exc:
                logger.warning(
                    "discarding block: %s", exc, extra={"event": "malformed_block", "source": block.source.value}
                )
                self._log_event("malformed_block", source=block.source.value, error=str(exc))

        self._set_state(SchedulerState.PUBLISHING)
        snapshot = self.aggregator.aggregate(
            samples,
            previous=self._previous,
            degraded=self.degraded_sources(),
            now=self._clock(),
        )
        self._previous = snapshot
        self.channel.publish(snapshot)
        logger.debug(
            "published generation %d from %d samples",
            snapshot.generation,
            len(samples),
            extra={"event": "snapshot_published", "generation": snapshot.generation},
        )

        self._cycles += 1
        self._last_cycle_s = self._clock() - started
        self._set_state(SchedulerState.IDLE)
        return snapshot

    def _collect(self, now: float) -> list[RawBlock]:
        blocks: list[RawBlock] = []
        futures: dict[Future, RawSourceReader] = {}

        for reader in self.readers:
            health = self._health[reader]
            if health.degraded:
                continue

            pending = self._inflight.get(reader)
            if pending is not None:
                if not pending.done():
                    continue
                del self._inflight[reader]
                late = self._settle(reader, pending)
                if late is not None:
                    blocks.append(late)
                if health.degraded:
                    continue

            if health.restart_due_at is not None:
                if now < health.restart_due_at:
                    continue
                health.restarting = True
                health.restarts += 1
                self._log_event("restart", source=reader.kind.value, attempt=health.attempts)
                logger.info(
                    "restarting source %s (attempt %d)",
                    reader.kind.value,
                    health.attempts,
                    extra={"event": "restart", "source": reader.kind.value, "attempt": health.attempts},
                )
                futures[self._executor.submit(self._restart_and_read, reader)] = reader
            else:
                futures[self._executor.submit(reader.next_block, self.deadline_s)] = reader

        if not futures:
            return blocks

        done, not_done = wait(futures, timeout=self.deadline_s + self.epsilon_s)
        for fut in done:
            block = self._settle(futures[fut], fut)
            if block is not None:
                blocks.append(block)
        for fut in not_done:
            reader = futures[fut]
            self._inflight[reader] = fut
            logger.debug(
                "source %s missed its deadline", reader.kind.value, extra={"event": "source_timeout", "source": reader.kind.value}
            )
            self._log_event("source_timeout", source=reader.kind.value)
        return blocks

    def _restart_and_read(self, reader: RawSourceReader) -> RawBlock:
        reader.restart()
        return reader.next_block(self.deadline_s)

    def _settle(self, reader: RawSourceReader, fut: Future) -> RawBlock | None:
        health = self._health[reader]
        restarting, health.restarting = health.restarting, False
        try:
            block = fut.result()
        except ProcessExited as exc:
            self._schedule_restart(reader, health, exc)
            return None
        except SourceUnavailable as exc:
            if restarting:
                self._schedule_restart(reader, health, exc)
            else:
                logger.debug(
                    "source %s unavailable: %s",
                    reader.kind.value,
                    exc,
                    extra={"event": "source_unavailable", "source": reader.kind.value},
                )
            return None
        except ParseTimeout as exc:
            if restarting:
                health.restart_due_at = None
            logger.debug(
                "source %s timed out: %s", reader.kind.value, exc, extra={"event": "source_timeout", "source": reader.kind.value}
            )
            return None
        except Exception as exc:
            if restarting:
                health.restart_due_at = None
            self._last_error = str(exc)
            logger.warning(
                "source %s raised %s",
                reader.kind.value,
                type(exc).__name__,
                exc_info=exc,
                extra={"event": "source_error", "source": reader.kind.value},
            )
            return None

        if health.restart_due_at is not None or health.attempts:
            self._log_event("recover_ok", source=reader.kind.value, attempts=health.attempts)
        health.attempts = 0
        health.restart_due_at = None
        health.last_error = None
        return block

    def _schedule_restart(self, reader: RawSourceReader, health: _SourceHealth, exc: Exception) -> None:
        health.attempts += 1
        health.last_error = str(exc)
        self._last_error = str(exc)
        if not reader.restartable or health.attempts > self.backoff.max_restarts:
            self._mark_degraded(reader, health)
            return
        wait_for = self.backoff.delay(health.attempts)
        health.restart_due_at = self._clock() + wait_for
        self._log_event("recover_wait", source=reader.kind.value, attempt=health.attempts, wait_s=wait_for)
        logger.warning(
            "source %s lost (%s); restart attempt %d in %.2fs",
            reader.kind.value,
            exc,
            health.attempts,
            wait_for,
            extra={"event": "recover_wait", "source": reader.kind.value, "attempt": health.attempts, "wait_s": wait_for},
        )

    def _mark_degraded(self, reader: RawSourceReader, health: _SourceHealth) -> None:
        health.degraded = True
        health.restart_due_at = None
        self._log_event("source_degraded", source=reader.kind.value, error=health.last_error)
        logger.error(
            "source %s degraded after %d attempts: %s",
            reader.kind.value,
            health.attempts,
            health.last_error,
            extra={"event": "source_degraded", "source": reader.kind.value, "attempt": health.attempts},
        )
        try:
            reader.close()
        except Exception:
            logger.exception(
                "closing %s failed",
                reader.kind.value,
                extra={"event": "source_close_failed", "source": reader.kind.value},
            )
