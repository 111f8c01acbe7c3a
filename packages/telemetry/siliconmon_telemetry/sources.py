"""Raw telemetry sources: the report subprocess and kernel counter queries."""

from __future__ import annotations

import logging
import queue
import subprocess
import threading
import time
from pathlib import Path
from typing import IO, Callable, Iterator, Sequence

import psutil

from .errors import ParseTimeout, ProcessExited, SourceUnavailable
from .models import RawBlock, SourceKind


logger = logging.getLogger("siliconmon.sources")

REPORT_HEADER = "*** Sampled system activity"
DEFAULT_SAMPLERS = "cpu_power,gpu_power,thermal,network,disk"


def powermetrics_command(interval_ms: int = 500, samplers: str = DEFAULT_SAMPLERS, binary: str = "powermetrics") -> list[str]:
    return [binary, "--samplers", samplers, "--show-initial-usage", "-i", str(int(interval_ms))]


def timed_reports(
    lines: Iterator[str],
    header: str = REPORT_HEADER,
    clock: Callable[[], float] = time.monotonic,
) -> Iterator[tuple[float, str]]:
    """Group a line stream into ``(started_at, text)`` report blocks.

    A block ends where the next header begins, and the trailing block is
    flushed at end-of-stream. Text before the first header is the tool's
    preamble and is dropped once a header shows up. ``started_at`` is read
    from ``clock`` when the block's first line arrives, not when the block
    is complete.
    """
    current: list[str] = []
    started: float | None = None
    in_report = False
    for line in lines:
        if line.startswith(header):
            if in_report and any(s.strip() for s in current):
                yield started, "".join(current)
            current = []
            in_report = True
            started = clock()
        elif started is None:
            started = clock()
        current.append(line)
    if any(s.strip() for s in current):
        yield (clock() if started is None else started), "".join(current)


def split_reports(lines: Iterator[str], header: str = REPORT_HEADER) -> Iterator[str]:
    for _, text in timed_reports(lines, header):
        yield text


class RawSourceReader:
    """Common capability for every telemetry source.

    ``next_block`` returns one RawBlock or raises SourceUnavailable,
    ParseTimeout or ProcessExited. Readers are context managers; closing one
    releases everything it owns.
    """

    kind: SourceKind
    restartable = False
    native_interval_s: float | None = None

    def start(self) -> None:
        return None

    def restart(self) -> None:
        self.close()
        self.start()

    def next_block(self, timeout: float) -> RawBlock:
        raise NotImplementedError

    def close(self) -> None:
        return None

    def __enter__(self) -> "RawSourceReader":
        self.start()
        return self

    def __exit__(self, *_exc) -> None:
        self.close()


class PowerReportProcess(RawSourceReader):
    """Owns one long-lived report subprocess and serves its periodic reports."""

    kind = SourceKind.POWER_REPORT
    restartable = True

    def __init__(
        self,
        command: Sequence[str] | None = None,
        interval_ms: int = 500,
        header: str = REPORT_HEADER,
        backlog: int = 4,
        terminate_timeout_s: float = 2.0,
    ) -> None:
        self.command = list(command) if command else powermetrics_command(interval_ms)
        self.native_interval_s = max(interval_ms, 1) / 1000.0
        self.header = header
        self.terminate_timeout_s = terminate_timeout_s
        self._blocks: queue.Queue[tuple[float, str]] = queue.Queue(maxsize=max(1, backlog))
        self._proc: subprocess.Popen | None = None
        self._reader: threading.Thread | None = None
        self._eof = threading.Event()
        self._lock = threading.Lock()

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc is not None else None

    @property
    def running(self) -> bool:
        return self._proc is not None and self._proc.poll() is None

    def start(self) -> None:
        with self._lock:
            if self._proc is not None:
                return
            try:
                proc = subprocess.Popen(
                    self.command,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.DEVNULL,
                    encoding="utf-8",
                    errors="replace",
                    bufsize=1,
                )
            except (OSError, ValueError) as exc:
                raise SourceUnavailable(f"cannot start {self.command[0]}: {exc}") from exc

            self._blocks = queue.Queue(maxsize=self._blocks.maxsize)
            self._eof = threading.Event()
            self._proc = proc
            self._reader = threading.Thread(
                target=self._pump,
                args=(proc.stdout, self._blocks, self._eof),
                name="siliconmon-report-reader",
                daemon=True,
            )
            self._reader.start()
            logger.info("report process started pid=%s", proc.pid, extra={"event": "report_process_started", "pid": proc.pid})

    def _pump(self, stream: IO[str], blocks: queue.Queue, eof: threading.Event) -> None:
        try:
            for item in timed_reports(iter(stream.readline, ""), self.header):
                while True:
                    try:
                        blocks.put_nowait(item)
                        break
                    except queue.Full:
                        # Only the newest report matters; drop the oldest.
                        try:
                            blocks.get_nowait()
                        except queue.Empty:
                            pass
        except (OSError, ValueError):
            logger.debug("report stream closed", extra={"event": "report_stream_closed"})
        finally:
            eof.set()

    def next_block(self, timeout: float) -> RawBlock:
        proc = self._proc
        if proc is None:
            raise ProcessExited("report process not running")

        deadline = time.monotonic() + max(timeout, 0.0)
        while True:
            remaining = deadline - time.monotonic()
            try:
                captured_at, text = self._blocks.get(timeout=max(0.0, min(0.05, remaining)))
            except queue.Empty:
                if self._eof.is_set() and self._blocks.empty():
                    try:
                        code = proc.wait(timeout=0.1)
                    except subprocess.TimeoutExpired:
                        code = None
                    raise ProcessExited("report process exited", returncode=code)
                if remaining <= 0:
                    raise ParseTimeout(f"no report within {timeout:.3f}s")
                continue

            # Drain to the newest complete report.
            while True:
                try:
                    captured_at, text = self._blocks.get_nowait()
                except queue.Empty:
                    break
            return RawBlock(source=self.kind, captured_at=captured_at, text=text)

    def close(self) -> None:
        with self._lock:
            proc, reader = self._proc, self._reader
            self._proc = None
            self._reader = None
        if proc is None:
            return
        if proc.poll() is None:
            proc.terminate()
            try:
                proc.wait(timeout=self.terminate_timeout_s)
            except subprocess.TimeoutExpired:
                proc.kill()
                proc.wait(timeout=self.terminate_timeout_s)
        if reader is not None:
            reader.join(timeout=self.terminate_timeout_s)
        if proc.stdout is not None:
            proc.stdout.close()
        logger.info(
            "report process stopped pid=%s code=%s",
            proc.pid,
            proc.returncode,
            extra={"event": "report_process_stopped", "pid": proc.pid, "returncode": proc.returncode},
        )


class ReportReplaySource(RawSourceReader):
    """Serves reports from a captured text file, one per call."""

    kind = SourceKind.POWER_REPORT
    restartable = True

    def __init__(self, path: Path, header: str = REPORT_HEADER, loop: bool = False) -> None:
        self.path = Path(path)
        self.header = header
        self.loop = loop
        self._reports: list[str] = []
        self._index = 0

    def start(self) -> None:
        try:
            text = self.path.read_text(encoding="utf-8")
        except OSError as exc:
            raise SourceUnavailable(f"cannot read {self.path}: {exc}") from exc
        self._reports = list(split_reports(iter(text.splitlines(keepends=True)), self.header))
        self._index = 0

    def next_block(self, timeout: float) -> RawBlock:
        if self._index >= len(self._reports):
            if not self.loop or not self._reports:
                raise ProcessExited(f"replay of {self.path.name} exhausted")
            self._index = 0
        text = self._reports[self._index]
        self._index += 1
        return RawBlock(source=self.kind, captured_at=time.monotonic(), text=text)


class _CounterSource(RawSourceReader):
    def _read(self) -> dict[str, float]:
        raise NotImplementedError

    def next_block(self, timeout: float) -> RawBlock:
        try:
            counters = self._read()
        except (psutil.Error, OSError) as exc:
            raise SourceUnavailable(f"{self.kind.value}: {exc}") from exc
        return RawBlock(source=self.kind, captured_at=time.monotonic(), counters=counters)


class ProcessTableSource(_CounterSource):
    kind = SourceKind.PROCESS_TABLE

    def _read(self) -> dict[str, float]:
        vm = psutil.virtual_memory()
        swap = psutil.swap_memory()
        return {
            "mem.total_bytes": float(vm.total),
            "mem.used_bytes": float(vm.used),
            "mem.available_bytes": float(vm.available),
            "swap.total_bytes": float(swap.total),
            "swap.used_bytes": float(swap.used),
            "proc.count": float(len(psutil.pids())),
        }


class DiskCounterSource(_CounterSource):
    kind = SourceKind.DISK_COUNTERS

    def _read(self) -> dict[str, float]:
        dio = psutil.disk_io_counters()
        if not dio:
            raise SourceUnavailable("disk counters not available")
        return {
            "disk.bytes_read": float(dio.read_bytes),
            "disk.bytes_written": float(dio.write_bytes),
            "disk.reads": float(dio.read_count),
            "disk.writes": float(dio.write_count),
        }


class NetworkCounterSource(_CounterSource):
    kind = SourceKind.NETWORK_COUNTERS

    def _read(self) -> dict[str, float]:
        net = psutil.net_io_counters()
        if not net:
            raise SourceUnavailable("network counters not available")
        return {
            "net.bytes_sent": float(net.bytes_sent),
            "net.bytes_recv": float(net.bytes_recv),
            "net.packets_sent": float(net.packets_sent),
            "net.packets_recv": float(net.packets_recv),
        }
