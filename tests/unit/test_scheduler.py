import sys
import threading
import time
import unittest
from pathlib import Path

ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(ROOT / "packages" / "telemetry"))
sys.path.insert(0, str(ROOT / "packages" / "core"))

from siliconmon_core.aggregator import Aggregator
from siliconmon_core.channel import SnapshotChannel
from siliconmon_core.scheduler import BackoffPolicy, SamplingScheduler, SchedulerState
from siliconmon_telemetry.errors import ParseTimeout, ProcessExited, SourceUnavailable
from siliconmon_telemetry.hardware import HardwareProfile
from siliconmon_telemetry.models import RawBlock, SourceKind
from siliconmon_telemetry.sources import RawSourceReader


PROFILE = HardwareProfile(name="Test", e_core_count=2, p_core_count=2, gpu_core_count="4")
NO_WAIT = BackoffPolicy(base_s=0.0, cap_s=0.0, max_restarts=2, jitter_s=0.0)


class ScriptedReader(RawSourceReader):
    """Replays a script of text reports, counter dicts, exceptions, or delays."""

    def __init__(self, kind, script, default=None, restartable=False, native_interval_s=None):
        self.kind = kind
        self.restartable = restartable
        self.native_interval_s = native_interval_s
        self.script = list(script)
        self.default = default
        self.calls = 0
        self.starts = 0
        self.closed = False

    def start(self):
        self.starts += 1
        self.closed = False

    def close(self):
        self.closed = True

    def next_block(self, timeout):
        self.calls += 1
        item = self.script.pop(0) if self.script else self.default
        if callable(item):
            item = item()
        if isinstance(item, Exception):
            raise item
        if item is None:
            raise SourceUnavailable("script empty")
        if isinstance(item, str):
            return RawBlock(source=self.kind, captured_at=time.monotonic(), text=item)
        return RawBlock(source=self.kind, captured_at=time.monotonic(), counters=item)


def _scheduler(readers, period_s=0.2, deadline_s=None, backoff=NO_WAIT):
    channel = SnapshotChannel()
    sched = SamplingScheduler(
        readers,
        Aggregator(PROFILE),
        channel,
        period_s=period_s,
        source_deadline_s=deadline_s,
        backoff=backoff,
    )
    return sched, channel


class RunCycleTests(unittest.TestCase):
    def test_cycle_publishes_merged_snapshot(self):
        power = ScriptedReader(SourceKind.POWER_REPORT, ["CPU 0 frequency: 1000 MHz\nCPU 1 frequency: 1200 MHz\n"])
        net = ScriptedReader(SourceKind.NETWORK_COUNTERS, [{"net.bytes_sent": 10, "net.bytes_recv": 20}])
        sched, channel = _scheduler([power, net])
        try:
            snap = sched.run_cycle()
        finally:
            sched.stop()
        self.assertIs(channel.latest(), snap)
        self.assertEqual(snap.generation, 1)
        self.assertEqual(snap.number("cpu.core[0].freq_mhz"), 1000.0)
        self.assertEqual(snap.number("cpu.core[1].freq_mhz"), 1200.0)
        self.assertEqual(snap.number("net.bytes_recv"), 20.0)
        self.assertEqual(sched.status.cycles, 1)

    def test_state_returns_to_idle(self):
        reader = ScriptedReader(SourceKind.PROCESS_TABLE, [], default={"proc.count": 3})
        sched, _ = _scheduler([reader])
        try:
            sched.run_cycle()
            self.assertEqual(sched.state, SchedulerState.IDLE)
        finally:
            sched.stop()
        self.assertEqual(sched.state, SchedulerState.STOPPED)

    def test_malformed_block_discarded_others_kept(self):
        power = ScriptedReader(SourceKind.POWER_REPORT, ["garbage\n"])
        mem = ScriptedReader(SourceKind.PROCESS_TABLE, [{"proc.count": 42}])
        sched, _ = _scheduler([power, mem])
        try:
            snap = sched.run_cycle()
        finally:
            sched.stop()
        self.assertEqual(snap.number("proc.count"), 42.0)
        self.assertIn("malformed_block", [e["event"] for e in sched.recent_events()])

    def test_unavailable_source_carries_forward(self):
        reader = ScriptedReader(
            SourceKind.PROCESS_TABLE,
            [{"proc.count": 7}, SourceUnavailable("denied"), {"proc.count": 9}],
        )
        sched, _ = _scheduler([reader])
        try:
            s1 = sched.run_cycle()
            s2 = sched.run_cycle()
            s3 = sched.run_cycle()
        finally:
            sched.stop()
        self.assertEqual([s1.generation, s2.generation, s3.generation], [1, 2, 3])
        self.assertEqual(s2.number("proc.count"), 7.0)
        self.assertTrue(s2.is_stale("proc.count"))
        self.assertEqual(s3.number("proc.count"), 9.0)
        self.assertFalse(s3.is_stale("proc.count"))

    def test_unexpected_reader_error_is_not_fatal(self):
        reader = ScriptedReader(SourceKind.DISK_COUNTERS, [RuntimeError("boom")])
        sched, _ = _scheduler([reader])
        try:
            snap = sched.run_cycle()
        finally:
            sched.stop()
        self.assertEqual(snap.generation, 1)
        self.assertEqual(sched.status.last_error, "boom")

    def test_slow_source_does_not_block_publish(self):
        release = threading.Event()

        def slow():
            release.wait(5.0)
            return {"disk.reads": 2}

        slow_reader = ScriptedReader(SourceKind.DISK_COUNTERS, [{"disk.reads": 1}, slow])
        fast_reader = ScriptedReader(SourceKind.PROCESS_TABLE, [], default={"proc.count": 1})
        sched, _ = _scheduler([slow_reader, fast_reader], period_s=0.3, deadline_s=0.1)
        try:
            sched.run_cycle()
            started = time.monotonic()
            snap = sched.run_cycle()
            elapsed = time.monotonic() - started
            third = sched.run_cycle()
        finally:
            release.set()
            sched.stop()

        self.assertLess(elapsed, sched.period_s + 0.2)
        self.assertEqual(snap.number("disk.reads"), 1.0)
        self.assertTrue(snap.is_stale("disk.reads"))
        self.assertFalse(snap.is_stale("proc.count"))
        # Still in flight: not called again while the previous read is pending.
        self.assertEqual(slow_reader.calls, 2)
        self.assertEqual(third.generation, 3)

    def test_period_not_faster_than_native_interval(self):
        reader = ScriptedReader(SourceKind.POWER_REPORT, [], native_interval_s=1.0)
        sched, _ = _scheduler([reader], period_s=0.2, deadline_s=5.0)
        try:
            self.assertEqual(sched.period_s, 1.0)
            self.assertEqual(sched.deadline_s, 1.0)
        finally:
            sched.stop()


class RecoveryTests(unittest.TestCase):
    def test_process_exit_restarts_and_resumes(self):
        power = ScriptedReader(
            SourceKind.POWER_REPORT,
            ["GPU Power: 10 mW\n", ProcessExited("gone"), "GPU Power: 20 mW\n"],
            restartable=True,
        )
        sched, _ = _scheduler([power])
        try:
            s1 = sched.run_cycle()
            s2 = sched.run_cycle()
            s3 = sched.run_cycle()
        finally:
            sched.stop()
        self.assertEqual(s1.number("gpu.power_mw"), 10.0)
        self.assertTrue(s2.is_stale("gpu.power_mw"))
        self.assertEqual(s3.number("gpu.power_mw"), 20.0)
        self.assertFalse(s3.is_stale("gpu.power_mw"))
        self.assertEqual(sched.status.restarts[SourceKind.POWER_REPORT], 1)
        self.assertEqual(sched.status.degraded, frozenset())
        self.assertEqual(power.starts, 1)
        self.assertIn("recover_ok", [e["event"] for e in sched.recent_events()])

    def test_backoff_waits_before_restart(self):
        power = ScriptedReader(
            SourceKind.POWER_REPORT,
            [ProcessExited("gone")],
            default="GPU Power: 5 mW\n",
            restartable=True,
        )
        sched, _ = _scheduler([power], backoff=BackoffPolicy(base_s=30.0, cap_s=30.0, jitter_s=0.0))
        try:
            sched.run_cycle()
            sched.run_cycle()
        finally:
            sched.stop()
        self.assertEqual(power.calls, 1)
        self.assertEqual(sched.status.restarts.get(SourceKind.POWER_REPORT), 0)

    def test_degraded_after_bounded_retries(self):
        power = ScriptedReader(SourceKind.POWER_REPORT, [], default=ProcessExited("gone"), restartable=True)
        mem = ScriptedReader(SourceKind.PROCESS_TABLE, [], default={"proc.count": 1})
        sched, _ = _scheduler([power, mem])
        try:
            snaps = [sched.run_cycle() for _ in range(5)]
        finally:
            sched.stop()
        self.assertIn(SourceKind.POWER_REPORT, snaps[-1].degraded)
        self.assertEqual(sched.status.degraded, frozenset({SourceKind.POWER_REPORT}))
        self.assertEqual(power.calls, NO_WAIT.max_restarts + 1)
        self.assertTrue(power.closed)
        self.assertEqual(snaps[-1].number("proc.count"), 1.0)
        self.assertFalse(snaps[-1].is_stale("proc.count"))

    def test_start_failure_schedules_restart(self):
        class FailingStart(ScriptedReader):
            def start(self):
                super().start()
                if self.starts == 1:
                    raise SourceUnavailable("permission denied")

        power = FailingStart(SourceKind.POWER_REPORT, [], default="ANE Power: 100 mW\n", restartable=True)
        sched, channel = _scheduler([power], period_s=0.05)
        sched.start()
        try:
            snap = channel.wait_for_generation(1, timeout=5.0)
        finally:
            sched.stop()
        self.assertIsNotNone(snap)
        self.assertEqual(snap.number("ane.power_mw"), 100.0)
        self.assertGreaterEqual(power.starts, 2)
        self.assertEqual(sched.status.degraded, frozenset())

    def test_failed_respawn_counts_toward_degraded(self):
        class RespawnFails(ScriptedReader):
            respawns = 0

            def restart(self):
                self.respawns += 1
                raise SourceUnavailable("cannot start powermetrics")

        power = RespawnFails(SourceKind.POWER_REPORT, [ProcessExited("gone")], restartable=True)
        sched, _ = _scheduler([power])
        try:
            snaps = [sched.run_cycle() for _ in range(5)]
            self.assertTrue(power.closed)
        finally:
            sched.stop()
        self.assertEqual(power.calls, 1)
        self.assertEqual(power.respawns, NO_WAIT.max_restarts)
        self.assertEqual(sched.status.restarts[SourceKind.POWER_REPORT], NO_WAIT.max_restarts)
        self.assertIn(SourceKind.POWER_REPORT, snaps[-1].degraded)
        self.assertEqual(sched.status.last_error, "cannot start powermetrics")

    def test_timeout_after_respawn_resumes_normal_reads(self):
        class CountingRestart(ScriptedReader):
            respawns = 0

            def restart(self):
                self.respawns += 1
                super().restart()

        power = CountingRestart(
            SourceKind.POWER_REPORT,
            [ProcessExited("gone"), ParseTimeout("warming up"), "GPU Power: 7 mW\n"],
            restartable=True,
        )
        sched, _ = _scheduler([power])
        try:
            sched.run_cycle()
            sched.run_cycle()
            s3 = sched.run_cycle()
        finally:
            sched.stop()
        self.assertEqual(power.respawns, 1)
        self.assertEqual(power.calls, 3)
        self.assertEqual(s3.number("gpu.power_mw"), 7.0)
        self.assertEqual(sched.status.degraded, frozenset())
        self.assertIn("recover_ok", [e["event"] for e in sched.recent_events()])

    def test_backoff_policy_caps(self):
        policy = BackoffPolicy(base_s=0.25, cap_s=4.0, jitter_s=0.0)
        self.assertEqual([policy.delay(n) for n in range(1, 7)], [0.25, 0.5, 1.0, 2.0, 4.0, 4.0])


class ThreadedSchedulerTests(unittest.TestCase):
    def test_start_publishes_and_stop_is_prompt(self):
        reader = ScriptedReader(SourceKind.PROCESS_TABLE, [], default={"proc.count": 5})
        sched, channel = _scheduler([reader], period_s=0.05)
        sched.start()
        try:
            snap = channel.wait_for_generation(3, timeout=5.0)
        finally:
            started = time.monotonic()
            sched.stop()
            stop_elapsed = time.monotonic() - started
        self.assertIsNotNone(snap)
        self.assertGreaterEqual(snap.generation, 3)
        self.assertLess(stop_elapsed, 1.0)
        self.assertTrue(reader.closed)
        self.assertEqual(sched.state, SchedulerState.STOPPED)

    def test_context_manager(self):
        reader = ScriptedReader(SourceKind.PROCESS_TABLE, [], default={"proc.count": 5})
        sched, channel = _scheduler([reader], period_s=0.05)
        with sched:
            self.assertIsNotNone(channel.wait_for_generation(1, timeout=5.0))
        self.assertTrue(reader.closed)


if __name__ == "__main__":
    unittest.main()
