import sys
import unittest
from dataclasses import FrozenInstanceError
from pathlib import Path

ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(ROOT / "packages" / "telemetry"))
sys.path.insert(0, str(ROOT / "packages" / "core"))

from siliconmon_core.aggregator import Aggregator, counter_rate, normalize_pct
from siliconmon_telemetry.hardware import HardwareProfile
from siliconmon_telemetry.models import MetricSample, SourceKind, SystemSnapshot


PROFILE = HardwareProfile(
    name="Test M1",
    e_core_count=4,
    p_core_count=4,
    gpu_core_count="8",
    e_core_max_mhz=2000.0,
    p_core_max_mhz=3000.0,
    gpu_max_mhz=1000.0,
    ane_max_power_mw=8000.0,
)


def _power(ts, fields):
    return MetricSample(source=SourceKind.POWER_REPORT, timestamp=ts, fields=fields)


def _net(ts, sent, recv):
    return MetricSample(
        source=SourceKind.NETWORK_COUNTERS,
        timestamp=ts,
        fields={"net.bytes_sent": sent, "net.bytes_recv": recv},
    )


class HelperTests(unittest.TestCase):
    def test_normalize_clamps_both_ends(self):
        self.assertEqual(normalize_pct(5000.0, 3000.0), 100.0)
        self.assertEqual(normalize_pct(-10.0, 3000.0), 0.0)
        self.assertEqual(normalize_pct(1500.0, 3000.0), 50.0)
        self.assertEqual(normalize_pct(10.0, 0.0), 0.0)

    def test_counter_rate(self):
        self.assertEqual(counter_rate(300.0, 100.0, 2.0), 100.0)
        self.assertEqual(counter_rate(50.0, 100.0, 2.0), 0.0)
        self.assertIsNone(counter_rate(300.0, 100.0, 0.0))


class AggregatorTests(unittest.TestCase):
    def setUp(self):
        self.agg = Aggregator(PROFILE)

    def test_first_cycle_generation_and_values(self):
        snap = self.agg.aggregate([_power(1.0, {"cpu.core[0].freq_mhz": 1000.0})], previous=None, now=1.1)
        self.assertEqual(snap.generation, 1)
        self.assertEqual(snap.number("cpu.core[0].freq_mhz"), 1000.0)
        self.assertEqual(snap.number("cpu.core[0].freq_pct"), 50.0)
        self.assertEqual(snap.missed["cpu.core[0].freq_mhz"], 0)
        self.assertAlmostEqual(snap.staleness, 0.1)

    def test_generation_strictly_increases(self):
        snap = None
        generations = []
        for i in range(5):
            snap = self.agg.aggregate([], previous=snap, now=float(i))
            generations.append(snap.generation)
        self.assertEqual(generations, [1, 2, 3, 4, 5])

    def test_duplicate_samples_latest_timestamp_wins(self):
        newer = _power(2.0, {"gpu.active_pct": 40.0})
        older = _power(1.0, {"gpu.active_pct": 10.0})
        snap = self.agg.aggregate([newer, older], previous=None, now=2.5)
        self.assertEqual(snap.number("gpu.active_pct"), 40.0)
        self.assertEqual(snap.observed_at["gpu.active_pct"], 2.0)

    def test_carry_forward_for_one_missing_cycle(self):
        key = "cpu.core[1].freq_mhz"
        s1 = self.agg.aggregate([_power(1.0, {key: 1200.0})], previous=None, now=1.0)
        s2 = self.agg.aggregate([], previous=s1, now=2.0)
        s3 = self.agg.aggregate([_power(3.0, {key: 1300.0})], previous=s2, now=3.0)

        self.assertEqual(s2.number(key), 1200.0)
        self.assertTrue(s2.is_stale(key))
        self.assertGreater(s2.field_staleness(key), 0.0)
        self.assertEqual(s1.field_staleness(key), 0.0)
        self.assertEqual(s3.field_staleness(key), 0.0)
        self.assertEqual(s3.number(key), 1300.0)
        self.assertFalse(s3.is_stale(key))

    def test_missed_counter_accumulates(self):
        snap = self.agg.aggregate([_power(0.0, {"ane.power_mw": 100.0})], previous=None, now=0.0)
        for i in range(1, 4):
            snap = self.agg.aggregate([], previous=snap, now=float(i))
        self.assertEqual(snap.missed["ane.power_mw"], 3)
        self.assertEqual(snap.field_staleness("ane.power_mw"), 3.0)
        self.assertEqual(snap.staleness, 3.0)

    def test_rate_from_cumulative_counters(self):
        s1 = self.agg.aggregate([_net(10.0, 1000.0, 5000.0)], previous=None, now=10.0)
        self.assertIsNone(s1.number("net.bytes_sent_per_s"))
        s2 = self.agg.aggregate([_net(12.0, 3000.0, 6000.0)], previous=s1, now=12.0)
        self.assertEqual(s2.number("net.bytes_sent_per_s"), 1000.0)
        self.assertEqual(s2.number("net.bytes_recv_per_s"), 500.0)

    def test_counter_reset_gives_zero_rate(self):
        s1 = self.agg.aggregate([_net(10.0, 90000.0, 90000.0)], previous=None, now=10.0)
        s2 = self.agg.aggregate([_net(11.0, 100.0, 90500.0)], previous=s1, now=11.0)
        self.assertEqual(s2.number("net.bytes_sent_per_s"), 0.0)
        self.assertEqual(s2.number("net.bytes_recv_per_s"), 500.0)

    def test_rate_carried_forward_when_counter_missing(self):
        s1 = self.agg.aggregate([_net(0.0, 0.0, 0.0)], previous=None, now=0.0)
        s2 = self.agg.aggregate([_net(1.0, 100.0, 100.0)], previous=s1, now=1.0)
        s3 = self.agg.aggregate([], previous=s2, now=2.0)
        self.assertEqual(s3.number("net.bytes_sent_per_s"), 100.0)
        self.assertTrue(s3.is_stale("net.bytes_sent_per_s"))

    def test_utilization_clamps_to_exactly_100(self):
        snap = self.agg.aggregate(
            [
                _power(
                    1.0,
                    {
                        "cpu.core[5].freq_mhz": 4500.0,
                        "cpu.core[0].active_pct": 130.0,
                        "gpu.freq_mhz": 99999.0,
                        "ane.power_mw": 9000.0,
                    },
                )
            ],
            previous=None,
            now=1.0,
        )
        self.assertEqual(snap.number("cpu.core[5].freq_pct"), 100.0)
        self.assertEqual(snap.number("cpu.core[0].util_pct"), 100.0)
        self.assertEqual(snap.number("gpu.freq_pct"), 100.0)
        self.assertEqual(snap.number("ane.util_pct"), 100.0)

    def test_core_class_capacity(self):
        snap = self.agg.aggregate(
            [_power(1.0, {"cpu.core[0].freq_mhz": 1000.0, "cpu.core[4].freq_mhz": 1500.0})],
            previous=None,
            now=1.0,
        )
        self.assertEqual(snap.number("cpu.core[0].freq_pct"), 50.0)
        self.assertEqual(snap.number("cpu.core[4].freq_pct"), 50.0)
        self.assertEqual(snap.core_values("freq_mhz", 3), [1000.0, None, None])

    def test_memory_percent_includes_swap(self):
        sample = MetricSample(
            source=SourceKind.PROCESS_TABLE,
            timestamp=1.0,
            fields={
                "mem.total_bytes": 800.0,
                "mem.used_bytes": 300.0,
                "swap.total_bytes": 200.0,
                "swap.used_bytes": 100.0,
            },
        )
        snap = self.agg.aggregate([sample], previous=None, now=1.0)
        self.assertEqual(snap.number("mem.used_pct"), 40.0)

    def test_degraded_sources_recorded(self):
        snap = self.agg.aggregate([], previous=None, degraded=[SourceKind.POWER_REPORT], now=1.0)
        self.assertEqual(snap.degraded, frozenset({SourceKind.POWER_REPORT}))

    def test_snapshot_is_immutable(self):
        snap = self.agg.aggregate([_power(1.0, {"gpu.active_pct": 5.0})], previous=None, now=1.0)
        with self.assertRaises(FrozenInstanceError):
            snap.generation = 99
        with self.assertRaises(TypeError):
            snap.values["gpu.active_pct"] = 1.0

    def test_previous_snapshot_not_modified(self):
        s1 = self.agg.aggregate([_power(1.0, {"gpu.active_pct": 5.0})], previous=None, now=1.0)
        before = dict(s1.values)
        self.agg.aggregate([_power(2.0, {"gpu.active_pct": 9.0})], previous=s1, now=2.0)
        self.assertEqual(dict(s1.values), before)

    def test_empty_snapshot(self):
        empty = SystemSnapshot.empty()
        self.assertTrue(empty.is_empty)
        self.assertEqual(empty.staleness, 0.0)
        self.assertIsNone(empty.number("gpu.util_pct"))


if __name__ == "__main__":
    unittest.main()
