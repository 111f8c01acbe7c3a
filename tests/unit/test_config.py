import json
import sys
import tempfile
import unittest
from pathlib import Path

ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(ROOT / "packages" / "telemetry"))
sys.path.insert(0, str(ROOT / "packages" / "core"))

from siliconmon_core.config import CONFIG_VERSION, AppConfig, load_config, save_config


class ConfigTests(unittest.TestCase):
    def test_load_default_when_missing(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "missing.json"
            cfg = load_config(path)
            self.assertIsInstance(cfg, AppConfig)
            self.assertEqual(cfg.sampling.period_ms, 500)
            self.assertTrue(cfg.power_report.enabled)
            self.assertEqual(cfg.recovery.max_restarts, 5)
            self.assertEqual(cfg.ui.theme, "classic")

    def test_save_and_reload(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "config.json"
            cfg = load_config(path)
            cfg.sampling.period_ms = 750
            cfg.ui.theme = "mono"
            cfg.capacity.e_core_count = 4
            save_config(cfg, path)
            reloaded = load_config(path)
            self.assertEqual(reloaded.sampling.period_ms, 750)
            self.assertEqual(reloaded.ui.theme, "mono")
            self.assertEqual(reloaded.capacity.e_core_count, 4)
            self.assertEqual(reloaded.config_version, CONFIG_VERSION)

    def test_corrupt_file_falls_back_to_defaults(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "config.json"
            path.write_text("{not json", encoding="utf-8")
            cfg = load_config(path)
            self.assertEqual(cfg.sampling.period_ms, 500)

    def test_migrate_v1_shape(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "config.json"
            old = {"interval_ms": 1000, "ui": {"theme": "solar"}}
            path.write_text(json.dumps(old), encoding="utf-8")
            cfg = load_config(path)
            self.assertEqual(cfg.sampling.period_ms, 1000)
            self.assertEqual(cfg.power_report.interval_ms, 1000)
            self.assertEqual(cfg.ui.theme, "solar")
            self.assertEqual(cfg.config_version, 2)

    def test_values_clamped(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "config.json"
            raw = {
                "config_version": 2,
                "sampling": {"period_ms": 5, "source_deadline_ms": 9000},
                "recovery": {"backoff_base_ms": 500, "backoff_cap_ms": 100, "max_restarts": -3},
                "capacity": {"gpu_max_mhz": 0},
            }
            path.write_text(json.dumps(raw), encoding="utf-8")
            cfg = load_config(path)
            self.assertEqual(cfg.sampling.period_ms, 100)
            self.assertEqual(cfg.sampling.source_deadline_ms, 100)
            self.assertEqual(cfg.recovery.backoff_cap_ms, 500)
            self.assertEqual(cfg.recovery.max_restarts, 0)
            self.assertEqual(cfg.capacity.gpu_max_mhz, 1.0)

    def test_unknown_keys_ignored(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "config.json"
            path.write_text(json.dumps({"config_version": 2, "ui": {"sparkles": True}}), encoding="utf-8")
            cfg = load_config(path)
            self.assertFalse(hasattr(cfg.ui, "sparkles"))


if __name__ == "__main__":
    unittest.main()
