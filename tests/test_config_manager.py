import errno
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import yaml

from calfeed.config_manager import ConfigManager
from calfeed.models import AppConfig


class ConfigManagerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmpdir.cleanup)
        self.config_path = Path(self.tmpdir.name) / "conf" / "config.yaml"

    def test_missing_file_is_created_with_defaults(self) -> None:
        manager = ConfigManager(str(self.config_path))
        self.assertTrue(self.config_path.exists())
        config = manager.load()
        self.assertEqual(config.fetcher.timeout_seconds, 10.0)
        self.assertEqual(config.fetcher.max_redirects, 3)
        self.assertEqual(config.parser.max_events, 5000)
        self.assertEqual(config.sync.default_preset, "6h")
        data = yaml.safe_load(self.config_path.read_text(encoding="utf-8"))
        self.assertEqual(data["storage"]["database_path"], "data/calfeed.db")

    def test_partial_file_fills_defaults_and_clamps(self) -> None:
        self.config_path.parent.mkdir(parents=True)
        self.config_path.write_text(
            "sync:\n  timezone: Europe/Berlin\n  sweep_interval_seconds: 5\nfetcher:\n  max_redirects: -2\n",
            encoding="utf-8",
        )
        config = ConfigManager(str(self.config_path)).load()
        self.assertEqual(config.sync.timezone, "Europe/Berlin")
        self.assertEqual(config.sync.sweep_interval_seconds, 30)
        self.assertEqual(config.fetcher.max_redirects, 0)
        self.assertEqual(config.sync.retention_future_days, 90)

    def test_non_mapping_file_is_rejected(self) -> None:
        self.config_path.parent.mkdir(parents=True)
        self.config_path.write_text("- just\n- a list\n", encoding="utf-8")
        with self.assertRaises(ValueError):
            ConfigManager(str(self.config_path)).load()

    def test_update_deep_merges(self) -> None:
        manager = ConfigManager(str(self.config_path))
        config = manager.update({"sync": {"retention_past_days": 7}, "logging": {"level": "debug"}})
        self.assertEqual(config.sync.retention_past_days, 7)
        self.assertEqual(config.sync.retention_future_days, 90)
        self.assertEqual(config.logging.level, "DEBUG")
        self.assertEqual(manager.load().sync.retention_past_days, 7)

    def test_save_fallback_when_replace_ebusy(self) -> None:
        manager = ConfigManager(str(self.config_path))
        config = AppConfig.from_dict(
            {
                "fetcher": {"user_agent": "calfeed-test", "max_bytes": 4096},
                "storage": {"database_path": "/var/lib/calfeed/state.db"},
            }
        )

        original_replace = Path.replace

        def replace_side_effect(self: Path, target: Path) -> Path:
            if str(self).endswith(".tmp"):
                raise OSError(errno.EBUSY, "Device or resource busy")
            return original_replace(self, target)

        with mock.patch("pathlib.Path.replace", new=replace_side_effect):
            manager.save(config)

        self.assertTrue(self.config_path.exists())
        self.assertFalse(self.config_path.with_suffix(".yaml.tmp").exists())
        data = yaml.safe_load(self.config_path.read_text(encoding="utf-8"))
        self.assertEqual(data["fetcher"]["user_agent"], "calfeed-test")
        self.assertEqual(data["storage"]["database_path"], "/var/lib/calfeed/state.db")

    def test_other_replace_errors_propagate(self) -> None:
        manager = ConfigManager(str(self.config_path))

        def replace_side_effect(self: Path, target: Path) -> Path:
            raise OSError(errno.EACCES, "Permission denied")

        with mock.patch("pathlib.Path.replace", new=replace_side_effect):
            with self.assertRaises(OSError):
                manager.save(AppConfig())


if __name__ == "__main__":
    unittest.main()
