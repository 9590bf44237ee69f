import json
import tempfile
import unittest
from pathlib import Path

from autoreload import (
    DEFAULT_CONFIG,
    ConfigError,
    build_mpv_args,
    load_config,
    main,
    thresholds_from_config,
)


class ConfigTests(unittest.TestCase):
    def test_load_config_resolves_relative_paths_from_config_dir(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            root = Path(tmpdir)
            cfg_path = root / "config.json"
            cfg_path.write_text(
                json.dumps(
                    {
                        "log_file": "./logs/autoreload.log",
                        "ipc_path": "./runtime/mpv.sock",
                        "pause_max_sec": 16,
                    }
                ),
                encoding="utf-8",
            )

            cfg = load_config(str(cfg_path))

            self.assertEqual(cfg["log_file"], str((root / "logs" / "autoreload.log").absolute()))
            self.assertEqual(cfg["ipc_path"], str((root / "runtime" / "mpv.sock").absolute()))
            self.assertEqual(cfg["pause_max_sec"], 16.0)
            self.assertEqual(cfg["demuxer_max_sec"], float(DEFAULT_CONFIG["demuxer_max_sec"]))

    def test_defaults_without_file(self) -> None:
        cfg = load_config(None)
        thresholds = thresholds_from_config(cfg)

        self.assertEqual(thresholds.demuxer_interval, 4.0)
        self.assertEqual(thresholds.demuxer_max, 15.0)
        self.assertEqual(thresholds.demuxer_min_duration, 6.0)
        self.assertEqual(thresholds.pause_interval, 2.0)
        self.assertEqual(thresholds.pause_max, 10.0)
        self.assertTrue(thresholds.pause_seed_from_demuxer)
        self.assertFalse(thresholds.demuxer_disable_when_seekable)
        self.assertGreater(thresholds.demuxer_max, thresholds.pause_max)

    def test_overrides_win_over_file(self) -> None:
        cfg = load_config(None, {"log_level": "DEBUG", "demuxer_max_sec": "20"})
        self.assertEqual(cfg["log_level"], "DEBUG")
        self.assertEqual(cfg["demuxer_max_sec"], 20.0)

    def test_missing_file_is_config_error(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            with self.assertRaises(ConfigError):
                load_config(str(Path(tmpdir) / "missing.json"))

    def test_invalid_json_is_config_error(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            cfg_path = Path(tmpdir) / "config.json"
            cfg_path.write_text("{not json", encoding="utf-8")
            with self.assertRaises(ConfigError):
                load_config(str(cfg_path))

    def test_non_numeric_threshold_is_config_error(self) -> None:
        with self.assertRaises(ConfigError):
            load_config(None, {"pause_max_sec": "soon"})
        with self.assertRaises(ConfigError):
            load_config(None, {"demuxer_interval_sec": True})

    def test_pause_interval_must_be_positive(self) -> None:
        with self.assertRaises(ConfigError):
            load_config(None, {"pause_interval_sec": 0})

    def test_mpv_args_include_idle_and_ipc(self) -> None:
        cfg = load_config(None, {"ipc_path": "/tmp/test-mpv.sock", "mpv_args": ["--cache=yes"]})
        args = build_mpv_args(cfg)

        self.assertEqual(args[0], "mpv")
        self.assertIn("--idle=yes", args)
        self.assertIn("--force-window=yes", args)
        self.assertIn("--input-ipc-server=/tmp/test-mpv.sock", args)
        self.assertEqual(args[-1], "--cache=yes")

    def test_main_reports_bad_config(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            self.assertEqual(main(["--config", str(Path(tmpdir) / "missing.json")]), 2)


if __name__ == "__main__":
    unittest.main()
