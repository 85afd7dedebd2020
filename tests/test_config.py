"""Tests for the configuration module."""

import json
import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from telepool._backoff import BackoffPolicy
from telepool._config import (
    ApiConfig,
    BackpressureConfig,
    BufferConfig,
    ConfigEntry,
    ConfigEnvVarError,
    ConfigValidationError,
    TelepoolConfig,
)

NOW = 1_700_000_000_000


class ConfigTestCase(unittest.TestCase):
    """Runs every test with an empty TELEPOOL_* environment and a temporary home."""

    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.home = Path(self.temp_dir.name)
        clean_env = {k: v for k, v in os.environ.items() if not k.startswith("TELEPOOL_")}
        clean_env["TELEPOOL_HOME"] = str(self.home)
        self.env_patcher = patch.dict(os.environ, clean_env, clear=True)
        self.env_patcher.start()

    def tearDown(self):
        self.env_patcher.stop()
        self.temp_dir.cleanup()

    def write_config_file(self, data):
        (self.home / "config.json").write_text(json.dumps(data))


class TestDefaults(ConfigTestCase):

    def test_api_defaults(self):
        config = TelepoolConfig.load()

        self.assertIsNone(config.api.api_key)
        self.assertEqual(config.api.region, "us")
        self.assertEqual(config.api.resolved_base_url, "https://api.rulecatch.ai")
        self.assertEqual(config.api.negotiate_timeout, 10.0)
        self.assertEqual(config.api.send_timeout, 30.0)
        self.assertFalse(config.api.has_credentials())

    def test_backpressure_defaults(self):
        config = TelepoolConfig.load()

        self.assertEqual(config.backpressure.to_policy(), BackoffPolicy())
        self.assertEqual(config.backpressure.renegotiate_every, 100)
        self.assertIsNone(config.backpressure.max_drain_duration)

    def test_buffer_paths(self):
        buffer = TelepoolConfig.load().buffer

        self.assertEqual(buffer.batch_size, 20)
        self.assertFalse(buffer.monitor_only)
        self.assertEqual(buffer.buffer_dir, self.home / "buffer")
        self.assertEqual(buffer.state_file, self.home / ".backpressure-state")
        self.assertEqual(buffer.log_file, self.home / "flush.log")

    def test_default_home_is_under_user_directory(self):
        self.assertEqual(BufferConfig().home, Path("~/.claude/rulecatch").expanduser())


class TestPrecedence(ConfigTestCase):
    """defaults < config file < env vars < overrides"""

    def test_config_file_values(self):
        self.write_config_file({
            "apiKey": "dc_from_file_123",
            "region": "eu",
            "projectId": "proj-1",
            "batchSize": 30,
            "monitorOnly": True,
            "encryptionKey": "ignored",
        })

        config = TelepoolConfig.load()

        self.assertEqual(config.api.api_key, "dc_from_file_123")
        self.assertEqual(config.api.resolved_base_url, "https://api-eu.rulecatch.ai")
        self.assertEqual(config.api.project_id, "proj-1")
        self.assertEqual(config.buffer.batch_size, 30)
        self.assertTrue(config.buffer.monitor_only)

    def test_env_overrides_config_file(self):
        self.write_config_file({"apiKey": "dc_from_file_123", "batchSize": 30})
        os.environ["TELEPOOL_API_KEY"] = "dc_from_env_456"
        os.environ["TELEPOOL_BATCH_SIZE"] = "5"

        config = TelepoolConfig.load()

        self.assertEqual(config.api.api_key, "dc_from_env_456")
        self.assertEqual(config.buffer.batch_size, 5)

    def test_overrides_win(self):
        os.environ["TELEPOOL_BATCH_SIZE"] = "5"

        config = TelepoolConfig.load(buffer={"batch_size": 50})

        self.assertEqual(config.buffer.batch_size, 50)

    def test_explicit_config_file_path(self):
        other = self.home / "other.json"
        other.write_text(json.dumps({"region": "eu"}))

        self.assertEqual(TelepoolConfig.load(other).api.region, "eu")

    def test_malformed_config_file_is_ignored(self):
        (self.home / "config.json").write_text("{oops")

        with self.assertLogs("telepool._config", level="WARNING"):
            config = TelepoolConfig.load()

        self.assertEqual(config.buffer.batch_size, 20)

    def test_api_url_env_wins_over_base_url(self):
        os.environ["TELEPOOL_BASE_URL"] = "https://base.example.com"
        os.environ["TELEPOOL_API_URL"] = "http://localhost:3000"

        config = TelepoolConfig.load()

        self.assertEqual(config.api.resolved_base_url, "http://localhost:3000")

    def test_base_url_overrides_region(self):
        config = TelepoolConfig.load(api={"region": "eu", "base_url": "https://staging.example.com"})

        self.assertEqual(config.api.resolved_base_url, "https://staging.example.com")


class TestEnvVars(ConfigTestCase):

    def test_typed_conversion(self):
        os.environ["TELEPOOL_SEND_TIMEOUT"] = "12.5"
        os.environ["TELEPOOL_MONITOR_ONLY"] = "yes"
        os.environ["TELEPOOL_BACKOFF_MAX_LEVEL"] = "6"

        config = TelepoolConfig.load()

        self.assertEqual(config.api.send_timeout, 12.5)
        self.assertTrue(config.buffer.monitor_only)
        self.assertEqual(config.backpressure.max_backoff_level, 6)

    def test_invalid_value_raises(self):
        os.environ["TELEPOOL_BATCH_SIZE"] = "lots"

        with self.assertRaises(ConfigEnvVarError) as ctx:
            TelepoolConfig.load()

        self.assertEqual(ctx.exception.env_var, "TELEPOOL_BATCH_SIZE")

    def test_max_drain_duration(self):
        os.environ["TELEPOOL_MAX_DRAIN_DURATION"] = "45"
        self.assertEqual(TelepoolConfig.load().backpressure.max_drain_duration, 45.0)

    def test_max_drain_duration_unlimited(self):
        os.environ["TELEPOOL_MAX_DRAIN_DURATION"] = "unlimited"

        config = TelepoolConfig.load(backpressure={"max_drain_duration": 10})

        self.assertEqual(config.backpressure.max_drain_duration, 10)
        self.assertIsNone(TelepoolConfig.load().backpressure.max_drain_duration)


class TestSessionToken(ConfigTestCase):

    def write_session(self, data):
        (self.home / ".session").write_text(json.dumps(data))

    def test_reads_valid_session(self):
        self.write_session({"token": "sess-abc", "expiry": NOW + 60_000})

        config = TelepoolConfig().with_section_overrides(buffer={"home_dir": self.home}).with_session_token(now=NOW)

        self.assertEqual(config.api.session_token, "sess-abc")

    def test_ignores_expired_session(self):
        self.write_session({"token": "sess-abc", "expiry": NOW - 1})

        config = TelepoolConfig().with_section_overrides(buffer={"home_dir": self.home}).with_session_token(now=NOW)

        self.assertIsNone(config.api.session_token)

    def test_ignores_corrupt_session(self):
        (self.home / ".session").write_text("not json")

        with self.assertLogs("telepool._config", level="WARNING"):
            config = TelepoolConfig.load()

        self.assertIsNone(config.api.session_token)

    def test_explicit_token_is_kept(self):
        self.write_session({"token": "sess-file"})

        config = TelepoolConfig.load(api={"session_token": "sess-explicit"})

        self.assertEqual(config.api.session_token, "sess-explicit")


class TestValidation(ConfigTestCase):

    def test_invalid_region(self):
        with self.assertRaises(ConfigValidationError) as ctx:
            TelepoolConfig.load(api={"region": "ap"})
        self.assertEqual(ctx.exception.section, "api")

    def test_invalid_base_url(self):
        with self.assertRaises(ConfigValidationError):
            TelepoolConfig.load(api={"base_url": "ftp://example.com"})

    def test_invalid_batch_size_from_file(self):
        self.write_config_file({"batchSize": "twenty"})
        with self.assertRaises(ConfigValidationError):
            TelepoolConfig.load()

    def test_max_delay_below_base(self):
        with self.assertRaises(ConfigValidationError):
            BackpressureConfig(base_delay_ms=5000, max_delay_ms=1000).validate()

    def test_non_positive_renegotiation_interval(self):
        with self.assertRaises(ConfigValidationError):
            BackpressureConfig(renegotiate_every=0).validate()

    def test_unknown_override_field(self):
        with self.assertRaises(ValueError):
            ApiConfig().with_overrides({"apikey": "x"})


class TestExplain(ConfigTestCase):

    def test_sources_are_tracked(self):
        self.write_config_file({"batchSize": 30})
        os.environ["TELEPOOL_API_KEY"] = "dc_from_env_456"

        data = TelepoolConfig.load(backpressure={"renegotiate_every": 50}).explain_data()

        sources = {
            section: {entry.name: entry.source for entry in entries}
            for section, entries in data.items()
        }
        self.assertEqual(sources["buffer"]["batch_size"], "file")
        self.assertEqual(sources["buffer"]["home_dir"], "env:TELEPOOL_HOME")
        self.assertEqual(sources["api"]["api_key"], "env:TELEPOOL_API_KEY")
        self.assertEqual(sources["api"]["region"], "default")
        self.assertEqual(sources["backpressure"]["renegotiate_every"], "override")

    def test_api_url_source(self):
        os.environ["TELEPOOL_API_URL"] = "http://localhost:3000"

        entries = {e.name: e for e in TelepoolConfig.load().explain_data()["api"]}

        self.assertEqual(entries["base_url"].source, "env:TELEPOOL_API_URL")


class TestConfigEntry(unittest.TestCase):

    def test_masks_long_api_key(self):
        self.assertEqual(ConfigEntry("api_key", "dc_1234567890abcd", "file").formatted_value, "dc_1********abcd")

    def test_masks_short_secret(self):
        self.assertEqual(ConfigEntry("session_token", "abcdef", "session").formatted_value, "********ef")

    def test_none(self):
        self.assertEqual(ConfigEntry("api_key", None, "default").formatted_value, "None")

    def test_truncates_long_values(self):
        value = ConfigEntry("base_url", "https://" + "x" * 80, "override").formatted_value
        self.assertEqual(len(value), 50)
        self.assertTrue(value.endswith("..."))


if __name__ == "__main__":
    unittest.main()
