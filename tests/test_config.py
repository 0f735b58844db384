"""Tests for configuration loading and the settings builders."""

import os
import tempfile
import unittest
from unittest import mock

from harvester.config import (
    build_circuit_breaker,
    build_coordinator_settings,
    build_resolver_config,
    build_retry_config,
    load_config,
    load_sources,
)
from harvester.retry.orchestrator import DEFAULT_RETRYABLE_STATUS_CODES

CONFIG_YAML = """
run_mode: local
gcp:
  project_id: harvester-test
  bigquery_dataset: menus
retry:
  max_retries: 5
  retryable_status_codes: [429, 503]
inventory:
  fast_mode: false
  max_total_time_ms: 8000
batch:
  max_concurrent_sessions: 4
  job_delay_seconds: 0.5
"""

SOURCES_YAML = """
sources:
  - url: https://shop.example.com/menu
    name: Example Shop
  - name: Missing URL
  - url: https://other.example.com/flower
    id: other-flower
"""


class TestLoadConfig(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmpdir.cleanup)
        self.config_path = os.path.join(self.tmpdir.name, "config.yaml")
        with open(self.config_path, "w") as f:
            f.write(CONFIG_YAML)

    @mock.patch.dict(os.environ, {}, clear=True)
    def test_load_from_file(self):
        config = load_config(self.config_path)
        self.assertEqual(config["gcp"]["project_id"], "harvester-test")
        self.assertEqual(config["retry"]["max_retries"], 5)

    @mock.patch.dict(os.environ, {}, clear=True)
    def test_config_path_env_fallback(self):
        os.environ["CONFIG_PATH"] = self.config_path
        self.assertEqual(load_config()["run_mode"], "local")

    @mock.patch.dict(os.environ, {
        "GCP_PROJECT_ID": "prod-project",
        "BIGQUERY_DATASET": "prod_menus",
        "RUN_MODE": "cloud",
        "FAST_MODE": "true",
        "MAX_RETRIES": "1",
    }, clear=True)
    def test_env_overrides(self):
        config = load_config(self.config_path)
        self.assertEqual(config["gcp"]["project_id"], "prod-project")
        self.assertEqual(config["gcp"]["bigquery_dataset"], "prod_menus")
        self.assertEqual(config["run_mode"], "cloud")
        self.assertTrue(config["inventory"]["fast_mode"])
        self.assertEqual(config["retry"]["max_retries"], 1)

    @mock.patch.dict(os.environ, {"FAST_MODE": "no"}, clear=True)
    def test_fast_mode_falsy_value(self):
        self.assertFalse(load_config(self.config_path)["inventory"]["fast_mode"])

    def test_load_sources_skips_missing_url(self):
        sources_path = os.path.join(self.tmpdir.name, "sources.yaml")
        with open(sources_path, "w") as f:
            f.write(SOURCES_YAML)

        sources = load_sources({"source_list_path": sources_path})
        self.assertEqual(len(sources), 2)
        self.assertEqual(sources[0].name, "Example Shop")
        self.assertEqual(sources[0].source_id, "shop.example.com/menu")
        self.assertEqual(sources[1].source_id, "other-flower")


class TestBuilders(unittest.TestCase):

    def setUp(self):
        self.config = {
            "run_mode": "cloud",
            "retry": {"max_retries": 5, "retryable_status_codes": [429, 503]},
            "inventory": {"fast_mode": True, "max_total_time_ms": 8000},
            "batch": {"max_concurrent_sessions": 4, "job_delay_seconds": 0.5},
        }

    def test_retry_config(self):
        retry = build_retry_config(self.config)
        self.assertEqual(retry.max_retries, 5)
        self.assertEqual(retry.retryable_status_codes, frozenset({429, 503}))
        self.assertEqual(retry.base_delay_ms, 1000)

    def test_retry_defaults(self):
        retry = build_retry_config({})
        self.assertEqual(retry.max_retries, 3)
        self.assertEqual(retry.delay_cap_ms, 10000)
        self.assertEqual(retry.retryable_status_codes, DEFAULT_RETRYABLE_STATUS_CODES)

    def test_circuit_breaker(self):
        breaker = build_circuit_breaker({"retry": {"circuit_failure_threshold": 2, "circuit_reset_ms": 5000}})
        self.assertEqual(breaker.failure_threshold, 2)
        self.assertEqual(breaker.reset_time_ms, 5000)

        defaults = build_circuit_breaker({})
        self.assertEqual(defaults.failure_threshold, 5)
        self.assertEqual(defaults.reset_time_ms, 60000)

    def test_resolver_config(self):
        resolver = build_resolver_config(self.config)
        self.assertTrue(resolver.fast_mode)
        self.assertEqual(resolver.max_total_time_ms, 8000)
        self.assertEqual(resolver.dropdown_signal_threshold, 20)

    def test_coordinator_settings(self):
        settings = build_coordinator_settings(self.config)
        self.assertEqual(settings.max_concurrent_sessions, 4)
        self.assertEqual(settings.job_delay_seconds, 0.5)
        self.assertEqual(settings.detail_page_limit, 10)
        self.assertEqual(settings.run_mode, "cloud")


if __name__ == "__main__":
    unittest.main()
