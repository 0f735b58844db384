"""Configuration loading for the menu harvester."""

import logging
import os
from typing import Any

import yaml

from harvester.coordinator import CoordinatorSettings
from harvester.inventory.resolver import ResolverConfig
from harvester.models import SourceConfig
from harvester.retry.circuit import CircuitBreaker
from harvester.retry.orchestrator import DEFAULT_RETRYABLE_STATUS_CODES, RetryConfig

logger = logging.getLogger(__name__)

_DEFAULT_CONFIG_PATH = "config/config.yaml"
_TRUTHY = {"1", "true", "yes", "on"}


def load_config(config_path: str | None = None) -> dict[str, Any]:
    """Load configuration from YAML file with environment variable overrides.

    Args:
        config_path: Path to config YAML. Falls back to CONFIG_PATH env var,
                     then to config/config.yaml.

    Returns:
        Merged configuration dictionary.
    """
    path = config_path or os.environ.get("CONFIG_PATH", _DEFAULT_CONFIG_PATH)
    logger.info("Loading config from %s", path)

    with open(path) as f:
        config = yaml.safe_load(f) or {}

    # Environment variable overrides (for Cloud Run deployment)
    if os.environ.get("GCP_PROJECT_ID"):
        config.setdefault("gcp", {})["project_id"] = os.environ["GCP_PROJECT_ID"]
    if os.environ.get("GCP_REGION"):
        config.setdefault("gcp", {})["region"] = os.environ["GCP_REGION"]
    if os.environ.get("BIGQUERY_DATASET"):
        config.setdefault("gcp", {})["bigquery_dataset"] = os.environ["BIGQUERY_DATASET"]
    if os.environ.get("RUN_MODE"):
        config["run_mode"] = os.environ["RUN_MODE"]
    if os.environ.get("FAST_MODE"):
        config.setdefault("inventory", {})["fast_mode"] = os.environ["FAST_MODE"].lower() in _TRUTHY
    if os.environ.get("MAX_RETRIES"):
        config.setdefault("retry", {})["max_retries"] = int(os.environ["MAX_RETRIES"])

    return config


def load_sources(config: dict[str, Any]) -> list[SourceConfig]:
    """Load menu sources from the source list file.

    Args:
        config: Application configuration dict.

    Returns:
        List of SourceConfig objects.
    """
    source_list_path = config.get("source_list_path", "config/sources.yaml")
    logger.info("Loading sources from %s", source_list_path)

    with open(source_list_path) as f:
        data = yaml.safe_load(f) or {}

    sources = []
    for entry in data.get("sources", []):
        if not entry.get("url"):
            logger.warning("Skipping source entry with no URL: %s", entry)
            continue
        sources.append(
            SourceConfig(
                url=entry["url"],
                name=entry.get("name"),
                id=entry.get("id"),
            )
        )

    logger.info("Loaded %d sources", len(sources))
    return sources


def build_retry_config(config: dict[str, Any]) -> RetryConfig:
    retry = config.get("retry", {})
    codes = retry.get("retryable_status_codes")
    return RetryConfig(
        max_retries=int(retry.get("max_retries", 3)),
        base_delay_ms=int(retry.get("base_delay_ms", 1000)),
        backoff_multiplier=float(retry.get("backoff_multiplier", 2.0)),
        delay_cap_ms=int(retry.get("delay_cap_ms", 10000)),
        jitter_ratio=float(retry.get("jitter_ratio", 0.25)),
        retryable_status_codes=frozenset(int(c) for c in codes) if codes else DEFAULT_RETRYABLE_STATUS_CODES,
    )


def build_circuit_breaker(config: dict[str, Any]) -> CircuitBreaker:
    retry = config.get("retry", {})
    return CircuitBreaker(
        failure_threshold=int(retry.get("circuit_failure_threshold", 5)),
        reset_time_ms=int(retry.get("circuit_reset_ms", 60000)),
    )


def build_resolver_config(config: dict[str, Any]) -> ResolverConfig:
    inventory = config.get("inventory", {})
    return ResolverConfig(
        fast_mode=bool(inventory.get("fast_mode", False)),
        max_total_time_ms=int(inventory.get("max_total_time_ms", 15000)),
        dropdown_signal_threshold=int(inventory.get("dropdown_signal_threshold", 20)),
        max_plausible_quantity=int(inventory.get("max_plausible_quantity", 1000)),
        cart_target_quantity=int(inventory.get("cart_target_quantity", 99)),
        operation_timeout_ms=int(inventory.get("operation_timeout_ms", 5000)),
        settle_ms=int(inventory.get("settle_ms", 500)),
    )


def build_coordinator_settings(config: dict[str, Any]) -> CoordinatorSettings:
    batch = config.get("batch", {})
    return CoordinatorSettings(
        max_concurrent_sessions=int(batch.get("max_concurrent_sessions", 2)),
        job_delay_seconds=float(batch.get("job_delay_seconds", 2.0)),
        detail_page_limit=int(batch.get("detail_page_limit", 10)),
        navigation_timeout_ms=int(batch.get("navigation_timeout_ms", 30000)),
        render_timeout_ms=int(batch.get("render_timeout_ms", 15000)),
        run_mode=config.get("run_mode", "local"),
    )
