"""
config_loader.py
-----------------
Singleton config loader. Reads config.yaml once and caches it.
All modules access configuration through this; no hardcoded thresholds.

Engines that accept an ``overrides`` dict merge it over the section returned
here, so every threshold is named in one place and can still be tuned per run.
"""

import os
import yaml
from typing import Any, Dict


_CONFIG_CACHE: Dict[str, Any] = {}


def load_config(config_path: str | None = None) -> Dict[str, Any]:
    """
    Load and cache the YAML configuration file.

    Args:
        config_path: Path to config.yaml. Defaults to config/ relative to this file.

    Returns:
        Full config dictionary.
    """
    global _CONFIG_CACHE

    if _CONFIG_CACHE:
        return _CONFIG_CACHE

    if config_path is None:
        config_path = os.path.join(os.path.dirname(__file__), "config.yaml")

    if not os.path.exists(config_path):
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, "r") as f:
        _CONFIG_CACHE = yaml.safe_load(f)

    return _CONFIG_CACHE


def merge_overrides(section: Dict[str, Any], overrides: Dict[str, Any] | None) -> Dict[str, Any]:
    """
    Returns a copy of a config section with overrides applied on top.

    Raises:
        TypeError: If overrides is not a mapping.
        KeyError: If an override names a key the section does not define.
    """
    merged = dict(section)
    if overrides is None:
        return merged
    if not isinstance(overrides, dict):
        raise TypeError(f"Config overrides must be a dict, got {type(overrides).__name__}")

    unknown = [k for k in overrides if k not in section]
    if unknown:
        raise KeyError(f"Unknown config keys: {unknown}. Available: {sorted(section.keys())}")

    merged.update(overrides)
    return merged


def get_ingestion_config() -> Dict[str, Any]:
    """Returns the ingestion block."""
    return load_config()["ingestion"]


def get_categorisation_config() -> Dict[str, Any]:
    """Returns the categorisation block."""
    return load_config()["categorisation"]


def get_category_hierarchy() -> Dict[str, list[str]]:
    """Returns the level1 -> [level2] category hierarchy."""
    return get_categorisation_config()["category_hierarchy"]


def get_recurring_detection_config() -> Dict[str, Any]:
    """Returns the recurring_detection block."""
    return load_config()["recurring_detection"]


def get_pattern_window(pattern: str) -> Dict[str, int]:
    """
    Returns the gap window for a named recurrence pattern.

    Raises:
        KeyError: If the pattern has no configured window (IRREGULAR has none).
    """
    patterns = get_recurring_detection_config()["patterns"]
    if pattern not in patterns:
        raise KeyError(
            f"No gap window for pattern '{pattern}'. "
            f"Available: {list(patterns.keys())}"
        )
    return patterns[pattern]


def get_anomaly_detection_config() -> Dict[str, Any]:
    """Returns the anomaly_detection block."""
    return load_config()["anomaly_detection"]


def get_analytics_config() -> Dict[str, Any]:
    """Returns the analytics block."""
    return load_config()["analytics"]


def get_drift_monitoring_config() -> Dict[str, Any]:
    """Returns drift monitoring config."""
    return load_config()["drift_monitoring"]


def reset_config() -> None:
    """Clears cached config. Useful for testing."""
    global _CONFIG_CACHE
    _CONFIG_CACHE = {}
