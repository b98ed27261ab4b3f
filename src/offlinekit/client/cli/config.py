"""Configuration utilities for the offlinekit CLI.

This module provides shared configuration and logging functions used across
CLI commands.
"""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path


def get_config_dir() -> Path:
    """Get the configuration directory for offlinekit.

    Returns:
        Path to ~/.offlinekit or equivalent.
    """
    return Path.home() / ".offlinekit"


def get_config_file() -> Path:
    """Get the path to the config file."""
    return get_config_dir() / "config.json"


def load_config() -> dict[str, str]:
    """Load configuration from config file."""
    config_file = get_config_file()
    if config_file.exists():
        return dict(json.loads(config_file.read_text()))
    return {}


def save_config(config: dict[str, str]) -> None:
    """Save configuration to config file."""
    config_file = get_config_file()
    config_file.parent.mkdir(parents=True, exist_ok=True)
    config_file.write_text(json.dumps(config, indent=2))


def get_data_dir() -> Path:
    """Get the directory holding store.db, cache.db and legacy.json.

    Returns:
        Configured ``data_dir``, or the config directory itself.
    """
    config = load_config()
    if config.get("data_dir"):
        return Path(config["data_dir"]).expanduser().resolve()
    return get_config_dir()


def setup_logging(verbose: bool) -> None:
    """Send offlinekit logs to stderr.

    Args:
        verbose: Log at DEBUG instead of WARNING.
    """
    logger = logging.getLogger("offlinekit")
    logger.setLevel(logging.DEBUG if verbose else logging.WARNING)
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )
        logger.addHandler(handler)
