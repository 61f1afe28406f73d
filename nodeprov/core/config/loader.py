"""
Configuration loader — reads node.yml into a NodeConfig.

Resolution order for the file:
    NODEPROV_CONFIG env var  >  /etc/nodeprov/node.yml  >  built-in defaults

An explicitly named file that does not exist is an error; the
well-known location is optional.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

import yaml
from pydantic import ValidationError

from nodeprov.core.models.node import NodeConfig

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "NODEPROV_CONFIG"
DEFAULT_CONFIG_PATH = Path("/etc/nodeprov/node.yml")


class ConfigError(Exception):
    """Raised when node configuration is invalid or missing."""

    exit_code = 2


def find_config_file(default: Path = DEFAULT_CONFIG_PATH) -> Path | None:
    """Return the configuration file to load, or None for defaults.

    Raises:
        ConfigError: If ``NODEPROV_CONFIG`` names a missing file.
    """
    explicit = os.environ.get(CONFIG_ENV_VAR)
    if explicit:
        path = Path(explicit)
        if not path.is_file():
            raise ConfigError(f"Config file not found: {path} (from ${CONFIG_ENV_VAR})")
        return path
    if default.is_file():
        return default
    return None


def load_config(path: Path | None = None) -> NodeConfig:
    """Load and validate node configuration.

    Args:
        path: Explicit path to node.yml. If None, resolved by
            ``find_config_file()``; with no file at all the built-in
            defaults are returned.

    Returns:
        Validated NodeConfig model.

    Raises:
        ConfigError: If the file is unreadable or invalid.
    """
    if path is None:
        path = find_config_file()
    if path is None:
        logger.info("No node config file found, using built-in defaults")
        return NodeConfig()

    if not path.is_file():
        raise ConfigError(f"Config file not found: {path}")

    logger.debug("Loading node config from %s", path)

    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e

    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(f"Expected a YAML mapping in {path}, got {type(data).__name__}")

    # The YAML may wrap everything under a "node" key or be flat
    node_data = data.get("node", data)

    try:
        config = NodeConfig.model_validate(node_data)
    except ValidationError as e:
        raise ConfigError(f"Invalid node configuration in {path}: {e}") from e

    logger.info(
        "Loaded node config from %s (shim=%s, docker=%s)",
        path,
        config.cri.shim,
        "on" if config.docker.enabled else "off",
    )
    return config
