"""
Configuration Loader.

Responsible for reading the optional config.yaml file and layering it over
the built-in defaults. The command line only ever carries the key.
"""
import copy
import yaml
import logging
from pathlib import Path
from typing import Dict, Any

logger = logging.getLogger(__name__)

DEFAULTS: Dict[str, Any] = {
    'mqtt': {
        'host': 'localhost',
        'port': 1883,
        'client_id_prefix': 'longrunningclient',
        'username': None,
        'keepalive': 60,
    },
    'topic': 'longrunningclient',
    'pacing_interval': 120.0,
    'read_timeout': 30.0,
    'max_cycles': None,
    'correlation': 'any',
    'retry': {
        'handshake': {'max_attempts': 5, 'base_delay': 1.0, 'max_delay': 60.0, 'jitter': True},
        'read': {'max_attempts': 3, 'base_delay': 1.0, 'max_delay': 30.0, 'jitter': True},
    },
    'log_level': 'INFO',
}


def merge_config(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merges `override` into a copy of `base`."""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_config(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(config_path: str = "config.yaml") -> Dict[str, Any]:
    """
    Loads the YAML configuration file on top of DEFAULTS.
    """
    path = Path(config_path)
    if not path.exists():
        logger.warning(f"Config file not found at {path}. Using defaults.")
        return copy.deepcopy(DEFAULTS)

    try:
        with open(path, 'r') as f:
            config = yaml.safe_load(f) or {}
            logger.info(f"Loaded configuration from {path}")
    except Exception as e:
        logger.error(f"Failed to parse config file: {e}")
        raise

    if not isinstance(config, dict):
        raise ValueError(f"Config file {path} must contain a mapping, got {type(config).__name__}")
    return merge_config(DEFAULTS, config)
