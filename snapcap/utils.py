import logging
import re
import time
from typing import Optional

import yaml

from .models import Settings

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9_-]")


def should_stop(start_time: float, duration: Optional[float]) -> bool:
    return duration is not None and (time.time() - start_time) >= duration


def get_setting(cli_value, config_value, default):
    return cli_value if cli_value is not None else (config_value if config_value is not None else default)


def load_config(path: str) -> dict:
    try:
        with open(path, "r", encoding="utf-8") as f:
            return yaml.safe_load(f) or {}
    except FileNotFoundError:
        return {}


def load_settings(path: Optional[str]) -> Settings:
    """Load Settings from a YAML file; a missing file yields defaults"""
    data = load_config(path) if path else {}
    if not isinstance(data, dict):
        logger.warning(f"Ignoring config {path}: expected a mapping, got {type(data).__name__}")
        data = {}
    return Settings.from_dict(data)


def safe_name(name: str) -> str:
    """Reduce a camera name to characters safe for file and directory names"""
    return _UNSAFE_CHARS.sub("_", str(name))
