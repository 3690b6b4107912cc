import copy
import json
import logging
import os
import threading
from logging.handlers import RotatingFileHandler
from typing import Any, Dict, Optional


CONFIG_FILE = os.environ.get("CAMERA_RELAY_CONFIG", "config.json")
config_lock = threading.Lock()

DEFAULT_CONFIG: Dict[str, Any] = {
    "server": {
        "host": "0.0.0.0",
        "port": 5000,
    },
    "cameras": ["balkon", "drzwi"],
    "hub": {
        "viewer_queue_size": 8,
    },
    "liveness": {
        "check_interval": 5.0,
        "stale_timeout": 10.0,
    },
    "archive": {
        "directory": os.path.join("static", "images"),
        "database": os.path.join("data", "images.db"),
        "max_size_gb": 3.0,
        "policy": "detections",
        "max_pictures_per_window": 10,
        "window_seconds": 30.0,
        "queue_size": 100,
        "draw_overlays": True,
    },
    "udp": {
        "enabled": False,
        "port": 81,
    },
    "logging": {
        "level": "INFO",
        "directory": "logs",
    },
}

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(path: Optional[str] = None) -> Dict[str, Any]:
    """Load the JSON config file merged over the defaults.

    A missing file is not an error; the defaults are returned.
    """
    path = path or CONFIG_FILE
    with config_lock:
        if not os.path.exists(path):
            return copy.deepcopy(DEFAULT_CONFIG)
        with open(path, 'r') as f:
            return _deep_merge(DEFAULT_CONFIG, json.load(f))


def save_config(config_data: Dict[str, Any], path: Optional[str] = None) -> None:
    path = path or CONFIG_FILE
    with config_lock:
        with open(path, 'w') as f:
            json.dump(config_data, f, indent=2)
    print(f"Configuration saved to {path}")


class _LevelFilter(logging.Filter):
    """Pass only records of exactly one level."""

    def __init__(self, level: int):
        super().__init__()
        self.level = level

    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno == self.level


def setup_logging(config: Dict[str, Any]) -> None:
    """
    Configure the root logger:
      - console (stdout)
      - <log dir>/info.log, warning.log, error.log (rotating, one level each;
        error.log also receives CRITICAL)
    """
    log_config = config.get('logging', {})
    level = getattr(logging, str(log_config.get('level', 'INFO')).upper(), logging.INFO)
    log_dir = log_config.get('directory', 'logs')
    os.makedirs(log_dir, exist_ok=True)

    fmt = logging.Formatter(LOG_FORMAT)
    root = logging.getLogger()
    root.setLevel(level)
    for handler in list(root.handlers):
        root.removeHandler(handler)

    console = logging.StreamHandler()
    console.setFormatter(fmt)
    root.addHandler(console)

    for filename, file_level in (("info.log", logging.INFO),
                                 ("warning.log", logging.WARNING),
                                 ("error.log", logging.ERROR)):
        fh = RotatingFileHandler(
            os.path.join(log_dir, filename),
            maxBytes=5_000_000,
            backupCount=5,
            encoding="utf-8",
        )
        fh.setFormatter(fmt)
        fh.setLevel(file_level)
        if file_level != logging.ERROR:
            fh.addFilter(_LevelFilter(file_level))
        root.addHandler(fh)
