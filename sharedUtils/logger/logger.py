# logger/logger.py
import logging
import os
import threading
import tomllib
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, List

CONFIG_PATH = Path(__file__).resolve().parents[1] / "config" / "config.toml"
CONFIG_ENV_VAR = "SQLMON_CONFIG"

DEFAULTS: Dict[str, Any] = {
    "level": "INFO",
    "file": "logs/sqlmon.log",
    "format": "%(asctime)s | %(name)s | %(levelname)s | %(message)s",
    "console_export": True,
    "max_file_mb": 20,     # Rotate the log file past this size
    "backup_count": 5,     # Rotated files kept
}

# Cached config and locks
_config_lock = threading.Lock()
_cached_config = None

_logger_lock = threading.Lock()
_shared_handlers: List[logging.Handler] = []  # Shared by every module logger


def _config_path() -> Path:
    override = os.environ.get(CONFIG_ENV_VAR)
    return Path(override) if override else CONFIG_PATH


def load_logging_config() -> Dict[str, Any]:
    """[logging] section merged over DEFAULTS, read once per process."""
    global _cached_config

    if _cached_config is None:
        with _config_lock:
            if _cached_config is None:
                try:
                    with open(_config_path(), "rb") as f:
                        section = tomllib.load(f).get("logging", {})
                except (OSError, tomllib.TOMLDecodeError):
                    section = {}  # Missing or broken config: defaults only

                cfg = {**DEFAULTS, **section}
                cfg["level"] = str(cfg["level"]).upper()
                cfg["file"] = Path(cfg["file"])
                _cached_config = cfg

    return _cached_config


def _build_handlers(cfg: Dict[str, Any]) -> List[logging.Handler]:
    handlers: List[logging.Handler] = []

    if cfg["console_export"]:
        handlers.append(logging.StreamHandler())

    cfg["file"].parent.mkdir(parents=True, exist_ok=True)
    handlers.append(RotatingFileHandler(
        cfg["file"],
        maxBytes=int(cfg["max_file_mb"]) * 1024 * 1024,
        backupCount=int(cfg["backup_count"]),
        encoding="utf-8",
    ))

    formatter = logging.Formatter(cfg["format"])
    for handler in handlers:
        handler.setFormatter(formatter)
    return handlers


def get_logger(name: str) -> logging.Logger:
    """Module logger configured from [logging]; handlers are attached once."""
    cfg = load_logging_config()
    logger = logging.getLogger(name)

    with _logger_lock:
        if not logger.hasHandlers():
            logger.setLevel(getattr(logging, cfg["level"], logging.INFO))
            if not _shared_handlers:
                _shared_handlers.extend(_build_handlers(cfg))
            for handler in _shared_handlers:
                logger.addHandler(handler)

    return logger
