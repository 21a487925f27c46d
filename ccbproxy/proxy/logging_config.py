from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import List, Optional

from .models import LoggingConfig

DEFAULT_LOG_DIR = Path.home() / ".ccb" / "logs"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"
MAX_BYTES = 10 * 1024 * 1024
BACKUP_COUNT = 5

# uvicorn runs with log_config=None, so its loggers share our handlers
LOGGERS = ("ccbproxy", "uvicorn")

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}

# handlers installed by a previous call; replaced on reconfiguration
_installed: List[logging.Handler] = []


def resolve_level(name: Optional[str]) -> int:
    if not name:
        return logging.INFO
    return _LEVELS.get(name.lower(), logging.INFO)


def setup_logging(config: LoggingConfig, log_dir: Optional[Path] = None, level: Optional[str] = None) -> int:
    """Install console and rotating file handlers on the ``ccbproxy`` and ``uvicorn`` loggers.

    Files are only written when ``config.enabled``; ``level`` overrides the
    configured level (the CLI's ``--log-level``). Returns the numeric level.
    """
    level_value = resolve_level(level or config.level)
    for handler in _installed:
        for name in LOGGERS:
            logging.getLogger(name).removeHandler(handler)
        handler.close()
    _installed.clear()

    formatter = logging.Formatter(LOG_FORMAT)

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    _installed.append(console)

    if config.enabled:
        directory = Path(log_dir) if log_dir else DEFAULT_LOG_DIR
        directory.mkdir(parents=True, exist_ok=True)
        main_file = RotatingFileHandler(
            directory / "proxy-server.log", maxBytes=MAX_BYTES, backupCount=BACKUP_COUNT, encoding="utf-8"
        )
        main_file.setFormatter(formatter)
        error_file = RotatingFileHandler(
            directory / "proxy-server-error.log", maxBytes=MAX_BYTES, backupCount=BACKUP_COUNT, encoding="utf-8"
        )
        error_file.setFormatter(formatter)
        error_file.setLevel(logging.ERROR)
        _installed.extend([main_file, error_file])

    for name in LOGGERS:
        target = logging.getLogger(name)
        for handler in _installed:
            target.addHandler(handler)
        target.setLevel(level_value)
        target.propagate = False
    return level_value
