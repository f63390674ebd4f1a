import logging
import os
from datetime import datetime
from pathlib import Path

_LOGGERS = {}

_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def _log_dir() -> Path:
    return Path(os.getenv("STREAMCHAT_LOG_DIR", "logs"))


def _file_logging_enabled() -> bool:
    flag = os.getenv("STREAMCHAT_LOG_TO_FILE", "1").strip().lower()
    return flag not in {"0", "false", "no", "off"}


def _level() -> int:
    name = os.getenv("STREAMCHAT_LOG_LEVEL", "DEBUG").strip().upper()
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.DEBUG


def get_logger(
    name: str,
    *,
    runtime: str = "streamchat",
) -> logging.Logger:
    """
    Create or retrieve a named logger.

    Parameters:
    - name: logger namespace (e.g. chat.messages, realtime.socket)
    - runtime: log file prefix (streamchat | poc)

    Environment:
    - STREAMCHAT_LOG_LEVEL: logger level name (default DEBUG)
    - STREAMCHAT_LOG_DIR: directory for per-run log files (default logs/)
    - STREAMCHAT_LOG_TO_FILE: set to 0 to keep console output only
    """
    cache_key = f"{runtime}:{name}"
    if cache_key in _LOGGERS:
        return _LOGGERS[cache_key]

    logger = logging.getLogger(cache_key)
    logger.setLevel(_level())

    formatter = logging.Formatter(_FORMAT)

    # ------------------------------
    # Console handler
    # ------------------------------
    console = logging.StreamHandler()
    console.setFormatter(formatter)
    logger.addHandler(console)

    # ------------------------------
    # File handler (one per run)
    # ------------------------------
    if _file_logging_enabled():
        log_dir = _log_dir()
        log_dir.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
        logfile = log_dir / f"{runtime}-{timestamp}.log"

        file_handler = logging.FileHandler(logfile, encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    logger.propagate = False
    _LOGGERS[cache_key] = logger

    return logger
