"""Logging for the Event Bus process: rotating log file, optional console, quiet libraries."""

import logging
import logging.handlers
from pathlib import Path
from typing import Any

_DEFAULT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
_DEFAULT_DATEFMT = "%Y-%m-%d %H:%M:%S"

# Library loggers that would otherwise log every callback request or AMQP frame.
_DEFAULT_LOGGER_LEVELS = {
    "httpx": "WARNING",
    "aio_pika": "WARNING",
    "aiormq": "WARNING",
    "uvicorn.access": "WARNING",
}


def _level(name: Any, default: int = logging.INFO) -> int:
    return getattr(logging, str(name).upper(), default)


def _handlers(project_root: Path, cfg: dict[str, Any]) -> list[logging.Handler]:
    log_path = project_root / cfg.get("file", "logs/event_bus.log")
    log_path.parent.mkdir(parents=True, exist_ok=True)
    handlers: list[logging.Handler] = [
        logging.handlers.RotatingFileHandler(
            log_path,
            maxBytes=int(cfg.get("max_bytes", 10 * 1024 * 1024)),
            backupCount=int(cfg.get("backup_count", 3)),
            encoding="utf-8",
        )
    ]
    if cfg.get("log_to_console", True):
        handlers.append(logging.StreamHandler())
    return handlers


def setup_logging(project_root: Path, settings: dict[str, Any]) -> None:
    """Replace the root logger's handlers with the configured file (and console) output.

    Reads settings["logging"]: file, level, log_to_console, max_bytes, backup_count,
    format, datefmt and loggers, a {logger name: level} map applied on top of the
    defaults for httpx, aio-pika and uvicorn access logs.
    """
    cfg = settings.get("logging", {})
    level = _level(cfg.get("level", "INFO"))
    formatter = logging.Formatter(
        cfg.get("format", _DEFAULT_FORMAT), datefmt=cfg.get("datefmt", _DEFAULT_DATEFMT)
    )
    root = logging.getLogger()
    root.setLevel(level)
    for h in root.handlers[:]:
        root.removeHandler(h)
    for h in _handlers(project_root, cfg):
        h.setLevel(level)
        h.setFormatter(formatter)
        root.addHandler(h)
    for name, name_level in {**_DEFAULT_LOGGER_LEVELS, **cfg.get("loggers", {})}.items():
        logging.getLogger(name).setLevel(max(level, _level(name_level, level)))
