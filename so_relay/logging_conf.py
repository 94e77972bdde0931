"""structlog over stdlib handlers writing JSON lines.

Events go to the console, ``relay.log`` and ``error.log``; each watched
account additionally gets ``accounts/<id>.log`` so one account's polling
history can be read on its own (``so-relay log show --account``).
"""

from __future__ import annotations

import logging
import os
from collections import deque
from pathlib import Path
from typing import Iterable

import structlog
from pythonjsonlogger import jsonlogger

ROOT_LOGGER = "so_relay"
_JSON_FIELDS = "%(asctime)s %(levelname)s %(name)s %(message)s"

_configured = False


def log_dir() -> Path:
    home = os.environ.get("SO_RELAY_HOME")
    if home:
        return Path(home).expanduser().resolve() / "logs"
    return Path(__file__).resolve().parents[1] / "logs"


def _handler(handler: logging.Handler, level: int | str) -> logging.Handler:
    handler.setFormatter(jsonlogger.JsonFormatter(_JSON_FIELDS))
    handler.setLevel(level)
    return handler


def configure_logging(verbose: bool = False) -> structlog.BoundLogger:
    """Install the relay handlers once and return the relay logger."""

    global _configured
    if not _configured:
        directory = log_dir()
        (directory / "accounts").mkdir(parents=True, exist_ok=True)
        level = logging.DEBUG if verbose else logging.INFO

        root = logging.getLogger(ROOT_LOGGER)
        root.setLevel(level)
        root.propagate = False
        root.addHandler(_handler(logging.StreamHandler(), level))
        root.addHandler(_handler(logging.FileHandler(directory / "relay.log", encoding="utf-8"), logging.INFO))
        root.addHandler(_handler(logging.FileHandler(directory / "error.log", encoding="utf-8"), logging.ERROR))

        structlog.configure(
            processors=[
                structlog.contextvars.merge_contextvars,
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.stdlib.add_log_level,
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                # the event dict reaches the JSON formatter as record.msg
                structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
            ],
            logger_factory=structlog.stdlib.LoggerFactory(),
            cache_logger_on_first_use=True,
        )
        _configured = True
    return structlog.get_logger(ROOT_LOGGER)


def account_logger(account_id: int) -> structlog.BoundLogger:
    """Logger bound to ``account_id``; events also land in the account's own file."""

    configure_logging()
    path = log_dir() / "accounts" / f"{account_id}.log"
    name = f"{ROOT_LOGGER}.account.{account_id}"
    py_logger = logging.getLogger(name)
    target = str(path)
    if not any(getattr(handler, "baseFilename", None) == target for handler in py_logger.handlers):
        path.parent.mkdir(parents=True, exist_ok=True)
        py_logger.addHandler(_handler(logging.FileHandler(path, encoding="utf-8"), logging.INFO))
    return structlog.get_logger(name).bind(account_id=account_id)


def tail_log(path: Path, line_count: int = 100) -> list[str]:
    if not path.exists():
        return []
    with path.open("r", encoding="utf-8", errors="ignore") as stream:
        return list(deque(stream, maxlen=line_count))


def available_account_logs() -> Iterable[Path]:
    return sorted((log_dir() / "accounts").glob("*.log"))


__all__ = ["ROOT_LOGGER", "account_logger", "available_account_logs", "configure_logging", "log_dir", "tail_log"]
