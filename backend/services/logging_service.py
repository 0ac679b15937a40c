"""
Logging setup helpers: structured console output and an optional log file.
"""
from __future__ import annotations

import json
import logging
from contextvars import ContextVar
from pathlib import Path


_FILE_HANDLER_TAG = "sentinel_file_handler"

# Identifier of the evaluation cycle currently running on this thread.
cycle_id_ctx: ContextVar[str] = ContextVar("cycle_id", default="")


def get_cycle_id() -> str:
    """Get the current evaluation cycle ID."""
    return cycle_id_ctx.get("")


class StructuredFormatter(logging.Formatter):
    """
    JSON log formatter that includes the evaluation cycle ID.
    """

    def format(self, record: logging.LogRecord) -> str:
        cid = cycle_id_ctx.get("")
        payload = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if cid:
            payload["cycle_id"] = cid
        if record.exc_info and record.exc_info[1]:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def configure_structured_logging(log_level: str = "INFO") -> None:
    """
    Reconfigure root logger to use structured JSON formatting.
    Preserves existing file handlers but upgrades their formatter.
    """
    root = logging.getLogger()
    level = getattr(logging, log_level.upper(), logging.INFO)
    root.setLevel(level)

    formatter = StructuredFormatter()
    for handler in root.handlers:
        handler.setFormatter(formatter)

    # Add console handler if none exists
    if not any(isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler) for h in root.handlers):
        console = logging.StreamHandler()
        console.setLevel(level)
        console.setFormatter(formatter)
        root.addHandler(console)


def configure_file_logging(log_directory: str) -> Path:
    """Configure root logger to also write into the engine log file."""
    log_dir = Path(log_directory).expanduser().resolve()
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "sentinel.log"

    root_logger = logging.getLogger()
    existing = next((h for h in root_logger.handlers if getattr(h, "name", "") == _FILE_HANDLER_TAG), None)
    if existing:
        root_logger.removeHandler(existing)
        existing.close()

    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.name = _FILE_HANDLER_TAG
    file_handler.setLevel(logging.INFO)
    file_handler.setFormatter(StructuredFormatter())
    root_logger.addHandler(file_handler)
    if root_logger.level > logging.INFO:
        root_logger.setLevel(logging.INFO)
    return log_dir
