"""Structured logging helpers shared across recompression components."""

from __future__ import annotations

import gzip
import json
import logging
import sys
from datetime import datetime, timedelta, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import List, Optional

__all__ = ["LOGGER_NAME", "JSONFormatter", "get_logger", "setup_logging"]

LOGGER_NAME = "Detonater"

_CONTEXT_FIELDS = ("stage", "archive", "digest", "entry", "nested")


def get_logger(suffix: Optional[str] = None) -> logging.Logger:
    """Return the package logger or one of its children."""

    if suffix:
        return logging.getLogger(f"{LOGGER_NAME}.{suffix}")
    return logging.getLogger(LOGGER_NAME)


class JSONFormatter(logging.Formatter):
    """Formatter emitting JSON log entries with recompression context fields."""

    def format(self, record: logging.LogRecord) -> str:
        """Render ``record`` as a JSON string."""

        now = datetime.now(timezone.utc)
        payload = {
            "timestamp": now.isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for field_name in _CONTEXT_FIELDS:
            payload[field_name] = getattr(record, field_name, None)
        if hasattr(record, "extra_fields") and isinstance(record.extra_fields, dict):
            payload.update(record.extra_fields)
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def _compress_old_log(path: Path) -> None:
    """Compress ``path`` into a ``.gz`` file and remove the original."""

    compressed_path = path.with_suffix(path.suffix + ".gz")
    with path.open("rb") as source, gzip.open(compressed_path, "wb") as target:
        target.write(source.read())
    path.unlink(missing_ok=True)


def _cleanup_logs(log_dir: Path, retention_days: int) -> List[str]:
    """Rotate or purge log files in ``log_dir`` based on retention policy."""

    actions: List[str] = []
    now = datetime.now(timezone.utc)
    retention_delta = timedelta(days=retention_days)
    for file in log_dir.glob("*.jsonl"):
        mtime = datetime.fromtimestamp(file.stat().st_mtime, tz=timezone.utc)
        if now - mtime > retention_delta:
            target = file.with_suffix(file.suffix + ".gz")
            _compress_old_log(file)
            actions.append(f"Compressed {file.name} -> {target.name}")
    for file in log_dir.glob("*.jsonl.gz"):
        mtime = datetime.fromtimestamp(file.stat().st_mtime, tz=timezone.utc)
        if now - mtime > retention_delta:
            file.unlink(missing_ok=True)
            actions.append(f"Deleted expired archive {file.name}")
    return actions


def setup_logging(
    *,
    level: str = "INFO",
    retention_days: int = 30,
    max_log_size_mb: int = 100,
    log_dir: Optional[Path] = None,
    emit_json_logs: bool = True,
    propagate: bool = False,
) -> logging.Logger:
    """Configure the ``Detonater`` logger with a console handler and JSONL sidecar.

    Args:
        level: Logging level name applied to the package logger.
        retention_days: Age after which JSONL logs are compressed, then purged.
        max_log_size_mb: Rotation threshold for the active JSONL file.
        log_dir: Directory for JSONL files; no file handler when ``None``.
        emit_json_logs: Disable to keep console output only.
        propagate: Whether records also reach the root logger.

    Returns:
        The configured package logger.
    """

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in list(logger.handlers):
        if getattr(handler, "_detonater_managed", False):
            logger.removeHandler(handler)
            if isinstance(handler, logging.StreamHandler):
                stream = getattr(handler, "stream", None)
                if stream in (sys.stdout, sys.stderr):
                    continue
            handler.close()

    console_formatter = logging.Formatter("%(levelname)s: %(message)s")
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(console_formatter)
    stream_handler._detonater_managed = True  # type: ignore[attr-defined]
    logger.addHandler(stream_handler)

    if log_dir is not None and emit_json_logs:
        log_dir.mkdir(parents=True, exist_ok=True)
        _cleanup_logs(log_dir, retention_days)
        today = datetime.now(timezone.utc).strftime("%Y%m%d")
        file_handler = RotatingFileHandler(
            log_dir / f"detonater-{today}.jsonl",
            maxBytes=int(max_log_size_mb * 1024 * 1024),
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setFormatter(JSONFormatter())
        file_handler._detonater_managed = True  # type: ignore[attr-defined]
        logger.addHandler(file_handler)

    logger.propagate = propagate
    return logger
