"""
Structured logging configuration for WalletKit.

Supports two output formats:
  - **human** – coloured, single-line, readable
  - **json**  – newline-delimited JSON for log aggregators

Optionally persists records to a :class:`~walletkit_core.log_store.LogStore`
so recent activity can be exported for diagnostics, and bridges the wallet
engine's own log stream into :mod:`logging`.

Usage:
    from walletkit_core.logging_config import setup_logging
    setup_logging(level="DEBUG", fmt="json", log_file="walletkit.log")
"""

from __future__ import annotations

import json
import logging
import logging.handlers
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from walletkit_core.log_store import LogStore

if TYPE_CHECKING:
    from walletkit_core.config import LoggingConfig

engine_logger = logging.getLogger("walletkit.engine")

_ENGINE_LEVELS = {
    "TRACE": logging.DEBUG,
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}


class _JSONFormatter(logging.Formatter):
    """Emit each log record as a single JSON object."""

    def format(self, record: logging.LogRecord) -> str:
        log_obj = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info and record.exc_info[1]:
            log_obj["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_obj, default=str)


class _HumanFormatter(logging.Formatter):
    """Coloured, concise single-line format."""

    COLOURS = {
        "DEBUG": "\033[36m",     # cyan
        "INFO": "\033[32m",      # green
        "WARNING": "\033[33m",   # yellow
        "ERROR": "\033[31m",     # red
        "CRITICAL": "\033[1;31m",  # bold red
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        colour = self.COLOURS.get(record.levelname, "")
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        return (
            f"{colour}{ts} [{record.levelname:<7}]{self.RESET} "
            f"{record.name}: {record.getMessage()}"
        )


class _StoreLineFormatter(logging.Formatter):
    """``[iso-ts] [logger] [LEVEL]: message`` — the persisted line format."""

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat()
        line = f"[{ts}] [{record.name}] [{record.levelname}]: {record.getMessage()}"
        if record.exc_info and record.exc_info[1]:
            line += f" | {record.exc_info[1]!r}"
        return line


class PersistentLogHandler(logging.handlers.BufferingHandler):
    """
    Buffer records and write them to a LogStore in batches.

    Flushes when ``capacity`` records are buffered, on any ERROR record,
    and on close.  A failed write puts the batch back in front of the
    buffer and reports through ``handleError``.
    """

    def __init__(self, store: LogStore, capacity: int = 20,
                 level: int = logging.INFO):
        super().__init__(capacity)
        self.store = store
        self.setLevel(level)
        self.setFormatter(_StoreLineFormatter())

    def shouldFlush(self, record: logging.LogRecord) -> bool:
        return (
            len(self.buffer) >= self.capacity
            or record.levelno >= logging.ERROR
        )

    def flush(self) -> None:
        self.acquire()
        try:
            if not self.buffer:
                return
            batch = self.buffer
            self.buffer = []
            try:
                self.store.append_many([self.format(r) for r in batch])
            except Exception:
                # Keep the newest records; the store may be gone for good.
                self.buffer = (batch + self.buffer)[-self.capacity * 50:]
                self.handleError(batch[-1])
        finally:
            self.release()


def forward_engine_log(level: str, line: str) -> None:
    """Log callback handed to the wallet engine."""
    engine_logger.log(_ENGINE_LEVELS.get(level.upper(), logging.INFO), line)


def setup_logging(
    level: str = "INFO",
    fmt: str = "human",
    log_file: Optional[str] = None,
    log_store: Optional[LogStore] = None,
    persist_level: str = "INFO",
) -> None:
    """
    Configure the root logger for the entire application.

    Parameters
    ----------
    level : str
        One of DEBUG, INFO, WARNING, ERROR, CRITICAL.
    fmt : str
        ``"human"`` for coloured single-line output, ``"json"`` for
        newline-delimited JSON.
    log_file : str, optional
        If provided, logs are *also* written to this file (always in JSON
        format for machine parsing).
    log_store : LogStore, optional
        If provided, records at or above *persist_level* are persisted.
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Remove any existing handlers (avoid duplicates on reload)
    for handler in list(root.handlers):
        handler.close()
    root.handlers.clear()

    # --- Console handler ---
    console = logging.StreamHandler(sys.stderr)
    if fmt == "json":
        console.setFormatter(_JSONFormatter())
    else:
        console.setFormatter(_HumanFormatter())
    root.addHandler(console)

    # --- Optional file handler ---
    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(str(path))
        fh.setFormatter(_JSONFormatter())  # always JSON for files
        root.addHandler(fh)

    # --- Optional diagnostic store ---
    if log_store is not None:
        root.addHandler(PersistentLogHandler(
            log_store,
            level=getattr(logging, persist_level.upper(), logging.INFO),
        ))


def setup_logging_from_config(cfg: LoggingConfig) -> Optional[LogStore]:
    """
    :func:`setup_logging` driven by a ``[logging]`` config section.

    Opens the diagnostic store when ``store_path`` is set and returns it;
    hand it to :func:`close_log_store` on shutdown.
    """
    store = None
    if cfg.store_path:
        store = LogStore(cfg.store_path, max_entries=cfg.max_entries)
    setup_logging(
        level=cfg.level,
        fmt=cfg.format,
        log_file=cfg.file,
        log_store=store,
        persist_level=cfg.persist_level,
    )
    return store


def close_log_store(store: LogStore) -> None:
    """Flush and detach the handlers writing to *store*, then close it."""
    root = logging.getLogger()
    for handler in list(root.handlers):
        if isinstance(handler, PersistentLogHandler) and handler.store is store:
            root.removeHandler(handler)
            handler.close()
    store.close()
