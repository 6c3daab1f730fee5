# src/task_lifecycle/logging_setup.py

"""
Logging for the taskline console.

Three sinks:
- stderr: what the person at the console needs (transitions, refusals, warnings)
- taskline.log: everything at DEBUG, including store internals and retries
- audit.log: the lifecycle audit trail only (transitions, rejections,
  materialized and cancelled series occurrences), one line per event
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

AUDIT_LOGGERS = (
    "task_lifecycle.tasks.lifecycle",
    "task_lifecycle.tasks.rejection_ledger",
    "task_lifecycle.tasks.recurrence",
)

# Chatty internals: shown on the console only when something goes wrong.
_QUIET_LOGGERS = (
    "task_lifecycle.tasks.task_store",
    "task_lifecycle.groups.membership_store",
    "task_lifecycle.core.retry",
)

_DEBUG_FORMAT = "%(asctime)s.%(msecs)03d %(levelname)s %(name)s: %(message)s"
_AUDIT_FORMAT = "%(asctime)s %(levelname)s %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S"


def _under(name: str, prefixes: tuple[str, ...]) -> bool:
    return any(name == p or name.startswith(p + ".") for p in prefixes)


class _ConsoleFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if _under(record.name, _QUIET_LOGGERS):
            return record.levelno >= logging.WARNING
        if record.name.startswith("task_lifecycle."):
            return True
        # py.warnings and third-party libraries
        return record.levelno >= logging.ERROR


class _AuditFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno >= logging.INFO and _under(record.name, AUDIT_LOGGERS)


def _handler(handler: logging.Handler, level: int, fmt: str, flt: logging.Filter | None = None) -> logging.Handler:
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(fmt=fmt, datefmt=_DATEFMT))
    if flt is not None:
        handler.addFilter(flt)
    return handler


def setup_logging(
    *,
    log_dir: str | Path = ".local/taskline",
    console_level: int = logging.INFO,
    file_level: int = logging.DEBUG,
    audit: bool = True,
) -> Path | None:
    """
    Install the console, debug-file and (optionally) audit-file handlers on the root logger.

    Call this ONCE, very early. Returns the audit log path, or None when audit is off.
    """
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    for h in list(root.handlers):
        root.removeHandler(h)

    root.addHandler(_handler(logging.StreamHandler(sys.stderr), console_level, _DEBUG_FORMAT, _ConsoleFilter()))
    root.addHandler(
        _handler(logging.FileHandler(str(log_dir / "taskline.log"), encoding="utf-8"), file_level, _DEBUG_FORMAT)
    )

    audit_path: Path | None = None
    if audit:
        audit_path = log_dir / "audit.log"
        root.addHandler(
            _handler(
                logging.FileHandler(str(audit_path), encoding="utf-8"),
                logging.INFO,
                _AUDIT_FORMAT,
                _AuditFilter(),
            )
        )

    logging.captureWarnings(True)
    return audit_path
