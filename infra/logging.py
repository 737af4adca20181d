"""
Gatekeeper Centralized Logging
------------------------------
Structured logging with check_id propagation for decision traceability.

Design:
- Every permission check can run inside a CheckContext with a unique check_id
- check_id and the acting agent_id are stamped on every record
- Console output through Rich, file output as JSON lines
- Clear severity discipline: INFO=state change, WARNING=denial, ERROR=defect

Usage:
    from infra.logging import get_logger, CheckContext

    logger = get_logger("security.engine")

    with CheckContext() as check_id:
        logger.warning("Denied execute on executable:rm")
"""

import contextvars
import json
import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

# Context variable for check_id - thread-safe and async-safe
_check_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "check_id", default=None
)

LOGGER_NAMESPACE = "gatekeeper"


def generate_check_id() -> str:
    """Generate a unique check ID."""
    return f"chk_{uuid.uuid4().hex[:12]}"


def get_check_id() -> Optional[str]:
    """Get the current check ID from context."""
    return _check_id_var.get()


class CheckContext:
    """
    Context manager for check scoping.

    Usage:
        with CheckContext() as check_id:
            # All logs within this block carry check_id
            logger.info("Checking...")
    """

    def __init__(self, check_id: Optional[str] = None):
        self._check_id = check_id or generate_check_id()
        self._token: Optional[contextvars.Token] = None

    def __enter__(self) -> str:
        self._token = _check_id_var.set(self._check_id)
        return self._check_id

    def __exit__(self, *args) -> None:
        if self._token is not None:
            _check_id_var.reset(self._token)


class CheckContextFilter(logging.Filter):
    """Logging filter that adds check_id and agent_id to every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "check_id", None) is None:
            record.check_id = get_check_id() or "-"
        if getattr(record, "agent_id", None) is None:
            # Imported lazily: security.context imports this module's logger
            from security.context import current_agent_id
            record.agent_id = current_agent_id() or "-"
        return True


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured file logging."""

    EXTRA_FIELDS = (
        "relation", "object", "reason", "command", "blocked_executables",
        "scope", "source", "count",
    )

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "check_id": getattr(record, "check_id", "-"),
            "agent_id": getattr(record, "agent_id", "-"),
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        for key in self.EXTRA_FIELDS:
            if hasattr(record, key):
                log_entry[key] = getattr(record, key)

        return json.dumps(log_entry, default=str)


class FileRotatingHandler(logging.FileHandler):
    """Simple file handler with size-based rotation."""

    MAX_BYTES = 10 * 1024 * 1024  # 10 MB
    BACKUP_COUNT = 3

    def __init__(self, filename: str, max_bytes: int = None, backup_count: int = None):
        self._base_path = Path(filename)
        self._max_bytes = max_bytes or self.MAX_BYTES
        self._backup_count = backup_count or self.BACKUP_COUNT

        self._base_path.parent.mkdir(parents=True, exist_ok=True)

        super().__init__(str(self._base_path), mode="a", encoding="utf-8")

    def emit(self, record: logging.LogRecord) -> None:
        try:
            if self._base_path.exists() and self._base_path.stat().st_size > self._max_bytes:
                self._rotate()
        except OSError:
            self.handleError(record)

        super().emit(record)

    def _rotate(self) -> None:
        """Rotate log files."""
        self.close()

        for i in range(self._backup_count - 1, 0, -1):
            src = self._base_path.with_suffix(f".{i}.log")
            dst = self._base_path.with_suffix(f".{i + 1}.log")
            if src.exists():
                if dst.exists():
                    dst.unlink()
                src.rename(dst)

        if self._base_path.exists():
            backup = self._base_path.with_suffix(".1.log")
            if backup.exists():
                backup.unlink()
            self._base_path.rename(backup)

        self.stream = open(str(self._base_path), mode="a", encoding="utf-8")


_logging_initialized = False


def configure_logging(
    level: int = logging.INFO,
    log_dir: Optional[str] = None,
    console: bool = True,
    file: bool = True,
    force: bool = False,
) -> None:
    """
    Configure the gatekeeper logging system.

    Args:
        level: Logging level (default INFO)
        log_dir: Directory for log files (default: ./logs)
        console: Enable Rich console output (stderr)
        file: Enable JSON file output
        force: Reconfigure even if already configured
    """
    global _logging_initialized

    if _logging_initialized and not force:
        return

    root_logger = logging.getLogger(LOGGER_NAMESPACE)
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    context_filter = CheckContextFilter()

    if console:
        console_handler = RichHandler(
            console=Console(stderr=True),
            rich_tracebacks=True,
            show_path=False,
        )
        console_handler.setLevel(level)
        console_handler.addFilter(context_filter)
        root_logger.addHandler(console_handler)

    if file:
        log_path = Path(log_dir) if log_dir else Path("logs")
        log_path.mkdir(parents=True, exist_ok=True)

        file_handler = FileRotatingHandler(str(log_path / "gatekeeper.log"))
        file_handler.setLevel(logging.DEBUG)  # File gets everything
        file_handler.setFormatter(JSONFormatter())
        file_handler.addFilter(context_filter)
        root_logger.addHandler(file_handler)

    _logging_initialized = True


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger in the gatekeeper namespace.

    Args:
        name: Logger name (prefixed with 'gatekeeper.' if not already)
    """
    if not name.startswith(LOGGER_NAMESPACE):
        name = f"{LOGGER_NAMESPACE}.{name}"

    return logging.getLogger(name)
