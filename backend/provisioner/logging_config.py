import logging
import logging.handlers
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional
import contextvars

# Correlation id: HTTP request id, or install-<session> inside install tasks
request_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar('request_id', default=None)
# Dependency kind being worked on by the current install task
kind_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar('kind', default=None)

FILE_FORMAT = '%(asctime)s | %(levelname)-8s | %(request_id)s | %(kind)s | %(name)s:%(lineno)d | %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'
INSTALL_LOG_DIR = "installs"

_open_install_logs: set = set()


class ContextFilter(logging.Filter):
    """Stamp correlation id and dependency kind onto every record"""

    def filter(self, record):
        record.request_id = request_id_var.get() or 'no-request-id'
        record.kind = kind_var.get() or '-'
        return True


class InstallFilter(logging.Filter):
    """Pass only records emitted from one install task"""

    def __init__(self, correlation_id: str):
        super().__init__()
        self.correlation_id = correlation_id

    def filter(self, record):
        return request_id_var.get() == self.correlation_id


class ColoredFormatter(logging.Formatter):
    """Level names in colour, only when writing to a terminal"""

    COLORS = {
        'DEBUG': '\033[36m',
        'INFO': '\033[32m',
        'WARNING': '\033[33m',
        'ERROR': '\033[31m',
        'CRITICAL': '\033[35m',
    }
    RESET = '\033[0m'

    def __init__(self, *args, use_color: bool = True, **kwargs):
        super().__init__(*args, **kwargs)
        self.use_color = use_color

    def format(self, record):
        if not self.use_color or record.levelname not in self.COLORS:
            return super().format(record)

        levelname = record.levelname
        record.levelname = f"{self.COLORS[levelname]}{levelname}{self.RESET}"
        try:
            return super().format(record)
        finally:
            record.levelname = levelname


def setup_logging(log_level: str = "INFO", log_dir: str = "./logs", console: bool = True) -> None:
    """
    Configure logging for the API server and the CLI.

    Args:
        log_level: Level of the root logger (DEBUG shows every installer output line)
        log_dir: Directory for provisioner.log, errors.log and per-install logs
        console: Attach the stdout handler; the CLI turns it off so log lines
            do not tear through its progress bar
    """
    log_path = Path(log_dir)
    (log_path / INSTALL_LOG_DIR).mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    root_logger.handlers.clear()

    file_formatter = logging.Formatter(fmt=FILE_FORMAT, datefmt=DATE_FORMAT)

    if console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(logging.INFO)
        console_handler.setFormatter(ColoredFormatter(
            fmt='%(asctime)s | %(levelname)-8s | %(kind)s | %(message)s',
            datefmt=DATE_FORMAT,
            use_color=sys.stdout.isatty(),
        ))
        console_handler.addFilter(ContextFilter())
        root_logger.addHandler(console_handler)

    # Everything, rotated
    file_handler = logging.handlers.RotatingFileHandler(
        filename=log_path / "provisioner.log",
        maxBytes=10 * 1024 * 1024,  # 10MB
        backupCount=5,
        encoding='utf-8'
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(file_formatter)
    file_handler.addFilter(ContextFilter())
    root_logger.addHandler(file_handler)

    # Failed installs and probe errors only
    error_handler = logging.handlers.RotatingFileHandler(
        filename=log_path / "errors.log",
        maxBytes=10 * 1024 * 1024,
        backupCount=3,
        encoding='utf-8'
    )
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(file_formatter)
    error_handler.addFilter(ContextFilter())
    root_logger.addHandler(error_handler)

    # Quiet third-party loggers
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)

    root_logger.info("=" * 80)
    root_logger.info(f"Logging initialized | Level: {log_level} | Log dir: {log_path.absolute()}")
    root_logger.info("=" * 80)


# ═══════════════════════════════════════════════════════════════════════════
# PER-INSTALL LOG FILES
# ═══════════════════════════════════════════════════════════════════════════

def open_install_log(log_dir: str, kind: str, session_id: str) -> logging.Handler:
    """
    Start capturing one install's records (including every installer output
    line at DEBUG) into logs/installs/<kind>-<timestamp>-<id>.log.

    The file outlives the session dir, so a failed install can be diagnosed
    after cleanup. Must be called from inside the install task, after
    `bind_install`. Pair with `close_install_log`.
    """
    stamp = datetime.now().strftime("%Y%m%d-%H%M%S")
    path = Path(log_dir) / INSTALL_LOG_DIR / f"{kind}-{stamp}-{session_id[:8]}.log"
    path.parent.mkdir(parents=True, exist_ok=True)

    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter(fmt='%(asctime)s | %(levelname)-8s | %(name)s | %(message)s', datefmt=DATE_FORMAT))
    handler.addFilter(InstallFilter(request_id_var.get()))

    provisioner_logger = logging.getLogger("provisioner")
    provisioner_logger.addHandler(handler)
    _open_install_logs.add(handler)
    # Root may sit at INFO; the install log still wants the output lines
    provisioner_logger.setLevel(logging.DEBUG)
    return handler


def close_install_log(handler: logging.Handler) -> None:
    provisioner_logger = logging.getLogger("provisioner")
    provisioner_logger.removeHandler(handler)
    handler.close()
    _open_install_logs.discard(handler)
    if not _open_install_logs:
        provisioner_logger.setLevel(logging.NOTSET)


def prune_install_logs(log_dir: str, keep: int) -> int:
    """Delete all but the newest `keep` per-install logs. Returns how many were deleted."""
    files = sorted(
        (Path(log_dir) / INSTALL_LOG_DIR).glob("*.log"),
        key=lambda p: p.stat().st_mtime,
        reverse=True,
    )
    removed = 0
    for old in files[keep:]:
        try:
            old.unlink()
            removed += 1
        except OSError:
            # Still open by a concurrent install
            continue
    return removed


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance for a module.

    Args:
        name: Module name (use __name__)
    """
    return logging.getLogger(name)


def set_request_id(request_id: str) -> None:
    """Set correlation ID for current context (for tracing)"""
    request_id_var.set(request_id)


def clear_request_id() -> None:
    """Clear correlation ID from current context"""
    request_id_var.set(None)


def bind_install(kind: str, session_id: str) -> str:
    """Tag the current install task's records with its kind and session; returns the correlation id."""
    correlation_id = f"install-{session_id[:8]}"
    request_id_var.set(correlation_id)
    kind_var.set(kind)
    return correlation_id
