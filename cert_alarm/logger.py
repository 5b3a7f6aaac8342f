"""
Standardized logging configuration for Cert Alarm.
"""

import json
import logging
import logging.handlers
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

from cert_alarm.config import Config


class CustomFormatter(logging.Formatter):
    """Custom formatter with colored output for console."""

    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
        "RESET": "\033[0m",
    }

    def __init__(self, use_color: bool = True) -> None:
        self.use_color = use_color
        super().__init__()

    def format(self, record: logging.LogRecord) -> str:
        """Format log record with optional colors."""
        if self.use_color and record.levelname in self.COLORS:
            color = self.COLORS[record.levelname]
            reset = self.COLORS["RESET"]
            level_name = f"{color}{record.levelname:<8}{reset}"
        else:
            level_name = f"{record.levelname:<8}"

        timestamp = self.formatTime(record, "%Y-%m-%d %H:%M:%S")
        message = record.getMessage()

        if record.exc_info:
            if not message.endswith("\n"):
                message += "\n"
            message += self.formatException(record.exc_info)

        return f"{timestamp} | {level_name} | {record.name:<20} | {message}"


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    EXTRA_FIELDS = (
        "domain",
        "method",
        "error_type",
        "sweep_duration",
        "sweep_source",
        "window_key",
        "dispatch_outcome",
        "file_path",
        "reload_event",
        "metric_name",
        "metric_value",
        "metric_labels",
    )

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        for field in self.EXTRA_FIELDS:
            if hasattr(record, field):
                log_data[field] = getattr(record, field)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, ensure_ascii=False, default=str)


def setup_logging(config: Config) -> None:
    """
    Setup logging configuration.

    Args:
        config: Configuration object
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, config.log_level))
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(getattr(logging, config.log_level))

    # Colors only when attached to a terminal
    use_color = hasattr(sys.stdout, "isatty") and sys.stdout.isatty()
    console_handler.setFormatter(CustomFormatter(use_color=use_color))
    root_logger.addHandler(console_handler)

    if config.log_file:
        log_path = Path(config.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            config.log_file, maxBytes=10 * 1024 * 1024, backupCount=5, encoding="utf-8"  # 10MB
        )
        file_handler.setLevel(getattr(logging, config.log_level))
        file_handler.setFormatter(StructuredFormatter())
        root_logger.addHandler(file_handler)

    logging.getLogger("uvicorn").setLevel(logging.WARNING)
    logging.getLogger("watchdog").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)

    app_logger = logging.getLogger("cert_alarm")
    app_logger.info(f"Logging initialized - Level: {config.log_level}")

    if config.log_file:
        app_logger.info(f"Log file: {config.log_file}")


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance.

    Args:
        name: Logger name

    Returns:
        Logger instance
    """
    return logging.getLogger(f"cert_alarm.{name}")


# Logging helpers for probe and dispatch operations
def log_probe_failed(
    logger: logging.Logger, domain: str, method: str, error: Exception, error_type: str
) -> None:
    """Log a single probe strategy failure; the resolver moves on to the next one."""
    logger.debug(
        f"Probe {method} failed for {domain}: {error}",
        extra={"domain": domain, "method": method, "error_type": error_type},
    )


def log_resolution(
    logger: logging.Logger, domain: str, method: Optional[str], days_until_expiry: Optional[int]
) -> None:
    """Log a successful resolution."""
    logger.info(
        f"Resolved {domain} via {method}: {days_until_expiry} days until expiry",
        extra={"domain": domain, "method": method},
    )


def log_resolution_failed(logger: logging.Logger, domain: str, message: str) -> None:
    """Log a domain whose every probe strategy failed."""
    logger.warning(
        f"Certificate check failed for {domain}: {message}",
        extra={"domain": domain, "error_type": "resolution_failed"},
    )


def log_sweep_start(logger: logging.Logger, source: str, domain_count: int) -> None:
    """Log sweep start."""
    logger.info(
        f"Starting {source} certificate sweep of {domain_count} domains",
        extra={"sweep_source": source},
    )


def log_sweep_complete(
    logger: logging.Logger,
    source: str,
    duration: float,
    healthy: int,
    expiring: int,
    failed: int,
) -> None:
    """Log sweep completion."""
    logger.info(
        f"Sweep completed - Duration: {duration:.2f}s, "
        f"Healthy: {healthy}, Expiring: {expiring}, Failed: {failed}",
        extra={"sweep_source": source, "sweep_duration": duration},
    )


def log_dispatch(logger: logging.Logger, window_key: str, outcome: str) -> None:
    """Log a dispatch gate outcome."""
    extra = {"window_key": window_key, "dispatch_outcome": outcome}
    if outcome == "sent":
        logger.info(f"Dispatch sent for window {window_key}", extra=extra)
    elif outcome == "failed":
        logger.error(f"Dispatch failed for window {window_key}", extra=extra)
    else:
        # Another actor already owns the window
        logger.debug(f"Dispatch skipped for window {window_key}", extra=extra)


def log_hot_reload(logger: logging.Logger, file_path: str, event_type: str) -> None:
    """Log hot reload events."""
    logger.debug(
        f"Hot reload triggered: {event_type}",
        extra={"file_path": file_path, "reload_event": event_type},
    )


def log_metrics_collection(
    logger: logging.Logger, metric_name: str, value: float, labels: Optional[dict] = None
) -> None:
    """Log metrics collection."""
    extra = {"metric_name": metric_name, "metric_value": value}
    if labels:
        extra["metric_labels"] = labels

    logger.debug(f"Metric collected: {metric_name}={value}", extra=extra)
