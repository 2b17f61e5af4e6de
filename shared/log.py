#!/usr/bin/env python3
"""
Chat Relay Logging Configuration

Centralized logging setup for consistent formatting across the project.
Supports both development (console) and production (file) modes.

Usage:
    from shared.log import get_logger

    logger = get_logger(__name__)
    logger.info("Starting relay...")
    logger.error("Push failed", extra={"user_id": "123", "connection_id": "c-1"})
"""

from __future__ import annotations
import logging
import sys
from pathlib import Path
from typing import Optional, Dict, Any
import os


# ========================================
#           LOGGING FORMATTERS
# ========================================

def _relay_context(record: logging.LogRecord) -> str:
    """Render the relay context fields attached through ``extra=``."""
    context = []
    if getattr(record, 'user_id', None):
        context.append(f"user={record.user_id}")
    if getattr(record, 'connection_id', None):
        context.append(f"conn={record.connection_id[:8]}")
    if getattr(record, 'event', None):
        context.append(f"event={record.event}")
    if getattr(record, 'message_id', None):
        context.append(f"msg={record.message_id}")
    return f"[{' '.join(context)}] " if context else ""


class GenericFormatter(logging.Formatter):

    def format(self, record: logging.LogRecord) -> str:
        # Context is rendered per handler, the record itself stays untouched
        formatted = super().format(record)
        context = _relay_context(record)
        if not context:
            return formatted
        message = record.getMessage()
        return formatted.replace(message, f"{context}{message}", 1)


class ColoredFormatter(GenericFormatter):
    """Colored formatter for console output with relay context"""

    # ANSI Color codes
    COLORS = {
        'DEBUG': '\033[36m',     # Cyan
        'INFO': '\033[32m',      # Green
        'WARNING': '\033[33m',   # Yellow
        'ERROR': '\033[31m',     # Red
        'CRITICAL': '\033[35m',  # Magenta
        'RESET': '\033[0m'       # Reset
    }

    def format(self, record: logging.LogRecord) -> str:
        original = record.levelname
        if original in self.COLORS:
            record.levelname = f"{self.COLORS[original]}{original}{self.COLORS['RESET']}"
        try:
            return super().format(record)
        finally:
            record.levelname = original


# ========================================
#           LOGGING CONFIGURATION
# ========================================

_loggers_configured = set()

# Level chosen by configure_root_logging; applies to loggers created afterwards
_application_level: Optional[str] = None

def get_logger(name: str, level: Optional[str] = None) -> logging.Logger:
    """
    Get a configured logger for the given module.

    Args:
        name: Usually __name__ from the calling module
        level: Override log level ("DEBUG", "INFO", "WARNING", "ERROR")

    Returns:
        Configured logger instance

    Examples:
        logger = get_logger(__name__)
        logger.info("Relay starting")

        # With context
        logger.warning("Push dropped", extra={
            "user_id": "user-123",
            "connection_id": "0b7c...",
            "event": "new_message"
        })
    """
    logger = logging.getLogger(name)

    # Only configure each logger once
    if name not in _loggers_configured:
        _configure_logger(logger, level)
        _loggers_configured.add(name)

    return logger


def _configure_logger(logger: logging.Logger, level: Optional[str] = None) -> None:
    """Configure a logger with appropriate handlers and formatters"""

    log_level = _get_log_level(level)
    logger.setLevel(log_level)

    # Clear existing handlers to avoid duplicates
    logger.handlers.clear()

    if _is_development():
        _add_file_handler(logger)
        _add_console_handler(logger, colored=True)
    else:
        # Production: Clean console + file logging
        _add_console_handler(logger, colored=False)
        _add_file_handler(logger)

    # Prevent duplicate messages from parent loggers
    logger.propagate = False


def _get_log_level(level: Optional[str] = None) -> int:
    """Determine appropriate log level"""

    level = level or _application_level or os.getenv('RELAY_LOG_LEVEL')
    if level:
        return getattr(logging, level.upper(), logging.INFO)

    # Default based on environment
    return logging.DEBUG if _is_development() else logging.INFO


def _is_development() -> bool:
    """Detect if we're in development mode"""
    return (
        os.getenv('RELAY_ENV', '').lower() in ['dev', 'development'] or
        'pytest' in sys.modules
    )


def _add_console_handler(logger: logging.Logger, colored: bool = True) -> None:
    """Add console handler with appropriate formatter"""

    fmt='[%(levelname)-8s][%(asctime)s][%(name)-5s]: %(message)s'
    handler = logging.StreamHandler(sys.stdout)

    if colored and _supports_color():
        formatter = ColoredFormatter(
            fmt=fmt,
            datefmt='%H:%M:%S'
        )
    else:
        formatter = GenericFormatter(
            fmt=fmt,
            datefmt='%Y-%m-%d %H:%M:%S'
        )

    handler.setFormatter(formatter)
    logger.addHandler(handler)


def _add_file_handler(logger: logging.Logger) -> None:
    """Add file handler for production logging"""

    log_dir = Path(os.getenv('RELAY_LOG_DIR', 'logs'))
    log_dir.mkdir(parents=True, exist_ok=True)

    # File handler with rotation would be nice, but keeping simple for now
    log_file = log_dir / "relay.log"
    handler = logging.FileHandler(log_file)

    formatter = GenericFormatter(
        fmt='%(asctime)s | %(name)-30s | %(levelname)-8s | %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    handler.setFormatter(formatter)
    logger.addHandler(handler)


def _supports_color() -> bool:
    """Check if terminal supports color output"""

    # stdout must be a terminal
    if not (hasattr(sys.stdout, "isatty") and sys.stdout.isatty()):
        return False

    # TERM should not be dumb
    if os.getenv("TERM", "") == "dumb":
        return False

    # Windows-specific check
    if sys.platform == "win32":
        # On modern Windows terminals, ANSI colors are supported
        return os.getenv("ANSICON") is not None or os.getenv("WT_SESSION") is not None or os.getenv("TERM_PROGRAM") == "vscode" or "WindowsTerminal" in os.getenv("TERM", "")

    return True
# ========================================
#           CONVENIENCE FUNCTIONS
# ========================================

def configure_root_logging(level: str = "INFO") -> None:
    """
    Configure root logging for the entire application.
    Call this once at application startup.

    Args:
        level: Root log level ("DEBUG", "INFO", "WARNING", "ERROR")
    """
    global _application_level
    _application_level = level

    root_logger = logging.getLogger()
    _configure_logger(root_logger, level)

    # Module loggers do not propagate, so they need the level themselves
    log_level = _get_log_level(level)
    for name in _loggers_configured:
        logging.getLogger(name).setLevel(log_level)


def log_relay_event(logger: logging.Logger, level: str, message: str,
                    frame: Optional[Dict[str, Any]] = None,
                    **context: Any) -> None:
    """
    Log a relay frame with structured context.

    Args:
        logger: Logger instance
        level: Log level ("debug", "info", "warning", "error")
        message: Log message
        frame: Frame dict for automatic context extraction
        **context: Additional context fields (user_id, connection_id, message_id)

    Example:
        log_relay_event(logger, "debug", "Dispatching frame",
                        frame=frame.to_dict(), user_id=link.user_id)
    """

    extra_context = {}

    if frame:
        extra_context['event'] = frame.get('event')

    extra_context.update(context)

    log_func = getattr(logger, level.lower())
    log_func(message, extra=extra_context)
