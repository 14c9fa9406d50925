"""
Logging Utilities for the pipeline orchestrator

This module provides centralized logging configuration for the FastAPI application
and the background pipeline tasks. It ensures consistent log formatting with
per-source tracing across all stages.

Every background task belongs to one source (videoId) and usually one stage, so
log lines carry a "[videoId/stage]" tag that makes interleaved output from many
concurrently running sources readable.
"""
import logging
from typing import Optional


DEFAULT_LOGGER_NAME = "orchestrator"


class _RequestIdDefaultFilter(logging.Filter):
    """Supply a placeholder request_id for records logged outside an adapter."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "request_id"):
            record.request_id = "-"
        return True


def setup_logger(
    log_level: int = logging.INFO,
    logger_name: str = DEFAULT_LOGGER_NAME
) -> logging.Logger:
    """
    Configure the orchestrator logger.

    Args:
        log_level: Logging level constant from logging module.
                  Defaults to logging.INFO (20).
        logger_name: Name for the logger instance. Defaults to "orchestrator".

    Returns:
        Configured Logger instance ready for use with get_source_logger().

    Example:
        >>> logger = setup_logger(log_level=logging.DEBUG)
        >>> source_logger = get_source_logger("dQw4w9WgXcQ", "transcription")
        >>> source_logger.info("Processing started")
        2025-12-22 10:30:45 | INFO | [dQw4w9WgXcQ/transcription] Processing started
    """
    log_format = logging.Formatter(
        '%(asctime)s | %(levelname)s | [%(request_id)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    logger = logging.getLogger(logger_name)
    logger.setLevel(log_level)

    # Prevent duplicate handlers if logger already configured
    if not logger.handlers:
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(log_format)
        console_handler.addFilter(_RequestIdDefaultFilter())
        logger.addHandler(console_handler)

    return logger


def get_source_logger(
    video_id: str,
    stage: Optional[str] = None,
    base_logger: Optional[logging.Logger] = None
) -> logging.LoggerAdapter:
    """
    Create a logger adapter tagged with the source (and optionally stage) for tracing.

    Args:
        video_id: Source identifier.
        stage: Optional stage name (transcription, translation, synthesis, ...).
        base_logger: Optional base logger to wrap. If None, uses the
                    "orchestrator" logger.

    Returns:
        LoggerAdapter configured to inject the tag into all log messages.
    """
    if base_logger is None:
        base_logger = logging.getLogger(DEFAULT_LOGGER_NAME)

    tag = f"{video_id}/{stage}" if stage else video_id
    return logging.LoggerAdapter(base_logger, {"request_id": tag})
