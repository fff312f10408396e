"""
Unified Logging Configuration

This module sets up a centralized logging system for the gateway.
All modules should import and use the logger from this module instead of
using print() statements.

Usage:
    from core.logging import logger, get_logger

    logger.info("Manager started")

    log = get_logger(__name__)
    log.warning("Rate limit budget exhausted, deferring BTCUSDT")

Log Levels (from most to least verbose):
    DEBUG    - Per-request detail (e.g., "GET /api/v3/ticker/24hr - 200 (12.4ms)")
    INFO     - Lifecycle events (e.g., "Connected to binance", "Ingestion started")
    WARNING  - Recoverable trouble (e.g., deferred polls, dropped stream frames)
    ERROR    - Failed requests reported through the error callback
    CRITICAL - Not used in normal operation

Configuration:
    Log level is controlled by the LOG_LEVEL setting in the .env file.
"""

import logging
import sys
from typing import Optional

ROOT_LOGGER_NAME = "arbgate"


def setup_logging(
    log_level: str = "INFO",
    log_format: Optional[str] = None,
    include_timestamp: bool = True,
    include_module: bool = True
) -> logging.Logger:
    """
    Configure and return the application logger.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Custom log format string (uses default if None)
        include_timestamp: Include timestamp in log messages
        include_module: Include logger name in log messages

    Returns:
        logging.Logger: Configured root application logger

    Example:
        >>> logger = setup_logging(log_level="DEBUG")
        >>> logger.info("Gateway started")
        2024-01-01 12:00:00 [INFO] arbgate Gateway started
    """
    if log_format is None:
        format_parts = []

        if include_timestamp:
            format_parts.append("%(asctime)s")

        format_parts.append("[%(levelname)s]")

        if include_module:
            format_parts.append("%(name)s")

        format_parts.append("%(message)s")

        log_format = " ".join(format_parts)

    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format=log_format,
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
        force=True
    )

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    return logger


# ============================================
# Initialize Logger with Settings
# ============================================

from core.config import settings  # noqa: E402

logger = setup_logging(log_level=settings.log_level)


# ============================================
# Convenience Functions
# ============================================

def get_logger(name: str) -> logging.Logger:
    """
    Get a child logger for a module or component.

    Args:
        name: Name for the logger (typically __name__)

    Returns:
        logging.Logger: Logger named "arbgate.<name>"

    Example:
        # In exchanges/binance/api_client.py:
        logger = get_logger(__name__)  # "arbgate.exchanges.binance.api_client"
    """
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")


# ============================================
# Log Helper Functions
# ============================================

def log_api_request(exchange: str, method: str, path: str, params: dict = None) -> None:
    """
    Log an outbound REST request with consistent formatting.

    Signed parameters are never passed here; callers log the unsigned set.

    Example:
        >>> log_api_request("binance", "GET", "/api/v3/ticker/24hr", {"symbol": "BTCUSDT"})
        [DEBUG] API Request: binance GET /api/v3/ticker/24hr | Params: {'symbol': 'BTCUSDT'}
    """
    if params:
        logger.debug(f"API Request: {exchange} {method} {path} | Params: {params}")
    else:
        logger.debug(f"API Request: {exchange} {method} {path}")


def log_api_response(exchange: str, path: str, status: int, latency_ms: float = None) -> None:
    """
    Log a REST response with status and round-trip time.

    Example:
        >>> log_api_response("binance", "/api/v3/depth", 200, 12.4)
        [DEBUG] API Response: binance /api/v3/depth | Status: 200 | Time: 12.4ms
    """
    time_str = f" | Time: {latency_ms:.1f}ms" if latency_ms is not None else ""
    logger.debug(f"API Response: {exchange} {path} | Status: {status}{time_str}")


def log_stream_event(exchange: str, event: str, symbol: str = None, details: str = None) -> None:
    """
    Log a streaming-session event.

    Args:
        exchange: Exchange name
        event: Event type ("connected", "disconnected", "resubscribe", "error")
        symbol: Trading symbol (optional)
        details: Additional details (optional)

    Example:
        >>> log_stream_event("binance", "error", details="Connection reset")
        [ERROR] Stream: binance error | Connection reset
    """
    symbol_str = f" | Symbol: {symbol}" if symbol else ""
    details_str = f" | {details}" if details else ""

    level = logging.ERROR if event == "error" else logging.INFO
    logger.log(level, f"Stream: {exchange} {event}{symbol_str}{details_str}")


logger.debug("Logging system initialized")
