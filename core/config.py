"""
Configuration Management Module

This module handles loading, validating, and providing access to gateway
configuration from environment variables (.env file).

Uses Pydantic Settings for automatic validation and type conversion.

Key Features:
- Loads configuration from .env file
- Provides type-safe access to configuration values
- Converts comma-separated strings to lists (symbols, CORS origins)
- Resolves mainnet/testnet endpoints from a single USE_TESTNET switch

Usage:
    from core.config import settings

    print(settings.binance_rest_url)
    print(settings.symbols_list)   # ["BTCUSDT", "ETHUSDT", "SOLUSDT"]
    print(settings.poll_interval)  # seconds, as float
"""

from typing import List
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


class Settings(BaseSettings):
    """
    Gateway Settings

    Values are automatically loaded from environment variables or the .env file.
    Matching is case-insensitive, so BINANCE_API_KEY fills binance_api_key.

    Attributes:
        binance_api_key / binance_secret_key: Credentials; leave empty for a
            market-data-only connector (trading and account calls then fail fast)
        use_testnet: Route every Binance call to the sandboxed endpoint set
        poll_interval_ms: Sleep between ingestion cycles
        rate_limit_requests / rate_limit_window_seconds: Local request budget
        ring_buffer_capacity: Slots in each streaming connector's hand-off buffer
        min_arbitrage_profit_bps: Default detection threshold
    """

    # ============================================
    # Binance API Configuration
    # ============================================

    binance_base_url: str = Field(
        default="https://api.binance.com",
        description="Binance spot REST base URL"
    )

    binance_testnet_url: str = Field(
        default="https://testnet.binance.vision",
        description="Binance spot testnet REST base URL"
    )

    binance_ws_url: str = Field(
        default="wss://stream.binance.com:9443/stream",
        description="Binance combined-stream WebSocket URL"
    )

    binance_testnet_ws_url: str = Field(
        default="wss://testnet.binance.vision/stream",
        description="Binance testnet combined-stream WebSocket URL"
    )

    binance_api_key: str = Field(
        default="",
        description="Binance API key (optional for market data)"
    )

    binance_secret_key: str = Field(
        default="",
        description="Binance secret key used for HMAC request signing (optional)"
    )

    use_testnet: bool = Field(
        default=False,
        description="Use the sandboxed testnet endpoints"
    )

    binance_use_stream: bool = Field(
        default=False,
        description="Receive top-of-book updates over WebSocket instead of polling only"
    )

    # ============================================
    # Supported Markets Configuration
    # ============================================

    supported_symbols: str = Field(
        default="BTCUSDT,ETHUSDT,SOLUSDT",
        description="Comma-separated list of trading pairs to track"
    )

    order_book_depth: int = Field(
        default=20,
        description="Levels requested per order-book poll"
    )

    # ============================================
    # Ingestion & Transport
    # ============================================

    poll_interval_ms: int = Field(
        default=1000,
        description="Delay between ingestion cycles in milliseconds"
    )

    connect_retry_delay: float = Field(
        default=5.0,
        description="Minimum seconds between connection attempts"
    )

    request_timeout: float = Field(
        default=10.0,
        description="HTTP request timeout in seconds"
    )

    max_retries: int = Field(
        default=3,
        description="Attempts per REST call when rate limited (429/418/503)"
    )

    recv_window_ms: int = Field(
        default=5000,
        description="recvWindow sent with signed Binance requests"
    )

    rate_limit_requests: int = Field(
        default=1200,
        description="Requests allowed per rate-limit window"
    )

    rate_limit_window_seconds: float = Field(
        default=60.0,
        description="Length of the rate-limit window in seconds"
    )

    ring_buffer_capacity: int = Field(
        default=4096,
        description="Slots in a streaming connector's ring buffer"
    )

    stream_drain_batch: int = Field(
        default=1024,
        description="Maximum stream frames decoded per ingestion cycle"
    )

    account_refresh_interval: float = Field(
        default=30.0,
        description="Seconds between balance/open-order refreshes"
    )

    # ============================================
    # Arbitrage Detection
    # ============================================

    arbitrage_scan_interval_ms: int = Field(
        default=500,
        description="Delay between arbitrage scans when a listener is registered"
    )

    min_arbitrage_profit_bps: float = Field(
        default=10.0,
        description="Opportunities below this profit are discarded"
    )

    min_executable_quantity: float = Field(
        default=0.0,
        description="Top-of-book quantity required to flag an opportunity executable"
    )

    fresh_after_ms: float = Field(
        default=1000.0,
        description="Snapshots older than this lose confidence"
    )

    stale_after_ms: float = Field(
        default=10000.0,
        description="Snapshots older than this carry zero confidence"
    )

    high_latency_ms: float = Field(
        default=100.0,
        description="Combined venue latency above this reduces confidence"
    )

    max_latency_ms: float = Field(
        default=250.0,
        description="Combined venue latency above this is HIGH risk"
    )

    low_risk_profit_bps: float = Field(
        default=20.0,
        description="Minimum profit for a LOW risk tier"
    )

    # ============================================
    # Application Configuration
    # ============================================

    app_host: str = Field(
        default="0.0.0.0",
        description="Snapshot API host address"
    )

    app_port: int = Field(
        default=8000,
        description="Snapshot API port"
    )

    environment: str = Field(
        default="development",
        description="Application environment (development, production)"
    )

    debug: bool = Field(
        default=True,
        description="Enable debug mode"
    )

    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )

    cors_origins: str = Field(
        default="http://localhost:3000,http://localhost:5173",
        description="Comma-separated list of allowed CORS origins"
    )

    simulated_exchanges: str = Field(
        default="",
        description="Comma-separated names of in-memory venues to register (e.g., sim_a,sim_b)"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
        case_sensitive=False
    )

    # ============================================
    # Derived Values
    # ============================================

    @property
    def symbols_list(self) -> List[str]:
        """
        Convert comma-separated symbols string to a list.

        Example:
            >>> settings.symbols_list
            ['BTCUSDT', 'ETHUSDT', 'SOLUSDT']
        """
        return [s.strip().upper() for s in self.supported_symbols.split(",") if s.strip()]

    @property
    def cors_origins_list(self) -> List[str]:
        """Convert comma-separated CORS origins string to a list."""
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def simulated_exchanges_list(self) -> List[str]:
        return [name.strip().lower() for name in self.simulated_exchanges.split(",") if name.strip()]

    @property
    def poll_interval(self) -> float:
        """Poll interval in seconds."""
        return self.poll_interval_ms / 1000.0

    @property
    def binance_rest_url(self) -> str:
        """REST base URL honoring use_testnet."""
        return self.binance_testnet_url if self.use_testnet else self.binance_base_url

    @property
    def binance_stream_url(self) -> str:
        """Combined-stream URL honoring use_testnet."""
        return self.binance_testnet_ws_url if self.use_testnet else self.binance_ws_url

    @property
    def has_binance_credentials(self) -> bool:
        return bool(self.binance_api_key and self.binance_secret_key)


# ============================================
# Global Settings Instance
# ============================================

settings = Settings()


# ============================================
# Configuration Validation
# ============================================

def validate_configuration(config: Settings = None) -> None:
    """
    Validate critical configuration settings on startup.

    Args:
        config: Settings to check (defaults to the global instance)

    Raises:
        ValueError: If required configuration is missing or invalid
    """
    # logging.py imports config.py, so import lazily
    from core.logging import logger

    config = config or settings

    if not config.symbols_list:
        raise ValueError("SUPPORTED_SYMBOLS must contain at least one symbol")

    for symbol in config.symbols_list:
        if not symbol.isupper():
            raise ValueError(
                f"Symbol '{symbol}' must be uppercase. "
                f"Please update SUPPORTED_SYMBOLS in .env"
            )

    if not (100 <= config.poll_interval_ms <= 10_000):
        raise ValueError(
            f"Invalid POLL_INTERVAL_MS: {config.poll_interval_ms}. "
            f"Must be between 100 and 10000"
        )

    if config.rate_limit_requests <= 0 or config.rate_limit_window_seconds <= 0:
        raise ValueError("RATE_LIMIT_REQUESTS and RATE_LIMIT_WINDOW_SECONDS must be positive")

    if config.ring_buffer_capacity < 2:
        raise ValueError(f"RING_BUFFER_CAPACITY must be at least 2, got {config.ring_buffer_capacity}")

    if config.stale_after_ms <= config.fresh_after_ms:
        raise ValueError("STALE_AFTER_MS must be greater than FRESH_AFTER_MS")

    if config.connect_retry_delay <= 0:
        raise ValueError("CONNECT_RETRY_DELAY must be positive")

    if not (1 <= config.app_port <= 65535):
        raise ValueError(f"Invalid port number: {config.app_port}. Must be between 1 and 65535")

    valid_log_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
    if config.log_level.upper() not in valid_log_levels:
        raise ValueError(
            f"Invalid LOG_LEVEL: '{config.log_level}'. "
            f"Must be one of: {', '.join(valid_log_levels)}"
        )

    logger.info("Configuration validated successfully")
    logger.info(f"Tracking symbols: {', '.join(config.symbols_list)}")
    logger.info(f"Binance REST: {config.binance_rest_url} (testnet={config.use_testnet})")
    logger.info(f"Poll interval: {config.poll_interval_ms}ms | "
                f"Rate limit: {config.rate_limit_requests}/{config.rate_limit_window_seconds:g}s")
    logger.info(f"Trading credentials: {'configured' if config.has_binance_credentials else 'none (market data only)'}")
