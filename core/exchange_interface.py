"""
Exchange Connector - Abstract Contract for All Venues

This module defines the abstract base class every exchange connector
implements. The manager, the arbitrage detector and the HTTP API only ever
talk to ExchangeConnector, never to a concrete venue.

Design Philosophy:
    "Program to an interface, not an implementation"

    Each venue is an independent variant that satisfies this contract. The
    base class carries the parts every variant shares: callback registration,
    subscription bookkeeping, capability checks, and the ingest helpers that
    move fetched data into the bound cache.

Capabilities System:
    Each connector declares what it can do via the ``capabilities`` dict.
    Calling an operation the connector lacks fails fast with
    UnsupportedOperationError instead of silently returning nothing.

    Example:
        capabilities = {
            "market_data": True,
            "order_book": True,
            "trades": True,
            "trading": False,   # no API credentials configured
            "account": False,
            "streaming": False,
            "polling": True
        }

Failure Semantics:
    Blocking operations never raise for network or venue failures. They
    report ``(context, message)`` through the error callback and return the
    documented failure value: "" for order ids, False for cancels, [] for
    lists, None for order status, a zero Balance for balances.

Threading:
    Callbacks run synchronously on whichever thread produced the event (the
    ingestion thread for market data, the caller's thread for order
    operations). They must be fast and must not block.
"""

import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Union

from core.exceptions import GatewayError, UnsupportedOperationError
from core.logging import get_logger
from core.market_data_cache import MarketDataCache
from core.rate_limiter import RateLimiter
from core.ring_buffer import RingBuffer
from core.schemas import Balance, OrderBookSnapshot, OrderRecord, OrderSide, TickSnapshot

logger = get_logger(__name__)

OrderUpdateCallback = Callable[[OrderRecord], None]
TickerUpdateCallback = Callable[[TickSnapshot], None]
ErrorCallback = Callable[[str, str], None]

StreamUpdate = Union[TickSnapshot, OrderBookSnapshot]


class ExchangeConnector(ABC):
    """
    Abstract Base Class for Exchange Connectors

    Class Attributes:
        name: Unique identifier for the exchange (lowercase, e.g., "binance")
        capabilities: Features this connector supports. Instances receive
            their own copy, so a connector may narrow it at construction time
            (e.g., no "trading" without credentials).

    Abstract Methods (MUST be implemented by every connector):
        - connect / disconnect / is_connected
        - fetch_ticker / fetch_order_book
        - place_limit_order / place_market_order
        - cancel_order / cancel_all_orders
        - get_open_orders / get_order_status / get_account_balances

    Example Implementation:
        >>> class PaperExchange(ExchangeConnector):
        ...     name = "paper"
        ...     capabilities = {"market_data": True, "polling": True}
        ...
        ...     def fetch_ticker(self, symbol):
        ...         return TickSnapshot(exchange=self.name, symbol=symbol, last_price=1.0)
    """

    # ============================================
    # Class Attributes (must be set by subclasses)
    # ============================================

    name: str
    """Unique exchange identifier (lowercase). Example: "binance", "sim_a" """

    capabilities: Dict[str, bool] = {
        "market_data": False,
        "order_book": False,
        "trades": False,
        "trading": False,
        "account": False,
        "streaming": False,
        "polling": False
    }
    """Dictionary indicating which features this connector supports"""

    def __init__(self, rate_limiter: RateLimiter):
        self.capabilities = dict(type(self).capabilities)
        self._rate_limiter = rate_limiter
        self._cache = MarketDataCache()
        self._latency_ms = 0.0

        self._subscription_lock = threading.Lock()
        self._ticker_symbols: List[str] = []
        self._book_subscriptions: Dict[str, int] = {}
        self._trade_symbols: List[str] = []

        self._order_update_callback: Optional[OrderUpdateCallback] = None
        self._ticker_update_callback: Optional[TickerUpdateCallback] = None
        self._error_callback: Optional[ErrorCallback] = None

    # ============================================
    # Connection Management
    # ============================================

    @abstractmethod
    def connect(self) -> bool:
        """
        Open the session with the venue.

        Idempotent: returns True immediately when already connected.

        Returns:
            bool: True if connected, False if the attempt failed (the failure
                  is reported through the error callback)
        """
        ...

    @abstractmethod
    def disconnect(self) -> bool:
        """Close the session. Always succeeds locally."""
        ...

    @abstractmethod
    def is_connected(self) -> bool:
        """Non-blocking connection state."""
        ...

    def get_status(self) -> str:
        return "Connected" if self.is_connected() else "Disconnected"

    def health_check(self) -> bool:
        """
        Check whether the venue is reachable.

        Default implementation reports the connection state; REST connectors
        override this with a lightweight ping.
        """
        return self.is_connected()

    # ============================================
    # Subscriptions
    # ============================================

    def subscribe_to_tickers(self, symbols: List[str]) -> bool:
        """
        Add symbols to the ticker set this connector keeps fresh.

        Args:
            symbols: Trading pair symbols (case-insensitive)

        Returns:
            bool: True once the symbols are registered

        Raises:
            UnsupportedOperationError: If the connector has no market data
        """
        self.require("market_data")
        with self._subscription_lock:
            for symbol in symbols:
                symbol = symbol.upper()
                if symbol not in self._ticker_symbols:
                    self._ticker_symbols.append(symbol)
        logger.debug(f"{self.name}: ticker subscriptions {self._ticker_symbols}")
        self._on_subscriptions_changed()
        return True

    def subscribe_to_order_book(self, symbol: str, depth: int = 20) -> bool:
        """Add ``symbol`` to the order-book set, fetching ``depth`` levels per side."""
        self.require("order_book")
        if depth <= 0:
            self._report_error(f"subscribe_to_order_book {symbol}", f"Invalid depth {depth}")
            return False
        with self._subscription_lock:
            self._book_subscriptions[symbol.upper()] = depth
        self._on_subscriptions_changed()
        return True

    def subscribe_to_trades(self, symbol: str) -> bool:
        """Register interest in public trades for ``symbol``."""
        self.require("trades")
        with self._subscription_lock:
            symbol = symbol.upper()
            if symbol not in self._trade_symbols:
                self._trade_symbols.append(symbol)
        return True

    def unsubscribe(self, symbol: str) -> None:
        """Remove ``symbol`` from every subscription set."""
        symbol = symbol.upper()
        with self._subscription_lock:
            if symbol in self._ticker_symbols:
                self._ticker_symbols.remove(symbol)
            if symbol in self._trade_symbols:
                self._trade_symbols.remove(symbol)
            self._book_subscriptions.pop(symbol, None)
        self._on_subscriptions_changed()

    def ticker_symbols(self) -> List[str]:
        with self._subscription_lock:
            return list(self._ticker_symbols)

    def order_book_subscriptions(self) -> Dict[str, int]:
        with self._subscription_lock:
            return dict(self._book_subscriptions)

    def trade_symbols(self) -> List[str]:
        with self._subscription_lock:
            return list(self._trade_symbols)

    def _on_subscriptions_changed(self) -> None:
        """Hook for streaming connectors that must resubscribe."""

    # ============================================
    # Market Data
    # ============================================

    @abstractmethod
    def fetch_ticker(self, symbol: str) -> TickSnapshot:
        """
        Blocking fetch of the current ticker.

        Raises:
            TransportError: Network failure or unusable response
            ExchangeRejection: Venue refused the request (e.g., invalid symbol)
        """
        ...

    @abstractmethod
    def fetch_order_book(self, symbol: str, depth: int = 20) -> OrderBookSnapshot:
        """Blocking fetch of ``depth`` levels per side. Raises like fetch_ticker."""
        ...

    def get_latest_tick(self, symbol: str) -> TickSnapshot:
        """
        Last cached snapshot for ``symbol``; never blocks on the network.

        Returns ``TickSnapshot.empty(...)`` if no update has arrived yet.
        """
        return self._cache.get_tick(self.name, symbol)

    def get_supported_symbols(self) -> List[str]:
        return self.ticker_symbols()

    def bind_cache(self, cache: MarketDataCache) -> None:
        """Make this connector read and write the given (shared) cache."""
        self._cache = cache

    @property
    def cache(self) -> MarketDataCache:
        return self._cache

    # ============================================
    # Ingest Helpers (called by the ingestion loop)
    # ============================================

    def poll_ticker(self, symbol: str) -> TickSnapshot:
        """Fetch a ticker, store it in the bound cache and fire the ticker callback."""
        tick = self.fetch_ticker(symbol)
        self._cache.update_tick(tick)
        self._emit_ticker_update(tick)
        return tick

    def poll_order_book(self, symbol: str, depth: int = 20) -> OrderBookSnapshot:
        book = self.fetch_order_book(symbol, depth)
        self._cache.update_order_book(book)
        return book

    @property
    def stream_buffer(self) -> Optional[RingBuffer]:
        """Ring buffer filled by the streaming producer; None for polling-only connectors."""
        return None

    def decode_stream_message(self, raw: Any) -> List[StreamUpdate]:
        """Turn one raw stream payload into normalized snapshots."""
        return []

    def ingest_stream(self, max_items: Optional[int] = None) -> int:
        """
        Drain the stream buffer into the cache.

        Tick updates fire the ticker callback. Payloads that fail to decode
        are reported through the error callback and skipped.

        Returns:
            int: Number of snapshots applied
        """
        buffer = self.stream_buffer
        if buffer is None:
            return 0

        applied = 0
        for raw in buffer.drain(max_items):
            try:
                updates = self.decode_stream_message(raw)
            except GatewayError as e:
                self._report_error("stream", str(e))
                continue

            for update in updates:
                if isinstance(update, OrderBookSnapshot):
                    self._cache.update_order_book(update)
                else:
                    self._cache.update_tick(update)
                    self._emit_ticker_update(update)
                applied += 1
        return applied

    def fetch_account_balances(self) -> List[Balance]:
        """
        Blocking read of balances for refresh_account.

        Unlike get_account_balances, failures propagate. Connectors whose
        reads cannot fail keep this default.

        Raises:
            GatewayError: The venue could not be read
        """
        return self.get_account_balances()

    def fetch_open_orders(self) -> List[OrderRecord]:
        """Blocking read of open orders for refresh_account. Raises like fetch_account_balances."""
        return self.get_open_orders()

    def refresh_account(self) -> None:
        """
        Store current balances and open orders in the bound cache.

        Both reads complete before either is stored; when one fails the cache
        keeps the last successful refresh.

        Raises:
            GatewayError: Either read failed
        """
        balances = self.fetch_account_balances()
        orders = self.fetch_open_orders()
        self._cache.set_balances(self.name, balances)
        self._cache.set_open_orders(self.name, orders)

    # ============================================
    # Stream Lifecycle
    # ============================================

    def pause_stream(self) -> None:
        """Stop the streaming producer and discard payloads nobody consumed."""

    def resume_stream(self) -> None:
        """Restart a producer stopped by pause_stream. No-op while disconnected."""

    # ============================================
    # Trading Operations
    # ============================================

    @abstractmethod
    def place_limit_order(self, symbol: str, side: Union[OrderSide, str], quantity: float, price: float) -> str:
        """
        Submit a GTC limit order.

        Returns:
            str: Exchange order id, or "" on failure

        Raises:
            UnsupportedOperationError: If the connector cannot trade
        """
        ...

    @abstractmethod
    def place_market_order(self, symbol: str, side: Union[OrderSide, str], quantity: float) -> str:
        """Submit a market order. Returns the order id, or "" on failure."""
        ...

    @abstractmethod
    def cancel_order(self, symbol: str, order_id: str) -> bool:
        """
        Cancel one order.

        Idempotent: cancelling an already-cancelled or unknown order returns
        True. False means the request itself failed.
        """
        ...

    @abstractmethod
    def cancel_all_orders(self, symbol: Optional[str] = None) -> bool:
        """Cancel every open order (for ``symbol`` if given). Idempotent."""
        ...

    @abstractmethod
    def get_open_orders(self, symbol: Optional[str] = None) -> List[OrderRecord]:
        """Blocking read-through of open orders; [] on failure."""
        ...

    @abstractmethod
    def get_order_status(self, symbol: str, order_id: str) -> Optional[OrderRecord]:
        """Current broker state of one order; None on failure."""
        ...

    def get_trading_fees(self) -> Dict[str, float]:
        """Maker/taker fee rates as fractions (0.001 == 10 bps)."""
        return {}

    def get_min_order_sizes(self) -> Dict[str, float]:
        """Minimum order quantity per symbol, where the venue publishes one."""
        return {}

    # ============================================
    # Account Information
    # ============================================

    @abstractmethod
    def get_account_balances(self) -> List[Balance]:
        """Every non-zero balance; [] on failure."""
        ...

    def get_asset_balance(self, asset: str) -> Balance:
        """Balance of one asset; a zero Balance if the asset is absent."""
        asset = asset.upper()
        for balance in self.get_account_balances():
            if balance.asset == asset:
                return balance
        return Balance(asset=asset)

    def get_available_balance(self, asset: str) -> float:
        return self.get_asset_balance(asset).free

    # ============================================
    # Limits & Latency
    # ============================================

    @property
    def rate_limiter(self) -> RateLimiter:
        return self._rate_limiter

    def get_rate_limit_remaining(self) -> int:
        """Requests left in the current window. Non-blocking."""
        return self._rate_limiter.remaining()

    def get_latency_ms(self) -> float:
        """Last measured round-trip time. Non-blocking."""
        return self._latency_ms

    # ============================================
    # Callbacks
    # ============================================

    def set_order_update_callback(self, callback: Optional[OrderUpdateCallback]) -> None:
        self._order_update_callback = callback

    def set_ticker_update_callback(self, callback: Optional[TickerUpdateCallback]) -> None:
        self._ticker_update_callback = callback

    def set_error_callback(self, callback: Optional[ErrorCallback]) -> None:
        self._error_callback = callback

    def _emit_order_update(self, order: OrderRecord) -> None:
        self._cache.upsert_order(self.name, order)
        if self._order_update_callback is not None:
            try:
                self._order_update_callback(order)
            except Exception:
                logger.exception(f"{self.name}: order update callback raised")

    def _emit_ticker_update(self, tick: TickSnapshot) -> None:
        if self._ticker_update_callback is not None:
            try:
                self._ticker_update_callback(tick)
            except Exception:
                logger.exception(f"{self.name}: ticker update callback raised")

    def _report_error(self, context: str, message: str) -> None:
        logger.warning(f"{self.name}: {context} | {message}")
        if self._error_callback is not None:
            try:
                self._error_callback(context, message)
            except Exception:
                logger.exception(f"{self.name}: error callback raised")

    # ============================================
    # Helper Methods
    # ============================================

    def supports(self, feature: str) -> bool:
        """
        Check if this connector supports a specific feature.

        Example:
            >>> if connector.supports("trading"):
            ...     connector.place_market_order("BTCUSDT", "BUY", 0.001)
        """
        return self.capabilities.get(feature, False)

    def require(self, feature: str) -> None:
        """
        Fail fast when ``feature`` is unsupported.

        Raises:
            UnsupportedOperationError: Reported through the error callback first
        """
        if not self.supports(feature):
            error = UnsupportedOperationError(f"{self.name} does not support '{feature}'", context=feature)
            self._report_error(feature, error.message)
            raise error

    def __repr__(self) -> str:
        """String representation of the connector."""
        return f"<{self.__class__.__name__}(name='{self.name}')>"
