"""
Binance Exchange Connector

This module implements the ExchangeConnector contract for Binance spot.

API Documentation:
    https://binance-docs.github.io/apidocs/spot/en/

Endpoints Used:
    REST (all under /api/v3):
        - GET    /ping          - Connectivity check
        - GET    /ticker/24hr   - Ticker polling
        - GET    /depth         - Order-book polling
        - GET    /trades        - Recent public trades
        - GET    /exchangeInfo  - Supported symbols, lot sizes
        - POST   /order         - Place order (signed)
        - DELETE /order         - Cancel order (signed)
        - GET    /order         - Order status (signed)
        - GET    /openOrders    - Open orders (signed)
        - DELETE /openOrders    - Cancel all orders for a symbol (signed)
        - GET    /account       - Balances and commission rates (signed)

    WebSocket (optional fast path):
        - Combined stream of <symbol>@bookTicker

Capabilities:
    Market data is always available. Trading and account operations need an
    API key and secret; without them those operations fail fast with
    UnsupportedOperationError. Streaming is enabled with use_stream=True.

Structure:
    exchanges/binance/
    ├── __init__.py          # This file (BinanceConnector class)
    ├── api_client.py        # Blocking REST client with httpx
    └── ws_client.py         # Book-ticker stream (ring-buffer producer)
"""

import json
from typing import Any, Dict, List, Optional, Union

from core.config import Settings, settings as default_settings
from core.exceptions import ExchangeRejection, GatewayError, MalformedResponseError, RateLimitExceeded
from core.exchange_interface import ExchangeConnector, StreamUpdate
from core.logging import get_logger
from core.rate_limiter import RateLimiter
from core.ring_buffer import RingBuffer
from core.schemas import (
    Balance,
    OrderBookLevel,
    OrderBookSnapshot,
    OrderRecord,
    OrderSide,
    OrderStatus,
    OrderType,
    TickSnapshot,
)
from core.utils.time import current_utc_datetime
from .api_client import BinanceAPIClient
from .ws_client import BinanceBookTickerStream

logger = get_logger(__name__)

# Binance error code for cancelling an order that is unknown or already closed
UNKNOWN_ORDER_CODE = -2011

DEFAULT_FEES = {"maker": 0.001, "taker": 0.001}


class BinanceConnector(ExchangeConnector):
    """
    Binance Spot Exchange Connector

    Attributes:
        name: Exchange identifier ("binance")
        client: BinanceAPIClient used for every REST call
        use_testnet: True when routed to https://testnet.binance.vision

    Example:
        >>> connector = BinanceConnector(api_key="...", api_secret="...", use_testnet=True)
        >>> connector.connect()
        True
        >>> connector.subscribe_to_tickers(["BTCUSDT"])
        True
        >>> order_id = connector.place_limit_order("BTCUSDT", "BUY", 0.001, 25000.0)

    Notes:
        - Order operations consume the connector's own RateLimiter; when the
          window is exhausted they fail with RateLimitExceeded reported
          through the error callback
        - Cancelling an unknown or already-closed order counts as success
    """

    # ============================================
    # Class Attributes
    # ============================================

    name = "binance"

    capabilities = {
        "market_data": True,
        "order_book": True,
        "trades": True,
        "trading": False,
        "account": False,
        "streaming": False,
        "polling": True
    }

    # ============================================
    # Initialization
    # ============================================

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        use_testnet: Optional[bool] = None,
        use_stream: Optional[bool] = None,
        config: Optional[Settings] = None,
        client: Optional[BinanceAPIClient] = None,
        stream: Optional[BinanceBookTickerStream] = None
    ):
        """
        Initialize the Binance connector.

        Args:
            api_key: API key (defaults to BINANCE_API_KEY)
            api_secret: Secret key (defaults to BINANCE_SECRET_KEY)
            use_testnet: Route to the testnet (defaults to USE_TESTNET)
            use_stream: Enable the bookTicker fast path (defaults to BINANCE_USE_STREAM)
            config: Settings to read defaults from
            client: Pre-built REST client (tests)
            stream: Pre-built stream (tests); implies use_stream
        """
        config = config or default_settings
        super().__init__(RateLimiter(config.rate_limit_requests, config.rate_limit_window_seconds))

        api_key = config.binance_api_key if api_key is None else api_key
        api_secret = config.binance_secret_key if api_secret is None else api_secret
        self.use_testnet = config.use_testnet if use_testnet is None else use_testnet

        self.client = client or BinanceAPIClient(
            base_url=config.binance_testnet_url if self.use_testnet else config.binance_base_url,
            api_key=api_key,
            api_secret=api_secret,
            timeout=config.request_timeout,
            max_retries=config.max_retries,
            recv_window_ms=config.recv_window_ms
        )

        if self.client.has_credentials:
            self.capabilities["trading"] = True
            self.capabilities["account"] = True

        use_stream = (config.binance_use_stream if use_stream is None else use_stream) or stream is not None
        self._buffer: Optional[RingBuffer] = None
        self._stream: Optional[BinanceBookTickerStream] = None
        if use_stream:
            if stream is not None:
                self._stream = stream
                self._buffer = stream.buffer
                if stream.on_error is None:
                    stream.on_error = self._report_error
            else:
                self._buffer = RingBuffer(config.ring_buffer_capacity)
                self._stream = BinanceBookTickerStream(
                    self._buffer,
                    url=config.binance_testnet_ws_url if self.use_testnet else config.binance_ws_url,
                    retry_delay=config.connect_retry_delay,
                    on_error=self._report_error
                )
            self.capabilities["streaming"] = True

        self._connected = False

        logger.debug(
            f"BinanceConnector created (base_url={self.client.base_url}, "
            f"trading={self.capabilities['trading']}, streaming={self.capabilities['streaming']})"
        )

    # ============================================
    # Connection Management
    # ============================================

    def connect(self) -> bool:
        if self._connected:
            return True

        try:
            self.client.open()
            self.client.ping()
        except GatewayError as e:
            self._report_error("connect", str(e))
            return False

        self._latency_ms = self.client.last_latency_ms
        self._connected = True
        if self._stream is not None:
            self._stream.set_symbols(self.ticker_symbols())
            self._stream.start()

        logger.info(f"Connected to Binance{' testnet' if self.use_testnet else ''} "
                    f"({self._latency_ms:.1f}ms)")
        return True

    def disconnect(self) -> bool:
        if self._stream is not None:
            self._stream.stop()
        self.client.close()
        if self._connected:
            logger.info("Disconnected from Binance")
        self._connected = False
        return True

    def is_connected(self) -> bool:
        return self._connected

    def get_status(self) -> str:
        if not self._connected:
            return "Disconnected"
        if self._stream is not None:
            state = "streaming" if self._stream.connected else "stream reconnecting"
            return f"Connected - Live Data Active ({state})"
        return "Connected - Live Data Active"

    def health_check(self) -> bool:
        try:
            return self.client.ping()
        except GatewayError as e:
            logger.warning(f"Binance health check failed: {e}")
            return False

    def get_latency_ms(self) -> float:
        return self.client.last_latency_ms or self._latency_ms

    def _on_subscriptions_changed(self) -> None:
        if self._stream is not None and self._connected:
            self._stream.set_symbols(self.ticker_symbols())

    # ============================================
    # Market Data
    # ============================================

    def fetch_ticker(self, symbol: str) -> TickSnapshot:
        return self.client.get_ticker(symbol)

    def fetch_order_book(self, symbol: str, depth: int = 20) -> OrderBookSnapshot:
        return self.client.get_order_book(symbol, limit=depth)

    def get_recent_trades(self, symbol: str, limit: int = 500) -> List[Dict[str, Any]]:
        """Recent public trades; [] on failure."""
        self.require("trades")
        try:
            self._acquire(f"get_recent_trades {symbol}")
            return self.client.get_recent_trades(symbol, limit)
        except GatewayError as e:
            self._report_error(f"get_recent_trades {symbol}", str(e))
            return []

    def get_supported_symbols(self) -> List[str]:
        try:
            self._acquire("get_supported_symbols")
            return self.client.get_trading_symbols()
        except GatewayError as e:
            self._report_error("get_supported_symbols", str(e))
            return self.ticker_symbols()

    def get_min_order_sizes(self) -> Dict[str, float]:
        try:
            self._acquire("get_min_order_sizes")
            return self.client.get_min_order_sizes()
        except GatewayError as e:
            self._report_error("get_min_order_sizes", str(e))
            return {}

    # ============================================
    # Streaming
    # ============================================

    @property
    def stream_buffer(self) -> Optional[RingBuffer]:
        return self._buffer

    @property
    def dropped_frames(self) -> int:
        return self._stream.dropped if self._stream is not None else 0

    def pause_stream(self) -> None:
        """
        Stop the bookTicker producer and drop frames still in the buffer.

        Only call this while no ingestion thread is draining the buffer.
        """
        if self._stream is None:
            return
        self._stream.stop()
        discarded = len(self._buffer.drain())
        if discarded:
            logger.info(f"Discarded {discarded} undelivered bookTicker frame(s)")

    def resume_stream(self) -> None:
        if self._stream is not None and self._connected:
            self._stream.set_symbols(self.ticker_symbols())
            self._stream.start()

    def decode_stream_message(self, raw: Any) -> List[StreamUpdate]:
        """
        Decode one combined-stream bookTicker frame.

        ``raw`` is either a bare frame or the stream's (received_at, frame)
        pair; snapshots are stamped with the receive time when it is known.

        The cached tick's 24h fields are kept and only bid/ask are replaced.
        When no depth poll is configured for the symbol, the frame's
        top-of-book quantities also become a one-level order book.

        Raises:
            MalformedResponseError: Frame is not a bookTicker payload
        """
        received_at = None
        try:
            if isinstance(raw, tuple):
                received_at, raw = raw
            message = json.loads(raw) if isinstance(raw, (str, bytes)) else raw
            data = message.get("data", message)
            symbol = data["s"].upper()
            bid, bid_qty = float(data["b"]), float(data["B"])
            ask, ask_qty = float(data["a"]), float(data["A"])
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise MalformedResponseError(f"Unexpected bookTicker frame: {e}", context="stream") from e

        now = received_at or current_utc_datetime()
        previous = self._cache.get_tick(self.name, symbol)
        if previous.is_empty:
            tick = TickSnapshot(exchange=self.name, symbol=symbol, bid_price=bid, ask_price=ask, timestamp=now)
        else:
            tick = previous.with_top_of_book(bid, ask, now)

        updates: List[StreamUpdate] = [tick]
        if symbol not in self.order_book_subscriptions():
            updates.append(OrderBookSnapshot(
                exchange=self.name,
                symbol=symbol,
                bids=(OrderBookLevel(price=bid, quantity=bid_qty),),
                asks=(OrderBookLevel(price=ask, quantity=ask_qty),),
                last_update_id=data.get("u"),
                timestamp=now
            ))
        return updates

    # ============================================
    # Trading Operations
    # ============================================

    def _acquire(self, context: str) -> None:
        if not self.rate_limiter.try_acquire():
            raise RateLimitExceeded("Request budget for the current window is exhausted", context=context)

    def _place(
        self,
        symbol: str,
        side: Union[OrderSide, str],
        order_type: OrderType,
        quantity: float,
        price: Optional[float] = None
    ) -> str:
        self.require("trading")
        context = f"place_{order_type.value.lower()}_order {symbol}"
        try:
            side = OrderSide.coerce(side)
            if quantity <= 0:
                raise ExchangeRejection(f"Quantity must be positive, got {quantity}", context=context)
            if order_type is OrderType.LIMIT and (price is None or price <= 0):
                raise ExchangeRejection(f"Limit price must be positive, got {price}", context=context)
            self._acquire(context)
            order = self.client.place_order(symbol, side, order_type, quantity, price)
        except (GatewayError, ValueError) as e:
            self._report_error(context, str(e))
            return ""

        self._latency_ms = self.client.last_latency_ms
        price_str = f" @ {price}" if price else ""
        logger.info(f"{order_type.value} order placed: {side.value} {quantity} {symbol}{price_str} "
                    f"(ID: {order.order_id}, {order.status.value})")
        self._emit_order_update(order)
        return order.order_id

    def place_limit_order(self, symbol: str, side: Union[OrderSide, str], quantity: float, price: float) -> str:
        return self._place(symbol, side, OrderType.LIMIT, quantity, price)

    def place_market_order(self, symbol: str, side: Union[OrderSide, str], quantity: float) -> str:
        return self._place(symbol, side, OrderType.MARKET, quantity)

    def cancel_order(self, symbol: str, order_id: str) -> bool:
        self.require("trading")
        context = f"cancel_order {symbol} {order_id}"
        try:
            self._acquire(context)
            order = self.client.cancel_order(symbol, order_id)
        except ExchangeRejection as e:
            if e.code == UNKNOWN_ORDER_CODE:
                logger.info(f"Order {order_id} already closed or unknown; treating cancel as done")
                return True
            self._report_error(context, str(e))
            return False
        except GatewayError as e:
            self._report_error(context, str(e))
            return False

        self._emit_order_update(order)
        return True

    def cancel_all_orders(self, symbol: Optional[str] = None) -> bool:
        """
        Cancel every open order.

        Binance cancels per symbol, so without ``symbol`` the symbols of the
        currently open orders are cancelled one by one. Every cancelled order
        is reported with status CANCELED.
        """
        self.require("trading")
        if symbol:
            symbols = [symbol.upper()]
        else:
            try:
                self._acquire("cancel_all_orders")
                symbols = sorted({o.symbol for o in self.client.get_open_orders()})
            except GatewayError as e:
                self._report_error("cancel_all_orders", str(e))
                return False

        ok = True
        for sym in symbols:
            context = f"cancel_all_orders {sym}"
            try:
                self._acquire(context)
                cancelled = self.client.cancel_open_orders(sym)
            except ExchangeRejection as e:
                if e.code == UNKNOWN_ORDER_CODE:
                    continue
                self._report_error(context, str(e))
                ok = False
                continue
            except GatewayError as e:
                self._report_error(context, str(e))
                ok = False
                continue

            logger.info(f"Cancelled {len(cancelled)} order(s) for {sym}")
            for order in cancelled:
                if order.status is not OrderStatus.CANCELED:
                    order = order.with_status(OrderStatus.CANCELED)
                self._emit_order_update(order)
        return ok

    def fetch_open_orders(self) -> List[OrderRecord]:
        self.require("account")
        self._acquire("fetch_open_orders")
        return self.client.get_open_orders()

    def get_open_orders(self, symbol: Optional[str] = None) -> List[OrderRecord]:
        self.require("account")
        context = f"get_open_orders {symbol or 'all'}"
        try:
            self._acquire(context)
            return self.client.get_open_orders(symbol)
        except GatewayError as e:
            self._report_error(context, str(e))
            return []

    def get_order_status(self, symbol: str, order_id: str) -> Optional[OrderRecord]:
        self.require("account")
        context = f"get_order_status {symbol} {order_id}"
        try:
            self._acquire(context)
            return self.client.get_order(symbol, order_id)
        except GatewayError as e:
            self._report_error(context, str(e))
            return None

    def get_trading_fees(self) -> Dict[str, float]:
        """Account commission rates; Binance's standard 0.1% when unavailable."""
        if not self.supports("account"):
            return dict(DEFAULT_FEES)
        try:
            self._acquire("get_trading_fees")
            return self.client.get_trading_fees()
        except GatewayError as e:
            self._report_error("get_trading_fees", str(e))
            return dict(DEFAULT_FEES)

    # ============================================
    # Account Information
    # ============================================

    def fetch_account_balances(self) -> List[Balance]:
        self.require("account")
        self._acquire("fetch_account_balances")
        return self.client.get_balances()

    def get_account_balances(self) -> List[Balance]:
        self.require("account")
        try:
            self._acquire("get_account_balances")
            return self.client.get_balances()
        except GatewayError as e:
            self._report_error("get_account_balances", str(e))
            return []


__all__ = ["BinanceConnector", "BinanceAPIClient", "BinanceBookTickerStream"]
