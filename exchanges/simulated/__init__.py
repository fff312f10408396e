"""
Simulated Exchange Connector

An in-memory venue implementing the full ExchangeConnector contract. It is
used for demos, for running the gateway without credentials, and for tests
of the manager and arbitrage detection.

Streaming Model:
    ``publish_quote()`` is the single producer into the connector's
    RingBuffer; the manager's ingestion thread is the single consumer. When
    the buffer is full the quote is dropped and counted.

Order Handling:
    - MARKET orders fill immediately at the touch (ask for BUY, bid for SELL)
    - LIMIT orders that cross the touch fill immediately at the touch
    - Other LIMIT orders rest as NEW with their funds locked until
      ``fill_order()`` or a cancel
    - Fees are charged in the quote asset

Example:
    >>> sim = SimulatedConnector("sim_a", balances={"USDT": 10_000})
    >>> sim.connect()
    True
    >>> sim.publish_quote("BTCUSDT", bid=99.90, ask=100.00)
    True
    >>> sim.place_market_order("BTCUSDT", "BUY", 1.0)
    'sim_a-1'
"""

import threading
from typing import Any, Dict, List, Optional, Tuple, Union

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

logger = get_logger(__name__)

QUOTE_ASSETS = ("USDT", "USDC", "BUSD", "FDUSD", "BTC", "ETH", "BNB")


def split_symbol(symbol: str) -> Tuple[str, str]:
    """
    Split a pair into (base, quote) using the known quote assets.

    Example:
        >>> split_symbol("ETHBTC")
        ('ETH', 'BTC')
    """
    symbol = symbol.upper()
    for quote in QUOTE_ASSETS:
        if symbol.endswith(quote) and len(symbol) > len(quote):
            return symbol[: -len(quote)], quote
    raise ExchangeRejection(f"Cannot determine quote asset of {symbol}", context=symbol)


class SimulatedConnector(ExchangeConnector):
    """
    In-memory streaming exchange.

    Args:
        name: Exchange identifier used as the cache key
        latency_ms: Value reported by get_latency_ms()
        maker_fee / taker_fee: Fee rates as fractions
        balances: Initial free balances per asset
        min_order_sizes: Minimum quantity per symbol
        ring_capacity: Stream buffer slots
        rate_limiter: Request budget (defaults to the configured limits)
        config: Settings to read defaults from
    """

    name = "simulated"

    capabilities = {
        "market_data": True,
        "order_book": True,
        "trades": True,
        "trading": True,
        "account": True,
        "streaming": True,
        "polling": False
    }

    def __init__(
        self,
        name: str = "simulated",
        latency_ms: float = 5.0,
        maker_fee: float = 0.001,
        taker_fee: float = 0.001,
        balances: Optional[Dict[str, float]] = None,
        min_order_sizes: Optional[Dict[str, float]] = None,
        ring_capacity: Optional[int] = None,
        rate_limiter: Optional[RateLimiter] = None,
        config: Optional[Settings] = None
    ):
        config = config or default_settings
        super().__init__(rate_limiter or RateLimiter(config.rate_limit_requests, config.rate_limit_window_seconds))
        self.name = name.lower()
        self._latency_ms = latency_ms
        self.maker_fee = maker_fee
        self.taker_fee = taker_fee
        self.min_order_sizes = {k.upper(): v for k, v in (min_order_sizes or {}).items()}

        self._buffer: RingBuffer = RingBuffer(ring_capacity or config.ring_buffer_capacity)
        self.dropped_quotes = 0
        self.available = True

        self._connected = False
        self._state_lock = threading.Lock()
        self._quotes: Dict[str, TickSnapshot] = {}
        self._depth: Dict[str, Tuple[float, float]] = {}
        self._orders: Dict[str, OrderRecord] = {}
        self._balances: Dict[str, Balance] = {
            asset.upper(): Balance(asset=asset, free=amount) for asset, amount in (balances or {}).items()
        }
        self._order_seq = 0

    # ============================================
    # Connection Management
    # ============================================

    def connect(self) -> bool:
        if self._connected:
            return True
        if not self.available:
            self._report_error("connect", f"{self.name} is unavailable")
            return False
        self._connected = True
        logger.info(f"Connected to {self.name} (simulated)")
        return True

    def disconnect(self) -> bool:
        self._connected = False
        return True

    def is_connected(self) -> bool:
        return self._connected

    def get_status(self) -> str:
        return "Connected - Simulated" if self._connected else "Disconnected"

    # ============================================
    # Quote Publishing (single producer)
    # ============================================

    def publish_quote(
        self,
        symbol: str,
        bid: float,
        ask: float,
        bid_qty: float = 1.0,
        ask_qty: float = 1.0,
        last: Optional[float] = None,
        volume: float = 0.0
    ) -> bool:
        """
        Push one top-of-book quote into the stream buffer.

        Must only be called from one thread at a time.

        Returns:
            bool: False if the buffer was full and the quote was dropped
        """
        symbol = symbol.upper()
        with self._state_lock:
            self._quotes[symbol] = TickSnapshot(
                exchange=self.name,
                symbol=symbol,
                last_price=last if last is not None else (bid + ask) / 2,
                bid_price=bid,
                ask_price=ask,
                volume_24h=volume,
                timestamp=current_utc_datetime()
            )
            self._depth[symbol] = (bid_qty, ask_qty)

        payload = {
            "s": symbol, "b": bid, "B": bid_qty, "a": ask, "A": ask_qty,
            "l": last, "v": volume, "t": current_utc_datetime(),
        }
        if not self._buffer.push(payload):
            self.dropped_quotes += 1
            return False
        return True

    @property
    def stream_buffer(self) -> Optional[RingBuffer]:
        return self._buffer

    def decode_stream_message(self, raw: Any) -> List[StreamUpdate]:
        try:
            symbol = raw["s"]
            bid, ask = float(raw["b"]), float(raw["a"])
            bid_qty, ask_qty = float(raw["B"]), float(raw["A"])
            timestamp = raw["t"]
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedResponseError(f"Unexpected quote payload: {e}", context="stream") from e

        last = raw.get("l")
        tick = TickSnapshot(
            exchange=self.name,
            symbol=symbol,
            last_price=float(last) if last is not None else (bid + ask) / 2,
            bid_price=bid,
            ask_price=ask,
            volume_24h=float(raw.get("v") or 0.0),
            timestamp=timestamp
        )
        book = OrderBookSnapshot(
            exchange=self.name,
            symbol=symbol,
            bids=(OrderBookLevel(price=bid, quantity=bid_qty),),
            asks=(OrderBookLevel(price=ask, quantity=ask_qty),),
            timestamp=timestamp
        )
        return [tick, book]

    # ============================================
    # Market Data
    # ============================================

    def _quote(self, symbol: str) -> TickSnapshot:
        with self._state_lock:
            quote = self._quotes.get(symbol.upper())
        if quote is None:
            raise ExchangeRejection(f"No market for {symbol.upper()}", context=symbol.upper())
        return quote

    def fetch_ticker(self, symbol: str) -> TickSnapshot:
        return self._quote(symbol)

    def fetch_order_book(self, symbol: str, depth: int = 20) -> OrderBookSnapshot:
        quote = self._quote(symbol)
        with self._state_lock:
            bid_qty, ask_qty = self._depth.get(quote.symbol, (0.0, 0.0))
        return OrderBookSnapshot(
            exchange=self.name,
            symbol=quote.symbol,
            bids=(OrderBookLevel(price=quote.bid_price, quantity=bid_qty),),
            asks=(OrderBookLevel(price=quote.ask_price, quantity=ask_qty),),
            timestamp=quote.timestamp
        )

    def get_supported_symbols(self) -> List[str]:
        with self._state_lock:
            return sorted(self._quotes)

    def get_trading_fees(self) -> Dict[str, float]:
        return {"maker": self.maker_fee, "taker": self.taker_fee}

    def get_min_order_sizes(self) -> Dict[str, float]:
        return dict(self.min_order_sizes)

    # ============================================
    # Balances
    # ============================================

    def set_balance(self, asset: str, free: float, locked: float = 0.0) -> None:
        asset = asset.upper()
        with self._state_lock:
            self._balances[asset] = Balance(asset=asset, free=free, locked=locked)

    def _adjust(self, asset: str, free: float = 0.0, locked: float = 0.0) -> None:
        # caller holds _state_lock
        current = self._balances.get(asset, Balance(asset=asset))
        self._balances[asset] = current.with_amounts(
            free=max(current.free + free, 0.0),
            locked=max(current.locked + locked, 0.0)
        )

    def _available(self, asset: str) -> float:
        # caller holds _state_lock
        return self._balances.get(asset, Balance(asset=asset)).free

    def get_account_balances(self) -> List[Balance]:
        self.require("account")
        with self._state_lock:
            return [b for b in self._balances.values() if b.total > 0]

    # ============================================
    # Trading Operations
    # ============================================

    def _next_order_id(self) -> str:
        # caller holds _state_lock
        self._order_seq += 1
        return f"{self.name}-{self._order_seq}"

    def _submit(
        self,
        symbol: str,
        side: OrderSide,
        order_type: OrderType,
        quantity: float,
        price: Optional[float]
    ) -> OrderRecord:
        symbol = symbol.upper()
        if quantity <= 0:
            raise ExchangeRejection(f"Quantity must be positive, got {quantity}", context=symbol)
        if order_type is OrderType.LIMIT and (price is None or price <= 0):
            raise ExchangeRejection(f"Limit price must be positive, got {price}", context=symbol)
        minimum = self.min_order_sizes.get(symbol, 0.0)
        if quantity < minimum:
            raise ExchangeRejection(f"Quantity {quantity} below minimum {minimum}", context=symbol)

        quote = self._quote(symbol)
        base_asset, quote_asset = split_symbol(symbol)
        touch = quote.ask_price if side is OrderSide.BUY else quote.bid_price
        if touch <= 0:
            raise ExchangeRejection(f"No liquidity on the {side.value} side of {symbol}", context=symbol)

        marketable = order_type is OrderType.MARKET or (
            price >= touch if side is OrderSide.BUY else price <= touch
        )
        now = current_utc_datetime()

        with self._state_lock:
            order = OrderRecord(
                order_id=self._next_order_id(),
                exchange=self.name,
                symbol=symbol,
                side=side,
                type=order_type,
                status=OrderStatus.NEW,
                quantity=quantity,
                price=price if order_type is OrderType.LIMIT else touch,
                created_at=now,
                updated_at=now
            )

            if marketable:
                notional = quantity * touch
                fee = notional * self.taker_fee
                if side is OrderSide.BUY:
                    if self._available(quote_asset) < notional + fee:
                        raise ExchangeRejection(f"Insufficient {quote_asset} balance", context=symbol)
                    self._adjust(quote_asset, free=-(notional + fee))
                    self._adjust(base_asset, free=quantity)
                else:
                    if self._available(base_asset) < quantity:
                        raise ExchangeRejection(f"Insufficient {base_asset} balance", context=symbol)
                    self._adjust(base_asset, free=-quantity)
                    self._adjust(quote_asset, free=notional - fee)
                order = order.apply_fill(quantity, at=now)
                order = OrderRecord(**{
                    **order.model_dump(), "price": touch, "commission": fee, "commission_asset": quote_asset
                })
            else:
                if side is OrderSide.BUY:
                    reserve = quantity * price
                    if self._available(quote_asset) < reserve:
                        raise ExchangeRejection(f"Insufficient {quote_asset} balance", context=symbol)
                    self._adjust(quote_asset, free=-reserve, locked=reserve)
                else:
                    if self._available(base_asset) < quantity:
                        raise ExchangeRejection(f"Insufficient {base_asset} balance", context=symbol)
                    self._adjust(base_asset, free=-quantity, locked=quantity)

            self._orders[order.order_id] = order
        return order

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
            if not self.rate_limiter.try_acquire():
                raise RateLimitExceeded("Request budget for the current window is exhausted", context=context)
            order = self._submit(symbol, side, order_type, quantity, price)
        except (GatewayError, ValueError) as e:
            self._report_error(context, str(e))
            return ""

        logger.debug(f"{self.name}: {order_type.value} {side.value} {quantity} {symbol} -> {order.status.value}")
        self._emit_order_update(order)
        return order.order_id

    def place_limit_order(self, symbol: str, side: Union[OrderSide, str], quantity: float, price: float) -> str:
        return self._place(symbol, side, OrderType.LIMIT, quantity, price)

    def place_market_order(self, symbol: str, side: Union[OrderSide, str], quantity: float) -> str:
        return self._place(symbol, side, OrderType.MARKET, quantity)

    def fill_order(self, order_id: str, quantity: float) -> Optional[OrderRecord]:
        """
        Fill part (or the rest) of a resting limit order at its limit price.

        Returns:
            The updated record, or None if the fill was rejected (reported
            through the error callback)
        """
        context = f"fill_order {order_id}"
        error = None
        with self._state_lock:
            order = self._orders.get(order_id)
            if order is None:
                error = "Unknown order"
            else:
                try:
                    updated = order.apply_fill(quantity, at=current_utc_datetime())
                except ValueError as e:
                    error = str(e)

            if error is None:
                base_asset, quote_asset = split_symbol(order.symbol)
                notional = quantity * order.price
                fee = notional * self.maker_fee
                if order.side is OrderSide.BUY:
                    self._adjust(quote_asset, locked=-notional, free=-fee)
                    self._adjust(base_asset, free=quantity)
                else:
                    self._adjust(base_asset, locked=-quantity)
                    self._adjust(quote_asset, free=notional - fee)

                updated = OrderRecord(**{
                    **updated.model_dump(),
                    "commission": order.commission + fee,
                    "commission_asset": quote_asset,
                })
                self._orders[order_id] = updated

        if error is not None:
            self._report_error(context, error)
            return None

        self._emit_order_update(updated)
        return updated

    def _release(self, order: OrderRecord) -> None:
        # caller holds _state_lock
        base_asset, quote_asset = split_symbol(order.symbol)
        if order.side is OrderSide.BUY:
            reserve = order.remaining_quantity * order.price
            self._adjust(quote_asset, free=reserve, locked=-reserve)
        else:
            self._adjust(base_asset, free=order.remaining_quantity, locked=-order.remaining_quantity)

    def cancel_order(self, symbol: str, order_id: str) -> bool:
        self.require("trading")
        with self._state_lock:
            order = self._orders.get(order_id)
            if order is None or order.status.is_terminal:
                return True
            self._release(order)
            cancelled = order.with_status(OrderStatus.CANCELED, at=current_utc_datetime())
            self._orders[order_id] = cancelled
        self._emit_order_update(cancelled)
        return True

    def cancel_all_orders(self, symbol: Optional[str] = None) -> bool:
        self.require("trading")
        for order in self.get_open_orders(symbol):
            self.cancel_order(order.symbol, order.order_id)
        return True

    def get_open_orders(self, symbol: Optional[str] = None) -> List[OrderRecord]:
        self.require("account")
        with self._state_lock:
            orders = [o for o in self._orders.values() if o.is_open]
        if symbol:
            orders = [o for o in orders if o.symbol == symbol.upper()]
        return orders

    def get_order_status(self, symbol: str, order_id: str) -> Optional[OrderRecord]:
        self.require("account")
        with self._state_lock:
            order = self._orders.get(order_id)
        if order is None:
            self._report_error(f"get_order_status {symbol} {order_id}", "Unknown order")
        return order


__all__ = ["SimulatedConnector", "split_symbol"]
