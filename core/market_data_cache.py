"""
Market Data Cache

Thread-safe store of the latest snapshot per (exchange, symbol), written by
ingestion threads and read by callers, the arbitrage scanner and the HTTP API.

Guarantees:
    - One lock per instance guards every read and write, so a reader never
      sees a half-replaced entry.
    - Stored snapshots are frozen models; replacing an entry swaps the whole
      object. Collection-returning queries build new dicts/lists, so callers
      can keep or modify what they get back.
    - A key that was never written reads as ``TickSnapshot.empty(...)``.

Besides ticks and order books the cache keeps the last known balances and
open orders per exchange, refreshed by the ingestion loop and by order
updates.
"""

import threading
from typing import Dict, Iterable, List, Optional, Tuple

from core.schemas import Balance, OrderBookSnapshot, OrderRecord, TickSnapshot

MarketKey = Tuple[str, str]


class MarketDataCache:
    """
    Latest ticks, order books, balances and open orders.

    Example:
        >>> cache = MarketDataCache()
        >>> cache.update_tick(TickSnapshot(exchange="binance", symbol="BTCUSDT", last_price=50000))
        >>> cache.get_tick("binance", "BTCUSDT").last_price
        50000.0
        >>> cache.get_tick("binance", "ETHUSDT").is_empty
        True
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._ticks: Dict[MarketKey, TickSnapshot] = {}
        self._books: Dict[MarketKey, OrderBookSnapshot] = {}
        self._balances: Dict[str, Dict[str, Balance]] = {}
        self._open_orders: Dict[str, Dict[str, OrderRecord]] = {}
        self._tick_updates = 0
        self._book_updates = 0

    @staticmethod
    def _key(exchange: str, symbol: str) -> MarketKey:
        return exchange.lower(), symbol.upper()

    # ============================================
    # Ticks
    # ============================================

    def update_tick(self, tick: TickSnapshot) -> None:
        """Replace the snapshot for (tick.exchange, tick.symbol)."""
        with self._lock:
            self._ticks[(tick.exchange, tick.symbol)] = tick
            self._tick_updates += 1

    def get_tick(self, exchange: str, symbol: str) -> TickSnapshot:
        key = self._key(exchange, symbol)
        with self._lock:
            tick = self._ticks.get(key)
        return tick if tick is not None else TickSnapshot.empty(*key)

    def has_tick(self, exchange: str, symbol: str) -> bool:
        with self._lock:
            return self._key(exchange, symbol) in self._ticks

    def get_all_ticks(self, symbol: str) -> Dict[str, TickSnapshot]:
        """Latest tick for ``symbol`` on every exchange that has one."""
        symbol = symbol.upper()
        with self._lock:
            return {ex: tick for (ex, sym), tick in self._ticks.items() if sym == symbol}

    # ============================================
    # Order Books
    # ============================================

    def update_order_book(self, book: OrderBookSnapshot) -> None:
        with self._lock:
            self._books[(book.exchange, book.symbol)] = book
            self._book_updates += 1

    def get_order_book(self, exchange: str, symbol: str) -> Optional[OrderBookSnapshot]:
        with self._lock:
            return self._books.get(self._key(exchange, symbol))

    # ============================================
    # Cross-Exchange Views
    # ============================================

    def symbols(self) -> List[str]:
        """Every symbol with at least one tick, sorted."""
        with self._lock:
            return sorted({sym for _, sym in self._ticks})

    def exchanges_for(self, symbol: str) -> List[str]:
        symbol = symbol.upper()
        with self._lock:
            return sorted(ex for ex, sym in self._ticks if sym == symbol)

    def snapshot(self) -> Tuple[Dict[MarketKey, TickSnapshot], Dict[MarketKey, OrderBookSnapshot]]:
        """
        Consistent copy of every tick and book, taken under a single lock hold.

        Used by the arbitrage detector so one pass compares snapshots from the
        same instant.
        """
        with self._lock:
            return dict(self._ticks), dict(self._books)

    # ============================================
    # Account State
    # ============================================

    def set_balances(self, exchange: str, balances: Iterable[Balance]) -> None:
        """Replace every balance recorded for ``exchange``."""
        with self._lock:
            self._balances[exchange.lower()] = {b.asset: b for b in balances}

    def get_balances(self, exchange: str) -> List[Balance]:
        with self._lock:
            return list(self._balances.get(exchange.lower(), {}).values())

    def set_open_orders(self, exchange: str, orders: Iterable[OrderRecord]) -> None:
        """Replace the open-order set for ``exchange`` (terminal orders are ignored)."""
        with self._lock:
            self._open_orders[exchange.lower()] = {o.order_id: o for o in orders if o.is_open}

    def upsert_order(self, exchange: str, order: OrderRecord) -> None:
        """Record an order update; terminal orders leave the open set."""
        with self._lock:
            orders = self._open_orders.setdefault(exchange.lower(), {})
            if order.is_open:
                orders[order.order_id] = order
            else:
                orders.pop(order.order_id, None)

    def get_open_orders(self, exchange: str, symbol: Optional[str] = None) -> List[OrderRecord]:
        with self._lock:
            orders = list(self._open_orders.get(exchange.lower(), {}).values())
        if symbol:
            symbol = symbol.upper()
            orders = [o for o in orders if o.symbol == symbol]
        return orders

    # ============================================
    # Maintenance
    # ============================================

    def clear(self, exchange: Optional[str] = None) -> None:
        """Drop everything, or only the entries of one exchange."""
        with self._lock:
            if exchange is None:
                self._ticks.clear()
                self._books.clear()
                self._balances.clear()
                self._open_orders.clear()
                return

            exchange = exchange.lower()
            self._ticks = {k: v for k, v in self._ticks.items() if k[0] != exchange}
            self._books = {k: v for k, v in self._books.items() if k[0] != exchange}
            self._balances.pop(exchange, None)
            self._open_orders.pop(exchange, None)

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "ticks": len(self._ticks),
                "order_books": len(self._books),
                "tick_updates": self._tick_updates,
                "order_book_updates": self._book_updates,
            }

    def __len__(self) -> int:
        with self._lock:
            return len(self._ticks)
