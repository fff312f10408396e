"""
Live Market Data Manager - Registry and Ingestion Coordinator

This module owns the exchange connectors, runs one ingestion thread per
connector, keeps the shared MarketDataCache fresh, and answers snapshot
queries for callers and the HTTP API.

Architecture Pattern:
    - The manager maintains a registry of connector instances by name
    - Callers request connectors by name (unknown names raise ValueError)
    - Every registered connector is bound to the manager's cache and routes
      its order/ticker/error events to the manager's callbacks

Ingestion Loop (one thread per connector):
    1. Exit when the manager's stop event is set
    2. If disconnected, try to connect (no more often than connect_retry_delay)
    3. Drain the stream buffer (streaming connectors)
    4. Poll each subscribed ticker; when the rate limiter says no, record the
       symbol as deferred and move on without blocking
    5. Poll each subscribed order book the same way
    6. Periodically refresh balances and open orders (connectors with "account");
       a failed refresh keeps the previous account state
    7. Wait one poll interval on the stop event

    A failed request is reported through the error callback and the loop
    keeps running.

Example Usage:
    manager = LiveMarketDataManager([BinanceConnector(), SimulatedConnector("sim_a")])
    manager.subscribe(["BTCUSDT", "ETHUSDT"])
    manager.set_arbitrage_callback(lambda opps: print(opps[0]))
    manager.start()
    ...
    tick = manager.get_latest_tick("binance", "BTCUSDT")
    manager.stop()
"""

import threading
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple, Union

from core.config import Settings, settings as default_settings
from core.exceptions import GatewayError
from core.exchange_interface import ErrorCallback, ExchangeConnector, OrderUpdateCallback, TickerUpdateCallback
from core.logging import get_logger
from core.market_data_cache import MarketDataCache
from core.schemas import (
    ArbitrageOpportunity,
    Balance,
    OrderBookLevel,
    OrderBookSnapshot,
    OrderRecord,
    OrderSide,
    TickSnapshot,
)
from services.arbitrage_detector import ArbitrageDetector, TopOfBook, top_of_book

logger = get_logger(__name__)

ArbitrageCallback = Callable[[List[ArbitrageOpportunity]], None]

BOOK_SUFFIX = "@depth"
AGGREGATE_EXCHANGE = "aggregate"


class LiveMarketDataManager:
    """
    Central Manager for Exchange Connectors and Live Ingestion

    Attributes:
        cache: Shared MarketDataCache every connector writes into
        detector: ArbitrageDetector used for opportunity scans
        config: Settings (poll interval, retry delay, scan interval, ...)

    Example:
        >>> manager = LiveMarketDataManager([SimulatedConnector("sim_a"), SimulatedConnector("sim_b")])
        >>> manager.subscribe(["BTCUSDT"])
        >>> manager.start()
        >>> manager.list_exchanges()
        ['sim_a', 'sim_b']
        >>> manager.stop()
    """

    def __init__(
        self,
        connectors: Optional[Iterable[ExchangeConnector]] = None,
        settings: Optional[Settings] = None,
        detector: Optional[ArbitrageDetector] = None,
        cache: Optional[MarketDataCache] = None
    ):
        """
        Initialize the manager and register the given connectors.

        Note:
            Connectors are not connected here. start() connects them from
            their ingestion threads; connect_all() does it synchronously.
        """
        self.config = settings or default_settings
        self.cache = cache or MarketDataCache()
        self.detector = detector or ArbitrageDetector(config=self.config)

        self._exchanges: Dict[str, ExchangeConnector] = {}
        self._lock = threading.Lock()
        self._lifecycle_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._threads: Dict[str, threading.Thread] = {}
        self._scanner: Optional[threading.Thread] = None
        self._running = False

        self._deferred: Dict[str, Set[str]] = {}
        self._stats: Dict[str, Dict[str, int]] = {}
        self._last_error: Dict[str, Dict[str, Any]] = {}
        self._last_connect_attempt: Dict[str, float] = {}
        self._last_account_refresh: Dict[str, float] = {}
        self._latest_opportunities: List[ArbitrageOpportunity] = []

        self._ticker_callback: Optional[TickerUpdateCallback] = None
        self._order_callback: Optional[OrderUpdateCallback] = None
        self._error_callback: Optional[ErrorCallback] = None
        self._arbitrage_callback: Optional[ArbitrageCallback] = None

        for connector in connectors or []:
            self.add_exchange(connector)

        logger.info(f"LiveMarketDataManager initialized with {len(self._exchanges)} exchange(s): "
                    f"{', '.join(self._exchanges) or 'none'}")

    # ============================================
    # Registry
    # ============================================

    def add_exchange(self, connector: ExchangeConnector) -> None:
        """
        Register a connector and bind it to the shared cache.

        If the manager is running, the connector's ingestion thread starts
        immediately.

        Raises:
            ValueError: If a connector with the same name is already registered
        """
        name = connector.name.lower()
        with self._lock:
            if name in self._exchanges:
                raise ValueError(f"Exchange '{name}' is already registered")

            connector.bind_cache(self.cache)
            connector.set_ticker_update_callback(self._dispatch_tick)
            connector.set_order_update_callback(self._dispatch_order)
            connector.set_error_callback(lambda context, message, _name=name: self._dispatch_error(_name, context, message))

            self._exchanges[name] = connector
            self._deferred[name] = set()
            self._stats[name] = {"cycles": 0, "ticks": 0, "order_books": 0, "stream_updates": 0,
                                 "errors": 0, "deferred": 0}
            if self._running:
                self._start_worker(name, connector)

        logger.info(f"Registered exchange: {name}")

    def remove_exchange(self, name: str) -> None:
        """
        Unregister a connector, disconnect it and drop its cached data.

        Raises:
            RuntimeError: If the manager is running
            ValueError: If the exchange is not registered
        """
        if self.is_running():
            raise RuntimeError("Cannot remove an exchange while the manager is running")

        connector = self.get_exchange(name)
        name = connector.name.lower()
        with self._lock:
            self._exchanges.pop(name)
            self._deferred.pop(name, None)
            self._stats.pop(name, None)
            self._last_error.pop(name, None)

        connector.set_ticker_update_callback(None)
        connector.set_order_update_callback(None)
        connector.set_error_callback(None)
        connector.disconnect()
        self.cache.clear(name)
        logger.info(f"Removed exchange: {name}")

    def get_exchange(self, name: str) -> ExchangeConnector:
        """
        Get a connector by name.

        Raises:
            ValueError: If the exchange is not registered

        Example:
            >>> binance = manager.get_exchange("binance")
        """
        name = name.lower()
        with self._lock:
            connector = self._exchanges.get(name)
            available = ", ".join(self._exchanges)

        if connector is None:
            logger.error(f"Exchange '{name}' not found. Available: {available}")
            raise ValueError(f"Exchange '{name}' is not supported. Available exchanges: {available}")
        return connector

    def has_exchange(self, name: str) -> bool:
        with self._lock:
            return name.lower() in self._exchanges

    def list_exchanges(self) -> List[str]:
        with self._lock:
            return list(self._exchanges)

    def _connectors(self) -> List[ExchangeConnector]:
        with self._lock:
            return list(self._exchanges.values())

    # ============================================
    # Subscriptions
    # ============================================

    def subscribe(self, symbols: Optional[List[str]] = None, depth: Optional[int] = None) -> None:
        """
        Subscribe every connector to tickers (and order books where supported).

        Args:
            symbols: Symbols to track (defaults to SUPPORTED_SYMBOLS)
            depth: Order-book depth (defaults to ORDER_BOOK_DEPTH)
        """
        symbols = symbols or self.config.symbols_list
        depth = depth or self.config.order_book_depth
        for connector in self._connectors():
            if connector.supports("market_data"):
                connector.subscribe_to_tickers(symbols)
            if connector.supports("order_book") and connector.supports("polling"):
                for symbol in symbols:
                    connector.subscribe_to_order_book(symbol, depth)

    # ============================================
    # Callbacks
    # ============================================

    def set_ticker_update_callback(self, callback: Optional[TickerUpdateCallback]) -> None:
        self._ticker_callback = callback

    def set_order_update_callback(self, callback: Optional[OrderUpdateCallback]) -> None:
        self._order_callback = callback

    def set_error_callback(self, callback: Optional[ErrorCallback]) -> None:
        self._error_callback = callback

    def set_arbitrage_callback(self, callback: Optional[ArbitrageCallback]) -> None:
        """Register the opportunity listener; a running manager starts its scanner thread."""
        with self._lock:
            self._arbitrage_callback = callback
            if callback is not None and self._running and self._scanner is None:
                self._start_scanner()

    def _dispatch_tick(self, tick: TickSnapshot) -> None:
        callback = self._ticker_callback
        if callback is not None:
            try:
                callback(tick)
            except Exception:
                logger.exception("Ticker update callback raised")

    def _dispatch_order(self, order: OrderRecord) -> None:
        callback = self._order_callback
        if callback is not None:
            try:
                callback(order)
            except Exception:
                logger.exception("Order update callback raised")

    def _dispatch_error(self, exchange: str, context: str, message: str) -> None:
        with self._lock:
            if exchange in self._stats:
                self._stats[exchange]["errors"] += 1
            self._last_error[exchange] = {"context": context, "message": message, "at": time.time()}

        callback = self._error_callback
        if callback is not None:
            try:
                callback(f"{exchange}:{context}", message)
            except Exception:
                logger.exception("Error callback raised")

    # ============================================
    # Lifecycle Management
    # ============================================

    def connect_all(self) -> Dict[str, bool]:
        """Connect every connector synchronously. Returns name -> connected."""
        results = {}
        for connector in self._connectors():
            results[connector.name] = connector.connect()
            self._last_connect_attempt[connector.name] = time.monotonic()
        logger.info(f"Connected {sum(results.values())}/{len(results)} exchange(s)")
        return results

    def disconnect_all(self) -> None:
        for connector in self._connectors():
            try:
                connector.disconnect()
            except Exception:
                logger.exception(f"Error disconnecting {connector.name}")

    def start(self) -> None:
        """
        Start one ingestion thread per connector (plus the arbitrage scanner
        if an arbitrage callback is registered). No-op if already running.

        Streams paused by stop() are resumed for connectors that are still
        connected.
        """
        with self._lifecycle_lock:
            with self._lock:
                if self._running:
                    return
                connectors = list(self._exchanges.values())

            for connector in connectors:
                connector.resume_stream()

            with self._lock:
                self._stop_event.clear()
                self._running = True
                for name, connector in self._exchanges.items():
                    self._start_worker(name, connector)
                if self._arbitrage_callback is not None:
                    self._start_scanner()
                count = len(self._threads)

        logger.info(f"Ingestion started for {count} exchange(s) "
                    f"(poll interval {self.config.poll_interval_ms}ms)")

    def stop(self) -> None:
        """
        Signal every thread to exit and block until all of them have joined,
        then pause every connector's stream producer.

        Worst-case latency is one poll interval plus one in-flight request.
        """
        with self._lifecycle_lock:
            with self._lock:
                if not self._running:
                    return
                self._stop_event.set()
                threads = list(self._threads.values())
                if self._scanner is not None:
                    threads.append(self._scanner)
                self._threads.clear()
                self._scanner = None
                self._running = False
                connectors = list(self._exchanges.values())

            for thread in threads:
                thread.join()
            for connector in connectors:
                try:
                    connector.pause_stream()
                except Exception:
                    logger.exception(f"Error pausing {connector.name} stream")
        logger.info(f"Ingestion stopped ({len(threads)} thread(s) joined)")

    def is_running(self) -> bool:
        with self._lock:
            return self._running

    def thread_count(self) -> int:
        """Live manager threads (ingestion workers plus scanner)."""
        with self._lock:
            threads = list(self._threads.values()) + ([self._scanner] if self._scanner else [])
        return sum(1 for t in threads if t.is_alive())

    def close(self) -> None:
        """Stop ingestion and disconnect every connector."""
        self.stop()
        self.disconnect_all()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def _start_worker(self, name: str, connector: ExchangeConnector) -> None:
        # caller holds _lock
        thread = threading.Thread(target=self._ingest_loop, args=(connector,), name=f"ingest-{name}", daemon=True)
        self._threads[name] = thread
        thread.start()

    def _start_scanner(self) -> None:
        # caller holds _lock
        self._scanner = threading.Thread(target=self._scan_loop, name="arbitrage-scanner", daemon=True)
        self._scanner.start()

    # ============================================
    # Ingestion Loop
    # ============================================

    def _ingest_loop(self, connector: ExchangeConnector) -> None:
        logger.debug(f"Ingestion thread started for {connector.name}")
        while not self._stop_event.is_set():
            try:
                self._run_cycle(connector)
            except Exception:
                logger.exception(f"Unexpected error in {connector.name} ingestion cycle")
            self._stop_event.wait(self.config.poll_interval)
        logger.debug(f"Ingestion thread exiting for {connector.name}")

    def _run_cycle(self, connector: ExchangeConnector) -> None:
        name = connector.name
        self._bump(name, "cycles")

        if not connector.is_connected() and not self._try_connect(connector):
            return

        if connector.stream_buffer is not None:
            applied = connector.ingest_stream(self.config.stream_drain_batch)
            if applied:
                self._bump(name, "stream_updates", applied)

        if connector.supports("polling"):
            for symbol in connector.ticker_symbols():
                if self._stop_event.is_set():
                    return
                self._poll(connector, symbol, symbol, lambda s=symbol: connector.poll_ticker(s), "ticks")

            for symbol, depth in connector.order_book_subscriptions().items():
                if self._stop_event.is_set():
                    return
                self._poll(connector, symbol + BOOK_SUFFIX, symbol,
                           lambda s=symbol, d=depth: connector.poll_order_book(s, d), "order_books")

        if connector.supports("account") and not self._stop_event.is_set():
            self._maybe_refresh_account(connector)

    def _poll(self, connector: ExchangeConnector, deferred_key: str, symbol: str, fetch: Callable, counter: str) -> None:
        name = connector.name
        if not connector.rate_limiter.try_acquire():
            with self._lock:
                self._deferred[name].add(deferred_key)
                self._stats[name]["deferred"] += 1
            logger.debug(f"{name}: rate limit reached, deferring {deferred_key}")
            return

        try:
            fetch()
        except GatewayError as e:
            logger.warning(f"{name}: poll of {symbol} failed | {e}")
            self._dispatch_error(name, f"poll {deferred_key}", str(e))
            return

        with self._lock:
            self._deferred[name].discard(deferred_key)
        self._bump(name, counter)

    def _try_connect(self, connector: ExchangeConnector) -> bool:
        now = time.monotonic()
        last = self._last_connect_attempt.get(connector.name)
        if last is not None and now - last < self.config.connect_retry_delay:
            return False

        self._last_connect_attempt[connector.name] = now
        if connector.connect():
            logger.info(f"{connector.name} connected from ingestion thread")
            return True
        logger.warning(f"{connector.name} connect failed; retrying in {self.config.connect_retry_delay:g}s")
        return False

    def _maybe_refresh_account(self, connector: ExchangeConnector) -> None:
        now = time.monotonic()
        last = self._last_account_refresh.get(connector.name)
        if last is not None and now - last < self.config.account_refresh_interval:
            return
        self._last_account_refresh[connector.name] = now
        try:
            connector.refresh_account()
        except GatewayError as e:
            logger.warning(f"{connector.name}: account refresh failed, keeping previous state | {e}")
            self._dispatch_error(connector.name, "refresh_account", str(e))

    def _bump(self, name: str, counter: str, amount: int = 1) -> None:
        with self._lock:
            if name in self._stats:
                self._stats[name][counter] += amount

    # ============================================
    # Arbitrage Scanner
    # ============================================

    def _scan_loop(self) -> None:
        interval = self.config.arbitrage_scan_interval_ms / 1000.0
        while not self._stop_event.is_set():
            try:
                opportunities = self.get_arbitrage_opportunities()
                callback = self._arbitrage_callback
                if callback is not None and opportunities:
                    try:
                        callback(opportunities)
                    except Exception:
                        logger.exception("Arbitrage callback raised")
            except Exception:
                logger.exception("Arbitrage scan failed")
            self._stop_event.wait(interval)

    def get_arbitrage_opportunities(self, min_profit_bps: Optional[float] = None) -> List[ArbitrageOpportunity]:
        """
        Recompute opportunities across connected exchanges from the current cache.

        Args:
            min_profit_bps: Threshold override (defaults to the detector's)
        """
        connectors = self._connectors()
        connected = [c.name for c in connectors if c.is_connected()]
        latencies = {c.name: c.get_latency_ms() for c in connectors}
        opportunities = self.detector.scan(self.cache, latencies, min_profit_bps, exchanges=connected)
        with self._lock:
            self._latest_opportunities = opportunities
        return opportunities

    # ============================================
    # Snapshot Queries
    # ============================================

    def get_latest_tick(self, exchange: str, symbol: str) -> TickSnapshot:
        """Cached tick (empty snapshot if none yet). Raises ValueError for unknown exchanges."""
        connector = self.get_exchange(exchange)
        return self.cache.get_tick(connector.name, symbol)

    def get_all_ticks(self, symbol: str) -> Dict[str, TickSnapshot]:
        return self.cache.get_all_ticks(symbol)

    def get_order_book(self, exchange: str, symbol: str) -> Optional[OrderBookSnapshot]:
        connector = self.get_exchange(exchange)
        return self.cache.get_order_book(connector.name, symbol)

    def get_account_balances(self, exchange: str) -> List[Balance]:
        """Balances from the last account refresh."""
        connector = self.get_exchange(exchange)
        return self.cache.get_balances(connector.name)

    def get_open_orders(self, exchange: str, symbol: Optional[str] = None) -> List[OrderRecord]:
        """Open orders from the last account refresh plus order updates since."""
        connector = self.get_exchange(exchange)
        return self.cache.get_open_orders(connector.name, symbol)

    # ============================================
    # Cross-Exchange Aggregates
    # ============================================

    def _connected_quotes(self, symbol: str) -> Dict[str, TopOfBook]:
        """Best bid/ask per connected exchange, all taken from one cache snapshot."""
        symbol = symbol.upper()
        ticks, books = self.cache.snapshot()
        quotes = {}
        for connector in self._connectors():
            if not connector.is_connected():
                continue
            key = (connector.name, symbol)
            quote = top_of_book(ticks.get(key), books.get(key))
            if quote is not None:
                quotes[connector.name] = quote
        return quotes

    def get_best_price(self, symbol: str, side: Union[OrderSide, str]) -> Optional[Tuple[str, float]]:
        """
        Best price across connected exchanges for a trade on ``side``.

        BUY looks for the lowest ask, SELL for the highest bid. Ties go to the
        alphabetically first exchange.

        Returns:
            (exchange, price), or None when no exchange quotes that side

        Example:
            >>> manager.get_best_price("BTCUSDT", "BUY")
            ('sim_a', 100.0)
        """
        side = OrderSide.coerce(side)
        quotes = self._connected_quotes(symbol)
        if side is OrderSide.BUY:
            candidates = sorted((q.ask, name) for name, q in quotes.items() if q.ask > 0)
        else:
            candidates = sorted((-q.bid, name) for name, q in quotes.items() if q.bid > 0)
        if not candidates:
            return None
        price, exchange = candidates[0]
        return exchange, abs(price)

    def get_average_spread(self, symbol: str) -> Optional[float]:
        """Mean ask - bid over connected exchanges quoting both sides; None if none do."""
        spreads = [q.ask - q.bid for q in self._connected_quotes(symbol).values() if q.bid > 0 and q.ask > 0]
        if not spreads:
            return None
        return sum(spreads) / len(spreads)

    def get_aggregated_order_book(self, symbol: str, depth: Optional[int] = None) -> Optional[OrderBookSnapshot]:
        """
        Merge the cached books of every connected exchange into one book.

        Quantities resting at the same price on several exchanges are summed.
        The snapshot's exchange is "aggregate" and its timestamp is the
        oldest contributing book's.

        Args:
            symbol: Trading pair
            depth: Levels per side to keep (all when None)

        Returns:
            None when no connected exchange has a book for ``symbol``
        """
        symbol = symbol.upper()
        _, books = self.cache.snapshot()
        connected = {c.name for c in self._connectors() if c.is_connected()}
        sources = [book for (exchange, sym), book in books.items() if sym == symbol and exchange in connected]
        if not sources:
            return None

        bids: Dict[float, float] = {}
        asks: Dict[float, float] = {}
        for book in sources:
            for level in book.bids:
                bids[level.price] = bids.get(level.price, 0.0) + level.quantity
            for level in book.asks:
                asks[level.price] = asks.get(level.price, 0.0) + level.quantity

        bid_levels = [OrderBookLevel(price=p, quantity=q) for p, q in sorted(bids.items(), reverse=True)]
        ask_levels = [OrderBookLevel(price=p, quantity=q) for p, q in sorted(asks.items())]
        return OrderBookSnapshot(
            exchange=AGGREGATE_EXCHANGE,
            symbol=symbol,
            bids=tuple(bid_levels[:depth] if depth else bid_levels),
            asks=tuple(ask_levels[:depth] if depth else ask_levels),
            timestamp=min(book.timestamp for book in sources)
        )

    def get_total_balance(self, asset: str) -> float:
        """Free plus locked ``asset`` summed over every exchange's last account refresh."""
        asset = asset.upper()
        total = 0.0
        for name in self.list_exchanges():
            for balance in self.cache.get_balances(name):
                if balance.asset == asset:
                    total += balance.total
        return total

    def get_available_symbols(self) -> List[str]:
        symbols = set(self.cache.symbols())
        for connector in self._connectors():
            symbols.update(connector.ticker_symbols())
        return sorted(symbols)

    def get_connection_status(self) -> Dict[str, bool]:
        return {c.name: c.is_connected() for c in self._connectors()}

    def get_exchange_status(self) -> Dict[str, Dict[str, Any]]:
        status = {}
        for connector in self._connectors():
            with self._lock:
                last_error = dict(self._last_error.get(connector.name, {})) or None
            status[connector.name] = {
                "status": connector.get_status(),
                "connected": connector.is_connected(),
                "latency_ms": connector.get_latency_ms(),
                "rate_limit_remaining": connector.get_rate_limit_remaining(),
                "capabilities": dict(connector.capabilities),
                "subscriptions": connector.ticker_symbols(),
                "last_error": last_error,
            }
        return status

    def get_deferred(self) -> Dict[str, List[str]]:
        """Per exchange, polls currently skipped for lack of rate-limit budget."""
        with self._lock:
            return {name: sorted(keys) for name, keys in self._deferred.items()}

    def get_market_stats(self) -> Dict[str, Any]:
        with self._lock:
            per_exchange = {name: dict(counters) for name, counters in self._stats.items()}
            opportunities = len(self._latest_opportunities)
            running = self._running
        return {
            "running": running,
            "exchanges": len(per_exchange),
            "connected": sum(self.get_connection_status().values()),
            "symbols": len(self.get_available_symbols()),
            "cache": self.cache.stats(),
            "per_exchange": per_exchange,
            "arbitrage_opportunities": opportunities,
        }

    # ============================================
    # Order Gateway (caller's thread)
    # ============================================

    def place_limit_order(self, exchange: str, symbol: str, side: Union[OrderSide, str],
                          quantity: float, price: float) -> str:
        return self.get_exchange(exchange).place_limit_order(symbol, side, quantity, price)

    def place_market_order(self, exchange: str, symbol: str, side: Union[OrderSide, str], quantity: float) -> str:
        return self.get_exchange(exchange).place_market_order(symbol, side, quantity)

    def cancel_order(self, exchange: str, symbol: str, order_id: str) -> bool:
        return self.get_exchange(exchange).cancel_order(symbol, order_id)

    def cancel_all_orders(self, exchange: str, symbol: Optional[str] = None) -> bool:
        return self.get_exchange(exchange).cancel_all_orders(symbol)

    # ============================================
    # Utility Methods
    # ============================================

    def __repr__(self) -> str:
        return f"<LiveMarketDataManager(exchanges={self.list_exchanges()}, running={self.is_running()})>"

    def __len__(self) -> int:
        with self._lock:
            return len(self._exchanges)
