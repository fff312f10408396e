"""
Cross-Exchange Arbitrage Detector

Scans the latest cached snapshots for symbols quoted on two or more exchanges
and reports every ordered (buy, sell) exchange pair whose sell-side bid beats
the buy-side ask by at least ``min_profit_bps``.

Pricing:
    - Buy at the buy exchange's ask, sell at the sell exchange's bid
    - The order book's best levels are used when a book is cached, otherwise
      the tick's bid/ask; last price is never used
    - profit_bps = (sell_price - buy_price) / buy_price * 10000

Scoring:
    - max_quantity = min(ask quantity at buy, bid quantity at sell); 0 when
      either side has no book, which makes the opportunity non-executable
    - confidence starts at 1.0 and is multiplied by a freshness factor
      (1.0 / 0.3 / 0.0 for fresh / aging / stale), by 0.5 when book depth is
      missing and by 0.5 when combined venue latency is high
    - risk tier: HIGH, MEDIUM or LOW from confidence, latency and profit

The detector keeps no state between passes.
"""

from datetime import datetime
from typing import Dict, List, NamedTuple, Optional

from core.config import Settings, settings as default_settings
from core.logging import get_logger
from core.market_data_cache import MarketDataCache, MarketKey
from core.schemas import ArbitrageOpportunity, OrderBookSnapshot, RiskTier, TickSnapshot
from core.utils.time import age_ms, current_utc_datetime

logger = get_logger(__name__)


class TopOfBook(NamedTuple):
    """Best prices of one (exchange, symbol), with quantities when a book is known."""

    bid: float
    ask: float
    bid_quantity: Optional[float]
    ask_quantity: Optional[float]
    timestamp: datetime


def top_of_book(tick: Optional[TickSnapshot], book: Optional[OrderBookSnapshot]) -> Optional[TopOfBook]:
    """
    Merge a tick and an order book into best bid/ask.

    Each side comes from the book's best level when present, else from the
    tick. Returns None when neither source has anything.
    """
    bid = ask = 0.0
    bid_qty = ask_qty = None
    timestamps = []

    if book is not None and book.best_bid is not None:
        bid, bid_qty = book.best_bid.price, book.best_bid.quantity
        timestamps.append(book.timestamp)
    elif tick is not None:
        bid = tick.bid_price
        timestamps.append(tick.timestamp)

    if book is not None and book.best_ask is not None:
        ask, ask_qty = book.best_ask.price, book.best_ask.quantity
        timestamps.append(book.timestamp)
    elif tick is not None:
        ask = tick.ask_price
        timestamps.append(tick.timestamp)

    if not timestamps:
        return None
    return TopOfBook(bid, ask, bid_qty, ask_qty, min(timestamps))


class ArbitrageDetector:
    """
    Stateless cross-exchange opportunity scanner.

    All thresholds default to the configured values (see core.config).

    Example:
        >>> detector = ArbitrageDetector(min_profit_bps=10)
        >>> opportunities = detector.scan(cache, latencies={"binance": 20.0, "sim_a": 5.0})
        >>> for opp in opportunities:
        ...     print(f"{opp.symbol} {opp.pair_id}: {opp.profit_bps:.1f} bps ({opp.risk_tier.value})")
    """

    NO_DEPTH_PENALTY = 0.5
    HIGH_LATENCY_PENALTY = 0.5
    AGING_FACTOR = 0.3

    def __init__(
        self,
        min_profit_bps: Optional[float] = None,
        min_executable_quantity: Optional[float] = None,
        fresh_after_ms: Optional[float] = None,
        stale_after_ms: Optional[float] = None,
        high_latency_ms: Optional[float] = None,
        max_latency_ms: Optional[float] = None,
        low_risk_profit_bps: Optional[float] = None,
        config: Optional[Settings] = None
    ):
        config = config or default_settings

        def pick(value, default):
            return default if value is None else value

        self.min_profit_bps = pick(min_profit_bps, config.min_arbitrage_profit_bps)
        self.min_executable_quantity = pick(min_executable_quantity, config.min_executable_quantity)
        self.fresh_after_ms = pick(fresh_after_ms, config.fresh_after_ms)
        self.stale_after_ms = pick(stale_after_ms, config.stale_after_ms)
        self.high_latency_ms = pick(high_latency_ms, config.high_latency_ms)
        self.max_latency_ms = pick(max_latency_ms, config.max_latency_ms)
        self.low_risk_profit_bps = pick(low_risk_profit_bps, config.low_risk_profit_bps)

    # ============================================
    # Scoring
    # ============================================

    def freshness_factor(self, age: float) -> float:
        if age <= self.fresh_after_ms:
            return 1.0
        if age <= self.stale_after_ms:
            return self.AGING_FACTOR
        return 0.0

    def confidence(self, age: float, has_depth: bool, latency_ms: float) -> float:
        """Confidence in [0, 1] from snapshot age, depth availability and venue latency."""
        score = self.freshness_factor(age)
        if not has_depth:
            score *= self.NO_DEPTH_PENALTY
        if latency_ms > self.high_latency_ms:
            score *= self.HIGH_LATENCY_PENALTY
        return score

    def risk_tier(self, confidence: float, latency_ms: float, profit_bps: float) -> RiskTier:
        if confidence < 0.5 or latency_ms > self.max_latency_ms:
            return RiskTier.HIGH
        if confidence >= 0.8 and latency_ms <= self.high_latency_ms and profit_bps >= self.low_risk_profit_bps:
            return RiskTier.LOW
        return RiskTier.MEDIUM

    # ============================================
    # Detection
    # ============================================

    def detect(
        self,
        ticks: Dict[MarketKey, TickSnapshot],
        books: Optional[Dict[MarketKey, OrderBookSnapshot]] = None,
        latencies: Optional[Dict[str, float]] = None,
        min_profit_bps: Optional[float] = None,
        now: Optional[datetime] = None
    ) -> List[ArbitrageOpportunity]:
        """
        Find opportunities in a snapshot of ticks and books.

        Args:
            ticks: (exchange, symbol) -> latest tick
            books: (exchange, symbol) -> latest order book
            latencies: exchange -> last measured latency in ms (missing = 0)
            min_profit_bps: Override the configured threshold for this pass
            now: Reference time for snapshot ages

        Returns:
            Opportunities sorted by profit (desc), confidence (desc), pair id, symbol
        """
        books = books or {}
        latencies = latencies or {}
        threshold = self.min_profit_bps if min_profit_bps is None else min_profit_bps
        now = now or current_utc_datetime()

        by_symbol: Dict[str, Dict[str, TopOfBook]] = {}
        for key in set(ticks) | set(books):
            exchange, symbol = key
            quote = top_of_book(ticks.get(key), books.get(key))
            if quote is not None:
                by_symbol.setdefault(symbol, {})[exchange] = quote

        opportunities: List[ArbitrageOpportunity] = []
        for symbol, quotes in by_symbol.items():
            if len(quotes) < 2:
                continue
            for buy_exchange, buy in quotes.items():
                for sell_exchange, sell in quotes.items():
                    if buy_exchange == sell_exchange:
                        continue
                    opp = self._evaluate(symbol, buy_exchange, buy, sell_exchange, sell, latencies, threshold, now)
                    if opp is not None:
                        opportunities.append(opp)

        opportunities.sort(key=lambda o: (-o.profit_bps, -o.confidence_score, o.pair_id, o.symbol))
        if opportunities:
            logger.debug(f"Found {len(opportunities)} arbitrage opportunit{'y' if len(opportunities) == 1 else 'ies'} "
                         f"(best {opportunities[0].profit_bps:.1f} bps)")
        return opportunities

    def _evaluate(
        self,
        symbol: str,
        buy_exchange: str,
        buy: TopOfBook,
        sell_exchange: str,
        sell: TopOfBook,
        latencies: Dict[str, float],
        threshold: float,
        now: datetime
    ) -> Optional[ArbitrageOpportunity]:
        buy_price, sell_price = buy.ask, sell.bid
        if buy_price <= 0 or sell_price <= 0:
            return None

        profit_bps = (sell_price - buy_price) / buy_price * 10000.0
        if profit_bps < threshold:
            return None

        has_depth = buy.ask_quantity is not None and sell.bid_quantity is not None
        max_quantity = min(buy.ask_quantity, sell.bid_quantity) if has_depth else 0.0
        latency = latencies.get(buy_exchange, 0.0) + latencies.get(sell_exchange, 0.0)
        age = max(age_ms(buy.timestamp, now), age_ms(sell.timestamp, now))
        confidence = self.confidence(age, has_depth, latency)

        return ArbitrageOpportunity(
            symbol=symbol,
            buy_exchange=buy_exchange,
            sell_exchange=sell_exchange,
            buy_price=buy_price,
            sell_price=sell_price,
            profit_bps=profit_bps,
            max_quantity=max_quantity,
            confidence_score=confidence,
            execution_time_estimate_ms=latency,
            is_executable=max_quantity > 0 and max_quantity >= self.min_executable_quantity,
            risk_tier=self.risk_tier(confidence, latency, profit_bps),
            detected_at=now
        )

    def scan(
        self,
        cache: MarketDataCache,
        latencies: Optional[Dict[str, float]] = None,
        min_profit_bps: Optional[float] = None,
        exchanges: Optional[List[str]] = None
    ) -> List[ArbitrageOpportunity]:
        """
        Run one detection pass over a consistent cache snapshot.

        Args:
            cache: Source of ticks and books
            latencies: exchange -> latency in ms
            min_profit_bps: Threshold override
            exchanges: Restrict the pass to these exchanges (e.g., connected ones)
        """
        ticks, books = cache.snapshot()
        if exchanges is not None:
            allowed = {e.lower() for e in exchanges}
            ticks = {k: v for k, v in ticks.items() if k[0] in allowed}
            books = {k: v for k, v in books.items() if k[0] in allowed}
        return self.detect(ticks, books, latencies, min_profit_bps)
