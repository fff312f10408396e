"""
Unit Tests for the Exchange Connector Contract

These tests verify that:
- ExchangeConnector is properly defined as an abstract class
- Capabilities are declared per class and copied per instance
- Unsupported features fail fast and are reported
- Poll and stream ingestion write into the bound cache and fire callbacks

Run with:
    pytest tests/unit/test_exchange_interface.py -v
"""

from typing import List, Optional

import pytest

from core.exceptions import ExchangeRejection, MalformedResponseError, UnsupportedOperationError
from core.exchange_interface import ExchangeConnector
from core.market_data_cache import MarketDataCache
from core.rate_limiter import RateLimiter
from core.ring_buffer import RingBuffer
from core.schemas import Balance, OrderBookLevel, OrderBookSnapshot, OrderRecord, OrderSide, TickSnapshot


# ============================================
# Dummy Connector for Testing
# ============================================

class DummyConnector(ExchangeConnector):
    """
    Minimal ExchangeConnector with market data only.

    Stream payloads are ``(bid, ask)`` tuples; anything else is malformed.
    """

    name = "dummy"
    capabilities = {
        "market_data": True,
        "order_book": True,
        "trades": False,  # Intentionally not supported
        "trading": False,
        "account": False,
        "streaming": True,
        "polling": True
    }

    def __init__(self):
        super().__init__(RateLimiter(100, 60))
        self.connected = False
        self.buffer = RingBuffer(8)

    def connect(self) -> bool:
        self.connected = True
        return True

    def disconnect(self) -> bool:
        self.connected = False
        return True

    def is_connected(self) -> bool:
        return self.connected

    def fetch_ticker(self, symbol: str) -> TickSnapshot:
        if symbol.upper() == "BADUSDT":
            raise ExchangeRejection("Invalid symbol", code=-1121, status=400)
        return TickSnapshot(exchange=self.name, symbol=symbol, last_price=10.0, bid_price=9.9, ask_price=10.1)

    def fetch_order_book(self, symbol: str, depth: int = 20) -> OrderBookSnapshot:
        return OrderBookSnapshot(exchange=self.name, symbol=symbol,
                                 bids=(OrderBookLevel(price=9.9, quantity=1.0),),
                                 asks=(OrderBookLevel(price=10.1, quantity=1.0),))

    @property
    def stream_buffer(self) -> Optional[RingBuffer]:
        return self.buffer

    def decode_stream_message(self, raw) -> List:
        if not isinstance(raw, tuple):
            raise MalformedResponseError("not a quote", context="stream")
        bid, ask = raw
        return [TickSnapshot(exchange=self.name, symbol="BTCUSDT", bid_price=bid, ask_price=ask)]

    def place_limit_order(self, symbol, side, quantity, price) -> str:
        self.require("trading")
        return ""

    def place_market_order(self, symbol, side, quantity) -> str:
        self.require("trading")
        return ""

    def cancel_order(self, symbol, order_id) -> bool:
        self.require("trading")
        return False

    def cancel_all_orders(self, symbol=None) -> bool:
        self.require("trading")
        return False

    def get_open_orders(self, symbol=None) -> List[OrderRecord]:
        self.require("account")
        return []

    def get_order_status(self, symbol, order_id) -> Optional[OrderRecord]:
        self.require("account")
        return None

    def get_account_balances(self) -> List[Balance]:
        self.require("account")
        return []


@pytest.fixture
def connector():
    return DummyConnector()


@pytest.fixture
def errors(connector):
    """Collect (context, message) pairs reported by the connector."""
    collected = []
    connector.set_error_callback(lambda context, message: collected.append((context, message)))
    return collected


# ============================================
# Contract
# ============================================

class TestExchangeConnectorContract:
    """Abstract base and capability handling"""

    def test_cannot_instantiate_abstract_connector(self):
        """Verify ExchangeConnector cannot be instantiated directly"""
        with pytest.raises(TypeError):
            ExchangeConnector(RateLimiter(1, 1))

    def test_supports_method_returns_correct_values(self, connector):
        """Verify supports() checks capabilities, unknown features are False"""
        assert connector.supports("market_data") is True
        assert connector.supports("trading") is False
        assert connector.supports("nonexistent_feature") is False

    def test_capabilities_are_per_instance(self, connector):
        """Verify changing one instance's capabilities leaves the class untouched"""
        connector.capabilities["trading"] = True
        assert DummyConnector.capabilities["trading"] is False
        assert DummyConnector().supports("trading") is False

    def test_unsupported_operation_fails_fast_and_reports(self, connector, errors):
        """Verify a missing capability raises and goes through the error callback"""
        with pytest.raises(UnsupportedOperationError):
            connector.place_market_order("BTCUSDT", OrderSide.BUY, 1.0)
        assert errors and errors[0][0] == "trading"

    def test_unsupported_operation_is_not_implemented(self, connector):
        """Verify callers catching NotImplementedError also see unsupported operations"""
        with pytest.raises(NotImplementedError):
            connector.subscribe_to_trades("BTCUSDT")

    def test_default_health_check_tracks_connection(self, connector):
        """Verify health_check reports the connection state"""
        assert connector.health_check() is False
        connector.connect()
        assert connector.health_check() is True
        assert connector.get_status() == "Connected"


# ============================================
# Subscriptions
# ============================================

class TestSubscriptions:
    """Ticker and order book subscription sets"""

    def test_ticker_subscriptions_are_normalized_and_deduplicated(self, connector):
        """Verify symbols are upper-cased and kept once"""
        connector.subscribe_to_tickers(["btcusdt", "BTCUSDT", "ethusdt"])
        assert connector.ticker_symbols() == ["BTCUSDT", "ETHUSDT"]

    def test_invalid_depth_is_reported(self, connector, errors):
        """Verify depth <= 0 is rejected without registering the book"""
        assert connector.subscribe_to_order_book("BTCUSDT", depth=0) is False
        assert connector.order_book_subscriptions() == {}
        assert len(errors) == 1

    def test_trade_subscription_requires_capability(self, connector):
        """Verify trade interest is recorded once the capability exists"""
        connector.capabilities["trades"] = True
        assert connector.subscribe_to_trades("ethusdt") is True
        assert connector.trade_symbols() == ["ETHUSDT"]

    def test_unsubscribe_removes_everywhere(self, connector):
        """Verify unsubscribe clears ticker and book subscriptions"""
        connector.subscribe_to_tickers(["BTCUSDT"])
        connector.subscribe_to_order_book("BTCUSDT", 5)
        connector.unsubscribe("btcusdt")
        assert connector.ticker_symbols() == []
        assert connector.order_book_subscriptions() == {}


# ============================================
# Ingestion Helpers
# ============================================

class TestIngestion:
    """Poll and stream helpers used by the manager"""

    def test_poll_ticker_updates_bound_cache_and_fires_callback(self, connector):
        """Verify a polled tick lands in the shared cache and reaches the listener"""
        cache = MarketDataCache()
        connector.bind_cache(cache)
        seen = []
        connector.set_ticker_update_callback(seen.append)

        connector.poll_ticker("BTCUSDT")

        assert cache.get_tick("dummy", "BTCUSDT").last_price == 10.0
        assert connector.get_latest_tick("BTCUSDT").last_price == 10.0
        assert [t.symbol for t in seen] == ["BTCUSDT"]

    def test_poll_failure_propagates_to_caller(self, connector):
        """Verify poll helpers raise so the ingestion loop can report and continue"""
        with pytest.raises(ExchangeRejection):
            connector.poll_ticker("BADUSDT")

    def test_poll_order_book(self, connector):
        """Verify a polled book is stored"""
        connector.poll_order_book("BTCUSDT", 5)
        assert connector.cache.get_order_book("dummy", "BTCUSDT").best_bid.price == 9.9

    def test_ingest_stream_skips_malformed_payloads(self, connector, errors):
        """Verify bad stream payloads are reported and good ones still applied"""
        connector.buffer.push((1.0, 2.0))
        connector.buffer.push("garbage")
        connector.buffer.push((1.5, 2.5))

        assert connector.ingest_stream() == 2
        assert connector.get_latest_tick("BTCUSDT").bid_price == 1.5
        assert [context for context, _ in errors] == ["stream"]

    def test_callback_exception_does_not_escape(self, connector):
        """Verify a failing listener does not break ingestion"""
        def boom(_):
            raise RuntimeError("listener failed")

        connector.set_ticker_update_callback(boom)
        connector.poll_ticker("BTCUSDT")
        assert connector.get_latest_tick("BTCUSDT").last_price == 10.0

    def test_asset_balance_defaults_to_zero(self, connector):
        """Verify unknown assets read as a zero balance when account access exists"""
        connector.capabilities["account"] = True
        balance = connector.get_asset_balance("btc")
        assert balance.asset == "BTC"
        assert balance.total == 0.0
        assert connector.get_available_balance("BTC") == 0.0
