"""
Unit Tests for LiveMarketDataManager

These tests verify that the manager:
- Registers connectors by name and rejects unknown or duplicate names
- Starts one ingestion thread per connector and joins them all on stop
- Drains streams, polls within the rate-limit budget and records deferrals
- Routes connector failures to the error callback without stopping ingestion
- Feeds the arbitrage scanner from the shared cache
- Answers cross-exchange aggregate queries from one cache snapshot

Venues are simulated or run on httpx.MockTransport and a fake websocket;
nothing touches the network.

Run with:
    pytest tests/unit/test_market_data_manager.py -v
"""

import json
import threading
import time

import httpx
import pytest

from core.config import Settings
from core.exceptions import TransportError
from core.market_data_manager import LiveMarketDataManager
from core.rate_limiter import RateLimiter
from core.ring_buffer import RingBuffer
from core.schemas import OrderSide, OrderStatus
from exchanges.binance import BinanceConnector
from exchanges.binance.api_client import BinanceAPIClient
from exchanges.binance.ws_client import BinanceBookTickerStream
from exchanges.simulated import SimulatedConnector


# ============================================
# Helpers
# ============================================

class PollingConnector(SimulatedConnector):
    """Simulated venue read through fetch_ticker polls instead of its stream."""

    capabilities = dict(SimulatedConnector.capabilities, streaming=False, polling=True)

    @property
    def stream_buffer(self):
        return None


class FlakyAccountConnector(SimulatedConnector):
    """Simulated venue whose account endpoint can be switched off."""

    account_down = False

    def fetch_account_balances(self):
        if self.account_down:
            raise TransportError("HTTP 500", context="/account", status=500)
        return super().fetch_account_balances()


BOOK_TICKER_FRAME = json.dumps({
    "stream": "btcusdt@bookTicker",
    "data": {"u": 1, "s": "BTCUSDT", "b": "100.0", "B": "2.0", "a": "100.5", "A": "3.0"}
})

TICKER_PAYLOAD = {"symbol": "BTCUSDT", "lastPrice": "100.2", "bidPrice": "100.0", "askPrice": "100.5"}


class FrameSocket:
    """Sync websocket double that yields a bookTicker frame on every recv."""

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        return False

    def recv(self, timeout=None):
        time.sleep(0.002)
        return BOOK_TICKER_FRAME


def make_streaming_binance(config):
    def handler(request):
        if request.url.path.endswith("/ticker/24hr"):
            return httpx.Response(200, json=TICKER_PAYLOAD)
        return httpx.Response(200, json={})

    client = BinanceAPIClient(base_url="https://api.test", api_key="", api_secret="",
                              transport=httpx.MockTransport(handler), sleep=lambda _: None)
    stream = BinanceBookTickerStream(RingBuffer(32), url="wss://example/stream", recv_timeout=0.05,
                                     retry_delay=0.05, connect=lambda url, open_timeout=None: FrameSocket())
    return BinanceConnector(client=client, stream=stream, config=config)


def stream_threads():
    return [t for t in threading.enumerate() if t.name == "binance-book-ticker" and t.is_alive()]


def connect_and_drain(manager, venues):
    manager.connect_all()
    for venue in venues:
        venue.ingest_stream()


def wait_until(predicate, timeout: float = 3.0, interval: float = 0.01) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def config():
    return Settings(
        poll_interval_ms=20,
        connect_retry_delay=0.05,
        arbitrage_scan_interval_ms=20,
        account_refresh_interval=0.05,
        min_arbitrage_profit_bps=10.0,
        supported_symbols="BTCUSDT"
    )


@pytest.fixture
def venues(config):
    a = SimulatedConnector("sim_a", balances={"USDT": 1000.0}, config=config)
    b = SimulatedConnector("sim_b", config=config)
    return a, b


@pytest.fixture
def manager(config, venues):
    mgr = LiveMarketDataManager(venues, settings=config)
    yield mgr
    mgr.close()


# ============================================
# Registry
# ============================================

class TestRegistry:
    """Connector registration and lookup"""

    def test_list_and_get_exchange(self, manager, venues):
        """Verify connectors are available by (case-insensitive) name"""
        assert manager.list_exchanges() == ["sim_a", "sim_b"]
        assert manager.get_exchange("SIM_A") is venues[0]
        assert len(manager) == 2
        assert manager.has_exchange("sim_b")

    def test_get_unknown_exchange_raises(self, manager):
        """Verify unknown names raise ValueError listing the available ones"""
        with pytest.raises(ValueError, match="sim_a"):
            manager.get_exchange("kraken")
        with pytest.raises(ValueError):
            manager.get_latest_tick("kraken", "BTCUSDT")

    def test_duplicate_name_rejected(self, manager, config):
        """Verify two connectors cannot share a name"""
        with pytest.raises(ValueError):
            manager.add_exchange(SimulatedConnector("sim_a", config=config))

    def test_connectors_share_the_manager_cache(self, manager, venues):
        """Verify registration binds each connector to the shared cache"""
        assert all(v.cache is manager.cache for v in venues)

    def test_remove_exchange(self, manager):
        """Verify removal is refused while running and clears data otherwise"""
        manager.start()
        with pytest.raises(RuntimeError):
            manager.remove_exchange("sim_b")
        manager.stop()

        manager.remove_exchange("sim_b")
        assert manager.list_exchanges() == ["sim_a"]

    def test_missing_tick_is_empty(self, manager):
        """Verify queries before any update return the empty snapshot"""
        assert manager.get_latest_tick("sim_a", "BTCUSDT").is_empty


# ============================================
# Lifecycle
# ============================================

class TestLifecycle:
    """start / stop"""

    def test_stop_joins_every_thread_within_one_poll_interval(self, venues):
        """Verify stop() returns promptly and leaves no ingestion thread alive"""
        slow = Settings(poll_interval_ms=1000, connect_retry_delay=0.05)
        manager = LiveMarketDataManager(venues, settings=slow)
        manager.start()
        assert manager.thread_count() == 2
        time.sleep(0.05)

        started = time.monotonic()
        manager.stop()
        elapsed = time.monotonic() - started

        assert elapsed < 1.0
        assert manager.thread_count() == 0
        assert not manager.is_running()

    def test_start_is_idempotent_and_restartable(self, manager):
        """Verify repeated start() is a no-op and the manager can run again after stop()"""
        manager.start()
        manager.start()
        assert manager.thread_count() == 2
        manager.stop()
        manager.stop()

        manager.start()
        assert manager.is_running()
        assert wait_until(lambda: all(manager.get_connection_status().values()))
        manager.stop()
        assert manager.thread_count() == 0

    def test_exchange_added_while_running_gets_a_thread(self, manager, config):
        """Verify a late connector starts ingesting immediately"""
        manager.start()
        late = SimulatedConnector("sim_c", config=config)
        manager.add_exchange(late)
        assert wait_until(late.is_connected)
        assert manager.thread_count() == 3

    def test_stop_halts_stream_producer_and_discards_backlog(self, config):
        """Verify stop() leaves no bookTicker thread behind and start() resumes it with an empty buffer"""
        leftover = set(stream_threads())
        binance = make_streaming_binance(config)
        binance.subscribe_to_tickers(["BTCUSDT"])
        manager = LiveMarketDataManager([binance], settings=config)
        with manager:
            manager.start()
            assert wait_until(lambda: manager.get_latest_tick("binance", "BTCUSDT").bid_price == 100.0)
            assert set(stream_threads()) - leftover

            manager.stop()
            assert set(stream_threads()) - leftover == set()
            assert len(binance.stream_buffer) == 0
            time.sleep(0.05)
            assert len(binance.stream_buffer) == 0

            manager.start()
            assert wait_until(lambda: len(set(stream_threads()) - leftover) == 1)
            manager.stop()
            assert set(stream_threads()) - leftover == set()

    def test_concurrent_start_and_stop_leave_no_workers(self, manager):
        """Verify racing start()/stop() callers end with every thread joined"""
        def cycle():
            for _ in range(10):
                manager.start()
                manager.stop()

        callers = [threading.Thread(target=cycle) for _ in range(3)]
        for caller in callers:
            caller.start()
        for caller in callers:
            caller.join(timeout=10)

        assert not any(caller.is_alive() for caller in callers)
        assert not manager.is_running()
        assert manager.thread_count() == 0
        assert not [t for t in threading.enumerate() if t.name in ("ingest-sim_a", "ingest-sim_b") and t.is_alive()]


# ============================================
# Ingestion
# ============================================

class TestIngestion:
    """Stream drain, polling, deferral and error routing"""

    def test_stream_quotes_reach_cache_and_ticker_callback(self, manager, venues):
        """Verify published quotes are ingested and announced"""
        ticks = []
        manager.set_ticker_update_callback(ticks.append)
        venues[0].publish_quote("BTCUSDT", bid=99.9, ask=100.0)
        manager.start()

        assert wait_until(lambda: manager.get_latest_tick("sim_a", "BTCUSDT").bid_price == 99.9)
        assert ticks and ticks[0].exchange == "sim_a"
        assert manager.get_order_book("sim_a", "BTCUSDT").best_ask.price == 100.0
        assert manager.get_market_stats()["per_exchange"]["sim_a"]["stream_updates"] >= 2

    def test_polling_connector_is_polled(self, config):
        """Verify subscribed tickers and books are fetched each cycle"""
        poller = PollingConnector("poller", config=config)
        poller.publish_quote("BTCUSDT", bid=10.0, ask=11.0, bid_qty=1.0, ask_qty=2.0)
        manager = LiveMarketDataManager([poller], settings=config)
        manager.subscribe(["BTCUSDT"], depth=5)
        with manager:
            manager.start()
            assert wait_until(lambda: manager.get_order_book("poller", "BTCUSDT") is not None)
            assert manager.get_latest_tick("poller", "BTCUSDT").ask_price == 11.0
            assert manager.get_available_symbols() == ["BTCUSDT"]

    def test_exhausted_rate_limit_defers_polls(self, config):
        """Verify symbols over budget are recorded as deferred instead of blocking"""
        poller = PollingConnector("poller", rate_limiter=RateLimiter(1, 60), config=config)
        for symbol in ("BTCUSDT", "ETHUSDT", "SOLUSDT"):
            poller.publish_quote(symbol, bid=10.0, ask=11.0)
        poller.subscribe_to_tickers(["BTCUSDT", "ETHUSDT", "SOLUSDT"])

        manager = LiveMarketDataManager([poller], settings=config)
        with manager:
            manager.start()
            assert wait_until(lambda: {"ETHUSDT", "SOLUSDT"} <= set(manager.get_deferred()["poller"]))
            assert manager.get_latest_tick("poller", "BTCUSDT").bid_price == 10.0
            assert manager.get_market_stats()["per_exchange"]["poller"]["deferred"] >= 2
            assert manager.is_running()

    def test_poll_failures_reach_error_callback_and_loop_continues(self, config):
        """Verify a failing poll is reported with exchange context and ingestion keeps going"""
        poller = PollingConnector("poller", config=config)
        poller.subscribe_to_tickers(["NOPEUSDT", "BTCUSDT"])
        poller.publish_quote("BTCUSDT", bid=10.0, ask=11.0)
        errors = []

        manager = LiveMarketDataManager([poller], settings=config)
        manager.set_error_callback(lambda context, message: errors.append(context))
        with manager:
            manager.start()
            assert wait_until(lambda: len(errors) >= 2)
            assert errors[0] == "poller:poll NOPEUSDT"
            assert manager.get_latest_tick("poller", "BTCUSDT").bid_price == 10.0
            assert manager.get_exchange_status()["poller"]["last_error"]["context"] == "poll NOPEUSDT"

    def test_failing_callbacks_do_not_stop_ingestion(self, manager, venues):
        """Verify exceptions raised by listeners are contained"""
        def boom(*_):
            raise RuntimeError("listener failed")

        manager.set_ticker_update_callback(boom)
        manager.set_error_callback(boom)
        manager.start()

        venues[0].publish_quote("BTCUSDT", bid=1.0, ask=2.0)
        assert wait_until(lambda: manager.get_latest_tick("sim_a", "BTCUSDT").bid_price == 1.0)
        venues[0].publish_quote("BTCUSDT", bid=3.0, ask=4.0)
        assert wait_until(lambda: manager.get_latest_tick("sim_a", "BTCUSDT").bid_price == 3.0)
        assert manager.thread_count() == 2

    def test_unavailable_venue_is_retried(self, manager, venues):
        """Verify connect failures are reported and retried after the delay"""
        errors = []
        manager.set_error_callback(lambda context, message: errors.append(context))
        venues[1].available = False
        manager.start()

        assert wait_until(lambda: "sim_b:connect" in errors)
        assert not manager.get_connection_status()["sim_b"]

        venues[1].available = True
        assert wait_until(venues[1].is_connected)

    def test_account_state_is_refreshed(self, manager):
        """Verify balances from account-capable venues appear in the cache"""
        manager.start()
        assert wait_until(lambda: [b.asset for b in manager.get_account_balances("sim_a")] == ["USDT"])

    def test_failed_account_refresh_keeps_previous_state(self, config):
        """Verify a 500 on the account endpoint is reported and the cached balances survive"""
        venue = FlakyAccountConnector("flaky", balances={"USDT": 1000.0}, config=config)
        errors = []
        manager = LiveMarketDataManager([venue], settings=config)
        manager.set_error_callback(lambda context, message: errors.append(context))
        with manager:
            manager.start()
            assert wait_until(lambda: [b.asset for b in manager.get_account_balances("flaky")] == ["USDT"])

            venue.account_down = True
            assert wait_until(lambda: "flaky:refresh_account" in errors)
            assert [b.asset for b in manager.get_account_balances("flaky")] == ["USDT"]
            assert manager.get_account_balances("flaky")[0].free == pytest.approx(1000.0)


# ============================================
# Arbitrage & Orders
# ============================================

class TestArbitrageAndOrders:
    """Scanner and order pass-through"""

    def test_arbitrage_callback_receives_opportunities(self, manager, venues):
        """Verify the scanner reports a cross-venue gap"""
        found = []
        manager.set_arbitrage_callback(found.append)
        venues[0].publish_quote("BTCUSDT", bid=99.90, ask=100.00, bid_qty=1.0, ask_qty=1.0)
        venues[1].publish_quote("BTCUSDT", bid=100.15, ask=100.20, bid_qty=1.0, ask_qty=1.0)
        manager.start()

        assert wait_until(lambda: len(found) > 0)
        best = found[-1][0]
        assert best.pair_id == "sim_a->sim_b"
        assert best.profit_bps == pytest.approx(15.0)
        assert best.is_executable

    def test_disconnected_exchanges_are_excluded(self, manager, venues):
        """Verify only connected exchanges take part in a scan"""
        venues[0].publish_quote("BTCUSDT", bid=99.90, ask=100.00)
        venues[1].publish_quote("BTCUSDT", bid=100.15, ask=100.20)
        connect_and_drain(manager, venues)
        assert len(manager.get_arbitrage_opportunities()) == 1

        venues[1].disconnect()
        assert manager.get_arbitrage_opportunities() == []

    def test_orders_pass_through_to_connector(self, manager, venues):
        """Verify orders placed via the manager reach the venue and the order callback"""
        updates = []
        manager.set_order_update_callback(updates.append)
        venues[0].publish_quote("BTCUSDT", bid=99.90, ask=100.00)
        manager.connect_all()

        order_id = manager.place_limit_order("sim_a", "BTCUSDT", OrderSide.BUY, 1.0, 95.0)
        assert [o.order_id for o in manager.get_open_orders("sim_a")] == [order_id]

        assert manager.cancel_order("sim_a", "BTCUSDT", order_id) is True
        assert [u.status for u in updates] == [OrderStatus.NEW, OrderStatus.CANCELED]
        assert manager.get_open_orders("sim_a") == []


# ============================================
# Cross-Exchange Aggregates
# ============================================

class TestAggregates:
    """Best price, spread, merged book and balance totals"""

    def test_best_price_per_side(self, manager, venues):
        """Verify BUY picks the lowest ask and SELL the highest bid"""
        venues[0].publish_quote("BTCUSDT", bid=99.90, ask=100.00)
        venues[1].publish_quote("BTCUSDT", bid=100.15, ask=100.20)
        connect_and_drain(manager, venues)

        assert manager.get_best_price("BTCUSDT", OrderSide.BUY) == ("sim_a", pytest.approx(100.00))
        assert manager.get_best_price("btcusdt", "SELL") == ("sim_b", pytest.approx(100.15))
        assert manager.get_best_price("ETHUSDT", OrderSide.BUY) is None

    def test_best_price_ignores_disconnected_exchange(self, manager, venues):
        """Verify only connected exchanges compete for the best price"""
        venues[0].publish_quote("BTCUSDT", bid=99.90, ask=100.00)
        venues[1].publish_quote("BTCUSDT", bid=100.15, ask=100.20)
        connect_and_drain(manager, venues)

        venues[0].disconnect()
        assert manager.get_best_price("BTCUSDT", OrderSide.BUY) == ("sim_b", pytest.approx(100.20))

    def test_average_spread(self, manager, venues):
        """Verify the spread is averaged over exchanges quoting both sides"""
        venues[0].publish_quote("BTCUSDT", bid=99.90, ask=100.00)
        venues[1].publish_quote("BTCUSDT", bid=100.15, ask=100.20)
        connect_and_drain(manager, venues)

        assert manager.get_average_spread("BTCUSDT") == pytest.approx(0.075)
        assert manager.get_average_spread("ETHUSDT") is None

    def test_aggregated_order_book_sums_shared_levels(self, manager, venues):
        """Verify merged books add quantity at equal prices and honour depth"""
        venues[0].publish_quote("BTCUSDT", bid=99.90, ask=100.00, bid_qty=1.0, ask_qty=1.0)
        venues[1].publish_quote("BTCUSDT", bid=99.90, ask=100.10, bid_qty=2.0, ask_qty=3.0)
        connect_and_drain(manager, venues)

        book = manager.get_aggregated_order_book("BTCUSDT")
        assert book.exchange == "aggregate"
        assert [(l.price, l.quantity) for l in book.bids] == [(99.90, pytest.approx(3.0))]
        assert [l.price for l in book.asks] == [100.00, 100.10]
        assert book.asks[1].quantity == pytest.approx(3.0)

        top = manager.get_aggregated_order_book("BTCUSDT", depth=1)
        assert [l.price for l in top.asks] == [100.00]
        assert manager.get_aggregated_order_book("ETHUSDT") is None

    def test_total_balance_sums_every_exchange(self, manager, venues):
        """Verify balances from each exchange's last refresh are added up"""
        venues[1].set_balance("USDT", 500.0, locked=50.0)
        for venue in venues:
            venue.refresh_account()

        assert manager.get_total_balance("usdt") == pytest.approx(1550.0)
        assert manager.get_total_balance("BTC") == 0.0
