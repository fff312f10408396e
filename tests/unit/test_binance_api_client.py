"""
Unit Tests for Binance API Client

These tests verify that the BinanceAPIClient:
- Normalizes Binance responses to our schemas
- Signs trading/account requests
- Retries rate-limit responses and classifies failures
- Works offline through httpx.MockTransport

Run with:
    pytest tests/unit/test_binance_api_client.py -v
"""

import hashlib
import hmac
from urllib.parse import parse_qsl, urlencode

import httpx
import pytest

from core.exceptions import ExchangeRejection, MalformedResponseError, TransportError
from core.schemas import OrderSide, OrderStatus, OrderType, TickSnapshot
from exchanges.binance.api_client import BinanceAPIClient, format_decimal


# ============================================
# Fixtures
# ============================================

def make_client(handler, api_key="key", api_secret="secret", max_retries=3, sleeps=None):
    """Client whose HTTP traffic goes to ``handler`` instead of the network."""
    return BinanceAPIClient(
        base_url="https://api.test",
        api_key=api_key,
        api_secret=api_secret,
        max_retries=max_retries,
        transport=httpx.MockTransport(handler),
        sleep=(sleeps.append if sleeps is not None else lambda _: None)
    )


@pytest.fixture
def api_client():
    """Client for tests that stub out _request"""
    with BinanceAPIClient(base_url="https://api.test", api_key="key", api_secret="secret") as client:
        yield client


# ============================================
# Market Data
# ============================================

class TestGetTicker:
    """Tests for get_ticker method"""

    def test_get_ticker_returns_normalized_snapshot(self, api_client, monkeypatch):
        """Verify /ticker/24hr is mapped onto TickSnapshot"""
        mock_response = {
            "symbol": "BTCUSDT",
            "priceChange": "-94.99999800",
            "priceChangePercent": "-95.960",
            "lastPrice": "4.00000200",
            "bidPrice": "4.00000000",
            "askPrice": "4.00000200",
            "highPrice": "100.00000000",
            "lowPrice": "0.10000000",
            "volume": "8913.30000000",
            "closeTime": 1499869899040
        }
        calls = []

        def mock_request(method, path, params=None, signed=False):
            calls.append((method, path, params, signed))
            return mock_response

        monkeypatch.setattr(api_client, "_request", mock_request)

        tick = api_client.get_ticker("btcusdt")

        assert calls == [("GET", "/ticker/24hr", {"symbol": "BTCUSDT"}, False)]
        assert isinstance(tick, TickSnapshot)
        assert tick.exchange == "binance"
        assert tick.symbol == "BTCUSDT"
        assert tick.last_price == pytest.approx(4.000002)
        assert tick.bid_price == pytest.approx(4.0)
        assert tick.high_24h == pytest.approx(100.0)
        assert tick.price_change_percent_24h == pytest.approx(-95.96)
        assert tick.server_time is not None

    def test_get_ticker_missing_fields_is_malformed(self, api_client, monkeypatch):
        """Verify a payload without prices raises MalformedResponseError"""
        monkeypatch.setattr(api_client, "_request", lambda *a, **k: {"symbol": "BTCUSDT"})
        with pytest.raises(MalformedResponseError):
            api_client.get_ticker("BTCUSDT")

    def test_get_ticker_list_body_is_malformed(self, api_client, monkeypatch):
        """Verify a JSON array where an object is expected raises MalformedResponseError"""
        monkeypatch.setattr(api_client, "_request", lambda *a, **k: [{"symbol": "BTCUSDT"}])
        with pytest.raises(MalformedResponseError):
            api_client.get_ticker("BTCUSDT")

    def test_exchange_info_list_body_is_malformed(self, api_client, monkeypatch):
        """Verify symbol and lot-size lookups reject a non-object exchangeInfo body"""
        monkeypatch.setattr(api_client, "_request", lambda *a, **k: ["BTCUSDT"])
        with pytest.raises(MalformedResponseError):
            api_client.get_trading_symbols()
        with pytest.raises(MalformedResponseError):
            api_client.get_min_order_sizes()


class TestGetOrderBook:
    """Tests for get_order_book method"""

    def test_depth_limit_is_rounded_up_and_trimmed(self, api_client, monkeypatch):
        """Verify an unsupported depth is requested at the next valid limit and sliced back"""
        seen = {}

        def mock_request(method, path, params=None, signed=False):
            seen.update(params)
            return {
                "lastUpdateId": 1027024,
                "bids": [[str(100 - i), "1.0"] for i in range(10)],
                "asks": [[str(101 + i), "2.0"] for i in range(10)]
            }

        monkeypatch.setattr(api_client, "_request", mock_request)

        book = api_client.get_order_book("BTCUSDT", limit=3)

        assert seen["limit"] == 5
        assert len(book.bids) == 3 and len(book.asks) == 3
        assert book.best_bid.price == 100.0
        assert book.best_ask.price == 101.0
        assert book.last_update_id == 1027024


# ============================================
# Orders & Account
# ============================================

class TestParseOrder:
    """Tests for order normalization"""

    def test_full_response_sums_commission_over_fills(self):
        """Verify commission is summed and remaining = origQty - executedQty"""
        data = {
            "symbol": "BTCUSDT", "orderId": 28, "clientOrderId": "abc",
            "transactTime": 1507725176595, "price": "0.00000000",
            "origQty": "10.00000000", "executedQty": "4.00000000",
            "status": "PARTIALLY_FILLED", "type": "MARKET", "side": "SELL",
            "fills": [
                {"price": "4000.0", "qty": "1.0", "commission": "4.0", "commissionAsset": "USDT"},
                {"price": "3999.0", "qty": "3.0", "commission": "11.997", "commissionAsset": "USDT"}
            ]
        }
        order = BinanceAPIClient.parse_order(data)

        assert order.order_id == "28"
        assert order.side is OrderSide.SELL
        assert order.type is OrderType.MARKET
        assert order.status is OrderStatus.PARTIALLY_FILLED
        assert order.remaining_quantity == pytest.approx(6.0)
        assert order.commission == pytest.approx(15.997)
        assert order.commission_asset == "USDT"

    def test_status_aliases(self):
        """Verify Binance-only statuses map onto the normalized set"""
        data = {"symbol": "BTCUSDT", "orderId": 1, "origQty": "1", "executedQty": "0",
                "status": "EXPIRED_IN_MATCH", "type": "LIMIT", "side": "BUY", "price": "1"}
        assert BinanceAPIClient.parse_order(data).status is OrderStatus.EXPIRED

    def test_place_limit_order_params(self, api_client, monkeypatch):
        """Verify LIMIT orders are GTC with formatted price and quantity"""
        seen = {}

        def mock_request(method, path, params=None, signed=False):
            seen.update(method=method, path=path, params=params, signed=signed)
            return {"symbol": "BTCUSDT", "orderId": 7, "origQty": "0.001", "executedQty": "0",
                    "status": "NEW", "type": "LIMIT", "side": "BUY", "price": "25000.5"}

        monkeypatch.setattr(api_client, "_request", mock_request)

        order = api_client.place_order("btcusdt", OrderSide.BUY, OrderType.LIMIT, 0.001, 25000.5)

        assert seen["method"] == "POST" and seen["path"] == "/order" and seen["signed"] is True
        assert seen["params"]["timeInForce"] == "GTC"
        assert seen["params"]["price"] == "25000.5"
        assert seen["params"]["quantity"] == "0.001"
        assert order.order_id == "7"
        assert order.is_open

    def test_get_balances_drops_zero_assets(self, api_client, monkeypatch):
        """Verify only non-zero balances are returned"""
        monkeypatch.setattr(api_client, "get_account", lambda: {"balances": [
            {"asset": "BTC", "free": "0.5", "locked": "0.1"},
            {"asset": "LTC", "free": "0.0", "locked": "0.0"}
        ]})
        balances = api_client.get_balances()
        assert [b.asset for b in balances] == ["BTC"]
        assert balances[0].total == pytest.approx(0.6)

    def test_format_decimal_avoids_scientific_notation(self):
        """Verify tiny quantities are sent as plain decimals"""
        assert format_decimal(0.00001) == "0.00001"
        assert format_decimal(2.0) == "2"


# ============================================
# Transport, Signing & Errors
# ============================================

class TestRequest:
    """Tests for _request through httpx.MockTransport"""

    def test_server_time_is_utc_datetime(self):
        """Verify /time is converted to an aware UTC datetime"""
        client = make_client(lambda request: httpx.Response(200, json={"serverTime": 1499827319559}))
        server_time = client.get_server_time()
        assert server_time.tzinfo is not None
        assert server_time.year == 2017

    def test_signed_request_carries_key_and_valid_signature(self):
        """Verify HMAC-SHA256 over the query string and the API key header"""
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["headers"] = request.headers
            captured["query"] = request.url.query.decode()
            return httpx.Response(200, json={"balances": []})

        client = make_client(handler)
        client.get_account()

        params = dict(parse_qsl(captured["query"]))
        signature = params.pop("signature")
        expected = hmac.new(b"secret", urlencode(params).encode(), hashlib.sha256).hexdigest()
        assert signature == expected
        assert "timestamp" in params and "recvWindow" in params
        assert captured["headers"]["X-MBX-APIKEY"] == "key"

    def test_signed_request_without_credentials_fails_fast(self):
        """Verify no request is sent when credentials are missing"""
        def handler(request):
            raise AssertionError("request should not be sent")

        client = make_client(handler, api_key="", api_secret="")
        with pytest.raises(ExchangeRejection):
            client.get_account()

    def test_rate_limit_is_retried_with_backoff(self):
        """Verify 429 is retried after 1.5s * attempt and then succeeds"""
        responses = iter([httpx.Response(429), httpx.Response(429), httpx.Response(200, json={})])
        sleeps = []
        client = make_client(lambda request: next(responses), sleeps=sleeps)

        assert client.ping() is True
        assert sleeps == [1.5, 3.0]

    def test_rate_limit_exhausted_raises_transport_error(self):
        """Verify persistent 429 ends in TransportError carrying the status"""
        client = make_client(lambda request: httpx.Response(429), max_retries=2)
        with pytest.raises(TransportError) as exc_info:
            client.ping()
        assert exc_info.value.status == 429

    def test_client_error_becomes_exchange_rejection(self):
        """Verify 4xx maps to ExchangeRejection with Binance's code"""
        client = make_client(lambda request: httpx.Response(400, json={"code": -1121, "msg": "Invalid symbol."}))
        with pytest.raises(ExchangeRejection) as exc_info:
            client.get_ticker("NOPE")
        assert exc_info.value.code == -1121
        assert exc_info.value.status == 400

    def test_server_error_becomes_transport_error(self):
        """Verify 5xx maps to TransportError"""
        client = make_client(lambda request: httpx.Response(500, text="boom"))
        with pytest.raises(TransportError):
            client.ping()

    def test_non_json_body_is_malformed(self):
        """Verify an unparsable body raises MalformedResponseError"""
        client = make_client(lambda request: httpx.Response(200, text="<html>"))
        with pytest.raises(MalformedResponseError):
            client.ping()

    def test_connection_failure_becomes_transport_error(self):
        """Verify network errors are wrapped"""
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = make_client(handler)
        with pytest.raises(TransportError):
            client.ping()
