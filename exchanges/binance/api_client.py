"""
Binance REST API Client

This module provides a blocking HTTP client for the Binance spot REST API.
It handles:
- HTTP requests with retry logic
- Rate limit handling (429, 418, 503 errors)
- HMAC-SHA256 request signing for trading/account endpoints
- Error classification into the gateway exception taxonomy
- Data normalization to our schemas

API Documentation:
    https://binance-docs.github.io/apidocs/spot/en/

Rate Limits:
    - 1200 requests per minute (enforced locally by the connector's RateLimiter)
    - On 429/418/503 this client retries with a linear backoff of 1.5s * attempt

Error Mapping:
    - Timeout / connection failure / 5xx  -> TransportError
    - Body is not JSON / lacks fields      -> MalformedResponseError
    - 4xx with {"code": ..., "msg": ...}   -> ExchangeRejection

Usage:
    with BinanceAPIClient() as client:
        tick = client.get_ticker("BTCUSDT")
        book = client.get_order_book("BTCUSDT", limit=20)
"""

import hashlib
import hmac
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlencode

import httpx

from core.config import settings
from core.exceptions import ExchangeRejection, MalformedResponseError, TransportError
from core.logging import get_logger, log_api_request, log_api_response
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
from core.utils.time import current_utc_datetime, current_utc_millis, to_utc_datetime

EXCHANGE_NAME = "binance"

# Binance only accepts these depth limits
DEPTH_LIMITS = (5, 10, 20, 50, 100, 500, 1000, 5000)

# Binance-specific statuses folded into the normalized set
_STATUS_ALIASES = {
    "PENDING_CANCEL": OrderStatus.CANCELED,
    "EXPIRED_IN_MATCH": OrderStatus.EXPIRED,
    "PENDING_NEW": OrderStatus.NEW,
}


def format_decimal(value: float) -> str:
    """
    Render a quantity/price the way Binance expects it (no exponent, no trailing zeros).

    Example:
        >>> format_decimal(0.00100000)
        '0.001'
    """
    text = f"{value:.8f}".rstrip("0").rstrip(".")
    return text or "0"


class BinanceAPIClient:
    """
    Blocking HTTP client for the Binance spot REST API

    All methods return normalized data using our Pydantic schemas.

    Attributes:
        API_PREFIX: Path prefix of every spot endpoint
        base_url: REST host (mainnet or testnet)
        last_latency_ms: Round-trip time of the most recent request

    Example:
        >>> with BinanceAPIClient() as client:
        ...     tick = client.get_ticker("BTCUSDT")
        ...     print(f"BTC bid/ask: {tick.bid_price}/{tick.ask_price}")

    Notes:
        - `_request` is the single request/response seam; tests patch it
        - Signed requests add timestamp, recvWindow and signature
        - All timestamps converted to UTC datetime
    """

    API_PREFIX = "/api/v3"
    RETRY_STATUSES = (429, 418, 503)

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        recv_window_ms: Optional[int] = None,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep
    ):
        """
        Initialize the Binance API client.

        Args:
            base_url: REST host; defaults to settings.binance_rest_url
            api_key: API key sent as X-MBX-APIKEY (only needed for signed endpoints)
            api_secret: Secret used to sign requests
            timeout: Per-request timeout in seconds
            max_retries: Attempts per request when rate limited
            recv_window_ms: recvWindow for signed requests
            transport: Optional httpx transport (tests use httpx.MockTransport)
            sleep: Backoff sleep function
        """
        self.base_url = (base_url or settings.binance_rest_url).rstrip("/")
        self.api_key = api_key or ""
        self.api_secret = api_secret or ""
        self.timeout = settings.request_timeout if timeout is None else timeout
        self.max_retries = max(1, settings.max_retries if max_retries is None else max_retries)
        self.recv_window_ms = settings.recv_window_ms if recv_window_ms is None else recv_window_ms
        self.last_latency_ms = 0.0

        self._transport = transport
        self._sleep = sleep
        self._client: Optional[httpx.Client] = None
        self.logger = get_logger(__name__)

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_key and self.api_secret)

    # ============================================
    # Session Management
    # ============================================

    def open(self) -> None:
        """Create the underlying HTTP session (no-op if already open)."""
        if self._client is None:
            self._client = httpx.Client(base_url=self.base_url, timeout=self.timeout, transport=self._transport)
            self.logger.debug(f"BinanceAPIClient session created for {self.base_url}")

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None
            self.logger.debug("BinanceAPIClient session closed")

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    # ============================================
    # HTTP Request Handler with Retry Logic
    # ============================================

    def _sign(self, params: Dict[str, Any]) -> str:
        """Return the signed query string for ``params``."""
        query = urlencode(params)
        signature = hmac.new(self.api_secret.encode(), query.encode(), hashlib.sha256).hexdigest()
        return f"{query}&signature={signature}"

    def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        signed: bool = False
    ) -> Any:
        """
        Send one request to Binance and return the decoded JSON body.

        Args:
            method: HTTP method ("GET", "POST", "DELETE")
            path: Endpoint path below /api/v3 (e.g., "/ticker/24hr")
            params: Query parameters
            signed: Add timestamp/recvWindow/signature and the API key header

        Returns:
            Decoded JSON response

        Raises:
            TransportError: Timeout, connection failure, 5xx, or retries exhausted
            MalformedResponseError: Body is not JSON
            ExchangeRejection: 4xx response (carries Binance's error code)

        Rate Limit Handling:
            429 / 418 / 503 are retried after 1.5s * attempt, up to max_retries.
        """
        if signed and not self.has_credentials:
            raise ExchangeRejection("API key and secret are required for this endpoint", context=path)

        self.open()
        headers = {"X-MBX-APIKEY": self.api_key} if signed else {}

        for attempt in range(1, self.max_retries + 1):
            query_params = dict(params or {})
            if signed:
                query_params["timestamp"] = current_utc_millis()
                query_params["recvWindow"] = self.recv_window_ms
                query = self._sign(query_params)
            else:
                query = urlencode(query_params)

            url = f"{self.API_PREFIX}{path}"
            if query:
                url = f"{url}?{query}"

            log_api_request(EXCHANGE_NAME, method, path, params)
            started = time.perf_counter()
            try:
                resp = self._client.request(method, url, headers=headers)
            except httpx.TimeoutException as e:
                raise TransportError(f"Timeout after {self.timeout:g}s: {e}", context=path) from e
            except httpx.HTTPError as e:
                raise TransportError(f"Request failed: {e}", context=path) from e

            self.last_latency_ms = (time.perf_counter() - started) * 1000.0
            log_api_response(EXCHANGE_NAME, path, resp.status_code, self.last_latency_ms)

            if resp.status_code in self.RETRY_STATUSES:
                if attempt < self.max_retries:
                    delay = 1.5 * attempt
                    self.logger.warning(
                        f"Rate limited (HTTP {resp.status_code}) on {path}. "
                        f"Retrying in {delay:.1f}s... (attempt {attempt}/{self.max_retries})"
                    )
                    self._sleep(delay)
                    continue
                raise TransportError(
                    f"HTTP {resp.status_code} after {self.max_retries} attempts",
                    context=path,
                    status=resp.status_code
                )

            if resp.status_code >= 500:
                raise TransportError(f"HTTP {resp.status_code}: {resp.text[:200]}", context=path, status=resp.status_code)

            try:
                data = resp.json()
            except ValueError as e:
                raise MalformedResponseError(f"Invalid JSON (HTTP {resp.status_code}): {resp.text[:200]}", context=path) from e

            if resp.status_code >= 400:
                code = data.get("code") if isinstance(data, dict) else None
                msg = data.get("msg", resp.text) if isinstance(data, dict) else resp.text
                raise ExchangeRejection(msg, context=path, code=code, status=resp.status_code)

            return data

        raise TransportError(f"No response after {self.max_retries} attempts", context=path)

    # ============================================
    # General Endpoints
    # ============================================

    def ping(self) -> bool:
        """
        Test connectivity.

        Binance Endpoint:
            GET /api/v3/ping  ->  {}
        """
        self._request("GET", "/ping")
        return True

    def get_server_time(self) -> datetime:
        data = self._request("GET", "/time")
        try:
            return to_utc_datetime(data["serverTime"])
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise MalformedResponseError(f"Unexpected server time payload: {e}", context="/time") from e

    def get_exchange_info(self) -> Dict[str, Any]:
        """Raw /exchangeInfo payload (symbols, filters, rate limits)."""
        return self._request("GET", "/exchangeInfo")

    def get_trading_symbols(self) -> List[str]:
        """Symbols currently in TRADING status."""
        info = self.get_exchange_info()
        try:
            return [s["symbol"] for s in info.get("symbols", []) if s.get("status") == "TRADING"]
        except (AttributeError, KeyError, TypeError) as e:
            raise MalformedResponseError(f"Unexpected exchangeInfo payload: {e}", context="/exchangeInfo") from e

    def get_min_order_sizes(self) -> Dict[str, float]:
        """
        Minimum order quantity per symbol from the LOT_SIZE filter.

        Response Format (excerpt):
            {"symbols": [{"symbol": "BTCUSDT",
                          "filters": [{"filterType": "LOT_SIZE", "minQty": "0.00001000", ...}]}]}
        """
        info = self.get_exchange_info()
        sizes: Dict[str, float] = {}
        try:
            for symbol_info in info.get("symbols", []):
                for f in symbol_info.get("filters", []):
                    if f.get("filterType") == "LOT_SIZE":
                        sizes[symbol_info["symbol"]] = float(f["minQty"])
                        break
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise MalformedResponseError(f"Unexpected exchangeInfo payload: {e}", context="/exchangeInfo") from e
        return sizes

    # ============================================
    # Market Data Endpoints
    # ============================================

    def get_ticker(self, symbol: str) -> TickSnapshot:
        """
        Fetch the 24h rolling ticker with best bid/ask.

        Binance Endpoint:
            GET /api/v3/ticker/24hr?symbol=BTCUSDT

        Response Format (excerpt):
            {
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

        Example:
            >>> tick = client.get_ticker("BTCUSDT")
            >>> print(f"Last: ${tick.last_price:,.2f}")
        """
        symbol = symbol.upper()
        data = self._request("GET", "/ticker/24hr", {"symbol": symbol})
        try:
            return TickSnapshot(
                exchange=EXCHANGE_NAME,
                symbol=data.get("symbol", symbol),
                last_price=float(data["lastPrice"]),
                bid_price=float(data["bidPrice"]),
                ask_price=float(data["askPrice"]),
                volume_24h=float(data.get("volume", 0.0)),
                high_24h=float(data.get("highPrice", 0.0)),
                low_24h=float(data.get("lowPrice", 0.0)),
                price_change_24h=float(data.get("priceChange", 0.0)),
                price_change_percent_24h=float(data.get("priceChangePercent", 0.0)),
                timestamp=current_utc_datetime(),
                server_time=to_utc_datetime(data["closeTime"]) if data.get("closeTime") else None
            )
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise MalformedResponseError(f"Unexpected ticker payload: {e}", context=f"ticker {symbol}") from e

    def get_order_book(self, symbol: str, limit: int = 20) -> OrderBookSnapshot:
        """
        Fetch order-book depth.

        Args:
            symbol: Trading pair
            limit: Levels wanted per side; rounded up to the next limit
                   Binance accepts, then trimmed back

        Binance Endpoint:
            GET /api/v3/depth?symbol=BTCUSDT&limit=20

        Response Format:
            {
              "lastUpdateId": 1027024,
              "bids": [["4.00000000", "431.00000000"]],
              "asks": [["4.00000200", "12.00000000"]]
            }
        """
        symbol = symbol.upper()
        request_limit = next((n for n in DEPTH_LIMITS if n >= limit), DEPTH_LIMITS[-1])
        data = self._request("GET", "/depth", {"symbol": symbol, "limit": request_limit})
        try:
            bids = tuple(OrderBookLevel(price=float(p), quantity=float(q)) for p, q in data["bids"][:limit])
            asks = tuple(OrderBookLevel(price=float(p), quantity=float(q)) for p, q in data["asks"][:limit])
            return OrderBookSnapshot(
                exchange=EXCHANGE_NAME,
                symbol=symbol,
                bids=bids,
                asks=asks,
                last_update_id=data.get("lastUpdateId"),
                timestamp=current_utc_datetime()
            )
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise MalformedResponseError(f"Unexpected depth payload: {e}", context=f"depth {symbol}") from e

    def get_recent_trades(self, symbol: str, limit: int = 500) -> List[Dict[str, Any]]:
        """
        Fetch recent public trades.

        Binance Endpoint:
            GET /api/v3/trades?symbol=BTCUSDT&limit=500

        Returns:
            List of {"id", "price", "quantity", "time", "is_buyer_maker"} dicts, oldest first
        """
        symbol = symbol.upper()
        data = self._request("GET", "/trades", {"symbol": symbol, "limit": min(limit, 1000)})
        try:
            return [
                {
                    "id": item["id"],
                    "price": float(item["price"]),
                    "quantity": float(item["qty"]),
                    "time": to_utc_datetime(item["time"]),
                    "is_buyer_maker": bool(item.get("isBuyerMaker", False)),
                }
                for item in data
            ]
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise MalformedResponseError(f"Unexpected trades payload: {e}", context=f"trades {symbol}") from e

    # ============================================
    # Trading Endpoints (signed)
    # ============================================

    def place_order(
        self,
        symbol: str,
        side: OrderSide,
        order_type: OrderType,
        quantity: float,
        price: Optional[float] = None
    ) -> OrderRecord:
        """
        Submit an order.

        LIMIT orders are sent good-till-cancelled. The FULL response type is
        requested so fills (and their commission) come back immediately.

        Binance Endpoint:
            POST /api/v3/order (signed)
        """
        params: Dict[str, Any] = {
            "symbol": symbol.upper(),
            "side": side.value,
            "type": order_type.value,
            "quantity": format_decimal(quantity),
            "newOrderRespType": "FULL",
        }
        if order_type is OrderType.LIMIT:
            params["timeInForce"] = "GTC"
            params["price"] = format_decimal(price or 0.0)

        data = self._request("POST", "/order", params, signed=True)
        return self.parse_order(data, price=price)

    def cancel_order(self, symbol: str, order_id: str) -> OrderRecord:
        """DELETE /api/v3/order (signed). Raises ExchangeRejection code -2011 for unknown orders."""
        data = self._request("DELETE", "/order", {"symbol": symbol.upper(), "orderId": order_id}, signed=True)
        return self.parse_order(data)

    def cancel_open_orders(self, symbol: str) -> List[OrderRecord]:
        """DELETE /api/v3/openOrders (signed); returns the cancelled orders."""
        data = self._request("DELETE", "/openOrders", {"symbol": symbol.upper()}, signed=True)
        return [self.parse_order(item) for item in data if "orderId" in item]

    def get_open_orders(self, symbol: Optional[str] = None) -> List[OrderRecord]:
        """GET /api/v3/openOrders (signed), optionally for one symbol."""
        params = {"symbol": symbol.upper()} if symbol else None
        data = self._request("GET", "/openOrders", params, signed=True)
        return [self.parse_order(item) for item in data]

    def get_order(self, symbol: str, order_id: str) -> OrderRecord:
        """GET /api/v3/order (signed)."""
        data = self._request("GET", "/order", {"symbol": symbol.upper(), "orderId": order_id}, signed=True)
        return self.parse_order(data)

    # ============================================
    # Account Endpoints (signed)
    # ============================================

    def get_account(self) -> Dict[str, Any]:
        return self._request("GET", "/account", signed=True)

    def get_balances(self) -> List[Balance]:
        """
        Non-zero balances from GET /api/v3/account.

        Response Format (excerpt):
            {"makerCommission": 10, "takerCommission": 10,
             "balances": [{"asset": "BTC", "free": "0.5", "locked": "0.1"}]}
        """
        data = self.get_account()
        try:
            balances = [
                Balance(asset=item["asset"], free=float(item["free"]), locked=float(item["locked"]))
                for item in data["balances"]
            ]
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise MalformedResponseError(f"Unexpected account payload: {e}", context="/account") from e
        return [b for b in balances if b.total > 0]

    def get_trading_fees(self) -> Dict[str, float]:
        """Maker/taker commission as fractions (Binance reports them in bps)."""
        data = self.get_account()
        try:
            return {
                "maker": float(data["makerCommission"]) / 10000.0,
                "taker": float(data["takerCommission"]) / 10000.0,
            }
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise MalformedResponseError(f"Unexpected account payload: {e}", context="/account") from e

    # ============================================
    # Normalization
    # ============================================

    @staticmethod
    def parse_order(data: Dict[str, Any], price: Optional[float] = None) -> OrderRecord:
        """
        Normalize a Binance order payload.

        ``remaining_quantity`` is origQty - executedQty; commission is summed
        over ``fills`` when present.

        Raises:
            MalformedResponseError: Required fields missing or unparsable
        """
        try:
            status_raw = data.get("status", "NEW")
            status = _STATUS_ALIASES.get(status_raw) or OrderStatus(status_raw)
            quantity = float(data["origQty"])
            filled = float(data.get("executedQty", 0.0))

            commission = 0.0
            commission_asset = None
            for fill in data.get("fills", []):
                commission += float(fill.get("commission", 0.0))
                commission_asset = commission_asset or fill.get("commissionAsset")

            order_price = float(data.get("price") or 0.0)
            if order_price == 0 and price:
                order_price = price

            created = data.get("time") or data.get("transactTime") or 0
            updated = data.get("updateTime") or data.get("transactTime") or created

            return OrderRecord(
                order_id=str(data["orderId"]),
                client_order_id=data.get("clientOrderId"),
                exchange=EXCHANGE_NAME,
                symbol=data["symbol"],
                side=OrderSide(data["side"]),
                type=OrderType(data.get("type", "LIMIT")),
                status=status,
                quantity=quantity,
                price=order_price,
                filled_quantity=filled,
                remaining_quantity=max(quantity - filled, 0.0),
                commission=commission,
                commission_asset=commission_asset,
                created_at=to_utc_datetime(created),
                updated_at=to_utc_datetime(updated)
            )
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise MalformedResponseError(f"Unexpected order payload: {e}", context="order") from e
