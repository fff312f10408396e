"""
Normalized Data Schemas

This module defines the Pydantic models shared by every connector, the cache,
the ingestion loop and the arbitrage detector.

Key Principle:
    Whatever venue the data comes from, it is normalized into these schemas
    before it reaches the cache, so consumers never see exchange-specific
    payloads.

Models:
    - TickSnapshot: Latest price/volume summary for one (exchange, symbol)
    - OrderBookLevel / OrderBookSnapshot: Depth entries, best level first
    - OrderRecord: Broker-reported order state
    - Balance: Free/locked amounts of one asset
    - ArbitrageOpportunity: One ranked cross-venue price gap

Snapshot models are frozen. A snapshot handed to a callback or returned from
the cache can therefore never change underneath its reader; "replacing" an
entry always means storing a new object.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator, model_validator

from core.utils.time import EPOCH

QUANTITY_EPSILON = 1e-9


# ============================================
# Enumerations
# ============================================

class OrderSide(str, Enum):
    BUY = "BUY"
    SELL = "SELL"

    @classmethod
    def coerce(cls, value: Union["OrderSide", str]) -> "OrderSide":
        """Accept an OrderSide or a case-insensitive string ("buy", "SELL")."""
        if isinstance(value, cls):
            return value
        return cls(str(value).upper())


class OrderType(str, Enum):
    LIMIT = "LIMIT"
    MARKET = "MARKET"
    STOP_LOSS = "STOP_LOSS"
    STOP_LOSS_LIMIT = "STOP_LOSS_LIMIT"
    TAKE_PROFIT = "TAKE_PROFIT"
    TAKE_PROFIT_LIMIT = "TAKE_PROFIT_LIMIT"
    LIMIT_MAKER = "LIMIT_MAKER"


class OrderStatus(str, Enum):
    NEW = "NEW"
    PARTIALLY_FILLED = "PARTIALLY_FILLED"
    FILLED = "FILLED"
    CANCELED = "CANCELED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"

    @property
    def is_terminal(self) -> bool:
        return self in (OrderStatus.FILLED, OrderStatus.CANCELED, OrderStatus.REJECTED, OrderStatus.EXPIRED)

    @property
    def freezes_remaining(self) -> bool:
        """Statuses whose remaining quantity may stop short of zero."""
        return self in (OrderStatus.CANCELED, OrderStatus.REJECTED, OrderStatus.EXPIRED)


class RiskTier(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


# ============================================
# Base Market Data Model
# ============================================

class BaseMarketModel(BaseModel):
    """
    Common fields of every market snapshot: source exchange, symbol and event time.

    Exchange identifiers are normalized to lowercase and symbols to uppercase
    so cache keys built from different venues line up.
    """

    model_config = ConfigDict(frozen=True)

    exchange: str = Field(
        ...,
        description="Source exchange identifier (lowercase)",
        examples=["binance", "sim_a"]
    )

    symbol: str = Field(
        ...,
        description="Trading pair symbol in uppercase",
        examples=["BTCUSDT", "ETHUSDT"]
    )

    timestamp: datetime = Field(
        default=EPOCH,
        description="Event timestamp in UTC"
    )

    @field_validator('symbol')
    @classmethod
    def validate_symbol(cls, v: str) -> str:
        """Ensure symbol is uppercase"""
        return v.upper()

    @field_validator('exchange')
    @classmethod
    def validate_exchange(cls, v: str) -> str:
        """Ensure exchange is lowercase"""
        return v.lower()


# ============================================
# Tick Snapshot
# ============================================

class TickSnapshot(BaseMarketModel):
    """
    Point-in-time price/volume summary for one symbol on one exchange.

    Each poll or stream update produces a new snapshot that replaces the prior
    one for the same (exchange, symbol) key.

    Notes:
        - bid <= last <= ask is NOT enforced. Feeds can report crossed or
          locked books and those states must be representable.
        - A never-updated key is represented by ``TickSnapshot.empty(...)``.
    """

    last_price: float = Field(default=0.0, ge=0, description="Last traded price")
    bid_price: float = Field(default=0.0, ge=0, description="Best bid price")
    ask_price: float = Field(default=0.0, ge=0, description="Best ask price")
    volume_24h: float = Field(default=0.0, ge=0, description="Rolling 24h base volume")
    high_24h: float = Field(default=0.0, ge=0, description="Rolling 24h high")
    low_24h: float = Field(default=0.0, ge=0, description="Rolling 24h low")
    price_change_24h: float = Field(default=0.0, description="Absolute 24h price change")
    price_change_percent_24h: float = Field(default=0.0, description="24h price change in percent")
    server_time: Optional[datetime] = Field(default=None, description="Venue-side timestamp, if reported")

    @classmethod
    def empty(cls, exchange: str, symbol: str) -> "TickSnapshot":
        """Zero snapshot returned for keys that have never been updated."""
        return cls(exchange=exchange, symbol=symbol)

    @property
    def is_empty(self) -> bool:
        return self.last_price == 0 and self.bid_price == 0 and self.ask_price == 0

    @property
    def spread(self) -> float:
        """Ask minus bid; negative when the book is crossed."""
        return self.ask_price - self.bid_price

    def with_top_of_book(self, bid: float, ask: float, timestamp: datetime) -> "TickSnapshot":
        """Return a new snapshot with bid/ask replaced (streaming top-of-book update)."""
        return self.model_copy(update={"bid_price": bid, "ask_price": ask, "timestamp": timestamp})


# ============================================
# Order Book Snapshot
# ============================================

class OrderBookLevel(BaseModel):
    """One price level: price and resting quantity."""

    model_config = ConfigDict(frozen=True)

    price: float = Field(..., ge=0)
    quantity: float = Field(..., ge=0)


class OrderBookSnapshot(BaseMarketModel):
    """
    Depth snapshot for one (exchange, symbol).

    Bids are ordered highest price first, asks lowest price first, so index 0
    on either side is top-of-book.
    """

    bids: Tuple[OrderBookLevel, ...] = Field(default=())
    asks: Tuple[OrderBookLevel, ...] = Field(default=())
    last_update_id: Optional[int] = Field(default=None, description="Venue sequence number, if any")

    @property
    def best_bid(self) -> Optional[OrderBookLevel]:
        return self.bids[0] if self.bids else None

    @property
    def best_ask(self) -> Optional[OrderBookLevel]:
        return self.asks[0] if self.asks else None

    def bid_depth(self, levels: int = 1) -> float:
        """Total quantity on the top ``levels`` bid levels."""
        return sum(level.quantity for level in self.bids[:levels])

    def ask_depth(self, levels: int = 1) -> float:
        """Total quantity on the top ``levels`` ask levels."""
        return sum(level.quantity for level in self.asks[:levels])


# ============================================
# Order Record
# ============================================

class OrderRecord(BaseModel):
    """
    Broker-reported state of one order.

    Invariant:
        filled_quantity + remaining_quantity == quantity for every observed
        state, except CANCELED / REJECTED / EXPIRED where remaining_quantity
        is the last broker-reported value and may stop short of zero.

    ``remaining_quantity`` defaults to ``quantity - filled_quantity`` when the
    venue does not report it.
    """

    model_config = ConfigDict(frozen=True)

    order_id: str
    client_order_id: Optional[str] = None
    exchange: str = ""
    symbol: str
    side: OrderSide
    type: OrderType = OrderType.LIMIT
    status: OrderStatus = OrderStatus.NEW
    quantity: float = Field(..., ge=0)
    price: float = Field(default=0.0, ge=0)
    filled_quantity: float = Field(default=0.0, ge=0)
    remaining_quantity: float = Field(default=0.0, ge=0)
    commission: float = Field(default=0.0, ge=0)
    commission_asset: Optional[str] = None
    created_at: datetime = EPOCH
    updated_at: datetime = EPOCH

    @model_validator(mode="before")
    @classmethod
    def _default_remaining(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("remaining_quantity") is None:
            data = dict(data)
            quantity = float(data.get("quantity", 0.0))
            filled = float(data.get("filled_quantity") or 0.0)
            data["remaining_quantity"] = max(quantity - filled, 0.0)
        return data

    @model_validator(mode="after")
    def _check_quantities(self) -> "OrderRecord":
        tolerance = QUANTITY_EPSILON * max(1.0, self.quantity)
        if self.filled_quantity > self.quantity + tolerance:
            raise ValueError(
                f"filled_quantity {self.filled_quantity} exceeds quantity {self.quantity}"
            )
        if not self.status.freezes_remaining:
            drift = abs(self.filled_quantity + self.remaining_quantity - self.quantity)
            if drift > tolerance:
                raise ValueError(
                    f"filled ({self.filled_quantity}) + remaining ({self.remaining_quantity}) "
                    f"must equal quantity ({self.quantity}) for status {self.status.value}"
                )
        return self

    @property
    def is_open(self) -> bool:
        return not self.status.is_terminal

    def apply_fill(self, quantity: float, at: Optional[datetime] = None) -> "OrderRecord":
        """
        Return a new record with ``quantity`` more filled.

        Status moves to PARTIALLY_FILLED, or FILLED once nothing remains.

        Raises:
            ValueError: Non-positive fill, terminal order, or over-fill
        """
        if quantity <= 0:
            raise ValueError(f"Fill quantity must be positive, got {quantity}")
        if self.status.is_terminal:
            raise ValueError(f"Cannot fill order {self.order_id} in status {self.status.value}")

        tolerance = QUANTITY_EPSILON * max(1.0, self.quantity)
        filled = self.filled_quantity + quantity
        if filled > self.quantity + tolerance:
            raise ValueError(
                f"Fill of {quantity} overfills order {self.order_id} "
                f"({self.filled_quantity}/{self.quantity} filled)"
            )

        remaining = self.quantity - filled
        if remaining <= tolerance:
            filled, remaining, status = self.quantity, 0.0, OrderStatus.FILLED
        else:
            status = OrderStatus.PARTIALLY_FILLED

        updates: Dict[str, Any] = {
            "filled_quantity": filled,
            "remaining_quantity": remaining,
            "status": status,
            "updated_at": at or self.updated_at,
        }
        return type(self)(**{**self.model_dump(), **updates})

    def with_status(self, status: OrderStatus, at: Optional[datetime] = None) -> "OrderRecord":
        """Return a copy in ``status`` (used for cancels and rejections)."""
        return type(self)(**{**self.model_dump(), "status": status, "updated_at": at or self.updated_at})


# ============================================
# Balance
# ============================================

class Balance(BaseModel):
    """
    Account balance of one asset.

    ``total`` is computed from ``free + locked`` on every access, so it can
    never drift from its parts.
    """

    model_config = ConfigDict(frozen=True)

    asset: str
    free: float = Field(default=0.0, ge=0, description="Available for trading")
    locked: float = Field(default=0.0, ge=0, description="Reserved by open orders")

    @field_validator('asset')
    @classmethod
    def validate_asset(cls, v: str) -> str:
        return v.upper()

    @computed_field
    @property
    def total(self) -> float:
        return self.free + self.locked

    def with_amounts(self, free: Optional[float] = None, locked: Optional[float] = None) -> "Balance":
        """Return an updated copy; unspecified amounts are kept."""
        return Balance(
            asset=self.asset,
            free=self.free if free is None else free,
            locked=self.locked if locked is None else locked,
        )


# ============================================
# Arbitrage Opportunity
# ============================================

class ArbitrageOpportunity(BaseModel):
    """
    One cross-exchange price gap: buy at ``buy_exchange``'s ask, sell at
    ``sell_exchange``'s bid.

    profit_bps = (sell_price - buy_price) / buy_price * 10000
    """

    model_config = ConfigDict(frozen=True)

    symbol: str
    buy_exchange: str
    sell_exchange: str
    buy_price: float
    sell_price: float
    profit_bps: float
    max_quantity: float = 0.0
    confidence_score: float = Field(default=0.0, ge=0, le=1)
    execution_time_estimate_ms: float = 0.0
    is_executable: bool = False
    risk_tier: RiskTier = RiskTier.HIGH
    detected_at: datetime = EPOCH

    @property
    def pair_id(self) -> str:
        return f"{self.buy_exchange}->{self.sell_exchange}"

    @property
    def expected_profit(self) -> float:
        """Quote-currency profit if ``max_quantity`` is bought and sold at the quoted prices."""
        return self.max_quantity * (self.sell_price - self.buy_price)
