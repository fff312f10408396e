"""
FastAPI Application - Multi-Exchange Market Data Gateway

Read-only HTTP view over the live market data manager.

Exchanges:
    - Binance Spot (REST polling, optional bookTicker stream)
    - Any number of simulated venues (SIMULATED_EXCHANGES)

Features:
    - Latest ticks and order books per exchange (served from the cache)
    - Cross-exchange tick comparison per symbol
    - Account balances and open orders (exchanges with credentials)
    - Best prices, mean spread and a merged order book per symbol
    - Asset totals across exchanges
    - Cross-exchange arbitrage opportunities
    - Connection, rate-limit and ingestion statistics

Usage:
    uvicorn app.main:app --host 0.0.0.0 --port 8000

Docs:
    - Swagger: http://localhost:8000/docs
    - ReDoc: http://localhost:8000/redoc
"""

from contextlib import asynccontextmanager
from typing import Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware

from core.config import Settings, settings, validate_configuration
from core.logging import logger
from core.market_data_manager import LiveMarketDataManager
from core.schemas import ArbitrageOpportunity, Balance, OrderBookSnapshot, OrderRecord, TickSnapshot
from exchanges.binance import BinanceConnector
from exchanges.simulated import SimulatedConnector


def build_manager(config: Settings = settings) -> LiveMarketDataManager:
    """
    Create the manager with the configured connectors.

    Binance is always registered. One SimulatedConnector is added per name
    in SIMULATED_EXCHANGES.
    """
    connectors = [BinanceConnector(config=config)]
    connectors.extend(SimulatedConnector(name, config=config) for name in config.simulated_exchanges_list)
    return LiveMarketDataManager(connectors, settings=config)


# ============================================
# Lifespan Management
# ============================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start ingestion on startup and join every ingestion thread on shutdown."""
    logger.info("=== Application Starting ===")
    try:
        validate_configuration()
        manager.subscribe(settings.symbols_list, settings.order_book_depth)
        manager.start()
        logger.info("=== Started Successfully ===")
    except Exception as e:
        logger.error(f"Startup failed: {e}")
        raise

    yield

    logger.info("=== Shutting Down ===")
    try:
        manager.close()
        logger.info("=== Shutdown Complete ===")
    except Exception as e:
        logger.error(f"Shutdown error: {e}")


# ============================================
# FastAPI Application
# ============================================

app = FastAPI(
    title="Arbgate Market Data Gateway",
    description=(
        "Live multi-exchange market data and cross-exchange arbitrage.\n\n"
        "## REST Endpoints\n"
        "- `GET /{exchange}/ticker/{symbol}` - Latest cached tick\n"
        "- `GET /{exchange}/orderbook/{symbol}` - Latest cached order book\n"
        "- `GET /{exchange}/balances` - Account balances (exchanges with credentials)\n"
        "- `GET /{exchange}/orders` - Open orders (optional ?symbol=)\n"
        "- `GET /ticks/{symbol}` - Latest tick from every exchange\n"
        "- `GET /arbitrage` - Current opportunities (optional ?min_profit_bps=)\n"
        "- `GET /exchanges` - Exchanges, connection state and capabilities\n"
        "- `GET /stats` - Ingestion statistics\n"
        "- `GET /health` - Health check\n"
    ),
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"]
)

manager = build_manager()  # Global market data manager


def _exchange_or_404(exchange: str) -> str:
    if not manager.has_exchange(exchange):
        raise HTTPException(
            status_code=404,
            detail=f"Exchange '{exchange}' is not supported. Available exchanges: {', '.join(manager.list_exchanges())}"
        )
    return exchange.lower()


# ============================================
# System Endpoints
# ============================================

@app.get("/", tags=["System"])
async def root():
    """API information and registered exchanges."""
    return {
        "name": "Arbgate Market Data Gateway",
        "version": "1.0.0",
        "status": "operational" if manager.is_running() else "stopped",
        "docs": "/docs",
        "exchanges": manager.list_exchanges()
    }


@app.get("/health", tags=["System"])
async def health_check():
    """Connection state of every exchange."""
    connections = manager.get_connection_status()
    return {
        "status": "healthy" if connections and all(connections.values()) else "degraded",
        "running": manager.is_running(),
        "exchanges": connections
    }


@app.get("/exchanges", tags=["System"])
async def list_exchanges():
    """Registered exchanges with status, latency, rate-limit budget and capabilities."""
    status = manager.get_exchange_status()
    return {"exchanges": [{"name": name, **details} for name, details in status.items()]}


@app.get("/stats", tags=["System"])
async def get_stats():
    """Cache sizes, per-exchange counters and deferred polls."""
    return {**manager.get_market_stats(), "deferred": manager.get_deferred()}


# ============================================
# Aggregated Endpoints
# NOTE: must be defined BEFORE generic '/{exchange}/...' routes
# ============================================

@app.get("/ticks/{symbol}", response_model=Dict[str, TickSnapshot], tags=["Market Data"])
async def get_all_ticks(symbol: str):
    """Latest tick for ``symbol`` from every exchange that has one."""
    return manager.get_all_ticks(symbol)


@app.get("/arbitrage", response_model=List[ArbitrageOpportunity], tags=["Arbitrage"])
async def get_arbitrage(
    min_profit_bps: Optional[float] = Query(default=None, ge=0, description="Override the configured threshold")
):
    """Opportunities across connected exchanges, best first."""
    return manager.get_arbitrage_opportunities(min_profit_bps)


@app.get("/aggregate/{symbol}", tags=["Market Data"])
async def get_aggregate(symbol: str):
    """Best buy/sell venue and mean spread across connected exchanges."""
    def best(side: str) -> Optional[Dict[str, object]]:
        found = manager.get_best_price(symbol, side)
        return {"exchange": found[0], "price": found[1]} if found else None

    return {
        "symbol": symbol.upper(),
        "best_buy": best("BUY"),
        "best_sell": best("SELL"),
        "average_spread": manager.get_average_spread(symbol)
    }


@app.get("/aggregate/{symbol}/orderbook", response_model=OrderBookSnapshot, tags=["Market Data"])
async def get_aggregated_order_book(
    symbol: str,
    depth: Optional[int] = Query(default=None, ge=1, description="Levels per side")
):
    """Order books of connected exchanges merged into one."""
    book = manager.get_aggregated_order_book(symbol, depth)
    if book is None:
        raise HTTPException(status_code=404, detail=f"No order book for {symbol.upper()} on any exchange")
    return book


@app.get("/balances/{asset}", tags=["Account"])
async def get_total_balance(asset: str):
    """Free plus locked ``asset`` summed over all exchanges."""
    return {"asset": asset.upper(), "total": manager.get_total_balance(asset)}


# ============================================
# Per-Exchange Endpoints
# ============================================

@app.get("/{exchange}/ticker/{symbol}", response_model=TickSnapshot, tags=["Market Data"])
async def get_ticker(exchange: str, symbol: str):
    """Latest cached tick (all-zero snapshot until the first update arrives)."""
    return manager.get_latest_tick(_exchange_or_404(exchange), symbol)


@app.get("/{exchange}/orderbook/{symbol}", response_model=OrderBookSnapshot, tags=["Market Data"])
async def get_order_book(exchange: str, symbol: str):
    """Latest cached order book."""
    book = manager.get_order_book(_exchange_or_404(exchange), symbol)
    if book is None:
        raise HTTPException(status_code=404, detail=f"No order book for {symbol.upper()} on {exchange}")
    return book


@app.get("/{exchange}/balances", response_model=List[Balance], tags=["Account"])
async def get_balances(exchange: str):
    """Balances from the last account refresh."""
    exchange = _exchange_or_404(exchange)
    if not manager.get_exchange(exchange).supports("account"):
        raise HTTPException(status_code=400, detail=f"{exchange} has no account access (missing credentials?)")
    return manager.get_account_balances(exchange)


@app.get("/{exchange}/orders", response_model=List[OrderRecord], tags=["Account"])
async def get_open_orders(
    exchange: str,
    symbol: Optional[str] = Query(default=None, description="Filter by symbol (e.g., BTCUSDT)")
):
    """Open orders known to the gateway."""
    exchange = _exchange_or_404(exchange)
    if not manager.get_exchange(exchange).supports("account"):
        raise HTTPException(status_code=400, detail=f"{exchange} has no account access (missing credentials?)")
    return manager.get_open_orders(exchange, symbol)
