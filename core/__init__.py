"""
Core Package

Contains the exchange-agnostic core logic including:
- ExchangeConnector: Abstract base class defining the contract for all venues
- LiveMarketDataManager: Registry plus per-exchange ingestion threads
- MarketDataCache: Thread-safe latest-snapshot store shared by every connector
- RingBuffer / RateLimiter: Stream hand-off buffer and local request budget
- Schemas: Pydantic models for ticks, order books, orders, balances, opportunities

Connectors depend only on this package, so adding a venue never touches the manager.
"""
