"""
Exchange Connectors Package

Each venue has its own subpackage. A REST/stream venue such as Binance has:
- api_client.py: Signed REST API logic
- ws_client.py: Streaming producer feeding a RingBuffer
- __init__.py: Connector class implementing ExchangeConnector

The simulated venue is a single in-memory connector used without credentials.
"""
