"""
Test Suite

Structure:
- tests/unit/: Tests for individual components (schemas, buffers, connectors, manager, API)

Everything runs offline: Binance HTTP traffic goes through httpx.MockTransport
and the manager is exercised with simulated connectors.
"""
