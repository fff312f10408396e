"""
Services Package

Analytics that run on top of the market data cache (arbitrage detection).
"""
