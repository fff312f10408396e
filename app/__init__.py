"""
FastAPI Application Package

Read-only HTTP snapshot API over the live market data manager.
"""
