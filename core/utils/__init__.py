"""
Core Utilities Package

Modules:
    - time: Timestamp conversion and snapshot-age helpers
"""

from core.utils.time import age_ms, current_utc_datetime, current_utc_millis, to_utc_datetime

__all__ = ["age_ms", "current_utc_datetime", "current_utc_millis", "to_utc_datetime"]
