"""
Utilities module for the bulkde package.

This module contains logging configuration and small numerical helpers
shared by the analysis services.
"""

from .logger import get_logger, set_log_level
from .multitest import benjamini_hochberg

__all__ = ["get_logger", "set_log_level", "benjamini_hochberg"]
