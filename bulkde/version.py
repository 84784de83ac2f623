"""Version information for bulkde."""

__version__ = "0.3.0"
