"""
bulkde core module with the exception hierarchy.

Every service raises one of these (or its own service error deriving from
them) so callers can separate fatal preprocessing failures from recovered
per-gene problems.
"""

from bulkde.core.exceptions import (
    AlignmentError,
    BulkDECoreError,
    ConfigurationError,
    ConvergenceError,
    DesignError,
    IdentifierMappingError,
    InsufficientDataError,
)

__all__ = [
    "BulkDECoreError",
    "AlignmentError",
    "InsufficientDataError",
    "ConvergenceError",
    "IdentifierMappingError",
    "DesignError",
    "ConfigurationError",
]
