"""
Core exceptions for the bulkde analysis pipeline.

Fatal errors raised by shared preprocessing (alignment, normalization,
dispersion trend fitting) abort a run. Errors local to one gene or one
gene set are recovered by the services and only surface as NaN fields
and counters in the returned statistics.
"""

from typing import Any, Dict, Optional


class BulkDECoreError(Exception):
    """Base exception for all bulkde core errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def __str__(self):
        return self.message


class AlignmentError(BulkDECoreError):
    """
    Raised when sample identifiers differ between counts and metadata.

    Attributes:
        details: Contains:
            - missing_in_metadata: Count columns without a metadata row
            - missing_in_counts: Metadata rows without a count column
            - duplicated: Duplicated gene or sample identifiers, if any
    """

    pass


class InsufficientDataError(BulkDECoreError):
    """
    Raised when normalization or dispersion estimation cannot proceed.

    Example:
        try:
            adata, stats = normalizer.estimate_size_factors(adata)
        except InsufficientDataError as e:
            print(e.details["n_genes"], "genes, none without zeros")
    """

    pass


class ConvergenceError(BulkDECoreError):
    """
    Raised when an iterative fit does not converge.

    A failed dispersion trend fit is fatal. Per-gene GLM failures are
    caught by the differential tester and reported as NaN rows.
    """

    pass


class IdentifierMappingError(BulkDECoreError):
    """
    Raised when a gene set shares no identifier with the tested genes.

    The enrichment service recovers from it by excluding the set and
    counting it in the run statistics. It never aborts a run.
    """

    pass


class DesignError(BulkDECoreError):
    """Raised when the contrast cannot be built from the sample metadata."""

    pass


class ConfigurationError(BulkDECoreError):
    """Raised when pipeline configuration values are invalid."""

    pass
