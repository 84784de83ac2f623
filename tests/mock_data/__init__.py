"""
Mock data generation utilities for the bulkde test suite.

Synthetic experiments follow a negative binomial model with a known
dispersion trend and known differentially expressed genes.
"""

from .base import (
    MEDIUM_DATASET_CONFIG,
    SMALL_DATASET_CONFIG,
    TREND_DATASET_CONFIG,
    MockDataConfig,
)
from .factories import (
    BulkRNASeqDataFactory,
    GeneSetCollectionFactory,
    SyntheticExperiment,
    toy_counts,
    toy_metadata,
)

__all__ = [
    "MockDataConfig",
    "SMALL_DATASET_CONFIG",
    "MEDIUM_DATASET_CONFIG",
    "TREND_DATASET_CONFIG",
    "BulkRNASeqDataFactory",
    "GeneSetCollectionFactory",
    "SyntheticExperiment",
    "toy_counts",
    "toy_metadata",
]
