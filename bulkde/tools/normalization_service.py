"""
Size factor normalization service for bulk RNA-seq counts.

Implements the median-of-ratios estimator: every sample is compared with a
pseudo-reference sample built from per-gene geometric means, and its size
factor is the median ratio over genes expressed in every sample.
"""

from typing import Any, Dict, Tuple

import anndata
import numpy as np

from bulkde.core import InsufficientDataError
from bulkde.utils.logger import get_logger

logger = get_logger(__name__)


def median_of_ratios(counts: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Compute median-of-ratios size factors.

    Args:
        counts: Samples x genes raw count matrix

    Returns:
        Tuple[np.ndarray, np.ndarray]: Size factors (geometric mean 1) and the
        boolean mask of genes used as reference

    Raises:
        InsufficientDataError: If every gene has a zero in some sample
    """
    counts = np.asarray(counts, dtype=float)
    reference_genes = (counts > 0).all(axis=0)
    n_reference = int(reference_genes.sum())
    if n_reference == 0:
        raise InsufficientDataError(
            "Cannot estimate size factors: every gene has a zero count in at "
            "least one sample",
            details={"n_genes": int(counts.shape[1]), "n_samples": int(counts.shape[0])},
        )

    log_counts = np.log(counts[:, reference_genes])
    log_geo_means = log_counts.mean(axis=0)
    log_ratios = log_counts - log_geo_means
    log_factors = np.median(log_ratios, axis=1)
    # Center so the geometric mean of the factors is exactly one
    log_factors -= log_factors.mean()
    return np.exp(log_factors), reference_genes


class NormalizationService:
    """
    Stateless service for sequencing-depth normalization.
    """

    def estimate_size_factors(
        self, adata: anndata.AnnData
    ) -> Tuple[anndata.AnnData, Dict[str, Any]]:
        """
        Estimate per-sample size factors and normalized counts.

        Stores adata.obs["size_factors"] and adata.layers["normed_counts"].

        Args:
            adata: Samples x genes dataset with raw counts in layers["counts"]

        Returns:
            Tuple[anndata.AnnData, Dict[str, Any]]: Updated copy and stats

        Raises:
            InsufficientDataError: If no gene is free of zeros
        """
        logger.info(f"Estimating size factors for {adata.n_obs} samples")
        adata = adata.copy()
        counts = np.asarray(adata.layers["counts"], dtype=float)

        size_factors, reference_genes = median_of_ratios(counts)

        adata.obs["size_factors"] = size_factors
        adata.var["size_factor_reference"] = reference_genes
        adata.layers["normed_counts"] = counts / size_factors[:, None]

        stats = {
            "n_reference_genes": int(reference_genes.sum()),
            "size_factor_min": float(size_factors.min()),
            "size_factor_max": float(size_factors.max()),
        }
        logger.info(
            f"Size factors range {stats['size_factor_min']:.3f}-"
            f"{stats['size_factor_max']:.3f} from {stats['n_reference_genes']} "
            f"reference genes"
        )
        return adata, stats
