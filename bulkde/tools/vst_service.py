"""
Variance stabilizing transformation service.

The transform is the closed-form integral of 1/sqrt(mu + alpha(mu) mu^2)
for the dispersion trend alpha(mu) = a0 + a1 / mu, scaled to behave like
log2 for large counts. It is meant for visualization and sample distances,
never for hypothesis testing.
"""

from typing import Any, Dict, Optional, Tuple

import anndata
import numpy as np
import pandas as pd
from scipy.spatial.distance import pdist, squareform
from sklearn.decomposition import PCA

from bulkde.config import DispersionSettings
from bulkde.tools.dispersion_service import DispersionService
from bulkde.utils.logger import get_logger

logger = get_logger(__name__)


def parametric_vst(normed_counts: np.ndarray, a0: float, a1: float) -> np.ndarray:
    """
    Apply the variance stabilizing transform for a parametric trend.

    Args:
        normed_counts: Normalized counts (any shape)
        a0: Asymptotic dispersion of the trend
        a1: Extra-Poisson coefficient of the trend

    Returns:
        np.ndarray: Transformed values on an approximately log2 scale
    """
    q = np.asarray(normed_counts, dtype=float)
    return np.log2(
        (1.0 + a1 + 2.0 * a0 * q + 2.0 * np.sqrt(a0 * q * (1.0 + a1 + a0 * q)))
        / (4.0 * a0)
    )


class VSTService:
    """
    Service for variance stabilized expression values.
    """

    def __init__(self, dispersion_settings: Optional[DispersionSettings] = None):
        """
        Initialize the VST service.

        Args:
            dispersion_settings: Used only when a trend has to be fitted
        """
        self.dispersion_settings = dispersion_settings or DispersionSettings()

    def transform(
        self, adata: anndata.AnnData, trend: Optional[Dict[str, float]] = None
    ) -> Tuple[anndata.AnnData, Dict[str, Any]]:
        """
        Store variance stabilized values in adata.layers["vst"].

        Args:
            adata: Dataset with layers["normed_counts"]
            trend: Dict with a0 and a1; defaults to adata.uns["dispersion_trend"],
                which is fitted first when absent

        Returns:
            Tuple[anndata.AnnData, Dict[str, Any]]: Updated copy and stats

        Raises:
            InsufficientDataError: If a trend has to be fitted and cannot be
        """
        if trend is None:
            if "dispersion_trend" not in adata.uns:
                logger.info("No dispersion trend stored; fitting one for the VST")
                dispersion_service = DispersionService(self.dispersion_settings)
                adata, _ = dispersion_service.estimate_dispersions(adata)
            trend = adata.uns["dispersion_trend"]

        adata = adata.copy()
        a0, a1 = float(trend["a0"]), float(trend["a1"])
        normed = np.asarray(adata.layers["normed_counts"], dtype=float)
        adata.layers["vst"] = parametric_vst(normed, a0, a1)

        stats = {
            "vst_min": float(adata.layers["vst"].min()),
            "vst_max": float(adata.layers["vst"].max()),
            "a0": a0,
            "a1": a1,
        }
        logger.info(
            f"VST applied to {adata.n_vars} genes (range {stats['vst_min']:.2f}-"
            f"{stats['vst_max']:.2f})"
        )
        return adata, stats

    def sample_distances(self, adata: anndata.AnnData) -> pd.DataFrame:
        """Euclidean distances between samples on the VST scale."""
        distances = squareform(pdist(np.asarray(adata.layers["vst"]), metric="euclidean"))
        return pd.DataFrame(
            distances, index=adata.obs_names.copy(), columns=adata.obs_names.copy()
        )

    def pca(
        self,
        adata: anndata.AnnData,
        n_components: int = 2,
        n_top_genes: int = 500,
    ) -> Tuple[anndata.AnnData, Dict[str, Any]]:
        """
        PCA of samples on the most variable VST genes.

        Stores adata.obsm["X_pca"] and adata.uns["pca"].

        Args:
            adata: Dataset with layers["vst"]
            n_components: Number of principal components
            n_top_genes: Number of highest-variance genes used

        Returns:
            Tuple[anndata.AnnData, Dict[str, Any]]: Updated copy and stats
        """
        adata = adata.copy()
        vst = np.asarray(adata.layers["vst"], dtype=float)
        variances = vst.var(axis=0)
        n_top = min(n_top_genes, adata.n_vars)
        top = np.argsort(-variances, kind="mergesort")[:n_top]
        n_components = min(n_components, adata.n_obs, n_top)

        pca = PCA(n_components=n_components, svd_solver="full")
        adata.obsm["X_pca"] = pca.fit_transform(vst[:, top])
        adata.uns["pca"] = {
            "variance_ratio": pca.explained_variance_ratio_.tolist(),
            "genes": adata.var_names[top].tolist(),
        }

        stats = {
            "n_components": int(n_components),
            "n_genes_used": int(n_top),
            "variance_ratio": pca.explained_variance_ratio_.tolist(),
        }
        logger.info(
            f"PCA on {n_top} genes: explained variance "
            f"{[round(v, 3) for v in stats['variance_ratio']]}"
        )
        return adata, stats
