"""Multiple-testing helpers shared by the differential and enrichment services."""

import numpy as np
from statsmodels.stats.multitest import multipletests


def benjamini_hochberg(pvalues: np.ndarray) -> np.ndarray:
    """
    Benjamini-Hochberg adjustment that tolerates missing p-values.

    NaN entries are left out of the family and stay NaN in the output.

    Args:
        pvalues: Raw p-values, NaN for untested hypotheses

    Returns:
        np.ndarray: Adjusted p-values aligned with the input
    """
    pvalues = np.asarray(pvalues, dtype=float)
    padj = np.full(pvalues.shape, np.nan)
    tested = np.isfinite(pvalues)
    if tested.any():
        _, padj[tested], _, _ = multipletests(pvalues[tested], method="fdr_bh")
    return padj
