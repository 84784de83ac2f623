"""
Unit tests for shared multiple-testing helpers.
"""

import numpy as np
import pytest

from bulkde.utils import benjamini_hochberg


@pytest.mark.unit
class TestBenjaminiHochberg:
    """Test NaN-tolerant BH adjustment."""

    def test_known_values(self):
        padj = benjamini_hochberg(np.array([0.01, 0.04, 0.03, 0.2]))

        np.testing.assert_allclose(padj, [0.04, 0.0533333, 0.0533333, 0.2], rtol=1e-5)

    def test_nan_left_out_of_family(self):
        padj = benjamini_hochberg(np.array([0.01, np.nan, 0.02]))

        assert np.isnan(padj[1])
        np.testing.assert_allclose(padj[[0, 2]], [0.02, 0.02])

    def test_all_nan(self):
        assert np.isnan(benjamini_hochberg(np.array([np.nan, np.nan]))).all()

    def test_monotone_in_raw_pvalue_order(self):
        pvalues = np.random.default_rng(3).uniform(size=500) ** 3
        pvalues[::50] = np.nan

        padj = benjamini_hochberg(pvalues)

        order = np.argsort(pvalues[np.isfinite(pvalues)], kind="mergesort")
        ranked = padj[np.isfinite(pvalues)][order]
        assert np.all(np.diff(ranked) >= -1e-15)
        assert np.all(ranked <= 1.0)
