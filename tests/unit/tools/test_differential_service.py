"""
Unit tests for negative binomial GLM testing and result helpers.
"""

from unittest.mock import patch

import numpy as np
import pandas as pd
import pytest

from bulkde.config import DifferentialSettings
from bulkde.core import ConvergenceError
from bulkde.tools import differential_service
from bulkde.tools.count_loader_service import DE_RESULT_COLUMNS, CountLoaderService
from bulkde.tools.design_service import DesignService
from bulkde.tools.differential_service import (
    DifferentialService,
    DifferentialTestError,
    annotate_significance,
    fit_nb_glm,
    independent_filtering,
    is_separable,
    nb_deviance,
    significant_genes,
    sort_results,
    summarize_results,
)
from bulkde.tools.dispersion_service import DispersionService
from bulkde.tools.normalization_service import NormalizationService


def prepare(counts, metadata, contrast):
    """Run every stage upstream of the tester."""
    adata, _ = CountLoaderService().build_dataset(counts, metadata)
    adata, _ = NormalizationService().estimate_size_factors(adata)
    adata, _ = DesignService().subset_to_contrast(adata, contrast)
    adata, _ = DispersionService().estimate_dispersions(adata)
    return adata


@pytest.fixture
def toy_ready(toy_count_matrix, toy_sample_metadata):
    return prepare(toy_count_matrix, toy_sample_metadata, ["condition", "B", "A"])


@pytest.fixture(scope="module")
def medium_ready(medium_experiment):
    return prepare(
        medium_experiment.counts,
        medium_experiment.metadata,
        ["condition", "treated", "control"],
    )


@pytest.fixture
def results_table():
    return pd.DataFrame(
        {
            "baseMean": [100.0, 50.0, 20.0, 5.0],
            "log2FoldChange": [2.0, -1.5, 0.1, np.nan],
            "lfcSE": [0.2, 0.3, 0.5, np.nan],
            "stat": [10.0, -5.0, 0.2, np.nan],
            "pvalue": [1e-20, 1e-6, 0.8, np.nan],
            "padj": [1e-19, 0.04, np.nan, np.nan],
        },
        index=["up", "down", "flat", "failed"],
    )


# ===============================================================================
# GLM fitting
# ===============================================================================


@pytest.mark.unit
class TestNegativeBinomialGLM:
    """Test the per-gene IRLS fit."""

    def test_deviance_is_zero_at_saturation(self):
        y = np.array([3.0, 0.0, 12.0])
        assert nb_deviance(y, y, 0.1) == pytest.approx(0.0, abs=1e-12)

    def test_exact_fold_change_recovered(self):
        design = np.column_stack([np.ones(4), [0, 0, 1, 1]])

        fit = fit_nb_glm(np.array([100, 100, 400, 400]), np.ones(4), design, 0.05)

        assert fit.converged
        assert fit.coefficients[1] / np.log(2) == pytest.approx(2.0, rel=1e-4)
        assert np.all(fit.standard_errors > 0)

    def test_all_zero_group_is_separable(self):
        design = np.column_stack([np.ones(4), [0, 0, 1, 1]])
        counts = np.array([0, 0, 50, 60])

        fit = fit_nb_glm(counts, np.ones(4), design, 0.1)

        assert np.all(np.isfinite(fit.coefficients))
        assert is_separable(counts, np.ones(4), design, fit.coefficients)

    def test_overlapping_groups_not_separable(self):
        design = np.column_stack([np.ones(4), [0, 0, 1, 1]])
        counts = np.array([0, 3, 50, 60])

        fit = fit_nb_glm(counts, np.ones(4), design, 0.1)

        assert not is_separable(counts, np.ones(4), design, fit.coefficients)


# ===============================================================================
# Differential testing
# ===============================================================================


@pytest.mark.unit
class TestDifferentialService:
    """Test the Wald / LRT run over all genes."""

    def test_toy_induced_gene_detected(self, toy_ready):
        results, stats = DifferentialService().run_differential_test(toy_ready)

        assert list(results.columns) == DE_RESULT_COLUMNS
        assert results.loc["gene_de", "log2FoldChange"] == pytest.approx(3.3, abs=0.1)
        assert results.loc["gene_de", "padj"] < 0.05
        assert abs(results.loc["gene_flat", "log2FoldChange"]) < 0.2
        assert results.loc["gene_flat", "pvalue"] > 0.5
        assert results.index[0] == "gene_de"
        assert stats["n_failed_fits"] == 0
        assert stats["contrast"] == "condition_B_vs_A"

    def test_one_row_per_gene_with_nan_last(self, medium_ready):
        results, _ = DifferentialService().run_differential_test(medium_ready)

        assert len(results) == medium_ready.n_vars
        assert set(results.index) == set(medium_ready.var_names)
        pvalues = results["pvalue"].to_numpy()
        finite = pvalues[np.isfinite(pvalues)]
        assert np.all(np.diff(finite) >= 0)
        assert np.all(np.isfinite(pvalues[: len(finite)]))

    def test_pvalues_and_padj_in_unit_interval(self, medium_ready):
        results, _ = DifferentialService().run_differential_test(medium_ready)

        for column in ("pvalue", "padj"):
            values = results[column].dropna()
            assert values.between(0, 1).all()
        both = results.dropna(subset=["pvalue", "padj"])
        assert (both["padj"] >= both["pvalue"] - 1e-15).all()

    def test_simulated_de_genes_are_found(self, medium_ready, medium_experiment):
        results, _ = DifferentialService().run_differential_test(medium_ready)

        found = set(significant_genes(results, 0.05))
        truth = set(medium_experiment.de_genes)
        assert len(found & truth) >= 0.5 * len(truth)
        assert len(found - truth) <= 0.3 * max(len(found), 1)

    def test_failed_gene_reported_as_nan(self, toy_ready):
        real_fit = fit_nb_glm

        def failing_fit(counts, *args, **kwargs):
            if np.all(counts == 50):
                raise ConvergenceError("forced failure")
            return real_fit(counts, *args, **kwargs)

        with patch.object(differential_service, "fit_nb_glm", side_effect=failing_fit):
            results, stats = DifferentialService().run_differential_test(toy_ready)

        assert len(results) == 6
        assert results.loc["gene_flat", ["log2FoldChange", "stat", "pvalue", "padj"]].isna().all()
        assert not np.isnan(results.loc["gene_flat", "baseMean"])
        assert stats["n_failed_fits"] == 1
        assert stats["failed_genes"] == ["gene_flat"]
        assert results.index[-1] == "gene_flat"

    @pytest.mark.parametrize("test", ["wald", "lrt"])
    def test_separable_gene_reported_as_failed(
        self, toy_count_matrix, toy_sample_metadata, test
    ):
        counts = toy_count_matrix.copy()
        counts.loc["gene_sep"] = [0, 0, 200, 220]
        adata = prepare(counts, toy_sample_metadata, ["condition", "B", "A"])

        results, stats = DifferentialService().run_differential_test(adata, test=test)

        row = results.loc["gene_sep"]
        assert np.isnan(row["stat"])
        assert np.isnan(row["pvalue"])
        assert np.isnan(row["log2FoldChange"])
        assert row["baseMean"] > 0
        assert stats["n_failed_fits"] == 1
        assert stats["failed_genes"] == ["gene_sep"]
        assert results.drop(index="gene_sep")["pvalue"].notna().all()

    def test_padj_monotone_in_table_order(self, medium_ready):
        results, _ = DifferentialService().run_differential_test(medium_ready)

        padj = results["padj"].dropna().to_numpy()
        assert len(padj) > 0
        assert np.all(np.diff(padj) >= -1e-15)

    def test_lrt_matches_wald_direction(self, medium_ready):
        service = DifferentialService()
        wald, _ = service.run_differential_test(medium_ready, test="wald")
        lrt, stats = service.run_differential_test(medium_ready, test="lrt")

        assert stats["test"] == "lrt"
        assert (lrt["stat"].dropna() >= 0).all()
        np.testing.assert_allclose(
            lrt.loc[wald.index, "log2FoldChange"], wald["log2FoldChange"]
        )
        top = wald.index[:10]
        assert (lrt.loc[top, "pvalue"] < 1e-3).all()

    def test_unknown_test_rejected(self, toy_ready):
        with pytest.raises(DifferentialTestError):
            DifferentialService().run_differential_test(toy_ready, test="score")

    def test_thread_count_does_not_change_results(self, medium_ready):
        serial, _ = DifferentialService(n_jobs=1).run_differential_test(medium_ready)
        threaded, _ = DifferentialService(n_jobs=4).run_differential_test(medium_ready)

        pd.testing.assert_frame_equal(serial, threaded)

    def test_filtering_disabled_is_plain_bh(self, medium_ready):
        settings = DifferentialSettings(independent_filtering=False)
        results, stats = DifferentialService(settings).run_differential_test(medium_ready)

        assert stats["n_independent_filtered"] == 0
        assert results["padj"].notna().sum() == results["pvalue"].notna().sum()


# ===============================================================================
# Independent filtering
# ===============================================================================


@pytest.mark.unit
class TestIndependentFiltering:
    """Test the mean-based filter ahead of BH correction."""

    def test_low_mean_genes_get_nan(self):
        base_mean = np.concatenate([np.linspace(0.1, 1, 900), np.linspace(100, 200, 100)])
        pvalues = np.concatenate([np.full(900, 0.5), np.full(100, 0.0105)])

        padj, stats = independent_filtering(base_mean, pvalues, alpha=0.1)

        assert stats["filter_theta"] > 0
        assert stats["filter_threshold"] > 0.1
        below = base_mean < stats["filter_threshold"]
        assert np.isnan(padj[below]).all()
        assert np.isfinite(padj[~below]).all()
        assert stats["n_independent_filtered"] == int(below.sum())

    def test_first_theta_wins_on_ties(self):
        base_mean = np.arange(1, 21, dtype=float)
        pvalues = np.full(20, 0.9)

        _, stats = independent_filtering(base_mean, pvalues, alpha=0.1)

        assert stats["filter_theta"] == 0.0
        assert stats["n_independent_filtered"] == 0


# ===============================================================================
# Result helpers
# ===============================================================================


@pytest.mark.unit
class TestResultHelpers:
    """Test sorting, annotation and summaries of DE tables."""

    def test_sort_by_padj_puts_nan_last(self, results_table):
        ordered = sort_results(results_table.iloc[::-1], by="padj")

        assert list(ordered.index) == ["up", "down", "failed", "flat"]

    def test_sort_by_unknown_column(self, results_table):
        with pytest.raises(KeyError):
            sort_results(results_table, by="score")

    def test_annotation_leaves_input_untouched(self, results_table):
        annotated = annotate_significance(results_table, alpha=0.05)

        assert annotated["regulation"].tolist() == [
            "upregulated",
            "downregulated",
            "unchanged",
            "unchanged",
        ]
        assert "significant" not in results_table.columns

    def test_summary_counts(self, results_table):
        summary = summarize_results(results_table, alpha=0.05)

        assert summary["n_up"] == 1
        assert summary["n_down"] == 1
        assert summary["n_failed"] == 1
        assert summary["n_padj_na"] == 2
        assert significant_genes(results_table, 0.05) == ["up", "down"]
