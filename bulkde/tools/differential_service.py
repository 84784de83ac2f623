"""
Differential expression testing service for bulk RNA-seq counts.

Each gene is fitted with a negative binomial GLM (log link, fixed
dispersion, size factors as offset) by iteratively reweighted least
squares. The contrast coefficient is tested with a Wald test or a
likelihood-ratio test against the intercept-only model, low-power genes
are removed by independent filtering on the mean count, and the remaining
p-values are adjusted with Benjamini-Hochberg.
"""

from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import anndata
import numpy as np
import pandas as pd
from scipy import stats
from scipy.special import xlogy

from bulkde.config import DifferentialSettings
from bulkde.core import ConvergenceError, InsufficientDataError
from bulkde.tools.count_loader_service import DE_RESULT_COLUMNS
from bulkde.utils.logger import get_logger
from bulkde.utils.multitest import benjamini_hochberg

logger = get_logger(__name__)

LOG2 = np.log(2.0)
# Keeps exp(eta) finite for separable count patterns
MAX_ETA = 30.0


class DifferentialTestError(Exception):
    """Exception for differential testing operations."""

    pass


@dataclass(frozen=True)
class GLMFit:
    """Result of one negative binomial GLM fit (natural log scale)."""

    coefficients: np.ndarray
    standard_errors: np.ndarray
    deviance: float
    converged: bool
    n_iter: int


def nb_deviance(y: np.ndarray, mu: np.ndarray, dispersion: float) -> float:
    """Negative binomial deviance for fixed dispersion."""
    inv = 1.0 / dispersion
    unit = xlogy(y, y) - xlogy(y, mu) - (y + inv) * (
        np.log1p(dispersion * y) - np.log1p(dispersion * mu)
    )
    return float(2.0 * unit.sum())


def fit_nb_glm(
    counts: np.ndarray,
    size_factors: np.ndarray,
    design: np.ndarray,
    dispersion: float,
    ridge: float = 1e-6,
    max_iter: int = 100,
    tol: float = 1e-8,
) -> GLMFit:
    """
    Fit a negative binomial GLM for one gene by IRLS.

    A small ridge penalty (on the log2 scale) keeps coefficients finite
    when one group is all zeros.

    Args:
        counts: Raw counts of one gene, one per sample
        size_factors: Per-sample size factors, used as log offset
        design: Samples x coefficients design matrix
        dispersion: Fixed dispersion of the gene
        ridge: Ridge penalty per coefficient on the log2 scale
        max_iter: Maximum IRLS iterations
        tol: Relative deviance change that counts as converged

    Returns:
        GLMFit: Coefficients, standard errors, deviance and convergence flag
    """
    y = np.asarray(counts, dtype=float)
    offset = np.log(size_factors)
    n_coef = design.shape[1]
    penalty = np.eye(n_coef) * ridge / LOG2**2

    beta, *_ = np.linalg.lstsq(design, np.log(y / size_factors + 0.1), rcond=None)
    mu = np.exp(np.clip(design @ beta + offset, -MAX_ETA, MAX_ETA))
    deviance = nb_deviance(y, mu, dispersion)
    converged = False
    n_iter = 0

    for n_iter in range(1, max_iter + 1):
        eta = design @ beta
        weights = mu / (1.0 + dispersion * mu)
        working = eta + (y - mu) / mu
        xtwx = design.T @ (weights[:, None] * design) + penalty
        beta = np.linalg.solve(xtwx, design.T @ (weights * working))

        mu = np.exp(np.clip(design @ beta + offset, -MAX_ETA, MAX_ETA))
        new_deviance = nb_deviance(y, mu, dispersion)
        change = abs(new_deviance - deviance) / (abs(new_deviance) + 0.1)
        deviance = new_deviance
        if change < tol:
            converged = True
            break

    weights = mu / (1.0 + dispersion * mu)
    xtwx = design.T @ (weights[:, None] * design) + penalty
    covariance = np.linalg.inv(xtwx)
    standard_errors = np.sqrt(np.diag(covariance))

    return GLMFit(
        coefficients=beta,
        standard_errors=standard_errors,
        deviance=deviance,
        converged=converged,
        n_iter=n_iter,
    )


def is_separable(
    counts: np.ndarray,
    size_factors: np.ndarray,
    design: np.ndarray,
    coefficients: np.ndarray,
) -> bool:
    """
    Whether a fitted gene sits on a separable count pattern.

    A contrast level with only zero counts, or a linear predictor pinned
    at the clipping bound, leaves the contrast coefficient unidentified.
    """
    y = np.asarray(counts, dtype=float)
    indicator = design[:, -1]
    for level in np.unique(indicator):
        in_level = indicator == level
        if np.all(y[in_level] == 0):
            return True
    eta = design @ coefficients + np.log(size_factors)
    return bool(np.any(np.abs(eta) >= MAX_ETA))


def independent_filtering(
    base_mean: np.ndarray,
    pvalues: np.ndarray,
    alpha: float,
    n_quantiles: int = 50,
    upper_quantile: float = 0.95,
) -> Tuple[np.ndarray, Dict[str, Any]]:
    """
    Adjust p-values after removing low-mean genes.

    Candidate thresholds are quantiles of baseMean between the fraction
    of all-zero genes and upper_quantile. The threshold giving the most
    adjusted p-values below alpha wins (the lowest one on ties); genes
    under it get NaN.

    Args:
        base_mean: Mean normalized count per gene
        pvalues: Raw p-values, NaN where untested
        alpha: Significance level for counting rejections
        n_quantiles: Number of candidate thresholds
        upper_quantile: Highest quantile considered

    Returns:
        Tuple[np.ndarray, Dict[str, Any]]: Adjusted p-values and filter stats
    """
    lower_quantile = float(np.mean(base_mean == 0))
    if lower_quantile >= upper_quantile:
        thetas = np.array([lower_quantile])
    else:
        thetas = np.linspace(lower_quantile, upper_quantile, n_quantiles)
    cutoffs = np.quantile(base_mean, thetas)

    rejections = []
    for cutoff in cutoffs:
        kept = np.where(base_mean >= cutoff, pvalues, np.nan)
        rejections.append(int(np.sum(benjamini_hochberg(kept) < alpha)))

    best = int(np.argmax(rejections))
    cutoff = float(cutoffs[best])
    keep = base_mean >= cutoff
    padj = benjamini_hochberg(np.where(keep, pvalues, np.nan))

    filter_stats = {
        "filter_theta": float(thetas[best]),
        "filter_threshold": cutoff,
        "n_independent_filtered": int(np.sum(~keep & np.isfinite(pvalues))),
        "rejections_per_theta": rejections,
    }
    return padj, filter_stats


class DifferentialService:
    """
    Stateless service for negative binomial differential expression testing.
    """

    def __init__(
        self, settings: Optional[DifferentialSettings] = None, n_jobs: int = 1
    ):
        """
        Initialize the differential tester.

        Args:
            settings: IRLS and filtering conventions
            n_jobs: Worker threads for per-gene fits
        """
        self.settings = settings or DifferentialSettings()
        self.n_jobs = n_jobs

    def run_differential_test(
        self,
        adata: anndata.AnnData,
        alpha: float = 0.05,
        test: str = "wald",
    ) -> Tuple[pd.DataFrame, Dict[str, Any]]:
        """
        Test the contrast coefficient for every gene.

        Requires adata.layers["counts"], adata.obs["size_factors"],
        adata.var["dispersion"] and adata.obsm["design_matrix"] with the
        contrast coefficient in the last column.

        Args:
            adata: Samples x genes dataset prepared by the upstream services
            alpha: Significance level used by independent filtering
            test: 'wald' or 'lrt'

        Returns:
            Tuple[pd.DataFrame, Dict[str, Any]]: DE results ordered by raw
            p-value (NaN last) and run statistics

        Raises:
            DifferentialTestError: If the test name is unknown
            InsufficientDataError: If required inputs are missing
        """
        if test not in ("wald", "lrt"):
            raise DifferentialTestError(f"Unknown test '{test}'. Use 'wald' or 'lrt'")

        missing = [
            name
            for name, present in (
                ("layers['counts']", "counts" in adata.layers),
                ("obs['size_factors']", "size_factors" in adata.obs),
                ("var['dispersion']", "dispersion" in adata.var),
                ("obsm['design_matrix']", "design_matrix" in adata.obsm),
            )
            if not present
        ]
        if missing:
            raise InsufficientDataError(
                f"Differential test inputs missing: {missing}",
                details={"missing": missing},
            )

        counts = np.asarray(adata.layers["counts"], dtype=float)
        size_factors = adata.obs["size_factors"].to_numpy(dtype=float)
        dispersions = adata.var["dispersion"].to_numpy(dtype=float)
        design = np.asarray(adata.obsm["design_matrix"], dtype=float)
        n_genes = adata.n_vars

        logger.info(
            f"Running {test.upper()} test for {n_genes} genes "
            f"({adata.n_obs} samples, {self.n_jobs} worker(s))"
        )

        lfc = np.full(n_genes, np.nan)
        lfc_se = np.full(n_genes, np.nan)
        stat = np.full(n_genes, np.nan)
        pvalue = np.full(n_genes, np.nan)
        failed = np.zeros(n_genes, dtype=bool)

        def test_block(indices: np.ndarray) -> None:
            for i in indices:
                try:
                    lfc[i], lfc_se[i], stat[i], pvalue[i] = self._test_gene(
                        counts[:, i], size_factors, design, dispersions[i], test
                    )
                except (ConvergenceError, np.linalg.LinAlgError, FloatingPointError) as e:
                    logger.debug(f"Fit failed for {adata.var_names[i]}: {e}")
                    failed[i] = True

        blocks = [b for b in np.array_split(np.arange(n_genes), self.n_jobs * 4) if len(b)]
        if self.n_jobs == 1:
            for block in blocks:
                test_block(block)
        else:
            with ThreadPoolExecutor(max_workers=self.n_jobs) as executor:
                futures = [executor.submit(test_block, block) for block in blocks]
                for future in as_completed(futures):
                    future.result()

        base_mean = (counts / size_factors[:, None]).mean(axis=0)

        if self.settings.independent_filtering:
            padj, filter_stats = independent_filtering(
                base_mean,
                pvalue,
                alpha,
                self.settings.filter_quantiles,
                self.settings.filter_upper_quantile,
            )
        else:
            padj = benjamini_hochberg(pvalue)
            filter_stats = {"n_independent_filtered": 0}

        results = pd.DataFrame(
            {
                "baseMean": base_mean,
                "log2FoldChange": lfc,
                "lfcSE": lfc_se,
                "stat": stat,
                "pvalue": pvalue,
                "padj": padj,
            },
            index=adata.var_names.copy(),
        )[DE_RESULT_COLUMNS]
        results.index.name = None
        results = results.sort_values("pvalue", na_position="last", kind="mergesort")

        n_failed = int(failed.sum())
        if n_failed:
            logger.warning(
                f"{n_failed} genes did not converge; reported with NaN statistics"
            )

        run_stats = {
            "test": test,
            "contrast": adata.uns.get("design", {}).get("contrast_name"),
            "n_genes_tested": int(n_genes),
            "n_failed_fits": n_failed,
            "failed_genes": adata.var_names[failed].tolist(),
            "n_significant": int(np.sum(padj < alpha)),
            "alpha": alpha,
            **{k: v for k, v in filter_stats.items() if k != "rejections_per_theta"},
        }
        logger.info(
            f"{test.upper()} test completed: {run_stats['n_significant']} genes with "
            f"padj < {alpha}, {filter_stats['n_independent_filtered']} removed by "
            f"independent filtering"
        )
        return results, run_stats

    def _test_gene(
        self,
        counts: np.ndarray,
        size_factors: np.ndarray,
        design: np.ndarray,
        dispersion: float,
        test: str,
    ) -> Tuple[float, float, float, float]:
        """Fit one gene and return (log2FC, lfcSE, stat, pvalue)."""
        settings = self.settings
        full = fit_nb_glm(
            counts,
            size_factors,
            design,
            dispersion,
            ridge=settings.ridge,
            max_iter=settings.glm_max_iter,
            tol=settings.glm_tolerance,
        )
        if not full.converged:
            raise ConvergenceError(f"IRLS did not converge in {full.n_iter} iterations")
        if is_separable(counts, size_factors, design, full.coefficients):
            raise ConvergenceError("separable counts: contrast coefficient is unbounded")

        beta = full.coefficients[-1]
        se = full.standard_errors[-1]
        if not (np.isfinite(beta) and np.isfinite(se) and se > 0):
            raise ConvergenceError("non-finite coefficient or standard error")

        if test == "wald":
            statistic = beta / se
            pvalue = 2.0 * stats.norm.sf(abs(statistic))
        else:
            reduced = fit_nb_glm(
                counts,
                size_factors,
                design[:, :-1],
                dispersion,
                ridge=settings.ridge,
                max_iter=settings.glm_max_iter,
                tol=settings.glm_tolerance,
            )
            if not reduced.converged:
                raise ConvergenceError("reduced model did not converge")
            statistic = max(reduced.deviance - full.deviance, 0.0)
            pvalue = stats.chi2.sf(statistic, df=1)

        return beta / LOG2, se / LOG2, float(statistic), float(pvalue)


def sort_results(results: pd.DataFrame, by: str = "padj") -> pd.DataFrame:
    """Return a copy of DE results sorted ascending by a column, NaN last."""
    if by not in results.columns:
        raise KeyError(f"Cannot sort by '{by}'; columns are {list(results.columns)}")
    return results.sort_values(by, na_position="last", kind="mergesort").copy()


def annotate_significance(results: pd.DataFrame, alpha: float = 0.05) -> pd.DataFrame:
    """
    Return a copy with significant, regulation and rank columns added.

    Args:
        results: DE result table
        alpha: Adjusted p-value cutoff

    Returns:
        pd.DataFrame: Annotated copy; the input is left untouched
    """
    annotated = results.copy()
    annotated["significant"] = (annotated["padj"] < alpha) & annotated["padj"].notna()
    annotated["regulation"] = "unchanged"
    annotated.loc[
        annotated["significant"] & (annotated["log2FoldChange"] > 0), "regulation"
    ] = "upregulated"
    annotated.loc[
        annotated["significant"] & (annotated["log2FoldChange"] < 0), "regulation"
    ] = "downregulated"
    annotated["rank"] = annotated["padj"].rank(method="min", na_option="bottom")
    return annotated


def summarize_results(results: pd.DataFrame, alpha: float = 0.05) -> Dict[str, Any]:
    """Count up/down regulated genes and genes without an adjusted p-value."""
    significant = (results["padj"] < alpha) & results["padj"].notna()
    return {
        "alpha": alpha,
        "n_genes": int(len(results)),
        "n_up": int((significant & (results["log2FoldChange"] > 0)).sum()),
        "n_down": int((significant & (results["log2FoldChange"] < 0)).sum()),
        "n_failed": int(results["pvalue"].isna().sum()),
        "n_padj_na": int(results["padj"].isna().sum()),
    }


def significant_genes(results: pd.DataFrame, alpha: float = 0.05) -> List[str]:
    """Gene identifiers with padj below alpha, in table order."""
    mask = (results["padj"] < alpha) & results["padj"].notna()
    return results.index[mask].tolist()
