"""
Dispersion estimation service for negative binomial count models.

Per-gene dispersions are estimated by the method of moments on normalized
counts, a mean-dependent trend alpha(mu) = a0 + a1 / mu is fitted across
genes by iteratively reweighted Gamma regression, and the gene-wise values
are shrunk towards the trend with an empirical Bayes weight. Genes lying
far above the trend are flagged as outliers and keep their raw estimate.
"""

import warnings
from typing import Any, Dict, Optional, Tuple

import anndata
import numpy as np
import statsmodels.api as sm
from scipy.special import polygamma
from scipy.stats import median_abs_deviation
from statsmodels.tools.sm_exceptions import DomainWarning

from bulkde.config import DispersionSettings
from bulkde.core import ConvergenceError, InsufficientDataError
from bulkde.utils.logger import get_logger

logger = get_logger(__name__)


class TrendFitError(Exception):
    """Parametric trend could not be fitted; the mean trend is used instead."""

    pass


def moments_dispersions(
    normed_counts: np.ndarray,
    size_factors: np.ndarray,
    design_matrix: np.ndarray,
    min_disp: float,
    max_disp: float,
) -> np.ndarray:
    """
    Method-of-moments dispersion per gene.

    Two estimates are combined: a design-aware one from the residuals of a
    linear fit of normalized counts on the design, and a design-agnostic
    one from the overall mean and variance. The smaller of the two is
    kept, then clipped to [min_disp, max_disp].

    Args:
        normed_counts: Samples x genes normalized counts
        size_factors: Per-sample size factors
        design_matrix: Samples x coefficients design
        min_disp: Lower bound for dispersions
        max_disp: Upper bound for dispersions

    Returns:
        np.ndarray: Gene-wise dispersion estimates
    """
    m, p = design_matrix.shape
    coefs, *_ = np.linalg.lstsq(design_matrix, normed_counts, rcond=None)
    mu = np.maximum(design_matrix @ coefs, 1.0)
    rough = (((normed_counts - mu) ** 2 - mu) / mu**2).sum(axis=0) / (m - p)

    means = normed_counts.mean(axis=0)
    variances = normed_counts.var(axis=0, ddof=1)
    inv_sf_mean = np.mean(1.0 / size_factors)
    with np.errstate(divide="ignore", invalid="ignore"):
        moments = (variances - inv_sf_mean * means) / means**2
    moments = np.where(np.isfinite(moments), moments, rough)

    return np.clip(np.minimum(rough, moments), min_disp, max_disp)


def trend_values(means: np.ndarray, a0: float, a1: float) -> np.ndarray:
    """Evaluate the dispersion trend a0 + a1 / mean."""
    with np.errstate(divide="ignore"):
        return a0 + a1 / means


def fit_parametric_trend(
    means: np.ndarray,
    dispersions: np.ndarray,
    settings: DispersionSettings,
) -> Tuple[float, float, int]:
    """
    Fit alpha(mu) = a0 + a1 / mu by iterative robust Gamma regression.

    Each iteration drops genes whose ratio to the current trend lies
    outside settings.residual_bounds and refits a Gamma GLM with identity
    link on [1, 1/mu]. Iteration stops once the squared log change of the
    coefficients falls below settings.trend_tolerance.

    Args:
        means: Mean normalized count per gene (fitting window only)
        dispersions: Gene-wise dispersions (fitting window only)
        settings: Dispersion settings

    Returns:
        Tuple[float, float, int]: a0, a1 and number of iterations used

    Raises:
        TrendFitError: If too few genes remain or coefficients are not positive
        ConvergenceError: If the fit does not converge within trend_max_iter
    """
    low, high = settings.residual_bounds
    coefs = np.array([0.1, 1.0])

    for iteration in range(1, settings.trend_max_iter + 1):
        residuals = dispersions / trend_values(means, *coefs)
        good = (residuals > low) & (residuals < high)
        if good.sum() < settings.min_trend_genes:
            raise TrendFitError(
                f"only {int(good.sum())} genes inside the residual bounds"
            )

        exog = np.column_stack([np.ones(good.sum()), 1.0 / means[good]])
        family = sm.families.Gamma(link=sm.families.links.Identity())
        try:
            with warnings.catch_warnings():
                warnings.simplefilter("ignore", DomainWarning)
                warnings.simplefilter("ignore", RuntimeWarning)
                fit = sm.GLM(dispersions[good], exog, family=family).fit(
                    start_params=coefs
                )
        except (ValueError, np.linalg.LinAlgError) as e:
            raise TrendFitError(f"Gamma regression failed: {e}")

        new_coefs = np.asarray(fit.params, dtype=float)
        if not np.all(np.isfinite(new_coefs)) or np.any(new_coefs <= 0):
            raise TrendFitError(f"non-positive trend coefficients {new_coefs}")

        change = float(np.sum(np.log(new_coefs / coefs) ** 2))
        coefs = new_coefs
        logger.debug(
            f"Trend iteration {iteration}: a0={coefs[0]:.4g}, a1={coefs[1]:.4g}, "
            f"change={change:.3g}, genes={int(good.sum())}"
        )
        if change < settings.trend_tolerance:
            return float(coefs[0]), float(coefs[1]), iteration

    raise ConvergenceError(
        f"Dispersion trend did not converge within {settings.trend_max_iter} iterations",
        details={
            "max_iter": settings.trend_max_iter,
            "tolerance": settings.trend_tolerance,
            "last_coefficients": coefs.tolist(),
        },
    )


class DispersionService:
    """
    Stateless service for dispersion estimation.
    """

    def __init__(self, settings: Optional[DispersionSettings] = None):
        """
        Initialize the dispersion service.

        Args:
            settings: Numeric conventions; defaults to DispersionSettings()
        """
        self.settings = settings or DispersionSettings()

    def estimate_dispersions(
        self, adata: anndata.AnnData, design_matrix: Optional[np.ndarray] = None
    ) -> Tuple[anndata.AnnData, Dict[str, Any]]:
        """
        Estimate gene-wise, trended and shrunk dispersions.

        Requires adata.obs["size_factors"] and adata.layers["normed_counts"].
        Stores genewise_dispersion, fitted_dispersion, dispersion and
        dispersion_outlier in adata.var and the trend in
        adata.uns["dispersion_trend"].

        Args:
            adata: Samples x genes dataset with size factors
            design_matrix: Samples x coefficients design; defaults to
                adata.obsm["design_matrix"] or an intercept-only design

        Returns:
            Tuple[anndata.AnnData, Dict[str, Any]]: Updated copy and stats

        Raises:
            InsufficientDataError: If there are no residual degrees of freedom
            ConvergenceError: If the parametric trend fit does not converge
        """
        settings = self.settings
        adata = adata.copy()

        if design_matrix is None:
            if "design_matrix" in adata.obsm:
                design_matrix = np.asarray(adata.obsm["design_matrix"], dtype=float)
            else:
                design_matrix = np.ones((adata.n_obs, 1))

        m, p = design_matrix.shape
        if m - p < 1:
            raise InsufficientDataError(
                "Dispersion estimation needs replicates: "
                f"{m} samples for {p} coefficients",
                details={"n_samples": m, "n_coefficients": p},
            )

        logger.info(f"Estimating dispersions for {adata.n_vars} genes")
        normed = np.asarray(adata.layers["normed_counts"], dtype=float)
        size_factors = adata.obs["size_factors"].to_numpy(dtype=float)
        means = normed.mean(axis=0)

        genewise = moments_dispersions(
            normed, size_factors, design_matrix, settings.min_disp, settings.max_disp
        )

        # Estimates near the lower bound carry no information about the trend
        informative = (genewise >= 100 * settings.min_disp) & (means > 0)
        a0, a1, fit_type, n_iter = self._fit_trend(means, genewise, informative)
        fitted = np.clip(
            trend_values(np.maximum(means, 1e-8), a0, a1),
            settings.min_disp,
            settings.max_disp,
        )

        sampling_var = float(polygamma(1, (m - p) / 2.0))
        log_resid = np.log(genewise) - np.log(fitted)
        if informative.any():
            observed_var = float(
                median_abs_deviation(log_resid[informative], scale="normal") ** 2
            )
        else:
            observed_var = 0.0
        prior_var = max(observed_var - sampling_var, settings.min_prior_var)

        weight = prior_var / (prior_var + sampling_var)
        log_post = weight * np.log(genewise) + (1.0 - weight) * np.log(fitted)
        shrunk = np.where(informative, np.exp(log_post), fitted)

        # Gene-wise estimates scatter with prior plus sampling variance
        outlier_scale = np.sqrt(max(observed_var, prior_var + sampling_var))
        outliers = informative & (log_resid > settings.outlier_sd * outlier_scale)
        final = np.clip(
            np.where(outliers, genewise, shrunk), settings.min_disp, settings.max_disp
        )

        adata.var["genewise_dispersion"] = genewise
        adata.var["fitted_dispersion"] = fitted
        adata.var["dispersion"] = final
        adata.var["dispersion_outlier"] = outliers
        adata.uns["dispersion_trend"] = {
            "a0": a0,
            "a1": a1,
            "fit_type": fit_type,
            "n_iter": n_iter,
            "prior_var": prior_var,
            "sampling_var": sampling_var,
        }

        stats = {
            "fit_type": fit_type,
            "trend_a0": a0,
            "trend_a1": a1,
            "trend_iterations": n_iter,
            "prior_var": prior_var,
            "n_informative_genes": int(informative.sum()),
            "n_dispersion_outliers": int(outliers.sum()),
        }
        logger.info(
            f"Dispersion trend ({fit_type}): a0={a0:.4g}, a1={a1:.4g}; "
            f"{stats['n_dispersion_outliers']} outlier genes kept their raw estimate"
        )
        return adata, stats

    def _fit_trend(
        self, means: np.ndarray, genewise: np.ndarray, informative: np.ndarray
    ) -> Tuple[float, float, str, int]:
        """Fit the configured trend, falling back to a constant mean trend."""
        if self.settings.fit_type == "parametric":
            try:
                a0, a1, n_iter = fit_parametric_trend(
                    means[informative], genewise[informative], self.settings
                )
                return a0, a1, "parametric", n_iter
            except TrendFitError as e:
                logger.warning(
                    f"Parametric dispersion trend failed ({e}); using the mean trend"
                )

        pool = genewise[informative] if informative.any() else genewise
        return float(np.mean(pool)), 0.0, "mean", 0
