"""
Pipeline configuration for bulkde.

All tunable values of a pipeline run live in an explicit PipelineConfig
object that is passed to each service, so a run is a pure function of its
inputs and configuration. Defaults can be overridden through BULKDE_*
environment variables (a .env file is honoured).
"""

import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from dotenv import load_dotenv

from bulkde.core import ConfigurationError
from bulkde.utils.logger import get_logger

logger = get_logger(__name__)

VALID_TESTS = ("wald", "lrt")
VALID_FIT_TYPES = ("parametric", "mean")


@dataclass
class DispersionSettings:
    """Numeric conventions of the dispersion estimator."""

    min_disp: float = 1e-8
    max_disp: float = 10.0
    fit_type: str = "parametric"  # parametric, mean
    trend_max_iter: int = 10
    trend_tolerance: float = 1e-6
    # Genes inside the fitting window needed for the two-parameter curve
    min_trend_genes: int = 3
    residual_bounds: Tuple[float, float] = (1e-4, 15.0)
    min_prior_var: float = 0.25
    outlier_sd: float = 2.0


@dataclass
class DifferentialSettings:
    """IRLS and independent filtering conventions of the differential tester."""

    glm_max_iter: int = 100
    glm_tolerance: float = 1e-8
    ridge: float = 1e-6
    independent_filtering: bool = True
    filter_quantiles: int = 50
    filter_upper_quantile: float = 0.95


@dataclass
class EnrichmentSettings:
    """Gene-set size limits and score weighting for enrichment."""

    min_size: int = 15
    max_size: int = 500
    weight: float = 1.0
    permutation_chunk: int = 100


@dataclass
class PipelineConfig:
    """Configuration for one bulk RNA-seq differential expression run.

    The contrast compares contrast_levels[0] (numerator) against
    contrast_levels[1] (reference) within the contrast_factor column of
    the sample metadata.
    """

    # Design
    contrast_factor: str = "condition"
    contrast_levels: Optional[Tuple[str, str]] = None

    # Filtering and significance
    count_threshold: int = 1
    alpha: float = 0.05
    test: str = "wald"  # wald, lrt

    # Enrichment
    permutations: int = 1000
    seed: Optional[int] = None

    # Execution
    n_jobs: int = 1

    # Input/output
    counts_path: Optional[Path] = None
    metadata_path: Optional[Path] = None
    gene_sets_path: Optional[Path] = None
    results_dir: Path = Path("bulkde_results")
    sep: str = "\t"

    dispersion: DispersionSettings = field(default_factory=DispersionSettings)
    differential: DifferentialSettings = field(default_factory=DifferentialSettings)
    enrichment: EnrichmentSettings = field(default_factory=EnrichmentSettings)

    def __post_init__(self):
        self.validate()

    @property
    def contrast(self) -> List[str]:
        """Contrast as [factor, numerator, reference]."""
        if self.contrast_levels is None:
            raise ConfigurationError(
                "contrast_levels must be set to (numerator, reference)",
                details={"contrast_factor": self.contrast_factor},
            )
        return [self.contrast_factor, *self.contrast_levels]

    def validate(self) -> None:
        """Check value ranges; raise ConfigurationError on the first problem."""
        problems = []
        if self.count_threshold < 0:
            problems.append(f"count_threshold must be >= 0, got {self.count_threshold}")
        if not 0 < self.alpha < 1:
            problems.append(f"alpha must be in (0, 1), got {self.alpha}")
        if self.test not in VALID_TESTS:
            problems.append(
                f"test must be one of {', '.join(VALID_TESTS)}, got '{self.test}'"
            )
        if self.permutations < 1:
            problems.append(f"permutations must be >= 1, got {self.permutations}")
        if self.n_jobs < 1:
            problems.append(f"n_jobs must be >= 1, got {self.n_jobs}")
        if self.contrast_levels is not None:
            if len(self.contrast_levels) != 2:
                problems.append("contrast_levels must hold exactly two levels")
            elif self.contrast_levels[0] == self.contrast_levels[1]:
                problems.append("contrast_levels must name two different levels")
        if self.dispersion.fit_type not in VALID_FIT_TYPES:
            problems.append(
                f"dispersion.fit_type must be one of {', '.join(VALID_FIT_TYPES)}"
            )
        if not 0 < self.dispersion.min_disp < self.dispersion.max_disp:
            problems.append("dispersion bounds must satisfy 0 < min_disp < max_disp")
        if self.enrichment.min_size > self.enrichment.max_size:
            problems.append("enrichment.min_size must not exceed enrichment.max_size")

        if problems:
            raise ConfigurationError(
                f"Invalid pipeline configuration: {problems[0]}",
                details={"problems": problems},
            )

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to a plain dictionary."""
        data = asdict(self)
        for key in ("counts_path", "metadata_path", "gene_sets_path", "results_dir"):
            if data[key] is not None:
                data[key] = str(data[key])
        return data

    @classmethod
    def from_env(cls, **overrides) -> "PipelineConfig":
        """Load configuration from environment variables.

        Environment variables follow the pattern BULKDE_<SETTING_NAME>, for
        example BULKDE_ALPHA or BULKDE_CONTRAST_LEVELS=treated,control.
        Keyword overrides take precedence over the environment.

        Returns:
            PipelineConfig: Configuration instance with environment overrides
        """
        load_dotenv()

        env_mappings = {
            "BULKDE_CONTRAST_FACTOR": ("contrast_factor", str),
            "BULKDE_CONTRAST_LEVELS": ("contrast_levels", tuple),
            "BULKDE_COUNT_THRESHOLD": ("count_threshold", int),
            "BULKDE_ALPHA": ("alpha", float),
            "BULKDE_TEST": ("test", str),
            "BULKDE_PERMUTATIONS": ("permutations", int),
            "BULKDE_SEED": ("seed", int),
            "BULKDE_N_JOBS": ("n_jobs", int),
            "BULKDE_COUNTS_PATH": ("counts_path", Path),
            "BULKDE_METADATA_PATH": ("metadata_path", Path),
            "BULKDE_GENE_SETS_PATH": ("gene_sets_path", Path),
            "BULKDE_RESULTS_DIR": ("results_dir", Path),
            "BULKDE_SEP": ("sep", str),
        }

        values: Dict[str, Any] = {}
        for env_var, (field_name, field_type) in env_mappings.items():
            value = os.environ.get(env_var)
            if value is None:
                continue
            try:
                if field_type is tuple:
                    values[field_name] = tuple(
                        part.strip() for part in value.split(",") if part.strip()
                    )
                elif field_type is str and field_name == "sep":
                    values[field_name] = value.encode().decode("unicode_escape")
                else:
                    values[field_name] = field_type(value)
            except ValueError as e:
                raise ConfigurationError(
                    f"Invalid value for {env_var}: '{value}'",
                    details={"variable": env_var, "error": str(e)},
                )
            logger.debug(f"Config override from {env_var}: {field_name}={value}")

        values.update(overrides)
        return cls(**values)
