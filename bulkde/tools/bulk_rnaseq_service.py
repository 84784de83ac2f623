"""
Bulk RNA-seq differential expression pipeline service.

This service chains the loader, normalizer, dispersion estimator,
differential tester, variance stabilizer and enrichment engine into one
run driven by a PipelineConfig. Fatal errors from shared preprocessing
propagate unchanged; anything unexpected is wrapped in BulkRNASeqError.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

import anndata
import numpy as np
import pandas as pd

from bulkde.config import PipelineConfig
from bulkde.core import BulkDECoreError, ConfigurationError
from bulkde.tools.count_loader_service import CountLoaderService
from bulkde.tools.design_service import DesignService
from bulkde.tools.differential_service import (
    DifferentialService,
    significant_genes,
    summarize_results,
)
from bulkde.tools.dispersion_service import DispersionService
from bulkde.tools.enrichment_service import (
    GSEA_COLUMNS,
    ORA_COLUMNS,
    EnrichmentService,
)
from bulkde.tools.normalization_service import NormalizationService
from bulkde.tools.vst_service import VSTService
from bulkde.utils.logger import get_logger

logger = get_logger(__name__)


class BulkRNASeqError(Exception):
    """Base exception for bulk RNA-seq pipeline operations."""

    pass


@dataclass
class PipelineResult:
    """Everything produced by one pipeline run."""

    adata: anndata.AnnData
    de_results: pd.DataFrame
    ora_results: pd.DataFrame = field(
        default_factory=lambda: pd.DataFrame(columns=ORA_COLUMNS)
    )
    gsea_results: pd.DataFrame = field(
        default_factory=lambda: pd.DataFrame(columns=GSEA_COLUMNS)
    )
    stats: Dict[str, Any] = field(default_factory=dict)


def ranking_from_results(de_results: pd.DataFrame, test: str = "wald") -> pd.Series:
    """
    Signed ranking statistic per gene for preranked enrichment.

    Wald statistics are already signed. LRT statistics are not, so they
    are turned into sign(log2FoldChange) * sqrt(stat).
    """
    stat = de_results["stat"]
    if test == "wald":
        return stat.dropna()
    signed = np.sign(de_results["log2FoldChange"]) * np.sqrt(stat)
    return signed.dropna()


class BulkRNASeqService:
    """
    Stateless service for bulk RNA-seq differential expression workflows.

    Every run is a pure function of its inputs and the PipelineConfig
    given at construction time.
    """

    def __init__(self, config: Optional[PipelineConfig] = None):
        """
        Initialize the bulk RNA-seq service.

        Args:
            config: Pipeline configuration; defaults to PipelineConfig()
        """
        self.config = config or PipelineConfig()
        logger.debug(f"Initializing BulkRNASeqService with {self.config.to_dict()}")

        self.loader = CountLoaderService(sep=self.config.sep)
        self.normalizer = NormalizationService()
        self.design_service = DesignService()
        self.dispersion_service = DispersionService(self.config.dispersion)
        self.differential_service = DifferentialService(
            self.config.differential, n_jobs=self.config.n_jobs
        )
        self.vst_service = VSTService(self.config.dispersion)
        self.enrichment_service = EnrichmentService(
            self.config.enrichment, n_jobs=self.config.n_jobs
        )

    def run_differential_expression_analysis(
        self, counts: pd.DataFrame, metadata: pd.DataFrame
    ) -> PipelineResult:
        """
        Run loading, normalization, dispersion estimation and testing.

        Args:
            counts: Genes x samples raw count matrix
            metadata: Sample metadata indexed by sample id

        Returns:
            PipelineResult: Dataset restricted to the contrast samples (with
            size factors, dispersions and VST layer), DE table and stats

        Raises:
            AlignmentError: If sample identifiers differ
            InsufficientDataError: If normalization or dispersion fitting
                cannot proceed
            ConvergenceError: If the dispersion trend does not converge
            BulkRNASeqError: On any unexpected failure
        """
        config = self.config
        try:
            contrast = config.contrast
            logger.info(
                f"Running differential expression: {contrast[1]} vs {contrast[2]} "
                f"in '{contrast[0]}'"
            )

            adata, load_stats = self.loader.build_dataset(
                counts, metadata, config.count_threshold
            )
            self.design_service.validate_contrast(adata.obs, contrast)

            adata, sf_stats = self.normalizer.estimate_size_factors(adata)
            adata, design = self.design_service.subset_to_contrast(adata, contrast)
            adata, disp_stats = self.dispersion_service.estimate_dispersions(adata)
            de_results, de_stats = self.differential_service.run_differential_test(
                adata, alpha=config.alpha, test=config.test
            )
            adata, vst_stats = self.vst_service.transform(adata)

            stats = {
                "analysis_type": "differential_expression",
                "contrast": design["contrast_name"],
                "loading": load_stats,
                "normalization": sf_stats,
                "dispersion": disp_stats,
                "testing": de_stats,
                "vst": vst_stats,
                "summary": summarize_results(de_results, config.alpha),
            }
            return PipelineResult(adata=adata, de_results=de_results, stats=stats)

        except Exception as e:
            if isinstance(e, (BulkRNASeqError, BulkDECoreError)):
                raise
            logger.exception(f"Error in differential expression analysis: {e}")
            raise BulkRNASeqError(f"Differential expression analysis failed: {e}")

    def run_pathway_enrichment(
        self,
        de_results: pd.DataFrame,
        gene_sets: Mapping[str, Iterable[str]],
    ) -> Dict[str, Any]:
        """
        Run ORA on significant genes and GSEA on the full ranking.

        Args:
            de_results: DE table from run_differential_expression_analysis
            gene_sets: Mapping from set name to member genes

        Returns:
            Dict[str, Any]: ora_results, gsea_results and their stats

        Raises:
            ConfigurationError: If no permutation seed is configured
        """
        config = self.config
        if config.seed is None:
            raise ConfigurationError(
                "Set a permutation seed (PipelineConfig.seed / BULKDE_SEED) "
                "before running rank-based enrichment"
            )

        try:
            query = significant_genes(de_results, config.alpha)
            universe = de_results.index[de_results["pvalue"].notna()].tolist()
            ora_results, ora_stats = self.enrichment_service.run_ora(
                query, universe, gene_sets
            )
            gsea_results, gsea_stats = self.enrichment_service.run_gsea_prerank(
                ranking_from_results(de_results, config.test),
                gene_sets,
                permutations=config.permutations,
                seed=config.seed,
            )
        except Exception as e:
            if isinstance(e, (BulkRNASeqError, BulkDECoreError)):
                raise
            logger.exception(f"Error in pathway enrichment analysis: {e}")
            raise BulkRNASeqError(f"Pathway enrichment analysis failed: {e}")

        return {
            "ora_results": ora_results,
            "gsea_results": gsea_results,
            "ora": ora_stats,
            "gsea": gsea_stats,
        }

    def run_pipeline(
        self,
        counts: pd.DataFrame,
        metadata: pd.DataFrame,
        gene_sets: Optional[Mapping[str, Iterable[str]]] = None,
    ) -> PipelineResult:
        """
        Run the full pipeline: DE testing, then enrichment when gene sets are given.

        Args:
            counts: Genes x samples raw count matrix
            metadata: Sample metadata indexed by sample id
            gene_sets: Optional mapping from set name to member genes

        Returns:
            PipelineResult: All tables and run statistics
        """
        if gene_sets is not None and self.config.seed is None:
            raise ConfigurationError(
                "Set a permutation seed (PipelineConfig.seed / BULKDE_SEED) "
                "before running rank-based enrichment"
            )

        result = self.run_differential_expression_analysis(counts, metadata)
        if gene_sets is not None:
            enrichment = self.run_pathway_enrichment(result.de_results, gene_sets)
            result.ora_results = enrichment["ora_results"]
            result.gsea_results = enrichment["gsea_results"]
            result.stats["ora"] = enrichment["ora"]
            result.stats["gsea"] = enrichment["gsea"]

        summary = result.stats["summary"]
        logger.info(
            f"Pipeline completed: {summary['n_up']} up, {summary['n_down']} down, "
            f"{len(result.ora_results)} ORA sets, {len(result.gsea_results)} GSEA sets"
        )
        return result

    def run_from_files(self) -> Tuple[PipelineResult, Dict[str, Path]]:
        """
        Run the pipeline on the files named in the configuration and export.

        Returns:
            Tuple[PipelineResult, Dict[str, Path]]: The run and the written
            table paths keyed by table name

        Raises:
            ConfigurationError: If input paths are not configured
        """
        config = self.config
        if config.counts_path is None or config.metadata_path is None:
            raise ConfigurationError(
                "counts_path and metadata_path must be configured",
                details={
                    "counts_path": config.counts_path,
                    "metadata_path": config.metadata_path,
                },
            )

        counts = self.loader.load_count_matrix(config.counts_path)
        metadata = self.loader.load_metadata(config.metadata_path)
        gene_sets = (
            self.loader.read_gmt(config.gene_sets_path)
            if config.gene_sets_path is not None
            else None
        )
        result = self.run_pipeline(counts, metadata, gene_sets)
        return result, self.write_outputs(result, config.results_dir)

    def write_outputs(
        self, result: PipelineResult, results_dir: Optional[Path] = None
    ) -> Dict[str, Path]:
        """Write DE and enrichment tables into results_dir."""
        results_dir = Path(results_dir or self.config.results_dir)
        results_dir.mkdir(parents=True, exist_ok=True)

        paths = {
            "de_results": self.loader.write_de_results(
                result.de_results, results_dir / "de_results.tsv"
            )
        }
        if "ora" in result.stats:
            paths["ora_results"] = self.loader.write_enrichment_results(
                result.ora_results, results_dir / "ora_results.tsv"
            )
            paths["gsea_results"] = self.loader.write_enrichment_results(
                result.gsea_results, results_dir / "gsea_results.tsv"
            )
        logger.info(f"Results written to {results_dir}")
        return paths
