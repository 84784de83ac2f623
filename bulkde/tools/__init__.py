"""
Tools module for the bulkde analysis pipeline.

This module contains the services of a bulk RNA-seq differential
expression run:
- Count matrix loading and alignment
- Median-of-ratios size factor normalization
- Negative binomial dispersion estimation and shrinkage
- Differential expression testing (Wald / LRT) with independent filtering
- Variance stabilizing transformation
- Gene-set enrichment (ORA and preranked GSEA)
- Pipeline orchestration
"""

from bulkde.tools.bulk_rnaseq_service import (
    BulkRNASeqError,
    BulkRNASeqService,
    PipelineResult,
)
from bulkde.tools.count_loader_service import CountLoaderService
from bulkde.tools.design_service import DesignService
from bulkde.tools.differential_service import DifferentialService
from bulkde.tools.dispersion_service import DispersionService
from bulkde.tools.enrichment_service import EnrichmentService
from bulkde.tools.normalization_service import NormalizationService
from bulkde.tools.vst_service import VSTService

__all__ = [
    "BulkRNASeqService",
    "BulkRNASeqError",
    "PipelineResult",
    "CountLoaderService",
    "DesignService",
    "NormalizationService",
    "DispersionService",
    "DifferentialService",
    "VSTService",
    "EnrichmentService",
]
