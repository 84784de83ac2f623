"""Configuration objects for bulkde pipeline runs."""

from bulkde.config.pipeline_config import (
    DispersionSettings,
    EnrichmentSettings,
    PipelineConfig,
    DifferentialSettings,
)

__all__ = [
    "PipelineConfig",
    "DispersionSettings",
    "DifferentialSettings",
    "EnrichmentSettings",
]
