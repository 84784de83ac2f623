"""
Pytest configuration and fixtures for the bulkde test suite.

This module provides the markers, synthetic datasets and temporary
workspaces shared by unit and integration tests.
"""

import logging
import shutil
import tempfile
from pathlib import Path
from typing import Generator

import pandas as pd
import pytest

from bulkde.config import PipelineConfig
from tests.mock_data import (
    MEDIUM_DATASET_CONFIG,
    SMALL_DATASET_CONFIG,
    BulkRNASeqDataFactory,
    GeneSetCollectionFactory,
    SyntheticExperiment,
    toy_counts,
    toy_metadata,
)

# Suppress warnings during testing
logging.getLogger("anndata").setLevel(logging.ERROR)

TEST_WORKSPACE_PREFIX = "bulkde_test_"


# ==============================================================================
# Pytest Configuration Hooks
# ==============================================================================


def pytest_configure(config):
    """Configure pytest with custom markers and settings."""
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "integration: mark test as an integration test")
    config.addinivalue_line("markers", "slow: mark test as slow running")


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on their location."""
    for item in items:
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
        elif "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)


# ==============================================================================
# Core Infrastructure Fixtures
# ==============================================================================


@pytest.fixture(scope="function")
def temp_workspace() -> Generator[Path, None, None]:
    """Create isolated temporary workspace for each test."""
    workspace_path = Path(tempfile.mkdtemp(prefix=TEST_WORKSPACE_PREFIX))
    try:
        yield workspace_path
    finally:
        shutil.rmtree(workspace_path, ignore_errors=True)


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch, tmp_path):
    """Keep BULKDE_* variables and a stray .env out of the tests."""
    import os

    for name in list(os.environ):
        if name.startswith("BULKDE_"):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)


# ==============================================================================
# Data Fixtures
# ==============================================================================


@pytest.fixture
def toy_count_matrix() -> pd.DataFrame:
    """Six genes x four samples toy matrix."""
    return toy_counts()


@pytest.fixture
def toy_sample_metadata() -> pd.DataFrame:
    """Metadata for the toy matrix, conditions A and B."""
    return toy_metadata()


@pytest.fixture
def toy_config() -> PipelineConfig:
    """Configuration contrasting B against A."""
    return PipelineConfig(contrast_levels=("B", "A"))


@pytest.fixture(scope="session")
def small_experiment() -> SyntheticExperiment:
    """Small simulated experiment (6 samples, 200 genes)."""
    return BulkRNASeqDataFactory(config=SMALL_DATASET_CONFIG)


@pytest.fixture(scope="session")
def medium_experiment() -> SyntheticExperiment:
    """Medium simulated experiment (8 samples, 500 genes, 50 DE genes)."""
    return BulkRNASeqDataFactory(config=MEDIUM_DATASET_CONFIG)


@pytest.fixture
def experiment_config() -> PipelineConfig:
    """Configuration contrasting treated against control."""
    return PipelineConfig(contrast_levels=("treated", "control"), seed=7, permutations=200)


@pytest.fixture(scope="session")
def gene_set_collection(medium_experiment):
    """Random gene sets plus one set made of the DE genes."""
    collection = GeneSetCollectionFactory(
        genes=medium_experiment.counts.index, n_sets=8, set_size=25
    )
    collection["DE_GENES"] = frozenset(medium_experiment.de_genes)
    collection["UNKNOWN_IDS"] = frozenset(f"NOT_A_GENE_{i}" for i in range(20))
    return collection
