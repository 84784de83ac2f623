"""
Factory classes for generating synthetic bulk RNA-seq experiments.

Counts are drawn from a negative binomial model with a known dispersion
trend and a known set of differentially expressed genes, so tests can
compare estimates against the truth.
"""

from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List

import numpy as np
import pandas as pd
from factory import Factory, LazyAttribute
from faker import Faker

from .base import MEDIUM_DATASET_CONFIG, MockDataConfig

fake = Faker()
Faker.seed(42)


@dataclass
class SyntheticExperiment:
    """Simulated experiment with its ground truth."""

    counts: pd.DataFrame
    metadata: pd.DataFrame
    true_means: pd.Series
    true_dispersions: pd.Series
    size_factors: pd.Series
    de_genes: List[str] = field(default_factory=list)


class BaseDataFactory(Factory):
    """Base factory for synthetic datasets."""

    class Meta:
        abstract = True

    config = MEDIUM_DATASET_CONFIG

    @classmethod
    def _rng(cls, config: MockDataConfig) -> np.random.Generator:
        """Random generator seeded from config."""
        return np.random.default_rng(config.seed)


class BulkRNASeqDataFactory(BaseDataFactory):
    """Factory for a two-condition negative binomial count experiment."""

    n_samples = LazyAttribute(lambda obj: obj.config.default_sample_count)
    n_genes = LazyAttribute(lambda obj: obj.config.default_gene_count)

    class Meta:
        model = SyntheticExperiment

    @classmethod
    def _create(cls, model_class, **kwargs):
        """Simulate counts genes x samples with control / treated groups."""
        config = kwargs.get("config", MEDIUM_DATASET_CONFIG)
        n_samples = kwargs.get("n_samples", config.default_sample_count)
        n_genes = kwargs.get("n_genes", config.default_gene_count)
        rng = cls._rng(config)

        sample_names = [f"Sample_{i:02d}" for i in range(n_samples)]
        gene_names = [f"Gene_{i:04d}" for i in range(n_genes)]
        n_control = n_samples // 2
        conditions = ["control"] * n_control + ["treated"] * (n_samples - n_control)

        means = np.exp(
            rng.normal(config.log_mean_expression, config.log_mean_sd, n_genes)
        )
        dispersions = config.trend_a0 + config.trend_a1 / means
        size_factors = np.exp(rng.normal(0.0, config.size_factor_sd, n_samples))
        size_factors /= np.exp(np.mean(np.log(size_factors)))

        n_de = int(round(config.fraction_de * n_genes))
        lfc = np.zeros(n_genes)
        lfc[:n_de] = config.lfc_magnitude * np.where(np.arange(n_de) % 2 == 0, 1, -1)
        treated = np.array([c == "treated" for c in conditions])

        mu = means[None, :] * size_factors[:, None]
        mu[treated] *= 2.0 ** lfc[None, :]
        n_param = 1.0 / dispersions
        counts = rng.negative_binomial(n_param[None, :], n_param / (n_param + mu))

        metadata = pd.DataFrame(
            {
                "condition": conditions,
                "batch": [f"batch{i % 2 + 1}" for i in range(n_samples)],
                "donor": [fake.last_name() for _ in range(n_samples)],
            },
            index=pd.Index(sample_names),
        )

        return model_class(
            counts=pd.DataFrame(counts.T, index=gene_names, columns=sample_names),
            metadata=metadata,
            true_means=pd.Series(means, index=gene_names),
            true_dispersions=pd.Series(dispersions, index=gene_names),
            size_factors=pd.Series(size_factors, index=sample_names),
            de_genes=gene_names[:n_de],
        )


class GeneSetCollectionFactory(BaseDataFactory):
    """Factory for gene-set collections over a gene list."""

    n_sets = 10
    set_size = 20

    class Meta:
        model = dict

    @classmethod
    def _create(cls, model_class, **kwargs):
        """Random gene sets drawn from kwargs['genes']."""
        config = kwargs.get("config", MEDIUM_DATASET_CONFIG)
        genes = list(kwargs["genes"])
        n_sets = kwargs.get("n_sets", cls.n_sets)
        set_size = kwargs.get("set_size", cls.set_size)
        rng = cls._rng(config)

        collection: Dict[str, FrozenSet[str]] = {}
        for i in range(n_sets):
            members = rng.choice(genes, size=min(set_size, len(genes)), replace=False)
            collection[f"SET_{i:02d}"] = frozenset(members.tolist())
        return model_class(collection)


def toy_counts() -> pd.DataFrame:
    """Six genes x four samples with one strongly induced gene."""
    return pd.DataFrame(
        {
            "s1": [10, 50, 20, 200, 5, 1000],
            "s2": [12, 50, 25, 180, 8, 1100],
            "s3": [100, 50, 22, 210, 6, 950],
            "s4": [120, 50, 18, 190, 7, 1050],
        },
        index=["gene_de", "gene_flat", "gene_a", "gene_b", "gene_c", "gene_d"],
    )


def toy_metadata() -> pd.DataFrame:
    """Conditions A (s1, s2) and B (s3, s4)."""
    return pd.DataFrame(
        {"condition": ["A", "A", "B", "B"]}, index=["s1", "s2", "s3", "s4"]
    )
