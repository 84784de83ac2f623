"""
Count matrix loading service for bulk RNA-seq data.

This module reads raw count tables and sample metadata, aligns them by
sample identifier, removes genes with too few reads and packs the result
into an AnnData object (samples x genes) for the downstream services. It
also owns the delimited readers and writers for result tables and gene-set
collections.
"""

from pathlib import Path
from typing import Any, Dict, FrozenSet, List, Optional, Tuple, Union

import anndata
import numpy as np
import pandas as pd

from bulkde.core import AlignmentError, InsufficientDataError
from bulkde.utils.logger import get_logger

logger = get_logger(__name__)

DE_RESULT_COLUMNS = ["baseMean", "log2FoldChange", "lfcSE", "stat", "pvalue", "padj"]
NA_REP = "NA"

PathLike = Union[str, Path]


class CountLoaderService:
    """
    Stateless service for loading and aligning count data.

    The count matrix is expected genes x samples (the usual layout of
    featureCounts / htseq tables); the returned AnnData is samples x genes
    with the raw counts in both X and layers["counts"].
    """

    def __init__(self, sep: str = "\t"):
        """
        Initialize the loader.

        Args:
            sep: Field delimiter used by the input and output tables
        """
        self.sep = sep

    def load_count_matrix(self, path: PathLike) -> pd.DataFrame:
        """
        Read a delimited genes x samples count table.

        The first column holds gene identifiers, the header row holds
        sample identifiers.

        Args:
            path: Path to the count table

        Returns:
            pd.DataFrame: Count matrix indexed by gene identifier
        """
        logger.info(f"Loading count matrix from {path}")
        counts = pd.read_csv(path, sep=self.sep, index_col=0)
        counts.index = counts.index.astype(str)
        counts.columns = counts.columns.astype(str)
        logger.info(f"Loaded {counts.shape[0]} genes x {counts.shape[1]} samples")
        return counts

    def load_metadata(self, path: PathLike) -> pd.DataFrame:
        """
        Read a delimited samples x covariates metadata table.

        Args:
            path: Path to the metadata table; first column is the sample id

        Returns:
            pd.DataFrame: Metadata indexed by sample identifier
        """
        logger.info(f"Loading sample metadata from {path}")
        metadata = pd.read_csv(path, sep=self.sep, index_col=0, dtype=str)
        metadata.index = metadata.index.astype(str)
        logger.debug(f"Metadata columns: {list(metadata.columns)}")
        return metadata

    def align(
        self, counts: pd.DataFrame, metadata: pd.DataFrame
    ) -> Tuple[pd.DataFrame, pd.DataFrame]:
        """
        Validate counts and reorder metadata rows to the count columns.

        Args:
            counts: Genes x samples count matrix
            metadata: Sample metadata indexed by sample id

        Returns:
            Tuple[pd.DataFrame, pd.DataFrame]: Integer counts and aligned metadata

        Raises:
            AlignmentError: If identifiers are duplicated or the sample sets differ
            InsufficientDataError: If counts are empty, non-numeric or negative
        """
        duplicated_genes = counts.index[counts.index.duplicated()].unique().tolist()
        duplicated_samples = counts.columns[counts.columns.duplicated()].unique().tolist()
        duplicated_meta = metadata.index[metadata.index.duplicated()].unique().tolist()
        if duplicated_genes or duplicated_samples or duplicated_meta:
            raise AlignmentError(
                "Duplicated identifiers in input tables: "
                f"{len(duplicated_genes)} genes, {len(duplicated_samples)} count columns, "
                f"{len(duplicated_meta)} metadata rows",
                details={
                    "duplicated": {
                        "genes": duplicated_genes,
                        "samples": duplicated_samples,
                        "metadata": duplicated_meta,
                    }
                },
            )

        count_samples = set(counts.columns)
        metadata_samples = set(metadata.index)
        if count_samples != metadata_samples:
            missing_in_metadata = sorted(count_samples - metadata_samples)
            missing_in_counts = sorted(metadata_samples - count_samples)
            raise AlignmentError(
                "Sample identifiers differ between count matrix and metadata: "
                f"{len(missing_in_metadata)} missing from metadata "
                f"{missing_in_metadata[:5]}, {len(missing_in_counts)} missing from "
                f"counts {missing_in_counts[:5]}",
                details={
                    "missing_in_metadata": missing_in_metadata,
                    "missing_in_counts": missing_in_counts,
                },
            )

        if counts.empty:
            raise InsufficientDataError("Count matrix is empty")

        if not counts.dtypes.apply(lambda x: np.issubdtype(x, np.number)).all():
            raise InsufficientDataError("Count matrix contains non-numeric data")

        if counts.isna().any().any():
            raise InsufficientDataError(
                "Count matrix contains missing values",
                details={"genes": counts.index[counts.isna().any(axis=1)].tolist()},
            )

        negative = (counts < 0).any(axis=1)
        if negative.any():
            raise InsufficientDataError(
                f"Count matrix contains negative values in {int(negative.sum())} genes",
                details={"genes": counts.index[negative].tolist()},
            )

        aligned_metadata = metadata.loc[counts.columns].copy()
        logger.debug(f"Metadata aligned to {len(aligned_metadata)} count columns")
        return counts.round().astype(np.int64), aligned_metadata

    def filter_low_counts(
        self, counts: pd.DataFrame, threshold: int = 1
    ) -> Tuple[pd.DataFrame, Dict[str, Any]]:
        """
        Drop genes whose total count across samples is <= threshold.

        Args:
            counts: Genes x samples count matrix
            threshold: Minimum total count a gene must exceed to be kept

        Returns:
            Tuple[pd.DataFrame, Dict[str, Any]]: Filtered counts and filter stats
        """
        totals = counts.sum(axis=1)
        keep = totals > threshold
        filtered = counts.loc[keep]

        stats = {
            "count_threshold": threshold,
            "n_genes_input": int(len(counts)),
            "n_genes_removed": int((~keep).sum()),
            "n_genes_kept": int(keep.sum()),
        }
        logger.info(
            f"Removed {stats['n_genes_removed']} genes with total count <= {threshold}; "
            f"{stats['n_genes_kept']} genes kept"
        )
        return filtered, stats

    def build_dataset(
        self,
        counts: pd.DataFrame,
        metadata: pd.DataFrame,
        count_threshold: int = 1,
    ) -> Tuple[anndata.AnnData, Dict[str, Any]]:
        """
        Align, filter and pack counts into an AnnData object.

        Args:
            counts: Genes x samples count matrix
            metadata: Sample metadata indexed by sample id
            count_threshold: Minimum total count a gene must exceed to be kept

        Returns:
            Tuple[anndata.AnnData, Dict[str, Any]]: Samples x genes dataset and stats

        Raises:
            AlignmentError: If sample identifiers do not match
            InsufficientDataError: If no gene survives filtering
        """
        counts, metadata = self.align(counts, metadata)
        filtered, stats = self.filter_low_counts(counts, count_threshold)

        if filtered.empty:
            raise InsufficientDataError(
                f"No gene has a total count above {count_threshold}",
                details=stats,
            )

        adata = anndata.AnnData(
            X=filtered.T.to_numpy(dtype=np.float64),
            obs=metadata.copy(),
            var=pd.DataFrame(index=filtered.index.copy()),
        )
        adata.layers["counts"] = filtered.T.to_numpy(dtype=np.int64)
        adata.var["total_counts"] = filtered.sum(axis=1).to_numpy()
        adata.uns["filtering"] = stats

        stats = {**stats, "n_samples": int(adata.n_obs)}
        return adata, stats

    def load_dataset(
        self,
        counts_path: PathLike,
        metadata_path: PathLike,
        count_threshold: int = 1,
    ) -> Tuple[anndata.AnnData, Dict[str, Any]]:
        """Read both tables from disk and build the aligned dataset."""
        counts = self.load_count_matrix(counts_path)
        metadata = self.load_metadata(metadata_path)
        return self.build_dataset(counts, metadata, count_threshold)

    def write_de_results(self, results: pd.DataFrame, path: PathLike) -> Path:
        """
        Export a DE result table with the fixed column order.

        Columns: gene identifier, baseMean, log2FoldChange, lfcSE, stat,
        pvalue, padj. Missing values are written as NA.

        Args:
            results: DE result table indexed by gene identifier
            path: Output file path

        Returns:
            Path: Path of the written file
        """
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        results[DE_RESULT_COLUMNS].to_csv(
            path, sep=self.sep, na_rep=NA_REP, index_label="gene_id"
        )
        logger.info(f"Wrote {len(results)} DE results to {path}")
        return path

    def read_de_results(self, path: PathLike) -> pd.DataFrame:
        """
        Read a DE result table written by write_de_results.

        Args:
            path: Path to the exported table

        Returns:
            pd.DataFrame: DE results indexed by gene identifier, NA as NaN
        """
        results = pd.read_csv(
            path,
            sep=self.sep,
            index_col=0,
            na_values=[NA_REP],
            keep_default_na=False,
            float_precision="round_trip",
            dtype={"gene_id": str},
        )
        results.index.name = None
        missing = [c for c in DE_RESULT_COLUMNS if c not in results.columns]
        if missing:
            raise ValueError(f"DE result table {path} lacks columns: {missing}")
        return results[DE_RESULT_COLUMNS].astype(float)

    def write_enrichment_results(self, results: pd.DataFrame, path: PathLike) -> Path:
        """Export an enrichment result table, one row per gene set."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        results.to_csv(path, sep=self.sep, na_rep=NA_REP, index=False)
        logger.info(f"Wrote {len(results)} enrichment results to {path}")
        return path

    def read_gmt(self, path: PathLike) -> Dict[str, FrozenSet[str]]:
        """
        Read a gene-set collection in GMT format.

        Each line is: set name, description, member gene ids (tab separated).
        A name seen twice keeps the union of its members.

        Args:
            path: Path to the GMT file

        Returns:
            Dict[str, FrozenSet[str]]: Mapping from set name to member genes
        """
        gene_sets: Dict[str, set] = {}
        with open(path) as handle:
            for line_number, line in enumerate(handle, start=1):
                fields = [f.strip() for f in line.rstrip("\n").split("\t")]
                if not fields or not fields[0]:
                    continue
                if len(fields) < 3:
                    logger.warning(
                        f"Skipping GMT line {line_number} in {path}: no member genes"
                    )
                    continue
                members = [g for g in fields[2:] if g]
                gene_sets.setdefault(fields[0], set()).update(members)

        logger.info(f"Loaded {len(gene_sets)} gene sets from {path}")
        return {name: frozenset(members) for name, members in gene_sets.items()}

    def write_gmt(
        self, gene_sets: Dict[str, FrozenSet[str]], path: PathLike
    ) -> Path:
        """Write a gene-set collection in GMT format, members sorted."""
        path = Path(path)
        lines: List[str] = []
        for name, members in gene_sets.items():
            lines.append("\t".join([name, "NA", *sorted(members)]))
        path.write_text("\n".join(lines) + "\n")
        return path


def as_count_frame(
    adata: anndata.AnnData, layer: Optional[str] = "counts"
) -> pd.DataFrame:
    """Return a genes x samples DataFrame view of a layer (or X)."""
    matrix = adata.X if layer is None else adata.layers[layer]
    return pd.DataFrame(
        np.asarray(matrix).T, index=adata.var_names.copy(), columns=adata.obs_names.copy()
    )
