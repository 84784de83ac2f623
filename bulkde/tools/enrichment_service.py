"""
Gene-set enrichment service.

Two modes are provided:

- Over-representation analysis (ORA): hypergeometric upper-tail test of
  the overlap between a query gene list and each reference set within a
  gene universe.
- Preranked gene-set enrichment (GSEA): weighted Kolmogorov-Smirnov running
  score over a full ranked gene list, with a label-permutation null,
  size-stratified normalized scores and empirical p-values.

Gene identifiers are mapped to integer positions once per run; every
overlap and running-score computation works on index arrays.
"""

from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy.stats import hypergeom

from bulkde.config import EnrichmentSettings
from bulkde.core import ConfigurationError, IdentifierMappingError
from bulkde.utils.logger import get_logger
from bulkde.utils.multitest import benjamini_hochberg

logger = get_logger(__name__)

ORA_COLUMNS = [
    "Term",
    "Overlap",
    "SetSize",
    "OddsRatio",
    "P-value",
    "Adjusted P-value",
    "Genes",
]
GSEA_COLUMNS = ["Term", "Hits", "ES", "NES", "P-value", "Adjusted P-value", "LeadingEdge"]

GeneSets = Mapping[str, Iterable[str]]


def running_enrichment_scores(
    positions: np.ndarray, abs_weights: np.ndarray, n_genes: int
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Maximum-deviation enrichment scores for sorted hit positions.

    The running sum only changes direction at hits, so its extreme value
    is reached either right after a hit (peak) or right before one
    (trough). Both are computed in closed form from the hit positions.

    Args:
        positions: Sorted hit positions, shape (n_draws, set_size)
        abs_weights: |score| ** weight for every position of the ranking
        n_genes: Length of the ranking

    Returns:
        Tuple[np.ndarray, np.ndarray]: Enrichment score per draw and the
        index of the hit at which it is reached
    """
    positions = np.atleast_2d(positions)
    n_draws, set_size = positions.shape
    weights = abs_weights[positions]
    norm = weights.sum(axis=1, keepdims=True)
    flat = norm[:, 0] == 0
    if flat.any():
        weights[flat] = 1.0
        norm[flat] = set_size
    steps = weights / norm
    miss_step = 1.0 / (n_genes - set_size)

    hit_number = np.arange(1, set_size + 1)
    peaks = np.cumsum(steps, axis=1) - (positions + 1 - hit_number) * miss_step
    troughs = peaks - steps
    candidates = np.concatenate([peaks, troughs], axis=1)
    best = np.argmax(np.abs(candidates), axis=1)
    scores = candidates[np.arange(n_draws), best]
    return scores, best % set_size


class EnrichmentService:
    """
    Stateless service for over-representation and preranked enrichment.
    """

    def __init__(
        self, settings: Optional[EnrichmentSettings] = None, n_jobs: int = 1
    ):
        """
        Initialize the enrichment service.

        Args:
            settings: Set size limits, score weight and permutation chunking
            n_jobs: Worker threads for permutation chunks
        """
        self.settings = settings or EnrichmentSettings()
        self.n_jobs = n_jobs

    def _map_gene_set(
        self, name: str, members: Iterable[str], gene_index: Dict[str, int]
    ) -> Tuple[np.ndarray, int]:
        """
        Translate set members to sorted positions in the gene index.

        Returns:
            Tuple[np.ndarray, int]: Positions and number of unmapped members

        Raises:
            IdentifierMappingError: If no member is present in the index
        """
        members = set(members)
        positions = sorted(gene_index[g] for g in members if g in gene_index)
        unmapped = len(members) - len(positions)
        if not positions:
            raise IdentifierMappingError(
                f"Gene set '{name}' shares no identifier with the tested genes",
                details={"set": name, "n_members": len(members)},
            )
        return np.asarray(positions, dtype=np.int64), unmapped

    def _index_gene_sets(
        self, gene_sets: GeneSets, gene_index: Dict[str, int]
    ) -> Tuple[Dict[str, np.ndarray], Dict[str, int]]:
        """Map every set, dropping unmappable or out-of-range ones."""
        indexed: Dict[str, np.ndarray] = {}
        counts = {
            "n_sets_input": len(gene_sets),
            "n_sets_unmapped": 0,
            "n_genes_unmapped": 0,
            "n_sets_size_filtered": 0,
        }
        for name in sorted(gene_sets):
            try:
                positions, unmapped = self._map_gene_set(
                    name, gene_sets[name], gene_index
                )
            except IdentifierMappingError as e:
                logger.debug(str(e))
                counts["n_sets_unmapped"] += 1
                continue
            counts["n_genes_unmapped"] += unmapped
            if not self.settings.min_size <= len(positions) <= self.settings.max_size:
                counts["n_sets_size_filtered"] += 1
                continue
            indexed[name] = positions

        if counts["n_sets_unmapped"] or counts["n_genes_unmapped"]:
            logger.warning(
                f"{counts['n_genes_unmapped']} gene-set members not among the tested "
                f"genes; {counts['n_sets_unmapped']} sets had no match and were excluded"
            )
        return indexed, counts

    def run_ora(
        self,
        query: Sequence[str],
        universe: Sequence[str],
        gene_sets: GeneSets,
    ) -> Tuple[pd.DataFrame, Dict[str, Any]]:
        """
        Hypergeometric over-representation test for each reference set.

        Query genes outside the universe are discarded and counted. Sets with
        zero overlap are part of the Benjamini-Hochberg family but are not
        reported.

        Args:
            query: Query genes (e.g. significant DE genes)
            universe: Background genes (e.g. all tested genes)
            gene_sets: Mapping from set name to member genes

        Returns:
            Tuple[pd.DataFrame, Dict[str, Any]]: ORA table (ORA_COLUMNS, sorted by
            adjusted p-value) and run statistics; the table is empty when
            nothing overlaps
        """
        universe_genes = list(dict.fromkeys(universe))
        gene_index = {gene: i for i, gene in enumerate(universe_genes)}
        unique_query = list(dict.fromkeys(query))
        query_positions = [gene_index[g] for g in unique_query if g in gene_index]
        n_discarded = len(unique_query) - len(query_positions)
        if n_discarded:
            logger.warning(
                f"{n_discarded} query genes are not in the universe and were discarded"
            )

        n_universe = len(universe_genes)
        n_query = len(query_positions)
        query_mask = np.zeros(n_universe, dtype=bool)
        query_mask[query_positions] = True

        indexed, map_stats = self._index_gene_sets(gene_sets, gene_index)
        logger.info(
            f"Running ORA: {n_query} query genes, universe {n_universe}, "
            f"{len(indexed)} gene sets"
        )

        rows = []
        for name, positions in indexed.items():
            hits = positions[query_mask[positions]]
            overlap = len(hits)
            set_size = len(positions)
            if overlap > 0:
                pvalue = float(hypergeom.sf(overlap - 1, n_universe, set_size, n_query))
            else:
                pvalue = 1.0
            table = np.array(
                [
                    overlap,
                    n_query - overlap,
                    set_size - overlap,
                    n_universe - set_size - n_query + overlap,
                ],
                dtype=float,
            )
            if (table == 0).any():
                table += 0.5
            odds_ratio = (table[0] * table[3]) / (table[1] * table[2])
            rows.append(
                {
                    "Term": name,
                    "Overlap": overlap,
                    "SetSize": set_size,
                    "OddsRatio": float(odds_ratio),
                    "P-value": pvalue,
                    "Genes": ";".join(universe_genes[i] for i in hits),
                }
            )

        stats = {
            "mode": "ora",
            "n_query_genes": n_query,
            "n_query_discarded": n_discarded,
            "n_universe": n_universe,
            "n_sets_tested": len(rows),
            **map_stats,
        }

        if n_query == 0 or not rows:
            logger.warning("No gene set could be tested for over-representation")
            stats["n_sets_reported"] = 0
            return pd.DataFrame(columns=ORA_COLUMNS), stats

        results = pd.DataFrame(rows)
        results["Adjusted P-value"] = benjamini_hochberg(results["P-value"].to_numpy())
        results = results[results["Overlap"] > 0][ORA_COLUMNS]
        results = results.sort_values(
            ["Adjusted P-value", "P-value"], kind="mergesort"
        ).reset_index(drop=True)

        stats["n_sets_reported"] = int(len(results))
        logger.info(f"ORA completed: {len(results)} sets with overlap")
        return results, stats

    def run_gsea_prerank(
        self,
        ranking: pd.Series,
        gene_sets: GeneSets,
        permutations: int = 1000,
        seed: Optional[int] = None,
    ) -> Tuple[pd.DataFrame, Dict[str, Any]]:
        """
        Preranked gene-set enrichment with a label-permutation null.

        Genes are ordered by descending score, ties kept in input order. The
        null is built by shuffling gene labels over the fixed ranking;
        permutations are drawn in chunks with independent child seeds so
        the result does not depend on n_jobs.

        Args:
            ranking: Score per gene (index = gene id), e.g. the Wald statistic
            gene_sets: Mapping from set name to member genes
            permutations: Number of label permutations
            seed: Seed of the permutation generator (required)

        Returns:
            Tuple[pd.DataFrame, Dict[str, Any]]: GSEA table (GSEA_COLUMNS, sorted
            by adjusted p-value) and run statistics; the table is empty when
            no set can be tested

        Raises:
            ConfigurationError: If seed is None or permutations < 1
        """
        if seed is None:
            raise ConfigurationError(
                "Permutation enrichment needs an explicit seed for reproducibility"
            )
        if permutations < 1:
            raise ConfigurationError(f"permutations must be >= 1, got {permutations}")

        ranking = ranking.dropna()
        n_duplicated = int(ranking.index.duplicated().sum())
        if n_duplicated:
            logger.warning(f"Keeping the first of {n_duplicated} duplicated genes in ranking")
            ranking = ranking[~ranking.index.duplicated(keep="first")]
        ordered = ranking.sort_values(ascending=False, kind="mergesort")
        genes = ordered.index.astype(str).tolist()
        n_genes = len(genes)
        abs_weights = np.abs(ordered.to_numpy(dtype=float)) ** self.settings.weight

        gene_index = {gene: i for i, gene in enumerate(genes)}
        indexed, map_stats = self._index_gene_sets(gene_sets, gene_index)
        indexed = {name: pos for name, pos in indexed.items() if len(pos) < n_genes}

        stats = {
            "mode": "gsea_prerank",
            "n_ranked_genes": n_genes,
            "permutations": permutations,
            "seed": seed,
            "n_sets_tested": len(indexed),
            **map_stats,
        }
        if not indexed:
            logger.warning("No gene set could be tested for rank-based enrichment")
            return pd.DataFrame(columns=GSEA_COLUMNS), stats

        names = list(indexed)
        logger.info(
            f"Running GSEA prerank: {n_genes} ranked genes, {len(names)} sets, "
            f"{permutations} permutations"
        )

        observed = []
        leading_edges = []
        for name in names:
            positions = indexed[name]
            es, at_hit = running_enrichment_scores(positions[None, :], abs_weights, n_genes)
            es, at_hit = float(es[0]), int(at_hit[0])
            edge = positions[: at_hit + 1] if es >= 0 else positions[at_hit:]
            observed.append(es)
            leading_edges.append(";".join(genes[i] for i in edge))

        null = self._permutation_null(indexed, names, abs_weights, n_genes, permutations, seed)

        sizes = np.array([len(indexed[name]) for name in names])
        nes = np.full(len(names), np.nan)
        pvalues = np.ones(len(names))
        for size in np.unique(sizes):
            columns = np.flatnonzero(sizes == size)
            pooled = null[:, columns].ravel()
            positive = pooled[pooled >= 0]
            negative = pooled[pooled < 0]
            for j in columns:
                es = observed[j]
                if es >= 0:
                    tail, more_extreme = positive, positive >= es
                else:
                    tail, more_extreme = negative, negative <= es
                pvalues[j] = (more_extreme.sum() + 1.0) / (len(tail) + 1.0)
                if len(tail) and np.mean(tail) != 0:
                    nes[j] = es / abs(np.mean(tail))

        results = pd.DataFrame(
            {
                "Term": names,
                "Hits": sizes,
                "ES": observed,
                "NES": nes,
                "P-value": pvalues,
                "Adjusted P-value": benjamini_hochberg(pvalues),
                "LeadingEdge": leading_edges,
            }
        )[GSEA_COLUMNS]
        results = results.sort_values(
            ["Adjusted P-value", "P-value"], kind="mergesort"
        ).reset_index(drop=True)

        logger.info(f"GSEA prerank completed for {len(results)} gene sets")
        return results, stats

    def _permutation_null(
        self,
        indexed: Dict[str, np.ndarray],
        names: List[str],
        abs_weights: np.ndarray,
        n_genes: int,
        permutations: int,
        seed: int,
    ) -> np.ndarray:
        """
        Null enrichment scores, shape (permutations, n_sets).

        Chunk c always uses child seed c of the run seed and writes only its
        own rows, so serial and threaded execution give identical output.
        """
        chunk = max(1, self.settings.permutation_chunk)
        starts = list(range(0, permutations, chunk))
        child_seeds = np.random.SeedSequence(seed).spawn(len(starts))
        null = np.empty((permutations, len(names)))

        def fill_chunk(c: int) -> None:
            rng = np.random.default_rng(child_seeds[c])
            start = starts[c]
            stop = min(start + chunk, permutations)
            shuffles = np.stack([rng.permutation(n_genes) for _ in range(stop - start)])
            for j, name in enumerate(names):
                positions = np.sort(shuffles[:, indexed[name]], axis=1)
                null[start:stop, j], _ = running_enrichment_scores(
                    positions, abs_weights, n_genes
                )

        if self.n_jobs == 1:
            for c in range(len(starts)):
                fill_chunk(c)
        else:
            with ThreadPoolExecutor(max_workers=self.n_jobs) as executor:
                for future in [executor.submit(fill_chunk, c) for c in range(len(starts))]:
                    future.result()
        return null
