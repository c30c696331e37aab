"""Differential expression testing for clustering module.

Wilcoxon rank-sum tests of each cluster against all other cells on the
log-normalized matrix. Genes are processed in column chunks so the matrix
is never densified as a whole; chunks run in a thread pool.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple
import logging
import time
from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pandas as pd
from scipy import sparse
from scipy.stats import mannwhitneyu
from statsmodels.stats.multitest import multipletests

from ...errors import DimensionMismatchError, EmptyClusterError
from ..store import ClusterAssignment, MarkerTable, MatrixStore
from .config import DEConfig


MARKER_COLUMNS = [
    "cluster",
    "gene",
    "avg_log2FC",
    "pct_in",
    "pct_out",
    "statistic",
    "p_val",
    "p_val_adj",
]


def sort_markers(table: pd.DataFrame) -> pd.DataFrame:
    """Order by cluster, p-value, |log2FC| descending, then gene id."""
    if table.empty:
        return table
    keyed = table.assign(_abs_lfc=table["avg_log2FC"].abs())
    keyed = keyed.sort_values(
        ["cluster", "p_val", "_abs_lfc", "gene"],
        ascending=[True, True, False, True],
        kind="mergesort",
    )
    return keyed.drop(columns="_abs_lfc").reset_index(drop=True)


@dataclass
class DEResult:
    """Result from marker testing.

    Attributes
    ----------
    markers : MarkerTable
        Marker table artifact
    skipped_clusters : List[int]
        Clusters that could not be tested
    elapsed_seconds : float
        Time taken for DE computation
    """

    markers: MarkerTable
    skipped_clusters: List[int] = field(default_factory=list)
    elapsed_seconds: float = 0.0


class DERunner:
    """Differential expression test runner.

    Parameters
    ----------
    config : DEConfig, optional
        DE configuration. If None, uses defaults.
    logger : logging.Logger, optional
        Logger instance. If None, creates default logger.

    Example
    -------
    >>> from cellprograms.core.clustering import DERunner, DEConfig
    >>> runner = DERunner(DEConfig(min_pct=0.25))
    >>> result = runner.run_de_tests(lognorm, assignment)
    >>> result.markers.for_cluster(0).head()
    """

    def __init__(
        self,
        config: Optional[DEConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or DEConfig()
        self.logger = logger or logging.getLogger(__name__)

    @staticmethod
    def check_cluster(cluster_id: int, n_in: int, n_out: int) -> None:
        """Raise ``EmptyClusterError`` when a side of the test is empty."""
        if n_in == 0 or n_out == 0:
            raise EmptyClusterError(cluster_id, n_in, n_out)

    def _aligned_labels(self, store: MatrixStore, assignment: ClusterAssignment) -> np.ndarray:
        labels = assignment.labels.reindex(store.cell_ids)
        if labels.isna().any():
            raise DimensionMismatchError(
                "cells with cluster labels", store.n_cells, int(labels.notna().sum())
            )
        return labels.to_numpy(dtype=np.int64)

    def _test_chunk(
        self,
        csc: sparse.csc_matrix,
        cols: np.ndarray,
        gene_ids: np.ndarray,
        labels: np.ndarray,
        clusters: Sequence[int],
    ) -> List[pd.DataFrame]:
        """Test one gene chunk for every cluster."""
        cfg = self.config
        dense = csc[:, cols].toarray()
        restored = np.expm1(dense)
        detected = dense > 0
        frames = []
        for cluster in clusters:
            mask = labels == cluster
            pct_in = detected[mask].mean(axis=0)
            pct_out = detected[~mask].mean(axis=0)
            lfc = np.log2(restored[mask].mean(axis=0) + 1.0) - np.log2(
                restored[~mask].mean(axis=0) + 1.0
            )
            keep = (np.maximum(pct_in, pct_out) >= cfg.min_pct) & (
                np.abs(lfc) >= cfg.logfc_threshold
            )
            if cfg.only_positive:
                keep &= lfc > 0
            if not keep.any():
                continue
            stat, p_val = mannwhitneyu(
                dense[mask][:, keep],
                dense[~mask][:, keep],
                alternative="two-sided",
                use_continuity=True,
                method="asymptotic",
                axis=0,
            )
            frames.append(
                pd.DataFrame(
                    {
                        "cluster": cluster,
                        "gene": gene_ids[cols][keep],
                        "avg_log2FC": lfc[keep],
                        "pct_in": pct_in[keep],
                        "pct_out": pct_out[keep],
                        "statistic": np.atleast_1d(stat),
                        "p_val": np.nan_to_num(np.atleast_1d(p_val), nan=1.0),
                    }
                )
            )
        return frames

    def run_de_tests(
        self,
        store: MatrixStore,
        assignment: ClusterAssignment,
        clusters: Optional[Sequence[int]] = None,
        name: Optional[str] = None,
    ) -> DEResult:
        """Find markers of every cluster against all other cells.

        Parameters
        ----------
        store : MatrixStore
            Log-normalized store
        assignment : ClusterAssignment
            Cluster labels for the store's cells
        clusters : Sequence[int], optional
            Clusters to test (default: all clusters of the assignment)
        name : str, optional
            Artifact name (default: the assignment's name)

        Returns
        -------
        DEResult
            Marker table plus the clusters that were skipped
        """
        cfg = self.config
        labels = self._aligned_labels(store, assignment)
        if clusters is None:
            clusters = sorted(int(c) for c in np.unique(labels))

        testable: List[int] = []
        skipped: List[int] = []
        for cluster in clusters:
            n_in = int(np.sum(labels == cluster))
            try:
                self.check_cluster(cluster, n_in, len(labels) - n_in)
            except EmptyClusterError as exc:
                self.logger.warning("Skipping marker test: %s", exc.message)
                skipped.append(int(cluster))
                continue
            testable.append(int(cluster))

        self.logger.info(
            "Computing markers for %d clusters over %d genes (chunk=%d, workers=%d)",
            len(testable),
            store.n_genes,
            cfg.chunk_size,
            cfg.n_workers,
        )
        start = time.time()
        csc = store.matrix.tocsc()
        gene_ids = store.gene_ids.to_numpy().astype(str)
        chunks = [
            np.arange(lo, min(lo + cfg.chunk_size, store.n_genes))
            for lo in range(0, store.n_genes, cfg.chunk_size)
        ]
        frames: List[pd.DataFrame] = []
        if testable:
            with ThreadPoolExecutor(max_workers=max(1, cfg.n_workers)) as executor:
                for chunk_frames in executor.map(
                    lambda cols: self._test_chunk(csc, cols, gene_ids, labels, testable),
                    chunks,
                ):
                    frames.extend(chunk_frames)

        table = self._adjust(frames)
        elapsed = time.time() - start
        self.logger.info(
            "Marker testing completed in %.1f seconds: %d rows, %d clusters skipped",
            elapsed,
            len(table),
            len(skipped),
        )
        tags = tuple(f"EmptyClusterError:{c}" for c in skipped)
        markers = MarkerTable(
            name=name or assignment.name,
            table=table,
            skipped_clusters=tuple(skipped),
            parents=(store.artifact_id, assignment.artifact_id),
            params={
                "min_pct": float(cfg.min_pct),
                "logfc_threshold": float(cfg.logfc_threshold),
                "only_positive": bool(cfg.only_positive),
                "test": "wilcoxon",
                "correction": "bonferroni",
            },
            warnings=tags,
        )
        return DEResult(markers=markers, skipped_clusters=skipped, elapsed_seconds=elapsed)

    @staticmethod
    def _adjust(frames: List[pd.DataFrame]) -> pd.DataFrame:
        """Bonferroni-adjust p-values per cluster and sort."""
        if not frames:
            return pd.DataFrame(columns=MARKER_COLUMNS)
        table = pd.concat(frames, ignore_index=True)
        adjusted = []
        for _, group in table.groupby("cluster", sort=True):
            _, p_adj, _, _ = multipletests(group["p_val"].to_numpy(), method="bonferroni")
            adjusted.append(pd.Series(p_adj, index=group.index))
        table["p_val_adj"] = pd.concat(adjusted)
        return sort_markers(table[MARKER_COLUMNS])

    @staticmethod
    def top_markers(markers: MarkerTable, n_genes: int = 10) -> Dict[int, List[str]]:
        """Map cluster to its top marker genes."""
        top: Dict[int, List[str]] = {}
        for cluster, group in markers.table.groupby("cluster", sort=True):
            top[int(cluster)] = group["gene"].head(n_genes).tolist()
        return top
