"""Louvain community detection with a resolution parameter.

Phase 1 moves single nodes between communities while modularity improves;
phase 2 collapses communities into super-nodes. Levels repeat until no node
moves or modularity stops improving.

Modularity convention: for a symmetric weight matrix W with row sums k and
total weight 2m = sum(W),

    Q = sum_c [ in_c / 2m - gamma * (tot_c / 2m) ** 2 ]

where ``in_c`` sums W over ordered pairs inside community c (self loops
once) and ``tot_c`` sums k over its members. Aggregation keeps ``in_c`` on
the super-node diagonal so Q is preserved across levels.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Tuple
import heapq
import logging

import numpy as np
import pandas as pd
from scipy import sparse

from ..store import ClusterAssignment, NeighborGraph
from .config import ClusteringConfig


def modularity(adjacency: sparse.spmatrix, labels: np.ndarray, resolution: float = 1.0) -> float:
    """Modularity of a partition of a symmetric weighted graph."""
    W = sparse.coo_matrix(adjacency)
    two_m = float(W.sum())
    if two_m <= 0:
        return 0.0
    labels = np.asarray(labels)
    same = labels[W.row] == labels[W.col]
    inside = float(W.data[same].sum())
    degree = np.asarray(sparse.csr_matrix(adjacency).sum(axis=1)).ravel()
    tot = np.bincount(labels, weights=degree)
    return inside / two_m - resolution * float(np.sum((tot / two_m) ** 2))


def aggregate(adjacency: sparse.csr_matrix, labels: np.ndarray) -> sparse.csr_matrix:
    """Collapse communities (dense labels 0..c-1) into super-nodes."""
    n = adjacency.shape[0]
    n_comm = int(labels.max()) + 1
    P = sparse.csr_matrix((np.ones(n), (np.arange(n), labels)), shape=(n, n_comm))
    return (P.T @ adjacency @ P).tocsr()


def dense_labels(labels: np.ndarray) -> np.ndarray:
    _, inverse = np.unique(labels, return_inverse=True)
    return inverse.astype(np.int64)


def order_by_size(labels: np.ndarray) -> np.ndarray:
    """Renumber clusters 0..c-1 by descending size, ties by first member index."""
    uniq, first, inverse = np.unique(labels, return_index=True, return_inverse=True)
    sizes = np.bincount(inverse)
    order = np.lexsort((first, -sizes))
    new_id = np.empty(len(uniq), dtype=np.int64)
    new_id[order] = np.arange(len(uniq))
    return new_id[inverse]


@dataclass
class LouvainResult:
    """Partition found by one Louvain start.

    Attributes
    ----------
    labels : np.ndarray
        Dense community id per node
    modularity : float
        Final modularity
    trace : List[float]
        Modularity at the singleton partition and after each level
    n_levels : int
        Number of accepted levels
    """

    labels: np.ndarray
    modularity: float
    trace: List[float] = field(default_factory=list)
    n_levels: int = 0


class Louvain:
    """Seeded two-phase Louvain optimizer.

    Parameters
    ----------
    resolution : float
        Resolution parameter gamma
    epsilon : float
        Minimum gain over staying required to move a node
    max_levels : int
        Maximum aggregation levels
    max_passes : int
        Maximum local-move passes per level
    """

    def __init__(
        self,
        resolution: float = 1.0,
        epsilon: float = 1e-10,
        max_levels: int = 20,
        max_passes: int = 100,
    ):
        self.resolution = resolution
        self.epsilon = epsilon
        self.max_levels = max_levels
        self.max_passes = max_passes

    def move_nodes(self, W: sparse.csr_matrix, rng: np.random.Generator) -> Tuple[np.ndarray, bool]:
        """Phase 1 on one level.

        Returns
        -------
        Tuple[np.ndarray, bool]
            Community label per node (not dense) and whether any node moved
        """
        n = W.shape[0]
        two_m = float(W.sum())
        m = two_m / 2.0
        gamma = self.resolution
        degree = np.asarray(W.sum(axis=1)).ravel()
        comm = np.arange(n)
        tot = degree.copy()
        size = np.ones(n, dtype=np.int64)
        free: List[int] = []
        indptr, indices, data = W.indptr, W.indices, W.data

        def smallest_free() -> int:
            while free and size[free[0]] != 0:
                heapq.heappop(free)
            return free[0]

        moved_any = False
        order = rng.permutation(n)
        for _ in range(self.max_passes):
            n_moves = 0
            for i in order:
                ci = comm[i]
                k_i = degree[i]
                nbrs = indices[indptr[i]:indptr[i + 1]]
                weights = data[indptr[i]:indptr[i + 1]]
                not_self = nbrs != i
                nbr_comm = comm[nbrs[not_self]]
                weights = weights[not_self]

                # Take i out of its community
                tot[ci] -= k_i
                size[ci] -= 1
                if size[ci] == 0:
                    heapq.heappush(free, ci)

                cands, inverse = np.unique(nbr_comm, return_inverse=True)
                k_in = np.bincount(inverse, weights=weights, minlength=len(cands))
                if ci not in cands:
                    cands = np.append(cands, ci)
                    k_in = np.append(k_in, 0.0)
                gains = k_in / m - gamma * tot[cands] * k_i / (2.0 * m * m)

                # Isolation into an empty community has gain 0
                empty = smallest_free()
                if empty not in cands:
                    cands = np.append(cands, empty)
                    gains = np.append(gains, 0.0)

                stay_gain = gains[np.flatnonzero(cands == ci)[0]]
                best_gain = gains.max()
                best = int(cands[gains == best_gain].min())
                if best != ci and best_gain - stay_gain > self.epsilon:
                    target = best
                    n_moves += 1
                else:
                    target = ci

                comm[i] = target
                tot[target] += k_i
                size[target] += 1
            if n_moves == 0:
                break
            moved_any = True
        return comm, moved_any

    def run(self, adjacency: sparse.spmatrix, rng: np.random.Generator) -> LouvainResult:
        """Optimize modularity from the singleton partition."""
        W0 = sparse.csr_matrix(adjacency, dtype=np.float64)
        n = W0.shape[0]
        membership = np.arange(n)
        q = modularity(W0, membership, self.resolution)
        result = LouvainResult(labels=membership, modularity=q, trace=[q])
        if float(W0.sum()) <= 0:
            return result

        W = W0
        for _ in range(self.max_levels):
            comm, moved = self.move_nodes(W, rng)
            if not moved:
                break
            level_labels = dense_labels(comm)
            candidate = level_labels[membership]
            q_new = modularity(W0, candidate, self.resolution)
            if q_new <= result.modularity:
                break
            membership = candidate
            result.labels = membership
            result.modularity = q_new
            result.trace.append(q_new)
            result.n_levels += 1
            W = aggregate(W, level_labels)
            if W.shape[0] == 1:
                break
        return result


class CommunityDetector:
    """Louvain clustering of a neighbor graph at one or more resolutions.

    Parameters
    ----------
    config : ClusteringConfig, optional
        Clustering configuration
    random_seed : int
        Seed for node visiting order; restarts derive child seeds from it
    logger : logging.Logger, optional
        Logger instance

    Example
    -------
    >>> detector = CommunityDetector(ClusteringConfig(resolutions=[1.0, 0.6]))
    >>> assignments = detector.cluster_all(graph)
    >>> [a.artifact_id for a in assignments]
    ['clusters:res1.0', 'clusters:res0.6']
    """

    def __init__(
        self,
        config: Optional[ClusteringConfig] = None,
        random_seed: int = 1337,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or ClusteringConfig()
        self.random_seed = random_seed
        self.logger = logger or logging.getLogger(__name__)

    @staticmethod
    def assignment_name(resolution: float) -> str:
        return f"res{float(resolution)}"

    def cluster(
        self,
        graph: NeighborGraph,
        resolution: float = 1.0,
        name: Optional[str] = None,
    ) -> ClusterAssignment:
        """Partition ``graph`` at ``resolution``; best of ``n_starts`` starts."""
        cfg = self.config
        louvain = Louvain(
            resolution=resolution,
            epsilon=cfg.epsilon,
            max_levels=cfg.max_levels,
            max_passes=cfg.max_passes,
        )
        seeds = np.random.SeedSequence(self.random_seed).spawn(max(1, cfg.n_starts))
        best: Optional[LouvainResult] = None
        for start, seed in enumerate(seeds):
            result = louvain.run(graph.adjacency, np.random.default_rng(seed))
            self.logger.debug(
                "Louvain start %d (resolution=%.2f): Q=%.4f, %d levels",
                start,
                resolution,
                result.modularity,
                result.n_levels,
            )
            if best is None or result.modularity > best.modularity:
                best = result

        labels = order_by_size(best.labels)
        n_clusters = int(labels.max()) + 1 if labels.size else 0
        self.logger.info(
            "Louvain resolution=%.2f: %d clusters, modularity=%.4f",
            resolution,
            n_clusters,
            best.modularity,
        )
        return ClusterAssignment(
            name=name or self.assignment_name(resolution),
            labels=pd.Series(labels, index=graph.cell_ids),
            resolution=float(resolution),
            modularity=float(best.modularity),
            modularity_trace=tuple(float(q) for q in best.trace),
            parents=(graph.artifact_id,),
            params={
                "resolution": float(resolution),
                "n_starts": int(cfg.n_starts),
                "epsilon": float(cfg.epsilon),
                "random_seed": self.random_seed,
                "n_levels": best.n_levels,
            },
        )

    def cluster_all(self, graph: NeighborGraph) -> List[ClusterAssignment]:
        return [self.cluster(graph, r) for r in self.config.resolutions]
