"""Shared-nearest-neighbor graph construction.

Builds an undirected k-nearest-neighbor graph over an embedding and weights
each edge by the overlap of the two cells' neighbor sets.
"""

from typing import Optional
import logging

import numpy as np
from scipy import sparse
from sklearn.neighbors import NearestNeighbors

from ...errors import InputFormatError
from ..store import Embedding, NeighborGraph
from .config import NeighborConfig


WEIGHTINGS = ("jaccard", "rank")

# Edges processed per block in rank weighting
RANK_BLOCK = 8192


def knn_indices(coords: np.ndarray, k: int) -> np.ndarray:
    """Exact k nearest neighbors, the cell itself in column 0.

    Parameters
    ----------
    coords : np.ndarray
        Cells x dims coordinates
    k : int
        Neighbors per cell including itself

    Returns
    -------
    np.ndarray
        Cells x k neighbor indices ordered by distance
    """
    nn = NearestNeighbors(n_neighbors=k, algorithm="brute", metric="euclidean")
    nn.fit(coords)
    indices = nn.kneighbors(coords, return_distance=False)

    # Duplicate points can displace a cell from its own first slot
    own = np.arange(coords.shape[0])
    bad = np.flatnonzero(indices[:, 0] != own)
    for i in bad:
        others = indices[i][indices[i] != i]
        indices[i] = np.concatenate([[i], others[: k - 1]])
    return indices


def knn_matrix(indices: np.ndarray) -> sparse.csr_matrix:
    """Binary cells x cells membership matrix of neighbor sets."""
    n_cells, k = indices.shape
    rows = np.repeat(np.arange(n_cells), k)
    return sparse.csr_matrix(
        (np.ones(n_cells * k), (rows, indices.ravel())), shape=(n_cells, n_cells)
    )


def kept_edges(membership: sparse.csr_matrix) -> sparse.csr_matrix:
    """Upper-triangular union of kNN edges, diagonal removed."""
    union = ((membership + membership.T) > 0).astype(np.float64)
    return sparse.triu(union, k=1).tocsr()


def jaccard_weights(membership: sparse.csr_matrix, edges: sparse.csr_matrix, k: int) -> sparse.csr_matrix:
    """Jaccard index of neighbor sets on every edge."""
    shared = (membership @ membership.T).tocsr()
    counts = shared.multiply(edges).tocsr()
    counts.eliminate_zeros()
    weights = counts.copy()
    weights.data = counts.data / (2.0 * k - counts.data)
    return weights


def rank_weights(indices: np.ndarray, edges: sparse.csr_matrix) -> sparse.csr_matrix:
    """Rank-weighted shared-neighbor score on every edge.

    For cells i and j the weight is ``(k - 0.5 * min_s(r_i(s) + r_j(s))) / k``
    over shared neighbors s, where ``r_i(s)`` is the rank of s in i's list
    (the cell itself has rank 0).
    """
    k = indices.shape[1]
    coo = edges.tocoo()
    ranks = np.arange(k)
    rank_sum = ranks[:, None] + ranks[None, :]
    out = np.zeros(coo.nnz)
    for start in range(0, coo.nnz, RANK_BLOCK):
        stop = min(start + RANK_BLOCK, coo.nnz)
        ni = indices[coo.row[start:stop]]
        nj = indices[coo.col[start:stop]]
        match = ni[:, :, None] == nj[:, None, :]
        best = np.where(match, rank_sum[None, :, :], 2 * k).min(axis=(1, 2))
        out[start:stop] = np.maximum(k - 0.5 * best, 0.0) / k
    return sparse.csr_matrix((out, (coo.row, coo.col)), shape=edges.shape)


class NeighborGraphBuilder:
    """Build a pruned shared-nearest-neighbor graph from an embedding.

    Parameters
    ----------
    config : NeighborConfig, optional
        Graph configuration
    logger : logging.Logger, optional
        Logger instance

    Example
    -------
    >>> builder = NeighborGraphBuilder(NeighborConfig(k=20))
    >>> graph = builder.build(harmony)
    >>> graph.is_symmetric()
    True
    """

    def __init__(
        self,
        config: Optional[NeighborConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or NeighborConfig()
        self.logger = logger or logging.getLogger(__name__)
        if self.config.weighting not in WEIGHTINGS:
            raise ValueError(
                f"Unknown weighting '{self.config.weighting}'; expected one of {WEIGHTINGS}"
            )

    def build(self, embedding: Embedding, name: Optional[str] = None) -> NeighborGraph:
        """Build the graph on ``embedding``.

        Returns
        -------
        NeighborGraph
            Symmetric adjacency with weights in (0, 1], no self loops
        """
        coords = np.asarray(embedding.coordinates, dtype=np.float64)
        if self.config.n_dims is not None:
            coords = coords[:, : self.config.n_dims]
        n_cells = coords.shape[0]
        if n_cells < 2:
            raise InputFormatError("Neighbor graph needs at least 2 cells")
        k = min(int(self.config.k), n_cells)

        indices = knn_indices(coords, k)
        membership = knn_matrix(indices)
        edges = kept_edges(membership)

        if self.config.weighting == "jaccard":
            upper = jaccard_weights(membership, edges, k)
        else:
            upper = rank_weights(indices, edges)

        n_before = upper.nnz
        upper.data[upper.data < self.config.prune] = 0.0
        upper.eliminate_zeros()
        adjacency = (upper + upper.T).tocsr()

        self.logger.info(
            "SNN graph on %s: %d cells, k=%d, %s weights, %d edges (%d pruned)",
            embedding.artifact_id,
            n_cells,
            k,
            self.config.weighting,
            upper.nnz,
            n_before - upper.nnz,
        )
        return NeighborGraph(
            name=name or embedding.name,
            adjacency=adjacency,
            cell_ids=embedding.cell_ids,
            parents=(embedding.artifact_id,),
            params={
                "k": k,
                "prune": float(self.config.prune),
                "weighting": self.config.weighting,
                "n_dims": int(coords.shape[1]),
            },
        )
