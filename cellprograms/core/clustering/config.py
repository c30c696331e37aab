"""Configuration classes for clustering module.

All clustering parameters are configurable via YAML.
"""

from dataclasses import dataclass, field
from typing import List, Optional


@dataclass
class NeighborConfig:
    """Configuration for the shared-nearest-neighbor graph.

    Attributes
    ----------
    k : int
        Neighbors per cell, the cell itself included
    prune : float
        Edges with weight below this are removed
    weighting : str
        ``jaccard`` (neighbor-set Jaccard index) or ``rank``
        (rank-weighted shared neighbors)
    embedding : str, optional
        Embedding to build on (None uses harmony when present, else pca)
    n_dims : int, optional
        Use only the first n embedding dims (None uses all)
    """

    k: int = 20
    prune: float = 1.0 / 15.0
    weighting: str = "jaccard"
    embedding: Optional[str] = None
    n_dims: Optional[int] = None


@dataclass
class ClusteringConfig:
    """Configuration for Louvain clustering.

    Attributes
    ----------
    resolutions : List[float]
        Resolutions to run; each produces one assignment
    n_starts : int
        Seeded restarts per resolution; the best modularity is kept
    max_levels : int
        Maximum aggregation levels
    max_passes : int
        Maximum local-move passes per level
    epsilon : float
        Minimum modularity gain over staying for a move
    """

    resolutions: List[float] = field(default_factory=lambda: [1.0])
    n_starts: int = 1
    max_levels: int = 20
    max_passes: int = 100
    epsilon: float = 1e-10


@dataclass
class DEConfig:
    """Configuration for marker testing.

    Attributes
    ----------
    min_pct : float
        Keep genes detected in at least this fraction of either group
    logfc_threshold : float
        Minimum absolute average log2 fold change
    only_positive : bool
        Keep only genes up-regulated in the cluster
    chunk_size : int
        Genes per densified chunk
    n_workers : int
        Threads testing chunks concurrently
    """

    min_pct: float = 0.25
    logfc_threshold: float = 0.1823215567939546  # log(1.2)
    only_positive: bool = True
    chunk_size: int = 500
    n_workers: int = 4
