"""Configuration classes for dimensionality reduction stages."""

from dataclasses import dataclass
from typing import Optional


@dataclass
class PCAConfig:
    """Configuration for PCA.

    Attributes
    ----------
    n_components : int
        Number of components (capped at min(n_cells, n_genes) - 1)
    """

    n_components: int = 50


@dataclass
class BatchCorrectionConfig:
    """Configuration for Harmony-style batch correction.

    Attributes
    ----------
    enabled : bool
        Whether the pipeline runs batch correction
    batch_col : str
        Cell metadata column with batch labels
    n_dims : int, optional
        Use only the first n embedding dims (None uses all)
    max_iter : int
        Maximum outer iterations (clustering + correction rounds)
    max_iter_cluster : int
        Maximum soft k-means rounds per outer iteration
    n_clusters : int, optional
        Number of soft clusters (None uses min(100, n_cells / 30))
    theta : float
        Diversity penalty strength per batch
    sigma : float
        Soft clustering width
    ridge_lambda : float
        Ridge penalty of the mixture-of-experts regression
    block_size : float
        Fraction of cells updated per soft clustering block
    convergence : str
        ``objective`` (relative objective change) or ``assignment``
        (mean total-variation change of soft assignments)
    tol_harmony : float
        Tolerance of the outer loop
    tol_cluster : float
        Tolerance of the soft clustering loop
    """

    enabled: bool = True
    batch_col: str = "sample"
    n_dims: Optional[int] = None
    max_iter: int = 50
    max_iter_cluster: int = 20
    n_clusters: Optional[int] = None
    theta: float = 2.0
    sigma: float = 0.1
    ridge_lambda: float = 1.0
    block_size: float = 0.05
    convergence: str = "objective"
    tol_harmony: float = 1e-4
    tol_cluster: float = 1e-5


@dataclass
class ProjectionConfig:
    """Configuration for the 2D UMAP projection.

    Attributes
    ----------
    enabled : bool
        Whether the pipeline computes a projection
    n_neighbors : int
        Neighbors for the UMAP graph
    min_dist : float
        UMAP min_dist
    """

    enabled: bool = False
    n_neighbors: int = 15
    min_dist: float = 0.5
