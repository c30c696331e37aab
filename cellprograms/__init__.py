"""CellPrograms: clustering and meta-program discovery for single-cell RNA data.

This package provides tools for:
- Cell QC, library-size normalization and variable-feature selection
- PCA and Harmony-style batch correction of per-sample embeddings
- Shared-nearest-neighbor graphs and Louvain community detection
- Wilcoxon marker testing per cluster
- Per-sample NMF across ranks and cross-sample meta-program consensus

Every stage returns a new immutable artifact that references its parents
by id; nothing is mutated after creation.

Example usage:
    >>> from cellprograms.core.store import MatrixStore
    >>> from cellprograms.pipeline import AnalysisPipeline
    >>>
    >>> store = MatrixStore.from_samples({"s1": adata1, "s2": adata2})
    >>> result = AnalysisPipeline().run(store)
    >>> result.assignments["clusters:res1.0"].n_clusters
"""

__version__ = "0.1.0"
