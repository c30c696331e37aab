"""Clustering module for cell population identification.

Provides shared-nearest-neighbor graphs, Louvain community detection,
Wilcoxon marker testing and the cluster label lookup.

Example Usage
-------------
>>> from cellprograms.core.clustering import (
...     ClusteringEngine, ClusteringConfig, DERunner,
... )
>>> engine = ClusteringEngine(clustering=ClusteringConfig(resolutions=[1.0, 0.6]))
>>> result = engine.run_clustering(harmony, lognorm)
"""

# Configuration classes
from .config import (
    ClusteringConfig,
    DEConfig,
    NeighborConfig,
)

# Graph and communities
from .graph import (
    NeighborGraphBuilder,
    WEIGHTINGS,
    knn_indices,
)
from .louvain import (
    CommunityDetector,
    Louvain,
    LouvainResult,
    modularity,
    order_by_size,
)

# Clustering engine
from .engine import (
    ClusteringEngine,
    ClusteringResult,
)

# Differential expression
from .de import (
    DERunner,
    DEResult,
    MARKER_COLUMNS,
    sort_markers,
)

# Labels
from .labels import ClusterLabeler

__all__ = [
    # Config
    "ClusteringConfig",
    "DEConfig",
    "NeighborConfig",
    # Graph
    "NeighborGraphBuilder",
    "WEIGHTINGS",
    "knn_indices",
    # Louvain
    "CommunityDetector",
    "Louvain",
    "LouvainResult",
    "modularity",
    "order_by_size",
    # Engine
    "ClusteringEngine",
    "ClusteringResult",
    # DE
    "DERunner",
    "DEResult",
    "MARKER_COLUMNS",
    "sort_markers",
    # Labels
    "ClusterLabeler",
]
