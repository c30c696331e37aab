"""Clustering engine for cell population identification.

Runs the graph-based clustering branch on an embedding: shared-nearest-
neighbor graph, Louvain at each configured resolution, and marker testing
per resolution.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional
import logging

from ..store import ClusterAssignment, Embedding, MarkerTable, MatrixStore, NeighborGraph
from .config import ClusteringConfig, DEConfig, NeighborConfig
from .de import DERunner
from .graph import NeighborGraphBuilder
from .louvain import CommunityDetector


@dataclass
class ClusteringResult:
    """Result from the clustering branch.

    Attributes
    ----------
    graph : NeighborGraph
        Graph the partitions were computed on
    assignments : Dict[str, ClusterAssignment]
        Assignment per artifact id (one per resolution)
    markers : Dict[str, MarkerTable]
        Marker table per assignment id
    """

    graph: Optional[NeighborGraph] = None
    assignments: Dict[str, ClusterAssignment] = field(default_factory=dict)
    markers: Dict[str, MarkerTable] = field(default_factory=dict)

    @property
    def cluster_counts(self) -> Dict[str, int]:
        return {key: a.n_clusters for key, a in self.assignments.items()}


class ClusteringEngine:
    """Graph clustering and marker testing on a named embedding.

    Parameters
    ----------
    neighbors : NeighborConfig, optional
        Graph configuration
    clustering : ClusteringConfig, optional
        Louvain configuration
    de : DEConfig, optional
        Marker testing configuration
    random_seed : int
        Seed for Louvain
    logger : logging.Logger, optional
        Logger instance. If None, creates default logger.

    Example
    -------
    >>> engine = ClusteringEngine(clustering=ClusteringConfig(resolutions=[1.0, 0.6]))
    >>> result = engine.run_clustering(harmony, lognorm)
    >>> result.cluster_counts
    {'clusters:res1.0': 9, 'clusters:res0.6': 6}
    """

    def __init__(
        self,
        neighbors: Optional[NeighborConfig] = None,
        clustering: Optional[ClusteringConfig] = None,
        de: Optional[DEConfig] = None,
        random_seed: int = 1337,
        logger: Optional[logging.Logger] = None,
    ):
        self.logger = logger or logging.getLogger(__name__)
        self.graph_builder = NeighborGraphBuilder(neighbors, logger=self.logger)
        self.detector = CommunityDetector(clustering, random_seed=random_seed, logger=self.logger)
        self.de_runner = DERunner(de, logger=self.logger)

    @staticmethod
    def select_embedding(embeddings: Dict[str, Embedding], preferred: Optional[str] = None) -> Embedding:
        """Pick the embedding to cluster on.

        Uses ``preferred`` (a name or artifact id) when given, else harmony
        when present, else pca.
        """
        by_name = {e.name: e for e in embeddings.values()}
        by_name.update({e.artifact_id: e for e in embeddings.values()})
        if preferred is not None:
            if preferred not in by_name:
                raise KeyError(
                    f"Embedding '{preferred}' not found (available: {sorted(by_name)})"
                )
            return by_name[preferred]
        for candidate in ("harmony", "pca"):
            if candidate in by_name:
                return by_name[candidate]
        raise KeyError("No embedding available for clustering")

    def run_clustering(
        self,
        embedding: Embedding,
        store: Optional[MatrixStore] = None,
        resolutions: Optional[List[float]] = None,
    ) -> ClusteringResult:
        """Run graph construction, Louvain and (when ``store`` is given) DE.

        Parameters
        ----------
        embedding : Embedding
            Embedding to build the graph on
        store : MatrixStore, optional
            Log-normalized store for marker testing; markers are skipped
            when None
        resolutions : List[float], optional
            Resolutions to run. Uses config default if None.

        Returns
        -------
        ClusteringResult
            Graph, assignments and marker tables
        """
        resolutions = resolutions or list(self.detector.config.resolutions)
        self.logger.info(
            "Running clustering on %s at resolutions %s",
            embedding.artifact_id,
            ", ".join(f"{r:g}" for r in resolutions),
        )
        result = ClusteringResult(graph=self.graph_builder.build(embedding))
        for resolution in resolutions:
            assignment = self.detector.cluster(result.graph, resolution)
            result.assignments[assignment.artifact_id] = assignment
            if store is not None:
                de = self.de_runner.run_de_tests(store, assignment)
                result.markers[assignment.artifact_id] = de.markers
        return result
