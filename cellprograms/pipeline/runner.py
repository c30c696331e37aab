"""End-to-end analysis pipeline.

Composes the engines as stages of an :class:`InMemoryExecutor`::

    qc -> normalize -> scale -> pca -> harmony -> umap
       -> features  ---^                      \\-> clustering (graph, Louvain, markers)
    normalize + features -> nmf -> consensus

Every artifact is registered in one :class:`ArtifactStore`, so the run
manifest records each artifact's parents, parameters and warnings.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional
import logging

from ..config import AnalysisConfig
from ..core.clustering import ClusteringEngine
from ..core.preprocessing import CellQC, FeatureSelector, Normalizer, QCResult, Scaler
from ..core.programs import ConsensusEngine, NMFFactorizer, NMFResult
from ..core.reduction import HarmonyCorrector, PCAReducer, UMAPProjector
from ..core.store import (
    ArtifactStore,
    ClusterAssignment,
    Embedding,
    FeatureSelection,
    MarkerTable,
    MatrixStore,
    MetaProgramSet,
    NeighborGraph,
    ScaledMatrix,
)
from ..errors import InputFormatError
from .executor import InMemoryExecutor
from .logger import PipelineLogger


@dataclass
class PipelineResult:
    """Everything one pipeline run produced.

    Attributes
    ----------
    artifacts : ArtifactStore
        All registered artifacts
    qc : QCResult
        Cell QC outcome
    embeddings : Dict[str, Embedding]
        Embeddings by name (pca, harmony, umap)
    assignments : Dict[str, ClusterAssignment]
        Cluster assignments by artifact id (``clusters:res1.0``)
    markers : Dict[str, MarkerTable]
        Marker tables keyed by their assignment's artifact id
    """

    artifacts: ArtifactStore = field(default_factory=ArtifactStore)
    qc: Optional[QCResult] = None
    lognorm: Optional[MatrixStore] = None
    features: Optional[FeatureSelection] = None
    scaled: Optional[ScaledMatrix] = None
    embeddings: Dict[str, Embedding] = field(default_factory=dict)
    graph: Optional[NeighborGraph] = None
    assignments: Dict[str, ClusterAssignment] = field(default_factory=dict)
    markers: Dict[str, MarkerTable] = field(default_factory=dict)
    nmf: Optional[NMFResult] = None
    metaprograms: Optional[MetaProgramSet] = None
    stage_durations: Dict[str, float] = field(default_factory=dict)

    @property
    def clustering_embedding(self) -> Optional[Embedding]:
        """Embedding the graph was built on."""
        if self.graph is None:
            return None
        return self.artifacts.get(self.graph.parents[0])

    def summary(self) -> Dict[str, Any]:
        """Run summary for structured logs."""
        return {
            "cells_total": self.qc.cells_total if self.qc else None,
            "cells_kept": self.qc.store.n_cells if self.qc and self.qc.store else None,
            "embeddings": sorted(self.embeddings),
            "clusters": {key: a.n_clusters for key, a in self.assignments.items()},
            "n_factorizations": len(self.nmf.factorizations) if self.nmf else 0,
            "skipped_ranks": (
                [f"{s}:k{k}" for s, k in self.nmf.skipped_ranks] if self.nmf else []
            ),
            "n_metaprograms": len(self.metaprograms.programs) if self.metaprograms else 0,
            "warnings": {
                entry["id"]: entry["warnings"]
                for entry in self.artifacts.manifest()
                if entry["warnings"]
            },
            "stage_seconds": {k: round(v, 3) for k, v in self.stage_durations.items()},
        }


class AnalysisPipeline:
    """Run the clustering and meta-program branches on a counts store.

    Parameters
    ----------
    config : AnalysisConfig, optional
        Analysis configuration. Uses defaults if None.
    pipeline_logger : PipelineLogger, optional
        Stage-level logger for start/complete/skip events
    logger : logging.Logger, optional
        Logger passed to the engines

    Example
    -------
    >>> store = MatrixStore.from_samples({"s1": adata1, "s2": adata2})
    >>> result = AnalysisPipeline(AnalysisConfig.from_yaml("analysis.yaml")).run(store)
    >>> result.assignments["clusters:res1.0"].n_clusters
    >>> result.metaprograms.programs[0].genes[:10]
    """

    def __init__(
        self,
        config: Optional[AnalysisConfig] = None,
        pipeline_logger: Optional[PipelineLogger] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or AnalysisConfig.default()
        self.pipeline_logger = pipeline_logger
        self.logger = logger or logging.getLogger(__name__)

    def build_executor(self, result: PipelineResult) -> InMemoryExecutor:
        """Register the stages writing into ``result``."""
        cfg = self.config
        executor = InMemoryExecutor(self.pipeline_logger)
        clustering = cfg.run_clustering
        programs = cfg.run_programs

        executor.register_stage("qc", lambda **kw: self._qc(result, **kw), name="Cell QC")
        executor.register_stage(
            "normalize",
            lambda **kw: self._normalize(result, **kw),
            depends_on=["qc"],
            name="Log-normalization",
        )
        executor.register_stage(
            "features",
            lambda **kw: self._features(result, **kw),
            depends_on=["qc"],
            name="Variable feature selection",
        )
        executor.register_stage(
            "scale",
            lambda **kw: self._scale(result, **kw),
            depends_on=["normalize", "features"],
            name="Scaling",
            enabled=clustering,
        )
        executor.register_stage(
            "pca",
            lambda **kw: self._pca(result, **kw),
            depends_on=["scale"],
            name="PCA",
            enabled=clustering,
        )
        executor.register_stage(
            "harmony",
            lambda **kw: self._harmony(result, **kw),
            depends_on=["pca"],
            name="Batch correction",
            enabled=clustering,
        )
        executor.register_stage(
            "umap",
            lambda **kw: self._umap(result, **kw),
            depends_on=["harmony"],
            name="UMAP projection",
            enabled=clustering and cfg.projection.enabled,
        )
        executor.register_stage(
            "clustering",
            lambda **kw: self._clustering(result, **kw),
            depends_on=["harmony"],
            name="Graph clustering and markers",
            enabled=clustering,
        )
        executor.register_stage(
            "nmf",
            lambda **kw: self._nmf(result, **kw),
            depends_on=["normalize", "features"],
            name="Per-sample NMF",
            enabled=programs,
        )
        executor.register_stage(
            "consensus",
            lambda **kw: self._consensus(result, **kw),
            depends_on=["nmf"],
            name="Meta-program consensus",
            enabled=programs,
        )
        return executor

    def run(self, store: MatrixStore) -> PipelineResult:
        """Run every enabled stage on a raw counts store.

        Raises
        ------
        CellProgramsError
            Structural input errors stop the run
        """
        store.validate()
        self.logger.info(
            "Analysis run: %d cells x %d genes across %d sample(s), seed=%d",
            store.n_cells,
            store.n_genes,
            len(store.samples),
            self.config.random_seed,
        )
        result = PipelineResult()
        executor = self.build_executor(result)
        executor.run(store=store)
        result.stage_durations = dict(executor.durations)
        return result

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _qc(self, result: PipelineResult, store: MatrixStore, stage_results: Dict) -> QCResult:
        result.qc = CellQC(self.config.qc).filter(store)
        result.artifacts.add(result.qc.store, require_parents=False)
        return result.qc

    def _normalize(self, result: PipelineResult, store: MatrixStore, stage_results: Dict) -> MatrixStore:
        result.lognorm = Normalizer(self.config.normalization).normalize(result.qc.store)
        result.artifacts.add(result.lognorm)
        return result.lognorm

    def _features(self, result: PipelineResult, store: MatrixStore, stage_results: Dict) -> FeatureSelection:
        result.features = FeatureSelector(self.config.features).select(result.qc.store)
        result.artifacts.add(result.features)
        return result.features

    def _scale(self, result: PipelineResult, store: MatrixStore, stage_results: Dict) -> ScaledMatrix:
        scaler = Scaler(self.config.scaling, logger=self.logger)
        result.scaled = scaler.scale(result.lognorm, result.features)
        result.artifacts.add(result.scaled)
        return result.scaled

    def _pca(self, result: PipelineResult, store: MatrixStore, stage_results: Dict) -> Embedding:
        pca = PCAReducer(self.config.pca, logger=self.logger).fit(result.scaled)
        return self._add_embedding(result, pca)

    def _harmony(self, result: PipelineResult, store: MatrixStore, stage_results: Dict) -> Optional[Embedding]:
        cfg = self.config.batch_correction
        if not cfg.enabled:
            self.logger.info("Batch correction disabled; clustering on PCA")
            return None
        cells = result.qc.store.cells
        if cfg.batch_col not in cells.columns:
            raise InputFormatError(
                f"Batch column '{cfg.batch_col}' not found in cell metadata",
                suggestion="Set batch_correction.batch_col to an existing column.",
            )
        batches = cells[cfg.batch_col].astype(str)
        if batches.nunique() < 2:
            self.logger.info("Single batch (%s); skipping batch correction", batches.iloc[0])
            return None
        corrector = HarmonyCorrector(cfg, random_seed=self.config.random_seed, logger=self.logger)
        harmony = corrector.correct(result.embeddings["pca"], batches.to_numpy())
        return self._add_embedding(result, harmony)

    def _umap(self, result: PipelineResult, store: MatrixStore, stage_results: Dict) -> Embedding:
        source = stage_results.get("harmony") or result.embeddings["pca"]
        projector = UMAPProjector(
            self.config.projection, random_seed=self.config.random_seed, logger=self.logger
        )
        return self._add_embedding(result, projector.project(source))

    def _clustering(self, result: PipelineResult, store: MatrixStore, stage_results: Dict):
        cfg = self.config
        engine = ClusteringEngine(
            neighbors=cfg.neighbors,
            clustering=cfg.clustering,
            de=cfg.de,
            random_seed=cfg.random_seed,
            logger=self.logger,
        )
        embedding = engine.select_embedding(result.embeddings, cfg.neighbors.embedding)
        clustered = engine.run_clustering(embedding, result.lognorm)
        result.graph = clustered.graph
        result.artifacts.add(clustered.graph)
        for key, assignment in clustered.assignments.items():
            result.artifacts.add(assignment)
            result.assignments[key] = assignment
        for key, markers in clustered.markers.items():
            result.artifacts.add(markers)
            result.markers[key] = markers
        return clustered

    def _nmf(self, result: PipelineResult, store: MatrixStore, stage_results: Dict) -> NMFResult:
        factorizer = NMFFactorizer(
            self.config.nmf, random_seed=self.config.random_seed, logger=self.logger
        )
        result.nmf = factorizer.factorize(result.lognorm, result.features)
        for factorization in result.nmf.factorizations.values():
            result.artifacts.add(factorization)
        return result.nmf

    def _consensus(self, result: PipelineResult, store: MatrixStore, stage_results: Dict) -> MetaProgramSet:
        engine = ConsensusEngine(self.config.consensus, logger=self.logger)
        result.metaprograms = engine.build(
            list(result.nmf.factorizations.values()), result.nmf.skipped_samples
        )
        result.artifacts.add(result.metaprograms)
        return result.metaprograms

    @staticmethod
    def _add_embedding(result: PipelineResult, embedding: Embedding) -> Embedding:
        result.artifacts.add(embedding)
        result.embeddings[embedding.name] = embedding
        return embedding
