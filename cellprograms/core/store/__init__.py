"""Immutable matrix store and versioned analysis artifacts."""

from .artifacts import (
    Artifact,
    ArtifactStore,
    ClusterAssignment,
    Embedding,
    FeatureSelection,
    MarkerTable,
    MetaProgram,
    MetaProgramSet,
    NeighborGraph,
    NMFFactorization,
    ScaledMatrix,
    freeze_array,
    freeze_sparse,
)
from .matrix import MatrixStore, SAMPLE_COL

__all__ = [
    "Artifact",
    "ArtifactStore",
    "ClusterAssignment",
    "Embedding",
    "FeatureSelection",
    "MarkerTable",
    "MetaProgram",
    "MetaProgramSet",
    "NeighborGraph",
    "NMFFactorization",
    "ScaledMatrix",
    "MatrixStore",
    "SAMPLE_COL",
    "freeze_array",
    "freeze_sparse",
]
