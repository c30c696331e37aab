"""Immutable analysis artifacts and the versioned artifact store.

Every stage returns a new artifact whose id is ``"<kind>:<name>"`` and which
references the ids of the artifacts it was derived from. Arrays held by an
artifact are flagged read-only on construction. The ``ArtifactStore`` only
ever adds artifacts; registering an id twice is an error.
"""

from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, Iterator, List, Mapping, Optional, Tuple
import logging

import numpy as np
import pandas as pd
from scipy import sparse

logger = logging.getLogger(__name__)


def freeze_array(values: Any, dtype: Any = None) -> np.ndarray:
    """Return a read-only copy of ``values``."""
    arr = np.array(values, dtype=dtype, copy=True)
    arr.setflags(write=False)
    return arr


def freeze_sparse(matrix: Any) -> sparse.csr_matrix:
    """Return a canonical, read-only CSR copy of ``matrix``."""
    csr = sparse.csr_matrix(matrix, copy=True)
    csr.sum_duplicates()
    csr.sort_indices()
    for arr in (csr.data, csr.indices, csr.indptr):
        arr.setflags(write=False)
    return csr


class Artifact:
    """Mixin giving every artifact an id and a manifest record.

    Subclasses are frozen dataclasses defining ``name``, ``parents``,
    ``params`` and ``warnings`` fields.
    """

    kind: ClassVar[str] = "artifact"

    @property
    def artifact_id(self) -> str:
        return f"{self.kind}:{self.name}"

    @property
    def has_warnings(self) -> bool:
        return len(self.warnings) > 0

    def describe(self) -> Dict[str, Any]:
        """Summarize the artifact for the run manifest."""
        return {
            "id": self.artifact_id,
            "kind": self.kind,
            "parents": list(self.parents),
            "params": {k: _plain(v) for k, v in dict(self.params).items()},
            "warnings": list(self.warnings),
            **{k: _plain(v) for k, v in self._shape_summary().items()},
        }

    def _shape_summary(self) -> Dict[str, Any]:
        return {}


def _plain(value: Any) -> Any:
    """Convert numpy scalars/containers into YAML-friendly values."""
    if isinstance(value, np.generic):
        return value.item()
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    if isinstance(value, dict):
        return {str(k): _plain(v) for k, v in value.items()}
    return value


@dataclass(frozen=True, eq=False)
class FeatureSelection(Artifact):
    """Gene metadata with variable-feature flags and the ordered top list.

    Attributes
    ----------
    gene_table : pd.DataFrame
        Indexed by gene id: mean, variance, variance_expected,
        variance_standardized, selected, rank
    selected : Tuple[str, ...]
        Selected gene ids ordered by standardized variance
    """

    name: str
    gene_table: pd.DataFrame
    selected: Tuple[str, ...]
    parents: Tuple[str, ...] = ()
    params: Mapping[str, Any] = field(default_factory=dict)
    warnings: Tuple[str, ...] = ()

    kind: ClassVar[str] = "features"

    def _shape_summary(self) -> Dict[str, Any]:
        return {"n_genes": int(len(self.gene_table)), "n_selected": len(self.selected)}


@dataclass(frozen=True, eq=False)
class ScaledMatrix(Artifact):
    """Dense z-scored matrix restricted to the selected genes."""

    name: str
    values: np.ndarray
    cell_ids: pd.Index
    gene_ids: pd.Index
    zero_variance_genes: Tuple[str, ...] = ()
    parents: Tuple[str, ...] = ()
    params: Mapping[str, Any] = field(default_factory=dict)
    warnings: Tuple[str, ...] = ()

    kind: ClassVar[str] = "scaled"

    def __post_init__(self):
        object.__setattr__(self, "values", freeze_array(self.values, dtype=np.float64))

    def _shape_summary(self) -> Dict[str, Any]:
        return {"shape": list(self.values.shape)}


@dataclass(frozen=True, eq=False)
class Embedding(Artifact):
    """Cells x dims coordinates tagged with provenance.

    Attributes
    ----------
    coordinates : np.ndarray
        Cells x dims array
    cell_ids : pd.Index
        Row labels
    method : str
        Method that produced the embedding (pca, harmony, umap)
    loadings : np.ndarray, optional
        Genes x dims loadings (PCA only)
    stdev : np.ndarray, optional
        Per-dimension standard deviation (PCA only)
    variance_ratio : np.ndarray, optional
        Fraction of variance explained per dimension (PCA only)
    """

    name: str
    coordinates: np.ndarray
    cell_ids: pd.Index
    method: str
    loadings: Optional[np.ndarray] = None
    stdev: Optional[np.ndarray] = None
    variance_ratio: Optional[np.ndarray] = None
    parents: Tuple[str, ...] = ()
    params: Mapping[str, Any] = field(default_factory=dict)
    warnings: Tuple[str, ...] = ()

    kind: ClassVar[str] = "embedding"

    def __post_init__(self):
        object.__setattr__(self, "coordinates", freeze_array(self.coordinates, dtype=np.float64))
        for name in ("loadings", "stdev", "variance_ratio"):
            value = getattr(self, name)
            if value is not None:
                object.__setattr__(self, name, freeze_array(value, dtype=np.float64))

    @property
    def n_dims(self) -> int:
        return int(self.coordinates.shape[1])

    def to_frame(self) -> pd.DataFrame:
        columns = [f"{self.method}_{i + 1}" for i in range(self.n_dims)]
        return pd.DataFrame(self.coordinates, index=self.cell_ids, columns=columns)

    def _shape_summary(self) -> Dict[str, Any]:
        return {"method": self.method, "shape": list(self.coordinates.shape)}


@dataclass(frozen=True, eq=False)
class NeighborGraph(Artifact):
    """Symmetric weighted adjacency over cells, weights in [0, 1]."""

    name: str
    adjacency: sparse.csr_matrix
    cell_ids: pd.Index
    parents: Tuple[str, ...] = ()
    params: Mapping[str, Any] = field(default_factory=dict)
    warnings: Tuple[str, ...] = ()

    kind: ClassVar[str] = "graph"

    def __post_init__(self):
        object.__setattr__(self, "adjacency", freeze_sparse(self.adjacency))

    @property
    def n_edges(self) -> int:
        upper = sparse.triu(self.adjacency, k=1)
        return int(upper.nnz)

    def is_symmetric(self, atol: float = 1e-12) -> bool:
        diff = self.adjacency - self.adjacency.T
        return diff.nnz == 0 or float(np.abs(diff.data).max()) <= atol

    def to_edge_frame(self) -> pd.DataFrame:
        upper = sparse.triu(self.adjacency, k=1).tocoo()
        return pd.DataFrame({
            "source": self.cell_ids[upper.row],
            "target": self.cell_ids[upper.col],
            "weight": upper.data,
        })

    def _shape_summary(self) -> Dict[str, Any]:
        return {"n_cells": int(self.adjacency.shape[0]), "n_edges": self.n_edges}


@dataclass(frozen=True, eq=False)
class ClusterAssignment(Artifact):
    """Total partition of cells into clusters 0..n-1 (largest first).

    Attributes
    ----------
    labels : pd.Series
        Cluster id (int) per cell id
    resolution : float
        Resolution parameter used
    modularity : float
        Modularity of the final partition on the source graph
    modularity_trace : Tuple[float, ...]
        Modularity after each aggregation level (non-decreasing)
    """

    name: str
    labels: pd.Series
    resolution: float
    modularity: float = 0.0
    modularity_trace: Tuple[float, ...] = ()
    parents: Tuple[str, ...] = ()
    params: Mapping[str, Any] = field(default_factory=dict)
    warnings: Tuple[str, ...] = ()

    kind: ClassVar[str] = "clusters"

    def __post_init__(self):
        labels = self.labels.astype(np.int64).copy()
        labels.name = "cluster"
        object.__setattr__(self, "labels", labels)

    @property
    def n_clusters(self) -> int:
        return int(self.labels.nunique())

    @property
    def cluster_sizes(self) -> Dict[int, int]:
        return {int(k): int(v) for k, v in self.labels.value_counts().sort_index().items()}

    def to_frame(self) -> pd.DataFrame:
        frame = self.labels.rename("cluster").to_frame()
        frame.index.name = "cell_id"
        return frame.reset_index()

    def _shape_summary(self) -> Dict[str, Any]:
        return {
            "n_clusters": self.n_clusters,
            "resolution": float(self.resolution),
            "modularity": float(self.modularity),
        }


@dataclass(frozen=True, eq=False)
class MarkerTable(Artifact):
    """Per-cluster marker genes.

    Columns: cluster, gene, avg_log2FC, pct_in, pct_out, statistic, p_val,
    p_val_adj.
    """

    name: str
    table: pd.DataFrame
    skipped_clusters: Tuple[int, ...] = ()
    parents: Tuple[str, ...] = ()
    params: Mapping[str, Any] = field(default_factory=dict)
    warnings: Tuple[str, ...] = ()

    kind: ClassVar[str] = "markers"

    def for_cluster(self, cluster_id: int) -> pd.DataFrame:
        return self.table[self.table["cluster"] == cluster_id]

    def _shape_summary(self) -> Dict[str, Any]:
        return {"n_rows": int(len(self.table)), "skipped_clusters": list(self.skipped_clusters)}


@dataclass(frozen=True, eq=False)
class NMFFactorization(Artifact):
    """Non-negative factorization X ~ W @ H.T of one sample at rank k.

    Attributes
    ----------
    W : np.ndarray
        Cells x k loadings
    H : np.ndarray
        Genes x k programs
    """

    name: str
    sample: str
    rank: int
    W: np.ndarray
    H: np.ndarray
    cell_ids: pd.Index
    gene_ids: pd.Index
    reconstruction_error: float = 0.0
    n_iter: int = 0
    converged: bool = True
    parents: Tuple[str, ...] = ()
    params: Mapping[str, Any] = field(default_factory=dict)
    warnings: Tuple[str, ...] = ()

    kind: ClassVar[str] = "nmf"

    def __post_init__(self):
        object.__setattr__(self, "W", freeze_array(self.W, dtype=np.float64))
        object.__setattr__(self, "H", freeze_array(self.H, dtype=np.float64))

    def _shape_summary(self) -> Dict[str, Any]:
        return {
            "sample": self.sample,
            "rank": int(self.rank),
            "reconstruction_error": float(self.reconstruction_error),
            "n_iter": int(self.n_iter),
            "converged": bool(self.converged),
        }


@dataclass(frozen=True, eq=False)
class MetaProgram:
    """Consensus gene program.

    Attributes
    ----------
    program_id : int
        Dense id ordered by member count
    genes : Tuple[str, ...]
        Genes ranked by aggregated weight
    weights : np.ndarray
        Aggregated weight per gene (sum <= 1)
    members : Tuple[Tuple[str, int, int], ...]
        (sample, rank, component) of every H column in the group
    """

    program_id: int
    genes: Tuple[str, ...]
    weights: np.ndarray
    members: Tuple[Tuple[str, int, int], ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "weights", freeze_array(self.weights, dtype=np.float64))

    @property
    def samples(self) -> List[str]:
        return sorted({m[0] for m in self.members})

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame({
            "program": self.program_id,
            "rank": np.arange(len(self.genes)),
            "gene": list(self.genes),
            "weight": self.weights,
        })


@dataclass(frozen=True, eq=False)
class MetaProgramSet(Artifact):
    """Meta-programs derived from a set of factorizations."""

    name: str
    programs: Tuple[MetaProgram, ...]
    skipped_samples: Tuple[str, ...] = ()
    parents: Tuple[str, ...] = ()
    params: Mapping[str, Any] = field(default_factory=dict)
    warnings: Tuple[str, ...] = ()

    kind: ClassVar[str] = "metaprograms"

    def to_frame(self) -> pd.DataFrame:
        frames = [p.to_frame() for p in self.programs]
        if not frames:
            return pd.DataFrame(columns=["program", "rank", "gene", "weight"])
        return pd.concat(frames, ignore_index=True)

    def members_frame(self) -> pd.DataFrame:
        records = [
            {"program": p.program_id, "sample": s, "k": k, "component": c}
            for p in self.programs
            for s, k, c in p.members
        ]
        return pd.DataFrame(records, columns=["program", "sample", "k", "component"])

    def _shape_summary(self) -> Dict[str, Any]:
        return {
            "n_programs": len(self.programs),
            "skipped_samples": list(self.skipped_samples),
        }


class ArtifactStore:
    """Append-only registry of artifacts keyed by artifact id.

    Example
    -------
    >>> store = ArtifactStore()
    >>> store.add(pca_embedding)
    'embedding:pca'
    >>> store.lineage("embedding:harmony")
    ['embedding:pca', 'scaled:lognorm', 'matrix:lognorm', 'matrix:counts']
    """

    def __init__(self):
        self._artifacts: Dict[str, Any] = {}

    def add(self, artifact: Any, require_parents: bool = True) -> str:
        """Register an artifact and return its id.

        Raises
        ------
        ValueError
            If the id is already registered or a parent is unknown
        """
        artifact_id = artifact.artifact_id
        if artifact_id in self._artifacts:
            raise ValueError(
                f"Artifact '{artifact_id}' already exists; use a new name "
                "instead of overwriting"
            )
        if require_parents:
            missing = [p for p in artifact.parents if p not in self._artifacts]
            if missing:
                raise ValueError(f"Artifact '{artifact_id}' has unknown parents: {missing}")
        self._artifacts[artifact_id] = artifact
        logger.debug("Registered artifact %s (parents=%s)", artifact_id, list(artifact.parents))
        return artifact_id

    def get(self, artifact_id: str) -> Any:
        if artifact_id not in self._artifacts:
            raise KeyError(f"Artifact '{artifact_id}' not found")
        return self._artifacts[artifact_id]

    def __contains__(self, artifact_id: str) -> bool:
        return artifact_id in self._artifacts

    def __iter__(self) -> Iterator[str]:
        return iter(self._artifacts)

    def __len__(self) -> int:
        return len(self._artifacts)

    def of_kind(self, kind: str) -> List[Any]:
        return [a for a in self._artifacts.values() if a.kind == kind]

    def lineage(self, artifact_id: str) -> List[str]:
        """Ancestor ids in breadth-first order (nearest first)."""
        seen: List[str] = []
        frontier = list(self.get(artifact_id).parents)
        while frontier:
            current = frontier.pop(0)
            if current in seen:
                continue
            seen.append(current)
            if current in self._artifacts:
                frontier.extend(self._artifacts[current].parents)
        return seen

    def manifest(self) -> List[Dict[str, Any]]:
        return [a.describe() for a in self._artifacts.values()]
