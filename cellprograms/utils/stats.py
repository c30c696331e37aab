"""Agreement and mixing metrics for evaluating runs.

Used to compare partitions with known labels, to measure how well batches
mix in an embedding and to match meta-programs against known gene sets.
"""

from __future__ import annotations

from typing import Iterable, Sequence, Union

import numpy as np
from sklearn.metrics import adjusted_rand_score

from ..core.clustering.graph import knn_indices

ArrayLike = Union[Iterable, np.ndarray]


def adjusted_rand_index(labels_true: ArrayLike, labels_pred: ArrayLike) -> float:
    """Adjusted Rand index between two labelings of the same cells."""
    a = np.asarray(list(labels_true))
    b = np.asarray(list(labels_pred))
    if a.shape != b.shape:
        raise ValueError(f"Label arrays differ in length: {a.shape[0]} vs {b.shape[0]}")
    return float(adjusted_rand_score(a, b))


def same_batch_fraction(coordinates: np.ndarray, batches: Sequence, k: int = 20) -> float:
    """Mean fraction of each cell's k nearest neighbors sharing its batch.

    Parameters
    ----------
    coordinates : np.ndarray
        Cells x dims embedding
    batches : Sequence
        Batch label per cell
    k : int
        Neighbors per cell, excluding the cell itself

    Returns
    -------
    float
        Value in [0, 1]; lower means better mixed batches
    """
    coords = np.asarray(coordinates, dtype=np.float64)
    labels = np.asarray(batches)
    k = min(int(k), coords.shape[0] - 1)
    if k < 1:
        return float("nan")
    neighbors = knn_indices(coords, k + 1)[:, 1:]
    return float(np.mean(labels[neighbors] == labels[:, None]))


def gene_set_overlap(a: Iterable[str], b: Iterable[str]) -> float:
    """Jaccard index of two gene sets (0 when both are empty)."""
    set_a, set_b = set(a), set(b)
    union = set_a | set_b
    if not union:
        return 0.0
    return len(set_a & set_b) / len(union)


def best_overlaps(programs: Sequence[Sequence[str]], references: Sequence[Sequence[str]]) -> np.ndarray:
    """For each reference gene set, the best Jaccard overlap over ``programs``."""
    if not programs:
        return np.zeros(len(references))
    return np.array([
        max(gene_set_overlap(program, reference) for program in programs)
        for reference in references
    ])
