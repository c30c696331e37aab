"""Evaluation helpers shared by the CLI summaries and the test suite."""

from .stats import (
    adjusted_rand_index,
    best_overlaps,
    gene_set_overlap,
    same_batch_fraction,
)

__all__ = [
    "adjusted_rand_index",
    "best_overlaps",
    "gene_set_overlap",
    "same_batch_fraction",
]
