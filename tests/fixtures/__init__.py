"""Test fixtures for CellPrograms.

Provides synthetic count generators with known structure.
"""

from .synthetic import (
    create_batched_store,
    create_blob_store,
    create_counts_store,
    create_marker_store,
    create_program_matrix,
    create_program_store,
    create_sample_adata,
    gene_names,
)

__all__ = [
    "create_batched_store",
    "create_blob_store",
    "create_counts_store",
    "create_marker_store",
    "create_program_matrix",
    "create_program_store",
    "create_sample_adata",
    "gene_names",
]
