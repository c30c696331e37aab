"""Synthetic count generators for testing.

Each generator builds a small matrix with known structure (populations,
batches, gene programs) so the recovered structure can be checked.
"""

from typing import Dict, List, Optional, Tuple

import numpy as np
import pandas as pd
from scipy import sparse

from cellprograms.core.store import ClusterAssignment, MatrixStore


def gene_names(n_genes: int, prefix: str = "GENE") -> List[str]:
    return [f"{prefix}_{i}" for i in range(n_genes)]


def create_counts_store(
    n_cells: int = 60,
    n_genes: int = 40,
    samples: Tuple[str, ...] = ("s1", "s2"),
    rate: float = 3.0,
    seed: int = 42,
) -> MatrixStore:
    """Poisson counts without structure, cells split evenly over samples."""
    rng = np.random.default_rng(seed)
    counts = rng.poisson(rate, size=(n_cells, n_genes)).astype(np.float64)
    counts[:, 0] += 1  # no zero-total cells
    sample_ids = np.array(samples)[np.arange(n_cells) % len(samples)]
    cell_ids = [f"{s}_cell{i}" for i, s in enumerate(sample_ids)]
    return MatrixStore.from_arrays(counts, cell_ids, gene_names(n_genes), list(sample_ids))


def create_blob_store(
    n_cells: int = 100,
    n_genes: int = 50,
    high: float = 30.0,
    low: float = 5.0,
    sd: float = 3.0,
    seed: int = 42,
) -> Tuple[MatrixStore, np.ndarray]:
    """Two well-separated Gaussian blobs in expression space.

    Blob 0 is high on the first half of the genes and low on the second,
    blob 1 the reverse. Values are rounded and floored at 0.

    Returns
    -------
    Tuple[MatrixStore, np.ndarray]
        Counts store (one sample) and the true blob per cell
    """
    rng = np.random.default_rng(seed)
    truth = np.repeat([0, 1], [n_cells // 2, n_cells - n_cells // 2])
    half = n_genes // 2
    means = np.full((2, n_genes), low)
    means[0, :half] = high
    means[1, half:] = high
    values = rng.normal(means[truth], sd)
    counts = np.maximum(np.round(values), 0.0)
    cell_ids = [f"cell_{i}" for i in range(n_cells)]
    store = MatrixStore.from_arrays(counts, cell_ids, gene_names(n_genes), "s1")
    return store, truth


def create_batched_store(
    n_cells: int = 2000,
    n_genes: int = 100,
    n_types: int = 3,
    type_genes: int = 15,
    batch_genes: int = 30,
    batch_fold: float = 4.0,
    seed: int = 7,
) -> Tuple[MatrixStore, np.ndarray]:
    """Cell types shared by two batches, with a shift injected into batch b2.

    Genes of each type are raised 6-fold in that type. The last
    ``batch_genes`` genes are raised ``batch_fold``-fold in every b2 cell.

    Returns
    -------
    Tuple[MatrixStore, np.ndarray]
        Counts store (samples b1 and b2) and the cell type per cell
    """
    rng = np.random.default_rng(seed)
    types = rng.integers(0, n_types, size=n_cells)
    batches = np.where(np.arange(n_cells) % 2 == 0, "b1", "b2")
    rates = np.full((n_cells, n_genes), 2.0)
    for t in range(n_types):
        genes = slice(t * type_genes, (t + 1) * type_genes)
        rates[types == t, genes] *= 6.0
    rates[batches == "b2", n_genes - batch_genes:] *= batch_fold
    counts = rng.poisson(rates).astype(np.float64)
    counts[:, 0] += 1
    cell_ids = [f"{b}_cell{i}" for i, b in enumerate(batches)]
    store = MatrixStore.from_arrays(counts, cell_ids, gene_names(n_genes), list(batches))
    return store, types


def create_program_matrix(
    n_cells: int = 200,
    genes_per_program: int = 25,
    n_programs: int = 2,
    seed: int = 3,
) -> Tuple[np.ndarray, np.ndarray, List[np.ndarray]]:
    """Exact product of usage and disjoint gene programs.

    Returns
    -------
    Tuple[np.ndarray, np.ndarray, List[np.ndarray]]
        X (cells x genes), the true usage matrix, and the gene column
        indices of each program
    """
    rng = np.random.default_rng(seed)
    n_genes = genes_per_program * n_programs
    usage = rng.gamma(shape=1.0, scale=1.0, size=(n_cells, n_programs))
    programs = np.zeros((n_genes, n_programs))
    blocks = []
    for p in range(n_programs):
        block = np.arange(p * genes_per_program, (p + 1) * genes_per_program)
        programs[block, p] = rng.uniform(1.0, 2.0, size=genes_per_program)
        blocks.append(block)
    return usage @ programs.T, usage, blocks


def create_program_store(
    n_samples: int = 3,
    cells_per_sample: int = 60,
    genes_per_program: int = 20,
    n_programs: int = 3,
    seed: int = 11,
) -> Tuple[MatrixStore, Dict[int, List[str]]]:
    """Poisson counts from shared disjoint programs with per-sample usage.

    Returns
    -------
    Tuple[MatrixStore, Dict[int, List[str]]]
        Counts store and the gene ids of each true program
    """
    rng = np.random.default_rng(seed)
    n_genes = genes_per_program * n_programs
    genes = gene_names(n_genes)
    programs = np.zeros((n_genes, n_programs))
    truth: Dict[int, List[str]] = {}
    for p in range(n_programs):
        block = np.arange(p * genes_per_program, (p + 1) * genes_per_program)
        programs[block, p] = rng.uniform(2.0, 4.0, size=genes_per_program)
        truth[p] = [genes[g] for g in block]

    blocks, cell_ids, samples = [], [], []
    for s in range(n_samples):
        usage = rng.gamma(shape=0.5, scale=2.0, size=(cells_per_sample, n_programs))
        blocks.append(rng.poisson(usage @ programs.T + 0.05))
        cell_ids += [f"s{s}_cell{i}" for i in range(cells_per_sample)]
        samples += [f"s{s}"] * cells_per_sample
    counts = np.vstack(blocks).astype(np.float64)
    counts[:, 0] += 1
    return MatrixStore.from_arrays(counts, cell_ids, genes, samples), truth


def create_marker_store(
    cells_per_cluster: int = 60,
    n_genes: int = 30,
    seed: int = 5,
) -> Tuple[MatrixStore, ClusterAssignment]:
    """Two clusters; ``MARKER_A`` is expressed only in cluster 0.

    Returns
    -------
    Tuple[MatrixStore, ClusterAssignment]
        Counts store and the known two-cluster assignment
    """
    rng = np.random.default_rng(seed)
    n_cells = 2 * cells_per_cluster
    background = rng.poisson(2.0, size=(n_cells, n_genes)).astype(np.float64)
    background[:, 0] += 1
    marker = np.zeros((n_cells, 1))
    marker[:cells_per_cluster, 0] = rng.poisson(10.0, size=cells_per_cluster) + 1
    counts = np.hstack([background, marker])
    genes = gene_names(n_genes) + ["MARKER_A"]
    cell_ids = [f"cell_{i}" for i in range(n_cells)]
    store = MatrixStore.from_arrays(counts, cell_ids, genes, "s1")
    labels = pd.Series(np.repeat([0, 1], cells_per_cluster), index=store.cell_ids)
    assignment = ClusterAssignment(name="known", labels=labels, resolution=1.0)
    return store, assignment


def create_sample_adata(
    n_cells: int = 30,
    n_genes: int = 20,
    seed: int = 0,
    gene_order: Optional[List[int]] = None,
):
    """AnnData with raw counts and plain barcodes, as read from one sample."""
    import anndata as ad

    rng = np.random.default_rng(seed)
    counts = rng.poisson(3.0, size=(n_cells, n_genes)).astype(np.float32)
    counts[:, 0] += 1
    genes = gene_names(n_genes)
    if gene_order is not None:
        counts = counts[:, gene_order]
        genes = [genes[i] for i in gene_order]
    obs = pd.DataFrame(index=[f"AAAC{i:04d}" for i in range(n_cells)])
    var = pd.DataFrame(index=genes)
    return ad.AnnData(X=sparse.csr_matrix(counts), obs=obs, var=var)
