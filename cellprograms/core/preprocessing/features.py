"""Variance-stabilized highly variable gene selection.

Fits the mean-variance trend of raw counts with LOESS on log10 scale,
standardizes each gene by the expected standard deviation, clips, and
ranks genes by the variance of the standardized values. The computation
works column-wise on the sparse matrix; zeros are accounted for
analytically.
"""

from typing import Optional, Tuple
import logging

import numpy as np
import pandas as pd
from scipy import sparse
from statsmodels.nonparametric.smoothers_lowess import lowess

from ...errors import InputFormatError
from ..store import FeatureSelection, MatrixStore
from .config import FeatureSelectionConfig


logger = logging.getLogger(__name__)


def sparse_mean_var(matrix: sparse.spmatrix) -> Tuple[np.ndarray, np.ndarray]:
    """Per-column mean and sample variance (ddof=1) of a sparse matrix."""
    n = matrix.shape[0]
    mean = np.asarray(matrix.mean(axis=0)).ravel()
    sq = matrix.multiply(matrix)
    mean_sq = np.asarray(sq.mean(axis=0)).ravel()
    var = (mean_sq - mean ** 2) * (n / max(n - 1, 1))
    return mean, np.maximum(var, 0.0)


def fit_expected_variance(
    mean: np.ndarray, var: np.ndarray, span: float = 0.3
) -> np.ndarray:
    """LOESS fit of log10(variance) on log10(mean) over non-constant genes.

    Returns the expected variance per gene (0 for constant genes).
    """
    expected = np.zeros_like(var)
    fit_mask = var > 0
    n_fit = int(fit_mask.sum())
    if n_fit == 0:
        return expected
    log_mean = np.log10(mean[fit_mask])
    log_var = np.log10(var[fit_mask])
    if n_fit < 3:
        expected[fit_mask] = var[fit_mask]
        return expected
    fitted = lowess(log_var, log_mean, frac=span, return_sorted=False)
    expected[fit_mask] = np.power(10.0, fitted)
    return expected


def standardized_variance(
    matrix: sparse.spmatrix,
    mean: np.ndarray,
    expected_sd: np.ndarray,
    clip_max: float,
) -> np.ndarray:
    """Variance of clipped ``(x - mean) / expected_sd`` per gene.

    Values are clipped from above at ``mean + clip_max * sd``. Each implicit
    zero contributes ``(mean / sd) ** 2``.
    """
    n_cells, n_genes = matrix.shape
    csc = sparse.csc_matrix(matrix, dtype=np.float64)
    nnz_per_gene = np.diff(csc.indptr)
    col = np.repeat(np.arange(n_genes), nnz_per_gene)

    safe_sd = np.where(expected_sd > 0, expected_sd, 1.0)
    vmax = mean + clip_max * safe_sd
    clipped = np.minimum(csc.data, vmax[col])
    contrib = ((clipped - mean[col]) / safe_sd[col]) ** 2
    total = np.bincount(col, weights=contrib, minlength=n_genes)
    total += (n_cells - nnz_per_gene) * (mean / safe_sd) ** 2

    result = total / max(n_cells - 1, 1)
    result[expected_sd <= 0] = 0.0
    return result


class FeatureSelector:
    """Select highly variable genes from a counts store.

    Parameters
    ----------
    config : FeatureSelectionConfig, optional
        Selection configuration

    Example
    -------
    >>> selector = FeatureSelector(FeatureSelectionConfig(n_features=2000))
    >>> features = selector.select(counts_store)
    >>> features.selected[:3]
    ('GENE_12', 'GENE_7', 'GENE_40')
    """

    def __init__(self, config: Optional[FeatureSelectionConfig] = None):
        self.config = config or FeatureSelectionConfig()

    def select(self, store: MatrixStore, name: str = "vst") -> FeatureSelection:
        """Compute gene metadata and the ordered top-N list.

        Ties in standardized variance are broken by gene id ascending.
        """
        if store.layer != "counts":
            raise InputFormatError(
                f"Feature selection runs on raw counts, got layer '{store.layer}'"
            )
        n_cells = store.n_cells
        clip_max = self.config.clip_max or float(np.sqrt(n_cells))

        mean, var = sparse_mean_var(store.matrix)
        expected_var = fit_expected_variance(mean, var, self.config.loess_span)
        expected_sd = np.sqrt(expected_var)
        var_std = standardized_variance(store.matrix, mean, expected_sd, clip_max)

        gene_ids = store.gene_ids.to_numpy().astype(str)
        order = np.lexsort((gene_ids, -var_std))
        n_select = min(int(self.config.n_features), store.n_genes)
        top = order[:n_select]

        rank = np.full(store.n_genes, -1, dtype=np.int64)
        rank[top] = np.arange(n_select)
        selected_mask = rank >= 0
        table = pd.DataFrame(
            {
                "mean": mean,
                "variance": var,
                "variance_expected": expected_var,
                "variance_standardized": var_std,
                "selected": selected_mask,
                "rank": rank,
            },
            index=store.gene_ids,
        )
        logger.info(
            "Selected %d / %d variable genes (clip=%.2f)", n_select, store.n_genes, clip_max
        )
        return FeatureSelection(
            name=name,
            gene_table=table,
            selected=tuple(gene_ids[top]),
            parents=(store.artifact_id,),
            params={
                "n_features": n_select,
                "loess_span": float(self.config.loess_span),
                "clip_max": float(clip_max),
            },
        )
