"""Library-size normalization.

Scales each cell to a common total count and applies log1p, keeping the
sparsity pattern of the input.
"""

from typing import Optional

import numpy as np
from scipy import sparse

from ...errors import DegenerateCellError, InputFormatError
from ..store import MatrixStore
from .config import NormalizationConfig


class Normalizer:
    """Counts-to-lognorm normalizer.

    Parameters
    ----------
    config : NormalizationConfig
        Normalization configuration

    Example
    -------
    >>> from cellprograms.core.preprocessing import Normalizer, NormalizationConfig
    >>> normalizer = Normalizer(NormalizationConfig(scale_factor=1e4))
    >>> lognorm = normalizer.normalize(counts_store)
    >>> lognorm.layer
    'lognorm'
    """

    def __init__(self, config: Optional[NormalizationConfig] = None):
        self.config = config or NormalizationConfig()

    @staticmethod
    def library_sizes(matrix: sparse.spmatrix) -> np.ndarray:
        return np.asarray(matrix.sum(axis=1), dtype=float).ravel()

    def normalize(self, store: MatrixStore, layer: str = "lognorm") -> MatrixStore:
        """Normalize a counts store.

        Parameters
        ----------
        store : MatrixStore
            Raw counts store
        layer : str
            Layer name of the result

        Returns
        -------
        MatrixStore
            ``log1p(counts / total * scale_factor)`` per cell, same shape and
            sparsity pattern

        Raises
        ------
        DegenerateCellError
            If any cell has zero total count
        """
        if store.layer != "counts":
            raise InputFormatError(
                f"Normalizer expects the counts layer, got '{store.layer}'"
            )
        totals = self.library_sizes(store.matrix)
        empty = np.flatnonzero(totals <= 0)
        if empty.size:
            raise DegenerateCellError(store.cell_ids[empty].tolist())

        scale = self.config.scale_factor / totals
        normalized = sparse.diags(scale) @ store.matrix.astype(np.float64)
        normalized = sparse.csr_matrix(normalized)
        normalized.data = np.log1p(normalized.data)
        return store.derive(
            normalized,
            layer=layer,
            params={"scale_factor": float(self.config.scale_factor)},
        )

    @staticmethod
    def restored_row_sums(lognorm: MatrixStore) -> np.ndarray:
        """Row sums of ``expm1(lognorm)``; equal to the scale factor per cell."""
        restored = lognorm.matrix.copy()
        restored.data = np.expm1(restored.data)
        return np.asarray(restored.sum(axis=1)).ravel()
