"""Principal component analysis of the scaled matrix."""

from typing import Optional
import logging

import numpy as np

from ...errors import InputFormatError
from ..store import Embedding, ScaledMatrix
from .config import PCAConfig


def fix_signs(components: np.ndarray) -> np.ndarray:
    """Sign per component so its largest-magnitude loading is positive.

    Parameters
    ----------
    components : np.ndarray
        Components x genes

    Returns
    -------
    np.ndarray
        +1/-1 per component
    """
    idx = np.argmax(np.abs(components), axis=1)
    signs = np.sign(components[np.arange(components.shape[0]), idx])
    signs[signs == 0] = 1.0
    return signs


class PCAReducer:
    """Centered SVD of a dense scaled matrix.

    Parameters
    ----------
    config : PCAConfig, optional
        PCA configuration
    logger : logging.Logger, optional
        Logger instance

    Example
    -------
    >>> pca = PCAReducer(PCAConfig(n_components=30)).fit(scaled)
    >>> pca.coordinates.shape
    (5000, 30)
    """

    def __init__(
        self,
        config: Optional[PCAConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or PCAConfig()
        self.logger = logger or logging.getLogger(__name__)

    def fit(self, scaled: ScaledMatrix, name: str = "pca") -> Embedding:
        """Project cells onto the top principal components.

        The number of components is capped at ``min(n_cells, n_genes) - 1``.
        """
        values = np.asarray(scaled.values, dtype=np.float64)
        n_cells, n_genes = values.shape
        max_components = min(n_cells, n_genes) - 1
        if max_components < 1:
            raise InputFormatError(
                f"PCA needs at least 2 cells and 2 genes, got {values.shape}"
            )
        n_comp = min(int(self.config.n_components), max_components)
        if n_comp < self.config.n_components:
            self.logger.info(
                "Capping PCA components at %d (requested %d)",
                n_comp,
                self.config.n_components,
            )

        centered = values - values.mean(axis=0)
        U, S, Vt = np.linalg.svd(centered, full_matrices=False)
        U, S, Vt = U[:, :n_comp], S[:n_comp], Vt[:n_comp]

        signs = fix_signs(Vt)
        Vt = Vt * signs[:, None]
        U = U * signs[None, :]

        denom = max(n_cells - 1, 1)
        stdev = S / np.sqrt(denom)
        total_var = float((centered ** 2).sum() / denom)
        variance_ratio = stdev ** 2 / total_var if total_var > 0 else np.zeros_like(stdev)

        self.logger.info(
            "PCA: %d components explain %.1f%% of variance",
            n_comp,
            100.0 * float(variance_ratio.sum()),
        )
        return Embedding(
            name=name,
            coordinates=U * S,
            cell_ids=scaled.cell_ids,
            method="pca",
            loadings=Vt.T,
            stdev=stdev,
            variance_ratio=variance_ratio,
            parents=(scaled.artifact_id,),
            params={"n_components": n_comp, "n_genes": n_genes},
        )
