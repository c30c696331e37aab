"""Gene scaling with optional covariate regression.

Only the selected-gene submatrix is densified.
"""

from typing import List, Optional, Sequence, Tuple, Union
import logging
import warnings

import numpy as np
import pandas as pd

from ...errors import InputFormatError, ZeroVarianceGuard
from ..store import FeatureSelection, MatrixStore, ScaledMatrix
from .config import ScalingConfig


logger = logging.getLogger(__name__)

# Residual sd below this is treated as zero
SD_FLOOR = 1e-8


def design_matrix(cells: pd.DataFrame, covariates: Sequence[str]) -> np.ndarray:
    """Intercept plus covariate columns; categorical columns become dummies."""
    missing = [c for c in covariates if c not in cells.columns]
    if missing:
        raise InputFormatError(
            f"Regression covariates not found in cell metadata: {missing}",
            context={"available": list(cells.columns)},
        )
    frame = pd.get_dummies(cells[list(covariates)], drop_first=True, dtype=float)
    values = frame.to_numpy(dtype=float)
    if not np.all(np.isfinite(values)):
        raise InputFormatError("Regression covariates contain missing values")
    return np.column_stack([np.ones(len(cells)), values])


def regress_out(values: np.ndarray, design: np.ndarray) -> np.ndarray:
    """Residuals of a least-squares fit of every column on ``design``."""
    coef, *_ = np.linalg.lstsq(design, values, rcond=None)
    return values - design @ coef


class Scaler:
    """Z-score the selected genes of a log-normalized store.

    Parameters
    ----------
    config : ScalingConfig, optional
        Scaling configuration
    logger : logging.Logger, optional
        Logger instance
    """

    def __init__(
        self,
        config: Optional[ScalingConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or ScalingConfig()
        self.logger = logger or logging.getLogger(__name__)

    def scale(
        self,
        store: MatrixStore,
        features: Union[FeatureSelection, Sequence[str]],
        name: str = "scaled",
    ) -> ScaledMatrix:
        """Scale the selected genes.

        Parameters
        ----------
        store : MatrixStore
            Log-normalized store
        features : FeatureSelection or sequence of gene ids
            Genes to keep, in output column order
        name : str
            Artifact name

        Returns
        -------
        ScaledMatrix
            Dense cells x genes z-scores. Zero-variance genes are all 0 and
            listed in ``zero_variance_genes``.
        """
        if isinstance(features, FeatureSelection):
            gene_ids = list(features.selected)
            parents: Tuple[str, ...] = (store.artifact_id, features.artifact_id)
        else:
            gene_ids = list(features)
            parents = (store.artifact_id,)
        if not gene_ids:
            raise InputFormatError("No genes selected for scaling")

        subset = store.subset_genes(gene_ids)
        values = subset.matrix.toarray().astype(np.float64)

        if self.config.regress_out:
            design = design_matrix(store.cells, self.config.regress_out)
            values = regress_out(values, design)
            self.logger.info("Regressed out %s", ", ".join(self.config.regress_out))

        mean = values.mean(axis=0)
        sd = values.std(axis=0, ddof=1) if values.shape[0] > 1 else np.zeros(values.shape[1])
        zero_sd = sd < SD_FLOOR
        safe_sd = np.where(zero_sd, 1.0, sd)
        scaled = (values - mean) / safe_sd
        scaled[:, zero_sd] = 0.0

        tags: List[str] = []
        zero_genes = tuple(np.asarray(gene_ids)[zero_sd].tolist())
        if zero_genes:
            msg = f"{len(zero_genes)} zero-variance gene(s) scaled to 0: {list(zero_genes[:5])}"
            self.logger.warning(msg)
            warnings.warn(msg, ZeroVarianceGuard, stacklevel=2)
            tags.append(f"ZeroVarianceGuard:{len(zero_genes)}")

        if self.config.clip_value is not None:
            np.clip(scaled, -self.config.clip_value, self.config.clip_value, out=scaled)

        return ScaledMatrix(
            name=name,
            values=scaled,
            cell_ids=store.cell_ids,
            gene_ids=pd.Index(gene_ids),
            zero_variance_genes=zero_genes,
            parents=parents,
            params={
                "regress_out": list(self.config.regress_out),
                "clip_value": self.config.clip_value,
            },
            warnings=tuple(tags),
        )
