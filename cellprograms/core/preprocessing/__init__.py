"""Preprocessing: QC, normalization, feature selection and scaling.

Pipeline Stages
---------------
- QC: per-cell library metrics and filtering
- Normalization: library-size scaling and log1p
- Feature selection: variance-stabilized highly variable genes
- Scaling: covariate regression and per-gene z-scores

Example Usage
-------------
>>> from cellprograms.core.preprocessing import (
...     CellQC, Normalizer, FeatureSelector, Scaler,
... )
>>> counts = CellQC().filter(store).store
>>> lognorm = Normalizer().normalize(counts)
>>> features = FeatureSelector().select(counts)
>>> scaled = Scaler().scale(lognorm, features)
"""

from .config import (
    QCConfig,
    NormalizationConfig,
    FeatureSelectionConfig,
    ScalingConfig,
)
from .qc import (
    CellQC,
    QCResult,
    REASON_COLUMNS,
    compute_qc_metrics,
)
from .normalization import Normalizer
from .features import (
    FeatureSelector,
    fit_expected_variance,
    sparse_mean_var,
    standardized_variance,
)
from .scaling import Scaler, design_matrix, regress_out

__all__ = [
    # Config
    "QCConfig",
    "NormalizationConfig",
    "FeatureSelectionConfig",
    "ScalingConfig",
    # QC
    "CellQC",
    "QCResult",
    "REASON_COLUMNS",
    "compute_qc_metrics",
    # Normalization
    "Normalizer",
    # Feature selection
    "FeatureSelector",
    "fit_expected_variance",
    "sparse_mean_var",
    "standardized_variance",
    # Scaling
    "Scaler",
    "design_matrix",
    "regress_out",
]
