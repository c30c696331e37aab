"""Dimensionality reduction: PCA, Harmony batch correction and UMAP.

Example Usage
-------------
>>> from cellprograms.core.reduction import PCAReducer, HarmonyCorrector
>>> pca = PCAReducer().fit(scaled)
>>> harmony = HarmonyCorrector(random_seed=1337).correct(pca, store.cells["sample"])
"""

from .config import BatchCorrectionConfig, PCAConfig, ProjectionConfig
from .pca import PCAReducer, fix_signs
from .batch import (
    CONVERGENCE_CRITERIA,
    HarmonyCorrector,
    cosine_normalize,
    soft_assignment_change,
)
from .projection import UMAPProjector

__all__ = [
    "BatchCorrectionConfig",
    "PCAConfig",
    "ProjectionConfig",
    "PCAReducer",
    "fix_signs",
    "CONVERGENCE_CRITERIA",
    "HarmonyCorrector",
    "cosine_normalize",
    "soft_assignment_change",
    "UMAPProjector",
]
