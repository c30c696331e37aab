"""Configuration classes for preprocessing stages.

All preprocessing parameters are configurable via YAML; see
``cellprograms.config.AnalysisConfig`` for the assembled form.
"""

from dataclasses import dataclass, field
from typing import List, Optional


@dataclass
class QCConfig:
    """Configuration for cell QC.

    Attributes
    ----------
    min_features : int
        Minimum number of detected genes per cell
    max_features : int, optional
        Maximum number of detected genes per cell (None disables)
    max_mito_pct : float, optional
        Maximum percentage of counts from mitochondrial genes (None disables)
    mito_prefix : str
        Gene id prefix marking mitochondrial genes (case-insensitive)
    """

    min_features: int = 0
    max_features: Optional[int] = None
    max_mito_pct: Optional[float] = None
    mito_prefix: str = "MT-"


@dataclass
class NormalizationConfig:
    """Configuration for library-size normalization.

    Attributes
    ----------
    scale_factor : float
        Target total count per cell before log1p
    """

    scale_factor: float = 1e4


@dataclass
class FeatureSelectionConfig:
    """Configuration for variance-stabilized feature selection.

    Attributes
    ----------
    n_features : int
        Number of variable genes to select (capped at the gene count)
    loess_span : float
        Fraction of genes used for each local fit
    clip_max : float, optional
        Clip for standardized values (None uses sqrt(n_cells))
    """

    n_features: int = 2000
    loess_span: float = 0.3
    clip_max: Optional[float] = None


@dataclass
class ScalingConfig:
    """Configuration for gene scaling.

    Attributes
    ----------
    regress_out : List[str]
        Cell metadata columns regressed out before z-scoring
    clip_value : float, optional
        Absolute clip for scaled values (None disables)
    """

    regress_out: List[str] = field(default_factory=list)
    clip_value: Optional[float] = 10.0
