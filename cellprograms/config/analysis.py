"""Assembled analysis configuration.

``AnalysisConfig`` groups the per-stage dataclass configs. It loads from YAML
in either the nested per-section form or the flat option names, for example::

    analysis:
      random_seed: 1337
      qc:
        min_features: 200
      clustering:
        resolutions: [1.0, 0.6]

or::

    min_features: 200
    cluster_resolution: [1.0, 0.6]
    nmf_rank_range: [4, 9]
"""

from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Tuple, Union

import yaml

from ..core.clustering.config import ClusteringConfig, DEConfig, NeighborConfig
from ..core.preprocessing.config import (
    FeatureSelectionConfig,
    NormalizationConfig,
    QCConfig,
    ScalingConfig,
)
from ..core.programs.config import ConsensusConfig, NMFConfig
from ..core.reduction.config import BatchCorrectionConfig, PCAConfig, ProjectionConfig


SECTIONS = {
    "qc": QCConfig,
    "normalization": NormalizationConfig,
    "features": FeatureSelectionConfig,
    "scaling": ScalingConfig,
    "pca": PCAConfig,
    "batch_correction": BatchCorrectionConfig,
    "projection": ProjectionConfig,
    "neighbors": NeighborConfig,
    "clustering": ClusteringConfig,
    "de": DEConfig,
    "nmf": NMFConfig,
    "consensus": ConsensusConfig,
}

# Flat option name -> (section, field)
FLAT_KEYS: Dict[str, Tuple[str, str]] = {
    "min_features": ("qc", "min_features"),
    "max_features": ("qc", "max_features"),
    "max_mito_pct": ("qc", "max_mito_pct"),
    "n_variable_features": ("features", "n_features"),
    "n_pca_dims": ("pca", "n_components"),
    "neighbor_k": ("neighbors", "k"),
    "snn_prune_threshold": ("neighbors", "prune"),
    "cluster_resolution": ("clustering", "resolutions"),
    "batch_correction_dims": ("batch_correction", "n_dims"),
    "batch_correction_max_iter": ("batch_correction", "max_iter"),
    "de_min_pct": ("de", "min_pct"),
    "de_logfc_threshold": ("de", "logfc_threshold"),
    "nmf_rank_range": ("nmf", "rank_range"),
    "n_meta_programs": ("consensus", "n_programs"),
    "weight_explained_cutoff": ("consensus", "weight_explained_cutoff"),
    "max_program_genes": ("consensus", "max_program_genes"),
}


def _coerce(section: str, name: str, value: Any) -> Any:
    """Normalize YAML values to the dataclass field types."""
    if section == "clustering" and name == "resolutions":
        values = value if isinstance(value, (list, tuple)) else [value]
        return [float(v) for v in values]
    if section == "nmf" and name == "rank_range":
        if isinstance(value, int):
            return (value, value)
        low, high = value
        return (int(low), int(high))
    if section == "scaling" and name == "regress_out" and isinstance(value, str):
        return [value]
    return value


@dataclass
class AnalysisConfig:
    """Master configuration for the analysis pipeline.

    Attributes
    ----------
    random_seed : int
        Seed shared by Harmony k-means, Louvain, NMF and UMAP
    run_clustering : bool
        Run the clustering branch
    run_programs : bool
        Run the NMF / meta-program branch
    """

    random_seed: int = 1337
    run_clustering: bool = True
    run_programs: bool = True
    qc: QCConfig = field(default_factory=QCConfig)
    normalization: NormalizationConfig = field(default_factory=NormalizationConfig)
    features: FeatureSelectionConfig = field(default_factory=FeatureSelectionConfig)
    scaling: ScalingConfig = field(default_factory=ScalingConfig)
    pca: PCAConfig = field(default_factory=PCAConfig)
    batch_correction: BatchCorrectionConfig = field(default_factory=BatchCorrectionConfig)
    projection: ProjectionConfig = field(default_factory=ProjectionConfig)
    neighbors: NeighborConfig = field(default_factory=NeighborConfig)
    clustering: ClusteringConfig = field(default_factory=ClusteringConfig)
    de: DEConfig = field(default_factory=DEConfig)
    nmf: NMFConfig = field(default_factory=NMFConfig)
    consensus: ConsensusConfig = field(default_factory=ConsensusConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AnalysisConfig":
        """Build from a nested and/or flat dictionary.

        Raises
        ------
        ValueError
            On unknown sections, fields or flat keys
        """
        data = dict(data or {})

        # Handle nested analysis section
        if "analysis" in data:
            data = dict(data["analysis"] or {})

        sections: Dict[str, Dict[str, Any]] = {name: {} for name in SECTIONS}
        top: Dict[str, Any] = {}
        unknown = []
        for key, value in data.items():
            if key in SECTIONS:
                if not isinstance(value, dict):
                    raise ValueError(f"Section '{key}' must be a mapping")
                valid = {f.name for f in fields(SECTIONS[key])}
                bad = sorted(set(value) - valid)
                if bad:
                    raise ValueError(f"Unknown options in section '{key}': {bad}")
                for name, item in value.items():
                    sections[key][name] = _coerce(key, name, item)
            elif key in FLAT_KEYS:
                section, name = FLAT_KEYS[key]
                sections[section][name] = _coerce(section, name, value)
            elif key in ("random_seed", "run_clustering", "run_programs"):
                top[key] = value
            else:
                unknown.append(key)
        if unknown:
            raise ValueError(f"Unknown configuration keys: {sorted(unknown)}")

        return cls(
            **top,
            **{name: SECTIONS[name](**values) for name, values in sections.items()},
        )

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "AnalysisConfig":
        """Load configuration from YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        return cls.from_dict(data)

    @classmethod
    def default(cls) -> "AnalysisConfig":
        """Create default configuration."""
        return cls()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a YAML-safe nested dictionary."""
        result: Dict[str, Any] = {
            "random_seed": self.random_seed,
            "run_clustering": self.run_clustering,
            "run_programs": self.run_programs,
        }
        for name in SECTIONS:
            section = asdict(getattr(self, name))
            result[name] = {
                key: list(value) if isinstance(value, tuple) else value
                for key, value in section.items()
            }
        return result

    def to_yaml(self, path: Union[str, Path]) -> Path:
        path = Path(path)
        with open(path, "w") as f:
            yaml.safe_dump({"analysis": self.to_dict()}, f, sort_keys=False)
        return path
