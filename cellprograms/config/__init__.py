"""Centralized configuration for CellPrograms.

Example
-------
>>> from cellprograms.config import AnalysisConfig
>>> config = AnalysisConfig.from_yaml("analysis.yaml")
>>> config.clustering.resolutions
[1.0, 0.6]
"""

from .analysis import AnalysisConfig, FLAT_KEYS, SECTIONS

__all__ = [
    "AnalysisConfig",
    "FLAT_KEYS",
    "SECTIONS",
]
