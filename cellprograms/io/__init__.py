"""Input/output: sample registry loading, artifact tables and run logs."""

from .logging import get_timestamped_log_path, log_yaml
from .tables import (
    REGISTRY_COLUMNS,
    ensure_output_dir,
    load_h5ad,
    load_sample_registry,
    load_samples,
    write_artifacts,
    write_assignment,
    write_dataframe,
    write_embedding,
    write_manifest,
    write_markers,
    write_metaprograms,
)

__all__ = [
    # Logging
    "get_timestamped_log_path",
    "log_yaml",
    # Tables
    "REGISTRY_COLUMNS",
    "ensure_output_dir",
    "load_h5ad",
    "load_sample_registry",
    "load_samples",
    "write_artifacts",
    "write_assignment",
    "write_dataframe",
    "write_embedding",
    "write_manifest",
    "write_markers",
    "write_metaprograms",
]
