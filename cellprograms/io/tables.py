"""Tabular input and output.

Reads the sample registry and per-sample ``.h5ad`` files, and writes the
run artifacts as CSV files plus a ``manifest.yaml``.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List, Optional, Union

import pandas as pd
import yaml

from ..core.store import (
    ArtifactStore,
    ClusterAssignment,
    Embedding,
    MarkerTable,
    MatrixStore,
    MetaProgramSet,
)
from ..errors import InputFormatError

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

REGISTRY_COLUMNS = ["sample_id", "path"]


def ensure_output_dir(path: PathLike) -> Path:
    """Create the directory at path if it does not exist and return it."""
    directory = Path(path)
    directory.mkdir(parents=True, exist_ok=True)
    return directory


def _resolve_path(value: str, base: Path) -> Path:
    """Resolve a path relative to a base directory."""
    candidate = Path(value)
    if not candidate.is_absolute():
        candidate = (base / candidate).resolve()
    return candidate


def load_sample_registry(path: PathLike) -> pd.DataFrame:
    """Load the sample registry CSV (``sample_id, path``).

    Relative paths resolve against the registry's directory.

    Raises
    ------
    FileNotFoundError
        If the registry does not exist
    InputFormatError
        On missing columns, empty registries or duplicate sample ids
    """
    csv_path = Path(path)
    if not csv_path.exists():
        raise FileNotFoundError(f"Sample registry not found: {csv_path}")
    df = pd.read_csv(csv_path, dtype=str)
    missing = [col for col in REGISTRY_COLUMNS if col not in df.columns]
    if missing:
        raise InputFormatError(
            f"Sample registry missing columns: {missing}",
            suggestion="The registry needs 'sample_id' and 'path' columns.",
            context={"registry": str(csv_path)},
        )
    if df.empty:
        raise InputFormatError(f"Sample registry is empty: {csv_path}")
    duplicated = df["sample_id"][df["sample_id"].duplicated()].unique().tolist()
    if duplicated:
        raise InputFormatError(f"Duplicate sample ids in registry: {duplicated}")
    df["path"] = df["path"].apply(lambda p: str(_resolve_path(p, csv_path.parent)))
    return df


def load_samples(registry: PathLike) -> MatrixStore:
    """Read every registered ``.h5ad`` and concatenate into one counts store."""
    import anndata as ad

    table = load_sample_registry(registry)
    samples = {}
    for row in table.itertuples(index=False):
        logger.info("Loading sample %s from %s", row.sample_id, row.path)
        samples[row.sample_id] = ad.read_h5ad(row.path)
    return MatrixStore.from_samples(samples)


def load_h5ad(path: PathLike, sample_key: str = "sample") -> MatrixStore:
    """Read one ``.h5ad`` holding all samples (``obs[sample_key]``)."""
    import anndata as ad

    adata = ad.read_h5ad(path)
    if sample_key in adata.obs.columns:
        return MatrixStore.from_anndata(adata, sample_key=sample_key)
    logger.info("No '%s' column in %s; treating it as one sample", sample_key, path)
    return MatrixStore.from_anndata(adata, sample=Path(path).stem)


def write_dataframe(df: pd.DataFrame, path: PathLike, *, index: bool = False) -> Path:
    """Write DataFrame to path ensuring the parent directory exists."""
    output_path = Path(path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(output_path, index=index)
    return output_path


def write_assignment(assignment: ClusterAssignment, out_dir: PathLike) -> Path:
    return write_dataframe(assignment.to_frame(), Path(out_dir) / f"clusters_{assignment.name}.csv")


def write_embedding(embedding: Embedding, out_dir: PathLike) -> Path:
    frame = embedding.to_frame()
    frame.index.name = "cell_id"
    return write_dataframe(frame, Path(out_dir) / f"embedding_{embedding.name}.csv", index=True)


def write_markers(markers: MarkerTable, out_dir: PathLike) -> Path:
    return write_dataframe(markers.table, Path(out_dir) / f"markers_{markers.name}.csv")


def write_metaprograms(metaprograms: MetaProgramSet, out_dir: PathLike) -> List[Path]:
    """Write ``metaprograms.csv`` and ``metaprogram_members.csv``."""
    out_dir = Path(out_dir)
    return [
        write_dataframe(metaprograms.to_frame(), out_dir / "metaprograms.csv"),
        write_dataframe(metaprograms.members_frame(), out_dir / "metaprogram_members.csv"),
    ]


def write_manifest(artifacts: ArtifactStore, path: PathLike, extra: Optional[Dict] = None) -> Path:
    """Write the artifact manifest (ids, parents, parameters, warnings)."""
    output_path = Path(path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    record = dict(extra or {})
    record["artifacts"] = artifacts.manifest()
    with output_path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(record, handle, sort_keys=False)
    return output_path


def write_artifacts(artifacts: ArtifactStore, out_dir: PathLike, extra: Optional[Dict] = None) -> List[Path]:
    """Write every exportable artifact of a run to ``out_dir``.

    Parameters
    ----------
    artifacts : ArtifactStore
        Registered run artifacts
    out_dir : PathLike
        Output directory (created if needed)
    extra : dict, optional
        Additional top-level manifest entries (e.g. the configuration)

    Returns
    -------
    List[Path]
        Paths written, manifest last
    """
    out_dir = ensure_output_dir(out_dir)
    written: List[Path] = []
    for embedding in artifacts.of_kind("embedding"):
        written.append(write_embedding(embedding, out_dir))
    for assignment in artifacts.of_kind("clusters"):
        written.append(write_assignment(assignment, out_dir))
    for markers in artifacts.of_kind("markers"):
        written.append(write_markers(markers, out_dir))
    for metaprograms in artifacts.of_kind("metaprograms"):
        written.extend(write_metaprograms(metaprograms, out_dir))
    written.append(write_manifest(artifacts, out_dir / "manifest.yaml", extra))
    logger.info("Wrote %d files to %s", len(written), out_dir)
    return written
