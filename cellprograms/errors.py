"""
Error taxonomy with actionable diagnostics for CellPrograms.

Fatal conditions are exceptions derived from ``CellProgramsError``; each
carries a machine-readable error code, an optional suggestion and a context
dictionary. Non-fatal numerical conditions are ``Warning`` subclasses: they
are emitted with ``warnings.warn`` and also recorded as tags on the artifact
that was produced, so downstream consumers can detect reduced confidence.

Error Codes:
    E001_INPUT_FORMAT: Malformed matrix or metadata
    E002_DIMENSION_MISMATCH: Matrix and metadata shapes disagree
    E003_DEGENERATE_CELL: Cell with zero total count reached normalization
    E004_EMPTY_CLUSTER: Cluster without members (or without out-group)
    E005_SAMPLE_FACTORIZATION: One sample's NMF run failed numerically
    E006_LABEL_MAPPING: Cluster label table does not match cluster count
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class CellProgramsError(Exception):
    """Base class for fatal errors with actionable diagnostics.

    Parameters
    ----------
    message : str
        Human-readable error description
    suggestion : str, optional
        Actionable suggestion for fixing the error
    context : Dict[str, Any], optional
        Additional context for debugging
    """

    error_code: str = "E000_UNKNOWN"

    def __init__(
        self,
        message: str,
        suggestion: str = "",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.suggestion = suggestion
        self.context = context or {}

    def __str__(self) -> str:
        parts = [f"[{self.error_code}] {self.message}"]
        if self.suggestion:
            parts.append(f"  Suggestion: {self.suggestion}")
        return "\n".join(parts)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON/YAML serialization."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "suggestion": self.suggestion,
            "context": {k: str(v) for k, v in self.context.items()},
        }


class InputFormatError(CellProgramsError):
    """Malformed or inconsistent matrix/metadata."""

    error_code = "E001_INPUT_FORMAT"


class DimensionMismatchError(InputFormatError):
    """Matrix dimensions disagree with the attached metadata tables."""

    error_code = "E002_DIMENSION_MISMATCH"

    def __init__(self, what: str, expected: int, found: int):
        super().__init__(
            f"{what}: expected {expected}, found {found}",
            suggestion="Rebuild the store so metadata rows match matrix axes.",
            context={"expected": expected, "found": found},
        )
        self.expected = expected
        self.found = found


class DegenerateCellError(CellProgramsError):
    """Cells with zero total count cannot be library-size normalized."""

    error_code = "E003_DEGENERATE_CELL"

    def __init__(self, cell_ids: List[str]):
        preview = ", ".join(map(str, cell_ids[:5]))
        if len(cell_ids) > 5:
            preview += f", ... ({len(cell_ids)} total)"
        super().__init__(
            f"{len(cell_ids)} cell(s) have zero total count: {preview}",
            suggestion="Filter empty cells upstream (e.g. qc.min_features >= 1).",
            context={"n_cells": len(cell_ids)},
        )
        self.cell_ids = list(cell_ids)


class EmptyClusterError(CellProgramsError):
    """A cluster has no members, or no cells outside it to compare against."""

    error_code = "E004_EMPTY_CLUSTER"

    def __init__(self, cluster_id: int, n_in: int, n_out: int):
        super().__init__(
            f"Cluster {cluster_id} cannot be tested (n_in={n_in}, n_out={n_out})",
            context={"cluster": cluster_id, "n_in": n_in, "n_out": n_out},
        )
        self.cluster_id = cluster_id


class SampleFactorizationFailure(CellProgramsError):
    """NMF for one sample blew up numerically."""

    error_code = "E005_SAMPLE_FACTORIZATION"

    def __init__(self, sample: str, rank: int, reason: str):
        super().__init__(
            f"NMF failed for sample '{sample}' at k={rank}: {reason}",
            suggestion="The sample is skipped in meta-program consensus.",
            context={"sample": sample, "rank": rank},
        )
        self.sample = sample
        self.rank = rank


class LabelMappingError(CellProgramsError):
    """Caller-supplied label list does not match the cluster count."""

    error_code = "E006_LABEL_MAPPING"

    def __init__(self, n_labels: int, n_clusters: int):
        super().__init__(
            f"Label list has {n_labels} entries but assignment has "
            f"{n_clusters} clusters",
            suggestion="Supply exactly one label per cluster id, in id order.",
            context={"n_labels": n_labels, "n_clusters": n_clusters},
        )


class ZeroVarianceGuard(UserWarning):
    """Zero-variance gene was scaled to a constant 0."""


class ConvergenceFailure(UserWarning):
    """Iterative algorithm exhausted its budget before meeting tolerance."""
