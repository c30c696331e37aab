"""Cell-level quality control.

Computes per-cell library metrics from raw counts and removes cells
outside the configured detected-gene and mitochondrial-fraction bounds.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import logging

import numpy as np
import pandas as pd

from ...errors import InputFormatError
from ..store import MatrixStore
from .config import QCConfig


logger = logging.getLogger(__name__)

# Reason columns for tracking removal causes
REASON_COLUMNS = [
    "low_features",
    "high_features",
    "high_mito",
]

METRIC_COLUMNS = ["total_counts", "n_features", "pct_mito"]


@dataclass
class QCResult:
    """Result from QC filtering.

    Attributes
    ----------
    store : MatrixStore
        Filtered counts store with metric columns joined
    cells_total : int
        Total cells before filtering
    cells_removed : int
        Number of cells removed
    reason_counts : Dict[str, int]
        Counts per removal reason (a cell may count for several reasons)
    removal_records : List[Dict]
        Details of removed cells
    """

    store: Optional[MatrixStore] = None
    cells_total: int = 0
    cells_removed: int = 0
    reason_counts: Dict[str, int] = field(default_factory=dict)
    removal_records: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def removal_fraction(self) -> float:
        return self.cells_removed / self.cells_total if self.cells_total > 0 else 0.0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for reporting."""
        result = {
            "cells_total": self.cells_total,
            "cells_removed": self.cells_removed,
            "removal_fraction": round(self.removal_fraction, 4),
        }
        for reason in REASON_COLUMNS:
            result[f"removed_{reason}"] = self.reason_counts.get(reason, 0)
        return result

    def reasons_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            {"reason": REASON_COLUMNS,
             "n_cells": [self.reason_counts.get(r, 0) for r in REASON_COLUMNS]}
        )


def compute_qc_metrics(store: MatrixStore, mito_prefix: str = "MT-") -> pd.DataFrame:
    """Compute total_counts, n_features and pct_mito per cell.

    Parameters
    ----------
    store : MatrixStore
        Raw counts store
    mito_prefix : str
        Mitochondrial gene id prefix (matched case-insensitively)

    Returns
    -------
    pd.DataFrame
        Metrics indexed by cell id
    """
    matrix = store.matrix
    total = np.asarray(matrix.sum(axis=1)).ravel().astype(float)
    n_features = np.asarray((matrix > 0).sum(axis=1)).ravel()
    is_mito = store.gene_ids.str.upper().str.startswith(mito_prefix.upper())
    if is_mito.any():
        mito_total = np.asarray(matrix[:, np.flatnonzero(is_mito)].sum(axis=1)).ravel()
    else:
        mito_total = np.zeros(store.n_cells)
    pct_mito = np.divide(
        100.0 * mito_total, total, out=np.zeros_like(total), where=total > 0
    )
    return pd.DataFrame(
        {
            "total_counts": total,
            "n_features": np.asarray(n_features, dtype=np.int64),
            "pct_mito": pct_mito,
        },
        index=store.cell_ids,
    )


class CellQC:
    """Cell-level quality control filter.

    Parameters
    ----------
    config : QCConfig
        QC configuration

    Example
    -------
    >>> from cellprograms.core.preprocessing import CellQC, QCConfig
    >>> qc = CellQC(QCConfig(min_features=200, max_mito_pct=20))
    >>> result = qc.filter(store)
    >>> result.store.n_cells
    """

    def __init__(self, config: Optional[QCConfig] = None):
        self.config = config or QCConfig()

    def flag_cells(self, metrics: pd.DataFrame) -> pd.DataFrame:
        """Boolean reason flags per cell."""
        cfg = self.config
        reasons = pd.DataFrame(index=metrics.index)
        reasons["low_features"] = metrics["n_features"] < cfg.min_features
        if cfg.max_features is not None:
            reasons["high_features"] = metrics["n_features"] > cfg.max_features
        else:
            reasons["high_features"] = False
        if cfg.max_mito_pct is not None:
            reasons["high_mito"] = metrics["pct_mito"] > cfg.max_mito_pct
        else:
            reasons["high_mito"] = False
        return reasons

    def filter(self, store: MatrixStore) -> QCResult:
        """Filter cells based on QC criteria.

        Parameters
        ----------
        store : MatrixStore
            Raw counts store

        Returns
        -------
        QCResult
            Filtering result holding the new store

        Raises
        ------
        InputFormatError
            If every cell is removed
        """
        result = QCResult(cells_total=store.n_cells)
        metrics = compute_qc_metrics(store, self.config.mito_prefix)
        reasons = self.flag_cells(metrics)
        flagged = reasons.any(axis=1).to_numpy()

        for reason in REASON_COLUMNS:
            result.reason_counts[reason] = int(reasons[reason].sum())
        for cell_id in reasons.index[flagged]:
            row = reasons.loc[cell_id]
            result.removal_records.append(
                {
                    "cell_id": cell_id,
                    "sample": store.cells.at[cell_id, "sample"],
                    "reasons": ";".join(r for r in REASON_COLUMNS if bool(row[r])),
                }
            )

        result.cells_removed = int(flagged.sum())
        if result.cells_removed == store.n_cells:
            raise InputFormatError(
                f"QC removed all {store.n_cells} cells",
                suggestion="Relax min_features / max_features / max_mito_pct.",
                context=result.to_dict(),
            )

        annotated = store.with_cell_metadata(metrics)
        result.store = annotated.subset_cells(~flagged) if result.cells_removed else annotated
        logger.info(
            "QC kept %d / %d cells (%s)",
            result.store.n_cells,
            result.cells_total,
            ", ".join(f"{k}={v}" for k, v in result.reason_counts.items()),
        )
        return result
