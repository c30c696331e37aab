"""Cluster-to-label lookup.

Labels are supplied by the caller as an ordered list, one per cluster id.
"""

from typing import Dict, Sequence

import pandas as pd

from ...errors import LabelMappingError
from ..store import ClusterAssignment


class ClusterLabeler:
    """Validated mapping from cluster ids to caller-supplied labels.

    Parameters
    ----------
    labels : Sequence[str]
        Label for cluster 0, 1, ... in id order

    Example
    -------
    >>> labeler = ClusterLabeler(["T cell", "B cell", "Monocyte"])
    >>> cell_labels = labeler.apply(assignment)
    """

    def __init__(self, labels: Sequence[str]):
        self.labels = [str(label) for label in labels]

    def mapping(self, assignment: ClusterAssignment) -> Dict[int, str]:
        """Cluster id to label; raises ``LabelMappingError`` on a count mismatch."""
        if len(self.labels) != assignment.n_clusters:
            raise LabelMappingError(len(self.labels), assignment.n_clusters)
        return {i: label for i, label in enumerate(self.labels)}

    def apply(self, assignment: ClusterAssignment) -> pd.Series:
        """Label per cell id."""
        mapping = self.mapping(assignment)
        return assignment.labels.map(mapping).rename("label")

    def summary(self, assignment: ClusterAssignment) -> pd.DataFrame:
        mapping = self.mapping(assignment)
        sizes = assignment.cluster_sizes
        return pd.DataFrame(
            {
                "cluster": list(mapping),
                "label": list(mapping.values()),
                "n_cells": [sizes.get(c, 0) for c in mapping],
            }
        )
