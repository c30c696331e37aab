"""Cross-sample meta-program consensus.

Every program (H column) of every usable factorization is L1-normalized,
the programs are grouped by average-linkage hierarchical clustering on
cosine distance, and each group is summarized by the mean of its members
truncated to the genes explaining most of its weight.
"""

from typing import List, Optional, Sequence, Tuple
import logging

import numpy as np
import pandas as pd
from scipy.cluster.hierarchy import fcluster, linkage

from ...errors import InputFormatError
from ..store import MetaProgram, MetaProgramSet, NMFFactorization
from .config import ConsensusConfig


def stack_programs(
    factorizations: Sequence[NMFFactorization],
) -> Tuple[np.ndarray, List[Tuple[str, int, int]], pd.Index]:
    """L1-normalized programs (rows) and their (sample, k, component) ids.

    All-zero columns are dropped.
    """
    if not factorizations:
        return np.zeros((0, 0)), [], pd.Index([])
    gene_ids = factorizations[0].gene_ids
    rows = []
    members: List[Tuple[str, int, int]] = []
    for fact in factorizations:
        if not fact.gene_ids.equals(gene_ids):
            raise InputFormatError(
                f"Factorization {fact.artifact_id} uses a different gene space",
                suggestion="Factorize all samples on the same gene list.",
            )
        for component in range(fact.H.shape[1]):
            column = np.asarray(fact.H[:, component], dtype=np.float64)
            total = column.sum()
            if total <= 0:
                continue
            rows.append(column / total)
            members.append((fact.sample, int(fact.rank), component))
    if not rows:
        return np.zeros((0, len(gene_ids))), [], gene_ids
    return np.vstack(rows), members, gene_ids


def truncate_program(
    weights: np.ndarray,
    gene_ids: np.ndarray,
    cutoff: float,
    max_genes: int,
) -> Tuple[np.ndarray, np.ndarray]:
    """Rank genes by weight and keep them until the cumulative cutoff.

    The gene whose weight crosses ``cutoff`` is kept. Ties rank by gene id.
    """
    order = np.lexsort((gene_ids, -weights))
    ranked = weights[order]
    cumulative = np.cumsum(ranked)
    crossing = np.flatnonzero(cumulative >= cutoff)
    n_keep = int(crossing[0]) + 1 if crossing.size else len(ranked)
    n_keep = min(n_keep, int(max_genes), int(np.sum(ranked > 0)))
    keep = order[:n_keep]
    return gene_ids[keep], weights[keep]


class ConsensusEngine:
    """Derive meta-programs recurring across samples.

    Parameters
    ----------
    config : ConsensusConfig, optional
        Consensus configuration
    logger : logging.Logger, optional
        Logger instance

    Example
    -------
    >>> engine = ConsensusEngine(ConsensusConfig(n_programs=10))
    >>> metaprograms = engine.build(nmf_result.usable(), nmf_result.skipped_samples)
    >>> metaprograms.programs[0].genes[:5]
    """

    def __init__(
        self,
        config: Optional[ConsensusConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or ConsensusConfig()
        self.logger = logger or logging.getLogger(__name__)

    def group_programs(self, programs: np.ndarray, n_groups: int) -> np.ndarray:
        """Group ids (0-based, not yet ordered) for each program row."""
        if programs.shape[0] == 1:
            return np.zeros(1, dtype=np.int64)
        tree = linkage(programs, method="average", metric="cosine")
        labels = fcluster(tree, t=n_groups, criterion="maxclust")
        return labels.astype(np.int64) - 1

    def build(
        self,
        factorizations: Sequence[NMFFactorization],
        skipped_samples: Sequence[str] = (),
        name: str = "consensus",
    ) -> MetaProgramSet:
        """Build meta-programs from the usable factorizations.

        Parameters
        ----------
        factorizations : Sequence[NMFFactorization]
            Factorizations to combine
        skipped_samples : Sequence[str]
            Samples whose factorization failed; any of their factorizations
            in ``factorizations`` are ignored
        name : str
            Artifact name

        Returns
        -------
        MetaProgramSet
            Programs ordered by member count, ids 0..M-1
        """
        cfg = self.config
        skipped = [str(s) for s in skipped_samples]
        for sample in skipped:
            self.logger.warning("Sample %s skipped in meta-program consensus", sample)
        usable = [f for f in factorizations if f.sample not in set(skipped)]

        programs, members, gene_ids = stack_programs(usable)
        tags: List[str] = [f"SampleFactorizationFailure:{s}" for s in skipped]
        parents = tuple(f.artifact_id for f in usable)
        params = {
            "n_programs": int(cfg.n_programs),
            "weight_explained_cutoff": float(cfg.weight_explained_cutoff),
            "max_program_genes": int(cfg.max_program_genes),
            "linkage": "average",
            "metric": "cosine",
        }
        n_total = programs.shape[0]
        if n_total == 0:
            self.logger.warning("No programs available for consensus")
            return MetaProgramSet(
                name=name,
                programs=(),
                skipped_samples=tuple(skipped),
                parents=parents,
                params=params,
                warnings=tuple(tags + ["NoPrograms"]),
            )

        n_groups = int(cfg.n_programs)
        if n_groups > n_total:
            self.logger.warning(
                "Requested %d meta-programs but only %d programs exist; capping",
                n_groups,
                n_total,
            )
            tags.append(f"MetaProgramCountCapped:{n_total}")
            n_groups = n_total

        groups = self.group_programs(programs, n_groups)
        group_ids = np.unique(groups)
        if len(group_ids) < n_groups:
            self.logger.warning(
                "Hierarchical cut gave %d groups for %d requested meta-programs",
                len(group_ids),
                n_groups,
            )
            tags.append(f"MetaProgramCountReduced:{len(group_ids)}")
        sizes = np.array([np.sum(groups == g) for g in group_ids])
        first = np.array([np.flatnonzero(groups == g)[0] for g in group_ids])
        ordered = group_ids[np.lexsort((first, -sizes))]

        gene_array = gene_ids.to_numpy().astype(str)
        metaprograms = []
        for program_id, group in enumerate(ordered):
            idx = np.flatnonzero(groups == group)
            mean = programs[idx].mean(axis=0)
            genes, weights = truncate_program(
                mean, gene_array, cfg.weight_explained_cutoff, cfg.max_program_genes
            )
            metaprograms.append(
                MetaProgram(
                    program_id=program_id,
                    genes=tuple(genes.tolist()),
                    weights=weights,
                    members=tuple(members[i] for i in idx),
                )
            )

        self.logger.info(
            "Built %d meta-programs from %d programs (%d samples)",
            len(metaprograms),
            n_total,
            len({m[0] for m in members}),
        )
        params["n_programs"] = len(metaprograms)
        return MetaProgramSet(
            name=name,
            programs=tuple(metaprograms),
            skipped_samples=tuple(skipped),
            parents=parents,
            params=params,
            warnings=tuple(tags),
        )
