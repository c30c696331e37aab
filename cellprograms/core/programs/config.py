"""Configuration classes for gene program discovery."""

from dataclasses import dataclass
from typing import List, Tuple


@dataclass
class NMFConfig:
    """Configuration for per-sample NMF.

    Attributes
    ----------
    rank_range : Tuple[int, int]
        Inclusive range of ranks k factorized for every sample
    init : str
        ``nndsvda`` or ``random``
    max_iter : int
        Maximum multiplicative-update iterations (convergence is checked
        every 10)
    tol : float
        Relative error change that counts as converged
    center_and_floor : bool
        Center genes per sample and set negatives to 0 before factorizing
    use_variable_genes : bool
        Restrict to the selected variable genes when available
    min_cells : int
        Samples with fewer cells are skipped
    n_jobs : int
        joblib workers over (sample, k) tasks
    """

    rank_range: Tuple[int, int] = (4, 9)
    init: str = "nndsvda"
    max_iter: int = 500
    tol: float = 1e-4
    center_and_floor: bool = False
    use_variable_genes: bool = True
    min_cells: int = 10
    n_jobs: int = 1

    @property
    def ranks(self) -> List[int]:
        low, high = int(self.rank_range[0]), int(self.rank_range[1])
        return list(range(low, high + 1))


@dataclass
class ConsensusConfig:
    """Configuration for cross-sample meta-program consensus.

    Attributes
    ----------
    n_programs : int
        Number of meta-programs M (capped at the number of input programs)
    weight_explained_cutoff : float
        Stop adding genes once cumulative weight reaches this value
    max_program_genes : int
        Maximum genes per meta-program
    """

    n_programs: int = 10
    weight_explained_cutoff: float = 0.7
    max_program_genes: int = 100
