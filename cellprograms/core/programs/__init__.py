"""Gene program discovery: per-sample NMF and meta-program consensus.

Example Usage
-------------
>>> from cellprograms.core.programs import NMFFactorizer, ConsensusEngine
>>> nmf = NMFFactorizer(random_seed=1337).factorize(lognorm, features)
>>> metaprograms = ConsensusEngine().build(nmf.usable(), nmf.skipped_samples)
"""

from .config import ConsensusConfig, NMFConfig
from .nmf import (
    INITS,
    NMFFactorizer,
    NMFFit,
    NMFResult,
    run_nmf,
)
from .consensus import ConsensusEngine, stack_programs, truncate_program

__all__ = [
    "ConsensusConfig",
    "NMFConfig",
    "INITS",
    "NMFFactorizer",
    "NMFFit",
    "NMFResult",
    "run_nmf",
    "ConsensusEngine",
    "stack_programs",
    "truncate_program",
]
