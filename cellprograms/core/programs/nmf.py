"""Per-sample non-negative matrix factorization.

Frobenius NMF with scikit-learn's multiplicative-update solver, run for
every sample across a range of ranks. Tasks are distributed with joblib;
each worker returns plain arrays and the parent builds the factorization
artifacts.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple, Union
import logging
import time
import warnings

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from scipy import sparse
from sklearn.decomposition import NMF
from sklearn.exceptions import ConvergenceWarning

from ...errors import ConvergenceFailure, InputFormatError, SampleFactorizationFailure
from ..store import FeatureSelection, MatrixStore, NMFFactorization
from .config import NMFConfig


INITS = ("nndsvda", "random")

MatrixLike = Union[np.ndarray, sparse.spmatrix]


@dataclass
class NMFFit:
    """Raw output of one factorization."""

    W: np.ndarray
    H: np.ndarray
    error: float
    n_iter: int
    converged: bool


def run_nmf(
    X: MatrixLike,
    k: int,
    init: str = "nndsvda",
    max_iter: int = 500,
    tol: float = 1e-4,
    seed: int = 1337,
) -> NMFFit:
    """Factorize ``X ~ W @ H.T`` with multiplicative updates.

    The solver checks convergence every 10 iterations and stops once the
    error decrease since the last check, relative to the initial error,
    falls below ``tol``.

    Parameters
    ----------
    X : np.ndarray or scipy.sparse matrix
        Non-negative cells x genes matrix; sparse input stays sparse
    k : int
        Rank, at most ``min(X.shape)``
    init : str
        ``nndsvda`` or ``random``
    max_iter : int
        Iteration budget
    tol : float
        Relative error decrease that counts as converged
    seed : int
        Seed for the initialization

    Returns
    -------
    NMFFit
        W (cells x k), H (genes x k), final Frobenius error and iteration count

    Raises
    ------
    InputFormatError
        If ``X`` has negative entries, ``init`` is unknown or ``k`` exceeds
        ``min(X.shape)``
    FloatingPointError
        If non-finite values appear
    """
    if init not in INITS:
        raise InputFormatError(f"Unknown NMF init '{init}'; expected one of {INITS}")
    values = X.data if sparse.issparse(X) else np.asarray(X)
    if not np.all(np.isfinite(values)):
        raise FloatingPointError("input contains non-finite values")
    if np.any(values < 0):
        raise InputFormatError("NMF input contains negative values")
    if not 1 <= int(k) <= min(X.shape):
        raise InputFormatError(f"NMF rank {k} outside 1..{min(X.shape)} for a {X.shape} matrix")

    model = NMF(
        n_components=int(k),
        init=init,
        solver="mu",
        beta_loss="frobenius",
        tol=tol,
        max_iter=max_iter,
        random_state=seed,
    )
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always", ConvergenceWarning)
        W = model.fit_transform(X)
    H = model.components_.T
    if not (np.all(np.isfinite(W)) and np.all(np.isfinite(H))):
        raise FloatingPointError(f"non-finite factors after {model.n_iter_} iterations")
    hit_budget = False
    for w in caught:
        if issubclass(w.category, ConvergenceWarning):
            hit_budget = True
        else:
            warnings.warn_explicit(w.message, w.category, w.filename, w.lineno)
    return NMFFit(
        W=W,
        H=H,
        error=float(model.reconstruction_err_),
        n_iter=int(model.n_iter_),
        converged=not hit_budget and model.n_iter_ < max_iter,
    )


def _factorize_task(
    X: MatrixLike,
    sample: str,
    k: int,
    config: NMFConfig,
    seed: int,
) -> Tuple[str, int, Optional[NMFFit], str]:
    """joblib worker: factorize one (sample, k); failures come back as text."""
    try:
        fit = run_nmf(
            X,
            k,
            init=config.init,
            max_iter=config.max_iter,
            tol=config.tol,
            seed=seed,
        )
    except (FloatingPointError, np.linalg.LinAlgError) as exc:
        return sample, k, None, str(exc)
    return sample, k, fit, ""


def task_seed(random_seed: int, sample_index: int, k: int) -> int:
    """Deterministic per-task seed."""
    seq = np.random.SeedSequence([int(random_seed), int(sample_index), int(k)])
    return int(seq.generate_state(1)[0])


@dataclass
class NMFResult:
    """All factorizations of one run.

    Attributes
    ----------
    factorizations : Dict[str, NMFFactorization]
        Factorization per artifact id
    failures : List[SampleFactorizationFailure]
        Failed (sample, k) tasks
    skipped_samples : List[str]
        Samples excluded from consensus (failed or too small)
    skipped_ranks : List[Tuple[str, int]]
        (sample, k) pairs not run because k exceeds the sample's
        ``min(n_cells, n_genes)``
    elapsed_seconds : float
        Wall time
    """

    factorizations: Dict[str, NMFFactorization] = field(default_factory=dict)
    failures: List[SampleFactorizationFailure] = field(default_factory=list)
    skipped_samples: List[str] = field(default_factory=list)
    skipped_ranks: List[Tuple[str, int]] = field(default_factory=list)
    elapsed_seconds: float = 0.0

    def usable(self) -> List[NMFFactorization]:
        """Factorizations of samples without any failed rank."""
        skipped = set(self.skipped_samples)
        return [f for f in self.factorizations.values() if f.sample not in skipped]


class NMFFactorizer:
    """Factorize each sample of a log-normalized store across ranks.

    Parameters
    ----------
    config : NMFConfig, optional
        NMF configuration
    random_seed : int
        Base seed; each (sample, k) task derives its own
    logger : logging.Logger, optional
        Logger instance

    Example
    -------
    >>> factorizer = NMFFactorizer(NMFConfig(rank_range=(4, 6), n_jobs=4))
    >>> result = factorizer.factorize(lognorm, features)
    >>> sorted(result.factorizations)[:2]
    ['nmf:s1_k4', 'nmf:s1_k5']
    """

    def __init__(
        self,
        config: Optional[NMFConfig] = None,
        random_seed: int = 1337,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or NMFConfig()
        self.random_seed = random_seed
        self.logger = logger or logging.getLogger(__name__)
        if self.config.init not in INITS:
            raise ValueError(f"Unknown NMF init '{self.config.init}'; expected one of {INITS}")

    def factorize_matrix(self, X: MatrixLike, sample: str, k: int, seed: Optional[int] = None) -> NMFFit:
        """Factorize one matrix in-process.

        Raises
        ------
        SampleFactorizationFailure
            If the updates produce non-finite values
        """
        cfg = self.config
        try:
            return run_nmf(
                X,
                k,
                init=cfg.init,
                max_iter=cfg.max_iter,
                tol=cfg.tol,
                seed=self.random_seed if seed is None else seed,
            )
        except (FloatingPointError, np.linalg.LinAlgError) as exc:
            raise SampleFactorizationFailure(sample, k, str(exc)) from exc

    def sample_matrix(self, store: MatrixStore, sample: str) -> Tuple[sparse.csr_matrix, pd.Index]:
        """Sparse non-negative matrix of one sample.

        With ``center_and_floor`` the genes are centered and negatives set
        to 0; the mean shift fills the matrix, so that mode builds the dense
        sample block before converting back to CSR.
        """
        rows = store.sample_positions(sample)
        X = sparse.csr_matrix(store.matrix[rows], dtype=np.float64)
        if self.config.center_and_floor:
            dense = X.toarray()
            dense -= dense.mean(axis=0)
            dense[dense < 0] = 0.0
            X = sparse.csr_matrix(dense)
        return X, store.cell_ids[rows]

    def factorize(
        self,
        store: MatrixStore,
        features: Optional[FeatureSelection] = None,
    ) -> NMFResult:
        """Run NMF for every sample and rank.

        Parameters
        ----------
        store : MatrixStore
            Log-normalized store
        features : FeatureSelection, optional
            Variable genes; used as the gene space when
            ``use_variable_genes`` is set

        Returns
        -------
        NMFResult
            Factorizations, failures and skipped samples
        """
        cfg = self.config
        parents = [store.artifact_id]
        if features is not None and cfg.use_variable_genes:
            store = store.subset_genes(list(features.selected))
            parents.append(features.artifact_id)
        if store.matrix.nnz and store.matrix.data.min() < 0:
            raise InputFormatError("NMF input contains negative values")

        result = NMFResult()
        start = time.time()
        tasks = []
        sample_inputs: Dict[str, Tuple[sparse.csr_matrix, pd.Index]] = {}
        for index, sample in enumerate(store.samples):
            X, cell_ids = self.sample_matrix(store, sample)
            if X.shape[0] < cfg.min_cells:
                self.logger.warning(
                    "Sample %s has %d cells (< %d), skipping NMF",
                    sample,
                    X.shape[0],
                    cfg.min_cells,
                )
                result.skipped_samples.append(sample)
                continue
            sample_inputs[sample] = (X, cell_ids)
            max_rank = min(X.shape)
            for k in cfg.ranks:
                if k > max_rank:
                    self.logger.warning(
                        "Sample %s is %d x %d; skipping NMF at k=%d (> %d)",
                        sample,
                        X.shape[0],
                        X.shape[1],
                        k,
                        max_rank,
                    )
                    result.skipped_ranks.append((sample, k))
                    continue
                tasks.append((X, sample, k, cfg, task_seed(self.random_seed, index, k)))

        self.logger.info(
            "Running %d NMF tasks (%d samples, k=%s) with n_jobs=%d",
            len(tasks),
            len(sample_inputs),
            cfg.ranks,
            cfg.n_jobs,
        )
        if cfg.n_jobs == 1:
            outputs = [_factorize_task(*task) for task in tasks]
        else:
            outputs = Parallel(n_jobs=cfg.n_jobs, backend="loky")(
                delayed(_factorize_task)(*task) for task in tasks
            )

        gene_ids = store.gene_ids
        for sample, k, fit, reason in outputs:
            if fit is None:
                failure = SampleFactorizationFailure(sample, k, reason)
                self.logger.warning("%s", failure.message)
                result.failures.append(failure)
                if sample not in result.skipped_samples:
                    result.skipped_samples.append(sample)
                continue
            tags: Tuple[str, ...] = ()
            if not fit.converged:
                msg = (
                    f"NMF for sample '{sample}' at k={k} did not converge in "
                    f"{cfg.max_iter} iterations"
                )
                self.logger.warning(msg)
                warnings.warn(msg, ConvergenceFailure, stacklevel=2)
                tags = ("ConvergenceFailure",)
            artifact = NMFFactorization(
                name=f"{sample}_k{k}",
                sample=sample,
                rank=k,
                W=fit.W,
                H=fit.H,
                cell_ids=sample_inputs[sample][1],
                gene_ids=gene_ids,
                reconstruction_error=fit.error,
                n_iter=fit.n_iter,
                converged=fit.converged,
                parents=tuple(parents),
                params={
                    "init": cfg.init,
                    "max_iter": int(cfg.max_iter),
                    "tol": float(cfg.tol),
                    "center_and_floor": bool(cfg.center_and_floor),
                },
                warnings=tags,
            )
            result.factorizations[artifact.artifact_id] = artifact

        result.elapsed_seconds = time.time() - start
        self.logger.info(
            "NMF finished in %.1f seconds: %d factorizations, %d failures",
            result.elapsed_seconds,
            len(result.factorizations),
            len(result.failures),
        )
        return result
