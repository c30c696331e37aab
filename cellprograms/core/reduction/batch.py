"""Harmony-style batch correction of an embedding.

Alternates soft k-means clustering with a diversity penalty over batches and
a ridge mixture-of-experts regression that removes per-(cluster, batch)
offsets from the embedding. Works on a cells x dims layout.
"""

from dataclasses import dataclass, field
from typing import Any, List, Optional, Sequence, Tuple
import logging
import warnings

import numpy as np
import pandas as pd
from sklearn.cluster import KMeans

from ...errors import ConvergenceFailure, DimensionMismatchError, InputFormatError
from ..store import Embedding
from .config import BatchCorrectionConfig


CONVERGENCE_CRITERIA = ("objective", "assignment")


def cosine_normalize(values: np.ndarray) -> np.ndarray:
    """Scale each row to unit L2 norm (zero rows stay zero)."""
    norms = np.linalg.norm(values, axis=1, keepdims=True)
    return values / np.where(norms > 0, norms, 1.0)


def soft_assignment_change(previous: np.ndarray, current: np.ndarray) -> float:
    """Mean total-variation distance between two soft assignment matrices."""
    return float(0.5 * np.abs(current - previous).sum(axis=1).mean())


@dataclass
class HarmonyState:
    """Mutable working state of one correction run.

    Attributes
    ----------
    Z_orig : np.ndarray
        Cells x dims input embedding
    Z_corr : np.ndarray
        Current corrected embedding
    Z_cos : np.ndarray
        Row-normalized corrected embedding
    Phi : np.ndarray
        Cells x batches one-hot design
    R : np.ndarray
        Cells x clusters soft assignments (rows sum to 1)
    Y : np.ndarray
        Clusters x dims unit-norm centroids
    E : np.ndarray
        Clusters x batches expected membership
    O : np.ndarray
        Clusters x batches observed membership
    """

    Z_orig: np.ndarray
    Z_corr: np.ndarray
    Z_cos: np.ndarray
    Phi: np.ndarray
    Pr_b: np.ndarray
    theta: np.ndarray
    sigma: np.ndarray
    R: Optional[np.ndarray] = None
    Y: Optional[np.ndarray] = None
    dist: Optional[np.ndarray] = None
    E: Optional[np.ndarray] = None
    O: Optional[np.ndarray] = None
    objective_kmeans: List[float] = field(default_factory=list)
    objective_harmony: List[float] = field(default_factory=list)


class HarmonyCorrector:
    """Remove batch structure from an embedding.

    Parameters
    ----------
    config : BatchCorrectionConfig, optional
        Correction configuration
    random_seed : int
        Seed for k-means initialization and block update order
    logger : logging.Logger, optional
        Logger instance

    Example
    -------
    >>> corrector = HarmonyCorrector(BatchCorrectionConfig(max_iter=20), random_seed=7)
    >>> harmony = corrector.correct(pca, store.cells["sample"])
    >>> harmony.method
    'harmony'
    """

    def __init__(
        self,
        config: Optional[BatchCorrectionConfig] = None,
        random_seed: int = 1337,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or BatchCorrectionConfig()
        self.random_seed = random_seed
        self.logger = logger or logging.getLogger(__name__)
        if self.config.convergence not in CONVERGENCE_CRITERIA:
            raise ValueError(
                f"Unknown convergence criterion '{self.config.convergence}'; "
                f"expected one of {CONVERGENCE_CRITERIA}"
            )

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def _n_clusters(self, n_cells: int) -> int:
        if self.config.n_clusters is not None:
            k = int(self.config.n_clusters)
        else:
            k = int(min(100, round(n_cells / 30.0)))
        return max(2, min(k, n_cells))

    def _init_state(self, coords: np.ndarray, codes: np.ndarray, n_batches: int) -> HarmonyState:
        n_cells = coords.shape[0]
        Phi = np.zeros((n_cells, n_batches))
        Phi[np.arange(n_cells), codes] = 1.0
        Pr_b = Phi.sum(axis=0) / n_cells
        K = self._n_clusters(n_cells)
        state = HarmonyState(
            Z_orig=coords,
            Z_corr=coords.copy(),
            Z_cos=cosine_normalize(coords),
            Phi=Phi,
            Pr_b=Pr_b,
            theta=np.full(n_batches, float(self.config.theta)),
            sigma=np.full(K, float(self.config.sigma)),
        )

        km = KMeans(
            n_clusters=K,
            init="k-means++",
            n_init=10,
            max_iter=25,
            random_state=self.random_seed,
        ).fit(state.Z_cos)
        state.Y = cosine_normalize(km.cluster_centers_)
        state.dist = 2.0 * (1.0 - state.Z_cos @ state.Y.T)

        state.R = self._scaled_distance(state)
        state.R /= state.R.sum(axis=1, keepdims=True)
        state.E = np.outer(state.R.sum(axis=0), state.Pr_b)
        state.O = state.R.T @ state.Phi
        state.objective_kmeans.append(self._objective(state))
        state.objective_harmony.append(state.objective_kmeans[-1])
        return state

    # ------------------------------------------------------------------
    # Objective and soft clustering
    # ------------------------------------------------------------------

    @staticmethod
    def _scaled_distance(state: HarmonyState) -> np.ndarray:
        scaled = -state.dist / state.sigma[None, :]
        scaled -= scaled.max(axis=1, keepdims=True)
        return np.exp(scaled)

    @staticmethod
    def _objective(state: HarmonyState) -> float:
        """k-means error + entropy + diversity cross-entropy."""
        R = state.R
        kmeans_error = float(np.sum(R * state.dist))
        with np.errstate(divide="ignore", invalid="ignore"):
            r_log_r = np.where(R > 0, R * np.log(R), 0.0)
        entropy = float(np.sum(r_log_r * state.sigma[None, :]))
        log_ratio = np.log((state.O + 1.0) / (state.E + 1.0))
        penalty = state.Phi @ (log_ratio * state.theta[None, :]).T
        cross_entropy = float(np.sum(R * state.sigma[None, :] * penalty))
        return kmeans_error + entropy + cross_entropy

    def _update_assignments(self, state: HarmonyState, rng: np.random.Generator) -> None:
        scaled = self._scaled_distance(state)
        n_cells = state.R.shape[0]
        n_blocks = int(np.ceil(1.0 / self.config.block_size))
        for block in np.array_split(rng.permutation(n_cells), n_blocks):
            if block.size == 0:
                continue
            # Remove the block from the batch statistics
            state.E -= np.outer(state.R[block].sum(axis=0), state.Pr_b)
            state.O -= state.R[block].T @ state.Phi[block]

            diversity = np.power((state.E + 1.0) / (state.O + 1.0), state.theta[None, :])
            R_block = scaled[block] * (state.Phi[block] @ diversity.T)
            R_block /= R_block.sum(axis=1, keepdims=True)
            state.R[block] = R_block

            state.E += np.outer(R_block.sum(axis=0), state.Pr_b)
            state.O += R_block.T @ state.Phi[block]

    def _cluster(self, state: HarmonyState, rng: np.random.Generator) -> None:
        for i in range(self.config.max_iter_cluster):
            state.Y = cosine_normalize(state.R.T @ state.Z_cos)
            state.dist = 2.0 * (1.0 - state.Z_cos @ state.Y.T)
            self._update_assignments(state, rng)
            state.objective_kmeans.append(self._objective(state))
            old, new = state.objective_kmeans[-2], state.objective_kmeans[-1]
            if i > 0 and abs(old - new) / max(abs(old), 1e-12) < self.config.tol_cluster:
                break
        state.objective_harmony.append(state.objective_kmeans[-1])

    # ------------------------------------------------------------------
    # Mixture-of-experts correction
    # ------------------------------------------------------------------

    def _correct(self, state: HarmonyState) -> None:
        n_cells, n_batches = state.Phi.shape
        Phi_moe = np.column_stack([np.ones(n_cells), state.Phi])
        ridge = np.diag([0.0] + [float(self.config.ridge_lambda)] * n_batches)
        Z_corr = state.Z_orig.copy()
        for k in range(state.R.shape[1]):
            Phi_Rk = Phi_moe * state.R[:, k][:, None]
            gram = Phi_Rk.T @ Phi_moe + ridge
            W = np.linalg.solve(gram, Phi_Rk.T @ state.Z_orig)
            # Intercept carries the shared cluster centroid, keep it
            W[0, :] = 0.0
            Z_corr -= Phi_Rk @ W
        state.Z_corr = Z_corr
        state.Z_cos = cosine_normalize(Z_corr)

    def _converged(self, state: HarmonyState, R_prev: np.ndarray) -> Tuple[bool, float]:
        if self.config.convergence == "assignment":
            delta = soft_assignment_change(R_prev, state.R)
            return delta < self.config.tol_harmony, delta
        old, new = state.objective_harmony[-2], state.objective_harmony[-1]
        delta = (old - new) / max(abs(old), 1e-12)
        return delta < self.config.tol_harmony, delta

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def correct(
        self,
        embedding: Embedding,
        batches: Sequence[Any],
        name: str = "harmony",
    ) -> Embedding:
        """Correct an embedding for batch labels.

        Parameters
        ----------
        embedding : Embedding
            Source embedding (typically PCA)
        batches : sequence
            Batch label per cell, aligned with ``embedding.cell_ids``
        name : str
            Artifact name

        Returns
        -------
        Embedding
            Corrected embedding; tagged ``ConvergenceFailure`` when
            ``max_iter`` was reached first

        Raises
        ------
        InputFormatError
            If fewer than two batches are present
        """
        labels = pd.Series(batches).astype(str).to_numpy()
        if labels.shape[0] != embedding.coordinates.shape[0]:
            raise DimensionMismatchError(
                "batch labels", embedding.coordinates.shape[0], labels.shape[0]
            )
        levels, codes = np.unique(labels, return_inverse=True)
        if len(levels) < 2:
            raise InputFormatError(
                "Batch correction needs at least two batches",
                suggestion="Skip correction for single-batch data.",
                context={"batches": list(levels)},
            )

        n_dims = self.config.n_dims or embedding.n_dims
        n_dims = min(int(n_dims), embedding.n_dims)
        coords = np.array(embedding.coordinates[:, :n_dims], dtype=np.float64)

        rng = np.random.default_rng(self.random_seed)
        state = self._init_state(coords, codes, len(levels))
        self.logger.info(
            "Harmony: %d cells, %d dims, %d batches, %d clusters",
            coords.shape[0],
            n_dims,
            len(levels),
            state.R.shape[1],
        )

        converged = False
        n_iter = 0
        for n_iter in range(1, self.config.max_iter + 1):
            R_prev = state.R.copy()
            self._cluster(state, rng)
            self._correct(state)
            converged, delta = self._converged(state, R_prev)
            self.logger.debug("Harmony iteration %d: delta=%.3g", n_iter, delta)
            if converged:
                self.logger.info("Harmony converged after %d iterations", n_iter)
                break

        tags: Tuple[str, ...] = ()
        if not converged:
            msg = (
                f"Harmony did not converge in {self.config.max_iter} iterations "
                f"({self.config.convergence} criterion)"
            )
            self.logger.warning(msg)
            warnings.warn(msg, ConvergenceFailure, stacklevel=2)
            tags = (f"ConvergenceFailure:{self.config.convergence}",)

        return Embedding(
            name=name,
            coordinates=state.Z_corr,
            cell_ids=embedding.cell_ids,
            method="harmony",
            parents=(embedding.artifact_id,),
            params={
                "batches": [str(b) for b in levels],
                "n_dims": n_dims,
                "n_clusters": int(state.R.shape[1]),
                "theta": float(self.config.theta),
                "sigma": float(self.config.sigma),
                "ridge_lambda": float(self.config.ridge_lambda),
                "convergence": self.config.convergence,
                "max_iter": int(self.config.max_iter),
                "n_iter": n_iter,
                "converged": converged,
                "random_seed": self.random_seed,
            },
            warnings=tags,
        )
