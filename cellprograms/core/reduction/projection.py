"""2D UMAP projection of a named embedding via scanpy."""

from typing import Optional
import logging

import numpy as np
import pandas as pd

from ..store import Embedding
from .config import ProjectionConfig


class UMAPProjector:
    """Compute a seeded UMAP layout for visualization.

    Parameters
    ----------
    config : ProjectionConfig, optional
        Projection configuration
    random_seed : int
        Seed passed to scanpy neighbors and UMAP
    logger : logging.Logger, optional
        Logger instance
    """

    def __init__(
        self,
        config: Optional[ProjectionConfig] = None,
        random_seed: int = 1337,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or ProjectionConfig()
        self.random_seed = random_seed
        self.logger = logger or logging.getLogger(__name__)
        self._check_dependencies()

    def _check_dependencies(self) -> None:
        """Check for required dependencies."""
        try:
            import scanpy
        except ImportError:
            raise RuntimeError(
                "UMAP projection requires scanpy. Install with: pip install scanpy"
            )

    def project(self, embedding: Embedding, name: str = "umap") -> Embedding:
        """Return a 2D ``Embedding`` whose parent is ``embedding``."""
        import anndata as ad
        import scanpy as sc

        rep_key = f"X_{embedding.method}"
        adata = ad.AnnData(
            X=np.zeros((embedding.coordinates.shape[0], 1), dtype=np.float32),
            obs=pd.DataFrame(index=pd.Index(embedding.cell_ids.astype(str))),
        )
        adata.obsm[rep_key] = np.array(embedding.coordinates)

        n_neighbors = min(self.config.n_neighbors, adata.n_obs - 1)
        self.logger.info(
            "UMAP of %s (n_neighbors=%d, min_dist=%.2f)",
            embedding.artifact_id,
            n_neighbors,
            self.config.min_dist,
        )
        sc.pp.neighbors(
            adata,
            n_neighbors=n_neighbors,
            use_rep=rep_key,
            random_state=self.random_seed,
        )
        sc.tl.umap(adata, min_dist=self.config.min_dist, random_state=self.random_seed)

        return Embedding(
            name=name,
            coordinates=adata.obsm["X_umap"],
            cell_ids=embedding.cell_ids,
            method="umap",
            parents=(embedding.artifact_id,),
            params={
                "n_neighbors": n_neighbors,
                "min_dist": float(self.config.min_dist),
                "random_seed": self.random_seed,
            },
        )
