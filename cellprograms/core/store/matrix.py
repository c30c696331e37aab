"""Cell-by-gene matrix store.

``MatrixStore`` holds one sparse matrix layer together with the cell and gene
metadata tables that label its axes. It is immutable: transforms build a new
store whose ``parents`` reference the store they were derived from.
"""

from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, List, Mapping, Optional, Sequence, Tuple, Union
import logging

import numpy as np
import pandas as pd
from scipy import sparse

from ...errors import DimensionMismatchError, InputFormatError
from .artifacts import Artifact, freeze_sparse


logger = logging.getLogger(__name__)

SAMPLE_COL = "sample"


@dataclass(frozen=True, eq=False)
class MatrixStore(Artifact):
    """Sparse cells x genes matrix with aligned metadata.

    Attributes
    ----------
    matrix : sparse.csr_matrix
        Cells x genes values (read-only)
    cells : pd.DataFrame
        Cell metadata indexed by cell id; must contain a ``sample`` column
    genes : pd.DataFrame
        Gene metadata indexed by gene id
    layer : str
        Name of the value layer (``counts`` or ``lognorm``)

    Example
    -------
    >>> store = MatrixStore.from_samples({"s1": adata1, "s2": adata2})
    >>> store.n_cells, store.n_genes
    (5000, 20000)
    """

    matrix: sparse.csr_matrix
    cells: pd.DataFrame
    genes: pd.DataFrame
    layer: str = "counts"
    parents: Tuple[str, ...] = ()
    params: Mapping[str, Any] = field(default_factory=dict)
    warnings: Tuple[str, ...] = ()

    kind: ClassVar[str] = "matrix"

    def __post_init__(self):
        if not sparse.issparse(self.matrix):
            raise InputFormatError(
                "Matrix must be a scipy.sparse matrix",
                suggestion="Wrap dense arrays with scipy.sparse.csr_matrix.",
            )
        object.__setattr__(self, "matrix", freeze_sparse(self.matrix))
        object.__setattr__(self, "cells", self.cells.copy())
        object.__setattr__(self, "genes", self.genes.copy())
        self.validate()

    @property
    def name(self) -> str:
        return self.layer

    @property
    def n_cells(self) -> int:
        return int(self.matrix.shape[0])

    @property
    def n_genes(self) -> int:
        return int(self.matrix.shape[1])

    @property
    def cell_ids(self) -> pd.Index:
        return self.cells.index

    @property
    def gene_ids(self) -> pd.Index:
        return self.genes.index

    @property
    def samples(self) -> List[str]:
        """Sample ids in order of first appearance."""
        return [str(s) for s in pd.unique(self.cells[SAMPLE_COL].astype(str))]

    def validate(self) -> None:
        """Check shape, index and value constraints.

        Raises
        ------
        DimensionMismatchError
            If metadata rows do not match the matrix axes
        InputFormatError
            If ids are duplicated, the sample column is missing, or values are
            negative or non-finite (or non-integer for the counts layer)
        """
        n_rows, n_cols = self.matrix.shape
        if len(self.cells) != n_rows:
            raise DimensionMismatchError("cell metadata rows", n_rows, len(self.cells))
        if len(self.genes) != n_cols:
            raise DimensionMismatchError("gene metadata rows", n_cols, len(self.genes))
        if not self.cells.index.is_unique:
            dupes = self.cells.index[self.cells.index.duplicated()].unique().tolist()
            raise InputFormatError(
                f"Duplicate cell ids: {dupes[:5]}",
                suggestion="Prefix cell ids with their sample id.",
            )
        if not self.genes.index.is_unique:
            dupes = self.genes.index[self.genes.index.duplicated()].unique().tolist()
            raise InputFormatError(
                f"Duplicate gene ids: {dupes[:5]}",
                suggestion="Make gene ids unique before loading.",
            )
        if SAMPLE_COL not in self.cells.columns:
            raise InputFormatError(
                f"Cell metadata is missing required column '{SAMPLE_COL}'",
                context={"columns": list(self.cells.columns)},
            )
        data = self.matrix.data
        if data.size:
            if not np.all(np.isfinite(data)):
                raise InputFormatError("Matrix contains non-finite values")
            if data.min() < 0:
                raise InputFormatError("Matrix contains negative values")
            if self.layer == "counts" and not np.all(data == np.round(data)):
                raise InputFormatError(
                    "Counts layer contains non-integer values",
                    suggestion="Load raw UMI counts, not normalized values.",
                )

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def from_arrays(
        cls,
        matrix: Any,
        cell_ids: Sequence[str],
        gene_ids: Sequence[str],
        samples: Union[str, Sequence[str]],
        layer: str = "counts",
    ) -> "MatrixStore":
        """Build a store from a matrix and id lists."""
        n_cells = len(cell_ids)
        if isinstance(samples, str):
            samples = [samples] * n_cells
        cells = pd.DataFrame(
            {SAMPLE_COL: pd.Series(list(samples), dtype=str).to_numpy()},
            index=pd.Index([str(c) for c in cell_ids], name="cell_id"),
        )
        genes = pd.DataFrame(index=pd.Index([str(g) for g in gene_ids], name="gene_id"))
        return cls(matrix=sparse.csr_matrix(matrix), cells=cells, genes=genes, layer=layer)

    @classmethod
    def from_anndata(
        cls,
        adata: Any,
        sample: Optional[str] = None,
        sample_key: str = SAMPLE_COL,
        layer: Optional[str] = None,
    ) -> "MatrixStore":
        """Build a store from an AnnData object.

        Parameters
        ----------
        adata : AnnData
            Cells x genes object holding raw counts
        sample : str, optional
            Sample id for every cell. When given, cell ids become
            ``<sample>_<barcode>``. Otherwise ``adata.obs[sample_key]`` is used.
        sample_key : str
            Column of ``adata.obs`` holding sample ids
        layer : str, optional
            Layer of ``adata.layers`` to read instead of ``adata.X``
        """
        values = adata.layers[layer] if layer else adata.X
        cells = adata.obs.copy()
        cells.index = cells.index.astype(str)
        if sample is not None:
            cells.index = [f"{sample}_{barcode}" for barcode in cells.index]
            cells[SAMPLE_COL] = str(sample)
        elif sample_key in cells.columns:
            cells[SAMPLE_COL] = cells[sample_key].astype(str)
        else:
            raise InputFormatError(
                f"No sample id given and obs has no '{sample_key}' column",
                suggestion="Pass sample=... or add the sample column to obs.",
            )
        cells.index.name = "cell_id"
        genes = adata.var.copy()
        genes.index = genes.index.astype(str)
        genes.index.name = "gene_id"
        return cls(matrix=sparse.csr_matrix(values), cells=cells, genes=genes)

    @classmethod
    def from_samples(cls, samples: Mapping[str, Any]) -> "MatrixStore":
        """Concatenate per-sample AnnData objects sharing one gene space.

        Genes of each sample are re-ordered to the first sample's order; a
        sample whose gene set differs raises ``InputFormatError``.
        """
        if not samples:
            raise InputFormatError("No samples supplied")
        stores = [cls.from_anndata(adata, sample=sid) for sid, adata in samples.items()]
        logger.info(
            "Concatenating %d samples (%s cells)",
            len(stores),
            ", ".join(f"{s.samples[0]}={s.n_cells}" for s in stores),
        )
        return cls.concatenate(stores)

    @classmethod
    def concatenate(cls, stores: Sequence["MatrixStore"]) -> "MatrixStore":
        """Stack stores over cells."""
        reference = stores[0].gene_ids
        blocks = []
        for store in stores:
            if not store.gene_ids.equals(reference):
                if set(store.gene_ids) != set(reference):
                    missing = reference.difference(store.gene_ids)
                    raise InputFormatError(
                        f"Sample(s) {store.samples} do not share the gene space "
                        f"({len(missing)} genes missing)",
                        suggestion="Subset all samples to a common gene list first.",
                    )
                store = store.subset_genes(reference)
            blocks.append(store.matrix)
        cells = pd.concat([s.cells for s in stores], axis=0)
        # Columns present in only some samples become NaN; keep sample as str
        cells[SAMPLE_COL] = cells[SAMPLE_COL].astype(str)
        return cls(
            matrix=sparse.vstack(blocks, format="csr"),
            cells=cells,
            genes=stores[0].genes,
            layer=stores[0].layer,
        )

    # ------------------------------------------------------------------
    # Derivation
    # ------------------------------------------------------------------

    def derive(
        self,
        matrix: Any,
        layer: str,
        params: Optional[Mapping[str, Any]] = None,
        warnings: Tuple[str, ...] = (),
    ) -> "MatrixStore":
        """New layer with the same metadata, parented to this store."""
        return MatrixStore(
            matrix=matrix,
            cells=self.cells,
            genes=self.genes,
            layer=layer,
            parents=(self.artifact_id,),
            params=dict(params or {}),
            warnings=warnings,
        )

    def subset_cells(self, keep: Any, layer: Optional[str] = None) -> "MatrixStore":
        """Keep cells by boolean mask, integer positions or cell ids.

        Matrix rows and metadata rows are filtered together.
        """
        rows = self._row_positions(keep)
        return MatrixStore(
            matrix=self.matrix[rows],
            cells=self.cells.iloc[rows],
            genes=self.genes,
            layer=layer or self.layer,
            parents=self.parents,
            params=self.params,
            warnings=self.warnings,
        )

    def subset_genes(self, gene_ids: Sequence[str]) -> "MatrixStore":
        cols = self.genes.index.get_indexer(pd.Index(gene_ids))
        if np.any(cols < 0):
            missing = [g for g, c in zip(gene_ids, cols) if c < 0]
            raise InputFormatError(f"Unknown gene ids: {missing[:5]}")
        return MatrixStore(
            matrix=self.matrix[:, cols],
            cells=self.cells,
            genes=self.genes.iloc[cols],
            layer=self.layer,
            parents=self.parents,
            params=self.params,
            warnings=self.warnings,
        )

    def with_cell_metadata(self, columns: pd.DataFrame) -> "MatrixStore":
        """Join extra cell columns (indexed by cell id)."""
        cells = self.cells.drop(columns=[c for c in columns.columns if c in self.cells.columns])
        cells = cells.join(columns, how="left")
        return MatrixStore(
            matrix=self.matrix,
            cells=cells,
            genes=self.genes,
            layer=self.layer,
            parents=self.parents,
            params=self.params,
            warnings=self.warnings,
        )

    def sample_positions(self, sample: str) -> np.ndarray:
        return np.flatnonzero(self.cells[SAMPLE_COL].to_numpy() == str(sample))

    def _row_positions(self, keep: Any) -> np.ndarray:
        keep = np.asarray(keep)
        if keep.dtype == bool:
            if keep.shape[0] != self.n_cells:
                raise DimensionMismatchError("cell mask length", self.n_cells, keep.shape[0])
            return np.flatnonzero(keep)
        if np.issubdtype(keep.dtype, np.integer):
            return keep
        rows = self.cells.index.get_indexer(pd.Index(keep.astype(str)))
        if np.any(rows < 0):
            raise InputFormatError(f"Unknown cell ids: {keep[rows < 0][:5].tolist()}")
        return rows

    def _shape_summary(self) -> Dict[str, Any]:
        return {
            "layer": self.layer,
            "shape": [self.n_cells, self.n_genes],
            "nnz": int(self.matrix.nnz),
            "samples": self.samples,
        }
