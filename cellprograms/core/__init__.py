"""Core computational modules for CellPrograms.

This package contains the main analysis engines:
- store: Matrix store and immutable artifacts
- preprocessing: QC, normalization, feature selection, scaling
- reduction: PCA, Harmony batch correction, UMAP projection
- clustering: SNN graph, Louvain, marker testing, label lookup
- programs: Per-sample NMF and meta-program consensus
"""
