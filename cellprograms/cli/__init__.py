"""Command-line interface for CellPrograms.

Example Usage
-------------
    cellprograms --help
    cellprograms cluster --registry samples.csv --out results/
    cellprograms programs --input merged.h5ad --out results/
    cellprograms run --registry samples.csv --config analysis.yaml --out results/
"""

from .main import cli, main

__all__ = [
    "cli",
    "main",
]
