"""Pytest configuration and shared fixtures for CellPrograms tests."""

import sys
from pathlib import Path

import pytest

# Add package to path
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from cellprograms.core.preprocessing import FeatureSelector, Normalizer, Scaler
from tests.fixtures import (
    create_blob_store,
    create_counts_store,
    create_marker_store,
    create_program_store,
)


# ============================================================================
# Store Fixtures
# ============================================================================


@pytest.fixture
def counts_store():
    """60 cells x 40 genes of unstructured counts over two samples."""
    return create_counts_store()


@pytest.fixture
def lognorm_store(counts_store):
    return Normalizer().normalize(counts_store)


@pytest.fixture
def blob_data():
    """Two-blob counts store (100 cells x 50 genes) and the true blobs."""
    return create_blob_store()


@pytest.fixture
def blob_scaled(blob_data):
    """Scaled matrix of the two-blob store on all genes."""
    store, _ = blob_data
    lognorm = Normalizer().normalize(store)
    features = FeatureSelector().select(store)
    return Scaler().scale(lognorm, features)


@pytest.fixture
def marker_data():
    """Log-normalized two-cluster store with a cluster-0-only gene."""
    store, assignment = create_marker_store()
    return Normalizer().normalize(store), assignment


@pytest.fixture
def program_data():
    """Three-sample counts store built from three disjoint programs."""
    return create_program_store()


# ============================================================================
# Path Fixtures
# ============================================================================


@pytest.fixture
def tmp_output_dir(tmp_path: Path) -> Path:
    """Create a temporary output directory for tests."""
    output_dir = tmp_path / "output"
    output_dir.mkdir(parents=True, exist_ok=True)
    return output_dir


@pytest.fixture
def sample_analysis_config(tmp_path) -> Path:
    """Analysis configuration file using the flat option names."""
    import yaml

    config = {
        "min_features": 5,
        "n_variable_features": 40,
        "n_pca_dims": 10,
        "neighbor_k": 10,
        "cluster_resolution": [1.0, 0.5],
        "nmf_rank_range": [2, 3],
        "n_meta_programs": 3,
        "max_program_genes": 25,
    }
    path = tmp_path / "analysis.yaml"
    with open(path, "w") as f:
        yaml.dump(config, f)
    return path
