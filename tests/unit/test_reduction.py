"""Unit tests for PCA and batch correction."""

import warnings

import pytest
import numpy as np
import pandas as pd

from cellprograms.core.preprocessing import (
    FeatureSelectionConfig,
    FeatureSelector,
    Normalizer,
    Scaler,
)
from cellprograms.core.reduction import (
    BatchCorrectionConfig,
    HarmonyCorrector,
    PCAConfig,
    PCAReducer,
    cosine_normalize,
    fix_signs,
    soft_assignment_change,
    ProjectionConfig,
    UMAPProjector,
)
from cellprograms.core.store import Embedding
from cellprograms.errors import (
    ConvergenceFailure,
    DimensionMismatchError,
    InputFormatError,
)
from cellprograms.utils import same_batch_fraction
from tests.fixtures import create_batched_store


def _pca_embedding(store):
    lognorm = Normalizer().normalize(store)
    features = FeatureSelector(FeatureSelectionConfig(n_features=100)).select(store)
    scaled = Scaler().scale(lognorm, features)
    return PCAReducer(PCAConfig(n_components=20)).fit(scaled)


@pytest.fixture(scope="module")
def batched_embeddings():
    """PCA and Harmony embeddings of two batches sharing three cell types."""
    store, types = create_batched_store(n_cells=2000)
    pca = _pca_embedding(store)
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", ConvergenceFailure)
        harmony = HarmonyCorrector(random_seed=1337).correct(pca, store.cells["sample"])
    return store, types, pca, harmony


@pytest.fixture(scope="module")
def batch_free_fraction():
    """Same-batch neighbor fraction of the same design without a batch shift."""
    store, _ = create_batched_store(n_cells=2000, batch_fold=1.0)
    pca = _pca_embedding(store)
    return same_batch_fraction(pca.coordinates, store.cells["sample"].to_numpy())


class TestPCAReducer:
    """Tests for PCAReducer."""

    def test_shapes(self, blob_scaled):
        """Test coordinates and loadings dimensions."""
        pca = PCAReducer(PCAConfig(n_components=5)).fit(blob_scaled)
        assert pca.coordinates.shape == (100, 5)
        assert pca.loadings.shape == (50, 5)
        assert pca.artifact_id == "embedding:pca"
        assert pca.parents == (blob_scaled.artifact_id,)

    def test_loadings_orthonormal(self, blob_scaled):
        """Test loadings have orthonormal columns."""
        pca = PCAReducer(PCAConfig(n_components=8)).fit(blob_scaled)
        gram = pca.loadings.T @ pca.loadings
        np.testing.assert_allclose(gram, np.eye(8), atol=1e-10)

    def test_variance_decreasing(self, blob_scaled):
        """Test component stdev is non-increasing."""
        pca = PCAReducer(PCAConfig(n_components=10)).fit(blob_scaled)
        assert np.all(np.diff(pca.stdev) <= 1e-12)
        assert 0 < pca.variance_ratio.sum() <= 1.0 + 1e-10

    def test_components_capped(self, blob_scaled):
        """Test more components than min(n, p) - 1 are capped."""
        pca = PCAReducer(PCAConfig(n_components=500)).fit(blob_scaled)
        assert pca.n_dims == 49
        assert pca.params["n_components"] == 49

    def test_sign_convention(self, blob_scaled):
        """Test the largest-magnitude loading of each component is positive."""
        pca = PCAReducer(PCAConfig(n_components=5)).fit(blob_scaled)
        np.testing.assert_array_equal(fix_signs(pca.loadings.T), np.ones(5))

    def test_first_component_separates_blobs(self, blob_data, blob_scaled):
        """Test the two blobs fall on opposite sides of PC1."""
        _, truth = blob_data
        pca = PCAReducer(PCAConfig(n_components=2)).fit(blob_scaled)
        pc1 = pca.coordinates[:, 0]
        assert np.all(np.sign(pc1[truth == 0]) == -np.sign(pc1[truth == 1][0]))


class TestHarmonyHelpers:
    """Tests for batch-correction helper functions."""

    def test_cosine_normalize(self):
        """Test rows become unit length and zero rows stay zero."""
        values = np.array([[3.0, 4.0], [0.0, 0.0]])
        result = cosine_normalize(values)
        np.testing.assert_allclose(result, [[0.6, 0.8], [0.0, 0.0]])

    def test_soft_assignment_change(self):
        """Test total-variation distance of soft assignments."""
        a = np.array([[1.0, 0.0], [0.5, 0.5]])
        b = np.array([[0.0, 1.0], [0.5, 0.5]])
        assert soft_assignment_change(a, b) == pytest.approx(0.5)
        assert soft_assignment_change(a, a) == 0.0


class TestHarmonyCorrector:
    """Tests for HarmonyCorrector."""

    def test_reduces_batch_separation(self, batched_embeddings, batch_free_fraction):
        """Test correction removes most of the batch-driven neighbor excess."""
        store, _, pca, harmony = batched_embeddings
        batches = store.cells["sample"].to_numpy()
        before = same_batch_fraction(pca.coordinates, batches)
        after = same_batch_fraction(harmony.coordinates, batches)
        # two equal batches mix at about one half without a shift
        assert batch_free_fraction == pytest.approx(0.5, abs=0.1)
        assert before - batch_free_fraction > 0.3
        assert after - batch_free_fraction < 0.25 * (before - batch_free_fraction)

    def test_output_metadata(self, batched_embeddings):
        """Test the corrected embedding keeps cells and records lineage."""
        _, _, pca, harmony = batched_embeddings
        assert harmony.method == "harmony"
        assert harmony.coordinates.shape == pca.coordinates.shape
        assert harmony.parents == ("embedding:pca",)
        assert list(harmony.cell_ids) == list(pca.cell_ids)
        assert harmony.params["batches"] == ["b1", "b2"]

    def test_deterministic(self, batched_embeddings):
        """Test the same seed gives the same correction."""
        store, _, pca, harmony = batched_embeddings
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", ConvergenceFailure)
            again = HarmonyCorrector(random_seed=1337).correct(pca, store.cells["sample"])
        np.testing.assert_allclose(again.coordinates, harmony.coordinates)

    def test_single_batch_raises(self, blob_scaled):
        """Test correction of a single batch is refused."""
        pca = PCAReducer(PCAConfig(n_components=5)).fit(blob_scaled)
        with pytest.raises(InputFormatError):
            HarmonyCorrector().correct(pca, ["s1"] * pca.coordinates.shape[0])

    def test_length_mismatch(self, blob_scaled):
        """Test batch labels must align with the cells."""
        pca = PCAReducer(PCAConfig(n_components=5)).fit(blob_scaled)
        with pytest.raises(DimensionMismatchError):
            HarmonyCorrector().correct(pca, ["a", "b"])

    def test_unknown_criterion(self):
        """Test an unknown convergence criterion is rejected."""
        with pytest.raises(ValueError):
            HarmonyCorrector(BatchCorrectionConfig(convergence="never"))

    def test_non_convergence_tagged(self):
        """Test exhausting max_iter warns and tags the embedding."""
        rng = np.random.default_rng(0)
        coords = np.vstack([rng.normal(0, 1, (60, 4)), rng.normal(3, 1, (60, 4))])
        embedding = Embedding(
            name="pca",
            coordinates=coords,
            cell_ids=pd.Index([f"c{i}" for i in range(120)]),
            method="pca",
        )
        config = BatchCorrectionConfig(max_iter=1, tol_harmony=-1.0)
        with pytest.warns(ConvergenceFailure):
            result = HarmonyCorrector(config).correct(embedding, ["a", "b"] * 60)
        assert result.warnings == ("ConvergenceFailure:objective",)
        assert result.params["converged"] is False


class TestUMAPProjector:
    """Tests for UMAPProjector."""

    def test_project(self, blob_scaled):
        """Test a 2D layout parented to the source embedding."""
        pca = PCAReducer(PCAConfig(n_components=10)).fit(blob_scaled)
        umap = UMAPProjector(ProjectionConfig(enabled=True, n_neighbors=10)).project(pca)
        assert umap.coordinates.shape == (100, 2)
        assert umap.method == "umap"
        assert umap.artifact_id == "embedding:umap"
        assert umap.parents == ("embedding:pca",)
        assert umap.params["n_neighbors"] == 10
        assert np.isfinite(umap.coordinates).all()
