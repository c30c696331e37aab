"""Unit tests for per-sample NMF and meta-program consensus."""

import logging
import warnings

import pytest
import numpy as np
import pandas as pd
from scipy import sparse
from sklearn.exceptions import ConvergenceWarning

import cellprograms.core.programs.nmf as nmf_module
from cellprograms.core.preprocessing import Normalizer
from cellprograms.core.programs import (
    ConsensusConfig,
    ConsensusEngine,
    NMFConfig,
    NMFFactorizer,
    run_nmf,
    stack_programs,
    truncate_program,
)
from cellprograms.core.store import MatrixStore, NMFFactorization
from cellprograms.errors import (
    ConvergenceFailure,
    InputFormatError,
    SampleFactorizationFailure,
)
from cellprograms.utils import best_overlaps
from tests.fixtures import create_program_matrix


@pytest.fixture
def program_lognorm(program_data):
    store, truth = program_data
    return Normalizer().normalize(store), truth


def _factorize(store, **kwargs):
    config = NMFConfig(**{"rank_range": (3, 3), "max_iter": 1000, **kwargs})
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", ConvergenceFailure)
        return NMFFactorizer(config, random_seed=1337).factorize(store)


class TestRunNMF:
    """Tests for the multiplicative-update solver."""

    def test_recovers_disjoint_programs(self):
        """Test each component concentrates on one true gene block."""
        X, _, blocks = create_program_matrix()
        fit = run_nmf(X, 2, max_iter=3000, tol=0.0)
        assert fit.W.shape == (200, 2)
        assert fit.H.shape == (50, 2)
        mass = np.array([[fit.H[block, c].sum() for block in blocks] for c in range(2)])
        share = mass.max(axis=1) / mass.sum(axis=1)
        assert np.all(share > 0.9)
        # the two components pick different blocks
        assert set(mass.argmax(axis=1)) == {0, 1}

    def test_non_negative(self):
        """Test factors are non-negative."""
        X, _, _ = create_program_matrix(seed=9)
        fit = run_nmf(X, 3, init="random", max_iter=200)
        assert (fit.W >= 0).all()
        assert (fit.H >= 0).all()

    def test_error_is_frobenius_residual(self):
        """Test the reported error is the Frobenius norm of the residual."""
        X, _, _ = create_program_matrix()
        fit = run_nmf(X, 2, seed=1, max_iter=100)
        residual = np.linalg.norm(X - fit.W @ fit.H.T)
        assert fit.error == pytest.approx(residual, rel=1e-6)
        assert fit.error < np.linalg.norm(X)

    def test_sparse_input(self):
        """Test sparse and dense inputs give the same factors."""
        X, _, _ = create_program_matrix()
        X[X < 0.5] = 0.0
        dense = run_nmf(X, 2, seed=1, max_iter=100)
        csr = run_nmf(sparse.csr_matrix(X), 2, seed=1, max_iter=100)
        np.testing.assert_allclose(csr.W, dense.W, rtol=1e-5, atol=1e-8)
        np.testing.assert_allclose(csr.H, dense.H, rtol=1e-5, atol=1e-8)

    def test_deterministic(self):
        """Test identical seeds give identical factors."""
        X, _, _ = create_program_matrix()
        a = run_nmf(X, 2, init="random", seed=5, max_iter=50)
        b = run_nmf(X, 2, init="random", seed=5, max_iter=50)
        np.testing.assert_array_equal(a.W, b.W)
        np.testing.assert_array_equal(a.H, b.H)

    def test_iteration_budget(self):
        """Test a tiny budget stops unconverged."""
        X, _, _ = create_program_matrix()
        fit = run_nmf(X, 2, max_iter=3, tol=0.0)
        assert fit.n_iter == 3
        assert fit.converged is False

    def test_convergence_warning_mapped(self):
        """Test the solver's ConvergenceWarning becomes converged=False."""
        X, _, _ = create_program_matrix()
        with warnings.catch_warnings():
            warnings.simplefilter("error", ConvergenceWarning)
            fit = run_nmf(X, 2, max_iter=20, tol=1e-12)
        assert fit.n_iter == 20
        assert fit.converged is False

    def test_converges_within_budget(self):
        """Test a loose tolerance stops early and reports convergence."""
        X, _, _ = create_program_matrix()
        fit = run_nmf(X, 2, max_iter=1000, tol=1e-2)
        assert fit.n_iter < 1000
        assert fit.converged is True

    def test_rank_above_matrix_size(self):
        """Test a rank larger than min(n_cells, n_genes) is rejected, never clamped."""
        with pytest.raises(InputFormatError, match="rank 4"):
            run_nmf(np.ones((5, 3)), 4)

    def test_negative_input(self):
        """Test negative entries are rejected."""
        with pytest.raises(InputFormatError):
            run_nmf(np.array([[1.0, -1.0], [0.0, 2.0]]), 1)

    def test_non_finite_input(self):
        """Test NaN input raises FloatingPointError."""
        with pytest.raises(FloatingPointError):
            run_nmf(np.array([[1.0, np.nan], [0.0, 2.0]]), 1)

    def test_unknown_init(self):
        """Test an unknown initialization is rejected."""
        with pytest.raises(InputFormatError):
            run_nmf(np.ones((3, 3)), 1, init="svd")

class TestNMFFactorizer:
    """Tests for NMFFactorizer."""

    def test_factorizes_every_sample_and_rank(self, program_lognorm):
        """Test one factorization per (sample, k)."""
        lognorm, _ = program_lognorm
        result = _factorize(lognorm, rank_range=(2, 3), max_iter=100)
        assert sorted(result.factorizations) == [
            "nmf:s0_k2", "nmf:s0_k3",
            "nmf:s1_k2", "nmf:s1_k3",
            "nmf:s2_k2", "nmf:s2_k3",
        ]
        fact = result.factorizations["nmf:s1_k3"]
        assert fact.sample == "s1"
        assert fact.rank == 3
        assert fact.W.shape == (60, 3)
        assert fact.H.shape == (lognorm.n_genes, 3)
        assert list(fact.cell_ids) == list(lognorm.cell_ids[lognorm.sample_positions("s1")])
        assert fact.parents == ("matrix:lognorm",)
        assert result.failures == []
        assert result.skipped_samples == []

    def test_variable_genes_subset(self, program_lognorm, program_data):
        """Test factorizing on the selected variable genes only."""
        from cellprograms.core.preprocessing import FeatureSelectionConfig, FeatureSelector

        lognorm, _ = program_lognorm
        counts, _ = program_data
        features = FeatureSelector(FeatureSelectionConfig(n_features=30)).select(counts)
        config = NMFConfig(rank_range=(2, 2), max_iter=50)
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", ConvergenceFailure)
            result = NMFFactorizer(config).factorize(lognorm, features)
        fact = result.factorizations["nmf:s0_k2"]
        assert list(fact.gene_ids) == list(features.selected)
        assert fact.parents == ("matrix:lognorm", "features:vst")

    def test_small_samples_skipped(self, program_lognorm):
        """Test samples below min_cells are excluded."""
        lognorm, _ = program_lognorm
        result = _factorize(lognorm, min_cells=100, max_iter=10)
        assert result.factorizations == {}
        assert result.skipped_samples == ["s0", "s1", "s2"]

    def test_failed_sample_skipped(self, program_lognorm, monkeypatch):
        """Test a numerical failure drops the sample but keeps the others."""
        lognorm, _ = program_lognorm
        positions = np.concatenate([
            lognorm.sample_positions("s0")[:30],
            lognorm.sample_positions("s1"),
            lognorm.sample_positions("s2"),
        ])
        store = lognorm.subset_cells(positions)
        real_run_nmf = nmf_module.run_nmf

        def failing_run_nmf(X, k, **kwargs):
            if X.shape[0] == 30 and k == 3:
                raise FloatingPointError("overflow in multiplicative update")
            return real_run_nmf(X, k, **kwargs)

        monkeypatch.setattr(nmf_module, "run_nmf", failing_run_nmf)
        result = _factorize(store, rank_range=(2, 3), max_iter=50)

        assert result.skipped_samples == ["s0"]
        assert len(result.failures) == 1
        failure = result.failures[0]
        assert isinstance(failure, SampleFactorizationFailure)
        assert (failure.sample, failure.rank) == ("s0", 3)
        # the rank that succeeded is still recorded but not usable
        assert "nmf:s0_k2" in result.factorizations
        assert all(f.sample != "s0" for f in result.usable())
        assert len(result.usable()) == 4

    def test_factorize_matrix_wraps_failure(self, monkeypatch):
        """Test in-process failures surface as SampleFactorizationFailure."""
        def broken(X, k, **kwargs):
            raise FloatingPointError("non-finite factors")

        monkeypatch.setattr(nmf_module, "run_nmf", broken)
        with pytest.raises(SampleFactorizationFailure):
            NMFFactorizer().factorize_matrix(np.ones((5, 5)), "s1", 2)

    def test_parallel_matches_serial(self, program_lognorm):
        """Test joblib workers give the same factors as in-process runs."""
        lognorm, _ = program_lognorm
        serial = _factorize(lognorm, rank_range=(2, 2), max_iter=30, n_jobs=1)
        parallel = _factorize(lognorm, rank_range=(2, 2), max_iter=30, n_jobs=2)
        for key, fact in serial.factorizations.items():
            np.testing.assert_allclose(parallel.factorizations[key].H, fact.H)

    def test_center_and_floor(self, program_lognorm):
        """Test centered input stays non-negative."""
        lognorm, _ = program_lognorm
        factorizer = NMFFactorizer(NMFConfig(center_and_floor=True))
        X, cell_ids = factorizer.sample_matrix(lognorm, "s0")
        assert sparse.issparse(X)
        assert (X.toarray() >= 0).all()
        assert len(cell_ids) == 60

    def test_sample_matrix_stays_sparse(self, program_lognorm):
        """Test the per-sample block is a CSR slice of the store."""
        lognorm, _ = program_lognorm
        X, _ = NMFFactorizer().sample_matrix(lognorm, "s1")
        assert sparse.isspmatrix_csr(X)
        assert X.dtype == np.float64
        rows = lognorm.sample_positions("s1")
        np.testing.assert_allclose(X.toarray(), lognorm.matrix[rows].toarray())

    def test_ranks_above_matrix_size_skipped(self, caplog):
        """Test ranks above min(n_cells, n_genes) are skipped and recorded."""
        rng = np.random.default_rng(0)
        counts = rng.poisson(3.0, size=(40, 3)).astype(np.float64) + 1.0
        store = MatrixStore.from_arrays(
            counts, [f"c{i}" for i in range(40)], ["g1", "g2", "g3"], "s1"
        )
        with caplog.at_level(logging.WARNING, logger=nmf_module.__name__):
            result = _factorize(store, rank_range=(2, 5), max_iter=200)

        assert sorted(result.factorizations) == ["nmf:s1_k2", "nmf:s1_k3"]
        assert all(f.rank == f.W.shape[1] == f.H.shape[1] for f in result.factorizations.values())
        assert result.skipped_ranks == [("s1", 4), ("s1", 5)]
        assert result.skipped_samples == []
        assert result.failures == []
        assert "skipping NMF at k=4" in caplog.text
        assert "skipping NMF at k=5" in caplog.text

    def test_unknown_init(self):
        """Test an unknown init is rejected at construction."""
        with pytest.raises(ValueError):
            NMFFactorizer(NMFConfig(init="svd"))


class TestConsensus:
    """Tests for ConsensusEngine."""

    @pytest.fixture
    def nmf_result(self, program_lognorm):
        lognorm, _ = program_lognorm
        return _factorize(lognorm)

    def test_recovers_programs(self, nmf_result, program_lognorm):
        """Test meta-programs match the three generating gene blocks."""
        _, truth = program_lognorm
        config = ConsensusConfig(n_programs=3, max_program_genes=25)
        mp = ConsensusEngine(config).build(list(nmf_result.factorizations.values()))
        assert len(mp.programs) == 3
        overlaps = best_overlaps([p.genes for p in mp.programs], list(truth.values()))
        assert np.all(overlaps >= 0.4)

    def test_weights_and_length(self, nmf_result):
        """Test aggregated weights sum to at most 1 and lengths respect the cap."""
        config = ConsensusConfig(n_programs=3, max_program_genes=5)
        mp = ConsensusEngine(config).build(list(nmf_result.factorizations.values()))
        for program in mp.programs:
            assert len(program.genes) <= 5
            assert program.weights.sum() <= 1.0 + 1e-12
            assert np.all(np.diff(program.weights) <= 0)

    def test_ordered_by_members(self, nmf_result):
        """Test ids are dense and ordered by member count."""
        mp = ConsensusEngine(ConsensusConfig(n_programs=4)).build(
            list(nmf_result.factorizations.values())
        )
        assert [p.program_id for p in mp.programs] == list(range(len(mp.programs)))
        counts = [len(p.members) for p in mp.programs]
        assert counts == sorted(counts, reverse=True)
        assert sum(counts) == 9

    def test_count_capped(self, nmf_result):
        """Test asking for more meta-programs than programs caps M."""
        mp = ConsensusEngine(ConsensusConfig(n_programs=50)).build(
            list(nmf_result.factorizations.values())
        )
        assert "MetaProgramCountCapped:9" in mp.warnings
        assert len(mp.programs) <= 9

    def test_count_reduced(self):
        """Test a cut with fewer groups than requested is logged and tagged."""
        H = np.array([[1.0, 0.0], [0.0, 1.0], [0.0, 0.0]])

        def make(sample):
            return NMFFactorization(
                name=f"{sample}_k2", sample=sample, rank=2,
                W=np.ones((2, 2)), H=H.copy(),
                cell_ids=pd.Index([f"{sample}_x", f"{sample}_y"]),
                gene_ids=pd.Index(["g1", "g2", "g3"]),
            )

        # two identical programs per sample: at most two distinct groups
        mp = ConsensusEngine(ConsensusConfig(n_programs=4)).build([make("s1"), make("s2")])
        assert len(mp.programs) == 2
        assert "MetaProgramCountReduced:2" in mp.warnings
        assert not any(tag.startswith("MetaProgramCountCapped") for tag in mp.warnings)
        assert [len(p.members) for p in mp.programs] == [2, 2]

    def test_skipped_sample_excluded(self, nmf_result):
        """Test factorizations of a skipped sample are ignored and tagged."""
        mp = ConsensusEngine(ConsensusConfig(n_programs=3)).build(
            list(nmf_result.factorizations.values()), skipped_samples=["s2"]
        )
        members = {m[0] for p in mp.programs for m in p.members}
        assert members == {"s0", "s1"}
        assert mp.skipped_samples == ("s2",)
        assert "SampleFactorizationFailure:s2" in mp.warnings
        assert "nmf:s2_k3" not in mp.parents

    def test_no_programs(self):
        """Test an empty input yields an empty, tagged set."""
        mp = ConsensusEngine().build([])
        assert mp.programs == ()
        assert mp.warnings == ("NoPrograms",)

    def test_frames(self, nmf_result):
        """Test long-format output tables."""
        mp = ConsensusEngine(ConsensusConfig(n_programs=3)).build(
            list(nmf_result.factorizations.values())
        )
        frame = mp.to_frame()
        assert list(frame.columns) == ["program", "rank", "gene", "weight"]
        assert set(mp.members_frame()["sample"]) == {"s0", "s1", "s2"}


class TestConsensusHelpers:
    """Tests for program stacking and truncation."""

    def test_truncate_at_cutoff(self):
        """Test the gene crossing the cutoff is kept."""
        genes, weights = truncate_program(
            np.array([0.1, 0.5, 0.1, 0.3]), np.array(["c", "a", "d", "b"]), 0.7, 100
        )
        assert list(genes) == ["a", "b"]
        np.testing.assert_allclose(weights, [0.5, 0.3])

    def test_truncate_max_genes(self):
        """Test the gene cap applies before the cutoff."""
        genes, _ = truncate_program(
            np.array([0.5, 0.3, 0.2]), np.array(["a", "b", "c"]), 0.99, 1
        )
        assert list(genes) == ["a"]

    def test_truncate_ties_by_gene_id(self):
        """Test equal weights rank by gene id."""
        genes, _ = truncate_program(
            np.full(4, 0.25), np.array(["d", "c", "b", "a"]), 0.6, 100
        )
        assert list(genes) == ["a", "b", "c"]

    def test_truncate_drops_zero_weights(self):
        """Test zero-weight genes are never kept."""
        genes, _ = truncate_program(
            np.array([0.6, 0.0, 0.0]), np.array(["a", "b", "c"]), 0.99, 100
        )
        assert list(genes) == ["a"]

    def test_stack_programs_normalizes(self):
        """Test stacked programs are L1-normalized and zero columns dropped."""
        H = np.array([[2.0, 0.0], [2.0, 0.0], [0.0, 0.0]])
        fact = NMFFactorization(
            name="s1_k2", sample="s1", rank=2,
            W=np.ones((4, 2)), H=H,
            cell_ids=pd.Index(list("wxyz")), gene_ids=pd.Index(["g1", "g2", "g3"]),
        )
        programs, members, genes = stack_programs([fact])
        np.testing.assert_allclose(programs, [[0.5, 0.5, 0.0]])
        assert members == [("s1", 2, 0)]
        assert list(genes) == ["g1", "g2", "g3"]

    def test_stack_programs_gene_mismatch(self):
        """Test factorizations on different genes cannot be combined."""
        def make(genes, sample):
            return NMFFactorization(
                name=f"{sample}_k1", sample=sample, rank=1,
                W=np.ones((2, 1)), H=np.ones((len(genes), 1)),
                cell_ids=pd.Index(["x", "y"]), gene_ids=pd.Index(genes),
            )

        with pytest.raises(InputFormatError):
            stack_programs([make(["a", "b"], "s1"), make(["a", "c"], "s2")])
