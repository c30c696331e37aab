"""Unit tests for pipeline module."""

import logging
import warnings

import pytest
import numpy as np

from cellprograms.config import AnalysisConfig
from cellprograms.errors import ConvergenceFailure, InputFormatError
from cellprograms.pipeline import (
    AnalysisPipeline,
    ColoredFormatter,
    InMemoryExecutor,
    PipelineLogger,
    PipelineResult,
)
from cellprograms.utils import adjusted_rand_index
from tests.fixtures import create_batched_store


def _clustering_only(**overrides) -> AnalysisConfig:
    config = AnalysisConfig.default()
    config.run_programs = False
    for key, value in overrides.items():
        setattr(config, key, value)
    return config


class TestPipelineLogger:
    """Tests for PipelineLogger class."""

    def test_init(self, tmp_path):
        """Test logger initialization."""
        logger = PipelineLogger(str(tmp_path / "logs"))
        assert logger.log_dir.exists()
        assert logger.log_file.name.startswith("cellprograms_")

    def test_setup(self, tmp_path):
        """Test logger setup."""
        logger = PipelineLogger(str(tmp_path / "logs"))
        logger.setup()
        assert len(logger.logger.handlers) == 2

    def test_setup_console_only(self):
        """Test a logger without log_dir only writes to the console."""
        logger = PipelineLogger(log_name="cellprograms.test_console")
        logger.setup()
        assert logger.log_file is None
        assert len(logger.logger.handlers) == 1

    def test_stage_messages_written(self, tmp_path):
        """Test stage events end up in the log file."""
        logger = PipelineLogger(tmp_path / "logs", log_name="cellprograms.test_file")
        logger.setup(console=False)
        logger.log_stage_start("pca", "PCA")
        logger.log_stage_complete("pca", 1.5)
        logger.log_stage_skipped("umap", "disabled")
        for handler in logger.logger.handlers:
            handler.flush()
        text = logger.log_file.read_text()
        assert "Starting stage pca: PCA" in text
        assert "Stage pca completed in 1.5s" in text
        assert "Stage umap skipped (disabled)" in text

    def test_format_duration_seconds(self):
        """Test duration formatting for seconds."""
        assert PipelineLogger.format_duration(45.2) == "45.2s"

    def test_format_duration_minutes(self):
        """Test duration formatting for minutes."""
        assert PipelineLogger.format_duration(125) == "2m 5s"

    def test_format_duration_hours(self):
        """Test duration formatting for hours."""
        assert PipelineLogger.format_duration(7300) == "2h 1m"

    def test_colored_formatter_restores_levelname(self):
        """Test coloring does not leak into other handlers."""
        formatter = ColoredFormatter("%(levelname)s %(message)s", "%H:%M:%S", PipelineLogger.COLORS)
        record = logging.LogRecord("x", logging.WARNING, __file__, 1, "hello", None, None)
        output = formatter.format(record)
        assert "\033[1;33m" in output
        assert record.levelname == "WARNING"


class TestInMemoryExecutor:
    """Tests for InMemoryExecutor class."""

    def test_register_stage(self):
        """Test registering stages."""
        executor = InMemoryExecutor()
        executor.register_stage("A", lambda **k: "result_a")
        assert "A" in executor.stages

    def test_register_with_deps(self):
        """Test registering stage with dependencies."""
        executor = InMemoryExecutor()
        executor.register_stage("A", lambda **k: None)
        executor.register_stage("B", lambda **k: None, depends_on=["A"])
        assert executor.stages["B"]["depends_on"] == ["A"]

    def test_register_duplicate(self):
        """Test a stage id can only be registered once."""
        executor = InMemoryExecutor()
        executor.register_stage("A", lambda **k: None)
        with pytest.raises(ValueError):
            executor.register_stage("A", lambda **k: None)

    def test_run_simple(self):
        """Test running simple pipeline."""
        executor = InMemoryExecutor()
        executor.register_stage("A", lambda **k: "a_result")
        executor.register_stage(
            "B", lambda stage_results, **k: stage_results["A"] + "_b"
        )

        results = executor.run()
        assert results["A"] == "a_result"
        assert results["B"] == "a_result_b"

    def test_run_passes_kwargs(self):
        """Test run keyword arguments reach every stage."""
        executor = InMemoryExecutor()
        executor.register_stage("A", lambda value, **k: value * 2)
        assert executor.run(value=21)["A"] == 42

    def test_execution_order(self):
        """Test execution order with dependencies."""
        executor = InMemoryExecutor()
        order = []

        executor.register_stage("C", lambda **k: order.append("C"), depends_on=["B"])
        executor.register_stage("B", lambda **k: order.append("B"), depends_on=["A"])
        executor.register_stage("A", lambda **k: order.append("A"))

        executor.run()
        assert order == ["A", "B", "C"]
        assert executor.completed_stages == ["A", "B", "C"]

    def test_disabled_stage_skips_dependents(self):
        """Test a disabled stage and everything downstream is skipped."""
        executor = InMemoryExecutor()
        executor.register_stage("A", lambda **k: 1)
        executor.register_stage("B", lambda **k: 2, depends_on=["A"], enabled=False)
        executor.register_stage("C", lambda **k: 3, depends_on=["B"])
        executor.register_stage("D", lambda **k: 4, depends_on=["A"])

        results = executor.run()
        assert results == {"A": 1, "B": None, "C": None, "D": 4}
        assert executor.skipped_stages == ["B", "C"]
        assert set(executor.durations) == {"A", "D"}

    def test_unknown_dependency(self):
        """Test depending on an unregistered stage is an error."""
        executor = InMemoryExecutor()
        executor.register_stage("A", lambda **k: None, depends_on=["missing"])
        with pytest.raises(ValueError, match="unknown"):
            executor.run()

    def test_circular_dependency(self):
        """Test cycles are detected."""
        executor = InMemoryExecutor()
        executor.register_stage("A", lambda **k: None, depends_on=["B"])
        executor.register_stage("B", lambda **k: None, depends_on=["A"])
        with pytest.raises(ValueError, match="Circular"):
            executor.run()

    def test_stage_error_propagates(self, tmp_path):
        """Test a failing stage is logged and re-raised."""
        logger = PipelineLogger(tmp_path / "logs", log_name="cellprograms.test_error")
        logger.setup(console=False)

        def boom(**kwargs):
            raise RuntimeError("stage exploded")

        executor = InMemoryExecutor(logger)
        executor.register_stage("A", boom)
        with pytest.raises(RuntimeError):
            executor.run()
        for handler in logger.logger.handlers:
            handler.flush()
        assert "Stage A failed: stage exploded" in logger.log_file.read_text()


class TestAnalysisPipeline:
    """Tests for the end-to-end pipeline."""

    def test_two_blobs_recovered(self, blob_data):
        """Test default settings recover two well-separated populations."""
        store, truth = blob_data
        result = AnalysisPipeline(_clustering_only()).run(store)

        assert isinstance(result, PipelineResult)
        assignment = result.assignments["clusters:res1.0"]
        assert assignment.n_clusters == 2
        labels = assignment.labels.reindex(store.cell_ids).to_numpy()
        assert adjusted_rand_index(truth, labels) >= 0.95

    def test_single_batch_clusters_on_pca(self, blob_data):
        """Test batch correction is skipped for one sample."""
        store, _ = blob_data
        result = AnalysisPipeline(_clustering_only()).run(store)
        assert "harmony" not in result.embeddings
        assert result.clustering_embedding.name == "pca"
        assert result.metaprograms is None

    def test_artifact_lineage(self, blob_data):
        """Test every artifact traces back to the counts matrix."""
        store, _ = blob_data
        result = AnalysisPipeline(_clustering_only()).run(store)
        artifacts = result.artifacts
        assert "matrix:counts" in artifacts
        assert "matrix:lognorm" in artifacts
        assert "features:vst" in artifacts
        assert "markers:res1.0" in artifacts
        lineage = artifacts.lineage("clusters:res1.0")
        assert lineage[0] == "graph:pca"
        assert "embedding:pca" in lineage
        assert "matrix:counts" in lineage

    def test_markers_per_resolution(self, blob_data):
        """Test one assignment and marker table per resolution."""
        store, _ = blob_data
        config = _clustering_only()
        config.clustering.resolutions = [1.0, 0.5]
        result = AnalysisPipeline(config).run(store)
        assert set(result.assignments) == {"clusters:res1.0", "clusters:res0.5"}
        assert set(result.markers) == set(result.assignments)

    def test_deterministic(self, blob_data):
        """Test two runs with the same seed give identical partitions."""
        store, _ = blob_data
        a = AnalysisPipeline(_clustering_only()).run(store)
        b = AnalysisPipeline(_clustering_only()).run(store)
        np.testing.assert_array_equal(
            a.assignments["clusters:res1.0"].labels.to_numpy(),
            b.assignments["clusters:res1.0"].labels.to_numpy(),
        )

    def test_batch_correction_used(self):
        """Test multi-batch input clusters on the corrected embedding."""
        store, _ = create_batched_store(n_cells=400)
        config = _clustering_only()
        config.batch_correction.max_iter = 5
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", ConvergenceFailure)
            result = AnalysisPipeline(config).run(store)
        assert "harmony" in result.embeddings
        assert result.clustering_embedding.name == "harmony"
        assert result.artifacts.get("embedding:harmony").parents == ("embedding:pca",)

    def test_batch_correction_disabled(self):
        """Test disabling correction clusters on PCA."""
        store, _ = create_batched_store(n_cells=300)
        config = _clustering_only()
        config.batch_correction.enabled = False
        result = AnalysisPipeline(config).run(store)
        assert "harmony" not in result.embeddings
        assert result.clustering_embedding.name == "pca"

    def test_missing_batch_column(self):
        """Test an unknown batch column stops the run."""
        store, _ = create_batched_store(n_cells=200)
        config = _clustering_only()
        config.batch_correction.batch_col = "donor"
        with pytest.raises(InputFormatError):
            AnalysisPipeline(config).run(store)

    def test_programs_branch(self, program_data):
        """Test the meta-program branch alone."""
        store, _ = program_data
        config = AnalysisConfig.from_dict({
            "nmf_rank_range": [2, 3],
            "n_meta_programs": 3,
            "n_variable_features": 60,
        })
        config.run_clustering = False
        config.nmf.max_iter = 200
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", ConvergenceFailure)
            result = AnalysisPipeline(config).run(store)

        assert result.assignments == {}
        assert "pca" not in result.embeddings
        assert len(result.nmf.factorizations) == 6
        assert 1 <= len(result.metaprograms.programs) <= 3
        lineage = result.artifacts.lineage("metaprograms:consensus")
        assert "matrix:lognorm" in lineage
        assert "features:vst" in lineage

    def test_qc_removing_every_cell(self, counts_store):
        """Test a QC setting that removes every cell stops the run."""
        config = _clustering_only(run_clustering=False)
        config.qc.min_features = 10_000
        with pytest.raises(InputFormatError):
            AnalysisPipeline(config).run(counts_store)

    def test_summary(self, blob_data):
        """Test the run summary dictionary."""
        store, _ = blob_data
        summary = AnalysisPipeline(_clustering_only()).run(store).summary()
        assert summary["cells_total"] == 100
        assert summary["cells_kept"] == 100
        assert summary["clusters"] == {"clusters:res1.0": 2}
        assert summary["n_metaprograms"] == 0
        assert "qc" in summary["stage_seconds"]
