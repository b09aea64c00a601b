"""
Tests for run configuration and logging setup.
"""

import logging

import pytest

from phyloml.config import OptimizerSettings, RunConfig, setup_logging, teardown_logging
from phyloml.exceptions import ConfigurationError
from phyloml.models.indel import GapHandling
from phyloml.models.substitution import SubstModelId


class TestOptimizerSettings:
    """Test settings validation."""

    def test_defaults(self):
        settings = OptimizerSettings()
        assert settings.max_iterations == 5
        assert settings.epsilon == 1e-5
        assert settings.parallel

    @pytest.mark.parametrize("kwargs", [
        {"max_iterations": 0},
        {"epsilon": 0.0},
        {"epsilon": -1e-3},
        {"move_tolerance": -1.0},
        {"branch_tolerance": 0.0},
        {"max_branch_sweeps": 0},
        {"max_spr_moves": 0},
        {"model_maxiter": 0},
        {"workers": 0},
        {"seed": -1},
    ])
    def test_invalid(self, kwargs):
        with pytest.raises(ConfigurationError):
            OptimizerSettings(**kwargs)

    def test_zero_move_tolerance_allowed(self):
        assert OptimizerSettings(move_tolerance=0.0).move_tolerance == 0.0

    def test_resolve_seed(self):
        assert OptimizerSettings(seed=42).resolve_seed() == 42
        drawn = OptimizerSettings().resolve_seed()
        assert isinstance(drawn, int)
        assert 0 <= drawn < 2**63


class TestRunConfig:
    """Test output naming and validation."""

    def test_paths_with_run_name(self, tmp_path):
        config = RunConfig(
            seq_file="aln.fasta", model="hky", out_folder=tmp_path, run_name="run1", timestamp=123
        )
        assert config.model is SubstModelId.HKY
        assert config.run_id == "run1_123"
        assert config.out_dir == tmp_path / "run1_123_out"
        assert config.tree_path.name == "run1_123_tree.newick"
        assert config.logl_path.name == "run1_123_logl.out"
        assert config.result_path.name == "run1_123_result.json"
        assert config.log_path.name == "run1_123.log"

    def test_paths_without_run_name(self, tmp_path):
        config = RunConfig(seq_file="aln.fasta", out_folder=tmp_path, timestamp=456)
        assert config.run_id == "456"
        assert config.start_tree_path.name == "456_start_tree.newick"

    def test_setup_creates_folder(self, tmp_path):
        config = RunConfig(seq_file="aln.fasta", out_folder=tmp_path / "results", run_name="x")
        assert config.setup() is config
        assert config.out_dir.is_dir()

    def test_unknown_model(self):
        with pytest.raises(ConfigurationError):
            RunConfig(seq_file="aln.fasta", model="nope")

    def test_lambda_without_mu(self):
        with pytest.raises(ConfigurationError, match="together"):
            RunConfig(seq_file="aln.fasta", lam=1.0)

    def test_header(self, tmp_path):
        config = RunConfig(
            seq_file="aln.fasta", model="GTR", gap_handling=GapHandling.MISSING,
            out_folder=tmp_path, run_name="r", timestamp=1_700_000_000_000_000,
        )
        text = str(config)
        assert "Run ID: r_1700000000000000" in text
        assert "No input tree file provided." in text
        assert "Substitution model with GTR Q" in text


class TestLogging:
    """Test the package logger setup."""

    def test_file_handler(self, tmp_path):
        log_file = tmp_path / "run.log"
        logger = setup_logging(verbosity=1, log_file=log_file)
        try:
            logging.getLogger('phyloml.optimize').debug("branch sweep done")
        finally:
            teardown_logging()
        assert "branch sweep done" in log_file.read_text()
        assert not logger.handlers

    def test_setup_is_idempotent(self):
        logger = setup_logging()
        setup_logging(quiet=True)
        try:
            assert len(logger.handlers) == 1
            assert logger.handlers[0].level == logging.WARNING
        finally:
            teardown_logging()
