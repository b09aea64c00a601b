"""
Tests for the optimization loop controller.
"""

import json

import numpy as np
import pytest

from phyloml.config import OptimizerSettings
from phyloml.exceptions import ConfigurationError, NumericalInstability, WorkerFailure
from phyloml.io.trees import Tree
from phyloml.models.indel import PIP, GapHandling, MissingData
from phyloml.models.substitution import FrequencyOptimisation, SubstitutionModel
from phyloml.optimize.branch import BranchOptimizer
from phyloml.optimize.optimizer import (
    OptimizationPhase,
    OptimizationResult,
    TerminationReason,
    TreeOptimizer,
)
from phyloml.optimize.spr import SPRSearch

SERIAL = dict(parallel=False, seed=3)


@pytest.fixture
def hky(six_taxon_alignment):
    return SubstitutionModel.create("HKY", alignment=six_taxon_alignment)


class TestTreeOptimizer:
    """Test the iteration loop."""

    def test_terminates_within_max_iterations(self, six_taxon_alignment, hky):
        settings = OptimizerSettings(max_iterations=3, **SERIAL)
        result = TreeOptimizer(six_taxon_alignment, hky, MissingData(), settings=settings).run()

        assert isinstance(result, OptimizationResult)
        assert 1 <= result.iterations <= 3
        assert result.termination in (TerminationReason.CONVERGED, TerminationReason.MAX_ITERATIONS)
        assert len(result.trace) == result.iterations
        if result.termination is TerminationReason.MAX_ITERATIONS:
            assert result.iterations == 3

    def test_log_likelihood_never_decreases(self, six_taxon_alignment, hky):
        settings = OptimizerSettings(max_iterations=4, **SERIAL)
        result = TreeOptimizer(six_taxon_alignment, hky, MissingData(), settings=settings).run()

        values = [result.initial_log_likelihood] + [r.log_likelihood for r in result.trace]
        assert all(b >= a - 1e-9 for a, b in zip(values, values[1:]))
        assert result.log_likelihood == values[-1]

    def test_converged_when_delta_small(self, six_taxon_alignment, hky):
        settings = OptimizerSettings(max_iterations=50, epsilon=1e-2, **SERIAL)
        result = TreeOptimizer(six_taxon_alignment, hky, MissingData(), settings=settings).run()
        assert result.converged
        assert abs(result.trace[-1].delta) < 1e-2

    def test_recovers_cherries(self, six_taxon_alignment, hky):
        start = Tree.from_newick("((A:0.1,C:0.1):0.1,(B:0.1,E:0.1):0.1,(D:0.1,F:0.1):0.1);")
        settings = OptimizerSettings(max_iterations=5, **SERIAL)
        result = TreeOptimizer(
            six_taxon_alignment, hky, MissingData(), tree=start, settings=settings
        ).run()

        splits = result.tree.splits()
        assert frozenset("CD") in splits
        assert frozenset("EF") in splits
        assert result.log_likelihood > result.initial_log_likelihood
        assert result.start_tree.same_topology(start)

    def test_starting_tree_not_modified(self, six_taxon_alignment, six_taxon_tree, hky):
        before = six_taxon_tree.to_newick()
        settings = OptimizerSettings(max_iterations=1, **SERIAL)
        TreeOptimizer(
            six_taxon_alignment, hky, MissingData(), tree=six_taxon_tree, settings=settings
        ).run()
        assert six_taxon_tree.to_newick() == before

    def test_pip_starting_rates_from_data(self, gapped_alignment, four_taxon_start_tree):
        model = SubstitutionModel.create("JC69")
        settings = OptimizerSettings(max_iterations=1, **SERIAL)
        optimizer = TreeOptimizer(
            gapped_alignment, model, GapHandling.PIP, tree=four_taxon_start_tree, settings=settings
        )
        state = optimizer.initialize()
        assert isinstance(state.gaps, PIP)
        expected = PIP.initial(32, four_taxon_start_tree.total_length)
        assert state.gaps.lam == pytest.approx(expected.lam)

    def test_pip_run(self, gapped_alignment, four_taxon_start_tree):
        model = SubstitutionModel.create("HKY", alignment=gapped_alignment)
        settings = OptimizerSettings(max_iterations=2, **SERIAL)
        result = TreeOptimizer(
            gapped_alignment, model, tree=four_taxon_start_tree, settings=settings
        ).run()

        assert isinstance(result.gaps, PIP)
        assert np.isfinite(result.log_likelihood)
        assert result.log_likelihood >= result.initial_log_likelihood - 1e-9

    def test_estimated_frequencies(self, six_taxon_alignment, hky):
        settings = OptimizerSettings(max_iterations=1, **SERIAL)
        result = TreeOptimizer(
            six_taxon_alignment, hky, MissingData(), settings=settings,
            freq_opt=FrequencyOptimisation.ESTIMATED,
        ).run()
        assert sum(result.model.freqs) == pytest.approx(1.0)

    def test_protein(self, protein_alignment):
        model = SubstitutionModel.create("WAG", alignment=protein_alignment)
        settings = OptimizerSettings(max_iterations=1, **SERIAL)
        result = TreeOptimizer(protein_alignment, model, MissingData(), settings=settings).run()
        assert np.isfinite(result.log_likelihood)
        assert sorted(result.tree.leaf_names) == sorted(protein_alignment.names)

    def test_seed_reported(self, six_taxon_alignment, hky):
        settings = OptimizerSettings(max_iterations=1, parallel=False)
        optimizer = TreeOptimizer(six_taxon_alignment, hky, MissingData(), settings=settings)
        result = optimizer.run()
        assert result.seed == optimizer.seed
        assert isinstance(result.seed, int)

    def test_phase_terminated_after_run(self, six_taxon_alignment, hky):
        settings = OptimizerSettings(max_iterations=1, **SERIAL)
        optimizer = TreeOptimizer(six_taxon_alignment, hky, MissingData(), settings=settings)
        optimizer.run()
        assert optimizer.phase is OptimizationPhase.TERMINATED


class TestFailures:
    """Test configuration errors and aborted runs."""

    def test_tree_mismatch(self, six_taxon_alignment, hky):
        tree = Tree.from_newick("((A,B),(C,D),(E,X));")
        optimizer = TreeOptimizer(
            six_taxon_alignment, hky, MissingData(), tree=tree,
            settings=OptimizerSettings(**SERIAL),
        )
        with pytest.raises(ConfigurationError, match="different species"):
            optimizer.run()

    def test_abort_keeps_starting_state(self, six_taxon_alignment, six_taxon_tree, hky, monkeypatch):
        def fail(self, tree):
            raise NumericalInstability("branch", float('nan'))

        monkeypatch.setattr(BranchOptimizer, "optimize", fail)
        settings = OptimizerSettings(max_iterations=3, **SERIAL)
        result = TreeOptimizer(
            six_taxon_alignment, hky, MissingData(), tree=six_taxon_tree, settings=settings
        ).run()

        assert result.termination is TerminationReason.NUMERICAL_INSTABILITY
        assert result.iterations == 0
        assert result.trace == []
        assert result.log_likelihood == result.initial_log_likelihood
        assert result.model == hky
        assert result.tree.to_newick() == six_taxon_tree.to_newick()
        assert "branch" in result.error

    def test_worker_failure_keeps_starting_state(self, six_taxon_alignment, six_taxon_tree, hky, monkeypatch):
        def fail(self, tree, current_logl):
            raise WorkerFailure(3, RecursionError("maximum recursion depth exceeded"))

        monkeypatch.setattr(SPRSearch, "run", fail)
        settings = OptimizerSettings(max_iterations=3, **SERIAL)
        result = TreeOptimizer(
            six_taxon_alignment, hky, MissingData(), tree=six_taxon_tree, settings=settings
        ).run()

        assert result.termination is TerminationReason.WORKER_FAILURE
        assert result.aborted
        assert not result.converged
        assert result.iterations == 0
        assert result.log_likelihood == result.initial_log_likelihood
        assert result.tree.to_newick() == six_taxon_tree.to_newick()
        assert "prune edge 3" in result.error

    def test_abort_keeps_last_iteration(self, six_taxon_alignment, hky, monkeypatch):
        original = BranchOptimizer.optimize
        calls = []

        def fail_second(self, tree):
            calls.append(1)
            if len(calls) > 1:
                raise NumericalInstability("branch", float('-inf'))
            return original(self, tree)

        monkeypatch.setattr(BranchOptimizer, "optimize", fail_second)
        settings = OptimizerSettings(max_iterations=5, epsilon=1e-12, **SERIAL)
        result = TreeOptimizer(six_taxon_alignment, hky, MissingData(), settings=settings).run()

        assert result.termination is TerminationReason.NUMERICAL_INSTABILITY
        assert result.iterations == 1
        assert result.log_likelihood == result.trace[-1].log_likelihood
        assert result.tree.total_length == pytest.approx(result.trace[-1].tree_length)


class TestOptimizationResult:
    """Test reporting."""

    @pytest.fixture
    def result(self, four_taxon_alignment, four_taxon_start_tree):
        model = SubstitutionModel.create("HKY", alignment=four_taxon_alignment)
        settings = OptimizerSettings(max_iterations=2, **SERIAL)
        return TreeOptimizer(
            four_taxon_alignment, model, MissingData(), tree=four_taxon_start_tree,
            settings=settings,
        ).run()

    def test_summary(self, result):
        text = result.summary()
        assert "MODEL: HKY (missing gaps)" in text
        assert "Log-likelihood:" in text
        assert "alpha =" in text
        assert str(result) == text

    def test_to_dict(self, result):
        data = result.to_dict()
        assert data['model']['model'] == "HKY"
        assert data['gaps'] == {'gap_handling': 'missing'}
        assert data['seed'] == 3
        assert len(data['trace']) == result.iterations
        assert Tree.from_newick(data['tree']).same_topology(result.tree)

    def test_to_json_file(self, result, tmp_path):
        path = tmp_path / "result.json"
        text = result.to_json(str(path))
        assert json.loads(path.read_text()) == json.loads(text)
        assert json.loads(text)['termination'] == result.termination.value

    def test_repr(self, result):
        assert repr(result).startswith("OptimizationResult(model='HKY'")
