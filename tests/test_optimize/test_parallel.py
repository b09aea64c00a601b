"""
Tests for serial and process-pool SPR scheduling.
"""

import pytest

from phyloml import optimize_tree
from phyloml.core.likelihood import LikelihoodCalculator
from phyloml.exceptions import WorkerFailure
from phyloml.models.indel import MissingData
from phyloml.models.substitution import SubstitutionModel
from phyloml.optimize.parallel import ProcessScheduler, SerialScheduler, make_scheduler
from phyloml.optimize.spr import SPRSnapshot, prune_edges


class TestSchedulers:
    """Test row scoring."""

    def test_make_scheduler(self, six_taxon_alignment):
        calc = LikelihoodCalculator(six_taxon_alignment)
        assert isinstance(make_scheduler(calc, parallel=False), SerialScheduler)
        scheduler = make_scheduler(calc, parallel=True, workers=3)
        assert isinstance(scheduler, ProcessScheduler)
        assert scheduler.workers == 3
        scheduler.close()

    def test_pool_created_lazily(self, six_taxon_alignment):
        calc = LikelihoodCalculator(six_taxon_alignment)
        with ProcessScheduler(calc, workers=2) as scheduler:
            assert scheduler._executor is None
        assert scheduler._executor is None

    @pytest.mark.parametrize("workers", [1, 2, 4])
    def test_rows_match_serial(self, six_taxon_alignment, six_taxon_tree, workers):
        calc = LikelihoodCalculator(six_taxon_alignment)
        model = SubstitutionModel.create("HKY", alignment=six_taxon_alignment)
        snapshot = SPRSnapshot(six_taxon_tree, model, MissingData())
        prune_ids = prune_edges(six_taxon_tree)

        serial = SerialScheduler(calc).score_rows(snapshot, prune_ids)
        with ProcessScheduler(calc, workers=workers) as scheduler:
            parallel = scheduler.score_rows(snapshot, prune_ids)

        assert len(parallel) == len(prune_ids)
        for serial_row, parallel_row in zip(serial, parallel):
            assert [m.key for m in parallel_row] == [m.key for m in serial_row]
            for a, b in zip(serial_row, parallel_row):
                assert b.log_likelihood == pytest.approx(a.log_likelihood, rel=1e-12)
                assert b.branch_length == pytest.approx(a.branch_length, rel=1e-12)

    def test_pool_reused_across_calls(self, six_taxon_alignment, six_taxon_tree):
        calc = LikelihoodCalculator(six_taxon_alignment)
        model = SubstitutionModel.create("JC69")
        snapshot = SPRSnapshot(six_taxon_tree, model, MissingData())
        with ProcessScheduler(calc, workers=2) as scheduler:
            scheduler.score_rows(snapshot, prune_edges(six_taxon_tree)[:2])
            pool = scheduler._executor
            scheduler.score_rows(snapshot, prune_edges(six_taxon_tree)[2:])
            assert scheduler._executor is pool
        assert scheduler._executor is None

    def test_deep_tree_rows_match_serial(self, caterpillar_alignment, caterpillar_tree):
        calc = LikelihoodCalculator(caterpillar_alignment)
        model = SubstitutionModel.create("JC69")
        snapshot = SPRSnapshot(caterpillar_tree, model, MissingData())
        # Rows next to the root have only a handful of regraft edges
        prune_ids = [
            edge_id for edge_id in caterpillar_tree.edge_ids()
            if 0 < len(caterpillar_tree.regraft_candidates(edge_id)) <= 4
        ]
        assert prune_ids

        serial = SerialScheduler(calc).score_rows(snapshot, prune_ids)
        with ProcessScheduler(calc, workers=2) as scheduler:
            parallel = scheduler.score_rows(snapshot, prune_ids)

        assert parallel == serial

    def test_unshippable_task_raises_worker_failure(self, six_taxon_alignment, six_taxon_tree):
        calc = LikelihoodCalculator(six_taxon_alignment)
        model = SubstitutionModel.create("JC69")
        snapshot = SPRSnapshot(six_taxon_tree, model, gaps=lambda: None)
        prune_ids = prune_edges(six_taxon_tree)

        with ProcessScheduler(calc, workers=2) as scheduler:
            with pytest.raises(WorkerFailure, match="prune edge"):
                scheduler.score_rows(snapshot, prune_ids)


class TestDeterminism:
    """A fixed seed gives the same result whatever the worker count."""

    @pytest.mark.parametrize("workers", [1, 2, 8])
    def test_missing_data_matches_serial(self, six_taxon_alignment, workers):
        common = dict(
            model="HKY", gap_handling="missing", seed=11, max_iterations=2,
        )
        serial = optimize_tree(six_taxon_alignment, parallel=False, **common)
        parallel = optimize_tree(six_taxon_alignment, parallel=True, workers=workers, **common)

        assert parallel.to_dict() == serial.to_dict()

    @pytest.mark.parametrize("workers", [1, 2, 8])
    def test_pip_estimated_frequencies_match_serial(self, gapped_alignment, workers):
        common = dict(
            model="HKY", gap_handling="pip", freq_opt="estimated", seed=5, max_iterations=2,
        )
        serial = optimize_tree(gapped_alignment, parallel=False, **common)
        parallel = optimize_tree(gapped_alignment, parallel=True, workers=workers, **common)

        assert parallel.to_dict() == serial.to_dict()

    def test_same_seed_same_result(self, six_taxon_alignment):
        first = optimize_tree(six_taxon_alignment, model="K80", gap_handling="missing",
                              seed=5, max_iterations=2, parallel=False)
        second = optimize_tree(six_taxon_alignment, model="K80", gap_handling="missing",
                               seed=5, max_iterations=2, parallel=False)
        assert first.to_dict() == second.to_dict()
