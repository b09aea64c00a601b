"""
Tests for the SPR topology search.
"""

import numpy as np
import pytest

from phyloml.core.likelihood import LikelihoodCalculator
from phyloml.io.trees import Tree
from phyloml.models.indel import MissingData
from phyloml.models.substitution import SubstitutionModel
from phyloml.optimize.parallel import SerialScheduler
from phyloml.optimize.spr import (
    SPRMove,
    SPRSearch,
    SPRSnapshot,
    prune_edges,
    score_prune_edge,
    select_best_move,
)


@pytest.fixture
def jc69():
    return SubstitutionModel.create("JC69")


class TestSelectBestMove:
    """Test the ordered reduction over scored moves."""

    def test_highest_score_wins(self):
        moves = [SPRMove(1, 4, -12.0, 0.1), SPRMove(2, 5, -10.0, 0.1), SPRMove(3, 1, -11.0, 0.1)]
        assert select_best_move(moves, 1e-3).key == (2, 5)

    def test_exact_ties_pick_lowest_pair(self):
        moves = [SPRMove(p, r, -10.0, 0.1) for p in range(1, 6) for r in range(1, 6)]
        rng = np.random.default_rng(0)
        for _ in range(100):
            order = rng.permutation(len(moves))
            shuffled = [moves[i] for i in order]
            assert select_best_move(shuffled, 1e-3).key == (1, 1)

    def test_near_ties_within_tolerance(self):
        moves = [SPRMove(2, 3, -9.9995, 0.1), SPRMove(1, 5, -10.0, 0.1)]
        assert select_best_move(moves, 1e-3).key == (1, 5)

    def test_clear_winner_beyond_tolerance(self):
        moves = [SPRMove(2, 3, -9.99, 0.1), SPRMove(1, 5, -10.0, 0.1)]
        assert select_best_move(moves, 1e-3).key == (2, 3)

    def test_non_finite_skipped(self):
        moves = [
            SPRMove(1, 2, float('nan'), 0.1),
            SPRMove(1, 3, float('-inf'), 0.1),
            SPRMove(2, 4, -50.0, 0.1),
        ]
        assert select_best_move(moves, 1e-3).key == (2, 4)

    def test_nothing_to_select(self):
        assert select_best_move([], 1e-3) is None
        assert select_best_move([SPRMove(1, 2, float('nan'), 0.1)], 1e-3) is None


class TestScoring:
    """Test candidate scoring."""

    def test_snapshot_not_modified(self, four_taxon_alignment, four_taxon_start_tree, jc69):
        calc = LikelihoodCalculator(four_taxon_alignment)
        before = four_taxon_start_tree.to_newick()
        snapshot = SPRSnapshot(four_taxon_start_tree, jc69, MissingData())
        for prune_id in prune_edges(four_taxon_start_tree):
            score_prune_edge(calc, snapshot, prune_id)
        assert four_taxon_start_tree.to_newick() == before

    def test_one_move_per_candidate(self, six_taxon_alignment, six_taxon_tree, jc69):
        calc = LikelihoodCalculator(six_taxon_alignment)
        snapshot = SPRSnapshot(six_taxon_tree, jc69, MissingData())
        for prune_id in prune_edges(six_taxon_tree):
            moves = score_prune_edge(calc, snapshot, prune_id)
            assert [m.regraft_id for m in moves] == six_taxon_tree.regraft_candidates(prune_id)
            assert all(m.prune_id == prune_id for m in moves)
            assert all(np.isfinite(m.log_likelihood) for m in moves)

    def test_score_matches_applied_move(self, six_taxon_alignment, six_taxon_tree, jc69):
        calc = LikelihoodCalculator(six_taxon_alignment)
        snapshot = SPRSnapshot(six_taxon_tree, jc69, MissingData())
        prune_id = prune_edges(six_taxon_tree)[0]
        move = score_prune_edge(calc, snapshot, prune_id)[0]

        tree = six_taxon_tree.copy()
        pendant = tree.apply_spr(move.prune_id, move.regraft_id)
        pendant.branch_length = move.branch_length
        assert calc.log_likelihood(tree, jc69, MissingData()) == pytest.approx(
            move.log_likelihood, rel=1e-12
        )


class TestSPRSearch:
    """Test the hill-climbing search."""

    def test_finds_best_four_taxon_topology(self, four_taxon_alignment, four_taxon_start_tree, jc69):
        calc = LikelihoodCalculator(four_taxon_alignment)
        start = calc.log_likelihood(four_taxon_start_tree, jc69, MissingData())

        search = SPRSearch(SerialScheduler(calc), jc69, MissingData())
        tree, logl, moves = search.run(four_taxon_start_tree, start)

        assert tree.splits() == {frozenset("CD")}
        assert len(moves) >= 1
        assert logl > start + search.tolerance

    def test_selected_move_is_brute_force_best(self, six_taxon_alignment, six_taxon_tree, jc69):
        calc = LikelihoodCalculator(six_taxon_alignment)
        snapshot = SPRSnapshot(six_taxon_tree, jc69, MissingData())
        every_move = [
            move for prune_id in prune_edges(six_taxon_tree)
            for move in score_prune_edge(calc, snapshot, prune_id)
        ]
        best_score = max(m.log_likelihood for m in every_move)

        chosen = select_best_move(every_move, 1e-3)
        assert chosen.log_likelihood >= best_score - 1e-3

    def test_accepted_moves_strictly_improve(self, four_taxon_alignment, four_taxon_start_tree, jc69):
        calc = LikelihoodCalculator(four_taxon_alignment)
        logl = calc.log_likelihood(four_taxon_start_tree, jc69, MissingData())
        search = SPRSearch(SerialScheduler(calc), jc69, MissingData(), tolerance=1e-3)

        _, final, moves = search.run(four_taxon_start_tree, logl)

        previous = logl
        for move in moves:
            assert move.log_likelihood > previous + 1e-3
            previous = move.log_likelihood
        assert final == pytest.approx(previous)

    def test_input_tree_untouched(self, four_taxon_alignment, four_taxon_start_tree, jc69):
        calc = LikelihoodCalculator(four_taxon_alignment)
        before = four_taxon_start_tree.to_newick()
        logl = calc.log_likelihood(four_taxon_start_tree, jc69, MissingData())
        SPRSearch(SerialScheduler(calc), jc69, MissingData()).run(four_taxon_start_tree, logl)
        assert four_taxon_start_tree.to_newick() == before

    def test_no_move_at_local_optimum(self, four_taxon_alignment, four_taxon_start_tree, jc69):
        calc = LikelihoodCalculator(four_taxon_alignment)
        logl = calc.log_likelihood(four_taxon_start_tree, jc69, MissingData())
        search = SPRSearch(SerialScheduler(calc), jc69, MissingData())
        tree, logl, _ = search.run(four_taxon_start_tree, logl)

        assert search.sweep(tree, logl) is None

    def test_move_cap(self, six_taxon_alignment, jc69):
        # Every cherry is wrong, so more than one move is available
        tree = Tree.from_newick("((A:0.1,C:0.1):0.1,(B:0.1,E:0.1):0.1,(D:0.1,F:0.1):0.1);")
        calc = LikelihoodCalculator(six_taxon_alignment)
        logl = calc.log_likelihood(tree, jc69, MissingData())
        search = SPRSearch(SerialScheduler(calc), jc69, MissingData(), max_moves=1)
        _, _, moves = search.run(tree, logl)
        assert len(moves) == 1
