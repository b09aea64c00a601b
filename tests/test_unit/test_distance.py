"""
Tests for distance correction and neighbor joining.
"""

import numpy as np
import pytest

from phyloml.io.sequences import Alignment
from phyloml.optimize.distance_init import (
    MIN_BRANCH_LENGTH,
    SATURATED_DISTANCE,
    build_nj_tree,
    compute_pairwise_distances,
    neighbor_joining,
)

# Path lengths on the tree ((A:1,B:2):1,C:1,(D:1,E:2):1)
ADDITIVE_NAMES = ["A", "B", "C", "D", "E"]
ADDITIVE = np.array([
    [0, 3, 3, 4, 5],
    [3, 0, 4, 5, 6],
    [3, 4, 0, 3, 4],
    [4, 5, 3, 0, 3],
    [5, 6, 4, 3, 0],
], dtype=float)


class TestPairwiseDistances:
    """Test corrected distances."""

    def test_jukes_cantor(self):
        aln = Alignment.from_strings(["a", "b", "c"], ["A" * 20, "A" * 18 + "CC", "A" * 20])
        d = compute_pairwise_distances(aln)
        expected = -0.75 * np.log(1.0 - 0.1 / 0.75)
        assert d[0, 1] == pytest.approx(expected)
        assert d[1, 0] == d[0, 1]
        assert d[0, 2] == 0.0

    def test_gaps_ignored(self):
        aln = Alignment.from_strings(["a", "b", "c"], ["AAAA--", "AAAAGG", "AAAACC"])
        d = compute_pairwise_distances(aln)
        assert d[0, 1] == 0.0
        assert d[1, 2] > 0

    def test_saturated(self):
        aln = Alignment.from_strings(["a", "b", "c"], ["ACGT", "CATG", "ACGT"])
        assert compute_pairwise_distances(aln)[0, 1] == SATURATED_DISTANCE

    def test_no_shared_sites(self):
        aln = Alignment.from_strings(["a", "b", "c"], ["AC--", "--GT", "ACGT"])
        assert compute_pairwise_distances(aln)[0, 1] == pytest.approx(0.1)

    def test_protein_correction(self, protein_alignment):
        d = compute_pairwise_distances(protein_alignment)
        p = 4 / 25
        b = 19 / 20
        assert d[0, 2] == pytest.approx(-b * np.log(1.0 - p / b))


class TestNeighborJoining:
    """Test tree building."""

    def test_recovers_additive_tree(self):
        tree = neighbor_joining(ADDITIVE, ADDITIVE_NAMES)
        expected = {frozenset("CDE"), frozenset("DE")}
        assert tree.splits() == expected
        assert tree.total_length == pytest.approx(9.0)

    @pytest.mark.parametrize("seed", range(10))
    def test_leaf_order_does_not_change_tree(self, seed):
        tree = neighbor_joining(ADDITIVE, ADDITIVE_NAMES, rng=np.random.default_rng(seed))
        assert tree.splits() == {frozenset("CDE"), frozenset("DE")}
        assert tree.total_length == pytest.approx(9.0)

    def test_three_leaves(self):
        D = np.array([[0, 3, 4], [3, 0, 5], [4, 5, 0]], dtype=float)
        tree = neighbor_joining(D, ["x", "y", "z"])
        lengths = {leaf.name: leaf.branch_length for leaf in tree.leaves}
        assert lengths == pytest.approx({"x": 1.0, "y": 2.0, "z": 3.0})

    def test_lengths_floored(self):
        D = np.zeros((4, 4))
        tree = neighbor_joining(D, list("abcd"))
        for edge_id in tree.edge_ids():
            assert tree.get_node(edge_id).branch_length >= MIN_BRANCH_LENGTH

    def test_too_few_sequences(self):
        with pytest.raises(ValueError, match="at least 3"):
            neighbor_joining(np.zeros((2, 2)), ["a", "b"])

    def test_build_from_alignment(self, six_taxon_alignment):
        tree = build_nj_tree(six_taxon_alignment, rng=np.random.default_rng(1))
        tree.validate()
        assert sorted(tree.leaf_names) == list("ABCDEF")
        assert frozenset("CD") in tree.splits()
        assert frozenset("EF") in tree.splits()
