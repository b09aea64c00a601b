"""
Distance-based starting trees.

Pairwise distances are corrected for multiple substitutions (Jukes-Cantor
for nucleotides, the equal-input Poisson correction for amino acids) and
joined with neighbor joining.
"""

import logging
from typing import Optional

import numpy as np

from ..io.sequences import Alignment
from ..io.trees import Tree, TreeNode

logger = logging.getLogger(__name__)

MIN_BRANCH_LENGTH = 1e-6
SATURATED_DISTANCE = 5.0


def compute_pairwise_distances(alignment: Alignment) -> np.ndarray:
    """
    Compute corrected pairwise distances between sequences.

    Only sites observed in both sequences are compared. With K states the
    correction is d = -(K-1)/K * log(1 - K p / (K-1)).

    Parameters
    ----------
    alignment : Alignment
        Sequence alignment

    Returns
    -------
    np.ndarray
        Matrix of pairwise distances (n_species x n_species)
    """
    n_seqs = alignment.n_species
    sequences = alignment.sequences
    K = alignment.n_states
    b = (K - 1) / K
    distances = np.zeros((n_seqs, n_seqs))

    valid_mask = sequences >= 0

    for i in range(n_seqs):
        for j in range(i + 1, n_seqs):
            both_valid = valid_mask[i] & valid_mask[j]
            valid_sites = both_valid.sum()

            if valid_sites > 0:
                differences = ((sequences[i] != sequences[j]) & both_valid).sum()
                p_dist = differences / valid_sites
                if p_dist < b * 0.99:
                    d = -b * np.log(1.0 - p_dist / b)
                else:
                    d = SATURATED_DISTANCE
            else:
                # Nothing to compare
                d = 0.1

            distances[i, j] = distances[j, i] = d

    return distances


def neighbor_joining(
    distances: np.ndarray,
    names: list[str],
    rng: Optional[np.random.Generator] = None,
) -> Tree:
    """
    Build an unrooted binary tree with neighbor joining.

    Parameters
    ----------
    distances : np.ndarray
        Symmetric distance matrix
    names : list[str]
        Leaf names, in matrix order
    rng : np.random.Generator, optional
        When given, the leaf order is shuffled before joining, which decides
        how ties in the Q criterion are broken

    Returns
    -------
    Tree
        Tree with branch lengths floored at ``MIN_BRANCH_LENGTH``
    """
    n = len(names)
    if n < 3:
        raise ValueError(f"Neighbor joining needs at least 3 sequences, got {n}")

    order = np.arange(n)
    if rng is not None:
        order = rng.permutation(n)

    D = np.array(distances, dtype=np.float64)[np.ix_(order, order)]
    clusters = [TreeNode(id=-1, name=names[i]) for i in order]
    nodes = list(clusters)

    while len(clusters) > 3:
        r = len(clusters)
        row_sums = D.sum(axis=1)
        Q = (r - 2) * D - row_sums[:, np.newaxis] - row_sums[np.newaxis, :]
        np.fill_diagonal(Q, np.inf)
        i, j = np.unravel_index(np.argmin(Q), Q.shape)
        i, j = min(i, j), max(i, j)

        length_i = 0.5 * D[i, j] + (row_sums[i] - row_sums[j]) / (2 * (r - 2))
        length_j = D[i, j] - length_i

        joined = TreeNode(id=-1)
        for child, length in ((clusters[i], length_i), (clusters[j], length_j)):
            child.parent = joined
            child.branch_length = max(float(length), MIN_BRANCH_LENGTH)
            joined.children.append(child)
        nodes.append(joined)

        new_row = 0.5 * (D[i] + D[j] - D[i, j])
        keep = [k for k in range(r) if k not in (i, j)]
        D = np.vstack([
            np.column_stack([D[np.ix_(keep, keep)], new_row[keep]]),
            np.append(new_row[keep], 0.0),
        ])
        clusters = [clusters[k] for k in keep] + [joined]

    # Join the last three clusters at the root
    root = TreeNode(id=-1)
    lengths = (
        0.5 * (D[0, 1] + D[0, 2] - D[1, 2]),
        0.5 * (D[0, 1] + D[1, 2] - D[0, 2]),
        0.5 * (D[0, 2] + D[1, 2] - D[0, 1]),
    )
    for child, length in zip(clusters, lengths):
        child.parent = root
        child.branch_length = max(float(length), MIN_BRANCH_LENGTH)
        root.children.append(child)
    nodes.append(root)

    tree = Tree(root, nodes)
    tree._reindex()
    tree.validate()
    return tree


def build_nj_tree(alignment: Alignment, rng: Optional[np.random.Generator] = None) -> Tree:
    """Neighbor-joining starting tree for an alignment."""
    distances = compute_pairwise_distances(alignment)
    tree = neighbor_joining(distances, list(alignment.names), rng=rng)
    logger.debug("Neighbor-joining tree for %d sequences: %s", alignment.n_species, tree.to_newick())
    return tree
