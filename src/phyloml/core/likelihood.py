"""
Likelihood calculation for phylogenetic models.

This module implements Felsenstein's pruning algorithm over compressed site
patterns, either treating gaps as missing data or scoring them under the
Poisson Indel Process (PIP).

The calculator holds only read-only data derived from the alignment, so a
single instance can be shipped to worker processes and called with
independent tree and model snapshots.
"""

import numpy as np
from scipy.special import gammaln, logsumexp

from ..exceptions import ConfigurationError
from ..io.sequences import GAP_CODE, Alignment
from ..io.trees import Tree
from ..models.indel import PIP, GapModel, MissingData
from ..models.substitution import SubstitutionModel
from .matrix import transition_matrix


class LikelihoodCalculator:
    """
    Compute phylogenetic log-likelihoods.

    Attributes
    ----------
    alignment : Alignment
        Multiple sequence alignment
    n_states : int
        Number of character states (4 for nucleotides, 20 for amino acids)
    n_sites : int
        Number of alignment columns
    """

    def __init__(self, alignment: Alignment):
        """
        Initialize likelihood calculator.

        Parameters
        ----------
        alignment : Alignment
            Multiple sequence alignment
        """
        self.alignment = alignment
        self.n_states = alignment.n_states
        self.n_sites = alignment.n_sites
        self.names = list(alignment.names)

        patterns, weights = alignment.site_patterns()
        self._prepare_missing(patterns, weights)
        self._prepare_pip(patterns, weights)

    def _prepare_missing(self, patterns: np.ndarray, weights: np.ndarray) -> None:
        """Leaf partials where gaps and unknown symbols allow every state."""
        K = self.n_states
        self.weights = weights
        self.leaf_partials = {}
        for row, name in enumerate(self.names):
            codes = patterns[row]
            partial = np.ones((codes.size, K))
            observed = codes >= 0
            partial[observed] = 0.0
            partial[observed, codes[observed]] = 1.0
            self.leaf_partials[name] = partial

    def _prepare_pip(self, patterns: np.ndarray, weights: np.ndarray) -> None:
        """
        Leaf partials over states plus the gap state, with an extra all-gap column.

        All-gap columns of the alignment are dropped: PIP only scores columns
        holding at least one character.
        """
        K = self.n_states
        keep = np.any(patterns != GAP_CODE, axis=0)
        pip_patterns = patterns[:, keep]
        self.pip_weights = weights[keep]
        self.pip_n_columns = int(self.pip_weights.sum())

        n_patterns = pip_patterns.shape[1]
        self.pip_leaf_partials = {}
        self.pip_leaf_present = {}
        for row, name in enumerate(self.names):
            codes = pip_patterns[row]
            partial = np.zeros((n_patterns + 1, K + 1))
            gap = codes == GAP_CODE
            unknown = codes == -1
            observed = codes >= 0
            partial[:-1][observed, codes[observed]] = 1.0
            partial[:-1][unknown, :K] = 1.0
            partial[:-1][gap, K] = 1.0
            # Final row is the all-gap column used for the empty-column probability
            partial[-1, K] = 1.0
            self.pip_leaf_partials[name] = partial
            self.pip_leaf_present[name] = np.append(~gap, False).astype(np.int64)

        self.pip_present_total = sum(self.pip_leaf_present.values())

    def check_tree(self, tree: Tree) -> None:
        """
        Verify that tree leaves and alignment sequences match.

        Raises
        ------
        ConfigurationError
            If the leaf names differ from the sequence names
        """
        tree_names = set(tree.leaf_names)
        alignment_names = set(self.names)
        if tree_names != alignment_names:
            raise ConfigurationError(
                "Alignment and tree have different species. "
                f"In alignment but not tree: {sorted(alignment_names - tree_names)}. "
                f"In tree but not alignment: {sorted(tree_names - alignment_names)}"
            )

    def log_likelihood(self, tree: Tree, model: SubstitutionModel, gaps: GapModel) -> float:
        """
        Log-likelihood of the alignment under a tree, model and gap model.

        Parameters
        ----------
        tree : Tree
            Tree with branch lengths
        model : SubstitutionModel
            Substitution model with parameters and frequencies
        gaps : MissingData or PIP
            Gap handling

        Returns
        -------
        float
            Log-likelihood (may be -inf or nan for degenerate inputs)
        """
        if isinstance(gaps, PIP):
            return self._pip_log_likelihood(tree, model, gaps)[0]
        if isinstance(gaps, MissingData):
            return self._missing_log_likelihood(tree, model)
        raise ConfigurationError(f"Unknown gap model: {gaps!r}")

    def column_log_likelihood(self, tree: Tree, model: SubstitutionModel, gaps: GapModel) -> float:
        """
        Sum over columns of log p(column), without the PIP column-count terms.

        For missing-data gap handling this equals :meth:`log_likelihood`.
        """
        if isinstance(gaps, PIP):
            return self._pip_log_likelihood(tree, model, gaps)[1]
        return self._missing_log_likelihood(tree, model)

    def _transition_matrices(self, tree: Tree, model: SubstitutionModel) -> dict[int, np.ndarray]:
        eigen = model.eigen
        return {
            node.id: transition_matrix(eigen, node.branch_length)
            for node in tree.nodes if node.parent is not None
        }

    def _missing_log_likelihood(self, tree: Tree, model: SubstitutionModel) -> float:
        P_matrices = self._transition_matrices(tree, model)
        partials = {}
        log_scale = {}

        for node in tree.postorder():
            if node.is_leaf:
                partials[node.id] = self.leaf_partials[node.name]
                log_scale[node.id] = 0.0
                continue

            partial = None
            scale = 0.0
            for child in node.children:
                # Sum over child states: L_child @ P^T
                contribution = partials[child.id] @ P_matrices[child.id].T
                partial = contribution if partial is None else partial * contribution
                scale = scale + log_scale[child.id]

            partial, scale = _rescale(partial, scale)
            partials[node.id] = partial
            log_scale[node.id] = scale

        root = tree.root
        with np.errstate(divide='ignore'):
            site_log = np.log(partials[root.id] @ model.frequencies) + log_scale[root.id]
        return float(np.dot(self.weights, site_log))

    def _pip_log_likelihood(
        self, tree: Tree, model: SubstitutionModel, gaps: PIP
    ) -> tuple[float, float]:
        K = self.n_states
        mu, lam = gaps.mu, gaps.lam
        eigen = model.eigen
        pi = model.frequencies

        tree_length = tree.total_length
        denominator = tree_length + 1.0 / mu
        nu = lam * denominator

        insertion = {}
        log_weight = {}
        P_matrices = {}
        for node in tree.nodes:
            if node.parent is None:
                # Insertion at the root, survival 1
                insertion[node.id] = (1.0 / mu) / denominator
                log_weight[node.id] = np.log(insertion[node.id])
                continue
            b = node.branch_length
            insertion[node.id] = b / denominator
            if b > 0:
                survival = -np.expm1(-mu * b) / (mu * b)
                log_weight[node.id] = np.log(b) - np.log(denominator) + np.log(survival)
            else:
                log_weight[node.id] = -np.inf

            keep = np.exp(-mu * b)
            P = np.zeros((K + 1, K + 1))
            P[:K, :K] = keep * transition_matrix(eigen, b)
            P[:K, K] = 1.0 - keep
            P[K, K] = 1.0
            P_matrices[node.id] = P

        partials = {}
        log_scale = {}
        present = {}
        log_terms = []
        p_empty = 0.0

        for node in tree.postorder():
            if node.is_leaf:
                partial = self.pip_leaf_partials[node.name]
                scale = np.zeros(partial.shape[0])
                present[node.id] = self.pip_leaf_present[node.name]
            else:
                partial = None
                scale = 0.0
                count = 0
                for child in node.children:
                    contribution = partials[child.id] @ P_matrices[child.id].T
                    partial = contribution if partial is None else partial * contribution
                    scale = scale + log_scale[child.id]
                    count = count + present[child.id]
                partial, scale = _rescale(partial, scale)
                present[node.id] = count

            partials[node.id] = partial
            log_scale[node.id] = scale

            with np.errstate(divide='ignore'):
                log_f = np.log(partial[:, :K] @ pi) + scale
            # A character inserted at this node must be ancestral to every observed character
            admissible = present[node.id] == self.pip_present_total
            log_terms.append(np.where(admissible[:-1], log_weight[node.id] + log_f[:-1], -np.inf))

            # Empty column: the insertion dies on its edge, or every copy is deleted below
            weight = np.exp(log_weight[node.id])
            p_empty += insertion[node.id] - weight + weight * np.exp(log_f[-1])

        column_log = logsumexp(np.array(log_terms), axis=0)
        column_part = float(np.dot(self.pip_weights, column_log))

        m = self.pip_n_columns
        total = m * np.log(nu) - gammaln(m + 1) + (p_empty - 1.0) * nu + column_part
        return float(total), column_part


def _rescale(partial: np.ndarray, scale) -> tuple[np.ndarray, np.ndarray]:
    """Divide each pattern's partials by their maximum and accumulate the log factor."""
    factor = partial.max(axis=1)
    zero = factor <= 0
    factor = np.where(zero, 1.0, factor)
    return partial / factor[:, np.newaxis], scale + np.log(factor)
