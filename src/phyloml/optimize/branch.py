"""
Branch length optimization for a fixed topology and model.
"""

import logging

import numpy as np
from scipy.optimize import minimize_scalar

from ..core.likelihood import LikelihoodCalculator
from ..exceptions import NumericalInstability
from ..io.trees import Tree
from ..models.indel import GapModel
from ..models.substitution import SubstitutionModel

logger = logging.getLogger(__name__)

BRANCH_BOUNDS = (1e-6, 10.0)


class BranchOptimizer:
    """
    Optimize edge lengths one at a time.

    Each edge length is maximised with a bounded Brent search in log space
    while all other lengths are held fixed. Sweeps over all edges repeat until
    the largest change in a sweep falls below ``tolerance`` or
    ``max_sweeps`` sweeps have run. A new length is only kept when it
    improves the log-likelihood, so the log-likelihood never decreases.
    """

    def __init__(
        self,
        calculator: LikelihoodCalculator,
        model: SubstitutionModel,
        gaps: GapModel,
        tolerance: float = 1e-4,
        max_sweeps: int = 10,
    ):
        """
        Initialize optimizer.

        Parameters
        ----------
        calculator : LikelihoodCalculator
            Likelihood evaluator for the alignment
        model : SubstitutionModel
            Substitution model (held fixed)
        gaps : MissingData or PIP
            Gap model (held fixed)
        tolerance : float
            Largest per-edge change that ends the sweeps
        max_sweeps : int
            Maximum number of sweeps over all edges
        """
        self.calc = calculator
        self.model = model
        self.gaps = gaps
        self.tolerance = tolerance
        self.max_sweeps = max_sweeps

    def log_likelihood(self, tree: Tree) -> float:
        return self.calc.log_likelihood(tree, self.model, self.gaps)

    def optimize_edge(self, tree: Tree, edge_id: int, current_logl: float) -> float:
        """
        Maximise the log-likelihood over a single edge length.

        The tree is modified in place. Returns the log-likelihood after the
        update (``current_logl`` when the edge is left unchanged).
        """
        node = tree.get_node(edge_id)
        original = node.branch_length

        def negative_log_likelihood(log_length: float) -> float:
            node.branch_length = float(np.exp(log_length))
            logl = self.log_likelihood(tree)
            if not np.isfinite(logl):
                return 1e10
            return -logl

        result = minimize_scalar(
            negative_log_likelihood,
            bounds=(np.log(BRANCH_BOUNDS[0]), np.log(BRANCH_BOUNDS[1])),
            method='bounded',
            options={'xatol': 1e-6},
        )

        candidate = float(np.exp(result.x))
        node.branch_length = candidate
        logl = self.log_likelihood(tree)
        if np.isfinite(logl) and (logl > current_logl or not np.isfinite(current_logl)):
            return logl

        node.branch_length = original
        return current_logl

    def optimize(self, tree: Tree) -> float:
        """
        Optimize all branch lengths of ``tree`` in place.

        Returns
        -------
        float
            Log-likelihood after optimization

        Raises
        ------
        NumericalInstability
            If the resulting log-likelihood is not finite
        """
        logl = self.log_likelihood(tree)
        edges = tree.edge_ids()

        for sweep in range(1, self.max_sweeps + 1):
            max_change = 0.0
            for edge_id in edges:
                before = tree.get_node(edge_id).branch_length
                logl = self.optimize_edge(tree, edge_id, logl)
                max_change = max(max_change, abs(tree.get_node(edge_id).branch_length - before))

            logger.debug(
                "Branch sweep %d: logL=%.6f, largest change=%.2e", sweep, logl, max_change
            )
            if max_change < self.tolerance:
                break

        if not np.isfinite(logl):
            raise NumericalInstability("branch", logl)
        return logl
