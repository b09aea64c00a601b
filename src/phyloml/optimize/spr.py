"""
Subtree pruning and regrafting (SPR) topology search.

One sweep scores every admissible (prune edge, regraft edge) pair of the
current tree. Each candidate tree has its pendant branch re-optimized before
it is scored. The best candidate is then selected by an ordered reduction
that does not depend on how the scoring work was distributed.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Optional

import numpy as np

from ..core.likelihood import LikelihoodCalculator
from ..exceptions import NumericalInstability
from ..io.trees import Tree
from ..models.indel import GapModel
from ..models.substitution import SubstitutionModel
from .branch import BranchOptimizer

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SPRMove:
    """
    A scored SPR candidate.

    Attributes
    ----------
    prune_id : int
        Edge above the subtree that moves
    regraft_id : int
        Edge the subtree is attached to
    log_likelihood : float
        Log-likelihood of the resulting tree
    branch_length : float
        Optimized length of the pendant branch
    """

    prune_id: int
    regraft_id: int
    log_likelihood: float
    branch_length: float

    @property
    def key(self) -> tuple[int, int]:
        return (self.prune_id, self.regraft_id)


@dataclass(frozen=True)
class SPRSnapshot:
    """Read-only state handed to whoever scores a prune-edge row."""

    tree: Tree
    model: SubstitutionModel
    gaps: GapModel


def prune_edges(tree: Tree) -> list[int]:
    """Edges with at least one admissible regraft edge, ascending."""
    return [edge_id for edge_id in tree.edge_ids() if tree.regraft_candidates(edge_id)]


def score_prune_edge(
    calculator: LikelihoodCalculator, snapshot: SPRSnapshot, prune_id: int
) -> list[SPRMove]:
    """
    Score every regraft edge for one prune edge.

    The snapshot tree is copied for each candidate and never modified.

    Returns
    -------
    list[SPRMove]
        One move per admissible regraft edge, in ascending regraft order
    """
    optimizer = BranchOptimizer(calculator, snapshot.model, snapshot.gaps)
    moves = []
    for regraft_id in snapshot.tree.regraft_candidates(prune_id):
        tree = snapshot.tree.copy()
        pendant = tree.apply_spr(prune_id, regraft_id)
        logl = optimizer.log_likelihood(tree)
        logl = optimizer.optimize_edge(tree, pendant.id, logl)
        moves.append(SPRMove(prune_id, regraft_id, float(logl), pendant.branch_length))
    return moves


def select_best_move(moves: Iterable[SPRMove], tolerance: float) -> Optional[SPRMove]:
    """
    Ordered reduction over scored moves.

    Moves are visited in (prune_id, regraft_id) order. A later move replaces
    the current best only when it beats it by more than ``tolerance``, so
    among moves within the tolerance of each other the lowest pair wins.
    Non-finite scores are skipped.

    Parameters
    ----------
    moves : iterable of SPRMove
        Scored candidates, in any order
    tolerance : float
        Tie tolerance on the log-likelihood

    Returns
    -------
    SPRMove or None
        None if no move has a finite score
    """
    best = None
    for move in sorted(moves, key=lambda m: m.key):
        if not np.isfinite(move.log_likelihood):
            continue
        if best is None or move.log_likelihood > best.log_likelihood + tolerance:
            best = move
    return best


class SPRSearch:
    """
    Hill-climbing SPR search.

    Each sweep scores the full candidate matrix through a scheduler and
    applies the selected move if it improves the log-likelihood by more than
    ``tolerance``. Sweeps repeat until no move is accepted or ``max_moves``
    moves have been applied.
    """

    def __init__(
        self,
        scheduler,
        model: SubstitutionModel,
        gaps: GapModel,
        tolerance: float = 1e-3,
        max_moves: int = 10,
    ):
        """
        Initialize search.

        Parameters
        ----------
        scheduler : SerialScheduler or ProcessScheduler
            Evaluates prune-edge rows and returns them in row order
        model : SubstitutionModel
            Substitution model (held fixed)
        gaps : MissingData or PIP
            Gap model (held fixed)
        tolerance : float
            Acceptance and tie tolerance on the log-likelihood
        max_moves : int
            Maximum number of moves applied in one search
        """
        self.scheduler = scheduler
        self.model = model
        self.gaps = gaps
        self.tolerance = tolerance
        self.max_moves = max_moves

    def sweep(self, tree: Tree, current_logl: float) -> Optional[SPRMove]:
        """
        Score all candidates of ``tree`` and return the move to apply.

        Returns None when the best move does not improve on
        ``current_logl`` by more than the tolerance.
        """
        snapshot = SPRSnapshot(tree, self.model, self.gaps)
        rows = self.scheduler.score_rows(snapshot, prune_edges(tree))
        candidates = [move for row in rows for move in row]

        best = select_best_move(candidates, self.tolerance)
        if best is None:
            logger.debug("SPR sweep: no finite candidate among %d", len(candidates))
            return None

        logger.debug(
            "SPR sweep: %d candidates, best prune=%d regraft=%d logL=%.6f (current %.6f)",
            len(candidates), best.prune_id, best.regraft_id, best.log_likelihood, current_logl,
        )
        if best.log_likelihood > current_logl + self.tolerance:
            return best
        return None

    def run(self, tree: Tree, current_logl: float) -> tuple[Tree, float, list[SPRMove]]:
        """
        Apply improving moves to a copy of ``tree``.

        Returns
        -------
        tuple
            (tree, log_likelihood, accepted moves)

        Raises
        ------
        NumericalInstability
            If an applied move yields a non-finite log-likelihood
        """
        tree = tree.copy()
        accepted = []

        while len(accepted) < self.max_moves:
            move = self.sweep(tree, current_logl)
            if move is None:
                break

            pendant = tree.apply_spr(move.prune_id, move.regraft_id)
            pendant.branch_length = move.branch_length
            logl = self.scheduler.calculator.log_likelihood(tree, self.model, self.gaps)
            if not np.isfinite(logl):
                raise NumericalInstability("topology", logl)

            logger.debug(
                "Accepted SPR move prune=%d regraft=%d: %.6f -> %.6f",
                move.prune_id, move.regraft_id, current_logl, logl,
            )
            current_logl = logl
            accepted.append(move)

        return tree, current_logl, accepted
