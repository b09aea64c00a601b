"""
Iterative maximum-likelihood tree optimization.

:class:`TreeOptimizer` drives the loop

    INIT -> MODEL_OPT -> TOPOLOGY_OPT -> BRANCH_OPT -> CHECK_CONVERGENCE
             ^                                              |
             +----------------------------------------------+--> TERMINATED

Every phase works on a copy of the current state and the controller commits
the phase result only when it succeeds. When a phase raises
:class:`~phyloml.exceptions.NumericalInstability`, or the SPR worker pool
raises :class:`~phyloml.exceptions.WorkerFailure`, the run stops and the
last committed state is reported.
"""

import json
import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Optional, Union

import numpy as np

from ..config import OptimizerSettings
from ..core.likelihood import LikelihoodCalculator
from ..exceptions import NumericalInstability, WorkerFailure
from ..io.sequences import Alignment
from ..io.trees import Tree
from ..models.indel import PIP, GapHandling, GapModel, MissingData
from ..models.substitution import FrequencyOptimisation, SubstitutionModel
from .branch import BranchOptimizer
from .distance_init import build_nj_tree
from .model_params import ModelOptimizer
from .parallel import make_scheduler
from .spr import SPRSearch

logger = logging.getLogger(__name__)


class OptimizationPhase(str, Enum):
    INIT = "init"
    MODEL_OPT = "model"
    TOPOLOGY_OPT = "topology"
    BRANCH_OPT = "branch"
    CHECK_CONVERGENCE = "check_convergence"
    TERMINATED = "terminated"


class TerminationReason(str, Enum):
    """Why the optimization loop stopped."""
    CONVERGED = "converged"
    MAX_ITERATIONS = "max_iterations"
    NUMERICAL_INSTABILITY = "numerical_instability"
    WORKER_FAILURE = "worker_failure"


@dataclass
class OptimizationState:
    """
    Current best tree, model and log-likelihood.

    Only the controller replaces the state; phases receive copies.
    """

    tree: Tree
    model: SubstitutionModel
    gaps: GapModel
    log_likelihood: float
    iteration: int = 0
    delta: float = float('inf')

    def copy(self) -> "OptimizationState":
        # Models are frozen, only the tree needs copying
        return replace(self, tree=self.tree.copy())


@dataclass(frozen=True)
class IterationRecord:
    """Summary of one full iteration, for the log-likelihood trace."""

    iteration: int
    log_likelihood: float
    delta: float
    spr_moves: int
    tree_length: float
    model: dict
    gaps: dict

    def to_dict(self) -> dict[str, Any]:
        return {
            'iteration': self.iteration,
            'log_likelihood': float(self.log_likelihood),
            'delta': float(self.delta),
            'spr_moves': self.spr_moves,
            'tree_length': float(self.tree_length),
            'model': self.model,
            'gaps': self.gaps,
        }


@dataclass
class OptimizationResult:
    """
    Final state and trace of an optimization run.

    Attributes
    ----------
    tree : Tree
        Final tree with optimized branch lengths
    model : SubstitutionModel
        Final substitution model
    gaps : MissingData or PIP
        Final gap model
    log_likelihood : float
        Log-likelihood of the final state
    initial_log_likelihood : float
        Log-likelihood of the starting tree and model
    iterations : int
        Number of completed iterations
    termination : TerminationReason
        Why the loop stopped
    seed : int
        PRNG seed used for the run
    trace : list[IterationRecord]
        One record per completed iteration
    error : str, optional
        Message of the failure that aborted the run
    start_tree : Tree, optional
        Tree the optimization started from
    """

    tree: Tree
    model: SubstitutionModel
    gaps: GapModel
    log_likelihood: float
    initial_log_likelihood: float
    iterations: int
    termination: TerminationReason
    seed: int
    trace: list[IterationRecord] = field(default_factory=list)
    error: Optional[str] = None
    start_tree: Optional[Tree] = field(default=None, repr=False)

    @property
    def converged(self) -> bool:
        return self.termination is TerminationReason.CONVERGED

    @property
    def aborted(self) -> bool:
        return self.termination in (
            TerminationReason.NUMERICAL_INSTABILITY, TerminationReason.WORKER_FAILURE
        )

    def summary(self) -> str:
        """
        Human-readable summary of the run.

        Returns
        -------
        str
            Formatted multi-line summary
        """
        lines = []
        lines.append("=" * 70)
        lines.append(f"MODEL: {self.model.model_id.value} ({self.gaps.mode.value} gaps)")
        lines.append("=" * 70)
        lines.append("")
        lines.append(f"Log-likelihood:         {self.log_likelihood:.6f}")
        lines.append(f"Initial log-likelihood: {self.initial_log_likelihood:.6f}")
        lines.append(f"Iterations:             {self.iterations}")
        lines.append(f"Termination:            {self.termination.value}")
        lines.append(f"Seed:                   {self.seed}")
        if self.error:
            lines.append(f"Error:                  {self.error}")
        lines.append("")
        lines.append("PARAMETERS:")
        for name, value in zip(self.model.spec.param_names, self.model.params):
            lines.append(f"  {name} = {value:.4f}")
        lines.append("  frequencies = " + ' '.join(f"{f:.4f}" for f in self.model.freqs))
        if isinstance(self.gaps, PIP):
            lines.append(f"  lambda = {self.gaps.lam:.4f}")
            lines.append(f"  mu = {self.gaps.mu:.4f}")
        lines.append("")
        lines.append("TREE:")
        lines.append(f"  {self.tree.n_leaves} sequences")
        lines.append(f"  total length {self.tree.total_length:.4f}")
        lines.append(f"  {self.tree.to_newick()}")
        lines.append("")
        lines.append("=" * 70)
        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        """JSON-serializable dictionary (the tree is given as Newick)."""
        return {
            'log_likelihood': float(self.log_likelihood),
            'initial_log_likelihood': float(self.initial_log_likelihood),
            'iterations': self.iterations,
            'termination': self.termination.value,
            'converged': self.converged,
            'seed': self.seed,
            'model': self.model.to_dict(),
            'gaps': self.gaps.to_dict(),
            'tree': self.tree.to_newick(),
            'trace': [record.to_dict() for record in self.trace],
            'error': self.error,
        }

    def to_json(self, filepath: Optional[str] = None, indent: int = 2) -> str:
        """
        Export results as JSON.

        Parameters
        ----------
        filepath : str, optional
            If provided, write JSON to this file
        indent : int, default=2
            Indentation level for pretty printing

        Returns
        -------
        str
            JSON string representation
        """
        json_str = json.dumps(self.to_dict(), indent=indent)
        if filepath:
            with open(filepath, 'w') as f:
                f.write(json_str)
        return json_str

    def __str__(self) -> str:
        return self.summary()

    def __repr__(self) -> str:
        return (
            f"OptimizationResult(model='{self.model.model_id.value}', "
            f"lnL={self.log_likelihood:.2f}, iterations={self.iterations}, "
            f"termination='{self.termination.value}')"
        )


class TreeOptimizer:
    """
    Convergence controller for joint tree and model optimization.

    Each iteration optimizes model parameters, searches SPR moves and
    re-optimizes branch lengths. The loop stops when the log-likelihood
    changes by less than ``settings.epsilon`` between iterations or after
    ``settings.max_iterations`` iterations.
    """

    def __init__(
        self,
        alignment: Alignment,
        model: SubstitutionModel,
        gaps: Union[GapModel, GapHandling] = GapHandling.PIP,
        tree: Optional[Tree] = None,
        settings: Optional[OptimizerSettings] = None,
        freq_opt: FrequencyOptimisation = FrequencyOptimisation.EMPIRICAL,
    ):
        """
        Initialize controller.

        Parameters
        ----------
        alignment : Alignment
            Sequence alignment
        model : SubstitutionModel
            Starting substitution model
        gaps : MissingData, PIP or GapHandling
            Starting gap model; ``GapHandling.PIP`` picks starting rates from
            the data once the starting tree is known
        tree : Tree, optional
            Starting tree; built by neighbor joining when omitted
        settings : OptimizerSettings, optional
            Loop settings
        freq_opt : FrequencyOptimisation
            Whether frequencies are optimized with the other parameters
        """
        self.alignment = alignment
        self.start_model = model
        self.start_gaps = gaps
        self.start_tree = tree
        self.settings = settings or OptimizerSettings()
        self.freq_opt = freq_opt

        self.seed = self.settings.resolve_seed()
        self.rng = np.random.default_rng(self.seed)
        self.calc = LikelihoodCalculator(alignment)
        self.phase = OptimizationPhase.INIT

    def _resolve_gaps(self, tree: Tree) -> GapModel:
        gaps = self.start_gaps
        if gaps is GapHandling.PIP:
            return PIP.initial(self.calc.pip_n_columns, tree.total_length)
        if gaps is GapHandling.MISSING:
            return MissingData()
        return gaps

    def initialize(self) -> OptimizationState:
        """
        Build the starting state.

        Raises
        ------
        ConfigurationError
            If tree and alignment do not share the same leaf names
        NumericalInstability
            If the starting log-likelihood is not finite
        """
        self.phase = OptimizationPhase.INIT
        if self.start_tree is None:
            logger.info("No starting tree given, building a neighbor-joining tree")
            tree = build_nj_tree(self.alignment, rng=self.rng)
        else:
            tree = self.start_tree.copy()
        self.calc.check_tree(tree)

        gaps = self._resolve_gaps(tree)
        logl = self.calc.log_likelihood(tree, self.start_model, gaps)
        if not np.isfinite(logl):
            raise NumericalInstability(self.phase.value, logl, "starting tree and model")

        logger.info("Initial log-likelihood: %.6f", logl)
        return OptimizationState(tree, self.start_model, gaps, float(logl))

    def _model_phase(self, state: OptimizationState) -> OptimizationState:
        optimizer = ModelOptimizer(
            self.calc, state.tree, freq_opt=self.freq_opt, maxiter=self.settings.model_maxiter
        )
        model, gaps, logl = optimizer.optimize(state.model, state.gaps)
        return replace(state, model=model, gaps=gaps, log_likelihood=float(logl))

    def _topology_phase(self, state: OptimizationState, scheduler) -> tuple[OptimizationState, int]:
        search = SPRSearch(
            scheduler,
            state.model,
            state.gaps,
            tolerance=self.settings.move_tolerance,
            max_moves=self.settings.max_spr_moves,
        )
        tree, logl, moves = search.run(state.tree, state.log_likelihood)
        return replace(state, tree=tree, log_likelihood=float(logl)), len(moves)

    def _branch_phase(self, state: OptimizationState) -> OptimizationState:
        state = state.copy()
        optimizer = BranchOptimizer(
            self.calc,
            state.model,
            state.gaps,
            tolerance=self.settings.branch_tolerance,
            max_sweeps=self.settings.max_branch_sweeps,
        )
        logl = optimizer.optimize(state.tree)
        return replace(state, log_likelihood=float(logl))

    def _check(self, state: OptimizationState) -> OptimizationState:
        if not np.isfinite(state.log_likelihood):
            raise NumericalInstability(self.phase.value, state.log_likelihood)
        return state

    def run(self) -> OptimizationResult:
        """
        Run the optimization loop.

        Returns
        -------
        OptimizationResult
            Final state; on numerical failure, the last valid state
        """
        state = self.initialize()
        start_tree = state.tree.copy()
        initial_logl = state.log_likelihood
        trace = []
        termination = None
        error = None

        with make_scheduler(self.calc, self.settings.parallel, self.settings.workers) as scheduler:
            logger.debug(
                "Scoring SPR candidates with %d worker(s)", scheduler.workers
            )
            while termination is None:
                previous_logl = state.log_likelihood
                try:
                    self.phase = OptimizationPhase.MODEL_OPT
                    candidate = self._check(self._model_phase(state))

                    self.phase = OptimizationPhase.TOPOLOGY_OPT
                    candidate, n_moves = self._topology_phase(candidate, scheduler)
                    candidate = self._check(candidate)

                    self.phase = OptimizationPhase.BRANCH_OPT
                    candidate = self._check(self._branch_phase(candidate))
                except NumericalInstability as e:
                    logger.error("Aborting run, keeping last valid state: %s", e)
                    termination = TerminationReason.NUMERICAL_INSTABILITY
                    error = str(e)
                    break
                except WorkerFailure as e:
                    logger.error("Aborting run, keeping last valid state: %s", e)
                    termination = TerminationReason.WORKER_FAILURE
                    error = str(e)
                    break

                self.phase = OptimizationPhase.CHECK_CONVERGENCE
                delta = candidate.log_likelihood - previous_logl
                state = replace(candidate, iteration=state.iteration + 1, delta=delta)
                trace.append(IterationRecord(
                    iteration=state.iteration,
                    log_likelihood=state.log_likelihood,
                    delta=delta,
                    spr_moves=n_moves,
                    tree_length=state.tree.total_length,
                    model=state.model.to_dict(),
                    gaps=state.gaps.to_dict(),
                ))
                logger.info(
                    "Iteration %d: logL=%.6f, delta=%.6g, SPR moves=%d",
                    state.iteration, state.log_likelihood, delta, n_moves,
                )

                if abs(delta) < self.settings.epsilon:
                    termination = TerminationReason.CONVERGED
                elif state.iteration >= self.settings.max_iterations:
                    termination = TerminationReason.MAX_ITERATIONS

        self.phase = OptimizationPhase.TERMINATED
        logger.info(
            "Optimization finished after %d iteration(s): %s, final logL=%.6f",
            state.iteration, termination.value, state.log_likelihood,
        )
        return OptimizationResult(
            tree=state.tree,
            model=state.model,
            gaps=state.gaps,
            log_likelihood=state.log_likelihood,
            initial_log_likelihood=initial_logl,
            iterations=state.iteration,
            termination=termination,
            seed=self.seed,
            trace=trace,
            error=error,
            start_tree=start_tree,
        )
