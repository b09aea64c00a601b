"""
Optimization routines for maximum likelihood tree reconstruction.

- **Model parameters**: rates, frequencies and PIP rates with L-BFGS-B
- **Branch lengths**: per-edge bounded Brent search
- **Topology**: SPR search with a serial or process-pool scheduler
- **Controller**: the iteration loop and convergence check
- **Starting trees**: neighbor joining on corrected distances

Each optimizer uses scipy.optimize for the numerical work.
"""

from phyloml.optimize.branch import BranchOptimizer
from phyloml.optimize.model_params import ModelOptimizer
from phyloml.optimize.spr import SPRMove, SPRSearch, select_best_move
from phyloml.optimize.parallel import ProcessScheduler, SerialScheduler
from phyloml.optimize.optimizer import (
    OptimizationPhase,
    OptimizationResult,
    TerminationReason,
    TreeOptimizer,
)

__all__ = [
    "BranchOptimizer",
    "ModelOptimizer",
    "SPRMove",
    "SPRSearch",
    "select_best_move",
    "ProcessScheduler",
    "SerialScheduler",
    "OptimizationPhase",
    "OptimizationResult",
    "TerminationReason",
    "TreeOptimizer",
]
