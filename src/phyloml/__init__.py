"""
phyloml: maximum-likelihood phylogenetic tree reconstruction.

Jointly optimizes tree topology (SPR search), branch lengths and
substitution/indel model parameters for nucleotide and protein alignments.
Gaps are either treated as missing data or modelled with the Poisson Indel
Process (PIP).

Quick Start
-----------
>>> from phyloml import optimize_tree
>>> result = optimize_tree("alignment.fasta", model="HKY", seed=42)
>>> print(result.summary())
>>> print(result.tree.to_newick())

Examples
--------
>>> # Start from a given tree, treat gaps as missing data, run serially
>>> result = optimize_tree(
...     "alignment.fasta", "start.nwk", model="GTR",
...     gap_handling="missing", parallel=False, max_iterations=10,
... )
>>> result.converged
True
"""

__version__ = "0.1.0"

# High-level API
from .api import optimize_tree, OptimizationResult, TerminationReason

# Configuration and errors
from .config import OptimizerSettings, RunConfig
from .exceptions import (
    PhyloMLError,
    ConfigurationError,
    NumericalInstability,
    TopologyInvariantViolation,
)

# I/O classes
from .io.sequences import Alignment
from .io.trees import Tree

# Models
from .models.substitution import SubstitutionModel, SubstModelId, FrequencyOptimisation
from .models.indel import PIP, MissingData, GapHandling

# Core likelihood calculator and controller (expert use)
from .core.likelihood import LikelihoodCalculator
from .optimize.optimizer import TreeOptimizer

__all__ = [
    # Simple API - Start here!
    "optimize_tree",
    "OptimizationResult",
    "TerminationReason",

    # Configuration
    "OptimizerSettings",
    "RunConfig",

    # Errors
    "PhyloMLError",
    "ConfigurationError",
    "NumericalInstability",
    "TopologyInvariantViolation",

    # I/O
    "Alignment",
    "Tree",

    # Models
    "SubstitutionModel",
    "SubstModelId",
    "FrequencyOptimisation",
    "PIP",
    "MissingData",
    "GapHandling",

    # Core (expert)
    "LikelihoodCalculator",
    "TreeOptimizer",

    # Version
    "__version__",
]
