"""
Core algorithms for phylogenetic likelihood calculation.

This module provides low-level computational routines:

- **Likelihood calculation**: Felsenstein's pruning algorithm, with gaps as
  missing data or under the Poisson Indel Process
  (:mod:`phyloml.core.likelihood`)
- **Matrix operations**: Reversible rate matrices and their eigendecomposition

These are expert-level functions typically not needed by end users.
The high-level API (:mod:`phyloml.api`) provides easier access.
"""

from phyloml.core.matrix import (
    create_reversible_Q,
    eigen_decompose_rev,
    rates_from_joint_frequencies,
    transition_matrix,
)

__all__ = [
    "create_reversible_Q",
    "eigen_decompose_rev",
    "rates_from_joint_frequencies",
    "transition_matrix",
]
