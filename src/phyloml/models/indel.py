"""
Gap handling models.

Gaps are either treated as missing data (no extra parameters) or modelled
with the Poisson Indel Process (PIP), which adds an insertion rate lambda and
a deletion rate mu.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Union

import numpy as np

from ..exceptions import ConfigurationError


class GapHandling(str, Enum):
    """How gaps in the alignment are treated."""
    PIP = "pip"
    MISSING = "missing"


@dataclass(frozen=True)
class MissingData:
    """Gaps carry no information; they are treated like unknown characters."""

    n_params = 0

    @property
    def mode(self) -> GapHandling:
        return GapHandling.MISSING

    def to_dict(self) -> dict:
        return {'gap_handling': self.mode.value}


@dataclass(frozen=True)
class PIP:
    """
    Poisson Indel Process parameters.

    Attributes
    ----------
    lam : float
        Insertion rate (lambda), strictly positive
    mu : float
        Deletion rate, strictly positive
    """

    lam: float
    mu: float

    n_params = 2

    def __post_init__(self):
        for name, value in (('lambda', self.lam), ('mu', self.mu)):
            if not np.isfinite(value) or value <= 0:
                raise ConfigurationError(f"PIP {name} must be positive, got {value}")

    @property
    def mode(self) -> GapHandling:
        return GapHandling.PIP

    @classmethod
    def initial(cls, n_columns: int, tree_length: float, mu: float = 0.1) -> "PIP":
        """
        Starting values for PIP rates.

        Picks lambda so that the expected number of alignment columns,
        lambda * (tree_length + 1/mu), equals the observed number.
        """
        lam = n_columns / (tree_length + 1.0 / mu)
        return cls(lam=float(lam), mu=float(mu))

    def to_dict(self) -> dict:
        return {'gap_handling': self.mode.value, 'lambda': float(self.lam), 'mu': float(self.mu)}


GapModel = Union[MissingData, PIP]
