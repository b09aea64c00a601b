"""
Substitution models and the model registry.

Model families form a closed set (:class:`SubstModelId`). Every family is
described by a registry entry (:class:`ModelSpec`) giving its alphabet,
parameter names, defaults and bounds; :class:`SubstitutionModel` combines a
family with concrete parameters and frequencies and builds the rate matrix.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from functools import cached_property
from importlib import resources
from typing import Optional, Sequence

import numpy as np

from ..core.matrix import create_reversible_Q, eigen_decompose_rev, rates_from_joint_frequencies
from ..exceptions import ConfigurationError
from ..io.sequences import AMINO_ACIDS, N_STATES, Alignment, empirical_frequencies


RATE_BOUNDS = (1e-4, 100.0)
FREQ_TOLERANCE = 1e-6
# Frequencies are floored before the eigendecomposition, which divides by sqrt(pi)
MIN_FREQUENCY = 1e-10


class SubstModelId(str, Enum):
    """Supported substitution model families."""
    JC69 = "JC69"
    K80 = "K80"
    HKY = "HKY"
    TN93 = "TN93"
    GTR = "GTR"
    WAG = "WAG"
    HIVB = "HIVB"
    BLOSUM = "BLOSUM"

    @classmethod
    def parse(cls, name: "str | SubstModelId") -> "SubstModelId":
        """
        Look up a model id by name (case-insensitive, HKY85 and BLOSUM62 accepted).

        Raises
        ------
        ConfigurationError
            If the name is not a known model
        """
        if isinstance(name, cls):
            return name
        key = str(name).strip().upper()
        key = _ALIASES.get(key, key)
        try:
            return cls(key)
        except ValueError:
            valid = ', '.join(m.value for m in cls)
            raise ConfigurationError(f"Unknown model '{name}'. Valid models: {valid}")


_ALIASES = {"HKY85": "HKY", "BLOSUM62": "BLOSUM"}


class FrequencyOptimisation(str, Enum):
    """Where stationary frequencies come from."""
    FIXED = "fixed"
    EMPIRICAL = "empirical"
    ESTIMATED = "estimated"


def read_paml_exchangeabilities(text: str, n_states: int = 20) -> tuple[np.ndarray, np.ndarray]:
    """
    Parse a PAML-format empirical amino acid model.

    The file holds the lower triangle of the exchangeability matrix
    (row i has i entries) followed by the stationary frequencies; anything
    after those numbers is ignored.

    Parameters
    ----------
    text : str
        File contents
    n_states : int
        Alphabet size

    Returns
    -------
    rates : ndarray, shape (n_states, n_states)
        Symmetric exchangeabilities with zero diagonal
    freqs : ndarray, shape (n_states,)
        Frequencies normalised to sum to 1
    """
    n_rates = n_states * (n_states - 1) // 2
    values = []
    for token in text.split():
        try:
            values.append(float(token))
        except ValueError:
            break
        if len(values) == n_rates + n_states:
            break

    if len(values) != n_rates + n_states:
        raise ValueError(
            f"Expected {n_rates + n_states} numbers in PAML model file, found {len(values)}"
        )

    rates = np.zeros((n_states, n_states))
    k = 0
    for i in range(1, n_states):
        for j in range(i):
            rates[i, j] = rates[j, i] = values[k]
            k += 1

    freqs = np.array(values[n_rates:])
    return rates, freqs / freqs.sum()


def read_log_odds_model(text: str, n_states: int = 20) -> tuple[np.ndarray, np.ndarray]:
    """
    Derive a reversible model from a half-bit log-odds score table.

    The file holds the square score matrix ``s`` (row by row) followed by
    the background frequencies ``p``; anything after is ignored. Pair
    frequencies ``p_i p_j 2^(s_ij / 2)`` are turned into exchangeabilities
    with :func:`~phyloml.core.matrix.rates_from_joint_frequencies`.

    Returns
    -------
    rates : ndarray, shape (n_states, n_states)
        Symmetric exchangeabilities with zero diagonal
    freqs : ndarray, shape (n_states,)
        Marginal frequencies of the implied pair table
    """
    n_values = n_states * n_states + n_states
    values = []
    for token in text.split():
        try:
            values.append(float(token))
        except ValueError:
            break
        if len(values) == n_values:
            break

    if len(values) != n_values:
        raise ValueError(f"Expected {n_values} numbers in log-odds file, found {len(values)}")

    scores = np.array(values[:n_states * n_states]).reshape(n_states, n_states)
    background = np.array(values[n_states * n_states:])
    background = background / background.sum()
    joint = np.outer(background, background) * np.exp2(scores / 2.0)
    return rates_from_joint_frequencies(joint)


def _bundled_text(filename: str) -> str:
    return resources.files('phyloml.models').joinpath('data', filename).read_text()


def _load_bundled(filename: str) -> tuple[np.ndarray, np.ndarray]:
    return read_paml_exchangeabilities(_bundled_text(filename), n_states=len(AMINO_ACIDS))


_EMPIRICAL_MODELS: dict[SubstModelId, tuple[np.ndarray, np.ndarray]] = {
    SubstModelId.WAG: _load_bundled('wag.dat'),
    SubstModelId.HIVB: _load_bundled('hivb.dat'),
    SubstModelId.BLOSUM: read_log_odds_model(
        _bundled_text('blosum62.txt'), n_states=len(AMINO_ACIDS)
    ),
}


def _empirical_spec(model_id: SubstModelId) -> "ModelSpec":
    _, freqs = _EMPIRICAL_MODELS[model_id]
    return ModelSpec(model_id, 'aa', model_freqs=tuple(float(f) for f in freqs))


@dataclass(frozen=True)
class ModelSpec:
    """
    Registry entry for a model family.

    Attributes
    ----------
    model_id : SubstModelId
        Family identifier
    alphabet : str
        'dna' or 'aa'
    param_names : tuple[str, ...]
        Names of the rate parameters, in vector order
    defaults : tuple[float, ...]
        Default parameter values
    uniform_freqs : bool
        Frequencies are fixed at 1/K regardless of the data (JC69, K80)
    model_freqs : tuple[float, ...], optional
        Frequencies published with an empirical model
    """

    model_id: SubstModelId
    alphabet: str
    param_names: tuple[str, ...] = ()
    defaults: tuple[float, ...] = ()
    uniform_freqs: bool = False
    model_freqs: Optional[tuple[float, ...]] = field(default=None, repr=False)

    @property
    def parameter_count(self) -> int:
        return len(self.param_names)

    @property
    def n_states(self) -> int:
        return N_STATES[self.alphabet]

    @property
    def bounds(self) -> tuple[tuple[float, float], ...]:
        return (RATE_BOUNDS,) * self.parameter_count

    def default_frequencies(self) -> np.ndarray:
        if self.model_freqs is not None:
            return np.array(self.model_freqs)
        return np.full(self.n_states, 1.0 / self.n_states)


MODEL_REGISTRY: dict[SubstModelId, ModelSpec] = {
    SubstModelId.JC69: ModelSpec(SubstModelId.JC69, 'dna', uniform_freqs=True),
    SubstModelId.K80: ModelSpec(SubstModelId.K80, 'dna', ('alpha',), (2.0,), uniform_freqs=True),
    SubstModelId.HKY: ModelSpec(SubstModelId.HKY, 'dna', ('alpha',), (2.0,)),
    SubstModelId.TN93: ModelSpec(
        SubstModelId.TN93, 'dna', ('alpha1', 'alpha2', 'beta'), (2.0, 2.0, 1.0)
    ),
    SubstModelId.GTR: ModelSpec(
        SubstModelId.GTR, 'dna',
        ('r_tc', 'r_ta', 'r_tg', 'r_ca', 'r_cg', 'r_ag'),
        (1.0,) * 6,
    ),
    SubstModelId.WAG: _empirical_spec(SubstModelId.WAG),
    SubstModelId.HIVB: _empirical_spec(SubstModelId.HIVB),
    SubstModelId.BLOSUM: _empirical_spec(SubstModelId.BLOSUM),
}


def get_model_spec(model: "str | SubstModelId") -> ModelSpec:
    """Registry lookup by id or name."""
    return MODEL_REGISTRY[SubstModelId.parse(model)]


def validate_frequencies(freqs: Sequence[float], n_states: int) -> np.ndarray:
    """
    Check that a frequency vector lies on the probability simplex.

    Raises
    ------
    ConfigurationError
        On wrong length, negative or non-finite entries, or a sum that is
        not 1 within ``FREQ_TOLERANCE``
    """
    freqs = np.asarray(freqs, dtype=np.float64)
    if freqs.shape != (n_states,):
        raise ConfigurationError(f"Expected {n_states} frequencies, got {freqs.size}")
    if not np.all(np.isfinite(freqs)) or np.any(freqs < 0):
        raise ConfigurationError(f"Frequencies must be non-negative, got {freqs.tolist()}")
    if abs(freqs.sum() - 1.0) > FREQ_TOLERANCE:
        raise ConfigurationError(f"Frequencies must sum to 1, got {freqs.sum()}")
    return freqs / freqs.sum()


def _nucleotide_exchangeabilities(model_id: SubstModelId, params: tuple[float, ...]) -> np.ndarray:
    # State order T, C, A, G: transitions are T<->C (0,1) and A<->G (2,3)
    if model_id is SubstModelId.JC69:
        return np.ones((4, 4))

    if model_id in (SubstModelId.K80, SubstModelId.HKY):
        # Transversion rate is the unit
        (alpha,) = params
        r_tc = r_ag = alpha
        r_ta = r_tg = r_ca = r_cg = 1.0
    elif model_id is SubstModelId.TN93:
        alpha1, alpha2, beta = params
        r_tc, r_ag = alpha1, alpha2
        r_ta = r_tg = r_ca = r_cg = beta
    else:
        r_tc, r_ta, r_tg, r_ca, r_cg, r_ag = params

    return np.array([
        [0.0, r_tc, r_ta, r_tg],
        [r_tc, 0.0, r_ca, r_cg],
        [r_ta, r_ca, 0.0, r_ag],
        [r_tg, r_cg, r_ag, 0.0],
    ])


@dataclass(frozen=True)
class SubstitutionModel:
    """
    A substitution model family with concrete parameters.

    Attributes
    ----------
    model_id : SubstModelId
        Model family
    params : tuple[float, ...]
        Rate parameters in registry order
    freqs : tuple[float, ...]
        Stationary frequencies
    """

    model_id: SubstModelId
    params: tuple[float, ...]
    freqs: tuple[float, ...]

    def __post_init__(self):
        spec = MODEL_REGISTRY[self.model_id]
        if len(self.params) != spec.parameter_count:
            raise ConfigurationError(
                f"{self.model_id.value} takes {spec.parameter_count} parameter(s) "
                f"({', '.join(spec.param_names) or 'none'}), got {len(self.params)}"
            )
        for name, value in zip(spec.param_names, self.params):
            if not np.isfinite(value) or value <= 0:
                raise ConfigurationError(
                    f"{self.model_id.value} parameter {name} must be positive, got {value}"
                )
        validate_frequencies(self.freqs, spec.n_states)

    @classmethod
    def create(
        cls,
        model: "str | SubstModelId",
        params: Optional[Sequence[float]] = None,
        freqs: Optional[Sequence[float]] = None,
        alignment: Optional[Alignment] = None,
        freq_opt: FrequencyOptimisation = FrequencyOptimisation.EMPIRICAL,
    ) -> "SubstitutionModel":
        """
        Build a model, deriving frequencies the way the registry prescribes.

        Parameters
        ----------
        model : str or SubstModelId
            Model name
        params : sequence of float, optional
            Rate parameters; registry defaults when empty
        freqs : sequence of float, optional
            Stationary frequencies; derived when empty
        alignment : Alignment, optional
            Source of empirical frequencies and alphabet check
        freq_opt : FrequencyOptimisation
            'fixed' uses model defaults, 'empirical' and 'estimated' start
            from the alignment's observed frequencies

        Returns
        -------
        SubstitutionModel
        """
        spec = get_model_spec(model)

        if alignment is not None and alignment.seqtype != spec.alphabet:
            kind = 'DNA' if spec.alphabet == 'dna' else 'protein'
            raise ConfigurationError(
                f"Model {spec.model_id.value} requires {kind} data, "
                f"alignment is '{alignment.seqtype}'"
            )

        if params is not None and len(params) > 0:
            params = tuple(float(p) for p in params)
        else:
            params = spec.defaults

        if spec.uniform_freqs:
            pi = np.full(spec.n_states, 1.0 / spec.n_states)
        elif freqs is not None and len(freqs) > 0:
            pi = validate_frequencies(freqs, spec.n_states)
        elif freq_opt is FrequencyOptimisation.FIXED or alignment is None:
            pi = spec.default_frequencies()
        else:
            pi = empirical_frequencies(alignment)

        return cls(spec.model_id, params, tuple(float(f) for f in pi))

    @property
    def spec(self) -> ModelSpec:
        return MODEL_REGISTRY[self.model_id]

    @property
    def parameter_count(self) -> int:
        return self.spec.parameter_count

    @property
    def bounds(self) -> tuple[tuple[float, float], ...]:
        return self.spec.bounds

    @property
    def n_states(self) -> int:
        return self.spec.n_states

    @property
    def frequencies(self) -> np.ndarray:
        return np.array(self.freqs)

    @property
    def frequencies_estimable(self) -> bool:
        return not self.spec.uniform_freqs

    def exchangeabilities(self) -> np.ndarray:
        """Symmetric exchangeability matrix for the current parameters."""
        if self.spec.alphabet == 'dna':
            return _nucleotide_exchangeabilities(self.model_id, self.params)
        rates, _ = _EMPIRICAL_MODELS[self.model_id]
        return rates.copy()

    def rate_matrix(self) -> np.ndarray:
        """
        Normalised rate matrix Q (one expected substitution per unit time).

        Returns
        -------
        np.ndarray, shape (n_states, n_states)
        """
        return create_reversible_Q(self.exchangeabilities(), self._safe_frequencies())

    def _safe_frequencies(self) -> np.ndarray:
        pi = np.maximum(self.frequencies, MIN_FREQUENCY)
        return pi / pi.sum()

    @cached_property
    def eigen(self) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Eigendecomposition of the rate matrix (cached per instance)."""
        pi = self._safe_frequencies()
        return eigen_decompose_rev(self.rate_matrix(), pi)

    def with_params(self, params: Sequence[float]) -> "SubstitutionModel":
        return replace(self, params=tuple(float(p) for p in params))

    def with_freqs(self, freqs: Sequence[float]) -> "SubstitutionModel":
        return replace(self, freqs=tuple(float(f) for f in freqs))

    def to_dict(self) -> dict:
        return {
            'model': self.model_id.value,
            'params': dict(zip(self.spec.param_names, (float(p) for p in self.params))),
            'freqs': [float(f) for f in self.freqs],
        }

    def __repr__(self) -> str:
        params = ', '.join(
            f"{name}={value:.4g}" for name, value in zip(self.spec.param_names, self.params)
        )
        return f"SubstitutionModel({self.model_id.value}{', ' + params if params else ''})"
