"""
Model parameter optimization for a fixed tree.

Substitution rates, (optionally) stationary frequencies and PIP rates are
packed into one unconstrained-looking vector and optimized jointly with
L-BFGS-B:

- rates in log space, bounded by ``RATE_BOUNDS``; with more than one rate
  the last one stays at its starting value, since Q is normalised and a
  common scale of all rates has no effect on the likelihood
- frequencies as additive log-ratios against the last state, so every
  candidate vector stays on the probability simplex
- PIP lambda and mu in log space, bounded by ``PIP_BOUNDS``
"""

import logging

import numpy as np
from scipy.optimize import minimize

from ..core.likelihood import LikelihoodCalculator
from ..exceptions import NumericalInstability
from ..io.trees import Tree
from ..models.indel import PIP, GapModel
from ..models.substitution import FrequencyOptimisation, SubstitutionModel

logger = logging.getLogger(__name__)

PIP_BOUNDS = (1e-6, 1e4)
LOG_RATIO_BOUND = 20.0


class ModelOptimizer:
    """
    Optimize substitution and gap model parameters on a fixed tree.

    The tree is never modified. When the optimizer cannot improve on the
    starting point the starting model is returned unchanged.
    """

    def __init__(
        self,
        calculator: LikelihoodCalculator,
        tree: Tree,
        freq_opt: FrequencyOptimisation = FrequencyOptimisation.EMPIRICAL,
        maxiter: int = 200,
    ):
        """
        Initialize optimizer.

        Parameters
        ----------
        calculator : LikelihoodCalculator
            Likelihood evaluator for the alignment
        tree : Tree
            Tree with branch lengths (held fixed)
        freq_opt : FrequencyOptimisation
            Frequencies are only optimized in 'estimated' mode
        maxiter : int
            L-BFGS-B iteration cap
        """
        self.calc = calculator
        self.tree = tree
        self.freq_opt = freq_opt
        self.maxiter = maxiter

    def _layout(self, model: SubstitutionModel, gaps: GapModel) -> tuple[int, int, int]:
        n_rates = model.parameter_count
        if n_rates > 1:
            # Reference rate
            n_rates -= 1
        n_freqs = 0
        if self.freq_opt is FrequencyOptimisation.ESTIMATED and model.frequencies_estimable:
            n_freqs = model.n_states - 1
        n_pip = 2 if isinstance(gaps, PIP) else 0
        return n_rates, n_freqs, n_pip

    def pack(self, model: SubstitutionModel, gaps: GapModel) -> tuple[np.ndarray, list]:
        """
        Starting vector and bounds for the optimizer.

        Returns
        -------
        x0 : np.ndarray
            Transformed parameters, clipped into the bounds
        bounds : list of (float, float)
        """
        n_rates, n_freqs, n_pip = self._layout(model, gaps)
        values = []
        bounds = []

        if n_rates:
            values.extend(np.log(model.params[:n_rates]))
            bounds.extend((np.log(lo), np.log(hi)) for lo, hi in model.bounds[:n_rates])
        if n_freqs:
            pi = np.maximum(model.frequencies, 1e-8)
            values.extend(np.log(pi[:-1] / pi[-1]))
            bounds.extend([(-LOG_RATIO_BOUND, LOG_RATIO_BOUND)] * n_freqs)
        if n_pip:
            values.extend([np.log(gaps.lam), np.log(gaps.mu)])
            bounds.extend([(np.log(PIP_BOUNDS[0]), np.log(PIP_BOUNDS[1]))] * 2)

        x0 = np.array(values, dtype=np.float64)
        if bounds:
            lower, upper = np.array(bounds).T
            x0 = np.clip(x0, lower, upper)
        return x0, bounds

    def unpack(
        self, x: np.ndarray, model: SubstitutionModel, gaps: GapModel
    ) -> tuple[SubstitutionModel, GapModel]:
        """Inverse of :meth:`pack`: build a model and gap model from a vector."""
        n_rates, n_freqs, n_pip = self._layout(model, gaps)
        pos = 0

        if n_rates:
            fixed = model.params[n_rates:]
            model = model.with_params(tuple(np.exp(x[pos:pos + n_rates])) + fixed)
            pos += n_rates
        if n_freqs:
            logits = np.append(x[pos:pos + n_freqs], 0.0)
            pi = np.exp(logits - logits.max())
            model = model.with_freqs(pi / pi.sum())
            pos += n_freqs
        if n_pip:
            gaps = PIP(lam=float(np.exp(x[pos])), mu=float(np.exp(x[pos + 1])))

        return model, gaps

    def optimize(
        self, model: SubstitutionModel, gaps: GapModel
    ) -> tuple[SubstitutionModel, GapModel, float]:
        """
        Maximise the log-likelihood over model parameters.

        Parameters
        ----------
        model : SubstitutionModel
            Starting substitution model
        gaps : MissingData or PIP
            Starting gap model

        Returns
        -------
        tuple
            (model, gaps, log_likelihood)

        Raises
        ------
        NumericalInstability
            If no finite log-likelihood is reached
        """
        start_logl = self.calc.log_likelihood(self.tree, model, gaps)
        x0, bounds = self.pack(model, gaps)

        if x0.size == 0:
            if not np.isfinite(start_logl):
                raise NumericalInstability("model", start_logl)
            return model, gaps, start_logl

        def negative_log_likelihood(x: np.ndarray) -> float:
            candidate_model, candidate_gaps = self.unpack(x, model, gaps)
            logl = self.calc.log_likelihood(self.tree, candidate_model, candidate_gaps)
            if not np.isfinite(logl):
                return 1e10
            return -logl

        result = minimize(
            negative_log_likelihood,
            x0,
            method='L-BFGS-B',
            bounds=bounds,
            options={'maxiter': self.maxiter},
        )

        new_model, new_gaps = self.unpack(result.x, model, gaps)
        logl = self.calc.log_likelihood(self.tree, new_model, new_gaps)
        logger.debug(
            "Model optimization: %d evaluations, logL %.6f -> %.6f (%s)",
            result.nfev, start_logl, logl, result.message,
        )

        if np.isfinite(logl) and (logl >= start_logl or not np.isfinite(start_logl)):
            return new_model, new_gaps, logl
        if np.isfinite(start_logl):
            return model, gaps, start_logl
        raise NumericalInstability("model", logl, "no finite log-likelihood after optimization")
