"""
Exception types raised by phyloml.

Parsers keep raising plain ``ValueError`` for malformed files; the classes
below cover model configuration, numerical failure of an optimization phase,
failures of the SPR worker pool and broken tree invariants.
"""


class PhyloMLError(Exception):
    """Base class for phyloml errors."""


class ConfigurationError(PhyloMLError, ValueError):
    """
    Invalid run configuration.

    Raised for unknown model identifiers, wrong parameter-vector arity,
    out-of-bounds rates or frequencies, non-positive PIP rates and invalid
    optimizer settings. Nothing is optimized once this is raised.
    """


class NumericalInstability(PhyloMLError, ArithmeticError):
    """
    A phase produced a non-finite log-likelihood.

    Attributes
    ----------
    phase : str
        Name of the phase that failed (e.g. ``"model"``, ``"branch"``)
    log_likelihood : float
        The offending value
    """

    def __init__(self, phase: str, log_likelihood: float, message: str = ""):
        self.phase = phase
        self.log_likelihood = log_likelihood
        self.message = message
        detail = f": {message}" if message else ""
        super().__init__(
            f"Non-finite log-likelihood ({log_likelihood}) in {phase} phase{detail}"
        )

    def __reduce__(self):
        # Rebuilt from the constructor arguments when sent back from a worker
        return (type(self), (self.phase, self.log_likelihood, self.message))


class TopologyInvariantViolation(PhyloMLError, AssertionError):
    """A tree mutation left the tree in a malformed state."""


class WorkerFailure(PhyloMLError, RuntimeError):
    """
    Scoring SPR candidates on the worker pool failed.

    Wraps whatever the pool reported (a broken process, a task that could
    not be pickled, an exception raised inside a worker).

    Attributes
    ----------
    prune_id : int
        Prune edge of the row that failed
    """

    def __init__(self, prune_id: int, cause: BaseException):
        self.prune_id = prune_id
        super().__init__(
            f"SPR worker failed on prune edge {prune_id}: {type(cause).__name__}: {cause}"
        )
