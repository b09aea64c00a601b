"""
Run configuration and logging setup.

:class:`OptimizerSettings` holds the numerical knobs of the optimization
loop. :class:`RunConfig` describes one command-line run: inputs, model
choice, output locations and settings.
"""

import logging
import sys
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional

import numpy as np

from .exceptions import ConfigurationError
from .models.indel import GapHandling
from .models.substitution import FrequencyOptimisation, SubstModelId


@dataclass(frozen=True)
class OptimizerSettings:
    """
    Settings for the optimization loop.

    Attributes
    ----------
    max_iterations : int
        Cap on full iterations (model, topology, branches)
    epsilon : float
        Convergence threshold on the change in log-likelihood between
        consecutive iterations
    move_tolerance : float
        An SPR move must improve the log-likelihood by more than this to be
        accepted; candidates closer than this are ties
    branch_tolerance : float
        Branch sweeps stop when no edge length changes by more than this
    max_branch_sweeps : int
        Cap on branch sweeps per iteration
    max_spr_moves : int
        Cap on SPR moves applied per iteration
    model_maxiter : int
        L-BFGS-B iteration cap for model parameters
    parallel : bool
        Score SPR candidates on a process pool
    workers : int, optional
        Pool size; None uses every CPU
    seed : int, optional
        PRNG seed; None draws one from OS entropy
    """

    max_iterations: int = 5
    epsilon: float = 1e-5
    move_tolerance: float = 1e-3
    branch_tolerance: float = 1e-4
    max_branch_sweeps: int = 10
    max_spr_moves: int = 10
    model_maxiter: int = 200
    parallel: bool = True
    workers: Optional[int] = None
    seed: Optional[int] = None

    def __post_init__(self):
        if self.max_iterations < 1:
            raise ConfigurationError(f"max_iterations must be at least 1, got {self.max_iterations}")
        if not self.epsilon > 0:
            raise ConfigurationError(f"epsilon must be positive, got {self.epsilon}")
        if not self.move_tolerance >= 0:
            raise ConfigurationError(
                f"move_tolerance must be non-negative, got {self.move_tolerance}"
            )
        if not self.branch_tolerance > 0:
            raise ConfigurationError(
                f"branch_tolerance must be positive, got {self.branch_tolerance}"
            )
        for name in ('max_branch_sweeps', 'max_spr_moves', 'model_maxiter'):
            if getattr(self, name) < 1:
                raise ConfigurationError(f"{name} must be at least 1, got {getattr(self, name)}")
        if self.workers is not None and self.workers < 1:
            raise ConfigurationError(f"workers must be at least 1, got {self.workers}")
        if self.seed is not None and self.seed < 0:
            raise ConfigurationError(f"seed must be non-negative, got {self.seed}")

    def resolve_seed(self) -> int:
        """The configured seed, or a fresh one drawn from OS entropy."""
        if self.seed is not None:
            return self.seed
        return int(np.random.SeedSequence().entropy % (2**63))


@dataclass
class RunConfig:
    """
    Configuration of one optimization run.

    Output files live in ``<out_folder>/<run_id>_out/`` where the run id is
    ``<run_name>_<timestamp>`` (or just the timestamp).
    """

    seq_file: Path
    tree_file: Optional[Path] = None
    model: SubstModelId = SubstModelId.JC69
    params: tuple[float, ...] = ()
    freqs: tuple[float, ...] = ()
    freq_opt: FrequencyOptimisation = FrequencyOptimisation.EMPIRICAL
    gap_handling: GapHandling = GapHandling.PIP
    lam: Optional[float] = None
    mu: Optional[float] = None
    out_folder: Path = Path('.')
    run_name: Optional[str] = None
    settings: OptimizerSettings = field(default_factory=OptimizerSettings)
    timestamp: int = field(default_factory=lambda: time.time_ns() // 1000)

    def __post_init__(self):
        self.seq_file = Path(self.seq_file)
        self.tree_file = Path(self.tree_file) if self.tree_file is not None else None
        self.out_folder = Path(self.out_folder)
        self.model = SubstModelId.parse(self.model)
        if (self.lam is None) != (self.mu is None):
            raise ConfigurationError("PIP lambda and mu must be given together")

    @property
    def run_id(self) -> str:
        if self.run_name:
            return f"{self.run_name}_{self.timestamp}"
        return str(self.timestamp)

    @property
    def out_dir(self) -> Path:
        return self.out_folder / f"{self.run_id}_out"

    @property
    def tree_path(self) -> Path:
        return self.out_dir / f"{self.run_id}_tree.newick"

    @property
    def start_tree_path(self) -> Path:
        return self.out_dir / f"{self.run_id}_start_tree.newick"

    @property
    def logl_path(self) -> Path:
        return self.out_dir / f"{self.run_id}_logl.out"

    @property
    def log_path(self) -> Path:
        return self.out_dir / f"{self.run_id}.log"

    @property
    def result_path(self) -> Path:
        return self.out_dir / f"{self.run_id}_result.json"

    def setup(self) -> "RunConfig":
        """Create the output directory."""
        self.out_dir.mkdir(parents=True, exist_ok=True)
        return self

    def __str__(self) -> str:
        started = datetime.fromtimestamp(self.timestamp / 1e6).strftime('%Y-%m-%d %H:%M:%S')
        overmodel = 'PIP' if self.gap_handling is GapHandling.PIP else 'Substitution'
        lines = [
            f"Run start time: {started}",
            f"Run ID: {self.run_id}",
            f"Input sequence file: {self.seq_file}",
            f"Input tree file: {self.tree_file}" if self.tree_file
            else "No input tree file provided.",
            f"Output folder: {self.out_dir}",
            f"Model setup: {overmodel} model with {self.model.value} Q",
            f"Model parameters: {list(self.params)}",
            f"Model frequencies: {list(self.freqs)}",
            f"Optimisation setup: frequencies: {self.freq_opt.value}, "
            f"max iterations: {self.settings.max_iterations}, "
            f"epsilon: {self.settings.epsilon}",
        ]
        return '\n'.join(lines)


_installed_handlers: list[logging.Handler] = []


def setup_logging(
    verbosity: int = 0, log_file: Optional[Path] = None, quiet: bool = False
) -> logging.Logger:
    """
    Configure the ``phyloml`` logger for a command-line run.

    Parameters
    ----------
    verbosity : int
        0 logs INFO to the console, 1 or more logs DEBUG
    log_file : Path, optional
        Also write everything at DEBUG to this file
    quiet : bool
        Only warnings and errors on the console

    Returns
    -------
    logging.Logger
        The package logger
    """
    teardown_logging()

    logger = logging.getLogger('phyloml')
    logger.setLevel(logging.DEBUG)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(
        logging.Formatter('[%(asctime)s %(levelname)s] %(message)s', datefmt='%H:%M:%S')
    )
    if quiet:
        console_handler.setLevel(logging.WARNING)
    else:
        console_handler.setLevel(logging.DEBUG if verbosity > 0 else logging.INFO)
    logger.addHandler(console_handler)
    _installed_handlers.append(console_handler)

    if log_file is not None:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S',
        ))
        file_handler.setLevel(logging.DEBUG)
        logger.addHandler(file_handler)
        _installed_handlers.append(file_handler)

    return logger


def teardown_logging() -> None:
    """Remove and close the handlers installed by :func:`setup_logging`."""
    logger = logging.getLogger('phyloml')
    while _installed_handlers:
        handler = _installed_handlers.pop()
        logger.removeHandler(handler)
        handler.close()
