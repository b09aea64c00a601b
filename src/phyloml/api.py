"""
High-level API for phyloml tree optimization.

This module provides a single entry point that accepts file paths or
objects, builds the model and settings, and runs the optimization loop.
"""

from dataclasses import replace
from pathlib import Path
from typing import Optional, Sequence, Union

from .config import OptimizerSettings
from .exceptions import ConfigurationError
from .io.sequences import Alignment
from .io.trees import Tree
from .models.indel import PIP, GapHandling, MissingData
from .models.substitution import FrequencyOptimisation, SubstitutionModel
from .optimize.optimizer import OptimizationResult, TerminationReason, TreeOptimizer

__all__ = ['OptimizationResult', 'TerminationReason', 'optimize_tree']


def _load_alignment(alignment: Union[str, Path, Alignment]) -> Alignment:
    """
    Load alignment with automatic format detection.

    Parameters
    ----------
    alignment : str, Path, or Alignment
        Path to a FASTA or PHYLIP file, or an Alignment object

    Returns
    -------
    Alignment

    Raises
    ------
    FileNotFoundError
        If the alignment file doesn't exist
    ValueError
        If parsing fails
    """
    if isinstance(alignment, Alignment):
        return alignment

    path = Path(alignment)
    if not path.exists():
        raise FileNotFoundError(f"Alignment file not found: {path}")
    return Alignment.from_file(path)


def _load_tree(tree: Union[str, Path, Tree, None]) -> Optional[Tree]:
    """
    Load tree from Newick file or string.

    Parameters
    ----------
    tree : str, Path, Tree or None
        Path to tree file, Newick string, or Tree object

    Returns
    -------
    Tree or None
    """
    if tree is None or isinstance(tree, Tree):
        return tree

    text = str(tree)
    if text.lstrip().startswith('('):
        return Tree.from_newick(text)
    return Tree.from_file(text)


def optimize_tree(
    alignment: Union[str, Path, Alignment],
    tree: Union[str, Path, Tree, None] = None,
    model: str = "JC69",
    params: Optional[Sequence[float]] = None,
    freqs: Optional[Sequence[float]] = None,
    freq_opt: Union[str, FrequencyOptimisation] = FrequencyOptimisation.EMPIRICAL,
    gap_handling: Union[str, GapHandling] = GapHandling.PIP,
    lam: Optional[float] = None,
    mu: Optional[float] = None,
    settings: Optional[OptimizerSettings] = None,
    **setting_kwargs,
) -> OptimizationResult:
    """
    Jointly optimize tree topology, branch lengths and model parameters.

    Parameters
    ----------
    alignment : str, Path, or Alignment
        Sequence alignment (FASTA or PHYLIP, nucleotide or protein)
    tree : str, Path, Tree, optional
        Starting tree as a file, Newick string or Tree object. A
        neighbor-joining tree is built when omitted.
    model : str
        Substitution model: JC69, K80, HKY (HKY85), TN93, GTR, WAG, HIVB or
        BLOSUM (BLOSUM62)
    params : sequence of float, optional
        Starting rate parameters; model defaults when omitted
    freqs : sequence of float, optional
        Starting frequencies (T, C, A, G order for nucleotides)
    freq_opt : str or FrequencyOptimisation
        'fixed', 'empirical' or 'estimated'
    gap_handling : str or GapHandling
        'pip' or 'missing'
    lam, mu : float, optional
        Starting PIP rates; picked from the data when omitted
    settings : OptimizerSettings, optional
        Loop settings
    **setting_kwargs
        Overrides for individual OptimizerSettings fields
        (e.g. ``max_iterations=10, seed=1, parallel=False``)

    Returns
    -------
    OptimizationResult

    Raises
    ------
    ConfigurationError
        On invalid model, parameters, frequencies or settings, or when the
        tree and alignment leaf names differ
    NumericalInstability
        If the starting state has no finite log-likelihood

    Examples
    --------
    >>> from phyloml import optimize_tree
    >>> result = optimize_tree("alignment.fasta", model="HKY", gap_handling="missing", seed=1)
    >>> print(result.summary())
    >>> result.to_json("result.json")
    """
    aln = _load_alignment(alignment)
    start_tree = _load_tree(tree)

    try:
        freq_opt = FrequencyOptimisation(freq_opt)
        gap_handling = GapHandling(gap_handling)
    except ValueError as e:
        raise ConfigurationError(str(e))

    subst_model = SubstitutionModel.create(
        model, params=params, freqs=freqs, alignment=aln, freq_opt=freq_opt
    )

    if gap_handling is GapHandling.MISSING:
        gaps = MissingData()
    elif lam is not None or mu is not None:
        if lam is None or mu is None:
            raise ConfigurationError("PIP lambda and mu must be given together")
        gaps = PIP(lam=lam, mu=mu)
    else:
        gaps = GapHandling.PIP

    if settings is None:
        settings = OptimizerSettings(**setting_kwargs)
    elif setting_kwargs:
        settings = replace(settings, **setting_kwargs)

    optimizer = TreeOptimizer(
        aln, subst_model, gaps, tree=start_tree, settings=settings, freq_opt=freq_opt
    )
    return optimizer.run()
