"""
Report files for a command-line run.
"""

import logging
from pathlib import Path
from typing import Optional

from .trees import Tree

logger = logging.getLogger(__name__)


def write_newick(tree: Tree, filepath: Path) -> None:
    with open(filepath, 'w') as f:
        f.write(tree.to_newick() + '\n')


def write_logl_trace(result, filepath: Path) -> None:
    """
    Write the log-likelihood trace, one ``iteration<TAB>logL`` line per row.

    Iteration 0 is the starting state.
    """
    with open(filepath, 'w') as f:
        f.write("iteration\tlog_likelihood\n")
        f.write(f"0\t{result.initial_log_likelihood:.6f}\n")
        for record in result.trace:
            f.write(f"{record.iteration}\t{record.log_likelihood:.6f}\n")


def write_run_outputs(config, result, start_tree: Optional[Tree] = None) -> dict[str, Path]:
    """
    Write starting tree, final tree, log-likelihood trace and JSON summary.

    Parameters
    ----------
    config : RunConfig
        Run configuration providing the output paths
    result : OptimizationResult
        Result of the run (the last valid state when the run was aborted)
    start_tree : Tree, optional
        Tree the optimization started from; defaults to
        ``result.start_tree``

    Returns
    -------
    dict[str, Path]
        Written files by kind
    """
    config.setup()
    if start_tree is None:
        start_tree = result.start_tree
    paths = {
        'start_tree': config.start_tree_path,
        'tree': config.tree_path,
        'logl': config.logl_path,
        'result': config.result_path,
    }

    if start_tree is not None:
        write_newick(start_tree, paths['start_tree'])
    else:
        del paths['start_tree']
    write_newick(result.tree, paths['tree'])
    write_logl_trace(result, paths['logl'])
    result.to_json(str(paths['result']))

    for kind, path in paths.items():
        logger.debug("Wrote %s to %s", kind, path)
    return paths
