"""Optimize command implementation."""

import logging
import sys
from pathlib import Path
from typing import Optional

from phyloml.api import optimize_tree
from phyloml.config import OptimizerSettings, RunConfig, setup_logging, teardown_logging
from phyloml.exceptions import ConfigurationError, NumericalInstability
from phyloml.io.output import write_run_outputs
from phyloml.io.sequences import Alignment
from phyloml.io.trees import Tree
from phyloml.models.indel import GapHandling
from phyloml.models.substitution import FrequencyOptimisation

logger = logging.getLogger('phyloml.cli')


def run_optimize(
    seq_file: Path,
    tree_file: Optional[Path],
    out_folder: Path,
    run_name: Optional[str],
    model: str,
    params: list[float],
    freqs: list[float],
    freq_opt: str,
    gap_handling: str,
    lam: Optional[float],
    mu: Optional[float],
    max_iterations: int,
    epsilon: float,
    move_tolerance: float,
    seed: Optional[int],
    workers: Optional[int],
    serial: bool,
    format: str,
    verbose: bool,
    quiet: bool,
):
    """Run tree optimization and write the report files."""
    try:
        settings = OptimizerSettings(
            max_iterations=max_iterations,
            epsilon=epsilon,
            move_tolerance=move_tolerance,
            parallel=not serial,
            workers=workers,
            seed=seed,
        )
        config = RunConfig(
            seq_file=seq_file,
            tree_file=tree_file,
            model=model,
            params=tuple(params),
            freqs=tuple(freqs),
            freq_opt=FrequencyOptimisation(freq_opt),
            gap_handling=GapHandling(gap_handling),
            lam=lam,
            mu=mu,
            out_folder=out_folder,
            run_name=run_name,
            settings=settings,
        ).setup()
    except (ConfigurationError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(verbosity=int(verbose), log_file=config.log_path, quiet=quiet)
    try:
        for line in str(config).splitlines():
            logger.info(line)

        try:
            aln = Alignment.from_file(config.seq_file)
        except (OSError, ValueError) as e:
            print(f"Error: Could not load alignment from {config.seq_file}", file=sys.stderr)
            print(f"Details: {e}", file=sys.stderr)
            sys.exit(1)
        logger.info("Read %s", aln)

        tree_obj = None
        if config.tree_file is not None:
            try:
                tree_obj = Tree.from_file(config.tree_file)
            except (OSError, ValueError) as e:
                print(f"Error: Could not load tree from {config.tree_file}", file=sys.stderr)
                print(f"Details: {e}", file=sys.stderr)
                sys.exit(1)

        try:
            result = optimize_tree(
                aln,
                tree=tree_obj,
                model=config.model.value,
                params=config.params,
                freqs=config.freqs,
                freq_opt=config.freq_opt,
                gap_handling=config.gap_handling,
                lam=config.lam,
                mu=config.mu,
                settings=config.settings,
            )
        except (ConfigurationError, NumericalInstability) as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)

        paths = write_run_outputs(config, result)
        logger.info("Final tree written to %s", paths['tree'])

        if format == "json":
            print(result.to_json())
        else:
            print(result.summary())

        if result.aborted:
            sys.exit(1)
    finally:
        teardown_logging()
