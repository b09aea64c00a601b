"""Main CLI application for phyloml."""

import typer
from pathlib import Path
from typing import List, Optional
from enum import Enum

from phyloml import __version__
from phyloml.models.indel import GapHandling
from phyloml.models.substitution import FrequencyOptimisation

app = typer.Typer(
    name="phyloml",
    help="Maximum-likelihood phylogenetic tree reconstruction",
    no_args_is_help=True,
)


class OutputFormat(str, Enum):
    """Output format."""
    TEXT = "text"
    JSON = "json"


def _version_callback(value: bool):
    if value:
        typer.echo(f"phyloml {__version__}")
        raise typer.Exit()


@app.callback()
def callback(
    version: bool = typer.Option(
        False,
        "--version",
        help="Show the version and exit",
        callback=_version_callback,
        is_eager=True,
    ),
):
    """Maximum-likelihood phylogenetic tree reconstruction."""


@app.command()
def optimize(
    seq_file: Path = typer.Option(
        ...,
        "--seq-file", "-s",
        help="Alignment file (FASTA or PHYLIP)",
        exists=True,
        file_okay=True,
        dir_okay=False,
    ),
    tree_file: Optional[Path] = typer.Option(
        None,
        "--tree-file", "-t",
        help="Starting tree (Newick); neighbor joining when omitted",
        exists=True,
        file_okay=True,
        dir_okay=False,
    ),
    out_folder: Path = typer.Option(
        Path("."),
        "--out-folder", "-d",
        help="Folder the run's output folder is created in",
    ),
    run_name: Optional[str] = typer.Option(
        None,
        "--run-name", "-r",
        help="Run identifier prefix for output files",
    ),
    max_iterations: int = typer.Option(
        5,
        "--max-iterations", "-x",
        help="Maximum number of optimization iterations",
        min=1,
    ),
    model: str = typer.Option(
        ...,
        "--model", "-m",
        help="Substitution model (JC69, K80, HKY, TN93, GTR, WAG, HIVB, BLOSUM)",
    ),
    params: Optional[List[float]] = typer.Option(
        None,
        "--params", "-p",
        help="Starting model parameter, repeat for each (alpha for K80 and HKY)",
    ),
    freqs: Optional[List[float]] = typer.Option(
        None,
        "--freqs", "-f",
        help="Stationary frequency (repeat; nucleotides in T C A G order)",
    ),
    freq_opt: FrequencyOptimisation = typer.Option(
        FrequencyOptimisation.EMPIRICAL,
        "--freq-opt", "-o",
        help="Frequency source: fixed, empirical or estimated",
    ),
    gap_handling: GapHandling = typer.Option(
        GapHandling.PIP,
        "--gap-handling", "-g",
        help="Treat gaps with the Poisson Indel Process or as missing data",
    ),
    lam: Optional[float] = typer.Option(
        None,
        "--lambda",
        help="Starting PIP insertion rate (with --mu)",
    ),
    mu: Optional[float] = typer.Option(
        None,
        "--mu",
        help="Starting PIP deletion rate (with --lambda)",
    ),
    epsilon: float = typer.Option(
        1e-5,
        "--epsilon", "-e",
        help="Convergence threshold on the change in log-likelihood",
    ),
    move_tolerance: float = typer.Option(
        1e-3,
        "--move-tolerance",
        help="Improvement an SPR move needs to be accepted",
    ),
    seed: Optional[int] = typer.Option(
        None,
        "--seed",
        help="Random seed (drawn and reported when omitted)",
    ),
    workers: Optional[int] = typer.Option(
        None,
        "--workers",
        help="Worker processes for the SPR search (default: all CPUs)",
        min=1,
    ),
    serial: bool = typer.Option(
        False,
        "--serial",
        help="Score SPR moves in the main process",
    ),
    format: OutputFormat = typer.Option(
        OutputFormat.TEXT,
        "--format",
        help="Output format",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose", "-v",
        help="Show optimization progress in detail",
    ),
    quiet: bool = typer.Option(
        False,
        "--quiet", "-q",
        help="Only warnings and errors on the console",
    ),
):
    """
    Optimize tree topology, branch lengths and model parameters.

    Example:
        phyloml optimize -s alignment.fasta -m HKY -g missing
        phyloml optimize -s protein.fasta -t start.nwk -m WAG -r run1 -d results
    """
    from .commands.optimize import run_optimize

    run_optimize(
        seq_file=seq_file,
        tree_file=tree_file,
        out_folder=out_folder,
        run_name=run_name,
        model=model,
        params=params or [],
        freqs=freqs or [],
        freq_opt=freq_opt.value,
        gap_handling=gap_handling.value,
        lam=lam,
        mu=mu,
        max_iterations=max_iterations,
        epsilon=epsilon,
        move_tolerance=move_tolerance,
        seed=seed,
        workers=workers,
        serial=serial,
        format=format.value,
        verbose=verbose,
        quiet=quiet,
    )


def main():
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
