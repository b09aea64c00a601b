"""
Pytest configuration and shared fixtures.
"""

import pytest
from typer.testing import CliRunner

from phyloml.io.sequences import Alignment
from phyloml.io.trees import Tree


def mutate(seq: str, changes: dict[int, str]) -> str:
    """Copy of ``seq`` with characters replaced at the given positions."""
    chars = list(seq)
    for pos, char in changes.items():
        chars[pos] = char
    return ''.join(chars)


BASE = "ACGT" * 10

# A and B share two derived sites with nobody, C and D share sites 10 and 20
FOUR_TAXON = {
    "A": BASE[:32],
    "B": mutate(BASE[:32], {5: 'T'}),
    "C": mutate(BASE[:32], {10: 'A', 20: 'C'}),
    "D": mutate(BASE[:32], {10: 'A', 20: 'C', 28: 'G'}),
}

_C_SITES = {4: 'T', 11: 'A', 24: 'T'}
_E_SITES = {2: 'T', 7: 'G', 14: 'C', 32: 'T'}

SIX_TAXON = {
    "A": BASE,
    "B": mutate(BASE, {38: 'C'}),
    "C": mutate(BASE, _C_SITES),
    "D": mutate(BASE, {**_C_SITES, 31: 'A'}),
    "E": mutate(BASE, _E_SITES),
    "F": mutate(BASE, {**_E_SITES, 19: 'A'}),
}

# Gaps in some sequences plus one trailing all-gap column
GAPPED = {
    "A": mutate(FOUR_TAXON["A"], {3: '-'}) + '-',
    "B": FOUR_TAXON["B"] + '-',
    "C": mutate(FOUR_TAXON["C"], {7: '-', 8: '-'}) + '-',
    "D": mutate(FOUR_TAXON["D"], {7: '-'}) + '-',
}

PROTEIN = {
    "human": "MKVLAARNDCQEGHILKMFPSTWYV",
    "chimp": "MKVLAARNDCQEGHILKMFPSTWYV",
    "mouse": "MKVIAARNECQEGHVLKMFPSTWYI",
    "rat": "MKVIAGRNECQDGHVLKMFPATWYI",
}


def _alignment(records: dict[str, str]) -> Alignment:
    return Alignment.from_strings(list(records), list(records.values()))


def _write_fasta(path, records: dict[str, str]):
    path.write_text(''.join(f">{name}\n{seq}\n" for name, seq in records.items()))
    return path


@pytest.fixture
def four_taxon_alignment():
    """Four nucleotide sequences supporting the split AB|CD."""
    return _alignment(FOUR_TAXON)


@pytest.fixture
def four_taxon_start_tree():
    """Starting tree with the wrong split AC|BD."""
    return Tree.from_newick("((A:0.1,C:0.1):0.1,B:0.1,D:0.1);")


@pytest.fixture
def six_taxon_alignment():
    """Six nucleotide sequences with cherries CD and EF."""
    return _alignment(SIX_TAXON)


@pytest.fixture
def six_taxon_tree():
    return Tree.from_newick("((A:0.02,B:0.03):0.05,(C:0.05,D:0.07):0.04,(E:0.06,F:0.08):0.05);")


@pytest.fixture
def gapped_alignment():
    """Four sequences with gaps and one all-gap column."""
    return _alignment(GAPPED)


@pytest.fixture
def protein_alignment():
    return _alignment(PROTEIN)


N_CATERPILLAR = 300


def _caterpillar_newick(n_leaves: int) -> str:
    """Fully unbalanced tree, one level per leaf."""
    newick = "(L0:0.05,L1:0.05)"
    for i in range(2, n_leaves - 2):
        newick = f"({newick}:0.01,L{i}:0.05)"
    return f"({newick}:0.01,L{n_leaves - 2}:0.05,L{n_leaves - 1}:0.05);"


@pytest.fixture
def caterpillar_tree():
    """300-leaf caterpillar, deeper than pickle can follow node links."""
    return Tree.from_newick(_caterpillar_newick(N_CATERPILLAR))


@pytest.fixture
def caterpillar_alignment():
    names = [f"L{i}" for i in range(N_CATERPILLAR)]
    sequences = [mutate(BASE[:8], {i % 8: 'T'}) for i in range(N_CATERPILLAR)]
    return Alignment.from_strings(names, sequences)


@pytest.fixture
def four_taxon_fasta(tmp_path):
    return _write_fasta(tmp_path / "four.fasta", FOUR_TAXON)


@pytest.fixture
def six_taxon_fasta(tmp_path):
    return _write_fasta(tmp_path / "six.fasta", SIX_TAXON)


@pytest.fixture
def gapped_fasta(tmp_path):
    return _write_fasta(tmp_path / "gapped.fasta", GAPPED)


@pytest.fixture
def four_taxon_tree_file(tmp_path):
    """Create a temporary tree file for the four-taxon alignment."""
    tree_file = tmp_path / "start.nwk"
    tree_file.write_text("((A:0.1,C:0.1):0.1,B:0.1,D:0.1);\n")
    return tree_file


@pytest.fixture
def cli_runner():
    """CLI test runner for Typer apps."""
    return CliRunner()
