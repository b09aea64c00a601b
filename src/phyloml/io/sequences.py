"""
Sequence file parsing and alignment handling.
"""

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import numpy as np


# Nucleotide encoding (T, C, A, G order, matching the frequency order pi_t pi_c pi_a pi_g)
NUCLEOTIDES = 'TCAG'
NUCLEOTIDE_TO_INDEX = {nuc: i for i, nuc in enumerate(NUCLEOTIDES)}
NUCLEOTIDE_TO_INDEX['U'] = NUCLEOTIDE_TO_INDEX['T']
INDEX_TO_NUCLEOTIDE = {i: nuc for i, nuc in enumerate(NUCLEOTIDES)}

# Amino acid encoding (PAML order)
AMINO_ACIDS = 'ARNDCQEGHILKMFPSTWYV'
AA_TO_INDEX = {aa: i for i, aa in enumerate(AMINO_ACIDS)}
INDEX_TO_AA = {i: aa for i, aa in enumerate(AMINO_ACIDS)}

# Special codes for gaps and ambiguous data
GAP_CODE = -2
UNKNOWN_CODE = -1
GAP_CHARACTERS = '-.'

N_STATES = {'dna': 4, 'aa': 20}

# Symbols ignored when deciding between DNA and protein
_AMBIGUOUS_DNA = set('NRYKMSWBDHV?X')


def detect_sequence_type(sequences: list[str]) -> str:
    """
    Guess whether raw sequences are DNA or protein.

    Sequences count as DNA when every symbol other than gaps and
    nucleotide ambiguity codes is one of A, C, G, T or U.

    Parameters
    ----------
    sequences : list[str]
        Upper-case raw sequences

    Returns
    -------
    str
        'dna' or 'aa'
    """
    observed = set()
    for seq in sequences:
        observed.update(seq)
    observed -= set(GAP_CHARACTERS)
    observed -= _AMBIGUOUS_DNA
    if observed and observed <= set('ACGTU'):
        return 'dna'
    return 'aa'


@dataclass
class Alignment:
    """
    Multiple sequence alignment.

    Attributes
    ----------
    names : list[str]
        Sequence names/labels
    sequences : ndarray, shape (n_species, n_sites)
        Encoded sequences as read-only integer arrays
    n_species : int
        Number of sequences
    n_sites : int
        Number of sites (alignment length)
    seqtype : str
        Sequence type ('dna' or 'aa')
    """

    names: list[str]
    sequences: np.ndarray
    n_species: int
    n_sites: int
    seqtype: str

    def __post_init__(self):
        if self.seqtype not in N_STATES:
            raise ValueError(f"Unknown seqtype: {self.seqtype}")
        if len(set(self.names)) != len(self.names):
            raise ValueError("Alignment contains duplicate sequence names")
        if self.sequences.shape != (self.n_species, self.n_sites):
            raise ValueError(
                f"Sequence matrix has shape {self.sequences.shape}, "
                f"expected ({self.n_species}, {self.n_sites})"
            )
        self.sequences = np.array(self.sequences, dtype=np.int8)
        self.sequences.setflags(write=False)

    @property
    def n_states(self) -> int:
        """Number of character states of the alphabet."""
        return N_STATES[self.seqtype]

    @classmethod
    def from_strings(
        cls, names: list[str], sequences: list[str], seqtype: Optional[str] = None
    ) -> "Alignment":
        """
        Build an alignment from raw sequence strings.

        Parameters
        ----------
        names : list[str]
            Sequence names
        sequences : list[str]
            Aligned sequences (all of equal length)
        seqtype : str, optional
            'dna' or 'aa'; detected from the data when omitted

        Returns
        -------
        Alignment
        """
        if not names:
            raise ValueError("No sequences found")
        if len(names) != len(sequences):
            raise ValueError(
                f"Got {len(names)} names but {len(sequences)} sequences"
            )

        # Remove whitespace but KEEP gaps
        sequences_clean = [re.sub(r'\s', '', seq).upper() for seq in sequences]

        seq_lengths = [len(seq) for seq in sequences_clean]
        if len(set(seq_lengths)) > 1:
            raise ValueError(
                f"Sequences have different lengths: {set(seq_lengths)}"
            )

        if seqtype is None:
            seqtype = detect_sequence_type(sequences_clean)

        if seqtype == 'dna':
            encoded = cls._encode(sequences_clean, NUCLEOTIDE_TO_INDEX)
        elif seqtype == 'aa':
            encoded = cls._encode(sequences_clean, AA_TO_INDEX)
        else:
            raise ValueError(f"Unknown seqtype: {seqtype}")

        return cls(
            names=list(names),
            sequences=encoded,
            n_species=len(names),
            n_sites=seq_lengths[0],
            seqtype=seqtype,
        )

    @classmethod
    def from_phylip(
        cls, filepath: Path | str, seqtype: Optional[str] = None
    ) -> "Alignment":
        """
        Parse PHYLIP format alignment file.

        The first line contains n_sequences and sequence_length. Each record
        is either ``name sequence`` on one line (relaxed PHYLIP) or a name
        line followed by sequence lines (PAML sequential style).

        Parameters
        ----------
        filepath : Path or str
            Path to PHYLIP format file
        seqtype : str, optional
            'dna' or 'aa'; detected from the data when omitted

        Returns
        -------
        Alignment
            Parsed alignment
        """
        filepath = Path(filepath)

        with open(filepath, 'r') as f:
            lines = [line.strip() for line in f.readlines()]
        lines = [line for line in lines if line]
        if not lines:
            raise ValueError(f"Empty PHYLIP file: {filepath}")

        header = lines[0].split()
        try:
            n_species = int(header[0])
            n_chars = int(header[1])
        except (IndexError, ValueError):
            raise ValueError(f"Invalid PHYLIP header: {lines[0]!r}")

        names = []
        sequences_raw = []
        i = 1
        while i < len(lines) and len(names) < n_species:
            fields = lines[i].split(None, 1)
            i += 1
            name = fields[0]
            seq_data = re.sub(r'\s', '', fields[1]) if len(fields) > 1 else ""

            # Collect continuation lines until the sequence is complete
            while len(seq_data) < n_chars and i < len(lines):
                seq_data += re.sub(r'\s', '', lines[i])
                i += 1

            names.append(name)
            sequences_raw.append(seq_data)

        if len(names) != n_species:
            raise ValueError(f"Expected {n_species} sequences, found {len(names)}")

        for name, seq in zip(names, sequences_raw):
            if len(seq) != n_chars:
                raise ValueError(
                    f"Sequence {name} has length {len(seq)}, expected {n_chars}"
                )

        return cls.from_strings(names, sequences_raw, seqtype=seqtype)

    @classmethod
    def from_fasta(
        cls, filepath: Path | str, seqtype: Optional[str] = None
    ) -> "Alignment":
        """
        Parse FASTA format alignment file.

        Parameters
        ----------
        filepath : Path or str
            Path to FASTA format file
        seqtype : str, optional
            'dna' or 'aa'; detected from the data when omitted

        Returns
        -------
        Alignment
            Parsed alignment

        Examples
        --------
        >>> aln = Alignment.from_fasta("alignment.fasta")
        """
        filepath = Path(filepath)

        names = []
        sequences_raw = []

        with open(filepath, 'r') as f:
            current_name = None
            current_seq = []

            for line in f:
                line = line.strip()

                if not line:
                    continue

                if line.startswith('>'):
                    if current_name is not None:
                        names.append(current_name)
                        sequences_raw.append(''.join(current_seq))

                    # Sequence id is the first word of the header
                    header = line[1:].strip()
                    current_name = header.split()[0] if header else ""
                    current_seq = []
                else:
                    current_seq.append(line)

            if current_name is not None:
                names.append(current_name)
                sequences_raw.append(''.join(current_seq))

        if not names:
            raise ValueError("No sequences found in FASTA file")

        return cls.from_strings(names, sequences_raw, seqtype=seqtype)

    @classmethod
    def from_file(
        cls, filepath: Path | str, seqtype: Optional[str] = None
    ) -> "Alignment":
        """
        Read a FASTA or PHYLIP alignment, sniffing the format.

        Files whose first non-blank character is '>' are read as FASTA,
        everything else as PHYLIP.
        """
        filepath = Path(filepath)
        with open(filepath, 'r') as f:
            for line in f:
                if line.strip():
                    first = line.lstrip()[0]
                    break
            else:
                raise ValueError(f"Empty alignment file: {filepath}")

        if first == '>':
            return cls.from_fasta(filepath, seqtype=seqtype)
        return cls.from_phylip(filepath, seqtype=seqtype)

    @staticmethod
    def _encode(sequences: list[str], alphabet: dict[str, int]) -> np.ndarray:
        """Encode sequences as state indices, GAP_CODE or UNKNOWN_CODE."""
        n_sequences = len(sequences)
        n_sites = len(sequences[0])

        encoded = np.zeros((n_sequences, n_sites), dtype=np.int8)

        for i, seq in enumerate(sequences):
            for j, char in enumerate(seq):
                if char in alphabet:
                    encoded[i, j] = alphabet[char]
                elif char in GAP_CHARACTERS:
                    encoded[i, j] = GAP_CODE
                else:
                    encoded[i, j] = UNKNOWN_CODE

        return encoded

    def decode(self, row: int) -> str:
        """Decode one encoded sequence back into a string."""
        alphabet = INDEX_TO_NUCLEOTIDE if self.seqtype == 'dna' else INDEX_TO_AA
        unknown = 'N' if self.seqtype == 'dna' else 'X'
        chars = []
        for idx in self.sequences[row]:
            if idx == GAP_CODE:
                chars.append('-')
            elif idx == UNKNOWN_CODE:
                chars.append(unknown)
            else:
                chars.append(alphabet[int(idx)])
        return ''.join(chars)

    def to_fasta(self, filepath: Path | str, line_width: int = 60) -> None:
        """
        Write alignment to FASTA format file.

        Parameters
        ----------
        filepath : Path or str
            Output file path
        line_width : int
            Characters per sequence line
        """
        filepath = Path(filepath)

        with open(filepath, 'w') as f:
            for row, name in enumerate(self.names):
                f.write(f">{name}\n")
                seq = self.decode(row)
                for i in range(0, len(seq), line_width):
                    f.write(seq[i:i+line_width] + '\n')

    def has_gaps(self) -> bool:
        """Check whether any gap characters are present."""
        return bool(np.any(self.sequences == GAP_CODE))

    def site_patterns(self) -> tuple[np.ndarray, np.ndarray]:
        """
        Compress alignment columns into unique site patterns.

        Returns
        -------
        patterns : ndarray, shape (n_species, n_patterns)
            Unique columns, in lexicographic order
        weights : ndarray, shape (n_patterns,)
            Number of alignment columns sharing each pattern
        """
        patterns, counts = np.unique(self.sequences.T, axis=0, return_counts=True)
        return np.ascontiguousarray(patterns.T), counts.astype(np.float64)

    def __repr__(self) -> str:
        return (
            f"Alignment(n_species={self.n_species}, n_sites={self.n_sites}, "
            f"seqtype='{self.seqtype}')"
        )


def empirical_frequencies(alignment: Alignment, floor: float = 1e-8) -> np.ndarray:
    """
    Compute state frequencies observed in an alignment.

    Gaps and ambiguous characters are ignored. Unobserved states get a tiny
    floor so the frequency vector stays strictly positive.

    Parameters
    ----------
    alignment : Alignment
        Sequence alignment
    floor : float
        Minimum frequency of any state

    Returns
    -------
    np.ndarray, shape (n_states,)
        Frequencies summing to 1
    """
    observed = alignment.sequences[alignment.sequences >= 0]
    counts = np.bincount(observed.astype(np.int64), minlength=alignment.n_states)
    counts = counts.astype(np.float64)

    if counts.sum() == 0:
        return np.full(alignment.n_states, 1.0 / alignment.n_states)

    freqs = np.maximum(counts / counts.sum(), floor)
    return freqs / freqs.sum()
