"""
Input/Output modules for sequence alignments and phylogenetic trees.

This module provides classes for reading and working with:

- **Sequence alignments**: FASTA and PHYLIP formats, nucleotide or protein
- **Phylogenetic trees**: Newick format, SPR moves
- **Run reports**: tree, log-likelihood trace and JSON summary files
"""

from phyloml.io.sequences import Alignment
from phyloml.io.trees import Tree, TreeNode

__all__ = ["Alignment", "Tree", "TreeNode"]
