"""
Phylogenetic tree parsing and manipulation.

Trees are unrooted and binary. They are stored hanging from a trifurcating
root node; every other node owns the edge to its parent, and the id of that
node doubles as the edge id. The root placement carries no meaning for
substitution likelihoods, and topology moves keep the root trifurcating.
"""

import re
from dataclasses import dataclass, field
from typing import Iterator, Optional

import numpy as np

from ..exceptions import TopologyInvariantViolation


DEFAULT_BRANCH_LENGTH = 0.1


@dataclass(eq=False)
class TreeNode:
    """
    Phylogenetic tree node.

    Attributes
    ----------
    id : int
        Node identifier (also the id of the edge to the parent)
    name : Optional[str]
        Node name (for leaves)
    parent : Optional[TreeNode]
        Parent node
    children : list[TreeNode]
        Child nodes
    branch_length : float
        Branch length to parent
    """

    id: int
    name: Optional[str] = None
    parent: Optional["TreeNode"] = field(default=None, repr=False)
    children: list["TreeNode"] = field(default_factory=list, repr=False)
    branch_length: float = 0.0

    @property
    def is_leaf(self) -> bool:
        """Check if node is a leaf."""
        return len(self.children) == 0

    @property
    def is_root(self) -> bool:
        """Check if node is the root."""
        return self.parent is None


class Tree:
    """
    Unrooted binary phylogenetic tree.

    Attributes
    ----------
    root : TreeNode
        Trifurcating node the tree hangs from
    nodes : list[TreeNode]
        All nodes, indexed by id
    """

    def __init__(self, root: TreeNode, nodes: list[TreeNode]):
        self.root = root
        self.nodes = nodes

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def from_newick(cls, newick_string: str) -> "Tree":
        """
        Parse Newick format tree string.

        Comments in square brackets are removed. A bifurcating root is
        suppressed so the result is unrooted; branches without a length get
        ``DEFAULT_BRANCH_LENGTH``.

        Parameters
        ----------
        newick_string : str
            Newick format tree

        Returns
        -------
        Tree
            Parsed tree

        Raises
        ------
        ValueError
            On malformed input, negative branch lengths, polytomies,
            unifurcations or fewer than three leaves
        """
        newick = re.sub(r'\[.*?\]', '', newick_string).strip()

        if ';' not in newick:
            raise ValueError("Invalid Newick format: missing semicolon")
        newick = newick[:newick.index(';')]
        newick = newick.replace('\n', '').replace('\t', '').replace('\r', '')

        nodes: list[TreeNode] = []

        def skip_whitespace(s: str, pos: int) -> int:
            """Skip whitespace characters."""
            while pos < len(s) and s[pos] == ' ':
                pos += 1
            return pos

        def parse_node(s: str, start: int, parent: Optional[TreeNode] = None) -> tuple[TreeNode, int]:
            """Parse a node from position start in string s."""
            node = TreeNode(id=len(nodes), parent=parent)
            nodes.append(node)
            pos = skip_whitespace(s, start)

            if pos < len(s) and s[pos] == '(':
                pos = skip_whitespace(s, pos + 1)
                while True:
                    child, pos = parse_node(s, pos, node)
                    node.children.append(child)
                    pos = skip_whitespace(s, pos)

                    if pos < len(s) and s[pos] == ',':
                        pos = skip_whitespace(s, pos + 1)
                        continue
                    elif pos < len(s) and s[pos] == ')':
                        pos = skip_whitespace(s, pos + 1)
                        break
                    else:
                        raise ValueError(f"Expected ',' or ')' at position {pos}")

            name_start = pos
            while pos < len(s) and s[pos] not in ',:(); ':
                pos += 1
            if pos > name_start:
                node.name = s[name_start:pos].strip("'\"")

            pos = skip_whitespace(s, pos)

            node.branch_length = DEFAULT_BRANCH_LENGTH
            if pos < len(s) and s[pos] == ':':
                pos = skip_whitespace(s, pos + 1)
                length_start = pos
                while pos < len(s) and s[pos] not in ',(); ':
                    pos += 1
                try:
                    node.branch_length = float(s[length_start:pos])
                except ValueError:
                    raise ValueError(f"Invalid branch length: {s[length_start:pos]}")
                if not np.isfinite(node.branch_length) or node.branch_length < 0:
                    raise ValueError(f"Invalid branch length: {s[length_start:pos]}")

            return node, pos

        root, pos = parse_node(newick, 0, None)
        if skip_whitespace(newick, pos) != len(newick):
            raise ValueError(f"Unexpected characters after position {pos}")
        root.branch_length = 0.0

        tree = cls(root, nodes)
        leaves = [node for node in nodes if node.is_leaf]
        if len(leaves) < 3:
            raise ValueError(f"Tree needs at least 3 leaves, found {len(leaves)}")
        if any(not node.name for node in leaves):
            raise ValueError("All leaves must be named")
        if len({node.name for node in leaves}) != len(leaves):
            raise ValueError("Duplicate leaf names in tree")

        for node in nodes:
            if not node.is_leaf and node is not root and len(node.children) != 2:
                raise ValueError(
                    f"Tree is not binary: internal node {node.id} has "
                    f"{len(node.children)} children"
                )

        if len(root.children) == 2:
            tree._suppress_root()
        elif len(root.children) != 3:
            raise ValueError(
                f"Root must have 2 or 3 children, found {len(root.children)}"
            )

        tree._reindex()
        tree.validate()
        return tree

    @classmethod
    def from_file(cls, filepath) -> "Tree":
        """Read the first Newick tree in a file."""
        with open(filepath, 'r') as f:
            return cls.from_newick(f.read())

    def _suppress_root(self) -> None:
        """Turn a bifurcating root into a trifurcating one."""
        left, right = self.root.children
        if left.is_leaf and right.is_leaf:
            raise ValueError("Cannot unroot a two-leaf tree")
        new_root = left if not left.is_leaf else right
        other = right if new_root is left else left

        other.branch_length += new_root.branch_length
        other.parent = new_root
        new_root.children.append(other)
        new_root.parent = None
        new_root.branch_length = 0.0

        self.root.children = []
        self.nodes.remove(self.root)
        self.root = new_root

    def _reindex(self) -> None:
        """Renumber nodes in preorder so ids are 0..n_nodes-1."""
        self.nodes = list(self.preorder())
        for i, node in enumerate(self.nodes):
            node.id = i

    def copy(self) -> "Tree":
        """
        Independent copy with identical ids, names and branch lengths.

        Returns
        -------
        Tree
        """
        clones = [
            TreeNode(id=node.id, name=node.name, branch_length=node.branch_length)
            for node in self.nodes
        ]
        for node in self.nodes:
            clone = clones[node.id]
            if node.parent is not None:
                clone.parent = clones[node.parent.id]
            clone.children = [clones[child.id] for child in node.children]
        return Tree(clones[self.root.id], clones)

    def __getstate__(self) -> dict:
        # Flat per-id form: the linked nodes would pickle one stack frame
        # per tree level and overflow on deep trees.
        return {
            'root': self.root.id,
            'names': [node.name for node in self.nodes],
            'lengths': [node.branch_length for node in self.nodes],
            'children': [[child.id for child in node.children] for node in self.nodes],
        }

    def __setstate__(self, state: dict) -> None:
        nodes = [
            TreeNode(id=i, name=name, branch_length=length)
            for i, (name, length) in enumerate(zip(state['names'], state['lengths']))
        ]
        for node, child_ids in zip(nodes, state['children']):
            node.children = [nodes[child_id] for child_id in child_ids]
            for child in node.children:
                child.parent = node
        self.nodes = nodes
        self.root = nodes[state['root']]

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def n_nodes(self) -> int:
        return len(self.nodes)

    @property
    def leaves(self) -> list[TreeNode]:
        return [node for node in self.nodes if node.is_leaf]

    @property
    def n_leaves(self) -> int:
        return sum(1 for node in self.nodes if node.is_leaf)

    @property
    def leaf_names(self) -> list[str]:
        return [node.name for node in self.preorder() if node.is_leaf]

    def get_node(self, node_id: int) -> TreeNode:
        return self.nodes[node_id]

    def preorder(self) -> Iterator[TreeNode]:
        """Yield nodes parent-first, children in stored order."""
        stack = [self.root]
        while stack:
            node = stack.pop()
            yield node
            stack.extend(reversed(node.children))

    def postorder(self) -> list[TreeNode]:
        """
        Return nodes in post-order traversal (leaves to root).

        Returns
        -------
        list[TreeNode]
            Nodes in post-order
        """
        result = []
        stack = [(self.root, False)]
        while stack:
            node, expanded = stack.pop()
            if expanded or node.is_leaf:
                result.append(node)
            else:
                stack.append((node, True))
                stack.extend((child, False) for child in reversed(node.children))
        return result

    def edge_ids(self) -> list[int]:
        """Ids of all edges (non-root nodes), ascending."""
        return [node.id for node in self.nodes if node.parent is not None]

    def branch_lengths(self) -> dict[int, float]:
        """Map edge id to branch length."""
        return {node.id: node.branch_length for node in self.nodes if node.parent is not None}

    @property
    def total_length(self) -> float:
        return float(sum(node.branch_length for node in self.nodes if node.parent is not None))

    def clade_ids(self, node: TreeNode) -> set[int]:
        """Ids of all nodes in the subtree below and including node."""
        ids = set()
        stack = [node]
        while stack:
            current = stack.pop()
            ids.add(current.id)
            stack.extend(current.children)
        return ids

    def splits(self) -> frozenset[frozenset[str]]:
        """
        Non-trivial leaf bipartitions, the unrooted topology signature.

        Each split is represented by the side that does not contain the
        alphabetically first leaf, so equal topologies compare equal
        regardless of root placement, node ids or child order.
        """
        all_leaves = frozenset(self.leaf_names)
        anchor = min(all_leaves)
        below: dict[int, frozenset[str]] = {}
        result = set()
        for node in self.postorder():
            if node.is_leaf:
                below[node.id] = frozenset([node.name])
                continue
            below[node.id] = frozenset().union(*(below[c.id] for c in node.children))
            if node.parent is None:
                continue
            side = below[node.id]
            if 1 < len(side) < len(all_leaves) - 1:
                result.add(side if anchor not in side else all_leaves - side)
        return frozenset(result)

    def same_topology(self, other: "Tree") -> bool:
        return self.splits() == other.splits()

    # ------------------------------------------------------------------
    # Subtree pruning and regrafting
    # ------------------------------------------------------------------

    def regraft_candidates(self, prune_id: int) -> list[int]:
        """
        Edges the subtree below ``prune_id`` can be regrafted onto.

        Excludes edges inside the pruned subtree and the edges adjacent to
        the prune point (the edge above its parent and the edges above its
        siblings), since reattaching there reproduces the current tree.

        Parameters
        ----------
        prune_id : int
            Edge id of the prune edge

        Returns
        -------
        list[int]
            Admissible regraft edge ids, ascending
        """
        pruned = self.nodes[prune_id]
        attach = pruned.parent
        if attach is None:
            return []

        excluded = self.clade_ids(pruned)
        excluded.add(attach.id)
        excluded.update(child.id for child in attach.children)
        return [
            node.id for node in self.nodes
            if node.parent is not None and node.id not in excluded
        ]

    def apply_spr(self, prune_id: int, regraft_id: int) -> TreeNode:
        """
        Prune the subtree below one edge and regraft it onto another.

        The attachment node of the pruned subtree is removed (its two
        remaining edges merge), then reinserted halfway along the regraft
        edge. The pendant branch keeps its length.

        Parameters
        ----------
        prune_id : int
            Edge id above the subtree to move
        regraft_id : int
            Edge id to attach the subtree to

        Returns
        -------
        TreeNode
            Root of the moved subtree; its branch is the pendant branch

        Raises
        ------
        ValueError
            If the move is not admissible
        TopologyInvariantViolation
            If the resulting tree is malformed
        """
        if regraft_id not in self.regraft_candidates(prune_id):
            raise ValueError(f"Inadmissible SPR move: prune {prune_id}, regraft {regraft_id}")

        pruned = self.nodes[prune_id]
        target = self.nodes[regraft_id]
        attach = pruned.parent

        attach.children.remove(pruned)
        self._suppress(attach)

        target_parent = target.parent
        target_parent.children[target_parent.children.index(target)] = attach
        attach.parent = target_parent
        attach.children = [target, pruned]
        target.parent = attach
        pruned.parent = attach

        half = target.branch_length / 2.0
        attach.branch_length = half
        target.branch_length = half

        self.validate()
        return pruned

    def _suppress(self, node: TreeNode) -> None:
        """Remove a node left with a single edge below a non-root parent or two edges at the root."""
        if node.parent is not None:
            (child,) = node.children
            parent = node.parent
            parent.children[parent.children.index(node)] = child
            child.parent = parent
            child.branch_length += node.branch_length
        else:
            first, second = node.children
            new_root = first if not first.is_leaf else second
            if new_root.is_leaf:
                raise TopologyInvariantViolation("Pruned tree has fewer than three leaves")
            other = second if new_root is first else first
            other.branch_length += new_root.branch_length
            other.parent = new_root
            new_root.children.append(other)
            new_root.parent = None
            new_root.branch_length = 0.0
            self.root = new_root

        node.children = []
        node.parent = None
        node.branch_length = 0.0

    def validate(self) -> None:
        """
        Check that the tree is a well-formed unrooted binary tree.

        Raises
        ------
        TopologyInvariantViolation
            On any broken invariant
        """
        if self.root.parent is not None:
            raise TopologyInvariantViolation("Root has a parent")
        if len(self.root.children) != 3:
            raise TopologyInvariantViolation(
                f"Root has {len(self.root.children)} children, expected 3"
            )

        seen = 0
        for node in self.preorder():
            seen += 1
            if self.nodes[node.id] is not node:
                raise TopologyInvariantViolation(f"Node index out of sync at id {node.id}")
            for child in node.children:
                if child.parent is not node:
                    raise TopologyInvariantViolation(
                        f"Node {child.id} does not point back to parent {node.id}"
                    )
            if node is not self.root and not node.is_leaf and len(node.children) != 2:
                raise TopologyInvariantViolation(
                    f"Internal node {node.id} has {len(node.children)} children"
                )
            if node is not self.root and not (node.branch_length >= 0 and np.isfinite(node.branch_length)):
                raise TopologyInvariantViolation(
                    f"Edge {node.id} has invalid length {node.branch_length}"
                )

        if seen != len(self.nodes):
            raise TopologyInvariantViolation(
                f"{len(self.nodes) - seen} node(s) unreachable from the root"
            )
        n_leaves = self.n_leaves
        if len(self.nodes) - n_leaves != n_leaves - 2:
            raise TopologyInvariantViolation(
                f"{n_leaves} leaves but {len(self.nodes) - n_leaves} internal nodes"
            )

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------

    def to_newick(self, precision: int = 6) -> str:
        """
        Serialize tree in Newick format.

        Parameters
        ----------
        precision : int
            Decimal places for branch lengths

        Returns
        -------
        str
            Newick string terminated by ';'
        """

        def format_node(node: TreeNode) -> str:
            if node.is_leaf:
                label = node.name
            else:
                label = '(' + ','.join(format_node(child) for child in node.children) + ')'
            if node.parent is None:
                return label
            return f"{label}:{node.branch_length:.{precision}f}"

        return format_node(self.root) + ';'

    def __repr__(self) -> str:
        return f"Tree(n_leaves={self.n_leaves}, length={self.total_length:.4f})"
