"""
Core tree utilities for fernsse.

Provides the array-based tree representation used by the MuSSE pruning
code, plus the tree surgery the analysis needs before any likelihood is
computed: restricting a tree to a tip set and forcing it to be ultrametric.

Key design principles:
1. Immutable records - pruning and rescaling return new trees
2. Efficient structure extraction - arrays for numpy operations
3. Deterministic layout - node indices follow postorder, tips left to right
"""

from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Union
import logging

import numpy as np
from scipy import optimize, sparse

logger = logging.getLogger(__name__)


@dataclass
class TreeNode:
    """
    Generic tree node representation.

    Attributes:
        id: Unique node identifier (postorder index)
        name: Node name (for tips, the taxon label)
        parent_id: ID of parent node (None for root)
        children_ids: List of child node IDs
        branch_length: Length of branch leading to this node
        is_tip: Whether this is a leaf node
    """
    id: int
    name: Optional[str] = None
    parent_id: Optional[int] = None
    children_ids: List[int] = field(default_factory=list)
    branch_length: float = 0.0
    is_tip: bool = False


@dataclass
class TreeStructure:
    """
    Extracted tree structure optimized for likelihood computation.

    Attributes:
        n_nodes: Total number of nodes
        n_tips: Number of tip nodes
        nodes: List of TreeNode objects, indexed by id
        tip_indices: Indices of tip nodes (left-to-right order)
        internal_indices: Indices of internal nodes
        root_index: Index of root node
        postorder: Node indices in postorder (tips first, root last)
        branch_lengths: Array of branch lengths indexed by node
        parent_indices: Array of parent indices (-1 for root)
        tip_names: List of tip names in order of tip_indices
    """
    n_nodes: int
    n_tips: int
    nodes: List[TreeNode]
    tip_indices: List[int]
    internal_indices: List[int]
    root_index: int
    postorder: List[int]
    branch_lengths: np.ndarray
    parent_indices: np.ndarray
    tip_names: List[str]

    @classmethod
    def from_newick(cls, newick: str) -> 'TreeStructure':
        """
        Parse Newick string into TreeStructure.

        Underscores in labels are preserved, so ``Asplenium_nidus`` stays
        ``Asplenium_nidus`` rather than becoming ``Asplenium nidus``.

        Args:
            newick: Newick format tree string

        Returns:
            TreeStructure instance
        """
        import dendropy

        tree = dendropy.Tree.get(
            data=newick,
            schema="newick",
            preserve_underscores=True,
            rooting="force-rooted",
        )
        return cls._from_dendropy(tree)

    @classmethod
    def from_file(cls, filepath: Union[str, Path]) -> 'TreeStructure':
        """Load tree from Newick file."""
        with open(filepath, 'r') as f:
            newick = f.read().strip()
        return cls.from_newick(newick)

    @classmethod
    def _from_dendropy(cls, tree) -> 'TreeStructure':
        """Convert a dendropy tree, numbering nodes in postorder."""
        nodes: List[TreeNode] = []
        index: Dict[int, int] = {}
        for node in tree.postorder_node_iter():
            node_id = len(nodes)
            index[id(node)] = node_id
            is_tip = node.is_leaf()
            if is_tip and node.taxon is not None:
                name = node.taxon.label
            else:
                name = node.label
            children_ids = [index[id(child)] for child in node.child_nodes()]
            for child_id in children_ids:
                nodes[child_id].parent_id = node_id
            nodes.append(TreeNode(
                id=node_id,
                name=name,
                branch_length=float(node.edge.length) if node.edge.length else 0.0,
                is_tip=is_tip,
                children_ids=children_ids,
            ))
        return cls._build_from_nodes(nodes, len(nodes) - 1)

    @classmethod
    def _build_from_nodes(cls, nodes: List[TreeNode], root_index: int) -> 'TreeStructure':
        """Build TreeStructure from a postorder-numbered node list."""
        tip_indices = [n.id for n in nodes if n.is_tip]
        internal_indices = [n.id for n in nodes if not n.is_tip]

        branch_lengths = np.array([n.branch_length for n in nodes], dtype=float)
        parent_indices = np.array(
            [n.parent_id if n.parent_id is not None else -1 for n in nodes]
        )

        tip_names = [nodes[i].name or f"tip_{i}" for i in tip_indices]

        return cls(
            n_nodes=len(nodes),
            n_tips=len(tip_indices),
            nodes=nodes,
            tip_indices=tip_indices,
            internal_indices=internal_indices,
            root_index=root_index,
            postorder=[n.id for n in nodes],
            branch_lengths=branch_lengths,
            parent_indices=parent_indices,
            tip_names=tip_names,
        )

    def get_tip_index_map(self) -> Dict[str, int]:
        """Map tip names to their indices."""
        return {name: idx for idx, name in zip(self.tip_indices, self.tip_names)}

    def is_binary(self) -> bool:
        """True if every internal node has exactly two children."""
        return all(len(self.nodes[i].children_ids) == 2 for i in self.internal_indices)

    def node_depths(self) -> np.ndarray:
        """Distance from the root to every node (root branch excluded)."""
        depths = np.zeros(self.n_nodes)
        for idx in reversed(self.postorder):
            parent = self.parent_indices[idx]
            if parent >= 0:
                depths[idx] = depths[parent] + self.branch_lengths[idx]
        return depths

    def tip_depths(self) -> np.ndarray:
        """Root-to-tip path lengths, in tip order."""
        return self.node_depths()[self.tip_indices]

    def is_ultrametric(self, tol: float = 1e-8) -> bool:
        """Check that all tips sit at the same depth (relative tolerance)."""
        depths = self.tip_depths()
        height = float(depths.max()) if depths.size else 0.0
        if height == 0.0:
            return True
        return float(depths.max() - depths.min()) <= tol * height

    def total_length(self) -> float:
        """Sum of branch lengths, excluding the root branch."""
        return float(self.branch_lengths.sum() - self.branch_lengths[self.root_index])

    def to_dendropy(self):
        """
        Build a dendropy tree with the same topology, labels and branch lengths.

        Tips get taxa from a fresh namespace; the root edge has no length.
        """
        import dendropy

        namespace = dendropy.TaxonNamespace()
        tree = dendropy.Tree(taxon_namespace=namespace)
        tip_name = dict(zip(self.tip_indices, self.tip_names))
        built = {}
        for idx in self.postorder:
            record = self.nodes[idx]
            node = tree.seed_node if idx == self.root_index else dendropy.Node()
            if record.is_tip:
                taxon = dendropy.Taxon(label=tip_name[idx])
                namespace.add_taxon(taxon)
                node.taxon = taxon
            else:
                node.label = record.name
            for child_id in record.children_ids:
                node.add_child(built.pop(child_id))
            if idx != self.root_index:
                node.edge.length = float(self.branch_lengths[idx])
            built[idx] = node
        return tree

    def keep_tips(self, names: Iterable[str]) -> 'TreeStructure':
        """
        Restrict the tree to the given tips.

        Tips not listed are removed; internal nodes left with a single
        child are collapsed and their branch length added to the child.
        The relative order of surviving tips is unchanged, so pruning an
        already pruned tree to the same set returns an identical tree.

        Args:
            names: Tip names to retain

        Returns:
            New TreeStructure

        Raises:
            ValueError: If none of the names are tips of this tree
        """
        keep = set(names) & set(self.tip_names)
        if not keep:
            raise ValueError("None of the requested tips are present in the tree")
        pruned = self.to_dendropy().extract_tree_with_taxa_labels(
            labels=keep, suppress_unifurcations=True,
        )
        return self._from_dendropy(pruned)

    def relabel_tips(self, func: Callable[[str], str]) -> 'TreeStructure':
        """Return a copy of this tree with every tip name passed through ``func``."""
        names = [func(name) for name in self.tip_names]
        renamed = dict(zip(self.tip_indices, names))
        nodes = [replace(n, name=renamed.get(n.id, n.name), children_ids=list(n.children_ids))
                 for n in self.nodes]
        return replace(self, nodes=nodes, tip_names=names)

    def with_branch_lengths(self, branch_lengths: np.ndarray) -> 'TreeStructure':
        """Return a copy of this tree with new branch lengths."""
        branch_lengths = np.asarray(branch_lengths, dtype=float)
        if branch_lengths.shape != self.branch_lengths.shape:
            raise ValueError(
                f"Expected {self.n_nodes} branch lengths, got {branch_lengths.shape}"
            )
        nodes = [replace(n, branch_length=float(b), children_ids=list(n.children_ids))
                 for n, b in zip(self.nodes, branch_lengths)]
        return replace(self, nodes=nodes, branch_lengths=branch_lengths.copy())

    def to_newick(self, precision: int = 6) -> str:
        """Serialize to Newick (root branch length omitted)."""
        return self.to_dendropy().as_string(
            schema="newick",
            suppress_rooting=True,
            preserve_spaces=True,
            unquoted_underscores=True,
            real_value_format_specifier=f".{precision}f",
        ).strip()

    def __repr__(self) -> str:
        return f"TreeStructure({self.n_tips} tips, {self.n_nodes} nodes)"


def load_tree(filepath: Union[str, Path]) -> TreeStructure:
    """
    Load a phylogenetic tree from a Newick file.

    Args:
        filepath: Path to Newick file

    Returns:
        TreeStructure ready for likelihood computation
    """
    return TreeStructure.from_file(filepath)


def force_ultrametric(
    tree: TreeStructure,
    method: str = "lp",
    tol: float = 1e-8,
) -> TreeStructure:
    """
    Adjust branch lengths so every tip is at the same depth.

    Methods:
        "lp": minimize the total absolute change in branch lengths subject
            to equal tip depths and non-negative lengths (linear program).
            Any float residual left by the solver is absorbed by extending
            tip branches.
        "extend": lengthen each tip branch so all tips reach the depth of
            the deepest tip.

    Args:
        tree: Input tree
        method: "lp" or "extend"
        tol: Relative tolerance under which the tree is returned unchanged

    Returns:
        Ultrametric TreeStructure
    """
    if method not in ("lp", "extend"):
        raise ValueError(f"Unknown ultrametric method: {method}")

    if tree.is_ultrametric(tol):
        return tree

    if method == "lp":
        tree = tree.with_branch_lengths(_ultrametric_lp(tree))

    return _extend_tips(tree)


def _extend_tips(tree: TreeStructure) -> TreeStructure:
    depths = tree.tip_depths()
    lengths = tree.branch_lengths.copy()
    lengths[tree.tip_indices] += depths.max() - depths
    return tree.with_branch_lengths(lengths)


def _ultrametric_lp(tree: TreeStructure) -> np.ndarray:
    """
    Solve min sum |b'_e - b_e| s.t. every root-to-tip path sums to T.

    Variables are [b' (m edges), d (m deviations), T].
    """
    edges = [i for i in range(tree.n_nodes) if i != tree.root_index]
    col = {node: c for c, node in enumerate(edges)}
    m = len(edges)
    b = tree.branch_lengths[edges]

    rows, cols = [], []
    for r, tip in enumerate(tree.tip_indices):
        node = tip
        while node != tree.root_index:
            rows.append(r)
            cols.append(col[node])
            node = int(tree.parent_indices[node])
    paths = sparse.csr_matrix(
        (np.ones(len(rows)), (rows, cols)), shape=(tree.n_tips, m)
    )

    eye = sparse.identity(m, format="csr")
    zero_col = sparse.csr_matrix((m, 1))
    a_ub = sparse.vstack([
        sparse.hstack([eye, -eye, zero_col]),
        sparse.hstack([-eye, -eye, zero_col]),
    ], format="csr")
    b_ub = np.concatenate([b, -b])
    a_eq = sparse.hstack([
        paths,
        sparse.csr_matrix((tree.n_tips, m)),
        sparse.csr_matrix(-np.ones((tree.n_tips, 1))),
    ], format="csr")
    b_eq = np.zeros(tree.n_tips)
    c = np.concatenate([np.zeros(m), np.ones(m), [0.0]])

    result = optimize.linprog(
        c,
        A_ub=a_ub,
        b_ub=b_ub,
        A_eq=a_eq,
        b_eq=b_eq,
        bounds=[(0, None)] * (2 * m) + [(0, None)],
        method="highs",
    )
    if not result.success:
        raise RuntimeError(f"Ultrametric linear program failed: {result.message}")

    logger.info(
        "Forced ultrametric tree (total absolute branch change %.6g, height %.6g)",
        result.fun, result.x[-1],
    )

    lengths = tree.branch_lengths.copy()
    lengths[edges] = np.maximum(result.x[:m], 0.0)
    return lengths
