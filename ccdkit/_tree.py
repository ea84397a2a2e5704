"""
_tree.py
========
A single rooted binary tree represented as a set of parallel numpy arrays.

This is the tree abstraction consumed and produced by the CCD classes.  It
is deliberately minimal: trees are built from arrays or nested tuples (no
NEWICK parsing) and expose, per node, leaf/internal status, a stable taxon
index for leaves, two children and a height.

Public API
----------
  Tree(left_child, right_child, height=None, taxon=None, names=None)
      Constructor from child arrays.
  Tree.from_nested(nested, height=None, names=None)
      Constructor from nested 2-tuples of taxon indices, e.g. ((0, 1), (2, 3)).
  Tree.from_parent_array(parent, height=None, taxon=None, names=None)
      Constructor from a parent array.

  .is_leaf(node)
  .children(node)
  .postorder()
  .get_leaf_nodes()
  .get_taxon_name(taxon)
  .to_nested()

Node ID convention
------------------
Leaves occupy IDs ``0..n_leaves-1``.  Internal nodes occupy
``n_leaves..n_nodes-1`` in post-order, so every child ID is smaller than its
parent's ID and the root is always ``n_nodes - 1``.  Iterating node IDs in
increasing order therefore visits children before parents.

Leaf IDs are positions in the arrays, not taxa: ``taxon[node]`` holds the
taxon index of a leaf (−1 for internal nodes).  Trees extracted from a
filtered CCD keep the taxon indices of the unfiltered taxon space.
"""

import numpy as np


class Tree:
    """
    A rooted, strictly bifurcating tree.

    Attributes (all read-only after construction)
    ----------------------------------------------
    n_nodes   : int     Total number of nodes (2 * n_leaves - 1).
    n_leaves  : int     Number of leaf (taxon) nodes.
    root      : int     Node ID of the root (always n_nodes - 1).
    names     : list[str]  Taxon name for each node; '' for internal nodes.

    Arrays
    ------
    parent      : int32  [n_nodes]   Parent ID; -1 for root.
    left_child  : int32  [n_nodes]   Left child ID; -1 for leaves.
    right_child : int32  [n_nodes]   Right child ID; -1 for leaves.
    taxon       : int32  [n_nodes]   Taxon index of leaves; -1 for internals.
    height      : float64[n_nodes]   Node height (distance above the present).
    distance    : float64[n_nodes]   Branch length to parent; -1.0 for root.
    """

    # ================================================================== #
    # Construction                                                         #
    # ================================================================== #

    def __init__(
        self, left_child, right_child, height=None, taxon=None, names=None
    ) -> None:
        """
        Build a tree from child arrays following the node ID convention.

        Parameters
        ----------
        left_child, right_child : array-like of int
            Child IDs per node; -1 for leaves.
        height : array-like of float, optional
            Node heights.  Defaults to 0 for leaves and
            ``max(child heights) + 1`` for internal nodes.
        taxon : array-like of int, optional
            Taxon index per leaf.  Defaults to the leaf's node ID.
        names : list[str], optional
            Taxon names per node.  Defaults to ``str(taxon)`` for leaves.

        Raises
        ------
        ValueError
            If the arrays do not describe a binary tree in the node ID
            convention.
        """
        self.left_child = np.asarray(left_child, dtype=np.int32).copy()
        self.right_child = np.asarray(right_child, dtype=np.int32).copy()
        self.n_nodes: int = int(self.left_child.shape[0])

        if self.n_nodes == 0 or self.n_nodes % 2 == 0:
            raise ValueError(
                f"A rooted binary tree has an odd number of nodes; got {self.n_nodes}"
            )
        if self.right_child.shape[0] != self.n_nodes:
            raise ValueError("left_child and right_child must have equal length")

        self.n_leaves: int = (self.n_nodes + 1) // 2
        self.root: int = self.n_nodes - 1
        self._validate_structure()

        self.parent = np.full(self.n_nodes, -1, dtype=np.int32)
        for node in range(self.n_leaves, self.n_nodes):
            self.parent[self.left_child[node]] = node
            self.parent[self.right_child[node]] = node

        if taxon is None:
            self.taxon = np.full(self.n_nodes, -1, dtype=np.int32)
            self.taxon[: self.n_leaves] = np.arange(self.n_leaves, dtype=np.int32)
        else:
            self.taxon = np.asarray(taxon, dtype=np.int32).copy()
            if self.taxon.shape[0] == self.n_leaves:
                self.taxon = np.concatenate(
                    [self.taxon, np.full(self.n_leaves - 1, -1, dtype=np.int32)]
                )
            if self.taxon.shape[0] != self.n_nodes:
                raise ValueError(
                    "taxon must have one entry per leaf or one entry per node"
                )
            leaf_taxa = self.taxon[: self.n_leaves]
            if np.any(leaf_taxa < 0) or len(np.unique(leaf_taxa)) != self.n_leaves:
                raise ValueError("Leaf taxon indices must be distinct and >= 0")

        if height is None:
            self.height = self._unit_heights()
        else:
            self.height = np.asarray(height, dtype=np.float64).copy()
            if self.height.shape[0] != self.n_nodes:
                raise ValueError("height must have one entry per node")

        self.distance = np.full(self.n_nodes, -1.0, dtype=np.float64)
        for node in range(self.n_nodes - 1):
            self.distance[node] = self.height[self.parent[node]] - self.height[node]

        if names is None:
            self.names = [
                str(int(self.taxon[i])) if i < self.n_leaves else ""
                for i in range(self.n_nodes)
            ]
        else:
            self.names = list(names)
            if len(self.names) == self.n_leaves:
                self.names += [""] * (self.n_leaves - 1)
            if len(self.names) != self.n_nodes:
                raise ValueError("names must have one entry per leaf or per node")

        # Taxon index -> leaf node; built lazily on first name lookup.
        self._taxon_index: dict = None  # type: ignore[assignment]

    @classmethod
    def from_nested(cls, nested, height=None, names=None) -> "Tree":
        """
        Build a tree from nested 2-tuples whose leaves are taxon indices.

        Leaves receive node IDs in left-to-right order; internal nodes are
        numbered in post-order.  The traversal is iterative, so deep
        caterpillar trees do not hit the recursion limit.

        Parameters
        ----------
        nested : tuple
            e.g. ``((0, 1), (2, (3, 4)))``.
        height : array-like of float, optional
            Node heights in the resulting node ID order.
        names : list[str], optional
            Names per leaf, in leaf node ID order.

        Examples
        --------
        >>> t = Tree.from_nested(((0, 1), (2, 3)))
        >>> t.n_nodes, t.root
        (7, 6)
        >>> t.to_nested()
        ((0, 1), (2, 3))
        """
        if not isinstance(nested, tuple):
            raise ValueError("A tree needs at least two leaves")

        # ---- Pass 1: count leaves -------------------------------------- #
        n_leaves = 0
        stack = [nested]
        while stack:
            item = stack.pop()
            if isinstance(item, tuple):
                if len(item) != 2:
                    raise ValueError(
                        f"Internal nodes must have exactly two children; got {item!r}"
                    )
                stack.extend(item)
            else:
                n_leaves += 1

        n_nodes = 2 * n_leaves - 1
        left_child = np.full(n_nodes, -1, dtype=np.int32)
        right_child = np.full(n_nodes, -1, dtype=np.int32)
        taxon = np.full(n_nodes, -1, dtype=np.int32)

        # ---- Pass 2: iterative post-order numbering -------------------- #
        leaf_id = 0
        internal_id = n_leaves
        ids = []
        stack = [(nested, False)]
        while stack:
            item, expanded = stack.pop()
            if not isinstance(item, tuple):
                taxon[leaf_id] = int(item)
                ids.append(leaf_id)
                leaf_id += 1
            elif expanded:
                right = ids.pop()
                left = ids.pop()
                left_child[internal_id] = left
                right_child[internal_id] = right
                ids.append(internal_id)
                internal_id += 1
            else:
                stack.append((item, True))
                stack.append((item[1], False))
                stack.append((item[0], False))

        return cls(left_child, right_child, height=height, taxon=taxon, names=names)

    @classmethod
    def from_parent_array(cls, parent, height=None, taxon=None, names=None) -> "Tree":
        """
        Build a tree from a parent array in the node ID convention.

        The child with the smaller ID becomes the left child.

        Parameters
        ----------
        parent : array-like of int
            Parent ID per node; -1 for the root.
        height, taxon, names
            As for the constructor.

        Examples
        --------
        >>> Tree.from_parent_array([4, 4, 5, 5, 6, 6, -1]).to_nested()
        ((0, 1), (2, 3))
        """
        parent = np.asarray(parent, dtype=np.int32)
        n_nodes = int(parent.shape[0])
        left_child = np.full(n_nodes, -1, dtype=np.int32)
        right_child = np.full(n_nodes, -1, dtype=np.int32)
        for node in range(n_nodes):
            p = int(parent[node])
            if p < 0:
                continue
            if p >= n_nodes:
                raise ValueError(f"Parent {p} of node {node} is out of range")
            if left_child[p] == -1:
                left_child[p] = node
            elif right_child[p] == -1:
                right_child[p] = node
            else:
                raise ValueError(f"Node {p} has more than two children")
        return cls(left_child, right_child, height=height, taxon=taxon, names=names)

    # ================================================================== #
    # Public methods                                                      #
    # ================================================================== #

    def is_leaf(self, node: int) -> bool:
        return node < self.n_leaves

    def children(self, node: int):
        """Return ``(left, right)`` child IDs of an internal node."""
        return int(self.left_child[node]), int(self.right_child[node])

    def postorder(self) -> range:
        """Node IDs in an order that visits children before parents."""
        return range(self.n_nodes)

    def get_leaf_nodes(self) -> range:
        return range(self.n_leaves)

    def get_taxon_name(self, taxon: int) -> str:
        """
        Return the name of the leaf carrying *taxon*.

        Raises
        ------
        KeyError   if no leaf carries that taxon index.
        """
        if self._taxon_index is None:
            self._build_taxon_index()
        return self.names[self._taxon_index[int(taxon)]]

    def to_nested(self):
        """
        Return the topology as nested 2-tuples of taxon indices.

        The left/right order of the arrays is preserved.
        """
        built = {}
        for node in self.postorder():
            if self.is_leaf(node):
                built[node] = int(self.taxon[node])
            else:
                left, right = self.children(node)
                built[node] = (built.pop(left), built.pop(right))
        return built[self.root]

    def __repr__(self) -> str:
        return f"Tree(n_leaves={self.n_leaves}, topology={self.to_nested()!r})"

    # ================================================================== #
    # Private instance methods                                             #
    # ================================================================== #

    def _validate_structure(self) -> None:
        """Check the node ID convention: leaves first, children before parents."""
        n_leaves = self.n_leaves
        if np.any(self.left_child[:n_leaves] != -1) or np.any(
            self.right_child[:n_leaves] != -1
        ):
            raise ValueError(f"Nodes 0..{n_leaves - 1} must be leaves")

        seen = np.zeros(self.n_nodes, dtype=np.int32)
        for node in range(n_leaves, self.n_nodes):
            left = int(self.left_child[node])
            right = int(self.right_child[node])
            if not (0 <= left < node and 0 <= right < node) or left == right:
                raise ValueError(
                    f"Internal node {node} must have two distinct children with "
                    f"smaller IDs; got ({left}, {right})"
                )
            seen[left] += 1
            seen[right] += 1

        if np.any(seen[: self.n_nodes - 1] != 1) or seen[self.n_nodes - 1] != 0:
            raise ValueError("Every non-root node must have exactly one parent")

    def _unit_heights(self) -> np.ndarray:
        height = np.zeros(self.n_nodes, dtype=np.float64)
        for node in range(self.n_leaves, self.n_nodes):
            height[node] = (
                max(height[self.left_child[node]], height[self.right_child[node]])
                + 1.0
            )
        return height

    def _build_taxon_index(self) -> None:
        self._taxon_index = {
            int(self.taxon[node]): node for node in range(self.n_leaves)
        }
