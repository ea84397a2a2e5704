"""
_wrapped_tree.py
================
Per-tree clade index: the taxon bitmask of every node of a single Tree.

Used by the CCD classes for common-ancestor heights and for distances
between a tree and a distribution.
"""

from typing import List

from ccdkit._bitset import BitSet, new_bitset
from ccdkit._tree import Tree


class WrappedTree:
    """
    A Tree together with the clade bitmask of each of its nodes.

    Parameters
    ----------
    tree : Tree
        The tree to index.
    n_bits : int, optional
        Width of the taxon space; defaults to the largest taxon index + 1.
    """

    def __init__(self, tree: Tree, n_bits: int = None) -> None:
        self.tree = tree
        if n_bits is None:
            n_bits = int(tree.taxon[: tree.n_leaves].max()) + 1
        self.n_bits = n_bits

        self._clade_of_vertex: List[BitSet] = [None] * tree.n_nodes
        for node in tree.postorder():
            bits = new_bitset(n_bits)
            if tree.is_leaf(node):
                bits.set(int(tree.taxon[node]))
            else:
                left, right = tree.children(node)
                bits.or_(self._clade_of_vertex[left]).or_(self._clade_of_vertex[right])
            self._clade_of_vertex[node] = bits

        self._vertex_of_clade = {
            bits: node for node, bits in enumerate(self._clade_of_vertex)
        }

    def get_clade_of_vertex(self, node: int) -> BitSet:
        return self._clade_of_vertex[node]

    def get_height_of_clade(self, bits: BitSet) -> float:
        """
        Height of the most recent common ancestor of the taxa in *bits*.

        Descends from the root while one child still contains all of *bits*.
        """
        tree = self.tree
        node = tree.root
        while not tree.is_leaf(node):
            left, right = tree.children(node)
            if self._clade_of_vertex[left].contains(bits):
                node = left
            elif self._clade_of_vertex[right].contains(bits):
                node = right
            else:
                break
        return float(tree.height[node])

    def contains_clade(self, bits: BitSet) -> bool:
        return bits in self._vertex_of_clade

    def get_clades(self) -> List[BitSet]:
        return list(self._clade_of_vertex)

    def get_nontrivial_clades(self) -> List[BitSet]:
        """Clades of the internal nodes (root included)."""
        return self._clade_of_vertex[self.tree.n_leaves :]
