"""
_ccd2.py
========
CCD2: conditional clade probabilities that depend on the sibling clade.

A clade ``C`` with sibling ``S`` is a different graph node from ``C`` with
sibling ``S'``.  These ``ExtendedClade`` nodes are stored in a two-level map
``bits -> sibling bits -> ExtendedClade``; leaves and the root have no
sibling and live in the plain clade map.  The CCP of a partition of
``(C, S)`` is its frequency among trees containing ``C`` next to ``S``.
"""

import logging
from typing import Dict, List, Optional

from ccdkit._bitset import BitSet, new_bitset
from ccdkit._ccd import AbstractCCD
from ccdkit._clade import Clade, CladePartition, ExtendedClade
from ccdkit._errors import UnsupportedOperationError
from ccdkit._logging import log_tree_not_in_ccd
from ccdkit._tree import Tree

logger = logging.getLogger(__name__)


class CCD2(AbstractCCD):
    """Conditional clade distribution with sibling-aware clades."""

    def _init_empty(self, number_of_leaves, leaf_array_size, store_base_trees, config, seed):
        super()._init_empty(number_of_leaves, leaf_array_size, store_base_trees, config, seed)
        self.extended_clade_mapping: Dict[BitSet, Dict[BitSet, ExtendedClade]] = {}
        # every clade (root, leaves and extended) in insertion order
        self._all_clades: Dict[Clade, None] = {}

    def initialize(self) -> None:
        pass

    # ================================================================== #
    # Clade bookkeeping                                                    #
    # ================================================================== #

    def _add_new_clade(self, bits: BitSet) -> Clade:
        if bits.cardinality() == 1:
            clade = ExtendedClade(bits, self)
        else:
            clade = Clade(bits, self)
        self.clade_mapping[bits] = clade
        self._all_clades[clade] = None
        return clade

    def _add_extended_clade(self, bits: BitSet, sibling_bits: BitSet) -> ExtendedClade:
        clade = ExtendedClade(bits, self)
        self.extended_clade_mapping.setdefault(bits, {})[sibling_bits] = clade
        self._all_clades[clade] = None
        return clade

    def _iter_clades(self) -> List[Clade]:
        return list(self._all_clades)

    def _discard_clade(self, clade: Clade) -> None:
        self._all_clades.pop(clade, None)
        if clade.size == 1 or clade is self.root_clade:
            self.clade_mapping.pop(clade.bits, None)
            return
        variants = self.extended_clade_mapping.get(clade.bits)
        if variants is None:
            return
        for sibling_bits, variant in list(variants.items()):
            if variant is clade:
                del variants[sibling_bits]
        if not variants:
            del self.extended_clade_mapping[clade.bits]

    def get_extended_clade(self, bits: BitSet, sibling_bits: BitSet) -> Optional[Clade]:
        """
        Return the clade *bits* with sibling *sibling_bits*.

        Leaves are shared by all siblings, so for a single taxon the sibling
        is ignored.
        """
        if bits.cardinality() == 1:
            return self.clade_mapping.get(bits)
        variants = self.extended_clade_mapping.get(bits)
        if variants is None:
            return None
        return variants.get(sibling_bits)

    def get_extended_clades(self, bits: BitSet) -> List[ExtendedClade]:
        """All sibling variants of the clade *bits*."""
        self._ensure_clean()
        return list(self.extended_clade_mapping.get(bits, {}).values())

    def get_number_of_clades(self) -> int:
        self._ensure_clean()
        return len(self._all_clades)

    def get_number_of_parameters(self) -> int:
        return self.get_number_of_clade_partitions()

    # ================================================================== #
    # Adding and removing trees                                            #
    # ================================================================== #

    def _node_bits(self, tree: Tree) -> List[BitSet]:
        bits_of_node: List[Optional[BitSet]] = [None] * tree.n_nodes
        for node in tree.postorder():
            bits = new_bitset(self.leaf_array_size)
            if tree.is_leaf(node):
                bits.set(int(tree.taxon[node]))
            else:
                left, right = tree.children(node)
                bits.or_(bits_of_node[left]).or_(bits_of_node[right])
            bits_of_node[node] = bits
        return bits_of_node

    def _cladify_tree(self, tree: Tree) -> None:
        """Register sibling pairs of *tree*; both siblings are created together."""
        bits_of_node = self._node_bits(tree)
        clade_of_node: List[Optional[Clade]] = [None] * tree.n_nodes
        clade_of_node[tree.root] = self.root_clade

        # children of every internal node, as a sibling pair
        for node in range(tree.n_leaves, tree.n_nodes):
            left, right = tree.children(node)
            left_clade = self._get_or_create(bits_of_node[left], bits_of_node[right])
            right_clade = self._get_or_create(bits_of_node[right], bits_of_node[left])
            if not left_clade.is_leaf():
                left_clade.sibling = right_clade
            if not right_clade.is_leaf():
                right_clade.sibling = left_clade
            left_clade.increase_occurrence_count(float(tree.height[left]))
            right_clade.increase_occurrence_count(float(tree.height[right]))
            clade_of_node[left] = left_clade
            clade_of_node[right] = right_clade

        self.root_clade.increase_occurrence_count(float(tree.height[tree.root]))
        for node in range(tree.n_leaves, tree.n_nodes):
            left, right = tree.children(node)
            parent = clade_of_node[node]
            partition = parent.get_clade_partition(clade_of_node[left])
            if partition is None:
                partition = parent.create_clade_partition(
                    clade_of_node[left], clade_of_node[right]
                )
            partition.increase_occurrence_count(float(tree.height[node]))

    def _get_or_create(self, bits: BitSet, sibling_bits: BitSet) -> Clade:
        clade = self.get_extended_clade(bits, sibling_bits)
        if clade is not None:
            return clade
        if bits.cardinality() == 1:
            return self._add_new_clade(bits)
        return self._add_extended_clade(bits, sibling_bits)

    def _locate_tree(self, tree: Tree):
        located = self._locate_tree_quietly(tree)
        if located is None:
            log_tree_not_in_ccd("a clade or clade partition of the tree is missing")
        return located

    def _on_zero_occurrence(self, partition: CladePartition) -> None:
        partition.parent_clade.remove_partition(partition)

    # ================================================================== #
    # Probabilities                                                        #
    # ================================================================== #

    def get_clade_probability(self, bits: BitSet) -> float:
        """Probability of the taxon set *bits*, summed over all siblings."""
        self._ensure_clean()
        if bits == self.root_clade.bits:
            return 1.0
        if bits.cardinality() == 1:
            return 1.0 if bits in self.clade_mapping else 0.0
        return sum(
            self.get_probability_of_clade(variant)
            for variant in self.extended_clade_mapping.get(bits, {}).values()
        )

    def get_log_probability_of_tree(self, tree: Tree) -> float:
        self._ensure_clean()
        located = self._locate_tree_quietly(tree)
        if located is None:
            return float("-inf")
        log_probability = 0.0
        for _, partition in located:
            if partition is not None:
                if partition.get_ccp() <= 0.0:
                    return float("-inf")
                log_probability += partition.get_log_ccp()
        return log_probability

    def _locate_tree_quietly(self, tree: Tree):
        bits_of_node = self._node_bits(tree)
        clade_of_node: List[Optional[Clade]] = [None] * tree.n_nodes
        clade_of_node[tree.root] = self.root_clade
        for node in range(tree.n_leaves, tree.n_nodes):
            left, right = tree.children(node)
            clade_of_node[left] = self.get_extended_clade(bits_of_node[left], bits_of_node[right])
            clade_of_node[right] = self.get_extended_clade(bits_of_node[right], bits_of_node[left])
            if clade_of_node[left] is None or clade_of_node[right] is None:
                return None
        located = []
        for node in range(tree.n_nodes):
            partition = None
            if not tree.is_leaf(node):
                left, _ = tree.children(node)
                partition = clade_of_node[node].get_clade_partition(clade_of_node[left])
                if partition is None:
                    return None
            located.append((clade_of_node[node], partition))
        return located

    def copy(self) -> "AbstractCCD":
        raise UnsupportedOperationError("Copying a CCD2 is not supported")
