"""
_filtered.py
============
CCDs with a set of taxa removed.

``FilteredCCD`` projects every clade of a base CCD onto the remaining taxa.
A clade entirely made of removed taxa vanishes.  A clade that loses taxa
may coincide with another projected clade (typically its own child); such
clades are merged, and occurrences of the partitions that made them
coincide are not counted twice.

``AttachingFilteredCCD`` builds the same distribution but reuses the base
CCD's clade objects wherever the projection leaves a whole subgraph
unchanged.  Filtered CCDs are immutable.

Examples
--------
>>> ccd = CCD1(trees)
>>> filtered = FilteredCCD(ccd, ccd.taxa_bitset([3]))
>>> filtered.get_number_of_leaves() == ccd.get_number_of_leaves() - 1
True
"""

import logging
from typing import Dict, List, Set

from ccdkit._bitset import BitSet, bitset_of
from ccdkit._ccd import AbstractCCD, CacheState
from ccdkit._ccd0 import CCD0, set_partition_probabilities
from ccdkit._clade import Clade, CladePartition
from ccdkit._errors import InvalidFilterError, UnsupportedOperationError
from ccdkit._logging import log_filtering

logger = logging.getLogger(__name__)


class FilteredCCD(AbstractCCD):
    """
    A CCD over the taxa of *base_ccd* minus *taxa_to_remove*.

    Parameters
    ----------
    base_ccd : AbstractCCD
        Any CCD, including another (non-attaching) FilteredCCD.
    taxa_to_remove : BitSet
        Mask of taxa to remove, in the base CCD's taxon index space.

    Raises
    ------
    InvalidFilterError
        If the mask is empty, refers to taxa beyond the base CCD's leaf
        array, leaves fewer than two taxa, or the base is an
        AttachingFilteredCCD.
    """

    def __init__(self, base_ccd: AbstractCCD, taxa_to_remove: BitSet) -> None:
        if isinstance(base_ccd, AttachingFilteredCCD):
            raise InvalidFilterError("An AttachingFilteredCCD cannot be filtered further")
        if taxa_to_remove.is_empty():
            raise InvalidFilterError("Cannot filter a CCD with an empty taxa-to-remove mask")
        if taxa_to_remove.length() > base_ccd.leaf_array_size:
            raise InvalidFilterError(
                f"Highest bit in taxa-to-remove mask ({taxa_to_remove.length()}) is "
                f"beyond the {base_ccd.leaf_array_size} taxa of the base CCD"
            )
        base_ccd._ensure_clean()
        mask = bitset_of(base_ccd.leaf_array_size, taxa_to_remove)
        remaining = base_ccd.root_clade.bits.copy().and_not(mask)
        if remaining.cardinality() < 2:
            raise InvalidFilterError(
                f"Removing {mask} leaves fewer than two taxa of {base_ccd.root_clade.bits}"
            )

        self.base_ccd = base_ccd
        root_ccd = base_ccd
        while isinstance(root_ccd, FilteredCCD):
            root_ccd = root_ccd.base_ccd
        self.root_ccd = root_ccd
        self.removed_taxa_mask = mask

        self._init_empty(
            remaining.cardinality(),
            base_ccd.leaf_array_size,
            False,
            base_ccd.config,
            None,
        )
        self.base_trees = base_ccd.get_base_trees()
        self.num_base_trees = base_ccd.num_base_trees

        self._filter()
        self._cache_state = CacheState.STRUCTURE_DIRTY
        log_filtering(
            type(self).__name__,
            str(mask),
            len(base_ccd._clades_in_size_order()),
            len(self.clade_mapping),
            self._number_of_shared_clades(),
        )

    # ================================================================== #
    # Filtering                                                            #
    # ================================================================== #

    def _filter(self) -> None:
        for clade in self._surviving_base_clades():
            self._filter_clade(clade, store_parent=True)
        self.root_clade = self.clade_mapping[self._filtered_bits(self.base_ccd.root_clade.bits)]

    def _surviving_base_clades(self) -> List[Clade]:
        """Base clades reachable from the root that keep a taxon, smallest first."""
        mask = self.removed_taxa_mask
        return [
            clade
            for clade in self.base_ccd._clades_in_size_order()
            if not mask.contains(clade.bits)
        ]

    def _filtered_bits(self, bits: BitSet) -> BitSet:
        return bits.copy().and_not(self.removed_taxa_mask)

    def _is_removed(self, clade: Clade) -> bool:
        return self.removed_taxa_mask.contains(clade.bits)

    def _filter_clade(self, clade: Clade, store_parent: bool) -> Clade:
        """Project *clade* and its partitions; children must be projected already."""
        remaining = self._filtered_bits(clade.bits)
        filtered = self.clade_mapping.get(remaining)
        if filtered is None:
            filtered = Clade(remaining, self)
            filtered.base_clade = clade
            filtered.increase_occurrence_count_by(
                clade.num_occurrences, clade.mean_occurred_height
            )
            self.clade_mapping[remaining] = filtered
        else:
            # trees where a child vanished already counted the other child
            occurrences = clade.num_occurrences
            height_sum = clade.mean_occurred_height * occurrences
            for partition in clade.partitions:
                first, second = partition.child_clades
                if self._is_removed(first) or self._is_removed(second):
                    occurrences -= partition.num_occurrences
                    height_sum -= partition.mean_occurred_height * partition.num_occurrences
            mean_height = height_sum / occurrences if occurrences > 0 else 0.0
            filtered.increase_occurrence_count_by(occurrences, mean_height)

        self._filter_partitions(clade, filtered, store_parent)
        return filtered

    def _filter_partitions(self, clade: Clade, filtered: Clade, store_parent: bool) -> None:
        for partition in clade.partitions:
            first, second = partition.child_clades
            if self._is_removed(first) or self._is_removed(second):
                continue
            first_filtered = self.clade_mapping[self._filtered_bits(first.bits)]
            second_filtered = self.clade_mapping[self._filtered_bits(second.bits)]
            if first_filtered is filtered or second_filtered is filtered:
                continue
            existing = filtered.get_clade_partition(first_filtered)
            if existing is not None:
                existing.increase_occurrence_count_by(
                    partition.num_occurrences, partition.mean_occurred_height
                )
            else:
                new_partition = filtered.create_clade_partition(
                    first_filtered, second_filtered, store_parent
                )
                new_partition.increase_occurrence_count_by(
                    partition.num_occurrences, partition.mean_occurred_height
                )

    def _number_of_shared_clades(self) -> int:
        return 0

    # ================================================================== #
    # Variant hooks                                                        #
    # ================================================================== #

    def initialize(self) -> None:
        if isinstance(self.root_ccd, CCD0):
            self._clade_order = None
            set_partition_probabilities(self._clades_in_size_order())

    def get_removed_taxa_mask(self) -> BitSet:
        return self.removed_taxa_mask.copy()

    def get_base_ccd(self) -> AbstractCCD:
        return self.base_ccd

    def get_root_ccd(self) -> AbstractCCD:
        """The unfiltered CCD at the bottom of the filtering chain."""
        return self.root_ccd

    def get_some_base_tree(self):
        return self.base_ccd.get_some_base_tree()

    def get_number_of_parameters(self) -> int:
        raise UnsupportedOperationError("Filtered CCDs have no parameter count")

    def add_tree(self, tree) -> None:
        raise UnsupportedOperationError("Adding trees to a filtered CCD is not supported")

    def remove_tree(self, tree, tidy_up: bool = False) -> bool:
        raise UnsupportedOperationError("Removing trees from a filtered CCD is not supported")

    def copy(self) -> "AbstractCCD":
        raise UnsupportedOperationError("Copying a filtered CCD is not supported")

    def _on_zero_occurrence(self, partition: CladePartition) -> None:
        raise UnsupportedOperationError("Filtered CCDs are immutable")

    def __str__(self) -> str:
        return f"{super().__str__()[:-1]}, filter: {self.removed_taxa_mask}]"


class AttachingFilteredCCD(FilteredCCD):
    """
    FilteredCCD that shares unaffected clades with its base CCD.

    A base clade is affected when it contains a removed taxon, when another
    clade collapses onto it, or when any of its descendants is affected.
    Every other clade, with its whole subgraph, is used by reference.
    Partitions of new clades do not register themselves with shared
    children, so the base CCD is left unchanged.
    """

    def _filter(self) -> None:
        surviving = self._surviving_base_clades()
        affected = self._affected_clades(surviving)
        for clade in surviving:
            if clade in affected:
                self._filter_clade(clade, store_parent=False)
            else:
                self.clade_mapping[clade.bits] = clade
        self.root_clade = self.clade_mapping[self._filtered_bits(self.base_ccd.root_clade.bits)]

    def _affected_clades(self, surviving: List[Clade]) -> Set[Clade]:
        mask = self.removed_taxa_mask
        by_bits: Dict[BitSet, List[Clade]] = {}
        for clade in surviving:
            by_bits.setdefault(clade.bits, []).append(clade)

        affected: Set[Clade] = set()
        for clade in surviving:
            if len(by_bits[clade.bits]) > 1:
                # sibling variants of a CCD2 collapse into one clade
                affected.add(clade)
            elif clade.bits.intersects(mask):
                affected.add(clade)
                affected.update(by_bits.get(self._filtered_bits(clade.bits), ()))

        # smallest first, so a child's status is final before its parents
        for clade in surviving:
            if clade in affected:
                continue
            if any(child in affected for child in clade.child_clades):
                affected.add(clade)
        return affected

    def _number_of_shared_clades(self) -> int:
        return sum(1 for clade in self.clade_mapping.values() if clade.ccd is not self)

    def get_entropy(self) -> float:
        return self.get_entropy_lewis()
