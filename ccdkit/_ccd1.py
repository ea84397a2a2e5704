"""
_ccd1.py
========
CCD1: conditional clade probabilities straight from observed frequencies.

The CCP of a partition is the number of trees in which the partition
occurs divided by the number of trees containing its parent clade.  There is
no completion step; a partition is removed as soon as its last occurrence
is removed.

Examples
--------
>>> from ccdkit import CCD1, Tree
>>> trees = [Tree.from_nested(((0, 1), (2, 3)))] * 3 + [Tree.from_nested(((0, 2), (1, 3)))]
>>> ccd = CCD1(trees)
>>> ccd.get_number_of_trees()
2
>>> round(ccd.get_max_tree_probability(), 2)
0.75
"""

from ccdkit._ccd import AbstractCCD
from ccdkit._clade import CladePartition


class CCD1(AbstractCCD):
    """Conditional clade distribution based on clade-split frequencies."""

    def initialize(self) -> None:
        pass

    def _on_zero_occurrence(self, partition: CladePartition) -> None:
        partition.parent_clade.remove_partition(partition)

    def get_number_of_parameters(self) -> int:
        return self.get_number_of_clade_partitions()
