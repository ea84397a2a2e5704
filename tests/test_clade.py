"""
tests/test_clade.py
===================
Pytest test suite for Clade, CladePartition and the log-count table.

Clades are built against a minimal stand-in owner that only carries the
number of base trees, which is all a Clade reads from its CCD.
"""

import math
import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from ccdkit._bitset import bitset_of
from ccdkit._clade import Clade, CladePartition, ExtendedClade, log_count
from ccdkit._errors import GraphInvariantError


class _Owner:
    def __init__(self, num_base_trees):
        self.num_base_trees = num_base_trees


def _clade(owner, taxa, n_bits=8):
    return Clade(bitset_of(n_bits, taxa), owner)


# ======================================================================== #
# log_count                                                                 #
# ======================================================================== #


class TestLogCount:
    def test_zero_is_minus_infinity(self):
        assert log_count(0) == -math.inf

    def test_small_values(self):
        assert log_count(1) == 0.0
        assert log_count(10) == pytest.approx(math.log(10))

    def test_table_grows(self):
        assert log_count(5000) == pytest.approx(math.log(5000))
        assert log_count(3) == pytest.approx(math.log(3))


# ======================================================================== #
# CladePartition                                                            #
# ======================================================================== #


class TestCladePartition:
    @pytest.fixture
    def cherry(self):
        owner = _Owner(4)
        parent = _clade(owner, [0, 1])
        first = _clade(owner, [0])
        second = _clade(owner, [1])
        return parent, first, second

    def test_observed_ccp(self, cherry):
        parent, first, second = cherry
        partition = parent.create_clade_partition(first, second)
        for height in (1.0, 2.0, 3.0):
            parent.increase_occurrence_count(height)
        partition.increase_occurrence_count(1.0)
        assert partition.get_ccp() == pytest.approx(1 / 3)
        assert partition.get_log_ccp() == pytest.approx(math.log(1 / 3))
        assert not partition.is_ccp_set()

    def test_explicit_ccp_wins(self, cherry):
        parent, first, second = cherry
        partition = parent.create_clade_partition(first, second)
        partition.set_ccp(0.4)
        assert partition.is_ccp_set()
        assert partition.get_ccp() == 0.4
        partition.set_ccp(0.0)
        assert partition.get_log_ccp() == -math.inf

    def test_nan_ccp_rejected(self, cherry):
        parent, first, second = cherry
        partition = parent.create_clade_partition(first, second)
        with pytest.raises(ValueError):
            partition.set_ccp(float("nan"))

    def test_ccp_of_unobserved_parent(self, cherry):
        parent, first, second = cherry
        partition = parent.create_clade_partition(first, second)
        with pytest.raises(GraphInvariantError):
            partition.get_ccp()

    def test_running_mean_height(self, cherry):
        parent, first, second = cherry
        partition = parent.create_clade_partition(first, second)
        partition.increase_occurrence_count(1.0)
        partition.increase_occurrence_count(3.0)
        assert partition.mean_occurred_height == 2.0
        partition.decrease_occurrence_count(3.0)
        assert partition.mean_occurred_height == 1.0
        partition.decrease_occurrence_count(1.0)
        assert partition.num_occurrences == 0
        assert partition.mean_occurred_height == 0.0

    def test_increase_by_count(self, cherry):
        parent, first, second = cherry
        partition = parent.create_clade_partition(first, second)
        partition.increase_occurrence_count_by(2, 1.0)
        partition.increase_occurrence_count_by(2, 3.0)
        partition.increase_occurrence_count_by(0, 100.0)
        assert partition.num_occurrences == 4
        assert partition.mean_occurred_height == 2.0

    def test_other_child(self, cherry):
        parent, first, second = cherry
        partition = parent.create_clade_partition(first, second)
        assert partition.get_other_child_clade(first) is second
        assert partition.get_other_child_clade(second) is first
        with pytest.raises(ValueError):
            partition.get_other_child_clade(parent)

    def test_contains_clade_by_bits(self, cherry):
        parent, first, second = cherry
        partition = parent.create_clade_partition(first, second)
        assert partition.contains_clade(bitset_of(8, [1]))
        assert not partition.contains_clade(bitset_of(8, [2]))


class TestSmallerChild:
    def test_size_decides(self):
        owner = _Owner(1)
        parent = _clade(owner, [0, 1, 2])
        big = _clade(owner, [0, 1])
        small = _clade(owner, [2])
        partition = CladePartition(parent, big, small)
        assert partition.get_smaller_child() is small

    def test_lexicographic_on_equal_size(self):
        owner = _Owner(1)
        parent = _clade(owner, [0, 1, 2, 3])
        first = _clade(owner, [1, 3])
        second = _clade(owner, [0, 2])
        partition = CladePartition(parent, first, second)
        assert partition.get_smaller_child() is second


# ======================================================================== #
# Clade                                                                     #
# ======================================================================== #


class TestClade:
    def test_partition_bookkeeping(self):
        owner = _Owner(2)
        parent = _clade(owner, [0, 1])
        first = _clade(owner, [0])
        second = _clade(owner, [1])
        partition = parent.create_clade_partition(first, second)
        assert parent.child_clades == [first, second]
        assert first.parent_clades == [parent]
        assert parent.get_clade_partition(second) is partition

        parent.remove_partition(partition)
        assert parent.partitions == []
        assert parent.child_clades == []
        assert first.parent_clades == []

    def test_partition_without_parent_link(self):
        owner = _Owner(1)
        parent = _clade(owner, [0, 1])
        first = _clade(owner, [0])
        second = _clade(owner, [1])
        parent.create_clade_partition(first, second, store_parent=False)
        assert parent.child_clades == [first, second]
        assert first.parent_clades == []

    def test_credibility_and_monophyly(self):
        owner = _Owner(4)
        clade = _clade(owner, [2, 3])
        for _ in range(3):
            clade.increase_occurrence_count(1.0)
        assert clade.get_clade_credibility() == 0.75
        assert not clade.is_monophyletic()
        clade.increase_occurrence_count(1.0)
        assert clade.is_monophyletic()

    def test_leaf_defaults(self):
        leaf = _clade(_Owner(1), [5])
        assert leaf.is_leaf()
        assert leaf.get_entropy() == 0.0
        assert leaf.get_number_of_topologies() == 1
        assert leaf.get_max_subtree_log_ccp() == 0.0
        assert leaf.sum_clade_credibilities == 1.0

    def test_normalize_ccps(self):
        owner = _Owner(1)
        parent = _clade(owner, [0, 1, 2])
        a, b, c = _clade(owner, [0]), _clade(owner, [1]), _clade(owner, [2])
        ab, bc = _clade(owner, [0, 1]), _clade(owner, [1, 2])
        first = parent.create_clade_partition(ab, c)
        second = parent.create_clade_partition(a, bc)
        first.set_ccp(1.0)
        second.set_ccp(3.0)
        parent.normalize_ccps()
        assert first.get_ccp() == 0.25
        assert second.get_ccp() == 0.75

    def test_descendants_stop_at_monophyletic(self):
        owner = _Owner(1)
        root = _clade(owner, [0, 1, 2])
        ab = _clade(owner, [0, 1])
        a, b, c = _clade(owner, [0]), _clade(owner, [1]), _clade(owner, [2])
        root.create_clade_partition(ab, c)
        ab.create_clade_partition(a, b)
        ab.increase_occurrence_count(1.0)

        all_below = root.get_descendant_clades()
        assert set(all_below) == {ab, a, b, c}
        stopped = root.get_descendant_clades(until_monophyletic=True)
        assert set(stopped) == {ab, c}
        assert set(a.get_ancestor_clades()) == {ab, root}

    def test_extended_clade_sibling(self):
        owner = _Owner(1)
        clade = ExtendedClade(bitset_of(8, [0, 1]), owner)
        sibling = ExtendedClade(bitset_of(8, [2]), owner)
        assert clade.sibling is None
        clade.sibling = sibling
        assert "sibling={2}" in repr(clade)


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
