"""
tests/test_ccd1.py
==================
Pytest test suite for CCD1 and the shared AbstractCCD machinery.

Reference sample
----------------
Four trees over taxa 0..3 (unit heights: cherries at 1, root at 2):

  3 x  ((0,1),(2,3))     clades {0,1} {2,3}
  1 x  ((0,2),(1,3))     clades {0,2} {1,3}

Expected CCD1:
  root partitions    {0,1}|{2,3}  CCP 0.75
                     {0,2}|{1,3}  CCP 0.25
  topologies         2
  entropy            -(0.75 ln 0.75 + 0.25 ln 0.25) = 0.5623...
  MAP tree           ((0,1),(2,3)) with probability 0.75
"""

import itertools
import math
import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from ccdkit import (
    CCD1,
    CacheState,
    CCDType,
    HeightSettingStrategy,
    Tree,
    UnsupportedOperationError,
    bitset_of,
)


BALANCED = ((0, 1), (2, 3))
CROSSED = ((0, 2), (1, 3))
NAMES = ["A", "B", "C", "D"]

EXPECTED_ENTROPY = -(0.75 * math.log(0.75) + 0.25 * math.log(0.25))


def _trees():
    return [Tree.from_nested(BALANCED, names=NAMES) for _ in range(3)] + [
        Tree.from_nested(CROSSED, names=["A", "C", "B", "D"])
    ]


# ======================================================================== #
# Fixtures                                                                  #
# ======================================================================== #


@pytest.fixture(scope="module")
def ccd():
    """CCD1 of the reference sample; read-only in tests."""
    return CCD1(_trees())


@pytest.fixture
def fresh_ccd():
    """CCD1 of the reference sample for tests that mutate it."""
    trees = _trees()
    return CCD1(trees), trees


# ======================================================================== #
# Construction                                                              #
# ======================================================================== #


class TestConstruction:
    def test_sizes(self, ccd):
        assert ccd.get_number_of_leaves() == 4
        assert ccd.get_number_of_base_trees() == 4
        # root, four leaves, four cherries
        assert ccd.get_number_of_clades() == 9
        assert ccd.get_number_of_clade_partitions() == 6
        assert ccd.get_number_of_parameters() == 6

    def test_clade_counts(self, ccd):
        assert ccd.get_clade(bitset_of(4, [0, 1])).num_occurrences == 3
        assert ccd.get_clade(bitset_of(4, [1, 3])).num_occurrences == 1
        assert ccd.get_clade(bitset_of(4, [0, 3])) is None

    def test_burnin(self):
        trees = [Tree.from_nested(CROSSED)] + [Tree.from_nested(BALANCED)] * 3
        ccd = CCD1(trees, burnin=0.25)
        assert ccd.get_number_of_base_trees() == 3
        assert ccd.get_number_of_trees() == 1

    @pytest.mark.parametrize("burnin", [-0.1, 1.0])
    def test_invalid_burnin(self, burnin):
        with pytest.raises(ValueError):
            CCD1(_trees(), burnin=burnin)

    def test_burnin_discarding_everything(self):
        with pytest.raises(ValueError):
            CCD1([Tree.from_nested(BALANCED)], burnin=0.5)

    def test_needs_trees_or_leaf_count(self):
        with pytest.raises(ValueError):
            CCD1()

    def test_wrong_leaf_count(self, fresh_ccd):
        ccd, _ = fresh_ccd
        with pytest.raises(ValueError):
            ccd.add_tree(Tree.from_nested((0, (1, 2))))

    def test_empty_from_type(self):
        ccd = CCDType.from_name("ccd1").empty_ccd(5)
        assert isinstance(ccd, CCD1)
        assert ccd.get_number_of_base_trees() == 0
        ccd.add_tree(Tree.from_nested((0, (1, (2, (3, 4))))))
        assert ccd.get_number_of_trees() == 1

    def test_taxa(self, ccd):
        assert list(ccd.get_taxa_as_bitset()) == [0, 1, 2, 3]
        assert ccd.get_taxa_names(ccd.taxa_bitset([0, 2])) == "{A, C}"


# ======================================================================== #
# Probabilities and statistics                                              #
# ======================================================================== #


class TestProbabilities:
    def test_ccps(self, ccd):
        root = ccd.get_root_clade()
        ccps = {
            tuple(sorted(tuple(c.bits) for c in p.child_clades)): p.get_ccp()
            for p in root.partitions
        }
        assert ccps[((0, 1), (2, 3))] == pytest.approx(0.75)
        assert ccps[((0, 2), (1, 3))] == pytest.approx(0.25)

    def test_ccps_sum_to_one(self, ccd):
        for clade in ccd.get_clades():
            if clade.is_leaf():
                continue
            assert sum(p.get_ccp() for p in clade.partitions) == pytest.approx(1.0)

    def test_clade_probabilities(self, ccd):
        assert ccd.get_clade_probability(bitset_of(4, [0, 1, 2, 3])) == 1.0
        assert ccd.get_clade_probability(bitset_of(4, [2, 3])) == pytest.approx(0.75)
        assert ccd.get_clade_probability(bitset_of(4, [1, 3])) == pytest.approx(0.25)
        assert ccd.get_clade_probability(bitset_of(4, [2])) == 1.0
        assert ccd.get_clade_probability(bitset_of(4, [1, 2])) == 0.0

    def test_tree_probabilities(self, ccd):
        assert ccd.get_probability_of_tree(Tree.from_nested(BALANCED)) == pytest.approx(0.75)
        assert ccd.get_probability_of_tree(Tree.from_nested(((3, 1), (2, 0)))) == pytest.approx(0.25)
        missing = Tree.from_nested(((0, 3), (1, 2)))
        assert ccd.get_probability_of_tree(missing) == 0.0
        assert ccd.get_log_probability_of_tree(missing) == -math.inf
        assert not ccd.contains_tree(missing)

    def test_partition_probability(self, ccd):
        cherry = ccd.get_clade(bitset_of(4, [0, 1]))
        assert ccd.get_partition_probability(cherry.partitions[0]) == pytest.approx(0.75)

    def test_entropy(self, ccd):
        assert ccd.get_entropy() == pytest.approx(EXPECTED_ENTROPY)
        assert ccd.get_entropy_lewis() == pytest.approx(EXPECTED_ENTROPY)

    def test_number_of_trees(self, ccd):
        assert ccd.get_number_of_trees() == 2

    def test_max_probability(self, ccd):
        assert ccd.get_max_tree_probability() == pytest.approx(0.75)
        assert ccd.get_max_log_tree_probability() == pytest.approx(math.log(0.75))

    def test_max_sum_clade_credibility(self, ccd):
        # root 1.0 + {0,1} 0.75 + {2,3} 0.75
        assert ccd.get_max_sum_clade_credibility() == pytest.approx(2.5)

    def test_average_rf_distance(self, ccd):
        assert ccd.average_rf_distance(Tree.from_nested(BALANCED)) == pytest.approx(0.5)
        assert ccd.average_rf_distance(Tree.from_nested(CROSSED)) == pytest.approx(1.5)

    def test_lost_probability(self, ccd):
        crossed = bitset_of(4, [0, 2])
        assert ccd.get_lost_probability([]) == 0.0
        assert ccd.get_lost_probability([crossed]) == pytest.approx(0.25)
        assert ccd.get_lost_probability([ccd.get_clade(crossed)]) == pytest.approx(0.25)
        # both clades of the balanced tree: lost once, not twice
        balanced = [bitset_of(4, [0, 1]), bitset_of(4, [2, 3])]
        assert ccd.get_lost_probability(balanced) == pytest.approx(0.75)
        assert ccd.get_lost_probability(balanced + [crossed]) == pytest.approx(1.0)

    def test_lost_probability_of_nested_clades(self):
        trees = [
            Tree.from_nested((((0, 1), 2), (3, 4))),
            Tree.from_nested((((0, 1), 2), (3, 4))),
            Tree.from_nested(((0, 1), ((2, 3), 4))),
            Tree.from_nested(((0, 3), ((1, 2), 4))),
        ]
        ccd = CCD1(trees)
        nested = [bitset_of(5, [0, 1]), bitset_of(5, [0, 1, 2])]
        assert ccd.get_lost_probability(nested) == pytest.approx(
            ccd.get_clade_probability(nested[0])
        )
        assert ccd.get_lost_probability(nested) <= 1.0

    def test_single_tree(self):
        ccd = CCD1([Tree.from_nested((0, (1, (2, 3))))])
        assert ccd.get_number_of_trees() == 1
        assert ccd.get_entropy() == 0.0
        assert ccd.get_max_tree_probability() == 1.0

    def test_topology_count_is_exact(self):
        # three resolutions of {0,1,2,3} below a fixed root split
        trees = [
            Tree.from_nested((((0, 1), (2, 3)), (4, 5))),
            Tree.from_nested((((0, 2), (1, 3)), (4, 5))),
            Tree.from_nested((((0, 3), (1, 2)), (4, 5))),
        ]
        ccd = CCD1(trees)
        assert ccd.get_number_of_trees() == 3
        assert isinstance(ccd.get_number_of_trees(), int)


# ======================================================================== #
# Point estimates                                                           #
# ======================================================================== #


class TestPointEstimates:
    def test_map_tree(self, ccd):
        tree = ccd.get_map_tree()
        assert tree.to_nested() == BALANCED
        assert tree.names[:4] == NAMES

    def test_map_tie_break(self):
        # equal support: the split whose smaller side comes first wins
        trees = [Tree.from_nested(CROSSED), Tree.from_nested(BALANCED)]
        assert CCD1(trees).get_map_tree().to_nested() == BALANCED
        assert CCD1(trees[::-1]).get_map_tree().to_nested() == BALANCED

    def test_map_tree_is_deterministic(self):
        # three equally supported topologies, added in every order
        nested = [BALANCED, CROSSED, ((0, 3), (1, 2))]
        maps = []
        for order in itertools.permutations(nested):
            ccd = CCD1([Tree.from_nested(n) for n in order])
            first = ccd.get_map_tree().to_nested()
            assert ccd.get_map_tree().to_nested() == first
            assert ccd.copy().get_map_tree().to_nested() == first
            assert ccd.get_max_tree_probability() == pytest.approx(1 / 3)
            maps.append(first)
        assert len(set(maps)) == 1

    def test_mscc_tree(self, ccd):
        assert ccd.get_mscc_tree().to_nested() == BALANCED

    def test_mean_heights(self, ccd):
        tree = ccd.get_map_tree(HeightSettingStrategy.MEAN_OCCURRED_HEIGHTS)
        assert tree.height.tolist() == [0, 0, 0, 0, 1, 1, 2]

    def test_common_ancestor_heights(self, ccd):
        tree = ccd.get_map_tree(HeightSettingStrategy.COMMON_ANCESTOR_HEIGHTS)
        # {0,1} joins at 1 in three trees and at the root (2) in one
        assert tree.height[4] == pytest.approx(1.25)
        assert tree.height[6] == pytest.approx(2.0)

    def test_common_ancestor_heights_need_trees(self):
        ccd = CCD1(_trees(), store_base_trees=False)
        with pytest.raises(UnsupportedOperationError):
            ccd.get_map_tree(HeightSettingStrategy.COMMON_ANCESTOR_HEIGHTS)

    def test_unit_and_zero_heights(self, ccd):
        assert ccd.get_map_tree(HeightSettingStrategy.ONE).height.tolist() == [
            0, 0, 0, 0, 1, 1, 2,
        ]
        assert not ccd.get_map_tree(HeightSettingStrategy.NONE).height.any()

    def test_sampling_is_reproducible(self):
        first = CCD1(_trees(), seed=7)
        second = CCD1(_trees(), seed=7)
        draws = [first.sample_tree().to_nested() for _ in range(20)]
        assert draws == [second.sample_tree().to_nested() for _ in range(20)]

    def test_samples_come_from_distribution(self, ccd):
        ccd.set_random_generator(1)
        for _ in range(50):
            assert ccd.contains_tree(ccd.sample_tree())

    def test_sampling_frequencies(self):
        ccd = CCD1(_trees(), seed=3)
        n = 2000
        hits = sum(ccd.sample_tree().to_nested() == BALANCED for _ in range(n))
        assert 0.70 < hits / n < 0.80


# ======================================================================== #
# Mutation and caching                                                      #
# ======================================================================== #


class TestMutation:
    def test_cache_states(self, fresh_ccd):
        ccd, _ = fresh_ccd
        assert ccd.cache_state is CacheState.CLEAN
        ccd.add_tree(Tree.from_nested(CROSSED))
        assert ccd.cache_state is CacheState.STRUCTURE_DIRTY
        assert ccd.get_max_tree_probability() == pytest.approx(0.6)
        assert ccd.cache_state is CacheState.CLEAN
        ccd.mark_probabilities_dirty()
        assert ccd.cache_state is CacheState.PROBABILITIES_DIRTY
        ccd.get_entropy()
        assert ccd.cache_state is CacheState.CLEAN

    def test_remove_tree_with_tidy_up(self, fresh_ccd):
        ccd, trees = fresh_ccd
        assert ccd.remove_tree(trees[3], tidy_up=True)
        assert ccd.get_number_of_base_trees() == 3
        assert ccd.get_number_of_trees() == 1
        assert ccd.get_number_of_clades() == 7
        assert ccd.get_clade(bitset_of(4, [0, 2])) is None
        assert ccd.get_entropy() == 0.0

    def test_remove_then_add_restores(self, fresh_ccd):
        ccd, trees = fresh_ccd
        ccd.remove_tree(trees[0])
        assert ccd.get_max_tree_probability() == pytest.approx(2 / 3)
        ccd.add_tree(trees[0])
        assert ccd.get_max_tree_probability() == pytest.approx(0.75)
        assert ccd.get_entropy() == pytest.approx(EXPECTED_ENTROPY)

    def test_add_then_remove_restores_graph(self, fresh_ccd):
        ccd, _ = fresh_ccd
        n_clades = ccd.get_number_of_clades()
        n_partitions = ccd.get_number_of_clade_partitions()
        extra = Tree.from_nested(((0, 3), (1, 2)))
        ccd.add_tree(extra)
        assert ccd.get_number_of_clades() == n_clades + 2
        assert ccd.remove_tree(extra, tidy_up=True)
        assert ccd.get_number_of_base_trees() == 4
        assert ccd.get_number_of_clades() == n_clades
        assert ccd.get_number_of_clade_partitions() == n_partitions
        assert ccd.get_clade(bitset_of(4, [0, 3])) is None
        assert ccd.get_clade(bitset_of(4, [0, 1])).num_occurrences == 3
        assert ccd.get_entropy() == pytest.approx(EXPECTED_ENTROPY)

    def test_remove_unknown_tree(self, fresh_ccd, caplog):
        import logging

        ccd, _ = fresh_ccd
        with caplog.at_level(logging.WARNING):
            removed = ccd.remove_tree(Tree.from_nested(((0, 3), (1, 2))))
        assert not removed
        assert ccd.get_number_of_base_trees() == 4
        assert any("never added" in r.getMessage() for r in caplog.records)

    def test_copy_is_independent(self, fresh_ccd):
        ccd, _ = fresh_ccd
        duplicate = ccd.copy()
        assert duplicate.get_number_of_clades() == ccd.get_number_of_clades()
        assert duplicate.get_entropy() == pytest.approx(ccd.get_entropy())
        assert duplicate.get_root_clade() is not ccd.get_root_clade()

        duplicate.add_tree(Tree.from_nested(CROSSED))
        assert ccd.get_number_of_base_trees() == 4
        assert ccd.get_max_tree_probability() == pytest.approx(0.75)
        assert duplicate.get_max_tree_probability() == pytest.approx(0.6)

    def test_str(self, ccd):
        text = str(ccd)
        assert text.startswith("CCD1[number of leaves: 4")
        assert "taxa: {0, 1, 2, 3}" in text


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
