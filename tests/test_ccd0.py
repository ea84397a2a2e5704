"""
tests/test_ccd0.py
==================
Pytest test suite for CCD0: expand, normalisation and options.

Reference samples
-----------------
four_taxa   3 x ((0,1),(2,3)) and 1 x ((0,2),(1,3))
    Credibilities {0,1} {2,3} = 0.75, {0,2} {1,3} = 0.25.  No partition is
    added; root CCPs are 0.75^2 : 0.25^2 normalised = 0.9 : 0.1.

five_taxa   (((0,1),2),(3,4)) and ((0,1),((2,3),4))
    Expand adds {2,3,4} -> {3,4} | {2}.  Every clade credibility is 0.5
    except {0,1} (1.0), which makes the three trees of the CCD0 equally
    likely:

        root  {0,1,2}|{3,4}   1/3        {0,1}|{2,3,4}   2/3
        {2,3,4}  {2,3}|{4}    1/2        {3,4}|{2}       1/2
"""

import logging
import math
import os
import sys

import numpy as np
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

import ccdkit._ccd0 as _ccd0
from ccdkit import CCD0, CCD1, CCDConfig, Tree, bitset_of, use_workers
from ccdkit._ccd0 import set_partition_log_probabilities


FIVE_TAXA = [(((0, 1), 2), (3, 4)), ((0, 1), ((2, 3), 4))]
UNSEEN = ((0, 1), ((3, 4), 2))


def _four_taxa():
    return [Tree.from_nested(((0, 1), (2, 3))) for _ in range(3)] + [
        Tree.from_nested(((0, 2), (1, 3)))
    ]


def _five_taxa():
    return [Tree.from_nested(nested) for nested in FIVE_TAXA]


def _random_tree(rng, n_leaves):
    """Random topology by joining random pairs of subtrees."""
    return Tree.from_nested(_join_randomly(rng, rng.permutation(n_leaves).tolist()))


def _random_tree_with_clade(rng, n_leaves, clade_size):
    """Random topology in which taxa ``0..clade_size-1`` always form a clade."""
    clade = _join_randomly(rng, rng.permutation(clade_size).tolist())
    rest = (rng.permutation(n_leaves - clade_size) + clade_size).tolist()
    return Tree.from_nested(_join_randomly(rng, [clade] + rest))


def _join_randomly(rng, pool):
    pool = list(pool)
    while len(pool) > 1:
        i, j = sorted(rng.choice(len(pool), size=2, replace=False).tolist())
        right = pool.pop(j)
        left = pool.pop(i)
        pool.append((left, right))
    return pool[0]


def _ccps(clade):
    return sorted(partition.get_ccp() for partition in clade.partitions)


# ======================================================================== #
# Fixtures                                                                  #
# ======================================================================== #


@pytest.fixture(scope="module")
def four_taxa():
    return CCD0(_four_taxa())


@pytest.fixture(scope="module")
def five_taxa():
    return CCD0(_five_taxa())


# ======================================================================== #
# Normalisation                                                             #
# ======================================================================== #


class TestNormalisation:
    def test_four_taxa_ccps(self, four_taxa):
        assert _ccps(four_taxa.get_root_clade()) == pytest.approx([0.1, 0.9])

    def test_four_taxa_statistics(self, four_taxa):
        assert four_taxa.get_number_of_trees() == 2
        assert four_taxa.get_max_tree_probability() == pytest.approx(0.9)
        assert four_taxa.get_entropy() == pytest.approx(
            -(0.9 * math.log(0.9) + 0.1 * math.log(0.1))
        )

    def test_structure_matches_ccd1_without_new_partitions(self, four_taxa):
        ccd1 = CCD1(_four_taxa())
        assert four_taxa.get_number_of_clade_partitions() == ccd1.get_number_of_clade_partitions()

    def test_cherry_ccps_are_one(self, four_taxa):
        for clade in four_taxa.get_clades():
            if clade.is_cherry():
                assert _ccps(clade) == [1.0]

    def test_credibility_sums(self, five_taxa):
        root = five_taxa.get_root_clade()
        assert root.sum_clade_credibilities == pytest.approx(0.75)
        assert five_taxa.get_clade(bitset_of(5, [2, 3, 4])).sum_clade_credibilities == pytest.approx(0.5)

    def test_log_space_agrees(self):
        ccd = CCD0(_five_taxa())
        order = ccd._clades_in_size_order()
        before = {id(p): p.get_ccp() for c in order for p in c.partitions}
        set_partition_log_probabilities(order)
        for clade in order:
            for partition in clade.partitions:
                assert partition.get_ccp() == pytest.approx(before[id(partition)])
        assert ccd.get_root_clade().log_sum_clade_credibilities == pytest.approx(math.log(0.75))

    def test_underflow_falls_back_to_log_space(self, monkeypatch, caplog):
        def underflow(order):
            raise _ccd0._Underflow("{0, 1, 2, 3, 4}")

        monkeypatch.setattr(_ccd0, "_set_linear_partition_probabilities", underflow)
        with caplog.at_level(logging.WARNING):
            ccd = CCD0(_five_taxa())
        assert _ccps(ccd.get_root_clade()) == pytest.approx([1 / 3, 2 / 3])
        assert any("log space" in r.getMessage() for r in caplog.records)

    def test_zero_sums_give_zero_ccps(self, caplog):
        ccd = CCD0(_five_taxa())
        root = ccd.get_root_clade()
        sums = {child: 0.0 for p in root.partitions for child in p.child_clades}
        with caplog.at_level(logging.WARNING, logger="ccdkit._logging"):
            _ccd0._zero_out_or_underflow(root, sums)
        assert _ccps(root) == [0.0, 0.0]
        assert any("no partition with two supported" in r.getMessage() for r in caplog.records)

    def test_zero_log_sums_warn(self, caplog):
        ccd = CCD0(_five_taxa())
        root = ccd.get_root_clade()
        for partition in root.partitions:
            for child in partition.child_clades:
                child.num_occurrences = 0
        order = ccd._clades_in_size_order()
        with caplog.at_level(logging.WARNING, logger="ccdkit._logging"):
            set_partition_log_probabilities(order)
        assert _ccps(root) == [0.0, 0.0]
        assert any(str(root.bits) in r.getMessage() for r in caplog.records)

    def test_tiny_sums_raise_underflow(self):
        ccd = CCD0(_five_taxa())
        root = ccd.get_root_clade()
        sums = {child: 1e-200 for p in root.partitions for child in p.child_clades}
        with pytest.raises(_ccd0._Underflow):
            _ccd0._zero_out_or_underflow(root, sums)


# ======================================================================== #
# Expand                                                                    #
# ======================================================================== #


class TestExpand:
    def test_expand_adds_partition(self, five_taxa):
        assert CCD1(_five_taxa()).get_number_of_clade_partitions() == 7
        assert five_taxa.get_number_of_clade_partitions() == 8
        clade = five_taxa.get_clade(bitset_of(5, [2, 3, 4]))
        assert clade.get_clade_partition(five_taxa.get_clade(bitset_of(5, [3, 4]))) is not None

    def test_expanded_distribution(self, five_taxa):
        assert five_taxa.get_number_of_trees() == 3
        assert five_taxa.get_entropy() == pytest.approx(math.log(3))
        assert five_taxa.get_probability_of_tree(Tree.from_nested(UNSEEN)) == pytest.approx(1 / 3)
        for tree in _five_taxa():
            assert five_taxa.get_probability_of_tree(tree) == pytest.approx(1 / 3)

    def test_number_of_parameters_counts_clades(self, five_taxa):
        # root, five leaves, {0,1} {0,1,2} {3,4} {2,3} {2,3,4}
        assert five_taxa.get_number_of_parameters() == 11
        assert five_taxa.get_number_of_clades() == 11

    def test_clade_probabilities_sum_per_size(self, five_taxa):
        # each tree of this CCD has exactly one clade of three taxa
        total = sum(
            five_taxa.get_probability_of_clade(clade)
            for clade in five_taxa.get_clades()
            if clade.size == 3
        )
        assert total == pytest.approx(1.0)

    def test_no_expand(self):
        ccd = CCD0(_five_taxa(), max_expansion_factor=0)
        assert ccd.get_number_of_clade_partitions() == 7
        assert _ccps(ccd.get_root_clade()) == pytest.approx([0.5, 0.5])

    def test_limited_expand_over_frequent_clades(self):
        ccd = CCD0(_five_taxa(), max_expansion_factor=1)
        # the five most frequent clades include the root and the leaves only
        assert ccd.get_number_of_clade_partitions() == 7

    def test_invalid_expansion_factor(self):
        with pytest.raises(ValueError):
            CCD0(_five_taxa(), max_expansion_factor=-2)

    def test_monophyletic_speedup_same_result(self):
        rng = np.random.default_rng(11)
        trees = [_random_tree_with_clade(rng, 11, 5) for _ in range(100)]
        serial = CCDConfig(n_workers=1)
        plain = CCD0(trees, config=serial)
        fast = CCD0(trees, config=serial, use_monophyletic_speedup=True)
        assert fast.use_monophyletic_speedup
        assert fast.get_clade(bitset_of(11, range(5))).is_monophyletic()
        assert (
            fast.get_number_of_clade_partitions()
            == plain.get_number_of_clade_partitions()
        )
        assert fast.get_entropy() == pytest.approx(plain.get_entropy())

    def test_parallel_expand_with_speedup_matches_serial(self):
        rng = np.random.default_rng(12)
        trees = [_random_tree_with_clade(rng, 11, 5) for _ in range(100)]
        serial = CCD0(
            trees, config=CCDConfig(n_workers=1), use_monophyletic_speedup=True
        )
        for _ in range(3):
            parallel = CCD0(
                trees,
                config=CCDConfig(parallel_threshold=1, n_workers=4),
                use_monophyletic_speedup=True,
            )
            assert (
                parallel.get_number_of_clade_partitions()
                == serial.get_number_of_clade_partitions()
            )
            assert parallel.get_entropy() == pytest.approx(serial.get_entropy())

    def test_parallel_expand_matches_serial(self):
        config = CCDConfig(parallel_threshold=1, n_workers=2)
        with use_workers(2):
            parallel = CCD0(_five_taxa(), config=config)
        assert parallel.get_number_of_clade_partitions() == 8
        assert parallel.get_number_of_trees() == 3

    def test_single_worker_override(self, caplog):
        config = CCDConfig(parallel_threshold=1, n_workers=4)
        with caplog.at_level(logging.INFO, logger="ccdkit._logging"):
            with use_workers(1):
                CCD0(_five_taxa(), config=config)
        assert any("serial" in r.getMessage() for r in caplog.records)


@pytest.mark.large_scale
class TestLargeExpand:
    def test_parallel_and_serial_agree(self):
        rng = np.random.default_rng(5)
        trees = [_random_tree(rng, 30) for _ in range(300)]
        serial = CCD0(trees, config=CCDConfig(n_workers=1))
        parallel = CCD0(trees, config=CCDConfig(parallel_threshold=1, n_workers=4))
        assert (
            serial.get_number_of_clade_partitions()
            == parallel.get_number_of_clade_partitions()
        )
        assert serial.get_entropy() == pytest.approx(parallel.get_entropy())
        assert serial.get_number_of_trees() == parallel.get_number_of_trees()

    def test_multiword_taxa(self):
        rng = np.random.default_rng(6)
        trees = [_random_tree(rng, 300) for _ in range(20)]
        ccd = CCD0(trees)
        assert ccd.get_number_of_trees() >= 20
        for tree in trees:
            assert ccd.contains_tree(tree)


# ======================================================================== #
# Options and online updates                                                #
# ======================================================================== #


class TestOptions:
    def test_conflicting_options(self, caplog):
        with caplog.at_level(logging.WARNING):
            ccd = CCD0(n_leaves=4, use_monophyletic_speedup=True, update_online=True)
        assert ccd.use_monophyletic_speedup
        assert not ccd.update_online
        assert any("Cannot enable online update" in r.getMessage() for r in caplog.records)

    def test_speedup_refused_when_online(self):
        ccd = CCD0(n_leaves=4, update_online=True)
        assert not ccd.set_to_use_monophyletic_speedup()
        assert ccd.update_online

    def test_online_matches_batch(self):
        trees = _five_taxa()
        ccd = CCD0(trees[:1], update_online=True)
        assert ccd.get_number_of_trees() == 1
        ccd.add_tree(trees[1])
        assert ccd.get_number_of_clade_partitions() == 8
        assert ccd.get_number_of_trees() == 3
        assert ccd.get_entropy() == pytest.approx(math.log(3))

    def test_online_after_removal(self):
        trees = _five_taxa()
        ccd = CCD0(trees, update_online=True)
        ccd.remove_tree(trees[1], tidy_up=True)
        ccd.add_tree(trees[1])
        assert ccd.get_number_of_trees() == 3

    def test_reinitialising_updates_ccps(self):
        ccd = CCD0(_five_taxa())
        ccd.add_tree(Tree.from_nested(FIVE_TAXA[0]))
        # root products 2/3 * 2/3 and 1 * 1/3
        assert _ccps(ccd.get_root_clade()) == pytest.approx([3 / 7, 4 / 7])
        assert ccd.get_max_tree_probability() == pytest.approx(4 / 7)

    def test_forbid_reinitializing_keeps_ccps(self):
        ccd = CCD0(_five_taxa())
        ccd.forbid_reinitializing()
        ccd.add_tree(Tree.from_nested(FIVE_TAXA[0]))
        assert ccd.get_number_of_base_trees() == 3
        assert _ccps(ccd.get_root_clade()) == pytest.approx([1 / 3, 2 / 3])

    def test_removal_keeps_unobserved_partitions(self):
        trees = _five_taxa()
        ccd = CCD0(trees)
        ccd.remove_tree(trees[1])
        clade = ccd.get_clade(bitset_of(5, [2, 3, 4]))
        assert len(clade.partitions) == 2

    def test_copy_keeps_ccps_and_options(self, five_taxa):
        duplicate = five_taxa.copy()
        assert isinstance(duplicate, CCD0)
        assert duplicate.max_expansion_factor == five_taxa.max_expansion_factor
        assert duplicate.get_number_of_clade_partitions() == 8
        assert _ccps(duplicate.get_root_clade()) == pytest.approx([1 / 3, 2 / 3])
        assert duplicate.get_entropy() == pytest.approx(five_taxa.get_entropy())

    def test_add_then_remove_restores_graph(self):
        trees = _five_taxa()
        ccd = CCD0(trees)
        n_clades = ccd.get_number_of_clades()
        n_partitions = ccd.get_number_of_clade_partitions()
        extra = Tree.from_nested(((0, 4), ((1, 2), 3)))
        ccd.add_tree(extra)
        assert ccd.get_number_of_clades() > n_clades
        assert ccd.remove_tree(extra, tidy_up=True)
        assert ccd.get_number_of_base_trees() == 2
        assert ccd.get_number_of_clades() == n_clades
        assert ccd.get_number_of_clade_partitions() == n_partitions
        assert ccd.get_clade(bitset_of(5, [1, 2])) is None
        assert ccd.get_clade(bitset_of(5, [0, 1])).num_occurrences == 2
        assert _ccps(ccd.get_root_clade()) == pytest.approx([1 / 3, 2 / 3])


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
