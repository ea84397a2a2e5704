"""
_ccd.py
=======
Common machinery of all conditional clade distributions.

``AbstractCCD`` owns the clade graph (a DAG of ``Clade`` nodes connected by
``CladePartition`` hyperedges, rooted at the clade of all taxa) and
implements everything that does not depend on how CCPs are derived:

  construction        add_tree / remove_tree / tidy_up_ccd_graph
  probabilities       get_clade_probability, get_probability_of_tree, ...
  statistics          get_entropy, get_number_of_trees, ...
  point estimates     get_map_tree, get_mscc_tree, sample_tree
  copies              copy

Variants override a small set of hooks:

  _on_zero_occurrence(partition)   partition lifecycle on tree removal
  initialize()                     structural completion + normalisation
  _empty_copy()                    fresh instance with the same options
  get_number_of_parameters()

Cache protocol
--------------
Every CCD is in one of three ``CacheState``s.  Adding or removing a tree
sets ``STRUCTURE_DIRTY``; changing CCPs by hand sets
``PROBABILITIES_DIRTY``.  Every read accessor calls ``_ensure_clean()``
first, which re-runs ``initialize()`` when the structure is dirty and then
resets all memoised clade values.
"""

import logging
import math
from collections import deque
from enum import Enum
from typing import Dict, Iterable, List, Optional

import numpy as np

from ccdkit._bitset import BitSet, bitset_of, new_bitset
from ccdkit._clade import Clade, CladePartition
from ccdkit._config import DEFAULT_CONFIG, CCDConfig
from ccdkit._errors import GraphInvariantError, UnsupportedOperationError
from ccdkit._logging import log_ccd_construction, log_tidy_up, log_tree_not_in_ccd
from ccdkit._strategies import HeightSettingStrategy, SamplingStrategy
from ccdkit._tree import Tree
from ccdkit._wrapped_tree import WrappedTree

logger = logging.getLogger(__name__)


class CacheState(Enum):
    """Validity of the memoised values of a CCD."""

    CLEAN = 0
    PROBABILITIES_DIRTY = 1
    STRUCTURE_DIRTY = 2


class AbstractCCD:
    """
    Base class of CCD0, CCD1, CCD2 and the filtered CCDs.

    Parameters
    ----------
    trees : iterable of Tree, optional
        Trees over the same taxa ``0..n-1``.
    burnin : float, default 0.0
        Fraction of leading trees to discard, in ``[0, 1)``.
    n_leaves : int, optional
        Number of taxa; required when *trees* is not given.
    store_base_trees : bool, default True
        Keep references to all added trees (needed for common-ancestor
        heights).  When False only the first tree is kept, for taxon names.
    config : CCDConfig, optional
        Numerical tolerances and parallelisation settings.
    seed : int or numpy.random.Generator, optional
        Source of randomness for ``sample_tree``.

    Raises
    ------
    ValueError
        If *burnin* is outside ``[0, 1)``, no trees remain after burn-in, or
        neither *trees* nor *n_leaves* is given.
    """

    # ================================================================== #
    # Construction                                                         #
    # ================================================================== #

    def __init__(
        self,
        trees: Optional[Iterable[Tree]] = None,
        burnin: float = 0.0,
        n_leaves: Optional[int] = None,
        store_base_trees: bool = True,
        config: Optional[CCDConfig] = None,
        seed=None,
    ) -> None:
        if trees is not None:
            if not 0.0 <= burnin < 1.0:
                raise ValueError(f"burnin must be in [0, 1), got {burnin}")
            trees = list(trees)
            n_burnin = int(len(trees) * burnin)
            kept = trees[n_burnin:]
            if not kept:
                raise ValueError("No trees left to build a CCD from")
            n_leaves = kept[0].n_leaves
        elif n_leaves is None:
            raise ValueError("Either trees or n_leaves must be given")
        if n_leaves < 2:
            raise ValueError(f"A CCD needs at least two taxa, got {n_leaves}")

        self._init_empty(n_leaves, n_leaves, store_base_trees, config, seed)
        self._initialize_root_clade()

        if trees is not None:
            for tree in kept:
                self.add_tree(tree)
            self._ensure_clean()
            log_ccd_construction(
                type(self).__name__,
                len(trees),
                n_burnin,
                n_leaves,
                self.get_number_of_clades(),
                self.get_number_of_clade_partitions(),
            )

    def _init_empty(
        self,
        number_of_leaves: int,
        leaf_array_size: int,
        store_base_trees: bool,
        config: Optional[CCDConfig],
        seed,
    ) -> None:
        """Set up all attributes of an empty CCD without creating clades."""
        self.config: CCDConfig = config if config is not None else DEFAULT_CONFIG
        self.number_of_leaves = number_of_leaves
        self.leaf_array_size = leaf_array_size
        self.store_base_trees = store_base_trees
        self.base_trees: List[Tree] = []
        self.num_base_trees = 0

        self.clade_mapping: Dict[BitSet, Clade] = {}
        self.root_clade: Optional[Clade] = None

        self._cache_state = CacheState.STRUCTURE_DIRTY
        self._clade_probabilities: Optional[Dict[Clade, float]] = None
        self._clade_order: Optional[List[Clade]] = None
        self._rng = np.random.default_rng(seed)

    def _initialize_root_clade(self) -> None:
        bits = new_bitset(self.leaf_array_size)
        bits.set_range(0, self.number_of_leaves)
        self.root_clade = self._add_new_clade(bits)

    def _add_new_clade(self, bits: BitSet) -> Clade:
        clade = Clade(bits, self)
        self.clade_mapping[bits] = clade
        return clade

    # ================================================================== #
    # Adding and removing trees                                            #
    # ================================================================== #

    def add_tree(self, tree: Tree) -> None:
        """
        Add the clades and partitions of *tree* to the graph.

        Raises
        ------
        ValueError
            If the tree's taxa do not match this CCD.
        """
        self._check_tree(tree)
        self.num_base_trees += 1
        if self.store_base_trees or not self.base_trees:
            self.base_trees.append(tree)
        self._cladify_tree(tree)
        self._cache_state = CacheState.STRUCTURE_DIRTY

    def add_trees(self, trees: Iterable[Tree]) -> None:
        for tree in trees:
            self.add_tree(tree)

    def remove_tree(self, tree: Tree, tidy_up: bool = False) -> bool:
        """
        Remove one occurrence of *tree* from the graph.

        A tree whose clades or partitions are not all in the graph is
        reported with a warning and nothing is changed.

        Parameters
        ----------
        tree : Tree
            A tree previously passed to ``add_tree``.
        tidy_up : bool, default False
            Run ``tidy_up_ccd_graph`` afterwards.

        Returns
        -------
        bool
            False if the tree was not removed or tidy-up found the graph
            incomplete, True otherwise.
        """
        self._check_tree(tree)
        if self.store_base_trees and not any(t is tree for t in self.base_trees):
            log_tree_not_in_ccd("tree object is not among the stored base trees")

        if not self._reduce_clade_counts(tree):
            return False

        self.num_base_trees -= 1
        for i, stored in enumerate(self.base_trees):
            if stored is tree:
                if self.store_base_trees or self.num_base_trees == 0:
                    del self.base_trees[i]
                break

        complete = True
        if tidy_up:
            complete = self.tidy_up_ccd_graph()
        self._cache_state = CacheState.STRUCTURE_DIRTY
        return complete

    def _check_tree(self, tree: Tree) -> None:
        if tree.n_leaves != self.number_of_leaves:
            raise ValueError(
                f"Tree has {tree.n_leaves} leaves but the CCD has "
                f"{self.number_of_leaves} taxa"
            )
        if int(tree.taxon[: tree.n_leaves].max()) >= self.leaf_array_size:
            raise ValueError(
                f"Tree taxon indices must be below {self.leaf_array_size}"
            )

    def _cladify_tree(self, tree: Tree) -> None:
        """Register every clade and partition of *tree* (children first)."""
        clade_of_node: List[Optional[Clade]] = [None] * tree.n_nodes
        for node in tree.postorder():
            height = float(tree.height[node])
            if tree.is_leaf(node):
                bits = new_bitset(self.leaf_array_size)
                bits.set(int(tree.taxon[node]))
                first = second = None
            else:
                left, right = tree.children(node)
                first = clade_of_node[left]
                second = clade_of_node[right]
                bits = first.bits.copy().or_(second.bits)

            clade = self.clade_mapping.get(bits)
            if clade is None:
                clade = self._add_new_clade(bits)
            clade.increase_occurrence_count(height)

            if first is not None:
                partition = clade.get_clade_partition(first)
                if partition is None:
                    partition = clade.create_clade_partition(first, second)
                partition.increase_occurrence_count(height)

            clade_of_node[node] = clade

    def _locate_tree(self, tree: Tree):
        """
        Return ``(clade, partition)`` per node of *tree*, or None if a clade
        or partition of the tree is missing from the graph.
        """
        located = [None] * tree.n_nodes
        for node in tree.postorder():
            if tree.is_leaf(node):
                bits = new_bitset(self.leaf_array_size)
                bits.set(int(tree.taxon[node]))
                clade = self.clade_mapping.get(bits)
                partition = None
            else:
                left, right = tree.children(node)
                first = located[left][0]
                clade = self.clade_mapping.get(first.bits.copy().or_(located[right][0].bits))
                partition = clade.get_clade_partition(first) if clade is not None else None
                if partition is None:
                    log_tree_not_in_ccd(f"no clade partition for node {node}")
                    return None
            if clade is None:
                log_tree_not_in_ccd(f"no clade for node {node}")
                return None
            located[node] = (clade, partition)
        return located

    def _reduce_clade_counts(self, tree: Tree) -> bool:
        located = self._locate_tree(tree)
        if located is None:
            return False
        for node, (clade, partition) in enumerate(located):
            height = float(tree.height[node])
            clade.decrease_occurrence_count(height)
            if partition is not None:
                partition.decrease_occurrence_count(height)
                if partition.num_occurrences <= 0:
                    self._on_zero_occurrence(partition)
        return True

    def _on_zero_occurrence(self, partition: CladePartition) -> None:
        """Called when a partition loses its last occurrence on tree removal."""
        raise NotImplementedError

    # ================================================================== #
    # Graph tidy-up                                                        #
    # ================================================================== #

    def tidy_up_ccd_graph(self) -> bool:
        """
        Remove clades left without parents, partitions or occurrences.

        Removal cascades: a parent that loses its last partition and a
        sibling that loses its last parent are removed as well.  Leaves and
        the root are never removed.

        Returns
        -------
        bool
            Whether the graph is still complete, i.e. the root has a
            partition and every leaf a parent.
        """
        complete = True
        to_remove = []
        for clade in self._iter_clades():
            if clade.is_leaf():
                if not clade.parent_clades:
                    complete = False
            elif clade is self.root_clade:
                if not clade.partitions:
                    complete = False
            elif (
                not clade.parent_clades
                or not clade.partitions
                or clade.num_occurrences <= 0
            ):
                to_remove.append(clade)

        n_clades_removed = 0
        n_partitions_removed = 0
        removed = set()
        while to_remove:
            clade = to_remove.pop()
            if clade.is_leaf() or clade is self.root_clade:
                complete = False
                continue
            if clade in removed:
                continue
            removed.add(clade)
            self._discard_clade(clade)
            n_clades_removed += 1

            for parent in list(clade.parent_clades):
                partition = parent.get_clade_partition(clade)
                if partition is None:
                    continue
                other = partition.get_other_child_clade(clade)
                parent.remove_partition(partition)
                n_partitions_removed += 1
                if not parent.partitions:
                    to_remove.append(parent)
                if not other.parent_clades:
                    to_remove.append(other)

            for partition in list(clade.partitions):
                clade.remove_partition(partition)
                n_partitions_removed += 1
                for child in partition.child_clades:
                    if not child.parent_clades:
                        to_remove.append(child)

        log_tidy_up(n_clades_removed, n_partitions_removed, complete)
        if n_clades_removed > 0:
            self._cache_state = CacheState.STRUCTURE_DIRTY
        return complete

    def _iter_clades(self) -> List[Clade]:
        return list(self.clade_mapping.values())

    def _discard_clade(self, clade: Clade) -> None:
        self.clade_mapping.pop(clade.bits, None)

    # ================================================================== #
    # Cache protocol                                                       #
    # ================================================================== #

    def initialize(self) -> None:
        """Bring the graph into a queryable state (variant specific)."""
        raise NotImplementedError

    def _ensure_clean(self) -> None:
        if self._cache_state is CacheState.STRUCTURE_DIRTY:
            self._reset_cache()
            self.initialize()
            self._cache_state = CacheState.CLEAN
        elif self._cache_state is CacheState.PROBABILITIES_DIRTY:
            self._reset_cache()
            self._cache_state = CacheState.CLEAN

    def _reset_cache(self) -> None:
        for clade in self._iter_clades():
            clade.reset_cached_values()
        self._clade_probabilities = None
        self._clade_order = None

    def mark_probabilities_dirty(self) -> None:
        """Invalidate memoised values after CCPs were changed by hand."""
        if self._cache_state is CacheState.CLEAN:
            self._cache_state = CacheState.PROBABILITIES_DIRTY

    @property
    def cache_state(self) -> CacheState:
        return self._cache_state

    def _clades_in_size_order(self) -> List[Clade]:
        """Clades reachable from the root, smallest first."""
        if self._clade_order is None:
            seen = {self.root_clade}
            order = []
            stack = [self.root_clade]
            while stack:
                clade = stack.pop()
                order.append(clade)
                for child in clade.child_clades:
                    if child not in seen:
                        seen.add(child)
                        stack.append(child)
            order.sort(key=lambda c: c.size)
            self._clade_order = order
        return self._clade_order

    def _warm_up(self, getter: str) -> None:
        # evaluate bottom-up so the memoised recursion stays shallow
        for clade in self._clades_in_size_order():
            getattr(clade, getter)()

    # ================================================================== #
    # Basic queries                                                        #
    # ================================================================== #

    def get_number_of_leaves(self) -> int:
        return self.number_of_leaves

    def get_size_of_leaves_array(self) -> int:
        return self.leaf_array_size

    def get_number_of_base_trees(self) -> int:
        return self.num_base_trees

    def get_base_trees(self) -> List[Tree]:
        return list(self.base_trees)

    def get_some_base_tree(self) -> Optional[Tree]:
        return self.base_trees[0] if self.base_trees else None

    def get_root_clade(self) -> Clade:
        self._ensure_clean()
        return self.root_clade

    def get_clade(self, bits: BitSet) -> Optional[Clade]:
        self._ensure_clean()
        return self.clade_mapping.get(bits)

    def get_clades(self) -> List[Clade]:
        self._ensure_clean()
        return self._iter_clades()

    def get_number_of_clades(self) -> int:
        self._ensure_clean()
        return len(self.clade_mapping)

    def get_number_of_clade_partitions(self) -> int:
        self._ensure_clean()
        return sum(len(clade.partitions) for clade in self._iter_clades())

    def get_number_of_parameters(self) -> int:
        raise NotImplementedError

    def get_taxa_as_bitset(self) -> BitSet:
        return self.root_clade.bits.copy()

    def taxa_bitset(self, indices: Iterable[int]) -> BitSet:
        """Bitmask over this CCD's taxon space with the given taxa set."""
        return bitset_of(self.leaf_array_size, indices)

    def get_taxa_names(self, bits: BitSet) -> str:
        """
        Render the taxa of *bits* as ``{name1, name2}`` using a base tree.
        """
        tree = self.get_some_base_tree()
        if tree is None:
            return str(bits)
        return "{" + ", ".join(tree.get_taxon_name(i) for i in bits) + "}"

    # ================================================================== #
    # Probabilities                                                        #
    # ================================================================== #

    def compute_clade_probabilities(self) -> None:
        """
        Propagate clade probabilities from the root.

        Breadth-first: a clade is expanded once all partitions pointing to it
        have contributed ``P(parent) * CCP``.  Leaves have probability one.

        Raises
        ------
        GraphInvariantError
            If a clade probability exceeds ``1 + probability_error_bound``.
        """
        self._ensure_clean()
        order = self._clades_in_size_order()

        remaining: Dict[Clade, int] = {}
        for clade in order:
            for partition in clade.partitions:
                for child in partition.child_clades:
                    remaining[child] = remaining.get(child, 0) + 1

        probabilities: Dict[Clade, float] = {self.root_clade: 1.0}
        error_bound = 1.0 + self.config.probability_error_bound
        rounding_bound = 1.0 + self.config.rounding_epsilon

        queue = deque([self.root_clade])
        while queue:
            clade = queue.popleft()
            probability = probabilities[clade]
            for partition in clade.partitions:
                contribution = probability * partition.get_ccp()
                for child in partition.child_clades:
                    if child.is_leaf():
                        continue
                    probabilities[child] = probabilities.get(child, 0.0) + contribution
                    remaining[child] -= 1
                    if remaining[child] == 0:
                        value = probabilities[child]
                        if value > error_bound:
                            raise GraphInvariantError(
                                f"Clade probability {value} > 1 for {child}"
                            )
                        if 1.0 < value <= rounding_bound:
                            probabilities[child] = 1.0
                        queue.append(child)

        for clade in order:
            if clade.is_leaf():
                probabilities[clade] = 1.0
        self._clade_probabilities = probabilities

    def get_probability_of_clade(self, clade: Clade) -> float:
        """Probability that a tree drawn from this CCD contains *clade*."""
        self._ensure_clean()
        if self._clade_probabilities is None:
            self.compute_clade_probabilities()
        return self._clade_probabilities.get(clade, 0.0)

    def get_clade_probability(self, bits: BitSet) -> float:
        """Probability of the clade with taxa *bits* (0 if absent)."""
        clade = self.get_clade(bits)
        if clade is None:
            return 0.0
        return self.get_probability_of_clade(clade)

    def get_partition_probability(self, partition: CladePartition) -> float:
        """Probability that a drawn tree contains *partition*."""
        return self.get_probability_of_clade(partition.parent_clade) * partition.get_ccp()

    def get_probability_of_tree(self, tree: Tree) -> float:
        """Product of the CCPs of the tree's partitions; 0 if one is missing."""
        log_probability = self.get_log_probability_of_tree(tree)
        return math.exp(log_probability) if log_probability > -math.inf else 0.0

    def get_log_probability_of_tree(self, tree: Tree) -> float:
        self._ensure_clean()
        clade_of_node: List[Optional[Clade]] = [None] * tree.n_nodes
        log_probability = 0.0
        for node in tree.postorder():
            if tree.is_leaf(node):
                bits = new_bitset(self.leaf_array_size)
                bits.set(int(tree.taxon[node]))
                clade = self.clade_mapping.get(bits)
            else:
                left, right = tree.children(node)
                first = clade_of_node[left]
                bits = first.bits.copy().or_(clade_of_node[right].bits)
                clade = self.clade_mapping.get(bits)
                if clade is None:
                    return -math.inf
                partition = clade.get_clade_partition(first)
                if partition is None:
                    return -math.inf
                ccp = partition.get_ccp()
                if ccp <= 0.0:
                    return -math.inf
                log_probability += math.log(ccp)
            if clade is None:
                return -math.inf
            clade_of_node[node] = clade
        return log_probability

    def contains_tree(self, tree: Tree) -> bool:
        return self.get_probability_of_tree(tree) > 0.0

    # ================================================================== #
    # Statistics                                                           #
    # ================================================================== #

    def get_entropy(self) -> float:
        """Entropy of the tree distribution (recursive per-clade form)."""
        self._ensure_clean()
        self._warm_up("get_entropy")
        return self.root_clade.get_entropy()

    def get_entropy_lewis(self) -> float:
        """
        Entropy as a single pass over all partitions.

        ``H = -sum_p P(parent(p)) * CCP(p) * log CCP(p)``; equal to
        ``get_entropy`` up to rounding.
        """
        self._ensure_clean()
        entropy = 0.0
        for clade in self._clades_in_size_order():
            if clade.is_leaf():
                continue
            clade_probability = self.get_probability_of_clade(clade)
            for partition in clade.partitions:
                ccp = partition.get_ccp()
                if ccp > 0.0:
                    entropy -= clade_probability * ccp * partition.get_log_ccp()
        return entropy

    def get_number_of_trees(self) -> int:
        """Number of distinct topologies with non-zero support (exact int)."""
        self._ensure_clean()
        self._warm_up("get_number_of_topologies")
        return self.root_clade.get_number_of_topologies()

    def get_max_log_tree_probability(self) -> float:
        self._ensure_clean()
        self._warm_up("get_max_subtree_log_ccp")
        return self.root_clade.get_max_subtree_log_ccp()

    def get_max_tree_probability(self) -> float:
        """Probability of the MAP tree."""
        return math.exp(self.get_max_log_tree_probability())

    def get_max_sum_clade_credibility(self) -> float:
        """Sum of the non-leaf clade credibilities of the MSCC tree."""
        self._ensure_clean()
        self._warm_up("get_max_subtree_sum_clade_credibility")
        return self.root_clade.get_max_subtree_sum_clade_credibility()

    def average_rf_distance(self, tree: Tree) -> float:
        """
        Expected number of non-leaf clades of a drawn tree missing from *tree*.

        Each clade's value is the CCP-weighted sum over partitions of the
        children's values, plus one if the clade is not in *tree*.
        """
        self._ensure_clean()
        in_tree = set(WrappedTree(tree, self.leaf_array_size).get_nontrivial_clades())
        distances: Dict[Clade, float] = {}
        for clade in self._clades_in_size_order():
            if clade.is_leaf():
                distances[clade] = 0.0
                continue
            value = 0.0
            for partition in clade.partitions:
                first, second = partition.child_clades
                value += partition.get_ccp() * (distances[first] + distances[second])
            if clade.bits not in in_tree:
                value += 1.0
            distances[clade] = value
        return distances[self.root_clade]

    def get_lost_probability(self, excluded_clades: Iterable) -> float:
        """
        Probability that a drawn tree contains at least one excluded clade.

        Parameters
        ----------
        excluded_clades : iterable of Clade or BitSet

        Returns
        -------
        float
            ``1 - P(tree avoids all excluded clades)``.  The kept mass of a
            clade is zero if it is excluded and otherwise the CCP-weighted
            sum over its partitions of the product of the children's kept
            masses; leaves keep all their mass.
        """
        self._ensure_clean()
        excluded = {
            clade.bits if isinstance(clade, Clade) else clade for clade in excluded_clades
        }
        if not excluded:
            return 0.0
        kept: Dict[Clade, float] = {}
        for clade in self._clades_in_size_order():
            if clade.bits in excluded:
                kept[clade] = 0.0
            elif clade.is_leaf():
                kept[clade] = 1.0
            else:
                kept[clade] = sum(
                    partition.get_ccp()
                    * kept[partition.child_clades[0]]
                    * kept[partition.child_clades[1]]
                    for partition in clade.partitions
                )
        return max(0.0, 1.0 - kept[self.root_clade])

    # ================================================================== #
    # Point estimates and sampling                                         #
    # ================================================================== #

    def set_random_generator(self, rng) -> None:
        """Use *rng* (a seed or ``numpy.random.Generator``) for sampling."""
        self._rng = np.random.default_rng(rng)

    def get_map_tree(
        self, heights: HeightSettingStrategy = HeightSettingStrategy.MEAN_OCCURRED_HEIGHTS
    ) -> Tree:
        """Tree maximising the product of CCPs."""
        return self.get_tree_based_on_strategy(SamplingStrategy.MAP, heights)

    def get_mscc_tree(
        self, heights: HeightSettingStrategy = HeightSettingStrategy.MEAN_OCCURRED_HEIGHTS
    ) -> Tree:
        """Tree maximising the sum of clade credibilities."""
        return self.get_tree_based_on_strategy(
            SamplingStrategy.MAX_SUM_CLADE_CREDIBILITY, heights
        )

    def sample_tree(
        self, heights: HeightSettingStrategy = HeightSettingStrategy.MEAN_OCCURRED_HEIGHTS
    ) -> Tree:
        """Draw a tree from the distribution."""
        return self.get_tree_based_on_strategy(SamplingStrategy.SAMPLING, heights)

    def get_tree_based_on_strategy(
        self, sampling: SamplingStrategy, heights: HeightSettingStrategy
    ) -> Tree:
        """
        Build a tree by descending from the root, picking one partition per
        clade according to *sampling*.

        Leaves get node IDs in left-to-right order; internal nodes are
        numbered in post-order from the number of leaves upward, so the root
        is the last node.

        Raises
        ------
        UnsupportedOperationError
            For common-ancestor heights without stored base trees.
        GraphInvariantError
            If a non-leaf clade on the path has no partition.
        """
        self._ensure_clean()
        if sampling is SamplingStrategy.MAP:
            self._warm_up("get_max_subtree_log_ccp")
        elif sampling is SamplingStrategy.MAX_SUM_CLADE_CREDIBILITY:
            self._warm_up("get_max_subtree_sum_clade_credibility")

        leaves: List[Clade] = []
        internals = []  # (clade, left ref, right ref) in post-order
        refs = []
        stack = [(self.root_clade, False)]
        while stack:
            clade, expanded = stack.pop()
            if clade.is_leaf():
                refs.append((True, len(leaves)))
                leaves.append(clade)
            elif expanded:
                right = refs.pop()
                left = refs.pop()
                internals.append((clade, left, right))
                refs.append((False, len(internals) - 1))
            else:
                partition = self._choose_partition(clade, sampling)
                first, second = partition.child_clades
                stack.append((clade, True))
                stack.append((second, False))
                stack.append((first, False))

        n_leaves = len(leaves)
        n_nodes = n_leaves + len(internals)

        def node_id(ref):
            is_leaf, index = ref
            return index if is_leaf else n_leaves + index

        clades = leaves + [entry[0] for entry in internals]
        left_child = np.full(n_nodes, -1, dtype=np.int32)
        right_child = np.full(n_nodes, -1, dtype=np.int32)
        for k, (_, left, right) in enumerate(internals):
            left_child[n_leaves + k] = node_id(left)
            right_child[n_leaves + k] = node_id(right)
        taxon = np.array([clade.bits.first_set_bit() for clade in leaves], dtype=np.int32)

        height = self._node_heights(clades, left_child, right_child, n_leaves, heights)

        base_tree = self.get_some_base_tree()
        names = None
        if base_tree is not None:
            names = [base_tree.get_taxon_name(int(t)) for t in taxon]
        return Tree(left_child, right_child, height=height, taxon=taxon, names=names)

    def _choose_partition(
        self, clade: Clade, sampling: SamplingStrategy
    ) -> CladePartition:
        if sampling is SamplingStrategy.MAP:
            partition = clade.get_max_subtree_ccp_partition()
        elif sampling is SamplingStrategy.MAX_SUM_CLADE_CREDIBILITY:
            partition = clade.get_max_subtree_sum_clade_credibility_partition()
        else:
            partition = None
            draw = self._rng.random()
            cumulative = 0.0
            for candidate in clade.partitions:
                cumulative += candidate.get_ccp()
                if draw < cumulative:
                    partition = candidate
                    break
            if partition is None and clade.partitions:
                # rounding left the cumulative sum just below the draw
                partition = clade.partitions[-1]
        if partition is None:
            raise GraphInvariantError(f"Clade has no partition: {clade}")
        return partition

    def _node_heights(self, clades, left_child, right_child, n_leaves, heights):
        n_nodes = len(clades)
        height = np.zeros(n_nodes, dtype=np.float64)
        if heights is HeightSettingStrategy.NONE:
            return height

        if heights is HeightSettingStrategy.COMMON_ANCESTOR_HEIGHTS:
            if not self.store_base_trees or not self.base_trees:
                raise UnsupportedOperationError(
                    "Common ancestor heights need stored base trees"
                )
            wrapped = [WrappedTree(t, self.leaf_array_size) for t in self.base_trees]
            for node, clade in enumerate(clades):
                height[node] = sum(w.get_height_of_clade(clade.bits) for w in wrapped) / len(
                    wrapped
                )
            return height

        for node in range(n_leaves):
            height[node] = clades[node].mean_occurred_height
        for node in range(n_leaves, n_nodes):
            if heights is HeightSettingStrategy.ONE:
                height[node] = (
                    max(height[left_child[node]], height[right_child[node]]) + 1.0
                )
            else:
                height[node] = clades[node].mean_occurred_height
        return height

    # ================================================================== #
    # Copies                                                               #
    # ================================================================== #

    def copy(self) -> "AbstractCCD":
        """
        Independent copy with the same clades, counts, heights and CCPs.

        Partitions whose CCP was set explicitly (e.g. by CCD0
        normalisation) keep that CCP.
        """
        self._ensure_clean()
        duplicate = self._empty_copy()
        duplicate.base_trees = list(self.base_trees)
        duplicate.num_base_trees = self.num_base_trees
        duplicate.clade_mapping = {}

        copied: Dict[Clade, Clade] = {}
        for clade in self._iter_clades():
            new_clade = duplicate._add_new_clade(clade.bits)
            new_clade.increase_occurrence_count_by(
                clade.num_occurrences, clade.mean_occurred_height
            )
            copied[clade] = new_clade
        duplicate.root_clade = copied[self.root_clade]

        for clade in self._iter_clades():
            for partition in clade.partitions:
                first, second = partition.child_clades
                new_partition = copied[clade].create_clade_partition(
                    copied[first], copied[second]
                )
                new_partition.increase_occurrence_count_by(
                    partition.num_occurrences, partition.mean_occurred_height
                )
                if partition.is_ccp_set() or partition.num_occurrences <= 0:
                    new_partition.set_ccp(partition.get_ccp())

        duplicate._after_copy(self)
        duplicate._cache_state = CacheState.CLEAN
        return duplicate

    def _empty_copy(self) -> "AbstractCCD":
        return type(self)(
            n_leaves=self.number_of_leaves,
            store_base_trees=self.store_base_trees,
            config=self.config,
        )

    def _after_copy(self, original: "AbstractCCD") -> None:
        """Hook for variants to copy extra state."""

    def __str__(self) -> str:
        return (
            f"{type(self).__name__}[number of leaves: {self.leaf_array_size}, "
            f"number of clades: {self.get_number_of_clades()}, "
            f"max probability: {self.get_max_log_tree_probability()}, "
            f"entropy: {self.get_entropy()}, taxa: {self.get_taxa_as_bitset()}]"
        )
