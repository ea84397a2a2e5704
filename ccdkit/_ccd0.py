"""
_ccd0.py
========
CCD0: a distribution over trees parameterised by clade credibilities only.

After the trees are added, an *expand* step completes the graph with every
partition of an observed clade into two observed clades, even when that
partition never occurred.  CCPs are then set so that the probability of a
tree is proportional to the product of its clade credibilities.

Expand
------
Clades are bucketed by size.  For a parent of size ``n`` and each child
size ``j <= n / 2`` the smaller of the buckets ``j`` and ``n - j`` is
scanned.  Candidates are prefiltered on their first and last taxon, tested
for being a subset of the parent with a numba kernel, and completed by a
dictionary lookup of ``parent XOR child``.

Above ``CCDConfig.parallel_threshold`` clades the parents are split over a
thread pool by interleaved striding, one clade size at a time; partition
creation is serialised by a lock.

Normalisation
-------------
Bottom-up over clades in increasing size::

    sum(leaf)   = 1
    sum(cherry) = credibility(cherry)            CCP of its partition = 1
    sum(C)      = credibility(C) * sum_p sum(child1(p)) * sum(child2(p))
    CCP(p)      = sum(child1(p)) * sum(child2(p)) / sum_p' (...)

If the products underflow, the pass is redone in log space.
"""

import logging
import math
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from itertools import groupby
from typing import Dict, List, Optional, Set

import numpy as np

from ccdkit._backend import resolve_workers
from ccdkit._ccd import AbstractCCD
from ccdkit._clade import Clade, CladePartition
from ccdkit._errors import GraphInvariantError
from ccdkit._kernels import subset_rows
from ccdkit._logging import (
    log_conflicting_ccd0_options,
    log_expand,
    log_system_status,
    log_underflow_fallback,
    log_zero_partition_sum,
)

logger = logging.getLogger(__name__)

log_system_status()


class _Underflow(Exception):
    """Raised inside normalisation to switch to log space."""


# ======================================================================== #
# Clade buckets                                                            #
# ======================================================================== #


class _CladeBucket:
    """
    Clades of one size with their words, first and last taxon as arrays.

    Arrays are rebuilt lazily after clades are appended or dropped.
    """

    def __init__(self, n_words: int) -> None:
        self.n_words = n_words
        self.clades: List[Clade] = []
        self._words: Optional[np.ndarray] = None
        self._first: Optional[np.ndarray] = None
        self._last: Optional[np.ndarray] = None

    def append(self, clade: Clade) -> None:
        self.clades.append(clade)
        self._words = None

    def retain(self, keep) -> None:
        kept = [clade for clade in self.clades if keep(clade)]
        if len(kept) != len(self.clades):
            self.clades = kept
            self._words = None

    def freeze(self) -> None:
        if self._words is not None:
            return
        n = len(self.clades)
        words = np.zeros((n, self.n_words), dtype=np.uint64)
        first = np.empty(n, dtype=np.int64)
        last = np.empty(n, dtype=np.int64)
        for i, clade in enumerate(self.clades):
            words[i] = clade.bits.to_words(self.n_words)
            first[i] = clade.bits.first_set_bit()
            last[i] = clade.bits.last_set_bit()
        self._first = first
        self._last = last
        self._words = words

    def candidate_rows(self, lo: int, hi: int) -> np.ndarray:
        """Rows whose taxa lie within ``[lo, hi]``."""
        self.freeze()
        return np.flatnonzero((self._first >= lo) & (self._last <= hi))

    @property
    def words(self) -> np.ndarray:
        self.freeze()
        return self._words

    def __len__(self) -> int:
        return len(self.clades)


# ======================================================================== #
# CCD0                                                                     #
# ======================================================================== #


class CCD0(AbstractCCD):
    """
    Conditional clade distribution based on clade credibilities.

    Parameters
    ----------
    trees, burnin, n_leaves, store_base_trees, config, seed
        As for ``AbstractCCD``.
    use_monophyletic_speedup : bool, default False
        During expand, do not consider clades below a clade present in every
        tree as children of larger clades.
    update_online : bool, default False
        After the first expand, only expand around clades added since the
        previous expand.  Mutually exclusive with the monophyletic speedup.
    max_expansion_factor : int, default -1
        ``-1`` expands over all clades, ``0`` skips the expand, ``k > 0``
        expands over the ``k * n_leaves`` most frequent clades only.
    """

    def __init__(
        self,
        trees=None,
        burnin: float = 0.0,
        n_leaves=None,
        store_base_trees: bool = True,
        config=None,
        seed=None,
        use_monophyletic_speedup: bool = False,
        update_online: bool = False,
        max_expansion_factor: int = -1,
    ) -> None:
        if max_expansion_factor < -1:
            raise ValueError(
                f"max_expansion_factor must be -1, 0 or positive, got {max_expansion_factor}"
            )
        self.use_monophyletic_speedup = False
        self.update_online = False
        self.allow_reinitializing = True
        self.max_expansion_factor = max_expansion_factor

        self._new_clades: List[Clade] = []
        self._buckets: Optional[List[_CladeBucket]] = None
        self._initialized = False

        if use_monophyletic_speedup:
            self.set_to_use_monophyletic_speedup()
        if update_online:
            self.set_to_update_online()

        super().__init__(
            trees,
            burnin,
            n_leaves=n_leaves,
            store_base_trees=store_base_trees,
            config=config,
            seed=seed,
        )

    # ================================================================== #
    # Options                                                              #
    # ================================================================== #

    def set_to_use_monophyletic_speedup(self) -> bool:
        """Enable the monophyletic clade speedup; refused in online mode."""
        if self.update_online:
            log_conflicting_ccd0_options("monophyletic clade speedup", "online update")
            return False
        self.use_monophyletic_speedup = True
        return True

    def set_to_update_online(self) -> bool:
        """Enable online expansion; refused with the monophyletic speedup."""
        if self.use_monophyletic_speedup:
            log_conflicting_ccd0_options("online update", "monophyletic clade speedup")
            return False
        self.update_online = True
        return True

    def forbid_reinitializing(self) -> None:
        """Keep the current expand and CCPs when trees are added later."""
        self.allow_reinitializing = False

    # ================================================================== #
    # Variant hooks                                                        #
    # ================================================================== #

    def _add_new_clade(self, bits) -> Clade:
        clade = super()._add_new_clade(bits)
        if self.update_online:
            self._new_clades.append(clade)
        return clade

    def _on_zero_occurrence(self, partition: CladePartition) -> None:
        # unobserved partitions are part of a CCD0; only tidy-up removes them
        pass

    def get_number_of_parameters(self) -> int:
        return self.get_number_of_clades()

    def _empty_copy(self) -> "CCD0":
        return CCD0(
            n_leaves=self.number_of_leaves,
            store_base_trees=self.store_base_trees,
            config=self.config,
            use_monophyletic_speedup=self.use_monophyletic_speedup,
            update_online=self.update_online,
            max_expansion_factor=self.max_expansion_factor,
        )

    def _after_copy(self, original: "CCD0") -> None:
        self._new_clades = []
        self._buckets = None
        self.allow_reinitializing = original.allow_reinitializing
        self._initialized = original._initialized

    # ================================================================== #
    # Initialisation                                                       #
    # ================================================================== #

    def initialize(self) -> None:
        """Expand the graph and set the CCPs of all partitions."""
        if self._initialized and not self.allow_reinitializing:
            return
        if self.update_online and self._buckets is not None:
            self._expand_online()
        else:
            self._expand()
        self._new_clades = []

        if self.num_base_trees > 0:
            self._clade_order = None
            set_partition_probabilities(self._clades_in_size_order())
        self._initialized = True

    # ================================================================== #
    # Expand                                                               #
    # ================================================================== #

    def _expand(self) -> None:
        if self.max_expansion_factor == 0:
            return
        started = time.perf_counter()

        clades = list(self.clade_mapping.values())
        if self.max_expansion_factor > 0:
            n_considered = self.max_expansion_factor * self.number_of_leaves
            clades.sort(key=lambda clade: -clade.num_occurrences)
            clades = clades[:n_considered]
        clades.sort(key=lambda clade: clade.size)

        self._buckets = self._build_buckets(clades)
        done: Set[Clade] = set()

        n_workers = resolve_workers(self.config.n_workers)
        if n_workers <= 1 or len(clades) < self.config.parallel_threshold or self.update_online:
            n_workers = 1
            n_new = self._find_child_partitions(clades, done, None)
            mode = "serial"
        else:
            n_new = self._find_child_partitions_in_parallel(clades, done, n_workers)
            mode = "parallel"

        if not self.update_online:
            self._buckets = None
        log_expand(mode, len(clades), n_new, n_workers, time.perf_counter() - started)

    def _expand_online(self) -> None:
        started = time.perf_counter()
        new_clades = [
            clade
            for clade in self._new_clades
            if clade.num_occurrences > 0 and self.clade_mapping.get(clade.bits) is clade
        ]
        for bucket in self._buckets:
            bucket.retain(lambda clade: self.clade_mapping.get(clade.bits) is clade)
        if not new_clades:
            return
        new_clades.sort(key=lambda clade: clade.size)
        for clade in new_clades:
            self._buckets[clade.size - 1].append(clade)

        done: Set[Clade] = set()
        n_new = self._find_child_partitions(new_clades, done, None)
        n_new += self._find_parent_partitions(new_clades)
        log_expand("online", len(new_clades), n_new, 1, time.perf_counter() - started)

    def _build_buckets(self, clades: List[Clade]) -> List[_CladeBucket]:
        n_words = max(1, (self.leaf_array_size + 63) // 64)
        buckets = [_CladeBucket(n_words) for _ in range(self.leaf_array_size)]
        for clade in clades:
            buckets[clade.size - 1].append(clade)
        for bucket in buckets:
            bucket.freeze()
        return buckets

    def _find_child_partitions_in_parallel(
        self, clades: List[Clade], done: Set[Clade], n_workers: int
    ) -> int:
        """
        Parallel expand over *clades* (sorted by size), one size level at a time.

        Clades below a monophyletic parent may only be skipped for larger
        parents, so descendants found during a level are merged into *done*
        after all workers of that level have finished.
        """
        lock = threading.Lock()
        n_new = 0
        with ThreadPoolExecutor(max_workers=n_workers) as pool:
            for _, level in groupby(clades, key=lambda clade: clade.size):
                level = list(level)
                settled: Set[Clade] = set()
                futures = [
                    pool.submit(
                        self._find_child_partitions,
                        level[i::n_workers],
                        done,
                        lock,
                        settled,
                    )
                    for i in range(min(n_workers, len(level)))
                ]
                # result() re-raises a worker's exception here
                n_new += sum(future.result() for future in futures)
                done.update(settled)
        return n_new

    def _find_child_partitions(
        self, parents: List[Clade], done: Set[Clade], lock, settled=None
    ) -> int:
        n_new = 0
        for parent in parents:
            n_new += self._find_child_partitions_of(parent, done, lock, settled)
        return n_new

    def _find_child_partitions_of(
        self, parent: Clade, done: Set[Clade], lock, settled=None
    ) -> int:
        if parent.is_leaf() or parent.is_cherry():
            return 0
        n_words = self._buckets[0].n_words
        parent_words = parent.bits.to_words(n_words)
        lo = parent.bits.first_set_bit()
        hi = parent.bits.last_set_bit()
        n = parent.size

        n_new = 0
        for j in range(1, n // 2 + 1):
            small = self._buckets[j - 1]
            large = self._buckets[n - j - 1]
            small_rows = small.candidate_rows(lo, hi)
            large_rows = large.candidate_rows(lo, hi)
            if len(small_rows) <= len(large_rows):
                bucket, rows = small, small_rows
            else:
                bucket, rows = large, large_rows
            if len(rows) == 0:
                continue
            is_subset = subset_rows(bucket.words, rows, parent_words)
            for row in rows[is_subset]:
                child = bucket.clades[row]
                if child in done:
                    continue
                n_new += self._add_partition_if_completed(parent, child, lock)

        if self.use_monophyletic_speedup and parent.is_monophyletic():
            below = parent.get_descendant_clades(until_monophyletic=True)
            if lock is None:
                done.update(below)
            else:
                with lock:
                    settled.update(below)
        return n_new

    def _find_parent_partitions(self, children: List[Clade]) -> int:
        n_words = self._buckets[0].n_words
        n_new = 0
        for child in children:
            child_words = child.bits.to_words(n_words)
            for size in range(child.size + 1, self.leaf_array_size + 1):
                for parent in self._buckets[size - 1].clades:
                    parent_words = parent.bits.to_words(n_words)
                    if np.all((child_words | parent_words) == parent_words):
                        n_new += self._add_partition_if_completed(parent, child, None)
        return n_new

    def _add_partition_if_completed(self, parent: Clade, child: Clade, lock) -> int:
        """Create ``parent -> child | parent XOR child`` if the partner exists."""
        if parent.get_clade_partition(child) is not None:
            return 0
        partner = self.clade_mapping.get(parent.bits.copy().xor(child.bits))
        if partner is None:
            return 0
        if lock is None:
            parent.create_clade_partition(child, partner)
        else:
            with lock:
                parent.create_clade_partition(child, partner)
        return 1


# ======================================================================== #
# Normalisation                                                            #
# ======================================================================== #


def set_partition_probabilities(order: List[Clade]) -> None:
    """
    Set the CCPs of all partitions of the clades in *order* (smallest first).

    Falls back to ``set_partition_log_probabilities`` when products of
    clade credibility sums underflow.
    """
    try:
        _set_linear_partition_probabilities(order)
    except _Underflow as underflow:
        log_underflow_fallback(str(underflow))
        set_partition_log_probabilities(order)


def _set_linear_partition_probabilities(order: List[Clade]) -> None:
    sums: Dict[Clade, float] = {}
    for clade in order:
        if clade.is_leaf():
            sums[clade] = 1.0
            clade.sum_clade_credibilities = 1.0
            continue
        credibility = clade.get_clade_credibility()
        if clade.is_cherry():
            _cherry_partition(clade).set_ccp(1.0)
            sums[clade] = credibility
            clade.sum_clade_credibilities = credibility
            continue

        products = [
            sums[partition.child_clades[0]] * sums[partition.child_clades[1]]
            for partition in clade.partitions
        ]
        total = sum(products)
        if total == 0.0:
            _zero_out_or_underflow(clade, sums)
        else:
            for partition, product in zip(clade.partitions, products):
                partition.set_ccp(product / total)
        sums[clade] = total * credibility
        clade.sum_clade_credibilities = sums[clade]


def _zero_out_or_underflow(clade: Clade, sums: Dict[Clade, float]) -> None:
    """
    Handle a clade whose partition products sum to zero.

    If no partition has two supported children the CCPs are set to zero;
    otherwise the products underflowed and ``_Underflow`` is raised.
    """
    for partition in clade.partitions:
        first, second = partition.child_clades
        if sums[first] > 0.0 and sums[second] > 0.0:
            raise _Underflow(str(clade.bits))
    log_zero_partition_sum(str(clade.bits), len(clade.partitions))
    for partition in clade.partitions:
        partition.set_ccp(0.0)


def set_partition_log_probabilities(order: List[Clade]) -> None:
    """Log-space version of ``set_partition_probabilities``."""
    log_sums: Dict[Clade, float] = {}
    for clade in order:
        if clade.is_leaf():
            log_sums[clade] = 0.0
            clade.log_sum_clade_credibilities = 0.0
            continue
        credibility = clade.get_clade_credibility()
        log_credibility = math.log(credibility) if credibility > 0.0 else -math.inf
        if clade.is_cherry():
            _cherry_partition(clade).set_ccp(1.0)
            log_sums[clade] = log_credibility
            clade.log_sum_clade_credibilities = log_credibility
            continue

        logs = np.array(
            [
                log_sums[partition.child_clades[0]] + log_sums[partition.child_clades[1]]
                for partition in clade.partitions
            ],
            dtype=np.float64,
        )
        maximum = logs.max() if logs.shape[0] > 0 else -math.inf
        if maximum == -math.inf:
            log_zero_partition_sum(str(clade.bits), len(clade.partitions))
            for partition in clade.partitions:
                partition.set_ccp(0.0)
            log_total = -math.inf
        else:
            log_total = maximum + math.log(float(np.exp(logs - maximum).sum()))
            for partition, value in zip(clade.partitions, logs):
                partition.set_ccp(math.exp(value - log_total))
        log_sums[clade] = log_total + log_credibility
        clade.log_sum_clade_credibilities = log_sums[clade]


def _cherry_partition(clade: Clade) -> CladePartition:
    if not clade.partitions:
        raise GraphInvariantError(f"Cherry {clade.bits} has no clade partition")
    return clade.partitions[0]
