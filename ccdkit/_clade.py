"""
_clade.py
=========
Nodes and hyperedges of the CCD graph.

  Clade
      A set of taxa (bitmask) observed in at least one tree, or synthesised
      by the CCD0 expand step.  Holds occurrence statistics, its partitions
      and lazily computed subtree quantities.

  CladePartition
      A split of a parent clade into two disjoint child clades, with its own
      occurrence statistics and conditional clade probability (CCP).

  ExtendedClade
      CCD2 clade whose identity also depends on its sibling clade.

Cached quantities (entropy, topology count, maximum subtree probability,
maximum subtree clade credibility) are computed recursively on first use
and memoised on the clade; the owning CCD resets them through
``reset_cached_values`` whenever the graph changes.  Clade probabilities are
*not* stored here: they depend on the whole graph and are kept by the CCD.
"""

import math
from typing import List, Optional

import numpy as np

from ccdkit._bitset import BitSet, lexicographic_first
from ccdkit._errors import GraphInvariantError


# ======================================================================== #
# log(n) lookup for observed CCPs                                          #
# ======================================================================== #

_LOG_TABLE_CHUNK = 1024


def _build_log_table(size: int) -> np.ndarray:
    table = np.empty(size, dtype=np.float64)
    table[0] = -np.inf
    table[1:] = np.log(np.arange(1, size, dtype=np.float64))
    return table


_log_table = _build_log_table(_LOG_TABLE_CHUNK)


def log_count(n: int) -> float:
    """
    Return ``log(n)`` for a non-negative occurrence count.

    Values come from a shared table that grows in chunks of 1024 entries.
    """
    global _log_table
    if n >= _log_table.shape[0]:
        _log_table = _build_log_table((n // _LOG_TABLE_CHUNK + 1) * _LOG_TABLE_CHUNK)
    return float(_log_table[n])


# ======================================================================== #
# CladePartition                                                           #
# ======================================================================== #


class CladePartition:
    """
    A split of ``parent_clade`` into ``child_clades[0]`` and ``child_clades[1]``.

    The CCP is either observed (occurrences of this partition divided by
    occurrences of the parent) or set explicitly with ``set_ccp``, as done by
    CCD0 normalisation and by copies of partitions without occurrences.
    """

    def __init__(self, parent_clade: "Clade", first: "Clade", second: "Clade"):
        self.parent_clade = parent_clade
        self.child_clades = (first, second)
        self.num_occurrences = 0
        self.mean_occurred_height = 0.0

        self._ccp = 0.0
        self._ccp_set = False
        self.reset_cached_values()

    # ---- occurrence statistics ---------------------------------------- #

    def increase_occurrence_count(self, height: float) -> None:
        n = self.num_occurrences
        self.mean_occurred_height = (self.mean_occurred_height * n + height) / (n + 1)
        self.num_occurrences = n + 1

    def increase_occurrence_count_by(self, count: int, mean_height: float) -> None:
        n = self.num_occurrences
        if count <= 0:
            return
        self.mean_occurred_height = (
            self.mean_occurred_height * n + mean_height * count
        ) / (n + count)
        self.num_occurrences = n + count

    def decrease_occurrence_count(self, height: float) -> None:
        n = self.num_occurrences
        if n <= 1:
            self.mean_occurred_height = 0.0
            self.num_occurrences = 0
        else:
            self.mean_occurred_height = (self.mean_occurred_height * n - height) / (n - 1)
            self.num_occurrences = n - 1

    # ---- conditional clade probability -------------------------------- #

    def get_ccp(self) -> float:
        if self._ccp_set:
            return self._ccp
        parent_occurrences = self.parent_clade.num_occurrences
        if parent_occurrences == 0:
            raise GraphInvariantError(
                f"Cannot compute CCP of {self}: parent clade has no occurrences"
            )
        return self.num_occurrences / parent_occurrences

    def get_log_ccp(self) -> float:
        if self._ccp_set:
            return math.log(self._ccp) if self._ccp > 0 else -math.inf
        if self.parent_clade.num_occurrences == 0:
            raise GraphInvariantError(
                f"Cannot compute CCP of {self}: parent clade has no occurrences"
            )
        return log_count(self.num_occurrences) - log_count(
            self.parent_clade.num_occurrences
        )

    def set_ccp(self, value: float) -> None:
        if math.isnan(value):
            raise ValueError(f"Cannot set CCP of {self} to NaN")
        self._ccp = float(value)
        self._ccp_set = True

    def is_ccp_set(self) -> bool:
        return self._ccp_set

    # ---- cached subtree quantities ------------------------------------ #

    def reset_cached_values(self) -> None:
        self._max_subtree_log_ccp: Optional[float] = None
        self._max_subtree_scc: Optional[float] = None
        self._num_topologies: Optional[int] = None

    def get_max_subtree_log_ccp(self) -> float:
        """Log CCP of this partition plus the best log CCP below both children."""
        if self._max_subtree_log_ccp is None:
            first, second = self.child_clades
            self._max_subtree_log_ccp = (
                self.get_log_ccp()
                + first.get_max_subtree_log_ccp()
                + second.get_max_subtree_log_ccp()
            )
        return self._max_subtree_log_ccp

    def get_max_subtree_sum_clade_credibility(self) -> float:
        if self._max_subtree_scc is None:
            first, second = self.child_clades
            self._max_subtree_scc = (
                first.get_max_subtree_sum_clade_credibility()
                + second.get_max_subtree_sum_clade_credibility()
            )
        return self._max_subtree_scc

    def get_number_of_topologies(self) -> int:
        if self._num_topologies is None:
            first, second = self.child_clades
            self._num_topologies = (
                first.get_number_of_topologies() * second.get_number_of_topologies()
            )
        return self._num_topologies

    # ---- structure ---------------------------------------------------- #

    def get_smaller_child(self) -> "Clade":
        """Child with fewer taxa; lexicographically first child on equal size."""
        first, second = self.child_clades
        if first.size != second.size:
            return first if first.size < second.size else second
        return first if lexicographic_first(first.bits, second.bits) is first.bits else second

    def get_other_child_clade(self, clade: "Clade") -> "Clade":
        first, second = self.child_clades
        if clade is first:
            return second
        if clade is second:
            return first
        raise ValueError(f"{clade} is not a child of {self}")

    def contains_child_clade(self, clade: "Clade") -> bool:
        return clade is self.child_clades[0] or clade is self.child_clades[1]

    def contains_clade(self, bits: BitSet) -> bool:
        """True if one of the two children has exactly the taxa *bits*."""
        return self.child_clades[0].bits == bits or self.child_clades[1].bits == bits

    def __repr__(self) -> str:
        first, second = self.child_clades
        return (
            f"CladePartition({self.parent_clade.bits} -> {first.bits} | {second.bits}, "
            f"occurrences={self.num_occurrences})"
        )


# ======================================================================== #
# Clade                                                                    #
# ======================================================================== #


class Clade:
    """
    A node of the CCD graph.

    Attributes
    ----------
    bits                 : BitSet   taxa of this clade (never mutated)
    ccd                  : AbstractCCD  the CCD that created this clade
    size                 : int      number of taxa
    num_occurrences      : int      number of base trees containing the clade
    mean_occurred_height : float    running mean of the clade's node heights
    parent_clades        : list[Clade]
    child_clades         : list[Clade]   two entries per partition
    partitions           : list[CladePartition]
    base_clade           : Clade or None   clade this one was filtered from
    """

    def __init__(self, bits: BitSet, ccd) -> None:
        self.bits = bits
        self.ccd = ccd
        self.size: int = bits.cardinality()
        self.num_occurrences = 0
        self.mean_occurred_height = 0.0

        self.parent_clades: List["Clade"] = []
        self.child_clades: List["Clade"] = []
        self.partitions: List[CladePartition] = []
        self.base_clade: Optional["Clade"] = None

        # CCD0 normalisation sums, managed by CCD0.
        self.sum_clade_credibilities: Optional[float] = None
        self.log_sum_clade_credibilities: Optional[float] = None

        self.reset_cached_values()

    def is_leaf(self) -> bool:
        return self.size == 1

    def is_cherry(self) -> bool:
        return self.size == 2

    # ================================================================== #
    # Occurrence statistics                                                #
    # ================================================================== #

    def increase_occurrence_count(self, height: float) -> None:
        n = self.num_occurrences
        self.mean_occurred_height = (self.mean_occurred_height * n + height) / (n + 1)
        self.num_occurrences = n + 1

    def increase_occurrence_count_by(self, count: int, mean_height: float) -> None:
        n = self.num_occurrences
        if count <= 0:
            return
        self.mean_occurred_height = (
            self.mean_occurred_height * n + mean_height * count
        ) / (n + count)
        self.num_occurrences = n + count

    def decrease_occurrence_count(self, height: float) -> None:
        n = self.num_occurrences
        if n <= 1:
            self.mean_occurred_height = 0.0
            self.num_occurrences = 0
        else:
            self.mean_occurred_height = (self.mean_occurred_height * n - height) / (n - 1)
            self.num_occurrences = n - 1

    def get_clade_credibility(self) -> float:
        """Fraction of the CCD's base trees that contain this clade."""
        return self.num_occurrences / self.ccd.num_base_trees

    def is_monophyletic(self) -> bool:
        return self.num_occurrences == self.ccd.num_base_trees

    # ================================================================== #
    # Partitions                                                           #
    # ================================================================== #

    def create_clade_partition(
        self, first: "Clade", second: "Clade", store_parent: bool = True
    ) -> CladePartition:
        """
        Add a partition of this clade into *first* and *second*.

        With ``store_parent=False`` the children do not record this clade as
        a parent; used when the children are shared with another CCD.
        """
        partition = CladePartition(self, first, second)
        self.partitions.append(partition)
        self.child_clades.append(first)
        self.child_clades.append(second)
        if store_parent:
            first.parent_clades.append(self)
            second.parent_clades.append(self)
        return partition

    def get_clade_partition(self, child: "Clade") -> Optional[CladePartition]:
        """Return the partition having *child* as one side, if any."""
        for partition in self.partitions:
            if partition.contains_child_clade(child):
                return partition
        return None

    def remove_partition(self, partition: CladePartition) -> None:
        self.partitions.remove(partition)
        for child in partition.child_clades:
            self.child_clades.remove(child)
            if self in child.parent_clades:
                child.parent_clades.remove(self)

    def normalize_ccps(self) -> None:
        """Rescale the CCPs of all partitions to sum to one."""
        total = sum(partition.get_ccp() for partition in self.partitions)
        if total <= 0:
            return
        for partition in self.partitions:
            partition.set_ccp(partition.get_ccp() / total)

    def get_number_of_partitions(self) -> int:
        return len(self.partitions)

    def get_number_of_parent_clades(self) -> int:
        return len(self.parent_clades)

    def get_number_of_child_clades(self) -> int:
        return len(self.child_clades)

    # ================================================================== #
    # Cached subtree quantities                                            #
    # ================================================================== #

    def reset_cached_values(self) -> None:
        leaf = self.is_leaf()
        self._entropy: Optional[float] = 0.0 if leaf else None
        self._num_topologies: Optional[int] = 1 if leaf else None
        self._max_subtree_log_ccp: Optional[float] = 0.0 if leaf else None
        self._max_subtree_ccp_partition: Optional[CladePartition] = None
        self._max_subtree_scc: Optional[float] = 0.0 if leaf else None
        self._max_subtree_scc_partition: Optional[CladePartition] = None
        if leaf:
            self.sum_clade_credibilities = 1.0
            self.log_sum_clade_credibilities = 0.0
        else:
            self.sum_clade_credibilities = None
            self.log_sum_clade_credibilities = None
            for partition in self.partitions:
                partition.reset_cached_values()

    def get_entropy(self) -> float:
        """
        Entropy of the distribution over subtrees of this clade.

        ``H(C) = -sum_p CCP(p) * (log CCP(p) - H(child1) - H(child2))``,
        zero for leaves.  Partitions with zero CCP contribute nothing.
        """
        if self._entropy is None:
            entropy = 0.0
            for partition in self.partitions:
                ccp = partition.get_ccp()
                if ccp <= 0.0:
                    continue
                first, second = partition.child_clades
                entropy -= ccp * (
                    partition.get_log_ccp() - first.get_entropy() - second.get_entropy()
                )
            self._entropy = entropy
        return self._entropy

    def get_number_of_topologies(self) -> int:
        if self._num_topologies is None:
            if self.is_cherry():
                self._num_topologies = 1
            else:
                self._num_topologies = sum(
                    partition.get_number_of_topologies() for partition in self.partitions
                )
        return self._num_topologies

    def get_max_subtree_log_ccp(self) -> float:
        if self._max_subtree_log_ccp is None:
            self._compute_max_subtree_log_ccp()
        return self._max_subtree_log_ccp

    def get_max_subtree_ccp_partition(self) -> Optional[CladePartition]:
        if self._max_subtree_log_ccp is None:
            self._compute_max_subtree_log_ccp()
        return self._max_subtree_ccp_partition

    def get_max_subtree_sum_clade_credibility(self) -> float:
        if self._max_subtree_scc is None:
            self._compute_max_subtree_sum_clade_credibility()
        return self._max_subtree_scc

    def get_max_subtree_sum_clade_credibility_partition(
        self,
    ) -> Optional[CladePartition]:
        if self._max_subtree_scc is None:
            self._compute_max_subtree_sum_clade_credibility()
        return self._max_subtree_scc_partition

    def _compute_max_subtree_log_ccp(self) -> None:
        best = None
        best_value = -math.inf
        for partition in self.partitions:
            value = partition.get_max_subtree_log_ccp()
            if best is None or value > best_value:
                best, best_value = partition, value
            elif value == best_value:
                # prefer the partition whose smaller child has fewer taxa,
                # then the lexicographically first smaller child
                incumbent = best.get_smaller_child()
                challenger = partition.get_smaller_child()
                if challenger.size < incumbent.size:
                    best = partition
                elif challenger.size == incumbent.size:
                    if challenger.bits == incumbent.bits:
                        raise GraphInvariantError(
                            f"Tie breaking failed, duplicate partitions: {best} and {partition}"
                        )
                    if lexicographic_first(incumbent.bits, challenger.bits) is challenger.bits:
                        best = partition
        self._max_subtree_log_ccp = best_value
        self._max_subtree_ccp_partition = best

    def _compute_max_subtree_sum_clade_credibility(self) -> None:
        best = None
        best_value = -math.inf
        for partition in self.partitions:
            value = partition.get_max_subtree_sum_clade_credibility()
            if value > best_value:
                best, best_value = partition, value
        self._max_subtree_scc = self.get_clade_credibility() + best_value
        self._max_subtree_scc_partition = best

    # ================================================================== #
    # Graph relations                                                      #
    # ================================================================== #

    def contains_clade(self, other: "Clade") -> bool:
        return self.bits.contains(other.bits)

    def intersects(self, other: "Clade") -> bool:
        return self.bits.intersects(other.bits)

    def get_descendant_clades(self, until_monophyletic: bool = False) -> List["Clade"]:
        """
        All clades reachable below this one (excluding itself).

        With ``until_monophyletic`` the walk includes monophyletic
        descendants but does not continue below them.
        """
        seen = set()
        result = []
        stack = list(self.child_clades)
        while stack:
            clade = stack.pop()
            if id(clade) in seen:
                continue
            seen.add(id(clade))
            result.append(clade)
            if until_monophyletic and clade.is_monophyletic():
                continue
            stack.extend(clade.child_clades)
        return result

    def get_ancestor_clades(self) -> List["Clade"]:
        seen = set()
        result = []
        stack = list(self.parent_clades)
        while stack:
            clade = stack.pop()
            if id(clade) in seen:
                continue
            seen.add(id(clade))
            result.append(clade)
            stack.extend(clade.parent_clades)
        return result

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}({self.bits}, occurrences={self.num_occurrences}, "
            f"partitions={len(self.partitions)})"
        )


class ExtendedClade(Clade):
    """
    CCD2 clade refined by its sibling.

    Two ExtendedClades may share ``bits`` while having different siblings.
    Leaves and the root have no sibling.
    """

    def __init__(self, bits: BitSet, ccd) -> None:
        super().__init__(bits, ccd)
        self.sibling: Optional["ExtendedClade"] = None

    def __repr__(self) -> str:
        sibling = self.sibling.bits if self.sibling is not None else None
        return (
            f"ExtendedClade({self.bits}, sibling={sibling}, "
            f"occurrences={self.num_occurrences}, partitions={len(self.partitions)})"
        )
