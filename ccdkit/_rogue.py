"""
_rogue.py
=========
Rogue taxon detection on CCDs.

A rogue is a taxon (or a clade of taxa) whose placement varies between the
sampled trees.  Removing it makes the distribution more concentrated.  The
search is a dynamic program over the number of removed taxa::

    best[0] = ccd
    best[i] = best over j in 1..k of
              (best single removal of a clade of size j from best[i - j])

where "best" is judged by the chosen ``RogueDetectionStrategy``.  The
result is the chain of successively filtered CCDs leading from the input
to the best final CCD.

Examples
--------
>>> chain = detect_rogues_while_improving(
...     ccd, 2, RogueDetectionStrategy.ENTROPY, TerminationStrategy.num_rogues(3))
>>> [sorted(mask) for mask in extract_rogues(chain)]
[[4], [7, 8], [2]]
"""

import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from ccdkit._bitset import BitSet
from ccdkit._ccd import AbstractCCD
from ccdkit._clade import Clade
from ccdkit._filtered import AttachingFilteredCCD, FilteredCCD
from ccdkit._logging import log_rogue_step, log_rogue_termination

logger = logging.getLogger(__name__)


# ======================================================================== #
# Strategies                                                               #
# ======================================================================== #


class RogueDetectionStrategy(Enum):
    """Score a candidate removal is judged by."""

    ENTROPY = "entropy-reduction strategy"
    MAX_PROBABILITY = "max-probability-improvement strategy"
    NUM_TOPOLOGIES = "number-topologies-reduction strategy"

    def score(self, ccd: AbstractCCD):
        """Score of *ccd*; lower is better for every strategy."""
        if self is RogueDetectionStrategy.ENTROPY:
            return ccd.get_entropy()
        if self is RogueDetectionStrategy.MAX_PROBABILITY:
            return -ccd.get_max_tree_probability()
        return ccd.get_number_of_trees()

    def render(self, score) -> str:
        if self is RogueDetectionStrategy.MAX_PROBABILITY:
            return f"{-score:.6g}"
        if self is RogueDetectionStrategy.NUM_TOPOLOGIES:
            return str(score)
        return f"{score:.6g}"


@dataclass(frozen=True)
class TerminationStrategy:
    """
    When rogue detection stops, besides running out of improvements.

    Build instances with the class methods, e.g.
    ``TerminationStrategy.num_rogues(5)``.
    """

    kind: str
    threshold: Optional[float] = None

    NUM_ROGUES_DEFAULT = 10
    ENTROPY_DEFAULT = 10.0
    ADAPTIVE_ENTROPY_DEFAULT = 0.5
    MAX_PROBABILITY_DEFAULT = 0.1
    SUPPORT_DEFAULT = 0.5

    @classmethod
    def exhaustive(cls) -> "TerminationStrategy":
        return cls("exhaustive")

    @classmethod
    def num_rogues(cls, k: int = NUM_ROGUES_DEFAULT) -> "TerminationStrategy":
        """Stop after *k* taxa have been removed."""
        if k < 1:
            raise ValueError(f"Number of rogues must be >= 1, got {k}")
        return cls("num_rogues", k)

    @classmethod
    def entropy(cls, threshold: float = ENTROPY_DEFAULT) -> "TerminationStrategy":
        """Stop once the entropy is at most *threshold*."""
        return cls("entropy", threshold)

    @classmethod
    def adaptive_entropy(
        cls, fraction: float = ADAPTIVE_ENTROPY_DEFAULT
    ) -> "TerminationStrategy":
        """Stop once the entropy is at most *fraction* of the initial entropy."""
        if not 0.0 <= fraction <= 1.0:
            raise ValueError(f"fraction must be in [0, 1], got {fraction}")
        return cls("adaptive_entropy", fraction)

    @classmethod
    def max_probability(
        cls, threshold: float = MAX_PROBABILITY_DEFAULT
    ) -> "TerminationStrategy":
        """Stop once the MAP tree has probability at least *threshold*."""
        return cls("max_probability", threshold)

    @classmethod
    def support(cls, threshold: float = SUPPORT_DEFAULT) -> "TerminationStrategy":
        """Stop once every clade of the MAP tree has credibility >= *threshold*."""
        return cls("support", threshold)

    def is_reached(self, ccd: AbstractCCD, n_removed: int, initial_entropy: float) -> bool:
        if self.kind == "num_rogues":
            return n_removed >= self.threshold
        if self.kind == "entropy":
            return ccd.get_entropy() <= self.threshold
        if self.kind == "adaptive_entropy":
            return ccd.get_entropy() <= self.threshold * initial_entropy
        if self.kind == "max_probability":
            return ccd.get_max_tree_probability() >= self.threshold
        if self.kind == "support":
            return _min_map_clade_credibility(ccd) >= self.threshold
        return False

    def __str__(self) -> str:
        if self.threshold is None:
            return self.kind
        return f"{self.kind} ({self.threshold})"


def _min_map_clade_credibility(ccd: AbstractCCD) -> float:
    """Smallest credibility among the non-leaf, non-root clades of the MAP tree."""
    ccd.get_max_log_tree_probability()
    root = ccd.get_root_clade()
    lowest = 1.0
    stack = [root]
    while stack:
        clade = stack.pop()
        if clade.is_leaf():
            continue
        if clade is not root:
            lowest = min(lowest, clade.get_clade_credibility())
        stack.extend(clade.get_max_subtree_ccp_partition().child_clades)
    return lowest


# ======================================================================== #
# Detection                                                                #
# ======================================================================== #


def detect_rogues_while_improving(
    ccd: AbstractCCD,
    max_clade_size: int,
    strategy: RogueDetectionStrategy = RogueDetectionStrategy.ENTROPY,
    termination: Optional[TerminationStrategy] = None,
    min_clade_probability: float = 0.0,
) -> List[AbstractCCD]:
    """
    Remove rogue clades of up to *max_clade_size* taxa while the score improves.

    Parameters
    ----------
    ccd : AbstractCCD
        The distribution to clean up.
    max_clade_size : int
        Largest clade considered for a single removal.
    strategy : RogueDetectionStrategy
        Score to improve.
    termination : TerminationStrategy, optional
        Extra stop rule; defaults to ``TerminationStrategy.exhaustive()``.
    min_clade_probability : float, default 0.0
        Clades less probable than this are not considered for removal.

    Returns
    -------
    list of AbstractCCD
        ``[ccd, filtered_1, ..., filtered_m]`` where each entry is a
        FilteredCCD of the previous one.  With no improving removal the list
        is ``[ccd]``.

    Raises
    ------
    ValueError
        If *max_clade_size* is not smaller than the number of taxa.

    Notes
    -----
    Among equally good removals the first one found wins, so results depend
    on clade enumeration order.
    """
    n_leaves = ccd.get_number_of_leaves()
    if max_clade_size >= n_leaves:
        raise ValueError(
            f"Cannot remove clades of size {max_clade_size} from {n_leaves} taxa"
        )
    if max_clade_size < 1:
        raise ValueError(f"max_clade_size must be >= 1, got {max_clade_size}")
    if termination is None:
        termination = TerminationStrategy.exhaustive()

    initial_entropy = ccd.get_entropy()
    # at least two taxa must remain
    best: List[Optional[AbstractCCD]] = [None] * (n_leaves - 1)
    scores: List = [None] * (n_leaves - 1)
    best[0] = ccd
    scores[0] = strategy.score(ccd)

    reason = "all removals tried"
    for i in range(1, len(best)):
        for size in range(1, max_clade_size + 1):
            previous = best[i - size] if i - size >= 0 else None
            if previous is None:
                continue
            candidate = detect_single_rogue_clade(
                previous, size, strategy, min_clade_probability
            )
            if candidate is None:
                continue
            score = strategy.score(candidate)
            if best[i] is None or score < scores[i]:
                best[i] = candidate
                scores[i] = score
                if _is_perfect(candidate, strategy):
                    break

        if best[i] is not None:
            log_rogue_step(
                i,
                strategy.name.lower(),
                strategy.render(scores[i]),
                ccd.get_taxa_names(best[i].get_removed_taxa_mask()),
            )
            if best[i].get_entropy() == 0.0:
                reason = "no uncertainty left"
                break
            if termination.is_reached(best[i], i, initial_entropy):
                reason = f"termination criterion {termination} reached"
                break
        if not _still_improving(best, i, max_clade_size):
            reason = f"no improvement for clades of size up to {max_clade_size}"
            break

    chain = _rebuild_chain(ccd, best)
    log_rogue_termination(reason, len(chain) - 1)
    return chain


def _is_perfect(ccd: AbstractCCD, strategy: RogueDetectionStrategy) -> bool:
    if strategy is RogueDetectionStrategy.ENTROPY:
        return ccd.get_entropy() == 0.0
    if strategy is RogueDetectionStrategy.NUM_TOPOLOGIES:
        return ccd.get_number_of_trees() == 1
    return False


def _still_improving(best: List[Optional[AbstractCCD]], last: int, k: int) -> bool:
    """True unless none of the last *k* steps found a removal."""
    if last - k < 0:
        return True
    return any(best[j] is not None for j in range(last, last - k, -1))


def _rebuild_chain(ccd: AbstractCCD, best: List[Optional[AbstractCCD]]) -> List[AbstractCCD]:
    final = next(c for c in reversed(best) if c is not None)
    chain = []
    current = final
    while current is not ccd:
        chain.append(current)
        current = current.get_base_ccd()
    chain.append(ccd)
    chain.reverse()
    return chain


def detect_single_rogue_clade(
    ccd: AbstractCCD,
    clade_size: int,
    strategy: RogueDetectionStrategy = RogueDetectionStrategy.ENTROPY,
    min_clade_probability: float = 0.0,
) -> Optional[FilteredCCD]:
    """
    Best removal of a single clade of *clade_size* taxa from *ccd*.

    Clades whose only parent is present in every tree are skipped, since
    removing them cannot reduce uncertainty.  Returns None when no removal
    improves the score.
    """
    if ccd.get_number_of_leaves() - clade_size < 2:
        return None
    candidates: List[BitSet] = []
    for clade in ccd.get_clades():
        if clade.size != clade_size:
            continue
        if ccd.get_probability_of_clade(clade) < min_clade_probability:
            continue
        parents = clade.parent_clades
        if len(parents) != 1 or parents[0].get_clade_credibility() != 1.0:
            candidates.append(clade.bits.copy())

    best_mask = None
    best_score = strategy.score(ccd)
    for mask in candidates:
        score = strategy.score(AttachingFilteredCCD(ccd, mask))
        if score < best_score:
            best_mask, best_score = mask, score

    if best_mask is None:
        return None
    return FilteredCCD(ccd, best_mask)


def extract_rogues(chain: List[AbstractCCD]) -> List[BitSet]:
    """Removed taxa masks of a chain returned by ``detect_rogues_while_improving``."""
    return [ccd.get_removed_taxa_mask() for ccd in chain if isinstance(ccd, FilteredCCD)]


def compute_placement_rogue_score(ccd: AbstractCCD, clade: Clade) -> float:
    """
    Placement uncertainty of *clade*.

    ``-sum_parents P(partition) * log CCP(partition)`` over the partitions
    that split *clade* off a parent.  Zero for a clade that always has the
    same sibling.
    """
    score = 0.0
    for parent in clade.parent_clades:
        partition = parent.get_clade_partition(clade)
        ccp = partition.get_ccp()
        if ccp > 0.0:
            score -= ccd.get_partition_probability(partition) * math.log(ccp)
    return score
