"""
ccdkit
======

Conditional clade distributions (CCDs) over posterior samples of rooted
phylogenetic trees.

A CCD turns a sample of trees into a tractable distribution over tree
topologies: clades become nodes of a directed acyclic graph, clade splits
become edges weighted by conditional clade probabilities (CCPs), and the
probability of a tree is the product of the CCPs of its splits.

Main Classes
------------
CCD1 : CCPs from observed clade-split frequencies
CCD0 : CCPs from clade credibilities, with unobserved splits added
CCD2 : CCPs conditioned on the sibling clade
FilteredCCD : A CCD with some taxa removed
AttachingFilteredCCD : FilteredCCD sharing unaffected clades with its base
Tree : Rooted binary tree in array form

Rogue Detection
---------------
detect_rogues_while_improving : Remove rogue clades while a score improves
detect_single_rogue_clade : Best single removal of a clade of given size
extract_rogues : Removed taxa masks of a rogue detection chain
compute_placement_rogue_score : Placement uncertainty of one clade

Context Managers
----------------
quiet : Suppress logging during operations
suppress_logger : Suppress specific logger
suppress_warnings : Suppress specific warnings
use_workers : Fix the thread count of the CCD0 expand step

Examples
--------
Basic usage:

>>> from ccdkit import CCD1, Tree
>>> trees = [Tree.from_nested(((0, 1), (2, 3)))] * 3 + [Tree.from_nested(((0, 2), (1, 3)))]
>>> ccd = CCD1(trees)
>>> ccd.get_number_of_trees()
2
>>> ccd.get_map_tree().to_nested()
((0, 1), (2, 3))

With context managers:

>>> from ccdkit import CCD0, quiet, use_workers
>>> with quiet(), use_workers(1):
...     ccd0 = CCD0(large_tree_list, burnin=0.1)
"""

__version__ = "0.1.0"

# Main classes
from ._ccd import AbstractCCD, CacheState
from ._ccd0 import CCD0
from ._ccd1 import CCD1
from ._ccd2 import CCD2
from ._filtered import AttachingFilteredCCD, FilteredCCD
from ._clade import Clade, CladePartition, ExtendedClade
from ._tree import Tree
from ._wrapped_tree import WrappedTree

# Bit vectors
from ._bitset import (
    BitSet,
    BitSet64,
    BitSet128,
    BitSet192,
    BitSet256,
    MultiWordBitSet,
    new_bitset,
    bitset_of,
    lexicographic_first,
)

# Strategies and configuration
from ._strategies import CCDType, HeightSettingStrategy, SamplingStrategy
from ._config import CCDConfig, DEFAULT_CONFIG

# Rogue detection
from ._rogue import (
    RogueDetectionStrategy,
    TerminationStrategy,
    detect_rogues_while_improving,
    detect_single_rogue_clade,
    extract_rogues,
    compute_placement_rogue_score,
)

# Errors
from ._errors import (
    CCDError,
    GraphInvariantError,
    InvalidFilterError,
    UnsupportedOperationError,
)

# Context managers (user-facing utilities)
from ._context import (
    suppress_logger,
    quiet,
    suppress_warnings,
    use_workers,
)

# Backend information
from ._backend import get_backend_info, resolve_workers

# Public API
__all__ = [
    # Main classes
    "AbstractCCD",
    "CacheState",
    "CCD0",
    "CCD1",
    "CCD2",
    "FilteredCCD",
    "AttachingFilteredCCD",
    "Clade",
    "CladePartition",
    "ExtendedClade",
    "Tree",
    "WrappedTree",
    # Bit vectors
    "BitSet",
    "BitSet64",
    "BitSet128",
    "BitSet192",
    "BitSet256",
    "MultiWordBitSet",
    "new_bitset",
    "bitset_of",
    "lexicographic_first",
    # Strategies and configuration
    "CCDType",
    "HeightSettingStrategy",
    "SamplingStrategy",
    "CCDConfig",
    "DEFAULT_CONFIG",
    # Rogue detection
    "RogueDetectionStrategy",
    "TerminationStrategy",
    "detect_rogues_while_improving",
    "detect_single_rogue_clade",
    "extract_rogues",
    "compute_placement_rogue_score",
    # Errors
    "CCDError",
    "GraphInvariantError",
    "InvalidFilterError",
    "UnsupportedOperationError",
    # Context managers
    "suppress_logger",
    "quiet",
    "suppress_warnings",
    "use_workers",
    # Backend information
    "get_backend_info",
    "resolve_workers",
    # Version info
    "__version__",
]
