"""
_strategies.py
==============
Enumerations selecting how trees are drawn from a CCD and which kind of CCD
to build.
"""

from enum import Enum


class SamplingStrategy(Enum):
    """How a partition is chosen at each clade when building a tree."""

    SAMPLING = "sampling"
    MAP = "map"
    MAX_SUM_CLADE_CREDIBILITY = "mscc"


class HeightSettingStrategy(Enum):
    """
    How node heights of an extracted tree are set.

    MEAN_OCCURRED_HEIGHTS
        Mean height of the clade over the trees it occurred in.
    COMMON_ANCESTOR_HEIGHTS
        Mean height of the most recent common ancestor of the clade's taxa
        over all stored base trees.
    ONE
        Leaves at their mean height, internal nodes one above their highest
        child.
    NONE
        All heights zero.
    """

    MEAN_OCCURRED_HEIGHTS = "mean"
    COMMON_ANCESTOR_HEIGHTS = "ca"
    ONE = "one"
    NONE = "none"


class CCDType(Enum):
    """The three CCD models."""

    CCD0 = "CCD0"
    CCD1 = "CCD1"
    CCD2 = "CCD2"

    @classmethod
    def from_name(cls, name: str) -> "CCDType":
        """
        Parse ``"CCD0"``, ``"ccd1"``, ``"2"`` and similar spellings.

        Examples
        --------
        >>> CCDType.from_name("ccd0")
        <CCDType.CCD0: 'CCD0'>
        >>> CCDType.from_name("2")
        <CCDType.CCD2: 'CCD2'>
        """
        key = name.strip().upper()
        if not key.startswith("CCD"):
            key = "CCD" + key
        try:
            return cls(key)
        except ValueError:
            raise ValueError(
                f"Unknown CCD type {name!r}; expected one of "
                f"{', '.join(t.value for t in cls)}"
            ) from None

    def empty_ccd(self, n_leaves: int, store_base_trees: bool = True, config=None):
        """Return an empty CCD of this type over *n_leaves* taxa."""
        from ccdkit._ccd0 import CCD0
        from ccdkit._ccd1 import CCD1
        from ccdkit._ccd2 import CCD2

        ccd_class = {CCDType.CCD0: CCD0, CCDType.CCD1: CCD1, CCDType.CCD2: CCD2}[self]
        return ccd_class(
            n_leaves=n_leaves, store_base_trees=store_base_trees, config=config
        )
