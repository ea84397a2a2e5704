"""
_errors.py
==========
Exception types raised by ccdkit.

Two families:

* Invalid use (caller can correct it): ``InvalidFilterError`` and
  ``UnsupportedOperationError``.  They subclass ``ValueError`` and
  ``TypeError`` respectively so callers catching the builtin types keep
  working.
* ``GraphInvariantError``: a violated CCD graph invariant.  It indicates a
  bug and is never caught inside the package.
"""


class CCDError(Exception):
    """Base class for all ccdkit errors."""


class InvalidFilterError(CCDError, ValueError):
    """A taxa-removal mask that cannot be applied to the given CCD."""


class UnsupportedOperationError(CCDError, TypeError):
    """An operation the CCD type does not support (e.g. adding to a FilteredCCD)."""


class GraphInvariantError(CCDError, RuntimeError):
    """An internal consistency check on the CCD graph failed."""
