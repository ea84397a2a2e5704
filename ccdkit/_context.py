"""
_context.py
===========
Context managers for ccdkit.

Provides context managers for temporarily changing state:
- Logging control (suppress/change levels)
- Warning control (suppress specific warnings)
- Worker count for the parallel CCD0 expand step

All context managers restore state on exit, even if exceptions occur.
"""

import logging
import warnings
from contextlib import contextmanager
from typing import Optional, Type


# Module-level state for the expand worker override
_workers_override = None


# ============================================================================ #
# Logging Context Managers
# ============================================================================ #


@contextmanager
def suppress_logger(logger_name: str, level: int = logging.CRITICAL):
    """
    Temporarily change a logger's level.

    Parameters
    ----------
    logger_name : str
        Name of the logger to suppress (e.g., 'ccdkit._ccd0').
    level : int, default logging.CRITICAL
        Temporary logging level.

    Yields
    ------
    None

    Examples
    --------
    >>> # Hide expand progress while building a large CCD0
    >>> with suppress_logger('ccdkit._ccd0'):
    ...     ccd = CCD0(trees)

    >>> # Keep warnings from rogue detection, drop the per-step log
    >>> with suppress_logger('ccdkit._rogue', logging.WARNING):
    ...     chain = detect_rogues_while_improving(ccd, 2)

    Notes
    -----
    - Exception-safe: Logger level restored even if exception raised
    - Nesting-safe: Can nest multiple suppress_logger contexts
    """
    logger = logging.getLogger(logger_name)
    original_level = logger.level

    try:
        logger.setLevel(level)
        yield
    finally:
        logger.setLevel(original_level)


@contextmanager
def quiet(level: int = logging.CRITICAL):
    """
    Temporarily suppress all ccdkit logging.

    Every module logger is a child of the ``ccdkit`` logger, so raising
    that logger's level silences the whole package.

    Parameters
    ----------
    level : int, default logging.CRITICAL
        Temporary logging level.

    Examples
    --------
    >>> with quiet():
    ...     ccd = CCD1(trees, burnin=0.1)

    >>> # Show only warnings (e.g. removal of unknown trees)
    >>> with quiet(logging.WARNING):
    ...     ccd.remove_tree(tree)
    """
    with suppress_logger("ccdkit", level):
        yield


# ============================================================================ #
# Warning Context Managers
# ============================================================================ #


@contextmanager
def suppress_warnings(category: Optional[Type[Warning]] = None):
    """
    Temporarily suppress Python warnings.

    Parameters
    ----------
    category : Type[Warning] or None, default None
        Warning category to suppress. If None, suppresses all warnings.

    Examples
    --------
    >>> from numba.core.errors import NumbaPerformanceWarning
    >>> with suppress_warnings(NumbaPerformanceWarning):
    ...     ccd = CCD0(trees)
    """
    with warnings.catch_warnings():
        if category is None:
            warnings.simplefilter("ignore")
        else:
            warnings.filterwarnings("ignore", category=category)
        yield


# ============================================================================ #
# Worker Context Managers
# ============================================================================ #


@contextmanager
def use_workers(n_workers: int):
    """
    Temporarily fix the number of threads used by the CCD0 expand step.

    Takes precedence over ``CCDConfig.n_workers``.  Only has an effect on
    CCDs large enough to expand in parallel (see
    ``CCDConfig.parallel_threshold``).

    Parameters
    ----------
    n_workers : int
        Number of worker threads (>= 1).  ``1`` forces a serial expand.

    Raises
    ------
    ValueError
        If *n_workers* is smaller than one.

    Examples
    --------
    >>> with use_workers(1):
    ...     ccd = CCD0(trees)   # serial expand, e.g. for profiling

    Notes
    -----
    - **Not thread-safe**: Uses module-level state
    """
    global _workers_override

    if n_workers < 1:
        raise ValueError(f"n_workers must be >= 1, got {n_workers}")

    original_override = _workers_override

    try:
        _workers_override = n_workers
        yield
    finally:
        _workers_override = original_override


def get_workers_override() -> Optional[int]:
    """
    Get the current worker override, if any.

    Examples
    --------
    >>> get_workers_override() is None
    True
    >>> with use_workers(2):
    ...     print(get_workers_override())
    2
    """
    return _workers_override
