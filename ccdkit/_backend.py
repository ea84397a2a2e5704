"""
_backend.py
===========
Execution resources for the parallel CCD0 expand step.

The expand step runs a numba-compiled, GIL-releasing subset kernel on a pool
of Python threads.  This module answers how many threads to use and reports
what the host offers.

Functions in this module have NO side effects - they only query system state.
Logging is done by the calling code, not here.
"""

import os
from typing import Optional

import numba


# ============================================================================ #
# Worker Detection (No Side Effects)
# ============================================================================ #


def get_available_workers() -> int:
    """
    Number of CPUs this process may run on.

    Uses the scheduler affinity mask where the platform exposes one, so
    container CPU limits are respected.
    """
    if hasattr(os, "sched_getaffinity"):
        return max(1, len(os.sched_getaffinity(0)))
    return os.cpu_count() or 1


def resolve_workers(n_workers: Optional[int] = None) -> int:
    """
    Resolve a worker count request.

    Priority: an active ``use_workers`` override, then *n_workers*, then
    every available CPU.

    Parameters
    ----------
    n_workers : int or None
        Requested count, usually ``CCDConfig.n_workers``.

    Returns
    -------
    int
        Worker count (>= 1).

    Raises
    ------
    ValueError
        If the resolved count is smaller than one.

    Examples
    --------
    >>> resolve_workers(3)
    3
    >>> resolve_workers() == get_available_workers()
    True
    """
    from ccdkit._context import get_workers_override

    override = get_workers_override()
    if override is not None:
        n_workers = override
    if n_workers is None:
        return get_available_workers()
    if n_workers < 1:
        raise ValueError(f"n_workers must be >= 1, got {n_workers}")
    return int(n_workers)


# ============================================================================ #
# Module-Level State Query (Read-Only)
# ============================================================================ #


def get_backend_info() -> dict:
    """
    Get execution resource information.

    Returns
    -------
    dict
        Dictionary with keys:
        - 'numba_version': str
        - 'cpu_count': int        CPUs on the host
        - 'available_workers': int  CPUs usable by this process
        - 'resolved_workers': int   workers an expand would use right now

    Examples
    --------
    >>> info = get_backend_info()
    >>> info['available_workers'] >= 1
    True
    """
    return {
        "numba_version": numba.__version__,
        "cpu_count": os.cpu_count() or 1,
        "available_workers": get_available_workers(),
        "resolved_workers": resolve_workers(),
    }
