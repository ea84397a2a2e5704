"""
_logging.py
===========
Logging functions for ccdkit.

All functions in this module have NO side effects except logging. They take
computed data as parameters and format/emit log messages.

This separation ensures:
- Logging can be easily disabled/mocked in tests
- Computation is separate from presentation
"""

import logging
from typing import Optional


logger = logging.getLogger(__name__)


# ============================================================================ #
# System Logging (called at module import time)
# ============================================================================ #


def log_system_status() -> None:
    """
    Log system capabilities relevant to the parallel expand step at INFO level.

    Called once at import time of the CCD0 module.  Reports CPU count,
    memory (when psutil is installed) and the numba/LLVM versions.
    """
    import os
    import platform

    import numba

    from ccdkit._backend import get_available_workers

    logger.info(
        f"System: {platform.machine()} ({platform.system()}), "
        f"{os.cpu_count() or 1} CPU cores ({get_available_workers()} usable), "
        f"Python {platform.python_version()}"
    )

    # Memory info (optional psutil)
    try:
        import psutil

        mem = psutil.virtual_memory()
        logger.info(
            f"Memory: {mem.total / (1024**3):.1f} GB total, "
            f"{mem.available / (1024**3):.1f} GB available"
        )
    except ImportError:
        pass  # psutil not required

    logger.info(f"Numba {numba.__version__} loaded for the expand subset kernel")

    try:
        import llvmlite

        logger.info(f"LLVM backend: llvmlite {llvmlite.__version__}")
    except (ImportError, AttributeError):
        pass  # LLVM version unavailable


# ============================================================================ #
# CCD Construction and Mutation
# ============================================================================ #


def log_ccd_construction(
    ccd_type: str,
    n_trees_given: int,
    n_burnin: int,
    n_leaves: int,
    n_clades: int,
    n_partitions: int,
) -> None:
    """
    Log a summary after a CCD has been built from a batch of trees.

    Parameters
    ----------
    ccd_type : str
        Class name of the CCD.
    n_trees_given : int
        Trees passed to the constructor.
    n_burnin : int
        Leading trees discarded as burn-in.
    n_leaves : int
        Number of taxa.
    n_clades, n_partitions : int
        Size of the resulting graph.
    """
    logger.info(
        "%s built from %d of %d tree(s) (%d discarded as burn-in) over %d taxa",
        ccd_type,
        n_trees_given - n_burnin,
        n_trees_given,
        n_burnin,
        n_leaves,
    )
    logger.info("  %d clades, %d clade partitions", n_clades, n_partitions)


def log_tree_not_in_ccd(reason: str) -> None:
    """
    Warn that a tree could not be removed.

    Parameters
    ----------
    reason : str
        Which part of the tree was missing from the CCD.
    """
    logger.warning("Removing a tree that was never added to this CCD: %s", reason)


def log_tidy_up(n_clades_removed: int, n_partitions_removed: int, complete: bool) -> None:
    """
    Log the outcome of a graph tidy-up pass.

    Parameters
    ----------
    n_clades_removed, n_partitions_removed : int
        Graph elements dropped by the pass.
    complete : bool
        Whether every leaf is still reachable from the root.
    """
    if n_clades_removed > 0 or n_partitions_removed > 0:
        logger.debug(
            "Tidying up CCD graph: removed %d clade(s) and %d clade partition(s)",
            n_clades_removed,
            n_partitions_removed,
        )
    if not complete:
        logger.warning(
            "CCD graph is no longer complete: the remaining clades do not "
            "support any full tree"
        )


# ============================================================================ #
# CCD0 Expand and Normalisation
# ============================================================================ #


def log_conflicting_ccd0_options(requested: str, active: str) -> None:
    """
    Warn that a CCD0 option was refused because another one is active.

    Parameters
    ----------
    requested : str
        Option the caller tried to enable.
    active : str
        Mutually exclusive option that is currently enabled.
    """
    logger.warning(
        "Cannot enable %s while %s is enabled; option left unchanged",
        requested,
        active,
    )


def log_expand(
    mode: str,
    n_clades: int,
    n_new_partitions: int,
    n_workers: int,
    elapsed: float,
) -> None:
    """
    Log a finished CCD0 expand step.

    Parameters
    ----------
    mode : str
        'serial', 'parallel' or 'online'.
    n_clades : int
        Clades considered as parents.
    n_new_partitions : int
        Partitions added by the expand.
    n_workers : int
        Threads used.
    elapsed : float
        Wall time in seconds.
    """
    logger.info(
        "CCD0 expand (%s, %d worker(s)): %d clades, %d new partition(s) in %.3fs",
        mode,
        n_workers,
        n_clades,
        n_new_partitions,
        elapsed,
    )


def log_underflow_fallback(clade_bits: Optional[str]) -> None:
    """
    Warn that CCD0 normalisation underflowed and is redone in log space.

    Parameters
    ----------
    clade_bits : str or None
        The clade where the underflow was detected.
    """
    logger.warning(
        "CCD0 normalisation underflowed at clade %s; recomputing in log space",
        clade_bits,
    )


def log_zero_partition_sum(clade_bits: str, n_partitions: int) -> None:
    """
    Warn that no partition of a clade has support, so its CCPs are all zero.

    Trees through such a clade get probability zero.
    """
    logger.warning(
        "CCD0 clade %s has no partition with two supported children; "
        "setting its %d CCPs to zero",
        clade_bits,
        n_partitions,
    )


# ============================================================================ #
# Filtering and Rogue Detection
# ============================================================================ #


def log_filtering(
    ccd_type: str,
    removed_taxa: str,
    n_base_clades: int,
    n_filtered_clades: int,
    n_shared_clades: int = 0,
) -> None:
    """
    Log the size of a filtered CCD relative to its base.

    Parameters
    ----------
    ccd_type : str
        'FilteredCCD' or 'AttachingFilteredCCD'.
    removed_taxa : str
        Rendered removal mask.
    n_base_clades, n_filtered_clades : int
        Clade counts before and after filtering.
    n_shared_clades : int
        Clades reused by reference (attaching variant only).
    """
    logger.debug(
        "%s removing %s: %d -> %d clades (%d shared with base)",
        ccd_type,
        removed_taxa,
        n_base_clades,
        n_filtered_clades,
        n_shared_clades,
    )


def log_rogue_step(n_removed: int, score_name: str, score: str, removed: str) -> None:
    """
    Log the best CCD found for a given number of removed taxa.

    Parameters
    ----------
    n_removed : int
        Taxa removed so far.
    score_name : str
        Name of the rogue score (strategy).
    score : str
        Rendered score of the best CCD (topology counts can exceed float range).
    removed : str
        Rendered mask removed in this step.
    """
    logger.info(
        "Rogue detection: %d taxa removed, %s = %s (last removed %s)",
        n_removed,
        score_name,
        score,
        removed,
    )


def log_rogue_termination(reason: str, n_steps: int) -> None:
    """
    Log why rogue detection stopped.

    Parameters
    ----------
    reason : str
        Human-readable stop reason.
    n_steps : int
        Length of the returned chain minus one.
    """
    logger.info("Rogue detection stopped after %d step(s): %s", n_steps, reason)
