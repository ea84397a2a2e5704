"""
_config.py
==========
Numerical tolerances and parallelisation settings for CCD computations.

A ``CCDConfig`` is passed to a CCD at construction and shared with every CCD
derived from it (copies, filtered CCDs).  The defaults match the values the
algorithms were tuned with; most callers never need to change them.
"""

from dataclasses import dataclass, replace
from typing import Optional


@dataclass(frozen=True)
class CCDConfig:
    """
    Parameters
    ----------
    rounding_epsilon : float, default 1e-10
        Clade probabilities in ``(1, 1 + rounding_epsilon]`` are rounded
        down to 1; CCP sums within this tolerance of 1 count as normalised.
    probability_error_bound : float, default 1e-5
        A clade probability above ``1 + probability_error_bound`` is an
        internal consistency failure.
    parallel_threshold : int, default 20000
        Minimum number of clades before the CCD0 expand step runs on a
        thread pool.
    n_workers : int or None, default None
        Worker threads for the parallel expand; ``None`` uses every
        available CPU (see ``ccdkit.use_workers`` for a temporary override).
    """

    rounding_epsilon: float = 1e-10
    probability_error_bound: float = 1e-5
    parallel_threshold: int = 20000
    n_workers: Optional[int] = None

    def __post_init__(self):
        if self.rounding_epsilon < 0 or self.probability_error_bound < 0:
            raise ValueError("Tolerances must be non-negative")
        if self.rounding_epsilon > self.probability_error_bound:
            raise ValueError(
                "rounding_epsilon must not exceed probability_error_bound"
            )
        if self.parallel_threshold < 1:
            raise ValueError(
                f"parallel_threshold must be >= 1, got {self.parallel_threshold}"
            )
        if self.n_workers is not None and self.n_workers < 1:
            raise ValueError(f"n_workers must be >= 1, got {self.n_workers}")

    def with_options(self, **changes) -> "CCDConfig":
        """Return a copy with the given fields replaced."""
        return replace(self, **changes)


DEFAULT_CONFIG = CCDConfig()
