"""
_kernels.py
===========
Numba-compiled kernels for the CCD0 expand step.

This module contains ONLY numba-accelerated code and should not import other
project modules to avoid import-time complications.

Exported Functions
------------------
_subset_rows_njit : njit function
    Marks the rows of a word matrix that are subsets of a given mask.

Notes
-----
- Functions are compiled with ``nogil=True`` so the thread pool of the
  parallel expand step runs them concurrently
- cache=True persists compiled binary to disk for faster subsequent runs
"""

import numpy as np
from numba import njit


# ======================================================================== #
# Subset test                                                               #
# ======================================================================== #


@njit(cache=True, nogil=True)
def _subset_rows_njit(candidates, rows, parent, out):
    """
    For each candidate row index, test ``candidate | parent == parent``.

    Parameters
    ----------
    candidates : uint64[:, :]
        Word matrix of one clade bucket; one clade per row.
    rows : int64[:]
        Row indices of *candidates* to test.
    parent : uint64[:]
        Words of the parent clade.
    out : bool[:]
        Output, ``out[k]`` is True when ``candidates[rows[k]]`` is a subset
        of *parent*.  Same length as *rows*.
    """
    n_words = parent.shape[0]
    for k in range(rows.shape[0]):
        row = rows[k]
        is_subset = True
        for w in range(n_words):
            if (candidates[row, w] | parent[w]) != parent[w]:
                is_subset = False
                break
        out[k] = is_subset


def subset_rows(candidates: np.ndarray, rows: np.ndarray, parent: np.ndarray) -> np.ndarray:
    """Boolean array marking which of *rows* are subsets of *parent*."""
    out = np.zeros(rows.shape[0], dtype=np.bool_)
    if rows.shape[0] > 0:
        _subset_rows_njit(candidates, rows.astype(np.int64), parent, out)
    return out
