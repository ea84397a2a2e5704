"""
conftest.py
===========
Session-level pytest configuration for the test suite.

Custom marks
------------
large_scale
    Applied to tests that build CCDs large enough to take the parallel
    CCD0 expand path.  Excluded from quick runs with ``-m "not large_scale"``.

    Registration here suppresses PytestUnknownMarkWarning and makes the mark
    visible in ``pytest --markers``.

Warning filters
---------------
NumbaPerformanceWarning messages are filtered out during tests. Warnings
about kernel efficiency on tiny test inputs are not informative for
correctness testing.
"""

import warnings

from numba.core.errors import NumbaPerformanceWarning


def pytest_configure(config):
    """
    Configure pytest before test collection begins.

    This runs very early in the pytest lifecycle, before any test modules
    are imported, which is important for catching warnings from numba
    kernel compilation.
    """
    config.addinivalue_line(
        "markers",
        "large_scale: CCDs large enough to expand in parallel "
        "(slow - deselect with -m 'not large_scale')",
    )

    # Suppress NumbaPerformanceWarning during tests
    warnings.filterwarnings('ignore', category=NumbaPerformanceWarning)


def pytest_unconfigure(config):
    """
    Clean up after all tests complete.

    Restore default warning behavior.
    """
    warnings.resetwarnings()
