"""
Dynamic time warping between two series.

These are the default pairwise distances used by the matrix engine. Any function with the signature
``distance(s1, s2, params) -> float`` can take their place, where ``params`` is ``DTWSettings.params``.
"""
from typing import Union, Mapping, Optional

import numpy as np

from dtwblock import jit
from dtwblock.core.settings import DTWSettings


# Functions ------------------------------------------------------------------------------------------------------------
def distance(s1, s2, settings: Union[DTWSettings, Mapping, None] = None, **kwargs) -> float:
    """
    DTW distance between two series.

    Args:
        s1: First series, 1-D or ``(length, ndim)``.
        s2: Second series with the same number of components.
        settings: ``DTWSettings`` or a mapping of its fields.
        **kwargs: Individual settings overriding *settings*.

    Returns:
        The distance (``inf`` if the series cannot be aligned under the settings).

    Examples:
        >>> distance([0., 1., 2.], [0., 1., 1., 2.])
        0.0
        >>> distance([0., 0.], [1., 1.])
        1.4142135623730951
    """
    settings = DTWSettings.from_value(settings, **kwargs)
    s1 = np.ascontiguousarray(s1, dtype=np.float64)
    s2 = np.ascontiguousarray(s2, dtype=np.float64)
    if s1.ndim != s2.ndim: raise ValueError(f'Cannot compare {s1.ndim}-D and {s2.ndim}-D series')
    if s1.ndim == 1: return float(dtw_distance(s1, s2, settings.params))
    if s1.ndim != 2 or s1.shape[1] != s2.shape[1]:
        raise ValueError(f'Incompatible series shapes {s1.shape} and {s2.shape}')
    return float(dtw_distance_ndim(s1, s2, settings.params))


# Kernels --------------------------------------------------------------------------------------------------------------
@jit(nopython=True, cache=True, nogil=True)
def dtw_distance(s1, s2, params):
    """DTW distance between two 1-D series."""
    a = s1.reshape((s1.shape[0], 1))
    b = s2.reshape((s2.shape[0], 1))
    return dtw_distance_ndim(a, b, params)


@jit(nopython=True, cache=True, nogil=True)
def dtw_distance_ndim(s1, s2, params):
    """
    DTW distance between two ``(length, ndim)`` series.

    Uses the squared Euclidean distance between samples as local cost and returns the square root of the
    cheapest accumulated cost. Only two rows of the cost matrix are kept.
    """
    window, max_dist, max_step, max_length_diff, penalty, psi = params
    l1 = s1.shape[0]
    l2 = s2.shape[0]
    if l1 == 0 or l2 == 0: return 0.0 if l1 == l2 else np.inf
    if max_length_diff > 0 and abs(l1 - l2) > max_length_diff: return np.inf
    if window <= 0: window = max(l1, l2)
    ndim = s1.shape[1]

    prev = np.full(l2 + 1, np.inf)
    cur = np.full(l2 + 1, np.inf)
    for j in range(min(psi, l2) + 1): prev[j] = 0.0
    last_col = np.inf  # Best cost reaching the last column within the trailing psi rows

    for i in range(l1):
        cur[:] = np.inf
        if i < psi: cur[0] = 0.0
        # Band, widened on the side of the longer series
        lo = max(0, i - max(0, l1 - l2) - window + 1)
        hi = min(l2, i + max(0, l2 - l1) + window)
        row_min = np.inf
        for j in range(lo, hi):
            d = 0.0
            for k in range(ndim):
                diff = s1[i, k] - s2[j, k]
                d += diff * diff
            if d > max_step: continue
            best = prev[j]
            if cur[j] + penalty < best: best = cur[j] + penalty
            if prev[j + 1] + penalty < best: best = prev[j + 1] + penalty
            cur[j + 1] = d + best
            if cur[j + 1] < row_min: row_min = cur[j + 1]
        if row_min > max_dist: return np.inf
        if i >= l1 - 1 - psi and cur[l2] < last_col: last_col = cur[l2]
        prev, cur = cur, prev

    result = last_col
    for j in range(max(1, l2 - psi), l2 + 1):
        if prev[j] < result: result = prev[j]
    return np.sqrt(result)
