import numpy as np

WINDOW = 500
GRANULARITY = 1


def _window_bounds(T):
    """Left and right edges of the window [s-WINDOW, s+WINDOW) clipped to [0, T)."""
    s = np.arange(T)
    left = np.maximum(s - WINDOW, 0)
    right = np.minimum(s + WINDOW, T)
    return left, right


def cumulative_sum(f):
    """
    Return F with F[0]=0 and F[i] = sum_{j<i} f[j], so that the sum of f over
    [a, b) is F[b] - F[a].
    """
    F = np.zeros(len(f) + 1)
    np.cumsum(f, out=F[1:])
    return F


def smooth_sum(f):
    """
    Symmetric sliding-window density of a per-millisecond signal f:
      g(s) = 0.001 * sum_{t in [s-500, s+500)} f(t) * granularity
    The window is truncated at the timeline edges but the normalisation is not,
    so impulses near the boundary count for less.
    """
    T = len(f)
    F = cumulative_sum(f)
    left, right = _window_bounds(T)
    return 0.001 * (F[right] - F[left]) * GRANULARITY


def smooth_avg(f):
    """
    Same window as smooth_sum, but divided by the length of the window actually
    used:
      g(s) = (sum_{t in [s-500, s+500) ∩ [0, T)} f(t)) / window_len * granularity
    so a bounded factor stays bounded all the way to both edges.
    """
    T = len(f)
    F = cumulative_sum(f)
    left, right = _window_bounds(T)
    return (F[right] - F[left]) / (right - left) * GRANULARITY


def sliding_count(times, T):
    """For every t in [0, T), count the entries of sorted ``times`` in [t-500, t+500)."""
    times = np.asarray(times)
    s = np.arange(T)
    low = np.searchsorted(times, s - WINDOW, side='left')
    high = np.searchsorted(times, s + WINDOW, side='left')
    return (high - low).astype(float)
