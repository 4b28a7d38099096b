from collections import namedtuple
from concurrent.futures import ThreadPoolExecutor
import bisect
import heapq
import logging
import math
import time

import numpy as np
import pandas as pd

from note_sequence import Note, apply_mod, build, load_note_file
from rating_errors import DegenerateInputError, InvalidOverallDifficultyError
from smoothing import cumulative_sum, smooth_avg, smooth_sum, sliding_count

log = logging.getLogger(__name__)

Params = namedtuple('Params', [
    'lambda_n', 'lambda_1', 'lambda_2', 'lambda_3', 'lambda_4',
    'w_0', 'w_1', 'p_1', 'w_2', 'p_0',
])

DEFAULT_PARAMS = Params(
    lambda_n=5, lambda_1=0.11, lambda_2=7.0, lambda_3=24, lambda_4=0.1,
    w_0=0.4, w_1=2.7, p_1=1.5, w_2=0.27, p_0=1.0,
)

DEFAULT_WORKERS = 4

# Row K holds one coefficient per cross slot 0..K. Row 0 is a sentinel.
CROSS_MATRIX = (
    (-1,),
    (0.075, 0.075),
    (0.125, 0.05, 0.125),
    (0.125, 0.125, 0.125, 0.125),
    (0.175, 0.25, 0.05, 0.25, 0.175),
    (0.175, 0.25, 0.175, 0.175, 0.25, 0.175),
    (0.225, 0.35, 0.25, 0.05, 0.25, 0.35, 0.225),
    (0.225, 0.35, 0.25, 0.225, 0.225, 0.25, 0.35, 0.225),
    (0.275, 0.45, 0.35, 0.25, 0.05, 0.25, 0.35, 0.45, 0.275),
    (0.275, 0.45, 0.35, 0.25, 0.275, 0.275, 0.25, 0.35, 0.45, 0.275),
    (0.625, 0.55, 0.45, 0.35, 0.25, 0.05, 0.25, 0.35, 0.45, 0.55, 0.625),
)

Bars = namedtuple('Bars', ['Jbar', 'Xbar', 'Pbar', 'Abar', 'Rbar', 'Ks'])

# -----Start of Helper methods--------

def hit_leniency(od, params=DEFAULT_PARAMS):
    """
    Judgement-scaled hit window x (seconds) for overall difficulty od:
      x = 0.3 * sqrt((64.5 - ceil(3 * od)) / 500)
    The press bar needs 4/x > lambda_3, which bounds od from below.
    """
    if not math.isfinite(od) or math.ceil(od * 3) >= 64.5:
        raise InvalidOverallDifficultyError(f"overall difficulty out of range: {od}")
    x = 0.3 * ((64.5 - math.ceil(od * 3)) / 500)**0.5
    if x >= 4 / params.lambda_3:
        raise InvalidOverallDifficultyError(f"overall difficulty out of range: {od}")
    return x

def cross_coefficients(K):
    # a single lane has no neighbouring pair to cross into
    if K == 1:
        return (0.0, 0.0)
    return CROSS_MATRIX[K]

def jack_nerfer(delta):
    return 1 - 7e-5 * (0.15 + abs(delta - 0.08))**(-4)

def stream_booster(delta):
    bpm = 7.5 / delta
    if 160 < bpm < 360:
        return 1 + 1.4e-7 * (bpm - 160) * (bpm - 360)**2
    return 1

def find_next_note_in_column(note, times, column_notes):
    k, h, t = note
    idx = bisect.bisect_left(times, h)
    return column_notes[idx+1] if idx+1 < len(column_notes) else Note(0, 10**9, 10**9)

def forward_fill(arr):
    """
    Replace every zero or NaN sample with the most recent valid one. Samples
    before the first valid one become 0.
    """
    return pd.Series(arr, dtype=float).replace(0, np.nan).ffill().fillna(0).to_numpy()

def length_penalty(note_count, hold_count):
    total_notes = note_count + 0.5 * hold_count
    return total_notes / (total_notes + 60)

def check_finite(name, arr):
    if not np.all(np.isfinite(arr)):
        raise DegenerateInputError(f"{name} is not finite")

# -----End of Helper methods--------

def compute_Jbar(note_seq, x, params=DEFAULT_PARAMS):
    K, T = note_seq.K, note_seq.T
    J_ks = np.zeros((K, T))
    delta_ks = np.full((K, T), 1e9)
    for k in range(K):
        notes = note_seq.note_seq_by_column[k]
        for i in range(len(notes) - 1):
            start = notes[i].head
            end = notes[i+1].head
            if end <= start:
                continue
            delta = 0.001 * (end - start)
            val = (delta * (delta + params.lambda_1 * x**(1/4)))**(-1)
            J_ks[k, start:end] = val * jack_nerfer(delta)
            delta_ks[k, start:end] = delta

    # Now smooth each column's J_ks
    Jbar_ks = np.array([smooth_sum(J_ks[k]) for k in range(K)])

    # Aggregate across columns using weighted power mean
    weights = 1 / delta_ks
    num = np.sum(np.maximum(Jbar_ks, 0)**params.lambda_n * weights, axis=0)
    den = np.maximum(np.sum(weights, axis=0), 1e-9)
    Jbar = (num / den)**(1 / params.lambda_n)
    return delta_ks, Jbar

def compute_Xbar(note_seq, x):
    K, T = note_seq.K, note_seq.T
    cross_coeff = cross_coefficients(K)
    X = np.zeros(T)
    for k in range(K+1):
        if cross_coeff[k] == 0:
            continue
        if k == 0:
            notes_in_pair = note_seq.note_seq_by_column[0]
        elif k == K:
            notes_in_pair = note_seq.note_seq_by_column[K-1]
        else:
            notes_in_pair = list(heapq.merge(note_seq.note_seq_by_column[k-1],
                                             note_seq.note_seq_by_column[k],
                                             key=lambda n: n.head))
        X_k = np.zeros(T)
        for i in range(1, len(notes_in_pair)):
            start = notes_in_pair[i-1].head
            end = notes_in_pair[i].head
            if end <= start:
                continue
            delta = 0.001 * (end - start)
            X_k[start:end] = 0.16 * max(x, delta)**(-2)
        X += X_k * cross_coeff[k]

    return smooth_sum(X)

def LN_bodies_count(note_seq):
    """
    Per-millisecond hold body load: 0.5 for the first 80 ms of each hold,
    1 from there until its tail, summed over all holds.
    """
    diff = np.zeros(note_seq.T + 1)
    for (k, h, t) in note_seq.LN_seq:
        t1 = min(h + 80, t)
        diff[h] += 0.5
        diff[t1] += -0.5 + 1
        diff[t] -= 1
    return np.cumsum(diff[:-1])

def compute_Pbar(note_seq, x, params=DEFAULT_PARAMS):
    T = note_seq.T
    LN_bodies = LN_bodies_count(note_seq)
    LN_cumsum = cumulative_sum(LN_bodies)

    P = np.zeros(T)
    notes = note_seq.note_seq
    for i in range(len(notes) - 1):
        h_l = notes[i].head
        h_r = notes[i+1].head
        delta = 0.001 * (h_r - h_l)
        if delta < 1e-9:
            # Dirac delta case: when notes occur at the same time.
            P[h_l] += 1000 * (0.02 * (4 / x - params.lambda_3))**(1/4)
            continue
        v = 1 + params.lambda_2 * 0.001 * (LN_cumsum[h_r] - LN_cumsum[h_l])
        if delta < 2 * x / 3:
            inc = (0.08 * x**(-1) * (1 - params.lambda_3 * x**(-1) * (delta - x/2)**2))**(1/4) * stream_booster(delta) * v / delta
        else:
            inc = (0.08 * x**(-1) * (1 - params.lambda_3 * x**(-1) * (x/6)**2))**(1/4) * stream_booster(delta) * v / delta
        P[h_l:h_r] += inc

    return smooth_sum(P)

def get_key_usage(note_seq):
    """Lane k is in use from 500 ms before a head until 500 ms after the head (tap) or tail (hold)."""
    K, T = note_seq.K, note_seq.T
    key_usage = np.zeros((K, T), dtype=bool)
    for (k, h, t) in note_seq.note_seq:
        startTime = max(0, h - 500)
        endTime = min(h + 500, T - 1) if t < 0 else min(t + 500, T - 1)
        key_usage[k, startTime:endTime] = True
    return key_usage

def compute_Abar(note_seq, delta_ks):
    K, T = note_seq.K, note_seq.T
    key_usage = get_key_usage(note_seq)
    Ks = np.maximum(key_usage.sum(axis=0), 1)

    A = np.ones(T)
    # Walk the columns left to right; each active column pairs with the
    # closest active column to its left.
    prev_delta = np.zeros(T)
    seen = np.zeros(T, dtype=bool)
    for k in range(K):
        active = key_usage[k]
        pair = active & seen
        max_delta = np.maximum(prev_delta, delta_ks[k])
        dks = np.abs(prev_delta - delta_ks[k]) + np.maximum(0, max_delta - 0.3)

        idx = pair & (dks < 0.02)
        A[idx] *= np.minimum(0.75 + 0.5 * max_delta[idx], 1)
        idx = pair & (dks >= 0.02) & (dks < 0.07)
        A[idx] *= np.minimum(0.65 + 5 * dks[idx] + 0.5 * max_delta[idx], 1)
        # Otherwise leave A unchanged.

        prev_delta = np.where(active, delta_ks[k], prev_delta)
        seen |= active

    return smooth_avg(A), Ks

def compute_Rbar(note_seq, x, params=DEFAULT_PARAMS):
    T = note_seq.T
    tail_seq = note_seq.tail_seq
    times_by_column = [[n.head for n in column] for column in note_seq.note_seq_by_column]

    # Release Index
    I_list = []
    for (k, h_i, t_i) in tail_seq:
        _, h_j, _ = find_next_note_in_column((k, h_i, t_i), times_by_column[k], note_seq.note_seq_by_column[k])
        I_h = 0.001 * abs(t_i - h_i - 80) / x
        I_t = 0.001 * abs(h_j - t_i - 80) / x
        I_list.append(2 / (2 + math.exp(-5*(I_h-0.75)) + math.exp(-5*(I_t-0.75))))

    # For each interval between successive tail times, assign R.
    R = np.zeros(T)
    for i in range(len(tail_seq) - 1):
        t_start = tail_seq[i].tail
        t_end = tail_seq[i+1].tail
        if t_end <= t_start:
            continue
        delta_r = 0.001 * (t_end - t_start)
        R[t_start:t_end] = 0.08 * delta_r**(-0.5) * x**(-1) * (1 + params.lambda_4 * (I_list[i] + I_list[i+1]))

    return smooth_sum(R)

def _run_section(name, func, *args):
    started = time.perf_counter()
    with np.errstate(all='ignore'):
        result = func(*args)
    log.debug("%s took %.1fms", name, (time.perf_counter() - started) * 1000)
    return result

def compute_bars(note_seq, x, params=DEFAULT_PARAMS, max_workers=None):
    """Compute the five difficulty bars and the local key count.

    Jack, cross and press bars run first and in parallel. The anchor bar needs
    the per-column deltas of the jack bar, so it starts once that wave has
    joined, together with the release bar.

    Parameters
    ----------
    note_seq : NoteSequence
        The validated notes.
    x : float
        Hit leniency, see :func:`hit_leniency`.
    params : Params, optional
        Tuning constants.
    max_workers : int, optional
        Thread pool size. Results do not depend on it.

    Returns
    -------
    bars : Bars
        Per-millisecond arrays of length ``note_seq.T``.
    """
    if max_workers is None:
        max_workers = DEFAULT_WORKERS

    with ThreadPoolExecutor(max_workers=max_workers) as pool:
        started = time.perf_counter()
        jack = pool.submit(_run_section, 'Jbar', compute_Jbar, note_seq, x, params)
        cross = pool.submit(_run_section, 'Xbar', compute_Xbar, note_seq, x)
        press = pool.submit(_run_section, 'Pbar', compute_Pbar, note_seq, x, params)
        delta_ks, Jbar = jack.result()
        Xbar = cross.result()
        Pbar = press.result()
        log.debug("Jbar/Xbar/Pbar wave took %.1fms", (time.perf_counter() - started) * 1000)

        started = time.perf_counter()
        anchor = pool.submit(_run_section, 'Abar', compute_Abar, note_seq, delta_ks)
        release = pool.submit(_run_section, 'Rbar', compute_Rbar, note_seq, x, params)
        Abar, Ks = anchor.result()
        Rbar = release.result()
        log.debug("Abar/Rbar wave took %.1fms", (time.perf_counter() - started) * 1000)

    bars = Bars(Jbar, Xbar, Pbar, Abar, Rbar, Ks)
    for name, bar in zip(Bars._fields, bars):
        check_finite(name, bar)
    return bars

def compute_difficulty(bars, params=DEFAULT_PARAMS):
    """Return the intermediate stress S and the true difficulty D."""
    # Ensure all values are non-negative
    Jbar, Xbar, Pbar, Abar, Rbar = (np.maximum(b, 0) for b in bars[:5])
    Ks = bars.Ks

    with np.errstate(all='ignore'):
        S = ((params.w_0 * (Abar**(3 / Ks) * Jbar)**1.5) +
             ((1 - params.w_0) * (Abar**(2/3) * (0.8*Pbar + Rbar))**1.5))**(2/3)
        T_t = (Abar**(3 / Ks) * Xbar) / (Xbar + S + 1)
        D = params.w_1 * (S**0.5) * (T_t**params.p_1) + S * params.w_2
    return S, D

def density(note_seq):
    """C(t): number of note heads within 500 ms of t."""
    return sliding_count([n.head for n in note_seq.note_seq], note_seq.T)

def rescale(SR, note_count, hold_count, K, params=DEFAULT_PARAMS):
    """Apply the length penalty, the low-end compression and the key count scaling."""
    SR = SR**params.p_0 / (8**params.p_0) * 8
    SR *= length_penalty(note_count, hold_count)
    if SR <= 2:
        SR = math.sqrt(SR * 2)
    SR *= 0.96 + 0.01 * K
    return SR

def weighted_difficulty(note_seq, bars, params=DEFAULT_PARAMS):
    """Density-weighted power mean of D, before any rescaling."""
    C = density(note_seq)
    S, D = compute_difficulty(bars, params)
    check_finite('D', D)

    D = forward_fill(D)
    C = forward_fill(C)

    with np.errstate(all='ignore'):
        SR = (np.sum(D**params.lambda_n * C) / np.sum(C))**(1 / params.lambda_n)
    return float(SR)

def aggregate(note_seq, bars, params=DEFAULT_PARAMS):
    SR = weighted_difficulty(note_seq, bars, params)
    SR = rescale(SR, len(note_seq.note_seq), len(note_seq.LN_seq), note_seq.K, params)
    if not math.isfinite(SR):
        raise DegenerateInputError(f"rating is not finite: {SR}")
    return SR

def preprocess(notes, key_count, overall_difficulty, mod="NM", params=DEFAULT_PARAMS):
    note_seq = build(apply_mod(notes, mod), key_count)
    x = hit_leniency(overall_difficulty, params)
    log.debug("Rating %d notes (%d holds), K=%d, T=%d, x=%.4f",
              len(note_seq.note_seq), len(note_seq.LN_seq), note_seq.K, note_seq.T, x)
    return x, note_seq

def compute_rating(notes, key_count, overall_difficulty, mod="NM",
                   params=DEFAULT_PARAMS, max_workers=None):
    """Rate a keymode note sequence.

    Parameters
    ----------
    notes : iterable
        ``Note`` objects or ``(column, head, tail)`` triples; times in
        milliseconds, ``tail = -1`` for taps.
    key_count : int
        Number of columns, 1 to 10.
    overall_difficulty : float
        The map's OD.
    mod : {'NM', 'DT', 'HT'}, optional
        Rate mod applied to the note times first.
    params : Params, optional
        Tuning constants.
    max_workers : int, optional
        Thread pool size for the bar computations.

    Returns
    -------
    sr : float
        The star rating.

    Raises
    ------
    RatingError
        The input cannot be rated; see :mod:`rating_errors`.
    """
    x, note_seq = preprocess(notes, key_count, overall_difficulty, mod, params)
    bars = compute_bars(note_seq, x, params, max_workers)
    return aggregate(note_seq, bars, params)

def rating_frame(notes, key_count, overall_difficulty, mod="NM",
                 params=DEFAULT_PARAMS, max_workers=None):
    """Return the per-millisecond bars, density and difficulty as a DataFrame."""
    x, note_seq = preprocess(notes, key_count, overall_difficulty, mod, params)
    bars = compute_bars(note_seq, x, params, max_workers)
    S, D = compute_difficulty(bars, params)
    return pd.DataFrame({
        'time': np.arange(note_seq.T),
        'Jbar': bars.Jbar,
        'Xbar': bars.Xbar,
        'Pbar': bars.Pbar,
        'Abar': bars.Abar,
        'Rbar': bars.Rbar,
        'C': density(note_seq),
        'Ks': bars.Ks,
        'S': S,
        'D': D,
    })

def calculate(file_path, mod="NM", params=DEFAULT_PARAMS, max_workers=None):
    notes, key_count, od = load_note_file(file_path)
    return compute_rating(notes, key_count, od, mod, params, max_workers)
