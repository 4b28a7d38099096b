import json
import math

import numpy as np
import pytest

import algorithm
from algorithm import (
    CROSS_MATRIX,
    compute_Abar,
    compute_bars,
    compute_Jbar,
    compute_Rbar,
    compute_rating,
    compute_Xbar,
    forward_fill,
    hit_leniency,
    length_penalty,
    rating_frame,
    rescale,
    weighted_difficulty,
)
from note_sequence import NoteSequence, build, dump_note_file
from rating_errors import (
    DegenerateInputError,
    EmptyInputError,
    InvalidColumnError,
    InvalidOverallDifficultyError,
    UnsupportedKeyCountError,
)

GOLDEN_SR = 0.196140792414132


def test_hit_leniency():
    assert hit_leniency(8) == pytest.approx(0.085381496825, rel=1e-9)


@pytest.mark.parametrize('od', [30, 21.5, -40, float('nan'), float('inf')])
def test_hit_leniency_out_of_range(od):
    with pytest.raises(InvalidOverallDifficultyError):
        hit_leniency(od)


def test_cross_matrix_shape():
    assert CROSS_MATRIX[0] == (-1,)
    for K in range(1, 11):
        assert len(CROSS_MATRIX[K]) == K + 1


def test_golden(golden_notes):
    assert compute_rating(golden_notes, 2, 8) == pytest.approx(GOLDEN_SR, rel=1e-9)


def test_golden_bars(golden_notes):
    seq = build(golden_notes, 2)
    bars = compute_bars(seq, hit_leniency(8))
    assert bars.Jbar[750] == pytest.approx(0.707869200121, rel=1e-9)
    assert bars.Xbar[750] == pytest.approx(0.062, rel=1e-9)
    assert bars.Pbar[750] == pytest.approx(1.939092694629, rel=1e-9)
    # alternating single notes never line up into an anchor
    np.testing.assert_allclose(bars.Abar, 1.0)
    assert np.all(bars.Rbar == 0)
    assert list(bars.Ks[[0, 1499, 1500]]) == [2, 2, 1]


def test_golden_after_primitive_round_trip(golden_notes):
    expected = compute_rating(golden_notes, 2, 8)
    records = json.loads(json.dumps(build(golden_notes, 2).to_records()))
    seq = NoteSequence.from_records(records, 2)
    assert compute_rating(seq, 2, 8) == expected


def test_deterministic(random_notes):
    first = compute_rating(random_notes, 4, 8)
    assert compute_rating(random_notes, 4, 8) == first
    assert compute_rating(random_notes, 4, 8, max_workers=1) == first
    assert compute_rating(list(reversed(random_notes)), 4, 8) == first


def test_holds_rate_positive(random_notes):
    sr = compute_rating(random_notes, 4, 8)
    assert math.isfinite(sr)
    assert sr > 0

    seq = build(random_notes, 4)
    Rbar = compute_Rbar(seq, hit_leniency(8))
    assert Rbar.max() > 0


def test_single_hold_is_zero_not_nan():
    assert compute_rating([(3, 5, 1000)], 4, 8.0) == 0.0


def test_chord_not_easier_than_single_note():
    single = compute_rating([(0, 0, 1000)], 4, 8.0)
    chord = compute_rating([(0, 0, 1000), (1, 0, 1500), (2, 0, 2000)], 4, 8.0)
    assert chord >= single


def test_density_does_not_lower_jack_or_cross():
    x = hit_leniency(8)
    base = [(0, i * 200, -1) for i in range(11)]
    dense = base + [(2, i * 200, -1) for i in range(11)]
    sparse_seq = build(base, 4)
    dense_seq = build(dense, 4)
    assert sparse_seq.T == dense_seq.T

    _, J_sparse = compute_Jbar(sparse_seq, x)
    _, J_dense = compute_Jbar(dense_seq, x)
    assert np.all(J_dense >= J_sparse * (1 - 1e-12))

    X_sparse = compute_Xbar(sparse_seq, x)
    X_dense = compute_Xbar(dense_seq, x)
    assert np.all(X_dense >= X_sparse - 1e-12)
    assert X_dense.sum() > X_sparse.sum()


def test_single_lane_has_no_cross_term():
    seq = build([(0, i * 300, -1) for i in range(10)], 1)
    Xbar = compute_Xbar(seq, hit_leniency(8))
    assert np.all(Xbar == 0)

    sr = compute_rating(seq, 1, 8)
    assert math.isfinite(sr)
    assert sr > 0


def test_anchor_on_matching_columns():
    # two columns hit in lockstep every 200 ms: deltas match, the anchor drops
    notes = [(k, i * 200, -1) for i in range(10) for k in (0, 1)]
    seq = build(notes, 2)
    delta_ks, _ = compute_Jbar(seq, hit_leniency(8))
    Abar, Ks = compute_Abar(seq, delta_ks)
    assert Abar.min() < 1
    assert Abar.max() <= 1
    assert Ks.max() == 2


def test_length_penalty():
    assert length_penalty(4, 0) == 1 / 16
    penalties = [length_penalty(n, n // 4) for n in (1, 10, 100, 1000, 10**6)]
    assert all(p < 1 for p in penalties)
    assert penalties == sorted(penalties)
    assert length_penalty(10**12, 0) == pytest.approx(1, abs=1e-9)


def test_rescale_compresses_low_end():
    assert rescale(1.0, 60, 0, 4) == pytest.approx(1.0)
    assert rescale(100.0, 60, 0, 7) == pytest.approx(50 * 1.03)


def test_sparse_map_is_compressed():
    notes = [(0, 0, -1), (1, 4000, -1), (2, 8000, -1)]
    seq = build(notes, 4)
    bars = compute_bars(seq, hit_leniency(8))
    pre = weighted_difficulty(seq, bars) * length_penalty(3, 0)
    assert pre <= 2
    assert compute_rating(notes, 4, 8) == pytest.approx(math.sqrt(2 * pre) * 1.0)


def test_dt_is_harder(stream_notes):
    assert compute_rating(stream_notes, 4, 8, mod='DT') > compute_rating(stream_notes, 4, 8)
    assert compute_rating(stream_notes, 4, 8, mod='HT') < compute_rating(stream_notes, 4, 8)


def test_forward_fill():
    filled = forward_fill(np.array([0, 0, 2, 0, np.nan, 3, 0]))
    assert list(filled) == [0, 0, 2, 2, 2, 3, 3]


def test_empty():
    with pytest.raises(EmptyInputError):
        compute_rating([], 4, 8)


def test_column_equal_to_key_count():
    with pytest.raises(InvalidColumnError):
        compute_rating([(0, 0, -1), (4, 100, -1)], 4, 8)


def test_eleven_keys():
    with pytest.raises(UnsupportedKeyCountError):
        compute_rating([(0, 0, -1), (1, 100, -1)], 11, 8)


def test_task_errors_propagate(monkeypatch, golden_notes):
    def boom(*args):
        raise RuntimeError('boom')

    monkeypatch.setattr(algorithm, 'compute_Xbar', boom)
    with pytest.raises(RuntimeError, match='boom'):
        compute_rating(golden_notes, 2, 8)


def test_non_finite_bar_is_degenerate(monkeypatch, golden_notes):
    def nan_bar(note_seq, x, params):
        return np.full(note_seq.T, np.nan)

    monkeypatch.setattr(algorithm, 'compute_Pbar', nan_bar)
    with pytest.raises(DegenerateInputError):
        compute_rating(golden_notes, 2, 8)


def test_rating_frame(golden_notes):
    frame = rating_frame(golden_notes, 2, 8)
    assert list(frame.columns) == [
        'time', 'Jbar', 'Xbar', 'Pbar', 'Abar', 'Rbar', 'C', 'Ks', 'S', 'D',
    ]
    assert len(frame) == 1501
    assert frame['Xbar'][750] == pytest.approx(0.062)
    assert frame['C'][0] == 1


def test_calculate_from_file(tmp_path, golden_notes):
    path = tmp_path / 'golden.json'
    dump_note_file(path, build(golden_notes, 2), 8.0)
    assert algorithm.calculate(path) == pytest.approx(GOLDEN_SR, rel=1e-9)
