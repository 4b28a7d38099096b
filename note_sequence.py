import json
import math
from collections import namedtuple
from enum import Enum

from rating_errors import (
    DegenerateInputError,
    EmptyInputError,
    InvalidColumnError,
    InvalidNoteTimeError,
    UnsupportedKeyCountError,
    UnsupportedModError,
)

MIN_KEY_COUNT = 1
MAX_KEY_COUNT = 10

# tail < 0 marks a tap, tail >= head a hold over [head, tail)
Note = namedtuple('Note', ['column', 'head', 'tail'])


class Mod(Enum):
    NM = "NM"
    DT = "DT"
    HT = "HT"


# time multiplier as (numerator, denominator)
_MOD_RATES = {
    Mod.NM: None,
    Mod.DT: (2, 3),
    Mod.HT: (4, 3),
}


def apply_mod(notes, mod):
    """Rescale note times for a rate-changing mod.

    ``mod`` may be a :class:`Mod` or its string value. Tap tails stay ``-1``.
    """
    try:
        mod = Mod(mod)
    except ValueError:
        raise UnsupportedModError(f"unsupported mod: {mod!r}") from None

    rate = _MOD_RATES[mod]
    out = []
    for (k, h, t) in notes:
        if rate is not None:
            num, den = rate
            h = int(math.floor(h * num/den))
            t = int(math.floor(t * num/den)) if t >= 0 else t
        out.append(Note(k, h, t))
    return out


class NoteSequence:
    """Validated, time-ordered notes together with the per-lane, hold and
    tail orderings every bar is computed from.

    Instances are built with :func:`build` and never mutated afterwards.
    """

    def __init__(self, K, note_seq):
        self.K = K
        self.note_seq = tuple(note_seq)

        # Group notes by column, keeping empty lanes so that index == column
        note_seq_by_column = [[] for _ in range(K)]
        for note in self.note_seq:
            note_seq_by_column[note.column].append(note)
        self.note_seq_by_column = tuple(tuple(col) for col in note_seq_by_column)

        # Long notes (LN) are those with a tail (t>=0)
        self.LN_seq = tuple(n for n in self.note_seq if n.tail >= 0)
        self.tail_seq = tuple(sorted(self.LN_seq, key=lambda n: n.tail))

        self.T = max(max(n.head for n in self.note_seq),
                     max(n.tail for n in self.note_seq)) + 1

    def __len__(self):
        return len(self.note_seq)

    def __iter__(self):
        return iter(self.note_seq)

    def __eq__(self, other):
        if not isinstance(other, NoteSequence):
            return NotImplemented
        return self.K == other.K and self.note_seq == other.note_seq

    def __repr__(self):
        return (f'<NoteSequence K={self.K} notes={len(self.note_seq)} '
                f'holds={len(self.LN_seq)} T={self.T}>')

    def to_records(self):
        """Return the notes as ``[column, head, tail]`` integer lists."""
        return [[int(k), int(h), int(t)] for (k, h, t) in self.note_seq]

    @classmethod
    def from_records(cls, records, key_count):
        """Rebuild a sequence from :meth:`to_records` output."""
        return build([tuple(r) for r in records], key_count)


def build(notes, key_count):
    """Validate ``notes`` and organise them into a :class:`NoteSequence`.

    Parameters
    ----------
    notes : iterable
        ``Note`` objects or ``(column, head, tail)`` triples, in any order.
    key_count : int
        Number of lanes ``K``.

    Raises
    ------
    UnsupportedKeyCountError
        ``key_count`` is outside ``[1, 10]``.
    EmptyInputError
        There are no notes.
    InvalidColumnError
        A column lies outside ``[0, key_count)``.
    InvalidNoteTimeError
        A head is negative, or a hold ends before it starts.
    DegenerateInputError
        Fewer than two distinct time points.
    """
    if not (MIN_KEY_COUNT <= key_count <= MAX_KEY_COUNT):
        raise UnsupportedKeyCountError(
            f"key count must be in [{MIN_KEY_COUNT}, {MAX_KEY_COUNT}], "
            f"got {key_count}"
        )

    note_seq = [Note(int(k), int(h), int(t)) for (k, h, t) in notes]
    if not note_seq:
        raise EmptyInputError("no notes to rate")

    times = set()
    for note in note_seq:
        if not (0 <= note.column < key_count):
            raise InvalidColumnError(
                f"column {note.column} outside [0, {key_count}) in {note}"
            )
        if note.head < 0:
            raise InvalidNoteTimeError(f"negative head time in {note}")
        if 0 <= note.tail < note.head:
            raise InvalidNoteTimeError(f"hold ends before it starts in {note}")
        times.add(note.head)
        if note.tail >= 0:
            times.add(note.tail)

    if len(times) < 2:
        raise DegenerateInputError(
            f"need at least two distinct time points, got {sorted(times)}"
        )

    note_seq.sort(key=lambda n: (n.head, n.column))
    return NoteSequence(key_count, note_seq)


def load_note_file(file_path):
    """Read a JSON note file.

    The file holds ``{"key_count": K, "overall_difficulty": OD, "notes":
    [[column, head, tail], ...]}``.

    Returns
    -------
    notes : list[Note]
    key_count : int
    od : float
    """
    with open(file_path, "r", encoding='utf-8') as f:
        data = json.load(f)
    notes = [Note(*map(int, record)) for record in data["notes"]]
    return notes, int(data["key_count"]), float(data["overall_difficulty"])


def dump_note_file(file_path, note_seq, od):
    with open(file_path, "w", encoding='utf-8') as f:
        json.dump({
            "key_count": note_seq.K,
            "overall_difficulty": od,
            "notes": note_seq.to_records(),
        }, f)
