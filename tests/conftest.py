import random

import pytest


@pytest.fixture
def golden_notes():
    # two lanes, alternating, one note every 500 ms
    return [(0, 0, -1), (1, 500, -1), (0, 1000, -1), (1, 1500, -1)]


@pytest.fixture
def random_notes():
    rng = random.Random(42)
    notes = []
    total_notes = 300
    max_time = 60000
    for i in range(total_notes):
        time = int(i * (max_time / total_notes))
        column = rng.randrange(4)
        tail = time + rng.randrange(100, 800) if rng.randrange(10) < 2 else -1
        notes.append((column, time, tail))
    return notes


@pytest.fixture
def stream_notes():
    # 4K roll, 8 notes per second for 10 seconds
    return [(i % 4, i * 125, -1) for i in range(80)]
