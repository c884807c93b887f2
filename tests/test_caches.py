from __future__ import annotations

import threading

import numpy as np

from hessfree.caches import DeltaPool, VectorPool
from hessfree.param_delta import Parameter


def test_vector_pool_reuses_and_zeroes_on_loan() -> None:
    pool = VectorPool()
    vec = pool.alloc(4)
    assert vec.dtype == np.float64 and vec.shape == (4,)
    vec[:] = 7.0
    pool.release(vec)
    assert pool.size(4) == 1
    again = pool.alloc(4)
    assert again is vec
    assert not again.any()
    assert pool.size(4) == 0


def test_vector_pool_buckets_by_length() -> None:
    pool = VectorPool()
    pool.release(np.ones(3))
    pool.release(np.ones(5))
    assert pool.size(3) == 1
    assert pool.size(5) == 1
    assert pool.alloc(5).shape == (5,)
    assert pool.size(3) == 1


def test_vector_pool_never_hands_out_a_vector_twice_under_contention() -> None:
    pool = VectorPool()
    failures = []

    def worker(tag: float) -> None:
        for _ in range(200):
            vec = pool.alloc(16)
            vec[:] = tag
            if not np.all(vec == tag):
                failures.append(tag)
            pool.release(vec)

    threads = [threading.Thread(target=worker, args=(float(i + 1),)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert not failures
    assert 1 <= pool.size(16) <= 8


def test_delta_pool_round_trip() -> None:
    a, b = Parameter(np.zeros(2)), Parameter(np.zeros(3))
    pool = DeltaPool()
    delta = pool.alloc([a, b])
    assert set(delta.keys()) == {a, b}
    delta[a][:] = 1.0
    pool.release(delta)
    assert pool.vectors.size(2) == 1 and pool.vectors.size(3) == 1
    fresh = pool.alloc([a])
    assert not fresh[a].any()
