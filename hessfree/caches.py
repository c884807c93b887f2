"""Thread-safe pools of reusable vectors and deltas.

Conjugate Gradient and the concurrent objective allocate the same handful of
vector shapes over and over; pooling them keeps repeated iterations free of
allocation churn. Vectors are zeroed when they are lent out, never when they
are returned.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Tuple

import numpy as np

from .param_delta import ParamDelta, Parameter

__all__ = ["VectorPool", "DeltaPool"]


@dataclass
class VectorPool:
    """Free lists of float64 vectors keyed by length, one lock per length."""

    _buckets: Dict[int, Tuple[threading.Lock, List[np.ndarray]]] = field(
        default_factory=dict, init=False, repr=False
    )
    _buckets_lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def alloc(self, size: int) -> np.ndarray:
        assert size >= 0, "vector size must be non-negative"
        lock, free = self._bucket(size)
        with lock:
            vec = free.pop() if free else None
        if vec is None:
            return np.zeros(size, dtype=np.float64)
        vec.fill(0.0)
        return vec

    def release(self, vec: np.ndarray) -> None:
        assert vec.ndim == 1, "only one-dimensional vectors can be pooled"
        lock, free = self._bucket(int(vec.shape[0]))
        with lock:
            free.append(vec)

    def size(self, length: int) -> int:
        """Number of idle vectors of the given length."""
        lock, free = self._bucket(length)
        with lock:
            return len(free)

    def _bucket(self, size: int) -> Tuple[threading.Lock, List[np.ndarray]]:
        bucket = self._buckets.get(size)
        if bucket is not None:
            return bucket
        with self._buckets_lock:
            return self._buckets.setdefault(size, (threading.Lock(), []))


@dataclass
class DeltaPool:
    """Allocates whole ``ParamDelta``s out of a ``VectorPool``."""

    vectors: VectorPool = field(default_factory=VectorPool)

    def alloc(self, params: Iterable[Parameter]) -> ParamDelta:
        res = ParamDelta()
        for param in params:
            res[param] = self.vectors.alloc(len(param))
        return res

    def release(self, delta: ParamDelta) -> None:
        for vec in delta.values():
            self.vectors.release(vec)
