"""Concurrent, sub-batched evaluation of quadratic objectives.

``ConcurrentObjective`` turns a ``WrappedObjective`` into a full ``Objective``
and spreads every call over a bounded number of worker threads, never handing
the wrapped evaluator more than ``max_sub_batch`` samples at once.

Each call spins up its own executor with exactly ``max_concurrency`` workers.
Workers claim shards first-come-first-served from a shared queue, reduce their
shards locally and hand the partial result back through their future; the
caller sums the partials once every worker is done.
"""

from __future__ import annotations

import os
import queue
import threading
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Callable, Iterator, List, Optional, Tuple, TypeVar

import numpy as np

from .caches import DeltaPool
from .interfaces import SampleSet, WrappedObjective
from .param_delta import ParamDelta, Parameter

__all__ = ["ConcurrentObjective", "DEFAULT_MAX_SUB_BATCH"]

DEFAULT_MAX_SUB_BATCH = 15

_T = TypeVar("_T")


@dataclass
class ConcurrentObjective:
    """Parallel ``Objective`` over a wrapped per-batch evaluator.

    Args:
        wrapped: Evaluator for small batches. When ``max_concurrency`` is not 1
            its methods must be safe to call from several threads at once.
        max_concurrency: Worker threads per call; 0 means ``os.cpu_count()``.
        max_sub_batch: Largest batch passed to ``wrapped``; 0 means 15.
        pool: Source of the worker-local accumulators.
    """

    wrapped: WrappedObjective
    max_concurrency: int = 0
    max_sub_batch: int = 0
    pool: DeltaPool = field(default_factory=DeltaPool)
    _patch_lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def __post_init__(self) -> None:
        assert self.max_concurrency >= 0, "max_concurrency must be non-negative"
        assert self.max_sub_batch >= 0, "max_sub_batch must be non-negative"

    def quad(self, delta: ParamDelta, samples: SampleSet) -> float:
        return self._sum_values(lambda sub: self.wrapped.quad(delta, sub), samples)

    def quad_grad(
        self,
        delta: ParamDelta,
        samples: SampleSet,
        out: Optional[ParamDelta] = None,
    ) -> ParamDelta:
        if out is None:
            out = ParamDelta.zeros(self.wrapped.parameters())
        self._sum_deltas(lambda sub, acc: self._grad_into(delta, sub, acc), samples, out)
        return out

    def quad_hessian(
        self,
        delta: ParamDelta,
        x: ParamDelta,
        samples: SampleSet,
        out: Optional[ParamDelta] = None,
    ) -> Tuple[ParamDelta, float]:
        if out is None:
            out = ParamDelta.zeros(self.wrapped.parameters())
        value = self._sum_deltas(
            lambda sub, acc: self.wrapped.quad_hessian(delta, x, sub, acc)[1],
            samples,
            out,
        )
        return out, value

    def objective(self, delta: ParamDelta, samples: SampleSet) -> float:
        """True cost at ``delta``.

        The delta is temporarily added onto the live parameters, so nothing
        else may evaluate against the same parameters during this call.
        """
        with self._patched_parameters(delta):
            return self._sum_values(self.wrapped.objective_at_zero, samples)

    def worker_count(self) -> int:
        if self.max_concurrency:
            return self.max_concurrency
        return os.cpu_count() or 1

    def sub_batch_size(self) -> int:
        return self.max_sub_batch or DEFAULT_MAX_SUB_BATCH

    def sub_batches(self, samples: SampleSet) -> List[SampleSet]:
        """Split ``samples`` into contiguous shards, preserving order."""
        size = self.sub_batch_size()
        n = len(samples)
        return [samples.subset(i, min(i + size, n)) for i in range(0, n, size)]

    def _grad_into(self, delta: ParamDelta, sub: SampleSet, acc: ParamDelta) -> float:
        self.wrapped.quad_grad(delta, sub, acc)
        return 0.0

    def _sum_values(self, fn: Callable[[SampleSet], float], samples: SampleSet) -> float:
        def work(shards: "queue.SimpleQueue[SampleSet]") -> float:
            total = 0.0
            for sub in _drain(shards):
                total += fn(sub)
            return total

        return float(sum(self._run_workers(work, samples)))

    def _sum_deltas(
        self,
        fn: Callable[[SampleSet, ParamDelta], float],
        samples: SampleSet,
        out: ParamDelta,
    ) -> float:
        variables = out.variables()

        def work(shards: "queue.SimpleQueue[SampleSet]") -> Tuple[ParamDelta, float]:
            partial = self.pool.alloc(variables)
            value = 0.0
            try:
                for sub in _drain(shards):
                    value += fn(sub, partial)
            except BaseException:
                self.pool.release(partial)
                raise
            return partial, value

        def discard(result: Tuple[ParamDelta, float]) -> None:
            self.pool.release(result[0])

        total = 0.0
        for partial, value in self._run_workers(work, samples, on_discard=discard):
            out.add_delta(partial)
            self.pool.release(partial)
            total += value
        return total

    def _run_workers(
        self,
        work: Callable[["queue.SimpleQueue[SampleSet]"], _T],
        samples: SampleSet,
        on_discard: Optional[Callable[[_T], None]] = None,
    ) -> List[_T]:
        """Run ``work`` on every worker and collect their results in order.

        If any worker fails, the results of the workers that succeeded are
        handed to ``on_discard`` before the first error is re-raised.
        """
        shards = self.sub_batches(samples)
        if not shards:
            return []
        shard_queue: "queue.SimpleQueue[SampleSet]" = queue.SimpleQueue()
        for sub in shards:
            shard_queue.put(sub)
        workers = self.worker_count()
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = [executor.submit(work, shard_queue) for _ in range(workers)]
        # The executor has joined, so every future is settled here.
        error = next((f.exception() for f in futures if f.exception() is not None), None)
        if error is None:
            return [f.result() for f in futures]
        if on_discard is not None:
            for f in futures:
                if f.exception() is None:
                    on_discard(f.result())
        raise error

    @contextmanager
    def _patched_parameters(self, delta: ParamDelta) -> Iterator[None]:
        acquired = self._patch_lock.acquire(blocking=False)
        assert acquired, "objective() is not re-entrant: parameters are already patched"
        backups: List[Tuple[Parameter, np.ndarray]] = []
        try:
            for param, vec in delta.items():
                backups.append((param, param.vector))
                param.vector = param.vector + vec
            yield
        finally:
            for param, backup in backups:
                param.vector = backup
            self._patch_lock.release()


def _drain(shards: "queue.SimpleQueue[SampleSet]") -> Iterator[SampleSet]:
    while True:
        try:
            yield shards.get_nowait()
        except queue.Empty:
            return
